"""Versioned lexicon tables driving intent scoring and message classification.

The tables ship as ``conversion_agent/data/intent_signals.json``; a deployment
can point ``INTENT_SIGNALS_PATH`` at its own copy to retune scoring without
touching code.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

from conversion_agent.errors import ValidationFailure
from conversion_agent.models.domain import MessageCategory, ObjectionType

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS_PATH = Path(__file__).resolve().parent.parent / "data" / "intent_signals.json"

_PHRASE_TABLES = (
    "strong",
    "medium",
    "weak",
    "blocking",
    "practical_questions",
    "positive_emotions",
    "validation",
    "personalization",
    "urgency",
    "objections",
    "hesitation",
    "drop_off",
    "engagement_emotions",
    "purchase_choice_markers",
)


def normalize(text: str) -> str:
    """Lowercase, unify apostrophes and collapse whitespace."""
    text = text.lower().replace("’", "'").replace("‘", "'")
    return " ".join(text.split())


@lru_cache(maxsize=4096)
def _phrase_pattern(phrase: str) -> re.Pattern:
    return re.compile(r"(?<!\w)" + re.escape(phrase) + r"(?!\w)")


def contains_phrase(normalized_text: str, phrase: str) -> bool:
    """Word-bounded containment, so ``go`` does not fire inside ``catégorie``."""
    return _phrase_pattern(phrase).search(normalized_text) is not None


def matching(normalized_text: str, phrases: tuple[str, ...]) -> list[str]:
    return [p for p in phrases if contains_phrase(normalized_text, p)]


@dataclass(frozen=True)
class SignalTables:
    version: str
    strong: tuple[str, ...]
    medium: tuple[str, ...]
    weak: tuple[str, ...]
    blocking: tuple[str, ...]
    practical_questions: tuple[str, ...] = ()
    positive_emotions: tuple[str, ...] = ()
    validation: tuple[str, ...] = ()
    personalization: tuple[str, ...] = ()
    urgency: tuple[str, ...] = ()
    objections: tuple[str, ...] = ()
    hesitation: tuple[str, ...] = ()
    drop_off: tuple[str, ...] = ()
    engagement_emotions: tuple[str, ...] = ()
    purchase_choice_markers: tuple[str, ...] = ()
    objection_types: dict[ObjectionType, tuple[str, ...]] = field(default_factory=dict)
    categories: tuple[tuple[MessageCategory, tuple[str, ...]], ...] = ()
    category_knowledge_hints: dict[MessageCategory, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> SignalTables:
        if not isinstance(data, dict) or "version" not in data:
            raise ValidationFailure("signal tables must be an object with a 'version' field")
        for required in ("strong", "medium", "weak", "blocking"):
            if not isinstance(data.get(required), list):
                raise ValidationFailure(f"signal table '{required}' is missing or not a list")

        phrases = {
            name: tuple(normalize(str(p)) for p in data.get(name, []) if str(p).strip())
            for name in _PHRASE_TABLES
        }
        try:
            objection_types = {
                ObjectionType(kind): tuple(normalize(p) for p in words)
                for kind, words in (data.get("objection_types") or {}).items()
            }
            categories = tuple(
                (MessageCategory(name), tuple(normalize(p) for p in words))
                for name, words in data.get("categories") or []
            )
            hints = {
                MessageCategory(name): str(category)
                for name, category in (data.get("category_knowledge_hints") or {}).items()
            }
        except ValueError as exc:
            raise ValidationFailure(f"invalid signal tables: {exc}") from exc

        return cls(
            version=str(data["version"]),
            objection_types=objection_types,
            categories=categories,
            category_knowledge_hints=hints,
            **phrases,
        )

    @classmethod
    def from_file(cls, path: str | Path) -> SignalTables:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ValidationFailure(f"could not read signal tables from {path}: {exc}") from exc
        tables = cls.from_dict(data)
        logger.info("Loaded signal tables version %s from %s", tables.version, path)
        return tables


def load_signal_tables(path: str | None = None) -> SignalTables:
    """Load the configured tables, or the packaged defaults when no path is set."""
    return SignalTables.from_file(path or DEFAULT_SIGNALS_PATH)
