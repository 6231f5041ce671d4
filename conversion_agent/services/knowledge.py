"""Keyword-ranked retrieval over the curated question/answer knowledge base.

The item set is held in memory and refreshed lazily once its time-to-live
has expired. Concurrent refreshes are allowed: each one replaces the shared
snapshot wholesale, the last writer wins.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Awaitable, Callable

from conversion_agent.errors import KnowledgeRetrievalFailure
from conversion_agent.models.domain import KnowledgeItem, ScoredItem

logger = logging.getLogger(__name__)

KnowledgeLoader = Callable[[], Awaitable[list[KnowledgeItem]]]

PHRASE_WEIGHT = 1.5
EXACT_WORD_WEIGHT = 1.2
PARTIAL_WORD_WEIGHT = 0.8
QUESTION_WORD_WEIGHT = 0.5
ANSWER_WORD_WEIGHT = 0.3
MULTI_WORD_BONUS = 0.7
CATEGORY_HINT_BONUS = 0.3
MAX_SCORE = 3.0
MIN_SCORE = 0.3

PLACEHOLDER_RE = re.compile(r"\{(?:product_name|jeu_name|nom_produit)\}")
_WORD_RE = re.compile(r"\w+")
_LEADING_ARTICLE_RE = re.compile(r"^\s*(?:le\s+jeu\s+)", re.IGNORECASE)

DEFAULT_FOLLOW_UPS = (
    "Je veux l'acheter maintenant",
    "J'ai d'autres questions",
    "Comment y jouer ?",
)

DEFAULT_ITEMS: tuple[KnowledgeItem, ...] = (
    KnowledgeItem(
        id="default-price",
        category="prix",
        trigger_keywords={"prix", "combien", "coûte", "tarif", "coût"},
        question="Quel est le prix du jeu ?",
        answer_template=(
            "Le prix de {product_name} est affiché sur la page du produit. "
            "La livraison est offerte à Dakar et vous êtes satisfait ou remboursé. "
            "Souhaitez-vous le commander maintenant ?"
        ),
        priority=10,
        suggested_follow_ups=("Je veux l'acheter maintenant", "Quels sont les délais de livraison ?"),
    ),
    KnowledgeItem(
        id="default-delivery",
        category="livraison",
        trigger_keywords={"livraison", "livrer", "délai", "expédition", "livré"},
        question="Comment se passe la livraison ?",
        answer_template=(
            "Nous livrons {product_name} en 24 à 48h à Dakar et en 2 à 3 jours ouvrables "
            "dans les autres zones. Souhaitez-vous passer commande ?"
        ),
        priority=9,
        suggested_follow_ups=("Je veux l'acheter maintenant", "Quels moyens de paiement acceptez-vous ?"),
    ),
    KnowledgeItem(
        id="default-payment",
        category="paiement",
        trigger_keywords={"paiement", "payer", "wave", "orange money", "carte"},
        question="Quels moyens de paiement acceptez-vous ?",
        answer_template=(
            "Vous pouvez régler par Wave, Orange Money, carte bancaire ou en espèces "
            "à la livraison. Quel moyen de paiement vous convient le mieux ?"
        ),
        priority=8,
        suggested_follow_ups=("Je veux l'acheter maintenant", "Comment se passe la livraison ?"),
    ),
    KnowledgeItem(
        id="default-rules",
        category="produit",
        trigger_keywords={"jouer", "règles", "comment ça marche", "fonctionne", "cartes"},
        question="Comment joue-t-on ?",
        answer_template=(
            "Avec {product_name}, vous tirez une carte à tour de rôle et répondez à la "
            "question posée. Une partie dure de 15 minutes à 2 heures selon vos envies. "
            "Souhaitez-vous l'essayer ?"
        ),
        priority=7,
        suggested_follow_ups=("Je veux l'acheter maintenant", "C'est pour qui exactement ?"),
    ),
    KnowledgeItem(
        id="default-guarantee",
        category="garantie",
        trigger_keywords={"garantie", "remboursé", "remboursement", "satisfait"},
        question="Y a-t-il une garantie ?",
        answer_template=(
            "{product_name} est couvert par notre garantie satisfait ou remboursé. "
            "Vous ne prenez aucun risque. Souhaitez-vous le commander ?"
        ),
        priority=6,
        suggested_follow_ups=("Je veux l'acheter maintenant", "Voir les témoignages clients"),
    ),
)


def tokenize(query: str) -> list[str]:
    """Lowercase words of at least three characters, in order."""
    return [w for w in _WORD_RE.findall(query.lower()) if len(w) >= 3]


def score_item(
    query: str,
    words: list[str],
    item: KnowledgeItem,
    category_hint: str | None = None,
) -> tuple[float, tuple[str, ...]]:
    """Relevance of ``item`` for a tokenized query, with the keywords that matched."""
    raw = query.lower()
    keywords = sorted(item.trigger_keywords)
    score = 0.0
    matched: set[str] = set()

    for keyword in keywords:
        if keyword in raw:
            score += PHRASE_WEIGHT
            matched.add(keyword)
        for word in words:
            if word == keyword:
                score += EXACT_WORD_WEIGHT
                matched.add(keyword)
            elif word in keyword or keyword in word:
                score += PARTIAL_WORD_WEIGHT
                matched.add(keyword)

    question = item.question.lower()
    answer = item.answer_template.lower()
    for word in words:
        if word in question:
            score += QUESTION_WORD_WEIGHT
        if word in answer:
            score += ANSWER_WORD_WEIGHT

    if len(words) > 1:
        phrase = " ".join(words)
        if any(phrase in k or (" " in k and k in phrase) for k in keywords):
            score += MULTI_WORD_BONUS

    if category_hint and item.category == category_hint:
        score += CATEGORY_HINT_BONUS

    return min(score, MAX_SCORE), tuple(sorted(matched))


def expand_answer(template: str, product_name: str | None) -> str:
    """Fill product placeholders with the canonical ``le jeu <name>`` phrasing."""
    if not product_name:
        return PLACEHOLDER_RE.sub("nos jeux", template)
    bare_name = _LEADING_ARTICLE_RE.sub("", product_name).strip()
    return PLACEHOLDER_RE.sub(f"le jeu {bare_name}", template)


class KnowledgeIndex:
    def __init__(
        self,
        loader: KnowledgeLoader,
        ttl_seconds: float = 300.0,
        defaults: tuple[KnowledgeItem, ...] = DEFAULT_ITEMS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loader = loader
        self._ttl = ttl_seconds
        self._defaults = defaults
        self._clock = clock
        self._items: tuple[KnowledgeItem, ...] = ()
        self._loaded_at: float | None = None
        self._populated = False

    def _expired(self) -> bool:
        return self._loaded_at is None or (self._clock() - self._loaded_at) > self._ttl

    async def refresh(self) -> tuple[KnowledgeItem, ...]:
        """Reload the snapshot from the store, keeping the old one on failure."""
        try:
            loaded = await self._loader()
        except KnowledgeRetrievalFailure as exc:
            if self._populated:
                logger.warning("Knowledge refresh failed, serving stale snapshot: %s", exc)
            else:
                logger.warning("Knowledge refresh failed, serving built-in defaults: %s", exc)
                self._items = self._defaults
            # retry on the next TTL boundary rather than on every request
            self._loaded_at = self._clock()
            return self._items

        if not loaded and not self._populated:
            logger.warning("Knowledge base is empty, serving built-in defaults")
            self._items = self._defaults
        else:
            self._items = tuple(loaded)
            self._populated = True
        self._loaded_at = self._clock()
        logger.info("Knowledge snapshot refreshed: %d items", len(self._items))
        return self._items

    async def _ensure_fresh(self) -> tuple[KnowledgeItem, ...]:
        if self._expired():
            return await self.refresh()
        return self._items

    async def search(
        self,
        query: str,
        category: str | None = None,
        category_hint: str | None = None,
    ) -> list[ScoredItem]:
        """Rank knowledge items against ``query``, best first."""
        snapshot = await self._ensure_fresh()
        words = tokenize(query)
        if not words:
            return []

        results = []
        for item in snapshot:
            if not item.trigger_keywords:
                continue
            if category and item.category != category:
                continue
            score, matched = score_item(query, words, item, category_hint)
            if score > MIN_SCORE:
                results.append(ScoredItem(item=item, score=round(score, 4), matched_keywords=matched))

        results.sort(key=lambda r: (-r.score, -r.item.priority, r.item.id))
        return results

    def expand(self, item: KnowledgeItem, product_name: str | None) -> tuple[str, tuple[str, ...]]:
        """Answer text and follow-up suggestions ready for the customer."""
        follow_ups = item.suggested_follow_ups or DEFAULT_FOLLOW_UPS
        return expand_answer(item.answer_template, product_name), tuple(follow_ups)

    def stats(self) -> dict:
        return {
            "item_count": len(self._items),
            "populated_from_store": self._populated,
            "categories": sorted({item.category for item in self._items}),
        }
