"""Purchase-intent scoring and message classification.

Everything here is a pure function of its inputs: no I/O, no clock, no
shared mutable state. The scorer is cheap enough to run on every inbound
message.
"""

from __future__ import annotations

from conversion_agent.models.domain import (
    Confidence,
    IntentContext,
    MessageCategory,
    ObjectionType,
    PurchaseIntent,
    Recommendation,
)
from conversion_agent.services.signals import SignalTables, contains_phrase, matching, normalize

STRONG_WEIGHT = 85
MEDIUM_WEIGHT = 60
WEAK_WEIGHT = 30
BLOCKING_WEIGHT = -40

PRACTICAL_WEIGHT = 25
EMOTION_WEIGHT = 15
VALIDATION_BONUS = 20
PERSONALIZATION_BONUS = 30
URGENCY_BONUS = 25
PROGRESSION_BONUS = 10

TRIGGER_THRESHOLD = 75
NUDGE_THRESHOLD = 45


class IntentScorer:
    def __init__(self, tables: SignalTables):
        self.tables = tables

    def score(
        self,
        message: str,
        history: list[str] | None = None,
        context: IntentContext | None = None,
    ) -> PurchaseIntent:
        """Score how ready the customer is to buy, from 0 to 100.

        ``history`` is accepted for interface stability; the score depends on
        earlier turns only through ``context``.
        """
        context = context or IntentContext()
        text = normalize(message)
        score = 0
        signals: list[str] = []

        for label, table, weight in (
            ("strong", self.tables.strong, STRONG_WEIGHT),
            ("medium", self.tables.medium, MEDIUM_WEIGHT),
            ("weak", self.tables.weak, WEAK_WEIGHT),
            ("blocking", self.tables.blocking, BLOCKING_WEIGHT),
        ):
            for phrase in matching(text, table):
                score += weight
                signals.append(f"{label}:{phrase}")

        # Conversation context
        if context.message_count > 3:
            score += min(20, context.message_count * 2)
            signals.append(f"engagement:{context.message_count} messages")
        if context.seconds_elapsed > 120:
            minutes = int(context.seconds_elapsed // 60)
            score += min(15, minutes)
            signals.append(f"time_spent:{minutes}min")
        if context.previous_score > 40:
            score += PROGRESSION_BONUS
            signals.append(f"progression:{context.previous_score}")

        # Linguistic cues
        practical = matching(text, self.tables.practical_questions)
        if practical:
            score += PRACTICAL_WEIGHT * len(practical)
            signals.append(f"practical_questions:{len(practical)}")
        emotions = matching(text, self.tables.positive_emotions)
        if emotions:
            score += EMOTION_WEIGHT * len(emotions)
            signals.append(f"positive_emotions:{len(emotions)}")
        if matching(text, self.tables.validation):
            score += VALIDATION_BONUS
            signals.append("validation")
        if matching(text, self.tables.personalization):
            score += PERSONALIZATION_BONUS
            signals.append("personalization")
        if matching(text, self.tables.urgency):
            score += URGENCY_BONUS
            signals.append("urgency")

        score = max(0, min(100, score))

        if score >= TRIGGER_THRESHOLD:
            confidence, recommendation = Confidence.HIGH, Recommendation.TRIGGER_PURCHASE
        elif score >= NUDGE_THRESHOLD:
            confidence, recommendation = Confidence.MEDIUM, Recommendation.NUDGE
        else:
            confidence, recommendation = Confidence.LOW, Recommendation.CONTINUE

        return PurchaseIntent(
            score=score,
            confidence=confidence,
            matched_signals=tuple(signals),
            recommendation=recommendation,
        )

    def detect_objection(self, message: str) -> ObjectionType | None:
        """Return the objection type raised by ``message``, or None."""
        text = normalize(message)
        if not matching(text, self.tables.objections):
            return None
        for kind in (ObjectionType.PRICE, ObjectionType.EFFICACY, ObjectionType.TIME):
            if matching(text, self.tables.objection_types.get(kind, ())):
                return kind
        return ObjectionType.COMPLEX

    def count_objections(self, message: str) -> int:
        return len(matching(normalize(message), self.tables.objections))

    def classify(self, message: str) -> MessageCategory:
        """Map a message onto one closed category; the first matching rule wins."""
        text = normalize(message)
        rules = dict(self.tables.categories)
        if matching(text, rules.get(MessageCategory.PURCHASE_INTENT, ())):
            return MessageCategory.PURCHASE_INTENT
        if self.detect_objection(message) is not None:
            return MessageCategory.OBJECTION
        for category, phrases in self.tables.categories:
            if category != MessageCategory.PURCHASE_INTENT and matching(text, phrases):
                return category
        return MessageCategory.GENERAL

    def knowledge_hint(self, category: MessageCategory) -> str | None:
        return self.tables.category_knowledge_hints.get(category)

    def is_purchase_choice(self, choice: str) -> bool:
        text = normalize(choice)
        return any(contains_phrase(text, marker) for marker in self.tables.purchase_choice_markers)

    def is_drop_off(self, message: str) -> bool:
        return bool(matching(normalize(message), self.tables.drop_off))

    def is_hesitation(self, message: str) -> bool:
        return bool(matching(normalize(message), self.tables.hesitation))
