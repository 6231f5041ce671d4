"""Sales-phase classification and tactical recommendations.

The phase is not a stored state machine edge: it is recomputed from the
conversation metrics on every turn, so any phase can jump to
``objection_handling`` or ``closing`` as soon as the signals say so.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from conversion_agent.models.domain import Phase, Priority, PurchaseIntent, RiskLevel
from conversion_agent.services.intent import IntentScorer

CLOSING_INTENT = 70
PRESENTATION_ENGAGEMENT = 60
PRESENTATION_INTENT = 30
DISCOVERY_MIN_TURNS = 2

MAX_MESSAGES_BEFORE_URGENCY = 8
DROP_OFF_MEDIUM_SECONDS = 8 * 60
DROP_OFF_HIGH_SECONDS = 15 * 60
FALLING_INTENT_DELTA = 10

# customer messages (current one included) whose objections still count
OBJECTION_WINDOW = 2

TECHNIQUES = {
    Phase.RAPPORT_BUILDING: ("open_question", "emotional_validation", "personalization"),
    Phase.NEED_DISCOVERY: ("spin_questioning", "problem_amplification", "consequence_exploration"),
    Phase.SOLUTION_PRESENTATION: ("personalized_benefits", "social_proof", "value_demonstration"),
    Phase.OBJECTION_HANDLING: ("feel_felt_found", "positive_reframe", "counter_proof"),
    Phase.CLOSING: ("assumptive_close", "limited_urgency", "alternative_choice"),
}

NEXT_BEST_ACTIONS = {
    Phase.CLOSING: "Proposer la commande avec une conclusion assumée",
    Phase.OBJECTION_HANDLING: "Appliquer Feel-Felt-Found pour lever l'objection",
    Phase.SOLUTION_PRESENTATION: "Présenter les bénéfices personnalisés avec preuves sociales",
    Phase.NEED_DISCOVERY: "Identifier les besoins par un questionnement ouvert",
    Phase.RAPPORT_BUILDING: "Construire la confiance avec des questions ouvertes",
}

PHASE_CHOICES = {
    Phase.CLOSING: (
        "Je veux l'acheter maintenant",
        "Voir les options de livraison",
        "Une dernière question avant de commander",
    ),
    Phase.OBJECTION_HANDLING: (
        "Voir les témoignages clients",
        "En savoir plus sur la garantie",
        "Comment ça marche exactement ?",
        "Je veux quand même l'acheter",
    ),
    Phase.SOLUTION_PRESENTATION: (
        "Je veux l'acheter maintenant",
        "Comment y jouer exactement ?",
        "Voir les témoignages",
        "J'ai encore des questions",
    ),
    Phase.NEED_DISCOVERY: (
        "C'est pour mon couple",
        "C'est pour ma famille",
        "C'est pour des amis",
        "Je veux d'abord en savoir plus",
    ),
    Phase.RAPPORT_BUILDING: (
        "Je cherche à améliorer ma relation",
        "Je veux créer plus de complicité",
        "J'ai entendu parler de vos jeux",
        "Je veux d'abord en savoir plus",
    ),
}


@dataclass(frozen=True)
class ConversationMetrics:
    message_count: int = 0
    engagement_score: float = 0.0
    objection_count: int = 0
    question_count: int = 0
    intent_progression: tuple[int, ...] = ()
    seconds_elapsed: float = 0.0
    conversion_probability: float = 0.0


@dataclass(frozen=True)
class OptimizationSuggestion:
    type: str
    priority: Priority
    suggestion: str
    expected_impact: str


@dataclass(frozen=True)
class ConversationStrategy:
    phase: Phase
    next_best_action: str
    technique_family: tuple[str, ...]
    choices: tuple[str, ...]
    drop_off_risk: RiskLevel
    conversion_probability: float
    suggestions: tuple[OptimizationSuggestion, ...] = field(default_factory=tuple)


class ConversationStrategySelector:
    def __init__(self, scorer: IntentScorer):
        self.scorer = scorer

    # -- Metrics --

    def build_metrics(
        self,
        customer_messages: list[str],
        intent_scores: list[int],
        seconds_elapsed: float,
    ) -> ConversationMetrics:
        """Aggregate conversation metrics; ``customer_messages`` includes the current turn."""
        question_count = sum(1 for m in customer_messages if "?" in m)
        objection_count = sum(
            self.scorer.count_objections(m) for m in customer_messages[-OBJECTION_WINDOW:]
        )
        engagement = self._engagement_score(customer_messages, question_count)
        progression = tuple(intent_scores)
        return ConversationMetrics(
            message_count=len(customer_messages),
            engagement_score=engagement,
            objection_count=objection_count,
            question_count=question_count,
            intent_progression=progression,
            seconds_elapsed=seconds_elapsed,
            conversion_probability=self._conversion_probability(
                progression, engagement, seconds_elapsed, objection_count
            ),
        )

    def _engagement_score(self, messages: list[str], question_count: int) -> float:
        if not messages:
            return 0.0
        avg_length = sum(len(m) for m in messages) / len(messages)
        score = min(30.0, avg_length / 2)
        score += min(40.0, len(messages) * 5)
        score += question_count * 15
        emotions = sum(
            1
            for m in messages
            for word in self.scorer.tables.engagement_emotions
            if word in m.lower()
        )
        score += emotions * 10
        return min(100.0, score)

    @staticmethod
    def _conversion_probability(
        progression: tuple[int, ...],
        engagement: float,
        seconds_elapsed: float,
        objection_count: int,
    ) -> float:
        if not progression:
            return 0.0
        probability = float(progression[-1])
        if len(progression) > 1:
            probability += max(0, progression[-1] - progression[0]) * 0.5
        probability += engagement * 0.2
        probability -= objection_count * 5
        minutes = seconds_elapsed / 60
        if 3 <= minutes <= 7:
            probability += 10
        elif minutes > 10:
            probability -= 5
        return max(0.0, min(100.0, probability))

    # -- Classification --

    @staticmethod
    def classify_phase(metrics: ConversationMetrics, intent_score: int) -> Phase:
        if intent_score >= CLOSING_INTENT:
            return Phase.CLOSING
        if metrics.objection_count > 0:
            return Phase.OBJECTION_HANDLING
        if metrics.engagement_score >= PRESENTATION_ENGAGEMENT and intent_score >= PRESENTATION_INTENT:
            return Phase.SOLUTION_PRESENTATION
        if metrics.question_count > 0 and metrics.message_count >= DISCOVERY_MIN_TURNS:
            return Phase.NEED_DISCOVERY
        return Phase.RAPPORT_BUILDING

    def drop_off_risk(self, metrics: ConversationMetrics, last_message: str) -> RiskLevel:
        if last_message and self.scorer.is_drop_off(last_message):
            return RiskLevel.HIGH
        recent = metrics.intent_progression[-2:]
        if len(recent) == 2 and recent[1] < recent[0] - FALLING_INTENT_DELTA:
            return RiskLevel.MEDIUM
        if metrics.seconds_elapsed > DROP_OFF_HIGH_SECONDS:
            return RiskLevel.HIGH
        if metrics.seconds_elapsed > DROP_OFF_MEDIUM_SECONDS:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def suggestions(
        self,
        metrics: ConversationMetrics,
        intent: PurchaseIntent,
        phase: Phase,
        risk: RiskLevel,
        message: str,
    ) -> tuple[OptimizationSuggestion, ...]:
        found = []
        if intent.score >= 60 and phase != Phase.CLOSING:
            found.append(OptimizationSuggestion(
                type="sales_technique",
                priority=Priority.CRITICAL,
                suggestion="Déclencher immédiatement le processus d'achat",
                expected_impact="Conversion immédiate possible",
            ))
        if self.scorer.is_hesitation(message):
            found.append(OptimizationSuggestion(
                type="objection_handling",
                priority=Priority.HIGH,
                suggestion="Appliquer la technique Feel-Felt-Found",
                expected_impact="Lever les doutes et rassurer le prospect",
            ))
        if metrics.message_count >= MAX_MESSAGES_BEFORE_URGENCY:
            found.append(OptimizationSuggestion(
                type="urgency_creation",
                priority=Priority.HIGH,
                suggestion="Créer un sentiment d'urgence approprié",
                expected_impact="Accélérer la prise de décision",
            ))
        if metrics.engagement_score < 50:
            found.append(OptimizationSuggestion(
                type="response_tone",
                priority=Priority.MEDIUM,
                suggestion="Personnaliser davantage la conversation",
                expected_impact="Augmenter l'engagement",
            ))
        if risk == RiskLevel.HIGH:
            found.append(OptimizationSuggestion(
                type="urgency_creation",
                priority=Priority.CRITICAL,
                suggestion="Offrir un bonus exclusif limité dans le temps",
                expected_impact="Prévenir l'abandon de la conversation",
            ))
        order = {Priority.CRITICAL: 0, Priority.HIGH: 1, Priority.MEDIUM: 2, Priority.LOW: 3}
        return tuple(sorted(found, key=lambda s: order[s.priority]))

    def select(
        self,
        metrics: ConversationMetrics,
        intent: PurchaseIntent,
        message: str,
    ) -> ConversationStrategy:
        phase = self.classify_phase(metrics, intent.score)
        risk = self.drop_off_risk(metrics, message)
        return ConversationStrategy(
            phase=phase,
            next_best_action=NEXT_BEST_ACTIONS[phase],
            technique_family=TECHNIQUES[phase],
            choices=PHASE_CHOICES[phase],
            drop_off_risk=risk,
            conversion_probability=metrics.conversion_probability,
            suggestions=self.suggestions(metrics, intent, phase, risk, message),
        )
