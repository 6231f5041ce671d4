"""Reply generation: deterministic sales templates first, completion service second.

High intent and the common objections (price, efficacy, time) are answered
from templates with no network call. Everything else goes to the completion
service under a bounded timeout, and any failure there degrades to the
template of the matching intent band.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal

from conversion_agent.errors import CompletionServiceFailure
from conversion_agent.models.domain import (
    CartSummary,
    Message,
    ObjectionType,
    Phase,
    ProductInfo,
    PurchaseIntent,
    ReplySource,
    RiskLevel,
    Role,
    ScoredItem,
)
from conversion_agent.services.completion import CompletionClient, CompletionRequest, CompletionTurn
from conversion_agent.services.intent import IntentScorer
from conversion_agent.services.knowledge import expand_answer

logger = logging.getLogger(__name__)

MAX_CHOICES = 4
CLOSING_SCORE = 70
ASSUMPTIVE_SCORE = 85
PROMOTE_PURCHASE_SCORE = 60
MEDIUM_INTENT_SCORE = 40
SATISFIED_CUSTOMERS = "500+"

DEFAULT_PURCHASE_CHOICE = "Je veux l'acheter maintenant"
RETRY_CHOICE = "Réessayer"
HUMAN_SUPPORT_CHOICE = "Parler à un conseiller"

TEMPLATES = {
    "high_intent": (
        "Excellent ! Je sens que {product} vous a convaincu(e). C'est le bon moment pour "
        "passer à l'action. Souhaitez-vous que nous procédions à votre commande maintenant ?",
        ("Je veux l'acheter maintenant", "Voir les options de livraison", "Une dernière question"),
    ),
    "medium_intent": (
        "Je vois que {product} vous intéresse ! Nos clients dans votre situation nous disent "
        "souvent qu'ils regrettent de ne pas l'avoir acheté plus tôt. Qu'est-ce qui vous "
        "ferait pencher définitivement ?",
        ("Je veux l'acheter maintenant", "Voir les témoignages", "Comment ça marche exactement ?", "Combien ça coûte ?"),
    ),
    "low_intent": (
        "Je comprends que vous preniez le temps de bien vous renseigner sur {product}. "
        "C'est une excellente approche ! Que puis-je vous expliquer pour vous aider dans "
        "votre réflexion ?",
        ("Comment y jouer ?", "C'est pour qui exactement ?", "Voir les témoignages", "Quel est le prix ?"),
    ),
    "objection_price": (
        "Je comprends votre préoccupation concernant le prix. Nos clients nous disent souvent "
        "que c'est le meilleur investissement qu'ils aient fait pour leur relation. "
        "Pensez-y : {price}, c'est moins qu'une sortie au restaurant, mais les bénéfices "
        "durent des années. Et vous êtes couvert(e) par notre garantie satisfait ou remboursé. "
        "Voulez-vous que je vous explique pourquoi ce jeu vaut chaque franc ?",
        (
            "Je veux quand même l'acheter",
            "Voir les témoignages clients",
            "En savoir plus sur la garantie",
            "Y a-t-il des facilités de paiement ?",
        ),
    ),
    "objection_efficacy": (
        "C'est une question légitime ! Je comprends que vous vouliez être sûr(e) que ça marche "
        "vraiment. C'est pour cela que nous avons une garantie satisfait ou remboursé. Et nos "
        "{customers} clients satisfaits parlent d'eux-mêmes. Voulez-vous voir ce qu'ils en disent ?",
        ("Voir les témoignages clients", "En savoir plus sur la garantie", "Comment ça marche ?", "Je veux l'essayer et l'acheter"),
    ),
    "objection_time": (
        "Je comprends que le temps soit précieux ! C'est justement pour cela que {product} est "
        "si pratique : une partie dure de 15 minutes à 2 heures selon votre disponibilité. "
        "Voulez-vous que je vous montre comment l'adapter à votre emploi du temps ?",
        ("Montrez-moi les options de durée", "Comment ça s'adapte ?", "Voir les témoignages clients", "Je veux l'acheter"),
    ),
    "objection_complex": (
        "Je comprends vos préoccupations et c'est tout à fait normal d'avoir des questions. "
        "Nos clients nous disent que leurs doutes se sont transformés en satisfaction après "
        "avoir essayé. Qu'est-ce qui vous rassurerait le plus pour prendre votre décision ?",
        ("Expliquez-moi en détail", "Voir les témoignages clients", "En savoir plus sur la garantie", "Je veux quand même l'acheter"),
    ),
}

CLOSING_VARIANTS = {
    "urgency": (
        "Parfait ! Il nous reste quelques exemplaires de {product} aujourd'hui. "
        "Voulez-vous que je vous en réserve un maintenant ?"
    ),
    "assumptive": (
        "Je vois que {product} correspond parfaitement à vos attentes. Souhaitez-vous que nous "
        "procédions à votre commande maintenant, ou préférez-vous commencer par un exemplaire ?"
    ),
    "alternative": (
        "Excellent ! Préférez-vous recevoir {product} dès demain à Dakar, ou dans 2 à 3 jours "
        "avec la livraison standard ?"
    ),
}

URGENCY_BONUS = (
    "🎁 Bonus exclusif : commandez aujourd'hui et recevez gratuitement notre guide "
    "« 10 secrets pour des conversations profondes ». Offre limitée aux 50 prochains clients !"
)

TECHNIQUE_NAMES = {
    "urgency": "urgency_close",
    "assumptive": "assumptive_close",
    "alternative": "alternative_close",
}


def format_amount(amount: Decimal, currency: str) -> str:
    """``14000`` -> ``14 000 FCFA``."""
    return f"{amount:,.0f}".replace(",", " ") + f" {currency}"


@dataclass(frozen=True)
class ReplyContext:
    product: ProductInfo = field(default_factory=ProductInfo)
    history: tuple[Message, ...] = ()
    objection: ObjectionType | None = None
    drop_off_risk: RiskLevel = RiskLevel.LOW
    technique_family: tuple[str, ...] = ()
    next_best_action: str = ""


@dataclass(frozen=True)
class GeneratedReply:
    text: str
    choices: tuple[str, ...]
    next_phase: Phase
    technique: str
    source: ReplySource
    flags: dict = field(default_factory=dict)


class ResponseGenerator:
    def __init__(
        self,
        scorer: IntentScorer,
        completion: CompletionClient | None = None,
        timeout_seconds: float = 8.0,
        history_turns: int = 6,
        max_tokens: int = 600,
        currency: str = "FCFA",
    ):
        self.scorer = scorer
        self.completion = completion
        self.timeout_seconds = timeout_seconds
        self.history_turns = history_turns
        self.max_tokens = max_tokens
        self.currency = currency

    # -- Choice lists --

    def optimize_choices(self, choices, intent_score: int) -> tuple[str, ...]:
        """Guarantee a purchase option, promote it on high intent, cap the list."""
        result = list(dict.fromkeys(c for c in choices if c))
        index = next((i for i, c in enumerate(result) if self.scorer.is_purchase_choice(c)), None)
        if index is None:
            result.insert(0, DEFAULT_PURCHASE_CHOICE)
            index = 0
        if intent_score >= PROMOTE_PURCHASE_SCORE and index:
            result.insert(0, result.pop(index))
        elif index >= MAX_CHOICES:
            result.insert(MAX_CHOICES - 1, result.pop(index))
        return tuple(result[:MAX_CHOICES])

    # -- Templates --

    def _fill(self, template: str, product: ProductInfo) -> str:
        return template.format(
            product=product.label,
            price=format_amount(product.price, self.currency) if product.price else "ce prix",
            customers=SATISFIED_CUSTOMERS,
        )

    def template_reply(
        self,
        key: str,
        intent: PurchaseIntent,
        context: ReplyContext,
        next_phase: Phase,
        source: ReplySource = ReplySource.TEMPLATE,
    ) -> GeneratedReply:
        template, choices = TEMPLATES[key]
        return GeneratedReply(
            text=self._fill(template, context.product),
            choices=self.optimize_choices(choices, intent.score),
            next_phase=next_phase,
            technique=key,
            source=source,
            flags={"template": key},
        )

    def _intent_band(self, intent: PurchaseIntent) -> str:
        return "medium_intent" if intent.score >= MEDIUM_INTENT_SCORE else "low_intent"

    def _closing(self, intent: PurchaseIntent, context: ReplyContext) -> GeneratedReply:
        if context.drop_off_risk == RiskLevel.HIGH:
            variant = "urgency"
        elif intent.score >= ASSUMPTIVE_SCORE:
            variant = "assumptive"
        else:
            variant = "alternative"
        _, choices = TEMPLATES["high_intent"]
        return GeneratedReply(
            text=self._fill(CLOSING_VARIANTS[variant], context.product),
            choices=self.optimize_choices(choices, intent.score),
            next_phase=Phase.CLOSING,
            technique=TECHNIQUE_NAMES[variant],
            source=ReplySource.TEMPLATE,
            flags={"should_trigger_purchase": True, "create_urgency": variant == "urgency"},
        )

    # -- Completion --

    def build_request(
        self,
        message: str,
        phase: Phase,
        intent: PurchaseIntent,
        context: ReplyContext,
        technique: str,
    ) -> CompletionRequest:
        product = context.product
        price = format_amount(product.price, self.currency) if product.price else "non communiqué"
        system = (
            "Tu es Rose, l'assistante commerciale de la boutique VIENS ON S'CONNAÎT.\n\n"
            "CONTEXTE CLIENT:\n"
            f"- Produit: {product.label}\n"
            f"- Description: {product.description or 'non fournie'}\n"
            f"- Prix: {price}\n"
            f"- Phase de vente: {phase.value}\n"
            f"- Intention d'achat: {intent.score}/100 ({intent.confidence.value})\n"
            f"- Technique à appliquer: {technique}\n"
            f"- Prochaine action: {context.next_best_action or 'non définie'}\n\n"
            "CONTRAINTES:\n"
            "1. Vouvoiement exclusif.\n"
            "2. Valider l'émotion du client, appliquer la technique, puis terminer par une "
            "question qui pousse vers l'achat.\n"
            "3. Maximum 4 phrases plus la question finale.\n"
            "4. Parler du produit comme \"le jeu <nom>\".\n\n"
            "Réponds uniquement en JSON: "
            '{"content": "ta réponse", "choices": ["choix orienté achat", "choix informatif", '
            '"choix objection", "choix urgence"]}'
        )
        return CompletionRequest(
            system=system,
            turns=self._build_turns(context.history, message),
            max_tokens=self.max_tokens,
        )

    def _build_turns(self, history: tuple[Message, ...], message: str) -> list[CompletionTurn]:
        turns: list[CompletionTurn] = []
        recent = list(history)[-self.history_turns:] if self.history_turns else []
        for msg in recent + [Message(role=Role.CUSTOMER, text=message)]:
            role = "user" if msg.role == Role.CUSTOMER else "assistant"
            if not turns and role == "assistant":
                continue
            if turns and turns[-1].role == role:
                turns[-1] = CompletionTurn(role=role, content=f"{turns[-1].content}\n{msg.text}")
            else:
                turns.append(CompletionTurn(role=role, content=msg.text))
        return turns

    async def _complete(
        self,
        message: str,
        phase: Phase,
        intent: PurchaseIntent,
        context: ReplyContext,
        technique: str,
        fallback_key: str,
        next_phase: Phase,
    ) -> GeneratedReply:
        if self.completion is None or not self.completion.enabled:
            return self.template_reply(fallback_key, intent, context, next_phase)

        request = self.build_request(message, phase, intent, context, technique)
        try:
            result = await asyncio.wait_for(self.completion.complete(request), self.timeout_seconds)
        except asyncio.TimeoutError:
            failure = CompletionServiceFailure(f"no completion within {self.timeout_seconds}s")
            logger.warning("%s: %s; using %s template", type(failure).__name__, failure, fallback_key)
            return self.template_reply(fallback_key, intent, context, next_phase, ReplySource.FALLBACK)
        except CompletionServiceFailure as exc:
            logger.warning("%s: %s; using %s template", type(exc).__name__, exc, fallback_key)
            return self.template_reply(fallback_key, intent, context, next_phase, ReplySource.FALLBACK)

        text = expand_answer(result.content, context.product.name or None)
        choices = result.choices or TEMPLATES[fallback_key][1]
        return GeneratedReply(
            text=text,
            choices=self.optimize_choices(choices, intent.score),
            next_phase=next_phase,
            technique=technique,
            source=ReplySource.COMPLETION,
        )

    # -- Entry points --

    async def generate(
        self,
        message: str,
        phase: Phase,
        intent: PurchaseIntent,
        context: ReplyContext,
    ) -> GeneratedReply:
        if intent.score >= CLOSING_SCORE:
            return self._closing(intent, context)

        if context.objection is not None:
            key = f"objection_{context.objection.value}"
            if context.objection == ObjectionType.COMPLEX:
                reply = await self._complete(
                    message, phase, intent, context, "feel_felt_found", key, Phase.OBJECTION_HANDLING
                )
            else:
                reply = self.template_reply(key, intent, context, Phase.OBJECTION_HANDLING)
        else:
            technique = context.technique_family[0] if context.technique_family else "validation"
            reply = await self._complete(
                message, phase, intent, context, technique, self._intent_band(intent), phase
            )

        if context.drop_off_risk == RiskLevel.HIGH:
            reply = self.with_urgency(reply)
        return reply

    def with_urgency(self, reply: GeneratedReply) -> GeneratedReply:
        return GeneratedReply(
            text=f"{reply.text}\n\n{URGENCY_BONUS}",
            choices=reply.choices,
            next_phase=reply.next_phase,
            technique=reply.technique,
            source=reply.source,
            flags={**reply.flags, "create_urgency": True},
        )

    def from_knowledge(
        self,
        hit: ScoredItem,
        product: ProductInfo,
        intent: PurchaseIntent,
        phase: Phase,
    ) -> GeneratedReply:
        item = hit.item
        text = expand_answer(item.answer_template, product.name or None)
        follow_ups = item.suggested_follow_ups or TEMPLATES[self._intent_band(intent)][1]
        return GeneratedReply(
            text=text,
            choices=self.optimize_choices(follow_ups, intent.score),
            next_phase=phase,
            technique="knowledge_base",
            source=ReplySource.KNOWLEDGE,
            flags={"knowledge_item": item.id, "knowledge_score": hit.score},
        )

    def welcome(self, product: ProductInfo, summary: CartSummary | None = None) -> GeneratedReply:
        if summary is not None and summary.items:
            return self.cart_reply(summary, product, "navigation")
        return GeneratedReply(
            text=(
                "👋 Bonjour ! Je suis Rose.\n\n"
                f"Je vais vous aider avec {product.label} !\n\n"
                "Comment puis-je vous aider aujourd'hui ?"
            ),
            choices=("⚡ Commander rapidement", "❓ Poser une question", "📦 Infos livraison", "💬 En savoir plus"),
            next_phase=Phase.RAPPORT_BUILDING,
            technique="welcome",
            source=ReplySource.TEMPLATE,
            flags={"is_welcome": True, "empty_cart": True},
        )

    def _cart_lines(self, summary: CartSummary) -> str:
        return "\n".join(
            f"• {item.name} x{item.quantity} : {format_amount(item.line_total, self.currency)}"
            for item in summary.items
        )

    def cart_reply(self, summary: CartSummary, product: ProductInfo, kind: str) -> GeneratedReply:
        """Reply to a cart command; ``kind`` is the action type or ``navigation``."""
        if not summary.items:
            return GeneratedReply(
                text=(
                    "🛒 Votre commande est vide pour le moment.\n\n"
                    f"Souhaitez-vous ajouter {product.label} ?"
                ),
                choices=("Je veux l'acheter maintenant", "💬 En savoir plus", "Voir les autres jeux"),
                next_phase=Phase.RAPPORT_BUILDING,
                technique="cart_summary",
                source=ReplySource.CART,
                flags={"empty_cart": True},
            )

        totals = (
            f"{self._cart_lines(summary)}\n\n"
            f"Livraison : {format_amount(summary.delivery_cost, self.currency)}\n"
            f"💰 Total : {format_amount(summary.total, self.currency)}"
        )
        if kind == "navigation":
            text = (
                f"👋 Heureuse de vous revoir sur la page de {product.label} !\n\n"
                f"🛒 Votre commande actuelle :\n{totals}\n\n"
                "Souhaitez-vous ajouter ce jeu à votre commande ou la finaliser ?"
            )
            choices = (
                f"➕ Ajouter {product.label} à la commande",
                "📦 Finaliser et commander",
                "🗑️ Vider la commande",
                "💬 En savoir plus sur ce jeu",
            )
        else:
            text = f"🛒 Votre commande :\n{totals}\n\nSouhaitez-vous finaliser votre commande ?"
            choices = (
                "📦 Finaliser et commander",
                "➕ Ajouter un autre jeu",
                "✏️ Modifier la quantité",
                "🗑️ Vider la commande",
            )
        return GeneratedReply(
            text=text,
            choices=choices,
            next_phase=Phase.CLOSING,
            technique="cart_summary",
            source=ReplySource.CART,
            flags={"has_cart": True, "cart_action": kind},
        )

    def cart_rejected(self, summary: CartSummary, product: ProductInfo, reason: str) -> GeneratedReply:
        reply = self.cart_reply(summary, product, "rejected")
        return GeneratedReply(
            text=f"⚠️ Je n'ai pas pu modifier votre commande : {reason}.\n\n{reply.text}",
            choices=reply.choices,
            next_phase=reply.next_phase,
            technique=reply.technique,
            source=ReplySource.CART,
            flags={**reply.flags, "cart_rejected": True},
        )

    def recovery(self, timed_out: bool = False) -> GeneratedReply:
        text = (
            "Je suis désolée, la réponse prend plus de temps que prévu. "
            "Pourriez-vous reformuler votre question ?"
            if timed_out
            else "😔 Je suis désolée, je rencontre un problème technique. Voulez-vous réessayer ?"
        )
        return GeneratedReply(
            text=text,
            choices=(RETRY_CHOICE, HUMAN_SUPPORT_CHOICE, DEFAULT_PURCHASE_CHOICE),
            next_phase=Phase.RAPPORT_BUILDING,
            technique="error_recovery",
            source=ReplySource.RECOVERY,
            flags={"has_error": True},
        )
