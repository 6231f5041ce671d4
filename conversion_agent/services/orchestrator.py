"""Single entry point for every inbound customer message.

One turn runs, under the session's lock: load or create the session, score
intent, classify the message, pick a strategy, resolve any cart command,
try the knowledge base, fall back to the response generator, apply the
cart mutation the reply implies, then append both messages and persist.
"""

from __future__ import annotations

import logging
import re

from conversion_agent.errors import ConversionAgentError, PersistenceFailure, ValidationFailure
from conversion_agent.models.domain import (
    AddItemAction,
    CartAction,
    CartSummary,
    ClearCartAction,
    IntentContext,
    Message,
    MessageCategory,
    Phase,
    ProductInfo,
    Recommendation,
    RiskLevel,
    Role,
    SetQuantityAction,
    ShowCartAction,
    utcnow,
)
from conversion_agent.models.store import SqliteStore
from conversion_agent.services.cart import CartAggregate
from conversion_agent.services.intent import IntentScorer
from conversion_agent.services.knowledge import KnowledgeIndex
from conversion_agent.services.responses import GeneratedReply, ReplyContext, ResponseGenerator
from conversion_agent.services.session_store import SessionStore
from conversion_agent.services.strategy import ConversationStrategySelector

logger = logging.getLogger(__name__)

INVALID_CART_REASON = "la quantité ou le produit demandé n'est pas valide"

_NUMBER_WORDS = {"un": 1, "une": 1, "deux": 2, "trois": 3, "quatre": 4, "cinq": 5, "six": 6, "dix": 10}
_QUANTITY_RE = re.compile(
    r"(?<!\w)(\d{1,3}|un|une|deux|trois|quatre|cinq|six|dix)\s*(?:x(?!\w)|exemplaires?|jeux|boîtes?|coffrets?)",
    re.IGNORECASE,
)
_TIMES_RE = re.compile(r"(?<!\w)x\s*(\d{1,3})(?!\w)", re.IGNORECASE)


def parse_quantity(text: str) -> int | None:
    """Quantity stated in a purchase message ("2 exemplaires", "x3"), if any."""
    match = _QUANTITY_RE.search(text) or _TIMES_RE.search(text)
    if match is None:
        return None
    raw = match.group(1).lower()
    return int(raw) if raw.isdigit() else _NUMBER_WORDS[raw]


class Orchestrator:
    def __init__(
        self,
        scorer: IntentScorer,
        knowledge: KnowledgeIndex,
        strategy: ConversationStrategySelector,
        responses: ResponseGenerator,
        cart: CartAggregate,
        sessions: SessionStore,
        store: SqliteStore,
        confidence_threshold: float = 1.5,
        max_turns: int = 50,
    ):
        self.scorer = scorer
        self.knowledge = knowledge
        self.strategy = strategy
        self.responses = responses
        self.cart = cart
        self.sessions = sessions
        self.store = store
        self.confidence_threshold = confidence_threshold
        self.max_turns = max_turns

    # -- Helpers --

    async def _product(self, product_id: str | None) -> ProductInfo:
        if not product_id:
            return ProductInfo()
        try:
            product = await self.store.get_product(product_id)
        except PersistenceFailure as exc:
            logger.warning("Product lookup failed for %s: %s", product_id, exc)
            product = None
        return product or ProductInfo(id=product_id)

    def _message(self, reply: GeneratedReply, **metadata) -> Message:
        return Message(
            role=Role.ASSISTANT,
            text=reply.text,
            choices=reply.choices,
            metadata={
                "next_phase": reply.next_phase.value,
                "technique": reply.technique,
                "source": reply.source.value,
                "flags": reply.flags,
                **metadata,
            },
        )

    def _recovery(self, timed_out: bool = False) -> Message:
        return self._message(self.responses.recovery(timed_out))

    async def _record(self, session, customer: Message | None, assistant: Message):
        if customer is not None:
            self.sessions.append(session, customer)
        self.sessions.append(session, assistant)
        await self.sessions.persist(session)

    # -- Cart commands --

    async def _apply_action(self, session_id: str, action) -> CartSummary:
        if isinstance(action, AddItemAction):
            return await self.cart.add_item(session_id, action.product_id, action.quantity)
        if isinstance(action, SetQuantityAction):
            return await self.cart.set_quantity(session_id, action.product_id, action.quantity)
        if isinstance(action, ClearCartAction):
            return await self.cart.clear(session_id)
        if isinstance(action, ShowCartAction):
            return await self.cart.summary(session_id)
        raise ValidationFailure(f"unsupported cart action {action!r}")

    async def _infer_purchase(self, session, product: ProductInfo, text: str, intent, category) -> CartSummary | None:
        """Add the current product when the message is an explicit purchase decision."""
        if category != MessageCategory.PURCHASE_INTENT or intent.recommendation != Recommendation.TRIGGER_PURCHASE:
            return None
        if not session.product_id or not product.name:
            return None
        quantity = parse_quantity(text) or 1
        try:
            summary = await self.cart.add_item(session.session_id, session.product_id, quantity)
        except (ValidationFailure, PersistenceFailure) as exc:
            logger.warning("Inferred cart update skipped for %s: %s", session.session_id, exc)
            return None
        await self.store.log_event(
            session.session_id, "cart_updated", {"product_id": session.product_id, "quantity": quantity}
        )
        return summary

    # -- Entry points --

    async def handle(
        self,
        session_id: str,
        text: str,
        product_id: str | None = None,
        action: CartAction | None = None,
    ) -> Message:
        """Process one customer message and return the assistant reply."""
        async with self.sessions.lock(session_id):
            try:
                return await self._handle(session_id, text, product_id, action)
            except Exception:
                logger.exception("Turn failed for session %s", session_id)
                return self._recovery()

    async def _handle(self, session_id, text, product_id, action) -> Message:
        session = await self.sessions.get_or_create(session_id, product_id)
        product = await self._product(session.product_id)

        now = utcnow()
        history = session.customer_texts()
        scores = session.intent_scores
        elapsed = max(0.0, (now - session.created_at).total_seconds())

        intent = self.scorer.score(
            text,
            history,
            IntentContext(
                message_count=len(history),
                seconds_elapsed=elapsed,
                previous_score=scores[-1] if scores else 0,
            ),
        )
        category = self.scorer.classify(text)
        objection = self.scorer.detect_objection(text)
        metrics = self.strategy.build_metrics(
            (history + [text])[-self.max_turns:],
            (scores + [intent.score])[-self.max_turns:],
            elapsed,
        )
        plan = self.strategy.select(metrics, intent, text)

        summary = None
        if action is not None:
            try:
                summary = await self._apply_action(session_id, action)
                reply = self.responses.cart_reply(summary, product, action.type)
            except ValidationFailure as exc:
                logger.info("Cart action rejected for %s: %s", session_id, exc)
                reply = self.responses.cart_rejected(
                    await self.cart.summary(session_id), product, INVALID_CART_REASON
                )
        else:
            reply = None
            if plan.phase not in (Phase.CLOSING, Phase.OBJECTION_HANDLING) and objection is None:
                hits = await self.knowledge.search(
                    text, category_hint=self.scorer.knowledge_hint(category)
                )
                if hits and hits[0].score >= self.confidence_threshold:
                    reply = self.responses.from_knowledge(hits[0], product, intent, plan.phase)
                    if plan.drop_off_risk == RiskLevel.HIGH:
                        reply = self.responses.with_urgency(reply)
            if reply is None:
                reply = await self.responses.generate(
                    text,
                    plan.phase,
                    intent,
                    ReplyContext(
                        product=product,
                        history=tuple(session.messages),
                        objection=objection if plan.phase == Phase.OBJECTION_HANDLING else None,
                        drop_off_risk=plan.drop_off_risk,
                        technique_family=plan.technique_family,
                        next_best_action=plan.next_best_action,
                    ),
                )
            summary = await self._infer_purchase(session, product, text, intent, category)

        if intent.recommendation == Recommendation.TRIGGER_PURCHASE:
            await self.store.log_event(session_id, "purchase_intent", {"score": intent.score})

        customer = Message(
            role=Role.CUSTOMER,
            text=text,
            timestamp=now,
            metadata={"category": category.value, "intent_score": intent.score},
        )
        metadata = {
            "category": category.value,
            "intent_score": intent.score,
            "confidence": intent.confidence.value,
            "recommendation": intent.recommendation.value,
            "phase": plan.phase.value,
            "drop_off_risk": plan.drop_off_risk.value,
            "conversion_probability": plan.conversion_probability,
            "suggestions": [
                {"type": s.type, "priority": s.priority.value, "suggestion": s.suggestion}
                for s in plan.suggestions
            ],
        }
        if objection is not None:
            metadata["objection"] = objection.value
        if summary is not None:
            metadata["order"] = summary.as_order_fragment()
        assistant = self._message(reply, **metadata)

        session.current_phase = reply.next_phase
        session.metadata["intent_scores"] = (scores + [intent.score])[-self.max_turns:]
        session.metadata["last_category"] = category.value
        await self._record(session, customer, assistant)
        return assistant

    async def start(self, session_id: str, product_id: str | None = None) -> Message:
        """Send the welcome message exactly once per session."""
        async with self.sessions.lock(session_id):
            try:
                session = await self.sessions.get_or_create(session_id, product_id)
                if session.metadata.get("initialized") or session.messages:
                    existing = next(
                        (m for m in session.messages if m.role == Role.ASSISTANT), None
                    )
                    if existing is not None:
                        return existing

                product = await self._product(session.product_id)
                summary = await self._summary_or_none(session_id)
                reply = self.responses.welcome(product, summary)
                assistant = self._message(reply, phase=reply.next_phase.value)
                session.current_phase = reply.next_phase
                session.metadata["initialized"] = True
                await self._record(session, None, assistant)
                return assistant
            except Exception:
                logger.exception("Welcome failed for session %s", session_id)
                return self._recovery()

    async def navigate(self, session_id: str, product_id: str) -> Message:
        """Move the conversation to another product: fresh history, same cart."""
        async with self.sessions.lock(session_id):
            try:
                product = await self._product(product_id)
                session = await self.sessions.reset(session_id, product_id)
                summary = await self._summary_or_none(session_id)
                reply = self.responses.welcome(product, summary)
                assistant = self._message(
                    reply,
                    phase=reply.next_phase.value,
                    product_id=product_id,
                    order=summary.as_order_fragment() if summary and summary.items else None,
                )
                session.current_phase = reply.next_phase
                session.metadata["initialized"] = True
                await self._record(session, None, assistant)
                return assistant
            except Exception:
                logger.exception("Navigation failed for session %s", session_id)
                return self._recovery()

    async def _summary_or_none(self, session_id: str) -> CartSummary | None:
        try:
            return await self.cart.summary(session_id)
        except ConversionAgentError as exc:
            logger.warning("Cart unavailable for %s: %s", session_id, exc)
            return None

    # -- Lifecycle --

    async def sweep(self) -> list[str]:
        evicted = await self.sessions.sweep()
        for session_id in evicted:
            self.cart.forget(session_id)
        return evicted

    async def destroy(self, session_id: str):
        async with self.sessions.lock(session_id):
            await self.cart.destroy(session_id)
            await self.sessions.destroy(session_id)
