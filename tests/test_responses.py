import asyncio
import logging
from decimal import Decimal

import pytest

from conversion_agent.errors import CompletionServiceFailure
from conversion_agent.models.domain import (
    CartItem,
    CartSummary,
    Confidence,
    KnowledgeItem,
    Message,
    ObjectionType,
    Phase,
    ProductInfo,
    PurchaseIntent,
    Recommendation,
    ReplySource,
    RiskLevel,
    Role,
    ScoredItem,
)
from conversion_agent.services.completion import CompletionResult
from conversion_agent.services.responses import (
    URGENCY_BONUS,
    ReplyContext,
    ResponseGenerator,
    format_amount,
)

PRODUCT = ProductInfo(id="p-love", name="Pour les couples", price=Decimal("14000"))


class FakeCompletion:
    def __init__(self, result=None, error=None, delay=0.0, enabled=True):
        self.result = result or CompletionResult(
            content="Avec {product_name}, vous vous redécouvrez. Qu'en pensez-vous ?",
            choices=["Comment y jouer ?", "Je veux l'acheter maintenant"],
        )
        self.error = error
        self.delay = delay
        self.enabled = enabled
        self.requests = []

    async def complete(self, request):
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


def _intent(score):
    return PurchaseIntent(score=score, confidence=Confidence.LOW, recommendation=Recommendation.CONTINUE)


def _generator(scorer, completion=None, timeout=1.0):
    return ResponseGenerator(scorer, completion, timeout_seconds=timeout, history_turns=4)


def test_format_amount():
    assert format_amount(Decimal("14000"), "FCFA") == "14 000 FCFA"
    assert format_amount(Decimal("1250000"), "FCFA") == "1 250 000 FCFA"


@pytest.mark.parametrize(
    "score, risk, technique, fragment",
    [
        (90, RiskLevel.LOW, "assumptive_close", "correspond parfaitement"),
        (75, RiskLevel.LOW, "alternative_close", "dès demain à Dakar"),
        (95, RiskLevel.HIGH, "urgency_close", "quelques exemplaires"),
    ],
)
@pytest.mark.asyncio
async def test_high_intent_closes_without_completion(scorer, score, risk, technique, fragment):
    completion = FakeCompletion()
    generator = _generator(scorer, completion)

    reply = await generator.generate(
        "ok", Phase.CLOSING, _intent(score), ReplyContext(product=PRODUCT, drop_off_risk=risk)
    )

    assert reply.technique == technique
    assert fragment in reply.text
    assert "le jeu Pour les couples" in reply.text
    assert reply.choices[0] == "Je veux l'acheter maintenant"
    assert reply.flags["should_trigger_purchase"]
    assert completion.requests == []


@pytest.mark.asyncio
async def test_price_objection_uses_template(scorer):
    completion = FakeCompletion()
    generator = _generator(scorer, completion)

    reply = await generator.generate(
        "c'est trop cher",
        Phase.OBJECTION_HANDLING,
        _intent(0),
        ReplyContext(product=PRODUCT, objection=ObjectionType.PRICE),
    )

    assert reply.source == ReplySource.TEMPLATE
    assert reply.next_phase == Phase.OBJECTION_HANDLING
    assert "14 000 FCFA" in reply.text
    assert reply.choices == (
        "Je veux quand même l'acheter",
        "Voir les témoignages clients",
        "En savoir plus sur la garantie",
        "Y a-t-il des facilités de paiement ?",
    )
    assert completion.requests == []


@pytest.mark.asyncio
async def test_complex_objection_goes_to_completion(scorer):
    completion = FakeCompletion()
    generator = _generator(scorer, completion)

    reply = await generator.generate(
        "mais j'ai un problème",
        Phase.OBJECTION_HANDLING,
        _intent(0),
        ReplyContext(product=PRODUCT, objection=ObjectionType.COMPLEX),
    )

    assert reply.source == ReplySource.COMPLETION
    assert reply.technique == "feel_felt_found"
    assert reply.text.startswith("Avec le jeu Pour les couples")
    assert len(completion.requests) == 1
    assert "Technique à appliquer: feel_felt_found" in completion.requests[0].system


@pytest.mark.asyncio
async def test_completion_timeout_falls_back_to_template(scorer, caplog):
    generator = _generator(scorer, FakeCompletion(delay=1.0), timeout=0.05)

    with caplog.at_level(logging.WARNING, logger="conversion_agent"):
        reply = await generator.generate(
            "Bonjour", Phase.RAPPORT_BUILDING, _intent(10), ReplyContext(product=PRODUCT)
        )

    assert reply.source == ReplySource.FALLBACK
    assert reply.technique == "low_intent"
    assert "CompletionServiceFailure" in caplog.text


@pytest.mark.asyncio
async def test_completion_failure_falls_back_to_band_template(scorer):
    generator = _generator(scorer, FakeCompletion(error=CompletionServiceFailure("boom")))

    reply = await generator.generate(
        "Ça a l'air bien", Phase.NEED_DISCOVERY, _intent(50), ReplyContext(product=PRODUCT)
    )

    assert reply.source == ReplySource.FALLBACK
    assert reply.technique == "medium_intent"
    assert reply.next_phase == Phase.NEED_DISCOVERY


@pytest.mark.asyncio
async def test_disabled_completion_is_not_called(scorer):
    completion = FakeCompletion(enabled=False)
    generator = _generator(scorer, completion)

    reply = await generator.generate("Bonjour", Phase.RAPPORT_BUILDING, _intent(0), ReplyContext())

    assert reply.source == ReplySource.TEMPLATE
    assert "nos jeux" in reply.text
    assert completion.requests == []


@pytest.mark.asyncio
async def test_high_drop_off_risk_appends_bonus(scorer):
    generator = _generator(scorer)

    reply = await generator.generate(
        "je vais réfléchir",
        Phase.RAPPORT_BUILDING,
        _intent(0),
        ReplyContext(product=PRODUCT, drop_off_risk=RiskLevel.HIGH),
    )

    assert reply.text.endswith(URGENCY_BONUS)
    assert reply.flags["create_urgency"]


def test_history_turns_start_with_the_customer_and_alternate(scorer):
    generator = _generator(scorer)
    history = (
        Message(role=Role.ASSISTANT, text="Bonjour ! Je suis Rose."),
        Message(role=Role.CUSTOMER, text="Bonjour"),
        Message(role=Role.CUSTOMER, text="Vous êtes là ?"),
        Message(role=Role.ASSISTANT, text="Oui !"),
    )

    request = generator.build_request(
        "C'est pour qui ?", Phase.NEED_DISCOVERY, _intent(20), ReplyContext(history=history), "spin_questioning"
    )

    assert [(t.role, t.content) for t in request.turns] == [
        ("user", "Bonjour\nVous êtes là ?"),
        ("assistant", "Oui !"),
        ("user", "C'est pour qui ?"),
    ]


@pytest.mark.parametrize(
    "choices, score, expected",
    [
        (["A", "B", "C", "D", "E"], 10, ("Je veux l'acheter maintenant", "A", "B", "C")),
        (["A", "B", "C", "D", "Commander"], 10, ("A", "B", "C", "Commander")),
        (["A", "B", "Commander"], 70, ("Commander", "A", "B")),
        (["A", "Commander", "A"], 10, ("A", "Commander")),
    ],
)
def test_optimize_choices(scorer, choices, score, expected):
    assert _generator(scorer).optimize_choices(choices, score) == expected


def test_knowledge_reply_expands_product_name(scorer):
    item = KnowledgeItem(
        id="kb-regles",
        trigger_keywords={"jouer"},
        answer_template="Avec {product_name}, chacun tire une carte.",
        suggested_follow_ups=("Voir les témoignages",),
    )

    reply = _generator(scorer).from_knowledge(
        ScoredItem(item=item, score=2.7), PRODUCT, _intent(0), Phase.NEED_DISCOVERY
    )

    assert reply.text == "Avec le jeu Pour les couples, chacun tire une carte."
    assert reply.source == ReplySource.KNOWLEDGE
    assert reply.choices == ("Je veux l'acheter maintenant", "Voir les témoignages")


def test_welcome_switches_to_cart_summary_when_cart_has_items(scorer):
    generator = _generator(scorer)
    summary = CartSummary(
        session_id="s1",
        items=(CartItem(product_id="p-love", name="Pour les couples", quantity=2, unit_price=Decimal("14000")),),
        subtotal=Decimal("28000"),
        delivery_cost=Decimal("0"),
        total=Decimal("28000"),
    )

    empty = generator.welcome(PRODUCT)
    returning = generator.welcome(PRODUCT, summary)

    assert empty.flags["is_welcome"]
    assert "Je suis Rose" in empty.text
    assert returning.source == ReplySource.CART
    assert "Pour les couples x2 : 28 000 FCFA" in returning.text
    assert "📦 Finaliser et commander" in returning.choices


def test_recovery_reply(scorer):
    reply = _generator(scorer).recovery()

    assert reply.source == ReplySource.RECOVERY
    assert reply.choices == ("Réessayer", "Parler à un conseiller", "Je veux l'acheter maintenant")
    assert reply.flags == {"has_error": True}
