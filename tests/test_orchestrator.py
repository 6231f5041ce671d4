import asyncio
import logging

import aiosqlite
import httpx
import pytest
import pytest_asyncio

from conversion_agent.errors import PersistenceFailure
from conversion_agent.models.database import get_events
from conversion_agent.models.domain import AddItemAction, ClearCartAction, Role, SetQuantityAction
from conversion_agent.services.container import build_services, seed_from_file
from conversion_agent.services.orchestrator import parse_quantity


async def _build(settings, transport=None):
    services = build_services(settings, completion_transport=transport)
    await services.store.init()
    await seed_from_file(services.store, settings.KNOWLEDGE_SEED_PATH)
    return services


@pytest_asyncio.fixture
async def services(test_settings):
    services = await _build(test_settings)
    yield services
    await services.close()


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Je prends 2 exemplaires", 2),
        ("deux jeux s'il vous plaît", 2),
        ("je le prends x3", 3),
        ("Je le prends", None),
        ("Je veux l'acheter pour 2024", None),
    ],
)
def test_parse_quantity(text, expected):
    assert parse_quantity(text) == expected


@pytest.mark.asyncio
async def test_start_sends_the_welcome_once(services):
    orchestrator = services.orchestrator

    replies = await asyncio.gather(*(orchestrator.start("s1", "p-love") for _ in range(5)))

    assert len({reply.text for reply in replies}) == 1
    assert "Je suis Rose" in replies[0].text
    assert "le jeu Pour les couples" in replies[0].text
    session = await services.sessions.get_or_create("s1")
    assert len(session.messages) == 1
    assert session.metadata["initialized"]


@pytest.mark.asyncio
async def test_knowledge_answer_for_a_rules_question(services):
    reply = await services.orchestrator.handle("s1", "Comment jouer à ce jeu ?", product_id="p-love")

    assert reply.text == "Avec le jeu Pour les couples, chacun tire une carte à tour de rôle."
    assert reply.metadata["source"] == "knowledge"
    assert reply.metadata["category"] == "product_inquiry"
    assert reply.choices == ("Je veux l'acheter maintenant", "Voir les témoignages")


@pytest.mark.asyncio
async def test_price_objection_is_handled_from_template(services):
    reply = await services.orchestrator.handle("s1", "c'est trop cher", product_id="p-love")

    assert reply.metadata["phase"] == "objection_handling"
    assert reply.metadata["objection"] == "price"
    assert reply.metadata["intent_score"] == 0
    assert "14 000 FCFA" in reply.text
    assert reply.choices[0] == "Je veux quand même l'acheter"


@pytest.mark.asyncio
async def test_purchase_decision_closes_and_fills_the_cart(services, test_settings):
    reply = await services.orchestrator.handle("s1", "Je vais le prendre maintenant", product_id="p-love")

    assert reply.metadata["intent_score"] == 100
    assert reply.metadata["recommendation"] == "trigger_purchase"
    assert reply.metadata["phase"] == "closing"
    assert reply.metadata["technique"] == "assumptive_close"
    order = reply.metadata["order"]
    assert order["items"][0]["product_id"] == "p-love"
    assert order["items"][0]["quantity"] == 1
    assert order["total"] == "14000"

    events = await get_events(test_settings.SQLITE_DB_PATH, "s1")
    assert {"purchase_intent", "cart_updated"} <= {e["event_type"] for e in events}


@pytest.mark.asyncio
async def test_turn_failure_returns_recovery_message(services, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("scorer crashed")

    monkeypatch.setattr(services.orchestrator.scorer, "score", explode)

    reply = await services.orchestrator.handle("s1", "Bonjour", product_id="p-love")

    assert reply.metadata["source"] == "recovery"
    assert reply.choices == ("Réessayer", "Parler à un conseiller", "Je veux l'acheter maintenant")


@pytest.mark.asyncio
async def test_concurrent_turns_are_serialized(services):
    orchestrator = services.orchestrator
    texts = ["Bonjour", "C'est pour qui ?", "Quel est le prix ?", "Et la livraison ?"]

    await asyncio.gather(*(orchestrator.handle("s1", text, product_id="p-love") for text in texts))

    session = await services.sessions.get_or_create("s1")
    assert [m.role for m in session.messages] == [Role.CUSTOMER, Role.ASSISTANT] * len(texts)
    assert session.customer_texts() == texts
    assert len(session.intent_scores) == len(texts)


@pytest.mark.asyncio
async def test_cart_action_is_applied_and_summarized(services):
    orchestrator = services.orchestrator

    await orchestrator.handle("s1", "", product_id="p-love", action=AddItemAction(product_id="p-family", quantity=2))
    reply = await orchestrator.handle("s1", "", action=SetQuantityAction(product_id="p-love", quantity=1))

    assert reply.metadata["source"] == "cart"
    assert reply.metadata["order"]["total"] == "38000"
    assert "Pour la famille x2 : 24 000 FCFA" in reply.text

    cleared = await orchestrator.handle("s1", "", action=ClearCartAction())
    assert cleared.metadata["order"]["items"] == []


@pytest.mark.asyncio
async def test_rejected_cart_action_leaves_the_cart_alone(services):
    orchestrator = services.orchestrator
    await orchestrator.handle("s1", "", product_id="p-love", action=AddItemAction(product_id="p-love"))

    reply = await orchestrator.handle("s1", "", action=AddItemAction(product_id="p-unknown"))

    assert reply.metadata["flags"]["cart_rejected"]
    assert "Pour les couples x1" in reply.text
    assert (await services.cart.summary("s1")).item_count == 1


@pytest.mark.asyncio
async def test_navigate_resets_history_and_keeps_the_cart(services):
    orchestrator = services.orchestrator
    await orchestrator.start("s1", "p-love")
    await orchestrator.handle("s1", "Je vais le prendre maintenant")

    reply = await orchestrator.navigate("s1", "p-family")

    session = await services.sessions.get_or_create("s1")
    assert session.product_id == "p-family"
    assert session.messages == [reply]
    assert reply.metadata["source"] == "cart"
    assert "le jeu Pour la famille" in reply.text
    assert reply.metadata["order"]["items"][0]["product_id"] == "p-love"


@pytest.mark.asyncio
async def test_navigate_to_a_product_with_empty_cart_sends_the_welcome(services):
    reply = await services.orchestrator.navigate("s1", "p-family")

    assert reply.metadata["flags"]["is_welcome"]
    assert reply.metadata["order"] is None


@pytest.mark.asyncio
async def test_destroy_drops_session_and_cart(services):
    orchestrator = services.orchestrator
    await orchestrator.handle("s1", "Je vais le prendre maintenant", product_id="p-love")

    await orchestrator.destroy("s1")

    assert await services.store.load_session("s1") is None
    assert (await services.cart.summary("s1")).items == ()


@pytest.mark.asyncio
async def test_slow_completion_falls_back_to_template(test_settings, caplog):
    async def slow(request):
        await asyncio.sleep(2)
        return httpx.Response(200, json={"content": [{"type": "text", "text": '{"content": "trop tard"}'}]})

    settings = test_settings.model_copy(
        update={"ANTHROPIC_API_KEY": "sk-test", "COMPLETION_TIMEOUT_SECONDS": 0.2}
    )
    services = await _build(settings, httpx.MockTransport(slow))
    try:
        with caplog.at_level(logging.WARNING, logger="conversion_agent"):
            reply = await services.orchestrator.handle("s1", "Bonjour", product_id="p-love")
    finally:
        await services.close()

    assert reply.metadata["source"] == "fallback"
    assert "CompletionServiceFailure" in caplog.text


@pytest.mark.asyncio
async def test_malformed_completion_payload_falls_back_to_template(test_settings):
    def handler(request):
        return httpx.Response(200, json={"content": "pas une liste de blocs"})

    settings = test_settings.model_copy(update={"ANTHROPIC_API_KEY": "sk-test"})
    services = await _build(settings, httpx.MockTransport(handler))
    try:
        reply = await services.orchestrator.handle("s1", "Bonjour", product_id="p-love")
    finally:
        await services.close()

    assert reply.metadata["source"] == "fallback"
    assert reply.text


@pytest.mark.asyncio
async def test_malformed_knowledge_row_does_not_break_the_turn(services, test_settings):
    async with aiosqlite.connect(test_settings.SQLITE_DB_PATH) as db:
        await db.execute(
            "INSERT INTO knowledge_base (id, trigger_keywords) VALUES (?, ?)",
            ("kb-casse", "livraison, prix"),
        )
        await db.commit()

    reply = await services.orchestrator.handle("s1", "Comment jouer à ce jeu ?", product_id="p-love")

    assert reply.metadata["source"] == "knowledge"
    assert reply.text == "Avec le jeu Pour les couples, chacun tire une carte à tour de rôle."


@pytest.mark.asyncio
async def test_navigate_keeps_history_when_it_cannot_be_cleared(services, monkeypatch):
    orchestrator = services.orchestrator
    await orchestrator.start("s1", "p-love")
    await orchestrator.handle("s1", "Bonjour")

    async def locked(session_id):
        raise PersistenceFailure("database is locked")

    monkeypatch.setattr(services.store, "clear_messages", locked)

    reply = await orchestrator.navigate("s1", "p-family")

    assert reply.metadata["source"] == "recovery"
    session = await services.sessions.get_or_create("s1")
    assert session.product_id == "p-love"
    assert len(session.messages) == 3
    assert len((await services.store.load_session("s1")).messages) == 3
