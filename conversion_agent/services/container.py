"""Construction of the service graph, once per process."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path

import httpx

from conversion_agent.config import Settings
from conversion_agent.models.store import SqliteStore
from conversion_agent.services.cart import CartAggregate
from conversion_agent.services.completion import CompletionClient
from conversion_agent.services.intent import IntentScorer
from conversion_agent.services.knowledge import KnowledgeIndex
from conversion_agent.services.orchestrator import Orchestrator
from conversion_agent.services.responses import ResponseGenerator
from conversion_agent.services.session_store import SessionStore
from conversion_agent.services.signals import load_signal_tables
from conversion_agent.services.strategy import ConversationStrategySelector

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: SqliteStore
    completion: CompletionClient
    knowledge: KnowledgeIndex
    cart: CartAggregate
    sessions: SessionStore
    orchestrator: Orchestrator

    async def close(self):
        await self.sessions.close()
        await self.completion.close()


def build_services(
    settings: Settings,
    store: SqliteStore | None = None,
    completion_transport: httpx.AsyncBaseTransport | None = None,
) -> Services:
    store = store or SqliteStore(settings.SQLITE_DB_PATH)
    tables = load_signal_tables(settings.INTENT_SIGNALS_PATH or None)
    scorer = IntentScorer(tables)

    completion = CompletionClient(
        api_key=settings.ANTHROPIC_API_KEY,
        model=settings.CLAUDE_MODEL,
        api_url=settings.ANTHROPIC_API_URL,
        api_version=settings.ANTHROPIC_VERSION,
        timeout=settings.COMPLETION_TIMEOUT_SECONDS,
        max_chars=settings.COMPLETION_MAX_CHARS,
        transport=completion_transport,
    )
    if not completion.enabled:
        logger.warning("ANTHROPIC_API_KEY is not set; replies will use templates only")

    knowledge = KnowledgeIndex(store.load_knowledge, ttl_seconds=settings.KNOWLEDGE_CACHE_TTL_SECONDS)
    responses = ResponseGenerator(
        scorer,
        completion,
        timeout_seconds=settings.COMPLETION_TIMEOUT_SECONDS,
        history_turns=settings.PROMPT_HISTORY_TURNS,
        max_tokens=settings.COMPLETION_MAX_TOKENS,
        currency=settings.CURRENCY,
    )
    cart = CartAggregate(store, delivery_cost=settings.DEFAULT_DELIVERY_COST)
    sessions = SessionStore(
        store,
        capacity=settings.SESSION_CACHE_CAPACITY,
        idle_timeout=settings.SESSION_IDLE_TIMEOUT_SECONDS,
        retry_attempts=settings.PERSIST_RETRY_ATTEMPTS,
        retry_delay=settings.PERSIST_RETRY_DELAY_SECONDS,
    )
    orchestrator = Orchestrator(
        scorer=scorer,
        knowledge=knowledge,
        strategy=ConversationStrategySelector(scorer),
        responses=responses,
        cart=cart,
        sessions=sessions,
        store=store,
        confidence_threshold=settings.KNOWLEDGE_CONFIDENCE_THRESHOLD,
        max_turns=settings.MAX_CONVERSATION_TURNS,
    )
    return Services(
        store=store,
        completion=completion,
        knowledge=knowledge,
        cart=cart,
        sessions=sessions,
        orchestrator=orchestrator,
    )


async def seed_from_file(store: SqliteStore, path: str) -> dict:
    """Seed products and knowledge from a JSON document, if the file exists."""
    seed_path = Path(path)
    if not seed_path.is_file():
        logger.warning("Seed file %s not found, skipping", path)
        return {"knowledge": 0, "products": 0}
    data = json.loads(seed_path.read_text(encoding="utf-8"))
    seeded = await store.seed(data)
    logger.info("Seeded %(knowledge)d knowledge items and %(products)d products", seeded)
    return seeded
