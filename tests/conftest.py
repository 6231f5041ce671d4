import json

import pytest
import pytest_asyncio

from conversion_agent.config import Settings
from conversion_agent.models.store import SqliteStore
from conversion_agent.services.intent import IntentScorer
from conversion_agent.services.signals import load_signal_tables

PRODUCTS = [
    {"id": "p-love", "name": "Pour les couples", "price": "14000", "description": "150 cartes pour se redécouvrir"},
    {"id": "p-family", "name": "Pour la famille", "price": "12000", "description": "Des questions pour toute la famille"},
    {"id": "p-retired", "name": "Ancienne édition", "price": "9000", "status": "archived"},
]

KNOWLEDGE = [
    {
        "id": "kb-regles",
        "category": "produit",
        "trigger_keywords": ["jouer", "règles"],
        "question": "Comment jouer ?",
        "answer": "Avec {product_name}, chacun tire une carte à tour de rôle.",
        "priority": 5,
        "next_suggestions": ["Voir les témoignages"],
    },
]


@pytest.fixture(scope="session")
def tables():
    return load_signal_tables()


@pytest.fixture
def scorer(tables):
    return IntentScorer(tables)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "test.db")


@pytest_asyncio.fixture
async def store(db_path):
    store = SqliteStore(db_path)
    await store.init()
    await store.seed({"products": PRODUCTS})
    return store


@pytest.fixture
def seed_file(tmp_path):
    path = tmp_path / "seed.json"
    path.write_text(json.dumps({"products": PRODUCTS, "knowledge": KNOWLEDGE}), encoding="utf-8")
    return str(path)


@pytest.fixture
def test_settings(db_path, seed_file):
    return Settings(
        ANTHROPIC_API_KEY="",
        SQLITE_DB_PATH=db_path,
        KNOWLEDGE_SEED_PATH=seed_file,
        LOG_DIR="",
        SESSION_SWEEP_INTERVAL_SECONDS=3600,
        PERSIST_RETRY_DELAY_SECONDS=0.01,
    )
