import aiosqlite
import pytest

from conversion_agent.errors import KnowledgeRetrievalFailure
from conversion_agent.models.database import insert_knowledge
from conversion_agent.models.domain import KnowledgeItem
from conversion_agent.services.knowledge import KnowledgeIndex, expand_answer, tokenize

DELIVERY = KnowledgeItem(
    id="k-delivery",
    category="livraison",
    trigger_keywords={"livraison", "délai"},
    question="Quels sont les délais de livraison ?",
    answer_template="Nous livrons {product_name} en 48h.",
    priority=5,
)
PRICE = KnowledgeItem(
    id="k-price",
    category="prix",
    trigger_keywords={"prix", "combien"},
    question="Quel est le prix ?",
    answer_template="Le prix de {jeu_name} est de 14 000 FCFA.",
    priority=3,
)
UNREACHABLE = KnowledgeItem(
    id="k-orphan",
    category="livraison",
    question="livraison livraison",
    answer_template="livraison",
)


class Loader:
    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        result = self.results[min(self.calls, len(self.results)) - 1]
        if isinstance(result, Exception):
            raise result
        return result


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_tokenize_keeps_words_of_three_letters_or_more():
    assert tokenize("Où est le prix du jeu ?") == ["est", "prix", "jeu"]


@pytest.mark.asyncio
async def test_search_ranks_matching_item_first():
    index = KnowledgeIndex(Loader([DELIVERY, PRICE, UNREACHABLE]))

    hits = await index.search("Quels sont les délais de livraison ?")

    assert [hit.item.id for hit in hits] == ["k-delivery"]
    assert hits[0].score == 3.0
    assert "livraison" in hits[0].matched_keywords


@pytest.mark.asyncio
async def test_items_without_keywords_are_never_returned():
    index = KnowledgeIndex(Loader([UNREACHABLE]))
    assert await index.search("livraison") == []


@pytest.mark.asyncio
async def test_search_is_deterministic_and_breaks_ties_by_priority_then_id():
    items = [
        KnowledgeItem(id="b", trigger_keywords={"garantie"}, priority=1),
        KnowledgeItem(id="a", trigger_keywords={"garantie"}, priority=1),
        KnowledgeItem(id="c", trigger_keywords={"garantie"}, priority=9),
    ]
    index = KnowledgeIndex(Loader(items))

    first = await index.search("garantie")
    second = await index.search("garantie")

    assert [hit.item.id for hit in first] == ["c", "a", "b"]
    assert first == second


@pytest.mark.asyncio
async def test_category_filter():
    index = KnowledgeIndex(Loader([DELIVERY, PRICE]))
    assert await index.search("livraison et prix", category="prix") == [
        hit for hit in await index.search("livraison et prix") if hit.item.category == "prix"
    ]


@pytest.mark.asyncio
async def test_snapshot_is_cached_until_ttl_expires():
    loader = Loader([DELIVERY])
    clock = Clock()
    index = KnowledgeIndex(loader, ttl_seconds=300, clock=clock)

    await index.search("livraison")
    await index.search("livraison")
    assert loader.calls == 1

    clock.now += 301
    await index.search("livraison")
    assert loader.calls == 2


@pytest.mark.asyncio
async def test_defaults_are_served_when_store_never_answered():
    index = KnowledgeIndex(Loader(KnowledgeRetrievalFailure("down")))

    hits = await index.search("Quel est le prix du jeu ?")

    assert hits[0].item.id == "default-price"
    assert not index.stats()["populated_from_store"]


@pytest.mark.asyncio
async def test_stale_snapshot_is_kept_when_refresh_fails():
    clock = Clock()
    index = KnowledgeIndex(Loader([DELIVERY], KnowledgeRetrievalFailure("down")), clock=clock)
    await index.search("livraison")

    clock.now += 1000
    hits = await index.search("livraison")

    assert [hit.item.id for hit in hits] == ["k-delivery"]


@pytest.mark.asyncio
async def test_empty_store_falls_back_to_defaults():
    index = KnowledgeIndex(Loader([]))
    await index.refresh()
    assert index.stats()["item_count"] > 0


@pytest.mark.parametrize(
    "template, name, expected",
    [
        ("Découvrez {product_name} !", "Pour les couples", "Découvrez le jeu Pour les couples !"),
        ("Découvrez {product_name} !", "le jeu Pour les couples", "Découvrez le jeu Pour les couples !"),
        ("{jeu_name} ou {nom_produit}", "Amis", "le jeu Amis ou le jeu Amis"),
        ("Découvrez {product_name} !", None, "Découvrez nos jeux !"),
    ],
)
def test_expand_answer(template, name, expected):
    assert expand_answer(template, name) == expected


def test_expand_uses_default_follow_ups():
    index = KnowledgeIndex(Loader([]))
    text, follow_ups = index.expand(PRICE, "Pour les couples")

    assert text == "Le prix de le jeu Pour les couples est de 14 000 FCFA."
    assert follow_ups


@pytest.mark.asyncio
async def test_malformed_stored_rows_are_skipped(store):
    await insert_knowledge(
        store.db_path,
        [{"id": "kb-livraison", "category": "livraison", "trigger_keywords": ["livraison"], "answer": "48h."}],
    )
    async with aiosqlite.connect(store.db_path) as db:
        await db.executemany(
            "INSERT INTO knowledge_base (id, trigger_keywords, next_suggestions, priority) VALUES (?, ?, ?, ?)",
            [
                ("bad-json", "livraison, prix", "[]", 1),
                ("bad-priority", '["livraison"]', "[]", "haute"),
                ("bad-suggestions", '["livraison"]', "12", 1),
            ],
        )
        await db.commit()

    index = KnowledgeIndex(store.load_knowledge)
    hits = await index.search("Quels sont les délais de livraison ?")

    assert [hit.item.id for hit in hits] == ["kb-livraison"]
    assert index.stats()["populated_from_store"]
