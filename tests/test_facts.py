"""Tests for atomic fact extraction, deduplication and merging."""

import json

import pytest

from conftest import FakeProvider
from lorekeeper.embedding import HashEmbedding
from lorekeeper.facts import (
    FactStore,
    deduplicate_facts,
    fallback_facts,
    find_related_fact_clusters,
    heuristic_importance,
    merge_fact_cluster,
    merge_related_facts,
    parse_fact_extraction_response,
    validate_category,
)
from lorekeeper.llm import ProviderStatusError
from lorekeeper.models import WorldFact, WorldState


def make_fact(
    text,
    category="item",
    entities=None,
    importance=5,
    message_id="m1",
    embedding=None,
    branch_path=None,
):
    return WorldFact(
        conversation_id="conv",
        message_id=message_id,
        fact=text,
        category=category,
        importance=importance,
        related_entities=entities or [],
        embedding=embedding,
        branch_path=branch_path,
    )


@pytest.fixture
def fact_store(store):
    return FactStore("conv", store, HashEmbedding(16))


EXTRACTION_REPLY = json.dumps(
    [
        {
            "fact": "The warrior found a magical sword",
            "category": "item",
            "importance": 7,
            "entities": ["Warrior", "Magical Sword"],
        },
        {"fact": "Missing importance", "category": "event"},
        {"fact": "Elara swore an oath", "category": "Oath", "importance": 42, "entities": ["Elara"]},
    ]
)

SCENE = (
    "*The warrior kneels in the ruined shrine.* Beneath the altar he finds a magical sword, "
    "its blade humming with old power. \"This was meant for you,\" Elara whispers."
)


def test_exact_duplicate_is_dropped():
    first = make_fact("The warrior found a magical sword", entities=["Warrior", "Magical Sword"])
    second = make_fact(
        "The warrior found a magical sword", entities=["Warrior", "Magical Sword"], message_id="m2"
    )
    assert deduplicate_facts([second], [first]) == []


def test_overlapping_fact_with_shared_entities_is_dropped():
    existing = make_fact("The warrior found a magical sword", entities=["Warrior", "Magical Sword"])
    candidate = make_fact("The warrior found a magical sword today", entities=["warrior", "magical sword"])
    assert deduplicate_facts([candidate], [existing]) == []


def test_overlap_requires_same_category_and_two_entities():
    existing = make_fact("The warrior found a magical sword", entities=["Warrior", "Magical Sword"])
    other_category = make_fact(
        "The warrior found a magical sword today",
        category="event",
        entities=["Warrior", "Magical Sword"],
    )
    one_entity = make_fact("The warrior found a magical sword today", entities=["Warrior"])
    assert deduplicate_facts([other_category, one_entity], [existing]) == [other_category, one_entity]


def test_dedup_is_idempotent():
    existing = [make_fact("Elara distrusts mages", "relationship", ["Elara"])]
    new = [
        make_fact("Elara distrusts mages", "relationship", ["Elara"]),
        make_fact("The bridge collapsed", "event", ["Bridge"]),
    ]
    once = deduplicate_facts(new, existing)
    twice = deduplicate_facts(once, existing)
    assert [f.fact for f in once] == [f.fact for f in twice] == ["The bridge collapsed"]


def test_parse_extraction_response():
    facts = parse_fact_extraction_response(
        f"```json\n{EXTRACTION_REPLY}\n```", "conv", "m1", branch_path=["a", "b"]
    )
    assert [f.fact for f in facts] == ["The warrior found a magical sword", "Elara swore an oath"]
    assert facts[1].category == "oath"
    assert facts[1].importance == 10
    assert facts[0].branch_path == ["a", "b"]


def test_parse_extraction_garbage():
    assert parse_fact_extraction_response("I could not find anything.", "conv", "m1") == []


def test_validate_category():
    assert validate_category("Item") == "item"
    assert validate_category("  ") == "event"
    assert validate_category("Prophecy") == "prophecy"


def test_heuristic_importance():
    assert heuristic_importance("The assassin tried to kill the king.") == 7
    assert heuristic_importance("They buy bread at the market.") == 5
    assert heuristic_importance("She nods.") == 3


def test_fallback_facts_pick_notable_sentences():
    facts = fallback_facts(
        "The rain falls softly outside. The traitor reveals a secret map to the enemy. She nods.",
        "conv",
        "m1",
    )
    assert [f.fact for f in facts] == ["The traitor reveals a secret map to the enemy."]
    assert facts[0].importance == 7


def test_singleton_cluster_merge_gets_fresh_id():
    fact = make_fact("Alone", embedding=[1.0, 0.0])
    merged = merge_fact_cluster([fact])
    assert merged.fact == "Alone"
    assert merged.id != fact.id
    assert merged.embedding is None


def test_merge_empty_cluster_raises():
    with pytest.raises(ValueError):
        merge_fact_cluster([])


def test_clusters_group_similar_embeddings():
    a = make_fact(
        "Elara found a silver key in the crypt.",
        importance=6,
        entities=["Elara"],
        embedding=[1.0, 0.0, 0.0],
    )
    b = make_fact(
        "Elara discovered the silver key hidden beneath an altar.",
        importance=4,
        entities=["Silver Key"],
        embedding=[0.9, 0.1, 0.0],
    )
    c = make_fact("The tavern burned down.", embedding=[0.0, 1.0, 0.0])

    clusters = find_related_fact_clusters([a, b, c], threshold=0.7)
    assert [[f.id for f in cl] for cl in clusters] == [[a.id, b.id]]

    merged, deleted = merge_related_facts([a, b, c], threshold=0.7)
    assert deleted == [a.id, b.id]
    assert len(merged) == 1
    assert merged[0].fact.startswith("Elara found a silver key in the crypt. Also: Elara discovered")
    assert merged[0].importance == 6
    assert merged[0].related_entities == ["Elara", "Silver Key"]


def test_clusters_never_span_sibling_branches():
    vector = [1.0, 0.0]
    left = make_fact("Elara lost a bow.", message_id="a", embedding=vector, branch_path=["r", "a"])
    right = make_fact("Elara lost a bow.", message_id="b", embedding=vector, branch_path=["r", "b"])

    assert find_related_fact_clusters([left, right], threshold=0.7) == []
    merged, deleted = merge_related_facts([left, right], threshold=0.7)
    assert merged == []
    assert deleted == []


def test_cluster_merge_keeps_deepest_lineage():
    earlier = make_fact(
        "Elara found a silver key.", message_id="r", embedding=[1.0, 0.0], branch_path=["r"]
    )
    later = make_fact(
        "Elara found a silver key in the crypt.",
        message_id="a",
        embedding=[1.0, 0.0],
        branch_path=["r", "a"],
    )
    untracked = make_fact("Elara found a key.", embedding=[1.0, 0.0])

    clusters = find_related_fact_clusters([earlier, later, untracked], threshold=0.7)
    assert [[f.id for f in cl] for cl in clusters] == [[earlier.id, later.id]]

    merged = merge_fact_cluster(clusters[0])
    assert merged.branch_path == ["r", "a"]
    assert merged.message_id == "a"


def test_fact_store_add_dedups_and_persists(fact_store, store):
    first = make_fact("The warrior found a magical sword", entities=["Warrior", "Magical Sword"])
    again = make_fact(
        "The warrior found a magical sword", entities=["Warrior", "Magical Sword"], message_id="m2"
    )

    assert fact_store.add_facts([first]) == [first]
    assert fact_store.add_facts([again]) == []
    assert len(first.embedding) == 16
    assert [f.id for f in store.get_facts("conv")] == [first.id]


def test_fact_store_dedups_within_batch(fact_store):
    stored = fact_store.add_facts([make_fact("Same text"), make_fact("same text")])
    assert len(stored) == 1


@pytest.mark.asyncio
async def test_extract_from_message_uses_model(fact_store):
    provider = FakeProvider([EXTRACTION_REPLY])
    facts = await fact_store.extract_from_message(
        provider, ["model-a"], "m1", SCENE, WorldState(location="Shrine"), "Elara", "Aria"
    )
    assert len(facts) == 2
    assert "Location: Shrine" in provider.calls[0]["messages"][1]["content"]


@pytest.mark.asyncio
async def test_extract_from_message_falls_back_on_provider_failure(fact_store):
    provider = FakeProvider([ProviderStatusError(500, "boom")])
    facts = await fact_store.extract_from_message(
        provider, ["model-a", "model-b"], "m1", SCENE, WorldState(), "Elara", "Aria"
    )
    assert len(provider.calls) == 1
    assert facts
    assert all(f.category == "event" for f in facts)


@pytest.mark.asyncio
async def test_extract_skips_low_quality_messages(fact_store):
    provider = FakeProvider([EXTRACTION_REPLY])
    facts = await fact_store.extract_from_message(
        provider, ["model-a"], "m1", "ok", WorldState(), "Elara", "Aria"
    )
    assert facts == []
    assert provider.calls == []


def test_fact_store_merge_related(fact_store, store):
    embedder = fact_store.embedding
    vector = embedder.embed("shared")
    a = make_fact("Elara found a silver key in the crypt.", entities=["Elara"])
    b = make_fact("Elara discovered the silver key hidden beneath an altar.", entities=["Key"])
    fact_store.add_facts([a, b])
    # Force both onto the same vector
    a.embedding = b.embedding = vector

    assert fact_store.merge_related() == 1
    remaining = fact_store.facts()
    assert len(remaining) == 1
    assert len(store.get_facts("conv")) == 1
    assert remaining[0].id not in (a.id, b.id)


def test_deactivate_and_touch(fact_store):
    fact = make_fact("The bridge collapsed", "event")
    fact_store.add_facts([fact])

    fact_store.touch([fact])
    fact_store.deactivate(fact.id)

    reloaded = FactStore("conv", fact_store.store, fact_store.embedding)
    stored = reloaded.get(fact.id)
    assert stored.access_count == 1
    assert not stored.active
    assert reloaded.facts(active_only=True) == []
