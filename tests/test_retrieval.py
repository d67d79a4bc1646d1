"""Tests for fact ranking and retrieved-context sections."""

import time

import pytest

from conftest import word_count
from lorekeeper.embedding import HashEmbedding
from lorekeeper.facts import FactStore
from lorekeeper.models import MemorySummary, Message, WorldFact
from lorekeeper.retrieval import (
    combined_score,
    on_branch,
    rank_facts,
    retrieve_relevant_context,
    temporal_decay,
)
from lorekeeper.tree import ConversationTree

NOW = 1_700_000_000.0
HOUR = 3600


def fact(
    text,
    importance=5,
    age_hours=0.0,
    idle_hours=48.0,
    access_count=0,
    branch_path=None,
    embedding=None,
):
    return WorldFact(
        conversation_id="conv",
        message_id="m",
        fact=text,
        category="event",
        importance=importance,
        timestamp=NOW - age_hours * HOUR,
        last_accessed_at=NOW - idle_hours * HOUR,
        access_count=access_count,
        branch_path=branch_path,
        embedding=embedding,
    )


def test_decay_halves_at_half_life():
    assert temporal_decay(fact("x", importance=5, age_hours=168), NOW) == pytest.approx(0.5)
    assert temporal_decay(fact("x", importance=9, age_hours=720), NOW) == pytest.approx(0.5)
    assert temporal_decay(fact("x", importance=2, age_hours=48), NOW) == pytest.approx(0.5)


def test_decay_boosts():
    recent = fact("x", idle_hours=0.5)
    today = fact("x", idle_hours=5)
    popular = fact("x", access_count=20)
    assert temporal_decay(recent, NOW) == pytest.approx(1.5)
    assert temporal_decay(today, NOW) == pytest.approx(1.2)
    assert temporal_decay(popular, NOW) == pytest.approx(1.5)


def test_combined_score_weights():
    f = fact("x", importance=10)
    assert combined_score(1.0, f, NOW) == pytest.approx(0.5 + 0.25 + 0.25)


def test_on_branch():
    assert on_branch(fact("x"), {"a"})
    active = {"root", "a", "b"}
    assert on_branch(fact("x", branch_path=["root", "a"]), active)
    assert on_branch(fact("x", branch_path=["root"]), active)
    assert not on_branch(fact("x", branch_path=["root", "z"]), active)
    assert not on_branch(fact("x", branch_path=["root", "a", "z"]), active)


def test_rank_facts_orders_and_filters():
    query = [1.0, 0.0]
    close = fact("close", embedding=[1.0, 0.0])
    far = fact("far", importance=1, age_hours=5000, embedding=[-1.0, 0.0])
    unembedded = fact("none")

    ranked = rank_facts(query, [far, close, unembedded], top_k=5, now=NOW)

    assert [f.fact for f, _ in ranked] == ["close"]


@pytest.fixture
def fact_store(store):
    return FactStore("conv", store, HashEmbedding(16))


def test_retrieve_builds_summary_and_fact_sections(fact_store):
    embedder = fact_store.embedding
    stored = fact_store.add_facts(
        [
            fact("Elara swore to protect the village", importance=9),
            fact("A merchant sold Aria a lantern", importance=3),
        ]
    )
    # Query with the exact fact text so its vector matches
    summaries = [
        MemorySummary(
            conversation_id="conv", level=0, message_range=(0, 10), content="They met at the inn."
        )
    ]

    sections = retrieve_relevant_context(
        "Elara swore to protect the village",
        fact_store,
        summaries,
        embedder,
        token_budget=500,
        count_tokens=word_count,
    )

    assert [s.type for s in sections] == ["summary", "fact"]
    assert sections[0].priority == 1
    assert sections[0].content == "Recent Events:\nThey met at the inn.\n"
    assert sections[1].content.startswith("Relevant Past Events:\n! Elara swore to protect the village")
    assert stored[0].access_count == 1


def test_retrieve_excludes_other_branches(fact_store):
    fact_store.add_facts(
        [
            fact("The bridge burned", importance=9, branch_path=["root", "branch-a"]),
            fact("The bridge held", importance=9, branch_path=["root", "branch-b"]),
        ]
    )

    sections = retrieve_relevant_context(
        "The bridge held",
        fact_store,
        [],
        fact_store.embedding,
        token_budget=500,
        active_branch_ids=["root", "branch-b"],
        count_tokens=word_count,
    )

    assert len(sections) == 1
    assert "The bridge held" in sections[0].content
    assert "burned" not in sections[0].content


def test_retrieve_without_room_for_facts(fact_store):
    fact_store.add_facts([fact("Elara swore an oath", importance=9)])
    sections = retrieve_relevant_context(
        "Elara swore an oath",
        fact_store,
        [],
        fact_store.embedding,
        token_budget=40,
        count_tokens=word_count,
    )
    assert sections == []


def test_retrieve_min_confidence(fact_store):
    fact_store.add_facts([fact("Elara swore an oath", importance=9)])
    sections = retrieve_relevant_context(
        "Elara swore an oath",
        fact_store,
        [],
        fact_store.embedding,
        token_budget=500,
        min_confidence=5.0,
        count_tokens=word_count,
    )
    assert sections == []


def test_retrieve_truncates_long_arc_summaries(fact_store):
    arc = MemorySummary(
        conversation_id="conv", level=2, message_range=(0, 150), content=" ".join(["word"] * 500)
    )
    sections = retrieve_relevant_context(
        "anything", None, [arc], fact_store.embedding, token_budget=1000, count_tokens=word_count
    )
    assert sections[0].tokens <= 300


def test_search_returns_nearest_active_facts(fact_store):
    keep, drop = fact_store.add_facts(
        [fact("The tower fell at midnight", importance=6), fact("The well ran dry", importance=6)]
    )
    fact_store.deactivate(drop.id)

    results = fact_store.search("The tower fell at midnight", limit=5)

    assert [f.id for f, _ in results] == [keep.id]
    assert results[0][1] == pytest.approx(0.0, abs=1e-4)


def test_fresh_fact_ranks_above_stale():
    query = [1.0, 0.0]
    fresh = fact("fresh", idle_hours=0.1, embedding=[1.0, 0.0])
    stale = fact("stale", age_hours=2000, embedding=[1.0, 0.0])
    ranked = rank_facts(query, [stale, fresh], now=NOW)
    assert [f.fact for f, _ in ranked] == ["fresh", "stale"]


def test_default_now_uses_clock():
    f = fact("x")
    f.timestamp = f.last_accessed_at = time.time()
    assert temporal_decay(f) == pytest.approx(1.5, rel=1e-3)


def test_facts_from_abandoned_sibling_are_hidden():
    tree = ConversationTree()
    conversation = tree.create_conversation("elara", "Branches")
    root = tree.add_message(Message(conversation_id=conversation.id, role="user", content="Go."))
    left = tree.add_message(
        Message(conversation_id=conversation.id, role="assistant", content="Left.", parent_id=root.id)
    )
    right = tree.add_message(
        Message(conversation_id=conversation.id, role="assistant", content="Right.", parent_id=root.id)
    )
    active = {m.id for m in tree.get_active_branch(conversation.id)}

    assert not on_branch(fact("left", branch_path=tree.get_branch_path(left.id)), active)
    assert on_branch(fact("right", branch_path=tree.get_branch_path(right.id)), active)
    assert on_branch(fact("root", branch_path=tree.get_branch_path(root.id)), active)
