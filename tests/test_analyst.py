"""Tests for the world-state analyst."""

import pytest

from conftest import FakeProvider
from lorekeeper.analyst import (
    analyze_message,
    build_analyst_request,
    derive_world_state_changes,
    extract_json_object,
    merge_world_state,
    parse_analyst_response,
)
from lorekeeper.models import Persona, WorldFact, WorldState, WorldStateChanges


def test_non_json_response_returns_none():
    assert parse_analyst_response("The guard seems upset.") is None
    assert parse_analyst_response("") is None
    assert parse_analyst_response("{not valid json}") is None


def test_parse_sanitizes_plus_signs_and_surrounding_text():
    text = (
        "<think>the player helped</think> Here you go: "
        '{"inventory_add": ["Rope"], "location": "Gate", "relationship_changes": {"Guard": +10}} done'
    )
    changes = parse_analyst_response(text)
    assert changes.inventory_add == ["Rope"]
    assert changes.location == "Gate"
    assert changes.relationship_changes == {"Guard": 10}


def test_parse_tolerates_malformed_fields():
    changes = parse_analyst_response(
        '{"inventory_add": "Rope", "location": 12, "relationship_changes": {"A": "-3", "B": "lots"}}'
    )
    assert changes.inventory_add == []
    assert changes.location is None
    assert changes.relationship_changes == {"A": -3.0}


def test_extract_json_object_ignores_braces_in_strings():
    text = 'prefix {"a": "a } brace", "b": {"c": 1}} suffix'
    assert extract_json_object(text) == '{"a": "a } brace", "b": {"c": 1}}'


def test_merge_clamps_relationships():
    state = WorldState(relationships={"Elara": 95})
    merged = merge_world_state(
        state, WorldStateChanges(relationship_changes={"Elara": 10, "Guard": -70})
    )
    assert merged.relationships == {"Elara": 100, "Guard": 0}
    # Input untouched
    assert state.relationships == {"Elara": 95}


def test_merge_inventory_and_location():
    state = WorldState(inventory=["Torch", "Rope"], location="Cave")
    merged = merge_world_state(
        state, WorldStateChanges(inventory_add=["Torch", "Gem"], inventory_remove=["rope"])
    )
    assert merged.inventory == ["Torch", "Gem"]
    assert merged.location == "Cave"


def test_build_request_substitutes_user_name():
    request = build_analyst_request(
        WorldState(location="{{user}}'s house"), Persona("Aria", "A bard"), "Elara", "{{User}} waves."
    )
    body = request[1]["content"]
    assert "Aria's house" in body
    assert '"Aria waves."' in body
    assert "Bio: A bard" in body


@pytest.mark.asyncio
async def test_analyze_message_returns_changes():
    provider = FakeProvider(['{"inventory_add": ["Key"], "relationship_changes": {}}'])
    changes = await analyze_message(
        provider, ["model-a"], WorldState(), Persona(), "Elara", "She hands you a key."
    )
    assert changes.inventory_add == ["Key"]
    assert provider.calls[0]["model"] == "model-a"


@pytest.mark.asyncio
async def test_analyze_message_empty_delta_is_none():
    provider = FakeProvider(
        ['{"inventory_add": [], "inventory_remove": [], "location": null, "relationship_changes": {}}']
    )
    assert (
        await analyze_message(provider, ["m"], WorldState(), Persona(), "Elara", "Nothing.") is None
    )


def _fact(text, category, entities, importance=5):
    return WorldFact(
        conversation_id="c",
        message_id="m",
        fact=text,
        category=category,
        importance=importance,
        related_entities=entities,
    )


def test_derive_changes_from_facts():
    facts = [
        _fact("Aria found the Moonstone", "item", ["Aria", "Moonstone"]),
        _fact("They arrive at the Harbor", "location", ["Harbor"]),
        _fact("Elara trusts Bram after the rescue", "relationship", ["Elara", "Bram"], importance=6),
    ]

    changes = derive_world_state_changes(facts, WorldState(), "Elara", "Aria")

    assert changes.inventory_add == ["Moonstone"]
    assert changes.location == "Harbor"
    assert changes.relationship_changes == {"Bram": 3}


def test_derive_changes_removes_held_items():
    facts = [_fact("Aria lost the Lantern in the river", "item", ["Aria", "Lantern"])]
    changes = derive_world_state_changes(facts, WorldState(inventory=["Lantern"]), "Elara", "Aria")
    assert changes.inventory_remove == ["Lantern"]
    assert changes.inventory_add == []
