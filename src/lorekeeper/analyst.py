"""World-state analyst.

Infers inventory, location and relationship deltas from a single turn and
merges them into a WorldState.
"""

from __future__ import annotations

import json
import logging
import re

from lorekeeper.llm import ChatProvider, complete_with_fallback
from lorekeeper.models import Persona, WorldFact, WorldState, WorldStateChanges

logger = logging.getLogger(__name__)

RELATIONSHIP_DEFAULT = 50
RELATIONSHIP_MIN = 0
RELATIONSHIP_MAX = 100

ANALYST_PROMPT = """You are a narrative analyzer tracking the state of a roleplay game.
Your task is to analyze the latest message and determine if it changes the world state.

CRITICAL INSTRUCTIONS FOR RELATIONSHIPS:
- Consider the User's Persona and the context provided in "User Reference".
- Be REALISTIC. Relationships evolve slowly.
- Minor friendly interactions (agreement, small talk) yield only +1 or +2.
- Minor hostile interactions (snark, disagreement) yield only -1 or -2.
- Reserve large changes (+/- 10 or more) for SIGNIFICANT events (saving a life, betrayal, murder).
- Hostile actions (attacking, insulting, threatening) MUST give NEGATIVE changes.
- Friendly actions (giving gifts, saving, complimenting) give POSITIVE changes.
- Do NOT assume interaction implies friendship.

RULES:
- Report ONLY actions explicitly depicted in the message. Do not speculate.
- inventory_add: items clearly acquired.
- inventory_remove: items lost, consumed or given away.
- location: only if clearly moved to a new place, otherwise null.
- relationship_changes: delta values per character name.

Respond ONLY with valid JSON, no comments:
{
  "inventory_add": [],
  "inventory_remove": [],
  "location": null,
  "relationship_changes": {}
}

EXAMPLES:
Message: "I draw my sword and attack the guard."
-> {"inventory_add": [], "inventory_remove": [], "location": null, "relationship_changes": {"Guard": -15}}

Message: "I heal the wounded soldier."
-> {"inventory_add": [], "inventory_remove": [], "location": null, "relationship_changes": {"Soldier": 10}}"""


def build_analyst_request(
    world_state: WorldState,
    persona: Persona,
    character_name: str,
    message: str,
) -> list[dict]:
    """Build the normalized request for one analysis call."""
    user_name = persona.name or "You"

    def fill(text: str) -> str:
        return re.sub(r"\{\{user\}\}", user_name, text, flags=re.IGNORECASE)

    body = (
        "Current state:\n"
        f"- Inventory: {fill(json.dumps(world_state.inventory))}\n"
        f'- Location: "{fill(world_state.location or "Unknown")}"\n'
        f"- Relationships: {fill(json.dumps(world_state.relationships))}\n\n"
        "User Reference:\n"
        f"- Name: {user_name}\n"
        f"- Bio: {persona.bio or 'Unknown'}\n\n"
        f"NPC Character: {character_name}\n\n"
        f'Message to analyze: "{fill(message)}"'
    )
    return [
        {"role": "system", "content": ANALYST_PROMPT},
        {"role": "user", "content": body},
    ]


def extract_json_object(text: str) -> str | None:
    """Return the first top-level ``{...}`` block in text, or None.

    Braces inside JSON string literals are ignored.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : i + 1]
        # Unbalanced from this brace; nothing later can close either
        return None
    return None


def _string_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]


def _relationship_map(value) -> dict[str, float]:
    if not isinstance(value, dict):
        return {}
    deltas = {}
    for name, delta in value.items():
        if isinstance(delta, bool):
            continue
        if isinstance(delta, (int, float)):
            deltas[str(name)] = delta
        elif isinstance(delta, str):
            try:
                deltas[str(name)] = float(delta)
            except ValueError:
                continue
    return deltas


def parse_analyst_response(text: str) -> WorldStateChanges | None:
    """Parse the analyst's answer.

    Returns None when no JSON object can be recovered; missing or malformed
    fields fall back to empty values.
    """
    block = extract_json_object(text or "")
    if block is None:
        return None

    # Models like to write {"Guard": +10}, which is not JSON
    sanitized = re.sub(r":\s*\+(\d)", r": \1", block)
    try:
        parsed = json.loads(sanitized)
    except json.JSONDecodeError:
        logger.debug("Could not parse analyst response: %r", text)
        return None
    if not isinstance(parsed, dict):
        return None

    location = parsed.get("location")
    return WorldStateChanges(
        inventory_add=_string_list(parsed.get("inventory_add")),
        inventory_remove=_string_list(parsed.get("inventory_remove")),
        location=location.strip() or None if isinstance(location, str) else None,
        relationship_changes=_relationship_map(parsed.get("relationship_changes")),
    )


def apply_world_state_overrides(current: WorldState, overrides: dict) -> WorldState:
    """Overwrite world state fields from a user edit, returning a new WorldState.

    Inventory keeps the first occurrence of each item and relationship values
    are clamped to [0, 100].

    Raises:
        ValueError: if a relationship value is not a number
    """
    data = current.to_dict()
    data.update(overrides)
    state = WorldState.from_dict(data)

    inventory = []
    for item in state.inventory:
        if item not in inventory:
            inventory.append(item)
    state.inventory = inventory

    relationships = {}
    for name, value in state.relationships.items():
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise ValueError(f"Relationship value for {name} is not a number: {value!r}")
        if isinstance(value, str):
            value = float(value)
        relationships[name] = max(RELATIONSHIP_MIN, min(RELATIONSHIP_MAX, value))
    state.relationships = relationships
    return state


def merge_world_state(current: WorldState, changes: WorldStateChanges) -> WorldState:
    """Apply a delta to a world state, returning a new WorldState.

    New items are appended unless already held (case-sensitive); removals match
    case-insensitively; location is only overwritten by a non-null value;
    relationship deltas add onto a neutral 50 and are clamped to [0, 100].
    """
    inventory = list(current.inventory)
    for item in changes.inventory_add:
        if item not in inventory:
            inventory.append(item)

    removed = {r.lower() for r in changes.inventory_remove}
    inventory = [item for item in inventory if item.lower() not in removed]

    relationships = dict(current.relationships)
    for name, delta in changes.relationship_changes.items():
        value = relationships.get(name, RELATIONSHIP_DEFAULT) + delta
        relationships[name] = max(RELATIONSHIP_MIN, min(RELATIONSHIP_MAX, value))

    custom = current.custom_state
    return WorldState(
        inventory=inventory,
        location=changes.location if changes.location else current.location,
        relationships=relationships,
        custom_state=dict(custom) if custom is not None else None,
    )


async def analyze_message(
    provider: ChatProvider,
    models: list[str],
    world_state: WorldState,
    persona: Persona,
    character_name: str,
    message: str,
) -> WorldStateChanges | None:
    """Ask a model for the world-state delta caused by one message.

    Returns:
        The parsed delta, or None when the answer is unparseable or empty

    Raises:
        ProviderExhaustedError: if every model in the chain failed
    """
    request = build_analyst_request(world_state, persona, character_name, message)
    text, model = await complete_with_fallback(
        provider, models, request, temperature=0.1, max_tokens=1000
    )
    changes = parse_analyst_response(text)
    if changes is None:
        logger.info("Could not parse analyst answer from %s", model)
        return None
    if changes.is_empty():
        logger.debug("No world-state changes detected by %s", model)
        return None
    return changes


# ---------------------------------------------------------------------------
# Keyword heuristics over extracted facts (used when no analyst model is set)
# ---------------------------------------------------------------------------

_OBTAIN = re.compile(
    r"\b(obtain|receive|find|found|pick up|picked up|acquire|loot|buy|bought|purchase|craft|"
    r"take|took|equip|reward|given|obtenir|recevoir|trouver|ramasser|acheter|prendre)\w*",
    re.IGNORECASE,
)
_LOSE = re.compile(
    r"\b(lose|lost|drop|sell|sold|destroy|broke|consumed|gave away|discard|stolen|sacrifice|"
    r"perdre|jeter|vendre|détruire|casser|consommer|sacrifier|volé)\w*",
    re.IGNORECASE,
)
_TRAVEL = re.compile(
    r"\b(arrive|enter|reach|travel|move to|go to|went to|depart|visit|arriver|entrer|atteindre|voyager)\w*",
    re.IGNORECASE,
)
_POSITIVE = re.compile(
    r"\b(befriend|ally|trust|love|respect|admire|forgive|help|save|rescue|heal|protect|"
    r"grateful|thank|praise|aider|sauver|protéger)\w*",
    re.IGNORECASE,
)
_NEGATIVE = re.compile(
    r"\b(betray|enemy|hate|fear|insult|threaten|attack|kill|murder|steal|deceive|abandon|"
    r"humiliate|curse|trahir|ennemi|menacer|attaquer|tuer|voler)\w*",
    re.IGNORECASE,
)


def _is_player_or_npc(entity: str, character_name: str, user_name: str) -> bool:
    lower = entity.lower()
    return lower in {character_name.lower(), user_name.lower(), "player", "user", "you"}


def derive_world_state_changes(
    facts: list[WorldFact],
    current: WorldState,
    character_name: str,
    user_name: str,
) -> WorldStateChanges:
    """Derive a world-state delta from freshly extracted facts by keyword."""
    changes = WorldStateChanges()
    held = {i.lower() for i in current.inventory}

    for fact in facts:
        text = fact.fact
        others = [
            e for e in fact.related_entities if not _is_player_or_npc(e, character_name, user_name)
        ]

        if fact.category == "item" or _OBTAIN.search(text) or _LOSE.search(text):
            if _LOSE.search(text):
                changes.inventory_remove.extend(e for e in others if e.lower() in held)
            elif _OBTAIN.search(text):
                changes.inventory_add.extend(
                    e for e in others if e.lower() not in held and e not in changes.inventory_add
                )

        if (fact.category == "location" or _TRAVEL.search(text)) and others:
            if others[-1].lower() != (current.location or "").lower():
                changes.location = others[-1]

        if fact.category in ("relationship", "consequence"):
            if fact.category == "consequence" and fact.importance < 7:
                continue
            step = -(-fact.importance // 2)  # ceil(importance / 2)
            if _POSITIVE.search(text):
                delta = step
            elif _NEGATIVE.search(text):
                delta = -step
            else:
                continue
            for entity in others:
                changes.relationship_changes[entity] = (
                    changes.relationship_changes.get(entity, 0) + delta
                )

    return changes
