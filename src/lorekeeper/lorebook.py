"""Lorebook scanning, audited edits, and AI extraction/consolidation."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Protocol

from lorekeeper.llm import strip_reasoning
from lorekeeper.models import Lorebook, LorebookEntry, LorebookHistoryEntry, LorebookScanConfig
from lorekeeper.tokens import TokenCounter, count_tokens

if TYPE_CHECKING:
    from lorekeeper.store import MemoryStore

logger = logging.getLogger(__name__)


class HasContent(Protocol):
    content: str


# =============================================================================
# Keyword scanner
# =============================================================================


def _matcher(keyword: str, whole_words: bool):
    keyword = keyword.strip().lower()
    if not keyword:
        return None
    if whole_words:
        pattern = re.compile(r"\b" + re.escape(keyword) + r"\b")
        return lambda text: pattern.search(text) is not None
    return lambda text: keyword in text


def get_active_lorebook_entries(
    messages: Iterable[HasContent],
    lorebook: Lorebook | None,
    config: LorebookScanConfig | None = None,
    count_tokens: TokenCounter = count_tokens,
) -> list[LorebookEntry]:
    """Return the lorebook entries triggered by recent messages.

    Each enabled entry is matched at most once. A matched entry that no longer
    fits the remaining token budget is skipped. With ``recursive`` on, the
    content of a matched entry is scanned immediately for further entries.

    Returns:
        Matched entries, highest priority first
    """
    if lorebook is None or not lorebook.entries:
        return []
    config = config or LorebookScanConfig()

    messages = list(messages)
    recent = messages[-config.scan_depth :] if config.scan_depth > 0 else []
    text = "\n".join(m.content for m in recent).lower()

    candidates = [
        (entry, [m for m in (_matcher(k, config.match_whole_words) for k in entry.keys) if m])
        for entry in lorebook.entries
        if entry.enabled
    ]

    matched: list[LorebookEntry] = []
    visited: set[str] = set()
    remaining = config.token_budget

    def scan(haystack: str) -> None:
        nonlocal remaining
        for entry, matchers in candidates:
            if entry.id in visited:
                continue
            if not any(m(haystack) for m in matchers):
                continue
            visited.add(entry.id)
            cost = count_tokens(entry.content)
            if cost > remaining:
                logger.debug("Lorebook entry %s over budget (%d > %d)", entry.keys, cost, remaining)
                continue
            matched.append(entry)
            remaining -= cost
            if config.recursive:
                scan(entry.content.lower())

    scan(text)
    matched.sort(key=lambda e: e.priority, reverse=True)
    return matched


# =============================================================================
# Audited ledger
# =============================================================================


class LorebookLedger:
    """A character's lorebook plus its append-only mutation history."""

    def __init__(self, character_id: str, store: MemoryStore):
        self.character_id = character_id
        self.store = store
        self.lorebook = store.get_lorebook(character_id) or Lorebook()
        self.history = store.get_lorebook_history(character_id)

    def _record(self, type: str, entry: LorebookEntry, previous_entry_id: str | None = None):
        item = LorebookHistoryEntry(
            character_id=self.character_id,
            type=type,
            entry=LorebookEntry.from_dict(entry.to_dict()),
            previous_entry_id=previous_entry_id,
        )
        self.history.append(item)
        self.store.add_lorebook_history(item)
        return item

    def _index(self, entry_id: str) -> int | None:
        for i, entry in enumerate(self.lorebook.entries):
            if entry.id == entry_id:
                return i
        return None

    def keys(self) -> list[str]:
        return [k for e in self.lorebook.entries for k in e.keys]

    def import_card(self, lorebook: Lorebook) -> None:
        """Replace the entries with a card's lorebook, recording each as initial."""
        self.lorebook = Lorebook(entries=list(lorebook.entries))
        for entry in self.lorebook.entries:
            self._record("initial", entry)
        self.store.save_lorebook(self.character_id, self.lorebook)

    def add_ai_entries(self, entries: list[LorebookEntry]) -> list[LorebookEntry]:
        """Append AI-extracted entries, skipping ones whose content is already present."""
        known = {e.content.strip().lower() for e in self.lorebook.entries}
        added = []
        for entry in entries:
            if not entry.keys or entry.content.strip().lower() in known:
                continue
            self.lorebook.entries.append(entry)
            known.add(entry.content.strip().lower())
            self._record("ai_add", entry)
            added.append(entry)
        if added:
            self.store.save_lorebook(self.character_id, self.lorebook)
            logger.info("Added %d lorebook entries for %s", len(added), self.character_id)
        return added

    def edit_entry(self, entry_id: str, **changes) -> LorebookEntry | None:
        """Replace an entry with an edited copy carrying a new id."""
        index = self._index(entry_id)
        if index is None:
            return None
        data = self.lorebook.entries[index].to_dict()
        data.update(changes)
        data.pop("id", None)
        edited = LorebookEntry.from_dict(data)
        self.lorebook.entries[index] = edited
        self._record("user_edit", edited, previous_entry_id=entry_id)
        self.store.save_lorebook(self.character_id, self.lorebook)
        return edited

    def delete_entry(self, entry_id: str) -> bool:
        index = self._index(entry_id)
        if index is None:
            return False
        entry = self.lorebook.entries.pop(index)
        self._record("user_delete", entry, previous_entry_id=entry_id)
        self.store.save_lorebook(self.character_id, self.lorebook)
        return True

    def consolidate(self, result: ConsolidationResult) -> int:
        """Apply a consolidation result, logging each merged entry.

        Returns:
            Number of merged entries produced
        """
        before = list(self.lorebook.entries)
        self.lorebook.entries = apply_consolidation(before, result)
        merged = 0
        for change in result.consolidated:
            members = [before[i] for i in change.original_indices if 0 <= i < len(before)]
            if len(members) < 2:
                continue
            content = change.content.strip()
            entry = next(
                (e for e in self.lorebook.entries if e.content == content and e not in before),
                None,
            )
            if entry is not None:
                self._record("ai_add", entry, previous_entry_id=members[0].id)
                merged += 1
        if merged:
            self.store.save_lorebook(self.character_id, self.lorebook)
        return merged


# =============================================================================
# AI extraction
# =============================================================================


def build_lorebook_extraction_prompt(existing_keys: list[str]) -> str:
    if existing_keys:
        known = f"Existing keys (you may still extract NEW info about these): {', '.join(existing_keys)}"
    else:
        known = "No existing keys."

    return f"""You are a world-building assistant. Analyze the AI response and extract world facts.

CRITICAL RULES:
1. Extract ONLY Proper Nouns (Named Characters, Named Unique Locations, Named Unique Artifacts).
2. Do NOT create entries for generic objects, traps, items, formations, or concepts.
3. Extract NEW information about entities, including entities that already exist in the lorebook.
4. Be VERY concise - each entry max 2-3 sentences describing only the NEW facts revealed.
5. Categorize: "character" for persons, "location" for places, "notion" for groups/organizations.

ONE ENTITY PER ENTRY:
- Each entry must be about EXACTLY ONE entity.
- The "keys" array contains ONLY variations of that entity's name.
- If two characters interact, create TWO separate entries.

6. Only extract genuinely NEW information.
7. If there is no NEW information to extract, return an empty array: []

{known}

Output format (JSON array only):
[{{"keys":["EntityName","AltName"],"content":"NEW facts about this entity","priority":10,"category":"character"}}]"""


def _clean(text: str) -> str:
    text = strip_reasoning(text)
    return re.sub(r"```(?:json)?\n?", "", text).strip()


def parse_lorebook_extraction_response(text: str) -> list[LorebookEntry]:
    """Parse extracted entries; anything malformed yields an empty list."""
    cleaned = _clean(text or "")
    first, last = cleaned.find("["), cleaned.rfind("]")
    if first == -1 or last < first:
        logger.debug("No JSON array in lorebook extraction response")
        return []
    try:
        parsed = json.loads(cleaned[first : last + 1])
    except json.JSONDecodeError:
        logger.debug("Failed to parse lorebook extraction response: %r", cleaned)
        return []
    if not isinstance(parsed, list):
        return []

    entries = []
    for item in parsed:
        if not isinstance(item, dict):
            continue
        keys, content = item.get("keys"), item.get("content")
        if not isinstance(keys, list) or not isinstance(content, str):
            continue
        priority = item.get("priority")
        entries.append(
            LorebookEntry(
                keys=[str(k) for k in keys if str(k).strip()],
                content=content,
                priority=priority if isinstance(priority, int) and priority else 10,
                category=item.get("category") if isinstance(item.get("category"), str) else None,
            )
        )
    return entries


# =============================================================================
# Consolidation
# =============================================================================

LOREBOOK_CONSOLIDATION_PROMPT = """You are a legendary Lorekeeper. Your task is to organize and consolidate the Lorebook of a roleplay game.
Receive a list of Lorebook Entries (Keywords + Content).
Identify entries that are:
1. Redundant (exact duplicates) -> Merge
2. Overlapping (same concept, different details) -> Merge into one comprehensive entry
3. Fragmented (related details split across entries) -> Merge

Maintain all distinct characters, places, and concepts as separate entries.
Do NOT merge unrelated things.

For merged entries:
- Combine keywords (remove duplicates).
- Rewrite content to be concise, comprehensive, and consistent.

Return JSON ONLY:
{
  "consolidated": [
    {
      "originalindices": [0, 2],
      "keywords": ["key1", "key2"],
      "content": "Merged content..."
    }
  ],
  "unchanged": [1, 3]
}
"""


@dataclass
class ConsolidationChange:
    original_indices: list[int]
    keywords: list[str]
    content: str


@dataclass
class ConsolidationResult:
    consolidated: list[ConsolidationChange] = field(default_factory=list)
    unchanged: list[int] = field(default_factory=list)


def build_consolidation_request(entries: list[LorebookEntry]) -> list[dict]:
    listing = "\n".join(
        f"[{i}] Keywords: {', '.join(e.keys)}\nContent: {e.content}" for i, e in enumerate(entries)
    )
    return [
        {"role": "system", "content": LOREBOOK_CONSOLIDATION_PROMPT},
        {"role": "user", "content": f"Lorebook entries:\n\n{listing}"},
    ]


def _int_list(value) -> list[int]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, int) and not isinstance(v, bool)]


def parse_consolidation_response(text: str) -> ConsolidationResult | None:
    cleaned = _clean(text or "")
    # The prompt's example carries // comments; models echo them
    cleaned = re.sub(r"//[^\n]*", "", cleaned)
    match = re.search(r"\{.*\}", cleaned, re.DOTALL)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        logger.debug("Failed to parse consolidation response: %r", cleaned)
        return None
    if not isinstance(parsed, dict):
        return None

    changes = []
    for c in parsed.get("consolidated") or []:
        if not isinstance(c, dict):
            continue
        indices = c.get("originalindices") or c.get("originalIndices") or []
        keywords = c.get("keywords") or []
        changes.append(
            ConsolidationChange(
                original_indices=_int_list(indices),
                keywords=[str(k) for k in keywords] if isinstance(keywords, list) else [],
                content=str(c.get("content") or ""),
            )
        )
    return ConsolidationResult(consolidated=changes, unchanged=_int_list(parsed.get("unchanged")))


def apply_consolidation(
    entries: list[LorebookEntry], result: ConsolidationResult
) -> list[LorebookEntry]:
    """Build the consolidated entry list.

    Entries named by no merge group are kept as they are, so a partial answer
    never loses entries. Merged entries take the highest member priority and
    the first member's category.
    """
    consumed: set[int] = set()
    merged = []
    for change in result.consolidated:
        indices = [
            i for i in change.original_indices if 0 <= i < len(entries) and i not in consumed
        ]
        if not indices or not change.content.strip():
            continue
        members = [entries[i] for i in indices]
        keys = []
        for key in change.keywords or [k for m in members for k in m.keys]:
            if key.lower() not in {k.lower() for k in keys}:
                keys.append(key)
        merged.append(
            LorebookEntry(
                keys=keys,
                content=change.content.strip(),
                enabled=any(m.enabled for m in members),
                priority=max(m.priority for m in members),
                category=members[0].category,
                position=members[0].position,
            )
        )
        consumed.update(indices)

    kept = [e for i, e in enumerate(entries) if i not in consumed]
    return kept + merged
