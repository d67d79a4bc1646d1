"""Atomic fact extraction, deduplication and semantic merging.

Facts are atomic, searchable units of information about the game world,
extracted one message at a time and periodically consolidated.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import replace
from typing import TYPE_CHECKING

from lorekeeper.embedding import EmbeddingBackend, cosine_similarity
from lorekeeper.llm import ChatProvider, ProviderError, complete_with_fallback
from lorekeeper.models import WorldFact, WorldState, new_id
from lorekeeper.quality import MIN_QUALITY_SCORE, score_message_quality

if TYPE_CHECKING:
    from lorekeeper.store import MemoryStore

logger = logging.getLogger(__name__)

BASE_CATEGORIES = (
    "event",
    "relationship",
    "item",
    "location",
    "lore",
    "consequence",
    "dialogue",
)

DEFAULT_MERGE_THRESHOLD = 0.7
DEFAULT_DEDUP_OVERLAP = 0.6
NOVELTY_RATIO = 0.2


def build_fact_extraction_system_prompt(custom_categories: list[str] | None = None) -> str:
    """Build the extraction system prompt, listing any custom categories."""
    categories = list(BASE_CATEGORIES)
    for c in custom_categories or []:
        c = c.strip().lower()
        if c and c not in categories:
            categories.append(c)

    return f"""You are a RPG chronicle keeper. Extract atomic facts from this roleplay exchange.

RULES:
- Each fact must be a single, self-contained statement
- Facts should capture WHO did WHAT, WHERE, and consequences
- Rate importance 1-10: 1=trivial dialog, 5=notable event, 8=major plot point, 10=world-changing
- List entities involved (character names, item names, location names)
- Categorize each fact accurately
- Output ONLY a valid JSON array, no markdown

Categories: {", ".join(categories)}

Output format:
[
  {{
    "fact": "description of what happened",
    "category": "event",
    "importance": 7,
    "entities": ["Character1", "ItemName"],
    "tags": ["combat", "discovery"]
  }}
]

IMPORTANT: Only extract facts that represent NEW information or changes. Skip:
- Routine greetings or small talk (unless establishing a new relationship)
- Descriptions that don't advance the story
- Repetitions of known information"""


def build_fact_extraction_prompt(
    message: str,
    world_state: WorldState,
    character_name: str,
    user_name: str,
) -> str:
    """Build the user prompt carrying the message and current world state."""
    relationships = ", ".join(f"{n}: {v}" for n, v in world_state.relationships.items())
    return (
        "Current world state:\n"
        f"- Location: {world_state.location or 'Unknown'}\n"
        f"- Inventory: {', '.join(world_state.inventory) or 'Empty'}\n"
        f"- Key relationships: {relationships or 'None'}\n\n"
        f"Characters: {character_name} (NPC), {user_name} (Player)\n\n"
        "Message to analyze:\n"
        f'"{message}"\n\n'
        "Extract all new atomic facts:"
    )


def validate_category(category: str) -> str:
    """Accept built-in categories and any non-empty custom label (lower-cased)."""
    category = (category or "").strip().lower()
    return category or "event"


def _clean_json_text(text: str) -> str:
    text = re.sub(r"```(?:json)?", "", text)
    return text.strip()


def parse_fact_extraction_response(
    text: str,
    conversation_id: str,
    message_id: str,
    branch_path: list[str] | None = None,
) -> list[WorldFact]:
    """Parse the extractor's JSON array into WorldFact objects.

    Entries missing fact, category or importance are dropped; importance is
    clamped to [1, 10]. Unparseable output yields an empty list.
    """
    match = re.search(r"\[.*\]", _clean_json_text(text or ""), re.DOTALL)
    if not match:
        return []
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        logger.debug("Failed to parse fact extraction response: %r", text)
        return []
    if not isinstance(parsed, list):
        return []

    now = time.time()
    facts = []
    for item in parsed:
        if not isinstance(item, dict):
            continue
        fact_text = item.get("fact")
        category = item.get("category")
        importance = item.get("importance")
        if not fact_text or not category or importance in (None, ""):
            continue
        try:
            importance = int(round(float(importance)))
        except (TypeError, ValueError):
            continue
        entities = item.get("entities")
        facts.append(
            WorldFact(
                conversation_id=conversation_id,
                message_id=message_id,
                fact=str(fact_text).strip(),
                category=validate_category(str(category)),
                importance=max(1, min(10, importance)),
                related_entities=[str(e) for e in entities] if isinstance(entities, list) else [],
                timestamp=now,
                last_accessed_at=now,
                branch_path=list(branch_path) if branch_path else None,
            )
        )
    return facts


_HIGH_INDICATORS = [
    re.compile(r"\b(kill|die|died|death|murder|betray|destroy|save|rescue|discover|reveal|secret)\w*", re.I),
    re.compile(r"\b(tuer|mourir|mort|trahir|détruire|sauver|découvr|révéler|secret)\w*", re.I),
]
_MEDIUM_INDICATORS = [
    re.compile(r"\b(attack|fight|battle|find|give|take|steal|buy|sell|enchant|curse)\w*", re.I),
    re.compile(r"\b(attaquer|combattre|trouver|donner|prendre|voler|acheter|vendre)\w*", re.I),
]
_LOW_INDICATORS = [
    re.compile(r"\b(say|ask|reply|nod|smile|laugh|walk|look|think)\w*", re.I),
    re.compile(r"\b(dire|demander|répondre|sourire|marcher|regarder|penser)\w*", re.I),
]


def heuristic_importance(text: str) -> int:
    """Score importance by keyword when AI extraction is unavailable."""
    score = 3
    if any(p.search(text) for p in _HIGH_INDICATORS):
        score = max(score, 7)
    if any(p.search(text) for p in _MEDIUM_INDICATORS):
        score = max(score, 5)
    if any(p.search(text) for p in _LOW_INDICATORS):
        score = max(score, 2)

    if len(text) > 500:
        score = min(10, score + 1)
    if len(text) > 1000:
        score = min(10, score + 1)
    return score


def fallback_facts(
    text: str,
    conversation_id: str,
    message_id: str,
    branch_path: list[str] | None = None,
    min_importance: int = 5,
    limit: int = 3,
) -> list[WorldFact]:
    """Turn the most notable sentences of a message into facts by heuristic."""
    now = time.time()
    sentences = [s.strip() for s in re.split(r"(?<=[.!?])\s+", text or "") if len(s.split()) >= 4]
    scored = [(heuristic_importance(s), s) for s in sentences]
    scored = [pair for pair in scored if pair[0] >= min_importance]
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [
        WorldFact(
            conversation_id=conversation_id,
            message_id=message_id,
            fact=sentence.strip("*\"“” "),
            category="event",
            importance=importance,
            timestamp=now,
            last_accessed_at=now,
            branch_path=list(branch_path) if branch_path else None,
        )
        for importance, sentence in scored[:limit]
    ]


def deduplicate_facts(
    new_facts: list[WorldFact],
    existing: list[WorldFact],
    overlap_threshold: float = DEFAULT_DEDUP_OVERLAP,
) -> list[WorldFact]:
    """Drop new facts that restate an existing one.

    A fact is a duplicate when its lower-cased text equals an existing fact's,
    or when it shares at least two entities with an existing fact of the same
    category and more than overlap_threshold of its words appear in it.
    """
    existing_index = [
        (
            f.fact.lower(),
            f.category,
            {e.lower() for e in f.related_entities},
            set(f.fact.lower().split()),
        )
        for f in existing
    ]

    kept = []
    for fact in new_facts:
        text = fact.fact.lower()
        words = text.split()
        entities = {e.lower() for e in fact.related_entities}
        duplicate = False
        for other_text, other_category, other_entities, other_words in existing_index:
            if other_text == text:
                duplicate = True
                break
            if other_category != fact.category or len(entities & other_entities) < 2:
                continue
            if words and sum(1 for w in words if w in other_words) / len(words) > overlap_threshold:
                duplicate = True
                break
        if not duplicate:
            kept.append(fact)
    return kept


def same_lineage(a: list[str] | None, b: list[str] | None) -> bool:
    """True when one branch path is a prefix of the other.

    Facts without a branch path only share a lineage with each other.
    """
    if a is None or b is None:
        return a is None and b is None
    shorter, longer = (a, b) if len(a) <= len(b) else (b, a)
    return longer[: len(shorter)] == shorter


def find_related_fact_clusters(
    facts: list[WorldFact],
    threshold: float = DEFAULT_MERGE_THRESHOLD,
) -> list[list[WorldFact]]:
    """Group facts whose embeddings are similar to a cluster seed.

    Greedy single pass: each unvisited fact seeds a cluster and absorbs every
    later unvisited fact whose similarity to the seed reaches threshold and
    whose branch path shares a lineage with every fact already in the
    cluster. Singleton clusters are discarded.
    """
    candidates = [f for f in facts if f.embedding]
    visited: set[str] = set()
    clusters = []

    for i, seed in enumerate(candidates):
        if seed.id in visited:
            continue
        visited.add(seed.id)
        cluster = [seed]
        for other in candidates[i + 1 :]:
            if other.id in visited:
                continue
            if not all(same_lineage(other.branch_path, f.branch_path) for f in cluster):
                continue
            if cosine_similarity(seed.embedding, other.embedding) >= threshold:
                cluster.append(other)
                visited.add(other.id)
        if len(cluster) > 1:
            clusters.append(cluster)

    return clusters


def merge_fact_cluster(cluster: list[WorldFact]) -> WorldFact:
    """Merge a cluster into one fact.

    The most important (then most recent) fact is the base; other members are
    appended only when more than 20% of their words are new. The result has no
    embedding and a fresh id, and takes the deepest member's source message
    so it stays visible only where every member was.
    """
    if not cluster:
        raise ValueError("Cannot merge empty cluster")
    if len(cluster) == 1:
        return replace(cluster[0], embedding=None, id=new_id())

    ordered = sorted(cluster, key=lambda f: (f.importance, f.timestamp), reverse=True)
    base = ordered[0]

    entities: list[str] = []
    for fact in cluster:
        for entity in fact.related_entities:
            if entity not in entities:
                entities.append(entity)

    base_words = set(base.fact.lower().split())
    extra = []
    for fact in ordered[1:]:
        words = fact.fact.lower().split()
        novel = [w for w in words if w not in base_words and len(w) > 3]
        if words and len(novel) / len(words) > NOVELTY_RATIO:
            extra.append(fact.fact)

    text = base.fact
    if extra:
        text = f"{text.rstrip('.')}. Also: {'; '.join(extra)}"

    deepest = max(cluster, key=lambda f: len(f.branch_path or []))

    return WorldFact(
        conversation_id=base.conversation_id,
        message_id=deepest.message_id,
        fact=text,
        category=base.category,
        importance=max(f.importance for f in cluster),
        related_entities=entities,
        active=any(f.active for f in cluster),
        timestamp=max(f.timestamp for f in cluster),
        last_accessed_at=max(f.last_accessed_at for f in cluster),
        access_count=sum(f.access_count for f in cluster),
        branch_path=deepest.branch_path,
    )


def merge_related_facts(
    facts: list[WorldFact],
    threshold: float = DEFAULT_MERGE_THRESHOLD,
) -> tuple[list[WorldFact], list[str]]:
    """Cluster and merge facts.

    Returns:
        Tuple of (merged facts, ids of the originals they replace)
    """
    merged, deleted = [], []
    for cluster in find_related_fact_clusters(facts, threshold):
        merged.append(merge_fact_cluster(cluster))
        deleted.extend(f.id for f in cluster)
    return merged, deleted


class FactStore:
    """Conversation-scoped handle over stored facts."""

    def __init__(
        self,
        conversation_id: str,
        store: MemoryStore,
        embedding: EmbeddingBackend,
        merge_threshold: float = DEFAULT_MERGE_THRESHOLD,
        dedup_overlap: float = DEFAULT_DEDUP_OVERLAP,
    ):
        self.conversation_id = conversation_id
        self.store = store
        self.embedding = embedding
        self.merge_threshold = merge_threshold
        self.dedup_overlap = dedup_overlap
        self._facts = {f.id: f for f in store.get_facts(conversation_id)}

    def facts(self, active_only: bool = False) -> list[WorldFact]:
        """Return facts in insertion order."""
        facts = list(self._facts.values())
        if active_only:
            facts = [f for f in facts if f.active]
        return facts

    def get(self, fact_id: str) -> WorldFact | None:
        return self._facts.get(fact_id)

    def add_facts(self, candidates: list[WorldFact]) -> list[WorldFact]:
        """Deduplicate, embed and persist new facts.

        Returns:
            The facts actually stored
        """
        # Dedup against the store and within the batch itself
        fresh = []
        for fact in candidates:
            known = self.facts() + fresh
            if deduplicate_facts([fact], known, self.dedup_overlap):
                fresh.append(fact)
        if not fresh:
            return []

        vectors = self.embedding.embed_batch([f.fact for f in fresh])
        for fact, vector in zip(fresh, vectors):
            fact.embedding = vector
            self._facts[fact.id] = fact
            self.store.save_fact(fact)
        logger.info("Stored %d new facts for %s", len(fresh), self.conversation_id)
        return fresh

    async def extract_from_message(
        self,
        provider: ChatProvider | None,
        models: list[str],
        message_id: str,
        content: str,
        world_state: WorldState,
        character_name: str,
        user_name: str,
        branch_path: list[str] | None = None,
        custom_categories: list[str] | None = None,
    ) -> list[WorldFact]:
        """Extract, deduplicate and store the facts of one message.

        Messages below the quality gate are skipped. Without a provider, or
        when every model fails, facts come from the keyword heuristic.
        """
        quality = score_message_quality("assistant", content)
        if quality.score < MIN_QUALITY_SCORE:
            logger.debug("Skipping fact extraction for %s (%s)", message_id, quality.reason)
            return []

        candidates = None
        if provider is not None:
            request = [
                {"role": "system", "content": build_fact_extraction_system_prompt(custom_categories)},
                {
                    "role": "user",
                    "content": build_fact_extraction_prompt(
                        content, world_state, character_name, user_name
                    ),
                },
            ]
            try:
                text, _ = await complete_with_fallback(provider, models, request)
                candidates = parse_fact_extraction_response(
                    text, self.conversation_id, message_id, branch_path
                )
            except ProviderError as e:
                logger.warning("Fact extraction failed for %s: %s", message_id, e)

        if candidates is None:
            candidates = fallback_facts(content, self.conversation_id, message_id, branch_path)

        return self.add_facts(candidates)

    def merge_related(self) -> int:
        """Run the clustering/merge maintenance pass.

        Returns:
            Number of clusters merged
        """
        merged, deleted = merge_related_facts(self.facts(), self.merge_threshold)
        if not merged:
            return 0

        for fact_id in deleted:
            self._facts.pop(fact_id, None)
        self.store.delete_facts(deleted)

        vectors = self.embedding.embed_batch([f.fact for f in merged])
        for fact, vector in zip(merged, vectors):
            fact.embedding = vector
            self._facts[fact.id] = fact
            self.store.save_fact(fact)

        logger.info(
            "Merged %d facts into %d for %s", len(deleted), len(merged), self.conversation_id
        )
        return len(merged)

    def search(self, query: str, limit: int = 10) -> list[tuple[WorldFact, float]]:
        """Nearest active facts to a query by vector distance.

        Returns:
            (fact, distance) pairs, nearest first
        """
        results = self.store.search_facts(
            self.conversation_id, self.embedding.embed(query), limit * 2
        )
        found = []
        for stored, distance in results:
            fact = self._facts.get(stored.id, stored)
            if fact.active:
                found.append((fact, distance))
        return found[:limit]

    def touch(self, facts: list[WorldFact]) -> None:
        """Record a retrieval of facts."""
        now = time.time()
        for fact in facts:
            fact.access_count += 1
            fact.last_accessed_at = now
            self.store.save_fact(fact)

    def deactivate(self, fact_id: str) -> None:
        """Mark a fact superseded."""
        fact = self._facts.get(fact_id)
        if fact is None:
            return
        fact.active = False
        self.store.save_fact(fact)
