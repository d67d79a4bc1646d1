"""Hierarchical summarization.

Three-level pyramid of summaries:
    level 0: chunk summaries (every ~10 messages, adaptive)
    level 1: section summaries (every 5 level-0 summaries)
    level 2: arc summaries (every 3 level-1 summaries)

Each level compresses the one below it.
"""

from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Sequence

from lorekeeper.embedding import EmbeddingBackend
from lorekeeper.llm import ChatProvider, ProviderError, complete_with_fallback, strip_reasoning
from lorekeeper.models import MemorySummary, Message
from lorekeeper.quality import filter_quality_messages, get_adaptive_chunk_size, score_message_chunk
from lorekeeper.tokens import TokenCounter, count_tokens

if TYPE_CHECKING:
    from lorekeeper.store import MemoryStore

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 10
L1_THRESHOLD = 5
L2_THRESHOLD = 3
DUPLICATE_OVERLAP = 0.6

SUMMARIZATION_PROMPT_L0 = """You are a RPG session chronicler. Summarize this chunk of roleplay messages into a concise narrative paragraph.

RULES:
- Write in past tense, third person
- Capture: WHO did WHAT, WHERE, key decisions, important dialogue
- Include specific names, items, locations
- Max 3-4 sentences
- Also extract 3-5 KEY FACTS as a separate list (atomic, searchable statements)
- Output in this JSON format:

{
  "summary": "narrative summary paragraph...",
  "keyFacts": ["fact 1", "fact 2", "fact 3"]
}"""

SUMMARIZATION_PROMPT_L1 = """You are a RPG story arc compiler. Combine these chapter summaries into a broader section summary.

RULES:
- Write in past tense, third person
- Focus on overarching plot progression, character development, and consequences
- Preserve critical names, items, and locations
- Max 2-3 sentences
- Extract 2-3 CRITICAL facts that define this section
- Output JSON:

{
  "summary": "section summary...",
  "keyFacts": ["critical fact 1", "critical fact 2"]
}"""

SUMMARIZATION_PROMPT_L2 = """You are a RPG epic chronicler. Combine these section summaries into a grand arc summary.

RULES:
- Write in past tense, third person
- Capture the overarching narrative arc, major turning points
- This is the highest-level summary; it should give someone a complete overview
- Max 2-3 sentences
- Extract 1-2 defining facts of the entire arc
- Output JSON:

{
  "summary": "arc summary...",
  "keyFacts": ["defining fact 1"]
}"""


def _level(summaries: Sequence[MemorySummary], level: int) -> list[MemorySummary]:
    return [s for s in summaries if s.level == level]


def covered_message_count(summaries: Sequence[MemorySummary], skipped_until: int = 0) -> int:
    """Highest message index covered by a level-0 summary or a skipped chunk."""
    ends = [s.message_range[1] for s in _level(summaries, 0)]
    return max(ends + [skipped_until])


def should_create_l0_summary(
    message_count: int,
    summaries: Sequence[MemorySummary],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    skipped_until: int = 0,
) -> bool:
    return message_count - covered_message_count(summaries, skipped_until) >= chunk_size


def get_next_chunk_to_summarize(
    messages: Sequence[Message],
    summaries: Sequence[MemorySummary],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    skipped_until: int = 0,
) -> tuple[int, list[Message]] | None:
    """Return (start index, messages) of the next uncovered chunk, if complete."""
    start = covered_message_count(summaries, skipped_until)
    pending = list(messages[start:])
    if len(pending) < chunk_size:
        return None
    return start, pending[:chunk_size]


def _uncovered_children(summaries, child_level: int, threshold: int):
    children = sorted(_level(summaries, child_level), key=lambda s: s.message_range[0])
    covered = {cid for parent in _level(summaries, child_level + 1) for cid in parent.child_ids}
    uncovered = [s for s in children if s.id not in covered]
    if len(uncovered) < threshold:
        return None
    return uncovered[:threshold]


def get_l0_summaries_for_l1(summaries: Sequence[MemorySummary]) -> list[MemorySummary] | None:
    return _uncovered_children(summaries, 0, L1_THRESHOLD)


def get_l1_summaries_for_l2(summaries: Sequence[MemorySummary]) -> list[MemorySummary] | None:
    return _uncovered_children(summaries, 1, L2_THRESHOLD)


def parse_summary_response(text: str) -> tuple[str, list[str]] | None:
    """Parse ``{"summary", "keyFacts"}``; plain prose is accepted as the summary."""
    cleaned = strip_reasoning(text or "")
    match = re.search(r"\{.*\}", cleaned, re.DOTALL)
    if match:
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            facts = parsed.get("keyFacts") or parsed.get("key_facts")
            summary = str(parsed.get("summary") or "").strip()
            if summary:
                return summary, [str(f) for f in facts] if isinstance(facts, list) else []
    return (cleaned, []) if cleaned else None


def build_l0_prompt(messages: Sequence[Message], character_name: str, user_name: str) -> str:
    formatted = "\n\n".join(
        f"{user_name if m.role == 'user' else character_name}: {m.content}" for m in messages
    )
    return (
        f"Character: {character_name}\nPlayer: {user_name}\n\n"
        f"--- Messages ---\n{formatted}\n\n--- End Messages ---\n\nSummarize this chunk:"
    )


def build_l1_prompt(l0_summaries: Sequence[MemorySummary]) -> str:
    formatted = "\n\n".join(
        f"Chapter {i + 1} (messages {s.message_range[0]}-{s.message_range[1]}):\n{s.content}"
        for i, s in enumerate(l0_summaries)
    )
    return f"--- Chapter Summaries ---\n{formatted}\n\n--- End ---\n\nCombine into a section summary:"


def build_l2_prompt(l1_summaries: Sequence[MemorySummary]) -> str:
    formatted = "\n\n".join(
        f"Section {i + 1} (messages {s.message_range[0]}-{s.message_range[1]}):\n{s.content}"
        for i, s in enumerate(l1_summaries)
    )
    return f"--- Section Summaries ---\n{formatted}\n\n--- End ---\n\nCombine into an arc summary:"


def word_overlap(a: str, b: str) -> float:
    """Jaccard overlap of the words longer than three characters."""
    words_a = {w for w in a.lower().split() if len(w) > 3}
    words_b = {w for w in b.lower().split() if len(w) > 3}
    if not words_a or not words_b:
        return 0.0
    shared = len(words_a & words_b)
    return shared / (len(words_a) + len(words_b) - shared)


def _dedupe(summaries: list[MemorySummary]) -> list[MemorySummary]:
    kept: list[MemorySummary] = []
    for s in summaries:
        if not any(word_overlap(k.content, s.content) > DUPLICATE_OVERLAP for k in kept):
            kept.append(s)
    return kept


def _newest_first(summaries: list[MemorySummary]) -> list[MemorySummary]:
    return sorted(summaries, key=lambda s: s.created_at, reverse=True)


def get_best_context_summary(
    summaries: Sequence[MemorySummary],
    max_tokens: int = 300,
    count_tokens: TokenCounter = count_tokens,
) -> str:
    """Render the most compressed useful story summary within max_tokens.

    Arc summaries win, then section summaries; recent level-0 summaries not
    covered by them are appended while room remains. Near-duplicates are
    skipped.
    """
    if not summaries:
        return ""
    by_id = {s.id: s for s in summaries}
    l0s = _newest_first(_level(summaries, 0))
    l1s = _newest_first(_level(summaries, 1))
    l2s = _newest_first(_level(summaries, 2))

    if l2s or l1s:
        if l2s:
            result = "Story Arc:\n" + "\n".join(s.content for s in l2s)
            covered = {
                l0_id
                for l2 in l2s
                for l1_id in l2.child_ids
                if l1_id in by_id
                for l0_id in by_id[l1_id].child_ids
            }
            recent = [s for s in l0s if s.id not in covered]
            heading = "Recent Events"
        else:
            result = "Story So Far:\n" + "\n".join(s.content for s in l1s)
            covered = {cid for l1 in l1s for cid in l1.child_ids}
            recent = [s for s in l0s if s.id not in covered][:3]
            heading = "Recent"

        if recent and count_tokens(result) < max_tokens - 100:
            result += f"\n\n{heading}:\n" + "\n".join(s.content for s in _dedupe(recent))
        return result

    result = "Recent Events:\n"
    used = count_tokens(result)
    included: list[str] = []
    for s in l0s:
        cost = count_tokens(s.content)
        if used + cost > max_tokens:
            break
        if any(word_overlap(text, s.content) > DUPLICATE_OVERLAP for text in included):
            continue
        result += s.content + "\n"
        used += cost
        included.append(s.content)
    return result if included else ""


def _skip_key(conversation_id: str) -> str:
    return f"summary_skipped_until:{conversation_id}"


async def _summarize(provider, models, system: str, prompt: str) -> tuple[str, list[str]] | None:
    text, _ = await complete_with_fallback(
        provider,
        models,
        [{"role": "system", "content": system}, {"role": "user", "content": prompt}],
        temperature=0.3,
        max_tokens=800,
    )
    return parse_summary_response(text)


async def summarize_pending(
    provider: ChatProvider,
    models: list[str],
    conversation_id: str,
    messages: Sequence[Message],
    store: MemoryStore,
    embedding: EmbeddingBackend | None = None,
    character_name: str = "Character",
    user_name: str = "User",
    base_chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> list[MemorySummary]:
    """Create whatever summaries the active branch now warrants.

    At most one level-0 summary is created per call, followed by a level-1
    and level-2 summary when enough children have accumulated. A chunk that
    fails the quality gate is marked skipped instead of summarized.

    Returns:
        The summaries created
    """
    summaries = store.get_summaries(conversation_id)
    skipped_until = int(store.get_setting(_skip_key(conversation_id)) or 0)
    created: list[MemorySummary] = []

    chunk_size = get_adaptive_chunk_size(messages[-10:], base=base_chunk_size)
    if should_create_l0_summary(len(messages), summaries, chunk_size, skipped_until):
        start, batch = get_next_chunk_to_summarize(messages, summaries, chunk_size, skipped_until)
        end = start + len(batch)
        if not score_message_chunk(batch).should_summarize:
            logger.info("Skipping low-quality chunk %d-%d of %s", start, end, conversation_id)
            store.set_setting(_skip_key(conversation_id), str(end))
        else:
            try:
                parsed = await _summarize(
                    provider,
                    models,
                    SUMMARIZATION_PROMPT_L0,
                    build_l0_prompt(filter_quality_messages(batch), character_name, user_name),
                )
            except ProviderError as e:
                logger.warning("Level-0 summarization failed for %s: %s", conversation_id, e)
                parsed = None
            if parsed:
                created.append(
                    _save(store, embedding, conversation_id, 0, (start, end), parsed, [])
                )

    for level, select, system, build in (
        (1, get_l0_summaries_for_l1, SUMMARIZATION_PROMPT_L1, build_l1_prompt),
        (2, get_l1_summaries_for_l2, SUMMARIZATION_PROMPT_L2, build_l2_prompt),
    ):
        children = select(summaries + created)
        if children is None:
            continue
        try:
            parsed = await _summarize(provider, models, system, build(children))
        except ProviderError as e:
            logger.warning("Level-%d summarization failed for %s: %s", level, conversation_id, e)
            break
        if not parsed:
            break
        span = (children[0].message_range[0], children[-1].message_range[1])
        created.append(
            _save(store, embedding, conversation_id, level, span, parsed, [c.id for c in children])
        )

    return created


def _save(store, embedding, conversation_id, level, span, parsed, child_ids) -> MemorySummary:
    content, key_facts = parsed
    summary = MemorySummary(
        conversation_id=conversation_id,
        level=level,
        message_range=span,
        content=content,
        key_facts=key_facts,
        child_ids=child_ids,
        embedding=embedding.embed(content) if embedding is not None else None,
    )
    store.save_summary(summary)
    logger.info("Created level-%d summary for messages %d-%d", level, span[0], span[1])
    return summary
