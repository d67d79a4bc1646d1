"""Retrieval of past context for generation.

Combines the summary pyramid with vector search over facts, weighted by
importance and temporal decay.
"""

from __future__ import annotations

import logging
import time
from typing import Sequence

from lorekeeper.embedding import EmbeddingBackend, cosine_similarity
from lorekeeper.facts import FactStore
from lorekeeper.models import ContextSection, MemorySummary, WorldFact
from lorekeeper.summaries import get_best_context_summary
from lorekeeper.tokens import TokenCounter, count_tokens, truncate_to_token_budget

logger = logging.getLogger(__name__)

MIN_FACT_SCORE = 0.15
SUMMARY_BUDGET_RATIO = 0.3
SUMMARY_BUDGET_CAP = 300


def temporal_decay(fact: WorldFact, now: float | None = None) -> float:
    """Age decay with recency and frequency boosts.

    Important facts decay slower: half-life 720h at importance >= 8, 168h at
    >= 5, else 48h.
    """
    now = time.time() if now is None else now
    age_hours = max(0.0, now - fact.timestamp) / 3600
    idle_hours = max(0.0, now - fact.last_accessed_at) / 3600

    if fact.importance >= 8:
        half_life = 720
    elif fact.importance >= 5:
        half_life = 168
    else:
        half_life = 48
    age_factor = 0.5 ** (age_hours / half_life)

    if idle_hours < 1:
        recency = 1.5
    elif idle_hours < 24:
        recency = 1.2
    else:
        recency = 1.0
    frequency = min(1.5, 1 + fact.access_count * 0.1)

    return age_factor * recency * frequency


def combined_score(similarity: float, fact: WorldFact, now: float | None = None) -> float:
    return similarity * 0.5 + (fact.importance / 10) * 0.25 + temporal_decay(fact, now) * 0.25


def on_branch(fact: WorldFact, branch_ids: set[str]) -> bool:
    """True when the message a fact came from is on the active branch.

    Facts without a branch path are visible everywhere.
    """
    if not fact.branch_path or not branch_ids:
        return True
    return fact.branch_path[-1] in branch_ids


def rank_facts(
    query: list[float],
    facts: Sequence[WorldFact],
    top_k: int = 10,
    now: float | None = None,
) -> list[tuple[WorldFact, float]]:
    """Score facts against a query vector, best first, dropping weak matches."""
    scored = [
        (fact, combined_score(cosine_similarity(query, fact.embedding), fact, now))
        for fact in facts
        if fact.embedding
    ]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return [pair for pair in scored[:top_k] if pair[1] > MIN_FACT_SCORE]


def _marker(importance: int) -> str:
    if importance >= 8:
        return "!"
    if importance >= 5:
        return "-"
    return "~"


def retrieve_relevant_context(
    query_text: str,
    fact_store: FactStore | None,
    summaries: Sequence[MemorySummary],
    embedder: EmbeddingBackend,
    token_budget: int,
    active_branch_ids: Sequence[str] | None = None,
    top_k_facts: int = 10,
    min_confidence: float = 0.0,
    count_tokens: TokenCounter = count_tokens,
) -> list[ContextSection]:
    """Build the retrieved-context sections for one generation.

    Returns:
        Story summary section (priority 1) and relevant facts (priority 2),
        each present only when non-empty and within budget
    """
    sections = []
    remaining = token_budget

    summary_budget = min(int(token_budget * SUMMARY_BUDGET_RATIO), SUMMARY_BUDGET_CAP)
    summary_text = get_best_context_summary(summaries, summary_budget, count_tokens)
    if summary_text:
        # Arc and section summaries are not budgeted while rendering
        summary_text, tokens = truncate_to_token_budget(summary_text, summary_budget, count_tokens)
        sections.append(
            ContextSection(
                priority=1,
                content=summary_text,
                tokens=tokens,
                type="summary",
                label="Story Summary",
            )
        )
        remaining -= tokens

    if fact_store is None or remaining <= 50:
        return sections

    branch_ids = set(active_branch_ids or [])
    candidates = [f for f in fact_store.facts(active_only=True) if on_branch(f, branch_ids)]
    if not candidates:
        return sections

    results = rank_facts(embedder.embed(query_text), candidates, top_k_facts)
    if not results:
        return sections

    fact_store.touch([fact for fact, _ in results])
    confidence = sum(score for _, score in results) / len(results)
    if confidence < min_confidence:
        logger.debug("Fact confidence %.2f below %.2f, not injecting", confidence, min_confidence)
        return sections

    text = "Relevant Past Events:\n" + "\n".join(
        f"{_marker(fact.importance)} {fact.fact}" for fact, _ in results
    )
    tokens = count_tokens(text)
    if tokens <= remaining:
        sections.append(
            ContextSection(
                priority=2,
                content=text,
                tokens=tokens,
                type="fact",
                label=f"Facts ({len(results)})",
                confidence=confidence,
            )
        )
    return sections
