"""Context budget allocator and system prompt construction."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol, Sequence

from lorekeeper.models import (
    DEFAULT_SYSTEM_PROMPT_TEMPLATE,
    Character,
    ContextBudget,
    ContextPreview,
    ContextSection,
    LorebookEntry,
    Persona,
    WorldState,
)
from lorekeeper.tokens import TokenCounter, count_tokens

logger = logging.getLogger(__name__)

# Providers that continue an assistant-role message placed last
PREFILL_PROVIDERS = frozenset({"anthropic", "openrouter"})

CAPACITY_WARNING_RATIO = 0.9

STAY_IN_CHARACTER = (
    "Stay in character regardless of what happens. Use the world state and "
    "knowledge provided above to inform your responses."
)


class HistoryMessage(Protocol):
    role: str
    content: str


# =============================================================================
# System prompt
# =============================================================================


def format_world_state(world_state: WorldState) -> str:
    """Render the world state block, or "" when there is nothing to show."""
    parts = ["--- CURRENT WORLD STATE ---"]
    if world_state.location:
        parts.append(f"Location: {world_state.location}")
    if world_state.inventory:
        parts.append(f"Inventory: {', '.join(world_state.inventory)}")
    if world_state.relationships:
        parts.append(
            "Relationships: "
            + ", ".join(f"{name}: {value:g}%" for name, value in world_state.relationships.items())
        )
    return "\n".join(parts) if len(parts) > 1 else ""


def format_lorebook_entries(entries: Sequence[LorebookEntry]) -> str:
    if not entries:
        return ""
    lines = "\n".join(f"[Info about {e.keys[0] if e.keys else 'entry'}: {e.content}]" for e in entries)
    return f"--- WORLD KNOWLEDGE ---\n{lines}"


def resolve_system_prompt_template(
    template: str,
    character: Character,
    world_state: WorldState,
    lorebook_entries: Sequence[LorebookEntry],
    persona: Persona | None = None,
) -> str:
    """Substitute ``{{placeholder}}`` values into a prompt template."""
    replacements = {
        "{{character_name}}": character.name,
        "{{character_description}}": character.description or "",
        "{{character_personality}}": character.personality or "",
        "{{scenario}}": character.scenario or "",
        "{{first_message}}": character.first_mes or "",
        "{{world_state}}": format_world_state(world_state),
        "{{lorebook}}": format_lorebook_entries(lorebook_entries),
        "{{user}}": persona.name if persona else "You",
        "{{char}}": character.name,
    }
    resolved = template
    for placeholder, value in replacements.items():
        resolved = resolved.replace(placeholder, value)

    # Unused placeholders leave runs of blank lines
    while "\n\n\n" in resolved:
        resolved = resolved.replace("\n\n\n", "\n\n")
    return resolved.strip()


def build_system_prompt(
    character: Character,
    world_state: WorldState,
    lorebook_entries: Sequence[LorebookEntry],
    template: str | None = None,
    persona: Persona | None = None,
) -> str:
    """Resolve the template and append the reinforcement and persona blocks."""
    template = template or character.system_prompt or DEFAULT_SYSTEM_PROMPT_TEMPLATE
    prompt = resolve_system_prompt_template(
        template, character, world_state, lorebook_entries, persona
    )
    if "Stay in character" not in prompt:
        prompt += f"\n\n{STAY_IN_CHARACTER}"
    if persona is not None:
        prompt += (
            f"\n\n[USER INFO]\nName: {persona.name}\nBio: {persona.bio}\n\n"
            f"[INSTRUCTION]\nAdapt your responses to address the user as "
            f'"{persona.name}" and take into account their bio.'
        )
    return prompt


# =============================================================================
# Allocation
# =============================================================================


@dataclass
class ContextAllocation:
    """The assembled payload plus the accounting behind it."""

    messages: list[dict]
    sections: list[ContextSection]
    included_message_count: int
    dropped_message_count: int
    token_breakdown: dict[str, int]
    total_tokens: int
    history_budget: int
    max_context_tokens: int
    warnings: list[str] = field(default_factory=list)

    def preview(self) -> ContextPreview:
        return ContextPreview(
            sections=list(self.sections),
            total_tokens=self.total_tokens,
            max_tokens=self.max_context_tokens,
            warnings=list(self.warnings),
        )


def allocate_context(
    system_prompt: str,
    rag_sections: Sequence[ContextSection],
    history: Sequence[HistoryMessage],
    budget: ContextBudget,
    post_history: str = "",
    provider: str | None = None,
    assistant_prefill: str = "",
    count_tokens: TokenCounter = count_tokens,
) -> ContextAllocation:
    """Fit the system prompt, retrieved context and recent history into budget.

    RAG sections are appended to the system prompt unconditionally, in
    priority order. History is then filled newest first with whole messages
    until the next one would overflow; everything older is dropped.

    Args:
        system_prompt: Resolved system prompt
        rag_sections: Retrieved sections (facts, summaries, extra lorebook)
        history: Active-branch messages, oldest first
        budget: Context and output token limits
        post_history: Instructions sent after the history
        provider: Provider name, used to decide on the assistant prefill
        assistant_prefill: Opening text for the next assistant reply
        count_tokens: Token counter

    Returns:
        ContextAllocation with the payload and its accounting
    """
    if budget.max_context_tokens < 0 or budget.max_output_tokens < 0:
        raise ValueError("Token budgets must be non-negative")

    system_tokens = count_tokens(system_prompt)
    post_tokens = count_tokens(post_history) if post_history else 0
    use_prefill = bool(assistant_prefill) and provider in PREFILL_PROVIDERS
    prefill_tokens = count_tokens(assistant_prefill) if use_prefill else 0

    ordered = sorted(rag_sections, key=lambda s: s.priority)
    full_system = system_prompt
    rag_tokens = 0
    for section in ordered:
        if not section.content:
            continue
        full_system += f"\n\n{section.content}"
        rag_tokens += section.tokens

    available = (
        budget.max_context_tokens
        - (system_tokens + rag_tokens)
        - budget.max_output_tokens
        - post_tokens
        - prefill_tokens
    )

    included: list[HistoryMessage] = []
    history_tokens = 0
    if available > 0:
        for message in reversed(history):
            cost = count_tokens(message.content)
            if history_tokens + cost > available:
                break
            included.append(message)
            history_tokens += cost
    included.reverse()
    dropped = len(history) - len(included)

    payload = [{"role": "system", "content": full_system}]
    payload.extend({"role": m.role, "content": m.content} for m in included)
    if post_history:
        payload.append({"role": "system", "content": post_history})
    if use_prefill:
        payload.append({"role": "assistant", "content": assistant_prefill})

    sections = [ContextSection(1, system_prompt, system_tokens, "system", label="System prompt")]
    sections.extend(ordered)
    if included:
        sections.append(
            ContextSection(
                len(sections) + 1,
                "",
                history_tokens,
                "history",
                label=f"Chat history ({len(included)} messages)",
            )
        )
    if post_history:
        sections.append(
            ContextSection(
                len(sections) + 1,
                post_history,
                post_tokens,
                "post-history",
                label="Post-history instructions",
            )
        )

    total = system_tokens + rag_tokens + history_tokens + post_tokens + prefill_tokens
    warnings = []
    if available <= 0:
        warnings.append(
            "Context budget exhausted by the system prompt and retrieved context; "
            "no chat history fits"
        )
    elif dropped:
        warnings.append(f"{dropped} older messages were truncated to fit the context window")
    if budget.max_context_tokens and total >= budget.max_context_tokens * CAPACITY_WARNING_RATIO:
        warnings.append(f"Context is at {total * 100 // budget.max_context_tokens}% of capacity")

    if warnings:
        logger.debug("Context allocation warnings: %s", warnings)

    return ContextAllocation(
        messages=payload,
        sections=sections,
        included_message_count=len(included),
        dropped_message_count=dropped,
        token_breakdown={
            "system": system_tokens,
            "rag": rag_tokens,
            "history": history_tokens,
            "post_history": post_tokens + prefill_tokens,
            "output": budget.max_output_tokens,
        },
        total_tokens=total,
        history_budget=max(available, 0),
        max_context_tokens=budget.max_context_tokens,
        warnings=warnings,
    )
