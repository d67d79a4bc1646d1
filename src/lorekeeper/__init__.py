"""Lorekeeper - context assembly and memory engine for long-running roleplay chats."""

from lorekeeper.models import (
    EngineConfig,
    GenerationSettings,
    Character,
    Persona,
    Conversation,
    Message,
    WorldState,
    WorldStateChanges,
    WorldFact,
    MemorySummary,
    Lorebook,
    LorebookEntry,
    LorebookScanConfig,
    ContextSection,
    ContextBudget,
    ContextPreview,
)
from lorekeeper.allocator import ContextAllocation, allocate_context
from lorekeeper.engine import MemoryEngine
from lorekeeper.store import MemoryStore
from lorekeeper.tree import ConversationTree

__version__ = "0.1.0"

__all__ = [
    "MemoryEngine",
    "MemoryStore",
    "ConversationTree",
    "ContextAllocation",
    "allocate_context",
    "EngineConfig",
    "GenerationSettings",
    "Character",
    "Persona",
    "Conversation",
    "Message",
    "WorldState",
    "WorldStateChanges",
    "WorldFact",
    "MemorySummary",
    "Lorebook",
    "LorebookEntry",
    "LorebookScanConfig",
    "ContextSection",
    "ContextBudget",
    "ContextPreview",
]
