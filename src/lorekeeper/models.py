"""Data models for Lorekeeper."""

from __future__ import annotations

import copy
import time
import uuid
from dataclasses import dataclass, field


def new_id() -> str:
    """Generate a fresh record id."""
    return str(uuid.uuid4())


@dataclass
class EngineConfig:
    """Configuration for MemoryEngine."""

    db_path: str
    embedding_backend: str = "local"  # "local" | "openai" | "hash"
    embedding_model: str = "all-MiniLM-L6-v2"  # for local
    openai_model: str = "text-embedding-3-small"  # if backend="openai"
    vector_dimensions: int = 384  # matches model
    fact_merge_threshold: float = 0.7
    fact_dedup_overlap: float = 0.6
    consolidation_interval: int = 10  # assistant turns between lorebook consolidations
    summary_chunk_size: int = 10
    background_provider: str = "openrouter"
    background_models: list[str] = field(
        default_factory=lambda: [
            "google/gemini-2.0-flash-exp:free",
            "meta-llama/llama-3.3-70b-instruct:free",
            "deepseek/deepseek-r1-0528:free",
            "mistralai/mistral-small-3.1-24b-instruct:free",
        ]
    )


@dataclass
class LorebookScanConfig:
    """Keyword scan settings for lorebook retrieval."""

    scan_depth: int = 2
    token_budget: int = 500
    match_whole_words: bool = False
    recursive: bool = False


DEFAULT_SYSTEM_PROMPT_TEMPLATE = """You are {{character_name}}.

{{character_description}}

{{character_personality}}

{{scenario}}

{{world_state}}

{{lorebook}}

Stay in character at all times. Respond naturally and engagingly."""


@dataclass
class GenerationSettings:
    """A generation preset: model parameters plus prompt structure."""

    provider: str = "openrouter"
    model: str = "deepseek/deepseek-v3.2"
    temperature: float = 0.8
    max_output_tokens: int = 2048
    max_context_tokens: int = 8192
    system_prompt_template: str = DEFAULT_SYSTEM_PROMPT_TEMPLATE
    post_history_instructions: str = ""
    assistant_prefill: str = ""
    use_lorebooks: bool = True
    use_auto_summarization: bool = True
    lorebook: LorebookScanConfig = field(default_factory=LorebookScanConfig)
    rag_token_budget: int = 800


@dataclass
class Persona:
    """The player's persona."""

    name: str = "You"
    bio: str = ""


@dataclass
class LorebookEntry:
    """A keyword-triggered piece of static world knowledge."""

    keys: list[str]
    content: str
    enabled: bool = True
    priority: int = 10
    category: str | None = None  # 'character', 'location', 'notion'
    position: str | None = None  # 'before_char' | 'after_char'
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "keys": list(self.keys),
            "content": self.content,
            "enabled": self.enabled,
            "priority": self.priority,
            "category": self.category,
            "position": self.position,
        }

    @classmethod
    def from_dict(cls, data: dict) -> LorebookEntry:
        return cls(
            keys=list(data.get("keys") or []),
            content=data.get("content") or "",
            enabled=data.get("enabled", True),
            priority=data.get("priority") or 10,
            category=data.get("category"),
            position=data.get("position"),
            id=data.get("id") or new_id(),
        )


@dataclass
class Lorebook:
    """A character's lorebook."""

    entries: list[LorebookEntry] = field(default_factory=list)
    name: str | None = None
    description: str | None = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "entries": [e.to_dict() for e in self.entries],
        }

    @classmethod
    def from_dict(cls, data: dict) -> Lorebook:
        return cls(
            entries=[LorebookEntry.from_dict(e) for e in data.get("entries") or []],
            name=data.get("name"),
            description=data.get("description"),
        )


@dataclass
class LorebookHistoryEntry:
    """An immutable audit record of one lorebook mutation."""

    character_id: str
    type: str  # 'ai_add' | 'user_edit' | 'user_delete' | 'initial'
    entry: LorebookEntry
    previous_entry_id: str | None = None
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=new_id)


@dataclass
class Character:
    """A character card (only the fields prompt construction needs)."""

    id: str
    name: str
    description: str = ""
    personality: str = ""
    scenario: str = ""
    first_mes: str = ""
    system_prompt: str | None = None
    lorebook: Lorebook = field(default_factory=Lorebook)


@dataclass
class WorldState:
    """Mutable structured summary of the game world for one branch."""

    inventory: list[str] = field(default_factory=list)
    location: str = ""
    relationships: dict[str, float] = field(default_factory=dict)
    custom_state: dict | None = None

    def copy(self) -> WorldState:
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        data = {
            "inventory": list(self.inventory),
            "location": self.location,
            "relationships": dict(self.relationships),
        }
        if self.custom_state is not None:
            data["custom_state"] = copy.deepcopy(self.custom_state)
        return data

    @classmethod
    def from_dict(cls, data: dict | None) -> WorldState:
        if not data:
            return cls()
        return cls(
            inventory=list(data.get("inventory") or []),
            location=data.get("location") or "",
            relationships=dict(data.get("relationships") or {}),
            custom_state=data.get("custom_state"),
        )


@dataclass
class WorldStateChanges:
    """A delta inferred from one turn by the world-state analyst."""

    inventory_add: list[str] = field(default_factory=list)
    inventory_remove: list[str] = field(default_factory=list)
    location: str | None = None
    relationship_changes: dict[str, float] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return (
            not self.inventory_add
            and not self.inventory_remove
            and self.location is None
            and not self.relationship_changes
        )


@dataclass
class Message:
    """A node in the conversation tree."""

    conversation_id: str
    role: str  # 'user' | 'assistant' | 'system'
    content: str
    parent_id: str | None = None
    thought: str | None = None
    is_active_branch: bool = True
    world_state_snapshot: WorldState | None = None
    message_order: int = 0
    regeneration_index: int = 0
    created_at: float = field(default_factory=time.time)
    id: str = field(default_factory=new_id)


@dataclass
class Conversation:
    """A conversation with one character."""

    character_id: str
    title: str
    world_state: WorldState = field(default_factory=WorldState)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    id: str = field(default_factory=new_id)


@dataclass
class WorldFact:
    """An atomic, independently retrievable fact about the world."""

    conversation_id: str
    message_id: str
    fact: str
    category: str
    importance: int
    related_entities: list[str] = field(default_factory=list)
    active: bool = True
    timestamp: float = field(default_factory=time.time)
    last_accessed_at: float = field(default_factory=time.time)
    access_count: int = 0
    embedding: list[float] | None = None
    branch_path: list[str] | None = None
    id: str = field(default_factory=new_id)


@dataclass
class MemorySummary:
    """A node of the summary pyramid (level 0 chunk, 1 section, 2 arc)."""

    conversation_id: str
    level: int
    message_range: tuple[int, int]
    content: str
    key_facts: list[str] = field(default_factory=list)
    child_ids: list[str] = field(default_factory=list)
    embedding: list[float] | None = None
    created_at: float = field(default_factory=time.time)
    id: str = field(default_factory=new_id)


@dataclass
class QualityScore:
    """Narrative density rating for one message."""

    score: float
    label: str  # 'skip' | 'low' | 'medium' | 'high' | 'critical'
    reason: str
    word_count: int
    action_density: float


@dataclass
class ChunkScore:
    """Aggregate quality of a run of messages."""

    average_score: float
    max_score: float
    total_words: int
    quality_messages: int
    skip_messages: int
    scores: list[QualityScore]
    should_summarize: bool


@dataclass
class ContextSection:
    """One block of prompt content, built for a single allocation pass."""

    priority: int  # 1 = highest
    content: str
    tokens: int
    type: str  # 'system' | 'memory' | 'fact' | 'summary' | 'lorebook' | 'history' | 'post-history'
    label: str = ""
    confidence: float | None = None


@dataclass
class ContextBudget:
    """Hard token ceiling for one generation request."""

    max_context_tokens: int
    max_output_tokens: int


@dataclass
class ContextPreview:
    """What the UI context preview renders."""

    sections: list[ContextSection]
    total_tokens: int
    max_tokens: int
    warnings: list[str]
