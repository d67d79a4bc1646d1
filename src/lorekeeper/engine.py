"""Lorekeeper memory engine - core implementation."""

from __future__ import annotations

import asyncio
import logging
import os
import re
from typing import AsyncIterator

from lorekeeper.allocator import ContextAllocation, PREFILL_PROVIDERS, allocate_context, build_system_prompt
from lorekeeper.analyst import analyze_message, derive_world_state_changes
from lorekeeper.embedding import EmbeddingBackend, create_embedding_backend
from lorekeeper.facts import FactStore
from lorekeeper.llm import (
    ChatProvider,
    KeyProvider,
    MissingCredentialError,
    ProviderFactory,
    complete_with_fallback,
    create_provider,
)
from lorekeeper.lorebook import (
    LorebookLedger,
    build_consolidation_request,
    build_lorebook_extraction_prompt,
    get_active_lorebook_entries,
    parse_consolidation_response,
    parse_lorebook_extraction_response,
)
from lorekeeper.models import (
    Character,
    ContextBudget,
    Conversation,
    EngineConfig,
    GenerationSettings,
    Message,
    Persona,
    WorldFact,
    WorldState,
    WorldStateChanges,
)
from lorekeeper.retrieval import retrieve_relevant_context
from lorekeeper.store import MemoryStore
from lorekeeper.summaries import summarize_pending
from lorekeeper.tasks import BackgroundTasks, advance_turn_counter
from lorekeeper.tokens import TokenCounter, count_tokens
from lorekeeper.tree import ConversationTree

logger = logging.getLogger(__name__)

_THOUGHT = re.compile(r"<(think|reasoning)>(.*?)</\1>", re.IGNORECASE | re.DOTALL)


def env_key_provider(provider: str) -> str | None:
    """Read a provider's API key from ``<PROVIDER>_API_KEY``."""
    return os.getenv(f"{provider.upper()}_API_KEY")


def split_thought(text: str) -> tuple[str, str | None]:
    """Separate <think>/<reasoning> blocks from the visible reply."""
    thoughts = [m.group(2).strip() for m in _THOUGHT.finditer(text)]
    content = _THOUGHT.sub("", text).strip()
    return content, "\n\n".join(thoughts) if thoughts else None


class MemoryEngine:
    """Context assembly and memory engine for long-running roleplay chats."""

    def __init__(
        self,
        config: EngineConfig,
        store: MemoryStore | None = None,
        embedding: EmbeddingBackend | None = None,
        key_provider: KeyProvider | None = None,
        provider_factory: ProviderFactory | None = None,
        token_counter: TokenCounter = count_tokens,
    ):
        self.config = config
        self.store = store or MemoryStore(config.db_path, config.vector_dimensions)
        self._embedding = embedding or create_embedding_backend(config)
        self._key_provider = key_provider or env_key_provider
        self._provider_factory = provider_factory or create_provider
        self.count_tokens = token_counter
        self.tree = ConversationTree()
        self.tasks = BackgroundTasks()
        self._fact_stores: dict[str, FactStore] = {}
        self._ledgers: dict[str, LorebookLedger] = {}
        self._summary_locks: dict[str, asyncio.Lock] = {}
        self._flush_scheduled = False

    def close(self) -> None:
        """Close database connection."""
        self.store.close()

    def __enter__(self) -> MemoryEngine:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Characters and lorebooks
    # -------------------------------------------------------------------------

    def register_character(self, character: Character) -> str:
        """Store a character card.

        A card with lorebook entries replaces the stored lorebook; an empty one
        keeps the entries already learned for the character.
        """
        self.store.save_character(character)
        self._ledgers.pop(character.id, None)
        if character.lorebook.entries:
            self.lorebook(character.id).import_card(character.lorebook)
        return character.id

    def get_character(self, character_id: str) -> Character:
        character = self.store.get_character(character_id)
        if character is None:
            raise ValueError(f"Character not found: {character_id}")
        character.lorebook = self.lorebook(character_id).lorebook
        return character

    def lorebook(self, character_id: str) -> LorebookLedger:
        """Audited lorebook handle for a character."""
        if character_id not in self._ledgers:
            self._ledgers[character_id] = LorebookLedger(character_id, self.store)
        return self._ledgers[character_id]

    # -------------------------------------------------------------------------
    # Conversations
    # -------------------------------------------------------------------------

    def create_conversation(
        self,
        character_id: str,
        title: str | None = None,
        world_state: WorldState | None = None,
    ) -> Conversation:
        """Start a conversation, opening with the character's first message."""
        character = self.get_character(character_id)
        conversation = self.tree.create_conversation(
            character_id, title or f"Chat with {character.name}", world_state
        )
        if character.first_mes:
            self.tree.add_message(
                Message(conversation_id=conversation.id, role="assistant", content=character.first_mes)
            )
        self._schedule_flush()
        return conversation

    def load_conversation(self, conversation_id: str) -> Conversation:
        """Load a stored conversation into memory (no-op if already loaded)."""
        conversation = self.tree.get_conversation(conversation_id)
        if conversation is not None:
            return conversation
        conversation = None
        if not self.tree.is_deleted(conversation_id):
            conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise ValueError(f"Conversation not found: {conversation_id}")
        self.tree.load(conversation, self.store.get_messages(conversation_id))
        return conversation

    def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation with its messages, facts and summaries."""
        if self.tree.get_conversation(conversation_id) is None:
            if self.store.get_conversation(conversation_id) is None:
                return
            self.load_conversation(conversation_id)
        self.tree.delete_conversation(conversation_id)
        self._fact_stores.pop(conversation_id, None)
        self._schedule_flush()

    def list_conversations(self, character_id: str | None = None) -> list[Conversation]:
        return self.store.list_conversations(character_id)

    # -------------------------------------------------------------------------
    # Tree operations
    # -------------------------------------------------------------------------

    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        parent_id: str | None = None,
        thought: str | None = None,
    ) -> Message | None:
        """Append a message under parent_id, or under the active leaf if omitted."""
        self.load_conversation(conversation_id)
        if parent_id is None:
            leaf = self.tree.get_active_leaf(conversation_id)
            parent_id = leaf.id if leaf else None
        message = self.tree.add_message(
            Message(
                conversation_id=conversation_id,
                role=role,
                content=content,
                parent_id=parent_id,
                thought=thought,
            )
        )
        self._schedule_flush()
        return message

    def add_sibling(self, message_id: str, content: str, thought: str | None = None) -> Message | None:
        """Add an alternative version of a message (a regeneration)."""
        original = self.tree.get_message(message_id)
        if original is None:
            return None
        message = self.tree.add_message(
            Message(
                conversation_id=original.conversation_id,
                role=original.role,
                content=content,
                parent_id=original.parent_id,
                thought=thought,
            )
        )
        self._schedule_flush()
        return message

    def edit_message(self, message_id: str, content: str) -> None:
        self.tree.edit_message(message_id, content)
        self._schedule_flush()

    def delete_message(self, message_id: str) -> list[str]:
        removed = self.tree.delete_message(message_id)
        self._schedule_flush()
        return removed

    def navigate_to_sibling(self, message_id: str, direction: str) -> Message | None:
        target = self.tree.navigate_to_sibling(message_id, direction)
        self._schedule_flush()
        return target

    def get_active_branch(self, conversation_id: str) -> list[Message]:
        self.load_conversation(conversation_id)
        return self.tree.get_active_branch(conversation_id)

    def get_sibling_info(self, message_id: str) -> tuple[int, int]:
        return self.tree.get_sibling_info(message_id)

    def get_world_state(self, conversation_id: str) -> WorldState:
        return self.load_conversation(conversation_id).world_state

    def update_world_state(
        self, conversation_id: str, delta: WorldStateChanges | dict
    ) -> WorldState | None:
        self.load_conversation(conversation_id)
        state = self.tree.update_world_state(conversation_id, delta)
        self._schedule_flush()
        return state

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _schedule_flush(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop: writes stay pending until the next flush()
            return
        if not self._flush_scheduled:
            self._flush_scheduled = True
            self.tasks.submit("flush", self._scheduled_flush())

    async def _scheduled_flush(self) -> None:
        self._flush_scheduled = False
        await self.tree.flush(self.store)

    async def flush(self) -> int:
        """Write pending tree changes to the store."""
        return await self.tree.flush(self.store)

    async def drain(self) -> None:
        """Wait for background work, then flush."""
        await self.tasks.drain()
        await self.flush()

    # -------------------------------------------------------------------------
    # Facts
    # -------------------------------------------------------------------------

    def facts(self, conversation_id: str) -> FactStore:
        """Conversation-scoped fact store."""
        if conversation_id not in self._fact_stores:
            self._fact_stores[conversation_id] = FactStore(
                conversation_id,
                self.store,
                self._embedding,
                merge_threshold=self.config.fact_merge_threshold,
                dedup_overlap=self.config.fact_dedup_overlap,
            )
        return self._fact_stores[conversation_id]

    def maintain_facts(self, conversation_id: str) -> int:
        """Run the semantic merge pass; returns the number of clusters merged."""
        return self.facts(conversation_id).merge_related()

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def _provider(self, name: str) -> ChatProvider:
        api_key = self._key_provider(name)
        if not api_key:
            raise MissingCredentialError(name)
        return self._provider_factory(name, api_key)

    def _background_provider(self) -> ChatProvider | None:
        try:
            return self._provider(self.config.background_provider)
        except MissingCredentialError:
            return None

    def build_context(
        self,
        conversation_id: str,
        settings: GenerationSettings | None = None,
        persona: Persona | None = None,
        exclude_leaf: bool = False,
        count_tokens: TokenCounter | None = None,
    ) -> ContextAllocation:
        """Assemble the generation payload for the active branch.

        Args:
            conversation_id: Conversation to build for
            settings: Generation preset
            persona: The player's persona
            exclude_leaf: Leave out the active leaf (when regenerating it)
            count_tokens: Token counter, defaults to the engine's

        Returns:
            ContextAllocation ready to send
        """
        settings = settings or GenerationSettings()
        count_tokens = count_tokens or self.count_tokens
        conversation = self.load_conversation(conversation_id)
        character = self.get_character(conversation.character_id)
        branch = self.tree.get_active_branch(conversation_id)
        if exclude_leaf and branch:
            branch = branch[:-1]

        entries = []
        if settings.use_lorebooks:
            entries = get_active_lorebook_entries(
                branch, character.lorebook, settings.lorebook, count_tokens
            )
        system_prompt = build_system_prompt(
            character, conversation.world_state, entries, settings.system_prompt_template, persona
        )

        sections = []
        if branch:
            query = next((m.content for m in reversed(branch) if m.role == "user"), branch[-1].content)
            branch_ids = {m.id for m in branch}
            sections = retrieve_relevant_context(
                query,
                self.facts(conversation_id),
                self.store.get_summaries(conversation_id) if settings.use_auto_summarization else [],
                self._embedding,
                settings.rag_token_budget,
                active_branch_ids=branch_ids,
                count_tokens=count_tokens,
            )

        return allocate_context(
            system_prompt,
            sections,
            branch,
            ContextBudget(settings.max_context_tokens, settings.max_output_tokens),
            post_history=settings.post_history_instructions,
            provider=settings.provider,
            assistant_prefill=settings.assistant_prefill,
            count_tokens=count_tokens,
        )

    def _prefill(self, settings: GenerationSettings) -> str:
        if settings.assistant_prefill and settings.provider in PREFILL_PROVIDERS:
            return settings.assistant_prefill
        return ""

    async def generate(
        self,
        conversation_id: str,
        user_message: str | None,
        settings: GenerationSettings | None = None,
        persona: Persona | None = None,
    ) -> Message:
        """Run one foreground turn and schedule its background work.

        Raises:
            MissingCredentialError: if no key is configured for the provider
            ProviderError: if the provider call fails
        """
        settings = settings or GenerationSettings()
        provider = self._provider(settings.provider)
        self.load_conversation(conversation_id)
        if user_message:
            self.add_message(conversation_id, "user", user_message)

        allocation = self.build_context(conversation_id, settings, persona)
        text = await provider.complete(
            settings.model,
            allocation.messages,
            temperature=settings.temperature,
            max_tokens=settings.max_output_tokens,
        )
        return self._finish_turn(conversation_id, self._prefill(settings) + text, settings, persona)

    async def regenerate(
        self,
        conversation_id: str,
        settings: GenerationSettings | None = None,
        persona: Persona | None = None,
    ) -> Message:
        """Generate a new sibling for the active leaf assistant message."""
        settings = settings or GenerationSettings()
        provider = self._provider(settings.provider)
        self.load_conversation(conversation_id)
        leaf = self.tree.get_active_leaf(conversation_id)
        if leaf is None or leaf.role != "assistant":
            raise ValueError("Nothing to regenerate: the active leaf is not an assistant message")

        allocation = self.build_context(conversation_id, settings, persona, exclude_leaf=True)
        text = await provider.complete(
            settings.model,
            allocation.messages,
            temperature=settings.temperature,
            max_tokens=settings.max_output_tokens,
        )
        content, thought = split_thought(self._prefill(settings) + text)
        message = self.add_sibling(leaf.id, content, thought)
        self.on_turn_complete(conversation_id, message.id, settings, persona)
        return message

    async def stream_generate(
        self,
        conversation_id: str,
        user_message: str | None,
        settings: GenerationSettings | None = None,
        persona: Persona | None = None,
    ) -> AsyncIterator[str]:
        """Stream one foreground turn; the message is stored once streaming ends."""
        settings = settings or GenerationSettings()
        provider = self._provider(settings.provider)
        self.load_conversation(conversation_id)
        if user_message:
            self.add_message(conversation_id, "user", user_message)

        allocation = self.build_context(conversation_id, settings, persona)
        parts = [self._prefill(settings)]
        async for chunk in provider.stream(
            settings.model,
            allocation.messages,
            temperature=settings.temperature,
            max_tokens=settings.max_output_tokens,
        ):
            parts.append(chunk)
            yield chunk
        self._finish_turn(conversation_id, "".join(parts), settings, persona)

    def _finish_turn(self, conversation_id, text, settings, persona) -> Message:
        content, thought = split_thought(text)
        message = self.add_message(conversation_id, "assistant", content, thought=thought)
        self.on_turn_complete(conversation_id, message.id, settings, persona)
        return message

    # -------------------------------------------------------------------------
    # Background work
    # -------------------------------------------------------------------------

    def on_turn_complete(
        self,
        conversation_id: str,
        message_id: str,
        settings: GenerationSettings | None = None,
        persona: Persona | None = None,
    ) -> None:
        """Submit the post-turn background work for a fully streamed message.

        Must be called from a running event loop.
        """
        settings = settings or GenerationSettings()
        persona = persona or Persona()
        message = self.tree.get_message(message_id)
        conversation = self.tree.get_conversation(conversation_id)
        if message is None or conversation is None:
            return

        facts_task = self.tasks.submit(
            f"facts:{message_id}", self._extract_facts(conversation_id, message_id, persona)
        )
        self.tasks.submit(
            f"analyst:{message_id}",
            self._analyze(conversation_id, message_id, persona, facts_task),
        )
        if settings.use_auto_summarization:
            self.tasks.submit(f"summaries:{conversation_id}", self._summarize(conversation_id, persona))
        if message.role == "assistant":
            character_id = conversation.character_id
            self.tasks.submit(
                f"lorebook:{message_id}", self._extract_lorebook(character_id, message.content)
            )
            if advance_turn_counter(
                self.store, f"lorebook_turns:{character_id}", self.config.consolidation_interval
            ):
                self.tasks.submit(
                    f"consolidate:{character_id}", self._consolidate_lorebook(character_id)
                )
        self._schedule_flush()

    async def _extract_facts(
        self, conversation_id: str, message_id: str, persona: Persona
    ) -> list[WorldFact]:
        message = self.tree.get_message(message_id)
        conversation = self.tree.get_conversation(conversation_id)
        if message is None or conversation is None:
            return []
        character = self.get_character(conversation.character_id)
        return await self.facts(conversation_id).extract_from_message(
            self._background_provider(),
            self.config.background_models,
            message_id,
            message.content,
            conversation.world_state,
            character.name,
            persona.name,
            branch_path=self.tree.get_branch_path(message_id),
        )

    async def _analyze(
        self,
        conversation_id: str,
        message_id: str,
        persona: Persona,
        facts_task: asyncio.Task | None = None,
    ) -> None:
        message = self.tree.get_message(message_id)
        conversation = self.tree.get_conversation(conversation_id)
        if message is None or conversation is None:
            return
        character = self.get_character(conversation.character_id)

        provider = self._background_provider()
        if provider is not None:
            changes = await analyze_message(
                provider,
                self.config.background_models,
                conversation.world_state,
                persona,
                character.name,
                message.content,
            )
        elif facts_task is not None:
            await asyncio.wait([facts_task])
            if facts_task.cancelled() or facts_task.exception() is not None:
                return
            changes = derive_world_state_changes(
                facts_task.result(), conversation.world_state, character.name, persona.name
            )
        else:
            return

        if changes is None or changes.is_empty():
            return
        self.tree.update_world_state(conversation_id, changes)
        self._schedule_flush()

    async def _summarize(self, conversation_id: str, persona: Persona) -> None:
        provider = self._background_provider()
        conversation = self.tree.get_conversation(conversation_id)
        if provider is None or conversation is None:
            return
        character = self.get_character(conversation.character_id)
        # One pass at a time per conversation; each pass reads the summaries the previous one wrote
        lock = self._summary_locks.setdefault(conversation_id, asyncio.Lock())
        async with lock:
            await summarize_pending(
                provider,
                self.config.background_models,
                conversation_id,
                self.tree.get_active_branch(conversation_id),
                self.store,
                self._embedding,
                character_name=character.name,
                user_name=persona.name,
                base_chunk_size=self.config.summary_chunk_size,
            )

    async def _extract_lorebook(self, character_id: str, content: str) -> None:
        provider = self._background_provider()
        if provider is None:
            return
        ledger = self.lorebook(character_id)
        text, _ = await complete_with_fallback(
            provider,
            self.config.background_models,
            [
                {"role": "system", "content": build_lorebook_extraction_prompt(ledger.keys())},
                {"role": "user", "content": f"Extract new world facts from this AI response:\n\n{content}"},
            ],
        )
        ledger.add_ai_entries(parse_lorebook_extraction_response(text))

    async def _consolidate_lorebook(self, character_id: str) -> None:
        provider = self._background_provider()
        ledger = self.lorebook(character_id)
        if provider is None or len(ledger.lorebook.entries) < 2:
            return
        text, _ = await complete_with_fallback(
            provider,
            self.config.background_models,
            build_consolidation_request(ledger.lorebook.entries),
        )
        result = parse_consolidation_response(text)
        if result is None:
            logger.info("Unparseable lorebook consolidation for %s", character_id)
            return
        merged = ledger.consolidate(result)
        logger.info("Lorebook consolidation for %s merged %d entries", character_id, merged)
