"""Conversation tree manager.

Messages live in an arena keyed by id. ``parent_id`` is the only stored
edge; the children index is derived on demand. Among the messages sharing a
``(conversation_id, parent_id)`` pair exactly one is the active branch, and
the active path is found by following active children down from the active
root.

All mutations are synchronous and in-memory. They mark records dirty; a
later ``flush`` writes them to the store.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from lorekeeper.analyst import apply_world_state_overrides, merge_world_state
from lorekeeper.models import Conversation, Message, WorldState, WorldStateChanges

if TYPE_CHECKING:
    from lorekeeper.store import MemoryStore

logger = logging.getLogger(__name__)


class ConversationTree:
    """In-memory arena of conversations and their message trees."""

    def __init__(self):
        self._conversations: dict[str, Conversation] = {}
        # Insertion order is creation order
        self._messages: dict[str, Message] = {}
        self._dirty_messages: set[str] = set()
        self._deleted_messages: set[str] = set()
        self._dirty_conversations: set[str] = set()
        self._deleted_conversations: set[str] = set()

    # -------------------------------------------------------------------------
    # Loading and persistence
    # -------------------------------------------------------------------------

    def load(self, conversation: Conversation, messages: list[Message]) -> None:
        """Adopt a stored conversation without marking anything dirty.

        Args:
            conversation: The conversation record
            messages: Its messages in creation order
        """
        self._conversations[conversation.id] = conversation
        for message in messages:
            self._messages[message.id] = message

    def unload(self, conversation_id: str) -> None:
        """Forget a conversation's in-memory state (pending writes included)."""
        self._conversations.pop(conversation_id, None)
        for message in self.messages(conversation_id):
            del self._messages[message.id]
            self._dirty_messages.discard(message.id)
        self._dirty_conversations.discard(conversation_id)

    @property
    def pending_writes(self) -> int:
        return (
            len(self._dirty_messages)
            + len(self._deleted_messages)
            + len(self._dirty_conversations)
            + len(self._deleted_conversations)
        )

    async def flush(self, store: MemoryStore) -> int:
        """Write dirty records to the store.

        Returns:
            Number of records written or deleted
        """
        conversations, self._dirty_conversations = self._dirty_conversations, set()
        deleted_conversations, self._deleted_conversations = self._deleted_conversations, set()
        messages, self._dirty_messages = self._dirty_messages, set()
        deleted, self._deleted_messages = self._deleted_messages, set()

        for conversation_id in deleted_conversations:
            store.delete_conversation(conversation_id)
        for conversation_id in conversations:
            conversation = self._conversations.get(conversation_id)
            if conversation is not None:
                store.save_conversation(conversation)
        store.delete_messages(sorted(deleted))
        for message in list(self._messages.values()):
            if message.id in messages:
                store.save_message(message)

        written = len(conversations) + len(deleted_conversations) + len(messages) + len(deleted)
        if written:
            logger.debug("Flushed %d tree records", written)
        return written

    def _touch_message(self, message: Message) -> None:
        self._dirty_messages.add(message.id)

    def _touch_conversation(self, conversation: Conversation) -> None:
        conversation.updated_at = time.time()
        self._dirty_conversations.add(conversation.id)

    # -------------------------------------------------------------------------
    # Conversations
    # -------------------------------------------------------------------------

    def create_conversation(
        self,
        character_id: str,
        title: str = "New conversation",
        world_state: WorldState | None = None,
    ) -> Conversation:
        conversation = Conversation(
            character_id=character_id,
            title=title,
            world_state=world_state.copy() if world_state else WorldState(),
        )
        self._conversations[conversation.id] = conversation
        self._touch_conversation(conversation)
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def delete_conversation(self, conversation_id: str) -> None:
        """Remove a conversation and all of its messages."""
        if conversation_id not in self._conversations:
            return
        self.unload(conversation_id)
        self._deleted_conversations.add(conversation_id)

    def is_deleted(self, conversation_id: str) -> bool:
        """True while a deleted conversation awaits its flush."""
        return conversation_id in self._deleted_conversations

    # -------------------------------------------------------------------------
    # Structure
    # -------------------------------------------------------------------------

    def get_message(self, message_id: str) -> Message | None:
        return self._messages.get(message_id)

    def messages(self, conversation_id: str) -> list[Message]:
        """All messages of a conversation, every branch, in creation order."""
        return [m for m in self._messages.values() if m.conversation_id == conversation_id]

    def children(self, message_id: str | None, conversation_id: str | None = None) -> list[Message]:
        """Children of a message in creation order.

        With ``message_id=None`` returns the roots of ``conversation_id``.
        """
        if message_id is not None:
            parent = self._messages.get(message_id)
            if parent is None:
                return []
            conversation_id = parent.conversation_id
        return [
            m
            for m in self._messages.values()
            if m.parent_id == message_id and m.conversation_id == conversation_id
        ]

    def siblings(self, message: Message) -> list[Message]:
        """The sibling group of a message, itself included."""
        return self.children(message.parent_id, message.conversation_id)

    def get_active_branch(self, conversation_id: str) -> list[Message]:
        """The active path from root to leaf."""
        path = []
        level = self.children(None, conversation_id)
        while level:
            active = next((m for m in level if m.is_active_branch), None)
            if active is None:
                break
            path.append(active)
            level = self.children(active.id)
        return path

    def get_active_leaf(self, conversation_id: str) -> Message | None:
        path = self.get_active_branch(conversation_id)
        return path[-1] if path else None

    def get_branch_path(self, message_id: str) -> list[str]:
        """Ids from the root down to message_id."""
        path = []
        message = self._messages.get(message_id)
        while message is not None:
            path.append(message.id)
            message = self._messages.get(message.parent_id) if message.parent_id else None
        path.reverse()
        return path

    def get_sibling_info(self, message_id: str) -> tuple[int, int]:
        """1-based position of a message among its siblings, and their count."""
        message = self._messages.get(message_id)
        if message is None:
            return 1, 1
        siblings = self.siblings(message)
        return siblings.index(message) + 1, len(siblings)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def _activate(self, message: Message) -> None:
        for sibling in self.siblings(message):
            active = sibling.id == message.id
            if sibling.is_active_branch != active:
                sibling.is_active_branch = active
                self._touch_message(sibling)

    def add_message(self, message: Message) -> Message | None:
        """Insert a node and make it the active child of its parent.

        The new node's ancestors are activated too, so it always ends up on
        the active path. Unknown conversations or parents make this a no-op.

        Returns:
            The inserted message, or None if it was not inserted
        """
        if message.conversation_id not in self._conversations or message.id in self._messages:
            return None
        parent = None
        if message.parent_id is not None:
            parent = self._messages.get(message.parent_id)
            if parent is None or parent.conversation_id != message.conversation_id:
                return None

        siblings = self.children(message.parent_id, message.conversation_id)
        message.message_order = parent.message_order + 1 if parent else 1
        message.regeneration_index = (
            max((s.regeneration_index for s in siblings), default=-1) + 1
        )
        message.is_active_branch = True
        message.world_state_snapshot = None
        self._messages[message.id] = message
        self._touch_message(message)

        node = message
        while node is not None:
            self._activate(node)
            node = self._messages.get(node.parent_id) if node.parent_id else None

        self._touch_conversation(self._conversations[message.conversation_id])
        return message

    def edit_message(self, message_id: str, content: str, thought: str | None = None) -> None:
        message = self._messages.get(message_id)
        if message is None:
            return
        message.content = content
        if thought is not None:
            message.thought = thought
        self._touch_message(message)

    def delete_message(self, message_id: str) -> list[str]:
        """Remove a node and its subtree.

        If the node was active, the first remaining sibling by creation order
        becomes active and the world state is restored from the new path.

        Returns:
            Ids of every removed message
        """
        message = self._messages.get(message_id)
        if message is None:
            return []

        removed = []
        stack = [message]
        while stack:
            node = stack.pop()
            removed.append(node.id)
            stack.extend(self.children(node.id))
        for node_id in removed:
            del self._messages[node_id]
            self._dirty_messages.discard(node_id)
            self._deleted_messages.add(node_id)

        if message.is_active_branch:
            remaining = self.siblings(message)
            if remaining:
                self._activate(remaining[0])
            self.restore_world_state(message.conversation_id)
        return removed

    def navigate_to_sibling(self, message_id: str, direction: str) -> Message | None:
        """Move the active flag to the previous or next sibling.

        Returns:
            The newly active sibling, or None when out of range
        """
        if direction not in ("prev", "next"):
            raise ValueError(f"Invalid direction: {direction}")
        message = self._messages.get(message_id)
        if message is None:
            return None

        siblings = self.siblings(message)
        target = siblings.index(message) + (-1 if direction == "prev" else 1)
        if target < 0 or target >= len(siblings):
            return None

        self._activate(siblings[target])
        self.restore_world_state(message.conversation_id)
        return siblings[target]

    # -------------------------------------------------------------------------
    # World state
    # -------------------------------------------------------------------------

    def restore_world_state(self, conversation_id: str) -> WorldState | None:
        """Reset the conversation's state from the newest snapshot on the active path."""
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return None
        state = WorldState()
        for node in reversed(self.get_active_branch(conversation_id)):
            if node.world_state_snapshot is not None:
                state = node.world_state_snapshot.copy()
                break
        conversation.world_state = state
        self._touch_conversation(conversation)
        return state

    def update_world_state(
        self,
        conversation_id: str,
        delta: WorldStateChanges | dict,
    ) -> WorldState | None:
        """Merge a delta into the current state and snapshot it on the active leaf.

        Args:
            conversation_id: Conversation to update
            delta: Analyst changes, or a dict of field overrides from a user edit

        Returns:
            The new state, or None for an unknown conversation
        """
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return None

        if isinstance(delta, WorldStateChanges):
            state = merge_world_state(conversation.world_state, delta)
        else:
            state = apply_world_state_overrides(conversation.world_state, delta)

        conversation.world_state = state
        self._touch_conversation(conversation)

        leaf = self.get_active_leaf(conversation_id)
        if leaf is not None:
            leaf.world_state_snapshot = state.copy()
            self._touch_message(leaf)
        return state
