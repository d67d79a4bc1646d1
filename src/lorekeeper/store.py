"""SQLite persistent store for Lorekeeper."""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from pathlib import Path

from lorekeeper.embedding import serialize_vector
from lorekeeper.models import (
    Character,
    Conversation,
    Lorebook,
    LorebookEntry,
    LorebookHistoryEntry,
    MemorySummary,
    Message,
    WorldFact,
    WorldState,
)
from lorekeeper.queries import (
    build_fact_similarity_query,
    build_fact_upsert,
    build_fact_vec_ddl,
    build_lineage_query,
    build_message_upsert,
    placeholders,
)

logger = logging.getLogger(__name__)


def _json_or_none(value) -> str | None:
    return json.dumps(value) if value is not None else None


def _loads(value, default=None):
    return json.loads(value) if value else default


class MemoryStore:
    """Key-indexed collections over one SQLite database.

    Per-conversation collections (messages, facts, summaries) are indexed by
    conversation id and removed together with their conversation.
    """

    def __init__(self, db_path: str, vector_dimensions: int = 384):
        self.vector_dimensions = vector_dimensions
        self.db = sqlite3.connect(db_path)
        self.db.row_factory = sqlite3.Row
        self._load_sqlite_vec()
        self._init_schema()

    def _load_sqlite_vec(self) -> None:
        """Load the sqlite-vec extension."""
        import sqlite_vec

        self.db.enable_load_extension(True)
        sqlite_vec.load(self.db)
        self.db.enable_load_extension(False)

    def _init_schema(self) -> None:
        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path) as f:
            schema = f.read()
        self.db.executescript(schema)
        self.db.execute(build_fact_vec_ddl(self.vector_dimensions))
        self.db.commit()

    def close(self) -> None:
        self.db.close()

    def __enter__(self) -> MemoryStore:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Characters
    # -------------------------------------------------------------------------

    def save_character(self, character: Character) -> None:
        data = {
            "description": character.description,
            "personality": character.personality,
            "scenario": character.scenario,
            "first_mes": character.first_mes,
            "system_prompt": character.system_prompt,
        }
        self.db.execute(
            """
            INSERT INTO characters (id, name, data, updated_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name, data = excluded.data, updated_at = excluded.updated_at
            """,
            (character.id, character.name, json.dumps(data), time.time()),
        )
        self.db.commit()
        # An empty card lorebook leaves the stored one alone
        if character.lorebook.entries:
            self.save_lorebook(character.id, character.lorebook)

    def get_character(self, character_id: str) -> Character | None:
        row = self.db.execute(
            "SELECT * FROM characters WHERE id = ?", (character_id,)
        ).fetchone()
        if row is None:
            return None
        data = json.loads(row["data"])
        return Character(
            id=row["id"],
            name=row["name"],
            description=data.get("description") or "",
            personality=data.get("personality") or "",
            scenario=data.get("scenario") or "",
            first_mes=data.get("first_mes") or "",
            system_prompt=data.get("system_prompt"),
            lorebook=self.get_lorebook(character_id) or Lorebook(),
        )

    # -------------------------------------------------------------------------
    # Conversations
    # -------------------------------------------------------------------------

    def save_conversation(self, conversation: Conversation) -> None:
        self.db.execute(
            """
            INSERT INTO conversations (id, character_id, title, world_state, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                world_state = excluded.world_state,
                updated_at = excluded.updated_at
            """,
            (
                conversation.id,
                conversation.character_id,
                conversation.title,
                json.dumps(conversation.world_state.to_dict()),
                conversation.created_at,
                conversation.updated_at,
            ),
        )
        self.db.commit()

    def _conversation_from_row(self, row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            character_id=row["character_id"],
            title=row["title"],
            world_state=WorldState.from_dict(_loads(row["world_state"])),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        row = self.db.execute(
            "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
        ).fetchone()
        return self._conversation_from_row(row) if row else None

    def list_conversations(self, character_id: str | None = None) -> list[Conversation]:
        query = "SELECT * FROM conversations WHERE 1=1"
        params = []
        if character_id is not None:
            query += " AND character_id = ?"
            params.append(character_id)
        query += " ORDER BY updated_at DESC"
        return [self._conversation_from_row(r) for r in self.db.execute(query, params)]

    def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation with its messages, facts and summaries."""
        self.db.execute(
            """
            DELETE FROM fact_vec WHERE rowid IN (
                SELECT pk FROM facts WHERE conversation_id = ?
            )
            """,
            (conversation_id,),
        )
        for table in ("facts", "summaries", "messages"):
            self.db.execute(f"DELETE FROM {table} WHERE conversation_id = ?", (conversation_id,))
        self.db.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        self.db.commit()
        logger.info("Deleted conversation %s", conversation_id)

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def save_message(self, message: Message) -> None:
        snapshot = message.world_state_snapshot
        self.db.execute(
            build_message_upsert(),
            {
                "id": message.id,
                "conversation_id": message.conversation_id,
                "parent_id": message.parent_id,
                "role": message.role,
                "content": message.content,
                "thought": message.thought,
                "is_active_branch": int(message.is_active_branch),
                "world_state_snapshot": json.dumps(snapshot.to_dict()) if snapshot else None,
                "message_order": message.message_order,
                "regeneration_index": message.regeneration_index,
                "created_at": message.created_at,
            },
        )
        self.db.commit()

    def get_messages(self, conversation_id: str) -> list[Message]:
        """Return every message of a conversation in creation order."""
        rows = self.db.execute(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY created_at, rowid",
            (conversation_id,),
        ).fetchall()
        return [
            Message(
                id=row["id"],
                conversation_id=row["conversation_id"],
                parent_id=row["parent_id"],
                role=row["role"],
                content=row["content"],
                thought=row["thought"],
                is_active_branch=bool(row["is_active_branch"]),
                world_state_snapshot=(
                    WorldState.from_dict(json.loads(row["world_state_snapshot"]))
                    if row["world_state_snapshot"]
                    else None
                ),
                message_order=row["message_order"],
                regeneration_index=row["regeneration_index"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def delete_messages(self, message_ids: list[str]) -> None:
        if not message_ids:
            return
        self.db.execute(
            f"DELETE FROM messages WHERE id IN ({placeholders(len(message_ids))})",
            list(message_ids),
        )
        self.db.commit()

    def get_lineage(self, message_id: str) -> list[str]:
        """Get message ids from the root down to the given message.

        Returns:
            Ids in root-to-leaf order, empty if the message is unknown
        """
        rows = self.db.execute(build_lineage_query(), {"message_id": message_id}).fetchall()
        return [row["id"] for row in reversed(rows)]

    # -------------------------------------------------------------------------
    # Facts
    # -------------------------------------------------------------------------

    def save_fact(self, fact: WorldFact) -> None:
        """Insert or update a fact and its vector."""
        self.db.execute(
            build_fact_upsert(),
            {
                "id": fact.id,
                "conversation_id": fact.conversation_id,
                "message_id": fact.message_id,
                "fact": fact.fact,
                "category": fact.category,
                "importance": fact.importance,
                "related_entities": json.dumps(fact.related_entities),
                "active": int(fact.active),
                "timestamp": fact.timestamp,
                "last_accessed_at": fact.last_accessed_at,
                "access_count": fact.access_count,
                "embedding": _json_or_none(fact.embedding),
                "branch_path": _json_or_none(fact.branch_path),
            },
        )
        pk = self.db.execute("SELECT pk FROM facts WHERE id = ?", (fact.id,)).fetchone()["pk"]
        self.db.execute("DELETE FROM fact_vec WHERE rowid = ?", (pk,))
        if fact.embedding and len(fact.embedding) == self.vector_dimensions:
            self.db.execute(
                "INSERT INTO fact_vec (rowid, embedding) VALUES (?, ?)",
                (pk, serialize_vector(fact.embedding)),
            )
        elif fact.embedding:
            logger.debug(
                "Fact %s has %d dimensions, index expects %d; not indexed",
                fact.id,
                len(fact.embedding),
                self.vector_dimensions,
            )
        self.db.commit()

    def _fact_from_row(self, row: sqlite3.Row) -> WorldFact:
        return WorldFact(
            id=row["id"],
            conversation_id=row["conversation_id"],
            message_id=row["message_id"],
            fact=row["fact"],
            category=row["category"],
            importance=row["importance"],
            related_entities=json.loads(row["related_entities"]),
            active=bool(row["active"]),
            timestamp=row["timestamp"],
            last_accessed_at=row["last_accessed_at"],
            access_count=row["access_count"],
            embedding=_loads(row["embedding"]),
            branch_path=_loads(row["branch_path"]),
        )

    def get_facts(self, conversation_id: str) -> list[WorldFact]:
        rows = self.db.execute(
            "SELECT * FROM facts WHERE conversation_id = ? ORDER BY pk", (conversation_id,)
        ).fetchall()
        return [self._fact_from_row(r) for r in rows]

    def delete_facts(self, fact_ids: list[str]) -> None:
        if not fact_ids:
            return
        marks = placeholders(len(fact_ids))
        self.db.execute(
            f"DELETE FROM fact_vec WHERE rowid IN (SELECT pk FROM facts WHERE id IN ({marks}))",
            list(fact_ids),
        )
        self.db.execute(f"DELETE FROM facts WHERE id IN ({marks})", list(fact_ids))
        self.db.commit()

    def search_facts(
        self,
        conversation_id: str,
        vector: list[float],
        limit: int = 10,
    ) -> list[tuple[WorldFact, float]]:
        """KNN search over a conversation's fact vectors.

        Returns:
            (fact, distance) pairs, nearest first
        """
        rows = self.db.execute(
            build_fact_similarity_query(),
            {
                "query_vector": serialize_vector(vector),
                # k applies before the conversation filter
                "limit": limit * 4,
                "conversation_id": conversation_id,
            },
        ).fetchall()
        return [(self._fact_from_row(r), r["distance"]) for r in rows[:limit]]

    # -------------------------------------------------------------------------
    # Summaries
    # -------------------------------------------------------------------------

    def save_summary(self, summary: MemorySummary) -> None:
        self.db.execute(
            """
            INSERT OR REPLACE INTO summaries (
                id, conversation_id, level, range_start, range_end, content,
                key_facts, child_ids, embedding, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                summary.id,
                summary.conversation_id,
                summary.level,
                summary.message_range[0],
                summary.message_range[1],
                summary.content,
                json.dumps(summary.key_facts),
                json.dumps(summary.child_ids),
                _json_or_none(summary.embedding),
                summary.created_at,
            ),
        )
        self.db.commit()

    def get_summaries(self, conversation_id: str) -> list[MemorySummary]:
        rows = self.db.execute(
            "SELECT * FROM summaries WHERE conversation_id = ? ORDER BY level, range_start",
            (conversation_id,),
        ).fetchall()
        return [
            MemorySummary(
                id=row["id"],
                conversation_id=row["conversation_id"],
                level=row["level"],
                message_range=(row["range_start"], row["range_end"]),
                content=row["content"],
                key_facts=json.loads(row["key_facts"]),
                child_ids=json.loads(row["child_ids"]),
                embedding=_loads(row["embedding"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # -------------------------------------------------------------------------
    # Lorebooks
    # -------------------------------------------------------------------------

    def save_lorebook(self, character_id: str, lorebook: Lorebook) -> None:
        self.db.execute(
            "INSERT OR REPLACE INTO lorebooks (character_id, data) VALUES (?, ?)",
            (character_id, json.dumps(lorebook.to_dict())),
        )
        self.db.commit()

    def get_lorebook(self, character_id: str) -> Lorebook | None:
        row = self.db.execute(
            "SELECT data FROM lorebooks WHERE character_id = ?", (character_id,)
        ).fetchone()
        return Lorebook.from_dict(json.loads(row["data"])) if row else None

    def add_lorebook_history(self, item: LorebookHistoryEntry) -> None:
        self.db.execute(
            """
            INSERT INTO lorebook_history (id, character_id, type, entry, previous_entry_id, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                item.id,
                item.character_id,
                item.type,
                json.dumps(item.entry.to_dict()),
                item.previous_entry_id,
                item.timestamp,
            ),
        )
        self.db.commit()

    def get_lorebook_history(self, character_id: str) -> list[LorebookHistoryEntry]:
        rows = self.db.execute(
            "SELECT * FROM lorebook_history WHERE character_id = ? ORDER BY timestamp, rowid",
            (character_id,),
        ).fetchall()
        return [
            LorebookHistoryEntry(
                id=row["id"],
                character_id=row["character_id"],
                type=row["type"],
                entry=LorebookEntry.from_dict(json.loads(row["entry"])),
                previous_entry_id=row["previous_entry_id"],
                timestamp=row["timestamp"],
            )
            for row in rows
        ]

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    def get_setting(self, key: str) -> str | None:
        row = self.db.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_setting(self, key: str, value: str | None) -> None:
        self.db.execute(
            "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)", (key, value)
        )
        self.db.commit()

    def increment_counter(self, key: str) -> int:
        """Increment a persisted integer counter and return its new value."""
        value = int(self.get_setting(key) or 0) + 1
        self.set_setting(key, str(value))
        return value
