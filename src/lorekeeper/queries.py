"""SQL query builders for Lorekeeper."""


def build_lineage_query() -> str:
    """Build recursive CTE walking a message up to its root.

    Rows come back leaf first, with ``depth`` 0 for the starting message.
    """
    return """
    WITH RECURSIVE lineage(id, parent_id, depth) AS (
        SELECT id, parent_id, 0 FROM messages WHERE id = :message_id
        UNION ALL
        SELECT m.id, m.parent_id, l.depth + 1
        FROM messages m
        JOIN lineage l ON m.id = l.parent_id
    )
    SELECT id FROM lineage ORDER BY depth
    """


def build_fact_vec_ddl(dimensions: int) -> str:
    """Build DDL for the fact vector table."""
    return f"""
    CREATE VIRTUAL TABLE IF NOT EXISTS fact_vec
    USING vec0(embedding float[{dimensions}])
    """


def build_fact_similarity_query() -> str:
    """Build query for a conversation's facts by vector similarity.

    sqlite-vec applies ``k`` before the join, so callers over-fetch and the
    conversation filter may return fewer rows than requested.
    """
    return """
    SELECT f.*, fv.distance
    FROM fact_vec fv
    JOIN facts f ON fv.rowid = f.pk
    WHERE fv.embedding MATCH :query_vector
      AND k = :limit
      AND f.conversation_id = :conversation_id
    ORDER BY fv.distance
    """


def build_fact_upsert() -> str:
    return """
    INSERT INTO facts (
        id, conversation_id, message_id, fact, category, importance,
        related_entities, active, timestamp, last_accessed_at, access_count,
        embedding, branch_path
    )
    VALUES (
        :id, :conversation_id, :message_id, :fact, :category, :importance,
        :related_entities, :active, :timestamp, :last_accessed_at, :access_count,
        :embedding, :branch_path
    )
    ON CONFLICT(id) DO UPDATE SET
        fact = excluded.fact,
        category = excluded.category,
        importance = excluded.importance,
        related_entities = excluded.related_entities,
        active = excluded.active,
        timestamp = excluded.timestamp,
        last_accessed_at = excluded.last_accessed_at,
        access_count = excluded.access_count,
        embedding = excluded.embedding,
        branch_path = excluded.branch_path
    """


def build_message_upsert() -> str:
    return """
    INSERT INTO messages (
        id, conversation_id, parent_id, role, content, thought, is_active_branch,
        world_state_snapshot, message_order, regeneration_index, created_at
    )
    VALUES (
        :id, :conversation_id, :parent_id, :role, :content, :thought, :is_active_branch,
        :world_state_snapshot, :message_order, :regeneration_index, :created_at
    )
    ON CONFLICT(id) DO UPDATE SET
        content = excluded.content,
        thought = excluded.thought,
        is_active_branch = excluded.is_active_branch,
        world_state_snapshot = excluded.world_state_snapshot
    """


def placeholders(count: int) -> str:
    """Return ``?, ?, ...`` for an IN clause of count items."""
    return ", ".join("?" for _ in range(count))
