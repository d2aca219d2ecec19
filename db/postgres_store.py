# db/postgres_store.py

"""
asyncpg + pgvector implementation of the storage interface.

Atomicity comes from the database: unique-constraint upserts for stats and
relationships, a row lock on the existing card while its data bag is merged,
and a row lock on the story while the next transcript sequence is allocated.
Nearest-neighbour search uses pgvector's L2 operator (``<->``).
"""

import asyncio
import json
import logging
import re
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional, Sequence

import asyncpg

from db.connection import get_db_connection_context
from db.models import (
    Card,
    CharacterMemory,
    CharacterRelationship,
    CharacterStat,
    MemoryInput,
    RelationshipInput,
    StatInput,
    Story,
    StoryMessage,
)
from db.store import StoryStore
from utils.error_handling import NotFoundError, OperationTimeoutError, StoryNotFoundError
from utils.structured_merge import merge_structured_values, sanitize_structured_object

logger = logging.getLogger(__name__)

_UUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")

CARD_COLUMNS = "id, story_id, type, name, description, data, embedding, created_at, updated_at"
MEMORY_COLUMNS = (
    "id, story_id, owner_card_id, subject_card_id, source_message_id, source_type, summary, "
    "context, tags, importance, decay_factor, embedding, created_at, updated_at, last_accessed_at"
)
RELATIONSHIP_COLUMNS = (
    "id, story_id, source_card_id, target_card_id, summary, metrics, importance, "
    "embedding, created_at, updated_at"
)
STAT_COLUMNS = "id, story_id, character_card_id, key, value, confidence, created_at, updated_at"


def _is_uuid(value: Optional[str]) -> bool:
    return isinstance(value, str) and bool(_UUID_RE.match(value))


def _like_pattern(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _vector_param(embedding: Sequence[float]) -> List[float]:
    return [float(x) for x in embedding]


class PostgresStore(StoryStore):
    """Storage backed by Postgres with the pgvector extension."""

    def __init__(self, connection_factory: Callable = get_db_connection_context):
        self._connection_factory = connection_factory

    @asynccontextmanager
    async def _connection(self):
        try:
            async with self._connection_factory() as conn:
                yield conn
        except asyncpg.ForeignKeyViolationError as exc:
            raise NotFoundError(
                "Referenced row does not exist",
                details={"constraint": getattr(exc, "constraint_name", None)},
            ) from exc
        except asyncio.TimeoutError as exc:
            raise OperationTimeoutError("storage", 0.0) from exc

    # --- stories -----------------------------------------------------------

    async def create_story(self, user_id, title, *, beginning_key=None, world_key=None,
                           character_name=None, character_gender=None, character_race=None) -> Story:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO stories (user_id, title, beginning_key, world_key,
                                     character_name, character_gender, character_race)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                RETURNING *
                """,
                user_id, title, beginning_key, world_key,
                character_name, character_gender, character_race,
            )
        return Story.from_record(row)

    async def get_story(self, story_id) -> Optional[Story]:
        if not _is_uuid(story_id):
            return None
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM stories WHERE id = $1", story_id)
        return Story.from_record(row) if row else None

    async def list_stories(self, user_id) -> List[Story]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM stories WHERE user_id = $1 ORDER BY last_played_at DESC",
                user_id,
            )
        return [Story.from_record(row) for row in rows]

    async def delete_story(self, story_id) -> bool:
        if not _is_uuid(story_id):
            return False
        async with self._connection() as conn:
            deleted = await conn.fetchval("DELETE FROM stories WHERE id = $1 RETURNING id", story_id)
        return deleted is not None

    async def reset_story(self, story_id) -> None:
        async with self._connection() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM story_messages WHERE story_id = $1", story_id)
                await conn.execute("DELETE FROM character_memories WHERE story_id = $1", story_id)
                await conn.execute("DELETE FROM cards WHERE story_id = $1", story_id)
                await conn.execute("DELETE FROM gm_settings WHERE story_id = $1", story_id)
                await conn.execute(
                    """
                    UPDATE stories
                    SET message_count = 0, last_played_at = NOW(), updated_at = NOW()
                    WHERE id = $1
                    """,
                    story_id,
                )

    # --- transcript --------------------------------------------------------

    async def append_message(self, story_id, role, content, image_url=None) -> StoryMessage:
        if not _is_uuid(story_id):
            raise StoryNotFoundError(story_id)
        async with self._connection() as conn:
            async with conn.transaction():
                locked = await conn.fetchval(
                    "SELECT id FROM stories WHERE id = $1 FOR UPDATE", story_id
                )
                if locked is None:
                    raise StoryNotFoundError(story_id)
                sequence = await conn.fetchval(
                    "SELECT COALESCE(MAX(sequence), 0) + 1 FROM story_messages WHERE story_id = $1",
                    story_id,
                )
                row = await conn.fetchrow(
                    """
                    INSERT INTO story_messages (story_id, role, content, image_url, sequence)
                    VALUES ($1, $2, $3, $4, $5)
                    RETURNING *
                    """,
                    story_id, role, content, image_url, sequence,
                )
                await conn.execute(
                    """
                    UPDATE stories
                    SET message_count = message_count + 1,
                        last_played_at = NOW(),
                        updated_at = NOW()
                    WHERE id = $1
                    """,
                    story_id,
                )
        return StoryMessage.from_record(row)

    async def list_messages(self, story_id, limit=None) -> List[StoryMessage]:
        async with self._connection() as conn:
            if limit is None:
                rows = await conn.fetch(
                    "SELECT * FROM story_messages WHERE story_id = $1 ORDER BY sequence ASC",
                    story_id,
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT * FROM (
                        SELECT * FROM story_messages
                        WHERE story_id = $1
                        ORDER BY sequence DESC
                        LIMIT $2
                    ) recent
                    ORDER BY sequence ASC
                    """,
                    story_id, max(limit, 0),
                )
        return [StoryMessage.from_record(row) for row in rows]

    # --- cards -------------------------------------------------------------

    async def list_cards(self, story_id, card_type=None, name_contains=None) -> List[Card]:
        conditions = ["story_id = $1"]
        params: List[Any] = [story_id]
        if card_type:
            params.append(card_type)
            conditions.append(f"type = ${len(params)}")
        if name_contains:
            params.append(_like_pattern(name_contains))
            conditions.append(f"name ILIKE ${len(params)}")
        query = (
            f"SELECT {CARD_COLUMNS} FROM cards WHERE {' AND '.join(conditions)} "
            "ORDER BY created_at ASC"
        )
        async with self._connection() as conn:
            rows = await conn.fetch(query, *params)
        return [Card.from_record(row) for row in rows]

    async def get_card(self, story_id, card_id) -> Optional[Card]:
        if not _is_uuid(card_id):
            return None
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {CARD_COLUMNS} FROM cards WHERE story_id = $1 AND id = $2",
                story_id, card_id,
            )
        return Card.from_record(row) if row else None

    async def get_card_by_name(self, story_id, card_type, name) -> Optional[Card]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {CARD_COLUMNS} FROM cards WHERE story_id = $1 AND type = $2 AND name = $3",
                story_id, card_type, name,
            )
        return Card.from_record(row) if row else None

    async def upsert_card(self, story_id, card_type, name, *, description=None, data=None) -> Card:
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO cards (story_id, type, name, description, data)
                    VALUES ($1, $2, $3, $4, $5::jsonb)
                    ON CONFLICT (story_id, type, name) DO NOTHING
                    RETURNING {CARD_COLUMNS}
                    """,
                    story_id, card_type, name, description,
                    json.dumps(sanitize_structured_object(data)),
                )
                if row is not None:
                    return Card.from_record(row)

                # Row exists: lock it so concurrent merges apply in commit order.
                current = await conn.fetchrow(
                    """
                    SELECT id, data FROM cards
                    WHERE story_id = $1 AND type = $2 AND name = $3
                    FOR UPDATE
                    """,
                    story_id, card_type, name,
                )
                existing_data = current["data"]
                if isinstance(existing_data, (str, bytes)):
                    existing_data = json.loads(existing_data)
                merged = sanitize_structured_object(
                    merge_structured_values(existing_data or {}, data or {})
                )
                row = await conn.fetchrow(
                    f"""
                    UPDATE cards
                    SET data = $2::jsonb,
                        description = COALESCE($3, description),
                        embedding = NULL,
                        updated_at = clock_timestamp()
                    WHERE id = $1
                    RETURNING {CARD_COLUMNS}
                    """,
                    current["id"], json.dumps(merged), description,
                )
        return Card.from_record(row)

    async def replace_card_data(self, story_id, card_id, data) -> Optional[Card]:
        if not _is_uuid(card_id):
            return None
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE cards
                SET data = $3::jsonb, embedding = NULL, updated_at = clock_timestamp()
                WHERE story_id = $1 AND id = $2
                RETURNING {CARD_COLUMNS}
                """,
                story_id, card_id, json.dumps(data),
            )
        return Card.from_record(row) if row else None

    async def delete_card(self, story_id, card_id) -> bool:
        if not _is_uuid(card_id):
            return False
        async with self._connection() as conn:
            deleted = await conn.fetchval(
                "DELETE FROM cards WHERE story_id = $1 AND id = $2 RETURNING id",
                story_id, card_id,
            )
        return deleted is not None

    async def list_story_ids_with_cards(self, card_type) -> List[str]:
        async with self._connection() as conn:
            rows = await conn.fetch("SELECT DISTINCT story_id FROM cards WHERE type = $1", card_type)
        return [str(row["story_id"]) for row in rows]

    async def cards_missing_embeddings(self, story_id) -> List[Card]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {CARD_COLUMNS} FROM cards WHERE story_id = $1 AND embedding IS NULL",
                story_id,
            )
        return [Card.from_record(row) for row in rows]

    async def _set_embedding(self, table: str, row_id: str, embedding, if_updated_at) -> bool:
        async with self._connection() as conn:
            updated = await conn.fetchval(
                f"""
                UPDATE {table}
                SET embedding = $2::vector
                WHERE id = $1 AND ($3::timestamptz IS NULL OR updated_at = $3::timestamptz)
                RETURNING id
                """,
                row_id, _vector_param(embedding), if_updated_at,
            )
        return updated is not None

    async def set_card_embedding(self, card_id, embedding, if_updated_at=None) -> bool:
        return await self._set_embedding("cards", card_id, embedding, if_updated_at)

    async def search_cards(self, story_id, embedding, limit) -> List[Card]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {CARD_COLUMNS} FROM cards
                WHERE story_id = $1 AND embedding IS NOT NULL
                ORDER BY embedding <-> $2::vector
                LIMIT $3
                """,
                story_id, _vector_param(embedding), limit,
            )
        return [Card.from_record(row) for row in rows]

    # --- memories ----------------------------------------------------------

    async def insert_memories(self, inputs: Sequence[MemoryInput]) -> List[CharacterMemory]:
        created: List[CharacterMemory] = []
        async with self._connection() as conn:
            async with conn.transaction():
                for item in inputs:
                    row = await conn.fetchrow(
                        f"""
                        INSERT INTO character_memories (
                            story_id, owner_card_id, subject_card_id, source_message_id,
                            source_type, summary, context, tags, importance, decay_factor
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10)
                        RETURNING {MEMORY_COLUMNS}
                        """,
                        item.story_id, item.owner_card_id, item.subject_card_id,
                        item.source_message_id, item.source_type, item.summary,
                        json.dumps(item.context or {}), list(item.tags or []),
                        item.importance, item.decay_factor,
                    )
                    created.append(CharacterMemory.from_record(row))
        return created

    async def get_memory(self, memory_id) -> Optional[CharacterMemory]:
        if not _is_uuid(memory_id):
            return None
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {MEMORY_COLUMNS} FROM character_memories WHERE id = $1", memory_id
            )
        return CharacterMemory.from_record(row) if row else None

    async def list_memories(self, story_id, limit=20) -> List[CharacterMemory]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {MEMORY_COLUMNS} FROM character_memories
                WHERE story_id = $1
                ORDER BY created_at DESC
                LIMIT $2
                """,
                story_id, limit,
            )
        return [CharacterMemory.from_record(row) for row in rows]

    async def touch_memories(self, memory_ids) -> None:
        ids = [memory_id for memory_id in memory_ids if _is_uuid(memory_id)]
        if not ids:
            return
        async with self._connection() as conn:
            await conn.execute(
                "UPDATE character_memories SET last_accessed_at = NOW() WHERE id = ANY($1::uuid[])",
                ids,
            )

    async def memories_missing_embeddings(self, story_id) -> List[CharacterMemory]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {MEMORY_COLUMNS} FROM character_memories
                WHERE story_id = $1 AND embedding IS NULL
                """,
                story_id,
            )
        return [CharacterMemory.from_record(row) for row in rows]

    async def set_memory_embedding(self, memory_id, embedding, if_updated_at=None) -> bool:
        return await self._set_embedding("character_memories", memory_id, embedding, if_updated_at)

    async def search_memories(self, story_id, embedding, limit) -> List[CharacterMemory]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {MEMORY_COLUMNS} FROM character_memories
                WHERE story_id = $1 AND embedding IS NOT NULL
                ORDER BY embedding <-> $2::vector, importance DESC
                LIMIT $3
                """,
                story_id, _vector_param(embedding), limit,
            )
        return [CharacterMemory.from_record(row) for row in rows]

    # --- relationships -----------------------------------------------------

    async def upsert_relationship(self, item: RelationshipInput) -> CharacterRelationship:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO character_relationships (
                    story_id, source_card_id, target_card_id, summary, metrics, importance
                )
                VALUES ($1, $2, $3, $4, $5::jsonb, $6)
                ON CONFLICT (story_id, source_card_id, target_card_id) DO UPDATE SET
                    summary = COALESCE(EXCLUDED.summary, character_relationships.summary),
                    metrics = character_relationships.metrics || EXCLUDED.metrics,
                    importance = GREATEST(character_relationships.importance, EXCLUDED.importance),
                    embedding = NULL,
                    updated_at = clock_timestamp()
                RETURNING {RELATIONSHIP_COLUMNS}
                """,
                item.story_id, item.source_card_id, item.target_card_id,
                item.summary, json.dumps(item.metrics or {}), item.importance,
            )
        return CharacterRelationship.from_record(row)

    async def get_relationship(self, relationship_id) -> Optional[CharacterRelationship]:
        if not _is_uuid(relationship_id):
            return None
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {RELATIONSHIP_COLUMNS} FROM character_relationships WHERE id = $1",
                relationship_id,
            )
        return CharacterRelationship.from_record(row) if row else None

    async def list_relationships(self, story_id, card_id=None, incoming=False) -> List[CharacterRelationship]:
        query = f"SELECT {RELATIONSHIP_COLUMNS} FROM character_relationships WHERE story_id = $1"
        params: List[Any] = [story_id]
        if card_id is not None:
            column = "target_card_id" if incoming else "source_card_id"
            params.append(card_id)
            query += f" AND {column} = $2"
        query += " ORDER BY updated_at DESC"
        async with self._connection() as conn:
            rows = await conn.fetch(query, *params)
        return [CharacterRelationship.from_record(row) for row in rows]

    async def relationships_missing_embeddings(self, story_id) -> List[CharacterRelationship]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {RELATIONSHIP_COLUMNS} FROM character_relationships
                WHERE story_id = $1 AND embedding IS NULL
                """,
                story_id,
            )
        return [CharacterRelationship.from_record(row) for row in rows]

    async def set_relationship_embedding(self, relationship_id, embedding, if_updated_at=None) -> bool:
        return await self._set_embedding(
            "character_relationships", relationship_id, embedding, if_updated_at
        )

    async def search_relationships(self, story_id, embedding, limit) -> List[CharacterRelationship]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {RELATIONSHIP_COLUMNS} FROM character_relationships
                WHERE story_id = $1 AND embedding IS NOT NULL
                ORDER BY embedding <-> $2::vector, importance DESC
                LIMIT $3
                """,
                story_id, _vector_param(embedding), limit,
            )
        return [CharacterRelationship.from_record(row) for row in rows]

    # --- stats -------------------------------------------------------------

    async def upsert_stat(self, item: StatInput) -> CharacterStat:
        confidence = item.confidence if item.confidence is not None else 1.0
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO character_stats (story_id, character_card_id, key, value, confidence)
                VALUES ($1, $2, $3, $4::jsonb, $5)
                ON CONFLICT (story_id, character_card_id, key) DO UPDATE SET
                    value = EXCLUDED.value,
                    confidence = EXCLUDED.confidence,
                    updated_at = clock_timestamp()
                RETURNING {STAT_COLUMNS}
                """,
                item.story_id, item.character_card_id, item.key,
                json.dumps(item.value), confidence,
            )
        return CharacterStat.from_record(row)

    async def list_stats(self, story_id, character_card_id=None) -> List[CharacterStat]:
        query = f"SELECT {STAT_COLUMNS} FROM character_stats WHERE story_id = $1"
        params: List[Any] = [story_id]
        if character_card_id is not None:
            params.append(character_card_id)
            query += " AND character_card_id = $2"
        query += " ORDER BY updated_at DESC"
        async with self._connection() as conn:
            rows = await conn.fetch(query, *params)
        return [CharacterStat.from_record(row) for row in rows]

    # --- settings ----------------------------------------------------------

    async def get_settings(self, story_id) -> Optional[Dict[str, Any]]:
        async with self._connection() as conn:
            raw = await conn.fetchval("SELECT data FROM gm_settings WHERE story_id = $1", story_id)
        if raw is None:
            return None
        return json.loads(raw) if isinstance(raw, (str, bytes)) else raw

    async def save_settings(self, story_id, data) -> Dict[str, Any]:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO gm_settings (story_id, data)
                VALUES ($1, $2::jsonb)
                ON CONFLICT (story_id) DO UPDATE SET data = EXCLUDED.data, updated_at = NOW()
                """,
                story_id, json.dumps(data),
            )
        return data

    # --- embeddings --------------------------------------------------------

    async def invalidate_story_embeddings(self, story_id) -> None:
        async with self._connection() as conn:
            async with conn.transaction():
                for table in ("cards", "character_memories", "character_relationships"):
                    await conn.execute(
                        f"UPDATE {table} SET embedding = NULL WHERE story_id = $1", story_id
                    )
        logger.info("Invalidated cached embeddings for story %s", story_id)
