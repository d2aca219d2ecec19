# memory/character_memory.py

"""Append-only memories, directed relationships and per-character stats."""

import logging
from dataclasses import replace
from typing import List, Optional, Sequence

from db.models import (
    MEMORY_SOURCE_VALUES,
    CharacterMemory,
    CharacterRelationship,
    CharacterStat,
    MemoryInput,
    RelationshipInput,
    StatInput,
)
from db.store import StoryStore
from embedding.indexer import EmbeddingIndexer
from utils.error_handling import InvalidPayloadError

logger = logging.getLogger(__name__)


def _check_memory(item: MemoryInput) -> MemoryInput:
    summary = (item.summary or "").strip()
    if not summary:
        raise InvalidPayloadError("Memory summary is required")
    if item.source_type not in MEMORY_SOURCE_VALUES:
        raise InvalidPayloadError(
            f"Unknown memory source: {item.source_type}",
            details={"allowed": list(MEMORY_SOURCE_VALUES)},
        )
    return replace(item, summary=summary, tags=[t for t in (item.tags or []) if isinstance(t, str)])


class MemoryService:
    def __init__(self, store: StoryStore, indexer: Optional[EmbeddingIndexer] = None):
        self.store = store
        self.indexer = indexer

    # --- memories ----------------------------------------------------------

    async def record_memory(self, item: MemoryInput) -> CharacterMemory:
        memories = await self.record_memories([item])
        return memories[0]

    async def record_memories(self, items: Sequence[MemoryInput]) -> List[CharacterMemory]:
        if not items:
            return []
        checked = [_check_memory(item) for item in items]
        memories = await self.store.insert_memories(checked)
        if self.indexer is not None:
            by_story = {}
            for memory in memories:
                by_story.setdefault(memory.story_id, []).append(memory.id)
            for story_id, memory_ids in by_story.items():
                self.indexer.schedule_memories(story_id, memory_ids)
        logger.debug("Recorded %d memories", len(memories))
        return memories

    async def touch_memories(self, memory_ids: Sequence[str]) -> None:
        """Mark memories as recently retrieved. Best effort."""
        ids = [memory_id for memory_id in memory_ids if memory_id]
        if not ids:
            return
        try:
            await self.store.touch_memories(ids)
        except Exception:
            logger.warning("Failed to touch %d memories", len(ids), exc_info=True)

    async def list_memories(self, story_id: str, limit: int = 20) -> List[CharacterMemory]:
        return await self.store.list_memories(story_id, limit=limit)

    # --- stats -------------------------------------------------------------

    async def upsert_character_stat(self, item: StatInput) -> CharacterStat:
        key = (item.key or "").strip()
        if not key:
            raise InvalidPayloadError("Stat key is required")
        value = item.value if isinstance(item.value, dict) else {"value": item.value}
        confidence = 1.0 if item.confidence is None else float(item.confidence)
        return await self.store.upsert_stat(
            replace(item, key=key, value=value, confidence=confidence)
        )

    async def list_stats(self, story_id: str, character_card_id: Optional[str] = None) -> List[CharacterStat]:
        return await self.store.list_stats(story_id, character_card_id)

    # --- relationships -----------------------------------------------------

    async def upsert_relationship(self, item: RelationshipInput) -> CharacterRelationship:
        if item.source_card_id == item.target_card_id:
            raise InvalidPayloadError("A relationship needs two different characters")
        relationship = await self.store.upsert_relationship(item)
        if self.indexer is not None:
            self.indexer.schedule_relationship(relationship.story_id, relationship.id)
        return relationship

    async def list_relationships(
        self,
        story_id: str,
        card_id: Optional[str] = None,
        incoming: bool = False,
    ) -> List[CharacterRelationship]:
        return await self.store.list_relationships(story_id, card_id, incoming)
