"""
Index text, backfill and targeted refresh of cached embeddings.

Rows carry their own vector; a write nulls it and schedules a refresh on the
``EmbeddingQueue``. A refresh stores its vector only if the row's
``updated_at`` still matches what was embedded, so a slow embedding call
never overwrites a row that changed meanwhile.
"""

import json
import logging
from typing import Iterable, Optional

from db.models import Card, CharacterMemory, CharacterRelationship, CharacterStat
from db.store import StoryStore
from embedding.provider import EmbeddingProvider
from embedding.queue import EmbeddingQueue

logger = logging.getLogger(__name__)


def _compact_json(value) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def stringify_card_for_index(card: Card) -> str:
    lines = [
        f"type: {card.type}",
        f"name: {card.name}",
        f"description: {card.description}" if card.description else "",
        f"data: {_compact_json(card.data)}" if card.data else "",
    ]
    return "\n".join(line for line in lines if line)


def stringify_memory_for_index(memory: CharacterMemory) -> str:
    tags = [tag for tag in memory.tags or [] if isinstance(tag, str)]
    lines = [
        f"summary: {memory.summary}",
        f"source: {memory.source_type}",
        f"importance: {memory.importance}",
        f"owner_card: {memory.owner_card_id}" if memory.owner_card_id else "",
        f"subject_card: {memory.subject_card_id}" if memory.subject_card_id else "",
        f"tags: {', '.join(tags)}" if tags else "",
        f"context: {_compact_json(memory.context)}" if memory.context else "",
    ]
    return "\n".join(line for line in lines if line)


def stringify_relationship_for_index(relationship: CharacterRelationship) -> str:
    lines = [
        f"source_card: {relationship.source_card_id}",
        f"target_card: {relationship.target_card_id}",
        f"summary: {relationship.summary}" if relationship.summary else "",
        f"importance: {relationship.importance}",
        f"metrics: {_compact_json(relationship.metrics)}" if relationship.metrics else "",
    ]
    return "\n".join(line for line in lines if line)


def stringify_stat_for_index(stat: CharacterStat) -> str:
    return "\n".join([
        f"character_card: {stat.character_card_id}",
        f"key: {stat.key}",
        f"confidence: {stat.confidence}",
        f"value: {_compact_json(stat.value)}",
    ])


class EmbeddingIndexer:
    """Keeps the per-row vector cache of one store in sync with its rows."""

    def __init__(self, store: StoryStore, embedder: EmbeddingProvider, queue: EmbeddingQueue):
        self.store = store
        self.embedder = embedder
        self.queue = queue

    # --- cards -------------------------------------------------------------

    async def _embed_card(self, card: Card) -> bool:
        vector = await self.embedder.embed(stringify_card_for_index(card))
        stored = await self.store.set_card_embedding(card.id, vector, if_updated_at=card.updated_at)
        if not stored:
            logger.debug("Card %s changed while embedding; vector discarded", card.id)
        return stored

    async def ensure_story_card_embeddings(self, story_id: str) -> int:
        """Embed every card of the story without a cached vector; returns the count stored."""
        stored = 0
        for card in await self.store.cards_missing_embeddings(story_id):
            if await self._embed_card(card):
                stored += 1
        return stored

    async def refresh_card_embedding(self, story_id: str, card_id: str) -> bool:
        card = await self.store.get_card(story_id, card_id)
        if card is None:
            return False
        return await self._embed_card(card)

    # --- memories ----------------------------------------------------------

    async def _embed_memory(self, memory: CharacterMemory) -> bool:
        vector = await self.embedder.embed(stringify_memory_for_index(memory))
        return await self.store.set_memory_embedding(memory.id, vector, if_updated_at=memory.updated_at)

    async def ensure_story_memory_embeddings(self, story_id: str) -> int:
        stored = 0
        for memory in await self.store.memories_missing_embeddings(story_id):
            if await self._embed_memory(memory):
                stored += 1
        return stored

    async def refresh_memory_embedding(self, story_id: str, memory_id: str) -> bool:
        memory = await self.store.get_memory(memory_id)
        if memory is None or memory.story_id != story_id:
            return False
        return await self._embed_memory(memory)

    # --- relationships -----------------------------------------------------

    async def _embed_relationship(self, relationship: CharacterRelationship) -> bool:
        vector = await self.embedder.embed(stringify_relationship_for_index(relationship))
        return await self.store.set_relationship_embedding(
            relationship.id, vector, if_updated_at=relationship.updated_at
        )

    async def ensure_story_relationship_embeddings(self, story_id: str) -> int:
        stored = 0
        for relationship in await self.store.relationships_missing_embeddings(story_id):
            if await self._embed_relationship(relationship):
                stored += 1
        return stored

    async def refresh_relationship_embedding(self, story_id: str, relationship_id: str) -> bool:
        relationship = await self.store.get_relationship(relationship_id)
        if relationship is None or relationship.story_id != story_id:
            return False
        return await self._embed_relationship(relationship)

    # --- whole story -------------------------------------------------------

    async def ensure_vector_cache(self, story_id: str) -> None:
        # Sequential on purpose: the embedder is called one request at a time.
        await self.ensure_story_card_embeddings(story_id)
        await self.ensure_story_memory_embeddings(story_id)
        await self.ensure_story_relationship_embeddings(story_id)

    async def invalidate_story_embeddings(self, story_id: str) -> None:
        await self.store.invalidate_story_embeddings(story_id)

    # --- scheduling --------------------------------------------------------

    def schedule_card(self, story_id: str, card_id: str) -> None:
        self.queue.enqueue(f"cards:{story_id}", lambda: self.ensure_story_card_embeddings(story_id))
        self.queue.enqueue(f"card:{card_id}", lambda: self.refresh_card_embedding(story_id, card_id))

    def schedule_memories(self, story_id: str, memory_ids: Iterable[str]) -> None:
        for memory_id in memory_ids:
            self.queue.enqueue(
                f"memory:{memory_id}",
                lambda memory_id=memory_id: self.refresh_memory_embedding(story_id, memory_id),
            )
        self.queue.enqueue(f"memories:{story_id}", lambda: self.ensure_story_memory_embeddings(story_id))

    def schedule_relationship(self, story_id: str, relationship_id: Optional[str]) -> None:
        if relationship_id:
            self.queue.enqueue(
                f"relationship:{relationship_id}",
                lambda: self.refresh_relationship_embedding(story_id, relationship_id),
            )
        self.queue.enqueue(
            f"relationships:{story_id}", lambda: self.ensure_story_relationship_embeddings(story_id)
        )
