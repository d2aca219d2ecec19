# memory/memory_retriever.py

"""
Vector context retrieval for a story.

One query embedding is shared by the card, memory and relationship searches.
Rows still missing a cached vector are embedded inline first, through the
embedding queue's concurrency limit, so a search never silently skips fresh
rows. Stats are not searched: all of them are returned. Every memory handed
back is touched as a recency signal.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from config import get_config
from db.models import Card, CharacterMemory, CharacterRelationship, CharacterStat
from db.store import StoryStore
from embedding.indexer import EmbeddingIndexer
from embedding.provider import EmbeddingProvider
from memory.character_memory import MemoryService

logger = logging.getLogger(__name__)


@dataclass
class StoryContext:
    cards: List[Card] = field(default_factory=list)
    memories: List[CharacterMemory] = field(default_factory=list)
    relationships: List[CharacterRelationship] = field(default_factory=list)
    stats: List[CharacterStat] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.cards or self.memories or self.relationships or self.stats)


def _compact(value) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def context_lines(context: StoryContext, cards_by_id: Optional[Mapping[str, Card]] = None) -> List[str]:
    """Render a retrieval snapshot as prompt note lines, naming cards where known."""
    cards_by_id = cards_by_id or {}

    def label(card_id: Optional[str]) -> Optional[str]:
        if not card_id:
            return None
        card = cards_by_id.get(card_id)
        return card.name if card else card_id

    lines: List[str] = []
    for card in context.cards:
        line = f"- [{card.type}] {card.name}"
        if card.description:
            line += f": {card.description}"
        if card.data:
            line += f" | data: {_compact(card.data)}"
        lines.append(line)

    for memory in context.memories:
        parties = [p for p in (label(memory.owner_card_id), label(memory.subject_card_id)) if p]
        about = f", about {' & '.join(parties)}" if parties else ""
        lines.append(
            f"- memory ({memory.source_type}, importance {memory.importance}{about}): {memory.summary}"
        )

    for relationship in context.relationships:
        line = (
            f"- relationship {label(relationship.source_card_id)} -> "
            f"{label(relationship.target_card_id)} (importance {relationship.importance})"
        )
        if relationship.summary:
            line += f": {relationship.summary}"
        if relationship.metrics:
            line += f" | metrics: {_compact(relationship.metrics)}"
        lines.append(line)

    for stat in context.stats:
        lines.append(
            f"- stat {label(stat.character_card_id)}.{stat.key} = {_compact(stat.value)} "
            f"(confidence {stat.confidence:g})"
        )
    return lines


def format_context(context: StoryContext, cards_by_id: Optional[Mapping[str, Card]] = None) -> str:
    return "\n".join(context_lines(context, cards_by_id))


class ContextRetriever:
    """Ranked snapshot of cards, memories, relationships and stats for a query."""

    def __init__(
        self,
        store: StoryStore,
        embedder: EmbeddingProvider,
        indexer: EmbeddingIndexer,
        memory_service: Optional[MemoryService] = None,
        config=None,
    ):
        self.store = store
        self.embedder = embedder
        self.indexer = indexer
        self.memory_service = memory_service or MemoryService(store, indexer)
        self.config = config or get_config()

    async def retrieve_context(
        self,
        story_id: str,
        query: str,
        card_limit: Optional[int] = None,
        memory_limit: Optional[int] = None,
        relationship_limit: Optional[int] = None,
        include_stats: bool = True,
    ) -> StoryContext:
        card_limit = self.config.CARD_LIMIT if card_limit is None else card_limit
        memory_limit = self.config.MEMORY_LIMIT if memory_limit is None else memory_limit
        relationship_limit = (
            self.config.RELATIONSHIP_LIMIT if relationship_limit is None else relationship_limit
        )

        async def embed_and_backfill():
            vector = await self.embedder.embed(query)
            await self.indexer.ensure_vector_cache(story_id)
            return vector

        # Embedding failures propagate: there is no degraded retrieval.
        query_embedding = await self.indexer.queue.run_inline(embed_and_backfill)

        cards = await self.store.search_cards(story_id, query_embedding, card_limit)
        memories = await self.store.search_memories(story_id, query_embedding, memory_limit)
        relationships = await self.store.search_relationships(
            story_id, query_embedding, relationship_limit
        )
        stats = await self.store.list_stats(story_id) if include_stats else []

        if memories:
            await self.memory_service.touch_memories([memory.id for memory in memories])

        logger.debug(
            "Retrieved %d cards, %d memories, %d relationships, %d stats for story %s",
            len(cards), len(memories), len(relationships), len(stats), story_id,
        )
        return StoryContext(cards=cards, memories=memories, relationships=relationships, stats=stats)

    async def retrieve_relevant(
        self,
        story_id: str,
        query: str,
        k: int = 6,
        cards_by_id: Optional[Dict[str, Card]] = None,
    ) -> List[str]:
        context = await self.retrieve_context(
            story_id,
            query,
            card_limit=k,
            memory_limit=k,
            relationship_limit=max(2, k // 2),
        )
        return context_lines(context, cards_by_id)
