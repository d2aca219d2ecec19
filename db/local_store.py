# db/local_store.py

"""
In-process implementation of the storage interface.

Used by the test-suite and for local development without Postgres. It keeps
the same invariants as the SQL backend (unique keys, cascades, atomic
sequence allocation, distance-ordered search) and hands out copies so
callers cannot mutate stored rows.
"""

import asyncio
import copy
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np

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
    new_id,
    utcnow,
)
from db.store import StoryStore
from utils.error_handling import NotFoundError, StoryNotFoundError
from utils.structured_merge import merge_structured_values, sanitize_structured_object

logger = logging.getLogger(__name__)


def _l2_distance(a: Sequence[float], b: Sequence[float]) -> float:
    return float(np.linalg.norm(np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64)))


def _next_timestamp(previous: Optional[datetime]) -> datetime:
    # updated_at doubles as a row version for conditional embedding writes
    now = utcnow()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


class InMemoryStore(StoryStore):
    """Dictionary-backed store with the same semantics as ``PostgresStore``."""

    def __init__(self):
        self._stories: Dict[str, Story] = {}
        self._messages: Dict[str, List[StoryMessage]] = defaultdict(list)
        self._cards: Dict[str, Card] = {}
        self._memories: Dict[str, CharacterMemory] = {}
        self._relationships: Dict[str, CharacterRelationship] = {}
        self._stats: Dict[str, CharacterStat] = {}
        self._settings: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _copy(value):
        return copy.deepcopy(value)

    def _require_story(self, story_id: str) -> Story:
        story = self._stories.get(story_id)
        if story is None:
            raise StoryNotFoundError(story_id)
        return story

    def _require_card(self, story_id: str, card_id: Optional[str], role: str) -> None:
        if card_id is None:
            return
        card = self._cards.get(card_id)
        if card is None or card.story_id != story_id:
            raise NotFoundError(f"Unknown {role} card", details={"cardId": card_id})

    # --- stories -----------------------------------------------------------

    async def create_story(self, user_id, title, *, beginning_key=None, world_key=None,
                           character_name=None, character_gender=None, character_race=None) -> Story:
        story = Story(
            id=new_id(),
            user_id=user_id,
            title=title,
            beginning_key=beginning_key,
            world_key=world_key,
            character_name=character_name,
            character_gender=character_gender,
            character_race=character_race,
        )
        self._stories[story.id] = story
        return self._copy(story)

    async def get_story(self, story_id: str) -> Optional[Story]:
        story = self._stories.get(story_id)
        return self._copy(story) if story else None

    async def list_stories(self, user_id: str) -> List[Story]:
        stories = [s for s in self._stories.values() if s.user_id == user_id]
        stories.sort(key=lambda s: s.last_played_at, reverse=True)
        return self._copy(stories)

    async def delete_story(self, story_id: str) -> bool:
        async with self._lock:
            if self._stories.pop(story_id, None) is None:
                return False
            self._messages.pop(story_id, None)
            self._settings.pop(story_id, None)
            for card_id in [c.id for c in self._cards.values() if c.story_id == story_id]:
                self._drop_card(card_id)
            for memory_id in [m.id for m in self._memories.values() if m.story_id == story_id]:
                del self._memories[memory_id]
            return True

    async def reset_story(self, story_id: str) -> None:
        async with self._lock:
            story = self._require_story(story_id)
            self._messages.pop(story_id, None)
            self._settings.pop(story_id, None)
            for card_id in [c.id for c in self._cards.values() if c.story_id == story_id]:
                self._drop_card(card_id)
            for memory_id in [m.id for m in self._memories.values() if m.story_id == story_id]:
                del self._memories[memory_id]
            story.message_count = 0
            story.last_played_at = story.updated_at = utcnow()

    # --- transcript --------------------------------------------------------

    async def append_message(self, story_id, role, content, image_url=None) -> StoryMessage:
        async with self._lock:
            story = self._require_story(story_id)
            messages = self._messages[story_id]
            sequence = (messages[-1].sequence if messages else 0) + 1
            message = StoryMessage(
                id=new_id(),
                story_id=story_id,
                role=role,
                content=content,
                sequence=sequence,
                image_url=image_url,
            )
            messages.append(message)
            story.message_count += 1
            story.last_played_at = story.updated_at = utcnow()
            return self._copy(message)

    async def list_messages(self, story_id, limit=None) -> List[StoryMessage]:
        messages = self._messages.get(story_id, [])
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return self._copy(list(messages))

    # --- cards -------------------------------------------------------------

    def _story_cards(self, story_id: str) -> Iterable[Card]:
        return (c for c in self._cards.values() if c.story_id == story_id)

    async def list_cards(self, story_id, card_type=None, name_contains=None) -> List[Card]:
        needle = name_contains.lower() if name_contains else None
        cards = [
            c for c in self._story_cards(story_id)
            if (card_type is None or c.type == card_type)
            and (needle is None or needle in c.name.lower())
        ]
        cards.sort(key=lambda c: c.created_at)
        return self._copy(cards)

    async def get_card(self, story_id, card_id) -> Optional[Card]:
        card = self._cards.get(card_id)
        if card is None or card.story_id != story_id:
            return None
        return self._copy(card)

    async def get_card_by_name(self, story_id, card_type, name) -> Optional[Card]:
        for card in self._story_cards(story_id):
            if card.type == card_type and card.name == name:
                return self._copy(card)
        return None

    async def upsert_card(self, story_id, card_type, name, *, description=None, data=None) -> Card:
        async with self._lock:
            self._require_story(story_id)
            existing = next(
                (c for c in self._story_cards(story_id) if c.type == card_type and c.name == name),
                None,
            )
            if existing is None:
                card = Card(
                    id=new_id(),
                    story_id=story_id,
                    type=card_type,
                    name=name,
                    description=description,
                    data=sanitize_structured_object(data),
                )
                self._cards[card.id] = card
                return self._copy(card)

            existing.data = sanitize_structured_object(
                merge_structured_values(existing.data, data or {})
            )
            if description is not None:
                existing.description = description
            existing.embedding = None
            existing.updated_at = _next_timestamp(existing.updated_at)
            return self._copy(existing)

    async def replace_card_data(self, story_id, card_id, data) -> Optional[Card]:
        async with self._lock:
            card = self._cards.get(card_id)
            if card is None or card.story_id != story_id:
                return None
            card.data = copy.deepcopy(data)
            card.embedding = None
            card.updated_at = _next_timestamp(card.updated_at)
            return self._copy(card)

    def _drop_card(self, card_id: str) -> None:
        self._cards.pop(card_id, None)
        for memory_id in [
            m.id for m in self._memories.values()
            if card_id in (m.owner_card_id, m.subject_card_id)
        ]:
            del self._memories[memory_id]
        for rel_id in [
            r.id for r in self._relationships.values()
            if card_id in (r.source_card_id, r.target_card_id)
        ]:
            del self._relationships[rel_id]
        for stat_id in [s.id for s in self._stats.values() if s.character_card_id == card_id]:
            del self._stats[stat_id]

    async def delete_card(self, story_id, card_id) -> bool:
        async with self._lock:
            card = self._cards.get(card_id)
            if card is None or card.story_id != story_id:
                return False
            self._drop_card(card_id)
            return True

    async def list_story_ids_with_cards(self, card_type) -> List[str]:
        return sorted({c.story_id for c in self._cards.values() if c.type == card_type})

    async def cards_missing_embeddings(self, story_id) -> List[Card]:
        return self._copy([c for c in self._story_cards(story_id) if c.embedding is None])

    @staticmethod
    def _set_embedding(row, embedding, if_updated_at) -> bool:
        if row is None:
            return False
        if if_updated_at is not None and row.updated_at != if_updated_at:
            return False
        row.embedding = [float(x) for x in embedding]
        return True

    async def set_card_embedding(self, card_id, embedding, if_updated_at=None) -> bool:
        return self._set_embedding(self._cards.get(card_id), embedding, if_updated_at)

    @staticmethod
    def _nearest(rows, embedding, limit, importance=False):
        scored = [
            (_l2_distance(row.embedding, embedding), -(row.importance if importance else 0), index, row)
            for index, row in enumerate(rows)
            if row.embedding is not None
        ]
        scored.sort(key=lambda item: item[:3])
        return [item[3] for item in scored[:max(limit, 0)]]

    async def search_cards(self, story_id, embedding, limit) -> List[Card]:
        return self._copy(self._nearest(list(self._story_cards(story_id)), embedding, limit))

    # --- memories ----------------------------------------------------------

    async def insert_memories(self, inputs: Sequence[MemoryInput]) -> List[CharacterMemory]:
        async with self._lock:
            for item in inputs:
                self._require_story(item.story_id)
                self._require_card(item.story_id, item.owner_card_id, "owner")
                self._require_card(item.story_id, item.subject_card_id, "subject")
            created = []
            for item in inputs:
                memory = CharacterMemory(
                    id=new_id(),
                    story_id=item.story_id,
                    summary=item.summary,
                    source_type=item.source_type,
                    owner_card_id=item.owner_card_id,
                    subject_card_id=item.subject_card_id,
                    source_message_id=item.source_message_id,
                    context=copy.deepcopy(item.context or {}),
                    tags=list(item.tags or []),
                    importance=item.importance,
                    decay_factor=item.decay_factor,
                )
                self._memories[memory.id] = memory
                created.append(memory)
            return self._copy(created)

    async def get_memory(self, memory_id) -> Optional[CharacterMemory]:
        memory = self._memories.get(memory_id)
        return self._copy(memory) if memory else None

    async def list_memories(self, story_id, limit=20) -> List[CharacterMemory]:
        memories = [m for m in self._memories.values() if m.story_id == story_id]
        memories.sort(key=lambda m: m.created_at, reverse=True)
        return self._copy(memories[:limit])

    async def touch_memories(self, memory_ids) -> None:
        now = utcnow()
        for memory_id in memory_ids:
            memory = self._memories.get(memory_id)
            if memory is not None:
                memory.last_accessed_at = now

    async def memories_missing_embeddings(self, story_id) -> List[CharacterMemory]:
        return self._copy([
            m for m in self._memories.values() if m.story_id == story_id and m.embedding is None
        ])

    async def set_memory_embedding(self, memory_id, embedding, if_updated_at=None) -> bool:
        return self._set_embedding(self._memories.get(memory_id), embedding, if_updated_at)

    async def search_memories(self, story_id, embedding, limit) -> List[CharacterMemory]:
        rows = [m for m in self._memories.values() if m.story_id == story_id]
        return self._copy(self._nearest(rows, embedding, limit, importance=True))

    # --- relationships -----------------------------------------------------

    async def upsert_relationship(self, item: RelationshipInput) -> CharacterRelationship:
        async with self._lock:
            self._require_story(item.story_id)
            self._require_card(item.story_id, item.source_card_id, "source")
            self._require_card(item.story_id, item.target_card_id, "target")
            existing = next(
                (
                    r for r in self._relationships.values()
                    if r.story_id == item.story_id
                    and r.source_card_id == item.source_card_id
                    and r.target_card_id == item.target_card_id
                ),
                None,
            )
            if existing is None:
                relationship = CharacterRelationship(
                    id=new_id(),
                    story_id=item.story_id,
                    source_card_id=item.source_card_id,
                    target_card_id=item.target_card_id,
                    summary=item.summary,
                    metrics=copy.deepcopy(item.metrics or {}),
                    importance=item.importance,
                )
                self._relationships[relationship.id] = relationship
                return self._copy(relationship)

            existing.metrics = {**existing.metrics, **copy.deepcopy(item.metrics or {})}
            if item.summary is not None:
                existing.summary = item.summary
            existing.importance = max(existing.importance, item.importance)
            existing.embedding = None
            existing.updated_at = _next_timestamp(existing.updated_at)
            return self._copy(existing)

    async def get_relationship(self, relationship_id) -> Optional[CharacterRelationship]:
        relationship = self._relationships.get(relationship_id)
        return self._copy(relationship) if relationship else None

    async def list_relationships(self, story_id, card_id=None, incoming=False) -> List[CharacterRelationship]:
        def matches(rel: CharacterRelationship) -> bool:
            if rel.story_id != story_id:
                return False
            if card_id is None:
                return True
            return (rel.target_card_id if incoming else rel.source_card_id) == card_id

        rows = [r for r in self._relationships.values() if matches(r)]
        rows.sort(key=lambda r: r.updated_at, reverse=True)
        return self._copy(rows)

    async def relationships_missing_embeddings(self, story_id) -> List[CharacterRelationship]:
        return self._copy([
            r for r in self._relationships.values() if r.story_id == story_id and r.embedding is None
        ])

    async def set_relationship_embedding(self, relationship_id, embedding, if_updated_at=None) -> bool:
        return self._set_embedding(self._relationships.get(relationship_id), embedding, if_updated_at)

    async def search_relationships(self, story_id, embedding, limit) -> List[CharacterRelationship]:
        rows = [r for r in self._relationships.values() if r.story_id == story_id]
        return self._copy(self._nearest(rows, embedding, limit, importance=True))

    # --- stats -------------------------------------------------------------

    async def upsert_stat(self, item: StatInput) -> CharacterStat:
        async with self._lock:
            self._require_story(item.story_id)
            self._require_card(item.story_id, item.character_card_id, "character")
            confidence = item.confidence if item.confidence is not None else 1.0
            existing = next(
                (
                    s for s in self._stats.values()
                    if s.story_id == item.story_id
                    and s.character_card_id == item.character_card_id
                    and s.key == item.key
                ),
                None,
            )
            if existing is None:
                stat = CharacterStat(
                    id=new_id(),
                    story_id=item.story_id,
                    character_card_id=item.character_card_id,
                    key=item.key,
                    value=copy.deepcopy(item.value),
                    confidence=confidence,
                )
                self._stats[stat.id] = stat
                return self._copy(stat)
            existing.value = copy.deepcopy(item.value)
            existing.confidence = confidence
            existing.updated_at = _next_timestamp(existing.updated_at)
            return self._copy(existing)

    async def list_stats(self, story_id, character_card_id=None) -> List[CharacterStat]:
        rows = [
            s for s in self._stats.values()
            if s.story_id == story_id
            and (character_card_id is None or s.character_card_id == character_card_id)
        ]
        rows.sort(key=lambda s: s.updated_at, reverse=True)
        return self._copy(rows)

    # --- settings ----------------------------------------------------------

    async def get_settings(self, story_id) -> Optional[Dict[str, Any]]:
        data = self._settings.get(story_id)
        return self._copy(data) if data is not None else None

    async def save_settings(self, story_id, data) -> Dict[str, Any]:
        self._require_story(story_id)
        self._settings[story_id] = copy.deepcopy(data)
        return self._copy(data)

    # --- embeddings --------------------------------------------------------

    async def invalidate_story_embeddings(self, story_id) -> None:
        for rows in (self._cards, self._memories, self._relationships):
            for row in rows.values():
                if row.story_id == story_id:
                    row.embedding = None
        logger.debug("Invalidated cached embeddings for story %s", story_id)
