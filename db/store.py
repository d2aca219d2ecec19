# db/store.py

"""
Storage interface consumed by the services.

Backends must enforce the unique keys (story, type, name) for cards,
(story, source, target) for relationships and (story, character, key) for
stats, allocate transcript sequence numbers atomically per story, and
provide an ``ORDER BY distance LIMIT k`` nearest-neighbour search scoped to
one story. Deleting a story removes everything it owns; deleting a card
removes the memories, relationships and stats that reference it.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

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


class StoryStore:
    """Abstract storage backend."""

    # --- stories -----------------------------------------------------------

    async def create_story(
        self,
        user_id: str,
        title: str,
        *,
        beginning_key: Optional[str] = None,
        world_key: Optional[str] = None,
        character_name: Optional[str] = None,
        character_gender: Optional[str] = None,
        character_race: Optional[str] = None,
    ) -> Story:
        raise NotImplementedError("Subclasses must implement create_story")

    async def get_story(self, story_id: str) -> Optional[Story]:
        raise NotImplementedError("Subclasses must implement get_story")

    async def list_stories(self, user_id: str) -> List[Story]:
        """Stories of one user, most recently played first."""
        raise NotImplementedError("Subclasses must implement list_stories")

    async def delete_story(self, story_id: str) -> bool:
        raise NotImplementedError("Subclasses must implement delete_story")

    async def reset_story(self, story_id: str) -> None:
        """Drop messages, cards (and their dependents) and settings; zero the count."""
        raise NotImplementedError("Subclasses must implement reset_story")

    # --- transcript --------------------------------------------------------

    async def append_message(
        self,
        story_id: str,
        role: str,
        content: str,
        image_url: Optional[str] = None,
    ) -> StoryMessage:
        """Insert with the next per-story sequence and bump story activity."""
        raise NotImplementedError("Subclasses must implement append_message")

    async def list_messages(self, story_id: str, limit: Optional[int] = None) -> List[StoryMessage]:
        """Ascending by sequence; with ``limit`` only the last ``limit`` messages."""
        raise NotImplementedError("Subclasses must implement list_messages")

    # --- cards -------------------------------------------------------------

    async def list_cards(
        self,
        story_id: str,
        card_type: Optional[str] = None,
        name_contains: Optional[str] = None,
    ) -> List[Card]:
        raise NotImplementedError("Subclasses must implement list_cards")

    async def get_card(self, story_id: str, card_id: str) -> Optional[Card]:
        raise NotImplementedError("Subclasses must implement get_card")

    async def get_card_by_name(self, story_id: str, card_type: str, name: str) -> Optional[Card]:
        """Exact (type, name) lookup."""
        raise NotImplementedError("Subclasses must implement get_card_by_name")

    async def upsert_card(
        self,
        story_id: str,
        card_type: str,
        name: str,
        *,
        description: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Card:
        """
        Insert, or deep-merge ``data`` into the existing (story, type, name)
        row. A provided description overwrites. The cached embedding is
        cleared on every update.
        """
        raise NotImplementedError("Subclasses must implement upsert_card")

    async def replace_card_data(self, story_id: str, card_id: str, data: Dict[str, Any]) -> Optional[Card]:
        raise NotImplementedError("Subclasses must implement replace_card_data")

    async def delete_card(self, story_id: str, card_id: str) -> bool:
        raise NotImplementedError("Subclasses must implement delete_card")

    async def list_story_ids_with_cards(self, card_type: str) -> List[str]:
        raise NotImplementedError("Subclasses must implement list_story_ids_with_cards")

    async def cards_missing_embeddings(self, story_id: str) -> List[Card]:
        raise NotImplementedError("Subclasses must implement cards_missing_embeddings")

    async def set_card_embedding(
        self, card_id: str, embedding: Sequence[float], if_updated_at: Optional[datetime] = None
    ) -> bool:
        """Store a vector; skipped (False) when the row changed since ``if_updated_at``."""
        raise NotImplementedError("Subclasses must implement set_card_embedding")

    async def search_cards(self, story_id: str, embedding: Sequence[float], limit: int) -> List[Card]:
        raise NotImplementedError("Subclasses must implement search_cards")

    # --- memories ----------------------------------------------------------

    async def insert_memories(self, inputs: Sequence[MemoryInput]) -> List[CharacterMemory]:
        raise NotImplementedError("Subclasses must implement insert_memories")

    async def get_memory(self, memory_id: str) -> Optional[CharacterMemory]:
        raise NotImplementedError("Subclasses must implement get_memory")

    async def list_memories(self, story_id: str, limit: int = 20) -> List[CharacterMemory]:
        """Newest first."""
        raise NotImplementedError("Subclasses must implement list_memories")

    async def touch_memories(self, memory_ids: Sequence[str]) -> None:
        raise NotImplementedError("Subclasses must implement touch_memories")

    async def memories_missing_embeddings(self, story_id: str) -> List[CharacterMemory]:
        raise NotImplementedError("Subclasses must implement memories_missing_embeddings")

    async def set_memory_embedding(
        self, memory_id: str, embedding: Sequence[float], if_updated_at: Optional[datetime] = None
    ) -> bool:
        raise NotImplementedError("Subclasses must implement set_memory_embedding")

    async def search_memories(
        self, story_id: str, embedding: Sequence[float], limit: int
    ) -> List[CharacterMemory]:
        """Distance ascending, importance descending on ties."""
        raise NotImplementedError("Subclasses must implement search_memories")

    # --- relationships -----------------------------------------------------

    async def upsert_relationship(self, item: RelationshipInput) -> CharacterRelationship:
        """Shallow-merge metrics, keep the larger importance, keep summary when None."""
        raise NotImplementedError("Subclasses must implement upsert_relationship")

    async def get_relationship(self, relationship_id: str) -> Optional[CharacterRelationship]:
        raise NotImplementedError("Subclasses must implement get_relationship")

    async def list_relationships(
        self,
        story_id: str,
        card_id: Optional[str] = None,
        incoming: bool = False,
    ) -> List[CharacterRelationship]:
        raise NotImplementedError("Subclasses must implement list_relationships")

    async def relationships_missing_embeddings(self, story_id: str) -> List[CharacterRelationship]:
        raise NotImplementedError("Subclasses must implement relationships_missing_embeddings")

    async def set_relationship_embedding(
        self, relationship_id: str, embedding: Sequence[float], if_updated_at: Optional[datetime] = None
    ) -> bool:
        raise NotImplementedError("Subclasses must implement set_relationship_embedding")

    async def search_relationships(
        self, story_id: str, embedding: Sequence[float], limit: int
    ) -> List[CharacterRelationship]:
        raise NotImplementedError("Subclasses must implement search_relationships")

    # --- stats -------------------------------------------------------------

    async def upsert_stat(self, item: StatInput) -> CharacterStat:
        """Last write wins on (story, character, key)."""
        raise NotImplementedError("Subclasses must implement upsert_stat")

    async def list_stats(self, story_id: str, character_card_id: Optional[str] = None) -> List[CharacterStat]:
        """Most recently updated first."""
        raise NotImplementedError("Subclasses must implement list_stats")

    # --- settings ----------------------------------------------------------

    async def get_settings(self, story_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError("Subclasses must implement get_settings")

    async def save_settings(self, story_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError("Subclasses must implement save_settings")

    # --- embeddings --------------------------------------------------------

    async def invalidate_story_embeddings(self, story_id: str) -> None:
        """Clear every cached vector of one story."""
        raise NotImplementedError("Subclasses must implement invalidate_story_embeddings")

    async def close(self) -> None:
        """Release backend resources."""
