# db/models.py

"""
Row types for stories, transcript messages, cards, memories, relationships
and stats. Both storage backends return these dataclasses.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


class CardType(str, Enum):
    STORY = "story"
    CHARACTER = "character"
    ENVIRONMENT = "environment"
    ITEM = "item"
    FACTION = "faction"
    QUEST = "quest"
    WORLD = "world"
    BEGINNING = "beginning"


class MessageRole(str, Enum):
    DM = "dm"
    YOU = "you"


class MemorySource(str, Enum):
    PLAYER = "player"
    DM = "dm"
    NPC = "npc"
    SYSTEM = "system"
    WORLD = "world"


CARD_TYPE_VALUES = tuple(t.value for t in CardType)
MEMORY_SOURCE_VALUES = tuple(s.value for s in MemorySource)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _json_value(value: Any, default: Any) -> Any:
    """asyncpg hands jsonb back as text unless a codec is registered."""
    if value is None:
        return default
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def _vector(value: Any) -> Optional[List[float]]:
    if value is None:
        return None
    if hasattr(value, "tolist"):
        value = value.tolist()
    elif hasattr(value, "to_list"):
        value = value.to_list()
    return [float(x) for x in value]


def _str_id(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


@dataclass
class Story:
    id: str
    user_id: str
    title: str
    beginning_key: Optional[str] = None
    world_key: Optional[str] = None
    character_name: Optional[str] = None
    character_gender: Optional[str] = None
    character_race: Optional[str] = None
    message_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_played_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "beginningKey": self.beginning_key,
            "worldKey": self.world_key,
            "characterName": self.character_name,
            "characterGender": self.character_gender,
            "characterRace": self.character_race,
            "messageCount": self.message_count,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "lastPlayedAt": _iso(self.last_played_at),
        }

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "Story":
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=row["title"],
            beginning_key=row.get("beginning_key"),
            world_key=row.get("world_key"),
            character_name=row.get("character_name"),
            character_gender=row.get("character_gender"),
            character_race=row.get("character_race"),
            message_count=row.get("message_count") or 0,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_played_at=row["last_played_at"],
        )


@dataclass
class StoryMessage:
    id: str
    story_id: str
    role: str
    content: str
    sequence: int
    image_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "sequence": self.sequence,
            "createdAt": _iso(self.created_at),
        }
        if self.image_url:
            result["imageUrl"] = self.image_url
        return result

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "StoryMessage":
        return cls(
            id=str(row["id"]),
            story_id=str(row["story_id"]),
            role=row["role"],
            content=row["content"],
            sequence=row["sequence"],
            image_url=row.get("image_url"),
            created_at=row["created_at"],
        )


@dataclass
class Card:
    id: str
    story_id: str
    type: str
    name: str
    description: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    embedding: Optional[List[float]] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Serialisable view handed to the model and to callers (no vector)."""
        result = {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "data": self.data,
            "updatedAt": _iso(self.updated_at),
        }
        if self.description:
            result["description"] = self.description
        return result

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "Card":
        return cls(
            id=str(row["id"]),
            story_id=str(row["story_id"]),
            type=row["type"],
            name=row["name"],
            description=row.get("description"),
            data=_json_value(row.get("data"), {}),
            embedding=_vector(row.get("embedding")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class CharacterMemory:
    id: str
    story_id: str
    summary: str
    source_type: str = MemorySource.SYSTEM.value
    owner_card_id: Optional[str] = None
    subject_card_id: Optional[str] = None
    source_message_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    importance: int = 1
    decay_factor: float = 1.0
    embedding: Optional[List[float]] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_accessed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "summary": self.summary,
            "sourceType": self.source_type,
            "ownerCardId": self.owner_card_id,
            "subjectCardId": self.subject_card_id,
            "sourceMessageId": self.source_message_id,
            "context": self.context,
            "tags": self.tags,
            "importance": self.importance,
            "decayFactor": self.decay_factor,
            "createdAt": _iso(self.created_at),
            "lastAccessedAt": _iso(self.last_accessed_at),
        }

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "CharacterMemory":
        return cls(
            id=str(row["id"]),
            story_id=str(row["story_id"]),
            summary=row["summary"],
            source_type=row["source_type"],
            owner_card_id=_str_id(row.get("owner_card_id")),
            subject_card_id=_str_id(row.get("subject_card_id")),
            source_message_id=_str_id(row.get("source_message_id")),
            context=_json_value(row.get("context"), {}),
            tags=list(row.get("tags") or []),
            importance=row.get("importance") or 0,
            decay_factor=float(row.get("decay_factor") or 1.0),
            embedding=_vector(row.get("embedding")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_accessed_at=row.get("last_accessed_at"),
        )


@dataclass
class CharacterRelationship:
    id: str
    story_id: str
    source_card_id: str
    target_card_id: str
    summary: Optional[str] = None
    metrics: Dict[str, Any] = field(default_factory=dict)
    importance: int = 1
    embedding: Optional[List[float]] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sourceCardId": self.source_card_id,
            "targetCardId": self.target_card_id,
            "summary": self.summary,
            "metrics": self.metrics,
            "importance": self.importance,
            "updatedAt": _iso(self.updated_at),
        }

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "CharacterRelationship":
        return cls(
            id=str(row["id"]),
            story_id=str(row["story_id"]),
            source_card_id=str(row["source_card_id"]),
            target_card_id=str(row["target_card_id"]),
            summary=row.get("summary"),
            metrics=_json_value(row.get("metrics"), {}),
            importance=row.get("importance") or 0,
            embedding=_vector(row.get("embedding")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class CharacterStat:
    id: str
    story_id: str
    character_card_id: str
    key: str
    value: Any = None
    confidence: float = 1.0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "characterCardId": self.character_card_id,
            "key": self.key,
            "value": self.value,
            "confidence": self.confidence,
            "updatedAt": _iso(self.updated_at),
        }

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "CharacterStat":
        return cls(
            id=str(row["id"]),
            story_id=str(row["story_id"]),
            character_card_id=str(row["character_card_id"]),
            key=row["key"],
            value=_json_value(row.get("value"), {}),
            confidence=float(row["confidence"]) if row.get("confidence") is not None else 1.0,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class MemoryInput:
    story_id: str
    summary: str
    source_type: str = MemorySource.SYSTEM.value
    owner_card_id: Optional[str] = None
    subject_card_id: Optional[str] = None
    source_message_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    importance: int = 1
    decay_factor: float = 1.0


@dataclass
class StatInput:
    story_id: str
    character_card_id: str
    key: str
    value: Any
    confidence: Optional[float] = None


@dataclass
class RelationshipInput:
    story_id: str
    source_card_id: str
    target_card_id: str
    summary: Optional[str] = None
    metrics: Dict[str, Any] = field(default_factory=dict)
    importance: int = 1
