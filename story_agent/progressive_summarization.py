# story_agent/progressive_summarization.py

"""
Batch summarisation of a story transcript.

A constrained (JSON schema) model call condenses the recent transcript into a
``StorySummaryPayload``: a recap plus memories, character sheet patches and
relationship changes. Every id the model returns is reconciled against the
live card set before anything is written, so fabricated foreign keys fall
back to name resolution instead of corrupting the world state.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from config import get_config
from db.models import MEMORY_SOURCE_VALUES, Card, MemoryInput, RelationshipInput, utcnow
from logic.chatgpt_integration import ChatModel
from logic.model_options import resolve_model_id
from memory.cards import CardService
from memory.character_memory import MemoryService
from memory.resolver import EntityResolver, normalize_card_type
from openai_integration.message_utils import build_chat_message
from story_agent.stories import StoryService
from utils.error_handling import InvalidPayloadError, NotFoundError

logger = logging.getLogger(__name__)

SUMMARY_CARD_NAME = "Long-Term Summary"
SUMMARY_CARD_DESCRIPTION = "Condensed history of the ongoing adventure."
SCHEMA_NAME = "StorySummary"
MAX_ERROR_DETAIL = 1200

CardTypeName = Literal["story", "character", "environment", "item", "faction", "quest", "world"]
MemorySourceName = Literal["player", "dm", "npc", "system", "world"]

ARCHIVIST_PROMPT = (
    "You are a campaign archivist. Produce a structured summary of recent events. Capture key "
    "facts as memories, note character sheet updates, and refresh relationships. Only output JSON "
    "matching the requested schema."
)

INSTRUCTIONS = [
    "- summary: concise narrative recap in a few sentences.",
    "- summaryLabel: optional custom title (e.g., 'Chapter 3 Recap').",
    "- memories: list durable takeaways; include sourceType/owners when helpful.",
    "- characterUpdates: merge-only patches to reflect new info or newly introduced characters (omit unchanged fields).",
    "- relationshipUpdates: describe trust/rivalry changes with optional metrics.",
    "- For any *_Id field, only use IDs from the Known characters list, never invent one. If the ID is unknown, leave it null and rely on the corresponding name/type fields.",
    "- Arrays must contain only well-formed objects that match the schema. Never emit stray strings, comments, or partial fragments.",
    "- Return strictly valid JSON for the schema with no extra text before or after.",
]


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class MemoryPayload(_Payload):
    summary: str = Field(..., min_length=1, description="One-sentence memory to store alongside the summary.")
    source_type: Optional[MemorySourceName] = Field(None, alias="sourceType")
    owner_card_id: Optional[str] = Field(None, alias="ownerCardId")
    owner_card_name: Optional[str] = Field(None, alias="ownerCardName")
    owner_card_type: Optional[CardTypeName] = Field(None, alias="ownerCardType")
    subject_card_id: Optional[str] = Field(None, alias="subjectCardId")
    subject_card_name: Optional[str] = Field(None, alias="subjectCardName")
    subject_card_type: Optional[CardTypeName] = Field(None, alias="subjectCardType")
    importance: Optional[int] = Field(None, ge=0, le=5)
    tags: Optional[List[str]] = None
    context: Optional[Dict[str, Any]] = None


class CharacterUpdate(_Payload):
    character_id: Optional[str] = Field(None, alias="characterId")
    character_name: Optional[str] = Field(None, alias="characterName")
    character_type: Optional[CardTypeName] = Field(None, alias="characterType")
    description: Optional[str] = None
    data_patch: Optional[Dict[str, Any]] = Field(
        None, alias="dataPatch", description="Merged into the character's data object."
    )


class RelationshipUpdate(_Payload):
    source_id: Optional[str] = Field(None, alias="sourceId")
    source_name: Optional[str] = Field(None, alias="sourceName")
    source_type: Optional[CardTypeName] = Field(None, alias="sourceType")
    target_id: Optional[str] = Field(None, alias="targetId")
    target_name: Optional[str] = Field(None, alias="targetName")
    target_type: Optional[CardTypeName] = Field(None, alias="targetType")
    summary: Optional[str] = None
    metrics: Optional[Dict[str, Any]] = None
    importance: Optional[int] = Field(None, ge=0, le=5)


class StorySummaryPayload(_Payload):
    summary: str = Field(
        ...,
        min_length=1,
        description="Concise recap of recent events. Focus on irreversible changes, promises, and emotional beats.",
    )
    summary_label: Optional[str] = Field(
        None,
        alias="summaryLabel",
        max_length=120,
        description="Custom label for the summary card (defaults to Long-Term Summary).",
    )
    memories: Optional[List[MemoryPayload]] = None
    character_updates: Optional[List[CharacterUpdate]] = Field(None, alias="characterUpdates")
    relationship_updates: Optional[List[RelationshipUpdate]] = Field(None, alias="relationshipUpdates")


@dataclass
class SummaryResult:
    summary: str
    summary_card_id: str
    memory_ids: List[str] = field(default_factory=list)
    character_ids: List[str] = field(default_factory=list)
    relationship_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "summaryCardId": self.summary_card_id,
            "recordedMemoryIds": self.memory_ids,
            "updatedCharacterIds": self.character_ids,
            "updatedRelationshipIds": self.relationship_ids,
        }


def reconcile_summary_payload(payload: StorySummaryPayload, cards: Sequence[Card]) -> StorySummaryPayload:
    """
    Check every id in ``payload`` against ``cards``.

    Memory owner/subject ids must name an existing card; character and
    relationship ids must name an existing character card. Unknown ids are
    cleared so the name fields drive resolution; known ids fill in missing
    names and types.
    """
    by_id = {card.id: card for card in cards}
    character_ids = {card.id for card in cards if card.type == "character"}

    def reconcile_memory(memory: MemoryPayload) -> MemoryPayload:
        update: Dict[str, Any] = {}
        for prefix in ("owner", "subject"):
            card_id = getattr(memory, f"{prefix}_card_id")
            if not card_id:
                continue
            card = by_id.get(card_id)
            if card is None:
                update[f"{prefix}_card_id"] = None
                continue
            if getattr(memory, f"{prefix}_card_name") is None:
                update[f"{prefix}_card_name"] = card.name
            card_type = normalize_card_type(card.type)
            if card_type and getattr(memory, f"{prefix}_card_type") is None:
                update[f"{prefix}_card_type"] = card_type
        return memory.model_copy(update=update)

    def reconcile_character(item: CharacterUpdate) -> CharacterUpdate:
        update: Dict[str, Any] = {"character_type": "character"}
        if item.character_id:
            if item.character_id not in character_ids:
                update["character_id"] = None
            elif item.character_name is None:
                update["character_name"] = by_id[item.character_id].name
        return item.model_copy(update=update)

    def reconcile_relationship(item: RelationshipUpdate) -> RelationshipUpdate:
        update: Dict[str, Any] = {"source_type": "character", "target_type": "character"}
        for prefix in ("source", "target"):
            card_id = getattr(item, f"{prefix}_id")
            if not card_id:
                continue
            if card_id not in character_ids:
                update[f"{prefix}_id"] = None
            elif getattr(item, f"{prefix}_name") is None:
                update[f"{prefix}_name"] = by_id[card_id].name
        return item.model_copy(update=update)

    return payload.model_copy(update={
        "memories": None if payload.memories is None else [reconcile_memory(m) for m in payload.memories],
        "character_updates": None if payload.character_updates is None
        else [reconcile_character(c) for c in payload.character_updates],
        "relationship_updates": None if payload.relationship_updates is None
        else [reconcile_relationship(r) for r in payload.relationship_updates],
    })


def _strip_code_fence(raw: str) -> str:
    text = (raw or "").strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def _trim(detail: str) -> str:
    return detail if len(detail) <= MAX_ERROR_DETAIL else f"{detail[:MAX_ERROR_DETAIL]}..."


class StorySummaryReconciler:
    def __init__(
        self,
        stories: StoryService,
        cards: CardService,
        memories: MemoryService,
        resolver: EntityResolver,
        chat_model: ChatModel,
        config=None,
    ):
        self.stories = stories
        self.cards = cards
        self.memories = memories
        self.resolver = resolver
        self.chat_model = chat_model
        self.config = config or get_config()

    def _conversation(self, transcript: str, cards: Sequence[Card]) -> List[Dict[str, Any]]:
        characters = [
            {"id": card.id, "name": card.name, "description": card.description or "", "data": card.data or {}}
            for card in cards
            if card.type == "character"
        ]
        window = self.config.SUMMARY_TRANSCRIPT_CHARS
        truncated = transcript[-window:] if len(transcript) > window else transcript
        return [
            build_chat_message("system", ARCHIVIST_PROMPT),
            build_chat_message(
                "user",
                "\n".join([
                    "Transcript (truncated to recent events):",
                    truncated,
                    "\nKnown characters:",
                    json.dumps(characters, ensure_ascii=False, default=str),
                    "\nInstructions:",
                    *INSTRUCTIONS,
                ]),
            ),
        ]

    async def request_payload(
        self, story_id: str, cards: Sequence[Card], model_id: Optional[str] = None
    ) -> StorySummaryPayload:
        """Ask the model for a summary, feeding parse errors back until it conforms."""
        transcript = await self.stories.get_transcript(story_id)
        if not transcript.strip():
            raise InvalidPayloadError("Story has no messages to summarize", details={"storyId": story_id})

        conversation = self._conversation(transcript, cards)
        schema = StorySummaryPayload.model_json_schema(by_alias=True)
        attempts = max(1, self.config.SUMMARY_MAX_ATTEMPTS)
        model = resolve_model_id(model_id)
        detail = ""
        for attempt in range(1, attempts + 1):
            raw = await self.chat_model.structured(
                conversation,
                schema=schema,
                name=SCHEMA_NAME,
                model=model,
                temperature=self.config.SUMMARY_TEMPERATURE,
            )
            try:
                return StorySummaryPayload.model_validate_json(_strip_code_fence(raw))
            except ValidationError as exc:
                detail = _trim(str(exc))
            logger.warning(
                "Summary for story %s failed to parse (attempt %d/%d): %s",
                story_id, attempt, attempts, detail,
            )
            conversation.append(build_chat_message("assistant", raw))
            conversation.append(build_chat_message("user", "\n".join([
                "Your previous response failed to parse:",
                detail,
                "Resubmit ONLY valid JSON that conforms exactly to the schema.",
                "Every entry in memories/characterUpdates/relationshipUpdates must be an object (no loose strings).",
            ])))
        raise InvalidPayloadError(
            "Failed to obtain a structured summary",
            details={"attempts": attempts, "lastError": detail},
        )

    async def summarize(self, story_id: str, model_id: Optional[str] = None) -> SummaryResult:
        cards = await self.cards.get_cards(story_id)
        payload = await self.request_payload(story_id, cards, model_id)
        payload = reconcile_summary_payload(payload, cards)
        result = await self.apply_story_summary(story_id, payload, cards)
        logger.info(
            "Summarized story %s: %d memories, %d characters, %d relationships",
            story_id, len(result.memory_ids), len(result.character_ids), len(result.relationship_ids),
        )
        return result

    async def apply_story_summary(
        self,
        story_id: str,
        payload: StorySummaryPayload,
        cards: Optional[Sequence[Card]] = None,
    ) -> SummaryResult:
        label = (payload.summary_label or "").strip()
        card_name = label or SUMMARY_CARD_NAME
        existing = await self.cards.get_card_by_name(story_id, "story", card_name)
        recorded_at = utcnow().isoformat()
        summary_card = await self.cards.upsert_card(
            story_id,
            "story",
            card_name,
            description=None if existing and existing.description else SUMMARY_CARD_DESCRIPTION,
            data={
                "summaries": [{"summary": payload.summary, "recordedAt": recorded_at}],
                "lastUpdatedAt": recorded_at,
            },
        )

        known: List[Card] = list(cards) if cards is not None else await self.cards.get_cards(story_id)
        result = SummaryResult(summary=payload.summary, summary_card_id=summary_card.id)

        memory_inputs = []
        for memory in payload.memories or []:
            owner = await self.resolver.resolve_card_id(
                story_id,
                id=memory.owner_card_id,
                name=memory.owner_card_name,
                card_type=memory.owner_card_type or "character",
                cards=known,
            )
            subject = await self.resolver.resolve_card_id(
                story_id,
                id=memory.subject_card_id,
                name=memory.subject_card_name,
                card_type=memory.subject_card_type or "character",
                cards=known,
            )
            source = memory.source_type if memory.source_type in MEMORY_SOURCE_VALUES else "system"
            memory_inputs.append(MemoryInput(
                story_id=story_id,
                summary=memory.summary,
                source_type=source,
                owner_card_id=owner,
                subject_card_id=subject,
                importance=1 if memory.importance is None else memory.importance,
                tags=list(memory.tags or []),
                context=dict(memory.context or {}),
            ))
        if memory_inputs:
            recorded = await self.memories.record_memories(memory_inputs)
            result.memory_ids.extend(memory.id for memory in recorded)

        for update in payload.character_updates or []:
            resolved = await self.resolver.resolve_card_id(
                story_id,
                id=update.character_id,
                name=update.character_name,
                card_type=update.character_type or "character",
                cards=known,
            )
            target = next((card for card in known if card.id == resolved), None) if resolved else None
            if target is None and resolved:
                target = await self.cards.get_card(story_id, resolved)
            if target is None:
                if not update.character_name:
                    raise NotFoundError(
                        "Unable to resolve character for update",
                        details={"characterId": update.character_id},
                    )
                card = await self.cards.upsert_card(
                    story_id,
                    normalize_card_type(update.character_type) or "character",
                    update.character_name,
                    description=update.description,
                    data=update.data_patch or {},
                )
                known.append(card)
            else:
                card = await self.cards.upsert_card(
                    story_id,
                    target.type,
                    target.name,
                    description=update.description,
                    data=update.data_patch or {},
                )
                known = [card if item.id == card.id else item for item in known]
            result.character_ids.append(card.id)

        for update in payload.relationship_updates or []:
            source_id = await self.resolver.resolve_card_id(
                story_id,
                id=update.source_id,
                name=update.source_name,
                card_type=update.source_type or "character",
                cards=known,
            )
            if not source_id:
                raise NotFoundError(
                    "Unable to resolve source character",
                    details={"name": update.source_name, "id": update.source_id},
                )
            target_id = await self.resolver.resolve_card_id(
                story_id,
                id=update.target_id,
                name=update.target_name,
                card_type=update.target_type or "character",
                cards=known,
            )
            if not target_id:
                raise NotFoundError(
                    "Unable to resolve target character",
                    details={"name": update.target_name, "id": update.target_id},
                )
            relationship = await self.memories.upsert_relationship(RelationshipInput(
                story_id=story_id,
                source_card_id=source_id,
                target_card_id=target_id,
                summary=update.summary,
                metrics=dict(update.metrics or {}),
                importance=1 if update.importance is None else update.importance,
            ))
            result.relationship_ids.append(relationship.id)

        return result


__all__ = [
    "MemoryPayload",
    "CharacterUpdate",
    "RelationshipUpdate",
    "StorySummaryPayload",
    "SummaryResult",
    "StorySummaryReconciler",
    "reconcile_summary_payload",
]
