# memory/cards.py

"""
Card service: typed, named world entities scoped to a story.

Upsert by (story, type, name) is the only creation path. Repeated upserts
deep-merge the data bag through ``utils.structured_merge`` and clear the
cached embedding; every successful upsert schedules a story-wide embedding
sweep plus a refresh of the card itself.
"""

import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from db.models import CARD_TYPE_VALUES, Card
from db.store import StoryStore
from embedding.indexer import EmbeddingIndexer
from memory.card_schemas import validate_card_patch
from utils.error_handling import InvalidPayloadError, NotFoundError
from utils.structured_merge import merge_structured_values, sanitize_structured_object

logger = logging.getLogger(__name__)


def card_display_name(card: Card) -> str:
    data = card.data or {}
    for key in ("name", "displayName"):
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return card.name


class CardService:
    def __init__(self, store: StoryStore, indexer: Optional[EmbeddingIndexer] = None):
        self.store = store
        self.indexer = indexer

    async def upsert_card(
        self,
        story_id: str,
        card_type: str,
        name: str,
        description: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Card:
        clean_name = (name or "").strip()
        if not clean_name:
            raise InvalidPayloadError("Card name is required")
        if card_type not in CARD_TYPE_VALUES:
            raise InvalidPayloadError(
                f"Unknown card type: {card_type}", details={"allowed": list(CARD_TYPE_VALUES)}
            )
        patch = validate_card_patch(card_type, data)

        card = await self.store.upsert_card(
            story_id,
            card_type,
            clean_name,
            description=description,
            data=patch,
        )
        logger.debug("Upserted %s card %r (%s) in story %s", card_type, clean_name, card.id, story_id)
        if self.indexer is not None:
            self.indexer.schedule_card(story_id, card.id)
        return card

    async def get_cards(self, story_id: str) -> List[Card]:
        return await self.store.list_cards(story_id)

    async def get_card(self, story_id: str, card_id: str) -> Optional[Card]:
        return await self.store.get_card(story_id, card_id)

    async def get_card_by_name(self, story_id: str, card_type: str, name: str) -> Optional[Card]:
        """Case-insensitive (type, name) lookup."""
        needle = (name or "").strip()
        if not needle:
            return None
        exact = await self.store.get_card_by_name(story_id, card_type, needle)
        if exact is not None:
            return exact
        lowered = needle.lower()
        for card in await self.store.list_cards(story_id, card_type=card_type, name_contains=needle):
            if card.name.lower() == lowered:
                return card
        return None

    async def list_cards(
        self,
        story_id: str,
        card_type: Optional[str] = None,
        name: Optional[str] = None,
    ) -> List[Card]:
        return await self.store.list_cards(story_id, card_type=card_type, name_contains=name or None)

    async def delete_card(self, story_id: str, card_id: str) -> None:
        if not await self.store.delete_card(story_id, card_id):
            raise NotFoundError("Card not found", details={"cardId": card_id})
        logger.info("Deleted card %s from story %s", card_id, story_id)

    async def replace_card_data(self, story_id: str, card_id: str, data: Dict[str, Any]) -> Card:
        card = await self.store.replace_card_data(story_id, card_id, data)
        if card is None:
            raise NotFoundError("Card not found", details={"cardId": card_id})
        if self.indexer is not None:
            self.indexer.schedule_card(story_id, card.id)
        return card

    async def list_character_sheets(self, story_id: str) -> List[Dict[str, Any]]:
        """
        Character cards grouped by display name (case-insensitive), with the
        data of duplicates deep-merged into one sheet. The first card seen
        supplies the id and the display casing.
        """
        sheets: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        for card in await self.store.list_cards(story_id, card_type="character"):
            display = card_display_name(card)
            key = display.lower()
            sheet = sheets.get(key)
            if sheet is None:
                sheets[key] = {
                    "id": card.id,
                    "name": display,
                    "description": card.description,
                    "cardIds": [card.id],
                    "data": sanitize_structured_object(card.data),
                }
                continue
            sheet["cardIds"].append(card.id)
            sheet["data"] = sanitize_structured_object(merge_structured_values(sheet["data"], card.data))
            if not sheet["description"] and card.description:
                sheet["description"] = card.description
        return list(sheets.values())
