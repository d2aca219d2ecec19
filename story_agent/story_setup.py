# story_agent/story_setup.py

"""
Seed a freshly created story: world lore, the player character, the chosen
beginning and its starter cards.
"""

import logging
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from db.models import CardType, MemoryInput, MemorySource
from logic.chatgpt_integration import ChatModel
from logic.model_options import resolve_model_id
from memory.cards import CardService
from memory.character_memory import MemoryService
from openai_integration.message_utils import build_chat_message, extract_text
from story_agent.stories import StoryService
from story_agent.worlds import BEGINNINGS, get_world_card
from utils.error_handling import InvalidPayloadError

logger = logging.getLogger(__name__)

PLAYER_CARD_NAME = "Player Character"

BACKSTORY_SYSTEM_PROMPT = (
    "You are a narrative designer for a fantasy RPG. Rewrite the given player-provided backstory "
    "as a single evocative sentence in third person that captures their motivation, tone, or "
    "defining hook. Avoid second-person language and meta commentary."
)
BACKSTORY_TEMPERATURE = 0.6


class PlayerCharacterInput(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    name: str
    gender: str
    race: str
    backstory: Optional[str] = None


def fallback_backstory_summary(name: str, backstory: str) -> str:
    return f"{name}'s origins: {backstory}"


class StoryInitializer:
    def __init__(
        self,
        stories: StoryService,
        cards: CardService,
        memories: MemoryService,
        chat_model: Optional[ChatModel] = None,
        model_id: Optional[str] = None,
    ):
        self.stories = stories
        self.cards = cards
        self.memories = memories
        self.chat_model = chat_model
        self.model_id = resolve_model_id(model_id)

    async def summarize_backstory(self, name: str, backstory: str) -> str:
        """One third-person sentence for the backstory; degrades to a plain template."""
        trimmed = backstory.strip()
        if not trimmed:
            return ""
        if self.chat_model is None:
            return fallback_backstory_summary(name, trimmed)
        messages = [
            build_chat_message("system", BACKSTORY_SYSTEM_PROMPT),
            build_chat_message(
                "user",
                f"Player character: {name}\nBackstory:\n{trimmed}\n\nRespond with one polished sentence.",
            ),
        ]
        try:
            summary = extract_text(
                await self.chat_model.complete(
                    messages, model=self.model_id, temperature=BACKSTORY_TEMPERATURE
                )
            )
        except Exception:
            logger.warning("Backstory summary failed for %r, using fallback", name, exc_info=True)
            return fallback_backstory_summary(name, trimmed)
        return summary or fallback_backstory_summary(name, trimmed)

    async def _seed_player(self, story_id: str, player: PlayerCharacterInput) -> None:
        initial_backstory = (player.backstory or "").strip()
        data: Dict[str, Any] = {
            "name": player.name,
            "gender": player.gender,
            "race": player.race,
            "backstory": {},
            "revealedTraits": [],
            "isPlayerCharacter": True,
        }
        if initial_backstory:
            data["initialBackstory"] = initial_backstory
        card = await self.cards.upsert_card(
            story_id,
            CardType.CHARACTER.value,
            PLAYER_CARD_NAME,
            description=f"{player.name}, a {player.gender} {player.race}",
            data=data,
        )
        if not initial_backstory or (card.data or {}).get("initialBackstorySummary"):
            return

        summary = await self.summarize_backstory(player.name, initial_backstory)
        await self.memories.record_memory(
            MemoryInput(
                story_id=story_id,
                summary=summary,
                source_type=MemorySource.PLAYER.value,
                owner_card_id=card.id,
                subject_card_id=card.id,
                context={"initialBackstory": initial_backstory},
                tags=["backstory", "origin"],
                importance=4,
            )
        )
        await self.cards.upsert_card(
            story_id,
            CardType.CHARACTER.value,
            PLAYER_CARD_NAME,
            data={"initialBackstorySummary": summary},
        )

    async def initialize(
        self,
        user_id: str,
        story_id: str,
        beginning_key: str,
        player_character: Optional[Union[PlayerCharacterInput, Dict[str, Any]]] = None,
        world_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        await self.stories.assert_story_ownership(user_id, story_id)
        beginning = BEGINNINGS.get(beginning_key or "")
        if beginning is None:
            raise InvalidPayloadError(
                "Invalid beginning key", details={"beginningKey": beginning_key, "allowed": list(BEGINNINGS)}
            )
        logger.info("Seeding story %s with beginning %r", story_id, beginning["title"])

        world = get_world_card(world_key)
        await self.cards.upsert_card(
            story_id, world["type"], world["name"], description=world["description"], data=world["data"]
        )

        if player_character is not None:
            if isinstance(player_character, dict):
                try:
                    player_character = PlayerCharacterInput.model_validate(player_character)
                except ValidationError as exc:
                    raise InvalidPayloadError(
                        "Invalid player character",
                        details={"errors": [
                            {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]}
                            for e in exc.errors()
                        ]},
                    ) from exc
            await self._seed_player(story_id, player_character)

        await self.cards.upsert_card(
            story_id,
            CardType.BEGINNING.value,
            beginning["title"],
            description=beginning["description"],
            data={
                "key": beginning_key,
                "title": beginning["title"],
                "description": beginning["description"],
                "seed": beginning["seed"],
            },
        )
        for seed_card in beginning["seed"]["story"]:
            await self.cards.upsert_card(
                story_id,
                seed_card["type"],
                seed_card["name"],
                description=seed_card["description"],
                data=seed_card["data"],
            )

        return {"ok": True, "title": beginning["title"], "description": beginning["description"]}
