# story_agent/gm_settings.py

"""Per-story narrator knobs (tone, difficulty, narrative style)."""

import logging
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from db.store import StoryStore
from utils.error_handling import InvalidPayloadError

logger = logging.getLogger(__name__)


class Tone(str, Enum):
    DARK = "dark"
    HEROIC = "heroic"
    WHIMSICAL = "whimsical"


class Difficulty(str, Enum):
    EASY = "easy"
    NORMAL = "normal"
    HARD = "hard"


class NarrativeStyle(str, Enum):
    CINEMATIC = "cinematic"
    GRITTY = "gritty"
    MYSTICAL = "mystical"


class GMSettings(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, use_enum_values=True)

    tone: Tone = Tone.HEROIC
    difficulty: Difficulty = Difficulty.NORMAL
    narrative_style: NarrativeStyle = Field(NarrativeStyle.CINEMATIC, alias="narrativeStyle")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


DEFAULT_SETTINGS = GMSettings().to_dict()


def _validate(data: Dict[str, Any]) -> GMSettings:
    try:
        return GMSettings.model_validate(data)
    except ValidationError as exc:
        raise InvalidPayloadError(
            "Invalid GM settings",
            details={"errors": [
                {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]} for e in exc.errors()
            ]},
        ) from exc


class SettingsService:
    def __init__(self, store: StoryStore):
        self.store = store

    async def get_settings(self, story_id: str) -> Dict[str, Any]:
        """Stored settings over the defaults; the defaults are persisted on first read."""
        stored: Optional[Dict[str, Any]] = await self.store.get_settings(story_id)
        if stored is None:
            await self.store.save_settings(story_id, dict(DEFAULT_SETTINGS))
            return dict(DEFAULT_SETTINGS)
        return _validate({**DEFAULT_SETTINGS, **stored}).to_dict()

    async def update_settings(self, story_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        current = await self.get_settings(story_id)
        merged = _validate({**current, **(patch or {})}).to_dict()
        await self.store.save_settings(story_id, merged)
        logger.debug("Updated GM settings for story %s", story_id)
        return merged
