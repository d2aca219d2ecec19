# memory/card_schemas.py

"""
Typed views over the free-form card ``data`` bag.

Each card type has a pydantic model listing the fields the narrator and the
tools rely on. Unknown keys are allowed and survive untouched, so the model
can still add exploratory attributes; only wrong shapes for the known fields
are rejected.
"""

from typing import Any, Dict, List, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from utils.error_handling import InvalidPayloadError


class _CardData(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class CharacterTraits(_CardData):
    physical: Optional[List[str]] = None
    personality: Optional[List[str]] = None
    behavioral: Optional[List[str]] = None


class CharacterCardData(_CardData):
    name: Optional[str] = None
    display_name: Optional[str] = Field(None, alias="displayName")
    aliases: Optional[List[str]] = None
    gender: Optional[str] = None
    race: Optional[str] = None
    profession: Optional[str] = None
    attitude: Optional[str] = None
    hp: Optional[Union[int, float]] = None
    traits: Optional[Union[CharacterTraits, List[Any]]] = None
    relationships: Optional[Dict[str, Any]] = None
    goals: Optional[List[Any]] = None
    secrets: Optional[List[Any]] = None
    backstory: Optional[Dict[str, Any]] = None
    revealed_traits: Optional[List[Any]] = Field(None, alias="revealedTraits")
    is_player_character: Optional[bool] = Field(None, alias="isPlayerCharacter")
    initial_backstory: Optional[str] = Field(None, alias="initialBackstory")
    initial_backstory_summary: Optional[str] = Field(None, alias="initialBackstorySummary")
    reference_image_url: Optional[str] = Field(None, alias="referenceImageUrl")


class WorldCardData(_CardData):
    races: Optional[Dict[str, Any]] = None
    calendars: Optional[Dict[str, Any]] = None
    religions: Optional[List[Any]] = None
    magic: Optional[Dict[str, Any]] = None
    politics_template: Optional[Dict[str, Any]] = None


class BeginningCardData(_CardData):
    key: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    seed: Optional[Dict[str, Any]] = None


class SummaryEntry(_CardData):
    summary: str
    recorded_at: Optional[str] = Field(None, alias="recordedAt")


class StoryCardData(_CardData):
    summaries: Optional[List[SummaryEntry]] = None
    last_updated_at: Optional[str] = Field(None, alias="lastUpdatedAt")
    hooks: Optional[List[Any]] = None


class EntityCardData(_CardData):
    """Environment, item, faction and quest cards."""

    aliases: Optional[List[str]] = None
    display_name: Optional[str] = Field(None, alias="displayName")
    reference_image_url: Optional[str] = Field(None, alias="referenceImageUrl")


CARD_DATA_MODELS: Dict[str, Type[_CardData]] = {
    "character": CharacterCardData,
    "world": WorldCardData,
    "beginning": BeginningCardData,
    "story": StoryCardData,
    "environment": EntityCardData,
    "item": EntityCardData,
    "faction": EntityCardData,
    "quest": EntityCardData,
}


def _format_errors(exc: ValidationError) -> List[Dict[str, Any]]:
    return [
        {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
        for error in exc.errors()
    ]


def parse_card_data(card_type: str, data: Optional[Dict[str, Any]]) -> _CardData:
    """Typed view of a card's data bag."""
    model = CARD_DATA_MODELS.get(card_type, _CardData)
    try:
        return model.model_validate(data or {})
    except ValidationError as exc:
        raise InvalidPayloadError(
            f"Invalid data for {card_type} card", details={"errors": _format_errors(exc)}
        ) from exc


def validate_card_patch(card_type: str, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Check a partial ``data`` update against the schema of ``card_type``.

    Returns only the keys the caller supplied, under their wire names, so the
    result can be deep-merged into the stored bag without adding defaults.
    """
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidPayloadError(
            "Card data must be an object", details={"receivedType": type(data).__name__}
        )
    parsed = parse_card_data(card_type, data)
    return parsed.model_dump(by_alias=True, exclude_unset=True)


__all__ = [
    "CharacterTraits",
    "CharacterCardData",
    "WorldCardData",
    "BeginningCardData",
    "SummaryEntry",
    "StoryCardData",
    "EntityCardData",
    "CARD_DATA_MODELS",
    "parse_card_data",
    "validate_card_patch",
]
