# story_agent/tools.py

"""
Function tools bound to the storyteller model.

Every tool reads the story id and its services from the ``TurnContext`` the
turn loop injects, never from model-supplied arguments. Tools return JSON
text; errors are raised as ``DungeonError`` subclasses and turned into tool
error payloads by the dispatcher.
"""

import json
import logging
import random
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from agents import RunContextWrapper, function_tool

from db.models import Card, MemoryInput, RelationshipInput, StatInput, utcnow
from memory.cards import CardService
from memory.character_memory import MemoryService
from memory.resolver import EntityResolver
from utils.error_handling import InvalidPayloadError, NotFoundError, ToolExecutionError

logger = logging.getLogger(__name__)

PLAYER_CARD_NAME = "Player Character"
DICE_PATTERN = re.compile(r"^(\d*)d(\d+)([+-]\d+)?$", re.IGNORECASE)
MAX_DICE = 100
MAX_SIDES = 1000

CardTypeName = Literal["story", "character", "environment", "item", "faction", "quest", "world"]
BackstoryCategory = Literal["skill", "background", "relationship", "experience", "secret", "motivation"]
MemorySourceName = Literal["player", "dm", "npc", "system", "world"]


@dataclass
class TurnContext:
    """Caller-owned state shared by every tool call in one turn."""

    story_id: str
    cards: CardService
    memories: MemoryService
    resolver: EntityResolver
    summarizer: Optional[Any] = None
    image_generator: Optional[Any] = None
    model_id: Optional[str] = None
    image_model_id: Optional[str] = None
    rng: random.Random = field(default_factory=random.Random)


def _dump(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, default=str)


def _check_importance(importance: int) -> int:
    if not 0 <= importance <= 5:
        raise InvalidPayloadError("importance must be between 0 and 5", details={"importance": importance})
    return importance


async def _require_card(
    context: TurnContext,
    card_id: Optional[str],
    name: Optional[str],
    card_type: Optional[str],
    role: str,
) -> str:
    if not (card_id or name):
        raise InvalidPayloadError(f"{role} id or name is required")
    resolved = await context.resolver.resolve_card_id(
        context.story_id, id=card_id, name=name, card_type=card_type
    )
    if resolved is None:
        raise NotFoundError(
            f"{role} card not found", details={"id": card_id, "name": name, "type": card_type}
        )
    return resolved


async def _optional_card(
    context: TurnContext, card_id: Optional[str], name: Optional[str], role: str
) -> Optional[str]:
    if not (card_id or name):
        return None
    return await _require_card(context, card_id, name, None, role)


async def _find_player_card(context: TurnContext) -> Optional[Card]:
    characters = await context.cards.list_cards(context.story_id, card_type="character")
    for card in characters:
        if (card.data or {}).get("isPlayerCharacter"):
            return card
    return await context.cards.get_card_by_name(context.story_id, "character", PLAYER_CARD_NAME)


def roll(formula: str, rng: random.Random) -> Dict[str, Any]:
    """Evaluate an NdM[+/-K] formula."""
    match = DICE_PATTERN.match((formula or "").strip())
    if not match:
        return {"error": "Invalid dice formula", "formula": formula}
    count = int(match.group(1) or "1")
    sides = int(match.group(2))
    modifier = int(match.group(3)) if match.group(3) else 0
    if count < 1 or sides < 1:
        return {"error": "Invalid dice formula", "formula": formula}
    count = min(count, MAX_DICE)
    sides = min(sides, MAX_SIDES)
    rolls = [rng.randint(1, sides) for _ in range(count)]
    return {"formula": formula, "rolls": rolls, "modifier": modifier, "total": sum(rolls) + modifier}


@function_tool(strict_mode=False, failure_error_function=None)
async def roll_dice(ctx: RunContextWrapper[TurnContext], formula: str) -> str:
    """
    Roll polyhedral dice like d20, d6, or custom NdM (e.g., 2d6+1). Returns total and individual rolls.

    Args:
        formula: Dice formula, e.g. '1d20+3' or '2d6+1'.
    """
    return _dump(roll(formula, ctx.context.rng))


@function_tool(strict_mode=False, failure_error_function=None)
async def update_or_create_card(
    ctx: RunContextWrapper[TurnContext],
    type: CardTypeName,
    name: str,
    description: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Create or update a story, character, environment, item, faction, quest or world card by name and type. New data is merged into the existing card.

    Args:
        type: Card type.
        name: Card name, unique per type within the story.
        description: Short description; omitted keeps the current one.
        data: Attributes to merge into the card.
    """
    context = ctx.context
    card = await context.cards.upsert_card(context.story_id, type, name, description=description, data=data)
    return _dump(card.to_dict())


@function_tool(strict_mode=False, failure_error_function=None)
async def list_cards(
    ctx: RunContextWrapper[TurnContext],
    type: Optional[str] = None,
    name: Optional[str] = None,
) -> str:
    """
    List cards, optionally filtered by type or substring of name.

    Args:
        type: Only cards of this type.
        name: Case-insensitive substring of the card name.
    """
    context = ctx.context
    cards = await context.cards.list_cards(context.story_id, card_type=type, name=name)
    return _dump([card.to_dict() for card in cards])


@function_tool(strict_mode=False, failure_error_function=None)
async def update_player_backstory(
    ctx: RunContextWrapper[TurnContext],
    backstory_element: str,
    category: BackstoryCategory,
    description: str,
) -> str:
    """
    Record a backstory element revealed through the player's actions, dialogue, or character reactions. Use this when the player demonstrates a skill, mentions their past, or when NPCs discover something about them.

    Args:
        backstory_element: A brief title, e.g. 'Trained in Stealth' or 'Fear of Heights'.
        category: The type of backstory element being revealed.
        description: How this was revealed and what it means.
    """
    context = ctx.context
    element = (backstory_element or "").strip()
    if not element:
        raise InvalidPayloadError("backstory_element is required")

    player = await _find_player_card(context)
    entry = {"element": element, "description": description, "revealedAt": utcnow().isoformat()}
    patch = {"backstory": {category: [entry]}, "revealedTraits": [element]}
    if player is None:
        patch["isPlayerCharacter"] = True
        card = await context.cards.upsert_card(
            context.story_id,
            "character",
            PLAYER_CARD_NAME,
            description="The player's character, whose backstory develops through play",
            data=patch,
        )
    else:
        card = await context.cards.upsert_card(context.story_id, player.type, player.name, data=patch)

    revealed = (card.data or {}).get("revealedTraits") or []
    return _dump({
        "success": True,
        "message": f"Added backstory element: {element} ({category})",
        "totalElements": len(revealed),
    })


@function_tool(strict_mode=False, failure_error_function=None)
async def record_memory(
    ctx: RunContextWrapper[TurnContext],
    summary: str,
    owner_id: Optional[str] = None,
    owner_name: Optional[str] = None,
    subject_id: Optional[str] = None,
    subject_name: Optional[str] = None,
    importance: int = 1,
    tags: Optional[List[str]] = None,
    source_type: MemorySourceName = "dm",
) -> str:
    """
    Remember a fact or event about the world in one sentence.

    Args:
        summary: One-sentence memory.
        owner_id: Id of the card that holds the memory.
        owner_name: Name of the card that holds the memory, when the id is unknown.
        subject_id: Id of the card the memory is about.
        subject_name: Name of the card the memory is about, when the id is unknown.
        importance: 0 (trivial) to 5 (defining).
        tags: Short labels.
        source_type: Who produced the memory.
    """
    context = ctx.context
    owner = await _optional_card(context, owner_id, owner_name, "owner")
    subject = await _optional_card(context, subject_id, subject_name, "subject")
    memory = await context.memories.record_memory(
        MemoryInput(
            story_id=context.story_id,
            summary=summary,
            source_type=source_type,
            owner_card_id=owner,
            subject_card_id=subject,
            tags=list(tags or []),
            importance=_check_importance(importance),
        )
    )
    return _dump({"success": True, "memoryId": memory.id})


@function_tool(strict_mode=False, failure_error_function=None)
async def upsert_character_stat(
    ctx: RunContextWrapper[TurnContext],
    key: str,
    value: Any,
    character_id: Optional[str] = None,
    character_name: Optional[str] = None,
    confidence: Optional[float] = None,
) -> str:
    """
    Set a stat on a character, e.g. strength, reputation or mood. Replaces the previous value.

    Args:
        key: Stat name.
        value: New value; any JSON.
        character_id: Character card id.
        character_name: Character name, when the id is unknown.
        confidence: How sure the narrator is, 0 to 1.
    """
    context = ctx.context
    character = await _require_card(context, character_id, character_name, "character", "character")
    stat = await context.memories.upsert_character_stat(
        StatInput(
            story_id=context.story_id,
            character_card_id=character,
            key=key,
            value=value,
            confidence=confidence,
        )
    )
    return _dump(stat.to_dict())


@function_tool(strict_mode=False, failure_error_function=None)
async def update_relationship(
    ctx: RunContextWrapper[TurnContext],
    source_id: Optional[str] = None,
    source_name: Optional[str] = None,
    target_id: Optional[str] = None,
    target_name: Optional[str] = None,
    summary: Optional[str] = None,
    metrics: Optional[Dict[str, Any]] = None,
    importance: int = 1,
) -> str:
    """
    Record how one character feels about or relates to another. Metrics merge into the existing relationship.

    Args:
        source_id: Id of the character who holds the view.
        source_name: Name of that character, when the id is unknown.
        target_id: Id of the character the view is about.
        target_name: Name of that character, when the id is unknown.
        summary: One sentence describing the relationship now.
        metrics: Values such as trust or affection.
        importance: 0 to 5; never lowers the recorded importance.
    """
    context = ctx.context
    source = await _require_card(context, source_id, source_name, "character", "source")
    target = await _require_card(context, target_id, target_name, "character", "target")
    relationship = await context.memories.upsert_relationship(
        RelationshipInput(
            story_id=context.story_id,
            source_card_id=source,
            target_card_id=target,
            summary=summary,
            metrics=dict(metrics or {}),
            importance=_check_importance(importance),
        )
    )
    return _dump(relationship.to_dict())


@function_tool(strict_mode=False, failure_error_function=None)
async def summarize_story(ctx: RunContextWrapper[TurnContext]) -> str:
    """Condense the story so far into the long-term summary and record the lasting memories it implies."""
    context = ctx.context
    if context.summarizer is None:
        raise ToolExecutionError("Story summaries are not available")
    result = await context.summarizer.summarize(context.story_id, model_id=context.model_id)
    return _dump(result.to_dict())


@function_tool(strict_mode=False, failure_error_function=None)
async def generate_image(
    ctx: RunContextWrapper[TurnContext],
    prompt: str,
    reference_card_names: Optional[List[str]] = None,
) -> str:
    """
    Illustrate the current scene.

    Args:
        prompt: What the image shows.
        reference_card_names: Cards whose reference images keep characters and places consistent.
    """
    context = ctx.context
    if context.image_generator is None:
        raise ToolExecutionError("Image generation is not available")
    references: List[str] = []
    for name in reference_card_names or []:
        card_id = await context.resolver.resolve_card_id(context.story_id, name=name)
        card = await context.cards.get_card(context.story_id, card_id) if card_id else None
        url = (card.data or {}).get("referenceImageUrl") if card else None
        if isinstance(url, str) and url:
            references.append(url)
    image_url = await context.image_generator.generate(
        prompt, model=context.image_model_id, reference_image_urls=references or None
    )
    logger.info("Generated image for story %s (%d references)", context.story_id, len(references))
    return _dump({"imageUrl": image_url})


async def _reference_card(context: TurnContext, card_name: str, card_type: Optional[str]) -> Card:
    card_id = await context.resolver.resolve_card_id(context.story_id, name=card_name, card_type=card_type)
    card = await context.cards.get_card(context.story_id, card_id) if card_id else None
    if card is None:
        raise NotFoundError("Card not found", details={"name": card_name, "type": card_type})
    return card


@function_tool(strict_mode=False, failure_error_function=None)
async def get_reference_image(
    ctx: RunContextWrapper[TurnContext],
    card_name: str,
    card_type: Optional[str] = None,
) -> str:
    """
    Look up the reference image of a card.

    Args:
        card_name: Card name or alias.
        card_type: Card type, when the name is ambiguous.
    """
    card = await _reference_card(ctx.context, card_name, card_type)
    return _dump({
        "cardId": card.id,
        "cardName": card.name,
        "imageUrl": (card.data or {}).get("referenceImageUrl"),
    })


@function_tool(strict_mode=False, failure_error_function=None)
async def set_reference_image(
    ctx: RunContextWrapper[TurnContext],
    card_name: str,
    image_url: str,
    card_type: Optional[str] = None,
) -> str:
    """
    Attach a reference image to a card so later illustrations stay consistent.

    Args:
        card_name: Card name or alias.
        image_url: http(s) URL or data URL of the image.
        card_type: Card type, when the name is ambiguous.
    """
    context = ctx.context
    url = (image_url or "").strip()
    if not url.startswith(("http://", "https://", "data:image/")):
        raise InvalidPayloadError("image_url must be an http(s) or data:image URL")
    card = await _reference_card(context, card_name, card_type)
    updated = await context.cards.upsert_card(
        context.story_id, card.type, card.name, data={"referenceImageUrl": url}
    )
    return _dump({"cardId": updated.id, "cardName": updated.name, "imageUrl": url})


STORY_TOOLS = [
    roll_dice,
    update_or_create_card,
    list_cards,
    update_player_backstory,
    record_memory,
    upsert_character_stat,
    update_relationship,
    summarize_story,
    generate_image,
    get_reference_image,
    set_reference_image,
]

TOOLS_BY_NAME = {tool.name: tool for tool in STORY_TOOLS}


__all__ = [
    "TurnContext",
    "STORY_TOOLS",
    "TOOLS_BY_NAME",
    "roll",
] + [tool.name for tool in STORY_TOOLS]
