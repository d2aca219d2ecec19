# memory/resolver.py

"""
Resolve loosely specified entity references to card ids.

The model refers to entities by whatever it saw in the narrative: a card id,
a display name, or an alias, sometimes with a display name in the id slot.
A reference is turned into an ordered chain of ``EntityRef`` strategies
(``ById``, then ``ByName``, then ``ByAlias``) and the first one that
resolves wins. ``None`` means nothing matched; callers decide whether that
is an error or a signal to create the entity.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Union

from db.models import Card
from memory.cards import CardService

logger = logging.getLogger(__name__)

UUID_REGEX = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)

# Types the model may name; "beginning" cards are addressed as story cards.
REFERENCE_CARD_TYPES = ("story", "character", "environment", "item", "faction", "quest", "world")

ALIAS_FIELDS = ("name", "displayName")


def normalize_card_type(card_type: Optional[str]) -> Optional[str]:
    if not card_type:
        return None
    lowered = card_type.strip().lower()
    if lowered == "beginning":
        return "story"
    return lowered if lowered in REFERENCE_CARD_TYPES else None


def is_uuid(value: Optional[str]) -> bool:
    return isinstance(value, str) and bool(UUID_REGEX.match(value.strip()))


@dataclass(frozen=True)
class ById:
    id: str


@dataclass(frozen=True)
class ByName:
    name: str
    card_type: Optional[str] = None


@dataclass(frozen=True)
class ByAlias:
    name: str
    card_type: Optional[str] = None


EntityRef = Union[ById, ByName, ByAlias]


def build_entity_refs(
    id: Optional[str] = None,
    name: Optional[str] = None,
    card_type: Optional[str] = None,
    known_ids: Optional[Iterable[str]] = None,
) -> List[EntityRef]:
    """
    Ordered resolution chain for one reference.

    A UUID-shaped id is trusted when ``known_ids`` is None or contains it.
    An id that is not UUID-shaped (or unknown) is reused as the name when no
    name was given.
    """
    refs: List[EntityRef] = []
    name = name.strip() if isinstance(name, str) else None
    if isinstance(id, str) and id.strip():
        candidate = id.strip()
        if is_uuid(candidate):
            known = None if known_ids is None else set(known_ids)
            if known is None or candidate in known:
                refs.append(ById(candidate))
        if not name:
            name = candidate
    if name:
        normalized = normalize_card_type(card_type)
        refs.append(ByName(name, normalized))
        refs.append(ByAlias(name, normalized))
    return refs


def _alias_candidates(card: Card) -> List[str]:
    data = card.data or {}
    names = [data[field] for field in ALIAS_FIELDS if isinstance(data.get(field), str)]
    aliases = data.get("aliases")
    if isinstance(aliases, list):
        names.extend(alias for alias in aliases if isinstance(alias, str))
    return names


class EntityResolver:
    def __init__(self, cards: CardService):
        self.cards = cards

    async def _by_name(self, story_id: str, ref: ByName) -> Optional[str]:
        if ref.card_type:
            card = await self.cards.get_card_by_name(story_id, ref.card_type, ref.name)
            return card.id if card else None
        lowered = ref.name.lower()
        for card in await self.cards.list_cards(story_id, name=ref.name):
            if card.name.lower() == lowered:
                return card.id
        return None

    @staticmethod
    def _by_alias(ref: ByAlias, cards: Sequence[Card]) -> Optional[str]:
        lowered = ref.name.lower()
        for card in cards:
            if ref.card_type and card.type != ref.card_type:
                continue
            if any(candidate.lower() == lowered for candidate in _alias_candidates(card)):
                return card.id
        return None

    async def resolve(
        self,
        story_id: str,
        refs: Sequence[EntityRef],
        cards: Optional[Sequence[Card]] = None,
    ) -> Optional[str]:
        for ref in refs:
            if isinstance(ref, ById):
                return ref.id
            if isinstance(ref, ByName):
                found = await self._by_name(story_id, ref)
            else:
                if cards is None:
                    cards = await self.cards.get_cards(story_id)
                found = self._by_alias(ref, cards)
            if found:
                return found
        return None

    async def resolve_card_id(
        self,
        story_id: str,
        id: Optional[str] = None,
        name: Optional[str] = None,
        card_type: Optional[str] = None,
        cards: Optional[Sequence[Card]] = None,
    ) -> Optional[str]:
        known_ids = [card.id for card in cards] if cards is not None else None
        refs = build_entity_refs(id=id, name=name, card_type=card_type, known_ids=known_ids)
        resolved = await self.resolve(story_id, refs, cards)
        if resolved is None and refs:
            logger.debug("Could not resolve entity reference %s", refs)
        return resolved
