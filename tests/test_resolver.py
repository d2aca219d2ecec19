import pytest

from db.models import new_id
from memory.cards import CardService
from memory.resolver import ByAlias, ById, ByName, EntityResolver, build_entity_refs, normalize_card_type


async def _setup(store):
    story = await store.create_story("user-1", "Names")
    cards = CardService(store)
    mira = await cards.upsert_card(
        story.id, "character", "Mira", data={"aliases": ["The Witch"], "displayName": "Mira of the Fens"}
    )
    return story.id, cards, mira


@pytest.mark.asyncio
async def test_alias_resolves_case_insensitively(store):
    story_id, cards, mira = await _setup(store)
    resolver = EntityResolver(cards)

    assert await resolver.resolve_card_id(story_id, name="the witch") == mira.id
    assert await resolver.resolve_card_id(story_id, name="MIRA OF THE FENS") == mira.id


@pytest.mark.asyncio
async def test_non_uuid_id_falls_back_to_name(store):
    story_id, cards, mira = await _setup(store)
    resolver = EntityResolver(cards)

    assert await resolver.resolve_card_id(story_id, id="Mira") == mira.id
    assert await resolver.resolve_card_id(story_id, id="mira", card_type="character") == mira.id


@pytest.mark.asyncio
async def test_exact_name_beats_alias(store):
    story_id, cards, mira = await _setup(store)
    witch = await cards.upsert_card(story_id, "character", "The Witch")

    resolver = EntityResolver(cards)

    assert await resolver.resolve_card_id(story_id, name="the witch") == witch.id
    assert await resolver.resolve_card_id(story_id, name="Mira") == mira.id


@pytest.mark.asyncio
async def test_unknown_uuid_is_not_trusted_when_cards_are_known(store):
    story_id, cards, mira = await _setup(store)
    resolver = EntityResolver(cards)
    live = await cards.get_cards(story_id)

    assert await resolver.resolve_card_id(story_id, id=mira.id, cards=live) == mira.id
    assert await resolver.resolve_card_id(story_id, id=new_id(), cards=live) is None
    assert await resolver.resolve_card_id(story_id, id=new_id(), name="Mira", cards=live) == mira.id


@pytest.mark.asyncio
async def test_type_filter_and_unresolved_reference(store):
    story_id, cards, _ = await _setup(store)
    resolver = EntityResolver(cards)

    assert await resolver.resolve_card_id(story_id, name="Mira", card_type="item") is None
    assert await resolver.resolve_card_id(story_id, name="Nobody") is None
    assert await resolver.resolve_card_id(story_id) is None


def test_reference_chain_order():
    card_id = new_id()
    refs = build_entity_refs(id=card_id, name="Mira", card_type="Character")
    assert refs == [ById(card_id), ByName("Mira", "character"), ByAlias("Mira", "character")]

    assert build_entity_refs(id="Mira") == [ByName("Mira"), ByAlias("Mira")]
    assert build_entity_refs() == []


def test_card_type_normalization():
    assert normalize_card_type("Beginning") == "story"
    assert normalize_card_type(" NPC ") is None
    assert normalize_card_type("faction") == "faction"
    assert normalize_card_type(None) is None
