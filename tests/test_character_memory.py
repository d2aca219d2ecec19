import pytest

from db.models import MemoryInput, RelationshipInput, StatInput
from memory.cards import CardService
from memory.character_memory import MemoryService
from utils.error_handling import InvalidPayloadError, NotFoundError


async def _pair(store):
    story = await store.create_story("user-1", "Bonds")
    cards = CardService(store)
    mira = await cards.upsert_card(story.id, "character", "Mira")
    bren = await cards.upsert_card(story.id, "character", "Bren")
    return story.id, mira, bren


@pytest.mark.asyncio
@pytest.mark.parametrize("first,second", [(1, 5), (5, 1)])
async def test_relationship_importance_never_decreases(store, first, second):
    story_id, mira, bren = await _pair(store)
    memories = MemoryService(store)

    await memories.upsert_relationship(RelationshipInput(story_id, mira.id, bren.id, importance=first))
    relationship = await memories.upsert_relationship(
        RelationshipInput(story_id, mira.id, bren.id, importance=second)
    )

    assert relationship.importance == 5
    assert len(await memories.list_relationships(story_id)) == 1


@pytest.mark.asyncio
async def test_relationship_metrics_merge_shallowly_and_summary_is_kept(store):
    story_id, mira, bren = await _pair(store)
    memories = MemoryService(store)

    await memories.upsert_relationship(RelationshipInput(
        story_id, mira.id, bren.id, summary="Old friends", metrics={"trust": 3, "debt": {"gold": 5}}
    ))
    relationship = await memories.upsert_relationship(RelationshipInput(
        story_id, mira.id, bren.id, metrics={"trust": 1, "debt": {"favors": 1}}
    ))

    assert relationship.summary == "Old friends"
    assert relationship.metrics == {"trust": 1, "debt": {"favors": 1}}


@pytest.mark.asyncio
async def test_relationships_are_directed(store):
    story_id, mira, bren = await _pair(store)
    memories = MemoryService(store)

    await memories.upsert_relationship(RelationshipInput(story_id, mira.id, bren.id, summary="Admires"))
    await memories.upsert_relationship(RelationshipInput(story_id, bren.id, mira.id, summary="Fears"))

    outgoing = await memories.list_relationships(story_id, card_id=mira.id)
    incoming = await memories.list_relationships(story_id, card_id=mira.id, incoming=True)
    assert [r.summary for r in outgoing] == ["Admires"]
    assert [r.summary for r in incoming] == ["Fears"]


@pytest.mark.asyncio
async def test_self_relationship_is_rejected(store):
    story_id, mira, _ = await _pair(store)
    with pytest.raises(InvalidPayloadError):
        await MemoryService(store).upsert_relationship(RelationshipInput(story_id, mira.id, mira.id))


@pytest.mark.asyncio
async def test_stat_upsert_replaces_value_and_wraps_scalars(store):
    story_id, mira, _ = await _pair(store)
    memories = MemoryService(store)

    await memories.upsert_character_stat(StatInput(story_id, mira.id, "strength", 12, confidence=0.4))
    stat = await memories.upsert_character_stat(StatInput(story_id, mira.id, "strength", {"score": 14}))

    assert stat.value == {"score": 14}
    assert stat.confidence == 1.0
    stats = await memories.list_stats(story_id, mira.id)
    assert len(stats) == 1

    wrapped = await memories.upsert_character_stat(StatInput(story_id, mira.id, "mood", "sly"))
    assert wrapped.value == {"value": "sly"}


@pytest.mark.asyncio
async def test_memories_are_append_only_and_validated(store):
    story_id, mira, bren = await _pair(store)
    memories = MemoryService(store)

    recorded = await memories.record_memories([
        MemoryInput(story_id, "Mira stole the map", owner_card_id=bren.id, subject_card_id=mira.id, tags=["theft", 3]),
        MemoryInput(story_id, "  Mira stole the map  ", source_type="npc"),
    ])

    assert len({memory.id for memory in recorded}) == 2
    assert recorded[0].tags == ["theft"]
    assert recorded[1].summary == "Mira stole the map"

    with pytest.raises(InvalidPayloadError):
        await memories.record_memory(MemoryInput(story_id, "   "))
    with pytest.raises(InvalidPayloadError):
        await memories.record_memory(MemoryInput(story_id, "Something", source_type="gossip"))


@pytest.mark.asyncio
async def test_memory_with_unknown_card_reference_is_rejected(store):
    story_id, _, _ = await _pair(store)
    with pytest.raises(NotFoundError):
        await MemoryService(store).record_memory(
            MemoryInput(story_id, "A ghost remembers", owner_card_id="no-such-card")
        )
    assert await store.list_memories(story_id) == []
