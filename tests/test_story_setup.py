import pytest

from story_agent.story_setup import PLAYER_CARD_NAME, fallback_backstory_summary
from story_agent.worlds import BEGINNINGS, DEFAULT_WORLD_CARD, list_beginnings, list_worlds
from utils.error_handling import InvalidPayloadError, StoryNotFoundError, UpstreamError

from conftest import DEFAULT_NARRATION

PLAYER = {"name": "Aren", "gender": "male", "race": "Elf", "backstory": "Raised by smugglers on the Tide coast."}


@pytest.mark.asyncio
async def test_initialize_seeds_world_player_beginning_and_starter_cards(agent, story, store):
    result = await agent.initializer().initialize("user-1", story.id, "combat", player_character=PLAYER)
    await agent.queue.drain()

    assert result == {
        "ok": True,
        "title": BEGINNINGS["combat"]["title"],
        "description": BEGINNINGS["combat"]["description"],
    }
    names = {(card.type, card.name) for card in await store.list_cards(story.id)}
    assert names == {
        ("world", DEFAULT_WORLD_CARD["name"]),
        ("character", PLAYER_CARD_NAME),
        ("beginning", "Crucible of Steel"),
        ("story", "Conflict Zone"),
        ("environment", "Battleground"),
    }

    player = await store.get_card_by_name(story.id, "character", PLAYER_CARD_NAME)
    assert player.data["isPlayerCharacter"] is True
    assert player.data["initialBackstory"] == PLAYER["backstory"]
    assert player.data["initialBackstorySummary"] == DEFAULT_NARRATION

    memories = await store.list_memories(story.id)
    assert len(memories) == 1
    assert memories[0].tags == ["backstory", "origin"]
    assert memories[0].importance == 4
    assert memories[0].owner_card_id == player.id


@pytest.mark.asyncio
async def test_initialize_twice_does_not_duplicate_backstory_memory(agent, story, store):
    initializer = agent.initializer()
    await initializer.initialize("user-1", story.id, "romance", player_character=PLAYER)
    await initializer.initialize("user-1", story.id, "romance", player_character=PLAYER)
    await agent.queue.drain()

    assert len(await store.list_memories(story.id)) == 1
    assert len(await store.list_cards(story.id, card_type="beginning")) == 1


@pytest.mark.asyncio
async def test_backstory_summary_falls_back_when_the_model_fails(agent, story, store, chat_model):
    chat_model.replies = [UpstreamError("model offline", provider="llm")]

    await agent.initializer().initialize("user-1", story.id, "exploration", player_character=PLAYER)
    await agent.queue.drain()

    player = await store.get_card_by_name(story.id, "character", PLAYER_CARD_NAME)
    assert player.data["initialBackstorySummary"] == fallback_backstory_summary("Aren", PLAYER["backstory"])


@pytest.mark.asyncio
async def test_initialize_without_player_or_backstory(agent, story, store, chat_model):
    await agent.initializer().initialize("user-1", story.id, "politics")
    await agent.queue.drain()

    assert await store.get_card_by_name(story.id, "character", PLAYER_CARD_NAME) is None
    assert await store.list_memories(story.id) == []
    assert chat_model.calls == []


@pytest.mark.asyncio
async def test_initialize_rejects_bad_input(agent, story):
    initializer = agent.initializer()

    with pytest.raises(InvalidPayloadError):
        await initializer.initialize("user-1", story.id, "heist")
    with pytest.raises(InvalidPayloadError):
        await initializer.initialize("user-1", story.id, "combat", player_character={"name": "Aren"})
    with pytest.raises(StoryNotFoundError):
        await initializer.initialize("someone-else", story.id, "combat")


def test_catalogues():
    assert [item["key"] for item in list_beginnings()] == ["combat", "romance", "politics", "exploration"]
    assert list_worlds() == [{"key": "eirath", "title": "eirath"}]
