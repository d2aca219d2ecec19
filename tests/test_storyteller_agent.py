import json
import random

import pytest
from agents import RunContextWrapper, function_tool

from logic.chatgpt_integration import ChatReply, ToolCallRequest
from story_agent.imagery import ImageGenerator
from story_agent.storyteller_agent import StorytellerAgent, TurnAction
from story_agent.tools import TurnContext
from utils.error_handling import InvalidPayloadError, StoryNotFoundError, UpstreamError

from conftest import DEFAULT_NARRATION, FakeChatModel


@function_tool(strict_mode=False, failure_error_function=None)
async def explode(ctx: RunContextWrapper[TurnContext]) -> str:
    """Always fails."""
    raise RuntimeError("boom")


class FakeImageGenerator(ImageGenerator):
    def __init__(self):
        self.prompts = []

    async def generate(self, prompt, model=None, reference_image_urls=None):
        self.prompts.append((prompt, model, reference_image_urls))
        return "https://images.test/scene.png"


def _tool_messages(call):
    return [message for message in call["messages"] if message["role"] == "tool"]


@pytest.mark.asyncio
async def test_continue_turn_commits_narration_and_embeds_world(agent, story, store):
    world = await agent.cards.upsert_card(
        story.id, "world", "Eirath Core Lore", description="Immutable lore", data={"religions": ["The Octave"]}
    )
    await agent.cards.upsert_card(
        story.id, "character", "Player Character", data={"name": "Aren", "isPlayerCharacter": True}
    )

    result = await agent.run_turn({"kind": "continue"}, story.id)
    await agent.queue.drain()

    assert result.text == DEFAULT_NARRATION
    messages = await store.list_messages(story.id)
    assert [(m.role, m.content) for m in messages] == [("dm", DEFAULT_NARRATION)]
    assert (await store.get_card(story.id, world.id)).embedding is not None


@pytest.mark.asyncio
async def test_two_say_turns_append_four_sequential_messages(agent, story, store):
    await agent.run_turn(TurnAction(kind="say", text="Hello"), story.id)
    await agent.run_turn({"kind": "say", "text": "Hello"}, story.id)
    await agent.queue.drain()

    messages = await store.list_messages(story.id)
    assert [m.role for m in messages] == ["you", "dm", "you", "dm"]
    assert [m.sequence for m in messages] == [1, 2, 3, 4]
    assert messages[0].content == 'You say: "Hello"'
    assert (await store.get_story(story.id)).message_count == 4


@pytest.mark.asyncio
async def test_turn_records_player_and_dm_memories(agent, story, store):
    player = await agent.cards.upsert_card(
        story.id, "character", "Player Character", data={"isPlayerCharacter": True}
    )

    await agent.run_turn({"kind": "do", "text": "I pick the lock"}, story.id)
    await agent.queue.drain()

    memories = await store.list_memories(story.id)
    by_source = {memory.source_type: memory for memory in memories}
    assert by_source["player"].summary == "I pick the lock"
    assert by_source["player"].owner_card_id == player.id
    assert by_source["player"].tags == ["player", "do"]
    assert by_source["player"].context == {"mode": "do"}
    assert by_source["dm"].subject_card_id == player.id
    assert by_source["dm"].owner_card_id is None
    assert by_source["dm"].tags == ["dm"]
    assert by_source["dm"].importance == 1
    assert all(memory.embedding is not None for memory in memories)


@pytest.mark.asyncio
async def test_prompt_carries_settings_transcript_and_character_ids(agent, story, chat_model):
    mira = await agent.cards.upsert_card(story.id, "character", "Mira")
    await agent.stories.add_message(story.id, "dm", "The gate groans open.")

    await agent.run_turn({"kind": "do", "text": "examine Mira"}, story.id)
    await agent.queue.drain()

    call = chat_model.calls[0]
    context_prompt = call["messages"][1]["content"]
    assert '"tone": "heroic"' in context_prompt
    assert "DM: The gate groans open." in context_prompt
    assert f"- Mira: {mira.id}" in context_prompt
    assert call["messages"][2]["content"].startswith("Player examines target.")
    assert {spec["function"]["name"] for spec in call["tools"]} >= {"roll_dice", "record_memory"}


@pytest.mark.asyncio
async def test_tool_results_are_fed_back_to_the_model(agent, story, chat_model):
    chat_model.replies = [
        ChatReply(tool_calls=[ToolCallRequest("call-1", "roll_dice", json.dumps({"formula": "1d20+2"}))]),
        ChatReply(content="You slip past the guard."),
    ]

    result = await agent.run_turn({"kind": "do", "text": "sneak past"}, story.id)
    await agent.queue.drain()

    assert result.text == "You slip past the guard."
    follow_up = chat_model.calls[1]["messages"]
    assert follow_up[-2]["tool_calls"][0]["function"]["name"] == "roll_dice"
    rolled = json.loads(follow_up[-1]["content"])
    assert follow_up[-1]["tool_call_id"] == "call-1"
    assert rolled["total"] == rolled["rolls"][0] + 2


@pytest.mark.asyncio
async def test_tool_calls_during_a_turn_mutate_world_state(agent, story, chat_model, store):
    chat_model.replies = [
        ChatReply(tool_calls=[ToolCallRequest(
            "call-1",
            "update_or_create_card",
            json.dumps({"type": "item", "name": "Moon Key", "description": "Cold silver key"}),
        )]),
        ChatReply(content="The key glints in the moonlight."),
    ]

    result = await agent.run_turn({"kind": "continue"}, story.id)
    await agent.queue.drain()

    assert result.text == "The key glints in the moonlight."
    payload = json.loads(_tool_messages(chat_model.calls[1])[0]["content"])
    assert "error" not in payload
    card = await store.get_card_by_name(story.id, "item", "Moon Key")
    assert card is not None
    assert card.description == "Cold silver key"


@pytest.mark.asyncio
async def test_unknown_tool_does_not_abort_the_turn(agent, story, chat_model, store):
    chat_model.replies = [
        ChatReply(tool_calls=[ToolCallRequest("call-1", "summon_dragon", "{}")]),
        ChatReply(content="Nothing answers your call."),
    ]

    result = await agent.run_turn({"kind": "say", "text": "Dragon, come!"}, story.id)
    await agent.queue.drain()

    assert result.text == "Nothing answers your call."
    payload = json.loads(_tool_messages(chat_model.calls[1])[0]["content"])
    assert payload["error"] == "UNKNOWN_TOOL"
    assert len(await store.list_messages(story.id)) == 2


@pytest.mark.asyncio
async def test_dispatch_reports_invalid_arguments(agent, turn_context):
    not_json = await agent.dispatch_tool_call(ToolCallRequest("c1", "roll_dice", "{oops"), turn_context)
    not_object = await agent.dispatch_tool_call(ToolCallRequest("c2", "roll_dice", "[1, 2]"), turn_context)
    missing = await agent.dispatch_tool_call(ToolCallRequest("c3", "roll_dice", "{}"), turn_context)
    bad_enum = await agent.dispatch_tool_call(
        ToolCallRequest("c4", "update_or_create_card", json.dumps({"type": "planet", "name": "Tarn"})),
        turn_context,
    )

    for raw in (not_json, not_object, missing, bad_enum):
        payload = json.loads(raw)
        assert payload["error"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_dispatch_contains_domain_errors(agent, turn_context):
    raw = await agent.dispatch_tool_call(
        ToolCallRequest("c1", "update_relationship", json.dumps({"source_name": "Ghost", "target_name": "Shade"})),
        turn_context,
    )

    payload = json.loads(raw)
    assert payload["error"] == "NOT_FOUND"
    assert payload["tool"] == "update_relationship"


@pytest.mark.asyncio
async def test_dispatch_contains_unexpected_exceptions(store, chat_model, embedder):
    storyteller = StorytellerAgent(store, chat_model, embedder, tools=[explode])
    story = await storyteller.stories.create_story("user-1", "Volatile")
    chat_model.replies = [
        ChatReply(tool_calls=[ToolCallRequest("call-1", "explode", "{}")]),
        ChatReply(content="The air settles."),
    ]

    result = await storyteller.run_turn({"kind": "continue"}, story.id)
    await storyteller.close()

    assert result.text == "The air settles."
    payload = json.loads(_tool_messages(chat_model.calls[1])[0]["content"])
    assert payload["error"] == "TOOL_ERROR"
    assert payload["tool"] == "explode"


@pytest.mark.asyncio
async def test_caller_owned_story_id_is_ignored(agent, story, store, chat_model):
    other = await agent.stories.create_story("user-1", "Elsewhere")
    chat_model.replies = [
        ChatReply(tool_calls=[ToolCallRequest(
            "call-1",
            "update_or_create_card",
            json.dumps({"type": "item", "name": "Bell", "storyId": other.id}),
        )]),
        ChatReply(content="The bell is yours."),
    ]

    await agent.run_turn({"kind": "continue"}, story.id)
    await agent.queue.drain()

    assert [card.name for card in await store.list_cards(story.id)] == ["Bell"]
    assert await store.list_cards(other.id) == []


@pytest.mark.asyncio
async def test_texting_mode_leaves_transcript_untouched(agent, story, store, chat_model):
    await agent.cards.upsert_card(story.id, "character", "Mira")

    result = await agent.run_turn({"kind": "say", "text": "Are you safe?"}, story.id, target_character_name="Mira")
    await agent.queue.drain()

    assert result.text == DEFAULT_NARRATION
    assert await store.list_messages(story.id) == []
    assert await store.list_memories(story.id) == []
    assert "Direct message mode: Respond as 'Mira'" in chat_model.calls[0]["messages"][1]["content"]


@pytest.mark.asyncio
async def test_tool_round_limit_without_text_fails_cleanly(agent, story, store, chat_model):
    rounds = agent.config.MAX_TOOL_ROUNDS
    chat_model.replies = [
        ChatReply(tool_calls=[ToolCallRequest(f"call-{i}", "roll_dice", '{"formula": "d6"}')])
        for i in range(rounds + 1)
    ]

    with pytest.raises(UpstreamError):
        await agent.run_turn({"kind": "do", "text": "keep rolling"}, story.id)
    await agent.queue.drain()

    assert len(chat_model.calls) == rounds + 1
    assert await store.list_messages(story.id) == []


@pytest.mark.asyncio
async def test_prompt_failure_commits_nothing(agent, story, store, chat_model):
    chat_model.replies = [UpstreamError("model offline", provider="llm", transient=True)]

    with pytest.raises(UpstreamError):
        await agent.run_turn({"kind": "say", "text": "Hello?"}, story.id)

    assert await store.list_messages(story.id) == []


@pytest.mark.asyncio
async def test_generated_image_is_attached_to_the_narration(store, embedder):
    chat_model = FakeChatModel([
        ChatReply(tool_calls=[ToolCallRequest("call-1", "generate_image", '{"prompt": "A storm over the keep"}')]),
        ChatReply(content="Lightning splits the sky."),
    ])
    images = FakeImageGenerator()
    storyteller = StorytellerAgent(store, chat_model, embedder, image_generator=images, rng=random.Random(1))
    story = await storyteller.stories.create_story("user-1", "Storm")

    result = await storyteller.run_turn({"kind": "continue"}, story.id)
    await storyteller.queue.drain()
    await storyteller.close()

    assert result.to_dict() == {"text": "Lightning splits the sky.", "imageUrl": "https://images.test/scene.png"}
    assert images.prompts[0][0] == "A storm over the keep"
    messages = await store.list_messages(story.id)
    assert messages[-1].image_url == "https://images.test/scene.png"


@pytest.mark.asyncio
async def test_invalid_actions_and_missing_story(agent, story):
    with pytest.raises(InvalidPayloadError):
        await agent.run_turn({"kind": "say"}, story.id)
    with pytest.raises(InvalidPayloadError):
        await agent.run_turn({"kind": "dance", "text": "a jig"}, story.id)
    with pytest.raises(StoryNotFoundError):
        await agent.run_turn({"kind": "continue"}, "missing-story")
