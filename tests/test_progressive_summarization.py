import json

import pytest

from story_agent.progressive_summarization import (
    SUMMARY_CARD_NAME,
    StorySummaryPayload,
    reconcile_summary_payload,
)
from utils.error_handling import InvalidPayloadError, StoryNotFoundError


async def _played_story(agent):
    story = await agent.stories.create_story("user-1", "Chronicle")
    await agent.stories.add_message(story.id, "you", 'You say: "Where is the relic?"')
    await agent.stories.add_message(story.id, "dm", "Mira points toward the drowned chapel.")
    return story


@pytest.mark.asyncio
async def test_summaries_append_to_one_long_term_card(agent, chat_model, store):
    story = await _played_story(agent)
    chat_model.structured_replies = [
        json.dumps({"summary": "Mira revealed the relic lies in the drowned chapel."}),
        json.dumps({"summary": "The party reached the chapel at dusk."}),
    ]

    first = await agent.summarize(story.id)
    cards = await store.list_cards(story.id, card_type="story")
    assert [card.name for card in cards] == [SUMMARY_CARD_NAME]
    assert len(cards[0].data["summaries"]) == 1

    second = await agent.summarize(story.id)
    await agent.queue.drain()
    cards = await store.list_cards(story.id, card_type="story")
    assert len(cards) == 1
    summaries = cards[0].data["summaries"]
    assert [entry["summary"] for entry in summaries] == [
        "Mira revealed the relic lies in the drowned chapel.",
        "The party reached the chapel at dusk.",
    ]
    assert first.summary_card_id == second.summary_card_id
    assert second.to_dict()["summaryCardId"] == cards[0].id


@pytest.mark.asyncio
async def test_parse_failures_are_fed_back_until_valid(agent, chat_model):
    story = await _played_story(agent)
    chat_model.structured_replies = [
        "Sure! Here is the summary.",
        json.dumps({"summary": ""}),
        "```json\n" + json.dumps({"summary": "Mira pointed the way."}) + "\n```",
    ]

    result = await agent.summarize(story.id)
    await agent.queue.drain()

    assert result.summary == "Mira pointed the way."
    assert len(chat_model.structured_calls) == 3
    retry_messages = chat_model.structured_calls[1]["messages"]
    assert retry_messages[-2] == {"role": "assistant", "content": "Sure! Here is the summary."}
    assert retry_messages[-1]["content"].startswith("Your previous response failed to parse:")
    assert chat_model.structured_calls[0]["name"] == "StorySummary"


@pytest.mark.asyncio
async def test_gives_up_after_the_attempt_limit(agent, chat_model, store):
    story = await _played_story(agent)
    attempts = agent.config.SUMMARY_MAX_ATTEMPTS
    chat_model.structured_replies = ["not json"] * attempts

    with pytest.raises(InvalidPayloadError) as excinfo:
        await agent.summarize(story.id)

    assert excinfo.value.details["attempts"] == attempts
    assert await store.list_cards(story.id) == []


@pytest.mark.asyncio
async def test_summarize_requires_transcript_and_story(agent):
    story = await agent.stories.create_story("user-1", "Blank")

    with pytest.raises(InvalidPayloadError):
        await agent.summarize(story.id)
    with pytest.raises(StoryNotFoundError):
        await agent.summarize("missing-story")


@pytest.mark.asyncio
async def test_payload_updates_characters_relationships_and_memories(agent, chat_model, store):
    story = await _played_story(agent)
    mira = await agent.cards.upsert_card(story.id, "character", "Mira", data={"goals": ["find the relic"]})
    chat_model.structured_replies = [json.dumps({
        "summary": "Mira hired Bren as a guide.",
        "summaryLabel": "Chapter 1 Recap",
        "memories": [
            {"summary": "Bren knows the chapel tunnels.", "ownerCardName": "Bren", "importance": 3},
            {"summary": "Mira paid in moon silver.", "ownerCardId": "invented-id", "ownerCardName": "Mira"},
        ],
        "characterUpdates": [
            {"characterId": mira.id, "dataPatch": {"goals": ["pay the guide"]}},
            {"characterName": "Bren", "description": "A tunnel guide", "dataPatch": {"profession": "guide"}},
        ],
        "relationshipUpdates": [
            {"sourceName": "Mira", "targetName": "Bren", "summary": "Employer", "metrics": {"trust": 2}},
        ],
    })]

    result = await agent.summarize(story.id)
    await agent.queue.drain()

    summary_card = await store.get_card(story.id, result.summary_card_id)
    assert summary_card.name == "Chapter 1 Recap"
    bren = await store.get_card_by_name(story.id, "character", "Bren")
    assert bren.data == {"profession": "guide"}
    assert (await store.get_card(story.id, mira.id)).data["goals"] == ["find the relic", "pay the guide"]
    assert result.character_ids == [mira.id, bren.id]

    memories = {memory.summary: memory for memory in await store.list_memories(story.id)}
    # memories are applied before character updates, so Bren did not exist yet
    assert memories["Bren knows the chapel tunnels."].owner_card_id is None
    assert memories["Bren knows the chapel tunnels."].importance == 3
    assert memories["Mira paid in moon silver."].owner_card_id == mira.id

    relationship = (await store.list_relationships(story.id))[0]
    assert (relationship.source_card_id, relationship.target_card_id) == (mira.id, bren.id)
    assert result.relationship_ids == [relationship.id]


@pytest.mark.asyncio
async def test_reconcile_clears_unknown_ids_and_fills_names(agent):
    story = await agent.stories.create_story("user-1", "Reconcile")
    mira = await agent.cards.upsert_card(story.id, "character", "Mira")
    harbor = await agent.cards.upsert_card(story.id, "environment", "Harbor")
    cards = await agent.cards.get_cards(story.id)
    payload = StorySummaryPayload.model_validate({
        "summary": "Things happened.",
        "memories": [{"summary": "Fog rolled in.", "ownerCardId": harbor.id, "subjectCardId": "made-up"}],
        "characterUpdates": [{"characterId": harbor.id}, {"characterId": mira.id}],
        "relationshipUpdates": [{"sourceId": mira.id, "targetId": "made-up", "targetName": "Bren"}],
    })

    reconciled = reconcile_summary_payload(payload, cards)
    await agent.queue.drain()

    memory = reconciled.memories[0]
    assert (memory.owner_card_id, memory.owner_card_name, memory.owner_card_type) == (
        harbor.id, "Harbor", "environment"
    )
    assert memory.subject_card_id is None
    assert reconciled.character_updates[0].character_id is None
    assert reconciled.character_updates[1].character_name == "Mira"
    relationship = reconciled.relationship_updates[0]
    assert relationship.source_name == "Mira"
    assert relationship.target_id is None and relationship.target_name == "Bren"
