import pytest

from scripts.consolidate_characters import build_parser, consolidate_character_data


async def _messy_story(store, title="Messy"):
    story = await store.create_story("user-1", title)
    messy = await store.upsert_card(story.id, "character", "Mira")
    await store.replace_card_data(
        story.id, messy.id, {"goals": ["Find the relic", "find the relic ", "pay the guide"], "mood": " wary "}
    )
    clean = await store.upsert_card(story.id, "character", "Bren", data={"goals": ["guide"]})
    await store.set_card_embedding(messy.id, [0.1] * 8)
    return story, messy, clean


@pytest.mark.asyncio
async def test_dry_run_reports_without_writing(store):
    story, messy, _ = await _messy_story(store)

    results = await consolidate_character_data(store, story_id=story.id, dry_run=True)

    assert [(r.story_id, r.processed, r.updated) for r in results] == [(story.id, 2, 1)]
    unchanged = await store.get_card(story.id, messy.id)
    assert unchanged.data["goals"] == ["Find the relic", "find the relic ", "pay the guide"]
    assert unchanged.embedding is not None


@pytest.mark.asyncio
async def test_consolidation_rewrites_only_changed_cards(store):
    story, messy, clean = await _messy_story(store)
    clean_before = await store.get_card(story.id, clean.id)

    results = await consolidate_character_data(store, story_id=story.id)

    assert results[0].updated == 1
    fixed = await store.get_card(story.id, messy.id)
    assert fixed.data == {"goals": ["Find the relic", "pay the guide"], "mood": "wary"}
    assert fixed.embedding is None
    assert (await store.get_card(story.id, clean.id)).updated_at == clean_before.updated_at

    again = await consolidate_character_data(store, story_id=story.id)
    assert again[0].updated == 0


@pytest.mark.asyncio
async def test_all_stories_with_characters_are_visited(store):
    first, _, _ = await _messy_story(store, "One")
    second, _, _ = await _messy_story(store, "Two")
    await store.create_story("user-1", "Empty")

    results = await consolidate_character_data(store)

    assert sorted(r.story_id for r in results) == sorted([first.id, second.id])
    assert all(r.updated == 1 for r in results)


def test_cli_arguments():
    args = build_parser().parse_args(["--story-id", "abc", "--dry-run"])
    assert args.story_id == "abc"
    assert args.dry_run is True
    assert build_parser().parse_args([]).dry_run is False
