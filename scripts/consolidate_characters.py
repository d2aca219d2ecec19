#!/usr/bin/env python3
"""Re-sanitize character card data so duplicate list entries collapse."""

import argparse
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import List, Optional

from db.store import StoryStore
from utils.structured_merge import sanitize_structured_object

logger = logging.getLogger(__name__)


@dataclass
class ConsolidateResult:
    story_id: str
    processed: int
    updated: int


def _canonical(value) -> str:
    # jsonb does not keep key order, so compare with sorted keys.
    return json.dumps(value, sort_keys=True, ensure_ascii=False, default=str)


async def consolidate_character_data(
    store: StoryStore,
    story_id: Optional[str] = None,
    dry_run: bool = False,
) -> List[ConsolidateResult]:
    """
    Sanitize every character card's data and write back the ones that change.

    Writing back clears the card's embedding. With ``dry_run`` nothing is
    written; the counts still report what would change.
    """
    story_ids = [story_id] if story_id else await store.list_story_ids_with_cards("character")
    results: List[ConsolidateResult] = []
    for current_story in story_ids:
        characters = await store.list_cards(current_story, card_type="character")
        updated = 0
        for card in characters:
            current = card.data or {}
            sanitized = sanitize_structured_object(current)
            if _canonical(current) == _canonical(sanitized):
                continue
            updated += 1
            if not dry_run:
                await store.replace_card_data(current_story, card.id, sanitized)
        logger.info(
            "Story %s: %d character cards, %d %s",
            current_story, len(characters), updated, "would change" if dry_run else "consolidated",
        )
        results.append(ConsolidateResult(current_story, len(characters), updated))
    return results


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Consolidate duplicated character card data.")
    parser.add_argument("--story-id", help="Only consolidate this story")
    parser.add_argument("--dry-run", action="store_true", help="Report changes without writing them")
    return parser


async def _run(story_id: Optional[str], dry_run: bool) -> List[ConsolidateResult]:
    from db.connection import close_connection_pool, initialize_connection_pool
    from db.postgres_store import PostgresStore

    await initialize_connection_pool()
    try:
        return await consolidate_character_data(PostgresStore(), story_id=story_id, dry_run=dry_run)
    finally:
        await close_connection_pool()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        results = asyncio.run(_run(args.story_id, args.dry_run))
    except Exception:
        logger.exception("Failed to consolidate character data")
        return 1

    if not results:
        print("No character cards found to consolidate.")
        return 0
    verb = "would consolidate" if args.dry_run else "consolidated"
    for result in results:
        print(
            f"Story {result.story_id}: processed {result.processed} character cards, {verb} {result.updated}."
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
