# story_agent/stories.py

"""Stories, ownership checks and the append-only transcript."""

import logging
from typing import List, Optional, Sequence

from db.models import MessageRole, Story, StoryMessage
from db.store import StoryStore
from utils.error_handling import InvalidPayloadError, StoryNotFoundError, UnauthorizedError

logger = logging.getLogger(__name__)

_ROLES = {role.value for role in MessageRole}


def render_transcript(messages: Sequence[StoryMessage]) -> str:
    """Append-only log text; narrator lines carry a ``DM: `` prefix."""
    return "\n".join(
        f"DM: {message.content}" if message.role == MessageRole.DM.value else message.content
        for message in messages
    )


def _require_user(user_id: Optional[str]) -> str:
    if not user_id or not str(user_id).strip():
        raise UnauthorizedError("Authenticated user is required")
    return str(user_id)


class StoryService:
    def __init__(self, store: StoryStore):
        self.store = store

    async def create_story(
        self,
        user_id: str,
        title: str,
        beginning_key: Optional[str] = None,
        world_key: Optional[str] = None,
        character_name: Optional[str] = None,
        character_gender: Optional[str] = None,
        character_race: Optional[str] = None,
    ) -> Story:
        user_id = _require_user(user_id)
        clean_title = (title or "").strip()
        if not clean_title:
            raise InvalidPayloadError("Story title is required")
        story = await self.store.create_story(
            user_id,
            clean_title,
            beginning_key=beginning_key,
            world_key=world_key,
            character_name=character_name,
            character_gender=character_gender,
            character_race=character_race,
        )
        logger.info("Created story %s for user %s", story.id, user_id)
        return story

    async def list_stories(self, user_id: str) -> List[Story]:
        return await self.store.list_stories(_require_user(user_id))

    async def get_story(self, story_id: str) -> Story:
        story = await self.store.get_story(story_id)
        if story is None:
            raise StoryNotFoundError(story_id)
        return story

    async def assert_story_ownership(self, user_id: str, story_id: str) -> Story:
        """The story, if it exists and belongs to ``user_id``; otherwise StoryNotFoundError."""
        user_id = _require_user(user_id)
        story = await self.store.get_story(story_id)
        if story is None or story.user_id != user_id:
            raise StoryNotFoundError(story_id)
        return story

    async def delete_story(self, user_id: str, story_id: str) -> None:
        await self.assert_story_ownership(user_id, story_id)
        await self.store.delete_story(story_id)
        logger.info("Deleted story %s", story_id)

    async def reset_story(self, user_id: str, story_id: str) -> None:
        await self.assert_story_ownership(user_id, story_id)
        await self.store.reset_story(story_id)
        logger.info("Reset story %s", story_id)

    async def add_message(
        self,
        story_id: str,
        role: str,
        content: str,
        image_url: Optional[str] = None,
    ) -> StoryMessage:
        if role not in _ROLES:
            raise InvalidPayloadError(f"Unknown message role: {role}")
        return await self.store.append_message(story_id, role, content, image_url)

    async def get_messages(self, story_id: str, limit: Optional[int] = None) -> List[StoryMessage]:
        return await self.store.list_messages(story_id, limit)

    async def get_transcript(self, story_id: str) -> str:
        return render_transcript(await self.store.list_messages(story_id))
