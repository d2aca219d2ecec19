import copy
import hashlib
import os
import random
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pytest
import pytest_asyncio


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from db.local_store import InMemoryStore  # noqa: E402
from embedding.provider import EmbeddingProvider  # noqa: E402
from logic.chatgpt_integration import ChatModel, ChatReply  # noqa: E402
from story_agent.storyteller_agent import StorytellerAgent  # noqa: E402
from story_agent.tools import TurnContext  # noqa: E402

DEFAULT_NARRATION = "Rain hammers the tavern roof while the fire pops and hisses."


def _is_truthy(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def pytest_collection_modifyitems(config, items):
    should_run = _is_truthy(os.getenv("RUN_LIVE_LLM_TESTS")) and bool(os.getenv("OPENAI_API_KEY"))
    if should_run:
        return

    skip_marker = pytest.mark.skip(
        reason="Set RUN_LIVE_LLM_TESTS=1 (and OPENAI_API_KEY) to run hosted model tests"
    )
    for item in items:
        if "requires_openai" in item.keywords:
            item.add_marker(skip_marker)


class FakeEmbedder(EmbeddingProvider):
    """Deterministic vectors seeded from a hash of the text."""

    dimension = 8

    def __init__(self, fail: Optional[Exception] = None):
        self.calls: List[str] = []
        self.fail = fail

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail is not None:
            raise self.fail
        seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
        return np.random.default_rng(seed).random(self.dimension).tolist()


class FakeChatModel(ChatModel):
    """
    Scripted chat model. ``replies`` are handed out in order by ``chat``
    (an Exception entry is raised instead); once exhausted every call gets a
    plain narration. ``structured_replies`` feed ``structured`` the same way.
    """

    def __init__(self, replies=None, structured_replies=None):
        self.replies: List[Any] = list(replies or [])
        self.structured_replies: List[Any] = list(structured_replies or [])
        self.calls: List[Dict[str, Any]] = []
        self.structured_calls: List[Dict[str, Any]] = []

    async def chat(self, messages, *, model, tools=None, temperature=None) -> ChatReply:
        self.calls.append({
            "messages": copy.deepcopy(messages),
            "model": model,
            "tools": tools,
            "temperature": temperature,
        })
        if self.replies:
            reply = self.replies.pop(0)
            if isinstance(reply, Exception):
                raise reply
            return reply
        return ChatReply(content=DEFAULT_NARRATION)

    async def structured(self, messages, *, schema, name, model, temperature=None) -> str:
        self.structured_calls.append({
            "messages": copy.deepcopy(messages),
            "schema": schema,
            "name": name,
            "model": model,
        })
        if not self.structured_replies:
            raise AssertionError("No scripted structured reply left")
        reply = self.structured_replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def chat_model():
    return FakeChatModel()


@pytest_asyncio.fixture
async def agent(store, chat_model, embedder):
    storyteller = StorytellerAgent(store, chat_model, embedder, rng=random.Random(7))
    yield storyteller
    await storyteller.close()


@pytest_asyncio.fixture
async def story(agent):
    return await agent.stories.create_story("user-1", "The Sunken Keep")


@pytest.fixture
def turn_context(agent, story):
    return TurnContext(
        story_id=story.id,
        cards=agent.cards,
        memories=agent.memories,
        resolver=agent.resolver,
        summarizer=agent.summarizer,
        rng=random.Random(3),
    )
