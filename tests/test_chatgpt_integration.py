import asyncio
from types import SimpleNamespace

import pytest

from embedding.provider import OpenAIEmbedding
from logic import chatgpt_integration
from logic.chatgpt_integration import (
    ChatReply,
    OpenAIChatModel,
    ToolCallRequest,
    map_openai_error,
    retry_with_backoff,
)
from logic.model_options import DEFAULT_MODEL_ID, resolve_model_id
from openai_integration.message_utils import extract_text, function_tools_to_chat_specs
from story_agent.tools import STORY_TOOLS
from utils.error_handling import OperationTimeoutError, UpstreamError, with_timeout


@pytest.fixture
def no_sleep(monkeypatch):
    delays = []

    async def fake_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr(chatgpt_integration.asyncio, "sleep", fake_sleep)
    return delays


@pytest.mark.asyncio
async def test_transient_errors_are_retried_with_backoff(no_sleep):
    attempts = []

    @retry_with_backoff(max_retries=3, initial_delay=1, backoff_factor=2)
    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise UpstreamError("rate limited", transient=True)
        return "ok"

    assert await flaky() == "ok"
    assert len(attempts) == 3
    assert no_sleep == [1, 2]


@pytest.mark.asyncio
async def test_permanent_errors_are_not_retried(no_sleep):
    attempts = []

    @retry_with_backoff(max_retries=5)
    async def broken():
        attempts.append(1)
        raise UpstreamError("bad request")

    with pytest.raises(UpstreamError):
        await broken()
    assert len(attempts) == 1
    assert no_sleep == []


@pytest.mark.asyncio
async def test_retries_give_up_after_the_limit(no_sleep):
    @retry_with_backoff(max_retries=2)
    async def always_down():
        raise UpstreamError("still down", transient=True)

    with pytest.raises(UpstreamError) as excinfo:
        await always_down()
    assert excinfo.value.transient is True
    assert len(no_sleep) == 1


def test_map_openai_error_keeps_upstream_errors_and_flags_unknown_as_permanent():
    original = UpstreamError("already mapped", transient=True)
    assert map_openai_error(original) is original

    mapped = map_openai_error(ValueError("weird"), provider="embedding")
    assert mapped.provider == "embedding"
    assert mapped.transient is False
    assert mapped.details["errorType"] == "ValueError"


@pytest.mark.asyncio
async def test_with_timeout_raises_operation_timeout():
    with pytest.raises(OperationTimeoutError) as excinfo:
        await with_timeout(asyncio.sleep(1), 0.01, "llm")
    assert excinfo.value.code == "TIMEOUT"
    assert excinfo.value.transient is True


class _Completions:
    def __init__(self, message):
        self.message = message
        self.calls = []

    async def create(self, **params):
        self.calls.append(params)
        return SimpleNamespace(choices=[SimpleNamespace(message=self.message)])


@pytest.mark.asyncio
async def test_chat_model_parses_tool_calls():
    message = SimpleNamespace(
        content=None,
        tool_calls=[SimpleNamespace(
            id="call-1", function=SimpleNamespace(name="roll_dice", arguments='{"formula": "d20"}')
        )],
    )
    completions = _Completions(message)
    model = OpenAIChatModel(SimpleNamespace(chat=SimpleNamespace(completions=completions)))
    specs = function_tools_to_chat_specs(STORY_TOOLS)

    reply = await model.chat([{"role": "user", "content": "roll"}], model=DEFAULT_MODEL_ID, tools=specs)

    assert reply.tool_calls == [ToolCallRequest("call-1", "roll_dice", '{"formula": "d20"}')]
    params = completions.calls[0]
    assert params["tool_choice"] == "auto"
    assert params["tools"] == specs
    assert reply.to_message() == {
        "role": "assistant",
        "content": "",
        "tool_calls": [{
            "id": "call-1",
            "type": "function",
            "function": {"name": "roll_dice", "arguments": '{"formula": "d20"}'},
        }],
    }


@pytest.mark.asyncio
async def test_structured_requests_a_json_schema_response():
    completions = _Completions(SimpleNamespace(content='{"summary": "x"}', tool_calls=None))
    model = OpenAIChatModel(SimpleNamespace(chat=SimpleNamespace(completions=completions)))

    raw = await model.structured(
        [{"role": "user", "content": "sum up"}], schema={"type": "object"}, name="StorySummary", model="m"
    )

    assert raw == '{"summary": "x"}'
    response_format = completions.calls[0]["response_format"]
    assert response_format["type"] == "json_schema"
    assert response_format["json_schema"]["name"] == "StorySummary"


def test_reply_without_tools_serialises_plain_message():
    assert ChatReply(content="Hi").to_message() == {"role": "assistant", "content": "Hi"}


def test_extract_text_and_model_resolution():
    assert extract_text([{"type": "text", "text": "A "}, "tale"]) == "A tale"
    assert extract_text(None) == ""
    assert resolve_model_id("x-ai/grok-4-fast") == "x-ai/grok-4-fast"
    assert resolve_model_id("unknown/model") == DEFAULT_MODEL_ID


@pytest.mark.requires_openai
@pytest.mark.asyncio
async def test_live_embedding_has_configured_width():
    provider = OpenAIEmbedding()
    vector = await provider.embed("A lighthouse keeper hears knocking from below the sea.")
    assert len(vector) == provider.dimension
