# logic/chatgpt_integration.py

"""
Chat model access for the storyteller.

``ChatModel`` is the seam the turn loop, the summary reconciler and story
setup talk to; ``OpenAIChatModel`` implements it on top of
``openai.AsyncOpenAI`` against any OpenAI-compatible endpoint (OpenRouter by
default). Client exceptions are mapped onto ``UpstreamError`` and transient
ones are retried with exponential backoff.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI
from openai._exceptions import APIStatusError

from config import get_config
from utils.error_handling import UpstreamError, with_timeout

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {408, 409, 429}


def map_openai_error(exc: Exception, provider: str = "llm") -> UpstreamError:
    """Translate an OpenAI client exception into the shared error taxonomy."""
    if isinstance(exc, UpstreamError):
        return exc
    if isinstance(exc, (openai.RateLimitError, openai.APIConnectionError, openai.InternalServerError)):
        transient = True
    elif isinstance(exc, APIStatusError):
        status = getattr(exc, "status_code", None) or 0
        transient = status >= 500 or status in TRANSIENT_STATUS_CODES
    else:
        transient = False
    details: Dict[str, Any] = {"errorType": type(exc).__name__}
    status_code = getattr(exc, "status_code", None)
    if status_code is not None:
        details["statusCode"] = status_code
    return UpstreamError(
        f"{provider} request failed: {exc}",
        provider=provider,
        transient=transient,
        details=details,
    )


def retry_with_backoff(
    *,
    max_retries: Optional[int] = None,
    initial_delay: float = 1,
    backoff_factor: float = 2,
    provider: str = "llm",
):
    """
    Decorator for automatic exponential-backoff retries on transient upstream errors.

    OpenAI exceptions raised by the wrapped coroutine are mapped first; only
    errors flagged ``transient`` are retried. ``max_retries`` defaults to
    ``LLM_MAX_RETRIES``.
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            attempts = max(1, max_retries or get_config().LLM_MAX_RETRIES)
            delay = initial_delay
            for attempt in range(1, attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except (UpstreamError, openai.OpenAIError) as exc:
                    mapped = map_openai_error(exc, provider)
                    if not mapped.transient or attempt == attempts:
                        if mapped is exc:
                            raise
                        raise mapped from exc
                    logger.warning(
                        "%s transient error (%s) on attempt %s/%s - retrying in %.1fs",
                        provider, type(exc).__name__, attempt, attempts, delay,
                    )
                    await asyncio.sleep(delay)
                    delay *= backoff_factor
        return wrapper
    return decorator


@dataclass
class ToolCallRequest:
    id: str
    name: str
    arguments: str = "{}"


@dataclass
class ChatReply:
    content: Optional[str] = None
    tool_calls: List[ToolCallRequest] = field(default_factory=list)

    def to_message(self) -> Dict[str, Any]:
        """Assistant message to append to the running conversation."""
        message: Dict[str, Any] = {"role": "assistant", "content": self.content or ""}
        if self.tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in self.tool_calls
            ]
        return message


class ChatModel:
    """Chat-completion provider used by the turn loop and the batch paths."""

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        *,
        model: str,
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: Optional[float] = None,
    ) -> ChatReply:
        raise NotImplementedError

    async def structured(
        self,
        messages: List[Dict[str, Any]],
        *,
        schema: Dict[str, Any],
        name: str,
        model: str,
        temperature: Optional[float] = None,
    ) -> str:
        """Return raw JSON text constrained to ``schema``."""
        raise NotImplementedError

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        *,
        model: str,
        temperature: Optional[float] = None,
    ) -> str:
        reply = await self.chat(messages, model=model, temperature=temperature)
        return (reply.content or "").strip()


def build_async_client(config=None) -> AsyncOpenAI:
    """AsyncOpenAI client for the configured LLM endpoint."""
    config = config or get_config()
    if not config.LLM_API_KEY:
        raise UpstreamError("LLM API key is not configured", provider="llm")
    headers = config.llm_default_headers()
    return AsyncOpenAI(
        api_key=config.LLM_API_KEY,
        base_url=config.LLM_BASE_URL,
        default_headers=headers or None,
        max_retries=0,
    )


class OpenAIChatModel(ChatModel):
    """``ChatModel`` backed by ``AsyncOpenAI.chat.completions``."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, *, timeout: Optional[float] = None, config=None):
        self.config = config or get_config()
        self._client = client
        self.timeout = timeout if timeout is not None else self.config.LLM_TIMEOUT

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = build_async_client(self.config)
        return self._client

    async def _create(self, params: Dict[str, Any]):
        try:
            response = await with_timeout(
                self.client.chat.completions.create(**params), self.timeout, "llm"
            )
        except openai.OpenAIError as exc:
            raise map_openai_error(exc) from exc
        if not getattr(response, "choices", None):
            raise UpstreamError("LLM returned no choices", provider="llm")
        return response.choices[0].message

    @retry_with_backoff()
    async def chat(self, messages, *, model, tools=None, temperature=None) -> ChatReply:
        params: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": self.config.LLM_TEMPERATURE if temperature is None else temperature,
        }
        if tools:
            params["tools"] = tools
            params["tool_choice"] = "auto"
        message = await self._create(params)
        calls = [
            ToolCallRequest(
                id=call.id,
                name=call.function.name,
                arguments=call.function.arguments or "{}",
            )
            for call in (message.tool_calls or [])
        ]
        return ChatReply(content=message.content, tool_calls=calls)

    @retry_with_backoff()
    async def structured(self, messages, *, schema, name, model, temperature=None) -> str:
        params = {
            "model": model,
            "messages": messages,
            "temperature": self.config.SUMMARY_TEMPERATURE if temperature is None else temperature,
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": name, "schema": schema, "strict": False},
            },
        }
        message = await self._create(params)
        return message.content or ""


__all__ = [
    "ChatModel",
    "ChatReply",
    "ToolCallRequest",
    "OpenAIChatModel",
    "build_async_client",
    "map_openai_error",
    "retry_with_backoff",
]
