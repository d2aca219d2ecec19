"""
Error taxonomy shared by the stores, the turn loop and the tool surface.

Every error carries a stable ``code`` so callers (and the model, when an
error is fed back as a tool result) see a single machine-readable kind.
"""

import asyncio
import logging
from typing import Any, Awaitable, Dict, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DungeonError(Exception):
    """Base class for all domain errors."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.code, "message": self.message}
        payload.update(self.details)
        return payload


class NotFoundError(DungeonError):
    """A story, card or referenced entity does not exist."""

    code = "NOT_FOUND"


class StoryNotFoundError(NotFoundError):
    """Story missing, or not owned by the caller."""

    code = "STORY_NOT_FOUND"

    def __init__(self, story_id: str):
        super().__init__("Story not found", details={"storyId": story_id})
        self.story_id = story_id


class UnauthorizedError(DungeonError):
    code = "UNAUTHORIZED"


class InvalidPayloadError(DungeonError):
    """Malformed caller input, tool arguments or structured output."""

    code = "VALIDATION_ERROR"


class UpstreamError(DungeonError):
    """Embedding or LLM provider failure."""

    code = "UPSTREAM_ERROR"

    def __init__(
        self,
        message: str,
        *,
        provider: str = "llm",
        transient: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = {"provider": provider, "transient": transient}
        merged.update(details or {})
        super().__init__(message, details=merged)
        self.provider = provider
        self.transient = transient


class OperationTimeoutError(UpstreamError):
    code = "TIMEOUT"

    def __init__(self, operation: str, seconds: float):
        super().__init__(
            f"{operation} timed out after {seconds:.1f}s",
            provider=operation,
            transient=True,
            details={"timeoutSeconds": seconds},
        )
        self.operation = operation
        self.seconds = seconds


class ToolExecutionError(DungeonError):
    code = "TOOL_ERROR"


async def with_timeout(awaitable: Awaitable[T], seconds: Optional[float], operation: str) -> T:
    """
    Await ``awaitable`` with an explicit deadline.

    A ``None`` or non-positive deadline means no limit. Timeouts surface as
    ``OperationTimeoutError`` instead of the bare asyncio exception.
    """
    if not seconds or seconds <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        logger.warning("%s timed out after %.1fs", operation, seconds)
        raise OperationTimeoutError(operation, seconds) from exc


__all__ = [
    "DungeonError",
    "NotFoundError",
    "StoryNotFoundError",
    "UnauthorizedError",
    "InvalidPayloadError",
    "UpstreamError",
    "OperationTimeoutError",
    "ToolExecutionError",
    "with_timeout",
]
