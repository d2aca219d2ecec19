"""Helpers for building Chat Completions message payloads."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List

_ALLOWED_ROLES = {"user", "assistant", "system", "tool"}


def _normalize_role(role: str | None) -> str:
    if not role:
        return "user"
    lowered = role.lower()
    if lowered not in _ALLOWED_ROLES:
        return "user"
    return lowered


def build_chat_message(role: str, content: Any) -> Dict[str, Any]:
    """Return a message dict compatible with ``chat.completions.create``."""

    return {"role": _normalize_role(role), "content": "" if content is None else str(content)}


def build_tool_message(tool_call_id: str, content: Any) -> Dict[str, Any]:
    return {
        "role": "tool",
        "tool_call_id": tool_call_id,
        "content": "" if content is None else str(content),
    }


def function_tool_to_chat_spec(tool: Any) -> Dict[str, Any]:
    """Describe an openai-agents ``FunctionTool`` in the Chat Completions ``tools`` format."""

    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description or "",
            "parameters": tool.params_json_schema,
        },
    }


def function_tools_to_chat_specs(tools: Iterable[Any]) -> List[Dict[str, Any]]:
    return [function_tool_to_chat_spec(tool) for tool in tools]


def extract_text(content: Any) -> str:
    """
    Flatten assistant content into plain text.

    Providers return either a string or a list of parts such as
    ``{"type": "text", "text": "..."}``; anything else contributes nothing.
    """

    if content is None:
        return ""
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        pieces = []
        for part in content:
            if isinstance(part, str):
                pieces.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                pieces.append(part["text"])
            elif hasattr(part, "text") and isinstance(part.text, str):
                pieces.append(part.text)
        return "".join(pieces).strip()
    return ""


__all__ = [
    "build_chat_message",
    "build_tool_message",
    "function_tool_to_chat_spec",
    "function_tools_to_chat_specs",
    "extract_text",
]
