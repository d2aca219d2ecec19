"""OpenAI integration utilities."""

from .message_utils import (
    build_chat_message,
    build_tool_message,
    extract_text,
    function_tool_to_chat_spec,
    function_tools_to_chat_specs,
)

__all__ = [
    "build_chat_message",
    "build_tool_message",
    "extract_text",
    "function_tool_to_chat_spec",
    "function_tools_to_chat_specs",
]
