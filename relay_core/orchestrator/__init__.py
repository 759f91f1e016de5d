"""
Tool-call orchestration for relayed chat completions.
"""

from .chat import (
    ChatCompletion,
    ChatMessage,
    TextMessage,
    ToolCall,
    ToolCallMessage,
    ToolFunction,
    ToolResultMessage,
    parse_completion,
    parse_tool_call,
    parse_message,
    to_wire,
)
from .orchestrator import ToolOrchestrator

__all__ = [
    "ChatCompletion",
    "ChatMessage",
    "TextMessage",
    "ToolCall",
    "ToolCallMessage",
    "ToolFunction",
    "ToolResultMessage",
    "parse_completion",
    "parse_tool_call",
    "parse_message",
    "to_wire",
    "ToolOrchestrator",
]
