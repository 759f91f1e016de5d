"""
Chat-completion message schema.

Messages at the JSON boundary are one of three shapes:

- ``TextMessage``: any role with plain (or multimodal list) content
- ``ToolCallMessage``: an assistant turn carrying ``tool_calls``
- ``ToolResultMessage``: a ``role: "tool"`` turn answering one call

Unknown keys are preserved, so a message parsed and re-serialised keeps any
provider-specific fields it arrived with.
"""

import json
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class ToolFunction(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    arguments: Union[str, Dict[str, Any]] = "{}"


class ToolCall(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    type: str = "function"
    function: ToolFunction

    def parsed_arguments(self) -> Dict[str, Any]:
        """Decode ``function.arguments``; raises ``ValueError`` if not a JSON object."""
        raw = self.function.arguments
        if isinstance(raw, dict):
            return raw
        if not raw.strip():
            return {}
        value = json.loads(raw)
        if not isinstance(value, dict):
            raise ValueError("tool arguments must be a JSON object")
        return value


class TextMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str
    content: Union[str, List[Any], None] = None


class ToolCallMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Literal["assistant"] = "assistant"
    content: Optional[str] = None
    tool_calls: List[ToolCall] = Field(min_length=1)


class ToolResultMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Literal["tool"] = "tool"
    tool_call_id: str
    content: str


ChatMessage = Union[TextMessage, ToolCallMessage, ToolResultMessage]


class ChatChoice(BaseModel):
    model_config = ConfigDict(extra="allow")

    index: int = 0
    message: Dict[str, Any]
    finish_reason: Optional[str] = None


class ChatCompletion(BaseModel):
    """The parts of a chat-completion response the orchestrator reads."""
    model_config = ConfigDict(extra="allow")

    choices: List[ChatChoice] = Field(default_factory=list)

    def first_message(self) -> Optional[ChatMessage]:
        if not self.choices:
            return None
        return parse_message(self.choices[0].message)

    def raw_tool_calls(self) -> List[Any]:
        """The first choice's ``tool_calls`` entries exactly as the model sent them."""
        if not self.choices:
            return []
        message = self.choices[0].message
        calls = message.get("tool_calls")
        if message.get("role") != "assistant" or not isinstance(calls, list):
            return []
        return calls

    def tool_calls(self) -> List[ToolCall]:
        """Well-formed entries only; see ``parse_tool_call``."""
        parsed = (parse_tool_call(raw) for raw in self.raw_tool_calls())
        return [call for call in parsed if call is not None]


def parse_tool_call(raw: Any) -> Optional[ToolCall]:
    """Validate one ``tool_calls`` entry; None when it is malformed."""
    try:
        return ToolCall.model_validate(raw)
    except ValidationError:
        return None


def raw_tool_call_id(raw: Any) -> str:
    """The entry's ``id`` if it has a usable one, else ``"unknown"``."""
    call_id = raw.get("id") if isinstance(raw, dict) else None
    return call_id if isinstance(call_id, str) and call_id else "unknown"


def parse_message(data: Dict[str, Any]) -> ChatMessage:
    """Validate a wire dict into the matching message shape.

    Raises ``pydantic.ValidationError`` on malformed input.
    """
    if data.get("role") == "tool":
        return ToolResultMessage.model_validate(data)
    if data.get("role") == "assistant" and data.get("tool_calls"):
        return ToolCallMessage.model_validate(data)
    return TextMessage.model_validate(data)


def to_wire(message: ChatMessage) -> Dict[str, Any]:
    return message.model_dump(mode="json")


def parse_completion(raw: bytes) -> Optional[ChatCompletion]:
    """Parse a response body; None when it is not a chat completion."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    try:
        return ChatCompletion.model_validate(data)
    except ValidationError:
        return None
