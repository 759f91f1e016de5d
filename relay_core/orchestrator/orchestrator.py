"""
TOOL_ORCHESTRATOR
=================

Tool-call loop wrapped around relayed chat-completion requests.

Flow
----
::

    request body ──inject_tools()──► local LLM ──► response body
                                                    │
                        handle_response() ◄─────────┘
                        │
                        ├── no tool_calls ──────────► response body unchanged
                        └── tool_calls
                             ├── execute each via ToolBackend
                             ├── build_follow_up_body()
                             └── POST once to the same URL ──► follow-up body

Rules
-----
- Tools are injected only for ``Language Model`` services speaking the
  ``OpenAI`` format, and only when the backend offers at least one tool.
- Exactly one follow-up round. Tool calls in the follow-up response are not
  executed; its body is returned as-is.
- A failing tool contributes ``"Error executing <name>: <error>"`` as its
  result so the model still sees one answer per call.
- Each call is validated on its own. A malformed entry (no id, no function)
  is answered with ``MALFORMED_TOOL_CALL`` under its id, or ``"unknown"``,
  and the well-formed calls beside it still run.
- Anything unexpected (non-JSON body, no messages, follow-up transport error)
  returns the original response body unchanged.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import requests

from ..relay.models import ApiFormat, RelayRequest, ServiceKind
from .chat import (
    ToolCall,
    ToolResultMessage,
    parse_completion,
    parse_tool_call,
    raw_tool_call_id,
    to_wire,
)

logger = logging.getLogger(__name__)

FOLLOW_UP_TIMEOUT = 300  # seconds
MALFORMED_TOOL_CALL = "Tool execution failed - no result returned"


class ToolOrchestrator:
    def __init__(self, backend, session: Optional[requests.Session] = None, timeout: float = FOLLOW_UP_TIMEOUT):
        """
        Args:
            backend: Object with ``available_tools()`` and ``execute_tool(name, args)``
            session: HTTP session for the follow-up call
            timeout: Follow-up request timeout in seconds
        """
        self.backend = backend
        self.session = session or requests.Session()
        self.timeout = timeout

    # ========================================================================
    # INJECTION
    # ========================================================================

    def should_inject_tools(self, service) -> bool:
        kind = getattr(service, "kind", None)
        api_format = getattr(service, "api_format", None)
        return kind == ServiceKind.LANGUAGE_MODEL and api_format == ApiFormat.OPENAI

    def inject_tools(self, body: Optional[bytes]) -> Optional[bytes]:
        """Add ``tools`` and ``tool_choice: "auto"`` to a JSON request body."""
        if not body:
            return body
        try:
            data = json.loads(body)
        except ValueError:
            return body
        if not isinstance(data, dict):
            return body

        tools = self.backend.available_tools()
        if not tools:
            return body

        data["tools"] = tools
        data["tool_choice"] = "auto"
        logger.info(f"tools_injected: count={len(tools)}")
        return json.dumps(data).encode("utf-8")

    # ========================================================================
    # RESPONSE HOOK
    # ========================================================================

    def handle_response(self, raw_body: bytes, original_request: RelayRequest, service) -> bytes:
        """Run requested tool calls and return the follow-up response body."""
        completion = parse_completion(raw_body)
        if completion is None:
            return raw_body

        tool_calls = completion.raw_tool_calls()
        if not tool_calls:
            return raw_body

        if not original_request.body:
            return raw_body

        results = [self._answer_tool_call(raw, original_request.id) for raw in tool_calls]

        try:
            follow_up = self.build_follow_up_body(original_request.body, tool_calls, results)
        except ValueError as e:
            logger.warning(f"follow_up_skipped: request={original_request.id} error={e}")
            return raw_body

        url = service.url + original_request.endpoint
        logger.info(f"follow_up_sending: request={original_request.id} tool_calls={len(tool_calls)} url={url}")
        try:
            response = self.session.request(
                original_request.method or "POST",
                url,
                headers=dict(original_request.headers),
                data=follow_up,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"follow_up_failed: request={original_request.id} error={e}")
            return raw_body

        logger.info(f"follow_up_complete: request={original_request.id} status={response.status_code}")
        return response.content

    def _answer_tool_call(self, raw: Any, request_id: str) -> ToolResultMessage:
        call = parse_tool_call(raw)
        if call is None:
            call_id = raw_tool_call_id(raw)
            logger.warning(f"tool_call_malformed: request={request_id} tool_call_id={call_id}")
            return ToolResultMessage(tool_call_id=call_id, content=MALFORMED_TOOL_CALL)
        return ToolResultMessage(tool_call_id=call.id, content=self._run_tool_call(call))

    def _run_tool_call(self, call: ToolCall) -> str:
        name = call.function.name
        try:
            arguments = call.parsed_arguments()
        except ValueError as e:
            return f"Error executing {name}: invalid arguments: {e}"

        try:
            result = self.backend.execute_tool(name, arguments)
        except Exception as e:
            logger.exception(f"tool_call_crashed: name={name}")
            return f"Error executing {name}: {e}"

        if not result.success:
            return f"Error executing {name}: {result.error or 'Unknown error'}"
        return result.output

    def build_follow_up_body(
        self, original_body: bytes, tool_calls: List[Any], results: List[ToolResultMessage]
    ) -> bytes:
        """
        Original messages, then the assistant tool-call turn carrying the
        calls as the model sent them, then one ``tool`` turn per call.
        ``tools`` and ``tool_choice`` are removed.

        Raises ``ValueError`` if the original body has no ``messages`` list.
        """
        data: Any = json.loads(original_body)
        if not isinstance(data, dict) or not isinstance(data.get("messages"), list):
            raise ValueError("original request has no messages")

        messages: List[Dict[str, Any]] = list(data["messages"])
        messages.append({"role": "assistant", "content": None, "tool_calls": list(tool_calls)})
        messages.extend(to_wire(result) for result in results)

        data["messages"] = messages
        data.pop("tools", None)
        data.pop("tool_choice", None)
        return json.dumps(data).encode("utf-8")
