"""
TOOL_SERVERS
============

External MCP tool servers, exposed to the model as ``mcp__<server>__<tool>``
functions. Connections go through ``ToolServerSession`` (mcp_session.py).

Definition files (one ``*.json`` per server in the tool-servers directory)::

    {
      "name": "filesystem",
      "description": "Local file access",
      "type": "stdio",                       # or "streamableHttp"
      "command": "npx",
      "args": ["-y", "@modelcontextprotocol/server-filesystem", "/Users/me/Documents"],
      "environment": {},
      "url": null,                           # streamableHttp only
      "api_key": null,                       # bearer token for streamableHttp
      "category": "File System"
    }

Lifecycle
---------
- ``start_server`` launches (stdio) or attaches (HTTP), performs the
  initialize handshake and runs ``tools/list``.
- A server whose connection closes is dropped from the running set and its
  tools are unregistered; ``tool_server_exited`` is emitted on the event bus.
- Calling a tool of a stopped server restarts it once; if that fails the call
  returns an error result.
- A server in the "File System" category that cannot answer is served by the
  built-in ``read_file`` / ``write_file`` / ``list_directory`` tools.

Timeouts: 5s per call, 10s for tools whose name contains ``browser`` or
``navigate``.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from mcp.types import CallToolResult

from ..relay.events import TOOL_SERVER_EXITED, EventBus
from .base import BaseTool, ToolDefinition, ToolResult
from .file_tools import create_filesystem_tools
from .mcp_session import (
    HANDSHAKE_TIMEOUT,
    ToolServerError,
    ToolServerSession,
    http_transport,
    stdio_transport,
)

logger = logging.getLogger(__name__)

TOOL_PREFIX = "mcp__"
CALL_TIMEOUT = 5.0
SLOW_CALL_TIMEOUT = 10.0
SLOW_TOOL_MARKERS = ("browser", "navigate")
NO_CONTENT = "[No content returned]"


# ============================================================================
# DEFINITIONS
# ============================================================================

@dataclass
class ToolServerDefinition:
    name: str
    description: str = ""
    type: str = "stdio"  # "stdio" or "streamableHttp"
    command: str = ""
    args: List[str] = field(default_factory=list)
    environment: Dict[str, str] = field(default_factory=dict)
    url: Optional[str] = None
    api_key: Optional[str] = None
    category: str = ""

    @classmethod
    def from_dict(cls, data: Dict) -> "ToolServerDefinition":
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            type=data.get("type", "stdio"),
            command=data.get("command", ""),
            args=list(data.get("args") or []),
            environment=dict(data.get("environment") or {}),
            url=data.get("url"),
            api_key=data.get("api_key"),
            category=data.get("category", ""),
        )

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "description": self.description,
            "type": self.type,
            "command": self.command,
            "args": self.args,
            "environment": self.environment,
            "url": self.url,
            "api_key": self.api_key,
            "category": self.category,
        }

    @property
    def is_http(self) -> bool:
        return self.type == "streamableHttp"

    @property
    def is_filesystem(self) -> bool:
        return self.category.lower().replace(" ", "") == "filesystem"

    @property
    def bearer_token(self) -> Optional[str]:
        """``api_key``, else the first configured environment value."""
        if self.api_key:
            return self.api_key
        for value in self.environment.values():
            if value:
                return value
        return None

    @property
    def file_stem(self) -> str:
        return self.name.lower().replace(" ", "-")


@dataclass
class ServerTool:
    """A tool advertised by a tool server."""
    server: str
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=dict)

    @property
    def qualified_name(self) -> str:
        return f"{TOOL_PREFIX}{self.server}__{self.name}"

    def to_schema(self) -> Dict:
        return ToolDefinition(
            name=self.qualified_name,
            description=self.description or f"{self.name} ({self.server})",
            input_schema=self.input_schema or {"type": "object", "properties": {}},
        ).to_schema()


def split_tool_name(qualified_name: str) -> Optional[Tuple[str, str]]:
    """``mcp__files__read_file`` -> ``("files", "read_file")``; None if not prefixed."""
    if not qualified_name.startswith(TOOL_PREFIX):
        return None
    server, sep, tool = qualified_name[len(TOOL_PREFIX):].partition("__")
    if not sep or not server or not tool:
        return None
    return server, tool


def call_timeout_for(tool_name: str) -> float:
    lowered = tool_name.lower()
    if any(marker in lowered for marker in SLOW_TOOL_MARKERS):
        return SLOW_CALL_TIMEOUT
    return CALL_TIMEOUT


def format_tool_result(result: Optional[CallToolResult]) -> str:
    """Join the text content items of a ``tools/call`` result.

    Raises ``ToolServerError`` when the server flags the result as an error.
    """
    if result is None:
        return NO_CONTENT

    texts = [item.text for item in result.content if getattr(item, "type", None) == "text"]
    text = "\n".join(texts)

    if result.isError:
        raise ToolServerError(text or "Tool reported an error")
    return text if text else NO_CONTENT


# ============================================================================
# MANAGER
# ============================================================================

class ToolServerManager:
    """Starts tool servers, tracks their tools and routes calls to them."""

    def __init__(
        self,
        events: Optional[EventBus] = None,
        filesystem_paths: Optional[List[str]] = None,
        call_timeout: float = CALL_TIMEOUT,
        slow_call_timeout: float = SLOW_CALL_TIMEOUT,
        handshake_timeout: float = HANDSHAKE_TIMEOUT,
    ):
        self.events = events or EventBus()
        self.call_timeout = call_timeout
        self.slow_call_timeout = slow_call_timeout
        self.handshake_timeout = handshake_timeout

        self._definitions: Dict[str, ToolServerDefinition] = {}
        self._clients: Dict[str, ToolServerSession] = {}
        self._tools: Dict[str, ServerTool] = {}
        self._lock = threading.RLock()
        self._fallback: Dict[str, BaseTool] = {
            tool.name: tool for tool in create_filesystem_tools(filesystem_paths or [])
        }

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def add_definition(self, definition: ToolServerDefinition) -> None:
        with self._lock:
            self._definitions[definition.name] = definition

    def load_definitions(self, servers_dir: str) -> List[ToolServerDefinition]:
        """Load every ``*.json`` server definition in ``servers_dir``."""
        directory = Path(servers_dir)
        if not directory.is_dir():
            return []

        loaded = []
        for path in sorted(directory.glob("*.json")):
            try:
                definition = ToolServerDefinition.from_dict(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
                logger.warning(f"tool_server_definition_invalid: path={path} error={e}")
                continue
            self.add_definition(definition)
            loaded.append(definition)
        logger.info(f"tool_server_definitions_loaded: count={len(loaded)} dir={servers_dir}")
        return loaded

    def definitions(self) -> List[ToolServerDefinition]:
        with self._lock:
            return list(self._definitions.values())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_all(self) -> Dict[str, bool]:
        return {definition.name: self.start_server(definition.name) for definition in self.definitions()}

    def start_server(self, name: str) -> bool:
        with self._lock:
            definition = self._definitions.get(name)
            if definition is None:
                logger.warning(f"tool_server_unknown: name={name}")
                return False
            existing = self._clients.get(name)
            if existing is not None and existing.is_running():
                return True

        try:
            client = self._build_client(definition)
            client.start(timeout=self.handshake_timeout)
            self._register_client(name, client)
            self.discover_tools(name)
        except ToolServerError as e:
            logger.error(f"tool_server_start_failed: name={name} error={e}")
            self.stop_server(name)
            return False

        logger.info(f"tool_server_started: name={name} type={definition.type}")
        return True

    def _build_client(self, definition: ToolServerDefinition) -> ToolServerSession:
        if definition.is_http:
            if not definition.url:
                raise ToolServerError(f"No URL configured for {definition.name}")
            transport = http_transport(definition.url, definition.bearer_token)
        else:
            if not definition.command:
                raise ToolServerError(f"No command configured for {definition.name}")
            env = dict(os.environ)
            env.update(definition.environment)
            transport = stdio_transport(definition.command, definition.args, env)
        return ToolServerSession(definition.name, transport, on_exit=self._on_exit)

    def _register_client(self, name: str, client: ToolServerSession) -> None:
        with self._lock:
            self._clients[name] = client

    def is_running(self, name: str) -> bool:
        with self._lock:
            client = self._clients.get(name)
        return client is not None and client.is_running()

    def running_servers(self) -> List[str]:
        with self._lock:
            names = list(self._clients)
        return [name for name in names if self.is_running(name)]

    def _on_exit(self, client: ToolServerSession) -> None:
        with self._lock:
            if self._clients.get(client.name) is not client:
                return
            del self._clients[client.name]
            removed = self._unregister_tools(client.name)
        logger.warning(f"tool_server_dropped: name={client.name} tools_removed={removed}")
        self.events.emit(TOOL_SERVER_EXITED, server=client.name)

    def stop_server(self, name: str) -> None:
        with self._lock:
            client = self._clients.pop(name, None)
            self._unregister_tools(name)
        if client is not None:
            client.stop()

    def stop_all(self) -> None:
        with self._lock:
            names = list(self._clients)
        for name in names:
            self.stop_server(name)

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def discover_tools(self, name: str) -> List[ServerTool]:
        """Run ``tools/list`` and replace the server's registered tools."""
        with self._lock:
            client = self._clients.get(name)
        if client is None:
            raise ToolServerError(f"Tool server not running: {name}")

        discovered = [
            ServerTool(
                server=name,
                name=item.name,
                description=item.description or "",
                input_schema=dict(item.inputSchema or {}),
            )
            for item in client.list_tools(timeout=self.call_timeout)
            if item.name
        ]

        with self._lock:
            self._unregister_tools(name)
            for tool in discovered:
                self._tools[tool.qualified_name] = tool
        logger.info(f"tool_server_tools_discovered: name={name} count={len(discovered)}")
        return discovered

    def _unregister_tools(self, server: str) -> int:
        stale = [key for key, tool in self._tools.items() if tool.server == server]
        for key in stale:
            del self._tools[key]
        return len(stale)

    def available_tools(self) -> List[ServerTool]:
        with self._lock:
            return list(self._tools.values())

    def get_schemas(self) -> List[Dict]:
        return [tool.to_schema() for tool in self.available_tools()]

    def has_tool(self, qualified_name: str) -> bool:
        with self._lock:
            return qualified_name in self._tools

    def timeout_for(self, tool_name: str) -> float:
        if call_timeout_for(tool_name) == SLOW_CALL_TIMEOUT:
            return self.slow_call_timeout
        return self.call_timeout

    def execute(self, qualified_name: str, arguments: Dict[str, Any]) -> ToolResult:
        parts = split_tool_name(qualified_name)
        if parts is None:
            return ToolResult(success=False, output="", error=f"Invalid tool name: {qualified_name}")
        server, tool_name = parts

        with self._lock:
            definition = self._definitions.get(server)
        if definition is None:
            return ToolResult(success=False, output="", error=f"Unknown tool server: {server}")

        if not self.is_running(server):
            logger.info(f"tool_server_restart: name={server}")
            if not self.start_server(server):
                return self._fallback_or_error(
                    definition, tool_name, arguments, f"Tool server not running: {server}"
                )

        with self._lock:
            client = self._clients.get(server)
        if client is None:
            return self._fallback_or_error(definition, tool_name, arguments, f"Tool server not running: {server}")

        timeout = self.timeout_for(tool_name)
        try:
            result = client.call_tool(tool_name, arguments or {}, timeout=timeout)
            output = format_tool_result(result)
        except ToolServerError as e:
            logger.warning(f"tool_server_call_failed: tool={qualified_name} error={e}")
            return self._fallback_or_error(definition, tool_name, arguments, str(e))

        logger.info(f"tool_server_call: tool={qualified_name} chars={len(output)}")
        return ToolResult(success=True, output=output, metadata={"server": server})

    def _fallback_or_error(
        self, definition: ToolServerDefinition, tool_name: str, arguments: Dict[str, Any], error: str
    ) -> ToolResult:
        fallback = self._fallback.get(tool_name) if definition.is_filesystem else None
        if fallback is None:
            return ToolResult(success=False, output="", error=error)

        logger.info(f"tool_server_fallback: name={definition.name} tool={tool_name}")
        try:
            return fallback.execute(**(arguments or {}))
        except TypeError as e:
            return ToolResult(success=False, output="", error=f"Invalid parameters for {tool_name}: {e}")
