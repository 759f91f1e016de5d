"""
Tool backend used by the orchestrator.

One entry point for everything the model may call: user-defined tools and
built-ins live in a ``ToolRegistry``; ``mcp__<server>__<tool>`` names are
routed to the ``ToolServerManager``.
"""

import logging
from typing import Any, Dict, List, Optional

from .base import ToolRegistry, ToolResult
from .file_tools import create_filesystem_tools
from .tool_servers import ToolServerManager, split_tool_name
from .user_tools import load_user_tools

logger = logging.getLogger(__name__)


class ToolBackend:
    def __init__(
        self,
        registry: Optional[ToolRegistry] = None,
        servers: Optional[ToolServerManager] = None,
    ):
        self.registry = registry or ToolRegistry()
        self.servers = servers

    @classmethod
    def from_directories(
        cls,
        tools_dir: Optional[str] = None,
        servers_dir: Optional[str] = None,
        allowed_paths: Optional[List[str]] = None,
        builtin_file_tools: bool = False,
        servers: Optional[ToolServerManager] = None,
    ) -> "ToolBackend":
        """Load user tools and tool-server definitions from disk.

        Servers are not started here; call ``servers.start_all()``.
        """
        registry = ToolRegistry()
        if tools_dir:
            for tool in load_user_tools(tools_dir):
                registry.register(tool)
        if builtin_file_tools:
            for tool in create_filesystem_tools(allowed_paths or []):
                registry.register(tool)

        if servers is None:
            servers = ToolServerManager(filesystem_paths=allowed_paths)
        if servers_dir:
            servers.load_definitions(servers_dir)
        return cls(registry=registry, servers=servers)

    def available_tools(self) -> List[Dict]:
        """OpenAI function schemas for every callable tool."""
        schemas = self.registry.get_schemas()
        if self.servers is not None:
            schemas.extend(self.servers.get_schemas())
        return schemas

    def execute_tool(self, name: str, arguments: Dict[str, Any]) -> ToolResult:
        if split_tool_name(name) is not None:
            if self.servers is None:
                return ToolResult(success=False, output="", error=f"Unknown tool: {name}")
            return self.servers.execute(name, arguments)

        result = self.registry.execute(name, arguments or {})
        if not result.success:
            logger.warning(f"tool_failed: name={name} error={result.error}")
        return result

    def shutdown(self) -> None:
        if self.servers is not None:
            self.servers.stop_all()
        self.registry.shutdown()
