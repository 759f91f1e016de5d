"""
Tools the relay can run on behalf of a language model.

Tool sources
------------
**User tools** (user_tools.py):
  JSON definitions in the tools directory, executed as sandboxed shell
  scripts or HTTP calls.

**Tool servers** (tool_servers.py, mcp_session.py):
  External MCP servers (stdio subprocess or streamable HTTP), exposed as
  ``mcp__<server>__<tool>``.

**Filesystem built-ins** (file_tools.py):
  ``read_file``, ``write_file``, ``list_directory``, sandboxed to allowed
  paths. Also the fallback for filesystem tool servers.

``ToolBackend`` (backend.py) is the single entry point the orchestrator uses.
"""

from .base import (
    BaseTool,
    ToolParameter,
    ToolDefinition,
    ToolResult,
    ToolRegistry,
)
from .file_tools import ReadFileTool, WriteFileTool, ListDirectoryTool, create_filesystem_tools
from .user_tools import UserTool, UserToolDefinition, UnsafeCommandError, load_user_tools
from .mcp_session import (
    ToolServerSession,
    ToolServerError,
    ToolServerExitedError,
    ToolServerTimeoutError,
)
from .tool_servers import ServerTool, ToolServerDefinition, ToolServerManager, split_tool_name
from .backend import ToolBackend

__all__ = [
    "BaseTool",
    "ToolParameter",
    "ToolDefinition",
    "ToolResult",
    "ToolRegistry",
    "ReadFileTool",
    "WriteFileTool",
    "ListDirectoryTool",
    "create_filesystem_tools",
    "UserTool",
    "UserToolDefinition",
    "UnsafeCommandError",
    "load_user_tools",
    "ToolServerSession",
    "ToolServerError",
    "ToolServerExitedError",
    "ToolServerTimeoutError",
    "ServerTool",
    "ToolServerDefinition",
    "ToolServerManager",
    "split_tool_name",
    "ToolBackend",
]
