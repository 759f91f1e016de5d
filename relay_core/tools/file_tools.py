"""
FILE_TOOLS
==========

Built-in filesystem tools: ``read_file``, ``write_file``, ``list_directory``.

They back the filesystem fallback of the tool-server manager (a filesystem
tool server that fails to answer is served by these instead) and can be
registered directly as built-ins.

Security Model
--------------
- **Path sandboxing**: Each tool instance receives a list of allowed_paths.
  Any path outside these directories is rejected. No paths means deny all.
- **Symlink validation**: Resolved paths checked against allowed directories
  to prevent symlink escapes.
- **Path traversal prevention**: ``..`` segments are resolved before checking.
- **Max file size**: read_file truncates at 100KB with a notice.

Usage::

    read_tool = ReadFileTool(allowed_paths=["./data/relayCore/SANDBOX"])
    result = read_tool.execute(path="./data/relayCore/SANDBOX/notes.txt")
"""

from pathlib import Path
from typing import List

from .base import BaseTool, ToolDefinition, ToolParameter, ToolResult

MAX_READ_SIZE = 100000  # ~100KB


# ============================================================================
# SANDBOX
# ============================================================================

class _SandboxedTool(BaseTool):
    """Shared allowed-path checks for filesystem tools."""

    def __init__(self, allowed_paths: List[str] = None):
        self.allowed_paths = []
        for p in allowed_paths or []:
            try:
                self.allowed_paths.append(Path(p).resolve())
            except (OSError, RuntimeError):
                pass

    def _is_allowed(self, file_path: Path) -> bool:
        """
        Check if path is within allowed directories.

        Security checks:
        - Path must be within allowed directories
        - No symlinks (on the path or its parents) pointing outside them
        - Path traversal (..) is blocked by resolve()
        """
        if not self.allowed_paths:
            return False

        current = file_path
        while current != current.parent:
            if current.is_symlink():
                try:
                    real_path = current.resolve(strict=False)
                    if not self._path_in_allowed(real_path):
                        return False
                except (OSError, RuntimeError):
                    # Broken symlink or circular - deny
                    return False
            current = current.parent

        return self._path_in_allowed(file_path)

    def _path_in_allowed(self, file_path: Path) -> bool:
        """Check if path is within any allowed directory."""
        for allowed in self.allowed_paths:
            try:
                file_path.relative_to(allowed)
                return True
            except ValueError:
                continue
        return False

    def _denied(self, path: str) -> ToolResult:
        return ToolResult(
            success=False,
            output="",
            error=f"Access denied: {path} is outside allowed directories"
        )


# ============================================================================
# READ FILE
# ============================================================================

class ReadFileTool(_SandboxedTool):
    """Read a text file from an allowed directory."""

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="read_file",
            description="Read the contents of a file",
            parameters=[
                ToolParameter(name="path", type="string", description="The file path to read"),
            ]
        )

    def execute(self, path: str, encoding: str = "utf-8") -> ToolResult:
        try:
            file_path = Path(path).resolve()
            if not self._is_allowed(file_path):
                return self._denied(path)

            if not file_path.is_file():
                return ToolResult(success=False, output="", error=f"File not found: {path}")

            content = file_path.read_text(encoding=encoding)
            truncated = len(content) > MAX_READ_SIZE
            if truncated:
                content = content[:MAX_READ_SIZE] + f"\n\n[TRUNCATED - file exceeds {MAX_READ_SIZE} characters]"

            return ToolResult(
                success=True,
                output=content,
                metadata={
                    "path": str(file_path),
                    "size_bytes": file_path.stat().st_size,
                    "truncated": truncated,
                }
            )

        except UnicodeDecodeError as e:
            return ToolResult(success=False, output="", error=f"Cannot decode file with {encoding} encoding: {e}")
        except PermissionError:
            return ToolResult(success=False, output="", error=f"Permission denied: {path}")
        except OSError as e:
            return ToolResult(success=False, output="", error=f"Failed to read file: {e}")


# ============================================================================
# WRITE FILE
# ============================================================================

class WriteFileTool(_SandboxedTool):
    """Write a text file inside an allowed directory."""

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="write_file",
            description="Write content to a file",
            parameters=[
                ToolParameter(name="path", type="string", description="The file path to write to"),
                ToolParameter(name="content", type="string", description="The content to write"),
            ]
        )

    def execute(self, path: str, content: str, encoding: str = "utf-8") -> ToolResult:
        try:
            file_path = Path(path).resolve()
            if not self._is_allowed(file_path):
                return self._denied(path)

            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(content, encoding=encoding)

            return ToolResult(
                success=True,
                output=f"File written successfully to {path}",
                metadata={"path": str(file_path), "size_bytes": len(content.encode(encoding))}
            )

        except PermissionError:
            return ToolResult(success=False, output="", error=f"Permission denied: {path}")
        except OSError as e:
            return ToolResult(success=False, output="", error=f"Failed to write file: {e}")


# ============================================================================
# LIST DIRECTORY
# ============================================================================

class ListDirectoryTool(_SandboxedTool):
    """List entries of an allowed directory, one per line."""

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="list_directory",
            description="List contents of a directory",
            parameters=[
                ToolParameter(name="path", type="string", description="The directory path to list"),
            ]
        )

    def execute(self, path: str) -> ToolResult:
        try:
            dir_path = Path(path).resolve()
            if not self._is_allowed(dir_path):
                return self._denied(path)

            if not dir_path.is_dir():
                return ToolResult(success=False, output="", error=f"Not a directory: {path}")

            entries = sorted(
                f"{p.name}/" if p.is_dir() else p.name
                for p in dir_path.iterdir()
            )
            return ToolResult(
                success=True,
                output="\n".join(entries),
                metadata={"path": str(dir_path), "count": len(entries)}
            )

        except PermissionError:
            return ToolResult(success=False, output="", error=f"Permission denied: {path}")
        except OSError as e:
            return ToolResult(success=False, output="", error=f"Failed to list directory: {e}")


def create_filesystem_tools(allowed_paths: List[str]) -> List[BaseTool]:
    """The three built-in filesystem tools sharing one sandbox."""
    return [
        ReadFileTool(allowed_paths=allowed_paths),
        WriteFileTool(allowed_paths=allowed_paths),
        ListDirectoryTool(allowed_paths=allowed_paths),
    ]
