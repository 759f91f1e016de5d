"""
USER_TOOLS
==========

User-defined tools loaded from JSON files in the tools directory.

Definition format::

    {
      "name": "weather",
      "description": "Current weather for a city",
      "parameters": {
        "type": "object",
        "properties": {"city": {"type": "string", "description": "City name"}},
        "required": ["city"]
      },
      "execution": {
        "type": "script",                 # or "http"
        "command": "curl -s wttr.in/{city}?format=3",
        "timeout": 30
      }
    }

Execution types
---------------
- **script**: ``{arg}`` placeholders in ``command`` are replaced with
  shell-quoted argument values and the result runs under ``/bin/sh -c`` with a
  restricted environment. Placeholders go unquoted in the template. Both the
  template and the final command are checked against a list of
  dangerous patterns first. Timeout is ``min(timeout or 30, 300)`` seconds,
  combined stdout/stderr is capped at 100KB, and a non-zero exit is an error.
- **http**: ``requests`` call to ``url`` with ``method`` (default POST),
  ``headers`` and ``timeout`` (default 30). POST/PUT/PATCH send the arguments
  as a JSON body, other methods as query parameters. Status >= 400 is an error.
"""

import json
import logging
import os
import re
import shlex
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from .base import BaseTool, ToolDefinition, ToolResult

logger = logging.getLogger(__name__)

DEFAULT_SCRIPT_TIMEOUT = 30  # seconds
MAX_SCRIPT_TIMEOUT = 300
MAX_OUTPUT_SIZE = 100000  # ~100KB
RESTRICTED_PATH = "/usr/bin:/bin:/usr/local/bin"

# Blocked outright
DANGEROUS_PATTERNS = [
    r"\brm\s+-rf", r"\brmdir\s+", r"\bdel\s+", r"\bformat\s+c:", r"\bfdisk\s+",
    r"\bsudo\s+", r"\bsu\s+", r"chmod\s+\+x", r"\bchown\s+",
    r"curl.*-o.*\.(sh|exe|bin)", r"wget.*-o.*\.(sh|exe|bin)",
    r"echo.*>>?.*sudoers", r"cat.*>>?.*passwd",
    r"\bnc\s+-l", r"\bnetcat\s+-l",
    r"python.*-c.*import.*os", r"python.*-c.*exec",
    r"\beval\s+", r"\bexec\s+", r"\$\(",
]

# Logged, not blocked
RISKY_PATTERNS = [r"\brm\s+", r"\bmv\s+", r"\bcp\s+", r"\bmkdir\s+", r"\btouch\s+"]


class UnsafeCommandError(ValueError):
    """A script command matched a dangerous pattern."""

    def __init__(self, pattern: str):
        super().__init__(f"Unsafe command blocked for security: {pattern}")
        self.pattern = pattern


# ============================================================================
# SCRIPT SAFETY
# ============================================================================

def validate_script_safety(command: str) -> None:
    """Raise ``UnsafeCommandError`` if the command looks dangerous."""
    lowered = command.lower()
    for pattern in DANGEROUS_PATTERNS:
        if re.search(pattern, lowered):
            raise UnsafeCommandError(pattern)
    for pattern in RISKY_PATTERNS:
        if re.search(pattern, lowered):
            logger.warning(f"risky_tool_command: pattern={pattern}")


def sanitize_argument(value: Any) -> str:
    """Quote a substituted argument so the shell sees one literal word."""
    text = value if isinstance(value, str) else json.dumps(value)
    return shlex.quote(text)


def restricted_environment() -> Dict[str, str]:
    return {
        "PATH": RESTRICTED_PATH,
        "HOME": str(Path.home()),
        "USER": os.environ.get("USER", ""),
        "SHELL": "/bin/sh",
        "TMPDIR": tempfile.gettempdir(),
    }


# ============================================================================
# DEFINITIONS
# ============================================================================

@dataclass
class ToolExecution:
    type: str  # "script" or "http"
    command: Optional[str] = None
    url: Optional[str] = None
    method: Optional[str] = None
    timeout: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict) -> "ToolExecution":
        return cls(
            type=data["type"],
            command=data.get("command"),
            url=data.get("url"),
            method=data.get("method"),
            timeout=data.get("timeout"),
            headers=data.get("headers") or {},
        )


@dataclass
class UserToolDefinition:
    name: str
    description: str
    parameters: Dict[str, Any]
    execution: ToolExecution

    @classmethod
    def from_dict(cls, data: Dict) -> "UserToolDefinition":
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            parameters=data.get("parameters") or {"type": "object", "properties": {}},
            execution=ToolExecution.from_dict(data["execution"]),
        )


# ============================================================================
# USER TOOL
# ============================================================================

class UserTool(BaseTool):
    """A tool backed by a user JSON definition."""

    def __init__(self, config: UserToolDefinition):
        self.config = config
        budget = config.execution.timeout or DEFAULT_SCRIPT_TIMEOUT
        # Leave room for the subprocess/HTTP timeout to fire first
        self.timeout = min(budget, MAX_SCRIPT_TIMEOUT) + 5

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.config.name,
            description=self.config.description,
            input_schema=self.config.parameters,
        )

    def execute(self, **kwargs) -> ToolResult:
        kind = self.config.execution.type
        try:
            if kind == "script":
                return self._run_script(kwargs)
            if kind == "http":
                return self._run_http(kwargs)
        except UnsafeCommandError as e:
            return ToolResult(success=False, output="", error=str(e))
        return ToolResult(success=False, output="", error=f"Unsupported execution type: {kind}")

    def _run_script(self, arguments: Dict[str, Any]) -> ToolResult:
        command = self.config.execution.command
        if not command:
            return ToolResult(success=False, output="", error="Missing execution command")

        validate_script_safety(command)
        for key, value in arguments.items():
            command = command.replace("{" + key + "}", sanitize_argument(value))
        validate_script_safety(command)

        timeout = min(self.config.execution.timeout or DEFAULT_SCRIPT_TIMEOUT, MAX_SCRIPT_TIMEOUT)
        logger.info(f"user_tool_script: name={self.config.name} timeout={timeout}")

        try:
            completed = subprocess.run(
                ["/bin/sh", "-c", command],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=restricted_environment(),
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return ToolResult(success=False, output="", error=f"Execution timed out after {timeout} seconds")
        except OSError as e:
            return ToolResult(success=False, output="", error=f"Failed to launch process: {e}")

        output = completed.stdout.decode("utf-8", errors="replace")
        if len(output) > MAX_OUTPUT_SIZE:
            output = output[:MAX_OUTPUT_SIZE] + "\n... (output truncated)"

        if completed.returncode != 0:
            return ToolResult(
                success=False,
                output=output,
                error=f"Process failed with exit code {completed.returncode}: {output.strip()}",
            )
        return ToolResult(success=True, output=output.strip(), metadata={"exit_code": 0})

    def _run_http(self, arguments: Dict[str, Any]) -> ToolResult:
        execution = self.config.execution
        if not execution.url:
            return ToolResult(success=False, output="", error="Missing execution URL")

        method = (execution.method or "POST").upper()
        timeout = execution.timeout or DEFAULT_SCRIPT_TIMEOUT
        kwargs: Dict[str, Any] = {"headers": dict(execution.headers), "timeout": timeout}
        if method in ("POST", "PUT", "PATCH"):
            kwargs["json"] = arguments
        elif arguments:
            kwargs["params"] = arguments

        try:
            response = requests.request(method, execution.url, **kwargs)
        except requests.exceptions.Timeout:
            return ToolResult(success=False, output="", error=f"Request timed out after {timeout} seconds")
        except requests.exceptions.ConnectionError as e:
            return ToolResult(success=False, output="", error=f"Connection error: {e}")
        except requests.exceptions.RequestException as e:
            return ToolResult(success=False, output="", error=f"Request failed: {e}")

        if response.status_code >= 400:
            return ToolResult(
                success=False,
                output=response.text,
                error=f"HTTP {response.status_code}: {response.text[:500]}",
            )
        return ToolResult(success=True, output=response.text, metadata={"status_code": response.status_code})


def load_user_tools(tools_dir: str) -> List[UserTool]:
    """Load every ``*.json`` tool definition in ``tools_dir``."""
    directory = Path(tools_dir)
    if not directory.is_dir():
        return []

    tools = []
    for path in sorted(directory.glob("*.json")):
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            tools.append(UserTool(UserToolDefinition.from_dict(data)))
        except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"user_tool_invalid: path={path} error={e}")
    logger.info(f"user_tools_loaded: count={len(tools)} dir={tools_dir}")
    return tools
