"""
TOOL_BASE
=========

Tool contract and the in-process registry that runs user-defined and
built-in tools for the orchestrator.

Architecture
------------
::

    BaseTool (abstract)
    ├── definition property → ToolDefinition (name, description, schema)
    └── execute(**kwargs)   → ToolResult (success, output, error, metadata)

    ToolRegistry
    ├── register(tool)          Add or replace a tool by name
    ├── get_schemas()           OpenAI ``{"type": "function"}`` schemas
    └── execute(name, args)     Run on the worker pool with a deadline

Execution rules
---------------
- Deadline: ``tool.timeout`` if the tool sets one, otherwise the registry
  default (30s). Runs on a pool of 4 threads.
- Output over ``max_output_size`` characters is cut and flagged in metadata.
- Nothing raises out of ``execute``: unknown names, bad arguments, timeouts and
  tool exceptions all come back as ``ToolResult(success=False)`` so the
  orchestrator can turn them into error placeholders.
"""

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# DEFINITIONS
# ============================================================================

@dataclass
class ToolParameter:
    """One named argument of a built-in tool."""
    name: str
    type: str  # JSON Schema type name
    description: str
    required: bool = True
    enum: Optional[List[str]] = None
    default: Optional[Any] = None

    def to_schema(self) -> Dict:
        schema: Dict[str, Any] = {"type": self.type, "description": self.description}
        if self.enum:
            schema["enum"] = list(self.enum)
        if self.default is not None:
            schema["default"] = self.default
        return schema


@dataclass
class ToolDefinition:
    """What the model is told about a tool.

    Built-in tools list ``parameters``; user tools and tool servers hand over
    a ready JSON Schema in ``input_schema``, which wins when both are set.
    """
    name: str
    description: str
    parameters: List[ToolParameter] = field(default_factory=list)
    input_schema: Optional[Dict] = None

    def parameters_schema(self) -> Dict:
        if self.input_schema is not None:
            return {"type": "object", "properties": {}, **self.input_schema}
        return {
            "type": "object",
            "properties": {p.name: p.to_schema() for p in self.parameters},
            "required": [p.name for p in self.parameters if p.required],
        }

    def to_schema(self) -> Dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema(),
            },
        }


@dataclass
class ToolResult:
    """Outcome of one tool call."""
    success: bool
    output: str
    error: Optional[str] = None
    metadata: Optional[Dict] = None

    @classmethod
    def failure(cls, error: str, **metadata) -> "ToolResult":
        return cls(success=False, output="", error=error, metadata=metadata or None)

    def to_dict(self) -> Dict:
        data: Dict[str, Any] = {"success": self.success, "output": self.output}
        if self.error:
            data["error"] = self.error
        if self.metadata:
            data["metadata"] = self.metadata
        return data


# ============================================================================
# TOOL CONTRACT
# ============================================================================

class BaseTool(ABC):
    """A callable the model can request by name."""

    # Seconds; None defers to the registry default
    timeout: Optional[float] = None

    @property
    @abstractmethod
    def definition(self) -> ToolDefinition:
        pass

    @abstractmethod
    def execute(self, **kwargs) -> ToolResult:
        """Run with the model-supplied arguments as keyword arguments."""
        pass

    @property
    def name(self) -> str:
        return self.definition.name

    def get_schema(self) -> Dict:
        return self.definition.to_schema()


# ============================================================================
# REGISTRY
# ============================================================================

class ToolRegistry:
    """Tools keyed by name, executed on a bounded thread pool."""

    DEFAULT_TIMEOUT = 30  # seconds
    MAX_OUTPUT_SIZE = 100000  # characters

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT, max_output_size: int = MAX_OUTPUT_SIZE):
        self._tools: Dict[str, BaseTool] = {}
        self.default_timeout = default_timeout
        self.max_output_size = max_output_size
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="tool")

    def register(self, tool: BaseTool) -> None:
        if tool.name in self._tools:
            logger.info(f"tool_replaced: name={tool.name}")
        self._tools[tool.name] = tool

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> List[str]:
        return list(self._tools)

    def get_schemas(self) -> List[Dict]:
        return [tool.get_schema() for tool in list(self._tools.values())]

    def execute(self, tool_name: str, parameters: Dict, timeout: Optional[float] = None) -> ToolResult:
        """Run a tool by name. Always returns a ``ToolResult``."""
        tool = self._tools.get(tool_name)
        if tool is None:
            return ToolResult.failure(f"Unknown tool: {tool_name}")

        deadline = timeout or tool.timeout or self.default_timeout
        future = self._executor.submit(tool.execute, **parameters)
        try:
            result = future.result(timeout=deadline)
        except FuturesTimeoutError:
            logger.warning(f"tool_timeout: name={tool_name} timeout={deadline}")
            return ToolResult.failure(f"Tool '{tool_name}' timed out after {deadline} seconds")
        except TypeError as e:
            return ToolResult.failure(f"Invalid parameters for {tool_name}: {e}")
        except Exception as e:
            logger.exception(f"tool_crashed: name={tool_name}")
            return ToolResult.failure(f"Tool execution error: {e}")

        return self._limit_output(result)

    def _limit_output(self, result: ToolResult) -> ToolResult:
        size = len(result.output or "")
        if size <= self.max_output_size:
            return result
        notice = f"\n\n[TRUNCATED - output exceeded {self.max_output_size} characters]"
        return ToolResult(
            success=result.success,
            output=result.output[:self.max_output_size] + notice,
            error=result.error,
            metadata={**(result.metadata or {}), "truncated": True, "original_size": size},
        )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
