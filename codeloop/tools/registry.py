"""Tool registry and base tool class."""

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, model_validator

from codeloop.exceptions import (
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
    ValidationError,
)
from codeloop.llm import ToolDefinition
from codeloop.logging import get_logger

log = get_logger(__name__)

TOOL_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


class WorkMode(str, Enum):
    """Active interaction mode; decides which tools the model may call."""

    CHAT = "chat"
    AGENT = "agent"
    PLAN = "plan"


def is_valid_tool_name(name: str) -> bool:
    """Strict identifier check applied before any registry lookup."""
    return bool(TOOL_NAME_RE.match(str(name or "")))


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None
    meta: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self


@dataclass
class ToolContext:
    """Per-call execution context handed to every tool."""

    workspace_root: Path
    abort_event: asyncio.Event = field(default_factory=asyncio.Event)
    session_id: str = ""


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float | None = None
    modes: frozenset[WorkMode] = frozenset({WorkMode.AGENT, WorkMode.PLAN})

    @abstractmethod
    async def execute(self, arguments: dict[str, Any], context: ToolContext) -> ToolResult:
        """Execute the tool.

        Args:
            arguments: Tool-specific arguments
            context: Workspace root and cancellation signal

        Returns:
            ToolResult with success status and content
        """

    def get_definition(self) -> ToolDefinition:
        """Get the tool definition for LLM."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Validate tool arguments against the declared JSON schema subset.

        Raises:
            ValidationError if a required field is missing or has the wrong type
        """
        required = self.parameters.get("required", [])
        for name in required:
            if name not in arguments:
                raise ValidationError(self.name, f"Missing required argument: {name}")

        properties = self.parameters.get("properties", {})
        for name, value in arguments.items():
            schema = properties.get(name)
            if not isinstance(schema, dict) or value is None:
                continue
            expected = _JSON_TYPES.get(str(schema.get("type", "")))
            if expected is None:
                continue
            # bool is a subclass of int; keep them apart
            if isinstance(value, bool) and bool not in expected:
                raise ValidationError(self.name, f"Argument '{name}' must be of type {schema['type']}")
            if not isinstance(value, expected):
                raise ValidationError(self.name, f"Argument '{name}' must be of type {schema['type']}")


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self, workspace_root: Path | str | None = None):
        self._tools: dict[str, Tool] = {}
        self._workspace_root = Path.cwd()
        self.set_workspace_root(workspace_root or Path.cwd())

    def set_workspace_root(self, workspace_root: Path | str) -> None:
        """Set the workspace root tools resolve relative paths against."""
        self._workspace_root = Path(workspace_root).expanduser().resolve()

    @property
    def workspace_root(self) -> Path:
        return self._workspace_root

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")
        if not is_valid_tool_name(tool.name):
            raise ValueError(f"Invalid tool name: {tool.name!r}")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self, mode: WorkMode = WorkMode.AGENT) -> list[str]:
        """List tool names available in a mode. Chat mode exposes no tools."""
        if mode == WorkMode.CHAT:
            return []
        return [tool.name for tool in self._tools.values() if mode in tool.modes]

    def get_definitions(self, mode: WorkMode = WorkMode.AGENT) -> list[ToolDefinition]:
        """Get tool definitions for the LLM in a mode."""
        return [self._tools[name].get_definition() for name in self.list_tools(mode)]

    def is_allowed(self, name: str, mode: WorkMode = WorkMode.AGENT) -> bool:
        """Name passes the identifier pattern and is available in ``mode``."""
        return is_valid_tool_name(name) and name in self.list_tools(mode)

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled task raised during shutdown", error=str(e))

    @staticmethod
    async def _bridge_abort_event(source: asyncio.Event, target: asyncio.Event) -> None:
        """Mirror external abort event to local tool abort event."""
        await source.wait()
        target.set()

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        timeout_seconds: float = 60.0,
        abort_event: asyncio.Event | None = None,
        session_id: str = "",
    ) -> ToolResult:
        """Execute a tool by name, racing it against a timer and the abort signal.

        Raises:
            ToolNotFoundError if tool not found
            ValidationError if arguments fail the schema
            ToolTimeoutError if the timer wins
            ToolExecutionError if execution fails or is aborted
        """
        tool = self.get(name)
        tool.validate_arguments(arguments)

        execute_task: asyncio.Task[ToolResult] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        bridge_task: asyncio.Task[None] | None = None
        tool_abort_event = asyncio.Event()
        effective_timeout = max(0.001, float(tool.timeout_seconds or timeout_seconds))
        context = ToolContext(
            workspace_root=self.workspace_root,
            abort_event=tool_abort_event,
            session_id=session_id,
        )
        try:
            if abort_event is not None:
                bridge_task = asyncio.create_task(
                    self._bridge_abort_event(abort_event, tool_abort_event)
                )

            execute_task = asyncio.create_task(tool.execute(dict(arguments), context))
            abort_wait_task = asyncio.create_task(tool_abort_event.wait())
            done, _ = await asyncio.wait(
                {execute_task, abort_wait_task},
                timeout=effective_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ToolResult):
                    raise ToolExecutionError(name, "Tool returned invalid result payload")
                return result

            if abort_wait_task in done:
                await self._cancel_task(execute_task)
                raise ToolExecutionError(name, "Execution aborted")

            tool_abort_event.set()
            await self._cancel_task(execute_task)
            raise ToolTimeoutError(name, effective_timeout)
        except asyncio.CancelledError:
            tool_abort_event.set()
            await self._cancel_task(execute_task)
            raise
        except (ToolExecutionError, ValidationError):
            raise
        except Exception as e:
            log.error("Tool raised", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e))
        finally:
            await self._cancel_task(abort_wait_task)
            await self._cancel_task(bridge_task)
