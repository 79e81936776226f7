"""Tool contract for codeloop."""

from codeloop.tools.registry import (
    Tool,
    ToolContext,
    ToolRegistry,
    ToolResult,
    WorkMode,
    is_valid_tool_name,
)

__all__ = [
    "Tool",
    "ToolContext",
    "ToolRegistry",
    "ToolResult",
    "WorkMode",
    "is_valid_tool_name",
]
