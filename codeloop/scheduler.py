"""Partition a batch of tool calls into parallel-safe groups and a serial remainder."""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from codeloop.llm import ToolCall
from codeloop.logging import get_logger
from codeloop.session import normalize_path

log = get_logger(__name__)

READ_ONLY_TOOLS = frozenset({
    "read_file",
    "read_multiple_files",
    "list_directory",
    "get_dir_tree",
    "search_files",
    "grep_search",
    "codebase_search",
    "get_file_info",
    "get_document_symbols",
    "find_references",
    "go_to_definition",
    "get_hover_info",
    "get_lint_errors",
    "web_search",
    "read_url",
})

TARGET_PATH_KEYS = ("path", "file_path", "directory")


@dataclass
class DependencyAnalysis:
    """Scheduling decision for one batch."""

    parallel_groups: list[list[ToolCall]] = field(default_factory=list)
    serial_tools: list[ToolCall] = field(default_factory=list)

    def all_calls(self) -> list[ToolCall]:
        calls = [tc for group in self.parallel_groups for tc in group]
        calls.extend(self.serial_tools)
        return calls


def is_read_only_tool(name: str) -> bool:
    return name in READ_ONLY_TOOLS


def get_tool_target_path(arguments: dict[str, Any]) -> str | None:
    """Return the normalized target path named by a conventional argument key.

    Only the first matching key is considered; tools that touch several paths
    (move/rename) are treated as touching that one.
    """
    for key in TARGET_PATH_KEYS:
        value = arguments.get(key)
        if isinstance(value, str) and value:
            return normalize_path(value)
    return None


def analyze_dependencies(
    tool_calls: list[ToolCall],
    requires_approval: Callable[[str], bool] | None = None,
) -> DependencyAnalysis:
    """Single conservative pass over the batch.

    Mutating calls are always serial, as are calls ``requires_approval``
    flags, since only one approval can be outstanding. A read-only call joins
    the parallel group unless any mutating call in the batch targets the same
    path. The serial remainder keeps request order.
    """
    if len(tool_calls) <= 1:
        return DependencyAnalysis(serial_tools=list(tool_calls))

    write_targets: set[str] = set()
    for tool_call in tool_calls:
        if is_read_only_tool(tool_call.name):
            continue
        target = get_tool_target_path(tool_call.arguments)
        if target:
            write_targets.add(target)

    independent: list[ToolCall] = []
    serial: list[ToolCall] = []
    for tool_call in tool_calls:
        if not is_read_only_tool(tool_call.name):
            serial.append(tool_call)
            continue
        if requires_approval is not None and requires_approval(tool_call.name):
            serial.append(tool_call)
            continue
        target = get_tool_target_path(tool_call.arguments)
        if target and target in write_targets:
            serial.append(tool_call)
        else:
            independent.append(tool_call)

    analysis = DependencyAnalysis(
        parallel_groups=[independent] if independent else [],
        serial_tools=serial,
    )
    log.debug(
        "Dependency analysis",
        batch=len(tool_calls),
        parallel=len(independent),
        serial=len(serial),
        write_targets=len(write_targets),
    )
    return analysis
