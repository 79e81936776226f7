"""Run one tool call through approval, timeout, retry and result shaping."""

import asyncio
import difflib
import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from codeloop.approval import ApprovalClass, ApprovalGate
from codeloop.config import ToolsConfig
from codeloop.exceptions import (
    LLMAPIError,
    ProtocolError,
    ProviderTimeoutError,
    ToolExecutionError,
    ToolNotFoundError,
    ValidationError,
)
from codeloop.llm import RAW_ARGS_KEY, ToolCall, ToolStatus
from codeloop.logging import get_logger
from codeloop.scheduler import get_tool_target_path
from codeloop.session import FileChange, Session, ToolTelemetry
from codeloop.tools.registry import ToolRegistry, ToolResult

log = get_logger(__name__)

REJECTED_MESSAGE = "Tool call was rejected by the user."
ABORTED_MESSAGE = "Aborted by user"
SKIPPED_MESSAGE = "Skipped: turn aborted"


class ErrorCause(str, Enum):
    """Structured failure causes; retryability is decided per cause."""

    TIMEOUT = "timeout"
    CONNECTION_RESET = "connection_reset"
    DNS = "dns"
    NETWORK = "network"
    UNAVAILABLE = "unavailable"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    PROVIDER_TIMEOUT = "provider_timeout"
    PROTOCOL = "protocol"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    ABORTED = "aborted"
    OTHER = "other"


RETRYABLE_CAUSES: dict[ErrorCause, bool] = {
    ErrorCause.TIMEOUT: True,
    ErrorCause.CONNECTION_RESET: True,
    ErrorCause.DNS: True,
    ErrorCause.NETWORK: True,
    ErrorCause.UNAVAILABLE: True,
    ErrorCause.RATE_LIMIT: True,
    ErrorCause.SERVER_ERROR: True,
    ErrorCause.PROVIDER_TIMEOUT: False,
    ErrorCause.PROTOCOL: False,
    ErrorCause.VALIDATION: False,
    ErrorCause.NOT_FOUND: False,
    ErrorCause.ABORTED: False,
    ErrorCause.OTHER: False,
}

# Order matters: the first matching substring wins.
_MESSAGE_PATTERNS: tuple[tuple[str, ErrorCause], ...] = (
    ("aborted", ErrorCause.ABORTED),
    ("etimedout", ErrorCause.TIMEOUT),
    ("timeout", ErrorCause.TIMEOUT),
    ("timed out", ErrorCause.TIMEOUT),
    ("econnreset", ErrorCause.CONNECTION_RESET),
    ("connection reset", ErrorCause.CONNECTION_RESET),
    ("enotfound", ErrorCause.DNS),
    ("name or service not known", ErrorCause.DNS),
    ("network", ErrorCause.NETWORK),
    ("connecterror", ErrorCause.NETWORK),
    ("connection refused", ErrorCause.NETWORK),
    ("temporarily unavailable", ErrorCause.UNAVAILABLE),
)


def classify_error(error: BaseException | str) -> ErrorCause:
    """Map an exception or error message to an :class:`ErrorCause`."""
    if isinstance(error, ProviderTimeoutError):
        return ErrorCause.PROVIDER_TIMEOUT
    if isinstance(error, ProtocolError):
        return ErrorCause.PROTOCOL
    if isinstance(error, ValidationError):
        return ErrorCause.VALIDATION
    if isinstance(error, ToolNotFoundError):
        return ErrorCause.NOT_FOUND
    if isinstance(error, LLMAPIError) and error.status_code is not None:
        if error.status_code == 429:
            return ErrorCause.RATE_LIMIT
        if error.status_code >= 500:
            return ErrorCause.SERVER_ERROR
        return ErrorCause.OTHER

    message = (error.detail if isinstance(error, ToolExecutionError) else str(error)).lower()
    for pattern, cause in _MESSAGE_PATTERNS:
        if pattern in message:
            return cause
    return ErrorCause.OTHER


def is_retryable(error: BaseException | str) -> bool:
    return RETRYABLE_CAUSES[classify_error(error)]


# Per-tool (max_length, head_ratio, tail_ratio). Command output keeps the tail.
TRUNCATION_PROFILES: dict[str, tuple[int, float, float]] = {
    "read_file": (20000, 0.8, 0.15),
    "read_multiple_files": (30000, 0.8, 0.15),
    "search_files": (10000, 0.9, 0.05),
    "codebase_search": (10000, 0.9, 0.05),
    "grep_search": (10000, 0.9, 0.05),
    "find_references": (8000, 0.85, 0.1),
    "get_dir_tree": (8000, 0.85, 0.1),
    "list_directory": (8000, 0.85, 0.1),
    "get_lint_errors": (8000, 0.85, 0.1),
    "run_command": (15000, 0.2, 0.75),
    "get_document_symbols": (8000, 0.6, 0.35),
    "get_hover_info": (3000, 0.7, 0.25),
}
DEFAULT_TRUNCATION_PROFILE = (12000, 0.7, 0.25)


def truncate_tool_result(text: str, tool_name: str = "", max_length: int | None = None) -> str:
    """Keep the head and tail of an oversized result, cutting at line boundaries."""
    if not text:
        return ""
    default_limit, head_ratio, tail_ratio = TRUNCATION_PROFILES.get(tool_name, DEFAULT_TRUNCATION_PROFILE)
    limit = max_length or default_limit
    if len(text) <= limit:
        return text

    head_size = int(limit * head_ratio)
    tail_size = int(limit * tail_ratio)
    omitted = len(text) - head_size - tail_size

    head = text[:head_size]
    newline = head.rfind("\n")
    if newline > max(0, head_size - 100):
        head = head[:newline]

    tail = text[len(text) - tail_size:] if tail_size else ""
    newline = tail.find("\n")
    if 0 <= newline < 100:
        tail = tail[newline + 1:]

    return f"{head}\n\n... [truncated: {omitted:,} chars omitted] ...\n\n{tail}"


def _count_line_changes(old: str | None, new: str | None) -> tuple[int, int]:
    added = removed = 0
    diff = difflib.unified_diff((old or "").splitlines(), (new or "").splitlines(), lineterm="", n=0)
    for line in diff:
        if line.startswith(("+++", "---")):
            continue
        if line.startswith("+"):
            added += 1
        elif line.startswith("-"):
            removed += 1
    return added, removed


@dataclass
class ExecutionOutcome:
    """What one tool call produced, ready to be appended as a tool message."""

    tool_call: ToolCall
    success: bool
    content: str
    rejected: bool = False
    skipped: bool = False


def execution_stats(outcomes: list[ExecutionOutcome]) -> dict[str, int]:
    return {
        "total": len(outcomes),
        "successful": sum(1 for o in outcomes if o.success),
        "failed": sum(1 for o in outcomes if not o.success and not o.rejected),
        "rejected": sum(1 for o in outcomes if o.rejected),
    }


class ExecutionRunner:
    """Drives the tool-call state machine for one call at a time."""

    def __init__(
        self,
        registry: ToolRegistry,
        gate: ApprovalGate,
        session: Session,
        config: ToolsConfig | None = None,
        max_result_chars: int | None = None,
        change_tracker: Callable[[FileChange], None] | None = None,
    ):
        self.registry = registry
        self.gate = gate
        self.session = session
        self.config = config or ToolsConfig()
        self.max_result_chars = max_result_chars
        self.change_tracker = change_tracker

    @staticmethod
    def _advance(tool_call: ToolCall, status: ToolStatus) -> bool:
        """Transition unless an abort already finalized the call."""
        if tool_call.is_terminal:
            return False
        tool_call.transition(status)
        return True

    def _finish(self, tool_call: ToolCall, success: bool, content: str, error: str | None = None) -> ExecutionOutcome:
        content = truncate_tool_result(content, tool_call.name, self.max_result_chars)
        self._advance(tool_call, ToolStatus.SUCCESS if success else ToolStatus.ERROR)
        tool_call.result = content
        tool_call.error = None if success else (error or content)
        return ExecutionOutcome(tool_call=tool_call, success=success, content=content)

    def skip(self, tool_call: ToolCall, message: str) -> ExecutionOutcome:
        """Finalize a call that will not run (abort, halted batch)."""
        self._advance(tool_call, ToolStatus.ERROR)
        tool_call.error = tool_call.error or message
        content = f"Error: {tool_call.error}"
        tool_call.result = content
        return ExecutionOutcome(tool_call=tool_call, success=False, content=content, skipped=True)

    def _validation_message(self, tool_call: ToolCall) -> str | None:
        """Correction text for the model, or None when the call is well formed."""
        if tool_call.has_parse_error:
            raw = str(tool_call.arguments.get(RAW_ARGS_KEY, ""))[:500]
            return (
                f"Error: Invalid JSON arguments for tool '{tool_call.name}'. "
                f"Raw arguments: {raw}\nPlease retry the call with a valid JSON object."
            )
        if not self.registry.has_tool(tool_call.name):
            available = ", ".join(sorted(self.registry.list_tools(self.session.mode))) or "none"
            return f"Error: Unknown tool '{tool_call.name}'. Available tools: {available}"
        tool = self.registry.get(tool_call.name)
        try:
            tool.validate_arguments(tool_call.public_arguments())
        except ValidationError as e:
            schema = json.dumps(tool.parameters, ensure_ascii=False)
            return (
                f"Error: Invalid arguments for '{tool_call.name}': {e.detail}\n"
                f"Expected parameters: {schema}\nPlease fix the arguments and retry."
            )
        return None

    def _is_file_modifying(self, tool_name: str) -> bool:
        return self.gate.approval_class(tool_name) in (ApprovalClass.EDITS, ApprovalClass.DANGEROUS)

    def _resolve_path(self, raw_path: str) -> Path:
        path = Path(raw_path).expanduser()
        if not path.is_absolute():
            path = self.registry.workspace_root / path
        return path

    @staticmethod
    def _read_snapshot(path: Path) -> str | None:
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8", errors="replace")

    async def run(
        self,
        tool_call: ToolCall,
        abort_event: asyncio.Event | None = None,
        interruptible: bool = True,
    ) -> ExecutionOutcome:
        """Execute one call end to end. Never raises for call-scoped failures.

        An abort skips a call that has not started. When ``interruptible`` is
        false a started call runs to completion or its own timeout; only its
        retries stop.
        """
        abort_event = abort_event or asyncio.Event()
        if abort_event.is_set():
            return self.skip(tool_call, SKIPPED_MESSAGE)

        correction = self._validation_message(tool_call)
        if correction is not None:
            log.warning("Tool call failed validation", tool=tool_call.name, call_id=tool_call.id)
            return self._finish(tool_call, False, correction, error=correction.removeprefix("Error: "))

        if self.gate.requires_approval(tool_call.name):
            self._advance(tool_call, ToolStatus.AWAITING_APPROVAL)
            approved = await self.gate.wait_for_decision(tool_call.name)
            if abort_event.is_set():
                return self.skip(tool_call, ABORTED_MESSAGE)
            if not approved:
                self._advance(tool_call, ToolStatus.REJECTED)
                tool_call.error = "Rejected by user"
                tool_call.result = REJECTED_MESSAGE
                log.info("Tool call rejected", tool=tool_call.name, call_id=tool_call.id)
                return ExecutionOutcome(tool_call=tool_call, success=False, content=REJECTED_MESSAGE, rejected=True)

        if not self._advance(tool_call, ToolStatus.RUNNING):
            return self.skip(tool_call, ABORTED_MESSAGE)

        arguments = tool_call.public_arguments()
        target = arguments.get("path") or arguments.get("file_path")
        snapshot_path: Path | None = None
        old_content: str | None = None
        if self._is_file_modifying(tool_call.name) and isinstance(target, str) and target:
            snapshot_path = self._resolve_path(target)
            old_content = await asyncio.to_thread(self._read_snapshot, snapshot_path)

        telemetry = ToolTelemetry(tool_call_id=tool_call.id, tool_name=tool_call.name, started_at=time.time())
        log.info("Executing tool", tool=tool_call.name, call_id=tool_call.id)
        result, attempts = await self._execute_with_retry(
            tool_call.name,
            arguments,
            abort_event,
            interrupt=abort_event if interruptible else None,
        )

        telemetry.duration_ms = int((time.time() - telemetry.started_at) * 1000)
        telemetry.success = result.success
        telemetry.attempts = attempts
        telemetry.result_preview = (result.content if result.success else result.error or "")[:500]
        telemetry.error = None if result.success else result.error
        self.session.telemetry.append(telemetry)
        log.info(
            "Tool finished",
            tool=tool_call.name,
            call_id=tool_call.id,
            success=result.success,
            attempts=attempts,
            duration_ms=telemetry.duration_ms,
        )

        if tool_call.is_terminal:
            # aborted while running
            return ExecutionOutcome(
                tool_call=tool_call,
                success=False,
                content=f"Error: {tool_call.error or ABORTED_MESSAGE}",
                skipped=True,
            )

        if result.success:
            if snapshot_path is not None:
                await self._record_file_change(tool_call, snapshot_path, old_content, result)
            elif tool_call.name == "read_file":
                path = get_tool_target_path(arguments)
                if path:
                    self.session.mark_file_read(path)
            return self._finish(tool_call, True, result.content)
        return self._finish(tool_call, False, f"Error: {result.error or 'Unknown error'}", error=result.error)

    async def _execute_with_retry(
        self,
        name: str,
        arguments: dict[str, Any],
        abort_event: asyncio.Event,
        interrupt: asyncio.Event | None = None,
    ) -> tuple[ToolResult, int]:
        max_attempts = max(1, self.config.max_attempts)
        last_error = ""
        attempt = 0
        for attempt in range(1, max_attempts + 1):
            try:
                result = await self.registry.execute(
                    name,
                    arguments,
                    timeout_seconds=self.config.timeout_seconds,
                    abort_event=interrupt,
                    session_id=self.session.id,
                )
                if result.success:
                    return result, attempt
                last_error = result.error or "Unknown error"
                retryable = is_retryable(last_error)
                failed = result
            except (ToolExecutionError, ValidationError, ToolNotFoundError) as e:
                last_error = getattr(e, "detail", str(e))
                retryable = is_retryable(e)
                failed = ToolResult(success=False, error=last_error)

            if attempt >= max_attempts or not retryable or abort_event.is_set():
                return failed, attempt

            delay = self.config.retry_delay_seconds * attempt
            log.info(
                "Retrying tool",
                tool=name,
                attempt=attempt,
                max_attempts=max_attempts,
                delay=delay,
                error=last_error,
            )
            try:
                await asyncio.wait_for(abort_event.wait(), timeout=delay)
                return failed, attempt
            except asyncio.TimeoutError:
                pass
        return ToolResult(success=False, error=last_error or "Tool execution failed"), attempt

    async def _record_file_change(
        self,
        tool_call: ToolCall,
        path: Path,
        old_content: str | None,
        result: ToolResult,
    ) -> None:
        meta = result.meta or {}
        new_content = meta.get("newContent", meta.get("new_content"))
        if new_content is None:
            new_content = await asyncio.to_thread(self._read_snapshot, path)

        if self.gate.approval_class(tool_call.name) == ApprovalClass.DANGEROUS and not path.exists():
            change_type = "delete"
            new_content = None
        elif old_content is None or meta.get("isNewFile"):
            change_type = "create"
        else:
            change_type = "modify"

        if "linesAdded" in meta or "linesRemoved" in meta:
            added = int(meta.get("linesAdded") or 0)
            removed = int(meta.get("linesRemoved") or 0)
        else:
            added, removed = _count_line_changes(old_content, new_content)

        change = FileChange(
            path=str(path),
            tool_call_id=tool_call.id,
            tool_name=tool_call.name,
            change_type=change_type,
            old_content=old_content,
            new_content=new_content,
            lines_added=added,
            lines_removed=removed,
        )
        self.session.file_changes.append(change)
        log.debug("Recorded file change", path=str(path), change_type=change_type, added=added, removed=removed)
        if self.change_tracker is not None:
            self.change_tracker(change)
