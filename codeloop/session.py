"""Explicitly owned per-conversation state."""

import os
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from codeloop.llm import Message, ToolCall, ToolStatus
from codeloop.logging import get_logger
from codeloop.tools.registry import WorkMode

log = get_logger(__name__)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def normalize_path(path: str) -> str:
    """Case- and slash-insensitive form of a path used for comparisons."""
    return str(path or "").replace("\\", "/").lower()


@dataclass
class ToolTelemetry:
    """Before/after record for one tool execution."""

    tool_call_id: str
    tool_name: str
    started_at: float
    duration_ms: int = 0
    success: bool = False
    attempts: int = 0
    result_preview: str = ""
    error: str | None = None


@dataclass
class FileChange:
    """Snapshot of a file mutation, consumed by an external undo/change tracker."""

    path: str
    tool_call_id: str
    tool_name: str
    change_type: str  # "create", "modify", "delete"
    old_content: str | None
    new_content: str | None
    lines_added: int = 0
    lines_removed: int = 0


@dataclass
class AssistantMessage:
    """Visible transcript entry for one assistant turn."""

    id: str = field(default_factory=lambda: f"assistant-{uuid.uuid4().hex[:12]}")
    content: str = ""
    parts: list[dict[str, Any]] = field(default_factory=list)
    tool_calls: dict[str, ToolCall] = field(default_factory=dict)
    usage: dict[str, int] = field(default_factory=dict)
    finalized: bool = False
    created_at: str = field(default_factory=_utcnow_iso)

    def append_text(self, text: str) -> None:
        if not text:
            return
        self.content += text
        if self.parts and self.parts[-1]["type"] == "text":
            self.parts[-1]["content"] += text
        else:
            self.parts.append({"type": "text", "content": text})

    def replace_text(self, content: str) -> None:
        """Swap visible text (e.g. after inline-tag blocks are stripped).

        Text parts covering the unchanged prefix stay where they are; the
        changed tail takes the place of the first text part it replaces, so
        reasoning and tool-call parts keep their order.
        """
        keep = len(os.path.commonprefix([self.content, content]))
        rest = content[keep:]
        anchor: dict[str, Any] | None = None
        placed = False
        offset = 0
        parts: list[dict[str, Any]] = []
        for part in self.parts:
            if part["type"] != "text":
                parts.append(part)
                continue
            start = offset
            offset += len(part["content"])
            if offset <= keep:
                parts.append(part)
            elif start < keep:
                part["content"] = part["content"][:keep - start]
                anchor = part
                parts.append(part)
            elif not placed:
                part["content"] = rest
                placed = True
                parts.append(part)

        if rest and not placed:
            if anchor is not None:
                anchor["content"] += rest
            elif parts and parts[-1]["type"] == "text":
                parts[-1]["content"] += rest
            else:
                parts.append({"type": "text", "content": rest})
        self.parts = [part for part in parts if part["type"] != "text" or part["content"]]
        self.content = content

    def add_reasoning_part(self) -> str:
        part_id = f"reasoning-{uuid.uuid4().hex[:8]}"
        self.parts.append({
            "type": "reasoning",
            "id": part_id,
            "content": "",
            "started_at": time.time(),
            "finished": False,
        })
        return part_id

    def _find_part(self, part_type: str, part_id: str) -> dict[str, Any] | None:
        for part in self.parts:
            if part["type"] == part_type and part.get("id") == part_id:
                return part
        return None

    def append_reasoning(self, part_id: str, text: str) -> None:
        part = self._find_part("reasoning", part_id)
        if part is not None:
            part["content"] += text

    def close_reasoning(self, part_id: str) -> bool:
        """Finish a reasoning segment; empty segments are dropped. Returns whether it was kept."""
        part = self._find_part("reasoning", part_id)
        if part is None:
            return False
        if not part["content"].strip():
            self.parts.remove(part)
            return False
        part["finished"] = True
        part["duration_ms"] = int((time.time() - part["started_at"]) * 1000)
        return True

    def add_tool_call(self, tool_call: ToolCall, streaming: bool = False) -> None:
        """Register a tool-call part once per id."""
        if tool_call.id in self.tool_calls:
            return
        self.tool_calls[tool_call.id] = tool_call
        self.parts.append({"type": "tool_call", "id": tool_call.id, "streaming": streaming})

    def update_tool_call(
        self,
        tool_call_id: str,
        *,
        name: str | None = None,
        arguments: dict[str, Any] | None = None,
        streaming: bool | None = None,
    ) -> None:
        tool_call = self.tool_calls.get(tool_call_id)
        if tool_call is None:
            return
        if name:
            tool_call.name = name
        if arguments is not None:
            tool_call.arguments = arguments
        if streaming is not None:
            part = self._find_part("tool_call", tool_call_id)
            if part is not None:
                part["streaming"] = streaming

    def remove_tool_call(self, tool_call_id: str) -> None:
        self.tool_calls.pop(tool_call_id, None)
        self.parts = [
            part for part in self.parts
            if not (part["type"] == "tool_call" and part.get("id") == tool_call_id)
        ]

    def open_tool_calls(self) -> list[ToolCall]:
        return [tc for tc in self.tool_calls.values() if not tc.is_terminal]


@dataclass
class Session:
    """A conversation and everything the loop mutates while driving it."""

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    mode: WorkMode = WorkMode.AGENT
    messages: list[Message] = field(default_factory=list)
    transcript: list[AssistantMessage] = field(default_factory=list)
    auto_approve: dict[str, bool] = field(default_factory=dict)
    context_summary: str | None = None
    telemetry: list[ToolTelemetry] = field(default_factory=list)
    file_changes: list[FileChange] = field(default_factory=list)
    read_files: set[str] = field(default_factory=set)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    metadata: dict[str, Any] = field(default_factory=dict)

    def add_message(
        self,
        role: str,
        content: str | None,
        tool_calls: list[ToolCall] | None = None,
        tool_call_id: str | None = None,
        tool_name: str | None = None,
    ) -> Message:
        """Append a provider-history message in chronological order."""
        message = Message(
            role=role,
            content=content,
            tool_calls=list(tool_calls or []),
            tool_call_id=tool_call_id,
            tool_name=tool_name,
        )
        self.messages.append(message)
        self.updated_at = _utcnow_iso()
        return message

    def add_assistant_message(self) -> AssistantMessage:
        message = AssistantMessage()
        self.transcript.append(message)
        return message

    def get_assistant_message(self, message_id: str | None) -> AssistantMessage | None:
        if not message_id:
            return None
        for message in reversed(self.transcript):
            if message.id == message_id:
                return message
        return None

    def mark_file_read(self, path: str) -> None:
        self.read_files.add(normalize_path(path))

    def has_read_file(self, path: str) -> bool:
        return normalize_path(path) in self.read_files

    def set_auto_approve(self, approval_class: str, enabled: bool = True) -> None:
        self.auto_approve[approval_class] = enabled
        log.info("Auto-approve updated", approval_class=approval_class, enabled=enabled)

    def fail_open_tool_calls(self, message_id: str | None, reason: str) -> int:
        """Move every non-terminal call of a transcript message to ``error``."""
        message = self.get_assistant_message(message_id)
        if message is None:
            return 0
        failed = 0
        for tool_call in message.open_tool_calls():
            if tool_call.can_transition(ToolStatus.ERROR):
                tool_call.transition(ToolStatus.ERROR)
                tool_call.error = reason
                failed += 1
        return failed
