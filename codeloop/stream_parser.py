"""Decode provider stream events into per-turn stream state.

The parser consumes the typed events produced by a provider adapter and
mutates a :class:`StreamState`. Besides native tool-call events it watches
plain text for the legacy inline-tag dialect::

    <function=read_file>
    <parameter=path>src/app.py</parameter>
    </function>

Completed blocks are promoted to regular :class:`ToolCall` objects. Their ids
are derived from the tag name and buffer offset so repeated scans of the same
buffer never emit a call twice.
"""

import json
import re
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from codeloop.exceptions import ProtocolError
from codeloop.llm import (
    PARSE_ERROR_KEY,
    RAW_ARGS_KEY,
    ReasoningDelta,
    StreamDone,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolCall,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallFull,
    ToolCallStart,
)
from codeloop.logging import get_logger
from codeloop.partial_json import parse_partial_json
from codeloop.session import AssistantMessage

log = get_logger(__name__)

INLINE_OPEN_RE = re.compile(r"<function[=\s]+[\"']?([^\"'>\s]+)[\"']?\s*>", re.IGNORECASE)
INLINE_CLOSE_RE = re.compile(r"</function>", re.IGNORECASE)
INLINE_PARAM_RE = re.compile(
    r"<parameter[=\s]+[\"']?([^\"'>\s]+)[\"']?\s*>([\s\S]*?)(?:</parameter>|$)",
    re.IGNORECASE,
)

UNKNOWN_TOOL_NAME = "unknown"


def inline_call_id(name: str, offset: int, prefix: str) -> str:
    """Id for an inline-tag call opened at ``offset`` of one model call's buffer.

    Offsets restart with every model call, so ``prefix`` must be unique per call.
    """
    return f"inline-{prefix}-{name}-{offset}"


def parse_inline_parameters(body: str) -> dict[str, Any]:
    """Extract ``<parameter=...>`` values; JSON-looking values are decoded."""
    args: dict[str, Any] = {}
    for match in INLINE_PARAM_RE.finditer(body):
        value: Any = match.group(2).strip()
        if value.startswith(("{", "[")):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                parsed = parse_partial_json(value)
                if parsed:
                    value = parsed
        args[match.group(1)] = value
    return args


@dataclass
class InlineBlock:
    """One inline-tag block located in a text buffer."""

    name: str
    start: int
    end: int
    body: str
    closed: bool


def find_inline_blocks(text: str, start: int = 0) -> list[InlineBlock]:
    """Locate inline-tag blocks from ``start``.

    A block opened and then superseded by another open marker before any
    close marker is abandoned and not returned. At most the final block is
    unclosed.
    """
    blocks: list[InlineBlock] = []
    pos = start
    while True:
        opened = INLINE_OPEN_RE.search(text, pos)
        if opened is None:
            return blocks
        closed = INLINE_CLOSE_RE.search(text, opened.end())
        next_open = INLINE_OPEN_RE.search(text, opened.end())
        if closed is not None and (next_open is None or closed.start() < next_open.start()):
            blocks.append(InlineBlock(
                name=opened.group(1),
                start=opened.start(),
                end=closed.end(),
                body=text[opened.end():closed.start()],
                closed=True,
            ))
            pos = closed.end()
            continue
        if next_open is not None:
            pos = next_open.start()
            continue
        blocks.append(InlineBlock(
            name=opened.group(1),
            start=opened.start(),
            end=len(text),
            body=text[opened.end():],
            closed=False,
        ))
        return blocks


def strip_inline_blocks(text: str) -> str:
    """Remove completed inline-tag blocks from visible text."""
    pieces: list[str] = []
    cursor = 0
    for block in find_inline_blocks(text):
        if not block.closed:
            continue
        pieces.append(text[cursor:block.start])
        cursor = block.end
    if not pieces:
        return text
    pieces.append(text[cursor:])
    return re.sub(r"\n{3,}", "\n\n", "".join(pieces)).strip()


@dataclass
class PendingToolCall:
    """Tool call whose arguments are still streaming in."""

    tool_call: ToolCall
    args_text: str = ""


@dataclass
class StreamState:
    """Per-model-call accumulator."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    current_tool_call: PendingToolCall | None = None
    is_reasoning: bool = False
    reasoning_part_id: str | None = None
    active_inline_calls: set[str] = field(default_factory=set)
    completed_inline_calls: set[str] = field(default_factory=set)
    scan_cursor: int = 0
    usage: dict[str, int] = field(default_factory=dict)
    finished: bool = False
    error: str | None = None
    error_status: int | None = None

    def has_tool_call(self, tool_call_id: str) -> bool:
        return any(tc.id == tool_call_id for tc in self.tool_calls)


@dataclass
class StreamResult:
    """What a completed model call produced."""

    content: str
    tool_calls: list[ToolCall]
    usage: dict[str, int] = field(default_factory=dict)
    error: str | None = None
    error_status: int | None = None


class StreamParser:
    """Apply stream events to a :class:`StreamState` and the visible transcript."""

    def __init__(
        self,
        state: StreamState | None = None,
        transcript: AssistantMessage | None = None,
        is_allowed_tool: Callable[[str], bool] | None = None,
        on_text: Callable[[str], None] | None = None,
        inline_prefix: str | None = None,
    ):
        self.state = state or StreamState()
        self.inline_prefix = inline_prefix or uuid.uuid4().hex[:8]
        self.transcript = transcript
        self._is_allowed_tool = is_allowed_tool or (lambda name: True)
        self._on_text = on_text
        # text streamed by earlier model calls of the same turn precedes ours
        self._transcript_offset = len(transcript.content) if transcript is not None else 0

    # -- dispatch -------------------------------------------------------

    def feed(self, event: StreamEvent) -> None:
        """Apply one provider event.

        Raises:
            ProtocolError: event after the terminal event, or an unknown event type
        """
        if self.state.finished:
            raise ProtocolError(f"Received {type(event).__name__} after stream termination")

        if self.state.is_reasoning and not isinstance(event, ReasoningDelta):
            self.close_reasoning()

        if isinstance(event, TextDelta):
            self._on_text_delta(event)
        elif isinstance(event, ReasoningDelta):
            self._on_reasoning_delta(event)
        elif isinstance(event, ToolCallStart):
            self._on_tool_call_start(event)
        elif isinstance(event, ToolCallDelta):
            self._on_tool_call_delta(event)
        elif isinstance(event, ToolCallEnd):
            self._on_tool_call_end(event)
        elif isinstance(event, ToolCallFull):
            self._on_full_tool_call(event)
        elif isinstance(event, StreamDone):
            self._on_done(event)
        elif isinstance(event, StreamError):
            self._on_error(event)
        else:
            raise ProtocolError(f"Unknown stream event type: {type(event).__name__}")

    def finish(self) -> StreamResult:
        """Return the call's result once the provider iterator is exhausted.

        Raises:
            ProtocolError: the stream ended without ``done`` or ``error``
        """
        if not self.state.finished:
            self.close_reasoning()
            raise ProtocolError("Provider stream ended without a done or error event")
        return StreamResult(
            content=self.state.content,
            tool_calls=list(self.state.tool_calls),
            usage=dict(self.state.usage),
            error=self.state.error,
            error_status=self.state.error_status,
        )

    def is_valid_tool_name(self, name: str) -> bool:
        return bool(name) and self._is_allowed_tool(name)

    def inline_call_id(self, block: InlineBlock) -> str:
        return inline_call_id(block.name, block.start, self.inline_prefix)

    # -- text / reasoning ----------------------------------------------

    def _on_text_delta(self, event: TextDelta) -> None:
        if not event.content:
            return
        self.state.content += event.content
        if self.transcript is not None:
            self.transcript.append_text(event.content)
        if self._on_text is not None:
            self._on_text(event.content)
        self.scan_inline_tool_calls()

    def _on_reasoning_delta(self, event: ReasoningDelta) -> None:
        if not event.content:
            return
        if not self.state.is_reasoning:
            if not event.content.strip():
                return
            self.state.is_reasoning = True
            self.state.reasoning_part_id = (
                self.transcript.add_reasoning_part() if self.transcript is not None else None
            )
        if self.transcript is not None and self.state.reasoning_part_id:
            self.transcript.append_reasoning(self.state.reasoning_part_id, event.content)

    def close_reasoning(self) -> None:
        """Close the open reasoning segment, discarding it when empty."""
        if not self.state.is_reasoning:
            return
        if self.transcript is not None and self.state.reasoning_part_id:
            self.transcript.close_reasoning(self.state.reasoning_part_id)
        self.state.is_reasoning = False
        self.state.reasoning_part_id = None

    # -- streamed tool calls -------------------------------------------

    def _on_tool_call_start(self, event: ToolCallStart) -> None:
        if self.state.current_tool_call is not None:
            # providers that omit tool_call_end start the next call directly
            self._complete_current_tool_call()

        tool_id = event.id or f"tool_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"
        name = event.name or UNKNOWN_TOOL_NAME
        if name != UNKNOWN_TOOL_NAME and not self.is_valid_tool_name(name):
            log.warning("Dropping tool call with invalid name", tool=name, call_id=tool_id)
            return

        tool_call = ToolCall(id=tool_id, name=name, arguments={})
        self.state.current_tool_call = PendingToolCall(tool_call=tool_call)
        log.debug("Tool call start", tool=name, call_id=tool_id)
        if self.transcript is not None:
            self.transcript.add_tool_call(tool_call, streaming=True)

    def _on_tool_call_delta(self, event: ToolCallDelta) -> None:
        pending = self.state.current_tool_call
        if pending is None:
            return
        if event.id and event.id != pending.tool_call.id:
            log.debug("Ignoring delta for unknown tool call", call_id=event.id)
            return
        if event.name and self.is_valid_tool_name(event.name):
            pending.tool_call.name = event.name
        if event.arguments:
            pending.args_text += event.arguments
            if self.transcript is not None:
                self.transcript.update_tool_call(
                    pending.tool_call.id,
                    arguments=parse_partial_json(pending.args_text),
                )

    def _on_tool_call_end(self, event: ToolCallEnd) -> None:
        pending = self.state.current_tool_call
        if pending is None:
            return
        if event.id and event.id != pending.tool_call.id:
            log.debug("Ignoring end for unknown tool call", call_id=event.id)
            return
        self._complete_current_tool_call()

    def _complete_current_tool_call(self) -> None:
        pending = self.state.current_tool_call
        self.state.current_tool_call = None
        if pending is None:
            return
        tool_call = pending.tool_call
        if not self.is_valid_tool_name(tool_call.name):
            log.warning("Dropping tool call with invalid name", tool=tool_call.name, call_id=tool_call.id)
            if self.transcript is not None:
                self.transcript.remove_tool_call(tool_call.id)
            return

        raw = pending.args_text
        try:
            arguments = json.loads(raw or "{}")
            if not isinstance(arguments, dict):
                raise ValueError(f"expected a JSON object, got {type(arguments).__name__}")
        except (json.JSONDecodeError, ValueError) as e:
            log.error("Failed to parse tool arguments", tool=tool_call.name, call_id=tool_call.id, error=str(e))
            arguments = {
                PARSE_ERROR_KEY: True,
                RAW_ARGS_KEY: raw,
                "_parse_error_message": str(e),
            }

        tool_call.arguments = arguments
        self.state.tool_calls.append(tool_call)
        if self.transcript is not None:
            self.transcript.update_tool_call(tool_call.id, arguments=arguments, streaming=False)
        log.debug("Tool call end", tool=tool_call.name, call_id=tool_call.id, args_chars=len(raw))

    def _on_full_tool_call(self, event: ToolCallFull) -> None:
        self.add_tool_call(event.tool_call)

    def add_tool_call(self, tool_call: ToolCall) -> bool:
        """Accept a complete call (non-streaming path). Returns whether it was added."""
        if not self.is_valid_tool_name(tool_call.name):
            log.warning("Dropping tool call with invalid name", tool=tool_call.name, call_id=tool_call.id)
            return False
        if self.state.has_tool_call(tool_call.id):
            return False
        self.state.tool_calls.append(tool_call)
        if self.transcript is not None:
            self.transcript.add_tool_call(tool_call)
        return True

    # -- inline-tag dialect ----------------------------------------------

    def scan_inline_tool_calls(self) -> list[ToolCall]:
        """Scan the text buffer for inline-tag calls, resuming at the scan cursor.

        Returns the calls completed by this scan. Already completed ids are
        never emitted again, so rescanning an unchanged buffer is a no-op.
        """
        text = self.state.content
        emitted: list[ToolCall] = []
        blocks = find_inline_blocks(text, self.state.scan_cursor)
        cursor = self.state.scan_cursor

        for block in blocks:
            call_id = self.inline_call_id(block)
            if not self.is_valid_tool_name(block.name):
                cursor = block.end if block.closed else block.start
                continue
            args = parse_inline_parameters(block.body)

            if not block.closed:
                if call_id not in self.state.active_inline_calls:
                    self.state.active_inline_calls.add(call_id)
                    if self.transcript is not None:
                        self.transcript.add_tool_call(
                            ToolCall(id=call_id, name=block.name, arguments=args),
                            streaming=True,
                        )
                elif self.transcript is not None:
                    self.transcript.update_tool_call(call_id, arguments=args)
                cursor = block.start
                break

            cursor = block.end
            if call_id in self.state.completed_inline_calls or self.state.has_tool_call(call_id):
                continue
            self.state.completed_inline_calls.add(call_id)
            self.state.active_inline_calls.discard(call_id)

            tool_call = None
            if self.transcript is not None:
                tool_call = self.transcript.tool_calls.get(call_id)
            if tool_call is not None and tool_call.is_terminal:
                log.warning("Inline tool call id already finished", tool=block.name, call_id=call_id)
                continue
            if tool_call is None:
                tool_call = ToolCall(id=call_id, name=block.name, arguments=args)
                if self.transcript is not None:
                    self.transcript.add_tool_call(tool_call)
            tool_call.arguments = args
            if self.transcript is not None:
                self.transcript.update_tool_call(call_id, streaming=False)
            self.state.tool_calls.append(tool_call)
            emitted.append(tool_call)
            log.debug("Inline tool call completed", tool=block.name, call_id=call_id)
        else:
            # keep a possibly split open marker inside the next scan window
            tail = text.rfind("<", cursor)
            cursor = tail if tail != -1 else len(text)

        self.state.scan_cursor = max(self.state.scan_cursor, cursor)
        return emitted

    def _merge_inline_tool_calls(self) -> None:
        """Full-buffer pass at stream end: capture any block the incremental scan missed."""
        seen = {
            (tc.name, json.dumps(tc.public_arguments(), sort_keys=True, default=str))
            for tc in self.state.tool_calls
        }
        for block in find_inline_blocks(self.state.content):
            call_id = self.inline_call_id(block)
            if not block.closed or not self.is_valid_tool_name(block.name):
                continue
            args = parse_inline_parameters(block.body)
            signature = (block.name, json.dumps(args, sort_keys=True, default=str))
            if signature in seen or self.state.has_tool_call(call_id):
                continue
            seen.add(signature)
            self.state.completed_inline_calls.add(call_id)
            tool_call = ToolCall(id=call_id, name=block.name, arguments=args)
            self.state.tool_calls.append(tool_call)
            if self.transcript is not None:
                self.transcript.add_tool_call(tool_call)

        # previews of blocks that never closed are not calls
        if self.transcript is not None:
            for call_id in self.state.active_inline_calls - self.state.completed_inline_calls:
                self.transcript.remove_tool_call(call_id)
        self.state.active_inline_calls.clear()

    # -- termination -----------------------------------------------------

    def _on_done(self, event: StreamDone) -> None:
        self.close_reasoning()
        if self.state.current_tool_call is not None:
            self._complete_current_tool_call()

        for tool_call in event.tool_calls:
            self.add_tool_call(tool_call)

        if not self.state.content and event.content:
            self.state.content = event.content
            if self.transcript is not None:
                self.transcript.append_text(event.content)

        if self.state.content:
            self._merge_inline_tool_calls()
            visible = strip_inline_blocks(self.state.content)
            if visible != self.state.content:
                self.state.content = visible
                if self.transcript is not None:
                    self.transcript.replace_text(self.transcript.content[:self._transcript_offset] + visible)

        self.state.usage = dict(event.usage or {})
        if self.transcript is not None and self.state.usage:
            self.transcript.usage = dict(self.state.usage)
        self.state.finished = True

    def _on_error(self, event: StreamError) -> None:
        self.close_reasoning()
        self.state.current_tool_call = None
        self.state.error = event.message or "Unknown provider error"
        self.state.error_status = event.status_code
        self.state.finished = True
