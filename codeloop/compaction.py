"""Context compaction: summarize old history, truncate and compress the rest."""

import asyncio
import dataclasses
import time
from collections.abc import Awaitable, Callable

from codeloop.config import CompactionConfig
from codeloop.exceptions import LLMError
from codeloop.llm import LLMProvider, Message
from codeloop.logging import get_logger

log = get_logger(__name__)

Summarizer = Callable[[str], Awaitable[str | None]]

SUMMARY_SYSTEM_PROMPT = (
    "You are a helpful assistant that summarizes conversations concisely. "
    "Output only the summary, no extra text."
)
TOOL_OUTPUT_PLACEHOLDER = "[Tool output removed to save context]"
CONTENT_TRUNCATED_MARKER = "\n...[Content truncated]...\n"
STALE_AFTER_USER_TURNS = 3
STALE_TEXT_KEEP = 200


def provider_summarizer(
    provider: LLMProvider,
    max_tokens: int = 1000,
    temperature: float = 0.3,
) -> Summarizer:
    """Build a summarizer backed by a reduced, tool-less provider call."""

    async def summarize(prompt: str) -> str | None:
        try:
            response = await provider.complete(
                [Message(role="system", content=SUMMARY_SYSTEM_PROMPT), Message(role="user", content=prompt)],
                tools=None,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except LLMError as e:
            log.warning("Summarization call failed", error=str(e))
            return None
        return (response.content or "").strip() or None

    return summarize


def _render_message(message: Message) -> str:
    if message.role == "tool":
        return f"[tool:{message.tool_name or 'unknown'}] {(message.content or '')[:1500]}"
    text = message.content or ""
    if message.tool_calls:
        names = ", ".join(tc.name for tc in message.tool_calls)
        text = f"{text}\n(called tools: {names})".strip()
    return f"[{message.role}] {text}"


def build_compaction_prompt(messages: list[Message], previous_summary: str | None = None) -> str:
    lines = ["Summarize the following conversation between a user and a coding assistant."]
    lines.append(
        "Keep: the user's goals, decisions made, files touched and why, "
        "errors encountered, and what remains to be done."
    )
    if previous_summary:
        lines.append("")
        lines.append("Existing summary of earlier conversation (merge new information into it):")
        lines.append(previous_summary)
    lines.append("")
    lines.append("New messages:")
    lines.extend(_render_message(message) for message in messages)
    return "\n".join(lines)


def _drop_orphan_tool_messages(messages: list[Message]) -> list[Message]:
    """A tool result is only valid after the assistant message that requested it."""
    start = 0
    while start < len(messages) and messages[start].role == "tool":
        start += 1
    return messages[start:]


def message_chars(messages: list[Message]) -> int:
    total = 0
    for message in messages:
        total += len(message.content or "")
        for tool_call in message.tool_calls:
            total += len(tool_call.name) + len(str(tool_call.arguments))
    return total


def compress_stale_output(messages: list[Message]) -> list[Message]:
    """Shrink tool outputs and long assistant texts older than the last few user turns.

    Returns new message objects; the input list is not modified.
    """
    user_indices = [i for i, message in enumerate(messages) if message.role == "user"]
    if len(user_indices) < STALE_AFTER_USER_TURNS:
        return list(messages)
    cutoff = user_indices[-STALE_AFTER_USER_TURNS]

    result: list[Message] = []
    for index, message in enumerate(messages):
        if index >= cutoff:
            result.append(message)
        elif message.role == "tool" and message.content != TOOL_OUTPUT_PLACEHOLDER:
            result.append(dataclasses.replace(message, content=TOOL_OUTPUT_PLACEHOLDER))
        elif message.role == "assistant" and len(message.content or "") > STALE_TEXT_KEEP * 2 + 100:
            text = message.content or ""
            result.append(dataclasses.replace(
                message,
                content=text[:STALE_TEXT_KEEP] + CONTENT_TRUNCATED_MARKER + text[-STALE_TEXT_KEEP:],
            ))
        else:
            result.append(message)
    return result


class ContextCompactor:
    """Owns the rolling summary and the single in-flight summarization task."""

    def __init__(
        self,
        summarizer: Summarizer | None = None,
        config: CompactionConfig | None = None,
        max_history_messages: int = 50,
    ):
        self.summarizer = summarizer
        self.config = config or CompactionConfig()
        self.max_history_messages = max_history_messages
        self.summary: str | None = None
        self.compacted_message_ids: set[str] = set()
        self.compacted_message_count = 0
        self.last_compacted_at: float | None = None
        self._in_flight: asyncio.Task[str | None] | None = None

    @property
    def is_compacting(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def should_compact(self, messages: list[Message]) -> bool:
        history = [m for m in messages if m.role != "system"]
        return (
            len(history) > self.config.message_threshold
            or message_chars(history) > self.config.char_threshold
        )

    def split_for_compaction(self, messages: list[Message]) -> tuple[list[Message], list[Message]]:
        """Split history into (to summarize, recent to keep verbatim)."""
        history = [m for m in messages if m.role != "system"]
        keep = max(0, self.config.keep_recent_messages)
        if len(history) <= keep:
            return [], history
        boundary = len(history) - keep
        # keep tool results attached to the assistant call that produced them
        while boundary > 0 and history[boundary].role == "tool":
            boundary -= 1
        return history[:boundary], history[boundary:]

    def request_compaction(self, messages: list[Message]) -> asyncio.Task[str | None]:
        """Start a background compaction, or return the one already running."""
        if self._in_flight is not None and not self._in_flight.done():
            return self._in_flight
        task = asyncio.create_task(self._do_compaction(list(messages)))
        self._in_flight = task
        task.add_done_callback(self._on_compaction_done)
        return task

    def _on_compaction_done(self, task: asyncio.Task[str | None]) -> None:
        if self._in_flight is task:
            self._in_flight = None
        if not task.cancelled() and task.exception() is not None:
            log.error("Compaction task failed", error=str(task.exception()))

    async def close(self) -> None:
        """Cancel a background summarization that is still running."""
        task = self._in_flight
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        log.info("Cancelled in-flight compaction")

    async def compact(self, messages: list[Message]) -> str | None:
        """Summarize older history. ``None`` means compaction was skipped this cycle."""
        return await asyncio.shield(self.request_compaction(messages))

    async def _do_compaction(self, messages: list[Message]) -> str | None:
        to_compact, _ = self.split_for_compaction(messages)
        if not to_compact:
            return self.summary

        new_messages = [m for m in to_compact if m.id not in self.compacted_message_ids]
        if not new_messages and self.summary:
            log.info("No new messages to compact, reusing summary")
            return self.summary
        if self.summarizer is None:
            log.debug("No summarizer configured, skipping compaction")
            return None

        log.info("Compacting context", new_messages=len(new_messages), total=len(to_compact))
        prompt = build_compaction_prompt(new_messages, self.summary)
        summary = await self.summarizer(prompt)
        if not summary:
            log.warning("Compaction skipped: summarizer returned nothing")
            return None

        limit = self.config.max_summary_chars
        if len(summary) > limit:
            summary = summary[:limit] + "..."

        self.summary = summary
        self.last_compacted_at = time.time()
        self.compacted_message_count += len(new_messages)
        self.compacted_message_ids.update(m.id for m in to_compact)
        log.info("Compaction complete", summary_chars=len(summary), compacted=self.compacted_message_count)
        return summary

    def clear(self) -> None:
        self.summary = None
        self.compacted_message_ids.clear()
        self.compacted_message_count = 0
        self.last_compacted_at = None

    def build_request_messages(self, system_prompt: str, messages: list[Message]) -> list[Message]:
        """Assemble the provider request from the full history.

        When compaction is due and a summary exists, the summary replaces the
        older history. Without a summary a background compaction is started
        and the history is truncated instead.
        """
        history = [m for m in messages if m.role != "system"]
        system_content = system_prompt

        if self.should_compact(history):
            if self.summary:
                to_compact, recent = self.split_for_compaction(history)
                if any(m.id not in self.compacted_message_ids for m in to_compact):
                    self.request_compaction(history)
                system_content = f"{system_prompt}\n\n## Summary of earlier conversation\n{self.summary}"
                history = recent
            else:
                self.request_compaction(history)
                history = history[-self.max_history_messages:]
        else:
            history = history[-self.max_history_messages:]

        history = _drop_orphan_tool_messages(history)
        if message_chars(history) > self.config.char_threshold:
            history = compress_stale_output(history)

        return [Message(role="system", content=system_content), *history]
