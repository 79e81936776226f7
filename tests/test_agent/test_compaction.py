import asyncio

import pytest

from codeloop.compaction import (
    TOOL_OUTPUT_PLACEHOLDER,
    ContextCompactor,
    compress_stale_output,
    provider_summarizer,
)
from codeloop.config import CompactionConfig
from codeloop.exceptions import LLMAPIError
from codeloop.llm import LLMProvider, LLMResponse, Message, StreamDone, ToolCall


class FailingProvider(LLMProvider):
    async def stream(self, messages, tools=None, temperature=None, max_tokens=None):
        yield StreamDone()

    async def complete(self, messages, tools=None, temperature=None, max_tokens=None):
        raise LLMAPIError("overloaded", status_code=503)


class SummaryProvider(LLMProvider):
    def __init__(self):
        self.calls = []

    async def stream(self, messages, tools=None, temperature=None, max_tokens=None):
        yield StreamDone()

    async def complete(self, messages, tools=None, temperature=None, max_tokens=None):
        self.calls.append({"messages": messages, "tools": tools, "max_tokens": max_tokens})
        return LLMResponse(content="  short summary  ")


class GatedSummarizer:
    """Summarizer that blocks until released so in-flight behaviour is observable."""

    def __init__(self, summary: str = "summary of earlier work"):
        self.summary = summary
        self.prompts: list[str] = []
        self.release = asyncio.Event()

    async def __call__(self, prompt: str) -> str | None:
        self.prompts.append(prompt)
        await self.release.wait()
        return self.summary


def history(pairs: int) -> list[Message]:
    messages = []
    for i in range(pairs):
        messages.append(Message(role="user", content=f"question {i}"))
        messages.append(Message(role="assistant", content=f"answer {i}"))
    return messages


def make_compactor(summarizer, **overrides) -> ContextCompactor:
    config = CompactionConfig(message_threshold=10, keep_recent_messages=4, **overrides)
    return ContextCompactor(summarizer, config=config, max_history_messages=6)


@pytest.mark.asyncio
async def test_only_one_compaction_runs_at_a_time():
    summarizer = GatedSummarizer()
    compactor = make_compactor(summarizer)
    messages = history(10)

    first = compactor.request_compaction(messages)
    second = compactor.request_compaction(messages)
    assert first is second
    assert compactor.is_compacting

    summarizer.release.set()
    assert await first == "summary of earlier work"
    assert len(summarizer.prompts) == 1
    assert not compactor.is_compacting


@pytest.mark.asyncio
async def test_close_cancels_in_flight_compaction():
    summarizer = GatedSummarizer()
    compactor = make_compactor(summarizer)

    task = compactor.request_compaction(history(10))
    await asyncio.sleep(0)
    assert summarizer.prompts

    await compactor.close()

    assert task.cancelled()
    assert not compactor.is_compacting
    assert compactor.summary is None
    await compactor.close()


@pytest.mark.asyncio
async def test_build_request_truncates_while_first_summary_is_pending():
    summarizer = GatedSummarizer()
    compactor = make_compactor(summarizer)
    messages = history(10)

    request = compactor.build_request_messages("You are helpful.", messages)
    again = compactor.build_request_messages("You are helpful.", messages)

    assert request[0].role == "system"
    assert request[0].content == "You are helpful."
    assert [m.content for m in request[1:]] == [m.content for m in messages[-6:]]
    assert len(again) == 7
    task = compactor._in_flight
    assert task is not None

    summarizer.release.set()
    await task
    assert len(summarizer.prompts) == 1

    with_summary = compactor.build_request_messages("You are helpful.", messages)
    assert "summary of earlier work" in with_summary[0].content
    assert [m.content for m in with_summary[1:]] == [m.content for m in messages[-4:]]
    assert not compactor.is_compacting


@pytest.mark.asyncio
async def test_compaction_is_incremental():
    summarizer = GatedSummarizer()
    summarizer.release.set()
    compactor = make_compactor(summarizer)
    messages = history(8)

    await compactor.compact(messages)
    first_count = compactor.compacted_message_count
    assert first_count == 12

    messages.extend(history(2))
    await compactor.compact(messages)

    second_prompt = summarizer.prompts[-1]
    assert "summary of earlier work" in second_prompt
    assert "question 6" in second_prompt
    assert "question 0" not in second_prompt
    assert compactor.compacted_message_count == 16


@pytest.mark.asyncio
async def test_summary_is_capped():
    summarizer = GatedSummarizer(summary="x" * 500)
    summarizer.release.set()
    compactor = make_compactor(summarizer, max_summary_chars=100)

    summary = await compactor.compact(history(10))

    assert summary == "x" * 100 + "..."


@pytest.mark.asyncio
async def test_failed_summary_leaves_state_untouched():
    compactor = make_compactor(provider_summarizer(FailingProvider()))

    assert await compactor.compact(history(10)) is None
    assert compactor.summary is None
    assert compactor.compacted_message_ids == set()


@pytest.mark.asyncio
async def test_provider_summarizer_makes_reduced_call():
    provider = SummaryProvider()
    summarize = provider_summarizer(provider, max_tokens=123)

    assert await summarize("summarize this") == "short summary"
    [call] = provider.calls
    assert call["tools"] is None
    assert call["max_tokens"] == 123
    assert call["messages"][-1].content == "summarize this"


def test_split_keeps_tool_results_with_their_call():
    compactor = make_compactor(None)
    messages = [
        Message(role="user", content="u1"),
        Message(role="assistant", content=None, tool_calls=[ToolCall(id="c1", name="read_file")]),
        Message(role="tool", content="out", tool_call_id="c1"),
        Message(role="assistant", content="done"),
        Message(role="user", content="u2"),
        Message(role="assistant", content="a2"),
    ]
    compactor.config.keep_recent_messages = 4

    old, recent = compactor.split_for_compaction(messages)

    assert [m.content for m in old] == ["u1"]
    assert recent[0].role == "assistant"


def test_build_request_drops_leading_orphan_tool_messages():
    compactor = make_compactor(None)
    compactor.max_history_messages = 3
    messages = [
        Message(role="user", content="u"),
        Message(role="assistant", content=None, tool_calls=[ToolCall(id="c1", name="read_file")]),
        Message(role="tool", content="out", tool_call_id="c1"),
        Message(role="assistant", content="done"),
        Message(role="user", content="next"),
    ]

    request = compactor.build_request_messages("sys", messages)

    assert [m.role for m in request] == ["system", "assistant", "user"]


def test_compress_stale_output_is_non_destructive():
    messages = [
        Message(role="user", content="u1"),
        Message(role="tool", content="huge output", tool_call_id="c1"),
        Message(role="assistant", content="y" * 1000),
        Message(role="user", content="u2"),
        Message(role="user", content="u3"),
        Message(role="tool", content="fresh output", tool_call_id="c2"),
        Message(role="user", content="u4"),
    ]

    compressed = compress_stale_output(messages)

    assert compressed[1].content == TOOL_OUTPUT_PLACEHOLDER
    assert "[Content truncated]" in compressed[2].content
    assert compressed[5].content == "fresh output"
    assert messages[1].content == "huge output"
    assert compressed[1].id == messages[1].id
