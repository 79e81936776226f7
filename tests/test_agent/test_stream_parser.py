import json

import pytest

from codeloop.exceptions import ProtocolError
from codeloop.llm import (
    ReasoningDelta,
    StreamDone,
    StreamError,
    TextDelta,
    ToolCall,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallFull,
    ToolCallStart,
    ToolStatus,
)
from codeloop.session import AssistantMessage
from codeloop.stream_parser import (
    StreamParser,
    find_inline_blocks,
    inline_call_id,
    strip_inline_blocks,
)

ALLOWED = {"read_file", "write_file", "run_command"}


def make_parser(transcript: AssistantMessage | None = None) -> StreamParser:
    return StreamParser(transcript=transcript, is_allowed_tool=lambda name: name in ALLOWED)


def feed_all(parser: StreamParser, events) -> None:
    for event in events:
        parser.feed(event)


def test_streamed_tool_call_arguments_round_trip():
    parser = make_parser()
    arguments = {"path": "src/app.py", "content": "print('hi')\n", "lines": [1, 2]}
    text = json.dumps(arguments)

    feed_all(parser, [ToolCallStart(id="call_1", name="write_file")])
    for i in range(0, len(text), 7):
        parser.feed(ToolCallDelta(arguments=text[i:i + 7]))
    feed_all(parser, [ToolCallEnd(id="call_1"), StreamDone()])

    result = parser.finish()
    assert len(result.tool_calls) == 1
    assert result.tool_calls[0].id == "call_1"
    assert result.tool_calls[0].arguments == arguments


def test_invalid_json_arguments_are_flagged_not_raised():
    parser = make_parser()
    feed_all(parser, [
        ToolCallStart(id="call_1", name="read_file"),
        ToolCallDelta(arguments='{"path": "a.py"'),
        ToolCallDelta(arguments=', oops'),
        ToolCallEnd(id="call_1"),
        StreamDone(),
    ])

    [tool_call] = parser.finish().tool_calls
    assert tool_call.has_parse_error
    assert tool_call.arguments["_raw_args"] == '{"path": "a.py", oops'
    assert tool_call.public_arguments() == {}


def test_non_object_json_arguments_are_flagged():
    parser = make_parser()
    feed_all(parser, [
        ToolCallStart(id="call_1", name="read_file"),
        ToolCallDelta(arguments="[1, 2]"),
        ToolCallEnd(),
        StreamDone(),
    ])
    assert parser.finish().tool_calls[0].has_parse_error


def test_empty_arguments_parse_as_empty_object():
    parser = make_parser()
    feed_all(parser, [ToolCallStart(id="c", name="read_file"), ToolCallEnd(id="c"), StreamDone()])
    assert parser.finish().tool_calls[0].arguments == {}


def test_invalid_tool_names_are_dropped_silently():
    transcript = AssistantMessage()
    parser = make_parser(transcript)
    feed_all(parser, [
        ToolCallStart(id="bad", name="read file!"),
        ToolCallDelta(arguments='{"path": "x"}'),
        ToolCallEnd(id="bad"),
        ToolCallStart(id="ghost", name="delete_everything"),
        ToolCallEnd(id="ghost"),
        ToolCallFull(ToolCall(id="hallucinated", name="not_a_tool", arguments={})),
        StreamDone(),
    ])

    assert parser.finish().tool_calls == []
    assert transcript.tool_calls == {}


def test_start_without_end_implicitly_completes_previous_call():
    parser = make_parser()
    feed_all(parser, [
        ToolCallStart(id="a", name="read_file"),
        ToolCallDelta(arguments='{"path": "a.py"}'),
        ToolCallStart(id="b", name="read_file"),
        ToolCallDelta(arguments='{"path": "b.py"}'),
        StreamDone(),
    ])

    calls = parser.finish().tool_calls
    assert [tc.id for tc in calls] == ["a", "b"]
    assert calls[1].arguments == {"path": "b.py"}


def test_delta_without_open_call_is_ignored():
    parser = make_parser()
    feed_all(parser, [ToolCallDelta(arguments='{"x": 1}'), ToolCallEnd(), StreamDone()])
    assert parser.finish().tool_calls == []


def test_streaming_preview_uses_partial_arguments():
    transcript = AssistantMessage()
    parser = make_parser(transcript)
    feed_all(parser, [
        ToolCallStart(id="c1", name="write_file"),
        ToolCallDelta(arguments='{"path": "notes.md", "content": "hel'),
    ])

    preview = transcript.tool_calls["c1"]
    assert preview.arguments == {"path": "notes.md", "content": "hel"}
    assert transcript.parts[-1]["streaming"] is True


def test_reasoning_segments_open_and_close_around_other_events():
    transcript = AssistantMessage()
    parser = make_parser(transcript)
    feed_all(parser, [
        ReasoningDelta("Let me think"),
        ReasoningDelta(" about it."),
        TextDelta("Answer one. "),
        ReasoningDelta("   "),
        ReasoningDelta("Second thought"),
        TextDelta("Answer two."),
        StreamDone(),
    ])

    kinds = [part["type"] for part in transcript.parts]
    assert kinds == ["reasoning", "text", "reasoning", "text"]
    first, second = (p for p in transcript.parts if p["type"] == "reasoning")
    assert first["content"] == "Let me think about it."
    assert first["finished"] is True
    assert second["content"] == "Second thought"
    assert parser.state.is_reasoning is False


def test_reasoning_closed_when_stream_finishes():
    transcript = AssistantMessage()
    parser = make_parser(transcript)
    feed_all(parser, [ReasoningDelta("pondering"), StreamDone(content="")])

    [part] = transcript.parts
    assert part["finished"] is True
    assert parser.state.reasoning_part_id is None


def test_inline_tag_call_detected_across_split_chunks():
    transcript = AssistantMessage()
    parser = make_parser(transcript)
    chunks = [
        "Let me read it.\n<func",
        "tion=read_file>\n<parameter=path>src/a.py</param",
        "eter>\n",
        "</function>",
    ]
    for chunk in chunks:
        parser.feed(TextDelta(chunk))

    assert len(parser.state.tool_calls) == 1
    tool_call = parser.state.tool_calls[0]
    assert tool_call.name == "read_file"
    assert tool_call.arguments == {"path": "src/a.py"}
    assert tool_call.id == inline_call_id("read_file", len("Let me read it.\n"), parser.inline_prefix)


def test_inline_ids_stay_unique_across_model_calls_of_one_turn():
    transcript = AssistantMessage()
    first = make_parser(transcript)
    feed_all(first, [
        TextDelta("<function=read_file><parameter=path>a.py</parameter></function>"),
        StreamDone(),
    ])
    [first_call] = first.finish().tool_calls
    first_call.transition(ToolStatus.RUNNING)
    first_call.transition(ToolStatus.SUCCESS)

    second = make_parser(transcript)
    feed_all(second, [
        TextDelta("<function=read_file><parameter=path>b.py</parameter></function>"),
        StreamDone(),
    ])
    [second_call] = second.finish().tool_calls

    assert second_call.id != first_call.id
    assert second_call is not first_call
    assert first_call.arguments == {"path": "a.py"}
    assert second_call.arguments == {"path": "b.py"}
    assert second_call.status == ToolStatus.PENDING


def test_inline_scan_never_reuses_a_finished_transcript_call():
    transcript = AssistantMessage()
    finished = ToolCall(
        id=inline_call_id("read_file", 0, "fixed"),
        name="read_file",
        arguments={"path": "a.py"},
        status=ToolStatus.SUCCESS,
    )
    transcript.add_tool_call(finished)
    parser = StreamParser(
        transcript=transcript,
        is_allowed_tool=lambda name: name in ALLOWED,
        inline_prefix="fixed",
    )

    parser.feed(TextDelta("<function=read_file><parameter=path>b.py</parameter></function>"))

    assert parser.state.tool_calls == []
    assert finished.arguments == {"path": "a.py"}


def test_inline_tag_rescan_is_idempotent():
    parser = make_parser()
    parser.feed(TextDelta("<function=read_file><parameter=path>a.py</parameter></function>"))
    assert len(parser.state.tool_calls) == 1

    assert parser.scan_inline_tool_calls() == []
    parser.state.scan_cursor = 0
    assert parser.scan_inline_tool_calls() == []
    assert len(parser.state.tool_calls) == 1


def test_inline_tag_json_parameter_is_decoded():
    parser = make_parser()
    parser.feed(TextDelta(
        '<function=write_file><parameter=path>a.json</parameter>'
        '<parameter=content>{"key": [1, 2]}</parameter></function>'
    ))
    assert parser.state.tool_calls[0].arguments == {"path": "a.json", "content": {"key": [1, 2]}}


def test_inline_tag_with_disallowed_name_is_ignored():
    parser = make_parser()
    parser.feed(TextDelta("<function=format_disk><parameter=drive>C</parameter></function>"))
    parser.feed(StreamDone())
    assert parser.finish().tool_calls == []


def test_done_strips_inline_blocks_from_visible_content():
    transcript = AssistantMessage()
    parser = make_parser(transcript)
    feed_all(parser, [
        TextDelta("Reading now.\n<function=read_file>\n<parameter=path>a.py</parameter>\n</function>\n"),
        StreamDone(),
    ])

    result = parser.finish()
    assert result.content == "Reading now."
    assert transcript.content == "Reading now."
    assert len(result.tool_calls) == 1


def test_done_full_buffer_parse_merges_calls_missed_while_streaming():
    parser = make_parser()
    content = (
        "Two reads.\n"
        "<function=read_file><parameter=path>a.py</parameter></function>\n"
        "<function=read_file><parameter=path>b.py</parameter></function>"
    )
    parser.feed(StreamDone(content=content))

    result = parser.finish()
    assert [tc.arguments["path"] for tc in result.tool_calls] == ["a.py", "b.py"]
    assert result.content == "Two reads."


def test_done_keeps_text_from_earlier_calls_in_transcript():
    transcript = AssistantMessage()
    transcript.append_text("Earlier iteration. ")
    parser = make_parser(transcript)
    feed_all(parser, [
        TextDelta("Now <function=read_file><parameter=path>a</parameter></function>"),
        StreamDone(),
    ])
    assert transcript.content == "Earlier iteration. Now"


def test_done_merges_provider_tool_calls_once():
    parser = make_parser()
    call = ToolCall(id="c1", name="read_file", arguments={"path": "a.py"})
    feed_all(parser, [ToolCallFull(call), StreamDone(tool_calls=(call,), usage={"total_tokens": 5})])

    result = parser.finish()
    assert [tc.id for tc in result.tool_calls] == ["c1"]
    assert result.usage == {"total_tokens": 5}


def test_stream_error_is_recorded():
    parser = make_parser()
    feed_all(parser, [TextDelta("partial"), StreamError("rate limited", status_code=429)])

    result = parser.finish()
    assert result.error == "rate limited"
    assert result.error_status == 429
    assert result.content == "partial"


def test_event_after_done_is_a_protocol_error():
    parser = make_parser()
    parser.feed(StreamDone())
    with pytest.raises(ProtocolError):
        parser.feed(TextDelta("late"))


def test_stream_without_terminal_event_is_a_protocol_error():
    parser = make_parser()
    parser.feed(TextDelta("hello"))
    with pytest.raises(ProtocolError):
        parser.finish()


def test_unknown_event_type_is_a_protocol_error():
    parser = make_parser()
    with pytest.raises(ProtocolError):
        parser.feed({"type": "text", "content": "dict events are not accepted"})


def test_find_inline_blocks_skips_abandoned_open_marker():
    text = "<function=read_file>oops <function=write_file><parameter=path>a</parameter></function>"
    blocks = find_inline_blocks(text)
    assert [(b.name, b.closed) for b in blocks] == [("write_file", True)]
    assert strip_inline_blocks(text) == "<function=read_file>oops"
