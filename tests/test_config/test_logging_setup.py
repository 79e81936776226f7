import json

import structlog

from codeloop.logging import bind_turn_context, clear_turn_context, configure_logging, get_logger


def test_json_logs_carry_turn_context(capsys):
    try:
        configure_logging(level="INFO", fmt="json")
        bind_turn_context(turn_id="turn-1", assistant_message_id="assistant-1")
        get_logger("codeloop.test").info("Executing tool", tool="read_file")
        get_logger("codeloop.test").debug("filtered out")
        clear_turn_context("turn_id", "assistant_message_id")
        get_logger("codeloop.test").warning("after turn")
    finally:
        structlog.contextvars.clear_contextvars()
        structlog.reset_defaults()

    lines = [json.loads(line) for line in capsys.readouterr().err.splitlines() if line.strip()]
    assert [line["event"] for line in lines] == ["Executing tool", "after turn"]
    assert lines[0]["turn_id"] == "turn-1"
    assert lines[0]["tool"] == "read_file"
    assert lines[0]["level"] == "info"
    assert "turn_id" not in lines[1]
