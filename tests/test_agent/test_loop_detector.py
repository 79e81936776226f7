from codeloop.config import LoopDetectionConfig
from codeloop.llm import ToolCall
from codeloop.loop_detector import LoopDetector, loop_signature


def read(path: str, call_id: str = "c") -> ToolCall:
    return ToolCall(id=call_id, name="read_file", arguments={"path": path})


def write(path: str, call_id: str = "c") -> ToolCall:
    return ToolCall(id=call_id, name="write_file", arguments={"path": path, "content": "x"})


def test_repeats_up_to_threshold_are_not_a_loop():
    detector = LoopDetector(LoopDetectionConfig(repeat_threshold=3))
    results = [detector.check_loop([read("a.py", f"c{i}")]) for i in range(3)]
    assert not any(r.is_loop for r in results)


def test_one_more_repeat_than_threshold_is_a_loop():
    detector = LoopDetector(LoopDetectionConfig(repeat_threshold=3))
    for i in range(3):
        detector.check_loop([read("a.py", f"c{i}")])

    check = detector.check_loop([read("a.py", "c3")])

    assert check.is_loop
    assert "read_file" in check.reason
    assert check.suggestion


def test_call_ids_and_internal_keys_do_not_affect_signature():
    first = ToolCall(id="1", name="Read_File", arguments={"path": "a", "_raw_args": "x"})
    second = ToolCall(id="2", name="read_file", arguments={"path": "a"})
    assert loop_signature(first) == loop_signature(second)
    assert loop_signature(second) != loop_signature(read("b"))


def test_alternating_cycle_is_detected():
    detector = LoopDetector(LoopDetectionConfig(repeat_threshold=10, min_cycle_repeats=2))

    assert not detector.check_loop([read("a.py")]).is_loop
    assert not detector.check_loop([write("a.py")]).is_loop
    assert not detector.check_loop([read("a.py")]).is_loop
    check = detector.check_loop([write("a.py")])

    assert check.is_loop
    assert "read_file -> write_file" in check.reason


def test_distinct_calls_are_not_a_loop():
    detector = LoopDetector()
    for i in range(30):
        assert not detector.check_loop([read(f"file{i}.py")]).is_loop


def test_reset_clears_window():
    detector = LoopDetector(LoopDetectionConfig(repeat_threshold=1))
    assert detector.check_loop([read("a"), read("a")]).is_loop
    detector.reset()
    assert not detector.check_loop([read("a")]).is_loop
