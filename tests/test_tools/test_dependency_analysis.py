from codeloop.llm import ToolCall
from codeloop.scheduler import analyze_dependencies, get_tool_target_path, is_read_only_tool


def call(call_id: str, name: str, **arguments) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=arguments)


def ids(calls: list[ToolCall]) -> list[str]:
    return [tc.id for tc in calls]


def test_read_after_write_on_same_path_is_serialized():
    batch = [
        call("r1", "read_file", path="a.py"),
        call("r2", "read_file", path="b.py"),
        call("w1", "write_file", path="a.py", content="x"),
    ]

    analysis = analyze_dependencies(batch)

    assert [ids(group) for group in analysis.parallel_groups] == [["r2"]]
    assert ids(analysis.serial_tools) == ["r1", "w1"]


def test_every_call_lands_in_exactly_one_bucket():
    batches = [
        [call("1", "read_file", path="a"), call("2", "grep_search", query="x")],
        [call("1", "run_command", command="ls"), call("2", "list_directory", path=".")],
        [
            call("1", "write_file", path="a"),
            call("2", "read_file", path="A"),
            call("3", "read_file", path="b"),
            call("4", "delete_file_or_folder", path="c"),
            call("5", "get_dir_tree", directory="src"),
        ],
    ]
    for batch in batches:
        analysis = analyze_dependencies(batch)
        flat = ids(analysis.all_calls())
        assert sorted(flat) == sorted(ids(batch))
        assert len(flat) == len(set(flat))


def test_single_call_goes_straight_to_serial():
    analysis = analyze_dependencies([call("1", "read_file", path="a")])
    assert analysis.parallel_groups == []
    assert ids(analysis.serial_tools) == ["1"]


def test_empty_batch():
    analysis = analyze_dependencies([])
    assert analysis.parallel_groups == []
    assert analysis.serial_tools == []


def test_reads_with_no_conflicting_write_run_together():
    batch = [
        call("1", "read_file", path="a"),
        call("2", "run_command", command="make"),
        call("3", "search_files", query="TODO"),
    ]
    analysis = analyze_dependencies(batch)

    assert [ids(group) for group in analysis.parallel_groups] == [["1", "3"]]
    assert ids(analysis.serial_tools) == ["2"]


def test_write_set_comparison_ignores_case_and_separators():
    batch = [
        call("w", "write_file", path="Src\\App.py"),
        call("r", "read_file", path="src/app.py"),
    ]
    analysis = analyze_dependencies(batch)

    assert analysis.parallel_groups == []
    assert ids(analysis.serial_tools) == ["w", "r"]


def test_target_path_uses_first_matching_key():
    assert get_tool_target_path({"file_path": "B.py", "directory": "x"}) == "b.py"
    assert get_tool_target_path({"query": "x"}) is None
    assert is_read_only_tool("read_file")
    assert not is_read_only_tool("write_file")


def test_reads_that_need_approval_run_serially_in_request_order():
    batch = [
        call("r1", "read_file", path="a.py"),
        call("g1", "grep_search", query="TODO"),
        call("r2", "read_file", path="b.py"),
    ]

    analysis = analyze_dependencies(batch, requires_approval=lambda name: name == "read_file")

    assert [ids(group) for group in analysis.parallel_groups] == [["g1"]]
    assert ids(analysis.serial_tools) == ["r1", "r2"]
