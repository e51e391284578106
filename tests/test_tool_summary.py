"""Tests for tool-call summaries."""

from session_relay.tool_summary import get_tool_summary


def test_file_tools_use_path():
    assert get_tool_summary("Read", {"file_path": "/src/app.py"}) == "/src/app.py"
    assert get_tool_summary("Edit", {"file_path": "a.py", "old_string": "x"}) == "a.py"


def test_mcp_prefixed_tool_matches_builtin():
    assert get_tool_summary("mcp__fs__Read", {"file_path": "notes.md"}) == "notes.md"


def test_bash_command_is_truncated():
    command = "echo " + "x" * 200
    summary = get_tool_summary("Bash", {"command": command})

    assert len(summary) == 80
    assert summary.endswith("...")


def test_search_tools_use_pattern():
    assert get_tool_summary("Glob", {"pattern": "**/*.py"}) == "**/*.py"
    assert get_tool_summary("Grep", {"pattern": "TODO", "path": "src"}) == "TODO"


def test_web_and_task_tools():
    assert get_tool_summary("WebFetch", {"url": "https://example.com"}) == "https://example.com"
    assert get_tool_summary("WebSearch", {"query": "pydantic"}) == "pydantic"
    assert get_tool_summary("Task", {"description": "Explore"}) == "Explore"


def test_unknown_tool_falls_back_to_first_string():
    assert get_tool_summary("Custom", {"count": 3, "name": "", "target": "db"}) == "db"


def test_non_dict_input():
    assert get_tool_summary("Read", None) == ""
    assert get_tool_summary("Read", "file.txt") == ""
    assert get_tool_summary("Custom", {"count": 3}) == ""
