"""One-line summaries of tool inputs, used for subagent activity frames."""

from typing import Any

MAX_SUMMARY_LENGTH = 80

_PATH_TOOLS = ("Read", "Write", "Edit", "NotebookEdit")


def _truncate(value: str) -> str:
    if len(value) > MAX_SUMMARY_LENGTH:
        return value[: MAX_SUMMARY_LENGTH - 3] + "..."
    return value


def get_tool_summary(tool_name: str, input_data: Any) -> str:
    """
    Summarize a tool call by its most telling argument.

    Tool names are matched by substring so MCP-prefixed variants
    (``mcp__fs__Read``) summarize like the built-ins. Unknown tools fall back
    to the first non-empty string argument. Non-dict input gives "".
    """
    if not isinstance(input_data, dict):
        return ""

    def string_arg(key: str) -> Any:
        value = input_data.get(key)
        return value if isinstance(value, str) else None

    if any(t in tool_name for t in _PATH_TOOLS) and string_arg("file_path") is not None:
        return input_data["file_path"]
    if "Bash" in tool_name and string_arg("command") is not None:
        return _truncate(input_data["command"])
    if ("Glob" in tool_name or "Grep" in tool_name) and string_arg("pattern") is not None:
        return input_data["pattern"]
    if "WebFetch" in tool_name and string_arg("url") is not None:
        return input_data["url"]
    if "Task" in tool_name and string_arg("description") is not None:
        return input_data["description"]
    if "WebSearch" in tool_name and string_arg("query") is not None:
        return input_data["query"]

    for value in input_data.values():
        if isinstance(value, str) and value:
            return _truncate(value)
    return ""
