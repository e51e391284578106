"""Tests for deriving the task list from TaskCreate/TaskUpdate traffic."""

from session_relay.models.messages import (
    NormalizedMessage,
    TextPart,
    ToolResultPart,
    ToolUsePart,
)
from session_relay.task_extractor import UNTITLED_TASK, extract_tasks


def create(tool_use_id, subject="Write tests", active_form=None):
    data = {"subject": subject}
    if active_form is not None:
        data["activeForm"] = active_form
    return NormalizedMessage(role="assistant", parts=[
        ToolUsePart(tool_use_id=tool_use_id, tool_name="TaskCreate", input=data)
    ])


def result(tool_use_id, output):
    return NormalizedMessage(role="user", parts=[
        ToolResultPart(tool_use_id=tool_use_id, output=output)
    ])


def update(task_id, **fields):
    data = {"taskId": task_id, **fields}
    return NormalizedMessage(role="assistant", parts=[
        ToolUsePart(tool_use_id=f"upd-{task_id}-{len(fields)}", tool_name="TaskUpdate", input=data)
    ])


def test_created_task_takes_id_from_result():
    tasks = extract_tasks([
        create("toolu_1", "Write tests", "Writing tests"),
        result("toolu_1", "Task #7 created successfully"),
    ])

    assert len(tasks) == 1
    assert tasks[0].id == "7"
    assert tasks[0].subject == "Write tests"
    assert tasks[0].active_form == "Writing tests"
    assert tasks[0].status == "pending"


def test_create_without_result_is_pending_under_tool_use_id():
    tasks = extract_tasks([create("toolu_1")])

    assert [t.id for t in tasks] == ["toolu_1"]
    assert tasks[0].status == "pending"


def test_result_without_task_number_keeps_tool_use_id():
    tasks = extract_tasks([create("toolu_1"), result("toolu_1", "created")])

    assert tasks[0].id == "toolu_1"


def test_result_as_content_blocks():
    tasks = extract_tasks([
        create("toolu_1"),
        result("toolu_1", [{"type": "text", "text": "Task #3 created successfully"}]),
    ])

    assert tasks[0].id == "3"


def test_update_changes_status_and_subject():
    tasks = extract_tasks([
        create("toolu_1", "Old subject"),
        result("toolu_1", "Task #1 created successfully"),
        update("1", status="in_progress", subject="New subject", activeForm="Doing it"),
    ])

    assert tasks[0].status == "in_progress"
    assert tasks[0].subject == "New subject"
    assert tasks[0].active_form == "Doing it"


def test_deleted_tasks_are_dropped():
    tasks = extract_tasks([
        create("toolu_1", "Keep me"),
        result("toolu_1", "Task #1 created successfully"),
        create("toolu_2", "Delete me"),
        result("toolu_2", "Task #2 created successfully"),
        update("2", status="deleted"),
    ])

    assert [t.subject for t in tasks] == ["Keep me"]


def test_update_for_unknown_task_is_ignored():
    tasks = extract_tasks([
        create("toolu_1"),
        result("toolu_1", "Task #1 created successfully"),
        update("99", status="completed"),
    ])

    assert tasks[0].status == "pending"


def test_update_with_invalid_status_is_ignored():
    tasks = extract_tasks([
        create("toolu_1"),
        result("toolu_1", "Task #1 created successfully"),
        update("1", status="exploded"),
    ])

    assert tasks[0].status == "pending"


def test_non_string_fields_are_ignored():
    tasks = extract_tasks([
        create("toolu_1", subject=42),
        result("toolu_1", "Task #1 created successfully"),
        update("1", status=5, subject=None),
    ])

    assert tasks[0].subject == UNTITLED_TASK
    assert tasks[0].status == "pending"


def test_create_without_input():
    message = NormalizedMessage(role="assistant", parts=[
        ToolUsePart(tool_use_id="toolu_1", tool_name="TaskCreate")
    ])

    tasks = extract_tasks([message])

    assert tasks[0].subject == UNTITLED_TASK


def test_orphan_result_is_ignored():
    tasks = extract_tasks([result("toolu_x", "Task #5 created successfully")])

    assert tasks == []


def test_system_messages_are_skipped():
    system = NormalizedMessage(role="system", parts=[
        ToolUsePart(tool_use_id="toolu_1", tool_name="TaskCreate", input={"subject": "x"})
    ])

    assert extract_tasks([system]) == []


def test_keeps_creation_order_when_results_arrive_out_of_order():
    messages = [
        create("toolu_a", "First"),
        create("toolu_b", "Second"),
        NormalizedMessage(role="assistant", parts=[TextPart(text="working")]),
        result("toolu_b", "Task #2 created successfully"),
        result("toolu_a", "Task #1 created successfully"),
    ]

    tasks = extract_tasks(messages)

    assert [(t.id, t.subject) for t in tasks] == [("1", "First"), ("2", "Second")]


def test_extraction_is_idempotent():
    messages = [
        create("toolu_1", "One"),
        result("toolu_1", "Task #1 created successfully"),
        create("toolu_2", "Two"),
        update("1", status="completed"),
    ]

    assert extract_tasks(messages) == extract_tasks(messages)


def test_custom_id_pattern():
    tasks = extract_tasks(
        [create("toolu_1"), result("toolu_1", "created item ABC-12")],
        id_pattern=r"item ([A-Z]+-\d+)",
    )

    assert tasks[0].id == "ABC-12"
