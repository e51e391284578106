"""Derive the agent's task list from TaskCreate/TaskUpdate tool traffic."""

import re
from typing import Dict, Iterable, List, Optional, Pattern, Union

from .config import settings
from .models.messages import NormalizedMessage, ToolResultPart, ToolUsePart
from .models.session import Task

CREATE_TOOL = "TaskCreate"
UPDATE_TOOL = "TaskUpdate"
UNTITLED_TASK = "Untitled task"
_UPDATABLE_FIELDS = ("status", "subject", "active_form")


def _output_text(output: object) -> str:
    if isinstance(output, str):
        return output
    if isinstance(output, list):
        # Content block list from the SDK
        return "".join(
            block.get("text", "") for block in output
            if isinstance(block, dict) and isinstance(block.get("text"), str)
        )
    return ""


def extract_tasks(
    messages: Iterable[NormalizedMessage],
    id_pattern: Union[str, Pattern[str], None] = None,
) -> List[Task]:
    """
    Replay the message sequence and return the surviving tasks.

    A TaskCreate is keyed by its tool-use id until its result arrives; the
    numeric id reported in the result ("Task #N") then becomes the task id.
    Creates without a result yet are listed as pending. Deleted tasks are
    dropped. Output keeps creation order, and the function is pure, so the
    same input always yields the same list.
    """
    pattern = re.compile(id_pattern or settings.TASK_ID_PATTERN)
    tasks: Dict[str, Task] = {}
    pending: Dict[str, Task] = {}
    # Creation order across both maps, by tool-use id
    order: List[str] = []
    resolved_ids: Dict[str, str] = {}

    for message in messages:
        if message.role == "system":
            continue
        for part in message.parts:
            if isinstance(part, ToolUsePart):
                _apply_tool_use(part, tasks, pending, order)
            elif isinstance(part, ToolResultPart):
                create = pending.pop(part.tool_use_id, None)
                if create is None:
                    continue
                match = pattern.search(_output_text(part.output))
                task_id = match.group(1) if match else part.tool_use_id
                tasks[task_id] = create.model_copy(update={"id": task_id})
                resolved_ids[part.tool_use_id] = task_id

    result: List[Task] = []
    seen = set()
    for tool_use_id in order:
        if tool_use_id in pending:
            task: Optional[Task] = pending[tool_use_id]
        else:
            task = tasks.get(resolved_ids.get(tool_use_id, ""))
        if task is None or task.id in seen or task.status == "deleted":
            continue
        seen.add(task.id)
        result.append(task)
    return result


def _apply_tool_use(
    part: ToolUsePart,
    tasks: Dict[str, Task],
    pending: Dict[str, Task],
    order: List[str],
) -> None:
    data = part.input or {}
    if part.tool_name == CREATE_TOOL:
        subject = data.get("subject")
        active_form = data.get("activeForm")
        pending[part.tool_use_id] = Task(
            id=part.tool_use_id,
            subject=subject if isinstance(subject, str) else UNTITLED_TASK,
            active_form=active_form if isinstance(active_form, str) else None,
            status="pending",
        )
        order.append(part.tool_use_id)
    elif part.tool_name == UPDATE_TOOL:
        task_id = data.get("taskId")
        if not isinstance(task_id, str) or task_id not in tasks:
            return
        updates = {}
        for field in _UPDATABLE_FIELDS:
            value = data.get("activeForm" if field == "active_form" else field)
            if isinstance(value, str):
                updates[field] = value
        if updates:
            try:
                tasks[task_id] = Task.model_validate(
                    {**tasks[task_id].model_dump(), **updates}
                )
            except ValueError:
                # Unknown status value; keep the task as it was
                return
