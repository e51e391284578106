"""Deterministic provider for tests and demos; echoes the prompt back."""

import asyncio
import logging
import uuid
from typing import AsyncIterator, Dict

from ..exceptions import ProviderError
from ..models.messages import (
    NormalizedMessage,
    ReasoningPart,
    SessionResultPart,
    TextPart,
    ToolResultPart,
    ToolUsePart,
)
from ..models.session import PermissionMode
from ..tool_summary import get_tool_summary
from .base import (
    ProviderAdapter,
    ProviderSessionOptions,
    SubagentCompletedInfo,
    SubagentStartedInfo,
    SubagentToolCallInfo,
)

logger = logging.getLogger(__name__)

THINKING_DELTAS = ["I need to ", "analyze this request ", "carefully."]
SLOW_RUN_TIMEOUT = 30.0


def _tool_use_id() -> str:
    return f"toolu_echo_{uuid.uuid4().hex[:12]}"


class EchoAdapter(ProviderAdapter):
    """
    Replies ``Echo: <prompt>``.

    Markers in the prompt switch on extra behaviour:

    - ``[tool-approval]`` asks to run a Bash tool first
    - ``[exit-plan]`` asks to run ExitPlanMode with a plan
    - ``[thinking]`` streams thinking deltas before the answer
    - ``[subagent]`` / ``[subagent-slow]`` run an Explore subagent
    - ``[task]`` creates a task through TaskCreate
    - ``[slow]`` waits until interrupted
    - ``[error]`` fails the run
    """

    id = "echo"
    name = "Echo Provider"
    mode_transition_tools: Dict[str, PermissionMode] = {
        "EnterPlanMode": "plan",
        "ExitPlanMode": "default",
    }

    async def run(self, options: ProviderSessionOptions) -> AsyncIterator[NormalizedMessage]:
        prompt = options.prompt
        aborted = options.abort_event.is_set
        logger.debug(f"[ECHO] Run started: {prompt[:80]!r}")

        if "[error]" in prompt:
            raise ProviderError("Simulated provider failure", code="simulated")

        if "[tool-approval]" in prompt:
            async for message in self._tool_call(options, "Bash", {"command": "echo hello"}, "hello"):
                yield message
            if aborted():
                return

        if "[exit-plan]" in prompt:
            plan_input = {"plan": "1. Read the code\n2. Fix the bug"}
            async for message in self._tool_call(options, "ExitPlanMode", plan_input, "Plan approved"):
                yield message
            if aborted():
                return

        if "[task]" in prompt:
            tool_use_id = _tool_use_id()
            yield NormalizedMessage(role="assistant", parts=[ToolUsePart(
                tool_use_id=tool_use_id,
                tool_name="TaskCreate",
                input={"subject": "Write tests", "activeForm": "Writing tests"},
            )])
            yield NormalizedMessage(role="user", parts=[ToolResultPart(
                tool_use_id=tool_use_id, output="Task #1 created successfully",
            )])

        if "[subagent" in prompt:
            async for message in self._subagent(options, slow="[subagent-slow]" in prompt):
                yield message
            if aborted():
                return

        if "[slow]" in prompt:
            try:
                await asyncio.wait_for(options.abort_event.wait(), timeout=SLOW_RUN_TIMEOUT)
            except asyncio.TimeoutError:
                pass
            if aborted():
                return

        parts = []
        if "[thinking]" in prompt:
            for delta in THINKING_DELTAS:
                if options.on_thinking_delta:
                    options.on_thinking_delta(delta)
                await asyncio.sleep(0.01)
            parts.append(ReasoningPart(text="".join(THINKING_DELTAS)))
        parts.append(TextPart(text=f"Echo: {prompt}"))

        if aborted():
            return
        yield NormalizedMessage(role="assistant", parts=parts)
        yield NormalizedMessage(role="system", parts=[SessionResultPart(
            total_cost_usd=0.0,
            num_turns=1,
            provider_session_id=options.resume_session_id or f"echo-{uuid.uuid4()}",
        )])

    async def _tool_call(
        self, options: ProviderSessionOptions, tool_name: str, tool_input: dict, output: str
    ) -> AsyncIterator[NormalizedMessage]:
        tool_use_id = _tool_use_id()
        yield NormalizedMessage(role="assistant", parts=[ToolUsePart(
            tool_use_id=tool_use_id, tool_name=tool_name, input=tool_input,
        )])

        decision = await options.on_tool_approval(tool_name, tool_use_id, tool_input)
        if decision.allow:
            target_mode = self.mode_transition_tools.get(tool_name)
            if target_mode and options.on_mode_changed:
                options.on_mode_changed(target_mode)
            result = ToolResultPart(tool_use_id=tool_use_id, output=output)
        else:
            result = ToolResultPart(
                tool_use_id=tool_use_id,
                output=decision.message or "User denied permission",
                is_error=True,
            )
        if not options.abort_event.is_set():
            yield NormalizedMessage(role="user", parts=[result])

    async def _subagent(
        self, options: ProviderSessionOptions, slow: bool
    ) -> AsyncIterator[NormalizedMessage]:
        delay = 0.2 if slow else 0.0
        tool_use_id = _tool_use_id()
        task_id = f"task-{uuid.uuid4().hex[:8]}"
        task_input = {"description": "Explore the codebase", "subagent_type": "Explore"}

        yield NormalizedMessage(role="assistant", parts=[ToolUsePart(
            tool_use_id=tool_use_id, tool_name="Task", input=task_input,
        )])
        if options.on_subagent_started:
            options.on_subagent_started(SubagentStartedInfo(
                task_id=task_id,
                tool_use_id=tool_use_id,
                description=task_input["description"],
                agent_type="Explore",
            ))

        for tool_name, tool_input in (
            ("Glob", {"pattern": "**/*.py"}),
            ("Read", {"file_path": "README.md"}),
        ):
            await asyncio.sleep(delay)
            if options.abort_event.is_set():
                return
            if options.on_subagent_tool_call:
                options.on_subagent_tool_call(SubagentToolCallInfo(
                    tool_use_id=tool_use_id,
                    tool_name=tool_name,
                    summary=get_tool_summary(tool_name, tool_input),
                ))

        if options.on_subagent_completed:
            options.on_subagent_completed(SubagentCompletedInfo(
                task_id=task_id,
                tool_use_id=tool_use_id,
                status="completed",
                summary="Explored 2 files",
            ))
        yield NormalizedMessage(role="user", parts=[ToolResultPart(
            tool_use_id=tool_use_id, output="Explored 2 files",
        )])
