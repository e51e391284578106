"""Claude provider backed by the Claude Agent SDK (subscription auth from ~/.claude)."""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Literal, Optional

from claude_agent_sdk import ClaudeAgentOptions, query
from claude_agent_sdk.types import (
    PermissionResult,
    PermissionResultAllow,
    PermissionResultDeny,
    ToolPermissionContext,
)

from ..config import settings
from ..exceptions import ProviderError
from ..models.messages import (
    ContentPart,
    NormalizedMessage,
    ReasoningPart,
    SessionResultPart,
    TextPart,
    ToolResultPart,
    ToolUsePart,
)
from ..models.session import PermissionMode, SessionSummary
from ..tool_summary import get_tool_summary
from .base import (
    ProviderAdapter,
    ProviderSessionOptions,
    SubagentCompletedInfo,
    SubagentStartedInfo,
    SubagentToolCallInfo,
)
from .claude_transcripts import TranscriptStore, messages_from_lines, normalize_line

logger = logging.getLogger(__name__)

LOG_TRUNCATE_LENGTH = 100

# SDK message/block class names (dispatch by name, as the SDK exposes dataclasses)
SDK_MSG_RESULT = "ResultMessage"
SDK_MSG_ASSISTANT = "AssistantMessage"
SDK_MSG_USER = "UserMessage"
SDK_MSG_SYSTEM = "SystemMessage"
SDK_MSG_STREAM_EVENT = "StreamEvent"
SDK_BLOCK_TEXT = "TextBlock"
SDK_BLOCK_THINKING = "ThinkingBlock"
SDK_BLOCK_TOOL_USE = "ToolUseBlock"
SDK_BLOCK_TOOL_RESULT = "ToolResultBlock"

# Workflow tools that never need the operator's permission
AUTO_APPROVED_TOOLS = {"TaskCreate", "TaskUpdate", "TaskGet", "TaskList", "Skill"}

# Tools that always go to the operator, even in bypass mode
ALWAYS_ASK_TOOLS = {"AskUserQuestion", "EnterPlanMode", "ExitPlanMode"}

ErrorCode = Literal["auth_failed", "permission_denied", "rate_limit", "timeout", "internal"]

EFFORT_THINKING_TOKENS: Dict[str, int] = {
    "low": 4_000,
    "medium": 10_000,
    "high": 32_000,
    "max": 64_000,
}


def is_debug() -> bool:
    """Check if debug logging is enabled."""
    return logger.isEnabledFor(logging.DEBUG)


def classify_error(error: Exception) -> ErrorCode:
    """Classify error type for appropriate handling."""
    error_str = str(error).lower()

    if "auth" in error_str or "credential" in error_str:
        return "auth_failed"
    elif "permission" in error_str:
        return "permission_denied"
    elif "rate" in error_str or "limit" in error_str:
        return "rate_limit"
    elif "timeout" in error_str:
        return "timeout"
    else:
        return "internal"


ERROR_MESSAGES: Dict[ErrorCode, str] = {
    "auth_failed": "Authentication failed. Please run 'claude login' in a terminal to authenticate.",
    "permission_denied": "Permission denied while running the agent.",
    "rate_limit": "Rate limit exceeded. Please try again in a few moments.",
    "timeout": "Request timed out. Please try again.",
}


class _ClaudeRun:
    """State for one ``ClaudeAdapter.run`` call."""

    def __init__(self, adapter: "ClaudeAdapter", options: ProviderSessionOptions) -> None:
        self.adapter = adapter
        self.options = options
        self.provider_session_id: Optional[str] = options.resume_session_id
        self.total_cost_usd = 0.0
        self.num_turns = 0
        self.result_error: Optional[str] = None
        # Latest tool-use id seen per tool name, for permission callbacks
        self.last_tool_use: Dict[str, str] = {}
        # Subagent task id -> parent Task tool-use id
        self.subagent_tool_use: Dict[str, str] = {}

    def build_options(self) -> ClaudeAgentOptions:
        opts = self.options
        kwargs: Dict[str, Any] = dict(
            resume=opts.resume_session_id,
            permission_mode=opts.permission_mode,
            cwd=opts.cwd,
            model=opts.model,
            include_partial_messages=True,
            max_turns=opts.max_turns or settings.MAX_TURNS,
            setting_sources=["user", "project"],
            stderr=lambda msg: logger.error(f"[SDK STDERR] {msg}"),
            can_use_tool=self.can_use_tool,
        )
        if opts.allowed_tools:
            kwargs["allowed_tools"] = list(opts.allowed_tools)
        if opts.effort in EFFORT_THINKING_TOKENS:
            kwargs["max_thinking_tokens"] = EFFORT_THINKING_TOKENS[opts.effort]
        return ClaudeAgentOptions(**kwargs)

    async def prompt_stream(self) -> AsyncIterable[Dict[str, Any]]:
        """
        Wrap the prompt as a one-message stream.

        Streaming mode is required when using the can_use_tool callback.
        """
        yield {
            "type": "user",
            "message": {"role": "user", "content": self.options.prompt},
            "parent_tool_use_id": None,
        }

    async def can_use_tool(
        self,
        tool_name: str,
        input_data: Dict[str, Any],
        context: ToolPermissionContext,
    ) -> PermissionResult:
        """
        Permission callback for the Claude Agent SDK.

        Suspends the tool until the session's approval handshake resolves.
        """
        if tool_name in AUTO_APPROVED_TOOLS:
            return PermissionResultAllow(updated_input=input_data)

        if (
            self.options.permission_mode == "bypassPermissions"
            and tool_name not in ALWAYS_ASK_TOOLS
        ):
            return PermissionResultAllow(updated_input=input_data)

        tool_use_id = (
            getattr(context, "tool_use_id", None)
            or self.last_tool_use.pop(tool_name, None)
            or f"toolu_{uuid.uuid4().hex}"
        )
        logger.info(f"[PERMISSION] Requesting approval for {tool_name} ({tool_use_id})")

        decision = await self.options.on_tool_approval(tool_name, tool_use_id, input_data)
        if not decision.allow:
            logger.info(f"[PERMISSION] Denied {tool_name} ({tool_use_id})")
            return PermissionResultDeny(message=decision.message or "User denied permission")

        target_mode = self.adapter.mode_transition_tools.get(tool_name)
        if target_mode and self.options.on_mode_changed:
            self.options.on_mode_changed(target_mode)
        return PermissionResultAllow(updated_input=decision.updated_input or input_data)

    def _handle_system(self, msg: Any) -> None:
        subtype = getattr(msg, "subtype", None)
        data = getattr(msg, "data", None)
        if not isinstance(data, dict):
            data = {}

        if subtype == "init":
            sdk_session_id = data.get("session_id")
            if sdk_session_id:
                if self.provider_session_id and sdk_session_id != self.provider_session_id:
                    logger.info(
                        f"[AGENT SDK] Resumed as new session id {sdk_session_id} "
                        f"(was {self.provider_session_id})"
                    )
                self.provider_session_id = sdk_session_id
            slash_commands = data.get("slash_commands")
            if slash_commands and self.options.on_slash_commands:
                logger.debug(f"[AGENT SDK] Captured {len(slash_commands)} slash commands")
                self.options.on_slash_commands(list(slash_commands))

        elif subtype == "task_started":
            task_id = str(data.get("task_id", ""))
            tool_use_id = str(data.get("tool_use_id", ""))
            self.subagent_tool_use[task_id] = tool_use_id
            if self.options.on_subagent_started:
                self.options.on_subagent_started(SubagentStartedInfo(
                    task_id=task_id,
                    tool_use_id=tool_use_id,
                    description=str(data.get("description") or ""),
                    agent_type=str(data.get("task_type") or ""),
                ))

        elif subtype == "task_notification":
            task_id = str(data.get("task_id", ""))
            if self.options.on_subagent_completed:
                self.options.on_subagent_completed(SubagentCompletedInfo(
                    task_id=task_id,
                    tool_use_id=self.subagent_tool_use.pop(task_id, str(data.get("tool_use_id", ""))),
                    status=str(data.get("status") or "completed"),
                    summary=str(data.get("summary") or ""),
                ))

    def _handle_stream_event(self, msg: Any) -> None:
        # Partial output from subagents stays out of the main thinking stream
        if getattr(msg, "parent_tool_use_id", None):
            return
        event = getattr(msg, "event", None)
        if not isinstance(event, dict) or event.get("type") != "content_block_delta":
            return
        delta = event.get("delta") or {}
        if delta.get("type") == "thinking_delta" and delta.get("thinking"):
            if self.options.on_thinking_delta:
                self.options.on_thinking_delta(delta["thinking"])

    def _handle_sidechain(self, msg: Any, parent_tool_use_id: str) -> None:
        for block in getattr(msg, "content", None) or []:
            if type(block).__name__ != SDK_BLOCK_TOOL_USE:
                continue
            tool_name = getattr(block, "name", "")
            if self.options.on_subagent_tool_call:
                self.options.on_subagent_tool_call(SubagentToolCallInfo(
                    tool_use_id=parent_tool_use_id,
                    tool_name=tool_name,
                    summary=get_tool_summary(tool_name, getattr(block, "input", None)),
                ))

    def _assistant_parts(self, msg: Any) -> List[ContentPart]:
        parts: List[ContentPart] = []
        for block in getattr(msg, "content", None) or []:
            block_type = type(block).__name__
            if block_type == SDK_BLOCK_TEXT:
                text = getattr(block, "text", None)
                if text:
                    parts.append(TextPart(text=text))
            elif block_type == SDK_BLOCK_THINKING:
                thinking = getattr(block, "thinking", None)
                if thinking:
                    parts.append(ReasoningPart(text=thinking))
            elif block_type == SDK_BLOCK_TOOL_USE:
                tool_use_id = getattr(block, "id", None) or f"toolu_{uuid.uuid4().hex}"
                tool_name = getattr(block, "name", "")
                tool_input = getattr(block, "input", None)
                self.last_tool_use[tool_name] = tool_use_id
                logger.info(f"[AGENT SDK] Tool use: {tool_name} (id: {tool_use_id})")
                parts.append(ToolUsePart(
                    tool_use_id=tool_use_id,
                    tool_name=tool_name,
                    input=tool_input if isinstance(tool_input, dict) else None,
                ))
        return parts

    def _user_parts(self, msg: Any) -> List[ContentPart]:
        # Only tool results; the prompt itself is recorded by the registry
        content = getattr(msg, "content", None)
        if not isinstance(content, list):
            return []
        parts: List[ContentPart] = []
        for block in content:
            if type(block).__name__ == SDK_BLOCK_TOOL_RESULT:
                parts.append(ToolResultPart(
                    tool_use_id=getattr(block, "tool_use_id", ""),
                    output=getattr(block, "content", None),
                    is_error=bool(getattr(block, "is_error", False)),
                ))
        return parts

    def _handle_result(self, msg: Any) -> None:
        self.total_cost_usd = getattr(msg, "total_cost_usd", None) or 0.0
        self.num_turns = getattr(msg, "num_turns", None) or 0
        self.provider_session_id = getattr(msg, "session_id", None) or self.provider_session_id
        if getattr(msg, "is_error", False):
            subtype = getattr(msg, "subtype", "unknown_error")
            self.result_error = getattr(msg, "result", None) or f"Agent run failed ({subtype})"
            logger.error(f"[AGENT SDK] Execution failed with subtype: {subtype}")

    def result_message(self) -> NormalizedMessage:
        return NormalizedMessage(role="system", parts=[SessionResultPart(
            total_cost_usd=self.total_cost_usd,
            num_turns=self.num_turns,
            provider_session_id=self.provider_session_id,
            is_error=self.result_error is not None,
        )])

    async def stream(self) -> AsyncIterator[NormalizedMessage]:
        opts = self.options
        logger.info(
            f"[AGENT SDK] Starting run: cwd={opts.cwd}, mode={opts.permission_mode}, "
            f"resume={opts.resume_session_id}, prompt={opts.prompt[:LOG_TRUNCATE_LENGTH]!r}"
        )
        if is_debug():
            logger.debug("=" * 80)
            logger.debug("CLAUDE AGENT SDK INPUT - USER PROMPT:")
            logger.debug(opts.prompt)
            logger.debug("=" * 80)

        saw_result = False
        try:
            async for msg in query(prompt=self.prompt_stream(), options=self.build_options()):
                if opts.abort_event.is_set():
                    logger.info("[AGENT SDK] Run aborted")
                    return

                msg_type = type(msg).__name__
                logger.debug(f"[AGENT SDK] Received message from SDK: {msg_type}")
                parent_tool_use_id = getattr(msg, "parent_tool_use_id", None)

                if msg_type == SDK_MSG_SYSTEM:
                    self._handle_system(msg)

                elif msg_type == SDK_MSG_STREAM_EVENT:
                    self._handle_stream_event(msg)

                elif msg_type == SDK_MSG_ASSISTANT:
                    if parent_tool_use_id:
                        self._handle_sidechain(msg, parent_tool_use_id)
                        continue
                    parts = self._assistant_parts(msg)
                    if parts:
                        yield NormalizedMessage(role="assistant", parts=parts)

                elif msg_type == SDK_MSG_USER:
                    if parent_tool_use_id:
                        continue
                    parts = self._user_parts(msg)
                    if parts:
                        yield NormalizedMessage(role="user", parts=parts)

                elif msg_type == SDK_MSG_RESULT:
                    saw_result = True
                    self._handle_result(msg)

        except asyncio.CancelledError:
            logger.info("[AGENT SDK] Run cancelled via asyncio")
            raise
        except ProviderError:
            raise
        except Exception as e:
            if saw_result and self.result_error is None:
                # The SDK can fail while tearing down after a complete answer
                logger.warning(f"[AGENT SDK] Post-response cleanup error (non-critical): {e}")
            else:
                error_code = classify_error(e)
                logger.error(f"[AGENT SDK] Run error ({error_code}): {e}", exc_info=True)
                raise ProviderError(
                    ERROR_MESSAGES.get(error_code, f"An unexpected error occurred: {e}"),
                    code=error_code,
                    detail=str(e),
                ) from e

        if opts.abort_event.is_set():
            return

        yield self.result_message()
        if self.result_error is not None:
            raise ProviderError(self.result_error, code="execution_failed")


class ClaudeAdapter(ProviderAdapter):
    """
    Provider using the Claude Agent SDK with subscription authentication.

    History comes from the transcripts Claude Code writes under
    ``CLAUDE_PROJECTS_DIR``.
    """

    id = "claude"
    name = "Claude Code"
    mode_transition_tools: Dict[str, PermissionMode] = {
        "EnterPlanMode": "plan",
        "ExitPlanMode": "default",
    }

    def __init__(self, projects_dir: Optional[str] = None) -> None:
        self.transcripts = TranscriptStore(projects_dir or settings.CLAUDE_PROJECTS_DIR)

    def run(self, options: ProviderSessionOptions) -> AsyncIterator[NormalizedMessage]:
        return _ClaudeRun(self, options).stream()

    async def get_history(self, session_id: str) -> List[NormalizedMessage]:
        return await self.transcripts.get_history(session_id)

    async def list_sessions(self, cwd: Optional[str] = None) -> List[SessionSummary]:
        return await self.transcripts.list_sessions(cwd)

    async def get_session_summary(self, session_id: str) -> Optional[SessionSummary]:
        return await self.transcripts.get_summary(session_id)

    async def get_session_file_path(self, session_id: str) -> Optional[Path]:
        return self.transcripts.find_session_file(session_id)

    def normalize_file_line(self, line: str, index: int) -> Optional[NormalizedMessage]:
        return normalize_line(line, index)

    def messages_from_lines(self, lines: List[str], start_index: int = 0) -> List[NormalizedMessage]:
        return messages_from_lines(lines, start_index)
