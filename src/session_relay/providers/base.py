"""Abstract base class for agent providers."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from ..exceptions import HistoryNotFoundError
from ..models.messages import NormalizedMessage
from ..models.session import PermissionMode, SessionSummary


@dataclass
class ApprovalDecision:
    """Operator's answer to a tool approval request."""

    allow: bool
    updated_input: Optional[Dict[str, Any]] = None
    message: Optional[str] = None
    always_allow: bool = False

    @classmethod
    def deny(cls, message: str = "User denied permission") -> "ApprovalDecision":
        return cls(allow=False, message=message)


@dataclass
class SubagentStartedInfo:
    task_id: str
    tool_use_id: str
    description: str = ""
    agent_type: str = ""


@dataclass
class SubagentToolCallInfo:
    tool_use_id: str      # Parent Task tool-use id
    tool_name: str
    summary: str = ""


@dataclass
class SubagentCompletedInfo:
    task_id: str
    tool_use_id: str
    status: str
    summary: str = ""


ToolApprovalCallback = Callable[[str, str, Dict[str, Any]], Awaitable[ApprovalDecision]]


@dataclass
class ProviderSessionOptions:
    """Everything a provider needs for one run."""

    prompt: str
    cwd: str
    permission_mode: PermissionMode
    abort_event: asyncio.Event
    on_tool_approval: ToolApprovalCallback
    resume_session_id: Optional[str] = None
    model: Optional[str] = None
    effort: Optional[str] = None
    allowed_tools: Optional[List[str]] = None
    max_turns: Optional[int] = None
    on_thinking_delta: Optional[Callable[[str], None]] = None
    on_subagent_started: Optional[Callable[[SubagentStartedInfo], None]] = None
    on_subagent_tool_call: Optional[Callable[[SubagentToolCallInfo], None]] = None
    on_subagent_completed: Optional[Callable[[SubagentCompletedInfo], None]] = None
    on_mode_changed: Optional[Callable[[PermissionMode], None]] = None
    on_slash_commands: Optional[Callable[[List[str]], None]] = None


@dataclass
class MessagePage:
    """A window of history messages, newest last."""

    messages: List[NormalizedMessage] = field(default_factory=list)
    has_more: bool = False
    oldest_index: Optional[int] = None


class ProviderAdapter(ABC):
    """
    Interface between the session registry and an agent runtime.

    ``run`` is an async generator of normalized messages. The last message it
    yields is a system message carrying a ``session_result`` part (cost, turns
    and the id to resume the conversation with). A failed run raises
    ``ProviderError`` after yielding whatever it produced.

    Implementations must:
    - suspend a tool until ``on_tool_approval`` resolves
    - keep sidechain (subagent-internal) messages out of the yielded
      sequence, reporting them through the subagent callbacks instead
    - call ``on_thinking_delta`` before yielding the finished reasoning
      message, without repeating delta text
    - stop promptly once ``abort_event`` is set
    """

    id: str = ""
    name: str = ""
    # Tool name -> permission mode it switches to once approved
    mode_transition_tools: Dict[str, PermissionMode] = {}

    @abstractmethod
    def run(self, options: ProviderSessionOptions) -> AsyncIterator[NormalizedMessage]:
        """Run one prompt and stream the normalized messages."""

    # History access. Providers without persisted transcripts keep these defaults.

    async def get_history(self, session_id: str) -> List[NormalizedMessage]:
        raise HistoryNotFoundError(session_id)

    async def get_messages(
        self, session_id: str, before: Optional[int] = None, limit: int = 50
    ) -> MessagePage:
        """Page backwards through history; ``before`` is an exclusive index."""
        history = await self.get_history(session_id)
        if before is not None:
            history = [m for m in history if m.index < before]
        window = history[-limit:] if limit > 0 else []
        return MessagePage(
            messages=window,
            has_more=len(history) > len(window),
            oldest_index=window[0].index if window else None,
        )

    async def list_sessions(self, cwd: Optional[str] = None) -> List[SessionSummary]:
        return []

    async def get_session_summary(self, session_id: str) -> Optional[SessionSummary]:
        return None

    async def get_session_file_path(self, session_id: str) -> Optional[Path]:
        return None

    def normalize_file_line(self, line: str, index: int) -> Optional[NormalizedMessage]:
        return None

    def messages_from_lines(self, lines: List[str], start_index: int = 0) -> List[NormalizedMessage]:
        """Normalize a batch of transcript lines with contiguous indices."""
        messages: List[NormalizedMessage] = []
        for line in lines:
            message = self.normalize_file_line(line, start_index + len(messages))
            if message is not None:
                messages.append(message)
        return messages
