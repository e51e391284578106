"""WebSocket frame models.

Client frames are a closed tagged union validated at the socket boundary.
Server frames are built here and handed to the watcher in wire form.
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import Field, TypeAdapter
from typing_extensions import Annotated

from .git import GitDiffStat
from .messages import NormalizedMessage, WireModel
from .session import PermissionMode, SessionStatus


# Client -> server

class AuthFrame(WireModel):
    type: Literal["auth"] = "auth"
    token: str


class PromptFrame(WireModel):
    type: Literal["prompt"] = "prompt"
    text: str = Field(..., min_length=1)


class ApproveFrame(WireModel):
    type: Literal["approve"] = "approve"
    tool_use_id: str
    always_allow: bool = False
    answers: Optional[Dict[str, str]] = None
    clear_context: bool = False
    target_mode: Optional[PermissionMode] = None


class DenyFrame(WireModel):
    type: Literal["deny"] = "deny"
    tool_use_id: str
    message: Optional[str] = None


class InterruptFrame(WireModel):
    type: Literal["interrupt"] = "interrupt"


class SetModeFrame(WireModel):
    type: Literal["set_mode"] = "set_mode"
    mode: PermissionMode


ClientFrame = Annotated[
    Union[AuthFrame, PromptFrame, ApproveFrame, DenyFrame, InterruptFrame, SetModeFrame],
    Field(discriminator="type"),
]

_client_frame_adapter: TypeAdapter = TypeAdapter(ClientFrame)


def parse_client_frame(data: Any) -> Any:
    """Validate a decoded JSON frame. Raises pydantic.ValidationError."""
    return _client_frame_adapter.validate_python(data)


# Server -> client

class MessageFrame(WireModel):
    type: Literal["message"] = "message"
    message: NormalizedMessage


class StatusFrame(WireModel):
    type: Literal["status"] = "status"
    status: SessionStatus
    error: Optional[str] = None
    source: Optional[str] = None


class ToolApprovalRequestFrame(WireModel):
    type: Literal["tool_approval_request"] = "tool_approval_request"
    tool_name: str
    tool_use_id: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ModeChangedFrame(WireModel):
    type: Literal["mode_changed"] = "mode_changed"
    mode: PermissionMode


class ThinkingDeltaFrame(WireModel):
    type: Literal["thinking_delta"] = "thinking_delta"
    text: str


class SubagentStartedFrame(WireModel):
    type: Literal["subagent_started"] = "subagent_started"
    task_id: str
    tool_use_id: str
    description: str = ""
    agent_type: str = ""


class SubagentToolCallFrame(WireModel):
    type: Literal["subagent_tool_call"] = "subagent_tool_call"
    tool_use_id: str
    tool_name: str
    summary: str = ""


class SubagentCompletedFrame(WireModel):
    type: Literal["subagent_completed"] = "subagent_completed"
    task_id: str
    tool_use_id: str
    status: str
    summary: str = ""


class GitDiffStatFrame(GitDiffStat):
    type: Literal["git_diff_stat"] = "git_diff_stat"


class SlashCommandsFrame(WireModel):
    type: Literal["slash_commands"] = "slash_commands"
    commands: List[str] = Field(default_factory=list)


class SessionRedirectedFrame(WireModel):
    type: Literal["session_redirected"] = "session_redirected"
    new_session_id: str
    fresh: bool = True


class ReplayCompleteFrame(WireModel):
    type: Literal["replay_complete"] = "replay_complete"


class ErrorFrame(WireModel):
    type: Literal["error"] = "error"
    message: str
    code: Optional[str] = None


class PingFrame(WireModel):
    type: Literal["ping"] = "ping"
