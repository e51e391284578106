"""Session state models and REST DTOs."""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field

from .messages import NormalizedMessage, WireModel

# Valid permission modes (matching Claude Agent SDK's ClaudeAgentOptions)
PermissionMode = Literal[
    "acceptEdits", "bypassPermissions", "default", "plan"
]

PERMISSION_MODES: tuple = ("acceptEdits", "bypassPermissions", "default", "plan")


class SessionStatus(str, Enum):
    """Lifecycle state of a session."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    WAITING_FOR_APPROVAL = "waiting_for_approval"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    ERROR = "error"
    HISTORY = "history"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_busy(self) -> bool:
        return self in BUSY_STATUSES


TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.INTERRUPTED, SessionStatus.ERROR}
)
BUSY_STATUSES = frozenset(
    {SessionStatus.STARTING, SessionStatus.RUNNING, SessionStatus.WAITING_FOR_APPROVAL}
)
# States a follow-up prompt or a mode switch may start from
RESUMABLE_STATUSES = frozenset({SessionStatus.IDLE}) | TERMINAL_STATUSES


class Task(WireModel):
    """Task derived from TaskCreate/TaskUpdate tool traffic."""

    id: str
    subject: str
    active_form: Optional[str] = None
    status: Literal["pending", "in_progress", "completed", "deleted"] = "pending"


class PendingApprovalDTO(WireModel):
    tool_name: str
    tool_use_id: str
    input: Dict[str, Any] = Field(default_factory=dict)


class SessionSummary(WireModel):
    """Row of the session list (live or history)."""

    id: str
    status: SessionStatus
    cwd: str
    provider: str = "claude"
    permission_mode: Optional[PermissionMode] = None
    model: Optional[str] = None
    created_at: Optional[str] = None
    last_modified: Optional[str] = None
    slug: Optional[str] = None
    summary: Optional[str] = None
    num_turns: int = 0
    total_cost_usd: float = 0.0
    has_pending_approval: bool = False


class SessionDetail(SessionSummary):
    """Full session view returned by GET /api/sessions/{id}."""

    provider_session_id: Optional[str] = None
    last_error: Optional[str] = None
    messages: List[NormalizedMessage] = Field(default_factory=list)
    tasks: List[Task] = Field(default_factory=list)
    pending_approval: Optional[PendingApprovalDTO] = None
    slash_commands: List[str] = Field(default_factory=list)


class CreateSessionRequest(WireModel):
    """Body of POST /api/sessions."""

    prompt: Optional[str] = None
    permission_mode: Optional[PermissionMode] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    effort: Optional[Literal["low", "medium", "high", "max"]] = None
    cwd: Optional[str] = None
    allowed_tools: Optional[List[str]] = None
    resume_session_id: Optional[str] = None
