"""Data models for Session Relay."""

from .git import GitDiffStat, GitFileStat
from .messages import (
    ContentPart,
    ErrorPart,
    NormalizedMessage,
    ReasoningPart,
    SessionResultPart,
    TextPart,
    ToolResultPart,
    ToolUsePart,
)
from .session import PermissionMode, SessionStatus, Task

__all__ = [
    "ContentPart",
    "ErrorPart",
    "GitDiffStat",
    "GitFileStat",
    "NormalizedMessage",
    "PermissionMode",
    "ReasoningPart",
    "SessionResultPart",
    "SessionStatus",
    "Task",
    "TextPart",
    "ToolResultPart",
    "ToolUsePart",
]
