"""Normalized message model shared by every provider."""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing_extensions import Annotated


class WireModel(BaseModel):
    """Base for models that travel to the browser with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class _Part(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class TextPart(_Part):
    type: Literal["text"] = "text"
    text: str


class ToolUsePart(_Part):
    type: Literal["tool_use"] = "tool_use"
    tool_use_id: str
    tool_name: str
    input: Optional[Dict[str, Any]] = None


class ToolResultPart(_Part):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    output: Any = None
    is_error: bool = False


class ReasoningPart(_Part):
    type: Literal["reasoning"] = "reasoning"
    text: str


class ErrorPart(_Part):
    type: Literal["error"] = "error"
    message: str
    code: Optional[str] = None


class SessionResultPart(_Part):
    """Terminating summary of a provider run (cost, turns, resume id)."""

    type: Literal["session_result"] = "session_result"
    total_cost_usd: float = 0.0
    num_turns: int = 0
    provider_session_id: Optional[str] = None
    is_error: bool = False


ContentPart = Annotated[
    Union[TextPart, ToolUsePart, ToolResultPart, ReasoningPart, ErrorPart, SessionResultPart],
    Field(discriminator="type"),
]

Role = Literal["user", "assistant", "system"]


class NormalizedMessage(WireModel):
    """
    Provider-independent conversation message.

    Messages are immutable once produced; the registry re-indexes them with
    ``model_copy(update=...)`` so indices stay contiguous within a session.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    role: Role
    parts: List[ContentPart] = Field(default_factory=list)
    index: int = 0
    thinking_duration_ms: Optional[int] = None

    @property
    def has_reasoning(self) -> bool:
        return any(isinstance(p, ReasoningPart) for p in self.parts)

    @property
    def text(self) -> str:
        """Concatenated text parts."""
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def session_result(self) -> Optional[SessionResultPart]:
        for part in self.parts:
            if isinstance(part, SessionResultPart):
                return part
        return None

    def tool_uses(self) -> List[ToolUsePart]:
        return [p for p in self.parts if isinstance(p, ToolUsePart)]

    def tool_results(self) -> List[ToolResultPart]:
        return [p for p in self.parts if isinstance(p, ToolResultPart)]


def text_message(role: Role, text: str) -> NormalizedMessage:
    """Shortcut for a single-text-part message."""
    return NormalizedMessage(role=role, parts=[TextPart(text=text)])
