"""Tests for wire models and client frame validation."""

import pytest
from pydantic import ValidationError

from session_relay.models.frames import (
    ApproveFrame,
    AuthFrame,
    GitDiffStatFrame,
    PromptFrame,
    SetModeFrame,
    StatusFrame,
    parse_client_frame,
)
from session_relay.models.git import GitDiffStat, GitFileStat
from session_relay.models.messages import (
    NormalizedMessage,
    ReasoningPart,
    SessionResultPart,
    TextPart,
    ToolUsePart,
)
from session_relay.models.session import SessionStatus


def test_message_wire_format_uses_camel_case():
    message = NormalizedMessage(
        role="assistant",
        parts=[ReasoningPart(text="hmm"), ToolUsePart(tool_use_id="t1", tool_name="Read", input={"file_path": "a"})],
        index=3,
        thinking_duration_ms=1200,
    )

    wire = message.to_wire()

    assert wire["thinkingDurationMs"] == 1200
    assert wire["parts"][1] == {
        "type": "tool_use", "toolUseId": "t1", "toolName": "Read", "input": {"file_path": "a"},
    }


def test_parts_parse_from_wire_by_discriminator():
    message = NormalizedMessage.model_validate({
        "role": "system",
        "parts": [{"type": "session_result", "totalCostUsd": 0.5, "numTurns": 2}],
    })

    assert isinstance(message.parts[0], SessionResultPart)
    assert message.session_result.num_turns == 2


def test_messages_are_immutable():
    message = NormalizedMessage(role="user", parts=[TextPart(text="hi")])

    with pytest.raises(ValidationError):
        message.index = 4


def test_parse_client_frames():
    assert parse_client_frame({"type": "auth", "token": "x"}) == AuthFrame(token="x")
    assert parse_client_frame({"type": "prompt", "text": "hi"}) == PromptFrame(text="hi")
    approve = parse_client_frame({
        "type": "approve", "toolUseId": "t1", "alwaysAllow": True, "clearContext": True, "targetMode": "plan",
    })
    assert approve == ApproveFrame(tool_use_id="t1", always_allow=True, clear_context=True, target_mode="plan")
    assert parse_client_frame({"type": "set_mode", "mode": "acceptEdits"}) == SetModeFrame(mode="acceptEdits")


@pytest.mark.parametrize("data", [
    {"type": "explode"},
    {"type": "prompt", "text": ""},
    {"type": "approve"},
    {"type": "set_mode", "mode": "yolo"},
    {"text": "no type"},
    "not an object",
])
def test_malformed_client_frames(data):
    with pytest.raises(ValidationError):
        parse_client_frame(data)


def test_status_frame_omits_nothing():
    assert StatusFrame(status=SessionStatus.COMPLETED).to_wire() == {
        "type": "status", "status": "completed", "error": None, "source": None,
    }


def test_git_diff_stat_totals():
    stat = GitDiffStat.from_files([
        GitFileStat(path="a.py", insertions=3, deletions=1),
        GitFileStat(path="b.png", binary=True),
    ])

    wire = GitDiffStatFrame(**stat.model_dump()).to_wire()

    assert wire["type"] == "git_diff_stat"
    assert wire["totalInsertions"] == 3
    assert wire["totalDeletions"] == 1
    assert wire["files"][1]["binary"] is True


def test_git_file_stat_rejects_negative_counts():
    with pytest.raises(ValidationError):
        GitFileStat(path="a.py", insertions=-1)


def test_session_status_groups():
    assert SessionStatus.WAITING_FOR_APPROVAL.is_busy
    assert SessionStatus.INTERRUPTED.is_terminal
    assert not SessionStatus.IDLE.is_busy
    assert not SessionStatus.HISTORY.is_terminal
