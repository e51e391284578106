"""Tests for thinking durations computed from transcript timestamps."""

from session_relay.models.messages import NormalizedMessage, ReasoningPart, TextPart
from session_relay.thinking import annotate_thinking_durations, parse_timestamp


def user(text="hi"):
    return NormalizedMessage(role="user", parts=[TextPart(text=text)])


def thinking_reply():
    return NormalizedMessage(role="assistant", parts=[
        ReasoningPart(text="hmm"), TextPart(text="answer"),
    ])


def test_anchor_is_nearest_timestamped_entry():
    messages = annotate_thinking_durations([
        ("2025-01-01T00:00:00Z", user()),
        ("2025-01-01T00:00:08Z", None),  # tool event, not displayed
        ("2025-01-01T00:00:10Z", thinking_reply()),
    ])

    assert len(messages) == 2
    assert messages[1].thinking_duration_ms == 2000


def test_entries_without_timestamp_do_not_move_anchor():
    messages = annotate_thinking_durations([
        ("2025-01-01T00:00:00.000Z", user()),
        (None, None),
        ("2025-01-01T00:00:01.500Z", thinking_reply()),
    ])

    assert messages[1].thinking_duration_ms == 1500


def test_missing_timestamps_leave_duration_unset():
    messages = annotate_thinking_durations([
        (None, user()),
        ("2025-01-01T00:00:10Z", thinking_reply()),
        ("2025-01-01T00:00:11Z", user()),
        (None, thinking_reply()),
    ])

    assert messages[1].thinking_duration_ms is None
    assert messages[3].thinking_duration_ms is None


def test_messages_without_reasoning_are_untouched():
    reply = NormalizedMessage(role="assistant", parts=[TextPart(text="plain")])

    messages = annotate_thinking_durations([
        ("2025-01-01T00:00:00Z", user()),
        ("2025-01-01T00:00:05Z", reply),
    ])

    assert messages[1].thinking_duration_ms is None


def test_clock_skew_clamps_to_zero():
    messages = annotate_thinking_durations([
        ("2025-01-01T00:00:10Z", user()),
        ("2025-01-01T00:00:09Z", thinking_reply()),
    ])

    assert messages[1].thinking_duration_ms == 0


def test_parse_timestamp():
    assert parse_timestamp("2025-01-01T00:00:00Z") == parse_timestamp("2025-01-01T00:00:00+00:00")
    assert parse_timestamp("2025-01-01T00:00:00").tzinfo is not None
    assert parse_timestamp("not a date") is None
    assert parse_timestamp("") is None
    assert parse_timestamp(12) is None
