"""Tests for reading Claude Code transcripts from disk."""

import json
import os

import pytest

from session_relay.exceptions import HistoryNotFoundError
from session_relay.models.messages import ReasoningPart, ToolResultPart, ToolUsePart
from session_relay.providers.claude_agent_sdk import ClaudeAdapter
from session_relay.providers.claude_transcripts import (
    TranscriptStore,
    clean_user_text,
    clear_history_cache,
    mangle_cwd,
    message_from_event,
    messages_from_lines,
)

CWD = "/home/dev/my.app"


def event(event_type, content, **extra):
    role = "user" if event_type == "user" else "assistant"
    return {"type": event_type, "message": {"role": role, "content": content}, **extra}


def write_transcript(projects_dir, session_id, events, cwd=CWD):
    project = projects_dir / mangle_cwd(cwd)
    project.mkdir(parents=True, exist_ok=True)
    path = project / f"{session_id}.jsonl"
    path.write_text("".join(json.dumps(e) + "\n" for e in events))
    return path


@pytest.fixture(autouse=True)
def fresh_cache():
    clear_history_cache()
    yield
    clear_history_cache()


def test_mangle_cwd():
    assert mangle_cwd("/home/dev/my.app") == "-home-dev-my-app"


def test_clean_user_text_strips_reminders():
    text = "fix it<system-reminder>internal note</system-reminder>"

    assert clean_user_text(text) == "fix it"


def test_clean_user_text_renders_commands():
    text = "<command-name>/review</command-name><command-args>src/app.py</command-args>"

    assert clean_user_text(text) == "/review src/app.py"
    assert clean_user_text("<command-name>clear</command-name>") == "/clear"


@pytest.mark.parametrize("extra", [{"isMeta": True}, {"isSynthetic": True}, {"isSidechain": True}])
def test_hidden_events_are_skipped(extra):
    assert message_from_event(event("user", "hi", **extra)) is None


def test_non_conversation_events_are_skipped():
    assert message_from_event({"type": "summary", "summary": "x"}) is None
    assert message_from_event({"type": "user"}) is None


def test_assistant_blocks_are_normalized():
    message = message_from_event(event("assistant", [
        {"type": "thinking", "thinking": "let me see"},
        {"type": "text", "text": "Done"},
        {"type": "tool_use", "id": "toolu_1", "name": "Read", "input": {"file_path": "a.py"}},
    ]))

    assert isinstance(message.parts[0], ReasoningPart)
    assert message.text == "Done"
    assert message.parts[2] == ToolUsePart(tool_use_id="toolu_1", tool_name="Read", input={"file_path": "a.py"})


def test_tool_results_are_normalized():
    message = message_from_event(event("user", [
        {"type": "tool_result", "tool_use_id": "toolu_1", "content": "contents", "is_error": False},
    ]))

    assert message.parts == [ToolResultPart(tool_use_id="toolu_1", output="contents")]


def test_messages_from_lines_indexes_and_times_thinking():
    lines = [
        json.dumps(event("user", "why?", timestamp="2025-01-01T00:00:00Z")),
        "not json",
        "",
        json.dumps({"type": "progress", "timestamp": "2025-01-01T00:00:08Z"}),
        json.dumps(event("assistant", [
            {"type": "thinking", "thinking": "hmm"},
            {"type": "text", "text": "because"},
        ], timestamp="2025-01-01T00:00:10Z")),
    ]

    messages = messages_from_lines(lines, start_index=4)

    assert [m.index for m in messages] == [4, 5]
    assert messages[1].thinking_duration_ms == 2000


@pytest.mark.asyncio
async def test_get_history(tmp_path):
    write_transcript(tmp_path, "abc", [
        event("user", "hello"),
        event("assistant", [{"type": "text", "text": "hi"}]),
    ])
    store = TranscriptStore(str(tmp_path))

    messages = await store.get_history("abc")

    assert [(m.role, m.text, m.index) for m in messages] == [("user", "hello", 0), ("assistant", "hi", 1)]


@pytest.mark.asyncio
async def test_get_history_missing(tmp_path):
    store = TranscriptStore(str(tmp_path))

    with pytest.raises(HistoryNotFoundError, match="Session file not found"):
        await store.get_history("missing")


def test_find_session_file_rejects_paths(tmp_path):
    store = TranscriptStore(str(tmp_path))

    assert store.find_session_file("../etc/passwd") is None
    assert store.find_session_file("") is None


@pytest.mark.asyncio
async def test_list_sessions_reads_metadata(tmp_path):
    write_transcript(tmp_path, "abc", [
        {"type": "summary", "summary": "ignored"},
        event("user", "<system-reminder>x</system-reminder>Refactor the parser",
              slug="refactor-parser", cwd=CWD, timestamp="2025-01-01T00:00:00Z"),
    ])
    store = TranscriptStore(str(tmp_path))

    sessions = await store.list_sessions(CWD)

    assert len(sessions) == 1
    summary = sessions[0]
    assert summary.id == "abc"
    assert summary.status == "history"
    assert summary.slug == "refactor-parser"
    assert summary.cwd == CWD
    assert summary.summary == "Refactor the parser"
    assert summary.created_at == "2025-01-01T00:00:00Z"
    assert summary.last_modified is not None


@pytest.mark.asyncio
async def test_list_sessions_dedupes_and_sorts_by_mtime(tmp_path):
    old = write_transcript(tmp_path, "dup", [event("user", "old copy")], cwd="/a")
    new = write_transcript(tmp_path, "dup", [event("user", "new copy")], cwd="/b")
    other = write_transcript(tmp_path, "other", [event("user", "other")], cwd="/b")
    os.utime(old, (1_000, 1_000))
    os.utime(new, (3_000, 3_000))
    os.utime(other, (2_000, 2_000))
    store = TranscriptStore(str(tmp_path))

    sessions = await store.list_sessions()

    assert [s.id for s in sessions] == ["dup", "other"]
    assert sessions[0].summary == "new copy"


@pytest.mark.asyncio
async def test_summary_cache_follows_mtime(tmp_path):
    path = write_transcript(tmp_path, "abc", [event("user", "first")])
    os.utime(path, (1_000, 1_000))
    store = TranscriptStore(str(tmp_path))
    assert (await store.get_summary("abc")).summary == "first"

    path.write_text(json.dumps(event("user", "second")) + "\n")
    os.utime(path, (1_000, 1_000))
    assert (await store.get_summary("abc")).summary == "first"

    os.utime(path, (2_000, 2_000))
    assert (await store.get_summary("abc")).summary == "second"


@pytest.mark.asyncio
async def test_adapter_paginates_history(tmp_path):
    write_transcript(tmp_path, "abc", [event("user", f"m{i}") for i in range(5)])
    adapter = ClaudeAdapter(projects_dir=str(tmp_path))

    page = await adapter.get_messages("abc", limit=2)
    assert [m.text for m in page.messages] == ["m3", "m4"]
    assert page.has_more is True

    page = await adapter.get_messages("abc", before=page.oldest_index, limit=5)
    assert [m.index for m in page.messages] == [0, 1, 2]
    assert page.has_more is False
