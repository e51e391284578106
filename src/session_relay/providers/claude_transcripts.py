"""Read-only access to Claude Code's local transcript storage."""

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiofiles

from ..exceptions import HistoryNotFoundError
from ..models.messages import (
    ContentPart,
    NormalizedMessage,
    ReasoningPart,
    TextPart,
    ToolResultPart,
    ToolUsePart,
)
from ..models.session import SessionStatus, SessionSummary
from ..thinking import TranscriptEntry, annotate_thinking_durations

logger = logging.getLogger(__name__)

SUMMARY_MAX_LENGTH = 120

_SYSTEM_REMINDER_RE = re.compile(r"<system-reminder>.*?</system-reminder>", re.DOTALL)
_COMMAND_NAME_RE = re.compile(r"<command-name>(.*?)</command-name>", re.DOTALL)
_COMMAND_ARGS_RE = re.compile(r"<command-args>(.*?)</command-args>", re.DOTALL)

# Listing cache: transcript path -> (mtime, summary)
_summary_cache: Dict[Path, Tuple[float, SessionSummary]] = {}


def clear_history_cache() -> None:
    """Forget cached transcript summaries."""
    _summary_cache.clear()


def mangle_cwd(cwd: str) -> str:
    """Claude Code's project directory name for a working directory."""
    return re.sub(r"[/.]", "-", cwd)


def clean_user_text(text: str) -> str:
    """Strip injected reminders and render slash-command markup as typed."""
    text = _SYSTEM_REMINDER_RE.sub("", text)
    name = _COMMAND_NAME_RE.search(text)
    if name:
        command = name.group(1).strip()
        if not command.startswith("/"):
            command = "/" + command
        args = _COMMAND_ARGS_RE.search(text)
        arg_text = args.group(1).strip() if args else ""
        return f"{command} {arg_text}".strip()
    return text.strip()


def _user_parts(content: Any) -> List[ContentPart]:
    if isinstance(content, str):
        text = clean_user_text(content)
        return [TextPart(text=text)] if text else []

    parts: List[ContentPart] = []
    for block in content if isinstance(content, list) else []:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text" and isinstance(block.get("text"), str):
            text = clean_user_text(block["text"])
            if text:
                parts.append(TextPart(text=text))
        elif block_type == "tool_result":
            parts.append(ToolResultPart(
                tool_use_id=str(block.get("tool_use_id", "")),
                output=block.get("content"),
                is_error=bool(block.get("is_error", False)),
            ))
    return parts


def _assistant_parts(content: Any) -> List[ContentPart]:
    if isinstance(content, str):
        return [TextPart(text=content)] if content else []

    parts: List[ContentPart] = []
    for block in content if isinstance(content, list) else []:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text" and block.get("text"):
            parts.append(TextPart(text=block["text"]))
        elif block_type == "thinking" and block.get("thinking"):
            parts.append(ReasoningPart(text=block["thinking"]))
        elif block_type == "tool_use":
            tool_input = block.get("input")
            parts.append(ToolUsePart(
                tool_use_id=str(block.get("id", "")),
                tool_name=str(block.get("name", "")),
                input=tool_input if isinstance(tool_input, dict) else None,
            ))
    return parts


def message_from_event(event: Dict[str, Any], index: int = 0) -> Optional[NormalizedMessage]:
    """Normalize one decoded transcript line, or None if it is not shown."""
    event_type = event.get("type")
    if event_type not in ("user", "assistant"):
        return None
    if event.get("isMeta") or event.get("isSynthetic") or event.get("isSidechain"):
        return None
    message = event.get("message")
    if not isinstance(message, dict):
        return None

    content = message.get("content")
    if event_type == "user":
        parts = _user_parts(content)
    else:
        parts = _assistant_parts(content)
    if not parts:
        return None
    return NormalizedMessage(role=event_type, parts=parts, index=index)


def decode_line(line: str) -> Optional[Dict[str, Any]]:
    if not line.strip():
        return None
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        return None
    return event if isinstance(event, dict) else None


def normalize_line(line: str, index: int) -> Optional[NormalizedMessage]:
    event = decode_line(line)
    if event is None:
        return None
    return message_from_event(event, index)


def messages_from_lines(lines: List[str], start_index: int = 0) -> List[NormalizedMessage]:
    """
    Normalize transcript lines into indexed messages.

    Thinking durations are computed here from line timestamps, so it happens
    once per load.
    """
    entries: List[TranscriptEntry] = []
    for line in lines:
        event = decode_line(line)
        if event is None:
            continue
        entries.append((event.get("timestamp"), message_from_event(event)))

    messages = annotate_thinking_durations(entries)
    return [
        m.model_copy(update={"index": start_index + i})
        for i, m in enumerate(messages)
    ]


class TranscriptStore:
    """
    Read Claude Code's transcript files.

    Structure:
        {projects_dir}/{mangled-cwd}/
            └── {session-id}.jsonl
    """

    def __init__(self, projects_dir: str):
        self.projects_dir = Path(projects_dir).expanduser()
        logger.debug(f"[TRANSCRIPTS] Projects directory: {self.projects_dir}")

    def _project_dirs(self, cwd: Optional[str] = None) -> List[Path]:
        if cwd is not None:
            candidate = self.projects_dir / mangle_cwd(cwd)
            return [candidate] if candidate.is_dir() else []
        if not self.projects_dir.is_dir():
            return []
        return [p for p in self.projects_dir.iterdir() if p.is_dir()]

    def find_session_file(self, session_id: str) -> Optional[Path]:
        """Newest transcript with this id across all project directories."""
        if not session_id or "/" in session_id or "\\" in session_id or session_id.startswith("."):
            return None
        found: List[Path] = [
            path for project in self._project_dirs()
            if (path := project / f"{session_id}.jsonl").is_file()
        ]
        if not found:
            return None
        return max(found, key=lambda p: p.stat().st_mtime)

    async def read_lines(self, path: Path) -> List[str]:
        async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as f:
            content = await f.read()
        return content.splitlines()

    async def get_history(self, session_id: str) -> List[NormalizedMessage]:
        path = self.find_session_file(session_id)
        if path is None:
            raise HistoryNotFoundError(session_id)
        return messages_from_lines(await self.read_lines(path))

    async def _summarize(self, path: Path, mtime: float) -> SessionSummary:
        slug: Optional[str] = None
        cwd: Optional[str] = None
        summary: Optional[str] = None
        created_at: Optional[str] = None

        for line in await self.read_lines(path):
            event = decode_line(line)
            if event is None:
                continue
            if created_at is None and isinstance(event.get("timestamp"), str):
                created_at = event["timestamp"]
            if slug is None and isinstance(event.get("slug"), str):
                slug = event["slug"]
            if cwd is None and isinstance(event.get("cwd"), str):
                cwd = event["cwd"]
            if summary is None and event.get("type") == "user":
                message = message_from_event(event)
                if message is not None and message.text:
                    summary = message.text[:SUMMARY_MAX_LENGTH]
            if slug and cwd and summary:
                break

        return SessionSummary(
            id=path.stem,
            status=SessionStatus.HISTORY,
            cwd=cwd or "",
            provider="claude",
            created_at=created_at,
            last_modified=datetime.fromtimestamp(mtime, tz=timezone.utc).isoformat(),
            slug=slug,
            summary=summary,
        )

    async def _cached_summary(self, path: Path, mtime: float) -> SessionSummary:
        cached = _summary_cache.get(path)
        if cached and cached[0] == mtime:
            return cached[1]
        summary = await self._summarize(path, mtime)
        _summary_cache[path] = (mtime, summary)
        return summary

    async def get_summary(self, session_id: str) -> Optional[SessionSummary]:
        path = self.find_session_file(session_id)
        if path is None:
            return None
        return await self._cached_summary(path, path.stat().st_mtime)

    async def list_sessions(self, cwd: Optional[str] = None) -> List[SessionSummary]:
        """
        History sessions, newest first.

        The same session id can live in several project directories (moved
        or renamed projects); only the most recently modified copy is kept.
        """
        newest: Dict[str, Tuple[float, Path]] = {}
        for project in self._project_dirs(cwd):
            for path in project.glob("*.jsonl"):
                try:
                    mtime = path.stat().st_mtime
                except OSError:
                    continue
                current = newest.get(path.stem)
                if current is None or mtime > current[0]:
                    newest[path.stem] = (mtime, path)

        summaries: List[Tuple[float, SessionSummary]] = []
        for mtime, path in newest.values():
            try:
                summary = await self._cached_summary(path, mtime)
            except OSError as e:
                logger.warning(f"[TRANSCRIPTS] Could not read {path}: {e}")
                continue
            summaries.append((mtime, summary))

        summaries.sort(key=lambda item: item[0], reverse=True)
        return [s for _, s in summaries]
