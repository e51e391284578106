"""Per-session event bus with buffered replay for late subscribers."""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiofiles
from typing_extensions import Protocol

from .models.frames import MessageFrame, ReplayCompleteFrame, StatusFrame
from .models.messages import NormalizedMessage
from .models.session import SessionStatus
from .providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

Frame = Dict[str, Any]

# Live-only frames; never replayed
UNBUFFERED_FRAMES = frozenset({"thinking_delta", "ping", "error", "replay_complete"})
# Frames where only the latest value matters
SLOT_FRAMES = frozenset({"git_diff_stat", "slash_commands"})
TERMINAL_STATUS_VALUES = frozenset(
    {SessionStatus.COMPLETED.value, SessionStatus.INTERRUPTED.value, SessionStatus.ERROR.value}
)


class Subscriber(Protocol):
    """Anything that can receive frames without blocking the caller."""

    @property
    def is_open(self) -> bool: ...

    def deliver(self, frame: Frame) -> None: ...


class SessionChannel:
    """Buffered event log and subscriber set for one session."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.buffer: List[Frame] = []
        self.slots: Dict[str, Frame] = {}
        self.subscribers: Dict[int, Subscriber] = {}
        # Transcript tailing (sessions this process does not run)
        self.tail_task: Optional[asyncio.Task[None]] = None
        self.tail_offset = 0
        self.tail_messages: List[NormalizedMessage] = []
        self.tail_provider: Optional[ProviderAdapter] = None
        self.attach_lock = asyncio.Lock()

    def replay_frames(self) -> List[Frame]:
        frames = list(self.buffer)
        for kind in ("slash_commands", "git_diff_stat"):
            if kind in self.slots:
                frames.append(self.slots[kind])
        frames.append(ReplayCompleteFrame().to_wire())
        return frames


async def read_new_lines(path: Path, offset: int) -> Tuple[List[str], int]:
    """
    Read complete lines appended after ``offset`` bytes.

    A trailing partial line is left for the next call.
    """
    async with aiofiles.open(path, "rb") as f:
        await f.seek(offset)
        chunk = await f.read()
    end = chunk.rfind(b"\n")
    if end < 0:
        return [], offset
    complete = chunk[: end + 1]
    return complete.decode("utf-8", errors="replace").splitlines(), offset + len(complete)


class SessionWatcher:
    """
    Fan events out to subscribers and keep what a late subscriber needs.

    Buffering policy:
    - thinking deltas, pings, errors and replay markers go out live only
    - git diff stats and slash commands keep only their latest value
    - a terminal status clears the git diff stat
    - everything else is appended to the session's buffer

    ``push_event`` and ``subscribe`` never await, so on the single event loop
    a subscriber sees the replay followed by live frames with no gap and no
    duplicate.
    """

    def __init__(self, poll_interval: float = 1.0) -> None:
        self.poll_interval = poll_interval
        self._channels: Dict[str, SessionChannel] = {}

    def open_channel(self, session_id: str) -> SessionChannel:
        channel = self._channels.get(session_id)
        if channel is None:
            channel = SessionChannel(session_id)
            self._channels[session_id] = channel
        return channel

    def get_channel(self, session_id: str) -> Optional[SessionChannel]:
        return self._channels.get(session_id)

    def close_channel(self, session_id: str) -> None:
        """Drop a session's buffer and stop tailing. Subscribers are not closed."""
        channel = self._channels.pop(session_id, None)
        if channel and channel.tail_task:
            channel.tail_task.cancel()

    def push_event(self, session_id: str, frame: Frame) -> None:
        channel = self.open_channel(session_id)
        kind = frame.get("type")

        if kind in SLOT_FRAMES:
            channel.slots[kind] = frame
        elif kind not in UNBUFFERED_FRAMES:
            channel.buffer.append(frame)
            if kind == "status" and frame.get("status") in TERMINAL_STATUS_VALUES:
                channel.slots.pop("git_diff_stat", None)

        self._broadcast(channel, frame)

    def _broadcast(self, channel: SessionChannel, frame: Frame) -> None:
        for key, subscriber in list(channel.subscribers.items()):
            if not subscriber.is_open:
                channel.subscribers.pop(key, None)
                continue
            try:
                subscriber.deliver(frame)
            except Exception as e:
                logger.warning(
                    f"[WATCHER] Dropping subscriber of {channel.session_id}: {e}"
                )
                channel.subscribers.pop(key, None)

    def subscribe(self, session_id: str, subscriber: Subscriber) -> None:
        """Replay buffered state to ``subscriber`` and add it to the live set."""
        channel = self.open_channel(session_id)
        for frame in channel.replay_frames():
            subscriber.deliver(frame)
        channel.subscribers[id(subscriber)] = subscriber
        logger.debug(
            f"[WATCHER] Subscribed to {session_id} "
            f"(replayed {len(channel.buffer)} frames, {len(channel.subscribers)} subscribers)"
        )

    def unsubscribe(self, session_id: str, subscriber: Subscriber) -> None:
        channel = self._channels.get(session_id)
        if channel is None:
            return
        channel.subscribers.pop(id(subscriber), None)
        if not channel.subscribers and channel.tail_task is not None:
            # Nobody is watching a transcript-backed session anymore
            self.close_channel(session_id)

    def subscriber_count(self, session_id: str) -> int:
        channel = self._channels.get(session_id)
        if channel is None:
            return 0
        return sum(1 for s in channel.subscribers.values() if s.is_open)

    # Transcript tailing

    def is_tailing(self, session_id: str) -> bool:
        channel = self._channels.get(session_id)
        return channel is not None and channel.tail_task is not None

    def transcript_provider(self, session_id: str) -> Optional[ProviderAdapter]:
        """Provider whose transcript is being followed for ``session_id``."""
        channel = self._channels.get(session_id)
        return channel.tail_provider if channel is not None else None

    async def attach_transcript(
        self, session_id: str, path: Path, provider: ProviderAdapter
    ) -> int:
        """
        Load a transcript into the session's buffer and keep following it.

        Returns the number of messages loaded. Concurrent callers for the
        same session share one load and one tail task.
        """
        channel = self.open_channel(session_id)
        async with channel.attach_lock:
            if channel.tail_task is not None:
                return len(channel.tail_messages)

            channel.tail_provider = provider
            await self._read_transcript(channel, path, provider)
            self.push_event(session_id, StatusFrame(status=SessionStatus.HISTORY).to_wire())
            channel.tail_task = asyncio.create_task(self._tail_loop(channel, path, provider))
        logger.info(
            f"[WATCHER] Following transcript for {session_id} "
            f"({len(channel.tail_messages)} messages)"
        )
        return len(channel.tail_messages)

    def detach_transcript(self, session_id: str) -> List[NormalizedMessage]:
        """Stop following a transcript; returns the messages seen so far."""
        channel = self._channels.get(session_id)
        if channel is None:
            return []
        if channel.tail_task is not None:
            channel.tail_task.cancel()
            channel.tail_task = None
        messages = channel.tail_messages
        channel.tail_messages = []
        return messages

    async def _read_transcript(
        self, channel: SessionChannel, path: Path, provider: ProviderAdapter
    ) -> None:
        lines, channel.tail_offset = await read_new_lines(path, channel.tail_offset)
        if not lines:
            return
        messages = provider.messages_from_lines(lines, len(channel.tail_messages))
        channel.tail_messages.extend(messages)
        for message in messages:
            self.push_event(channel.session_id, MessageFrame(message=message).to_wire())

    async def _tail_loop(
        self, channel: SessionChannel, path: Path, provider: ProviderAdapter
    ) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self._read_transcript(channel, path, provider)
            except OSError as e:
                logger.warning(f"[WATCHER] Transcript read failed for {channel.session_id}: {e}")

    async def shutdown(self) -> None:
        for session_id in list(self._channels):
            self.close_channel(session_id)
