"""Shared fixtures for Session Relay tests."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List

import pytest

from session_relay.config import Settings
from session_relay.providers import EchoAdapter, ProviderRegistry
from session_relay.registry import SessionRegistry
from session_relay.watcher import SessionWatcher

API_PASSWORD = "test-password"


class RecordingSubscriber:
    """Subscriber that keeps every frame it receives."""

    def __init__(self) -> None:
        self.frames: List[Dict[str, Any]] = []
        self.is_open = True

    def deliver(self, frame: Dict[str, Any]) -> None:
        self.frames.append(frame)

    def of_type(self, kind: str) -> List[Dict[str, Any]]:
        return [f for f in self.frames if f.get("type") == kind]

    @property
    def statuses(self) -> List[str]:
        return [f["status"] for f in self.of_type("status")]


class FailingSubscriber(RecordingSubscriber):
    """Subscriber whose socket is broken."""

    def deliver(self, frame: Dict[str, Any]) -> None:
        raise ConnectionError("socket closed")


class ManualClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


async def wait_for_status(session, *statuses, timeout: float = 2.0) -> None:
    """Poll until the session reaches one of ``statuses``."""
    wanted = {getattr(s, "value", s) for s in statuses}
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while session.status.value not in wanted:
        if loop.time() > deadline:
            raise AssertionError(f"status stayed {session.status.value}, wanted {wanted}")
        await asyncio.sleep(0.01)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def watcher():
    return SessionWatcher(poll_interval=0.05)


@pytest.fixture
def providers():
    registry = ProviderRegistry(default="echo")
    registry.register(EchoAdapter())
    return registry


@pytest.fixture
def registry(watcher, providers, clock, tmp_path):
    return SessionRegistry(
        watcher=watcher,
        providers=providers,
        max_sessions=5,
        ttl_seconds=3600,
        default_cwd=str(tmp_path),
        clock=clock,
    )


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the developer's environment and home directory."""
    projects_dir = tmp_path / "projects"
    projects_dir.mkdir()
    return Settings(
        _env_file=None,
        API_PASSWORD=API_PASSWORD,
        DEFAULT_PROVIDER="echo",
        ENABLE_ECHO_PROVIDER=True,
        DEFAULT_CWD=str(tmp_path),
        BROWSE_ROOT=str(tmp_path),
        CLAUDE_PROJECTS_DIR=str(projects_dir),
        TRANSCRIPT_POLL_INTERVAL=0.05,
        WS_PING_INTERVAL=30,
    )
