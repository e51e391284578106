"""WebSocket transport: per-connection writer, auth frame and frame dispatch."""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from .auth import TokenAuthenticator
from .exceptions import RelayError
from .models.frames import (
    ApproveFrame,
    AuthFrame,
    DenyFrame,
    ErrorFrame,
    InterruptFrame,
    PingFrame,
    PromptFrame,
    SetModeFrame,
    parse_client_frame,
)
from .registry import SessionRegistry
from .watcher import SessionWatcher

logger = logging.getLogger(__name__)

# Close codes
WS_CLOSE_UNAUTHORIZED = 4001
WS_CLOSE_NOT_FOUND = 4004
WS_CLOSE_TOO_SLOW = 1013

# Frames queued for one socket before it is considered stuck
MAX_QUEUED_FRAMES = 5000


class WebSocketSubscriber:
    """
    Watcher subscriber backed by a WebSocket.

    ``deliver`` only enqueues; a writer task sends frames in order, so a slow
    socket never blocks a provider run or other subscribers.
    """

    def __init__(self, websocket: WebSocket, session_id: str) -> None:
        self.websocket = websocket
        self.session_id = session_id
        self.queue: asyncio.Queue[Optional[Dict[str, Any]]] = asyncio.Queue(maxsize=MAX_QUEUED_FRAMES)
        self._closed = False
        self._writer: Optional[asyncio.Task[None]] = None

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    def deliver(self, frame: Dict[str, Any]) -> None:
        if self._closed:
            raise ConnectionError("subscriber closed")
        try:
            self.queue.put_nowait(frame)
        except asyncio.QueueFull:
            self._closed = True
            raise ConnectionError(f"send queue full ({MAX_QUEUED_FRAMES} frames)")

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop())

    async def _write_loop(self) -> None:
        while True:
            frame = await self.queue.get()
            if frame is None:
                break
            try:
                await self.websocket.send_json(frame)
            except Exception as e:
                logger.info(f"[WS] Send failed for {self.session_id}: {e}")
                self._closed = True
                break
            if self._closed and self.queue.empty():
                # Overflowed earlier; let the client reconnect and replay
                await self.websocket.close(code=WS_CLOSE_TOO_SLOW, reason="too slow")
                break

    async def close(self) -> None:
        self._closed = True
        if self._writer is None:
            return
        if not self._writer.done():
            self._writer.cancel()
        try:
            await self._writer
        except asyncio.CancelledError:
            pass


async def receive_frame_data(websocket: WebSocket) -> Any:
    """
    Receive one client message and decode it as JSON.

    Raises ValueError for binary or non-JSON messages and WebSocketDisconnect
    when the client goes away.
    """
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
    text = message.get("text")
    if text is None:
        raise ValueError("binary frames are not supported")
    return json.loads(text)


class SessionStreamHandler:
    """Serves ``/api/sessions/{id}/stream`` connections."""

    def __init__(
        self,
        registry: SessionRegistry,
        watcher: SessionWatcher,
        authenticator: TokenAuthenticator,
        ping_interval: float = 25,
        auth_timeout: float = 10,
    ) -> None:
        self.registry = registry
        self.watcher = watcher
        self.authenticator = authenticator
        self.ping_interval = ping_interval
        self.auth_timeout = auth_timeout

    async def handle(self, websocket: WebSocket, session_id: str) -> None:
        await websocket.accept()
        if not await self._authenticate(websocket, session_id):
            return
        if not await self._ensure_channel(websocket, session_id):
            return

        subscriber = WebSocketSubscriber(websocket, session_id)
        subscriber.start()
        self.watcher.subscribe(session_id, subscriber)
        ping_task = asyncio.create_task(self._ping_loop(subscriber))
        logger.info(f"[WS] Client connected to {session_id}")

        try:
            await self._receive_loop(websocket, session_id, subscriber)
        except WebSocketDisconnect as e:
            logger.info(f"[WS] Client disconnected from {session_id} (code: {e.code})")
        finally:
            ping_task.cancel()
            self.watcher.unsubscribe(session_id, subscriber)
            await subscriber.close()

    async def _authenticate(self, websocket: WebSocket, session_id: str) -> bool:
        """The first frame must be ``auth`` with the API password."""
        try:
            data = await asyncio.wait_for(receive_frame_data(websocket), timeout=self.auth_timeout)
            frame = parse_client_frame(data)
        except WebSocketDisconnect:
            return False
        except (asyncio.TimeoutError, ValidationError, ValueError):
            frame = None

        if not isinstance(frame, AuthFrame) or not self.authenticator.check_token(frame.token):
            logger.warning(f"[WS] Authentication failed for {session_id}")
            await websocket.close(code=WS_CLOSE_UNAUTHORIZED, reason="unauthorized")
            return False
        return True

    async def _ensure_channel(self, websocket: WebSocket, session_id: str) -> bool:
        """Live sessions stream from the registry; others follow their transcript."""
        if self.registry.find(session_id) is not None or self.watcher.is_tailing(session_id):
            return True

        for provider in self.registry.providers.all():
            path = await provider.get_session_file_path(session_id)
            if path is not None:
                await self.watcher.attach_transcript(session_id, path, provider)
                return True

        logger.info(f"[WS] Unknown session {session_id}")
        await websocket.send_json(ErrorFrame(message="Session not found", code="session_not_found").to_wire())
        await websocket.close(code=WS_CLOSE_NOT_FOUND, reason="session not found")
        return False

    async def _ping_loop(self, subscriber: WebSocketSubscriber) -> None:
        while True:
            await asyncio.sleep(self.ping_interval)
            try:
                subscriber.deliver(PingFrame().to_wire())
            except ConnectionError:
                break

    async def _receive_loop(
        self, websocket: WebSocket, session_id: str, subscriber: WebSocketSubscriber
    ) -> None:
        while True:
            try:
                data = await receive_frame_data(websocket)
            except ValueError as e:
                logger.warning(f"[WS] Dropping unreadable frame from {session_id}: {e}")
                continue
            try:
                frame = parse_client_frame(data)
            except ValidationError as e:
                logger.warning(f"[WS] Dropping malformed frame from {session_id}: {e.error_count()} error(s)")
                continue
            logger.debug(f"[WS] {session_id} <- {frame.type}")
            await self._dispatch(session_id, frame, subscriber)

    async def _dispatch(self, session_id: str, frame: Any, subscriber: WebSocketSubscriber) -> None:
        # Action errors go to the requesting client only
        try:
            if isinstance(frame, PromptFrame):
                if self.registry.find(session_id) is None:
                    provider = self.watcher.transcript_provider(session_id)
                    await self.registry.resume_history(
                        session_id, frame.text, provider_id=provider.id if provider else None
                    )
                else:
                    await self.registry.send_prompt(session_id, frame.text)
            elif isinstance(frame, ApproveFrame):
                ok = await self.registry.handle_approval(
                    session_id,
                    frame.tool_use_id,
                    always_allow=frame.always_allow,
                    answers=frame.answers,
                    clear_context=frame.clear_context,
                    target_mode=frame.target_mode,
                )
                if not ok:
                    self._reply_error(subscriber, "No pending approval for this tool call", "approval_mismatch")
            elif isinstance(frame, DenyFrame):
                if not self.registry.handle_deny(session_id, frame.tool_use_id, frame.message):
                    self._reply_error(subscriber, "No pending approval for this tool call", "approval_mismatch")
            elif isinstance(frame, InterruptFrame):
                self.registry.interrupt(session_id)
            elif isinstance(frame, SetModeFrame):
                self.registry.set_mode(session_id, frame.mode)
        except RelayError as e:
            logger.info(f"[WS] {frame.type} rejected for {session_id}: {e.message}")
            self._reply_error(subscriber, e.message, e.code)

    def _reply_error(self, subscriber: WebSocketSubscriber, message: str, code: str) -> None:
        try:
            subscriber.deliver(ErrorFrame(message=message, code=code).to_wire())
        except ConnectionError:
            pass
