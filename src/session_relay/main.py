"""Main FastAPI application with WebSocket support."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import __version__
from .auth import TokenAuthenticator, require_auth
from .config import Settings, settings as default_settings
from .exceptions import HistoryNotFoundError, InvalidCwdError, RelayError, SessionNotFoundError
from .logging_config import setup_logging
from .models.session import CreateSessionRequest, SessionDetail, SessionSummary
from .providers import ProviderRegistry
from .providers.claude_agent_sdk import ClaudeAdapter
from .providers.echo import EchoAdapter
from .registry import SessionRegistry
from .task_extractor import extract_tasks
from .watcher import SessionWatcher
from .websocket import SessionStreamHandler

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500


async def _cleanup_loop(registry: SessionRegistry, interval: float) -> None:
    """Background task that evicts expired sessions."""
    while True:
        try:
            await asyncio.sleep(interval)
            registry.evict()
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Error in cleanup loop: {e}", exc_info=True)


def _resolve_cwd(cwd: str, browse_root: Path) -> Path:
    """Resolve a client-supplied directory, keeping it under the browse root."""
    if "\x00" in cwd:
        raise InvalidCwdError("invalid cwd")
    resolved = (browse_root / Path(cwd).expanduser()).resolve()
    if resolved != browse_root and not resolved.is_relative_to(browse_root):
        raise InvalidCwdError("cwd must be inside the browse root")
    return resolved


def build_providers(app_settings: Settings) -> ProviderRegistry:
    providers = ProviderRegistry(default=app_settings.DEFAULT_PROVIDER)
    providers.register(ClaudeAdapter(projects_dir=app_settings.CLAUDE_PROJECTS_DIR))
    if app_settings.ENABLE_ECHO_PROVIDER:
        providers.register(EchoAdapter())
    return providers


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    """Build the application; tests pass their own settings."""
    app_settings = app_settings or default_settings
    setup_logging(level=app_settings.LOG_LEVEL, debug=app_settings.DEBUG)

    browse_root = Path(app_settings.BROWSE_ROOT).expanduser().resolve()
    watcher = SessionWatcher(poll_interval=app_settings.TRANSCRIPT_POLL_INTERVAL)
    providers = build_providers(app_settings)
    registry = SessionRegistry(
        watcher=watcher,
        providers=providers,
        max_sessions=app_settings.MAX_SESSIONS,
        ttl_seconds=app_settings.SESSION_TTL_SECONDS,
        allow_bypass_permissions=app_settings.ALLOW_BYPASS_PERMISSIONS,
        default_cwd=str(Path(app_settings.DEFAULT_CWD).expanduser().resolve()),
        default_permission_mode=app_settings.DEFAULT_PERMISSION_MODE,
        max_turns=app_settings.MAX_TURNS,
    )
    authenticator = TokenAuthenticator(app_settings.API_PASSWORD)
    stream_handler = SessionStreamHandler(
        registry=registry,
        watcher=watcher,
        authenticator=authenticator,
        ping_interval=app_settings.WS_PING_INTERVAL,
        auth_timeout=app_settings.WS_AUTH_TIMEOUT,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan: startup and shutdown."""
        logger.info(f"Starting {app_settings.PROJECT_NAME}...")
        logger.info(f"Providers: {[p.id for p in providers.all()]} (default: {providers.default})")
        if not authenticator.enabled:
            logger.warning("API_PASSWORD is not set; every authenticated request will be rejected")

        cleanup_task = asyncio.create_task(
            _cleanup_loop(registry, app_settings.CLEANUP_INTERVAL_SECONDS)
        )
        logger.info(f"{app_settings.PROJECT_NAME} started successfully")

        yield

        logger.info(f"Shutting down {app_settings.PROJECT_NAME}...")
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
        await registry.shutdown()
        await watcher.shutdown()
        logger.info("Shutdown complete")

    app = FastAPI(
        title=app_settings.PROJECT_NAME,
        version=__version__,
        debug=app_settings.DEBUG,
        lifespan=lifespan,
    )
    app.state.settings = app_settings
    app.state.registry = registry
    app.state.watcher = watcher
    app.state.providers = providers
    app.state.authenticator = authenticator
    app.state.started_at = time.monotonic()

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message, "code": exc.code},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg', 'invalid value')}" if field else "invalid request"
        return JSONResponse(status_code=400, content={"error": message, "code": "invalid_request"})

    @app.get("/healthz")
    async def health_check() -> Dict[str, Any]:
        """Health check endpoint."""
        return {
            "status": "ok",
            "uptime": round(time.monotonic() - app.state.started_at, 1),
            "sessions": {"active": registry.count_active(), "total": len(registry)},
            "version": __version__,
        }

    api = APIRouter(prefix="/api", dependencies=[Depends(require_auth)])

    @api.get("/sessions")
    async def list_sessions(cwd: Optional[str] = Query(default=None)) -> List[Dict[str, Any]]:
        """Live sessions merged with transcript history, newest first."""
        cwd_filter = str(_resolve_cwd(cwd, browse_root)) if cwd is not None else None

        live: Dict[str, SessionSummary] = {}
        for session in registry.list_sessions():
            if cwd_filter is None or session.cwd == cwd_filter:
                live[session.id] = session.to_summary()

        merged = list(live.values())
        for provider in providers.all():
            for summary in await provider.list_sessions(cwd_filter):
                if summary.id not in live:
                    merged.append(summary)
                    live[summary.id] = summary

        merged.sort(key=lambda s: s.last_modified or "", reverse=True)
        return [s.to_wire() for s in merged]

    @api.post("/sessions", status_code=201)
    async def create_session(request: CreateSessionRequest) -> Dict[str, Any]:
        if request.cwd is not None:
            request = request.model_copy(update={"cwd": str(_resolve_cwd(request.cwd, browse_root))})
        session = await registry.create(request)
        return session.to_detail(app_settings.TASK_ID_PATTERN).to_wire()

    async def _history_detail(session_id: str) -> SessionDetail:
        for provider in providers.all():
            summary = await provider.get_session_summary(session_id)
            if summary is None:
                continue
            messages = await provider.get_history(session_id)
            return SessionDetail(
                **summary.model_dump(),
                provider_session_id=session_id,
                messages=messages,
                tasks=extract_tasks(messages, app_settings.TASK_ID_PATTERN),
            )
        raise SessionNotFoundError(session_id)

    @api.get("/sessions/{session_id}")
    async def get_session(session_id: str) -> Dict[str, Any]:
        session = registry.find(session_id)
        if session is not None:
            return session.to_detail(app_settings.TASK_ID_PATTERN).to_wire()
        detail = await _history_detail(session_id)
        return detail.to_wire()

    @api.get("/sessions/{session_id}/messages")
    async def get_session_messages(
        session_id: str,
        before: Optional[int] = Query(default=None, ge=0),
        limit: int = Query(default=50, ge=1, le=MAX_PAGE_SIZE),
    ) -> Dict[str, Any]:
        """Page backwards through a session's messages."""
        session = registry.find(session_id)
        if session is not None:
            history = [m for m in session.messages if before is None or m.index < before]
            window = history[-limit:]
            has_more = len(history) > len(window)
        else:
            for provider in providers.all():
                try:
                    page = await provider.get_messages(session_id, before=before, limit=limit)
                except HistoryNotFoundError:
                    continue
                window, has_more = page.messages, page.has_more
                break
            else:
                raise SessionNotFoundError(session_id)

        return {
            "messages": [m.to_wire() for m in window],
            "hasMore": has_more,
            "oldestIndex": window[0].index if window else None,
        }

    @api.delete("/sessions/{session_id}")
    async def delete_session(session_id: str) -> Dict[str, Any]:
        session = registry.interrupt(session_id)
        return {"id": session.id, "status": session.status.value}

    app.include_router(api)

    @app.websocket("/api/sessions/{session_id}/stream")
    async def session_stream(websocket: WebSocket, session_id: str) -> None:
        await stream_handler.handle(websocket, session_id)

    return app
