"""Session table, lifecycle state machine and approval handshake."""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .exceptions import (
    HistoryNotFoundError,
    InvalidTransitionError,
    ModeChangeError,
    RelayError,
    SessionLimitError,
    SessionNotFoundError,
)
from .models.frames import (
    GitDiffStatFrame,
    MessageFrame,
    ModeChangedFrame,
    SessionRedirectedFrame,
    SlashCommandsFrame,
    StatusFrame,
    SubagentCompletedFrame,
    SubagentStartedFrame,
    SubagentToolCallFrame,
    ThinkingDeltaFrame,
    ToolApprovalRequestFrame,
)
from .models.git import GitDiffStat
from .models.messages import NormalizedMessage, WireModel, text_message
from .models.session import (
    RESUMABLE_STATUSES,
    CreateSessionRequest,
    PendingApprovalDTO,
    PermissionMode,
    SessionDetail,
    SessionStatus,
    SessionSummary,
)
from .providers import ProviderRegistry
from .providers.base import (
    ApprovalDecision,
    ProviderAdapter,
    ProviderSessionOptions,
    SubagentCompletedInfo,
    SubagentStartedInfo,
    SubagentToolCallInfo,
)
from .task_extractor import extract_tasks
from .watcher import SessionWatcher

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
DiffStatProvider = Callable[[str], Awaitable[Optional[GitDiffStat]]]

BYPASS_DISABLED_MESSAGE = (
    "bypassPermissions is disabled on this server (set ALLOW_BYPASS_PERMISSIONS to enable)"
)
CLEAR_CONTEXT_PROMPT = "Implement the following plan:\n\n{plan}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PendingApproval:
    """A tool call suspended until the operator answers."""

    def __init__(
        self,
        tool_name: str,
        tool_use_id: str,
        input: Dict[str, Any],
        future: "asyncio.Future[ApprovalDecision]",
    ) -> None:
        self.tool_name = tool_name
        self.tool_use_id = tool_use_id
        self.input = input
        self.future = future

    def resolve(self, decision: ApprovalDecision) -> bool:
        if self.future.done():
            return False
        self.future.set_result(decision)
        return True

    def to_dto(self) -> PendingApprovalDTO:
        return PendingApprovalDTO(
            tool_name=self.tool_name, tool_use_id=self.tool_use_id, input=self.input
        )


class Session:
    """Represents a single live session. Mutated only by the registry."""

    def __init__(
        self,
        session_id: str,
        provider: str,
        cwd: str,
        permission_mode: PermissionMode,
        created_at: datetime,
        model: Optional[str] = None,
        effort: Optional[str] = None,
        allowed_tools: Optional[List[str]] = None,
        provider_session_id: Optional[str] = None,
    ) -> None:
        self.id = session_id
        self.provider = provider
        self.cwd = cwd
        self.permission_mode: PermissionMode = permission_mode
        self.model = model
        self.effort = effort
        self.allowed_tools = allowed_tools
        self.provider_session_id = provider_session_id
        self.status = SessionStatus.IDLE
        self.created_at = created_at
        self.last_activity_at = created_at
        self.total_cost_usd = 0.0
        self.num_turns = 0
        self.last_error: Optional[str] = None
        self.always_allowed_tools: Set[str] = set()
        self.messages: List[NormalizedMessage] = []
        self.slash_commands: List[str] = []
        self.pending_approval: Optional[PendingApproval] = None
        self.abort_event = asyncio.Event()
        self.run_task: Optional[asyncio.Task[None]] = None
        self.approval_lock = asyncio.Lock()
        self.thinking_started_at: Optional[float] = None

    def touch(self, now: datetime) -> None:
        self.last_activity_at = now

    @property
    def is_running(self) -> bool:
        return self.run_task is not None and not self.run_task.done()

    def to_summary(self) -> SessionSummary:
        first_user = next((m for m in self.messages if m.role == "user" and m.text), None)
        return SessionSummary(
            id=self.id,
            status=self.status,
            cwd=self.cwd,
            provider=self.provider,
            permission_mode=self.permission_mode,
            model=self.model,
            created_at=self.created_at.isoformat(),
            last_modified=self.last_activity_at.isoformat(),
            summary=first_user.text[:120] if first_user else None,
            num_turns=self.num_turns,
            total_cost_usd=self.total_cost_usd,
            has_pending_approval=self.pending_approval is not None,
        )

    def to_detail(self, task_id_pattern: Optional[str] = None) -> SessionDetail:
        return SessionDetail(
            **self.to_summary().model_dump(),
            provider_session_id=self.provider_session_id,
            last_error=self.last_error,
            messages=list(self.messages),
            tasks=extract_tasks(self.messages, task_id_pattern),
            pending_approval=self.pending_approval.to_dto() if self.pending_approval else None,
            slash_commands=list(self.slash_commands),
        )


class SessionRegistry:
    """
    Owns live sessions and drives them through their lifecycle.

    Every provider event is turned into a frame and pushed to the watcher,
    which handles fan-out and replay. Eviction is explicit (``evict(now)``)
    so the scheduler and the clock stay outside.
    """

    def __init__(
        self,
        watcher: SessionWatcher,
        providers: ProviderRegistry,
        max_sessions: int = 50,
        ttl_seconds: int = 3600,
        allow_bypass_permissions: bool = False,
        default_cwd: str = ".",
        default_permission_mode: PermissionMode = "default",
        max_turns: Optional[int] = None,
        diff_stat_provider: Optional[DiffStatProvider] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.watcher = watcher
        self.providers = providers
        self.max_sessions = max_sessions
        self.ttl = timedelta(seconds=ttl_seconds)
        self.allow_bypass_permissions = allow_bypass_permissions
        self.default_cwd = default_cwd
        self.default_permission_mode: PermissionMode = default_permission_mode
        self.max_turns = max_turns
        self.diff_stat_provider = diff_stat_provider
        self.clock = clock
        self._sessions: Dict[str, Session] = {}
        self._lock = asyncio.Lock()

        logger.info(
            f"[REGISTRY] Initialized (max_sessions={max_sessions}, ttl={ttl_seconds}s, "
            f"bypass={'allowed' if allow_bypass_permissions else 'disabled'})"
        )

    # Lookup

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def find(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def list_sessions(self) -> List[Session]:
        return sorted(
            self._sessions.values(), key=lambda s: s.last_activity_at, reverse=True
        )

    def __len__(self) -> int:
        return len(self._sessions)

    def count_active(self) -> int:
        return sum(1 for s in self._sessions.values() if s.status.is_busy)

    # Creation

    def _check_mode(self, mode: PermissionMode) -> None:
        if mode == "bypassPermissions" and not self.allow_bypass_permissions:
            raise ModeChangeError(BYPASS_DISABLED_MESSAGE)

    async def _register(self, session: Session) -> None:
        async with self._lock:
            if len(self._sessions) >= self.max_sessions:
                raise SessionLimitError(self.max_sessions)
            if session.id in self._sessions:
                raise InvalidTransitionError(f"Session already exists: {session.id}")
            self._sessions[session.id] = session
        self.watcher.open_channel(session.id)

    async def create(self, request: CreateSessionRequest) -> Session:
        """
        Create a live session and start it if a prompt was given.

        Raises ProviderNotFoundError for an unknown provider, ModeChangeError
        for a disallowed permission mode and SessionLimitError at capacity.
        """
        provider = self.providers.get(request.provider)
        mode = request.permission_mode or self.default_permission_mode
        self._check_mode(mode)

        session = Session(
            session_id=str(uuid.uuid4()),
            provider=provider.id,
            cwd=request.cwd or self.default_cwd,
            permission_mode=mode,
            created_at=self.clock(),
            model=request.model,
            effort=request.effort,
            allowed_tools=request.allowed_tools,
            provider_session_id=request.resume_session_id,
        )
        if request.resume_session_id:
            try:
                session.messages = await provider.get_history(request.resume_session_id)
            except HistoryNotFoundError:
                logger.warning(
                    f"[REGISTRY] No transcript for {request.resume_session_id}; resuming without history"
                )

        await self._register(session)
        logger.info(
            f"[REGISTRY] Created session {session.id} "
            f"(provider={session.provider}, mode={mode}, cwd={session.cwd})"
        )
        if session.messages:
            for message in session.messages:
                self._push(session, MessageFrame(message=message))

        if request.prompt:
            self._start_run(session, request.prompt)
        else:
            self._set_status(session, SessionStatus.IDLE)
        return session

    async def resume_history(
        self,
        session_id: str,
        prompt: str,
        provider_id: Optional[str] = None,
        cwd: Optional[str] = None,
    ) -> Session:
        """
        Turn a transcript-only session into a live one and send ``prompt``.

        Messages already loaded by the watcher are reused so indices keep
        running on from the transcript.
        """
        provider = self.providers.get(provider_id)
        messages = self.watcher.detach_transcript(session_id)
        if not messages:
            messages = await provider.get_history(session_id)
        if cwd is None:
            summary = await provider.get_session_summary(session_id)
            cwd = summary.cwd if summary and summary.cwd else self.default_cwd

        session = Session(
            session_id=session_id,
            provider=provider.id,
            cwd=cwd,
            permission_mode=self.default_permission_mode,
            created_at=self.clock(),
            provider_session_id=session_id,
        )
        session.messages = list(messages)
        await self._register(session)
        logger.info(f"[REGISTRY] Resumed history session {session_id} ({len(messages)} messages)")
        self._start_run(session, prompt)
        return session

    # Prompting and the run task

    async def send_prompt(self, session_id: str, text: str) -> Session:
        session = self.get(session_id)
        if session.status.is_busy:
            raise InvalidTransitionError("session is busy", session.status.value)
        if session.status not in RESUMABLE_STATUSES:
            raise InvalidTransitionError(
                f"cannot send a prompt while session is {session.status.value}",
                session.status.value,
            )
        self._start_run(session, text)
        return session

    def _start_run(self, session: Session, prompt: str) -> None:
        session.abort_event = asyncio.Event()
        session.last_error = None
        session.thinking_started_at = None
        self._append_message(session, text_message("user", prompt))
        self._set_status(session, SessionStatus.STARTING)

        provider = self.providers.get(session.provider)
        task = asyncio.create_task(self._run(session, provider, prompt))
        task.add_done_callback(self._on_run_done)
        session.run_task = task

    def _on_run_done(self, task: "asyncio.Task[None]") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[REGISTRY] Run task crashed: {error}", exc_info=error)

    def _run_options(self, session: Session, prompt: str) -> ProviderSessionOptions:
        return ProviderSessionOptions(
            prompt=prompt,
            cwd=session.cwd,
            permission_mode=session.permission_mode,
            abort_event=session.abort_event,
            on_tool_approval=lambda name, tool_use_id, data: self._request_approval(
                session, name, tool_use_id, data
            ),
            resume_session_id=session.provider_session_id,
            model=session.model,
            effort=session.effort,
            allowed_tools=session.allowed_tools,
            max_turns=self.max_turns,
            on_thinking_delta=lambda text: self._on_thinking_delta(session, text),
            on_subagent_started=lambda info: self._on_subagent_started(session, info),
            on_subagent_tool_call=lambda info: self._on_subagent_tool_call(session, info),
            on_subagent_completed=lambda info: self._on_subagent_completed(session, info),
            on_mode_changed=lambda mode: self._on_mode_changed(session, mode),
            on_slash_commands=lambda commands: self._on_slash_commands(session, commands),
        )

    async def _run(self, session: Session, provider: ProviderAdapter, prompt: str) -> None:
        task = asyncio.current_task()
        abort_event = session.abort_event

        def is_current() -> bool:
            return session.run_task is task and not abort_event.is_set()

        self._set_status(session, SessionStatus.RUNNING)
        try:
            async for message in provider.run(self._run_options(session, prompt)):
                if not is_current():
                    break
                result = message.session_result
                if result is not None:
                    session.total_cost_usd += result.total_cost_usd
                    session.num_turns += result.num_turns
                    if result.provider_session_id:
                        session.provider_session_id = result.provider_session_id
                    continue
                self._append_message(session, message)
        except asyncio.CancelledError:
            logger.info(f"[REGISTRY] Run for {session.id} cancelled")
            raise
        except Exception as e:
            if not is_current():
                return
            error = e.message if isinstance(e, RelayError) else str(e) or type(e).__name__
            session.last_error = error
            logger.error(f"[REGISTRY] Run for {session.id} failed: {error}")
            self._set_status(session, SessionStatus.ERROR, error=error)
            return
        finally:
            if session.pending_approval and session.run_task is task:
                session.pending_approval.resolve(ApprovalDecision.deny("Run ended"))
                session.pending_approval = None

        if not is_current():
            return
        self._set_status(session, SessionStatus.COMPLETED)
        logger.info(
            f"[REGISTRY] Run for {session.id} completed "
            f"(turns={session.num_turns}, cost=${session.total_cost_usd:.4f})"
        )
        await self._refresh_diff_stat(session)

    async def _refresh_diff_stat(self, session: Session) -> None:
        if self.diff_stat_provider is None:
            return
        try:
            stat = await self.diff_stat_provider(session.cwd)
        except Exception as e:
            logger.warning(f"[REGISTRY] Diff stat for {session.cwd} failed: {e}")
            return
        if stat is not None:
            self.publish_git_diff_stat(session.id, stat)

    # Event plumbing

    def _push(self, session: Session, frame: WireModel) -> None:
        self.watcher.push_event(session.id, frame.to_wire())

    def _set_status(
        self, session: Session, status: SessionStatus, error: Optional[str] = None
    ) -> None:
        session.status = status
        session.touch(self.clock())
        self._push(session, StatusFrame(status=status, error=error))

    def _append_message(self, session: Session, message: NormalizedMessage) -> None:
        update: Dict[str, Any] = {"index": len(session.messages)}
        if (
            session.thinking_started_at is not None
            and message.role == "assistant"
            and message.has_reasoning
        ):
            if message.thinking_duration_ms is None:
                elapsed = time.monotonic() - session.thinking_started_at
                update["thinking_duration_ms"] = int(elapsed * 1000)
            session.thinking_started_at = None
        message = message.model_copy(update=update)
        session.messages.append(message)
        session.touch(self.clock())
        self._push(session, MessageFrame(message=message))

    def _on_thinking_delta(self, session: Session, text: str) -> None:
        if session.thinking_started_at is None:
            session.thinking_started_at = time.monotonic()
        self._push(session, ThinkingDeltaFrame(text=text))

    def _on_subagent_started(self, session: Session, info: SubagentStartedInfo) -> None:
        self._push(session, SubagentStartedFrame(
            task_id=info.task_id,
            tool_use_id=info.tool_use_id,
            description=info.description,
            agent_type=info.agent_type,
        ))

    def _on_subagent_tool_call(self, session: Session, info: SubagentToolCallInfo) -> None:
        self._push(session, SubagentToolCallFrame(
            tool_use_id=info.tool_use_id, tool_name=info.tool_name, summary=info.summary,
        ))

    def _on_subagent_completed(self, session: Session, info: SubagentCompletedInfo) -> None:
        self._push(session, SubagentCompletedFrame(
            task_id=info.task_id,
            tool_use_id=info.tool_use_id,
            status=info.status,
            summary=info.summary,
        ))

    def _on_mode_changed(self, session: Session, mode: PermissionMode) -> None:
        session.permission_mode = mode
        logger.info(f"[REGISTRY] Session {session.id} switched to {mode} by the agent")
        self._push(session, ModeChangedFrame(mode=mode))

    def _on_slash_commands(self, session: Session, commands: List[str]) -> None:
        session.slash_commands = commands
        self._push(session, SlashCommandsFrame(commands=commands))

    # Approval handshake

    async def _request_approval(
        self, session: Session, tool_name: str, tool_use_id: str, input: Dict[str, Any]
    ) -> ApprovalDecision:
        # One pending approval per session; parallel tool calls queue here
        async with session.approval_lock:
            if session.abort_event.is_set():
                return ApprovalDecision.deny("Session interrupted")
            if tool_name in session.always_allowed_tools:
                logger.debug(f"[PERMISSION] {tool_name} is always allowed in {session.id}")
                return ApprovalDecision(allow=True)

            future: "asyncio.Future[ApprovalDecision]" = asyncio.get_running_loop().create_future()
            session.pending_approval = PendingApproval(tool_name, tool_use_id, input, future)
            self._set_status(session, SessionStatus.WAITING_FOR_APPROVAL)
            self._push(session, ToolApprovalRequestFrame(
                tool_name=tool_name, tool_use_id=tool_use_id, input=input,
            ))
            logger.info(f"[PERMISSION] Waiting for approval of {tool_name} ({tool_use_id}) in {session.id}")
            try:
                decision = await future
            finally:
                if session.pending_approval is not None and session.pending_approval.future is future:
                    session.pending_approval = None

            if session.status == SessionStatus.WAITING_FOR_APPROVAL:
                self._set_status(session, SessionStatus.RUNNING)
            return decision

    def _matching_approval(self, session: Session, tool_use_id: str) -> Optional[PendingApproval]:
        pending = session.pending_approval
        if pending is None or pending.tool_use_id != tool_use_id or pending.future.done():
            return None
        return pending

    async def handle_approval(
        self,
        session_id: str,
        tool_use_id: str,
        always_allow: bool = False,
        answers: Optional[Dict[str, str]] = None,
        clear_context: bool = False,
        target_mode: Optional[PermissionMode] = None,
    ) -> bool:
        """
        Approve the pending tool call. Returns False (and changes nothing)
        when ``tool_use_id`` does not match the pending approval.
        """
        session = self.get(session_id)
        pending = self._matching_approval(session, tool_use_id)
        if pending is None:
            logger.warning(f"[PERMISSION] No pending approval {tool_use_id} in {session_id}")
            return False

        if clear_context:
            await self._approve_with_clear_context(session, pending, target_mode or "default")
            return True

        if always_allow:
            session.always_allowed_tools.add(pending.tool_name)
        updated_input = {**pending.input, "answers": answers} if answers is not None else None
        logger.info(f"[PERMISSION] Approved {pending.tool_name} ({tool_use_id}) in {session_id}")
        return self._resolve_pending(session, pending, ApprovalDecision(
            allow=True, updated_input=updated_input, always_allow=always_allow,
        ))

    def handle_deny(self, session_id: str, tool_use_id: str, message: Optional[str] = None) -> bool:
        session = self.get(session_id)
        pending = self._matching_approval(session, tool_use_id)
        if pending is None:
            logger.warning(f"[PERMISSION] No pending approval {tool_use_id} in {session_id}")
            return False
        logger.info(f"[PERMISSION] Denied {pending.tool_name} ({tool_use_id}) in {session_id}")
        return self._resolve_pending(
            session, pending, ApprovalDecision.deny(message or "User denied permission")
        )

    def _resolve_pending(
        self, session: Session, pending: PendingApproval, decision: ApprovalDecision
    ) -> bool:
        # Session state flips before the run task wakes up
        session.pending_approval = None
        self._set_status(session, SessionStatus.RUNNING)
        return pending.resolve(decision)

    async def _approve_with_clear_context(
        self, session: Session, pending: PendingApproval, target_mode: PermissionMode
    ) -> None:
        """Continue in a fresh session, seeded with the approved plan if there is one."""
        plan = pending.input.get("plan")
        prompt = CLEAR_CONTEXT_PROMPT.format(plan=plan) if isinstance(plan, str) and plan else None
        new_session = await self.create(CreateSessionRequest(
            prompt=prompt,
            permission_mode=target_mode,
            provider=session.provider,
            model=session.model,
            effort=session.effort,
            cwd=session.cwd,
            allowed_tools=session.allowed_tools,
        ))
        logger.info(f"[REGISTRY] Session {session.id} redirected to {new_session.id}")
        self._push(session, SessionRedirectedFrame(new_session_id=new_session.id, fresh=True))
        self.interrupt(session.id)

    # Interrupt and mode

    def interrupt(self, session_id: str) -> Session:
        """Abort the run, deny any pending approval and mark the session interrupted."""
        session = self.get(session_id)
        if session.status.is_terminal:
            return session

        session.abort_event.set()
        if session.pending_approval is not None:
            session.pending_approval.resolve(ApprovalDecision.deny("Session interrupted"))
            session.pending_approval = None
        self._set_status(session, SessionStatus.INTERRUPTED)

        task = session.run_task
        if task is not None and not task.done():
            task.cancel()
        logger.info(f"[REGISTRY] Interrupted session {session_id}")
        return session

    def set_mode(self, session_id: str, mode: PermissionMode) -> Session:
        session = self.get(session_id)
        if session.status.is_busy:
            raise ModeChangeError("cannot change mode while session is running")
        self._check_mode(mode)
        session.permission_mode = mode
        session.touch(self.clock())
        self._push(session, ModeChangedFrame(mode=mode))
        logger.info(f"[REGISTRY] Session {session_id} mode set to {mode}")
        return session

    # Collaborator input

    def publish_git_diff_stat(self, session_id: str, stat: GitDiffStat) -> None:
        session = self.get(session_id)
        self._push(session, GitDiffStatFrame(**stat.model_dump()))

    # Eviction

    def evict(self, now: Optional[datetime] = None) -> List[str]:
        """
        Remove sessions that completed, failed or were interrupted, have no
        subscribers and no live run, and were created more than the TTL ago.
        Returns the evicted ids.
        """
        now = now or self.clock()
        cutoff = now - self.ttl
        evicted: List[str] = []
        for session_id, session in list(self._sessions.items()):
            if not session.status.is_terminal or session.is_running:
                continue
            if self.watcher.subscriber_count(session_id) > 0:
                continue
            if session.created_at > cutoff:
                continue
            del self._sessions[session_id]
            self.watcher.close_channel(session_id)
            evicted.append(session_id)

        if evicted:
            logger.info(f"[REGISTRY] Evicted {len(evicted)} session(s): {evicted}")
        return evicted

    async def shutdown(self) -> None:
        """Interrupt everything still running and wait for the run tasks."""
        tasks = []
        for session in list(self._sessions.values()):
            task = session.run_task
            if session.status.is_busy:
                self.interrupt(session.id)
            if task is not None and not task.done():
                tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("[REGISTRY] Shutdown complete")
