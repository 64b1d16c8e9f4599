"""Virtual session manager.

A session moves through

    starting -> running -> stopping -> stopped

and can fall into ``error`` when provisioning or teardown fails. Start and
stop record the intermediate state immediately and complete through a
``Timer`` after the provisioning delay. A stop requested while the session
is still starting is recorded on the session and applied as soon as the
start settles, so the session ends ``stopped`` instead of being left
running.

Each user holds at most one session in starting/running/stopping; the
session store enforces that when the session is created.
"""

from __future__ import annotations

import random
import shlex
import time
from typing import Protocol

from sqlmodel import SQLModel

from agentdesk.errors import SessionNotFound, SessionNotRunning, ValidationError
from agentdesk.events import EntityType, EventBus
from agentdesk.logging import get_logger
from agentdesk.metrics import record_session_transition
from agentdesk.orchestration.models import (
    SIZE_SPECS,
    SessionState,
    SizeClass,
    VirtualSession,
    utc_now,
)
from agentdesk.store import SessionStore
from agentdesk.timers import TimerRegistry

logger = get_logger(__name__)


class CommandResult(SQLModel):
    output: str
    exit_code: int
    execution_time_ms: int = 0


class Provisioner(Protocol):
    """Backend that owns the actual machines behind sessions."""

    async def provision(self, session: VirtualSession) -> tuple[str, int]:
        """Bring the machine up; returns its (address, port)."""
        ...

    async def teardown(self, session: VirtualSession) -> None: ...

    async def run(self, session: VirtualSession, argv: list[str], command: str) -> CommandResult: ...


class SimulatedProvisioner:
    """In-process provisioner: private address, SSH-range port, echoed command output."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    async def provision(self, session: VirtualSession) -> tuple[str, int]:
        address = f"192.168.{self._rng.randrange(256)}.{self._rng.randrange(1, 255)}"
        port = 22 + self._rng.randrange(1000)
        return address, port

    async def teardown(self, session: VirtualSession) -> None:
        return None

    async def run(self, session: VirtualSession, argv: list[str], command: str) -> CommandResult:
        return CommandResult(output=f"Command executed: {command}", exit_code=0)


class VirtualSessionManager:
    def __init__(
        self,
        events: EventBus | None = None,
        provisioner: Provisioner | None = None,
        start_delay: float = 5.0,
        stop_delay: float = 3.0,
        max_command_length: int = 4096,
        store: SessionStore | None = None,
    ) -> None:
        self.events = events or EventBus()
        self.provisioner = provisioner or SimulatedProvisioner()
        self.start_delay = start_delay
        self.stop_delay = stop_delay
        self.max_command_length = max_command_length
        self.store = store or SessionStore()
        self.timers = TimerRegistry()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self, user_id: str, size_class: str | SizeClass = SizeClass.STANDARD) -> VirtualSession:
        """Create a session in ``starting`` and schedule provisioning.

        Must be called from the event loop.

        Raises:
            ValidationError: unknown size class.
            SessionAlreadyActive: the user already has a non-terminal session.
        """
        try:
            size = SizeClass(size_class)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown size class '{size_class}'",
                allowed=[s.value for s in SizeClass],
            ) from exc

        session = VirtualSession(
            user_id=user_id,
            size_class=size,
            specs=SIZE_SPECS[size].model_copy(),
        )
        self.store.claim(session)
        self._changed(session, SessionState.STARTING)

        async def complete_start() -> None:
            await self._complete_start(session.id)

        self.timers.schedule(session.id, self.start_delay, complete_start)
        return session.model_copy(deep=True)

    async def _complete_start(self, session_id: str) -> None:
        session = self._require(session_id)
        if session.state is not SessionState.STARTING:
            return
        try:
            address, port = await self.provisioner.provision(session)
        except Exception as exc:
            logger.exception("session_provisioning_failed", session_id=session_id)
            self._fail(session, f"Provisioning failed: {exc}")
            return
        session.address = address
        session.port = port
        self._set_state(session, SessionState.RUNNING)
        if session.stop_requested:
            logger.info("session_queued_stop_applied", session_id=session_id)
            self._begin_stop(session)

    def stop(self, session_id: str) -> VirtualSession:
        """Request a stop.

        ``starting`` records the intent; ``running`` begins stopping;
        ``stopping``/``stopped`` are no-ops; ``error`` goes to ``stopped``.
        """
        session = self._require(session_id)
        if session.state is SessionState.STARTING:
            session.stop_requested = True
            logger.info("session_stop_queued", session_id=session_id)
        elif session.state is SessionState.RUNNING:
            session.stop_requested = True
            self._begin_stop(session)
        elif session.state is SessionState.ERROR:
            self._set_state(session, SessionState.STOPPED)
        return session.model_copy(deep=True)

    def _begin_stop(self, session: VirtualSession) -> None:
        self._set_state(session, SessionState.STOPPING)

        async def complete_stop() -> None:
            await self._complete_stop(session.id)

        self.timers.schedule(session.id, self.stop_delay, complete_stop)

    async def _complete_stop(self, session_id: str) -> None:
        session = self._require(session_id)
        if session.state is not SessionState.STOPPING:
            return
        try:
            await self.provisioner.teardown(session)
        except Exception as exc:
            logger.exception("session_teardown_failed", session_id=session_id)
            self._fail(session, f"Teardown failed: {exc}")
            return
        self._set_state(session, SessionState.STOPPED)

    def _fail(self, session: VirtualSession, detail: str) -> None:
        session.error = detail
        self._set_state(session, SessionState.ERROR)

    def _set_state(self, session: VirtualSession, state: SessionState) -> None:
        session.state = state
        session.last_active = utc_now()
        if not state.is_active:
            self.store.release(session)
        self._changed(session, state)

    def _changed(self, session: VirtualSession, state: SessionState) -> None:
        record_session_transition(session.size_class.value, state.value)
        logger.info(
            "session_state_changed",
            session_id=session.id,
            user_id=session.user_id,
            state=state.value,
        )
        payload = {
            "user_id": session.user_id,
            "size_class": session.size_class.value,
            "address": session.address,
            "port": session.port,
        }
        if session.error:
            payload["error"] = session.error
        self.events.emit(EntityType.SESSION, session.id, state.value, payload)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def validate_command(self, command: str) -> list[str]:
        if not command or not command.strip():
            raise ValidationError("Command must not be empty")
        if len(command) > self.max_command_length:
            raise ValidationError(
                f"Command exceeds {self.max_command_length} characters",
                length=len(command),
            )
        if "\x00" in command:
            raise ValidationError("Command must not contain NUL bytes")
        try:
            return shlex.split(command)
        except ValueError as exc:
            raise ValidationError(f"Malformed command: {exc}") from exc

    async def execute(self, session_id: str, command: str) -> CommandResult:
        """Run a command on a running session."""
        session = self._require(session_id)
        if session.state is not SessionState.RUNNING:
            raise SessionNotRunning(
                f"Session {session_id} is {session.state.value}, not running",
                session_id=session_id,
                state=session.state.value,
            )
        argv = self.validate_command(command)
        started = time.perf_counter()
        result = await self.provisioner.run(session, argv, command)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        session.last_active = utc_now()
        logger.info(
            "session_command_executed",
            session_id=session_id,
            program=argv[0],
            exit_code=result.exit_code,
            duration_ms=elapsed_ms,
        )
        return result.model_copy(update={"execution_time_ms": elapsed_ms})

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _require(self, session_id: str) -> VirtualSession:
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFound(f"Session '{session_id}' not found", session_id=session_id)
        return session

    def get(self, session_id: str) -> VirtualSession:
        return self._require(session_id).model_copy(deep=True)

    def status(self, user_id: str) -> VirtualSession | None:
        """The user's most recent session, if any."""
        session = self.store.latest_for(user_id)
        return session.model_copy(deep=True) if session else None

    async def settle(self, session_id: str) -> VirtualSession:
        """Wait for pending transitions of a session, then return it."""
        self._require(session_id)
        await self.timers.wait(session_id)
        return self.get(session_id)

    def counts_by_state(self) -> dict[str, int]:
        counts = {state.value: 0 for state in SessionState}
        for session in self.store.values():
            counts[session.state.value] += 1
        return counts

    def shutdown(self) -> int:
        """Cancel pending transitions."""
        cancelled = self.timers.cancel_all()
        if cancelled:
            logger.info("session_timers_cancelled", count=cancelled)
        return cancelled
