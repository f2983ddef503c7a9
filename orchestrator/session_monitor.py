"""
Session Monitor - Spawns sub-agent sessions and polls them to completion

Each monitored session gets its own asyncio task that polls the execution
gateway at a fixed interval. When the gateway reports a terminal status the
monitor hands a SessionOutcome to ``on_complete`` (the task orchestrator),
which finalizes the session through ``finalize_session``. Finalization is a
compare-and-swap from a non-terminal status, so a session's terminal status
is written exactly once no matter how many triggers race for it.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional

from agents.shared.gateway import ExecutionGateway
from agents.shared.schemas import (
    ACTIVE_SESSION_STATUSES,
    Session,
    SessionLog,
    SessionOutcome,
    SessionStatus,
    Task,
    utcnow,
)
from orchestrator.errors import GatewayError, NotFoundError, StoreError
from orchestrator.metrics import CounterStore
from orchestrator.store import Store

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[str, str, SessionOutcome], Awaitable[None]]
ProgressCallback = Callable[[str, str], Awaitable[None]]

_GATEWAY_STATUSES = {
    "starting": SessionStatus.STARTING,
    "running": SessionStatus.RUNNING,
    "completed": SessionStatus.COMPLETED,
    "failed": SessionStatus.FAILED,
    "error": SessionStatus.FAILED,
    "cancelled": SessionStatus.CANCELLED,
}


def normalize_gateway_status(raw: Optional[str]) -> SessionStatus:
    """Map a gateway status string to a session status. Unknown values mean running."""
    return _GATEWAY_STATUSES.get((raw or "").strip().lower(), SessionStatus.RUNNING)


class SessionMonitor:
    """
    Tracks in-flight execution sessions.

    Futures are registered when monitoring starts so callers can await a
    session's outcome even if it resolves before they start waiting.
    """

    def __init__(
        self,
        store: Store,
        gateway: ExecutionGateway,
        poll_interval: float = 10.0,
        session_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
        counters: Optional[CounterStore] = None
    ):
        """
        Initialize session monitor.

        Args:
            store: Record store for session records
            gateway: Execution gateway used to spawn, poll and cancel
            poll_interval: Seconds between polls of one session
            session_timeout: Seconds after which a running session is failed
                with a monitoring error (None disables the limit)
            clock: Returns the current UTC time
            counters: Counter store shared with the orchestrator
        """
        self.store = store
        self.gateway = gateway
        self.poll_interval = poll_interval
        self.session_timeout = session_timeout
        self.clock = clock
        self.counters = counters or CounterStore()

        self.on_complete: Optional[CompletionCallback] = None
        self.on_progress: Optional[ProgressCallback] = None

        self._monitors: Dict[str, asyncio.Task] = {}
        self._outcomes: Dict[str, asyncio.Future] = {}

    @property
    def active_count(self) -> int:
        return sum(1 for monitor in self._monitors.values() if not monitor.done())

    def is_monitoring(self, session_id: str) -> bool:
        monitor = self._monitors.get(session_id)
        return monitor is not None and not monitor.done()

    async def spawn(self, task: Task, agent_id: str) -> Session:
        """
        Start a remote session for a task and record it.

        Args:
            task: Task to execute (already in_progress)
            agent_id: Agent occupying the task

        Returns:
            The stored Session in running status

        Raises:
            GatewayError: If the gateway could not spawn the session
        """
        external_id = await self.gateway.spawn(task)
        now = self.clock()

        session = Session(
            task_id=task.id,
            agent_id=agent_id,
            external_session_id=external_id,
            status=SessionStatus.RUNNING,
            started_at=now,
            logs=[
                SessionLog(
                    timestamp=now,
                    message=f"Sub-agent session spawned: {external_id}",
                    metadata={"task_type": task.type.value, "priority": task.priority.value},
                )
            ],
        )
        try:
            session = await self.store.create_session(session)
        except Exception:
            logger.error(f"Could not record session for task {task.id}, cancelling remote session {external_id}")
            try:
                await self.gateway.cancel(external_id)
            except GatewayError as e:
                logger.warning(f"Gateway cancel of unrecorded session {external_id} failed: {e}")
            raise
        self.counters.increment("sessions.spawned")

        logger.info(f"Session {session.id} spawned for task {task.id} (external: {external_id})")
        return session

    def start(self, session: Session) -> None:
        """Begin polling a session in the background"""
        if self.is_monitoring(session.id):
            return

        loop = asyncio.get_running_loop()
        if session.id not in self._outcomes:
            self._outcomes[session.id] = loop.create_future()

        self._monitors[session.id] = asyncio.create_task(
            self._monitor(session.id),
            name=f"monitor-{session.id}"
        )
        logger.debug(f"Monitoring started for session {session.id}")

    async def _monitor(self, session_id: str) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)

            try:
                session = await self.store.get_session(session_id)
            except NotFoundError:
                logger.info(f"Session {session_id} no longer exists, monitoring stopped")
                break
            except StoreError as e:
                logger.error(f"Could not load session {session_id}, will retry: {e}")
                continue

            if session.is_terminal:
                logger.debug(f"Session {session_id} already {session.status.value}, monitoring stopped")
                break

            try:
                outcome = await self.poll_once(session)
            except Exception as e:
                logger.error(f"Error polling session {session_id}: {e}", exc_info=True)
                continue

            if outcome is None:
                if self.on_progress is not None:
                    try:
                        await self.on_progress(session.task_id, session_id)
                    except Exception as e:
                        logger.warning(f"Progress update failed for session {session_id}: {e}")
                continue

            if await self._report(session, outcome):
                break

        self._monitors.pop(session_id, None)

    async def _report(self, session: Session, outcome: SessionOutcome) -> bool:
        """Hand a terminal outcome over; False means the next poll retries it"""
        if self.on_complete is None:
            await self.finalize_session(session.id, outcome)
            return True
        try:
            await self.on_complete(session.task_id, session.id, outcome)
        except Exception as e:
            logger.error(
                f"Completion handling failed for session {session.id} (task {session.task_id}), "
                f"retrying on next poll: {e}",
                exc_info=True
            )
            return False
        return True

    async def poll_once(self, session: Session) -> Optional[SessionOutcome]:
        """
        Poll the gateway once for a session.

        Gateway errors are logged and treated as "still running" so transient
        network failures never fail a task.

        Returns:
            A terminal SessionOutcome, or None while the session is still running
        """
        now = self.clock()
        if self.session_timeout is not None:
            elapsed = (now - session.started_at).total_seconds()
            if elapsed > self.session_timeout:
                error = f"Session exceeded monitoring timeout of {self.session_timeout:.0f}s"
                logger.warning(f"Session {session.id}: {error}")
                return SessionOutcome(
                    success=False,
                    status=SessionStatus.FAILED,
                    error=error,
                    summary=f"Monitoring error: {error}",
                )

        try:
            status = await self.gateway.poll(session.external_session_id)
        except GatewayError as e:
            logger.warning(f"Gateway poll failed for session {session.id}: {e}")
            await self._log(session.id, "warn", f"Gateway poll failed: {e}")
            return None

        mapped = normalize_gateway_status(status.status)
        await self._log(
            session.id,
            "debug",
            f"Gateway status: {status.status}",
            {"mapped_status": mapped.value},
        )

        if mapped == SessionStatus.COMPLETED:
            return SessionOutcome(
                success=True,
                status=SessionStatus.COMPLETED,
                output=status.output,
                summary="Task completed successfully by sub-agent",
            )

        if mapped in (SessionStatus.FAILED, SessionStatus.CANCELLED):
            error = status.error or f"Sub-agent session {mapped.value}"
            return SessionOutcome(
                success=False,
                status=mapped,
                output=status.output,
                error=error,
                summary=f"Task failed: {error}",
            )

        if mapped != session.status:
            await self.store.update_session(
                session.id,
                {"status": mapped},
                expected={"status": ACTIVE_SESSION_STATUSES},
            )
        return None

    async def finalize_session(self, session_id: str, outcome: SessionOutcome) -> bool:
        """
        Move a session to its terminal status.

        Returns:
            True if this call wrote the terminal status, False if the session
            was already terminal
        """
        now = self.clock()
        updated = await self.store.update_session(
            session_id,
            {
                "status": outcome.status,
                "ended_at": now,
                "output": outcome.output,
                "error": outcome.error,
            },
            expected={"status": ACTIVE_SESSION_STATUSES},
        )
        if updated is None:
            logger.debug(f"Session {session_id} already finalized, ignoring {outcome.status.value}")
            return False

        level = "info" if outcome.success else "error"
        await self._log(session_id, level, outcome.summary or f"Session {outcome.status.value}")
        self.counters.increment(f"sessions.{outcome.status.value}")

        future = self._outcomes.pop(session_id, None)
        if future is not None and not future.done():
            future.set_result(outcome)

        logger.info(f"Session {session_id} finalized as {outcome.status.value}")
        return True

    async def cancel_session(self, session_id: str, reason: str) -> bool:
        """
        Cancel a session locally and ask the gateway to stop it.

        The gateway call is best-effort; its failure is logged and the local
        cancellation still happens.

        Returns:
            True if the session was moved to cancelled by this call
        """
        session = await self.store.get_session(session_id)
        if session.is_terminal:
            self.stop(session_id)
            return False

        if session.external_session_id:
            try:
                await self.gateway.cancel(session.external_session_id)
            except GatewayError as e:
                logger.warning(f"Gateway cancel failed for session {session_id}: {e}")
                await self._log(session_id, "warn", f"Gateway cancel failed: {e}")

        finalized = await self.finalize_session(
            session_id,
            SessionOutcome(
                success=False,
                status=SessionStatus.CANCELLED,
                error=reason,
                summary=f"Session cancelled: {reason}",
            ),
        )
        self.stop(session_id)
        return finalized

    def stop(self, session_id: str) -> None:
        """Tear down the polling task for a session, if any"""
        monitor = self._monitors.pop(session_id, None)
        if monitor is not None and not monitor.done() and monitor is not asyncio.current_task():
            monitor.cancel()

    async def wait_for_outcome(self, session_id: str, timeout: Optional[float] = None) -> SessionOutcome:
        """
        Wait for a session to reach a terminal status.

        Args:
            session_id: Session to wait for
            timeout: Maximum time to wait in seconds (None waits forever)

        Returns:
            The session's terminal outcome

        Raises:
            asyncio.TimeoutError: If the session is still running after ``timeout``
        """
        future = self._outcomes.get(session_id)
        if future is None:
            session = await self.store.get_session(session_id)
            if session.is_terminal:
                return SessionOutcome(
                    success=session.status == SessionStatus.COMPLETED,
                    status=session.status,
                    output=session.output,
                    error=session.error,
                )
            future = asyncio.get_running_loop().create_future()
            self._outcomes[session_id] = future

        return await asyncio.wait_for(asyncio.shield(future), timeout=timeout)

    async def shutdown(self) -> None:
        """Cancel every monitoring task and pending outcome future"""
        monitors = list(self._monitors.values())
        self._monitors.clear()
        for monitor in monitors:
            monitor.cancel()
        if monitors:
            await asyncio.gather(*monitors, return_exceptions=True)

        for future in self._outcomes.values():
            if not future.done():
                future.cancel()
        self._outcomes.clear()

        logger.info(f"Session monitor stopped ({len(monitors)} monitors cancelled)")

    async def _log(self, session_id: str, level: str, message: str, metadata: Optional[Dict] = None) -> None:
        try:
            await self.store.append_session_log(
                session_id,
                SessionLog(timestamp=self.clock(), level=level, message=message, metadata=metadata or {}),
            )
        except NotFoundError:
            logger.debug(f"Session {session_id} gone, log entry dropped: {message}")
