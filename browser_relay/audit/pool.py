"""Single-slot pool for the audit browser.

Launching Chromium is expensive, so one instance is kept warm between
audits and torn down after an idle window. Only one audit may use it at
a time; other callers wait in FIFO order and receive the slot directly
from release().
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncGenerator, Deque, Dict, Optional

from ..errors import ProcessCrashed, RelayError, RequestTimeoutError
from .browser_factory import AuditBrowserFactory, LaunchedBrowser

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Lifecycle state of an audit session."""
    IDLE = "idle"
    BUSY = "busy"
    CLOSED = "closed"


@dataclass
class AuditSession:
    """A launched audit browser and its bookkeeping."""
    session_id: str
    browser: LaunchedBrowser
    debugging_port: int
    created_at: float
    last_used: float
    state: SessionState = SessionState.IDLE
    crashed: bool = False

    @property
    def is_healthy(self) -> bool:
        return not self.crashed and self.state != SessionState.CLOSED and self.browser.is_connected


class PoolClosed(RelayError):
    """Raised by acquire() once the pool has been closed."""

    kind = "pool_closed"


class AuditInstancePool:
    """Keeps at most one audit browser alive and serializes its use."""

    def __init__(
        self,
        factory: AuditBrowserFactory,
        idle_timeout: float = 60.0,
        launch_timeout: float = 30.0
    ):
        """Initialize audit pool.

        Args:
            factory: Launches browser processes
            idle_timeout: Seconds an unused browser is kept alive
            launch_timeout: Bound on a cold start
        """
        self.factory = factory
        self.idle_timeout = idle_timeout
        self.launch_timeout = launch_timeout

        self._session: Optional[AuditSession] = None
        self._checked_out = False
        self._holder: Optional[AuditSession] = None
        self._waiters: Deque[asyncio.Future] = deque()
        self._idle_timer: Optional[asyncio.TimerHandle] = None
        self._idle_task: Optional[asyncio.Task] = None
        self._closed = False
        self._launches = 0

    @property
    def session(self) -> Optional[AuditSession]:
        return self._session

    async def acquire(self) -> AuditSession:
        """Check out the audit browser, cold-starting it if needed.

        Raises:
            PoolClosed: If the pool was closed
            RequestTimeoutError: If the launch exceeded launch_timeout
            ProcessCrashed: If the browser failed to launch
        """
        if self._closed:
            raise PoolClosed("Audit pool is closed")

        await self._take_slot()
        self._cancel_idle_timer()

        try:
            session = self._session
            if session is not None and not session.is_healthy:
                await self._destroy(session, "unhealthy")
                session = None
            if session is None:
                session = await self._launch()
        except BaseException:
            self._free_slot()
            raise

        session.state = SessionState.BUSY
        session.last_used = time.monotonic()
        self._holder = session
        return session

    async def release(self, session: AuditSession) -> None:
        """Return the browser; hands the slot to the next waiter if any.

        A release from anyone but the current holder is ignored, so a
        repeated release cannot hand the slot out twice.
        """
        if session is not self._holder:
            logger.warning(f"Ignoring release of audit session {session.session_id}: not checked out")
            return
        self._holder = None
        session.last_used = time.monotonic()

        if session is self._session:
            if session.crashed or not session.browser.is_connected:
                await self._destroy(session, "crashed")
            elif session.state != SessionState.CLOSED:
                session.state = SessionState.IDLE

        self._free_slot()

    @asynccontextmanager
    async def checkout(self) -> AsyncGenerator[AuditSession, None]:
        """Context manager pairing acquire() with release()."""
        session = await self.acquire()
        try:
            yield session
        finally:
            await self.release(session)

    async def shutdown_idle(self) -> bool:
        """Tear down the browser if nobody is using it.

        Returns:
            True if a browser was destroyed
        """
        if self._checked_out or self._waiters or self._session is None:
            return False

        self._checked_out = True
        try:
            await self._destroy(self._session, "idle")
        finally:
            self._release_slot()
        return True

    async def close(self) -> None:
        """Destroy the browser and fail pending waiters."""
        self._closed = True
        self._cancel_idle_timer()
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(PoolClosed("Audit pool is closed"))
        if self._session is not None:
            await self._destroy(self._session, "pool closed")
        if self._idle_task is not None and self._idle_task is not asyncio.current_task():
            await asyncio.gather(self._idle_task, return_exceptions=True)

    def stats(self) -> Dict[str, Any]:
        """Pool statistics."""
        session = self._session
        return {
            'launches': self._launches,
            'live_processes': 1 if session is not None and session.state != SessionState.CLOSED else 0,
            'checked_out': self._checked_out,
            'waiters': len(self._waiters),
            'session_state': session.state.value if session else None,
            'debugging_port': session.debugging_port if session else None,
            'idle_timeout': self.idle_timeout,
        }

    async def _take_slot(self) -> None:
        if not self._checked_out and not self._waiters:
            self._checked_out = True
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter in self._waiters:
                self._waiters.remove(waiter)
            elif waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                # Slot was handed over just before the cancellation
                self._free_slot()
            raise

    def _release_slot(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._checked_out = False

    def _free_slot(self) -> None:
        """Release the slot and start the idle window if it stays free."""
        self._release_slot()
        if not self._checked_out and self._session is not None and not self._closed:
            self._schedule_idle_timer()

    async def _launch(self) -> AuditSession:
        try:
            browser = await asyncio.wait_for(self.factory.launch(), timeout=self.launch_timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(
                f"Audit browser did not start within {self.launch_timeout}s",
                timeout=self.launch_timeout
            )
        except RelayError:
            raise
        except Exception as e:
            raise ProcessCrashed(f"Audit browser failed to launch: {e}") from e
        now = time.monotonic()
        session = AuditSession(
            session_id=uuid.uuid4().hex[:12],
            browser=browser,
            debugging_port=browser.debugging_port,
            created_at=now,
            last_used=now
        )
        browser.on_disconnected(lambda: self._on_disconnected(session))
        self._session = session
        self._launches += 1
        logger.info(f"Audit session {session.session_id} started on port {session.debugging_port}")
        return session

    def _on_disconnected(self, session: AuditSession) -> None:
        if session.state == SessionState.CLOSED:
            return
        session.crashed = True
        logger.warning(f"Audit browser for session {session.session_id} disconnected")
        if session is self._session and not self._checked_out:
            self._detach(session)
            self._idle_task = asyncio.ensure_future(self._close_browser(session))

    def _detach(self, session: AuditSession) -> None:
        session.state = SessionState.CLOSED
        if self._session is session:
            self._session = None
            self._cancel_idle_timer()

    async def _destroy(self, session: AuditSession, reason: str) -> None:
        logger.info(f"Destroying audit session {session.session_id} ({reason})")
        self._detach(session)
        await self._close_browser(session)

    async def _close_browser(self, session: AuditSession) -> None:
        try:
            await session.browser.close()
        except Exception as e:
            logger.warning(f"Error closing audit browser {session.session_id}: {e}")

    def _schedule_idle_timer(self) -> None:
        self._cancel_idle_timer()
        loop = asyncio.get_running_loop()
        self._idle_timer = loop.call_later(self.idle_timeout, self._on_idle_timeout)

    def _cancel_idle_timer(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None

    def _on_idle_timeout(self) -> None:
        self._idle_timer = None
        logger.info(f"Audit browser idle for {self.idle_timeout}s, shutting down")
        self._idle_task = asyncio.ensure_future(self.shutdown_idle())
