from __future__ import annotations

import asyncio
import math
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, Set

from admissions_portal.logging import get_logger

logger = get_logger(__name__)

ACTIVITY_EVENTS = frozenset({"pointerdown", "mousedown", "keydown", "touchstart", "scroll"})


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Schedules callbacks on an asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return self.loop.call_later(max(0.0, delay), callback)


class IdleState(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    WARNING = "warning"
    LOGGED_OUT = "logged_out"


class IdleTracker:
    """Client-side inactivity timer pair: a warning, then a hard local logout.

    Every qualifying activity cancels the pending callbacks and schedules them
    again from the new last-activity time, so at most one logout can be pending.
    All callbacks run on the scheduler's loop; nothing here needs a lock.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 30 * 60,
        warning_lead_seconds: float = 2 * 60,
        scheduler: Optional[Scheduler] = None,
        on_warning: Optional[Callable[[int], None]] = None,
        on_countdown: Optional[Callable[[int], None]] = None,
        on_dismiss: Optional[Callable[[], None]] = None,
        on_logout: Optional[Callable[[], None]] = None,
        keepalive: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> None:
        if not 0 <= warning_lead_seconds < timeout_seconds:
            raise ValueError("warning lead must be shorter than the idle timeout")
        self.timeout_seconds = timeout_seconds
        self.warning_lead_seconds = warning_lead_seconds
        self.scheduler: Scheduler = scheduler or LoopScheduler()
        self.on_warning = on_warning
        self.on_countdown = on_countdown
        self.on_dismiss = on_dismiss
        self.on_logout = on_logout
        self.keepalive = keepalive

        self.state = IdleState.INACTIVE
        self.last_activity: Optional[float] = None
        self.remaining_seconds = 0
        self._end_time: Optional[float] = None
        self._warning_handle: Optional[TimerHandle] = None
        self._logout_handle: Optional[TimerHandle] = None
        self._countdown_handle: Optional[TimerHandle] = None
        self._pending: Set[asyncio.Task] = set()

    @property
    def warning_after(self) -> float:
        return self.timeout_seconds - self.warning_lead_seconds

    @property
    def active(self) -> bool:
        return self.state in (IdleState.ACTIVE, IdleState.WARNING)

    def start(self) -> None:
        """Begin tracking after a successful sign-in."""
        self._restart()

    def stop(self) -> None:
        self._cancel_all()
        self.state = IdleState.INACTIVE
        self._end_time = None

    def record_activity(self, event: str = "keydown") -> bool:
        if not self.active or event not in ACTIVITY_EVENTS:
            return False
        self._restart()
        return True

    def extend(self) -> Optional[asyncio.Task]:
        """Restart the cycle and ping the server without waiting on the result."""
        if not self.active:
            return None
        self._restart()
        if self.keepalive is None:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("session_keepalive_skipped", reason="no_running_loop")
            return None
        task = loop.create_task(self._ping())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _ping(self) -> None:
        try:
            await self.keepalive()
        except Exception as exc:
            logger.debug("session_keepalive_failed", error=str(exc))

    def _cancel_all(self) -> None:
        for handle in (self._warning_handle, self._logout_handle, self._countdown_handle):
            if handle is not None:
                handle.cancel()
        self._warning_handle = None
        self._logout_handle = None
        self._countdown_handle = None

    def _restart(self) -> None:
        self._cancel_all()
        was_warning = self.state is IdleState.WARNING
        self.state = IdleState.ACTIVE
        self.last_activity = self.scheduler.now()
        self._end_time = None
        self.remaining_seconds = 0
        if was_warning and self.on_dismiss:
            self.on_dismiss()
        self._warning_handle = self.scheduler.call_later(self.warning_after, self._warning_due)
        self._logout_handle = self.scheduler.call_later(self.timeout_seconds, self._logout_due)

    def _warning_due(self) -> None:
        self._warning_handle = None
        if self.state is not IdleState.ACTIVE:
            return
        idle_for = self.scheduler.now() - self.last_activity
        if idle_for < self.warning_after:
            # Activity landed after this callback was scheduled.
            self._warning_handle = self.scheduler.call_later(
                self.warning_after - idle_for, self._warning_due
            )
            return
        self.state = IdleState.WARNING
        self._end_time = self.last_activity + self.timeout_seconds
        self._tick()
        if self.on_warning:
            self.on_warning(self.remaining_seconds)

    def _tick(self) -> None:
        self._countdown_handle = None
        if self.state is not IdleState.WARNING or self._end_time is None:
            return
        self.remaining_seconds = max(0, math.ceil(self._end_time - self.scheduler.now()))
        if self.on_countdown:
            self.on_countdown(self.remaining_seconds)
        if self.remaining_seconds > 0:
            self._countdown_handle = self.scheduler.call_later(1.0, self._tick)

    def _logout_due(self) -> None:
        self._logout_handle = None
        if not self.active:
            return
        idle_for = self.scheduler.now() - self.last_activity
        if idle_for < self.timeout_seconds:
            self._logout_handle = self.scheduler.call_later(
                self.timeout_seconds - idle_for, self._logout_due
            )
            return
        self._cancel_all()
        self.state = IdleState.LOGGED_OUT
        self._end_time = None
        self.remaining_seconds = 0
        logger.info("idle_logout")
        if self.on_logout:
            self.on_logout()
