from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from admissions_portal.logging import get_logger
from admissions_portal.service.sessions import KeyedLocks
from admissions_portal.storage.memory import normalize_email

logger = get_logger(__name__)


@dataclass(frozen=True)
class ThrottleDecision:
    allowed: bool
    retry_after_seconds: int = 0


@dataclass
class _AttemptWindow:
    count: int
    reset_at: float


class LoginThrottle:
    """Fixed-window login attempt counter keyed by submitted email.

    Keys are tracked whether or not an account exists, so probing unknown
    addresses is throttled too. ``purge_expired`` bounds memory by dropping
    windows that have already elapsed.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        window_seconds: float = 15 * 60,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock or time.monotonic
        self._locks = KeyedLocks()
        self._windows: Dict[str, _AttemptWindow] = {}

    def _current_window(self, key: str, now: float) -> _AttemptWindow:
        window = self._windows.get(key)
        if window is None:
            window = _AttemptWindow(count=0, reset_at=now + self.window_seconds)
            self._windows[key] = window
        elif now > window.reset_at:
            window.count = 0
            window.reset_at = now + self.window_seconds
        return window

    def attempt(self, email: str) -> ThrottleDecision:
        key = normalize_email(email)
        with self._locks.hold(key):
            now = self._clock()
            window = self._current_window(key, now)
            if window.count >= self.max_attempts:
                retry_after = max(1, math.ceil(window.reset_at - now))
                decision = ThrottleDecision(False, retry_after)
            else:
                decision = ThrottleDecision(True)
        if not decision.allowed:
            logger.warning(
                "login_rate_limited",
                email=key,
                retry_after_seconds=decision.retry_after_seconds,
            )
        return decision

    def record_failure(self, email: str) -> int:
        key = normalize_email(email)
        with self._locks.hold(key):
            window = self._current_window(key, self._clock())
            window.count += 1
            return window.count

    def record_success(self, email: str) -> None:
        # Only the count resets; the window keeps its reset time.
        key = normalize_email(email)
        with self._locks.hold(key):
            window = self._windows.get(key)
            if window is not None:
                window.count = 0

    def failures(self, email: str) -> int:
        key = normalize_email(email)
        with self._locks.hold(key):
            window = self._windows.get(key)
            if window is None or self._clock() > window.reset_at:
                return 0
            return window.count

    def purge_expired(self) -> int:
        purged = 0
        for key in list(self._windows.keys()):
            with self._locks.hold(key):
                window = self._windows.get(key)
                if window is not None and self._clock() > window.reset_at:
                    del self._windows[key]
                    purged += 1
        if purged:
            logger.debug("login_throttle_purged", purged=purged)
        return purged
