from __future__ import annotations

import threading
from collections import OrderedDict
from contextlib import contextmanager
from typing import Dict, Iterator, List

from admissions_portal.logging import get_logger

logger = get_logger(__name__)


class KeyedLocks:
    """Fixed pool of locks; a key always maps to the same lock.

    Memory stays bounded no matter how many keys pass through, at the cost of
    unrelated keys occasionally sharing a stripe.
    """

    def __init__(self, stripes: int = 64) -> None:
        self._locks = tuple(threading.Lock() for _ in range(stripes))

    def get(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self.get(key):
            yield


class SessionRegistry:
    """Tracks live session tokens per principal, oldest first.

    Each principal's set is bounded by ``max_sessions``; registering past the
    bound evicts the oldest token. All mutations for one principal are
    serialized by that principal's lock stripe.
    """

    def __init__(self, max_sessions: int = 5) -> None:
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self.max_sessions = max_sessions
        self._locks = KeyedLocks()
        self._live: Dict[str, "OrderedDict[str, None]"] = {}

    def register(self, principal_id: str, token: str) -> List[str]:
        """Add ``token`` and return the tokens evicted to stay within bounds."""
        with self._locks.hold(principal_id):
            tokens = self._live.setdefault(principal_id, OrderedDict())
            tokens.pop(token, None)
            tokens[token] = None
            evicted: List[str] = []
            while len(tokens) > self.max_sessions:
                oldest, _ = tokens.popitem(last=False)
                evicted.append(oldest)
        if evicted:
            logger.info(
                "session_evicted", principal_id=principal_id, evicted=len(evicted)
            )
        return evicted

    def revoke(self, principal_id: str, token: str) -> bool:
        with self._locks.hold(principal_id):
            tokens = self._live.get(principal_id)
            if not tokens or token not in tokens:
                return False
            del tokens[token]
            if not tokens:
                self._live.pop(principal_id, None)
            return True

    def is_live(self, principal_id: str, token: str) -> bool:
        with self._locks.hold(principal_id):
            tokens = self._live.get(principal_id)
            return bool(tokens) and token in tokens

    def live_tokens(self, principal_id: str) -> List[str]:
        with self._locks.hold(principal_id):
            return list(self._live.get(principal_id, ()))

    def clear(self, principal_id: str) -> int:
        with self._locks.hold(principal_id):
            tokens = self._live.pop(principal_id, None)
            return len(tokens) if tokens else 0

    def sweep(self) -> int:
        """Trim every principal's set back to ``max_sessions``.

        Re-asserts the bound only; token expiry is left to the codec.
        """
        trimmed = 0
        for principal_id in list(self._live.keys()):
            with self._locks.hold(principal_id):
                tokens = self._live.get(principal_id)
                if not tokens:
                    continue
                while len(tokens) > self.max_sessions:
                    tokens.popitem(last=False)
                    trimmed += 1
        if trimmed:
            logger.info("session_sweep_trimmed", trimmed=trimmed)
        return trimmed


class SessionVersionStore:
    """Per-principal session version counters, starting at 1."""

    DEFAULT_VERSION = 1

    def __init__(self) -> None:
        self._locks = KeyedLocks()
        self._versions: Dict[str, int] = {}

    def current_version(self, principal_id: str) -> int:
        with self._locks.hold(principal_id):
            return self._versions.get(principal_id, self.DEFAULT_VERSION)

    def bump_version(self, principal_id: str) -> int:
        with self._locks.hold(principal_id):
            version = self._versions.get(principal_id, self.DEFAULT_VERSION) + 1
            self._versions[principal_id] = version
        logger.info("session_version_bumped", principal_id=principal_id, version=version)
        return version
