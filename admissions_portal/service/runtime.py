from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis import Redis
from redis.exceptions import RedisError

from admissions_portal.config import get_settings, reset_settings_cache
from admissions_portal.logging import get_logger
from admissions_portal.service.auth import AuthService
from admissions_portal.storage.memory import PrincipalStore
from admissions_portal.storage.redis_cache import (
    RedisLoginThrottle,
    RedisSessionRegistry,
    RedisSessionVersionStore,
    connect,
    verify_connection,
)

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            test_mode=self.settings.test_mode,
            persist_state=self.settings.persist_state,
        )

        self.store = PrincipalStore(
            state_dir=self.settings.state_dir if self.settings.persist_state else None
        )

        self.redis: Optional[Redis] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                client = connect(self.settings.redis_url)
                verify_connection(client)
                self.redis = client
            except RedisError as exc:
                redis_error = exc

            if self.redis is None:
                if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                    raise RuntimeError(
                        "Redis is configured for shared session state but unreachable; "
                        "start Redis, unset REDIS_URL, or set ALLOW_REDIS_FALLBACK_DEV=true."
                    ) from redis_error
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error),
                    mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
                )

        if self.redis is not None:
            self.auth = AuthService(
                self.store,
                self.settings,
                registry=RedisSessionRegistry(
                    self.redis,
                    max_sessions=self.settings.max_concurrent_sessions,
                    token_ttl_seconds=self.settings.token_ttl_hours * 3600,
                ),
                versions=RedisSessionVersionStore(self.redis),
                throttle=RedisLoginThrottle(
                    self.redis,
                    max_attempts=self.settings.login_max_attempts,
                    window_seconds=self.settings.login_window_minutes * 60,
                ),
            )
            session_backend = "redis"
        else:
            self.auth = AuthService(self.store, self.settings)
            session_backend = "memory"

        if self.settings.seed_demo_users:
            self.auth.seed_demo_principals()

        logger.info("runtime_init_completed", session_backend=session_backend)

    def close(self) -> None:
        if self.redis is not None:
            self.redis.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except RedisError:
                pass

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
