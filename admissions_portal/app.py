from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from admissions_portal.api.error_handling import register_exception_handlers
from admissions_portal.api.routes import router
from admissions_portal.config import Settings
from admissions_portal.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None


async def _run_session_sweep(auth, interval_seconds: int) -> None:
    """Periodically re-assert registry bounds and drop elapsed throttle windows."""
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                result = await asyncio.to_thread(auth.sweep)
                logger.debug("session_sweep_completed", **result)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("session_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("session_sweep_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _sweep_task
    from admissions_portal.service.runtime import get_runtime

    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_session_sweep(runtime.auth, runtime.settings.session_sweep_interval_seconds)
    )

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Admissions Portal", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins or ["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every request with a correlation ID.

    Taken from the client's X-Request-ID header when present, generated
    otherwise; echoed back on the response and bound into log entries.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from admissions_portal.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Any] = {"session_backend": "redis" if runtime.redis else "memory"}
    healthy = True
    if runtime.redis is not None:
        try:
            await asyncio.to_thread(runtime.redis.ping)
            checks["redis"] = "ok"
        except Exception as exc:
            healthy = False
            checks["redis"] = "unavailable"
            logger.warning("health_redis_failed", error=str(exc))
    return {
        "status": "healthy" if healthy else "degraded",
        "version": __version__,
        "checks": checks,
    }


def create_app() -> FastAPI:
    return app
