from __future__ import annotations

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Set

import httpx

from admissions_portal.client.idle import IdleState, IdleTracker, Scheduler
from admissions_portal.logging import get_logger

logger = get_logger(__name__)


class PortalAPIError(Exception):
    """Error envelope returned by the portal API."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details


class PortalRateLimited(PortalAPIError):
    def __init__(self, message: str, *, retry_after_seconds: int, details: Any = None) -> None:
        super().__init__(429, "rate_limited", message, details)
        self.retry_after_seconds = retry_after_seconds


class MemoryCredentialStore:
    def __init__(self) -> None:
        self._token: Optional[str] = None
        self._principal: Optional[Dict[str, Any]] = None

    def load(self) -> tuple[Optional[str], Optional[Dict[str, Any]]]:
        return self._token, self._principal

    def save(self, token: str, principal: Dict[str, Any]) -> None:
        self._token = token
        self._principal = dict(principal)

    def clear(self) -> None:
        self._token = None
        self._principal = None


class FileCredentialStore:
    """Keeps the session token and principal in a JSON file readable only by the owner."""

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)

    def load(self) -> tuple[Optional[str], Optional[Dict[str, Any]]]:
        try:
            payload = json.loads(self.path.read_text())
        except FileNotFoundError:
            return None, None
        except (OSError, ValueError) as exc:
            logger.warning("credential_store_unreadable", path=str(self.path), error=str(exc))
            return None, None
        if not isinstance(payload, dict):
            return None, None
        return payload.get("token"), payload.get("principal")

    def save(self, token: str, principal: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".credentials.")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump({"token": token, "principal": principal}, handle)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except Exception:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


def _error_from_response(response: httpx.Response) -> PortalAPIError:
    code = "server_error"
    message = response.reason_phrase or "request failed"
    details: Any = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        error = body["error"]
        code = error.get("code") or code
        message = error.get("message") or message
        details = error.get("details")
    if response.status_code == 429:
        retry_after = None
        if isinstance(details, dict):
            retry_after = details.get("retryAfterSeconds")
        if retry_after is None:
            try:
                retry_after = int(response.headers.get("Retry-After", "1"))
            except ValueError:
                retry_after = 1
        return PortalRateLimited(message, retry_after_seconds=int(retry_after), details=details)
    return PortalAPIError(response.status_code, code, message, details)


class PortalSession:
    """Async API client that owns the bearer token and the idle timer.

    ``record_activity`` is the hook for UI input events; an idle timeout
    clears local credentials immediately and revokes the token server-side
    on a best-effort basis.
    """

    def __init__(
        self,
        base_url: str,
        *,
        store: Optional[MemoryCredentialStore | FileCredentialStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
        idle_timeout_seconds: float = 30 * 60,
        warning_lead_seconds: float = 2 * 60,
        scheduler: Optional[Scheduler] = None,
        on_warning: Optional[Callable[[int], None]] = None,
        on_countdown: Optional[Callable[[int], None]] = None,
        on_logout: Optional[Callable[[], None]] = None,
    ) -> None:
        self.store = store or MemoryCredentialStore()
        self._client = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self._on_logout = on_logout
        self._pending: Set[asyncio.Task] = set()
        self.token: Optional[str] = None
        self.principal: Optional[Dict[str, Any]] = None
        self.idle = IdleTracker(
            timeout_seconds=idle_timeout_seconds,
            warning_lead_seconds=warning_lead_seconds,
            scheduler=scheduler,
            on_warning=on_warning,
            on_countdown=on_countdown,
            on_logout=self._idle_logout,
            keepalive=self.keepalive,
        )

    @property
    def authenticated(self) -> bool:
        return self.token is not None

    async def __aenter__(self) -> "PortalSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self.idle.stop()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self._client.aclose()

    def _auth_headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def request(self, method: str, path: str, **kwargs: Any) -> Any:
        headers = {**kwargs.pop("headers", {}), **self._auth_headers()}
        response = await self._client.request(method, path, headers=headers, **kwargs)
        if response.is_success:
            return response.json().get("data")
        error = _error_from_response(response)
        if response.status_code == 401 and self.authenticated:
            logger.info("session_rejected", code=error.code)
            self._clear()
        raise error

    def _accept(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self.token = data["token"]
        self.principal = data["principal"]
        self.store.save(self.token, self.principal)
        self.idle.start()
        return self.principal

    def _clear(self) -> None:
        # An idle logout leaves the tracker in LOGGED_OUT for observers.
        if self.idle.state is not IdleState.LOGGED_OUT:
            self.idle.stop()
        self.token = None
        self.principal = None
        self.store.clear()

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        data = await self.request("POST", "/api/auth/login", json={"email": email, "password": password})
        return self._accept(data)

    async def register(self, email: str, password: str, name: str) -> Dict[str, Any]:
        data = await self.request(
            "POST", "/api/auth/register", json={"email": email, "password": password, "name": name}
        )
        return self._accept(data)

    async def restore(self) -> Optional[Dict[str, Any]]:
        """Resume a stored session if the server still accepts its token."""
        token, principal = self.store.load()
        if not token:
            return None
        self.token = token
        self.principal = principal
        try:
            self.principal = await self.me()
        except (PortalAPIError, httpx.HTTPError) as exc:
            logger.info("stored_session_discarded", error=str(exc))
            self._clear()
            return None
        self.store.save(self.token, self.principal)
        self.idle.start()
        return self.principal

    async def me(self) -> Dict[str, Any]:
        return await self.request("GET", "/api/auth/me")

    async def keepalive(self) -> None:
        await self.me()

    async def change_password(self, current_password: str, new_password: str) -> Dict[str, Any]:
        data = await self.request(
            "PUT",
            "/api/auth/password",
            json={"currentPassword": current_password, "newPassword": new_password},
        )
        return self._accept(data)

    async def logout(self) -> None:
        """Revoke the token server-side if possible; local state is always cleared."""
        token = self.token
        self._clear()
        if token:
            await self._revoke(token)

    async def _revoke(self, token: str) -> None:
        try:
            await self._client.post(
                "/api/auth/logout", headers={"Authorization": f"Bearer {token}"}
            )
        except httpx.HTTPError as exc:
            logger.debug("logout_request_failed", error=str(exc))

    def record_activity(self, event: str = "keydown") -> bool:
        return self.idle.record_activity(event)

    def extend_session(self) -> Optional[asyncio.Task]:
        return self.idle.extend()

    def _idle_logout(self) -> None:
        token = self.token
        self._clear()
        if token:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is not None:
                task = loop.create_task(self._revoke(token))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
        if self._on_logout:
            self._on_logout()
