from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Path, Request

from admissions_portal.api.schemas import (
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    PasswordChangeRequest,
    PrincipalResponse,
    ProfileUpdateRequest,
    RegisterRequest,
    ResetPasswordRequest,
    RoleUpdateRequest,
    SessionResponse,
)
from admissions_portal.logging import bind_principal, get_logger
from admissions_portal.service.auth import AuthContext
from admissions_portal.service.errors import NotFoundError
from admissions_portal.service.runtime import get_runtime
from admissions_portal.storage.models import ROLE_ADMIN, Principal

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _principal_data(principal: Principal) -> PrincipalResponse:
    return PrincipalResponse(**principal.public_view())


def _session_data(principal: Principal, token: str) -> SessionResponse:
    return SessionResponse(token=token, principal=_principal_data(principal))


async def get_principal(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Session gate for protected routes.

    Rejects with 401 (unauthenticated, invalid_token, session_expired or
    session_invalidated); on success the context is also stored on
    ``request.state.principal`` for downstream handlers.
    """
    ctx = get_runtime().auth.authenticate(authorization)
    request.state.principal = ctx
    bind_principal(ctx.principal_id)
    return ctx


def require_role(*roles: str) -> Callable:
    async def _dependency(principal: AuthContext = Depends(get_principal)) -> AuthContext:
        get_runtime().auth.require_role(principal, *roles)
        return principal

    return _dependency


get_admin_principal = require_role(ROLE_ADMIN)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an applicant account and return a session token.

    Raises:
        400: If the password is too short
        409: If the email is already registered
    """
    runtime = get_runtime()
    principal, token = runtime.auth.register(body.email, body.password, body.name)
    return Envelope(status="ok", data=_session_data(principal, token))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
        429: If too many failed attempts were made for this email
    """
    runtime = get_runtime()
    principal, token = runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=_session_data(principal, token))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    # Always 200: a missing or stale token has nothing left to revoke.
    revoked = get_runtime().auth.logout_token(authorization)
    return Envelope(status="ok", data={"message": "Logged out successfully", "revoked": revoked})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    current = get_runtime().auth.current_principal(principal)
    return Envelope(status="ok", data=_principal_data(current))


@router.put("/auth/profile", response_model=Envelope, tags=["auth"])
async def update_profile(
    body: ProfileUpdateRequest, principal: AuthContext = Depends(get_principal)
):
    updated = get_runtime().auth.update_profile(
        principal, name=body.name, preferences=body.preferences
    )
    return Envelope(status="ok", data=_principal_data(updated))


@router.put("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_principal)
):
    """Change the password; every other session is signed out.

    The response carries a replacement token for the calling client.
    """
    runtime = get_runtime()
    token = runtime.auth.change_password(principal, body.current_password, body.new_password)
    current = runtime.auth.current_principal(principal)
    return Envelope(status="ok", data=_session_data(current, token))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    runtime = get_runtime()
    token = runtime.auth.request_password_reset(body.email)
    data = {
        "message": "If an account exists with that email, a password reset link will be sent."
    }
    if token and runtime.settings.test_mode:
        data["resetToken"] = token
    return Envelope(status="ok", data=data)


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    get_runtime().auth.complete_password_reset(body.token, body.new_password)
    return Envelope(
        status="ok",
        data={"message": "Password reset successful. You can now log in with your new password."},
    )


@router.get("/users", response_model=Envelope, tags=["admin"])
async def list_users(principal: AuthContext = Depends(get_admin_principal)):
    principals = get_runtime().auth.list_principals()
    return Envelope(status="ok", data=[_principal_data(p) for p in principals])


@router.put("/users/{principal_id}/role", response_model=Envelope, tags=["admin"])
async def update_role(
    body: RoleUpdateRequest,
    principal_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_principal),
):
    updated = get_runtime().auth.set_role(principal_id, body.role)
    logger.info(
        "principal_role_updated",
        principal_id=principal_id,
        role=body.role,
        actor_id=principal.principal_id,
    )
    return Envelope(status="ok", data=_principal_data(updated))


@router.post(
    "/users/{principal_id}/sessions/invalidate", response_model=Envelope, tags=["admin"]
)
async def invalidate_sessions(
    principal_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_principal),
):
    """Force-logout every session of a principal by bumping its session version."""
    runtime = get_runtime()
    if runtime.store.get_principal(principal_id) is None:
        raise NotFoundError("User not found")
    version = runtime.auth.invalidate_all_sessions(principal_id)
    logger.info(
        "sessions_force_invalidated",
        principal_id=principal_id,
        actor_id=principal.principal_id,
    )
    return Envelope(status="ok", data={"principalId": principal_id, "sessionVersion": version})


@router.delete("/users/{principal_id}", response_model=Envelope, tags=["admin"])
async def delete_user(
    principal_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_principal),
):
    get_runtime().auth.delete_principal(principal, principal_id)
    return Envelope(status="ok", data={"message": "User deleted"})
