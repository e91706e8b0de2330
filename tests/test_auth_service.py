"""Unit tests for the auth service.

Tests for:
- Login, throttling, and concurrent session limits
- Per-request session validation and its 401 variants
- Version-bump invalidation, password change and reset
- Role administration
"""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from admissions_portal.config import Settings
from admissions_portal.service.auth import AuthService
from admissions_portal.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTokenError,
    NotFoundError,
    RateLimitedError,
    SessionExpiredError,
    SessionInvalidatedError,
    UnauthenticatedError,
    ValidationError,
)
from admissions_portal.service.throttle import LoginThrottle
from admissions_portal.service.tokens import TokenCodec
from admissions_portal.storage.memory import PrincipalStore

PASSWORD = "correct-horse-battery"


@pytest.fixture
def settings(tmp_path, monkeypatch):
    """Create test settings."""
    monkeypatch.setenv("STATE_DIR", str(tmp_path))
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        max_concurrent_sessions=5,
        login_max_attempts=5,
        login_window_minutes=15,
    )


@pytest.fixture
def store():
    return PrincipalStore()


@pytest.fixture
def auth_service(store, settings, clock):
    codec = TokenCodec(
        settings.jwt_secret,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        ttl_seconds=3600,
        clock=clock,
    )
    throttle = LoginThrottle(max_attempts=5, window_seconds=900, clock=clock)
    return AuthService(store, settings, codec=codec, throttle=throttle)


@pytest.fixture
def applicant(auth_service):
    principal, _ = auth_service.register("ada@college.edu", PASSWORD, "Ada Lovelace")
    return principal


def _bearer(token):
    return f"Bearer {token}"


class TestRegistration:
    def test_register_creates_applicant(self, auth_service):
        principal, token = auth_service.register("new@college.edu", PASSWORD, "New")
        assert principal.role == "applicant"
        assert auth_service.authenticate(_bearer(token)).principal_id == principal.id

    def test_duplicate_email_conflicts(self, auth_service, applicant):
        with pytest.raises(ConflictError):
            auth_service.register("ADA@college.edu", PASSWORD, "Other")

    def test_short_password_rejected(self, auth_service):
        with pytest.raises(ValidationError):
            auth_service.register("short@college.edu", "short", "Short")

    def test_signup_disabled(self, store, tmp_path, monkeypatch):
        monkeypatch.setenv("STATE_DIR", str(tmp_path))
        settings = Settings(jwt_secret="x" * 40, allow_signup=False)
        with pytest.raises(ForbiddenError):
            AuthService(store, settings).register("a@college.edu", PASSWORD, "A")


class TestLogin:
    def test_login_returns_token(self, auth_service, applicant):
        principal, token = auth_service.login("ada@college.edu", PASSWORD)
        ctx = auth_service.authenticate(_bearer(token))
        assert principal.id == applicant.id
        assert ctx.email == "ada@college.edu"
        assert ctx.role == "applicant"
        assert ctx.version == 1

    def test_wrong_password(self, auth_service, applicant):
        with pytest.raises(UnauthenticatedError) as exc_info:
            auth_service.login("ada@college.edu", "wrong-password")
        assert exc_info.value.message == "Invalid email or password"

    def test_unknown_email_same_error(self, auth_service):
        with pytest.raises(UnauthenticatedError) as exc_info:
            auth_service.login("ghost@college.edu", PASSWORD)
        assert exc_info.value.message == "Invalid email or password"

    def test_sixth_attempt_rate_limited(self, auth_service, applicant, clock):
        for _ in range(5):
            with pytest.raises(UnauthenticatedError):
                auth_service.login("ada@college.edu", "wrong-password")

        clock.advance(60)
        # Correct password is still refused while the window is full
        with pytest.raises(RateLimitedError) as exc_info:
            auth_service.login("ada@college.edu", PASSWORD)
        assert exc_info.value.retry_after_seconds == 840
        assert exc_info.value.headers == {"Retry-After": "840"}

    def test_success_resets_failures(self, auth_service, applicant):
        for _ in range(4):
            with pytest.raises(UnauthenticatedError):
                auth_service.login("ada@college.edu", "wrong-password")
        auth_service.login("ada@college.edu", PASSWORD)
        assert auth_service.throttle.failures("ada@college.edu") == 0

    def test_sixth_login_evicts_oldest(self, auth_service, applicant):
        tokens = [auth_service.login("ada@college.edu", PASSWORD)[1] for _ in range(6)]
        live = auth_service.registry.live_tokens(applicant.id)
        # The registration token plus six logins: only the newest five survive
        assert live == tokens[1:]


class TestAuthenticate:
    def test_missing_header(self, auth_service):
        with pytest.raises(UnauthenticatedError):
            auth_service.authenticate(None)

    def test_non_bearer_scheme(self, auth_service):
        with pytest.raises(UnauthenticatedError):
            auth_service.authenticate("Basic dXNlcjpwYXNz")

    def test_garbage_token(self, auth_service):
        with pytest.raises(InvalidTokenError):
            auth_service.authenticate("Bearer not-a-token")

    def test_expired_token(self, auth_service, applicant, clock):
        _, token = auth_service.login("ada@college.edu", PASSWORD)
        clock.advance(3600)
        with pytest.raises(SessionExpiredError):
            auth_service.authenticate(_bearer(token))

    def test_bump_rejects_existing_tokens(self, auth_service, applicant):
        _, first = auth_service.login("ada@college.edu", PASSWORD)
        _, second = auth_service.login("ada@college.edu", PASSWORD)

        assert auth_service.invalidate_all_sessions(applicant.id) == 2

        for token in (first, second):
            with pytest.raises(SessionInvalidatedError):
                auth_service.authenticate(_bearer(token))
        _, fresh = auth_service.login("ada@college.edu", PASSWORD)
        assert auth_service.authenticate(_bearer(fresh)).version == 2

    def test_evicted_token_still_valid_when_advisory(self, auth_service, applicant):
        tokens = [auth_service.login("ada@college.edu", PASSWORD)[1] for _ in range(6)]
        assert auth_service.authenticate(_bearer(tokens[0])).principal_id == applicant.id

    def test_evicted_token_rejected_when_enforced(self, auth_service, applicant):
        auth_service.settings = auth_service.settings.model_copy(
            update={"enforce_session_registry": True}
        )
        tokens = [auth_service.login("ada@college.edu", PASSWORD)[1] for _ in range(6)]
        with pytest.raises(SessionInvalidatedError):
            auth_service.authenticate(_bearer(tokens[0]))
        assert auth_service.authenticate(_bearer(tokens[-1])).principal_id == applicant.id

    def test_required_roles(self, auth_service, applicant):
        _, token = auth_service.login("ada@college.edu", PASSWORD)
        with pytest.raises(ForbiddenError):
            auth_service.authenticate(_bearer(token), required_roles=("admin",))


class TestLogout:
    def test_logout_revokes_only_presented_token(self, auth_service, applicant):
        _, first = auth_service.login("ada@college.edu", PASSWORD)
        _, second = auth_service.login("ada@college.edu", PASSWORD)

        assert auth_service.logout(auth_service.authenticate(_bearer(first))) is True

        live = auth_service.registry.live_tokens(applicant.id)
        assert first not in live
        assert second in live

    def test_logout_token_without_credentials(self, auth_service):
        assert auth_service.logout_token(None) is False
        assert auth_service.logout_token("Bearer junk") is False


class TestPasswordChange:
    def test_change_password_invalidates_other_sessions(self, auth_service, applicant):
        _, other = auth_service.login("ada@college.edu", PASSWORD)
        ctx = auth_service.authenticate(_bearer(other))

        new_token = auth_service.change_password(ctx, PASSWORD, "brand-new-password")

        with pytest.raises(SessionInvalidatedError):
            auth_service.authenticate(_bearer(other))
        assert auth_service.authenticate(_bearer(new_token)).version == 2
        auth_service.login("ada@college.edu", "brand-new-password")

    def test_wrong_current_password(self, auth_service, applicant):
        _, token = auth_service.login("ada@college.edu", PASSWORD)
        ctx = auth_service.authenticate(_bearer(token))
        with pytest.raises(ValidationError) as exc_info:
            auth_service.change_password(ctx, "nope-nope-nope", "brand-new-password")
        assert exc_info.value.detail == {"field": "currentPassword"}
        assert auth_service.authenticate(_bearer(token)).principal_id == ctx.principal_id


class TestPasswordReset:
    def test_reset_flow(self, auth_service, applicant):
        _, session = auth_service.login("ada@college.edu", PASSWORD)
        reset = auth_service.request_password_reset("ada@college.edu")

        auth_service.complete_password_reset(reset, "reset-password-1")

        with pytest.raises(SessionInvalidatedError):
            auth_service.authenticate(_bearer(session))
        auth_service.login("ada@college.edu", "reset-password-1")

    def test_reset_token_single_use(self, auth_service, applicant):
        reset = auth_service.request_password_reset("ada@college.edu")
        auth_service.complete_password_reset(reset, "reset-password-1")
        with pytest.raises(ValidationError):
            auth_service.complete_password_reset(reset, "reset-password-2")

    def test_unknown_email_returns_none(self, auth_service):
        assert auth_service.request_password_reset("ghost@college.edu") is None

    def test_session_token_is_not_a_reset_token(self, auth_service, applicant):
        _, session = auth_service.login("ada@college.edu", PASSWORD)
        with pytest.raises(ValidationError):
            auth_service.complete_password_reset(session, "reset-password-1")

    def test_expired_reset_token(self, auth_service, applicant, clock):
        reset = auth_service.request_password_reset("ada@college.edu")
        clock.advance(3600)
        with pytest.raises(ValidationError) as exc_info:
            auth_service.complete_password_reset(reset, "reset-password-1")
        assert "expired" in exc_info.value.message


class TestAdministration:
    def test_set_role_invalidates_sessions(self, auth_service, applicant):
        _, token = auth_service.login("ada@college.edu", PASSWORD)

        updated = auth_service.set_role(applicant.id, "officer")

        assert updated.role == "officer"
        with pytest.raises(SessionInvalidatedError):
            auth_service.authenticate(_bearer(token))
        _, fresh = auth_service.login("ada@college.edu", PASSWORD)
        assert auth_service.authenticate(_bearer(fresh)).role == "officer"

    def test_set_role_rejects_unknown_role(self, auth_service, applicant):
        with pytest.raises(ValidationError):
            auth_service.set_role(applicant.id, "superuser")

    def test_set_role_missing_principal(self, auth_service):
        with pytest.raises(NotFoundError):
            auth_service.set_role("missing", "officer")

    def test_delete_principal(self, auth_service, applicant):
        admin = auth_service.store.create_principal("dean@college.edu", "Dean", role="admin")
        auth_service._save_password(admin.id, PASSWORD)
        ctx = auth_service.authenticate(_bearer(auth_service.login("dean@college.edu", PASSWORD)[1]))

        with pytest.raises(ValidationError):
            auth_service.delete_principal(ctx, admin.id)
        auth_service.delete_principal(ctx, applicant.id)
        with pytest.raises(NotFoundError):
            auth_service.delete_principal(ctx, applicant.id)

    def test_seed_demo_principals_idempotent(self, auth_service):
        assert auth_service.seed_demo_principals() == 3
        assert auth_service.seed_demo_principals() == 0
        principal, _ = auth_service.login("admin@college.edu", "admin123")
        assert principal.role == "admin"


class TestLogging:
    def test_rate_limit_logged_with_retry_after(self, auth_service, applicant):
        for _ in range(5):
            with pytest.raises(UnauthenticatedError):
                auth_service.login("ada@college.edu", "wrong-password")

        with patch("admissions_portal.service.throttle.logger") as mock_logger:
            with pytest.raises(RateLimitedError):
                auth_service.login("ada@college.edu", PASSWORD)

        mock_logger.warning.assert_called_once()
        args, kwargs = mock_logger.warning.call_args
        assert args == ("login_rate_limited",)
        assert kwargs["retry_after_seconds"] == 900

    def test_bump_logged(self, auth_service, applicant):
        with patch("admissions_portal.service.sessions.logger") as mock_logger:
            auth_service.invalidate_all_sessions(applicant.id)
        mock_logger.info.assert_any_call(
            "session_version_bumped", principal_id=applicant.id, version=2
        )


class TestSweep:
    def test_sweep_trims_registry_and_purges_throttle(self, auth_service, applicant, clock):
        for _ in range(3):
            auth_service.login("ada@college.edu", PASSWORD)
        auth_service.registry.max_sessions = 2
        with pytest.raises(UnauthenticatedError):
            auth_service.login("ghost@college.edu", PASSWORD)
        clock.advance(901)

        result = auth_service.sweep()

        assert result == {"sessions_trimmed": 2, "throttle_purged": 2}

    async def test_background_sweep_runs_until_cancelled(self):
        from admissions_portal.app import _run_session_sweep

        auth = MagicMock()
        auth.sweep.return_value = {"sessions_trimmed": 0, "throttle_purged": 0}

        task = asyncio.create_task(_run_session_sweep(auth, 0))
        await asyncio.sleep(0.05)
        task.cancel()
        await task

        assert auth.sweep.called
