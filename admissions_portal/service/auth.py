from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from admissions_portal.config import Settings
from admissions_portal.logging import get_logger
from admissions_portal.service.errors import (
    AuthenticationError,
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
from admissions_portal.service.sessions import SessionRegistry, SessionVersionStore
from admissions_portal.service.throttle import LoginThrottle, ThrottleDecision
from admissions_portal.service.tokens import (
    PASSWORD_RESET_TOKEN,
    TokenCodec,
    TokenError,
    TokenExpired,
)
from admissions_portal.storage.errors import ConstraintViolation
from admissions_portal.storage.memory import normalize_email
from admissions_portal.storage.models import (
    ROLE_ADMIN,
    ROLE_APPLICANT,
    ROLE_OFFICER,
    ROLES,
    PasswordCredential,
    Principal,
)

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8

DEMO_PRINCIPALS = (
    ("admin@college.edu", "admin123", "Admin User", ROLE_ADMIN),
    ("officer@college.edu", "officer123", "Admissions Officer", ROLE_OFFICER),
    ("student@email.com", "student123", "John Student", ROLE_APPLICANT),
)


class AuthStore(Protocol):
    def create_principal(
        self,
        email: str,
        name: str,
        *,
        role: str = ROLE_APPLICANT,
        preferences: Optional[dict] = None,
    ) -> Principal: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

    def list_principals(self, role: Optional[str] = None, limit: int = 100) -> List[Principal]: ...

    def update_profile(
        self,
        principal_id: str,
        *,
        name: Optional[str] = None,
        preferences: Optional[dict] = None,
    ) -> Optional[Principal]: ...

    def update_role(self, principal_id: str, role: str) -> Optional[Principal]: ...

    def delete_principal(self, principal_id: str) -> bool: ...

    def save_password(
        self, principal_id: str, password_hash: str, password_algo: str = "argon2id"
    ) -> None: ...

    def get_password_record(self, principal_id: str) -> Optional[PasswordCredential]: ...


class Registry(Protocol):
    def register(self, principal_id: str, token: str) -> List[str]: ...

    def revoke(self, principal_id: str, token: str) -> bool: ...

    def is_live(self, principal_id: str, token: str) -> bool: ...

    def clear(self, principal_id: str) -> int: ...

    def sweep(self) -> int: ...


class VersionStore(Protocol):
    def current_version(self, principal_id: str) -> int: ...

    def bump_version(self, principal_id: str) -> int: ...


class Throttle(Protocol):
    def attempt(self, email: str) -> ThrottleDecision: ...

    def record_failure(self, email: str) -> int: ...

    def record_success(self, email: str) -> None: ...

    def purge_expired(self) -> int: ...


@dataclass
class AuthContext:
    """Identity admitted by the session gate for one request."""

    principal_id: str
    email: str
    name: str
    role: str
    version: int
    token: str
    token_id: str
    expires_at: float


class AuthService:
    """Session lifecycle: login, logout, per-request validation, invalidation."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        codec: Optional[TokenCodec] = None,
        registry: Optional[Registry] = None,
        versions: Optional[VersionStore] = None,
        throttle: Optional[Throttle] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.logger = logger
        self.codec = codec or TokenCodec(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttl_seconds=settings.token_ttl_hours * 3600,
            reset_ttl_seconds=settings.password_reset_ttl_minutes * 60,
        )
        self.registry: Registry = registry or SessionRegistry(
            max_sessions=settings.max_concurrent_sessions
        )
        self.versions: VersionStore = versions or SessionVersionStore()
        self.throttle: Throttle = throttle or LoginThrottle(
            max_attempts=settings.login_max_attempts,
            window_seconds=settings.login_window_minutes * 60,
        )
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def _validate_password(self, password: str) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )

    def verify_password(self, principal_id: str, password: str) -> bool:
        record = self.store.get_password_record(principal_id)
        if not record:
            self.logger.warning("password_record_missing", principal_id=principal_id)
            return False
        if record.password_algo != "argon2id":
            self.logger.warning(
                "password_algo_mismatch", principal_id=principal_id, algo=record.password_algo
            )
            return False
        try:
            return self._pwd_hasher.verify(record.password_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def _save_password(self, principal_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(principal_id, pwd_hash, algo)

    # session issuance
    def _start_session(self, principal: Principal) -> str:
        version = self.versions.current_version(principal.id)
        token = self.codec.issue(principal, version)
        evicted = self.registry.register(principal.id, token)
        if evicted:
            self.logger.info(
                "session_limit_reached",
                principal_id=principal.id,
                max_sessions=self.settings.max_concurrent_sessions,
            )
        return token

    def register(
        self, email: str, password: str, name: str
    ) -> Tuple[Principal, str]:
        """Create an applicant account and sign it in.

        Self-service registration always yields an applicant; elevated roles
        are granted by an admin through ``set_role``.
        """
        if not self.settings.allow_signup:
            raise ForbiddenError("Registration is disabled")
        self._validate_password(password)
        try:
            principal = self.store.create_principal(email, name, role=ROLE_APPLICANT)
        except ConstraintViolation as exc:
            raise ConflictError("Email already registered", detail=exc.detail) from exc
        self._save_password(principal.id, password)
        token = self._start_session(principal)
        self.logger.info("principal_registered", principal_id=principal.id)
        return principal, token

    def login(self, email: str, password: str) -> Tuple[Principal, str]:
        decision = self.throttle.attempt(email)
        if not decision.allowed:
            raise RateLimitedError(
                "Too many login attempts. Please try again later.",
                retry_after_seconds=decision.retry_after_seconds,
            )
        principal = self.store.get_principal_by_email(email)
        if not principal or not self.verify_password(principal.id, password):
            failures = self.throttle.record_failure(email)
            self.logger.warning("login_failed", email=email, failures=failures)
            raise UnauthenticatedError("Invalid email or password")
        token = self._start_session(principal)
        self.throttle.record_success(email)
        self.logger.info("login_succeeded", principal_id=principal.id)
        return principal, token

    def logout(self, ctx: AuthContext) -> bool:
        """End only the presented session; sibling sessions stay valid."""
        revoked = self.registry.revoke(ctx.principal_id, ctx.token)
        self.logger.info("logout", principal_id=ctx.principal_id, revoked=revoked)
        return revoked

    def logout_token(self, authorization: Optional[str]) -> bool:
        """Best-effort logout for the HTTP layer, which always answers 200."""
        try:
            ctx = self.authenticate(authorization)
        except AuthenticationError:
            return False
        return self.logout(ctx)

    # request gate
    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    def authenticate(
        self, authorization: Optional[str], *, required_roles: Optional[tuple] = None
    ) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise UnauthenticatedError("Authentication required")
        try:
            claims = self.codec.verify(token)
        except TokenExpired as exc:
            raise SessionExpiredError("Session expired. Please log in again.") from exc
        except TokenError as exc:
            self.logger.info("token_rejected", reason=str(exc))
            raise InvalidTokenError("Invalid token") from exc

        principal_id = str(claims["sub"])
        if claims["ver"] != self.versions.current_version(principal_id):
            raise SessionInvalidatedError("Session invalidated. Please log in again.")
        if not self.registry.is_live(principal_id, token):
            if self.settings.enforce_session_registry:
                raise SessionInvalidatedError("Session invalidated. Please log in again.")
            self.logger.debug("session_not_in_registry", principal_id=principal_id)

        ctx = AuthContext(
            principal_id=principal_id,
            email=claims.get("email", ""),
            name=claims.get("name", ""),
            role=claims.get("role", ROLE_APPLICANT),
            version=claims["ver"],
            token=token,
            token_id=claims["jti"],
            expires_at=float(claims["exp"]),
        )
        if required_roles:
            self.require_role(ctx, *required_roles)
        return ctx

    @staticmethod
    def require_role(ctx: AuthContext, *roles: str) -> None:
        if ctx.role not in roles:
            raise ForbiddenError(
                "Insufficient permissions", detail={"required_roles": list(roles)}
            )

    # invalidation
    def invalidate_all_sessions(self, principal_id: str) -> int:
        """Bump the session version so every token issued so far stops working."""
        version = self.versions.bump_version(principal_id)
        cleared = self.registry.clear(principal_id)
        self.logger.info(
            "sessions_invalidated", principal_id=principal_id, version=version, cleared=cleared
        )
        return version

    def sweep(self) -> dict:
        return {
            "sessions_trimmed": self.registry.sweep(),
            "throttle_purged": self.throttle.purge_expired(),
        }

    # account self-service
    def current_principal(self, ctx: AuthContext) -> Principal:
        principal = self.store.get_principal(ctx.principal_id)
        if not principal:
            raise NotFoundError("User not found")
        return principal

    def update_profile(
        self, ctx: AuthContext, *, name: Optional[str] = None, preferences: Optional[dict] = None
    ) -> Principal:
        principal = self.store.update_profile(
            ctx.principal_id, name=name, preferences=preferences
        )
        if not principal:
            raise NotFoundError("User not found")
        return principal

    def change_password(self, ctx: AuthContext, current_password: str, new_password: str) -> str:
        """Replace the password and sign out every other device.

        Returns a fresh token for the caller, since its own token predates the
        version bump.
        """
        if not self.verify_password(ctx.principal_id, current_password):
            raise ValidationError(
                "Current password is incorrect", detail={"field": "currentPassword"}
            )
        self._validate_password(new_password)
        self._save_password(ctx.principal_id, new_password)
        self.invalidate_all_sessions(ctx.principal_id)
        return self._start_session(self.current_principal(ctx))

    def request_password_reset(self, email: str) -> Optional[str]:
        """Return a reset token for a known address, ``None`` otherwise.

        Callers must answer identically in both cases.
        """
        principal = self.store.get_principal_by_email(email)
        email_hash = hashlib.sha256(normalize_email(email).encode()).hexdigest()
        if not principal:
            self.logger.info("password_reset_unknown_email", email_hash=email_hash)
            return None
        token = self.codec.issue_password_reset(
            principal, self.versions.current_version(principal.id)
        )
        self.logger.info(
            "password_reset_requested", principal_id=principal.id, email_hash=email_hash
        )
        return token

    def complete_password_reset(self, token: str, new_password: str) -> Principal:
        try:
            claims = self.codec.verify(token, token_type=PASSWORD_RESET_TOKEN)
        except TokenExpired as exc:
            raise ValidationError(
                "Reset token has expired. Please request a new one."
            ) from exc
        except TokenError as exc:
            raise ValidationError("Invalid reset token") from exc
        principal = self.store.get_principal(str(claims["sub"]))
        # A completed reset bumps the version, so each reset token works once.
        if not principal or claims["ver"] != self.versions.current_version(principal.id):
            raise ValidationError("Invalid reset token")
        self._validate_password(new_password)
        self._save_password(principal.id, new_password)
        self.invalidate_all_sessions(principal.id)
        self.logger.info("password_reset_completed", principal_id=principal.id)
        return principal

    # administration
    def list_principals(self, role: Optional[str] = None) -> List[Principal]:
        return self.store.list_principals(role=role)

    def set_role(self, principal_id: str, role: str) -> Principal:
        """Change a principal's role; outstanding tokens carry the old role and are invalidated."""
        if role not in ROLES:
            raise ValidationError("Invalid role", detail={"allowed": list(ROLES)})
        principal = self.store.update_role(principal_id, role)
        if not principal:
            raise NotFoundError("User not found")
        self.invalidate_all_sessions(principal_id)
        return principal

    def delete_principal(self, ctx: AuthContext, principal_id: str) -> None:
        if principal_id == ctx.principal_id:
            raise ValidationError("Cannot delete your own account")
        if not self.store.delete_principal(principal_id):
            raise NotFoundError("User not found")
        self.invalidate_all_sessions(principal_id)

    def seed_demo_principals(self) -> int:
        created = 0
        for email, password, name, role in DEMO_PRINCIPALS:
            if self.store.get_principal_by_email(email):
                continue
            principal = self.store.create_principal(email, name, role=role)
            self._save_password(principal.id, password)
            created += 1
        if created:
            self.logger.info("demo_principals_seeded", created=created)
        return created
