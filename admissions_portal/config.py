from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from admissions_portal.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the portal session core."""

    redis_url: str = env_field(
        "",
        "REDIS_URL",
        description="Shared session state backend; empty keeps state in-process",
    )
    state_dir: str = env_field("/srv/admissions-portal", "STATE_DIR")
    persist_state: bool = env_field(
        True,
        "PERSIST_STATE",
        description="Write principals and credentials through to STATE_DIR",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; exposes reset tokens in responses.",
    )
    seed_demo_users: bool = env_field(
        False,
        "SEED_DEMO_USERS",
        description="Create the demo admin/officer/applicant accounts on startup",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("admissions-portal", "JWT_ISSUER")
    jwt_audience: str = env_field("admissions-portal-clients", "JWT_AUDIENCE")
    token_ttl_hours: int = env_field(24, "TOKEN_TTL_HOURS", gt=0)
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", gt=0)

    # Session bookkeeping
    max_concurrent_sessions: int = env_field(5, "MAX_CONCURRENT_SESSIONS", ge=1)
    session_sweep_interval_seconds: int = env_field(
        60, "SESSION_SWEEP_INTERVAL_SECONDS", gt=0
    )
    enforce_session_registry: bool = env_field(
        False,
        "ENFORCE_SESSION_REGISTRY",
        description="Reject tokens that are no longer live in the session registry",
    )

    # Login throttle
    login_window_minutes: int = env_field(15, "LOGIN_WINDOW_MINUTES", gt=0)
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS", ge=1)

    # Client idle tracking
    idle_timeout_minutes: int = env_field(30, "IDLE_TIMEOUT_MINUTES", gt=0)
    idle_warning_lead_minutes: int = env_field(2, "IDLE_WARNING_LEAD_MINUTES", ge=0)

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @field_validator("idle_warning_lead_minutes")
    @classmethod
    def _validate_warning_lead(cls, value: int, info: ValidationInfo) -> int:
        timeout = info.data.get("idle_timeout_minutes")
        if timeout is not None and value >= timeout:
            raise ValueError("idle warning lead must be shorter than the idle timeout")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens survive restarts
        state_root = Path(os.getenv("STATE_DIR", "/srv/admissions-portal"))
        secret_path = state_root / ".jwt_secret"

        try:
            state_root.mkdir(parents=True, exist_ok=True)
            os.chmod(state_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup", error=str(exc), path=str(state_root)
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make STATE_DIR writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
