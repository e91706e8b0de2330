from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

SERVICE_NAME = "admissions-portal"

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
principal_id_var: ContextVar[Optional[str]] = ContextVar("principal_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Bearer credentials are dropped outright; addresses keep their domain.
_CREDENTIAL_KEYS = ("password", "secret", "token", "authorization")
_ADDRESS_KEYS = ("email",)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate the correlation ID for the current request.

    Also clears any principal bound by an earlier request on this context.
    """
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    principal_id_var.set(None)
    return cid


def bind_principal(principal_id: Optional[str]) -> None:
    """Tag subsequent log entries of this request with the signed-in principal."""
    principal_id_var.set(principal_id)


def _add_request_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    principal_id = principal_id_var.get()
    if principal_id:
        event_dict.setdefault("principal_id", principal_id)
    return event_dict


def mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:2]}***@{domain}"


def _scrub_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key.endswith("_hash"):
            continue
        if any(marker in lower_key for marker in _CREDENTIAL_KEYS):
            event_dict[key] = "[redacted]"
        elif isinstance(value, str) and any(marker in lower_key for marker in _ADDRESS_KEYS):
            event_dict[key] = mask_email(value)
    return event_dict


def configure_logging(
    log_level: Optional[str] = None,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Install the structlog pipeline.

    Unset arguments fall back to LOG_LEVEL, LOG_JSON and LOG_DEV_MODE.
    """
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    if development_mode is None:
        development_mode = os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_request_context,
        _scrub_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
