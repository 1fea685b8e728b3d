"""Structured logging for the session service.

Request-scoped fields live in structlog's context variables: the HTTP
middleware binds ``correlation_id`` and the bearer-token dependency adds the
``user_id`` and ``session_id`` it resolved, so engine and storage code logs
them without threading them through every call.
"""

from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Dict, Optional

import structlog

REQUEST_CONTEXT_KEYS = ("correlation_id", "user_id", "session_id")

# Matched as substrings of lower-cased keys: covers access_token,
# x_admin_token, admin_api_key, password_hash, jwt_secret
_SENSITIVE_KEY_PARTS = ("password", "secret", "token", "api_key", "authorization")


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a correlation ID for the current request, generating one if absent."""
    cid = correlation_id or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def bind_request_context(
    *, user_id: Optional[str] = None, session_id: Optional[str] = None
) -> None:
    """Attach the authenticated principal to the rest of this request's logs."""
    values = {"user_id": user_id, "session_id": session_id}
    structlog.contextvars.bind_contextvars(
        **{key: value for key, value in values.items() if value is not None}
    )


def clear_request_context() -> None:
    structlog.contextvars.unbind_contextvars(*REQUEST_CONTEXT_KEYS)


def _mask(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    if len(value) <= 8:
        return "***"
    # Keep first/last 2 chars so a leaked token can still be matched
    return value[:2] + "***" + value[-2:]


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to mask credentials and tokens in log entries."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if any(part in lower_key for part in _SENSITIVE_KEY_PARTS):
            event_dict[key] = _mask(event_dict[key])
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        renderers = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.typing.FilteringBoundLogger:
    return structlog.get_logger(name)
