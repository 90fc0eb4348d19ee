import logging
import re
import sys
from typing import Any

import structlog

from usage_guard.shared.core.config import get_settings

REDACTED = "[REDACTED]"
EMAIL_REDACTED = "[EMAIL_REDACTED]"

_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+")
_SENSITIVE_KEYS = frozenset(
    {"password", "token", "secret", "authorization", "api_key", "apikey"}
)
_SENSITIVE_SUFFIXES = ("_token", "_secret", "_password", "_key")


def _is_sensitive_key(key: Any) -> bool:
    normalized = str(key).strip().lower().replace("-", "_")
    return normalized in _SENSITIVE_KEYS or normalized.endswith(_SENSITIVE_SUFFIXES)


def _redact(value: Any) -> Any:
    if isinstance(value, str):
        return _EMAIL_PATTERN.sub(EMAIL_REDACTED, value)
    if isinstance(value, dict):
        return {
            k: REDACTED if _is_sensitive_key(k) else _redact(v) for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


def pii_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    structlog processor that masks email addresses and secret-bearing fields.

    Alert recipients are resolved on every notification, so addresses show
    up in log context often and must never leave the process unmasked.
    """
    return {
        key: REDACTED if _is_sensitive_key(key) else _redact(value)
        for key, value in event_dict.items()
    }


def setup_logging() -> None:
    settings = get_settings()
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        pii_redactor,
    ]

    if settings.DEBUG:
        processors = shared_processors + [structlog.dev.ConsoleRenderer()]
        level = logging.DEBUG
    else:
        processors = shared_processors + [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
        level = logging.INFO

    structlog.configure(
        processors=processors,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    # uvicorn, apscheduler and sqlalchemy log through the stdlib
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)
