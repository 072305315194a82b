"""Structured logging setup: structlog processors rendered through stdlib ``logging``.

Components ask for ``structlog.get_logger(__name__)`` (or receive a logger) and
log event-named records such as ``logger.info("merge_executed", sha=...)``.
``configure_logging`` decides how those records are rendered and redacted.
"""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import IO, Any, Final, Literal

import structlog

_REDACTED_VALUE: Final[str] = "***REDACTED***"
_DEFAULT_LOGGER_NAME: Final[str] = "merge_orchestrator"

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)

_SENSITIVE_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_GITHUB_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b")

# structlog's own bookkeeping keys are never redacted.
_RESERVED_KEYS: Final[frozenset[str]] = frozenset({"event", "level", "timestamp", "logger"})


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Rendering options for ``configure_logging``."""

    level: int | str = "INFO"
    log_format: Literal["json", "console"] = "json"
    redact_secrets: bool = True
    logger_name: str = _DEFAULT_LOGGER_NAME
    stream: IO[str] | None = None

    @classmethod
    def from_config(
        cls, observability: Mapping[str, object], *, stream: IO[str] | None = None
    ) -> LoggingConfig:
        """Build from the ``[observability]`` config section."""

        raw_level = observability.get("log_level", "INFO")
        raw_format = observability.get("log_format", "json")
        return cls(
            level=raw_level if isinstance(raw_level, (int, str)) else "INFO",
            log_format="console" if raw_format == "console" else "json",
            redact_secrets=bool(observability.get("redact_secrets", True)),
            stream=stream,
        )


def configure_logging(config: LoggingConfig | None = None) -> logging.Logger:
    """Install structlog processors and a stdlib handler; return the package logger."""

    resolved = config if config is not None else LoggingConfig()
    level = _parse_log_level(resolved.level)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if resolved.redact_secrets:
        shared_processors.append(redact_event_dict)

    renderer: Any
    if resolved.log_format == "console":
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    else:
        renderer = structlog.processors.JSONRenderer(sort_keys=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )

    handler = logging.StreamHandler(resolved.stream if resolved.stream is not None else sys.stdout)
    handler.setFormatter(formatter)
    handler.setLevel(level)

    logger = logging.getLogger(resolved.logger_name)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger


def redact_event_dict(
    _logger: object, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor: redact sensitive keys and inline credentials."""

    for key in list(event_dict):
        value = event_dict[key]
        if key in _RESERVED_KEYS:
            if key == "event" and isinstance(value, str):
                event_dict[key] = _redact_string(value)
            continue
        event_dict[key] = _redact_value(value, key_context=key)
    return event_dict


def get_correlation_context() -> dict[str, Any]:
    """Return the correlation fields bound in the current context."""

    return dict(structlog.contextvars.get_contextvars())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Temporarily bind correlation fields (``candidate_id``, ``attempt_id`` ...) for log records."""

    bound = {key: value for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def _parse_log_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    normalized = value.strip().upper()
    parsed = logging.getLevelName(normalized)
    if isinstance(parsed, int):
        return parsed
    raise ValueError(f"unsupported logging level {value!r}")


def _redact_value(value: object, *, key_context: str | None) -> object:
    if key_context is not None and _requires_redaction_for_key(key_context):
        return _REDACTED_VALUE
    if isinstance(value, str):
        return _redact_string(value)
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, key_context=None) for item in value]
    if isinstance(value, Mapping):
        return {
            key: _redact_value(item, key_context=key if isinstance(key, str) else None)
            for key, item in value.items()
        }
    return value


def _requires_redaction_for_key(key: str) -> bool:
    key_lower = key.lower()
    return any(term in key_lower for term in _SENSITIVE_KEY_TERMS)


def _redact_string(text: str) -> str:
    redacted = _SENSITIVE_ASSIGNMENT_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{_REDACTED_VALUE}", text
    )
    redacted = _BEARER_TOKEN_PATTERN.sub(f"Bearer {_REDACTED_VALUE}", redacted)
    return _GITHUB_TOKEN_PATTERN.sub(_REDACTED_VALUE, redacted)


__all__ = [
    "LoggingConfig",
    "configure_logging",
    "correlation_scope",
    "get_correlation_context",
    "redact_event_dict",
]
