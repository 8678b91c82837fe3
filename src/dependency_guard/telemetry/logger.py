"""
Structured logging for protected calls.

Every log line written while a protected call runs carries that call's
identity (call id, dependency, operation name and the attempt in flight),
taken from a ``ContextVar`` so concurrent calls never mix their context.

Errors raised by secret-store and datastore clients often echo credentials
back in their messages, and the executor logs ``str(error)``. Both
formatters therefore pass every message and field through
``SensitiveDataMasker`` before writing.
"""

from __future__ import annotations

import json
import logging
import re
import sys
from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from collections.abc import Iterator

REDACTED = "***REDACTED***"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    def to_logging_level(self) -> int:
        return getattr(logging, self.value)


@dataclass(frozen=True)
class LogContext:
    """Identity of the protected call a log line belongs to.

    Attributes:
        call_id: Unique identifier of one protected call
        dependency: Dependency name
        operation_name: Caller-supplied operation name
        attempt: 1-based attempt in flight, once attempts have started
    """

    call_id: str | None = None
    dependency: str | None = None
    operation_name: str | None = None
    attempt: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the populated fields only."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    def for_attempt(self, attempt: int) -> LogContext:
        """Return this context narrowed to one attempt."""
        return replace(self, attempt=attempt)


_EMPTY_CONTEXT = LogContext()
_call_context: ContextVar[LogContext] = ContextVar(
    "dependency_guard_log_context", default=_EMPTY_CONTEXT
)


def get_log_context() -> LogContext:
    """Get the logging context of the running call."""
    return _call_context.get()


def set_log_context(context: LogContext) -> Token[LogContext]:
    """Install a logging context for the current task.

    Returns:
        Token that restores the previous context via ``reset_log_context``
    """
    return _call_context.set(context)


def reset_log_context(token: Token[LogContext]) -> None:
    """Restore the context active before ``set_log_context``."""
    _call_context.reset(token)


def clear_log_context() -> None:
    _call_context.set(_EMPTY_CONTEXT)


@contextmanager
def log_context(context: LogContext) -> Iterator[LogContext]:
    """Scope a logging context to a block.

    Example:
        >>> with log_context(get_log_context().for_attempt(2)):
        ...     logger.warning("Transient failure, retrying")
    """
    token = set_log_context(context)
    try:
        yield context
    finally:
        reset_log_context(token)


class SensitiveDataMasker:
    """Redacts credentials from log messages and structured fields.

    String values are scrubbed with ``patterns``. Fields whose name mentions
    a credential are replaced wholesale, whatever their value.
    """

    DEFAULT_PATTERNS: ClassVar[tuple[tuple[str, str], ...]] = (
        (r"(Bearer\s+)([^\s\"',;]+)", r"\1" + REDACTED),
        (r"(Authorization[\"']?\s*[:=]\s*[\"']?)(?!Bearer\s)([^\"'\s,;]+)", r"\1" + REDACTED),
        (r"(api[_-]?key[\"']?\s*[:=]\s*[\"']?)([^\"'\s,;&]+)", r"\1" + REDACTED),
        # Datastore and storage connection strings
        (r"(AccountKey=)([^;\s]+)", r"\1" + REDACTED),
        (r"(SharedAccessSignature=)([^;\s]+)", r"\1" + REDACTED),
        (r"(Password=)([^;\s]+)", r"\1" + REDACTED),
        # SAS query strings
        (r"([?&]sig=)([^&\s]+)", r"\1" + REDACTED),
        (r"(secret[\"']?\s*[:=]\s*[\"']?)([^\"'\s,;&]+)", r"\1" + REDACTED),
    )

    SENSITIVE_FIELDS: ClassVar[tuple[str, ...]] = (
        "secret",
        "token",
        "password",
        "credential",
        "authorization",
        "api_key",
        "apikey",
        "account_key",
        "connection_string",
    )

    def __init__(self, patterns: tuple[tuple[str, str], ...] | None = None) -> None:
        self._patterns = [
            (re.compile(pattern, re.IGNORECASE), replacement)
            for pattern, replacement in (patterns or self.DEFAULT_PATTERNS)
        ]

    def is_sensitive(self, name: str) -> bool:
        lowered = name.lower()
        return any(marker in lowered for marker in self.SENSITIVE_FIELDS)

    def mask(self, text: str) -> str:
        for pattern, replacement in self._patterns:
            text = pattern.sub(replacement, text)
        return text

    def mask_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.mask(value)
        if isinstance(value, dict):
            return self.mask_fields(value)
        if isinstance(value, (list, tuple)):
            return [self.mask_value(item) for item in value]
        return value

    def mask_fields(self, fields: dict[str, Any]) -> dict[str, Any]:
        """Mask a mapping of log fields, recursing into nested values."""
        return {
            name: REDACTED if self.is_sensitive(name) else self.mask_value(value)
            for name, value in fields.items()
        }


class _CallFormatter(logging.Formatter):
    """Shared rendering of message, call context and masked fields."""

    def __init__(self, masker: SensitiveDataMasker | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._masker = masker or SensitiveDataMasker()

    def message_of(self, record: logging.LogRecord) -> str:
        return self._masker.mask(record.getMessage())

    def fields_of(self, record: logging.LogRecord) -> dict[str, Any]:
        return self._masker.mask_fields(getattr(record, "guard_fields", {}))


class JsonFormatter(_CallFormatter):
    """One JSON object per line, with the call context nested under ``context``."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: dict[str, Any] = {
            "timestamp": created.isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": self.message_of(record),
        }
        if context := get_log_context().to_dict():
            payload["context"] = context
        payload.update(self.fields_of(record))
        return json.dumps(payload, default=str)


class TextFormatter(_CallFormatter):
    """``time | level | logger | message | key=value ...`` lines."""

    def __init__(self, masker: SensitiveDataMasker | None = None) -> None:
        super().__init__(
            masker,
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(guard_message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        record.guard_message = self.message_of(record)
        line = super().format(record)
        fields = {**get_log_context().to_dict(), **self.fields_of(record)}
        if not fields:
            return line
        return line + " | " + " ".join(f"{k}={v}" for k, v in fields.items())


class GuardLogger:
    """Thin structured wrapper over a stdlib logger.

    Keyword arguments passed to the log methods become structured fields.

    Example:
        >>> logger = get_logger("dependency_guard.executor")
        >>> logger.info("Call succeeded", attempts=1)
    """

    _loggers: ClassVar[dict[str, logging.Logger]] = {}
    _level: ClassVar[LogLevel] = LogLevel.INFO
    _handler: ClassVar[logging.Handler | None] = None

    @classmethod
    def configure(
        cls,
        level: LogLevel = LogLevel.INFO,
        format: str = "json",
        stream: Any = None,
        masker: SensitiveDataMasker | None = None,
    ) -> None:
        """Route every guard logger to one handler.

        Args:
            level: Minimum level written
            format: ``"json"`` or ``"text"``
            stream: Output stream (default: stderr)
            masker: Masker used by the formatter
        """
        formatter = JsonFormatter(masker) if format == "json" else TextFormatter(masker)
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(formatter)
        handler.setLevel(level.to_logging_level())

        cls._level = level
        cls._handler = handler
        for logger in cls._loggers.values():
            cls._attach(logger)

    @classmethod
    def _attach(cls, logger: logging.Logger) -> None:
        logger.handlers.clear()
        if cls._handler is not None:
            logger.addHandler(cls._handler)
        else:
            fallback = logging.StreamHandler(sys.stderr)
            fallback.setFormatter(TextFormatter())
            logger.addHandler(fallback)
        logger.setLevel(cls._level.to_logging_level())
        logger.propagate = False

    @classmethod
    def get_logger(cls, name: str) -> GuardLogger:
        if name not in cls._loggers:
            logger = logging.getLogger(name)
            cls._attach(logger)
            cls._loggers[name] = logger
        return cls(cls._loggers[name])

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(self, level: int, msg: str, fields: dict[str, Any]) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(level, msg, extra={"guard_fields": fields})

    def debug(self, msg: str, **fields: Any) -> None:
        self._log(logging.DEBUG, msg, fields)

    def info(self, msg: str, **fields: Any) -> None:
        self._log(logging.INFO, msg, fields)

    def warning(self, msg: str, **fields: Any) -> None:
        self._log(logging.WARNING, msg, fields)

    def error(self, msg: str, **fields: Any) -> None:
        self._log(logging.ERROR, msg, fields)


def get_logger(name: str) -> GuardLogger:
    """Get a structured logger.

    Args:
        name: Logger name, conventionally ``dependency_guard.<component>``

    Returns:
        Logger instance
    """
    return GuardLogger.get_logger(name)
