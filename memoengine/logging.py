"""Structured logging for memoengine.

Loggers accept keyword fields alongside the message and pick up scoped
context (cache name, operation, correlation id) from a context variable, so
log lines emitted from inside a memoized call carry the cache they belong to.

Nothing is written until logging is configured: the root logger starts
without handlers, which keeps a library import silent.

Example:
    >>> from memoengine.logging import get_logger, LogContext, configure_logging
    >>> configure_logging(level="DEBUG")
    >>> logger = get_logger(__name__)
    >>> with LogContext(cache_name="users"):
    ...     logger.debug("Cache hit", key="[42]")
"""

from __future__ import annotations

import contextlib
import json
import logging
import sys
from abc import abstractmethod
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Protocol,
    Self,
    runtime_checkable,
)


if TYPE_CHECKING:
    from collections.abc import Callable, Mapping


ROOT_LOGGER_NAME = "memoengine"


class LogLevel(Enum):
    """Log severity levels, numerically compatible with stdlib logging."""

    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    def to_stdlib(self) -> int:
        """Convert to stdlib logging level."""
        return self.value

    @classmethod
    def from_string(cls, level: str) -> LogLevel:
        """Parse a level name such as ``"debug"`` or ``"WARN"``.

        Raises:
            ValueError: If the name is not a known level.
        """
        normalized = level.strip().upper()
        if normalized == "WARN":
            normalized = "WARNING"
        try:
            return cls[normalized]
        except KeyError:
            raise ValueError(f"Unknown log level: {level}") from None


# =============================================================================
# Context Management
# =============================================================================


@dataclass(frozen=True, slots=True)
class LogContextData:
    """Immutable container for log context data.

    Attributes:
        cache_name: Name of the memoized function being executed.
        operation: Current operation name.
        correlation_id: Request/transaction correlation ID.
        extra: Additional context fields.
    """

    cache_name: str | None = None
    operation: str | None = None
    correlation_id: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def merge(self, other: LogContextData) -> LogContextData:
        """Create a new context where ``other`` takes precedence."""
        return LogContextData(
            cache_name=other.cache_name or self.cache_name,
            operation=other.operation or self.operation,
            correlation_id=other.correlation_id or self.correlation_id,
            extra={**self.extra, **other.extra},
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result: dict[str, Any] = {}
        if self.cache_name:
            result["cache_name"] = self.cache_name
        if self.operation:
            result["operation"] = self.operation
        if self.correlation_id:
            result["correlation_id"] = self.correlation_id
        result.update(self.extra)
        return result


_log_context: ContextVar[LogContextData] = ContextVar("memoengine_log_context")


class LogContext:
    """Context manager for scoped log context.

    Nested contexts merge, the innermost value winning.

    Example:
        >>> with LogContext(cache_name="users"):
        ...     with LogContext(operation="invalidate"):
        ...         logger.info("Dropping entry")  # carries both fields
    """

    def __init__(
        self,
        *,
        cache_name: str | None = None,
        operation: str | None = None,
        correlation_id: str | None = None,
        **extra: Any,
    ) -> None:
        self._new_context = LogContextData(
            cache_name=cache_name,
            operation=operation,
            correlation_id=correlation_id,
            extra=extra,
        )
        self._token: Any = None

    def __enter__(self) -> Self:
        merged = get_current_context().merge(self._new_context)
        self._token = _log_context.set(merged)
        return self

    def __exit__(self, *args: Any) -> None:
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None


def get_current_context() -> LogContextData:
    """Get the current log context (empty if none is set)."""
    return _log_context.get(LogContextData())


# =============================================================================
# Log Record
# =============================================================================


@dataclass(slots=True)
class LogRecord:
    """Structured log record.

    Attributes:
        level: Log severity level.
        message: Log message.
        logger_name: Name of the logger.
        timestamp: When the log was created.
        context: Associated context data.
        extra: Additional structured fields.
        exc_info: Exception information if any.
    """

    level: LogLevel
    message: str
    logger_name: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    context: LogContextData = field(default_factory=LogContextData)
    extra: dict[str, Any] = field(default_factory=dict)
    exc_info: BaseException | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        result = {
            "level": self.level.name,
            "message": self.message,
            "logger": self.logger_name,
            "timestamp": self.timestamp.isoformat(),
            **self.context.to_dict(),
            **self.extra,
        }
        if self.exc_info:
            result["exception"] = str(self.exc_info)
            result["exception_type"] = type(self.exc_info).__name__
        return result


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class LogHandler(Protocol):
    """Receives log records and writes them somewhere."""

    @abstractmethod
    def handle(self, record: LogRecord) -> None:
        """Handle a log record."""
        ...

    @abstractmethod
    def flush(self) -> None:
        """Flush any buffered output."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Close the handler and release resources."""
        ...


@runtime_checkable
class LogFormatter(Protocol):
    """Converts a LogRecord to its string form."""

    @abstractmethod
    def format(self, record: LogRecord) -> str:
        """Format a log record."""
        ...


# =============================================================================
# Formatters
# =============================================================================


class TextFormatter:
    """Plain text log formatter.

    Example output:
        2024-01-15T10:30:45.123456+00:00 [DEBUG] memoengine.memoize: Cache hit | key=[42]
    """

    def __init__(self, include_context: bool = True, include_extra: bool = True) -> None:
        self.include_context = include_context
        self.include_extra = include_extra

    def format(self, record: LogRecord) -> str:
        parts = [
            record.timestamp.isoformat(),
            f"[{record.level.name}]",
            f"{record.logger_name}:",
            record.message,
        ]

        fields: dict[str, Any] = {}
        if self.include_context:
            fields.update(record.context.to_dict())
        if self.include_extra:
            fields.update(record.extra)
        if fields:
            parts.append("| " + " ".join(f"{k}={v}" for k, v in fields.items()))

        if record.exc_info:
            parts.append(f"| exception={record.exc_info!r}")

        return " ".join(parts)


class JSONFormatter:
    """One JSON object per record, for log shippers."""

    def __init__(self, indent: int | None = None) -> None:
        self._indent = indent

    def format(self, record: LogRecord) -> str:
        return json.dumps(record.to_dict(), indent=self._indent, default=str)


# =============================================================================
# Handlers
# =============================================================================


class StreamHandler:
    """Handler that writes formatted records to a stream (stderr by default)."""

    def __init__(
        self,
        stream: Any = None,
        formatter: LogFormatter | None = None,
        level: LogLevel = LogLevel.DEBUG,
    ) -> None:
        self._stream = stream or sys.stderr
        self._formatter = formatter or TextFormatter()
        self._level = level
        self._closed = False

    def handle(self, record: LogRecord) -> None:
        if self._closed or record.level.value < self._level.value:
            return
        # A broken stream must never break the memoized call.
        with contextlib.suppress(Exception):
            self._stream.write(self._formatter.format(record) + "\n")

    def flush(self) -> None:
        if not self._closed and hasattr(self._stream, "flush"):
            with contextlib.suppress(Exception):
                self._stream.flush()

    def close(self) -> None:
        self.flush()
        self._closed = True


class BufferingHandler:
    """Keeps records in memory; flushes them to a callback in batches.

    Without a callback the buffer simply accumulates, which makes it handy
    for asserting on log output in tests.
    """

    def __init__(
        self,
        capacity: int = 100,
        flush_callback: Callable[[list[LogRecord]], None] | None = None,
    ) -> None:
        self._capacity = capacity
        self._flush_callback = flush_callback
        self._buffer: list[LogRecord] = []
        self._closed = False

    @property
    def records(self) -> list[LogRecord]:
        """Records buffered since the last flush."""
        return list(self._buffer)

    def handle(self, record: LogRecord) -> None:
        if self._closed:
            return
        self._buffer.append(record)
        if self._flush_callback is not None and len(self._buffer) >= self._capacity:
            self.flush()

    def flush(self) -> None:
        if not self._buffer or self._flush_callback is None:
            return
        with contextlib.suppress(Exception):
            self._flush_callback(list(self._buffer))
        self._buffer.clear()

    def close(self) -> None:
        self.flush()
        self._closed = True


class NullHandler:
    """Handler that discards all records."""

    def handle(self, record: LogRecord) -> None:
        pass

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass


class StdlibLoggerAdapter:
    """Forwards records to a stdlib ``logging.Logger``.

    Use this to route engine logs into an application's existing logging
    configuration.
    """

    def __init__(self, stdlib_logger: logging.Logger | None = None) -> None:
        self._logger = stdlib_logger or logging.getLogger(ROOT_LOGGER_NAME)

    def handle(self, record: LogRecord) -> None:
        fields = {**record.context.to_dict(), **record.extra}
        message = record.message
        if fields:
            message = f"{message} | " + " ".join(f"{k}={v}" for k, v in fields.items())
        self._logger.log(record.level.to_stdlib(), message, exc_info=record.exc_info)

    def flush(self) -> None:
        for handler in self._logger.handlers:
            handler.flush()

    def close(self) -> None:
        pass


# =============================================================================
# Logger Implementation
# =============================================================================


class MemoLogger:
    """Structured logger with context propagation.

    Records are handled by the logger's own handlers and then by its
    ancestors', mirroring stdlib propagation.

    Example:
        >>> logger = get_logger("memoengine.memoize")
        >>> logger.debug("Cache miss", key="[1, 2]")
    """

    def __init__(
        self,
        name: str,
        level: LogLevel = LogLevel.INFO,
        handlers: list[LogHandler] | None = None,
        propagate: bool = True,
    ) -> None:
        self.name = name
        self.level = level
        self._handlers: list[LogHandler] = handlers or []
        self._propagate = propagate
        self._parent: MemoLogger | None = None
        self._disabled = False

    @property
    def handlers(self) -> list[LogHandler]:
        return list(self._handlers)

    def add_handler(self, handler: LogHandler) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def remove_handler(self, handler: LogHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def is_enabled_for(self, level: LogLevel) -> bool:
        return not self._disabled and level.value >= self.level.value

    def _log(
        self,
        level: LogLevel,
        message: str,
        exc_info: BaseException | None = None,
        **kwargs: Any,
    ) -> None:
        if not self.is_enabled_for(level):
            return

        record = LogRecord(
            level=level,
            message=message,
            logger_name=self.name,
            context=get_current_context(),
            extra=kwargs,
            exc_info=exc_info,
        )
        self._dispatch(record)

    def _dispatch(self, record: LogRecord) -> None:
        logger: MemoLogger | None = self
        while logger is not None:
            if not logger._disabled:
                for handler in logger._handlers:
                    with contextlib.suppress(Exception):
                        handler.handle(record)
            if not logger._propagate:
                break
            logger = logger._parent

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log(LogLevel.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log(LogLevel.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log(LogLevel.WARNING, message, **kwargs)

    def error(self, message: str, exc_info: BaseException | None = None, **kwargs: Any) -> None:
        self._log(LogLevel.ERROR, message, exc_info=exc_info, **kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log at ERROR level with the exception currently being handled."""
        self._log(LogLevel.ERROR, message, exc_info=sys.exc_info()[1], **kwargs)


# =============================================================================
# Logger Registry
# =============================================================================


class LoggerRegistry:
    """Creates loggers on demand and wires them into a hierarchy.

    Every logger propagates to its nearest registered ancestor, and finally
    to the ``memoengine`` root logger, which owns the configured handlers.
    """

    def __init__(self) -> None:
        self._root = MemoLogger(ROOT_LOGGER_NAME, level=LogLevel.INFO, propagate=False)
        self._loggers: dict[str, MemoLogger] = {ROOT_LOGGER_NAME: self._root}

    @property
    def root(self) -> MemoLogger:
        return self._root

    def _find_parent(self, name: str) -> MemoLogger:
        while "." in name:
            name = name.rsplit(".", 1)[0]
            if name in self._loggers:
                return self._loggers[name]
        return self._root

    def get_logger(self, name: str, level: LogLevel | None = None) -> MemoLogger:
        logger = self._loggers.get(name)
        if logger is not None:
            if level is not None:
                logger.level = level
            return logger

        logger = MemoLogger(name=name, level=level or self._root.level)
        logger._parent = self._find_parent(name)
        # Re-parent loggers created earlier that now sit below this one.
        prefix = f"{name}."
        for other_name, other in self._loggers.items():
            if other_name.startswith(prefix) and other._parent is logger._parent:
                other._parent = logger
        self._loggers[name] = logger
        return logger

    def configure(
        self,
        level: LogLevel = LogLevel.INFO,
        handlers: list[LogHandler] | None = None,
        format: str = "text",
    ) -> None:
        """Set the level of every logger and replace the root handlers."""
        if handlers is None:
            formatter: LogFormatter = JSONFormatter() if format == "json" else TextFormatter()
            handlers = [StreamHandler(formatter=formatter, level=level)]

        for handler in self._root._handlers:
            handler.close()
        self._root._handlers = list(handlers)

        for logger in self._loggers.values():
            logger.level = level

    def disable(self) -> None:
        for logger in self._loggers.values():
            logger._disabled = True

    def enable(self) -> None:
        for logger in self._loggers.values():
            logger._disabled = False


_registry = LoggerRegistry()


def get_logger(name: str, level: LogLevel | None = None) -> MemoLogger:
    """Get a logger by name (typically ``__name__``).

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("Cache cleared", entries=12)
    """
    return _registry.get_logger(name, level)


def get_logger_registry() -> LoggerRegistry:
    """Return the process-wide logger registry."""
    return _registry


def configure_logging(
    level: LogLevel | str = LogLevel.INFO,
    handlers: list[LogHandler] | None = None,
    format: str = "text",
) -> None:
    """Configure engine logging.

    Args:
        level: Minimum level (LogLevel or name).
        handlers: Handlers for the root logger. A stderr stream handler
            using ``format`` is created when omitted.
        format: ``"text"`` or ``"json"``.

    Example:
        >>> configure_logging(level="DEBUG", format="json")
    """
    if isinstance(level, str):
        level = LogLevel.from_string(level)
    _registry.configure(level=level, handlers=handlers, format=format)
