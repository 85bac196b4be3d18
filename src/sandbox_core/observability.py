"""Structured logging and metric hooks.

Every log line is a JSON object carrying the tenant, session, sandbox and
operation bound through ``TenantContext``, so lifecycle and exec events for a
single tenant can be correlated without threading identifiers through every
call.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

operation_id_var: ContextVar[str | None] = ContextVar("operation_id", default=None)
tenant_id_var: ContextVar[str | None] = ContextVar("tenant_id", default=None)
session_id_var: ContextVar[str | None] = ContextVar("session_id", default=None)
sandbox_id_var: ContextVar[str | None] = ContextVar("sandbox_id", default=None)

_CONTEXT_VARS: dict[str, ContextVar[str | None]] = {
    "operation_id": operation_id_var,
    "tenant_id": tenant_id_var,
    "session_id": session_id_var,
    "sandbox_id": sandbox_id_var,
}


class LogLevel(str, Enum):
    """Log levels matching Python's logging module."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class LogContext:
    """Snapshot of the bound context variables."""

    values: dict[str, str] = field(default_factory=dict)

    @classmethod
    def current(cls) -> "LogContext":
        """Collect the context variables that are currently set."""
        values = {}
        for key, var in _CONTEXT_VARS.items():
            value = var.get()
            if value:
                values[key] = value
        return cls(values=values)

    @property
    def tenant_id(self) -> str | None:
        return self.values.get("tenant_id")

    def to_dict(self) -> dict[str, Any]:
        return dict(self.values)


class StructuredFormatter(logging.Formatter):
    """Formats log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "level": record.levelname,
            "message": record.getMessage(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "logger": record.name,
        }

        context = LogContext.current().to_dict()
        if isinstance(getattr(record, "context", None), dict):
            context.update(record.context)
        if context:
            data["context"] = context

        if record.exc_info and record.exc_info[0] is not None:
            data["error"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]) if record.exc_info[1] else "",
            }

        duration_ms = getattr(record, "duration_ms", None)
        if duration_ms is not None:
            data["duration_ms"] = round(duration_ms, 3)

        return json.dumps(data, default=str)


class StructuredLogger:
    """Wrapper around Python logging with structured output.

    Example:
        logger = get_logger(__name__)
        logger.info("Sandbox created", context={"sandbox_id": sandbox.id})
        logger.error("Destroy failed", error=exc)
    """

    def __init__(self, name: str) -> None:
        """Initialize structured logger.

        Args:
            name: Logger name (typically module name)
        """
        self.logger = logging.getLogger(name)

    def _log(
        self,
        level: LogLevel,
        message: str,
        context: dict[str, Any] | None = None,
        error: BaseException | None = None,
        duration_ms: float | None = None,
    ) -> None:
        extra: dict[str, Any] = {}
        if context:
            extra["context"] = context
        if duration_ms is not None:
            extra["duration_ms"] = duration_ms

        exc_info = (type(error), error, error.__traceback__) if error else None
        self.logger.log(
            getattr(logging, level.value),
            message,
            exc_info=exc_info,
            extra=extra,
        )

    def debug(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        duration_ms: float | None = None,
    ) -> None:
        """Log at DEBUG level."""
        self._log(LogLevel.DEBUG, message, context, duration_ms=duration_ms)

    def info(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        duration_ms: float | None = None,
    ) -> None:
        """Log at INFO level."""
        self._log(LogLevel.INFO, message, context, duration_ms=duration_ms)

    def warning(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        error: BaseException | None = None,
        duration_ms: float | None = None,
    ) -> None:
        """Log at WARNING level."""
        self._log(LogLevel.WARNING, message, context, error, duration_ms)

    def error(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        error: BaseException | None = None,
        duration_ms: float | None = None,
    ) -> None:
        """Log at ERROR level."""
        self._log(LogLevel.ERROR, message, context, error, duration_ms)


class TenantContext:
    """Bind tenant-scoped identifiers to every log line and metric in a block.

    Example:
        async with TenantContext(tenant_id="alice", session_id=run_id):
            logger.info("Executing command")
    """

    def __init__(
        self,
        tenant_id: str | None = None,
        session_id: str | None = None,
        sandbox_id: str | None = None,
        operation_id: str | None = None,
    ) -> None:
        """Initialize tenant context.

        Args:
            tenant_id: Tenant identifier
            session_id: Upper-layer AI session identifier
            sandbox_id: Engine container identifier
            operation_id: Correlation id (generated when omitted)
        """
        self.values = {
            "operation_id": operation_id or uuid.uuid4().hex[:12],
            "tenant_id": tenant_id,
            "session_id": session_id,
            "sandbox_id": sandbox_id,
        }
        self._tokens: list[tuple[ContextVar[str | None], Any]] = []

    def __enter__(self) -> "TenantContext":
        for key, value in self.values.items():
            if value:
                var = _CONTEXT_VARS[key]
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, *args: Any) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()

    async def __aenter__(self) -> "TenantContext":
        return self.__enter__()

    async def __aexit__(self, *args: Any) -> None:
        self.__exit__(*args)


class Timer:
    """Context manager for timing operations.

    Example:
        with Timer() as t:
            await engine.start(container_id)
        logger.info("Started", duration_ms=t.duration_ms)
    """

    def __init__(self) -> None:
        self.start_time: float = 0
        self.end_time: float | None = None

    @property
    def duration_ms(self) -> float:
        """Elapsed milliseconds; still counting while the block is running."""
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return (end - self.start_time) * 1000

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        self.end_time = None
        return self

    def __exit__(self, *args: Any) -> None:
        self.end_time = time.perf_counter()

    async def __aenter__(self) -> "Timer":
        return self.__enter__()

    async def __aexit__(self, *args: Any) -> None:
        self.__exit__(*args)


# Metric collection hook type
MetricCallback = Callable[[str, float, dict[str, Any]], None]

_metric_callbacks: list[MetricCallback] = []
_logger = logging.getLogger(__name__)


def register_metric_callback(callback: MetricCallback) -> None:
    """Register a callback to receive metric events.

    Args:
        callback: Function(name, value, labels) to call on metrics
    """
    _metric_callbacks.append(callback)


def clear_metric_callbacks() -> None:
    """Remove all registered metric callbacks."""
    _metric_callbacks.clear()


def emit_metric(name: str, value: float, labels: dict[str, Any] | None = None) -> None:
    """Emit a metric to all registered callbacks.

    The current tenant id is added as a label when bound.

    Args:
        name: Metric name
        value: Metric value
        labels: Optional labels/dimensions
    """
    labels = dict(labels or {})
    tenant_id = LogContext.current().tenant_id
    if tenant_id:
        labels.setdefault("tenant_id", tenant_id)

    for callback in _metric_callbacks:
        try:
            callback(name, value, labels)
        except Exception:
            _logger.debug("Metric callback failed for %s", name, exc_info=True)


def emit_counter(name: str, labels: dict[str, Any] | None = None) -> None:
    """Emit a counter metric (increment by 1)."""
    emit_metric(name, 1.0, labels)


def emit_timer(name: str, duration_ms: float, labels: dict[str, Any] | None = None) -> None:
    """Emit a timer metric."""
    emit_metric(name, duration_ms, labels)


def configure_logging(
    level: LogLevel | str = LogLevel.INFO,
    format: str = "json",
) -> None:
    """Configure the package logger.

    Args:
        level: Minimum log level
        format: Output format ("json" or "text")
    """
    level_value = level.value if isinstance(level, LogLevel) else str(level).upper()
    root_logger = logging.getLogger("sandbox_core")
    root_logger.setLevel(level_value)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if format == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))
    root_logger.addHandler(handler)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for a module.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Structured logger
    """
    return StructuredLogger(name)
