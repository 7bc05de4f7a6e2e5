"""
Ledger Observability

Structured logging for production monitoring of the provenance registry.
Provides correlation IDs, context propagation and per-operation timing.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Registry / CLI code                   │
    │  logger.info("msg", token_id=x)   @timed_operation      │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                      LedgerLogger                        │
    │  Correlation IDs, layer tagging, structured context     │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │          StructuredHandler (JSON) │ text formatter        │
    └─────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class LedgerLayer(Enum):
    """Package layers for categorization."""
    REGISTRY = "registry"
    SOURCES = "sources"
    AUDIT = "audit"
    STORAGE = "storage"
    CONFIG = "config"
    CLI = "cli"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    layer: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)


class StructuredHandler(logging.Handler):
    """Logging handler that outputs structured JSON."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=correlation_id_var.get(),
                layer=getattr(record, "layer", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            stream = self.stream if self.stream is not None else sys.stderr
            stream.write(event.to_json() + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)


class TextHandler(logging.StreamHandler):
    """Plain-text handler that writes to the current sys.stderr."""

    @property  # type: ignore[override]
    def stream(self) -> Any:
        return sys.stderr

    @stream.setter
    def stream(self, value: Any) -> None:
        pass


def _build_handler(log_format: str) -> logging.Handler:
    if log_format == "text":
        handler = TextHandler()
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
        return handler
    return StructuredHandler()


class LedgerLogger:
    """
    Structured logger for ledger components.

    Automatically includes correlation IDs and layer information
    in all log events.
    """

    def __init__(
        self,
        name: str,
        layer: LedgerLayer,
        level: LogLevel = LogLevel.INFO,
        log_format: str = "json",
    ):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"cropledger.{layer.value}.{name}")
        self.configure(level, log_format)

    def configure(self, level: LogLevel, log_format: str) -> None:
        """Apply a level and output format, replacing a handler of another format."""
        self._logger.setLevel(getattr(logging, level.value.upper()))

        owned = [h for h in self._logger.handlers if getattr(h, "_cropledger_handler", False)]
        if owned and all(getattr(h, "_cropledger_format", None) == log_format for h in owned):
            return
        for h in owned:
            self._logger.removeHandler(h)
        handler = _build_handler(log_format)
        handler._cropledger_handler = True  # type: ignore[attr-defined]
        handler._cropledger_format = log_format  # type: ignore[attr-defined]
        self._logger.addHandler(handler)

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        """Internal log method."""
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.DEBUG if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            **context,
        )


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    """Get the current correlation ID, creating one on first use."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


_loggers: Dict[str, LedgerLogger] = {}
_loggers_lock = threading.Lock()


def _observability_settings() -> Tuple[LogLevel, str]:
    from cropledger.config import get_config

    obs = get_config().observability
    try:
        level = LogLevel(obs.log_level.get())
    except ValueError:
        # reported by ConfigManager.validate(); logging keeps working meanwhile
        level = LogLevel(obs.log_level.default)
    return level, obs.log_format.get()


def get_logger(name: str, layer: LedgerLayer) -> LedgerLogger:
    """
    Get a logger configured from the observability settings.

    Loggers are shared per name and layer. Asking again re-applies the
    current settings, so module-level loggers follow later config loads.
    """
    level, log_format = _observability_settings()
    key = f"{layer.value}.{name}"
    with _loggers_lock:
        logger = _loggers.get(key)
        if logger is None:
            logger = LedgerLogger(name, layer, level=level, log_format=log_format)
            _loggers[key] = logger
        else:
            logger.configure(level, log_format)
    return logger


def apply_logging_config() -> None:
    """Re-apply the observability settings to every logger from get_logger."""
    level, log_format = _observability_settings()
    with _loggers_lock:
        for logger in _loggers.values():
            logger.configure(level, log_format)


T = TypeVar("T")


def timed_operation(
    logger: LedgerLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                logger.operation(operation_name, duration_ms, success)
        return wrapper
    return decorator
