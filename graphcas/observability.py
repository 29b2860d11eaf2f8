"""
Structured logging for the graphcas engine.

    ┌─────────────────────────────────────────────────────────┐
    │            decompose / transports / send / receive       │
    │  logger.info("msg", object_id=x, transport="remote")     │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                      GraphLogger                         │
    │   component, operation id (contextvar), structured data  │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │        StructuredHandler (json | text) on stdlib logging │
    └─────────────────────────────────────────────────────────┘

Every Send and Receive runs under its own operation id so that log lines from
worker threads can be tied back to the call that spawned them.
"""

from __future__ import annotations

import contextvars
import functools
import json
import logging
import sys
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, TypeVar

if TYPE_CHECKING:
    from graphcas.config import GraphCasConfig

operation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "operation_id", default=""
)

ROOT_LOGGER = "graphcas"


class Component(Enum):
    """Engine components for categorization."""
    DECOMPOSER = "decomposer"
    TRANSPORT = "transport"
    SEND = "send"
    RECEIVE = "receive"
    CONFIG = "config"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    operation_id: str = ""
    component: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def to_text(self) -> str:
        ctx = " ".join(f"{k}={v}" for k, v in self.context.items())
        head = f"{self.timestamp} {self.level.upper():<8} {self.logger}"
        if self.operation_id:
            head += f" [{self.operation_id}]"
        line = f"{head} {self.message}"
        if ctx:
            line += f" {ctx}"
        if self.exception:
            line += "\n" + self.exception
        return line


class StructuredHandler(logging.Handler):
    """Logging handler that renders LogEvents as JSON or text lines."""

    def __init__(self, stream: Any = None, fmt: str = "json"):
        super().__init__()
        self.stream = stream or sys.stderr
        self.fmt = fmt

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                operation_id=operation_id_var.get(),
                component=getattr(record, "component", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            line = event.to_json() if self.fmt == "json" else event.to_text()
            self.stream.write(line + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class GraphLogger:
    """
    Structured logger for one engine component.

    Keyword arguments passed to the log methods end up in the event's
    ``context``; the current operation id is attached automatically.
    """

    def __init__(self, name: str, component: Component):
        self.name = name
        self.component = component
        self._logger = logging.getLogger(f"{ROOT_LOGGER}.{component.value}.{name}")

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra = {
            "component": self.component.value,
            "operation": operation,
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

    def error(self, message: str, exc_info: bool = False, **context: Any) -> None:
        self._log(logging.ERROR, message, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.INFO if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            **context,
        )


def generate_operation_id() -> str:
    return f"op-{uuid.uuid4().hex[:12]}"


def set_operation_id(operation_id: str) -> contextvars.Token:
    """Set the operation id for the current context."""
    return operation_id_var.set(operation_id)


def reset_operation_id(token: contextvars.Token) -> None:
    operation_id_var.reset(token)


def get_operation_id() -> str:
    return operation_id_var.get()


def get_logger(name: str, component: Component) -> GraphLogger:
    """Get a logger for an engine component."""
    return GraphLogger(name, component)


def configure_logging(config: "GraphCasConfig", stream: Any = None) -> logging.Logger:
    """Attach a StructuredHandler to the ``graphcas`` logger tree.

    Idempotent: an existing StructuredHandler is reconfigured in place.
    """
    root = logging.getLogger(ROOT_LOGGER)
    level = config.observability.log_level.get()
    fmt = config.observability.log_format.get()
    root.setLevel(getattr(logging, level.upper()))

    handler = next((h for h in root.handlers if isinstance(h, StructuredHandler)), None)
    if handler is None:
        handler = StructuredHandler(stream=stream, fmt=fmt)
        root.addHandler(handler)
    else:
        handler.fmt = fmt
        if stream is not None:
            handler.stream = stream
    return root


T = TypeVar("T")


def timed_operation(
    logger: GraphLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
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
