"""
Railyard - Structured Logging

JSON lines in production, a colored single-line format in development.
Records below WARNING go to stdout and everything else to stderr, so a
container log collector can tell failures apart without parsing.

Correlation fields (event_id, job_id, normalized_index, ...) are carried in
a ContextVar so that every line emitted while a wagon update or a CSV job is
being handled picks them up without threading them through call sites:

    from railyard.core.logging import get_logger, LogContext

    logger = get_logger(__name__)

    with LogContext(event_id="evt-1", normalized_index="7478 035 6980"):
        logger.info("Applying wagon update")
"""

from __future__ import annotations

import json
import logging
import sys
import time
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Generator, Iterator

from pydantic import BaseModel

_context: ContextVar[Dict[str, Any]] = ContextVar("railyard_log_context", default={})

# Keys whose values never reach a log sink
SENSITIVE_KEY_FRAGMENTS = frozenset(
    {"password", "secret", "token", "credential", "db_url", "amqp_url", "rabbitmq_url"}
)

# Attributes lifted from ``extra={...}`` into the JSON payload
RECORD_FIELDS = (
    "event_id",
    "job_id",
    "normalized_index",
    "wagon_number",
    "train_id",
    "wagon_id",
    "delivery_tag",
    "redelivered",
    "action",
    "outcome",
    "duration_ms",
    "status",
    "error_code",
    "count",
    "progress",
)

# Context keys shown inline by the console formatter
CONSOLE_CONTEXT_KEYS = ("event_id", "job_id", "normalized_index")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_current_context() -> Dict[str, Any]:
    """Snapshot of the correlation fields bound to the current task."""
    return dict(_context.get())


@contextmanager
def LogContext(**fields: Any) -> Generator[None, None, None]:
    """
    Bind correlation fields for the duration of the block.

    ``None`` values are skipped, so callers can pass optional ids directly.
    Blocks nest; the outer binding is restored on exit.
    """
    token = _context.set({**_context.get(), **{k: v for k, v in fields.items() if v is not None}})
    try:
        yield
    finally:
        _context.reset(token)


def redact_sensitive(data: Any, max_depth: int = 10) -> Any:
    """
    Return a copy of ``data`` with credential-like keys masked.

    Walks dicts, lists, tuples and pydantic models. Anything nested deeper
    than ``max_depth`` is replaced by a marker instead of being rendered.
    """
    if max_depth <= 0:
        return "[MAX_DEPTH_EXCEEDED]"
    if isinstance(data, BaseModel):
        return redact_sensitive(data.model_dump(), max_depth - 1)
    if isinstance(data, dict):
        return {
            key: "[REDACTED]"
            if _is_sensitive_key(key)
            else redact_sensitive(value, max_depth - 1)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_sensitive(item, max_depth - 1) for item in data]
    return data


def _is_sensitive_key(key: Any) -> bool:
    lowered = str(key).lower()
    return any(fragment in lowered for fragment in SENSITIVE_KEY_FRAGMENTS)


def _record_fields(record: logging.LogRecord) -> Iterator[tuple[str, Any]]:
    for key in RECORD_FIELDS:
        value = getattr(record, key, None)
        if value is not None:
            yield key, value


def _exception_payload(exc_info: Any) -> Dict[str, Any]:
    exc_type, exc, _ = exc_info
    return {
        "type": exc_type.__name__ if exc_type else None,
        "message": str(exc) if exc else None,
        "traceback": traceback.format_exception(*exc_info),
    }


class StructuredJsonFormatter(logging.Formatter):
    """
    One JSON object per line:

        {"level": "INFO", "logger": "railyard.ingest.pipeline",
         "message": "Wagon update applied", "timestamp": "...",
         "service": "railyard", "event_id": "evt-42", "duration_ms": 12.5}
    """

    def __init__(self, service: str | None = None, redact: bool = True):
        super().__init__()
        self.service = service
        self.redact = redact

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self.service:
            payload["service"] = self.service
        payload.update(_context.get())
        payload.update(_record_fields(record))
        if record.exc_info:
            payload["exception"] = _exception_payload(record.exc_info)
        if self.redact:
            payload = redact_sensitive(payload)
        return json.dumps(payload, default=str, ensure_ascii=False)


class ColoredConsoleFormatter(logging.Formatter):
    """Colored console output for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = _context.get()
        bound = ", ".join(f"{key}={context[key]}" for key in CONSOLE_CONTEXT_KEYS if key in context)
        clock = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        color = self.COLORS.get(record.levelname, "")

        line = f"{color}{clock} {record.levelname:<8}{self.RESET} {record.name}"
        if bound:
            line += f" [{bound}]"
        line += f" {record.getMessage()}"
        if record.exc_info:
            line += "\n" + "".join(traceback.format_exception(*record.exc_info))
        return line


class _MaxLevelFilter(logging.Filter):
    """Filter that passes records at or below a maximum level."""

    def __init__(self, max_level: int):
        super().__init__()
        self.max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno <= self.max_level


def _create_split_handlers(
    formatter: logging.Formatter,
    level: int = logging.DEBUG,
) -> list[logging.Handler]:
    """DEBUG/INFO to stdout, WARNING and above to stderr."""
    out = logging.StreamHandler(sys.stdout)
    out.setLevel(level)
    out.addFilter(_MaxLevelFilter(logging.INFO))

    err = logging.StreamHandler(sys.stderr)
    err.setLevel(max(level, logging.WARNING))

    for handler in (out, err):
        handler.setFormatter(formatter)
    return [out, err]


def configure_structured_logging(
    level: str = "INFO",
    json_output: bool = True,
    service_name: str = "railyard",
) -> None:
    """
    Replace the root handlers with the split stdout/stderr pair.

    Args:
        level: Root log level name
        json_output: JSON lines when True, colored console otherwise
        service_name: Stamped on every JSON line
    """
    numeric_level = getattr(logging, level.upper())
    formatter: logging.Formatter = (
        StructuredJsonFormatter(service=service_name) if json_output else ColoredConsoleFormatter()
    )

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    root.setLevel(numeric_level)
    for handler in _create_split_handlers(formatter, numeric_level):
        root.addHandler(handler)


class Timer:
    """
    Wall-clock timer for ``duration_ms`` fields.

        with Timer() as t:
            await pipeline.process_update(payload)
        logger.info("done", extra={"duration_ms": t.elapsed_ms})
    """

    def __init__(self) -> None:
        self.start_time: float = 0
        self.end_time: float = 0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self.end_time = time.perf_counter()

    @property
    def elapsed_ms(self) -> float:
        end = self.end_time or time.perf_counter()
        return (end - self.start_time) * 1000


# =============================================================================
# Consumer and job helpers
# =============================================================================

_SETTLE_LEVELS = {
    "ack": logging.INFO,
    "requeue": logging.WARNING,
    "dead_letter": logging.ERROR,
}


def log_message_received(
    logger: logging.Logger,
    delivery_tag: Any,
    redelivered: bool,
    **extra: Any,
) -> None:
    logger.debug(
        "Message received",
        extra={"delivery_tag": delivery_tag, "redelivered": redelivered, **extra},
    )


def log_message_settled(
    logger: logging.Logger,
    action: str,
    outcome: str,
    duration_ms: float,
    **extra: Any,
) -> None:
    """Log the settlement of a delivery at a level matching its action."""
    logger.log(
        _SETTLE_LEVELS.get(action, logging.WARNING),
        "Message settled: %s (%s)",
        action,
        outcome,
        extra={
            "action": action,
            "outcome": outcome,
            "duration_ms": round(duration_ms, 2),
            **extra,
        },
    )


def log_job_progress(
    logger: logging.Logger,
    job_id: str,
    progress: int,
    **extra: Any,
) -> None:
    logger.debug(
        "Job progress %s%%",
        progress,
        extra={"job_id": job_id, "progress": progress, **extra},
    )
