"""JSON logging configuration with request tracing and rate limiting."""

import logging
import sys
import time
from collections import defaultdict
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pythonjsonlogger import jsonlogger

from crafthub.app.config import get_settings

trace_id_ctx: ContextVar[str | None] = ContextVar("trace_id", default=None)


def get_trace_id() -> str | None:
    """Get current trace_id from context."""
    return trace_id_ctx.get()


def set_trace_id(trace_id: str | None = None) -> str:
    """Set trace_id in context, generating one if not provided."""
    tid = trace_id or uuid4().hex
    trace_id_ctx.set(tid)
    return tid


def clear_trace_context() -> None:
    trace_id_ctx.set(None)


class RateLimitFilter(logging.Filter):
    """Suppress repeated identical log lines.

    A message (keyed by logger, line and format string) may appear at most
    ``rate_per_minute`` times per sliding minute. The first suppressed line is
    emitted once with a [RATE LIMITED] marker. ERROR and above always pass.
    """

    def __init__(self, rate_per_minute: int = 100) -> None:
        super().__init__()
        self.rate_per_minute = rate_per_minute
        self._hits: dict[str, list[float]] = defaultdict(list)
        self._suppressed: set[str] = set()

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.ERROR:
            return True

        key = f"{record.name}:{record.lineno}:{record.msg}"
        now = time.time()
        hits = [t for t in self._hits[key] if now - t < 60]
        self._hits[key] = hits

        if len(hits) >= self.rate_per_minute:
            if key in self._suppressed:
                return False
            self._suppressed.add(key)
            record.msg = f"[RATE LIMITED] {record.msg} (max {self.rate_per_minute}/min)"
            hits.append(now)
            return True

        if key in self._suppressed and len(hits) < self.rate_per_minute // 2:
            self._suppressed.discard(key)

        hits.append(now)
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding the standard crafthub fields.

    Fields: timestamp (ISO 8601, UTC), level, logger, pid, filename, lineno,
    funcName, schema_version, service and trace_id (when set).
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        settings = get_settings()
        self._schema_version = settings.logging.schema_version
        self._service = settings.logging.service_name

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.fromtimestamp(
            record.created, tz=timezone.utc
        ).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["pid"] = record.process
        log_record["filename"] = record.filename
        log_record["lineno"] = record.lineno
        log_record["funcName"] = record.funcName
        log_record["schema_version"] = self._schema_version
        log_record["service"] = self._service

        if trace_id := get_trace_id():
            log_record["trace_id"] = trace_id

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        log_record.pop("color_message", None)


def setup_logging(level: int | None = None) -> None:
    """Configure JSON logging for the application.

    Args:
        level: Log level. If None, uses LOGGING_LEVEL from settings.
    """
    settings = get_settings()

    if level is None:
        level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter())
    handler.addFilter(RateLimitFilter(settings.logging.rate_limit_per_minute))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in ("uvicorn", "uvicorn.error"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers.clear()
        uv_logger.propagate = False
        uv_logger.addHandler(handler)

    # LoggingMiddleware writes the per-request line
    logging.getLogger("uvicorn.access").disabled = True

    # Log polling and Docker API chatter
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
