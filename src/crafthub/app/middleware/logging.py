"""Request logging middleware.

Writes one canonical log line per request and propagates X-Trace-ID.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from crafthub.app.config import get_settings
from crafthub.app.logging import clear_trace_context, set_trace_id
from crafthub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

_SKIP_PATHS = frozenset({"/health"})


class LoggingMiddleware(BaseHTTPMiddleware):
    """Per-request log line with trace ID propagation.

    - trace_id comes from the X-Trace-ID header or is generated
    - INFO for completed requests, WARNING when slower than the threshold,
      ERROR when the handler raised
    - X-Trace-ID is echoed on the response

    WebSocket traffic does not pass through BaseHTTPMiddleware.
    """

    def __init__(self, app, slow_threshold_ms: float | None = None) -> None:
        super().__init__(app)
        if slow_threshold_ms is None:
            slow_threshold_ms = get_settings().logging.slow_threshold_ms
        self._slow_threshold_ms = slow_threshold_ms

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        trace_id = set_trace_id(request.headers.get("x-trace-id"))
        path = request.url.path
        start = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "Request failed",
                extra={
                    "event": LogEvent.REQUEST_FAILED,
                    "method": request.method,
                    "path": path,
                    "duration_ms": (time.monotonic() - start) * 1000,
                },
            )
            raise
        finally:
            clear_trace_context()

        duration_ms = (time.monotonic() - start) * 1000
        if path not in _SKIP_PATHS:
            extra = {
                "event": LogEvent.REQUEST_COMPLETE,
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "duration_ms": duration_ms,
                "trace_id": trace_id,
            }
            if duration_ms > self._slow_threshold_ms:
                extra["event"] = LogEvent.REQUEST_SLOW
                extra["threshold_ms"] = self._slow_threshold_ms
                logger.warning("Slow request", extra=extra)
            else:
                logger.info("Request completed", extra=extra)

        response.headers["X-Trace-ID"] = trace_id
        return response
