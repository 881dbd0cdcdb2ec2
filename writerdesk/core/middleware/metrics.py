import logging

from starlette.middleware.base import BaseHTTPMiddleware

from writerdesk.core.metrics import http_requests_total, normalize_path

logger = logging.getLogger("writerdesk")

# Scrapes are not application traffic
_UNCOUNTED_PATHS = frozenset({"/metrics"})


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count HTTP requests by method, normalized path and status."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        if request.url.path not in _UNCOUNTED_PATHS:
            _record_request_metric(request.method, request.url.path, response.status_code)
        return response


def _record_request_metric(method: str, path: str, status: int) -> None:
    try:
        http_requests_total.inc(labels={
            "method": method.upper(),
            "path": normalize_path(path),
            "status": str(status),
        })
    except Exception as e:
        logger.warning(f"[metrics] failed to record request: {e}")
