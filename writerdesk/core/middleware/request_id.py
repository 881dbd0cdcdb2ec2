import logging
import re
import time
from typing import Optional
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from writerdesk.core.logging import LOGGER_NAME, latency_bucket_ms, request_id_ctx_var

# Incoming ids end up in logs and response headers
_SAFE_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def accept_request_id(value: Optional[str]) -> Optional[str]:
    """Return a caller-supplied request id if it is safe to echo back."""
    if value and _SAFE_REQUEST_ID.match(value):
        return value
    return None


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request_id for the lifetime of each request and log completion."""

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = accept_request_id(request.headers.get(self.header_name)) or uuid4().hex
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        start = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[self.header_name] = rid
            logging.getLogger(LOGGER_NAME).info(
                "request.complete",
                extra={
                    "request_id": rid,
                    "path": request.url.path,
                    "method": request.method,
                    "status": response.status_code,
                    "latency_bucket": latency_bucket_ms((time.perf_counter() - start) * 1000),
                },
            )
            return response
        finally:
            request_id_ctx_var.reset(token)
