"""
Operational endpoints: liveness, readiness and Prometheus metrics.

Safe to expose: responses carry no secrets, connection strings or stack traces.
"""

import logging
import time

from fastapi import APIRouter, Response
from fastapi.responses import JSONResponse
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from writerdesk.core.database import check_connection, get_engine
from writerdesk.core.logging import latency_bucket_ms, get_request_id
from writerdesk.core.metrics import METRICS

logger = logging.getLogger("writerdesk")

router = APIRouter(tags=["health"])

REQUIRED_TABLES = ("entitlements", "billing_events", "user_alerts", "subscription_history", "payment_history")


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    start = time.perf_counter()
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    try:
        inspector = inspect(get_engine())
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    except SQLAlchemyError as e:
        logger.error(f"[readyz] readiness check failed: {e}", extra={"request_id": get_request_id()})
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    latency_bucket = latency_bucket_ms((time.perf_counter() - start) * 1000)
    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    logger.info("health.ready", extra={"request_id": get_request_id(), "latency_bucket": latency_bucket})
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint():
    payload = METRICS.export_prometheus()
    return Response(content=payload, media_type="text/plain; version=0.0.4")
