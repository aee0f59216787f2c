"""Liveness, readiness and metrics endpoints."""

import logging

from fastapi import APIRouter, Response
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from microjournal.core.database import check_connection, get_engine, metadata
from microjournal.core.metrics import METRICS

logger = logging.getLogger("microjournal")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
    try:
        inspector = inspect(get_engine())
        missing = [name for name in metadata.tables if not inspector.has_table(name)]
        if missing:
            detail = f"missing tables: {', '.join(sorted(missing))}"
            logger.warning("readyz.missing_tables", extra={"detail": detail})
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})
        return {"status": "ok"}
    except Exception as exc:
        logger.error("readyz.failed", extra={"error": str(exc)[:200]})
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})


@router.get("/metrics", tags=["metrics"])
def metrics_endpoint():
    """Prometheus text exposition of the in-process counters."""
    return Response(content=METRICS.export_prometheus(), media_type="text/plain")
