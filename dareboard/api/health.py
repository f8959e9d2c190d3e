"""
Health and diagnostics API.

Lightweight endpoints for operational monitoring without exposing secrets.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import inspect

from dareboard.core.database import check_connection, get_engine
from dareboard.core.logging import latency_bucket_ms, get_request_id
from dareboard.features.dares.lifecycle import last_sweep_run

logger = logging.getLogger("dareboard")

router = APIRouter(prefix="/api/health", tags=["health"])
root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "profiles",
    "dares",
    "completed_dares",
    "dare_engagements",
    "dare_sweep_runs",
]


class DBHealth(BaseModel):
    """Database health status."""
    connected: bool
    latency_ms: Optional[float] = None  # None when a fixed `now` is supplied
    tables_present: list[str] = []


class HealthResponse(BaseModel):
    ok: bool
    db: DBHealth
    last_sweep: Optional[dict] = None
    computed_at: str  # UTC ISO format


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")

        inspector = inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning(f"[readyz] {detail}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok"}
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})


@router.get("/db", response_model=HealthResponse)
def health_db(now: Optional[str] = Query(None)):
    """
    Database connectivity, table presence and the latest sweep run.

    Args:
        now: Optional ISO timestamp for deterministic testing (overrides system time)
    """
    start = time.perf_counter()
    is_connected = check_connection()
    latency_ms = (time.perf_counter() - start) * 1000

    db_health = DBHealth(
        connected=is_connected,
        latency_ms=None if now else latency_ms,
    )
    last_sweep = None
    if is_connected:
        try:
            inspector = inspect(get_engine())
            db_health.tables_present = [t for t in REQUIRED_TABLES if inspector.has_table(t)]
            if "dare_sweep_runs" in db_health.tables_present:
                last_sweep = last_sweep_run()
        except Exception as e:
            logger.warning(f"[health] Failed to inspect tables: {e}")

    logger.info(
        "health.db",
        extra={
            "request_id": get_request_id(),
            "latency_bucket": latency_bucket_ms(latency_ms if now is None else None),
        },
    )

    return HealthResponse(
        ok=is_connected,
        db=db_health,
        last_sweep=last_sweep,
        computed_at=now or datetime.now(timezone.utc).isoformat(),
    )
