"""
Health and readiness endpoints.

Lightweight operational checks that never expose configuration values.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from quotagate.core.database import check_connection, get_engine, metadata
from quotagate.core.logging import get_request_id

logger = logging.getLogger("quotagate")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    required_tables = sorted(metadata.tables)

    if not check_connection():
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "db": {"connected": False}, "request_id": get_request_id()},
        )

    try:
        present = set(inspect(get_engine()).get_table_names())
    except Exception as exc:
        logger.warning("readyz table inspection failed: %s", exc)
        present = set()

    missing = [name for name in required_tables if name not in present]
    status_code = 200 if not missing else 503
    return JSONResponse(
        status_code=status_code,
        content={
            "status": "ok" if not missing else "degraded",
            "db": {"connected": True, "missing_tables": missing},
            "request_id": get_request_id(),
        },
    )
