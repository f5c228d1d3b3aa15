"""
Health and diagnostics API.

Provides lightweight endpoints for operational monitoring without exposing secrets.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from melodia.core.database import check_connection, get_engine

logger = logging.getLogger("melodia")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = ["app_users", "payment_transactions"]


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "unavailable", "db": False, "missing_tables": REQUIRED_TABLES})

    try:
        present = set(inspect(get_engine()).get_table_names())
    except Exception:
        logger.warning("readyz.inspect_failed", exc_info=True)
        return JSONResponse(status_code=503, content={"status": "unavailable", "db": True, "missing_tables": REQUIRED_TABLES})

    missing = [name for name in REQUIRED_TABLES if name not in present]
    if missing:
        return JSONResponse(status_code=503, content={"status": "unavailable", "db": True, "missing_tables": missing})
    return {"status": "ok", "db": True, "missing_tables": []}
