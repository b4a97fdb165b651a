"""Health check endpoint."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import psycopg2
from fastapi import APIRouter, Request
from starlette.responses import JSONResponse

from .. import db
from ..helpers import iso

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/api/health")
async def health(request: Request):
    """Health check — reports store mode, region count, version, DB latency. Always open."""
    services = request.app.state.services
    db_ok = False
    db_latency_ms: float | None = None

    if db.is_available():
        try:
            db_latency_ms = db.ping()
            db_ok = True
        except (psycopg2.Error, RuntimeError):
            logger.exception("Health check: database ping failed")

    server_started_at = request.app.state.server_started_at
    uptime_seconds = round((datetime.now(timezone.utc) - server_started_at).total_seconds())

    return JSONResponse(
        status_code=200 if db_ok else 503,
        content={
            "status": "healthy" if db_ok else "degraded",
            "mode": services.mode,
            "region_count": len(services.store.list_regions()),
            "version": request.app.version,
            "database_connected": db_ok,
            "started_at": iso(server_started_at),
            "uptime_seconds": uptime_seconds,
            "checks": {
                "database": {
                    "status": "up" if db_ok else "down",
                    "latency_ms": db_latency_ms,
                },
            },
        },
    )
