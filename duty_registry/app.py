#!/usr/bin/env python3
"""
Duty Pharmacy Registry — API

Dual-mode FastAPI server:
  • Database mode — PostgreSQL store when the pool comes up
  • Memory mode   — in-process store when the database is unavailable

Usage:
    uvicorn duty_registry.app:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
import threading
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import db
from .auth import auth_middleware
from .routes import admin, duties, health
from .services import build_services

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger(__name__)

RUN_RETRY_WORKER = os.environ.get("DUTY_RUN_RETRY_WORKER", "1") == "1"

app = FastAPI(
    title="Duty Pharmacy Registry",
    version="0.1.0",
    description="Canonical on-duty pharmacy records with confidence scoring and freshness tracking",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.middleware("http")(auth_middleware)

app.include_router(health.router)
app.include_router(duties.router)
app.include_router(admin.router)

app.state.server_started_at = datetime.now(timezone.utc)

_stop_worker = threading.Event()


@app.on_event("startup")
async def startup():
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services()
    logger.info("Running in %s mode", app.state.services.mode.upper())

    if RUN_RETRY_WORKER:
        _stop_worker.clear()
        threading.Thread(
            target=app.state.services.retry.run_forever,
            args=(_stop_worker,),
            name="retry-worker",
            daemon=True,
        ).start()


@app.on_event("shutdown")
async def shutdown():
    _stop_worker.set()
    services = getattr(app.state, "services", None)
    if services is not None:
        services.coordinator.shutdown()
    db.close_pool()
