"""
Duty Pharmacy Registry — PostgreSQL connection pool

One ThreadedConnectionPool per process, shared by PostgresStore and the
health check. Connection settings come from DUTY_DATABASE_URL when set,
otherwise from the DUTY_DB_* parts (local-dev defaults).

init_pool() returning False is not an error: services.build_services()
then runs on the in-memory store.

Set DUTY_DB_BOOTSTRAP=1 to create the tables from schema.sql on an empty
database.
"""

from __future__ import annotations

import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import psycopg2
from psycopg2 import extras, pool  # noqa: F401 (pg_store uses db.extras)

logger = logging.getLogger(__name__)

DATABASE_URL = os.environ.get("DUTY_DATABASE_URL", "")

DB_CONFIG = {
    "host": os.environ.get("DUTY_DB_HOST", "localhost"),
    "port": int(os.environ.get("DUTY_DB_PORT", "5432")),
    "dbname": os.environ.get("DUTY_DB_NAME", "duty_registry"),
    "user": os.environ.get("DUTY_DB_USER", "duty"),
    "password": os.environ.get("DUTY_DB_PASSWORD", "duty_local_dev"),
}

BOOTSTRAP = os.environ.get("DUTY_DB_BOOTSTRAP", "0") == "1"

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"

_pool: pool.ThreadedConnectionPool | None = None


def _describe() -> str:
    if DATABASE_URL:
        return DATABASE_URL.rsplit("@", 1)[-1]
    return f"{DB_CONFIG['user']}@{DB_CONFIG['host']}:{DB_CONFIG['port']}/{DB_CONFIG['dbname']}"


def _open_pool(minconn: int, maxconn: int) -> pool.ThreadedConnectionPool:
    if DATABASE_URL:
        return pool.ThreadedConnectionPool(minconn, maxconn, dsn=DATABASE_URL)
    return pool.ThreadedConnectionPool(minconn, maxconn, **DB_CONFIG)


def init_pool(minconn: int = 2, maxconn: int = 10, bootstrap: bool | None = None) -> bool:
    """
    Open the pool and check that the schema is in place.

    With *bootstrap* (default DUTY_DB_BOOTSTRAP) a database without the
    regions table gets schema.sql applied; otherwise it counts as
    unavailable.
    """
    global _pool
    if bootstrap is None:
        bootstrap = BOOTSTRAP

    try:
        _pool = _open_pool(minconn, maxconn)
        conn = _pool.getconn()
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT to_regclass('public.regions') IS NOT NULL")
                has_schema = bool(cur.fetchone()[0])
                if not has_schema:
                    if not bootstrap:
                        raise psycopg2.ProgrammingError("schema missing: regions table not found")
                    cur.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
                    logger.info("Applied %s", SCHEMA_PATH.name)
                cur.execute("SELECT count(*) FROM regions")
                regions = cur.fetchone()[0]
            conn.commit()
        finally:
            _pool.putconn(conn)
    except psycopg2.Error as e:
        logger.warning("Database unavailable (%s), using the memory store: %s", _describe(), e)
        if _pool is not None:
            _pool.closeall()
        _pool = None
        return False

    logger.info("Database pool ready (%s), %d regions", _describe(), regions)
    return True


def close_pool() -> None:
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None
        logger.info("Database pool closed.")


def is_available() -> bool:
    return _pool is not None


@contextmanager
def get_conn() -> Iterator:
    """
    Borrow a pooled connection for one transaction.

    Commit on a clean exit, roll back when the block raises; the
    connection always goes back to the pool.
    """
    if _pool is None:
        raise RuntimeError("Database pool not initialized")
    conn = _pool.getconn()
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()
    finally:
        _pool.putconn(conn)


def ping() -> float:
    """Round-trip a trivial query; returns latency in milliseconds."""
    t0 = time.monotonic()
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT 1")
    return round((time.monotonic() - t0) * 1000, 1)
