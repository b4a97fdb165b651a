"""Shared helpers and environment-driven constants for the Duty Pharmacy Registry."""

from __future__ import annotations

import logging
import os
import re
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Hashable, Iterator

from .algorithms.evidence_clustering import ReconcilerConfig
from .algorithms.name_similarity import fold_text

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Path constants
# ---------------------------------------------------------------------------

ROOT = Path(__file__).resolve().parent.parent
RULES_PATH = Path(os.environ.get("DUTY_RULES_PATH", str(ROOT / "config" / "reconciliation_rules.yaml")))

# ---------------------------------------------------------------------------
# Operational constants (env vars with local-dev defaults)
# ---------------------------------------------------------------------------

DUTY_TIMEZONE = os.environ.get("DUTY_TIMEZONE", "Europe/Istanbul")

# Region freshness
STALE_WINDOW_MINUTES = int(os.environ.get("DUTY_STALE_WINDOW_MINUTES", "90"))
MIN_COVERAGE_FRACTION = float(os.environ.get("DUTY_MIN_COVERAGE_FRACTION", "0.5"))

# Ingestion
FETCH_TIMEOUT_SECONDS = float(os.environ.get("DUTY_FETCH_TIMEOUT_SECONDS", "15"))
MAX_CONCURRENT_RUNS = int(os.environ.get("DUTY_MAX_CONCURRENT_RUNS", "8"))
MAX_CONCURRENT_PER_REGION = int(os.environ.get("DUTY_MAX_CONCURRENT_PER_REGION", "2"))
PARSER_ERROR_THRESHOLD_PCT = float(os.environ.get("DUTY_PARSER_ERROR_THRESHOLD_PCT", "20"))
PARSER_ERROR_MIN_RUNS = int(os.environ.get("DUTY_PARSER_ERROR_MIN_RUNS", "5"))
# A roster without any printed date fails the run instead of passing unchecked
STRICT_SOURCE_DATE = os.environ.get("DUTY_STRICT_SOURCE_DATE", "0") == "1"

# Retry queue
RETRY_BASE_DELAY_SECONDS = int(os.environ.get("DUTY_RETRY_BASE_DELAY_SECONDS", "60"))
RETRY_MAX_DELAY_SECONDS = int(os.environ.get("DUTY_RETRY_MAX_DELAY_SECONDS", "1800"))
RETRY_MAX_ATTEMPTS = int(os.environ.get("DUTY_RETRY_MAX_ATTEMPTS", "5"))
RETRY_LEASE_SECONDS = int(os.environ.get("DUTY_RETRY_LEASE_SECONDS", "120"))

# Admin surfaces
OPEN_ALERTS_LIMIT = 200

SEVERITY_LOW = "low"
SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"


def load_reconciler_config(path: Path | None = None) -> ReconcilerConfig:
    """Load reconciliation_rules.yaml, falling back to built-in defaults if absent."""
    path = path or RULES_PATH
    if not path.exists():
        logger.info("No reconciliation rules at %s — using defaults", path)
        return ReconcilerConfig()
    config = ReconcilerConfig.from_yaml(path)
    logger.info("Loaded reconciliation rules from %s", path)
    return config


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt) -> str | None:
    """Convert a datetime/date to ISO string."""
    if dt is None:
        return None
    if isinstance(dt, (datetime, date)):
        return dt.isoformat()
    return str(dt)


_SLUG_SEP = re.compile(r"[^a-z0-9]+")


def slugify(value: str | None) -> str:
    """ASCII slug with Turkish letters folded: "Şişli" → "sisli", "Eyüp Sultan" → "eyup-sultan"."""
    return _SLUG_SEP.sub("-", fold_text(value)).strip("-")


def minutes_between(earlier: datetime, later: datetime) -> float:
    return round((later - earlier).total_seconds() / 60.0, 2)


# ---------------------------------------------------------------------------
# Keyed mutual exclusion
# ---------------------------------------------------------------------------


class KeyedLock:
    """
    One lock per key, created on demand and dropped when nobody holds it.

    Used to serialise reconciliation per (pharmacy_id, duty_date) and
    pharmacy creation per region inside one process.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.Lock] = {}
        self._waiters: dict[Hashable, int] = defaultdict(int)

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._waiters[key] += 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]
