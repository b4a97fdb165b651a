"""Shared fixtures for the API test suite.

All tests run in memory mode (no database required): the seeded
MemoryStore services from tests/conftest.py are attached to app.state,
and db.is_available() / db.init_pool() are patched to False.

Auth injection: we patch auth._cache_get so that magic test API keys
instantly resolve to the desired AuthContext without bcrypt checks.
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from starlette.testclient import TestClient

from duty_registry.algorithms.duty_window import resolve
from duty_registry.entities import RawExtractedRecord
from duty_registry.helpers import utcnow

from ..conftest import make_evidence

# ---------------------------------------------------------------------------
# Magic test API keys → AuthContext mapping
# ---------------------------------------------------------------------------

_TEST_KEYS: dict[str, object] = {}  # populated lazily


def _get_test_auth_contexts():
    """Build AuthContext instances for each tier, keyed by magic API key."""
    from duty_registry.auth import AuthContext

    if _TEST_KEYS:
        return _TEST_KEYS

    for tier in ("public", "operator", "admin"):
        key = f"duty_test_{tier}_0000000000000000"
        _TEST_KEYS[key] = AuthContext(
            tier=tier,
            actor_id=f"test:{tier}_key",
            actor_type="api_user",
        )

    return _TEST_KEYS


def _patched_cache_get(api_key: str):
    """Drop-in replacement for auth._cache_get that recognises test keys."""
    return _get_test_auth_contexts().get(api_key)


# ---------------------------------------------------------------------------
# App fixture: memory store, DB patched away
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(services):
    """FastAPI app running in memory mode (no DB, no retry worker)."""
    with (
        patch("duty_registry.db.is_available", return_value=False),
        patch("duty_registry.db.init_pool", return_value=False),
        patch("duty_registry.db.close_pool"),
        patch("duty_registry.auth._cache_get", side_effect=_patched_cache_get),
        patch("duty_registry.auth._validate_key", return_value=None),
        patch("duty_registry.app.RUN_RETRY_WORKER", False),
    ):
        from duty_registry.app import app as _app

        _app.state.services = services
        # Normally set at import time
        _app.state.server_started_at = datetime(2026, 3, 1, 0, 0, 0, tzinfo=timezone.utc)

        yield _app

        _app.state.services = None


@pytest.fixture()
def live_now() -> datetime:
    """Routes read the wall clock, so seeded data is stamped with it too."""
    return utcnow()


@pytest.fixture()
def roster(services, seed, live_now):
    """Two reconciled duty records for the active duty date."""
    duty_date = resolve(live_now).duty_date
    records = []
    for name, district, phone in (
        ("Yıldız Eczanesi", "Kadıköy", "0216 555 00 01"),
        ("Deniz Eczanesi", "Beşiktaş", "0212 555 00 02"),
    ):
        raw = RawExtractedRecord(name=name, fetched_at=live_now, district=district)
        pharmacy_id = services.identity.resolve(seed.region.id, raw, live_now)
        records.append(
            services.reconciler.reconcile(
                pharmacy_id,
                duty_date,
                [make_evidence(seed.source_a, {"name": name, "phone": phone}, live_now, seed.endpoint_a)],
                live_now,
            )
        )
    return records


# ---------------------------------------------------------------------------
# Client fixtures per auth tier
# ---------------------------------------------------------------------------


@pytest.fixture()
def client(app):
    """Unauthenticated (public tier) TestClient — no API key header."""
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture()
def public_key_client(app):
    """public tier TestClient holding a valid key."""
    return TestClient(
        app,
        raise_server_exceptions=False,
        headers={"X-API-Key": "duty_test_public_0000000000000000"},
    )


@pytest.fixture()
def operator_client(app):
    """operator tier TestClient."""
    return TestClient(
        app,
        raise_server_exceptions=False,
        headers={"X-API-Key": "duty_test_operator_0000000000000000"},
    )


@pytest.fixture()
def admin_client(app):
    """admin tier TestClient."""
    return TestClient(
        app,
        raise_server_exceptions=False,
        headers={"X-API-Key": "duty_test_admin_0000000000000000"},
    )
