"""Tests for the admin endpoints — overrides, recovery, alerts, accuracy, ingestion."""

from __future__ import annotations

from datetime import date

from duty_registry.entities import MANUAL_SOURCE_NAME

from ..conftest import NOW, add_run


def override_body(**overrides):
    body = {
        "region": "istanbul",
        "district": "kadikoy",
        "pharmacy": {"name": "Yıldız Eczanesi", "address": "Moda Cad. 1"},
        "corrected": {"phone": "0216 555 00 99"},
        "note": "Called the pharmacy, number changed",
    }
    body.update(overrides)
    return body


# ---- manual override --------------------------------------------------------


class TestManualOverride:
    """POST /api/admin/manual-override — admin tier."""

    def test_applies_override(self, admin_client, roster):
        resp = admin_client.post("/api/admin/manual-override", json=override_body())
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["pharmacy_id"] == roster[0].pharmacy_id
        assert data["district"] == "kadikoy"
        assert data["duty_date"] == roster[0].duty_date.isoformat()
        assert data["updated_by"] == "test:admin_key"

    def test_override_visible_in_roster(self, admin_client, client, roster):
        admin_client.post("/api/admin/manual-override", json=override_body())

        [record] = client.get("/api/regions/istanbul/duty?district=kadikoy").json()["records"]

        assert record["source_name"] == MANUAL_SOURCE_NAME
        assert record["confidence_score"] == 99
        assert record["phone"] == "0216 555 00 99"
        assert record["evidence"]["manual_override"] is True

    def test_explicit_updated_by(self, admin_client, seed):
        resp = admin_client.post(
            "/api/admin/manual-override",
            json=override_body(updated_by="nobetci@eczaciodasi.example", duty_date="2026-03-10"),
        )
        assert resp.status_code == 200
        assert resp.json()["updated_by"] == "nobetci@eczaciodasi.example"
        assert resp.json()["duty_date"] == "2026-03-10"

    def test_repeat_is_idempotent(self, admin_client, services, seed):
        first = admin_client.post("/api/admin/manual-override", json=override_body(duty_date="2026-03-10")).json()
        second = admin_client.post(
            "/api/admin/manual-override",
            json=override_body(duty_date="2026-03-10", corrected={"phone": "0216 555 00 98"}),
        ).json()
        assert first["pharmacy_id"] == second["pharmacy_id"]
        [record] = services.store.list_duty_records(seed.region.id, date(2026, 3, 10))
        assert record.phone == "0216 555 00 98"

    def test_unknown_region(self, admin_client, seed):
        resp = admin_client.post("/api/admin/manual-override", json=override_body(region="atlantis"))
        assert resp.status_code == 404

    def test_bad_duty_date(self, admin_client, seed):
        resp = admin_client.post("/api/admin/manual-override", json=override_body(duty_date="10/03/2026"))
        assert resp.status_code == 400

    def test_short_name_rejected(self, admin_client, seed):
        resp = admin_client.post(
            "/api/admin/manual-override", json=override_body(pharmacy={"name": "Ec"})
        )
        assert resp.status_code == 422

    def test_note_too_long(self, admin_client, seed):
        resp = admin_client.post("/api/admin/manual-override", json=override_body(note="x" * 501))
        assert resp.status_code == 422


# ---- recovery ---------------------------------------------------------------


class TestRecovery:
    """POST /api/admin/recovery/{slug}/trigger — admin tier."""

    def test_queues_entry(self, admin_client, services):
        resp = admin_client.post("/api/admin/recovery/istanbul/trigger")
        assert resp.status_code == 200
        data = resp.json()
        assert data["queued"] is True
        assert data["region"] == "istanbul"
        [entry] = services.store.list_retries("pending")
        assert entry.id == data["entry_id"]
        assert entry.requested_by == "test:admin_key"

    def test_unknown_region(self, admin_client):
        assert admin_client.post("/api/admin/recovery/atlantis/trigger").status_code == 404


# ---- alerts -----------------------------------------------------------------


class TestAlerts:
    """GET /api/admin/alerts/open and POST /api/admin/alerts/{id}/resolve — operator tier."""

    def test_lists_open_alerts(self, operator_client, services, seed):
        services.alerts.raise_alert(seed.region.id, seed.endpoint_a.id, "fetch_error", "critical", "down", now=NOW)

        data = operator_client.get("/api/admin/alerts/open").json()

        assert data["count"] == 1
        [alert] = data["alerts"]
        assert alert["alert_type"] == "fetch_error"
        assert alert["severity"] == "critical"
        assert alert["source_endpoint_id"] == seed.endpoint_a.id

    def test_region_filter(self, operator_client, services, seed):
        services.alerts.raise_alert(seed.region.id, None, "region_degraded", "warning", "stale", now=NOW)
        assert operator_client.get("/api/admin/alerts/open?region=istanbul").json()["count"] == 1
        assert operator_client.get("/api/admin/alerts/open?region=atlantis").status_code == 404

    def test_limit_bounds(self, operator_client):
        assert operator_client.get("/api/admin/alerts/open?limit=0").status_code == 422
        assert operator_client.get("/api/admin/alerts/open?limit=201").status_code == 422

    def test_resolve(self, operator_client, services, seed):
        alert, _ = services.alerts.raise_alert(seed.region.id, None, "region_degraded", "warning", "stale", now=NOW)

        resp = operator_client.post(f"/api/admin/alerts/{alert.id}/resolve", json={"resolved_by": "ops@example.com"})

        assert resp.json() == {"resolved": True, "id": alert.id}
        assert services.alerts.list_open() == []

    def test_resolve_twice(self, operator_client, services, seed):
        alert, _ = services.alerts.raise_alert(seed.region.id, None, "region_degraded", "warning", "stale", now=NOW)
        operator_client.post(f"/api/admin/alerts/{alert.id}/resolve")
        resp = operator_client.post(f"/api/admin/alerts/{alert.id}/resolve")
        assert resp.status_code == 200
        assert resp.json() == {"resolved": False, "id": alert.id}

    def test_resolve_unknown(self, operator_client):
        assert operator_client.post("/api/admin/alerts/9999/resolve").json()["resolved"] is False


# ---- accuracy & ingestion ---------------------------------------------------


class TestAccuracy:
    """GET /api/admin/accuracy — operator tier."""

    def test_coverage_for_active_date(self, operator_client, roster):
        data = operator_client.get("/api/admin/accuracy").json()
        assert data["duty_date"] == roster[0].duty_date.isoformat()
        [row] = data["regions"]
        assert row["region"] == "istanbul"
        assert row["expected_count"] == 10
        assert row["actual_count"] == 2
        assert row["confidence_pct"] == 20

    def test_bad_date(self, operator_client):
        assert operator_client.get("/api/admin/accuracy?date=yesterday").status_code == 400


class TestIngestion:
    """Ingestion overview (operator) and stop/resume (admin)."""

    def test_overview(self, operator_client, services, seed, live_now):
        add_run(services.store, seed.endpoint_a, seed.region, live_now)
        add_run(services.store, seed.endpoint_b, seed.region, live_now, status="failed")

        [row] = operator_client.get("/api/admin/ingestion/overview").json()["regions"]

        assert row["region"] == "istanbul"
        assert row["runs_24h"] == 2
        assert row["success_24h"] == 1
        assert row["failed_24h"] == 1
        assert row["stopped"] is False

    def test_stop_and_resume(self, admin_client, services, seed):
        resp = admin_client.post("/api/admin/ingestion/istanbul/stop")
        assert resp.json() == {"region": "istanbul", "stopped": True}
        assert services.coordinator.is_stopped(seed.region.id)

        resp = admin_client.post("/api/admin/ingestion/istanbul/resume")
        assert resp.json() == {"region": "istanbul", "stopped": False}
        assert not services.coordinator.is_stopped(seed.region.id)

    def test_stop_unknown_region(self, admin_client):
        assert admin_client.post("/api/admin/ingestion/atlantis/stop").status_code == 404
