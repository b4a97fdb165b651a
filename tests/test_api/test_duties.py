"""Tests for the public duty roster endpoints."""

from __future__ import annotations

from datetime import timedelta

from ..conftest import add_run, make_evidence

KADIKOY = (40.9903, 29.0290)
BESIKTAS = (41.0430, 29.0070)
ANKARA = (39.9334, 32.8597)


def _locate(store, record, lat, lng):
    pharmacy = store.get_pharmacy(record.pharmacy_id)
    pharmacy.lat, pharmacy.lng = lat, lng
    store.update_pharmacy(pharmacy)


class TestListRegions:
    """GET /api/regions — public."""

    def test_lists_seeded_region(self, client):
        resp = client.get("/api/regions")
        assert resp.status_code == 200
        assert resp.json() == [{"slug": "istanbul", "name": "İstanbul", "district_count": 10}]


class TestRegionDuty:
    """GET /api/regions/{slug}/duty — public."""

    def test_returns_records(self, client, roster):
        resp = client.get("/api/regions/istanbul/duty")
        assert resp.status_code == 200
        data = resp.json()
        assert data["region"] == "istanbul"
        assert data["duty_date"] == roster[0].duty_date.isoformat()
        assert {r["name"] for r in data["records"]} == {"Yıldız Eczanesi", "Deniz Eczanesi"}
        assert data["last_update"] is not None

    def test_record_shape(self, client, roster):
        data = client.get("/api/regions/istanbul/duty?district=kadikoy").json()
        [record] = data["records"]
        assert record["district"] == "kadikoy"
        assert record["confidence_score"] == 100
        assert record["source_name"] == "Eczacı Odası"
        assert record["phone"] == "0216 555 00 01"
        assert "version" not in record
        assert record["evidence"]["source_count"] == 1
        assert record["evidence"]["manual_override"] is False
        assert record["evidence"]["latest_fetch"] is not None

    def test_district_by_name(self, client, roster):
        data = client.get("/api/regions/istanbul/duty", params={"district": "Beşiktaş"}).json()
        assert [r["name"] for r in data["records"]] == ["Deniz Eczanesi"]

    def test_degraded_overlay_keeps_records(self, client, roster):
        # No ingestion run has succeeded yet, so the region is stale
        data = client.get("/api/regions/istanbul/duty").json()
        assert data["status"] == "degraded"
        assert len(data["records"]) == 2
        info = data["degraded_info"]
        assert info["last_successful_update"] is None
        assert "showing last known data" in info["hint"]

    def test_healthy_region(self, client, services, seed, roster, live_now):
        services.staleness.min_coverage_fraction = 0
        add_run(services.store, seed.endpoint_a, seed.region, live_now)

        data = client.get("/api/regions/istanbul/duty").json()

        assert data["status"] == "ok"
        assert data["degraded_info"] is None

    def test_other_date_is_empty(self, client, roster):
        data = client.get("/api/regions/istanbul/duty?date=2020-01-01").json()
        assert data["duty_date"] == "2020-01-01"
        assert data["records"] == []

    def test_unknown_region(self, client):
        resp = client.get("/api/regions/atlantis/duty")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "region not found"

    def test_unknown_district(self, client, roster):
        resp = client.get("/api/regions/istanbul/duty?district=nowhere")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "district not found"

    def test_bad_date(self, client):
        resp = client.get("/api/regions/istanbul/duty?date=10.03.2026")
        assert resp.status_code == 400


class TestRegionDates:
    """GET /api/regions/{slug}/dates — public."""

    def test_lists_dates_newest_first(self, client, services, seed, roster, live_now):
        active = roster[0].duty_date
        for days_back in (2, 10):
            services.reconciler.reconcile(
                roster[0].pharmacy_id,
                active - timedelta(days=days_back),
                [make_evidence(seed.source_a, {"name": "Yıldız Eczanesi"}, live_now, seed.endpoint_a)],
                live_now,
            )

        data = client.get("/api/regions/istanbul/dates").json()

        assert data["region"] == "istanbul"
        assert data["active_duty_date"] == active.isoformat()
        assert data["dates"] == [active.isoformat(), (active - timedelta(days=2)).isoformat()]

    def test_empty_region(self, client, seed):
        assert client.get("/api/regions/istanbul/dates").json()["dates"] == []

    def test_unknown_region(self, client):
        assert client.get("/api/regions/atlantis/dates").status_code == 404


class TestNearest:
    """GET /api/nearest — public."""

    def test_sorted_by_distance(self, client, services, roster):
        _locate(services.store, roster[0], *KADIKOY)
        _locate(services.store, roster[1], *BESIKTAS)

        resp = client.get("/api/nearest", params={"lat": 40.9910, "lng": 29.0280})

        assert resp.status_code == 200
        data = resp.json()
        assert data["duty_date"] == roster[0].duty_date.isoformat()
        assert [r["name"] for r in data["records"]] == ["Yıldız Eczanesi", "Deniz Eczanesi"]
        first = data["records"][0]
        assert first["distance_km"] < 1
        assert first["region"] == "istanbul"
        assert first["district"] == "kadikoy"
        assert first["region_status"] == "degraded"

    def test_limit(self, client, services, roster):
        _locate(services.store, roster[0], *KADIKOY)
        _locate(services.store, roster[1], *BESIKTAS)

        data = client.get("/api/nearest", params={"lat": 41.0430, "lng": 29.0070, "limit": 1}).json()

        assert [r["name"] for r in data["records"]] == ["Deniz Eczanesi"]

    def test_skips_far_and_unlocated(self, client, services, roster):
        _locate(services.store, roster[0], *ANKARA)

        data = client.get("/api/nearest", params={"lat": KADIKOY[0], "lng": KADIKOY[1]}).json()

        assert data["records"] == []

    def test_invalid_coordinates(self, client):
        resp = client.get("/api/nearest", params={"lat": 10.0, "lng": 10.0})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "invalid coordinates"

    def test_missing_coordinates(self, client):
        assert client.get("/api/nearest", params={"lat": 41.0}).status_code == 422
