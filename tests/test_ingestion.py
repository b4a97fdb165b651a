"""Tests for duty_registry — ingestion run coordinator."""

import json
import threading
from datetime import date, datetime, timedelta, timezone

import pytest

from duty_registry.entities import RawExtractedRecord, SourceEndpoint
from duty_registry.errors import FetchError, ValidationError
from duty_registry.ingestion import (
    ALERT_FETCH_ERROR,
    ALERT_PARSE_ERROR,
    ALERT_PARSER_ERROR_THRESHOLD,
    ALERT_PARTIAL_DATA,
    ALERT_STALE_SOURCE_DATE,
    ALERT_TIMEOUT,
    validate_record,
)

from .conftest import DISTRICTS, NOW, PRIMARY_URL, SECONDARY_URL


DUTY_DATE = date(2026, 3, 10)

ROSTER = [
    {"name": "Yıldız Eczanesi", "address": "Moda Cad. 1", "phone": "0216 555 00 01", "district": "Kadıköy"},
    {"name": "Deniz Eczanesi", "address": "Barbaros Blv. 5", "phone": "0212 555 00 02", "district": "Beşiktaş"},
]

# One pharmacy per seeded district
FULL_ROSTER = [
    {"name": f"{district} Şifa Eczanesi", "phone": f"0212 555 10 {i:02d}", "district": district}
    for i, district in enumerate(DISTRICTS)
]


def alerts_of(services, alert_type):
    return [a for a in services.alerts.list_open() if a.alert_type == alert_type]


# ---- validate_record --------------------------------------------------------


class TestValidateRecord:
    def test_valid(self):
        raw = RawExtractedRecord(name="Yıldız Eczanesi", fetched_at=NOW)
        assert validate_record(raw) is raw

    def test_missing_name(self):
        with pytest.raises(ValidationError):
            validate_record(RawExtractedRecord(name="", fetched_at=NOW))

    def test_naive_fetched_at(self):
        with pytest.raises(ValidationError):
            validate_record(RawExtractedRecord(name="Yıldız", fetched_at=NOW.replace(tzinfo=None)))


# ---- single runs ------------------------------------------------------------


class TestRun:
    def test_success(self, services, store, seed, fetcher):
        fetcher.set_json(PRIMARY_URL, json.dumps(ROSTER))

        result = services.coordinator.run(seed.endpoint_a, NOW)

        assert result.status == "success"
        assert result.run.records_found == 2
        assert result.run.records_accepted == 2
        assert result.run.http_status == 200
        assert result.run.error_message is None
        assert len(result.pharmacy_ids) == 2
        records = store.list_duty_records(seed.region.id, DUTY_DATE)
        assert {r.name for r in records} == {"Yıldız Eczanesi", "Deniz Eczanesi"}
        assert not result.retry_enqueued

    def test_rejected_record_does_not_downgrade_run(self, services, store, seed, fetcher):
        fetcher.set_json(PRIMARY_URL, json.dumps(ROSTER + [{"name": "E"}]))

        result = services.coordinator.run(seed.endpoint_a, NOW)

        assert result.status == "success"
        assert result.records_rejected == 1
        assert result.run.records_found == 3
        assert result.run.records_accepted == 2
        assert result.run.records_rejected == 1
        assert result.run.error_message is None
        assert not result.retry_enqueued
        assert alerts_of(services, ALERT_PARTIAL_DATA) == []

    def test_rejected_record_below_expected_minimum_is_partial(self, services, store, seed, fetcher):
        endpoint = store.get_endpoint(seed.endpoint_a.id)
        endpoint.expected_min_records = 3
        store.update_endpoint(endpoint)
        services.registry.invalidate()
        fetcher.set_json(PRIMARY_URL, json.dumps(ROSTER + [{"name": "E"}]))

        result = services.coordinator.run(endpoint, NOW)

        assert result.status == "partial"
        assert result.run.records_rejected == 1
        assert result.run.error_message.startswith("partial_data:")
        assert "1 rejected" in result.run.error_message
        assert result.retry_enqueued
        [alert] = alerts_of(services, ALERT_PARTIAL_DATA)
        assert alert.severity == "low"

    def test_full_roster_with_junk_row_keeps_region_fresh(self, services, store, seed, fetcher):
        fetcher.set_json(PRIMARY_URL, json.dumps(FULL_ROSTER + [{"name": "-"}]))

        result = services.coordinator.run(seed.endpoint_a, NOW)

        assert result.status == "success"
        assert result.run.records_accepted == 10
        assert result.records_rejected == 1
        status = services.staleness.region_status(seed.region.id, NOW)
        assert status.status == "ok"
        assert status.coverage.actual_count == 10
        assert alerts_of(services, "region_degraded") == []
        assert store.list_retries("pending") == []

    def test_partial_below_expected_minimum(self, services, store, seed, fetcher):
        endpoint = store.get_endpoint(seed.endpoint_a.id)
        endpoint.expected_min_records = 5
        store.update_endpoint(endpoint)
        services.registry.invalidate()
        fetcher.set_json(PRIMARY_URL, json.dumps(ROSTER))

        result = services.coordinator.run(endpoint, NOW)

        assert result.status == "partial"
        assert "expected at least 5" in result.run.error_message

    def test_empty_roster_is_partial(self, services, seed, fetcher):
        fetcher.set_json(PRIMARY_URL, "[]")
        assert services.coordinator.run(seed.endpoint_a, NOW).status == "partial"

    def test_fetch_error_on_primary_is_critical(self, services, store, seed, fetcher):
        fetcher.responses[PRIMARY_URL] = FetchError("HTTP 503 from source", http_status=503)

        result = services.coordinator.run(seed.endpoint_a, NOW)

        assert result.status == "failed"
        assert result.error_type == ALERT_FETCH_ERROR
        assert result.run.http_status == 503
        assert result.run.error_message.startswith("fetch_error:")
        [alert] = alerts_of(services, ALERT_FETCH_ERROR)
        assert alert.severity == "critical"
        assert alert.source_endpoint_id == seed.endpoint_a.id
        [entry] = store.list_retries("pending")
        assert entry.endpoint_id == seed.endpoint_a.id

    def test_fetch_error_on_secondary_is_warning(self, services, seed, fetcher):
        fetcher.responses[SECONDARY_URL] = FetchError("connection refused")
        services.coordinator.run(seed.endpoint_b, NOW)
        [alert] = alerts_of(services, ALERT_FETCH_ERROR)
        assert alert.severity == "warning"

    def test_timeout(self, services, store, seed, fetcher):
        release = threading.Event()

        def hang():
            release.wait(5)
            return None

        fetcher.responses[PRIMARY_URL] = hang
        services.coordinator.fetch_timeout_seconds = 0.2
        try:
            result = services.coordinator.run(seed.endpoint_a, NOW)
        finally:
            release.set()

        assert result.status == "failed"
        assert result.error_type == ALERT_TIMEOUT
        [alert] = alerts_of(services, ALERT_TIMEOUT)
        assert alert.severity == "critical"

    def test_parse_error(self, services, seed, fetcher):
        fetcher.set_json(PRIMARY_URL, "<html>bakimdayiz</html>")

        result = services.coordinator.run(seed.endpoint_a, NOW)

        assert result.status == "failed"
        assert result.error_type == ALERT_PARSE_ERROR
        [alert] = alerts_of(services, ALERT_PARSE_ERROR)
        assert alert.severity == "warning"

    def test_failed_run_keeps_existing_records(self, services, store, seed, fetcher):
        fetcher.set_json(PRIMARY_URL, json.dumps(ROSTER))
        services.coordinator.run(seed.endpoint_a, NOW)
        before = store.list_duty_records(seed.region.id, DUTY_DATE)

        fetcher.set_json(PRIMARY_URL, "not json")
        services.coordinator.run(seed.endpoint_a, NOW)

        assert store.list_duty_records(seed.region.id, DUTY_DATE) == before

    def test_repeated_failures_one_alert_one_retry(self, services, store, seed, fetcher):
        fetcher.responses[PRIMARY_URL] = FetchError("down")
        first = services.coordinator.run(seed.endpoint_a, NOW)
        second = services.coordinator.run(seed.endpoint_a, NOW)

        assert first.alert_raised and not second.alert_raised
        assert first.retry_enqueued and not second.retry_enqueued
        assert len(alerts_of(services, ALERT_FETCH_ERROR)) == 1
        assert len(store.list_retries("pending")) == 1
        assert len(store.list_runs(endpoint_id=seed.endpoint_a.id)) == 2

    def test_success_closes_pending_retry(self, services, store, seed, fetcher):
        fetcher.responses[PRIMARY_URL] = FetchError("down")
        services.coordinator.run(seed.endpoint_a, NOW)
        fetcher.set_json(PRIMARY_URL, json.dumps(ROSTER))
        services.coordinator.run(seed.endpoint_a, NOW)

        assert store.list_retries("pending") == []
        assert [e.status for e in store.list_retries()] == ["done"]

    def test_success_refreshes_region_freshness(self, services, seed, fetcher):
        services.staleness.min_coverage_fraction = 0
        services.staleness.refresh(seed.region.id, NOW)
        assert services.staleness.is_degraded(seed.region.id, NOW)

        fetcher.set_json(PRIMARY_URL, json.dumps(ROSTER))
        services.coordinator.run(seed.endpoint_a, NOW)

        assert not services.staleness.is_degraded(seed.region.id, NOW)
        assert alerts_of(services, "region_degraded") == []

    def test_records_match_region_status_after_first_run(self, services, store, seed, fetcher):
        fetcher.set_json(PRIMARY_URL, json.dumps(FULL_ROSTER))

        services.coordinator.run(seed.endpoint_a, NOW)

        assert not services.staleness.is_degraded(seed.region.id, NOW)
        records = store.list_duty_records(seed.region.id, DUTY_DATE)
        assert len(records) == 10
        assert [r for r in records if r.is_degraded] == []

    def test_failed_run_flags_records_once_region_goes_stale(self, services, store, seed, fetcher):
        fetcher.set_json(PRIMARY_URL, json.dumps(FULL_ROSTER))
        services.coordinator.run(seed.endpoint_a, NOW)

        fetcher.responses[PRIMARY_URL] = FetchError("down")
        services.coordinator.run(seed.endpoint_a, NOW + timedelta(hours=2))

        assert services.staleness.is_degraded(seed.region.id, NOW + timedelta(hours=2))
        records = store.list_duty_records(seed.region.id, DUTY_DATE)
        assert all(r.is_degraded for r in records)

    def test_stopped_region_is_skipped(self, services, store, seed, fetcher):
        services.coordinator.request_stop(seed.region.id)

        result = services.coordinator.run(seed.endpoint_a, NOW)

        assert result.skipped
        assert result.status == "skipped"
        assert store.list_runs() == []
        assert fetcher.calls == []

        services.coordinator.clear_stop(seed.region.id)
        assert not services.coordinator.is_stopped(seed.region.id)

    def test_unknown_endpoint(self, services):
        ghost = SourceEndpoint(id=999, source_id=1, endpoint_url="https://ghost.example", format="api", parser_key="x")
        with pytest.raises(ValidationError):
            services.coordinator.run(ghost, NOW)

    def test_to_dict(self, services, seed, fetcher):
        fetcher.set_json(PRIMARY_URL, json.dumps(ROSTER))
        out = services.coordinator.run(seed.endpoint_a, NOW).to_dict()
        assert out["status"] == "success"
        assert out["duty_date"] == "2026-03-10"
        assert out["records_accepted"] == 2


# ---- source dates -----------------------------------------------------------


class TestSourceDate:
    def test_current_roster_date_accepted(self, services, seed, fetcher):
        fetcher.set_json(PRIMARY_URL, json.dumps({"tarih": "10.03.2026", "data": ROSTER}))
        assert services.coordinator.run(seed.endpoint_a, NOW).status == "success"

    def test_outdated_roster_fails_and_keeps_records(self, services, store, seed, fetcher):
        fetcher.set_json(PRIMARY_URL, json.dumps(ROSTER))
        services.coordinator.run(seed.endpoint_a, NOW)
        before = store.list_duty_records(seed.region.id, DUTY_DATE)

        fetcher.set_json(PRIMARY_URL, json.dumps({"date": "9 Mart 2026 Pazartesi", "data": ROSTER}))
        result = services.coordinator.run(seed.endpoint_a, NOW)

        assert result.status == "failed"
        assert result.error_type == ALERT_STALE_SOURCE_DATE
        assert "2026-03-09" in result.run.error_message
        assert result.retry_enqueued
        assert store.list_duty_records(seed.region.id, DUTY_DATE) == before
        [alert] = alerts_of(services, ALERT_STALE_SOURCE_DATE)
        assert alert.severity == "critical"

    def test_rows_dated_for_another_day_are_skipped(self, services, store, seed, fetcher):
        rows = [dict(ROSTER[0], tarih="2026-03-10"), dict(ROSTER[1], tarih="2026-03-09")]
        fetcher.set_json(PRIMARY_URL, json.dumps(rows))

        result = services.coordinator.run(seed.endpoint_a, NOW)

        assert result.status == "partial"
        assert result.error_type == ALERT_STALE_SOURCE_DATE
        assert result.records_stale == 1
        assert "1 dated for another day" in result.run.error_message
        records = store.list_duty_records(seed.region.id, DUTY_DATE)
        assert [r.name for r in records] == ["Yıldız Eczanesi"]

    def test_every_row_outdated_fails(self, services, store, seed, fetcher):
        rows = [dict(row, duty_date="2026-03-09") for row in ROSTER]
        fetcher.set_json(PRIMARY_URL, json.dumps(rows))

        result = services.coordinator.run(seed.endpoint_a, NOW)

        assert result.status == "failed"
        assert result.records_stale == 2
        assert store.list_duty_records(seed.region.id, DUTY_DATE) == []

    def test_new_calendar_day_accepted_before_handover(self, services, store, seed, fetcher):
        # 07:00 in Istanbul on the 11th; the duty of the 10th is still running
        early = datetime(2026, 3, 11, 4, 0, tzinfo=timezone.utc)
        fetcher.set_json(PRIMARY_URL, json.dumps({"tarih": "11.03.2026", "data": ROSTER}))

        result = services.coordinator.run(seed.endpoint_a, early)

        assert result.status == "success"
        assert result.duty_date == DUTY_DATE
        assert len(store.list_duty_records(seed.region.id, DUTY_DATE)) == 2

    def test_strict_mode_requires_a_date(self, services, seed, fetcher):
        services.coordinator.strict_source_date = True
        fetcher.set_json(PRIMARY_URL, json.dumps(ROSTER))

        result = services.coordinator.run(seed.endpoint_a, NOW)

        assert result.status == "failed"
        assert result.error_type == ALERT_STALE_SOURCE_DATE
        assert "no date" in result.run.error_message


# ---- parser error rate ------------------------------------------------------


class TestParserErrorRate:
    def test_threshold_alert(self, services, seed, fetcher):
        services.coordinator.parser_error_min_runs = 3
        fetcher.set_json(PRIMARY_URL, "{broken")
        for _ in range(3):
            services.coordinator.run(seed.endpoint_a, NOW)

        [alert] = alerts_of(services, ALERT_PARSER_ERROR_THRESHOLD)
        assert alert.severity == "critical"
        assert alert.payload["error_runs"] == 3

    def test_below_min_runs(self, services, seed, fetcher):
        services.coordinator.parser_error_min_runs = 5
        fetcher.set_json(PRIMARY_URL, "{broken")
        services.coordinator.run(seed.endpoint_a, NOW)
        assert alerts_of(services, ALERT_PARSER_ERROR_THRESHOLD) == []

    def test_fetch_errors_do_not_count(self, services, seed, fetcher):
        services.coordinator.parser_error_min_runs = 2
        fetcher.responses[PRIMARY_URL] = FetchError("down")
        services.coordinator.run(seed.endpoint_a, NOW)
        services.coordinator.run(seed.endpoint_a, NOW)
        assert alerts_of(services, ALERT_PARSER_ERROR_THRESHOLD) == []


# ---- many runs --------------------------------------------------------------


class TestRunMany:
    def test_failure_isolated(self, services, seed, fetcher):
        fetcher.responses[PRIMARY_URL] = FetchError("down")
        fetcher.set_json(SECONDARY_URL, json.dumps(ROSTER))

        results = services.coordinator.run_region(seed.region.id, NOW)

        by_endpoint = {r.endpoint_id: r.status for r in results}
        assert by_endpoint == {seed.endpoint_a.id: "failed", seed.endpoint_b.id: "success"}

    def test_crash_in_one_run_is_logged(self, services, seed, fetcher, caplog):
        fetcher.responses[PRIMARY_URL] = RuntimeError("adapter bug")
        fetcher.set_json(SECONDARY_URL, json.dumps(ROSTER))

        results = services.coordinator.run_region(seed.region.id, NOW)

        assert [r.endpoint_id for r in results] == [seed.endpoint_b.id]
        assert "crashed" in caplog.text

    def test_disabled_endpoint_not_run(self, services, seed, fetcher):
        services.registry.set_endpoint_enabled(seed.endpoint_b.id, False)
        fetcher.set_json(PRIMARY_URL, json.dumps(ROSTER))

        results = services.coordinator.run_all(NOW)

        assert [r.endpoint_id for r in results] == [seed.endpoint_a.id]
        assert fetcher.calls == [PRIMARY_URL]

    def test_overview(self, services, seed, fetcher):
        fetcher.responses[PRIMARY_URL] = FetchError("down")
        fetcher.set_json(SECONDARY_URL, json.dumps(ROSTER))
        services.coordinator.run_region(seed.region.id, NOW)

        [row] = services.coordinator.overview(NOW)
        assert row["region"] == "istanbul"
        assert row["runs_24h"] == 2
        assert row["failed_24h"] == 1
        assert row["success_24h"] == 1
        assert row["open_alerts"] >= 1
        assert row["stopped"] is False
