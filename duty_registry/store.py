"""
Duty Pharmacy Registry — In-Memory Store

Thread-safe store used when PostgreSQL is unavailable and throughout the
test suite. Mirrors PostgresStore method for method; every compound
operation (dedup-then-insert, compare-and-swap, claim) runs under one
lock so concurrent workers see the same guarantees the database's
unique constraints give.

Rows are deep-copied on the way in and out, so callers never mutate
stored state by accident.
"""

from __future__ import annotations

import copy
import itertools
import logging
import threading
import uuid
from datetime import date, datetime, timedelta

from .entities import (
    MANUAL_SOURCE_NAME,
    MANUAL_SOURCE_TYPE,
    MANUAL_SOURCE_URL,
    MANUAL_SOURCE_WEIGHT,
    District,
    DutyEvidence,
    DutyRecord,
    IngestionAlert,
    IngestionRun,
    Pharmacy,
    Region,
    RetryQueueEntry,
    Source,
    SourceEndpoint,
)
from .errors import StaleWriteError
from .helpers import slugify

logger = logging.getLogger(__name__)

_clone = copy.deepcopy


class MemoryStore:
    """Process-local persistence with the same contract as PostgresStore."""

    mode = "memory"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._ids = {
            name: itertools.count(1)
            for name in ("region", "district", "source", "endpoint", "run", "alert", "retry")
        }
        self._regions: dict[int, Region] = {}
        self._districts: dict[int, District] = {}
        self._sources: dict[int, Source] = {}
        self._endpoints: dict[int, SourceEndpoint] = {}
        self._runs: list[IngestionRun] = []
        self._pharmacies: dict[str, Pharmacy] = {}
        self._records: dict[tuple[str, date], DutyRecord] = {}
        self._evidence: dict[str, dict[int, DutyEvidence]] = {}
        self._alerts: dict[int, IngestionAlert] = {}
        self._retries: dict[int, RetryQueueEntry] = {}

    # ------------------------------------------------------------------
    # Regions / districts
    # ------------------------------------------------------------------

    def add_region(self, slug: str, name: str) -> Region:
        with self._lock:
            region = Region(id=next(self._ids["region"]), slug=slug, name=name)
            self._regions[region.id] = region
            return _clone(region)

    def get_region(self, region_id: int) -> Region | None:
        with self._lock:
            return _clone(self._regions.get(region_id))

    def get_region_by_slug(self, slug: str) -> Region | None:
        with self._lock:
            for region in self._regions.values():
                if region.slug == slug:
                    return _clone(region)
            return None

    def list_regions(self) -> list[Region]:
        with self._lock:
            return [_clone(r) for r in sorted(self._regions.values(), key=lambda r: r.slug)]

    def add_district(self, region_id: int, name: str, slug: str | None = None) -> District:
        with self._lock:
            slug = slug or slugify(name)
            for existing in self._districts.values():
                if existing.region_id == region_id and existing.slug == slug:
                    return _clone(existing)
            district = District(id=next(self._ids["district"]), region_id=region_id, slug=slug, name=name)
            self._districts[district.id] = district
            return _clone(district)

    def list_districts(self, region_id: int) -> list[District]:
        with self._lock:
            rows = [d for d in self._districts.values() if d.region_id == region_id]
            return [_clone(d) for d in sorted(rows, key=lambda d: d.name)]

    # ------------------------------------------------------------------
    # Sources / endpoints
    # ------------------------------------------------------------------

    def add_source(
        self,
        region_id: int,
        name: str,
        type: str,
        authority_weight: int,
        base_url: str,
        enabled: bool = True,
    ) -> Source:
        with self._lock:
            source = Source(
                id=next(self._ids["source"]),
                region_id=region_id,
                name=name,
                type=type,
                authority_weight=authority_weight,
                base_url=base_url,
                enabled=enabled,
            )
            self._sources[source.id] = source
            return _clone(source)

    def upsert_manual_source(self, region_id: int) -> Source:
        with self._lock:
            for source in self._sources.values():
                if source.region_id == region_id and source.name == MANUAL_SOURCE_NAME:
                    source.type = MANUAL_SOURCE_TYPE
                    source.authority_weight = MANUAL_SOURCE_WEIGHT
                    source.enabled = True
                    return _clone(source)
            return self.add_source(
                region_id, MANUAL_SOURCE_NAME, MANUAL_SOURCE_TYPE, MANUAL_SOURCE_WEIGHT, MANUAL_SOURCE_URL
            )

    def get_source(self, source_id: int) -> Source | None:
        with self._lock:
            return _clone(self._sources.get(source_id))

    def list_sources(self, region_id: int | None = None) -> list[Source]:
        with self._lock:
            rows = [s for s in self._sources.values() if region_id is None or s.region_id == region_id]
            return [_clone(s) for s in sorted(rows, key=lambda s: s.id)]

    def update_source(self, source: Source) -> Source:
        with self._lock:
            self._sources[source.id] = _clone(source)
            return _clone(source)

    def add_endpoint(
        self,
        source_id: int,
        endpoint_url: str,
        format: str = "api",
        parser_key: str = "json_records_v1",
        is_primary: bool = False,
        poll_schedule: str = "*/30 * * * *",
        enabled: bool = True,
        expected_min_records: int = 0,
    ) -> SourceEndpoint:
        with self._lock:
            endpoint = SourceEndpoint(
                id=next(self._ids["endpoint"]),
                source_id=source_id,
                endpoint_url=endpoint_url,
                format=format,
                parser_key=parser_key,
                is_primary=is_primary,
                poll_schedule=poll_schedule,
                enabled=enabled,
                expected_min_records=expected_min_records,
            )
            self._endpoints[endpoint.id] = endpoint
            return _clone(endpoint)

    def get_endpoint(self, endpoint_id: int) -> SourceEndpoint | None:
        with self._lock:
            return _clone(self._endpoints.get(endpoint_id))

    def list_endpoints(self, region_id: int | None = None) -> list[SourceEndpoint]:
        with self._lock:
            rows = [
                e
                for e in self._endpoints.values()
                if region_id is None or self._sources[e.source_id].region_id == region_id
            ]
            return [_clone(e) for e in sorted(rows, key=lambda e: e.id)]

    def update_endpoint(self, endpoint: SourceEndpoint) -> SourceEndpoint:
        with self._lock:
            self._endpoints[endpoint.id] = _clone(endpoint)
            return _clone(endpoint)

    # ------------------------------------------------------------------
    # Ingestion runs (append-only)
    # ------------------------------------------------------------------

    def insert_run(self, run: IngestionRun) -> IngestionRun:
        with self._lock:
            stored = _clone(run)
            stored.id = next(self._ids["run"])
            self._runs.append(stored)
            return _clone(stored)

    def list_runs(
        self,
        endpoint_id: int | None = None,
        region_id: int | None = None,
        since: datetime | None = None,
    ) -> list[IngestionRun]:
        with self._lock:
            rows = [
                r
                for r in self._runs
                if (endpoint_id is None or r.endpoint_id == endpoint_id)
                and (region_id is None or r.region_id == region_id)
                and (since is None or r.started_at >= since)
            ]
            return [_clone(r) for r in sorted(rows, key=lambda r: r.started_at, reverse=True)]

    def last_successful_run_at(self, endpoint_ids: list[int]) -> datetime | None:
        with self._lock:
            finished = [
                r.finished_at
                for r in self._runs
                if r.endpoint_id in endpoint_ids and r.status == "success"
            ]
            return max(finished) if finished else None

    # ------------------------------------------------------------------
    # Pharmacies
    # ------------------------------------------------------------------

    def list_pharmacies(self, region_id: int, district_id: int | None = None) -> list[Pharmacy]:
        with self._lock:
            rows = [
                p
                for p in self._pharmacies.values()
                if p.region_id == region_id and (district_id is None or p.district_id == district_id)
            ]
            return [_clone(p) for p in sorted(rows, key=lambda p: p.normalized_name)]

    def get_pharmacy(self, pharmacy_id: str) -> Pharmacy | None:
        with self._lock:
            return _clone(self._pharmacies.get(pharmacy_id))

    def insert_pharmacy(self, pharmacy: Pharmacy) -> tuple[Pharmacy, bool]:
        """Insert unless (district_id, normalized_name) exists; returns (row, created)."""
        with self._lock:
            for existing in self._pharmacies.values():
                if (
                    existing.district_id == pharmacy.district_id
                    and existing.normalized_name == pharmacy.normalized_name
                ):
                    return _clone(existing), False
            stored = _clone(pharmacy)
            stored.id = stored.id or str(uuid.uuid4())
            self._pharmacies[stored.id] = stored
            return _clone(stored), True

    def update_pharmacy(self, pharmacy: Pharmacy) -> Pharmacy:
        with self._lock:
            self._pharmacies[pharmacy.id] = _clone(pharmacy)
            return _clone(pharmacy)

    # ------------------------------------------------------------------
    # Duty records / evidence
    # ------------------------------------------------------------------

    def get_duty_record(self, pharmacy_id: str, duty_date: date) -> DutyRecord | None:
        with self._lock:
            return _clone(self._records.get((pharmacy_id, duty_date)))

    def list_evidence(self, pharmacy_id: str, duty_date: date) -> list[DutyEvidence]:
        with self._lock:
            record = self._records.get((pharmacy_id, duty_date))
            if record is None:
                return []
            rows = self._evidence.get(record.id, {}).values()
            return [_clone(e) for e in sorted(rows, key=lambda e: e.source_id)]

    def save_reconciliation(
        self,
        record: DutyRecord,
        evidence: list[DutyEvidence],
        expected_version: int,
    ) -> DutyRecord:
        """
        Upsert the (pharmacy_id, duty_date) row and replace its evidence, atomically.

        *expected_version* is the version the caller read (0 = no row yet);
        a mismatch means another writer committed first.
        """
        key = (record.pharmacy_id, record.duty_date)
        with self._lock:
            current = self._records.get(key)
            current_version = current.version if current else 0
            if current_version != expected_version:
                raise StaleWriteError(
                    f"duty record {key} at version {current_version}, expected {expected_version}"
                )

            stored = _clone(record)
            stored.id = current.id if current else (stored.id or str(uuid.uuid4()))
            stored.version = current_version + 1
            self._records[key] = stored

            rows: dict[int, DutyEvidence] = {}
            for ev in evidence:
                row = _clone(ev)
                row.duty_record_id = stored.id
                rows[row.source_id] = row
            self._evidence[stored.id] = rows
            return _clone(stored)

    def list_duty_records(
        self,
        region_id: int,
        duty_date: date,
        district_id: int | None = None,
    ) -> list[DutyRecord]:
        with self._lock:
            rows = [
                r
                for (_, d), r in self._records.items()
                if d == duty_date
                and r.region_id == region_id
                and (district_id is None or r.district_id == district_id)
            ]
            return [_clone(r) for r in sorted(rows, key=lambda r: (r.district_id, r.name))]

    def list_duty_dates(self, region_id: int, since: date, until: date, limit: int) -> list[date]:
        """Distinct duty dates with records in [since, until], newest first."""
        with self._lock:
            dates = {d for (_, d), r in self._records.items() if r.region_id == region_id and since <= d <= until}
            return sorted(dates, reverse=True)[:limit]

    def list_located_duty_records(
        self,
        duty_date: date,
        lat_range: tuple[float, float],
        lng_range: tuple[float, float],
    ) -> list[tuple[DutyRecord, float, float]]:
        """Records for *duty_date* whose pharmacy has coordinates inside the box."""
        with self._lock:
            rows = []
            for (pharmacy_id, d), record in self._records.items():
                pharmacy = self._pharmacies.get(pharmacy_id)
                if d != duty_date or pharmacy is None or pharmacy.lat is None or pharmacy.lng is None:
                    continue
                if lat_range[0] <= pharmacy.lat <= lat_range[1] and lng_range[0] <= pharmacy.lng <= lng_range[1]:
                    rows.append((_clone(record), pharmacy.lat, pharmacy.lng))
            return rows

    def set_degraded_flags(
        self,
        region_id: int,
        duty_date: date,
        region_degraded: bool,
        confidence_floor: int,
    ) -> int:
        """is_degraded = region_degraded or confidence below the floor; versions are not bumped."""
        with self._lock:
            changed = 0
            for (_, d), record in self._records.items():
                if d != duty_date or record.region_id != region_id:
                    continue
                flag = region_degraded or record.confidence_score < confidence_floor
                if record.is_degraded != flag:
                    record.is_degraded = flag
                    changed += 1
            return changed

    def coverage_counts(self, region_id: int, duty_date: date) -> tuple[int, int, datetime | None]:
        """(expected districts, distinct covered districts, latest record update)."""
        with self._lock:
            expected = sum(1 for d in self._districts.values() if d.region_id == region_id)
            rows = [r for (_, d), r in self._records.items() if d == duty_date and r.region_id == region_id]
            covered = len({r.district_id for r in rows})
            last_update = max((r.updated_at for r in rows if r.updated_at), default=None)
            return expected, covered, last_update

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def insert_alert_if_absent(self, alert: IngestionAlert) -> tuple[IngestionAlert, bool]:
        with self._lock:
            for existing in self._alerts.values():
                if existing.resolved_at is None and existing.dedup_key == alert.dedup_key:
                    return _clone(existing), False
            stored = _clone(alert)
            stored.id = next(self._ids["alert"])
            self._alerts[stored.id] = stored
            return _clone(stored), True

    def find_open_alert(self, region_id: int, endpoint_id: int | None, alert_type: str) -> IngestionAlert | None:
        with self._lock:
            for alert in self._alerts.values():
                if alert.resolved_at is None and alert.dedup_key == (region_id, endpoint_id, alert_type):
                    return _clone(alert)
            return None

    def get_alert(self, alert_id: int) -> IngestionAlert | None:
        with self._lock:
            return _clone(self._alerts.get(alert_id))

    def resolve_alert(self, alert_id: int, resolved_by: str, resolved_at: datetime) -> bool:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.resolved_at is not None:
                return False
            alert.resolved_at = resolved_at
            alert.resolved_by = resolved_by
            alert.payload = {**(alert.payload or {}), "resolved_by": resolved_by}
            return True

    def list_open_alerts(self, limit: int, region_id: int | None = None) -> list[IngestionAlert]:
        with self._lock:
            rows = [
                a
                for a in self._alerts.values()
                if a.resolved_at is None and (region_id is None or a.region_id == region_id)
            ]
            rows.sort(key=lambda a: (a.created_at, a.id), reverse=True)
            return [_clone(a) for a in rows[:limit]]

    # ------------------------------------------------------------------
    # Retry queue
    # ------------------------------------------------------------------

    def _pending_for(self, region_id: int, endpoint_id: int | None) -> RetryQueueEntry | None:
        for entry in self._retries.values():
            if entry.status == "pending" and entry.target == (region_id, endpoint_id):
                return entry
        return None

    def enqueue_retry(self, entry: RetryQueueEntry) -> tuple[RetryQueueEntry, bool]:
        """At most one pending entry per (region_id, endpoint_id)."""
        with self._lock:
            existing = self._pending_for(entry.region_id, entry.endpoint_id)
            if existing is not None:
                return _clone(existing), False
            stored = _clone(entry)
            stored.id = next(self._ids["retry"])
            self._retries[stored.id] = stored
            return _clone(stored), True

    def expedite_retry(self, entry: RetryQueueEntry) -> RetryQueueEntry:
        """Insert, or bump an existing pending entry to *entry*'s priority and time."""
        with self._lock:
            existing = self._pending_for(entry.region_id, entry.endpoint_id)
            if existing is None:
                return self.enqueue_retry(entry)[0]
            existing.priority = min(existing.priority, entry.priority)
            existing.next_attempt_at = min(existing.next_attempt_at, entry.next_attempt_at)
            existing.requested_by = entry.requested_by
            existing.updated_at = entry.updated_at
            return _clone(existing)

    def claim_due_retries(self, now: datetime, limit: int, lease_seconds: int) -> list[RetryQueueEntry]:
        """
        Take up to *limit* due pending entries, highest priority first.

        Claimed entries have next_attempt_at pushed out by the lease so a
        concurrent worker does not pick them up too.
        """
        with self._lock:
            due = [e for e in self._retries.values() if e.status == "pending" and e.next_attempt_at <= now]
            due.sort(key=lambda e: (e.priority, e.next_attempt_at, e.id))
            claimed = due[:limit]
            for entry in claimed:
                entry.next_attempt_at = now + timedelta(seconds=lease_seconds)
                entry.updated_at = now
            return [_clone(e) for e in claimed]

    def update_retry(self, entry: RetryQueueEntry) -> RetryQueueEntry:
        with self._lock:
            self._retries[entry.id] = _clone(entry)
            return _clone(entry)

    def get_retry(self, entry_id: int) -> RetryQueueEntry | None:
        with self._lock:
            return _clone(self._retries.get(entry_id))

    def list_retries(self, status: str | None = None) -> list[RetryQueueEntry]:
        with self._lock:
            rows = [e for e in self._retries.values() if status is None or e.status == status]
            return [_clone(e) for e in sorted(rows, key=lambda e: e.id)]

    def pending_retries_for_endpoint(self, endpoint_id: int) -> list[RetryQueueEntry]:
        with self._lock:
            return [
                _clone(e)
                for e in self._retries.values()
                if e.status == "pending" and e.endpoint_id == endpoint_id
            ]
