"""
Duty Pharmacy Registry — PostgreSQL Store

Same contract as MemoryStore, backed by the pooled connection in db.py.

Atomicity comes from the database:
    - ON CONFLICT upserts against the unique keys in schema.sql
    - partial unique indexes for open-alert and pending-retry dedup
    - version compare-and-swap on duty_records
    - FOR UPDATE SKIP LOCKED when claiming due retries

Driver errors surface as PersistenceError.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Any, Iterator

import psycopg2

from . import db
from .db import extras
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
from .errors import PersistenceError, StaleWriteError
from .helpers import slugify

logger = logging.getLogger(__name__)

_RECORD_COLUMNS = (
    "pharmacy_id", "region_id", "district_id", "duty_date", "duty_start", "duty_end",
    "confidence_score", "verification_source_count", "is_degraded", "source_name",
    "source_url", "name", "address", "phone", "duty_hours", "cluster_count", "updated_at",
)


@contextmanager
def _cursor() -> Iterator[Any]:
    """RealDictCursor inside one transaction; driver errors become PersistenceError."""
    try:
        with db.get_conn() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                yield cur
    except psycopg2.Error as e:
        logger.error("Database error: %s", e)
        raise PersistenceError(str(e)) from e


def _one(cls, row):
    return cls(**row) if row else None


def _alert(row) -> IngestionAlert | None:
    if not row:
        return None
    row = dict(row)
    row["payload"] = row.get("payload") or {}
    return IngestionAlert(**row)


def _select_open_alert(cur, region_id: int, endpoint_id: int | None, alert_type: str) -> IngestionAlert | None:
    cur.execute(
        """
        SELECT * FROM ingestion_alerts
        WHERE region_id = %s AND coalesce(source_endpoint_id, 0) = coalesce(%s, 0)
          AND alert_type = %s AND resolved_at IS NULL
        """,
        (region_id, endpoint_id, alert_type),
    )
    return _alert(cur.fetchone())


class PostgresStore:
    mode = "database"

    # ------------------------------------------------------------------
    # Regions / districts
    # ------------------------------------------------------------------

    def add_region(self, slug: str, name: str) -> Region:
        with _cursor() as cur:
            cur.execute(
                """
                INSERT INTO regions (slug, name) VALUES (%s, %s)
                ON CONFLICT (slug) DO UPDATE SET name = EXCLUDED.name
                RETURNING *
                """,
                (slug, name),
            )
            return Region(**cur.fetchone())

    def get_region(self, region_id: int) -> Region | None:
        with _cursor() as cur:
            cur.execute("SELECT * FROM regions WHERE id = %s", (region_id,))
            return _one(Region, cur.fetchone())

    def get_region_by_slug(self, slug: str) -> Region | None:
        with _cursor() as cur:
            cur.execute("SELECT * FROM regions WHERE slug = %s", (slug,))
            return _one(Region, cur.fetchone())

    def list_regions(self) -> list[Region]:
        with _cursor() as cur:
            cur.execute("SELECT * FROM regions ORDER BY slug")
            return [Region(**r) for r in cur.fetchall()]

    def add_district(self, region_id: int, name: str, slug: str | None = None) -> District:
        with _cursor() as cur:
            cur.execute(
                """
                INSERT INTO districts (region_id, slug, name) VALUES (%s, %s, %s)
                ON CONFLICT (region_id, slug) DO UPDATE SET name = districts.name
                RETURNING *
                """,
                (region_id, slug or slugify(name), name),
            )
            return District(**cur.fetchone())

    def list_districts(self, region_id: int) -> list[District]:
        with _cursor() as cur:
            cur.execute("SELECT * FROM districts WHERE region_id = %s ORDER BY name", (region_id,))
            return [District(**r) for r in cur.fetchall()]

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
        with _cursor() as cur:
            cur.execute(
                """
                INSERT INTO sources (region_id, name, type, authority_weight, base_url, enabled)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (region_id, name, type, authority_weight, base_url, enabled),
            )
            return Source(**cur.fetchone())

    def upsert_manual_source(self, region_id: int) -> Source:
        with _cursor() as cur:
            cur.execute(
                """
                INSERT INTO sources (region_id, name, type, authority_weight, base_url, enabled)
                VALUES (%s, %s, %s, %s, %s, true)
                ON CONFLICT (region_id, name) DO UPDATE
                    SET type = EXCLUDED.type,
                        authority_weight = EXCLUDED.authority_weight,
                        enabled = true
                RETURNING *
                """,
                (region_id, MANUAL_SOURCE_NAME, MANUAL_SOURCE_TYPE, MANUAL_SOURCE_WEIGHT, MANUAL_SOURCE_URL),
            )
            return Source(**cur.fetchone())

    def get_source(self, source_id: int) -> Source | None:
        with _cursor() as cur:
            cur.execute("SELECT * FROM sources WHERE id = %s", (source_id,))
            return _one(Source, cur.fetchone())

    def list_sources(self, region_id: int | None = None) -> list[Source]:
        with _cursor() as cur:
            if region_id is None:
                cur.execute("SELECT * FROM sources ORDER BY id")
            else:
                cur.execute("SELECT * FROM sources WHERE region_id = %s ORDER BY id", (region_id,))
            return [Source(**r) for r in cur.fetchall()]

    def update_source(self, source: Source) -> Source:
        with _cursor() as cur:
            cur.execute(
                """
                UPDATE sources
                SET name = %s, type = %s, authority_weight = %s, base_url = %s, enabled = %s
                WHERE id = %s
                RETURNING *
                """,
                (source.name, source.type, source.authority_weight, source.base_url, source.enabled, source.id),
            )
            return Source(**cur.fetchone())

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
        with _cursor() as cur:
            cur.execute(
                """
                INSERT INTO source_endpoints
                    (source_id, endpoint_url, format, parser_key, is_primary,
                     poll_schedule, enabled, expected_min_records)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (source_id, endpoint_url, format, parser_key, is_primary, poll_schedule, enabled,
                 expected_min_records),
            )
            return SourceEndpoint(**cur.fetchone())

    def get_endpoint(self, endpoint_id: int) -> SourceEndpoint | None:
        with _cursor() as cur:
            cur.execute("SELECT * FROM source_endpoints WHERE id = %s", (endpoint_id,))
            return _one(SourceEndpoint, cur.fetchone())

    def list_endpoints(self, region_id: int | None = None) -> list[SourceEndpoint]:
        with _cursor() as cur:
            if region_id is None:
                cur.execute("SELECT * FROM source_endpoints ORDER BY id")
            else:
                cur.execute(
                    """
                    SELECT e.* FROM source_endpoints e
                    JOIN sources s ON s.id = e.source_id
                    WHERE s.region_id = %s
                    ORDER BY e.id
                    """,
                    (region_id,),
                )
            return [SourceEndpoint(**r) for r in cur.fetchall()]

    def update_endpoint(self, endpoint: SourceEndpoint) -> SourceEndpoint:
        with _cursor() as cur:
            cur.execute(
                """
                UPDATE source_endpoints
                SET endpoint_url = %s, format = %s, parser_key = %s, is_primary = %s,
                    poll_schedule = %s, enabled = %s, expected_min_records = %s
                WHERE id = %s
                RETURNING *
                """,
                (endpoint.endpoint_url, endpoint.format, endpoint.parser_key, endpoint.is_primary,
                 endpoint.poll_schedule, endpoint.enabled, endpoint.expected_min_records, endpoint.id),
            )
            return SourceEndpoint(**cur.fetchone())

    # ------------------------------------------------------------------
    # Ingestion runs (append-only)
    # ------------------------------------------------------------------

    def insert_run(self, run: IngestionRun) -> IngestionRun:
        with _cursor() as cur:
            cur.execute(
                """
                INSERT INTO ingestion_runs
                    (endpoint_id, region_id, status, started_at, finished_at,
                     http_status, error_message, records_found, records_accepted, records_rejected)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (run.endpoint_id, run.region_id, run.status, run.started_at, run.finished_at,
                 run.http_status, run.error_message, run.records_found, run.records_accepted,
                 run.records_rejected),
            )
            return IngestionRun(**cur.fetchone())

    def list_runs(
        self,
        endpoint_id: int | None = None,
        region_id: int | None = None,
        since: datetime | None = None,
    ) -> list[IngestionRun]:
        where, params = [], []
        if endpoint_id is not None:
            where.append("endpoint_id = %s")
            params.append(endpoint_id)
        if region_id is not None:
            where.append("region_id = %s")
            params.append(region_id)
        if since is not None:
            where.append("started_at >= %s")
            params.append(since)
        clause = ("WHERE " + " AND ".join(where)) if where else ""
        with _cursor() as cur:
            cur.execute(f"SELECT * FROM ingestion_runs {clause} ORDER BY started_at DESC", params)
            return [IngestionRun(**r) for r in cur.fetchall()]

    def last_successful_run_at(self, endpoint_ids: list[int]) -> datetime | None:
        if not endpoint_ids:
            return None
        with _cursor() as cur:
            cur.execute(
                """
                SELECT max(finished_at) AS last_success FROM ingestion_runs
                WHERE endpoint_id = ANY(%s) AND status = 'success'
                """,
                (list(endpoint_ids),),
            )
            return cur.fetchone()["last_success"]

    # ------------------------------------------------------------------
    # Pharmacies
    # ------------------------------------------------------------------

    def list_pharmacies(self, region_id: int, district_id: int | None = None) -> list[Pharmacy]:
        with _cursor() as cur:
            if district_id is None:
                cur.execute(
                    "SELECT * FROM pharmacies WHERE region_id = %s ORDER BY normalized_name",
                    (region_id,),
                )
            else:
                cur.execute(
                    """
                    SELECT * FROM pharmacies WHERE region_id = %s AND district_id = %s
                    ORDER BY normalized_name
                    """,
                    (region_id, district_id),
                )
            return [Pharmacy(**r) for r in cur.fetchall()]

    def get_pharmacy(self, pharmacy_id: str) -> Pharmacy | None:
        with _cursor() as cur:
            cur.execute("SELECT * FROM pharmacies WHERE id = %s", (pharmacy_id,))
            return _one(Pharmacy, cur.fetchone())

    def insert_pharmacy(self, pharmacy: Pharmacy) -> tuple[Pharmacy, bool]:
        with _cursor() as cur:
            cur.execute(
                """
                INSERT INTO pharmacies
                    (region_id, district_id, canonical_name, normalized_name, address, phone,
                     lat, lng, is_active, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, coalesce(%s, now()), coalesce(%s, now()))
                ON CONFLICT (district_id, normalized_name) DO NOTHING
                RETURNING *
                """,
                (pharmacy.region_id, pharmacy.district_id, pharmacy.canonical_name, pharmacy.normalized_name,
                 pharmacy.address, pharmacy.phone, pharmacy.lat, pharmacy.lng, pharmacy.is_active,
                 pharmacy.created_at, pharmacy.updated_at),
            )
            row = cur.fetchone()
            if row:
                return Pharmacy(**row), True
            cur.execute(
                "SELECT * FROM pharmacies WHERE district_id = %s AND normalized_name = %s",
                (pharmacy.district_id, pharmacy.normalized_name),
            )
            return Pharmacy(**cur.fetchone()), False

    def update_pharmacy(self, pharmacy: Pharmacy) -> Pharmacy:
        with _cursor() as cur:
            cur.execute(
                """
                UPDATE pharmacies
                SET canonical_name = %s, address = %s, phone = %s, lat = %s, lng = %s,
                    is_active = %s, updated_at = coalesce(%s, now())
                WHERE id = %s
                RETURNING *
                """,
                (pharmacy.canonical_name, pharmacy.address, pharmacy.phone, pharmacy.lat, pharmacy.lng,
                 pharmacy.is_active, pharmacy.updated_at, pharmacy.id),
            )
            return Pharmacy(**cur.fetchone())

    # ------------------------------------------------------------------
    # Duty records / evidence
    # ------------------------------------------------------------------

    def get_duty_record(self, pharmacy_id: str, duty_date: date) -> DutyRecord | None:
        with _cursor() as cur:
            cur.execute(
                "SELECT * FROM duty_records WHERE pharmacy_id = %s AND duty_date = %s",
                (pharmacy_id, duty_date),
            )
            return _one(DutyRecord, cur.fetchone())

    def list_evidence(self, pharmacy_id: str, duty_date: date) -> list[DutyEvidence]:
        with _cursor() as cur:
            cur.execute(
                """
                SELECT e.* FROM duty_evidence e
                JOIN duty_records r ON r.id = e.duty_record_id
                WHERE r.pharmacy_id = %s AND r.duty_date = %s
                ORDER BY e.source_id
                """,
                (pharmacy_id, duty_date),
            )
            return [DutyEvidence(**r) for r in cur.fetchall()]

    def save_reconciliation(
        self,
        record: DutyRecord,
        evidence: list[DutyEvidence],
        expected_version: int,
    ) -> DutyRecord:
        """Upsert the record with a version check and replace its evidence in one transaction."""
        values = [getattr(record, c) for c in _RECORD_COLUMNS]
        with _cursor() as cur:
            if expected_version == 0:
                cur.execute(
                    f"""
                    INSERT INTO duty_records ({", ".join(_RECORD_COLUMNS)}, version)
                    VALUES ({", ".join(["%s"] * len(_RECORD_COLUMNS))}, 1)
                    ON CONFLICT (pharmacy_id, duty_date) DO NOTHING
                    RETURNING *
                    """,
                    values,
                )
            else:
                assignments = ", ".join(f"{c} = %s" for c in _RECORD_COLUMNS)
                cur.execute(
                    f"""
                    UPDATE duty_records SET {assignments}, version = version + 1
                    WHERE pharmacy_id = %s AND duty_date = %s AND version = %s
                    RETURNING *
                    """,
                    values + [record.pharmacy_id, record.duty_date, expected_version],
                )
            row = cur.fetchone()
            if row is None:
                raise StaleWriteError(
                    f"duty record ({record.pharmacy_id}, {record.duty_date}) moved past version {expected_version}"
                )
            saved = DutyRecord(**row)

            cur.execute("DELETE FROM duty_evidence WHERE duty_record_id = %s", (saved.id,))
            if evidence:
                extras.execute_values(
                    cur,
                    """
                    INSERT INTO duty_evidence
                        (duty_record_id, source_id, endpoint_id, source_url, extracted_payload, fetched_at)
                    VALUES %s
                    """,
                    [
                        (saved.id, ev.source_id, ev.endpoint_id, ev.source_url,
                         extras.Json(ev.extracted_payload), ev.fetched_at)
                        for ev in evidence
                    ],
                )
            return saved

    def list_duty_records(
        self,
        region_id: int,
        duty_date: date,
        district_id: int | None = None,
    ) -> list[DutyRecord]:
        with _cursor() as cur:
            if district_id is None:
                cur.execute(
                    """
                    SELECT * FROM duty_records WHERE region_id = %s AND duty_date = %s
                    ORDER BY district_id, name
                    """,
                    (region_id, duty_date),
                )
            else:
                cur.execute(
                    """
                    SELECT * FROM duty_records
                    WHERE region_id = %s AND duty_date = %s AND district_id = %s
                    ORDER BY district_id, name
                    """,
                    (region_id, duty_date, district_id),
                )
            return [DutyRecord(**r) for r in cur.fetchall()]

    def list_duty_dates(self, region_id: int, since: date, until: date, limit: int) -> list[date]:
        with _cursor() as cur:
            cur.execute(
                """
                SELECT DISTINCT duty_date FROM duty_records
                WHERE region_id = %s AND duty_date BETWEEN %s AND %s
                ORDER BY duty_date DESC
                LIMIT %s
                """,
                (region_id, since, until, limit),
            )
            return [r["duty_date"] for r in cur.fetchall()]

    def list_located_duty_records(
        self,
        duty_date: date,
        lat_range: tuple[float, float],
        lng_range: tuple[float, float],
    ) -> list[tuple[DutyRecord, float, float]]:
        with _cursor() as cur:
            cur.execute(
                """
                SELECT dr.*, p.lat AS pharmacy_lat, p.lng AS pharmacy_lng
                FROM duty_records dr
                JOIN pharmacies p ON p.id = dr.pharmacy_id
                WHERE dr.duty_date = %s
                  AND p.lat BETWEEN %s AND %s
                  AND p.lng BETWEEN %s AND %s
                """,
                (duty_date, lat_range[0], lat_range[1], lng_range[0], lng_range[1]),
            )
            rows = []
            for r in cur.fetchall():
                lat, lng = r.pop("pharmacy_lat"), r.pop("pharmacy_lng")
                rows.append((DutyRecord(**r), lat, lng))
            return rows

    def set_degraded_flags(
        self,
        region_id: int,
        duty_date: date,
        region_degraded: bool,
        confidence_floor: int,
    ) -> int:
        with _cursor() as cur:
            cur.execute(
                """
                UPDATE duty_records SET is_degraded = (%(degraded)s OR confidence_score < %(floor)s)
                WHERE region_id = %(region)s AND duty_date = %(duty_date)s
                  AND is_degraded <> (%(degraded)s OR confidence_score < %(floor)s)
                """,
                {"degraded": region_degraded, "floor": confidence_floor, "region": region_id, "duty_date": duty_date},
            )
            return cur.rowcount

    def coverage_counts(self, region_id: int, duty_date: date) -> tuple[int, int, datetime | None]:
        with _cursor() as cur:
            cur.execute(
                """
                SELECT
                    (SELECT count(*) FROM districts WHERE region_id = %s) AS expected,
                    count(DISTINCT district_id) AS actual,
                    max(updated_at) AS last_update
                FROM duty_records
                WHERE region_id = %s AND duty_date = %s
                """,
                (region_id, region_id, duty_date),
            )
            row = cur.fetchone()
            return int(row["expected"]), int(row["actual"]), row["last_update"]

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def insert_alert_if_absent(self, alert: IngestionAlert) -> tuple[IngestionAlert, bool]:
        with _cursor() as cur:
            cur.execute(
                """
                INSERT INTO ingestion_alerts
                    (region_id, source_endpoint_id, alert_type, severity, message, payload, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (region_id, (coalesce(source_endpoint_id, 0)), alert_type)
                    WHERE resolved_at IS NULL
                    DO NOTHING
                RETURNING *
                """,
                (alert.region_id, alert.source_endpoint_id, alert.alert_type, alert.severity,
                 alert.message, extras.Json(alert.payload or {}), alert.created_at),
            )
            row = cur.fetchone()
            if row:
                return _alert(row), True
            return _select_open_alert(cur, alert.region_id, alert.source_endpoint_id, alert.alert_type), False

    def find_open_alert(self, region_id: int, endpoint_id: int | None, alert_type: str) -> IngestionAlert | None:
        with _cursor() as cur:
            return _select_open_alert(cur, region_id, endpoint_id, alert_type)

    def get_alert(self, alert_id: int) -> IngestionAlert | None:
        with _cursor() as cur:
            cur.execute("SELECT * FROM ingestion_alerts WHERE id = %s", (alert_id,))
            return _alert(cur.fetchone())

    def resolve_alert(self, alert_id: int, resolved_by: str, resolved_at: datetime) -> bool:
        with _cursor() as cur:
            cur.execute(
                """
                UPDATE ingestion_alerts
                SET resolved_at = %s,
                    resolved_by = %s,
                    payload = coalesce(payload, '{}'::jsonb) || jsonb_build_object('resolved_by', %s::text)
                WHERE id = %s AND resolved_at IS NULL
                RETURNING id
                """,
                (resolved_at, resolved_by, resolved_by, alert_id),
            )
            return cur.fetchone() is not None

    def list_open_alerts(self, limit: int, region_id: int | None = None) -> list[IngestionAlert]:
        with _cursor() as cur:
            if region_id is None:
                cur.execute(
                    """
                    SELECT * FROM ingestion_alerts WHERE resolved_at IS NULL
                    ORDER BY created_at DESC, id DESC LIMIT %s
                    """,
                    (limit,),
                )
            else:
                cur.execute(
                    """
                    SELECT * FROM ingestion_alerts WHERE resolved_at IS NULL AND region_id = %s
                    ORDER BY created_at DESC, id DESC LIMIT %s
                    """,
                    (region_id, limit),
                )
            return [_alert(r) for r in cur.fetchall()]

    # ------------------------------------------------------------------
    # Retry queue
    # ------------------------------------------------------------------

    _RETRY_INSERT = """
        INSERT INTO retry_queue
            (region_id, endpoint_id, status, priority, attempt_count, max_attempts,
             next_attempt_at, last_error, requested_by, created_at, updated_at)
        VALUES (%s, %s, 'pending', %s, %s, %s, %s, %s, %s, coalesce(%s, now()), coalesce(%s, now()))
        ON CONFLICT (region_id, (coalesce(endpoint_id, 0))) WHERE status = 'pending'
    """

    @staticmethod
    def _retry_params(entry: RetryQueueEntry) -> tuple:
        return (entry.region_id, entry.endpoint_id, entry.priority, entry.attempt_count, entry.max_attempts,
                entry.next_attempt_at, entry.last_error, entry.requested_by, entry.created_at, entry.updated_at)

    def enqueue_retry(self, entry: RetryQueueEntry) -> tuple[RetryQueueEntry, bool]:
        with _cursor() as cur:
            cur.execute(self._RETRY_INSERT + " DO NOTHING RETURNING *", self._retry_params(entry))
            row = cur.fetchone()
            if row:
                return RetryQueueEntry(**row), True
            cur.execute(
                """
                SELECT * FROM retry_queue
                WHERE region_id = %s AND coalesce(endpoint_id, 0) = coalesce(%s, 0) AND status = 'pending'
                """,
                (entry.region_id, entry.endpoint_id),
            )
            return RetryQueueEntry(**cur.fetchone()), False

    def expedite_retry(self, entry: RetryQueueEntry) -> RetryQueueEntry:
        with _cursor() as cur:
            cur.execute(
                self._RETRY_INSERT
                + """
                DO UPDATE SET
                    priority = LEAST(retry_queue.priority, EXCLUDED.priority),
                    next_attempt_at = LEAST(retry_queue.next_attempt_at, EXCLUDED.next_attempt_at),
                    requested_by = EXCLUDED.requested_by,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                self._retry_params(entry),
            )
            return RetryQueueEntry(**cur.fetchone())

    def claim_due_retries(self, now: datetime, limit: int, lease_seconds: int) -> list[RetryQueueEntry]:
        with _cursor() as cur:
            cur.execute(
                """
                UPDATE retry_queue SET next_attempt_at = %s, updated_at = %s
                WHERE id IN (
                    SELECT id FROM retry_queue
                    WHERE status = 'pending' AND next_attempt_at <= %s
                    ORDER BY priority, next_attempt_at, id
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                (now + timedelta(seconds=lease_seconds), now, now, limit),
            )
            rows = [RetryQueueEntry(**r) for r in cur.fetchall()]
        return sorted(rows, key=lambda e: (e.priority, e.id))

    def update_retry(self, entry: RetryQueueEntry) -> RetryQueueEntry:
        with _cursor() as cur:
            cur.execute(
                """
                UPDATE retry_queue
                SET status = %s, priority = %s, attempt_count = %s, next_attempt_at = %s,
                    last_error = %s, requested_by = %s, updated_at = coalesce(%s, now())
                WHERE id = %s
                RETURNING *
                """,
                (entry.status, entry.priority, entry.attempt_count, entry.next_attempt_at,
                 entry.last_error, entry.requested_by, entry.updated_at, entry.id),
            )
            return RetryQueueEntry(**cur.fetchone())

    def get_retry(self, entry_id: int) -> RetryQueueEntry | None:
        with _cursor() as cur:
            cur.execute("SELECT * FROM retry_queue WHERE id = %s", (entry_id,))
            return _one(RetryQueueEntry, cur.fetchone())

    def list_retries(self, status: str | None = None) -> list[RetryQueueEntry]:
        with _cursor() as cur:
            if status is None:
                cur.execute("SELECT * FROM retry_queue ORDER BY id")
            else:
                cur.execute("SELECT * FROM retry_queue WHERE status = %s ORDER BY id", (status,))
            return [RetryQueueEntry(**r) for r in cur.fetchall()]

    def pending_retries_for_endpoint(self, endpoint_id: int) -> list[RetryQueueEntry]:
        with _cursor() as cur:
            cur.execute(
                "SELECT * FROM retry_queue WHERE endpoint_id = %s AND status = 'pending' ORDER BY id",
                (endpoint_id,),
            )
            return [RetryQueueEntry(**r) for r in cur.fetchall()]
