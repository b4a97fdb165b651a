"""
Duty Pharmacy Registry — Ingestion Run Coordinator

Supervises one fetch → parse → validate → resolve → reconcile attempt per
source endpoint and records its outcome.

Outcome classification:
    failed   — fetch error, timeout, unusable structure, a roster dated
               for another day, or every record failed to persist
    partial  — records arrived but with parse warnings, rows dated for
               another day, per-record persistence errors, or fewer
               accepted than expected
    success  — otherwise; rows dropped by validation are counted on the
               run (records_rejected) without downgrading it

Every attempt appends exactly one IngestionRun. Failed and partial runs
enqueue a retry and raise an alert; a successful run closes pending
retries for the endpoint. Existing duty records are never blanked by a
failed run.

After the run is recorded the region status is recomputed and the
degraded flag of the region's records for the duty date is brought in
line with it.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from .adapters import HttpFetcher, ParseResult, ParserRegistry, default_parsers
from .algorithms.duty_window import accepted_source_dates, resolve
from .algorithms.name_similarity import normalize_name
from .alerts import AlertManager
from .entities import DutyEvidence, IngestionRun, RawExtractedRecord, SourceEndpoint
from .errors import (
    DutyRegistryError,
    FetchError,
    FetchTimeout,
    OutdatedSourceDate,
    ParseError,
    ValidationError,
)
from .helpers import (
    DUTY_TIMEZONE,
    FETCH_TIMEOUT_SECONDS,
    MAX_CONCURRENT_PER_REGION,
    MAX_CONCURRENT_RUNS,
    PARSER_ERROR_MIN_RUNS,
    PARSER_ERROR_THRESHOLD_PCT,
    SEVERITY_CRITICAL,
    SEVERITY_LOW,
    SEVERITY_WARNING,
    STRICT_SOURCE_DATE,
    iso,
    utcnow,
)
from .identity import MIN_NAME_LENGTH, IdentityResolver
from .reconciliation import ReconciliationEngine
from .source_registry import EndpointInfo, SourceRegistry

logger = logging.getLogger(__name__)

# Alert types raised by the coordinator
ALERT_FETCH_ERROR = "fetch_error"
ALERT_TIMEOUT = "timeout"
ALERT_PARSE_ERROR = "parse_error"
ALERT_PARTIAL_DATA = "partial_data"
ALERT_PERSISTENCE_ERROR = "persistence_error"
ALERT_PARSER_ERROR_THRESHOLD = "parser_error_threshold"
ALERT_STALE_SOURCE_DATE = "stale_source_date"

PARSER_ERROR_WINDOW = timedelta(hours=24)
_PARSER_ERROR_TYPES = (ALERT_PARSE_ERROR, ALERT_PARTIAL_DATA)


@dataclass
class IngestionRunResult:
    endpoint_id: int
    region_id: int
    duty_date: date
    run: IngestionRun | None = None
    error_type: str | None = None
    records_rejected: int = 0
    records_stale: int = 0
    warnings: list[str] = field(default_factory=list)
    pharmacy_ids: list[str] = field(default_factory=list)
    retry_enqueued: bool = False
    alert_raised: bool = False
    skipped: bool = False

    @property
    def status(self) -> str:
        return self.run.status if self.run else "skipped"

    def to_dict(self) -> dict[str, Any]:
        return {
            "endpoint_id": self.endpoint_id,
            "region_id": self.region_id,
            "duty_date": self.duty_date.isoformat(),
            "status": self.status,
            "error_type": self.error_type,
            "error_message": self.run.error_message if self.run else None,
            "records_found": self.run.records_found if self.run else 0,
            "records_accepted": self.run.records_accepted if self.run else 0,
            "records_rejected": self.records_rejected,
            "records_stale": self.records_stale,
            "warnings": self.warnings,
            "retry_enqueued": self.retry_enqueued,
        }


def validate_record(raw: RawExtractedRecord) -> RawExtractedRecord:
    """Raise ValidationError when the record cannot identify a pharmacy."""
    if not raw.name or len(normalize_name(raw.name)) < MIN_NAME_LENGTH:
        raise ValidationError(f"record without a usable name: {raw.name!r}")
    if raw.fetched_at is None or raw.fetched_at.tzinfo is None:
        raise ValidationError(f"record {raw.name!r} has no timezone-aware fetched_at")
    return raw


class IngestionRunCoordinator:
    def __init__(
        self,
        store,
        registry: SourceRegistry,
        identity: IdentityResolver,
        reconciler: ReconciliationEngine,
        alerts: AlertManager,
        staleness=None,
        retry=None,
        fetcher: HttpFetcher | None = None,
        parsers: ParserRegistry | None = None,
        fetch_timeout_seconds: float = FETCH_TIMEOUT_SECONDS,
        max_concurrent_runs: int = MAX_CONCURRENT_RUNS,
        max_concurrent_per_region: int = MAX_CONCURRENT_PER_REGION,
        parser_error_threshold_pct: float = PARSER_ERROR_THRESHOLD_PCT,
        parser_error_min_runs: int = PARSER_ERROR_MIN_RUNS,
        strict_source_date: bool = STRICT_SOURCE_DATE,
        tz: str = DUTY_TIMEZONE,
    ) -> None:
        self.store = store
        self.registry = registry
        self.identity = identity
        self.reconciler = reconciler
        self.alerts = alerts
        self.staleness = staleness
        self.retry = retry
        self.fetcher = fetcher or HttpFetcher()
        self.parsers = parsers or default_parsers()
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.max_concurrent_runs = max_concurrent_runs
        self.max_concurrent_per_region = max_concurrent_per_region
        self.parser_error_threshold_pct = parser_error_threshold_pct
        self.parser_error_min_runs = parser_error_min_runs
        self.strict_source_date = strict_source_date
        self.tz = tz

        # Abandoned fetches hold a worker until their socket times out.
        self._fetch_pool = ThreadPoolExecutor(max_workers=max_concurrent_runs * 2, thread_name_prefix="fetch")
        self._global_slots = threading.BoundedSemaphore(max_concurrent_runs)
        self._region_slots: dict[int, threading.BoundedSemaphore] = {}
        self._slots_lock = threading.Lock()
        self._stopped: set[int] = set()

    # ------------------------------------------------------------------
    # Stop control
    # ------------------------------------------------------------------

    def request_stop(self, region_id: int) -> None:
        """In-flight runs for the region finish; new ones are skipped."""
        self._stopped.add(region_id)
        logger.info("Ingestion stop requested for region %s", region_id)

    def clear_stop(self, region_id: int) -> None:
        self._stopped.discard(region_id)

    def is_stopped(self, region_id: int) -> bool:
        return region_id in self._stopped

    # ------------------------------------------------------------------
    # One run
    # ------------------------------------------------------------------

    def _fetch_and_parse(self, info: EndpointInfo, fetched_at: datetime) -> tuple[int, ParseResult]:
        strategy = self.parsers.get(info.endpoint.parser_key)
        content = self.fetcher.fetch(info.endpoint.endpoint_url, timeout=self.fetch_timeout_seconds)
        parsed = strategy.parse(content, fetched_at)
        self._check_source_date(parsed, fetched_at)
        return content.http_status, parsed

    def _check_source_date(self, parsed: ParseResult, now: datetime) -> None:
        """
        Raise OutdatedSourceDate when the roster carries a date that is not
        current, or (strict mode) no date at all.

        Rows with their own date are checked one by one in _apply_records.
        """
        if parsed.source_date is not None:
            accepted = accepted_source_dates(now, self.tz)
            if parsed.source_date not in accepted:
                raise OutdatedSourceDate(
                    f"roster dated {parsed.source_date.isoformat()}, expected "
                    + " or ".join(sorted(d.isoformat() for d in accepted)),
                    source_date=parsed.source_date,
                )
            return
        if self.strict_source_date and any(r.duty_date is None for r in parsed.records):
            raise OutdatedSourceDate("roster shows no date")

    def _fetch_with_timeout(self, info: EndpointInfo, fetched_at: datetime) -> tuple[int, ParseResult]:
        future = self._fetch_pool.submit(self._fetch_and_parse, info, fetched_at)
        try:
            return future.result(timeout=self.fetch_timeout_seconds)
        except FutureTimeout as e:
            future.cancel()
            raise FetchTimeout(
                f"fetch+parse exceeded {self.fetch_timeout_seconds}s for {info.endpoint.endpoint_url}"
            ) from e

    def run(
        self,
        endpoint: SourceEndpoint,
        now: datetime | None = None,
        enqueue_retry: bool = True,
    ) -> IngestionRunResult:
        """
        Execute one ingestion attempt for *endpoint* and record it.

        With enqueue_retry=False a failure is not queued for retry; the
        retry worker passes it when the run already belongs to a queue entry.
        """
        info = self.registry.endpoint(endpoint.id)
        if info is None:
            raise ValidationError(f"unknown endpoint {endpoint.id}")

        started = now or utcnow()
        region_id = info.region_id
        result = IngestionRunResult(
            endpoint_id=endpoint.id,
            region_id=region_id,
            duty_date=resolve(started, self.tz).duty_date,
        )

        if self.is_stopped(region_id):
            logger.info("Region %s stopped; skipping endpoint %d", region_id, endpoint.id)
            result.skipped = True
            return result

        http_status = None
        error_message = None
        found = accepted = persist_errors = 0

        try:
            http_status, parsed = self._fetch_with_timeout(info, started)
        except FetchTimeout as e:
            result.error_type, error_message = ALERT_TIMEOUT, str(e)
        except FetchError as e:
            result.error_type, error_message, http_status = ALERT_FETCH_ERROR, str(e), e.http_status
        except OutdatedSourceDate as e:
            result.error_type, error_message = ALERT_STALE_SOURCE_DATE, str(e)
        except ParseError as e:
            result.error_type, error_message = ALERT_PARSE_ERROR, str(e)
        else:
            found = len(parsed.records)
            result.warnings = list(parsed.warnings)
            accepted, persist_errors = self._apply_records(info, parsed.records, result, started)

        status = self._classify(info, result, found, accepted, persist_errors)
        if status != "success" and error_message is None:
            error_message = self._partial_message(info, result, found, accepted, persist_errors)

        result.run = self.store.insert_run(
            IngestionRun(
                endpoint_id=endpoint.id,
                region_id=region_id,
                status=status,
                started_at=started,
                finished_at=now or utcnow(),
                http_status=http_status,
                error_message=f"{result.error_type}: {error_message}" if error_message else None,
                records_found=found,
                records_accepted=accepted,
                records_rejected=result.records_rejected,
            )
        )
        logger.info(
            "Run endpoint=%d region=%s status=%s found=%d accepted=%d rejected=%d stale=%d",
            endpoint.id, region_id, status, found, accepted, result.records_rejected, result.records_stale,
        )

        if status == "success":
            if self.retry is not None:
                self.retry.mark_recovered(info.endpoint, now=started)
        else:
            self._on_failure(info, result, error_message, started, enqueue_retry)

        self._check_parser_error_rate(info, started)
        if self.staleness is not None:
            region_status = self.staleness.refresh(region_id, now=started)
            self.reconciler.restamp_degraded(region_id, result.duty_date, region_status.degraded)
        return result

    def _apply_records(
        self,
        info: EndpointInfo,
        records: list[RawExtractedRecord],
        result: IngestionRunResult,
        now: datetime,
    ) -> tuple[int, int]:
        accepted = persist_errors = 0
        current_dates = accepted_source_dates(now, self.tz)
        for raw in records:
            if raw.duty_date is not None and raw.duty_date not in current_dates:
                result.records_stale += 1
                logger.debug(
                    "Skipped %r from endpoint %d: dated %s", raw.name, info.endpoint.id, raw.duty_date
                )
                continue
            try:
                validate_record(raw)
                pharmacy_id = self.identity.resolve(info.region_id, raw, now=now)
                evidence = DutyEvidence(
                    source_id=info.source.id,
                    endpoint_id=info.endpoint.id,
                    source_url=info.endpoint.endpoint_url,
                    extracted_payload=raw.to_payload(),
                    fetched_at=raw.fetched_at,
                )
                self.reconciler.reconcile(pharmacy_id, result.duty_date, [evidence], now=now)
            except ValidationError as e:
                result.records_rejected += 1
                logger.debug("Dropped record from endpoint %d: %s", info.endpoint.id, e)
            except DutyRegistryError as e:
                persist_errors += 1
                logger.warning("Record %r from endpoint %d not stored: %s", raw.name, info.endpoint.id, e)
            else:
                accepted += 1
                result.pharmacy_ids.append(pharmacy_id)
        return accepted, persist_errors

    def _classify(
        self,
        info: EndpointInfo,
        result: IngestionRunResult,
        found: int,
        accepted: int,
        persist_errors: int,
    ) -> str:
        if result.error_type is not None:
            return "failed"
        if persist_errors and not accepted:
            result.error_type = ALERT_PERSISTENCE_ERROR
            return "failed"
        if result.records_stale:
            result.error_type = ALERT_STALE_SOURCE_DATE
            return "partial" if accepted else "failed"
        # Rows dropped by validation alone do not downgrade a run that
        # still delivered the expected minimum.
        if result.warnings or persist_errors or accepted < max(info.endpoint.expected_min_records, 1):
            result.error_type = ALERT_PARTIAL_DATA
            return "partial"
        return "success"

    @staticmethod
    def _partial_message(
        info: EndpointInfo,
        result: IngestionRunResult,
        found: int,
        accepted: int,
        persist_errors: int,
    ) -> str:
        parts = [f"{accepted} of {found} records accepted"]
        if info.endpoint.expected_min_records:
            parts.append(f"expected at least {info.endpoint.expected_min_records}")
        if result.records_rejected:
            parts.append(f"{result.records_rejected} rejected")
        if result.records_stale:
            parts.append(f"{result.records_stale} dated for another day")
        if persist_errors:
            parts.append(f"{persist_errors} not stored")
        if result.warnings:
            parts.append(f"{len(result.warnings)} parse warnings")
        return ", ".join(parts)

    def _on_failure(
        self,
        info: EndpointInfo,
        result: IngestionRunResult,
        message: str,
        now: datetime,
        enqueue_retry: bool = True,
    ) -> None:
        if self.retry is not None and enqueue_retry:
            _, result.retry_enqueued = self.retry.schedule_failure(
                info.endpoint, info.region_id, f"{result.error_type}: {message}", now=now
            )

        if result.error_type in (ALERT_FETCH_ERROR, ALERT_TIMEOUT, ALERT_STALE_SOURCE_DATE):
            severity = SEVERITY_CRITICAL if info.endpoint.is_primary else SEVERITY_WARNING
        elif result.error_type == ALERT_PARTIAL_DATA:
            severity = SEVERITY_LOW
        else:
            severity = SEVERITY_WARNING

        _, result.alert_raised = self.alerts.raise_alert(
            info.region_id,
            info.endpoint.id,
            result.error_type,
            severity,
            f"{info.source.name}: {message}",
            payload={
                "endpoint_url": info.endpoint.endpoint_url,
                "is_primary": info.endpoint.is_primary,
                "run_id": result.run.id if result.run else None,
                "warnings": result.warnings[:10],
            },
            now=now,
        )

    def _check_parser_error_rate(self, info: EndpointInfo, now: datetime) -> None:
        runs = self.store.list_runs(endpoint_id=info.endpoint.id, since=now - PARSER_ERROR_WINDOW)
        if len(runs) < self.parser_error_min_runs:
            return
        errors = sum(
            1
            for r in runs
            if r.error_message and r.error_message.split(":", 1)[0] in _PARSER_ERROR_TYPES
        )
        pct = errors / len(runs) * 100
        if pct < self.parser_error_threshold_pct:
            return
        self.alerts.raise_alert(
            info.region_id,
            info.endpoint.id,
            ALERT_PARSER_ERROR_THRESHOLD,
            SEVERITY_CRITICAL,
            f"{info.source.name}: parser errors in {errors} of {len(runs)} runs ({pct:.0f}%) over 24h",
            payload={"error_runs": errors, "total_runs": len(runs), "error_pct": round(pct, 1)},
            now=now,
        )

    # ------------------------------------------------------------------
    # Many runs
    # ------------------------------------------------------------------

    def _region_slot(self, region_id: int) -> threading.BoundedSemaphore:
        with self._slots_lock:
            slot = self._region_slots.get(region_id)
            if slot is None:
                slot = threading.BoundedSemaphore(self.max_concurrent_per_region)
                self._region_slots[region_id] = slot
            return slot

    def _bounded_run(self, info: EndpointInfo, now: datetime | None, enqueue_retry: bool) -> IngestionRunResult:
        with self._global_slots, self._region_slot(info.region_id):
            return self.run(info.endpoint, now=now, enqueue_retry=enqueue_retry)

    def run_many(
        self,
        endpoints: list[EndpointInfo],
        now: datetime | None = None,
        enqueue_retry: bool = True,
    ) -> list[IngestionRunResult]:
        """
        Run several endpoints in parallel under the global and per-region
        bounds. A failure in one endpoint never affects the others.
        """
        results: list[IngestionRunResult] = []
        with ThreadPoolExecutor(max_workers=self.max_concurrent_runs, thread_name_prefix="ingest") as pool:
            futures = {pool.submit(self._bounded_run, info, now, enqueue_retry): info for info in endpoints}
            for future, info in futures.items():
                try:
                    results.append(future.result())
                except Exception:
                    logger.exception("Ingestion run for endpoint %d crashed", info.endpoint.id)
        return results

    def run_region(
        self,
        region_id: int,
        now: datetime | None = None,
        enqueue_retry: bool = True,
    ) -> list[IngestionRunResult]:
        return self.run_many(self.registry.enabled_endpoints(region_id), now=now, enqueue_retry=enqueue_retry)

    def run_all(self, now: datetime | None = None) -> list[IngestionRunResult]:
        endpoints = []
        for region in self.store.list_regions():
            endpoints.extend(self.registry.enabled_endpoints(region.id))
        return self.run_many(endpoints, now=now)

    # ------------------------------------------------------------------
    # Admin overview
    # ------------------------------------------------------------------

    def overview(self, now: datetime | None = None) -> list[dict[str, Any]]:
        """Per region: run counts by status over 24h, last run, open alerts."""
        now = now or utcnow()
        rows = []
        for region in self.store.list_regions():
            runs = self.store.list_runs(region_id=region.id, since=now - timedelta(hours=24))
            counts = Counter(r.status for r in runs)
            last = runs[0] if runs else None
            rows.append(
                {
                    "region": region.slug,
                    "runs_24h": len(runs),
                    "success_24h": counts.get("success", 0),
                    "partial_24h": counts.get("partial", 0),
                    "failed_24h": counts.get("failed", 0),
                    "last_run_at": iso(last.started_at) if last else None,
                    "last_run_status": last.status if last else None,
                    "open_alerts": len(self.alerts.list_open(region_id=region.id)),
                    "stopped": self.is_stopped(region.id),
                }
            )
        return rows

    def shutdown(self) -> None:
        self._fetch_pool.shutdown(wait=False, cancel_futures=True)
