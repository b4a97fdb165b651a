"""
Duty Pharmacy Registry — Retry Scheduler

Failed and partial runs land here as pending retry entries, at most one
per (region, endpoint). A worker claims due entries, re-runs them and
either closes them, backs off exponentially, or abandons them once the
attempt ceiling is reached.

Admin recovery enqueues a high-priority region entry due immediately.
It skips the backoff wait but still counts toward the attempt ceiling.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta

from .alerts import AlertManager
from .entities import PRIORITY_HIGH, PRIORITY_NORMAL, RetryQueueEntry, SourceEndpoint
from .errors import RegionNotFound
from .helpers import (
    RETRY_BASE_DELAY_SECONDS,
    RETRY_LEASE_SECONDS,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY_SECONDS,
    SEVERITY_CRITICAL,
    utcnow,
)
from .source_registry import SourceRegistry

logger = logging.getLogger(__name__)

ALERT_RETRY_ABANDONED = "retry_abandoned"


class RetryScheduler:
    def __init__(
        self,
        store,
        registry: SourceRegistry,
        alerts: AlertManager,
        coordinator=None,
        base_delay_seconds: int = RETRY_BASE_DELAY_SECONDS,
        max_delay_seconds: int = RETRY_MAX_DELAY_SECONDS,
        max_attempts: int = RETRY_MAX_ATTEMPTS,
        lease_seconds: int = RETRY_LEASE_SECONDS,
        batch_size: int = 20,
    ) -> None:
        self.store = store
        self.registry = registry
        self.alerts = alerts
        self.coordinator = coordinator
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.max_attempts = max_attempts
        self.lease_seconds = lease_seconds
        self.batch_size = batch_size

    def backoff(self, attempt_count: int) -> timedelta:
        """base * 2**attempt_count, capped at max_delay."""
        return timedelta(seconds=min(self.base_delay_seconds * 2**attempt_count, self.max_delay_seconds))

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def schedule_failure(
        self,
        endpoint: SourceEndpoint,
        region_id: int,
        error: str,
        now: datetime | None = None,
    ) -> tuple[RetryQueueEntry, bool]:
        """Queue a retry for a failed endpoint unless one is already pending."""
        now = now or utcnow()
        entry, created = self.store.enqueue_retry(
            RetryQueueEntry(
                region_id=region_id,
                endpoint_id=endpoint.id,
                next_attempt_at=now + self.backoff(0),
                priority=PRIORITY_NORMAL,
                max_attempts=self.max_attempts,
                last_error=error,
                requested_by="system:ingestion",
                created_at=now,
                updated_at=now,
            )
        )
        if created:
            logger.info("Retry #%s queued for endpoint %d at %s", entry.id, endpoint.id, entry.next_attempt_at)
        return entry, created

    def trigger_recovery(self, region_slug: str, requested_by: str, now: datetime | None = None) -> RetryQueueEntry:
        """
        Queue an immediate high-priority re-run of every enabled endpoint in
        the region. An already pending region entry is bumped in place.
        """
        region = self.store.get_region_by_slug(region_slug)
        if region is None:
            raise RegionNotFound(f"region not found: {region_slug}")

        now = now or utcnow()
        entry = self.store.expedite_retry(
            RetryQueueEntry(
                region_id=region.id,
                endpoint_id=None,
                next_attempt_at=now,
                priority=PRIORITY_HIGH,
                max_attempts=self.max_attempts,
                requested_by=requested_by,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info("Recovery for region %s queued as #%s by %s", region.slug, entry.id, requested_by)
        return entry

    def mark_recovered(self, endpoint: SourceEndpoint, now: datetime | None = None) -> int:
        """Close pending entries of an endpoint that just ran successfully."""
        now = now or utcnow()
        closed = 0
        for entry in self.store.pending_retries_for_endpoint(endpoint.id):
            entry.status = "done"
            entry.updated_at = now
            self.store.update_retry(entry)
            closed += 1
        if closed:
            logger.info("Closed %d pending retries for endpoint %d", closed, endpoint.id)
        return closed

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _execute(self, entry: RetryQueueEntry, now: datetime) -> list:
        # Failures stay on this entry; the runs must not queue entries of their own.
        if entry.endpoint_id is None:
            return self.coordinator.run_region(entry.region_id, now=now, enqueue_retry=False)

        info = self.registry.endpoint(entry.endpoint_id)
        if info is None or not (info.endpoint.enabled and info.source.enabled):
            logger.info("Retry #%s: endpoint %s no longer enabled", entry.id, entry.endpoint_id)
            return []
        return [self.coordinator.run(info.endpoint, now=now, enqueue_retry=False)]

    def process_due(self, now: datetime | None = None) -> list[RetryQueueEntry]:
        """Claim and execute every due entry; returns the entries as updated."""
        now = now or utcnow()
        processed = []

        for entry in self.store.claim_due_retries(now, self.batch_size, self.lease_seconds):
            try:
                results = self._execute(entry, now)
                error = None
            except Exception as e:
                logger.exception("Retry #%s crashed", entry.id)
                results, error = None, str(e)

            if results is not None and results and all(r.skipped for r in results):
                # Region stopped: try again later without spending an attempt.
                entry.next_attempt_at = now + self.backoff(entry.attempt_count)
                entry.updated_at = now
                processed.append(self.store.update_retry(entry))
                continue

            entry.attempt_count += 1
            entry.updated_at = now
            failures = [r for r in results or [] if not r.skipped and r.status != "success"]

            if results is not None and not failures:
                entry.status = "done"
                logger.info("Retry #%s succeeded on attempt %d", entry.id, entry.attempt_count)
            else:
                entry.last_error = error or "; ".join(
                    r.run.error_message or r.status for r in failures if r.run is not None
                )
                if entry.attempt_count >= entry.max_attempts:
                    entry.status = "abandoned"
                    self._abandon(entry, now)
                else:
                    entry.next_attempt_at = now + self.backoff(entry.attempt_count)
                    logger.info(
                        "Retry #%s failed (attempt %d/%d), next at %s",
                        entry.id, entry.attempt_count, entry.max_attempts, entry.next_attempt_at,
                    )

            processed.append(self.store.update_retry(entry))
        return processed

    def _abandon(self, entry: RetryQueueEntry, now: datetime) -> None:
        self.alerts.raise_alert(
            entry.region_id,
            entry.endpoint_id,
            ALERT_RETRY_ABANDONED,
            SEVERITY_CRITICAL,
            f"Retry abandoned after {entry.attempt_count} attempts: {entry.last_error}",
            payload={"retry_id": entry.id, "attempt_count": entry.attempt_count},
            now=now,
        )

    def run_forever(self, stop_event: threading.Event, poll_seconds: float = 30.0) -> None:
        """Worker loop: process due entries until *stop_event* is set."""
        logger.info("Retry worker started (poll every %.0fs)", poll_seconds)
        while not stop_event.is_set():
            try:
                self.process_due()
            except Exception:
                logger.exception("Retry worker pass failed")
            stop_event.wait(poll_seconds)
        logger.info("Retry worker stopped")
