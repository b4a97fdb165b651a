"""
Duty Pharmacy Registry — Region Staleness Monitor

A region is degraded when either
  (a) no primary endpoint has completed a successful run inside the
      rolling stale window (90 minutes by default), or
  (b) district coverage for the active duty date is below the configured
      fraction of expected coverage.

Degraded is an overlay: records are still served, flagged. The status
flips back to ok on its own once a qualifying run lands.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .accuracy import AccuracyAggregator
from .algorithms.duty_window import resolve
from .alerts import AlertManager
from .entities import AccuracyStat
from .helpers import (
    DUTY_TIMEZONE,
    MIN_COVERAGE_FRACTION,
    SEVERITY_WARNING,
    STALE_WINDOW_MINUTES,
    iso,
    minutes_between,
    utcnow,
)
from .source_registry import SourceRegistry

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_DEGRADED = "degraded"

ALERT_REGION_DEGRADED = "region_degraded"
MONITOR_RESOLVER = "system:staleness-monitor"


@dataclass
class RegionStatus:
    region_id: int
    status: str
    last_successful_update: datetime | None
    stale_minutes: float | None
    hint: str
    coverage: AccuracyStat
    recent_alert: dict[str, Any] | None = None

    @property
    def degraded(self) -> bool:
        return self.status == STATUS_DEGRADED

    def degraded_info(self) -> dict[str, Any] | None:
        """API overlay; None when the region is healthy."""
        if not self.degraded:
            return None
        return {
            "last_successful_update": iso(self.last_successful_update),
            "stale_minutes": self.stale_minutes,
            "recent_alert": self.recent_alert,
            "hint": self.hint,
        }


class StalenessMonitor:
    def __init__(
        self,
        store,
        registry: SourceRegistry,
        accuracy: AccuracyAggregator,
        alerts: AlertManager,
        stale_window_minutes: int = STALE_WINDOW_MINUTES,
        min_coverage_fraction: float = MIN_COVERAGE_FRACTION,
        tz: str = DUTY_TIMEZONE,
    ) -> None:
        self.store = store
        self.registry = registry
        self.accuracy = accuracy
        self.alerts = alerts
        self.stale_window_minutes = stale_window_minutes
        self.min_coverage_fraction = min_coverage_fraction
        self.tz = tz

    def region_status(self, region_id: int, now: datetime | None = None) -> RegionStatus:
        now = now or utcnow()

        # Primary endpoints define freshness; a region without one falls
        # back to all its enabled endpoints.
        endpoints = self.registry.primary_endpoints(region_id) or self.registry.enabled_endpoints(region_id)
        last_success = self.store.last_successful_run_at([info.endpoint.id for info in endpoints])
        stale_minutes = minutes_between(last_success, now) if last_success else None
        stale = last_success is None or stale_minutes > self.stale_window_minutes

        duty_date = resolve(now, self.tz).duty_date
        coverage = self.accuracy.coverage(region_id, duty_date)
        low_coverage = (
            coverage.expected_count > 0
            and coverage.actual_count / coverage.expected_count < self.min_coverage_fraction
        )

        hints = []
        if stale:
            if last_success is None:
                hints.append("No successful update from the primary source yet; showing last known data.")
            else:
                hints.append(
                    f"No successful update from the primary source for {int(stale_minutes)} minutes; "
                    "showing last known data."
                )
        if low_coverage:
            hints.append(
                f"Duty data covers {coverage.actual_count} of {coverage.expected_count} districts "
                f"for {duty_date.isoformat()}."
            )

        recent = self.alerts.recent_for_region(region_id, now=now)
        return RegionStatus(
            region_id=region_id,
            status=STATUS_DEGRADED if (stale or low_coverage) else STATUS_OK,
            last_successful_update=last_success,
            stale_minutes=stale_minutes,
            hint=" ".join(hints),
            coverage=coverage,
            recent_alert=(
                {
                    "alert_type": recent.alert_type,
                    "severity": recent.severity,
                    "message": recent.message,
                    "created_at": iso(recent.created_at),
                }
                if recent
                else None
            ),
        )

    def is_degraded(self, region_id: int, now: datetime | None = None) -> bool:
        return self.region_status(region_id, now).degraded

    def refresh(self, region_id: int, now: datetime | None = None) -> RegionStatus:
        """
        Recompute status and keep the region_degraded alert in step with it.

        ok → degraded raises the alert (deduplicated while it stays open);
        degraded → ok resolves it.
        """
        now = now or utcnow()
        status = self.region_status(region_id, now)

        if status.degraded:
            _, created = self.alerts.raise_alert(
                region_id,
                None,
                ALERT_REGION_DEGRADED,
                SEVERITY_WARNING,
                status.hint,
                payload={
                    "last_successful_update": iso(status.last_successful_update),
                    "stale_minutes": status.stale_minutes,
                    "coverage_pct": status.coverage.confidence_pct,
                },
                now=now,
            )
            if created:
                logger.warning("Region %s degraded: %s", region_id, status.hint)
        elif self.alerts.resolve_open(region_id, None, ALERT_REGION_DEGRADED, MONITOR_RESOLVER, now):
            logger.info("Region %s recovered", region_id)

        return status
