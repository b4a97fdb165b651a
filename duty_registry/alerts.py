"""
Duty Pharmacy Registry — Alert Manager

Raises, deduplicates and resolves operational alerts. At most one
unresolved alert exists per (region, endpoint, alert_type); the
check-then-insert is a single store call so concurrent failures cannot
create duplicates.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from .entities import SEVERITIES, IngestionAlert
from .helpers import OPEN_ALERTS_LIMIT, utcnow

logger = logging.getLogger(__name__)


class AlertManager:
    def __init__(self, store) -> None:
        self.store = store

    def raise_alert(
        self,
        region_id: int,
        endpoint_id: int | None,
        alert_type: str,
        severity: str,
        message: str,
        payload: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> tuple[IngestionAlert, bool]:
        """
        Insert an alert unless an unresolved one with the same key exists.

        Returns (alert, created). When created is False the existing open
        alert is returned unchanged.
        """
        if severity not in SEVERITIES:
            raise ValueError(f"unknown severity: {severity}")

        alert = IngestionAlert(
            region_id=region_id,
            source_endpoint_id=endpoint_id,
            alert_type=alert_type,
            severity=severity,
            message=message,
            payload=dict(payload or {}),
            created_at=now or utcnow(),
        )
        stored, created = self.store.insert_alert_if_absent(alert)
        if created:
            log = logger.error if severity == "critical" else logger.warning
            log(
                "Alert %s [%s] region=%s endpoint=%s: %s",
                alert_type, severity, region_id, endpoint_id, message,
            )
        else:
            logger.debug("Alert %s already open as #%s", alert_type, stored.id)
        return stored, created

    def resolve(self, alert_id: int, resolved_by: str, now: datetime | None = None) -> dict[str, Any]:
        """
        Close an open alert.

        Resolving an unknown or already-resolved alert is a no-op that
        reports resolved=False.
        """
        resolved = self.store.resolve_alert(alert_id, resolved_by, now or utcnow())
        if resolved:
            logger.info("Alert #%s resolved by %s", alert_id, resolved_by)
        return {"resolved": resolved, "id": alert_id}

    def resolve_open(
        self,
        region_id: int,
        endpoint_id: int | None,
        alert_type: str,
        resolved_by: str,
        now: datetime | None = None,
    ) -> bool:
        """Resolve the open alert with this key, if any."""
        alert = self.store.find_open_alert(region_id, endpoint_id, alert_type)
        if alert is None:
            return False
        return self.resolve(alert.id, resolved_by, now)["resolved"]

    def list_open(self, limit: int = OPEN_ALERTS_LIMIT, region_id: int | None = None) -> list[IngestionAlert]:
        """Open alerts, most recent first, capped at *limit*."""
        return self.store.list_open_alerts(limit=max(1, min(limit, OPEN_ALERTS_LIMIT)), region_id=region_id)

    def recent_for_region(
        self,
        region_id: int,
        now: datetime | None = None,
        within: timedelta = timedelta(hours=24),
    ) -> IngestionAlert | None:
        """Most recent open alert for the region raised inside *within*."""
        since = (now or utcnow()) - within
        for alert in self.store.list_open_alerts(limit=1, region_id=region_id):
            if alert.created_at >= since:
                return alert
        return None
