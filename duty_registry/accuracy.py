"""
Duty Pharmacy Registry — Coverage Accuracy

Expected-vs-actual district coverage per region and duty date. This is a
region coverage metric; it never feeds a record's confidence_score.
"""

from __future__ import annotations

import logging
from datetime import date, datetime

from .algorithms.duty_window import resolve
from .algorithms.evidence_clustering import round_half_up
from .entities import AccuracyStat
from .helpers import DUTY_TIMEZONE, utcnow

logger = logging.getLogger(__name__)


class AccuracyAggregator:
    def __init__(self, store, tz: str = DUTY_TIMEZONE) -> None:
        self.store = store
        self.tz = tz

    def coverage(self, region_id: int, duty_date: date) -> AccuracyStat:
        """
        expected = districts configured under the region
        actual   = distinct districts with at least one DutyRecord that date
        confidence_pct = round(actual / expected * 100), 0 when expected is 0
        """
        expected, actual, last_update = self.store.coverage_counts(region_id, duty_date)
        pct = round_half_up(actual / expected * 100) if expected else 0
        return AccuracyStat(
            region_id=region_id,
            duty_date=duty_date,
            expected_count=expected,
            actual_count=actual,
            confidence_pct=pct,
            last_update=last_update,
        )

    def overview(self, duty_date: date | None = None, now: datetime | None = None) -> list[dict]:
        """Coverage of every region for one duty date (the active one by default)."""
        if duty_date is None:
            duty_date = resolve(now or utcnow(), self.tz).duty_date

        rows = []
        for region in self.store.list_regions():
            stat = self.coverage(region.id, duty_date)
            row = stat.to_dict()
            row["region"] = region.slug
            row["region_name"] = region.name
            rows.append(row)
        return rows
