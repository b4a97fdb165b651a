"""
Duty Pharmacy Registry — Manual Override

Applies an admin correction as evidence from the region's "Manual
Override" source. Reconciliation treats that evidence as authoritative:
its cluster always wins and the record's confidence is pinned.

Repeating an override for the same pharmacy and duty date replaces the
previous manual evidence; the duty record is updated in place.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from .algorithms.duty_window import canonical_duty_date
from .entities import MANUAL_SOURCE_URL, District, DutyEvidence, DutyRecord, Pharmacy, RawExtractedRecord, Region
from .errors import RegionNotFound
from .helpers import DUTY_TIMEZONE, utcnow
from .identity import IdentityResolver
from .reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)

_CORRECTABLE = ("name", "address", "phone", "duty_hours")


@dataclass
class OverrideResult:
    record: DutyRecord
    pharmacy: Pharmacy
    region: Region
    district: District

    def to_dict(self, updated_by: str) -> dict[str, Any]:
        return {
            "status": "ok",
            "pharmacy_id": self.pharmacy.id,
            "region": self.region.slug,
            "district": self.district.slug,
            "duty_date": self.record.duty_date.isoformat(),
            "updated_by": updated_by,
        }


class ManualOverrideHandler:
    def __init__(
        self,
        store,
        identity: IdentityResolver,
        reconciler: ReconciliationEngine,
        tz: str = DUTY_TIMEZONE,
    ) -> None:
        self.store = store
        self.identity = identity
        self.reconciler = reconciler
        self.tz = tz

    def apply(
        self,
        region_slug: str,
        district: str,
        identity_fields: dict[str, Any],
        duty_date: str | date | None,
        corrected_fields: dict[str, Any],
        updated_by: str,
        note: str | None = None,
        now: datetime | None = None,
    ) -> OverrideResult:
        """
        Resolve (or create) the pharmacy from *identity_fields*, write the
        manual evidence row and reconcile.

        *duty_date* is canonicalised through the duty-window resolver;
        None means the duty date active at *now*.
        """
        now = now or utcnow()
        region = self.store.get_region_by_slug(region_slug)
        if region is None:
            raise RegionNotFound(f"region not found: {region_slug}")

        resolved_date = canonical_duty_date(duty_date, now, self.tz)
        target_district = self.identity.resolve_district(region.id, district)

        raw = RawExtractedRecord(
            name=str(identity_fields.get("name") or "").strip(),
            address=str(identity_fields.get("address") or ""),
            phone=str(identity_fields.get("phone") or ""),
            district=target_district.slug,
            fetched_at=now,
        )
        pharmacy, _ = self.identity.match(region.id, raw, now=now)

        source = self.store.upsert_manual_source(region.id)
        payload: dict[str, Any] = {
            field: corrected_fields[field]
            for field in _CORRECTABLE
            if corrected_fields.get(field) not in (None, "")
        }
        payload.setdefault("name", corrected_fields.get("name") or pharmacy.canonical_name)
        payload.update(
            {
                "manual_override": True,
                "updated_by": updated_by,
                "note": note,
                "timestamp": now.isoformat(),
            }
        )

        evidence = DutyEvidence(
            source_id=source.id,
            source_url=MANUAL_SOURCE_URL,
            extracted_payload=payload,
            fetched_at=now,
        )
        record = self.reconciler.reconcile(pharmacy.id, resolved_date, [evidence], now=now)
        logger.info(
            "Manual override by %s: pharmacy %s on %s (%s)",
            updated_by, pharmacy.id, resolved_date, region.slug,
        )
        return OverrideResult(
            record=record,
            pharmacy=self.store.get_pharmacy(pharmacy.id),
            region=region,
            district=target_district,
        )
