"""
Duty Pharmacy Registry — Reconciliation Engine

Recomputes the single canonical DutyRecord for a (pharmacy, duty_date)
from the current evidence of every source.

Per invocation:
    1. Merge incoming evidence over stored evidence, one row per source
       (latest fetched_at wins)
    2. Exclude evidence older than evidence_max_age_minutes; manual
       overrides never age out
    3. No fresh evidence → the stored record is left untouched
    4. Cluster, pick the winner and score it (algorithms.evidence_clustering)
    5. Persist record + evidence in one compare-and-swap store call

Writes for one key are serialised in-process by a keyed lock; the
version check covers writers in other processes.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from .algorithms.duty_window import window_for
from .algorithms.evidence_clustering import ReconcilerConfig, WeightedClaim, score_evidence
from .entities import DutyEvidence, DutyRecord, Pharmacy
from .errors import PersistenceError, StaleWriteError, ValidationError
from .helpers import DUTY_TIMEZONE, KeyedLock, utcnow

logger = logging.getLogger(__name__)


def merge_evidence(stored: list[DutyEvidence], incoming: list[DutyEvidence]) -> list[DutyEvidence]:
    """One row per source; a newer (or equally new) incoming row replaces the stored one."""
    merged: dict[int, DutyEvidence] = {e.source_id: e for e in stored}
    for ev in incoming:
        current = merged.get(ev.source_id)
        if current is None or ev.fetched_at >= current.fetched_at:
            merged[ev.source_id] = ev
    return sorted(merged.values(), key=lambda e: e.source_id)


class ReconciliationEngine:
    def __init__(
        self,
        store,
        staleness=None,
        config: ReconcilerConfig | None = None,
        tz: str = DUTY_TIMEZONE,
    ) -> None:
        self.store = store
        self.staleness = staleness
        self.config = config or ReconcilerConfig()
        self.tz = tz
        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # Evidence → claims
    # ------------------------------------------------------------------

    def _is_fresh(self, ev: DutyEvidence, now: datetime) -> bool:
        if ev.is_manual_override:
            return True
        return now - ev.fetched_at <= timedelta(minutes=self.config.evidence_max_age_minutes)

    def _claims(self, evidence: list[DutyEvidence]) -> list[WeightedClaim]:
        claims = []
        for ev in evidence:
            source = self.store.get_source(ev.source_id)
            if source is None:
                logger.warning("Evidence from unknown source %s ignored", ev.source_id)
                continue
            endpoint = self.store.get_endpoint(ev.endpoint_id) if ev.endpoint_id else None
            claims.append(
                WeightedClaim(
                    source_id=source.id,
                    source_name=source.name,
                    source_url=ev.source_url,
                    authority_weight=source.authority_weight,
                    fetched_at=ev.fetched_at,
                    payload=ev.extracted_payload,
                    is_primary=bool(endpoint and endpoint.is_primary),
                    is_manual=ev.is_manual_override,
                )
            )
        return claims

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    def reconcile(
        self,
        pharmacy_id: str,
        duty_date: date,
        evidence_set: list[DutyEvidence],
        now: datetime | None = None,
    ) -> DutyRecord | None:
        """
        Upsert the DutyRecord for (pharmacy_id, duty_date) from current evidence.

        Returns the stored record, the untouched existing record when no
        fresh evidence remains, or None when there was never a record.
        Raises PersistenceError after max_write_attempts lost races.
        """
        now = now or utcnow()
        key = (pharmacy_id, duty_date)

        with self._locks.hold(key):
            for attempt in range(1, self.config.max_write_attempts + 1):
                try:
                    return self._reconcile_once(pharmacy_id, duty_date, evidence_set, now)
                except StaleWriteError as e:
                    logger.info("Reconcile %s lost write race (attempt %d): %s", key, attempt, e)

        raise PersistenceError(
            f"could not persist duty record {key} after {self.config.max_write_attempts} attempts"
        )

    def _reconcile_once(
        self,
        pharmacy_id: str,
        duty_date: date,
        evidence_set: list[DutyEvidence],
        now: datetime,
    ) -> DutyRecord | None:
        pharmacy = self.store.get_pharmacy(pharmacy_id)
        if pharmacy is None:
            raise ValidationError(f"unknown pharmacy {pharmacy_id}")

        existing = self.store.get_duty_record(pharmacy_id, duty_date)
        merged = merge_evidence(self.store.list_evidence(pharmacy_id, duty_date), evidence_set)

        fresh = [ev for ev in merged if self._is_fresh(ev, now)]
        result = score_evidence(self._claims(fresh), self.config)
        if result is None:
            logger.info(
                "No fresh evidence for pharmacy %s on %s; record left as is",
                pharmacy_id, duty_date,
            )
            return existing

        if result.conflict:
            logger.info(
                "Evidence conflict for pharmacy %s on %s: %d clusters, winner confidence %d",
                pharmacy_id, duty_date, len(result.clusters), result.confidence_score,
            )

        region_degraded = bool(self.staleness and self.staleness.is_degraded(pharmacy.region_id, now))
        winner = result.winner.canonical_fields()
        representative = result.winner.representative()
        window = window_for(duty_date, self.tz)

        record = DutyRecord(
            pharmacy_id=pharmacy_id,
            region_id=pharmacy.region_id,
            district_id=pharmacy.district_id,
            duty_date=duty_date,
            duty_start=window.window_start,
            duty_end=window.window_end,
            confidence_score=result.confidence_score,
            verification_source_count=result.verification_source_count,
            is_degraded=region_degraded or result.confidence_score < self.config.confidence_floor,
            source_name=representative.source_name,
            source_url=representative.source_url,
            name=winner["name"] or pharmacy.canonical_name,
            address=winner["address"] or "",
            phone=winner["phone"] or "",
            duty_hours=winner["duty_hours"] or "",
            cluster_count=len(result.clusters),
            version=existing.version if existing else 0,
            updated_at=now,
            id=existing.id if existing else None,
        )

        saved = self.store.save_reconciliation(
            record,
            merged,
            expected_version=existing.version if existing else 0,
        )
        self._update_pharmacy(pharmacy, winner, now)
        logger.debug(
            "Reconciled %s on %s: confidence=%d sources=%d v%d",
            pharmacy_id, duty_date, saved.confidence_score, saved.verification_source_count, saved.version,
        )
        return saved

    def _update_pharmacy(self, pharmacy: Pharmacy, winner: dict, now: datetime) -> None:
        changed = False
        for attr, field_name in (("canonical_name", "name"), ("address", "address"), ("phone", "phone")):
            value = (winner.get(field_name) or "").strip()
            if value and getattr(pharmacy, attr) != value:
                setattr(pharmacy, attr, value)
                changed = True
        if changed:
            pharmacy.updated_at = now
            self.store.update_pharmacy(pharmacy)

    def restamp_degraded(self, region_id: int, duty_date: date, region_degraded: bool) -> int:
        """
        Bring is_degraded on the region's records for *duty_date* in line
        with the current region status. Returns the number of rows changed.

        Records reconciled mid-run saw the status from before the run was
        recorded; the coordinator calls this once the run is in.
        """
        changed = self.store.set_degraded_flags(
            region_id, duty_date, region_degraded, self.config.confidence_floor
        )
        if changed:
            logger.info(
                "Region %s on %s: is_degraded updated on %d records (region degraded=%s)",
                region_id, duty_date, changed, region_degraded,
            )
        return changed
