"""
Duty Pharmacy Registry — Identity Resolution

Maps a raw extracted record to a canonical pharmacy inside one region.

Matching is scoped to the record's district:
    1. Exact normalized-name match
    2. Bounded fuzzy pass: edit distance ≤ max_edit_distance AND composite
       name similarity ≥ fuzzy_threshold, skipping candidates whose known
       coordinates are farther apart than geo_reject_km
    3. Otherwise a new canonical pharmacy is created

Several equally close fuzzy candidates are never guessed between: the
record gets its own pharmacy and a low-severity alert is raised.
"""

from __future__ import annotations

import logging
from datetime import datetime

from .algorithms.evidence_clustering import ReconcilerConfig
from .algorithms.geo_proximity import too_far_apart
from .algorithms.name_similarity import compute_name_similarity, fold_text, normalize_name
from .alerts import AlertManager
from .entities import District, Pharmacy, RawExtractedRecord
from .errors import IdentityAmbiguity, ValidationError
from .helpers import SEVERITY_LOW, KeyedLock, slugify, utcnow

logger = logging.getLogger(__name__)

ALERT_IDENTITY_AMBIGUITY = "identity_ambiguity"
MIN_NAME_LENGTH = 3
_FALLBACK_DISTRICT = "merkez"


class IdentityResolver:
    def __init__(self, store, alerts: AlertManager, config: ReconcilerConfig | None = None) -> None:
        self.store = store
        self.alerts = alerts
        self.config = config or ReconcilerConfig()
        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # Districts
    # ------------------------------------------------------------------

    def resolve_district(self, region_id: int, district: str | None) -> District:
        """
        Pick the district a record belongs to.

        Order: slug → normalized name → partial match → "Merkez" → first
        district of the region.
        """
        districts = self.store.list_districts(region_id)
        if not districts:
            raise ValidationError(f"region {region_id} has no districts configured")

        wanted = fold_text(district)
        if wanted:
            wanted_slug = slugify(district)
            for d in districts:
                if d.slug == wanted_slug:
                    return d
            for d in districts:
                if fold_text(d.name) == wanted:
                    return d
            for d in districts:
                name = fold_text(d.name)
                if wanted in name or name in wanted:
                    return d

        for d in districts:
            if d.slug == _FALLBACK_DISTRICT:
                return d
        return districts[0]

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def _fuzzy_match(
        self,
        raw: RawExtractedRecord,
        normalized: str,
        candidates: list[Pharmacy],
    ) -> Pharmacy | None:
        # normalized_name is fixed at creation; canonical_name follows the
        # winning evidence and may drift.
        cfg = self.config
        scored = []
        for p in candidates:
            sim = compute_name_similarity(normalized, p.normalized_name)
            if sim["distance"] > cfg.max_edit_distance or sim["composite"] < cfg.fuzzy_threshold:
                continue
            if too_far_apart(raw.lat, raw.lng, p.lat, p.lng, cfg.geo_reject_km):
                logger.debug("Fuzzy candidate %s rejected on distance", p.id)
                continue
            scored.append((sim["composite"], -sim["distance"], p))

        if not scored:
            return None

        scored.sort(key=lambda s: (s[0], s[1]), reverse=True)
        best = scored[0][:2]
        tied = [p for composite, neg_dist, p in scored if (composite, neg_dist) == best]
        if len(tied) > 1:
            raise IdentityAmbiguity(
                f"{len(tied)} pharmacies equally close to {raw.name!r}",
                candidate_ids=sorted(p.id for p in tied),
            )
        return tied[0]

    def match(
        self,
        region_id: int,
        raw: RawExtractedRecord,
        now: datetime | None = None,
    ) -> tuple[Pharmacy, bool]:
        """Return (pharmacy, created) for *raw*; creation is serialised per region."""
        normalized = normalize_name(raw.name)
        if len(normalized) < MIN_NAME_LENGTH:
            raise ValidationError(f"record name too short to identify: {raw.name!r}")

        district = self.resolve_district(region_id, raw.district)
        now = now or utcnow()

        with self._locks.hold(region_id):
            candidates = self.store.list_pharmacies(region_id, district.id)

            for p in candidates:
                if p.normalized_name == normalized:
                    return self._backfill(p, raw, now), False

            try:
                found = self._fuzzy_match(raw, normalized, candidates)
            except IdentityAmbiguity as e:
                logger.warning("Identity ambiguity in region %s: %s %s", region_id, e, e.candidate_ids)
                self.alerts.raise_alert(
                    region_id,
                    None,
                    ALERT_IDENTITY_AMBIGUITY,
                    SEVERITY_LOW,
                    str(e),
                    payload={"name": raw.name, "district_id": district.id, "candidates": e.candidate_ids},
                    now=now,
                )
                found = None

            if found is not None:
                logger.debug("Fuzzy-matched %r to pharmacy %s", raw.name, found.id)
                return self._backfill(found, raw, now), False

            pharmacy, created = self.store.insert_pharmacy(
                Pharmacy(
                    region_id=region_id,
                    district_id=district.id,
                    canonical_name=raw.name.strip(),
                    normalized_name=normalized,
                    address=raw.address or "",
                    phone=raw.phone or "",
                    lat=raw.lat,
                    lng=raw.lng,
                    created_at=now,
                    updated_at=now,
                )
            )
            if created:
                logger.info("New pharmacy %s (%s) in district %s", pharmacy.id, pharmacy.canonical_name, district.slug)
            return pharmacy, created

    def resolve(self, region_id: int, raw: RawExtractedRecord, now: datetime | None = None) -> str:
        """pharmacy_id for *raw*, existing or newly created. Idempotent."""
        pharmacy, _ = self.match(region_id, raw, now)
        return pharmacy.id

    def _backfill(self, pharmacy: Pharmacy, raw: RawExtractedRecord, now: datetime) -> Pharmacy:
        """Fill coordinates the canonical row is missing; identity never changes."""
        if pharmacy.lat is None and raw.lat is not None and raw.lng is not None:
            pharmacy.lat, pharmacy.lng = raw.lat, raw.lng
            pharmacy.updated_at = now
            return self.store.update_pharmacy(pharmacy)
        return pharmacy
