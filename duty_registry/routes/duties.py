"""Public duty roster endpoints — canonical records plus the degraded overlay."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request

from ..algorithms.duty_window import canonical_duty_date
from ..algorithms.geo_proximity import bounding_box, haversine_km, to_coordinate
from ..algorithms.name_similarity import fold_text
from ..entities import DutyRecord
from ..errors import PersistenceError
from ..helpers import DUTY_TIMEZONE, iso, slugify, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()

# Listing window around the active duty date
DATES_BACK = 6
DATES_AHEAD = 1
DATES_LIMIT = 7

NEAREST_RADIUS_KM = 50.0
NEAREST_DEFAULT_LIMIT = 10


def _record_to_dict(record: DutyRecord, evidence: list, district_slug: str | None) -> dict[str, Any]:
    out = record.to_dict()
    out.pop("version", None)
    out["district"] = district_slug
    out["evidence"] = {
        "source_count": len(evidence),
        "latest_fetch": iso(max((e.fetched_at for e in evidence), default=None)),
        "manual_override": any(e.is_manual_override for e in evidence),
    }
    return out


@router.get("/api/regions")
def list_regions(request: Request):
    """Configured regions with their district counts."""
    store = request.app.state.services.store
    return [
        {"slug": r.slug, "name": r.name, "district_count": len(store.list_districts(r.id))}
        for r in store.list_regions()
    ]


@router.get("/api/regions/{slug}/duty")
def region_duty(
    request: Request,
    slug: str,
    district: str | None = Query(None, description="District slug or name"),
    date: str | None = Query(None, description="Duty date YYYY-MM-DD (defaults to the active duty date)"),
):
    """
    Duty roster for a region (optionally one district).

    Degraded regions still return their last known records, with
    degraded_info describing why the data may be stale.
    """
    services = request.app.state.services
    store = services.store
    now = utcnow()

    region = store.get_region_by_slug(slug)
    if region is None:
        raise HTTPException(status_code=404, detail="region not found")

    try:
        duty_date = canonical_duty_date(date, now, DUTY_TIMEZONE)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    districts = {d.id: d for d in store.list_districts(region.id)}
    district_id = None
    if district:
        wanted_slug, wanted_name = slugify(district), fold_text(district)
        match = next(
            (d for d in districts.values() if d.slug == wanted_slug or fold_text(d.name) == wanted_name),
            None,
        )
        if match is None:
            raise HTTPException(status_code=404, detail="district not found")
        district_id = match.id

    try:
        status = services.staleness.region_status(region.id, now)
        records = store.list_duty_records(region.id, duty_date, district_id)
        rows = [
            _record_to_dict(
                r,
                store.list_evidence(r.pharmacy_id, r.duty_date),
                districts[r.district_id].slug if r.district_id in districts else None,
            )
            for r in records
        ]
    except PersistenceError as e:
        logger.error("Duty query for %s failed: %s", slug, e)
        raise HTTPException(status_code=503, detail="Database unavailable")

    last_update = max((r.updated_at for r in records if r.updated_at), default=None)
    return {
        "status": status.status,
        "region": region.slug,
        "duty_date": duty_date.isoformat(),
        "last_update": iso(last_update or status.last_successful_update),
        "degraded_info": status.degraded_info(),
        "records": rows,
    }


@router.get("/api/regions/{slug}/dates")
def region_dates(request: Request, slug: str):
    """Duty dates with records around the active one, newest first."""
    store = request.app.state.services.store
    region = store.get_region_by_slug(slug)
    if region is None:
        raise HTTPException(status_code=404, detail="region not found")

    active = canonical_duty_date(None, utcnow(), DUTY_TIMEZONE)
    try:
        dates = store.list_duty_dates(
            region.id,
            active - timedelta(days=DATES_BACK),
            active + timedelta(days=DATES_AHEAD),
            DATES_LIMIT,
        )
    except PersistenceError as e:
        logger.error("Date listing for %s failed: %s", slug, e)
        raise HTTPException(status_code=503, detail="Database unavailable")

    return {
        "region": region.slug,
        "active_duty_date": active.isoformat(),
        "dates": [d.isoformat() for d in dates],
    }


@router.get("/api/nearest")
def nearest_on_duty(
    request: Request,
    lat: float = Query(..., description="Latitude (WGS84)"),
    lng: float = Query(..., description="Longitude (WGS84)"),
    limit: int = Query(NEAREST_DEFAULT_LIMIT, ge=1, le=50),
):
    """
    On-duty pharmacies closest to a point, across all regions.

    Only pharmacies with stored coordinates within NEAREST_RADIUS_KM are
    considered. Each row carries its region's status so callers can tell
    degraded data apart.
    """
    origin = to_coordinate(lat, lng)
    if origin is None:
        raise HTTPException(status_code=400, detail="invalid coordinates")

    services = request.app.state.services
    store = services.store
    now = utcnow()
    duty_date = canonical_duty_date(None, now, DUTY_TIMEZONE)
    lat_range, lng_range = bounding_box(origin, NEAREST_RADIUS_KM)

    try:
        located = store.list_located_duty_records(duty_date, lat_range, lng_range)
        regions = {r.id: r for r in store.list_regions()}
        hits = []
        for record, p_lat, p_lng in located:
            coord = to_coordinate(p_lat, p_lng)
            if coord is None:
                continue
            distance = haversine_km(origin, coord)
            if distance <= NEAREST_RADIUS_KM:
                hits.append((distance, record))
        hits.sort(key=lambda h: (h[0], h[1].name))
        hits = hits[:limit]

        districts: dict[int, dict] = {}
        statuses: dict[int, str] = {}
        rows = []
        for distance, record in hits:
            if record.region_id not in districts:
                districts[record.region_id] = {d.id: d for d in store.list_districts(record.region_id)}
                statuses[record.region_id] = services.staleness.region_status(record.region_id, now).status
            district = districts[record.region_id].get(record.district_id)
            row = _record_to_dict(
                record,
                store.list_evidence(record.pharmacy_id, record.duty_date),
                district.slug if district else None,
            )
            region = regions.get(record.region_id)
            row["region"] = region.slug if region else None
            row["region_status"] = statuses[record.region_id]
            row["distance_km"] = round(distance, 2)
            rows.append(row)
    except PersistenceError as e:
        logger.error("Nearest query failed: %s", e)
        raise HTTPException(status_code=503, detail="Database unavailable")

    return {
        "duty_date": duty_date.isoformat(),
        "origin": {"lat": origin.latitude, "lng": origin.longitude},
        "radius_km": NEAREST_RADIUS_KM,
        "records": rows,
    }
