"""Admin endpoints — manual overrides, recovery, alerts, coverage and ingestion overview."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ..algorithms.duty_window import canonical_duty_date
from ..auth import current_actor, require_tier
from ..errors import PersistenceError, RegionNotFound, ValidationError
from ..helpers import DUTY_TIMEZONE, OPEN_ALERTS_LIMIT, utcnow
from ..models import ManualOverrideRequest, ResolveAlertRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin")


@router.post("/manual-override", dependencies=[Depends(require_tier("admin"))])
def manual_override(request: Request, body: ManualOverrideRequest):
    """
    Apply an admin correction for one pharmacy and duty date.

    Idempotent per (pharmacy, duty_date): repeating it updates the same
    record. The corrected values win over every automatic source.
    """
    services = request.app.state.services
    updated_by = body.updated_by or current_actor(request).actor_id

    try:
        result = services.overrides.apply(
            region_slug=body.region,
            district=body.district,
            identity_fields=body.pharmacy.model_dump(),
            duty_date=body.duty_date,
            corrected_fields=body.corrected.model_dump(),
            updated_by=updated_by,
            note=body.note,
        )
    except RegionNotFound:
        raise HTTPException(status_code=404, detail="region not found")
    except (ValidationError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceError as e:
        logger.error("Manual override failed: %s", e)
        raise HTTPException(status_code=503, detail="Could not store the override, try again")

    return result.to_dict(updated_by)


@router.post("/recovery/{slug}/trigger", dependencies=[Depends(require_tier("admin"))])
def trigger_recovery(request: Request, slug: str):
    """Queue an immediate re-run of every enabled endpoint in the region."""
    services = request.app.state.services
    try:
        entry = services.retry.trigger_recovery(slug, requested_by=current_actor(request).actor_id)
    except RegionNotFound:
        raise HTTPException(status_code=404, detail="region not found")
    return {"queued": True, "entry_id": entry.id, "region": slug}


@router.get("/alerts/open", dependencies=[Depends(require_tier("operator"))])
def open_alerts(
    request: Request,
    limit: int = Query(OPEN_ALERTS_LIMIT, ge=1, le=OPEN_ALERTS_LIMIT),
    region: str | None = Query(None, description="Region slug filter"),
):
    """Open alerts, most recent first."""
    services = request.app.state.services
    region_id = None
    if region:
        found = services.store.get_region_by_slug(region)
        if found is None:
            raise HTTPException(status_code=404, detail="region not found")
        region_id = found.id
    alerts = services.alerts.list_open(limit=limit, region_id=region_id)
    return {"count": len(alerts), "alerts": [a.to_dict() for a in alerts]}


@router.post("/alerts/{alert_id}/resolve", dependencies=[Depends(require_tier("operator"))])
def resolve_alert(request: Request, alert_id: int, body: ResolveAlertRequest | None = None):
    """Resolve an alert. Already-resolved or unknown alerts return resolved=false."""
    resolved_by = (body.resolved_by if body else None) or current_actor(request).actor_id
    return request.app.state.services.alerts.resolve(alert_id, resolved_by)


@router.get("/accuracy", dependencies=[Depends(require_tier("operator"))])
def accuracy(request: Request, date: str | None = Query(None, description="Duty date YYYY-MM-DD")):
    """District coverage per region for one duty date."""
    try:
        duty_date = canonical_duty_date(date, utcnow(), DUTY_TIMEZONE)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    rows = request.app.state.services.accuracy.overview(duty_date)
    return {"duty_date": duty_date.isoformat(), "regions": rows}


@router.get("/ingestion/overview", dependencies=[Depends(require_tier("operator"))])
def ingestion_overview(request: Request):
    """Per-region run counts over 24h, last run and open alert count."""
    return {"regions": request.app.state.services.coordinator.overview()}


@router.post("/ingestion/{slug}/stop", dependencies=[Depends(require_tier("admin"))])
def stop_region(request: Request, slug: str):
    """Let in-flight runs finish; start no new ones for the region."""
    services = request.app.state.services
    region = services.store.get_region_by_slug(slug)
    if region is None:
        raise HTTPException(status_code=404, detail="region not found")
    services.coordinator.request_stop(region.id)
    return {"region": slug, "stopped": True}


@router.post("/ingestion/{slug}/resume", dependencies=[Depends(require_tier("admin"))])
def resume_region(request: Request, slug: str):
    services = request.app.state.services
    region = services.store.get_region_by_slug(slug)
    if region is None:
        raise HTTPException(status_code=404, detail="region not found")
    services.coordinator.clear_stop(region.id)
    return {"region": slug, "stopped": False}
