"""Domain records shared by the reconciliation core and both stores."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any

RUN_STATUSES = ("success", "partial", "failed")
RETRY_STATUSES = ("pending", "done", "abandoned")
SEVERITIES = ("low", "warning", "critical")

MANUAL_SOURCE_NAME = "Manual Override"
MANUAL_SOURCE_TYPE = "manual"
MANUAL_SOURCE_URL = "admin://manual-override"
MANUAL_SOURCE_WEIGHT = 100

PRIORITY_HIGH = 1
PRIORITY_NORMAL = 5


@dataclass
class Region:
    id: int
    slug: str
    name: str


@dataclass
class District:
    id: int
    region_id: int
    slug: str
    name: str


@dataclass
class Source:
    id: int
    region_id: int
    name: str
    type: str
    authority_weight: int
    base_url: str
    enabled: bool = True

    @property
    def is_manual(self) -> bool:
        return self.type == MANUAL_SOURCE_TYPE


@dataclass
class SourceEndpoint:
    id: int
    source_id: int
    endpoint_url: str
    format: str
    parser_key: str
    is_primary: bool = False
    poll_schedule: str = "*/30 * * * *"
    enabled: bool = True
    expected_min_records: int = 0


@dataclass
class IngestionRun:
    endpoint_id: int
    region_id: int
    status: str
    started_at: datetime
    finished_at: datetime
    http_status: int | None = None
    error_message: str | None = None
    records_found: int = 0
    records_accepted: int = 0
    records_rejected: int = 0
    id: int | None = None


@dataclass
class Pharmacy:
    region_id: int
    district_id: int
    canonical_name: str
    normalized_name: str
    address: str = ""
    phone: str = ""
    lat: float | None = None
    lng: float | None = None
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: str | None = None


@dataclass
class DutyEvidence:
    """One source's current claim about a pharmacy's duty-day attributes."""

    source_id: int
    source_url: str
    extracted_payload: dict[str, Any]
    fetched_at: datetime
    endpoint_id: int | None = None
    duty_record_id: str | None = None

    @property
    def is_manual_override(self) -> bool:
        return bool(self.extracted_payload.get("manual_override"))


@dataclass
class DutyRecord:
    pharmacy_id: str
    region_id: int
    district_id: int
    duty_date: date
    duty_start: datetime
    duty_end: datetime
    confidence_score: int
    verification_source_count: int
    is_degraded: bool
    source_name: str
    source_url: str
    name: str
    address: str = ""
    phone: str = ""
    duty_hours: str = ""
    cluster_count: int = 1
    version: int = 0
    updated_at: datetime | None = None
    id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        for key in ("duty_date", "duty_start", "duty_end", "updated_at"):
            value = out[key]
            out[key] = value.isoformat() if value is not None else None
        return out


@dataclass
class IngestionAlert:
    region_id: int
    alert_type: str
    severity: str
    message: str
    created_at: datetime
    source_endpoint_id: int | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    id: int | None = None

    @property
    def dedup_key(self) -> tuple[int, int | None, str]:
        return (self.region_id, self.source_endpoint_id, self.alert_type)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "region_id": self.region_id,
            "source_endpoint_id": self.source_endpoint_id,
            "alert_type": self.alert_type,
            "severity": self.severity,
            "message": self.message,
            "payload": self.payload or None,
            "created_at": self.created_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass
class RetryQueueEntry:
    region_id: int
    next_attempt_at: datetime
    endpoint_id: int | None = None
    status: str = "pending"
    priority: int = PRIORITY_NORMAL
    attempt_count: int = 0
    max_attempts: int = 5
    last_error: str | None = None
    requested_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: int | None = None

    @property
    def target(self) -> tuple[int, int | None]:
        return (self.region_id, self.endpoint_id)


@dataclass
class RawExtractedRecord:
    """What a parser adapter hands to the core; no HTML/DOM knowledge here."""

    name: str
    fetched_at: datetime
    address: str = ""
    phone: str = ""
    lat: float | None = None
    lng: float | None = None
    duty_hours: str = ""
    district: str = ""
    duty_date: date | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "address": self.address,
            "phone": self.phone,
            "duty_hours": self.duty_hours,
            "district": self.district,
        }
        if self.lat is not None and self.lng is not None:
            payload["lat"] = self.lat
            payload["lng"] = self.lng
        return payload


@dataclass
class AccuracyStat:
    region_id: int
    duty_date: date
    expected_count: int
    actual_count: int
    confidence_pct: int
    last_update: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "region_id": self.region_id,
            "duty_date": self.duty_date.isoformat(),
            "expected_count": self.expected_count,
            "actual_count": self.actual_count,
            "confidence_pct": self.confidence_pct,
            "last_update": self.last_update.isoformat() if self.last_update else None,
        }
