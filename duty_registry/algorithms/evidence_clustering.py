"""
Duty Pharmacy Registry — Evidence Clustering & Confidence Scoring

Groups the current evidence for one (pharmacy, duty_date) into clusters
of sources that make the same claim, picks the canonical cluster by
summed authority weight, and derives the record's confidence_score.

A claim is the *combination* of name, address, phone and duty hours.
Two sources agreeing on the phone but not the address make different
claims. A field a source did not report is compatible with any value.

Dependencies:
    pip install rapidfuzz pyyaml
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml

from .name_similarity import fold_text, normalize_name


# ---------------------------------------------------------------------------
# Defaults (overridden by config/reconciliation_rules.yaml at runtime)
# ---------------------------------------------------------------------------

_DEFAULT_RECONCILIATION = {
    "evidence_max_age_minutes": 180,
    "manual_override_confidence": 99,
    "confidence_floor": 40,
    "max_write_attempts": 3,
}

_DEFAULT_IDENTITY = {
    "fuzzy_threshold": 0.88,
    "max_edit_distance": 2,
    "geo_reject_km": 1.5,
}

CLAIM_FIELDS = ("name", "address", "phone", "duty_hours")


# ---------------------------------------------------------------------------
# Field normalisation
# ---------------------------------------------------------------------------

_PHONE_STRIP = re.compile(r"[^0-9]")

# Turkish numbers: optional +90 / 0 trunk prefix, 10 significant digits
_TR_PHONE_RE = re.compile(r"^(?:90|0)?(\d{10})$")

_TIME_RE = re.compile(r"(\d{1,2})\s*[:.]\s*(\d{2})")


def normalize_phone(phone: str | None) -> str:
    """
    Normalize a Turkish phone number to its 10-digit national form.

    Examples:
        "+90 (532) 123 45 67" → "5321234567"
        "0212 555 00 01"      → "2125550001"
        "555-0001"            → "5550001"   (unrecognised: digits only)
    """
    if not phone:
        return ""
    digits = _PHONE_STRIP.sub("", phone)
    m = _TR_PHONE_RE.match(digits)
    if m:
        return m.group(1)
    return digits


def normalize_duty_hours(value: str | None) -> str:
    """
    Normalize a duty-hours string to "HH:MM-HH:MM".

    "8.00 - 08.00" and "08:00–08:00" both become "08:00-08:00". Strings
    without recognisable times are compared as folded text.
    """
    if not value:
        return ""
    times = _TIME_RE.findall(value)
    if not times:
        return fold_text(value)
    return "-".join(f"{int(h):02d}:{m}" for h, m in times)


def normalize_claim(payload: dict[str, Any]) -> dict[str, str]:
    """Normalized comparison form of an evidence payload."""
    return {
        "name": normalize_name(payload.get("name")),
        "address": fold_text(payload.get("address")),
        "phone": normalize_phone(payload.get("phone")),
        "duty_hours": normalize_duty_hours(payload.get("duty_hours")),
    }


def round_half_up(value: float) -> int:
    """Round .5 away from zero, matching SQL round() rather than banker's rounding."""
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Configuration loader
# ---------------------------------------------------------------------------


@dataclass
class ReconcilerConfig:
    """Loaded reconciliation + identity configuration from reconciliation_rules.yaml."""

    evidence_max_age_minutes: int = _DEFAULT_RECONCILIATION["evidence_max_age_minutes"]
    manual_override_confidence: int = _DEFAULT_RECONCILIATION["manual_override_confidence"]
    confidence_floor: int = _DEFAULT_RECONCILIATION["confidence_floor"]
    max_write_attempts: int = _DEFAULT_RECONCILIATION["max_write_attempts"]
    fuzzy_threshold: float = _DEFAULT_IDENTITY["fuzzy_threshold"]
    max_edit_distance: int = _DEFAULT_IDENTITY["max_edit_distance"]
    geo_reject_km: float = _DEFAULT_IDENTITY["geo_reject_km"]

    @classmethod
    def from_yaml(cls, path: str | Path) -> "ReconcilerConfig":
        """Load configuration from a YAML file."""
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}

        recon = raw.get("reconciliation", {})
        identity = raw.get("identity", {})

        return cls(
            evidence_max_age_minutes=int(
                recon.get("evidence_max_age_minutes", _DEFAULT_RECONCILIATION["evidence_max_age_minutes"])
            ),
            manual_override_confidence=int(
                recon.get("manual_override_confidence", _DEFAULT_RECONCILIATION["manual_override_confidence"])
            ),
            confidence_floor=int(recon.get("confidence_floor", _DEFAULT_RECONCILIATION["confidence_floor"])),
            max_write_attempts=int(recon.get("max_write_attempts", _DEFAULT_RECONCILIATION["max_write_attempts"])),
            fuzzy_threshold=float(identity.get("fuzzy_threshold", _DEFAULT_IDENTITY["fuzzy_threshold"])),
            max_edit_distance=int(identity.get("max_edit_distance", _DEFAULT_IDENTITY["max_edit_distance"])),
            geo_reject_km=float(identity.get("geo_reject_km", _DEFAULT_IDENTITY["geo_reject_km"])),
        )


# ---------------------------------------------------------------------------
# Clustering
# ---------------------------------------------------------------------------


@dataclass
class WeightedClaim:
    """One source's latest evidence, annotated with its trust metadata."""

    source_id: int
    source_name: str
    source_url: str
    authority_weight: int
    fetched_at: datetime
    payload: dict[str, Any]
    is_primary: bool = False
    is_manual: bool = False

    def __post_init__(self) -> None:
        self.normalized = normalize_claim(self.payload)


@dataclass
class Cluster:
    """Sources that make the same claim."""

    key: dict[str, str]
    members: list[WeightedClaim] = field(default_factory=list)

    @property
    def weight(self) -> int:
        return sum(m.authority_weight for m in self.members)

    @property
    def latest_fetch(self) -> datetime:
        return max(m.fetched_at for m in self.members)

    @property
    def has_primary(self) -> bool:
        return any(m.is_primary for m in self.members)

    @property
    def has_manual(self) -> bool:
        return any(m.is_manual for m in self.members)

    @property
    def source_ids(self) -> set[int]:
        return {m.source_id for m in self.members}

    def accepts(self, claim: WeightedClaim) -> bool:
        for f in CLAIM_FIELDS:
            mine, theirs = self.key[f], claim.normalized[f]
            if mine and theirs and mine != theirs:
                return False
        return True

    def add(self, claim: WeightedClaim) -> None:
        self.members.append(claim)
        for f in CLAIM_FIELDS:
            if not self.key[f]:
                self.key[f] = claim.normalized[f]

    def canonical_fields(self) -> dict[str, Any]:
        """Display values: the best-ranked member's value per field, first non-empty wins."""
        out: dict[str, Any] = {}
        for f in CLAIM_FIELDS:
            out[f] = next((m.payload.get(f) for m in self.members if m.payload.get(f)), "")
        return out

    def representative(self) -> WeightedClaim:
        """Member whose provenance labels the record: manual first, then weight, then recency."""
        return sorted(self.members, key=_claim_rank)[0]


@dataclass
class ClusterResult:
    """Outcome of clustering one evidence set."""

    winner: Cluster
    clusters: list[Cluster]
    total_weight: int
    confidence_score: int
    verification_source_count: int
    manual_override: bool

    @property
    def conflict(self) -> bool:
        return len(self.clusters) > 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "winner": self.winner.canonical_fields(),
            "winner_weight": self.winner.weight,
            "total_weight": self.total_weight,
            "cluster_count": len(self.clusters),
            "confidence_score": self.confidence_score,
            "verification_source_count": self.verification_source_count,
            "manual_override": self.manual_override,
        }


def _claim_rank(claim: WeightedClaim) -> tuple:
    return (
        not claim.is_manual,
        -claim.authority_weight,
        -claim.fetched_at.timestamp(),
        claim.source_id,
    )


def latest_per_source(claims: list[WeightedClaim]) -> list[WeightedClaim]:
    """A source contributes once: keep only its most recently fetched claim."""
    latest: dict[int, WeightedClaim] = {}
    for claim in claims:
        current = latest.get(claim.source_id)
        if current is None or claim.fetched_at > current.fetched_at:
            latest[claim.source_id] = claim
    return list(latest.values())


def build_clusters(claims: list[WeightedClaim]) -> list[Cluster]:
    """
    Greedy, order-deterministic clustering.

    Claims are visited strongest first; each joins the first cluster whose
    claim it is compatible with, otherwise it opens a new cluster.
    """
    clusters: list[Cluster] = []
    for claim in sorted(latest_per_source(claims), key=_claim_rank):
        for cluster in clusters:
            if cluster.accepts(claim):
                cluster.add(claim)
                break
        else:
            cluster = Cluster(key={f: "" for f in CLAIM_FIELDS})
            cluster.add(claim)
            clusters.append(cluster)
    return clusters


def _cluster_rank(cluster: Cluster) -> tuple:
    return (
        -cluster.weight,
        -cluster.latest_fetch.timestamp(),
        not cluster.has_primary,
        tuple(cluster.key[f] for f in CLAIM_FIELDS),
    )


def score_evidence(
    claims: list[WeightedClaim],
    config: ReconcilerConfig | None = None,
) -> ClusterResult | None:
    """
    Cluster *claims* (already freshness-filtered) and score the winner.

    Winner selection:
        1. A cluster holding a manual override, unconditionally
        2. Highest summed authority weight
        3. Most recent fetched_at
        4. Contains a primary-endpoint source
        5. Lexical claim key (keeps the choice deterministic)

    confidence_score = round(winner_weight / total_weight * 100), clamped
    to [0, 100]; a manual override pins it to manual_override_confidence.

    Returns None for an empty claim list.
    """
    if config is None:
        config = ReconcilerConfig()

    clusters = build_clusters(claims)
    if not clusters:
        return None

    manual = [c for c in clusters if c.has_manual]
    if manual:
        winner = max(manual, key=lambda c: max(m.fetched_at for m in c.members if m.is_manual))
    else:
        winner = sorted(clusters, key=_cluster_rank)[0]

    total_weight = sum(c.weight for c in clusters)

    if manual:
        confidence = config.manual_override_confidence
    elif total_weight <= 0:
        confidence = 0
    else:
        confidence = round_half_up(winner.weight / total_weight * 100)
    confidence = max(0, min(100, confidence))

    return ClusterResult(
        winner=winner,
        clusters=clusters,
        total_weight=total_weight,
        confidence_score=confidence,
        verification_source_count=len(winner.source_ids),
        manual_override=bool(manual),
    )
