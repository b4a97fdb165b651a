"""Duty Pharmacy Registry — pure reconciliation algorithms."""

from .duty_window import (
    DutyWindow,
    accepted_source_dates,
    canonical_duty_date,
    parse_source_date,
    resolve,
    window_for,
)
from .evidence_clustering import (
    Cluster,
    ClusterResult,
    ReconcilerConfig,
    WeightedClaim,
    normalize_duty_hours,
    normalize_phone,
    round_half_up,
    score_evidence,
)
from .geo_proximity import (
    Coordinate,
    bounding_box,
    compute_geo_proximity,
    haversine_km,
    to_coordinate,
    too_far_apart,
)
from .name_similarity import (
    compute_name_similarity,
    fold_text,
    normalize_name,
    quick_name_score,
)

__all__ = [
    "DutyWindow",
    "accepted_source_dates",
    "canonical_duty_date",
    "parse_source_date",
    "resolve",
    "window_for",
    "Cluster",
    "ClusterResult",
    "ReconcilerConfig",
    "WeightedClaim",
    "normalize_duty_hours",
    "normalize_phone",
    "round_half_up",
    "score_evidence",
    "Coordinate",
    "bounding_box",
    "compute_geo_proximity",
    "haversine_km",
    "to_coordinate",
    "too_far_apart",
    "compute_name_similarity",
    "fold_text",
    "normalize_name",
    "quick_name_score",
]
