"""Shared fixtures: a seeded in-memory registry and a scripted fetcher."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from duty_registry.adapters import FetchedContent, default_parsers
from duty_registry.algorithms.duty_window import window_for
from duty_registry.algorithms.evidence_clustering import ReconcilerConfig
from duty_registry.entities import DutyEvidence, DutyRecord, IngestionRun, Pharmacy
from duty_registry.services import wire
from duty_registry.store import MemoryStore

# 10:00 in Istanbul (UTC+3) on 2026-03-10 → duty date 2026-03-10
NOW = datetime(2026, 3, 10, 7, 0, tzinfo=timezone.utc)

DISTRICTS = [
    "Kadıköy",
    "Beşiktaş",
    "Şişli",
    "Üsküdar",
    "Fatih",
    "Beyoğlu",
    "Bakırköy",
    "Ataşehir",
    "Maltepe",
    "Merkez",
]

PRIMARY_URL = "https://eczaciodasi.example/nobetci.json"
SECONDARY_URL = "https://nobetportal.example/istanbul.json"


class FakeFetcher:
    """Serves scripted responses per URL; an Exception value is raised instead."""

    def __init__(self) -> None:
        self.responses: dict[str, object] = {}
        self.calls: list[str] = []

    def set_json(self, url: str, text: str, status: int = 200) -> None:
        self.responses[url] = FetchedContent(url=url, http_status=status, text=text, content_type="application/json")

    def fetch(self, url: str, timeout: float) -> FetchedContent:
        self.calls.append(url)
        response = self.responses.get(url)
        if callable(response) and not isinstance(response, FetchedContent):
            response = response()
        if isinstance(response, Exception):
            raise response
        if response is None:
            raise AssertionError(f"no scripted response for {url}")
        return response


@pytest.fixture()
def now() -> datetime:
    return NOW


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def seed(store):
    """Region 'istanbul' with 10 districts, source A (weight 90, primary) and B (weight 80)."""
    region = store.add_region("istanbul", "İstanbul")
    districts = [store.add_district(region.id, name) for name in DISTRICTS]
    source_a = store.add_source(region.id, "Eczacı Odası", "official", 90, "https://eczaciodasi.example")
    source_b = store.add_source(region.id, "Nöbet Portalı", "aggregator", 80, "https://nobetportal.example")
    endpoint_a = store.add_endpoint(source_a.id, PRIMARY_URL, is_primary=True)
    endpoint_b = store.add_endpoint(source_b.id, SECONDARY_URL)
    return SimpleNamespace(
        region=region,
        districts=districts,
        district=districts[0],
        source_a=source_a,
        source_b=source_b,
        endpoint_a=endpoint_a,
        endpoint_b=endpoint_b,
    )


@pytest.fixture()
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture()
def services(store, seed, fetcher):
    services = wire(
        store,
        config=ReconcilerConfig(),
        fetcher=fetcher,
        parsers=default_parsers(),
        fetch_timeout_seconds=2,
        max_concurrent_runs=4,
        max_concurrent_per_region=2,
    )
    yield services
    services.coordinator.shutdown()


def make_evidence(source, payload: dict, fetched_at: datetime, endpoint=None) -> DutyEvidence:
    return DutyEvidence(
        source_id=source.id,
        endpoint_id=endpoint.id if endpoint else None,
        source_url=endpoint.endpoint_url if endpoint else source.base_url,
        extracted_payload=dict(payload),
        fetched_at=fetched_at,
    )


def minutes_ago(minutes: int) -> datetime:
    return NOW - timedelta(minutes=minutes)


def record_districts(store, region, districts, duty_date: date, updated_at: datetime = NOW) -> None:
    """Give each district one stored duty record for *duty_date*."""
    window = window_for(duty_date)
    for district in districts:
        pharmacy, _ = store.insert_pharmacy(
            Pharmacy(
                region_id=region.id,
                district_id=district.id,
                canonical_name=f"{district.name} Eczanesi",
                normalized_name=district.slug,
            )
        )
        store.save_reconciliation(
            DutyRecord(
                pharmacy_id=pharmacy.id,
                region_id=region.id,
                district_id=district.id,
                duty_date=duty_date,
                duty_start=window.window_start,
                duty_end=window.window_end,
                confidence_score=100,
                verification_source_count=1,
                is_degraded=False,
                source_name="Eczacı Odası",
                source_url=PRIMARY_URL,
                name=pharmacy.canonical_name,
                updated_at=updated_at,
            ),
            [],
            expected_version=0,
        )


def add_run(store, endpoint, region, finished_at: datetime, status: str = "success") -> IngestionRun:
    return store.insert_run(
        IngestionRun(
            endpoint_id=endpoint.id,
            region_id=region.id,
            status=status,
            started_at=finished_at - timedelta(seconds=30),
            finished_at=finished_at,
        )
    )
