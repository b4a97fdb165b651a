"""Wires the store and every component into one Services bundle."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from . import db
from .accuracy import AccuracyAggregator
from .adapters import HttpFetcher, ParserRegistry
from .algorithms.evidence_clustering import ReconcilerConfig
from .alerts import AlertManager
from .helpers import load_reconciler_config
from .identity import IdentityResolver
from .ingestion import IngestionRunCoordinator
from .manual_override import ManualOverrideHandler
from .pg_store import PostgresStore
from .reconciliation import ReconciliationEngine
from .retry import RetryScheduler
from .source_registry import SourceRegistry
from .staleness import StalenessMonitor
from .store import MemoryStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: object
    config: ReconcilerConfig
    registry: SourceRegistry
    alerts: AlertManager
    accuracy: AccuracyAggregator
    staleness: StalenessMonitor
    identity: IdentityResolver
    reconciler: ReconciliationEngine
    coordinator: IngestionRunCoordinator
    retry: RetryScheduler
    overrides: ManualOverrideHandler

    @property
    def mode(self) -> str:
        return self.store.mode


def wire(
    store,
    config: ReconcilerConfig | None = None,
    fetcher: HttpFetcher | None = None,
    parsers: ParserRegistry | None = None,
    **coordinator_options,
) -> Services:
    """Build every component on top of *store*."""
    config = config or load_reconciler_config()
    registry = SourceRegistry(store)
    alerts = AlertManager(store)
    accuracy = AccuracyAggregator(store)
    staleness = StalenessMonitor(store, registry, accuracy, alerts)
    identity = IdentityResolver(store, alerts, config)
    reconciler = ReconciliationEngine(store, staleness, config)
    coordinator = IngestionRunCoordinator(
        store,
        registry,
        identity,
        reconciler,
        alerts,
        staleness=staleness,
        fetcher=fetcher,
        parsers=parsers,
        **coordinator_options,
    )
    retry = RetryScheduler(store, registry, alerts, coordinator=coordinator)
    coordinator.retry = retry
    overrides = ManualOverrideHandler(store, identity, reconciler)
    return Services(
        store=store,
        config=config,
        registry=registry,
        alerts=alerts,
        accuracy=accuracy,
        staleness=staleness,
        identity=identity,
        reconciler=reconciler,
        coordinator=coordinator,
        retry=retry,
        overrides=overrides,
    )


def build_services() -> Services:
    """PostgreSQL when the pool comes up, otherwise the in-memory store."""
    if db.init_pool():
        store = PostgresStore()
    else:
        store = MemoryStore()
    services = wire(store)
    logger.info("Services ready (%s mode)", services.mode)
    return services
