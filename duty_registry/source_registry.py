"""
Duty Pharmacy Registry — Source Registry

Read-mostly view of configured sources and endpoints with their trust
metadata. Lookups are cached per region; admin edits go through this
module so the cache is invalidated explicitly.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

from .entities import Source, SourceEndpoint
from .errors import RegionNotFound

logger = logging.getLogger(__name__)

_CACHE_TTL = 300  # 5 minutes


@dataclass
class EndpointInfo:
    """An endpoint joined with the source that owns it."""

    endpoint: SourceEndpoint
    source: Source

    @property
    def region_id(self) -> int:
        return self.source.region_id


class SourceRegistry:
    def __init__(self, store) -> None:
        self.store = store
        self._lock = threading.Lock()
        self._cache: dict[int, tuple[list[EndpointInfo], float]] = {}

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _cache_get(self, region_id: int) -> list[EndpointInfo] | None:
        with self._lock:
            entry = self._cache.get(region_id)
            if entry is None:
                return None
            rows, cached_at = entry
            if time.time() - cached_at > _CACHE_TTL:
                del self._cache[region_id]
                return None
            return rows

    def invalidate(self, region_id: int | None = None) -> None:
        """Drop cached endpoint lists (all regions when *region_id* is None)."""
        with self._lock:
            if region_id is None:
                self._cache.clear()
            else:
                self._cache.pop(region_id, None)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def endpoints_for_region(self, region_id: int) -> list[EndpointInfo]:
        """Every endpoint of the region, enabled or not, with its source."""
        cached = self._cache_get(region_id)
        if cached is not None:
            return cached

        sources = {s.id: s for s in self.store.list_sources(region_id)}
        rows = [
            EndpointInfo(endpoint=e, source=sources[e.source_id])
            for e in self.store.list_endpoints(region_id)
            if e.source_id in sources
        ]
        with self._lock:
            self._cache[region_id] = (rows, time.time())
        return rows

    def enabled_endpoints(self, region_id: int) -> list[EndpointInfo]:
        return [
            info
            for info in self.endpoints_for_region(region_id)
            if info.endpoint.enabled and info.source.enabled
        ]

    def primary_endpoints(self, region_id: int) -> list[EndpointInfo]:
        return [info for info in self.enabled_endpoints(region_id) if info.endpoint.is_primary]

    def endpoint(self, endpoint_id: int) -> EndpointInfo | None:
        endpoint = self.store.get_endpoint(endpoint_id)
        if endpoint is None:
            return None
        for info in self.endpoints_for_region(self.store.get_source(endpoint.source_id).region_id):
            if info.endpoint.id == endpoint_id:
                return info
        return None

    def source(self, source_id: int) -> Source | None:
        return self.store.get_source(source_id)

    def region_by_slug(self, slug: str):
        region = self.store.get_region_by_slug(slug)
        if region is None:
            raise RegionNotFound(f"region not found: {slug}")
        return region

    # ------------------------------------------------------------------
    # Admin edits
    # ------------------------------------------------------------------

    def set_endpoint_enabled(self, endpoint_id: int, enabled: bool) -> SourceEndpoint:
        endpoint = self.store.get_endpoint(endpoint_id)
        if endpoint is None:
            raise KeyError(endpoint_id)
        endpoint.enabled = enabled
        endpoint = self.store.update_endpoint(endpoint)
        self.invalidate(self.store.get_source(endpoint.source_id).region_id)
        logger.info("Endpoint %d %s", endpoint_id, "enabled" if enabled else "disabled")
        return endpoint

    def set_authority_weight(self, source_id: int, weight: int) -> Source:
        if not 1 <= weight <= 100:
            raise ValueError("authority_weight must be between 1 and 100")
        source = self.store.get_source(source_id)
        if source is None:
            raise KeyError(source_id)
        source.authority_weight = weight
        source = self.store.update_source(source)
        self.invalidate(source.region_id)
        logger.info("Source %d authority weight set to %d", source_id, weight)
        return source
