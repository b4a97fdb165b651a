"""Error taxonomy for the ingestion and reconciliation core."""

from __future__ import annotations


class DutyRegistryError(Exception):
    """Base class for all registry errors."""


class FetchError(DutyRegistryError):
    """Network failure while fetching an endpoint. Retried with backoff."""

    def __init__(self, message: str, http_status: int | None = None):
        super().__init__(message)
        self.http_status = http_status


class FetchTimeout(FetchError):
    """Fetch+parse exceeded the hard timeout."""


class ParseError(DutyRegistryError):
    """Adapter returned a malformed or unexpected structure."""


class ValidationError(DutyRegistryError):
    """An extracted record lacks required identity fields. Dropped, not fatal."""


class IdentityAmbiguity(DutyRegistryError):
    """Several canonical pharmacies are equally close to a raw record."""

    def __init__(self, message: str, candidate_ids: list[str]):
        super().__init__(message)
        self.candidate_ids = candidate_ids


class PersistenceError(DutyRegistryError):
    """A store write failed."""


class StaleWriteError(PersistenceError):
    """Optimistic version check failed; another writer got there first."""


class RegionNotFound(DutyRegistryError):
    """Unknown region slug or id."""


class OutdatedSourceDate(DutyRegistryError):
    """The source shows a roster for another day than the active duty date."""

    def __init__(self, message: str, source_date=None):
        super().__init__(message)
        self.source_date = source_date
