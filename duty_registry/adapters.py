"""
Duty Pharmacy Registry — Fetching & Parser Adapters

The core never looks at HTML or site structure. An endpoint's content is
fetched by HttpFetcher and handed to the parser strategy named by the
endpoint's parser_key, which returns RawExtractedRecords or raises
ParseError.

Site-specific HTML strategies live outside this package and plug in via
ParserRegistry.register(); the built-in json_records_v1 strategy covers
sources that publish a JSON list of pharmacies.

Dependencies:
    pip install requests
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

import requests

from .algorithms.duty_window import parse_source_date
from .entities import RawExtractedRecord
from .errors import FetchError, FetchTimeout, ParseError

logger = logging.getLogger(__name__)

USER_AGENT = "DutyPharmacyRegistry/0.1"

_META_CHARSET = re.compile(rb"""<meta[^>]+charset=["']?([^"'\s>;]+)""", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------


@dataclass
class FetchedContent:
    url: str
    http_status: int
    text: str
    content_type: str = ""

    def json(self) -> Any:
        try:
            return json.loads(self.text)
        except ValueError as e:
            raise ParseError(f"response is not valid JSON: {e}") from e


class HttpFetcher:
    """GET an endpoint with a crawler UA, decoding by header charset, then meta charset."""

    def __init__(self, session: requests.Session | None = None) -> None:
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "User-Agent": USER_AGENT,
                "Accept": "text/html,application/xhtml+xml,application/json,*/*;q=0.9",
                "Accept-Language": "tr-TR,tr;q=0.9,en;q=0.8",
            }
        )

    def fetch(self, url: str, timeout: float) -> FetchedContent:
        try:
            resp = self.session.get(url, timeout=timeout)
        except requests.exceptions.Timeout as e:
            raise FetchTimeout(f"timed out fetching {url}") from e
        except requests.exceptions.RequestException as e:
            raise FetchError(f"request to {url} failed: {e}") from e

        if resp.status_code >= 400:
            raise FetchError(f"HTTP {resp.status_code} from {url}", http_status=resp.status_code)

        content_type = resp.headers.get("Content-Type", "")
        encoding = None
        if "charset=" in content_type.lower():
            encoding = resp.encoding
        else:
            m = _META_CHARSET.search(resp.content[:4096])
            encoding = m.group(1).decode("ascii", "ignore") if m else "utf-8"

        try:
            text = resp.content.decode(encoding or "utf-8")
        except (LookupError, UnicodeDecodeError):
            logger.debug("Charset %s failed for %s, decoding as utf-8", encoding, url)
            text = resp.content.decode("utf-8", errors="replace")

        return FetchedContent(url=url, http_status=resp.status_code, text=text, content_type=content_type)


# ---------------------------------------------------------------------------
# Parser strategies
# ---------------------------------------------------------------------------


@dataclass
class ParseResult:
    records: list[RawExtractedRecord]
    warnings: list[str] = field(default_factory=list)
    # Roster date printed by the source for the whole page, when it shows one
    source_date: date | None = None


class ParserStrategy:
    """Turns fetched content into raw records. Raise ParseError on unusable structure."""

    key = ""

    def parse(self, content: FetchedContent, fetched_at: datetime) -> ParseResult:
        raise NotImplementedError


def _first(item: dict, *names: str) -> Any:
    for name in names:
        value = item.get(name)
        if value not in (None, ""):
            return value
    return None


def _as_float(value: Any) -> float | None:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class JsonRecordsParser(ParserStrategy):
    """
    JSON list of pharmacies, bare or wrapped in data/pharmacies/result/items.

    Field names are accepted in English or Turkish (eczane, adres, telefon,
    ilce). Rows that are not objects become warnings, not failures.

    A roster date may sit on the wrapper object (date, tarih, duty_date)
    or on each row; either is passed on for source-date validation.
    """

    key = "json_records_v1"

    _CONTAINERS = ("data", "pharmacies", "result", "items")

    def parse(self, content: FetchedContent, fetched_at: datetime) -> ParseResult:
        data = content.json()
        records: list[RawExtractedRecord] = []
        warnings: list[str] = []
        source_date = None
        if isinstance(data, dict):
            items = next((data[k] for k in self._CONTAINERS if k in data), None)
            source_date = self._date(data, "roster", warnings)
        else:
            items = data
        if not isinstance(items, list):
            raise ParseError(f"expected a list of pharmacies, got {type(items).__name__}")

        for i, item in enumerate(items):
            if not isinstance(item, dict):
                warnings.append(f"row {i}: expected object, got {type(item).__name__}")
                continue
            records.append(
                RawExtractedRecord(
                    name=str(_first(item, "name", "pharmacy_name", "eczane", "ad") or "").strip(),
                    address=str(_first(item, "address", "adres", "addr") or "").strip(),
                    phone=str(_first(item, "phone", "telefon", "tel") or "").strip(),
                    duty_hours=str(_first(item, "duty_hours", "hours", "saat") or "").strip(),
                    district=str(_first(item, "district", "ilce", "district_name") or "").strip(),
                    lat=_as_float(_first(item, "lat", "latitude", "enlem")),
                    lng=_as_float(_first(item, "lng", "lon", "longitude", "boylam")),
                    duty_date=self._date(item, f"row {i}", warnings),
                    fetched_at=fetched_at,
                )
            )
        return ParseResult(records=records, warnings=warnings, source_date=source_date)

    @staticmethod
    def _date(item: dict, where: str, warnings: list[str]) -> date | None:
        raw = _first(item, "duty_date", "tarih", "date")
        if raw is None:
            return None
        parsed = parse_source_date(str(raw))
        if parsed is None:
            warnings.append(f"{where}: unreadable date {raw!r}")
        return parsed


class ParserRegistry:
    """Parser strategies keyed by SourceEndpoint.parser_key."""

    def __init__(self) -> None:
        self._strategies: dict[str, ParserStrategy] = {}

    def register(self, strategy: ParserStrategy, key: str | None = None) -> None:
        self._strategies[key or strategy.key] = strategy

    def get(self, parser_key: str) -> ParserStrategy:
        strategy = self._strategies.get(parser_key)
        if strategy is None:
            raise ParseError(f"no parser registered for key {parser_key!r}")
        return strategy

    def keys(self) -> list[str]:
        return sorted(self._strategies)


def default_parsers() -> ParserRegistry:
    registry = ParserRegistry()
    registry.register(JsonRecordsParser())
    return registry
