"""Fetch and extract boundaries, with an httpx fetcher and a JSON extractor."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Dict, Mapping, Protocol

import httpx
import structlog
from pydantic import ValidationError

from ..config import ProxyConfig, SourceConfig
from ..entities import CVRecord, SourceRef, utcnow
from ..errors import ExtractionError, classify_exception, classify_status


@dataclass(slots=True)
class FetchResult:
    """Raw payload plus timing returned by a fetcher."""

    url: str
    status_code: int
    text: str
    headers: Dict[str, str] = field(default_factory=dict)
    elapsed_ms: float = 0.0
    proxy: str | None = None


@dataclass(slots=True)
class ExtractedCandidate:
    """Field candidates for one CV, each with an extraction confidence."""

    fields: dict[str, Any]
    confidence: dict[str, float] = field(default_factory=dict)
    external_id: str | None = None
    url: str | None = None


class Fetcher(Protocol):
    def fetch(
        self, url: str, headers: Mapping[str, str], proxy: ProxyConfig | None, timeout: float | None = None
    ) -> FetchResult: ...


class Extractor(Protocol):
    def extract(self, payload: str, selectors: Mapping[str, str]) -> list[ExtractedCandidate]: ...


class HttpFetcher:
    """httpx-backed fetcher; failures surface as classified FetchErrors."""

    def __init__(self, timeout: float = 30.0, headers: Mapping[str, str] | None = None) -> None:
        self.timeout = timeout
        self.headers = dict(headers or {})
        self._clients: dict[str | None, httpx.Client] = {}
        self._lock = Lock()
        self.logger = structlog.get_logger("cv_crawler.fetcher")

    def _client(self, proxy: ProxyConfig | None) -> httpx.Client:
        key = proxy.url if proxy else None
        with self._lock:
            client = self._clients.get(key)
            if client is None:
                client = httpx.Client(
                    follow_redirects=True,
                    timeout=self.timeout,
                    headers=self.headers or None,
                    proxy=key,
                )
                self._clients[key] = client
            return client

    def fetch(
        self, url: str, headers: Mapping[str, str], proxy: ProxyConfig | None, timeout: float | None = None
    ) -> FetchResult:
        """GET ``url``; ``timeout`` overrides the client default for this request only."""

        options = {} if timeout is None else {"timeout": timeout}
        started = time.perf_counter()
        try:
            response = self._client(proxy).get(url, headers=dict(headers), **options)
        except httpx.HTTPError as exc:
            raise classify_exception(exc) from exc
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        error = classify_status(response.status_code)
        if error is not None:
            self.logger.warning("fetch_failed", url=url, status_code=response.status_code)
            raise error
        return FetchResult(
            url=str(response.url),
            status_code=response.status_code,
            text=response.text,
            headers=dict(response.headers),
            elapsed_ms=elapsed_ms,
            proxy=proxy.key if proxy else None,
        )

    def probe(self, source: SourceConfig) -> float:
        """Heartbeat request against the source's base URL; returns latency in ms."""

        started = time.perf_counter()
        try:
            response = self._client(None).head(source.base_url, headers=source.request_headers)
        except httpx.HTTPError as exc:
            raise classify_exception(exc) from exc
        if response.status_code >= 500:
            raise classify_status(response.status_code)  # type: ignore[misc]
        return round((time.perf_counter() - started) * 1000, 2)

    def close(self) -> None:
        with self._lock:
            for client in self._clients.values():
                client.close()
            self._clients.clear()


def _dig(data: Any, path: str) -> Any:
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


class JsonExtractor:
    """Map JSON API payloads to field candidates using dotted-path selectors.

    ``items`` selects the list of profiles (the payload root when omitted),
    ``external_id`` and ``url`` select provenance, and every other key maps a
    CV field path such as ``contact.email`` to a path inside one item.
    """

    RESERVED = ("items", "external_id", "url")

    def extract(self, payload: str, selectors: Mapping[str, str]) -> list[ExtractedCandidate]:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ExtractionError(f"Payload is not valid JSON: {exc}") from exc
        items = _dig(data, selectors["items"]) if "items" in selectors else data
        if items is None:
            return []
        if not isinstance(items, list):
            raise ExtractionError("Selected items are not a list")
        candidates: list[ExtractedCandidate] = []
        for item in items:
            fields: dict[str, Any] = {}
            confidence: dict[str, float] = {}
            for target, path in selectors.items():
                if target in self.RESERVED:
                    continue
                value = _dig(item, path)
                if value not in (None, "", []):
                    fields[target] = value
                    confidence[target] = 1.0
            external_id = _dig(item, selectors["external_id"]) if "external_id" in selectors else None
            url = _dig(item, selectors["url"]) if "url" in selectors else None
            candidates.append(
                ExtractedCandidate(
                    fields=fields,
                    confidence=confidence,
                    external_id=str(external_id) if external_id is not None else None,
                    url=url,
                )
            )
        return candidates


def candidate_to_record(
    candidate: ExtractedCandidate,
    source_id: str,
    url: str | None = None,
    raw: Mapping[str, Any] | None = None,
    scraped_at: datetime | None = None,
) -> CVRecord:
    """Build a CVRecord from dotted field candidates; raises ExtractionError when invalid."""

    payload: dict[str, Any] = {}
    for path, value in candidate.fields.items():
        target = payload
        parts = path.split(".")
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        target[parts[-1]] = value
    payload["source"] = SourceRef(
        source_id=source_id,
        external_id=candidate.external_id,
        url=candidate.url or url,
        scraped_at=scraped_at or utcnow(),
    )
    payload["raw_payload"] = dict(raw or candidate.fields)
    try:
        return CVRecord.model_validate(payload)
    except ValidationError as exc:
        raise ExtractionError(f"Candidate from {source_id} failed validation: {exc.error_count()} errors") from exc


__all__ = [
    "ExtractedCandidate",
    "Extractor",
    "FetchResult",
    "Fetcher",
    "HttpFetcher",
    "JsonExtractor",
    "candidate_to_record",
]
