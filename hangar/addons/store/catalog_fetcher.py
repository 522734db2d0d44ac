from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import requests
from pydantic import ValidationError
from requests import RequestException

from ..domain.models import CATALOG_SCHEMA_VERSION, CatalogDocument
from .errors import CatalogLoadError
from .models import CatalogMode
from .normalize import normalize_catalog

logger = logging.getLogger("hangar.store.catalog_fetcher")


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def empty_catalog() -> CatalogDocument:
    return CatalogDocument(schema_version=CATALOG_SCHEMA_VERSION)


@dataclass
class CatalogCache:
    """
    Caller-owned in-memory catalog cache. `clock` is injectable so freshness
    can be tested without sleeping.
    """

    max_age_seconds: float = 15.0
    clock: Callable[[], float] = time.monotonic
    document: Optional[CatalogDocument] = None
    fetched_at: Optional[float] = None
    mode: CatalogMode = "empty"
    error: Optional[str] = None
    last_loaded_at: Optional[str] = None

    def is_fresh(self) -> bool:
        if self.document is None or self.fetched_at is None:
            return False
        return (self.clock() - self.fetched_at) < self.max_age_seconds

    def store(self, document: CatalogDocument, mode: CatalogMode, error: Optional[str] = None) -> None:
        self.document = document
        self.mode = mode
        self.error = error
        self.fetched_at = self.clock()
        self.last_loaded_at = _utcnow_iso()

    def invalidate(self) -> None:
        self.fetched_at = None


@dataclass
class FetchResult:
    ok: bool
    changed: bool = False
    status_code: int = 0
    body: Optional[str] = None
    headers: dict = field(default_factory=dict)


def _looks_like_html(body: str) -> bool:
    head = body.lstrip()[:200].lower()
    return head.startswith("<!doctype html") or head.startswith("<html") or "<head" in head


def parse_catalog_body(body: str, content_type: Optional[str] = None) -> CatalogDocument:
    """
    Parse and normalize a catalog body. Raises CatalogLoadError for anything
    that is not JSON; a JSON document that is not a catalog becomes empty.
    """
    if content_type and "json" not in content_type.lower():
        if _looks_like_html(body):
            raise CatalogLoadError(
                "Catalog URL returned an HTML page instead of JSON "
                "(check the URL points at the raw catalog file)"
            )
        raise CatalogLoadError(f"Catalog response is not JSON (content-type: {content_type})")

    try:
        raw = json.loads(body)
    except ValueError as e:
        if _looks_like_html(body):
            raise CatalogLoadError("Catalog URL returned an HTML page instead of JSON") from e
        raise CatalogLoadError(f"Catalog is not valid JSON: {e}") from e

    if not isinstance(raw, dict) or "schemaVersion" not in raw or not isinstance(raw.get("addons"), list):
        logger.warning("Catalog document has no schemaVersion/addons; using an empty catalog")
        return empty_catalog()

    try:
        doc = CatalogDocument.model_validate(raw)
    except ValidationError as e:
        logger.warning("Catalog document failed validation; using an empty catalog: %s", e)
        return empty_catalog()

    if doc.schema_version != CATALOG_SCHEMA_VERSION:
        logger.warning("Catalog schemaVersion=%s (expected %s)", doc.schema_version, CATALOG_SCHEMA_VERSION)

    return normalize_catalog(doc)


class CatalogFetcher:
    """Fetch the remote catalog, keep a last-good copy on disk + HTTP conditional headers."""

    def __init__(
        self,
        url: str,
        cache_dir: Path,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ):
        self.url = url
        self.cache_dir = Path(cache_dir)
        self.session = session or requests.Session()
        self.timeout = timeout

    def _cache_json_path(self) -> Path:
        return self.cache_dir / "catalog.json"

    def _cache_headers_path(self) -> Path:
        return self.cache_dir / "catalog.headers.json"

    def _load_cached_headers(self) -> dict:
        p = self._cache_headers_path()
        if not p.exists():
            return {}
        try:
            return json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}

    def _save_cached_headers(self, headers: dict) -> None:
        p = self._cache_headers_path()
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(headers, indent=2), encoding="utf-8")
        tmp.replace(p)

    def _save_cached_catalog(self, body: str) -> None:
        p = self._cache_json_path()
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_suffix(".json.tmp")
        tmp.write_text(body, encoding="utf-8")
        tmp.replace(p)

    def load_cached(self) -> Optional[CatalogDocument]:
        p = self._cache_json_path()
        if not p.exists():
            return None
        try:
            return parse_catalog_body(p.read_text(encoding="utf-8"))
        except (OSError, CatalogLoadError) as e:
            logger.warning("Cached catalog at %s is unusable: %s", p, e)
            return None

    def fetch_remote(self) -> FetchResult:
        headers = {"Accept": "application/json"}
        cached_headers = self._load_cached_headers()

        # Conditional requests only make sense with a cached body to fall back on
        if self._cache_json_path().exists():
            if cached_headers.get("etag"):
                headers["If-None-Match"] = cached_headers["etag"]
            if cached_headers.get("last_modified"):
                headers["If-Modified-Since"] = cached_headers["last_modified"]

        logger.info("Fetching catalog %s", self.url)
        resp = self.session.get(self.url, headers=headers, timeout=self.timeout)
        if resp.status_code == 304:
            logger.debug("Catalog not modified")
            return FetchResult(ok=True, changed=False, status_code=304)
        if resp.status_code < 200 or resp.status_code >= 300:
            raise CatalogLoadError(f"Catalog fetch failed: HTTP {resp.status_code}")

        new_headers = dict(cached_headers)
        if resp.headers.get("ETag"):
            new_headers["etag"] = resp.headers.get("ETag")
        if resp.headers.get("Last-Modified"):
            new_headers["last_modified"] = resp.headers.get("Last-Modified")
        new_headers["last_fetched_at"] = _utcnow_iso()

        return FetchResult(
            ok=True,
            changed=True,
            status_code=resp.status_code,
            body=resp.text,
            headers={"content-type": resp.headers.get("Content-Type"), "cache": new_headers},
        )

    def fetch(self, cache: CatalogCache, *, force: bool = False) -> CatalogDocument:
        """
        Return the catalog, preferring a fresh in-memory copy, then the
        network, then the on-disk last-good copy (offline mode).
        """
        if not force and cache.is_fresh() and cache.document is not None:
            return cache.document

        try:
            result = self.fetch_remote()
            if result.status_code == 304:
                doc = self.load_cached()
                if doc is None:
                    raise CatalogLoadError("Catalog not modified but no cached copy is available")
            else:
                body = result.body or ""
                # Validate before we cache (so cache is always last-good)
                doc = parse_catalog_body(body, result.headers.get("content-type"))
                self._save_cached_catalog(body)
                self._save_cached_headers(result.headers.get("cache") or {})
            cache.store(doc, "online")
            logger.info("Catalog loaded: %d addon(s)", len(doc.addons))
            return doc
        except (RequestException, CatalogLoadError) as e:
            logger.warning("Catalog fetch failed: %s", e)
            cached = self.load_cached()
            if cached is not None:
                logger.info("Using cached catalog (offline): %d addon(s)", len(cached.addons))
                cache.store(cached, "offline", error=str(e))
                return cached
            cache.error = str(e)
            if isinstance(e, CatalogLoadError):
                raise
            raise CatalogLoadError(f"Catalog fetch failed: {e}") from e
