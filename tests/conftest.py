"""
Shared fixtures for hangar tests.

Archives are built on the fly with zipfile; HTTP is faked with small
stand-ins for requests.Session / requests.Response.
"""

import hashlib
import io
import json
import zipfile
from pathlib import Path
from typing import Dict, Iterable, Optional, Union

import pytest

from hangar.addons.domain.models import CatalogDocument, DiskSpace
from hangar.addons.services.installer import AddonInstaller
from hangar.addons.store.catalog_fetcher import CatalogFetcher
from hangar.addons.store.models import SettingsPatch
from hangar.addons.store.service import StoreService
from hangar.config import HangarConfig


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: exercises several engine stages together")


def build_zip(entries: Dict[str, Union[bytes, str, None]]) -> bytes:
    """name -> content; a trailing '/' or None content makes a directory entry."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, data in entries.items():
            if data is None or name.endswith("/"):
                zf.writestr(name if name.endswith("/") else name + "/", b"")
            else:
                zf.writestr(name, data.encode("utf-8") if isinstance(data, str) else data)
    return buf.getvalue()


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def manifest(version: str = "1.0.0") -> str:
    return json.dumps({"package_version": version, "title": "Test package"})


class FakeResponse:
    def __init__(
        self,
        body: bytes = b"",
        status_code: int = 200,
        headers: Optional[dict] = None,
        chunk_size: Optional[int] = None,
    ):
        self.body = body
        self.status_code = status_code
        self.headers = dict(headers or {})
        self._chunk = chunk_size

    @property
    def text(self) -> str:
        return self.body.decode("utf-8")

    def iter_content(self, chunk_size: int = 1) -> Iterable[bytes]:
        size = self._chunk or chunk_size
        for i in range(0, len(self.body), size):
            yield self.body[i : i + size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """Serves canned responses by URL and records each request."""

    def __init__(self, routes: Optional[Dict[str, FakeResponse]] = None):
        self.routes = dict(routes or {})
        self.calls = []
        self.closed = False

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        resp = self.routes.get(url)
        if resp is None:
            return FakeResponse(b"not found", status_code=404)
        return resp

    def close(self):
        self.closed = True


def fake_disk(free_bytes: int, total_bytes: int = 2 * 10**12):
    def query(_path: str) -> DiskSpace:
        return DiskSpace(free_bytes=free_bytes, total_bytes=total_bytes)

    return query


def catalog_dict(addons: Iterable[dict]) -> dict:
    return {
        "schemaVersion": 1,
        "generatedAt": "2026-01-01T00:00:00Z",
        "categories": [{"id": "scenery", "name": "Scenery"}],
        "addons": list(addons),
    }


def addon_dict(
    addon_id: str,
    *,
    folders=None,
    raw: bool = False,
    channels: Optional[dict] = None,
) -> dict:
    d = {
        "id": addon_id,
        "name": addon_id.replace("-", " ").title(),
        "description": f"{addon_id} description",
        "categoryId": "scenery",
        "allowRawInstall": raw,
        "channels": channels or {},
    }
    if folders is not None:
        d["packageFolderNames"] = list(folders)
    return d


def channel_dict(version: str, url: str, digest: str, **extra) -> dict:
    d = {"version": version, "zipUrl": url, "sha256": digest}
    d.update(extra)
    return d


@pytest.fixture
def install_dir(tmp_path: Path) -> Path:
    d = tmp_path / "Community"
    d.mkdir()
    return d


@pytest.fixture
def make_catalog():
    def _make(*addons: dict) -> CatalogDocument:
        return CatalogDocument.model_validate(catalog_dict(addons))

    return _make


# Store-level fixtures: a two-addon catalog served by a fake session.

CATALOG_URL = "https://addons.example.com/catalog.json"
ZIP_URL = "https://cdn.example.com/airport-1.0.0.zip"
BETA_URL = "https://cdn.example.com/airport-1.1.0.zip"

STABLE_ZIP = build_zip({"Airport/manifest.json": manifest("1.0.0"), "Airport/scenery.bgl": "stable"})
BETA_ZIP = build_zip({"Airport/manifest.json": manifest("1.1.0"), "Airport/scenery.bgl": "beta"})


def catalog_body(stable_version="1.0.0"):
    return json.dumps(
        catalog_dict(
            [
                addon_dict(
                    "airport",
                    folders=["Airport"],
                    channels={
                        "stable": channel_dict(stable_version, ZIP_URL, sha256_hex(STABLE_ZIP)),
                        "beta": channel_dict("1.1.0", BETA_URL, sha256_hex(BETA_ZIP)),
                    },
                ),
                addon_dict("livery", channels={"stable": channel_dict("2.0.0", ZIP_URL, "00")}),
            ]
        )
    ).encode("utf-8")


@pytest.fixture
def session():
    return FakeSession(
        {
            CATALOG_URL: FakeResponse(catalog_body(), headers={"Content-Type": "application/json"}),
            ZIP_URL: FakeResponse(STABLE_ZIP),
            BETA_URL: FakeResponse(BETA_ZIP),
        }
    )


@pytest.fixture
def svc(tmp_path, session, install_dir):
    cfg = HangarConfig(data_dir=tmp_path / "data", log_dir=tmp_path / "logs", catalog_url=CATALOG_URL)
    service = StoreService(
        cfg,
        fetcher=CatalogFetcher(CATALOG_URL, cfg.catalog_cache_dir, session=session),
        installer=AddonInstaller(cfg.temp_dir, session=session, disk_query=fake_disk(10**13), case_insensitive=False),
        disk_query=fake_disk(10**13),
    )
    service.update_settings(SettingsPatch(community_path=str(install_dir)))
    return service
