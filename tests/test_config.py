import logging

import pytest

from hangar.config import HangarConfig
from hangar.logging_config import AddonLogAdapter


class TestConfig:
    def test_defaults(self, monkeypatch):
        for name in ("HANGAR_DATA_DIR", "HANGAR_CATALOG_URL", "HANGAR_CATALOG_MAX_AGE"):
            monkeypatch.delenv(name, raising=False)
        cfg = HangarConfig.from_env()
        assert cfg.catalog_max_age_seconds == 15.0
        assert cfg.state_path == cfg.data_dir / "state.json"

    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HANGAR_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("HANGAR_CATALOG_URL", " https://mirror.example.com/c.json ")
        monkeypatch.setenv("HANGAR_CATALOG_MAX_AGE", "60")
        cfg = HangarConfig.from_env()
        assert cfg.catalog_cache_dir == tmp_path / "catalog_cache"
        assert cfg.catalog_url == "https://mirror.example.com/c.json"
        assert cfg.catalog_max_age_seconds == 60.0

    def test_bad_number(self, monkeypatch):
        monkeypatch.setenv("HANGAR_HTTP_TIMEOUT", "soon")
        with pytest.raises(ValueError, match="HANGAR_HTTP_TIMEOUT"):
            HangarConfig.from_env()


class TestAddonLogAdapter:
    def test_prefixes_addon_id(self, caplog):
        base = logging.getLogger("test.adapter")
        base.propagate = True
        with caplog.at_level(logging.INFO, logger="test.adapter"):
            AddonLogAdapter("airport", base).info("download started")
        assert caplog.records[-1].getMessage() == "[airport] download started"
