from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _project_root() -> Path:
    # hangar/config.py -> hangar -> <project root>
    return Path(__file__).resolve().parents[1]


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


DEFAULT_CATALOG_URL = "https://addons.example.com/catalog.json"


@dataclass
class HangarConfig:
    """
    Process configuration, read from the environment once at startup.

    User settings (install path etc.) are NOT here; they live in the
    persisted state file.
    """

    data_dir: Path = field(default_factory=lambda: _project_root() / "data")
    log_dir: Path = field(default_factory=lambda: Path("logs"))
    catalog_url: str = DEFAULT_CATALOG_URL
    catalog_max_age_seconds: float = 15.0
    http_timeout_seconds: float = 30.0

    @property
    def state_path(self) -> Path:
        return self.data_dir / "state.json"

    @property
    def catalog_cache_dir(self) -> Path:
        return self.data_dir / "catalog_cache"

    @property
    def temp_dir(self) -> Path:
        return self.data_dir / "tmp"

    @classmethod
    def from_env(cls) -> "HangarConfig":
        cfg = cls()
        if os.environ.get("HANGAR_DATA_DIR"):
            cfg.data_dir = Path(os.environ["HANGAR_DATA_DIR"]).expanduser()
        if os.environ.get("HANGAR_LOG_DIR"):
            cfg.log_dir = Path(os.environ["HANGAR_LOG_DIR"]).expanduser()
        if os.environ.get("HANGAR_CATALOG_URL"):
            cfg.catalog_url = os.environ["HANGAR_CATALOG_URL"].strip()
        cfg.catalog_max_age_seconds = _env_float("HANGAR_CATALOG_MAX_AGE", cfg.catalog_max_age_seconds)
        cfg.http_timeout_seconds = _env_float("HANGAR_HTTP_TIMEOUT", cfg.http_timeout_seconds)
        return cfg


_config: HangarConfig | None = None


def get_config() -> HangarConfig:
    global _config
    if _config is None:
        _config = HangarConfig.from_env()
    return _config
