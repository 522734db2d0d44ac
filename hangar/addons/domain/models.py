#hangar/addons/domain/models.py
from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


CATALOG_SCHEMA_VERSION = 1

ChannelKey = Literal["stable", "beta", "dev"]
CHANNEL_KEYS: tuple[str, ...] = ("stable", "beta", "dev")

# installed_channel is "unknown" when reconciliation could not match the on-disk version
InstalledChannel = Literal["stable", "beta", "dev", "unknown"]


# -----------------------------
# Enums
# -----------------------------

class InstallPhase(str, Enum):
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    EXTRACTING = "extracting"
    INSTALLING = "installing"
    UNINSTALLING = "uninstalling"
    DONE = "done"


class InstallStatus(str, Enum):
    NOT_INSTALLED = "not_installed"
    INSTALLED = "installed"
    UPDATE_AVAILABLE = "update_available"


# -----------------------------
# Catalog (remote, read-only)
# -----------------------------

class CatalogCategory(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    icon: Optional[str] = None


class CatalogAddonChannel(BaseModel):
    """
    One release track of an addon.

    The catalog JSON is camelCase; python attributes are snake_case.
    `zipUrl` is preferred, `url` is the legacy spelling of the same thing.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    version: str
    zip_url: Optional[str] = Field(default=None, alias="zipUrl")
    url: Optional[str] = None
    sha256: str
    size_bytes: Optional[int] = Field(default=None, alias="sizeBytes")
    installed_size_bytes: Optional[int] = Field(default=None, alias="installedSizeBytes")
    release_notes_url: Optional[str] = Field(default=None, alias="releaseNotesUrl")

    @property
    def download_url(self) -> Optional[str]:
        return self.zip_url or self.url

    @property
    def digest_hex(self) -> str:
        return self.sha256

    @property
    def size_hint_bytes(self) -> Optional[int]:
        """Best known extracted size, used for the early disk-space preflight."""
        if self.installed_size_bytes:
            return self.installed_size_bytes
        return self.size_bytes or None


class CatalogAddon(BaseModel):
    """
    A single addon entry in the catalog.

    - packageFolderNames: folders this addon installs into the install path.
      Empty means "detect from the archive".
    - allowRawInstall: permits the permissive resolver policy (archives without
      package manifest markers).
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    name: str
    description: str = ""
    category_id: Optional[str] = Field(default=None, alias="categoryId")
    banner_url: Optional[str] = Field(default=None, alias="bannerUrl")
    screenshot_url: Optional[str] = Field(default=None, alias="screenshotUrl")

    package_folder_names: List[str] = Field(default_factory=list, alias="packageFolderNames")
    allow_raw_install: bool = Field(default=False, alias="allowRawInstall")

    channels: Dict[str, Optional[CatalogAddonChannel]] = Field(default_factory=dict)

    @property
    def expected_package_folders(self) -> List[str]:
        return list(self.package_folder_names)

    @property
    def allow_permissive_install(self) -> bool:
        return self.allow_raw_install is True

    def channel(self, key: str) -> Optional[CatalogAddonChannel]:
        return self.channels.get(key)

    def available_channels(self) -> List[str]:
        return [k for k in CHANNEL_KEYS if self.channels.get(k) is not None]


class CatalogDocument(BaseModel):
    """
    Catalog document (the full remote file).
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    schema_version: int = Field(alias="schemaVersion")
    generated_at: Optional[str] = Field(default=None, alias="generatedAt")
    categories: List[CatalogCategory] = Field(default_factory=list)
    addons: List[CatalogAddon] = Field(default_factory=list)

    def find(self, addon_id: str) -> Optional[CatalogAddon]:
        for addon in self.addons:
            if addon.id == addon_id:
                return addon
        return None


# -----------------------------
# Persisted local state
# -----------------------------

class InstalledRecord(BaseModel):
    """
    What we believe is installed for one addon.

    installed_paths is a cache of absolute folder paths under install_path;
    the disk is authoritative and reconciliation refreshes it.
    """
    model_config = ConfigDict(extra="ignore")

    addon_id: str
    installed_channel: Optional[InstalledChannel] = None
    installed_version: str = "unknown"
    install_path: Optional[str] = None
    installed_at: str
    installed_paths: List[str] = Field(default_factory=list)


class AppSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    community_path: Optional[str] = None
    # Install destination; falls back to community_path when unset.
    install_path: Optional[str] = None
    install_path_mode: Literal["followCommunity", "custom"] = "followCommunity"

    @property
    def effective_install_path(self) -> Optional[str]:
        return self.install_path or self.community_path


class LocalState(BaseModel):
    settings: AppSettings = Field(default_factory=AppSettings)
    installed: Dict[str, InstalledRecord] = Field(default_factory=dict)


# -----------------------------
# Engine value types
# -----------------------------

class InstallUnit(BaseModel):
    """One directory that becomes one top-level folder under the install path."""
    model_config = ConfigDict(frozen=True)

    folder_name: str
    source_path: Path


class DiskSpace(BaseModel):
    free_bytes: int
    total_bytes: int


class ProgressEvent(BaseModel):
    """
    Observational progress snapshot. Never persisted.
    """
    addon_id: str
    phase: InstallPhase
    percent: Optional[float] = None
    transferred_bytes: Optional[int] = None
    total_bytes: Optional[int] = None
    overall_percent: Optional[float] = None
    message: Optional[str] = None


class InstallOutcome(BaseModel):
    installed_paths: List[str]
    installed_version: str


# -----------------------------
# Install / uninstall result models
# -----------------------------

class AddonInstallResult(BaseModel):
    # Accept 'uninstalled' here because the uninstall flow returns that status.
    status: Literal["installed", "failed", "uninstalled"]
    addon_id: str
    channel: Optional[str] = None
    record: Optional[InstalledRecord] = None
    error_code: Optional[str] = None
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)
