from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic.config import ConfigDict

from ..domain.models import CatalogAddon, ChannelKey, InstalledRecord, InstallStatus

CatalogMode = Literal["online", "offline", "empty"]


# ------------------------------------------------------------------------------
# Store API models
# ------------------------------------------------------------------------------

class StoreInstallRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    addon_id: str
    channel: ChannelKey = "stable"


class StoreUninstallRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    addon_id: str


class StoreEntry(BaseModel):
    """
    Store view row: a catalog addon enriched with local install info.
    """
    model_config = ConfigDict(extra="forbid")

    addon: CatalogAddon
    status: InstallStatus = InstallStatus.NOT_INSTALLED
    channels: List[str] = Field(default_factory=list)
    installed: Optional[InstalledRecord] = None
    latest_version: Optional[str] = None


class StoreResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    catalog: "CatalogStatus"
    addons: List[StoreEntry] = Field(default_factory=list)


class CatalogStatus(BaseModel):
    """
    Status of the remote catalog as seen by this process.
    """
    model_config = ConfigDict(extra="forbid")

    url: str
    mode: CatalogMode = "empty"
    loaded: bool = False
    addons_count: int = 0
    generated_at: Optional[str] = None
    last_loaded_at: Optional[str] = None
    error: Optional[str] = None


class SettingsPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    community_path: Optional[str] = None
    install_path: Optional[str] = None
    install_path_mode: Optional[Literal["followCommunity", "custom"]] = None


class InstallPathCheck(BaseModel):
    path: Optional[str] = None
    exists: bool = False
    writable: bool = False
    error: Optional[str] = None


class DiskSpaceResponse(BaseModel):
    path: str
    free_bytes: int
    total_bytes: int


StoreResponse.model_rebuild()
