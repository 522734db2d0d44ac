from __future__ import annotations
import logging
logger = logging.getLogger("hangar.store.service")

import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Set

from ...config import HangarConfig, get_config
from ..domain.errors import AddonEngineError, ChannelConflictError
from ..domain.models import (
    AddonInstallResult,
    AppSettings,
    CatalogAddon,
    CatalogDocument,
    DiskSpace,
    InstalledRecord,
    InstallStatus,
    LocalState,
    ProgressEvent,
)
from ..services.diskspace import get_disk_space
from ..services.installer import AddonInstaller
from ..services.progress import ProgressBoard
from ..services.reconcile import reconcile_installed, utcnow_iso
from .catalog_fetcher import CatalogCache, CatalogFetcher, empty_catalog
from .errors import (
    AddonNotFoundError,
    CatalogLoadError,
    ChannelNotAvailableError,
    InstallBusyError,
    InstallPathNotSetError,
)
from .installed_store import StateStore
from .models import (
    CatalogStatus,
    DiskSpaceResponse,
    InstallPathCheck,
    SettingsPatch,
    StoreEntry,
    StoreResponse,
)


class InstallPathGuard:
    """
    Shared/exclusive lock over the install path.

    Installs and uninstalls of different addons hold it shared; reconciliation
    holds it exclusively so it never sees a half-swapped folder.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._shared = 0
        self._exclusive = False

    @contextmanager
    def shared(self) -> Iterator[None]:
        with self._cond:
            while self._exclusive:
                self._cond.wait()
            self._shared += 1
        try:
            yield
        finally:
            with self._cond:
                self._shared -= 1
                self._cond.notify_all()

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        with self._cond:
            while self._exclusive or self._shared > 0:
                self._cond.wait()
            self._exclusive = True
        try:
            yield
        finally:
            with self._cond:
                self._exclusive = False
                self._cond.notify_all()


def install_status(addon: CatalogAddon, record: Optional[InstalledRecord]) -> InstallStatus:
    if record is None:
        return InstallStatus.NOT_INSTALLED
    ch = addon.channel(record.installed_channel) if record.installed_channel else None
    if ch is not None and record.installed_version != "unknown" and ch.version != record.installed_version:
        return InstallStatus.UPDATE_AVAILABLE
    return InstallStatus.INSTALLED


class StoreService:
    """
    Store backed by the remote catalog and the local state file.

    Owns the policies the install engine leaves to its caller: one operation
    per addon at a time, and reconciliation serialized against installs.
    """

    def __init__(
        self,
        config: Optional[HangarConfig] = None,
        *,
        state_store: Optional[StateStore] = None,
        fetcher: Optional[CatalogFetcher] = None,
        cache: Optional[CatalogCache] = None,
        installer: Optional[AddonInstaller] = None,
        progress: Optional[ProgressBoard] = None,
        disk_query: Optional[Callable[[str], DiskSpace]] = None,
    ):
        cfg = config or get_config()
        self.config = cfg
        self.state = state_store or StateStore(cfg.state_path)
        self.cache = cache or CatalogCache(max_age_seconds=cfg.catalog_max_age_seconds)
        self.fetcher = fetcher or CatalogFetcher(
            cfg.catalog_url, cfg.catalog_cache_dir, timeout=cfg.http_timeout_seconds
        )
        self.disk_query = disk_query or get_disk_space
        self.installer = installer or AddonInstaller(
            cfg.temp_dir, timeout=cfg.http_timeout_seconds, disk_query=self.disk_query
        )
        self.progress = progress or ProgressBoard()
        self.path_guard = InstallPathGuard()
        self._busy: Set[str] = set()
        self._busy_lock = threading.Lock()

    # ----------------------------
    # Catalog loading
    # ----------------------------

    def catalog(self, *, force: bool = False) -> CatalogDocument:
        try:
            return self.fetcher.fetch(self.cache, force=force)
        except CatalogLoadError:
            if self.cache.document is not None:
                logger.warning("Catalog refresh failed; keeping the copy in memory")
                return self.cache.document
            raise

    def _catalog_or_empty(self) -> CatalogDocument:
        try:
            return self.catalog()
        except CatalogLoadError as e:
            logger.warning(f"No catalog available: {e}")
            return empty_catalog()

    def startup_load(self) -> None:
        """Best effort: fetch the catalog, then reconcile once."""
        try:
            self.catalog(force=True)
        except CatalogLoadError as e:
            logger.error(f"Catalog load failed at startup: {e}")
        try:
            self.reconcile()
        except Exception:
            logger.exception("Startup reconciliation failed")

    def reload(self) -> CatalogStatus:
        logger.info("Reloading catalog")
        self.cache.invalidate()
        self.fetcher.fetch(self.cache, force=True)
        logger.info("Catalog reloaded successfully")
        return self.get_status()

    # ----------------------------
    # Status + store views
    # ----------------------------

    def get_status(self) -> CatalogStatus:
        doc = self.cache.document
        return CatalogStatus(
            url=self.fetcher.url,
            mode=self.cache.mode if doc is not None else "empty",
            loaded=doc is not None,
            addons_count=len(doc.addons) if doc is not None else 0,
            generated_at=doc.generated_at if doc is not None else None,
            last_loaded_at=self.cache.last_loaded_at,
            error=self.cache.error,
        )

    def _entry_for_addon(self, addon: CatalogAddon, record: Optional[InstalledRecord]) -> StoreEntry:
        channels = addon.available_channels()
        latest = None
        if channels:
            ch = addon.channel(record.installed_channel) if record and record.installed_channel else None
            latest = (ch or addon.channel(channels[0])).version
        return StoreEntry(
            addon=addon,
            status=install_status(addon, record),
            channels=channels,
            installed=record,
            latest_version=latest,
        )

    def get_store(self, q: Optional[str] = None) -> StoreResponse:
        logger.debug("Building store view")
        doc = self._catalog_or_empty()
        installed = self.state.get_installed()

        entries: List[StoreEntry] = [self._entry_for_addon(a, installed.get(a.id)) for a in doc.addons]

        if q:
            qq = q.lower().strip()
            entries = [
                e
                for e in entries
                if qq in e.addon.id.lower()
                or qq in e.addon.name.lower()
                or qq in (e.addon.description or "").lower()
            ]

        entries.sort(key=lambda e: e.addon.id)
        return StoreResponse(catalog=self.get_status(), addons=entries)

    def get_store_item(self, addon_id: str) -> StoreEntry:
        addon = self._catalog_or_empty().find(addon_id)
        if addon is None:
            raise AddonNotFoundError(f"Addon not found in store: {addon_id}")
        return self._entry_for_addon(addon, self.state.get_record(addon_id))

    def get_progress(self, addon_id: str) -> Optional[ProgressEvent]:
        return self.progress.get(addon_id)

    # ----------------------------
    # Install / uninstall
    # ----------------------------

    @contextmanager
    def _operation(self, addon_id: str) -> Iterator[None]:
        with self._busy_lock:
            if addon_id in self._busy:
                raise InstallBusyError(f"An operation is already running for {addon_id}")
            self._busy.add(addon_id)
        try:
            with self.path_guard.shared():
                yield
        finally:
            with self._busy_lock:
                self._busy.discard(addon_id)

    def install_path(self) -> str:
        path = self.state.get_settings().effective_install_path
        if not path:
            raise InstallPathNotSetError("Install path is not set")
        return path

    def install_from_store(self, addon_id: str, channel: str = "stable") -> AddonInstallResult:
        logger.info(f"Installing addon from store: id={addon_id}, channel={channel}")
        addon = self.catalog().find(addon_id)
        if addon is None:
            raise AddonNotFoundError(f"Addon not found in store: {addon_id}")
        if addon.channel(channel) is None:
            raise ChannelNotAvailableError(f"Channel '{channel}' is not available for {addon_id}")
        dest = self.install_path()

        with self._operation(addon_id):
            existing = self.state.get_record(addon_id)
            self.progress.clear(addon_id)
            try:
                outcome = self.installer.install(addon, channel, dest, existing=existing, sink=self.progress)
            except ChannelConflictError:
                raise
            except AddonEngineError as e:
                logger.warning(f"Failed to install addon: id={addon_id}, code={e.code}, error={e}")
                return AddonInstallResult(
                    status="failed",
                    addon_id=addon_id,
                    channel=channel,
                    error_code=e.code,
                    errors=[str(e)],
                    details=e.details(),
                )
            except Exception as e:
                logger.exception(f"Unexpected install failure: id={addon_id}")
                return AddonInstallResult(
                    status="failed",
                    addon_id=addon_id,
                    channel=channel,
                    error_code="unexpected_error",
                    errors=[str(e)],
                )

            record = InstalledRecord(
                addon_id=addon_id,
                installed_channel=channel,
                installed_version=outcome.installed_version,
                install_path=dest,
                installed_at=utcnow_iso(),
                installed_paths=outcome.installed_paths,
            )
            self.state.set_installed(addon_id, record)

        logger.info(f"Addon installed successfully: id={addon_id}")
        return AddonInstallResult(status="installed", addon_id=addon_id, channel=channel, record=record)

    def uninstall_from_store(self, addon_id: str) -> AddonInstallResult:
        record = self.state.get_record(addon_id)
        if record is None:
            raise AddonNotFoundError(f"Addon is not installed: {addon_id}")

        logger.info("Uninstall requested: addon_id=%s", addon_id)
        with self._operation(addon_id):
            self.progress.clear(addon_id)
            try:
                warnings = self.installer.uninstall(record, sink=self.progress)
            except AddonEngineError as e:
                logger.warning(f"Failed to uninstall addon: id={addon_id}, error={e}")
                return AddonInstallResult(
                    status="failed",
                    addon_id=addon_id,
                    channel=record.installed_channel,
                    error_code=e.code,
                    errors=[str(e)],
                    details=e.details(),
                )
            self.state.set_installed(addon_id, None)

        return AddonInstallResult(
            status="uninstalled",
            addon_id=addon_id,
            channel=record.installed_channel,
            warnings=warnings,
        )

    # ----------------------------
    # Reconciliation
    # ----------------------------

    def reconcile(self) -> LocalState:
        doc = self._catalog_or_empty()
        with self.path_guard.exclusive():
            state = self.state.load()
            rebuilt = reconcile_installed(doc, state.installed, state.settings.effective_install_path)
            if self.state.replace_installed(rebuilt):
                logger.info(f"Reconciled installed records: {sorted(rebuilt)}")
            else:
                logger.debug("Reconcile: no changes")
        return self.state.load()

    # ----------------------------
    # Settings + system
    # ----------------------------

    def get_state(self) -> LocalState:
        return self.state.load()

    def update_settings(self, patch: SettingsPatch) -> AppSettings:
        changes = patch.model_dump(exclude_unset=True)
        for key in ("community_path", "install_path"):
            if key in changes and isinstance(changes[key], str):
                changes[key] = changes[key].strip() or None
        if changes.get("install_path_mode") == "followCommunity" and "install_path" not in changes:
            changes["install_path"] = None
        logger.info(f"Updating settings: {sorted(changes)}")
        return self.state.update_settings(**changes)

    def test_install_path(self) -> InstallPathCheck:
        path = self.state.get_settings().effective_install_path
        if not path:
            return InstallPathCheck(path=None, error="Install path is not set")
        p = Path(path)
        if not p.is_dir():
            return InstallPathCheck(path=path, error="Install path does not exist or is not a directory")
        writable = os.access(p, os.W_OK)
        return InstallPathCheck(
            path=path,
            exists=True,
            writable=writable,
            error=None if writable else "Install path is not writable",
        )

    def disk_space(self, path: Optional[str] = None) -> DiskSpaceResponse:
        target = path or self.install_path()
        space = self.disk_query(target)
        return DiskSpaceResponse(path=target, free_bytes=space.free_bytes, total_bytes=space.total_bytes)
