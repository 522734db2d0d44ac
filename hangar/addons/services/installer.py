from __future__ import annotations

import logging
import shutil
import time
from pathlib import Path
from typing import List, Optional

import requests

from ...logging_config import AddonLogAdapter
from ..domain.errors import AddonEngineError, ChannelConflictError, InstallTransactionError
from ..domain.models import (
    CatalogAddon,
    CatalogAddonChannel,
    InstalledRecord,
    InstallOutcome,
    InstallPhase,
)
from .diskspace import DiskSpaceQuery, ensure_space, total_size
from .extractor import extract_archive
from .fetcher import DEFAULT_TIMEOUT, download_to_file
from .integrity import verify_sha256
from .progress import ProgressReporter, ProgressSink
from .resolver import PackageResolver
from .transaction import install_units

logger = logging.getLogger("hangar.engine.installer")


def check_channel(addon_id: str, existing: Optional[InstalledRecord], requested: str) -> None:
    """One channel per addon: switching requires an uninstall first."""
    if existing is None:
        return
    current = existing.installed_channel
    if current in (None, "unknown"):
        return
    if current != requested:
        raise ChannelConflictError(addon_id=addon_id, installed_channel=current, requested_channel=requested)


def _under(base: Path, p: Path) -> bool:
    b = base.resolve()
    r = p.resolve()
    return b in r.parents


class AddonInstaller:
    """
    download -> verify -> extract -> resolve -> disk check -> atomic install

    Owns one scratch directory per attempt under `temp_dir`, deleted on every
    exit path. Does not serialize anything; the caller rejects concurrent
    operations on the same addon.
    """

    def __init__(
        self,
        temp_dir: Path,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
        disk_query: Optional[DiskSpaceQuery] = None,
        case_insensitive: Optional[bool] = None,
        min_progress_interval: float = 0.1,
    ):
        self.temp_dir = Path(temp_dir)
        self.session = session
        self.timeout = timeout
        self.disk_query = disk_query
        self.case_insensitive = case_insensitive
        self.min_progress_interval = min_progress_interval

    def _work_dir(self, addon_id: str) -> Path:
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        base = self.temp_dir / f"{addon_id}-{int(time.time() * 1000)}"
        work = base
        n = 1
        while work.exists():
            work = base.with_name(f"{base.name}-{n}")
            n += 1
        work.mkdir(parents=True)
        return work

    def install(
        self,
        addon: CatalogAddon,
        channel_key: str,
        install_path: str,
        *,
        existing: Optional[InstalledRecord] = None,
        sink: Optional[ProgressSink] = None,
    ) -> InstallOutcome:
        addon_id = addon.id
        check_channel(addon_id, existing, channel_key)

        channel: Optional[CatalogAddonChannel] = addon.channel(channel_key)
        if channel is None:
            raise KeyError(f"Channel '{channel_key}' not available for {addon_id}")

        log = AddonLogAdapter(addon_id)
        reporter = ProgressReporter(addon_id, sink, min_interval=self.min_progress_interval)
        dest = Path(install_path)

        log.info(
            "Install requested: channel=%s version=%s dest=%s permissive=%s",
            channel_key,
            channel.version,
            dest,
            addon.allow_permissive_install,
        )

        work: Optional[Path] = None
        try:
            hint = channel.size_hint_bytes
            if hint:
                ensure_space(dest, hint, query=self.disk_query)

            work = self._work_dir(addon_id)
            zip_path = work / "package.zip"
            extract_dir = work / "extract"

            reporter.emit(InstallPhase.DOWNLOADING, 0, total_bytes=channel.size_bytes, message="Starting download…")

            def on_download(transferred: int, total: Optional[int]) -> None:
                total = total or channel.size_bytes
                pct = transferred / total * 100 if total else None
                reporter.emit(
                    InstallPhase.DOWNLOADING,
                    pct,
                    transferred_bytes=transferred,
                    total_bytes=total,
                    message="Downloading…",
                    throttle=True,
                )

            download_to_file(
                channel.download_url or "",
                zip_path,
                on_progress=on_download,
                session=self.session,
                timeout=self.timeout,
            )
            reporter.emit(InstallPhase.DOWNLOADING, 100, message="Download complete", force=True)

            reporter.emit(InstallPhase.VERIFYING, message="Verifying checksum…")
            verify_sha256(zip_path, channel.digest_hex, addon_id=addon_id)
            log.info("Checksum verified")

            extract_archive(zip_path, extract_dir, reporter)

            resolver = PackageResolver(case_insensitive=self.case_insensitive, log=log)
            units = resolver.resolve(
                extract_dir,
                addon_id=addon_id,
                expected_folders=addon.expected_package_folders,
                permissive=addon.allow_permissive_install,
                work_dir=work,
            )

            extracted_bytes = total_size(u.source_path for u in units)
            ensure_space(dest, extracted_bytes, query=self.disk_query)

            paths = install_units(units, dest, reporter=reporter, log=log)

            reporter.emit(InstallPhase.DONE, 100, message="Installed")
            log.info("Installed %s %s into %s", channel_key, channel.version, ", ".join(paths))
            return InstallOutcome(installed_paths=paths, installed_version=channel.version)

        except AddonEngineError as e:
            log.error("Install failed (%s): %s", e.code, e)
            reporter.fail(str(e))
            raise
        except Exception as e:
            log.exception("Install failed")
            reporter.fail(str(e))
            raise
        finally:
            if work is not None:
                shutil.rmtree(work, ignore_errors=True)

    def uninstall(self, record: InstalledRecord, *, sink: Optional[ProgressSink] = None) -> List[str]:
        """
        Remove every recorded folder. Missing folders are skipped. Returns warnings.
        """
        addon_id = record.addon_id
        log = AddonLogAdapter(addon_id)
        reporter = ProgressReporter(addon_id, sink, min_interval=self.min_progress_interval)
        warnings: List[str] = []

        base = Path(record.install_path) if record.install_path else None
        paths = list(record.installed_paths)
        log.info("Uninstall requested: %d path(s)", len(paths))
        reporter.emit(InstallPhase.UNINSTALLING, 0, message="Removing files…")

        for i, raw in enumerate(paths, start=1):
            p = Path(raw)
            if base is None:
                msg = f"Skipped path with no recorded install path: {p}"
                log.warning(msg)
                warnings.append(msg)
            elif not _under(base, p):
                msg = f"Skipped path outside install path: {p}"
                log.warning(msg)
                warnings.append(msg)
            elif not p.exists() and not p.is_symlink():
                msg = f"Already removed: {p}"
                log.warning(msg)
                warnings.append(msg)
            else:
                try:
                    if p.is_dir() and not p.is_symlink():
                        shutil.rmtree(p)
                    else:
                        p.unlink()
                    log.info("Removed %s", p)
                except OSError as e:
                    log.error("Failed removing %s: %s", p, e)
                    reporter.fail(f"could not remove {p}: {e}")
                    raise InstallTransactionError(f"Failed removing {p}: {e}", folder=p.name) from e
            reporter.emit(
                InstallPhase.UNINSTALLING,
                i / len(paths) * 100,
                message=f"Removing ({i}/{len(paths)})",
            )

        reporter.emit(InstallPhase.DONE, 100, message="Uninstalled")
        return warnings
