from __future__ import annotations

import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..domain.errors import ArchiveError, PathTraversalError
from ..domain.models import InstallPhase
from .progress import Heartbeat, ProgressReporter

logger = logging.getLogger("hangar.engine.extractor")

_COPY_CHUNK = 1024 * 1024


@dataclass
class ExtractionStats:
    total_bytes: int = 0
    total_files: int = 0
    extracted_bytes: int = 0
    extracted_files: int = 0

    @property
    def has_totals(self) -> bool:
        return self.total_bytes > 0 or self.total_files > 0

    def percent(self) -> Optional[float]:
        if self.total_bytes > 0:
            return self.extracted_bytes / self.total_bytes * 100
        if self.total_files > 0:
            return self.extracted_files / self.total_files * 100
        return None

    def message(self) -> str:
        if self.total_files > 0:
            return f"Extracting ({self.extracted_files}/{self.total_files})"
        return "Extracting…"


def safe_destination(base_dir: Path, entry_name: str) -> Path:
    """
    Resolve `entry_name` under `base_dir`; raise PathTraversalError if the
    result escapes it ("../", absolute paths, drive letters).
    """
    base = base_dir.resolve()
    rel = entry_name.replace("\\", "/")
    dest = (base / rel).resolve()
    if dest != base and base not in dest.parents:
        raise PathTraversalError(entry=entry_name, destination=str(dest))
    return dest


def _is_dir_entry(info: zipfile.ZipInfo) -> bool:
    return info.is_dir() or info.filename.replace("\\", "/").endswith("/")


def scan_archive(zf: zipfile.ZipFile, extract_dir: Path) -> ExtractionStats:
    """
    Read the central directory: totals for progress, and reject unsafe
    entries before anything is written.
    """
    stats = ExtractionStats()
    for info in zf.infolist():
        if not info.filename:
            continue
        safe_destination(extract_dir, info.filename)
        if _is_dir_entry(info):
            continue
        stats.total_files += 1
        stats.total_bytes += max(0, int(info.file_size or 0))
    return stats


def extract_archive(
    zip_path: Path,
    extract_dir: Path,
    reporter: Optional[ProgressReporter] = None,
) -> ExtractionStats:
    """
    Extract `zip_path` entry by entry into the fresh directory `extract_dir`.

    Progress is percent of bytes when known, else percent of files, else a
    heartbeat. File completions and the final 100% are always emitted.
    """
    extract_dir.mkdir(parents=True, exist_ok=True)
    if any(extract_dir.iterdir()):
        raise ArchiveError(f"Extraction directory is not empty: {extract_dir}")

    def emit(stats: ExtractionStats, *, force: bool = False) -> None:
        if reporter is None:
            return
        reporter.emit(
            InstallPhase.EXTRACTING,
            stats.percent(),
            message=stats.message(),
            throttle=True,
            force=force,
        )

    if reporter is not None:
        reporter.emit(InstallPhase.EXTRACTING, 0, message="Preparing extraction…")

    try:
        zf = zipfile.ZipFile(zip_path, "r")
    except zipfile.BadZipFile as e:
        raise ArchiveError(f"Downloaded file is not a valid ZIP archive: {e}") from e

    with zf:
        stats = scan_archive(zf, extract_dir)
        logger.info(
            "Extracting %s -> %s (files=%d bytes=%d)",
            zip_path.name,
            extract_dir,
            stats.total_files,
            stats.total_bytes,
        )
        emit(stats, force=True)

        with Heartbeat(lambda: emit(stats), enabled=not stats.has_totals):
            for info in zf.infolist():
                if not info.filename:
                    continue
                dest = safe_destination(extract_dir, info.filename)

                if _is_dir_entry(info):
                    dest.mkdir(parents=True, exist_ok=True)
                    continue

                dest.parent.mkdir(parents=True, exist_ok=True)
                try:
                    with zf.open(info, "r") as src, dest.open("wb") as out:
                        for chunk in iter(lambda: src.read(_COPY_CHUNK), b""):
                            out.write(chunk)
                            stats.extracted_bytes += len(chunk)
                            emit(stats)
                except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError) as e:
                    raise ArchiveError(f"Corrupt archive entry {info.filename!r}: {e}") from e

                stats.extracted_files += 1
                emit(stats, force=True)

    if reporter is not None:
        final = stats.message() if stats.total_files == 0 else f"Extracting ({stats.total_files}/{stats.total_files})"
        reporter.emit(InstallPhase.EXTRACTING, 100, message=final, force=True)

    logger.info("Extracted %d file(s), %d bytes", stats.extracted_files, stats.extracted_bytes)
    return stats
