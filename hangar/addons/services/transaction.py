from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

from ..domain.errors import InstallTransactionError
from ..domain.models import InstallPhase, InstallUnit
from .progress import ProgressReporter

logger = logging.getLogger("hangar.engine.transaction")

Log = Union[logging.Logger, logging.LoggerAdapter]

STAGE_SUFFIX = ".stage"
BACKUP_SUFFIX = ".backup"


def stage_path(dest_dir: Path, folder_name: str) -> Path:
    return dest_dir / f".{folder_name}{STAGE_SUFFIX}"


def backup_path(dest_dir: Path, folder_name: str) -> Path:
    return dest_dir / f".{folder_name}{BACKUP_SUFFIX}"


def _move(src: Path, dst: Path) -> None:
    # Same parent directory, so this is a rename.
    shutil.move(str(src), str(dst))


def _rmtree(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


def verify_writable(dest_dir: Path) -> None:
    if not dest_dir.is_dir():
        raise InstallTransactionError(f"Install path does not exist or is not a directory: {dest_dir}")
    if not os.access(dest_dir, os.W_OK):
        raise InstallTransactionError(f"Install path is not writable: {dest_dir}")


@dataclass
class _UnitTxn:
    unit: InstallUnit
    dest: Path
    stage: Path
    backup: Path
    backed_up: bool = False
    committed: bool = False


class _CopyProgress:
    def __init__(self, total_bytes: int, total_files: int, reporter: Optional[ProgressReporter]):
        self.total_bytes = total_bytes
        self.total_files = total_files
        self.copied_bytes = 0
        self.copied_files = 0
        self.reporter = reporter

    def percent(self) -> Optional[float]:
        if self.total_bytes > 0:
            return self.copied_bytes / self.total_bytes * 100
        if self.total_files > 0:
            return self.copied_files / self.total_files * 100
        return None

    def add_file(self, size: int) -> None:
        self.copied_bytes += size
        self.copied_files += 1
        if self.reporter is not None:
            self.reporter.emit(
                InstallPhase.INSTALLING,
                self.percent(),
                transferred_bytes=self.copied_bytes,
                total_bytes=self.total_bytes or None,
                message=f"Installing ({self.copied_files}/{self.total_files})",
                throttle=True,
            )


def _tree_totals(root: Path) -> tuple[int, int]:
    nbytes = 0
    nfiles = 0
    for dirpath, _dirs, files in os.walk(root):
        for name in files:
            nfiles += 1
            try:
                nbytes += os.path.getsize(os.path.join(dirpath, name))
            except OSError:
                pass
    return nbytes, nfiles


def _copy_tree(src: Path, dst: Path, progress: _CopyProgress) -> None:
    dst.mkdir(parents=True, exist_ok=False)
    for dirpath, dirs, files in os.walk(src):
        rel = Path(dirpath).relative_to(src)
        target_dir = dst / rel
        for d in dirs:
            (target_dir / d).mkdir(exist_ok=True)
        for name in files:
            s = Path(dirpath) / name
            t = target_dir / name
            shutil.copy2(s, t)
            progress.add_file(t.stat().st_size)


def install_units(
    units: Sequence[InstallUnit],
    dest_dir: Path,
    *,
    reporter: Optional[ProgressReporter] = None,
    log: Optional[Log] = None,
) -> List[str]:
    """
    Install every unit into `dest_dir` as a single transaction:

    1) drop stale .<name>.stage / .<name>.backup left by an earlier failed run
    2) copy each source into its stage dir
    3) per unit: move the existing dest to backup, move stage to dest
    4) delete backups

    Any failure rolls back every unit (new content removed, backups restored,
    artifacts deleted) and is raised as InstallTransactionError.
    Returns the absolute destination paths.
    """
    log = log or logger
    verify_writable(dest_dir)

    txns = [
        _UnitTxn(
            unit=u,
            dest=dest_dir / u.folder_name,
            stage=stage_path(dest_dir, u.folder_name),
            backup=backup_path(dest_dir, u.folder_name),
        )
        for u in units
    ]

    for t in txns:
        shutil.rmtree(t.stage, ignore_errors=True)
        shutil.rmtree(t.backup, ignore_errors=True)

    total_bytes = 0
    total_files = 0
    for t in txns:
        b, f = _tree_totals(t.unit.source_path)
        total_bytes += b
        total_files += f
    progress = _CopyProgress(total_bytes, total_files, reporter)

    if reporter is not None:
        reporter.emit(InstallPhase.INSTALLING, 0, total_bytes=total_bytes or None, message="Staging files…")

    current: Optional[str] = None
    try:
        for t in txns:
            current = t.unit.folder_name
            log.info("Staging %s -> %s", t.unit.source_path, t.stage)
            _copy_tree(t.unit.source_path, t.stage, progress)

        for t in txns:
            current = t.unit.folder_name
            if t.dest.exists() or t.dest.is_symlink():
                log.info("Backing up existing %s -> %s", t.dest, t.backup)
                _move(t.dest, t.backup)
                t.backed_up = True
            _move(t.stage, t.dest)
            t.committed = True
            log.info("Committed %s", t.dest)

        for t in txns:
            shutil.rmtree(t.backup, ignore_errors=True)
    except Exception as e:
        log.error("Install transaction failed at %s: %s; rolling back", current, e)
        _rollback(txns, log)
        if isinstance(e, InstallTransactionError):
            raise
        raise InstallTransactionError(f"Install failed for {current}: {e}", folder=current) from e

    if reporter is not None:
        reporter.emit(
            InstallPhase.INSTALLING,
            100,
            transferred_bytes=progress.copied_bytes,
            total_bytes=total_bytes or None,
            message="Installed",
            force=True,
        )
    return [str(t.dest) for t in txns]


def _rollback(txns: Sequence[_UnitTxn], log: Log) -> None:
    for t in reversed(txns):
        try:
            if t.committed:
                _rmtree(t.dest)
            if t.backed_up and t.backup.exists():
                if t.dest.exists():
                    _rmtree(t.dest)
                _move(t.backup, t.dest)
                log.info("Restored %s from backup", t.dest)
        except Exception:
            log.exception("Rollback failed for %s", t.dest)
        finally:
            shutil.rmtree(t.stage, ignore_errors=True)
            if not t.backed_up or t.dest.exists():
                shutil.rmtree(t.backup, ignore_errors=True)
