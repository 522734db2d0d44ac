from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from ..domain.errors import InsufficientSpaceError
from ..domain.models import DiskSpace

logger = logging.getLogger("hangar.engine.diskspace")

SAFETY_FACTOR_TENTHS = 12
SAFETY_MARGIN_BYTES = 200 * 1024 * 1024

DiskSpaceQuery = Callable[[str], DiskSpace]


def get_disk_space(path: Union[str, Path]) -> DiskSpace:
    """
    Free/total bytes for the volume holding `path`. A path that does not exist
    yet is measured on its nearest existing parent.
    """
    p = Path(path)
    while not p.exists() and p.parent != p:
        p = p.parent
    usage = shutil.disk_usage(str(p))
    return DiskSpace(free_bytes=int(usage.free), total_bytes=int(usage.total))


def required_bytes(extracted_bytes: int) -> int:
    # ceil(extracted * 1.2) without float rounding
    n = max(0, int(extracted_bytes))
    return -(-n * SAFETY_FACTOR_TENTHS // 10) + SAFETY_MARGIN_BYTES


def dir_size(path: Path) -> int:
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.path.getsize(os.path.join(root, name))
            except OSError:
                continue
    return total


def total_size(paths: Iterable[Path]) -> int:
    return sum(dir_size(p) for p in paths)


def ensure_space(
    install_path: Union[str, Path],
    extracted_bytes: int,
    *,
    query: Optional[DiskSpaceQuery] = None,
) -> int:
    """
    Raise InsufficientSpaceError unless the install volume can hold
    `extracted_bytes` plus staging overhead. Returns the required byte count.
    """
    need = required_bytes(extracted_bytes)
    space = (query or get_disk_space)(str(install_path))
    logger.info(
        "Disk check: required=%d free=%d total=%d path=%s",
        need,
        space.free_bytes,
        space.total_bytes,
        install_path,
    )
    if space.free_bytes < need:
        raise InsufficientSpaceError(
            required_bytes=need,
            available_bytes=space.free_bytes,
            path=str(install_path),
        )
    return need
