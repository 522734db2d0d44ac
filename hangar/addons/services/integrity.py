from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Optional

from ..domain.errors import IntegrityError

logger = logging.getLogger("hangar.engine.integrity")

_READ_CHUNK = 1024 * 1024


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(_READ_CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


def verify_sha256(path: Path, expected: str, *, addon_id: Optional[str] = None) -> str:
    """
    Compare the file digest to `expected` (case-insensitive, surrounding
    whitespace ignored). Raises IntegrityError on mismatch.
    """
    actual = sha256_file(path)
    want = (expected or "").strip().lower()
    if actual.lower() != want:
        logger.error("Checksum mismatch for %s: expected=%s actual=%s", path, want, actual)
        raise IntegrityError(expected=expected, actual=actual, addon_id=addon_id)
    logger.debug("Checksum OK for %s (%s)", path, actual)
    return actual
