#hangar/addons/domain/errors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class AddonEngineError(RuntimeError):
    """
    Base class for every failure the install pipeline surfaces.

    - code: stable machine-readable identifier (returned by the API)
    - details(): JSON-safe context so the caller can explain the failure
      without reading logs.
    """

    code = "engine_error"

    def details(self) -> Dict[str, Any]:
        return {}


class DownloadError(AddonEngineError):
    code = "download_failed"

    def __init__(self, message: str, *, url: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code

    def details(self) -> Dict[str, Any]:
        return {"url": self.url, "status_code": self.status_code}


class IntegrityError(AddonEngineError):
    code = "checksum_mismatch"

    def __init__(self, *, expected: str, actual: str, addon_id: Optional[str] = None):
        who = f" for {addon_id}" if addon_id else ""
        super().__init__(f"Checksum mismatch{who}: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual

    def details(self) -> Dict[str, Any]:
        return {"expected": self.expected, "actual": self.actual}


class ArchiveError(AddonEngineError):
    code = "archive_invalid"


class PathTraversalError(ArchiveError):
    code = "path_traversal"

    def __init__(self, *, entry: str, destination: str):
        super().__init__(f"Unsafe path traversal detected: entry {entry!r} resolves to {destination}")
        self.entry = entry
        self.destination = destination

    def details(self) -> Dict[str, Any]:
        return {"entry": self.entry, "destination": self.destination}


class PackageNotFoundError(AddonEngineError):
    code = "package_not_found"

    def __init__(
        self,
        message: str,
        *,
        expected_folders: Sequence[str] = (),
        candidate_roots: Sequence[str] = (),
        detected: Sequence[str] = (),
    ):
        super().__init__(message)
        self.expected_folders: List[str] = list(expected_folders)
        self.candidate_roots: List[str] = list(candidate_roots)
        self.detected: List[str] = list(detected)

    def details(self) -> Dict[str, Any]:
        return {
            "expected_folders": self.expected_folders,
            "candidate_roots": self.candidate_roots,
            "detected": self.detected,
        }


class InsufficientSpaceError(AddonEngineError):
    code = "insufficient_space"

    def __init__(self, *, required_bytes: int, available_bytes: int, path: Optional[str] = None):
        super().__init__(
            f"Not enough disk space. Required={required_bytes} bytes, free={available_bytes} bytes."
        )
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        self.path = path

    def details(self) -> Dict[str, Any]:
        return {
            "required_bytes": self.required_bytes,
            "available_bytes": self.available_bytes,
            "path": self.path,
        }


class InstallTransactionError(AddonEngineError):
    code = "install_failed"

    def __init__(self, message: str, *, folder: Optional[str] = None):
        super().__init__(message)
        self.folder = folder

    def details(self) -> Dict[str, Any]:
        return {"folder": self.folder}


class ChannelConflictError(AddonEngineError):
    code = "channel_conflict"

    def __init__(self, *, addon_id: str, installed_channel: str, requested_channel: str):
        super().__init__(
            f"Channel switch not allowed for {addon_id}: '{installed_channel}' is installed, "
            f"'{requested_channel}' requested. Uninstall current channel first."
        )
        self.addon_id = addon_id
        self.installed_channel = installed_channel
        self.requested_channel = requested_channel

    def details(self) -> Dict[str, Any]:
        return {
            "addon_id": self.addon_id,
            "installed_channel": self.installed_channel,
            "requested_channel": self.requested_channel,
        }
