from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..domain.models import CatalogAddon, CatalogDocument, InstalledChannel, InstalledRecord
from .resolver import MANIFEST_MARKER

logger = logging.getLogger("hangar.engine.reconcile")

VERSION_KEYS = ("package_version", "packageVersion", "version")


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def read_manifest_version(folder: Path) -> Optional[str]:
    """First non-empty version string found in <folder>/manifest.json, if any."""
    p = folder / MANIFEST_MARKER
    if not p.is_file():
        return None
    try:
        raw = json.loads(p.read_text(encoding="utf-8-sig"))
    except (OSError, ValueError):
        logger.debug("Unreadable manifest at %s", p)
        return None
    if not isinstance(raw, dict):
        return None
    for key in VERSION_KEYS:
        v = raw.get(key)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return None


def infer_version(paths: Iterable[str]) -> Optional[str]:
    for p in paths:
        v = read_manifest_version(Path(p))
        if v:
            return v
    return None


def infer_channel(addon: Optional[CatalogAddon], version: Optional[str]) -> InstalledChannel:
    """Channel whose catalog version equals `version` exactly, else "unknown"."""
    if addon is None or not version:
        return "unknown"
    for key in addon.available_channels():
        ch = addon.channel(key)
        if ch is not None and ch.version == version:
            return key  # type: ignore[return-value]
    return "unknown"


def build_folder_map(
    catalog: CatalogDocument,
    installed: Optional[Dict[str, InstalledRecord]] = None,
) -> Dict[str, str]:
    """
    folder name (lower-cased) -> addon id.

    Explicit packageFolderNames claim folders first; a folder claimed by more
    than one addon is left out. Addons without explicit names then fall back
    to their own id plus the folder names of their current record, but only
    for folders nobody claimed explicitly.
    """
    installed = installed or {}
    claims: Dict[str, set[str]] = {}
    fallbacks: List[Tuple[str, str]] = []

    for addon in catalog.addons:
        names: List[str] = list(addon.expected_package_folders)
        if names:
            for n in names:
                if n:
                    claims.setdefault(n.lower(), set()).add(addon.id)
            continue
        fallbacks.append((addon.id.lower(), addon.id))
        rec = installed.get(addon.id)
        if rec is not None:
            fallbacks.extend((Path(p).name.lower(), addon.id) for p in rec.installed_paths)

    out: Dict[str, str] = {}
    for folder, owners in sorted(claims.items()):
        if len(owners) == 1:
            out[folder] = next(iter(owners))
        else:
            logger.warning("Folder %r claimed by several addons %s; ignoring", folder, sorted(owners))

    fallback_claims: Dict[str, set[str]] = {}
    for folder, addon_id in fallbacks:
        if folder and folder not in claims:
            fallback_claims.setdefault(folder, set()).add(addon_id)
    for folder, owners in sorted(fallback_claims.items()):
        if len(owners) == 1:
            out[folder] = next(iter(owners))
        else:
            logger.warning("Folder %r claimed by several addons %s; ignoring", folder, sorted(owners))
    return out


def _list_top_level(base: Path) -> List[Path]:
    return sorted((p for p in base.iterdir() if p.is_dir() and not p.name.startswith(".")), key=lambda p: p.name)


def _prune(installed: Dict[str, InstalledRecord]) -> Dict[str, InstalledRecord]:
    out: Dict[str, InstalledRecord] = {}
    for addon_id in sorted(installed):
        rec = installed[addon_id]
        existing = sorted(p for p in rec.installed_paths if Path(p).exists())
        if not existing:
            logger.info("Reconcile: %s no longer on disk; removing record", addon_id)
            continue
        if existing != rec.installed_paths:
            rec = rec.model_copy(update={"installed_paths": existing})
        out[addon_id] = rec
    return out


def reconcile_installed(
    catalog: CatalogDocument,
    installed: Dict[str, InstalledRecord],
    install_path: Optional[str],
    *,
    now: Callable[[], str] = utcnow_iso,
) -> Dict[str, InstalledRecord]:
    """
    Rebuild installed records from the catalog, the install directory and the
    persisted records. The disk wins. Returns a new dict ordered by addon id;
    running it twice over an unchanged disk returns equal records.
    """
    if not install_path:
        logger.info("Reconcile: install path not set; pruning missing folders only")
        return _prune(installed)

    base = Path(install_path)
    if not catalog.addons:
        logger.warning("Reconcile: catalog is empty; leaving %d record(s) untouched", len(installed))
        return dict(sorted(installed.items()))

    try:
        folders = _list_top_level(base)
    except OSError as e:
        logger.warning("Reconcile: cannot read %s (%s); leaving records untouched", base, e)
        return dict(sorted(installed.items()))

    folder_map = build_folder_map(catalog, installed)
    observed: Dict[str, List[str]] = {}
    for f in folders:
        addon_id = folder_map.get(f.name.lower())
        if addon_id is not None:
            observed.setdefault(addon_id, []).append(str(f))

    out: Dict[str, InstalledRecord] = {}

    for addon_id in sorted(installed):
        rec = installed[addon_id]
        seen = sorted(observed.get(addon_id, []))

        if not seen:
            if any(Path(p).exists() for p in rec.installed_paths):
                # keep as-is; might be a transient read problem
                logger.debug("Reconcile: %s not observed but recorded paths exist; keeping", addon_id)
                out[addon_id] = rec
            else:
                logger.info("Reconcile: %s not found on disk; removing record", addon_id)
            continue

        update: Dict[str, object] = {}
        if seen != rec.installed_paths:
            update["installed_paths"] = seen
        if rec.install_path != str(base):
            update["install_path"] = str(base)

        version = rec.installed_version
        if not version or version == "unknown":
            inferred = infer_version(seen)
            if inferred and inferred != rec.installed_version:
                update["installed_version"] = inferred
                version = inferred

        if rec.installed_channel in (None, "unknown"):
            channel = infer_channel(catalog.find(addon_id), version)
            if channel != rec.installed_channel:
                update["installed_channel"] = channel

        out[addon_id] = rec.model_copy(update=update) if update else rec

    for addon_id in sorted(observed):
        if addon_id in installed:
            continue
        paths = sorted(observed[addon_id])
        version = infer_version(paths) or "unknown"
        channel = infer_channel(catalog.find(addon_id), version)
        logger.info(
            "Reconcile: discovered %s on disk (version=%s channel=%s paths=%s)", addon_id, version, channel, paths
        )
        out[addon_id] = InstalledRecord(
            addon_id=addon_id,
            installed_channel=channel,
            installed_version=version,
            install_path=str(base),
            installed_at=now(),
            installed_paths=paths,
        )

    return dict(sorted(out.items()))
