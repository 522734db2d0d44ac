from __future__ import annotations
import logging
logger = logging.getLogger("hangar.store.normalize")

from typing import List

from ..domain.models import CatalogAddon, CatalogDocument


def _check_folder_name(addon_id: str, name: str) -> str:
    n = name.strip()
    if not n or "/" in n or "\\" in n or ".." in n:
        logger.error(f"Invalid package folder name for {addon_id}: {name!r}")
        raise ValueError(f"Invalid package folder name (no separators or '..'): {name!r}")
    return n


def normalize_catalog_entry(addon: CatalogAddon) -> CatalogAddon:
    logger.debug(f"Normalizing CatalogAddon: id={addon.id}, name={addon.name}")

    if not addon.id or "/" in addon.id or "\\" in addon.id or ".." in addon.id:
        raise ValueError(f"Invalid addon id: {addon.id!r}")

    folders = [_check_folder_name(addon.id, f) for f in addon.package_folder_names if f and f.strip()]

    channels = {}
    for key, ch in addon.channels.items():
        if ch is None:
            channels[key] = None
            continue
        digest = (ch.sha256 or "").strip().lower()
        if digest != ch.sha256:
            ch = ch.model_copy(update={"sha256": digest})
        channels[key] = ch

    logger.info(f"CatalogAddon {addon.id} normalized successfully")
    return addon.model_copy(update={"package_folder_names": folders, "channels": channels})


def normalize_catalog(doc: CatalogDocument) -> CatalogDocument:
    """
    Normalize every entry. Invalid entries and duplicate ids (first wins) are
    dropped with a log line instead of failing the whole catalog.
    """
    seen = set()
    kept: List[CatalogAddon] = []
    for addon in doc.addons:
        if addon.id in seen:
            logger.warning(f"Duplicate addon id in catalog, keeping the first: {addon.id}")
            continue
        try:
            norm = normalize_catalog_entry(addon)
        except ValueError as e:
            logger.warning(f"Dropping catalog entry {addon.id}: {e}")
            continue
        seen.add(addon.id)
        kept.append(norm)
    return doc.model_copy(update={"addons": kept})
