from __future__ import annotations
import logging
logger = logging.getLogger("hangar.store.installed_store")

import json
import threading
from pathlib import Path
from typing import Dict, Optional

from pydantic import ValidationError

from ..domain.models import AppSettings, InstalledRecord, LocalState

_STATE_LOCK = threading.RLock()


class StateStore:
    """
    Persisted local state: settings + installed records, one JSON file.

    The disk is the source of truth for what is installed; this file is a
    cache that reconciliation keeps honest.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> LocalState:
        with _STATE_LOCK:
            if not self.path.exists():
                logger.debug(f"State file does not exist yet: {self.path}")
                return LocalState()
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
                return LocalState.model_validate(raw)
            except (OSError, ValueError, ValidationError) as e:
                logger.error(f"State file unreadable, starting empty: {self.path} ({e})")
                return LocalState()

    def save(self, state: LocalState) -> None:
        body = json.dumps(state.model_dump(mode="json"), indent=2, sort_keys=True) + "\n"
        with _STATE_LOCK:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(body, encoding="utf-8")
            tmp.replace(self.path)
        logger.debug(f"State saved: {len(state.installed)} installed record(s)")

    def get_installed(self) -> Dict[str, InstalledRecord]:
        return dict(self.load().installed)

    def get_record(self, addon_id: str) -> Optional[InstalledRecord]:
        return self.load().installed.get(addon_id)

    def set_installed(self, addon_id: str, record: Optional[InstalledRecord]) -> None:
        """Store `record` for `addon_id`; None removes it."""
        with _STATE_LOCK:
            state = self.load()
            if record is None:
                if state.installed.pop(addon_id, None) is None:
                    return
                logger.info(f"Removed installed record: {addon_id}")
            else:
                state.installed[addon_id] = record
                logger.info(f"Saved installed record: {addon_id} ({record.installed_channel} {record.installed_version})")
            state.installed = dict(sorted(state.installed.items()))
            self.save(state)

    def replace_installed(self, installed: Dict[str, InstalledRecord]) -> bool:
        """Swap the whole installed map. Returns False (and skips the write) when nothing changed."""
        with _STATE_LOCK:
            state = self.load()
            new = dict(sorted(installed.items()))
            if state.installed == new and self.path.exists():
                return False
            state.installed = new
            self.save(state)
            return True

    def get_settings(self) -> AppSettings:
        return self.load().settings

    def update_settings(self, **changes) -> AppSettings:
        with _STATE_LOCK:
            state = self.load()
            state.settings = state.settings.model_copy(update=changes)
            self.save(state)
            return state.settings
