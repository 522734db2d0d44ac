from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional

from ..domain.models import InstallPhase, ProgressEvent

logger = logging.getLogger("hangar.engine.progress")

ProgressSink = Callable[[ProgressEvent], None]

# Phases only move forward within one operation.
_PHASE_RANK: Dict[InstallPhase, int] = {
    InstallPhase.DOWNLOADING: 0,
    InstallPhase.VERIFYING: 1,
    InstallPhase.EXTRACTING: 2,
    InstallPhase.INSTALLING: 3,
    InstallPhase.UNINSTALLING: 3,
    InstallPhase.DONE: 4,
}

DEFAULT_MIN_INTERVAL = 0.1
HEARTBEAT_INTERVAL = 0.25


def clamp_pct(p: Optional[float]) -> Optional[float]:
    if p is None:
        return None
    try:
        n = float(p)
    except (TypeError, ValueError):
        return 0.0
    if n != n:  # NaN
        return 0.0
    return max(0.0, min(100.0, n))


def map_overall(phase: InstallPhase, phase_percent: Optional[float]) -> Optional[float]:
    """
    Project a phase-local percent onto the whole install:
    download 0-60, verify 60, extract 60-85, install 85-100.
    """
    if phase == InstallPhase.VERIFYING:
        return 60.0
    if phase == InstallPhase.DONE:
        return 100.0

    p = clamp_pct(phase_percent)
    if p is None:
        return None
    if phase == InstallPhase.DOWNLOADING:
        return p * 0.6
    if phase == InstallPhase.EXTRACTING:
        return 60 + p * 0.25
    if phase == InstallPhase.INSTALLING:
        return 85 + p * 0.15
    if phase == InstallPhase.UNINSTALLING:
        return p
    return None


class ProgressReporter:
    """
    Single typed event channel for one addon operation.

    Guarantees toward the sink:
    - phase never moves backwards (late events of an earlier phase are dropped)
    - overall_percent never decreases
    - throttled emissions are coalesced to one per min_interval per phase;
      forced and terminal emissions always go through
    Sink failures are logged and otherwise ignored.
    """

    def __init__(
        self,
        addon_id: str,
        sink: Optional[ProgressSink] = None,
        *,
        min_interval: float = DEFAULT_MIN_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.addon_id = addon_id
        self.sink = sink
        self.min_interval = min_interval
        self.clock = clock
        self._lock = threading.Lock()
        self._phase: Optional[InstallPhase] = None
        self._overall: Optional[float] = None
        self._last_emit_at: Dict[InstallPhase, float] = {}

    @property
    def phase(self) -> Optional[InstallPhase]:
        return self._phase

    @property
    def overall_percent(self) -> Optional[float]:
        return self._overall

    def emit(
        self,
        phase: InstallPhase,
        percent: Optional[float] = None,
        *,
        transferred_bytes: Optional[int] = None,
        total_bytes: Optional[int] = None,
        message: Optional[str] = None,
        throttle: bool = False,
        force: bool = False,
    ) -> bool:
        """Returns True if the event was delivered."""
        pct = clamp_pct(percent)
        with self._lock:
            if self._phase is not None and _PHASE_RANK[phase] < _PHASE_RANK[self._phase]:
                return False

            now = self.clock()
            terminal = phase == InstallPhase.DONE or pct == 100.0
            if throttle and not force and not terminal and phase == self._phase:
                prev = self._last_emit_at.get(phase)
                if prev is not None and now - prev < self.min_interval:
                    return False

            mapped = map_overall(phase, pct)
            if mapped is not None:
                self._overall = mapped if self._overall is None else max(self._overall, mapped)

            self._phase = phase
            self._last_emit_at[phase] = now

            event = ProgressEvent(
                addon_id=self.addon_id,
                phase=phase,
                percent=pct,
                transferred_bytes=transferred_bytes,
                total_bytes=total_bytes,
                overall_percent=self._overall,
                message=message,
            )

        self._deliver(event)
        return True

    def fail(self, reason: str) -> None:
        """Last word of a failed operation: same phase, same overall."""
        with self._lock:
            phase = self._phase or InstallPhase.DOWNLOADING
            event = ProgressEvent(
                addon_id=self.addon_id,
                phase=phase,
                overall_percent=self._overall,
                message=f"Install failed: {reason}",
            )
        self._deliver(event)

    def _deliver(self, event: ProgressEvent) -> None:
        if self.sink is None:
            return
        try:
            self.sink(event)
        except Exception:
            logger.warning("Progress sink raised for %s; event dropped", self.addon_id, exc_info=True)


class Heartbeat:
    """
    Calls `tick` every `interval` seconds on a daemon thread while active.
    Used when an operation has no knowable totals so the UI never looks frozen.
    """

    def __init__(self, tick: Callable[[], None], interval: float = HEARTBEAT_INTERVAL, enabled: bool = True):
        self.tick = tick
        self.interval = interval
        self.enabled = enabled
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.tick()
            except Exception:
                logger.debug("Heartbeat tick failed", exc_info=True)

    def __enter__(self) -> "Heartbeat":
        if self.enabled:
            self._thread = threading.Thread(target=self._run, name="hangar-heartbeat", daemon=True)
            self._thread.start()
        return self

    def __exit__(self, *exc) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval * 4)


class ProgressBoard:
    """
    In-process sink that keeps the latest event per addon (read by the API).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._latest: Dict[str, ProgressEvent] = {}

    def __call__(self, event: ProgressEvent) -> None:
        with self._lock:
            self._latest[event.addon_id] = event

    def get(self, addon_id: str) -> Optional[ProgressEvent]:
        with self._lock:
            return self._latest.get(addon_id)

    def clear(self, addon_id: str) -> None:
        with self._lock:
            self._latest.pop(addon_id, None)
