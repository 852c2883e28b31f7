from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from loguru import logger

from .driver import MountDriver
from .registry import MountRegistry


DEFAULT_INTERVAL = 30.0


class ReconciliationLoop:
    """
    Background thread that keeps `MountRegistry` in line with the process table.

    - Every `interval` seconds: `driver.list_active()` (no registry lock held),
      then `registry.apply_active()` under the registry's write lock.
    - Enumeration failures are logged and the tick is skipped; the loop keeps
      running. It is the only component allowed to swallow errors.
    - Ticks never overlap: a tick that finds another in flight returns False,
      and deadlines missed while a slow tick ran are skipped, not queued.
    """

    def __init__(
        self,
        driver: MountDriver,
        registry: MountRegistry,
        *,
        interval: float = DEFAULT_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self._driver = driver
        self._registry = registry
        self._interval = interval
        self._clock = clock
        self._tick_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.ticks_completed = 0
        self.ticks_skipped = 0

    @property
    def interval(self) -> float:
        return self._interval

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="rmount-reconciler", daemon=True)
        self._thread.start()
        logger.info(f"Mount reconciliation started (every {self._interval:g}s)")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None

    def tick(self) -> bool:
        """Run one reconciliation now. Returns False if skipped."""
        if not self._tick_lock.acquire(blocking=False):
            self.ticks_skipped += 1
            logger.debug("Reconciliation tick still in flight; skipping")
            return False
        try:
            observed_at = self._clock()
            try:
                active = self._driver.list_active()
            except Exception as exc:
                self.ticks_skipped += 1
                logger.warning(f"Reconciliation skipped, could not enumerate mounts: {exc}")
                return False
            removed = self._registry.apply_active(active, observed_at=observed_at)
            self.ticks_completed += 1
            if removed:
                logger.info(f"Reconciliation dropped {len(removed)} stale mount(s): {', '.join(removed)}")
            return True
        finally:
            self._tick_lock.release()

    def _run(self) -> None:
        next_at = self._clock() + self._interval
        while not self._stop.wait(max(0.0, next_at - self._clock())):
            try:
                self.tick()
            except Exception:
                logger.exception("Unexpected error during mount reconciliation")
            next_at += self._interval
            now = self._clock()
            if next_at <= now:
                missed = int((now - next_at) // self._interval) + 1
                logger.debug(f"Reconciliation overran; skipping {missed} missed tick(s)")
                next_at += missed * self._interval
