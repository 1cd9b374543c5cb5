"""Debounced and periodic sync triggering.

Local mutations schedule a push after a short debounce; a periodic timer
runs a full cycle only when there is something queued and the backend is
reachable. Both paths go through ``run_cycle`` and the engine's in-flight
guards, so overlapping triggers coalesce instead of stacking.
"""

import logging
import threading
from typing import Callable, Optional

from bookvault.types import BookvaultError, SyncConfig, SyncResult

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Drives a SyncEngine from timers.

    Args:
        engine: The SyncEngine to drive.
        config: Debounce and periodic intervals (defaults to the engine's config).
        timer_factory: ``threading.Timer``-compatible constructor (injectable for tests).
    """

    def __init__(
        self,
        engine,
        config: Optional[SyncConfig] = None,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ):
        self.engine = engine
        self.config = config or engine.config
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._debounce_timer: Optional[threading.Timer] = None
        self._periodic_timer: Optional[threading.Timer] = None
        self._running = False
        self.last_result: Optional[SyncResult] = None

    def attach(self, store) -> None:
        """Debounce a sync after every local mutation of ``store``."""
        store.add_mutation_listener(self.notify_local_change)

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
        self._schedule_periodic()
        logger.debug("Sync scheduler started")

    def stop(self) -> None:
        with self._lock:
            self._running = False
            for timer in (self._debounce_timer, self._periodic_timer):
                if timer is not None:
                    timer.cancel()
            self._debounce_timer = None
            self._periodic_timer = None

    def notify_local_change(self) -> None:
        """Restart the debounce window; the cycle runs once mutations go quiet."""
        with self._lock:
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
            timer = self._timer_factory(self.config.debounce_seconds, self.run_cycle)
            timer.daemon = True
            self._debounce_timer = timer
        timer.start()

    def _schedule_periodic(self) -> None:
        with self._lock:
            if not self._running:
                return
            timer = self._timer_factory(self.config.periodic_interval, self._on_periodic)
            timer.daemon = True
            self._periodic_timer = timer
        timer.start()

    def _on_periodic(self) -> None:
        try:
            if self.engine.outbox_size() > 0 and self.engine.is_online():
                self.run_cycle()
        finally:
            self._schedule_periodic()

    def run_cycle(self) -> Optional[SyncResult]:
        """Single guarded entry point for every trigger."""
        try:
            result = self.engine.sync()
        except BookvaultError as e:
            logger.warning(f"Background sync failed: {e}")
            return None
        self.last_result = result
        if result.errors:
            logger.info(f"Sync finished with {len(result.errors)} error(s)")
        return result
