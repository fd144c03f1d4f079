"""
Background scheduler for incremental syncs.

Runs ``run_incremental_sync`` every ``sync_interval_minutes`` on a daemon
thread. It shares the orchestrator's lease registry with manual triggers, so
a tick that collides with a running sync is skipped rather than queued.
"""
from __future__ import annotations
import threading
from typing import Optional
from loguru import logger

from .errors import AlreadyRunning
from .sync import SyncOrchestrator, SyncRunResult, SyncTrigger


class SyncScheduler:
    """
    In-process interval scheduler.

    - ``tick()`` runs one incremental sync (public for testing)
    - ``start()`` / ``stop()`` for background thread operation
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        interval_seconds: Optional[float] = None,
        run_on_start: bool = False,
    ):
        self.orchestrator = orchestrator
        self.interval_seconds = (
            interval_seconds
            if interval_seconds is not None
            else orchestrator.config.sync_interval_minutes * 60
        )
        self.run_on_start = run_on_start
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def tick(self, trigger: SyncTrigger = SyncTrigger.SCHEDULED) -> Optional[SyncRunResult]:
        """Run one incremental sync; returns None when the tick was skipped or failed."""
        try:
            return self.orchestrator.run_incremental_sync(trigger)
        except AlreadyRunning as e:
            logger.debug(f"Skipping {trigger.value} sync: {e}")
        except Exception as e:
            logger.exception(f"Scheduled sync failed: {e}")
        return None

    def start(self):
        """Start the scheduler in a background thread."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="tally-sync-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started (every {self.interval_seconds:g}s)")

    def stop(self, timeout: float = 30.0):
        """Signal stop and wait for the current sync to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("Scheduler stopped")

    def join(self, timeout: Optional[float] = None):
        """Block until the scheduler thread exits."""
        if self._thread is None:
            return
        # Short waits keep the main thread responsive to KeyboardInterrupt
        while self._thread.is_alive():
            self._thread.join(timeout=1.0 if timeout is None else timeout)
            if timeout is not None:
                break

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self):
        if self.run_on_start and not self._stop_event.is_set():
            self.tick(SyncTrigger.STARTUP)
        while not self._stop_event.wait(timeout=self.interval_seconds):
            self.tick(SyncTrigger.SCHEDULED)
