"""
Append-only notification channel between the sync engine and its UI.

The orchestrator publishes after opening and after finalizing a run;
consumers poll with the last sequence number they have seen.
"""
from __future__ import annotations
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

SYNC_STARTED = "sync_started"
SYNC_COMPLETED = "sync_completed"


@dataclass(frozen=True)
class SyncEvent:
    seq: int
    kind: str
    run_id: int
    payload: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SyncEventChannel:
    """
    Bounded in-memory event log.

    Sequence numbers keep increasing even after old events are evicted, so
    a slow reader simply misses the evicted ones.
    """

    def __init__(self, max_events: int = 1000):
        self._events: deque[SyncEvent] = deque(maxlen=max_events)
        self._seq = 0
        self._lock = threading.Lock()

    def publish(self, kind: str, run_id: int, payload: Optional[dict] = None) -> SyncEvent:
        with self._lock:
            self._seq += 1
            event = SyncEvent(seq=self._seq, kind=kind, run_id=run_id, payload=dict(payload or {}))
            self._events.append(event)
            return event

    def read(self, after_seq: int = 0) -> list[SyncEvent]:
        """Events with a sequence number greater than ``after_seq``, oldest first."""
        with self._lock:
            return [e for e in self._events if e.seq > after_seq]

    @property
    def last_seq(self) -> int:
        with self._lock:
            return self._seq
