"""
Run leases: at most one running sync per entity type.

A lease names its owner (the run that holds it) and expires after
``lease_seconds`` so that a crashed run cannot block an entity forever.
"""
from __future__ import annotations
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union
from loguru import logger

from .entities import EntityType
from .errors import AlreadyRunning


@dataclass(frozen=True)
class Lease:
    entity_type: EntityType
    owner: str
    acquired_at: float
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class RunLeaseRegistry:
    """Thread-safe map from entity type to the lease of its running sync."""

    def __init__(self, lease_seconds: float = 3600, clock: Callable[[], float] = time.monotonic):
        self.lease_seconds = lease_seconds
        self._clock = clock
        self._leases: dict[EntityType, Lease] = {}
        self._lock = threading.Lock()

    def acquire(self, entity_type: Union[str, EntityType], owner: str) -> Lease:
        """
        Take the lease for ``entity_type``.

        Raises:
            AlreadyRunning: Another owner holds an unexpired lease
        """
        entity = EntityType.parse(entity_type)
        now = self._clock()
        with self._lock:
            current = self._leases.get(entity)
            if current is not None and not current.expired(now):
                raise AlreadyRunning(entity.value, owner=current.owner)
            if current is not None:
                logger.warning(f"Lease for {entity.value} held by {current.owner} expired; taking over")
            lease = Lease(
                entity_type=entity,
                owner=owner,
                acquired_at=now,
                expires_at=now + self.lease_seconds,
            )
            self._leases[entity] = lease
            return lease

    def renew(self, entity_type: Union[str, EntityType], owner: str) -> bool:
        """
        Extend a held lease by another ``lease_seconds``.

        Returns False when ``owner`` no longer holds the lease: it expired
        and was taken over, or was released.
        """
        entity = EntityType.parse(entity_type)
        now = self._clock()
        with self._lock:
            current = self._leases.get(entity)
            if current is None or current.owner != owner:
                return False
            self._leases[entity] = Lease(
                entity_type=entity,
                owner=owner,
                acquired_at=current.acquired_at,
                expires_at=now + self.lease_seconds,
            )
            return True

    def release(self, entity_type: Union[str, EntityType], owner: str) -> bool:
        """Release a lease; a lease already taken over by another owner is left alone."""
        entity = EntityType.parse(entity_type)
        with self._lock:
            current = self._leases.get(entity)
            if current is None or current.owner != owner:
                return False
            del self._leases[entity]
            return True

    def holder(self, entity_type: Union[str, EntityType]) -> Optional[Lease]:
        entity = EntityType.parse(entity_type)
        with self._lock:
            current = self._leases.get(entity)
            if current is None or current.expired(self._clock()):
                return None
            return current

    def is_running(self, entity_type: Union[str, EntityType]) -> bool:
        return self.holder(entity_type) is not None
