"""
Exception hierarchy for the Tally sync engine.

Window-level failures (TransportError, ParseError) abort only the window
being fetched. ReconciliationError aborts the entity. AlreadyRunning is
returned to the caller and never recorded as a run failure.
"""
from __future__ import annotations
from enum import Enum
from typing import Optional


class TallySyncError(Exception):
    """Base class for all sync engine errors."""
    pass


class TransportErrorKind(str, Enum):
    TIMEOUT = "Timeout"
    CONNECTION_REFUSED = "ConnectionRefused"
    NON_OK_STATUS = "NonOKStatus"


class TransportError(TallySyncError):
    """Raised when the Tally HTTP endpoint cannot be reached or answers badly."""

    def __init__(self, kind: TransportErrorKind, message: str, status_code: Optional[int] = None):
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.status_code = status_code


class ParseError(TallySyncError):
    """Raised for malformed XML or an unexpected response shape."""
    pass


class ReconciliationError(TallySyncError):
    """Raised when staging or cursor writes fail."""
    pass


class AlreadyRunning(TallySyncError):
    """Raised when a sync is requested for an entity type that is already running."""

    def __init__(self, entity_type: str, owner: Optional[str] = None):
        msg = f"Sync already running for {entity_type}"
        if owner:
            msg += f" (owner {owner})"
        super().__init__(msg)
        self.entity_type = entity_type
        self.owner = owner


class LeaseLost(TallySyncError):
    """Raised inside a run whose lease expired and was taken over by another run."""

    def __init__(self, entity_type: str, owner: str):
        super().__init__(f"Lease for {entity_type} lost by {owner}")
        self.entity_type = entity_type
        self.owner = owner


class ConfigurationError(TallySyncError):
    """Raised for missing or invalid endpoint settings or window bounds."""
    pass
