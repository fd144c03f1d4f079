"""
Tally Sync - Incremental synchronization of Tally records into PostgreSQL.

Fetches customers, sales invoices, receipts, journal vouchers and debit notes
from TallyPrime's HTTP XML interface and stages them for delivery to a remote
backend.

Key Features:
- Alter-id cursors, so each run only fetches what changed
- Month-windowed first sync that resumes where it stopped
- Idempotent staging with per-record delivery status and retry bookkeeping
- One summary row per run, plus an event channel for dashboards
- Interval scheduler with a per-entity concurrency guard

Usage:
    # Incremental sync (default)
    python -m tally_sync

    # Fresh full sync
    python -m tally_sync --mode full

    # One entity type
    python -m tally_sync --mode entity-scoped --entity INVOICE

    # Keep syncing on the configured interval
    python -m tally_sync --daemon
"""

__version__ = "1.0.0"
__author__ = "Intelayer"

from .config import TallySyncConfig
from .entities import EntityType
from .errors import (
    AlreadyRunning,
    ConfigurationError,
    ParseError,
    ReconciliationError,
    TallySyncError,
    TransportError,
)
from .sync import SyncMode, SyncOrchestrator, SyncRunResult, SyncTrigger, run_sync

__all__ = [
    "TallySyncConfig",
    "EntityType",
    "AlreadyRunning",
    "ConfigurationError",
    "ParseError",
    "ReconciliationError",
    "TallySyncError",
    "TransportError",
    "SyncMode",
    "SyncOrchestrator",
    "SyncRunResult",
    "SyncTrigger",
    "run_sync",
    "__version__",
]
