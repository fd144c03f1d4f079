"""PostgreSQL-backed stores for cursors, staged records and run history."""
from .base import Database, get_connection
from .cursors import Cursor, CursorStore
from .history import SyncHistory, SyncRunSummary
from .staging import RecordStatus, StagingReconciler, StagingRecord

__all__ = [
    "Database",
    "get_connection",
    "Cursor",
    "CursorStore",
    "SyncHistory",
    "SyncRunSummary",
    "RecordStatus",
    "StagingReconciler",
    "StagingRecord",
]
