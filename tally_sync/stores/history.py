"""Sync history: one summary row per run, finalized exactly once."""
from __future__ import annotations
import psycopg
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional
from loguru import logger
from psycopg.types.json import Jsonb

from ..errors import ReconciliationError
from .base import Store

RUNNING = "RUNNING"
FINAL_STATUSES = ("SUCCESS", "PARTIAL", "FAILED")


@dataclass
class SyncRunSummary:
    id: int
    mode: str
    trigger: str
    entity_type: Optional[str]
    status: str
    counts: dict = field(default_factory=dict)
    error_detail: Optional[str] = None
    cursor_reached: dict = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[Decimal] = None

    @classmethod
    def from_row(cls, row: dict) -> "SyncRunSummary":
        return cls(**{k: row[k] for k in cls.__dataclass_fields__ if k in row})


class SyncHistory(Store):
    """Recorder for ``sync_run`` rows."""

    def begin(self, mode: str, trigger: str, entity_type: Optional[str] = None) -> int:
        """Open a RUNNING row and return its id."""
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {self.table("sync_run")} (mode, trigger, entity_type, status)
                VALUES (%s, %s, %s, %s)
                RETURNING id
                """,
                (mode, trigger, entity_type, RUNNING),
            )
            result = cur.fetchone()
        run_id = result["id"]
        logger.debug(f"Opened sync run {run_id} ({mode}, {trigger})")
        return run_id

    def finish(
        self,
        run_id: int,
        counts: dict,
        status: str,
        error_detail: Optional[str] = None,
        cursor_reached: Optional[dict] = None,
    ):
        """
        Finalize a run.

        Raises:
            ValueError: ``status`` is not a final status
            ReconciliationError: The run does not exist or was already finalized
        """
        if status not in FINAL_STATUSES:
            raise ValueError(f"Invalid final status: {status}. Valid: {list(FINAL_STATUSES)}")
        try:
            with self.conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE {self.table("sync_run")}
                    SET status = %s,
                        counts = %s,
                        error_detail = %s,
                        cursor_reached = %s,
                        finished_at = NOW(),
                        duration_seconds = EXTRACT(EPOCH FROM (NOW() - started_at))
                    WHERE id = %s AND status = %s
                    """,
                    (
                        status,
                        Jsonb(counts),
                        error_detail,
                        Jsonb(cursor_reached or {}),
                        run_id,
                        RUNNING,
                    ),
                )
                updated = cur.rowcount
        except psycopg.Error as e:
            raise ReconciliationError(f"Failed to finalize sync run {run_id}: {e}") from e
        if updated == 0:
            raise ReconciliationError(f"Sync run {run_id} is not open")

    def get(self, run_id: int) -> Optional[SyncRunSummary]:
        with self.conn.cursor() as cur:
            cur.execute(f"SELECT * FROM {self.table('sync_run')} WHERE id = %s", (run_id,))
            row = cur.fetchone()
        return SyncRunSummary.from_row(row) if row else None

    def recent(self, limit: int = 20) -> list[SyncRunSummary]:
        """Most recent runs first."""
        with self.conn.cursor() as cur:
            cur.execute(
                f"SELECT * FROM {self.table('sync_run')} ORDER BY started_at DESC, id DESC LIMIT %s",
                (limit,),
            )
            return [SyncRunSummary.from_row(row) for row in cur.fetchall()]
