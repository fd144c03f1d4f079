"""
Cursor store: per-entity high-water-marks.

Bucket ``""`` holds the entity-wide cursor used by incremental sync; month
buckets (``"YYYY-MM"``) checkpoint the windowed history fetch so an
interrupted first sync resumes at the first unfinished month.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import date
from typing import Optional, Union
from loguru import logger

from ..entities import EntityType
from .base import Store

ENTITY_BUCKET = ""


@dataclass
class Cursor:
    entity_type: EntityType
    high_water_mark: int = 0
    window_start: Optional[date] = None
    window_end: Optional[date] = None
    bucket: str = ENTITY_BUCKET
    completed: bool = False
    full_sync_completed: bool = False
    history_baseline: Optional[int] = None

    @classmethod
    def from_row(cls, row: dict) -> "Cursor":
        return cls(
            entity_type=EntityType.parse(row["entity_type"]),
            high_water_mark=row["high_water_mark"],
            window_start=row["window_start"],
            window_end=row["window_end"],
            bucket=row["bucket"],
            completed=row["completed"],
            full_sync_completed=row["full_sync_completed"],
            history_baseline=row["history_baseline"],
        )


class CursorStore(Store):
    """Durable cursors keyed by (entity_type, bucket)."""

    _COLUMNS = (
        "entity_type, bucket, high_water_mark, window_start, window_end, "
        "completed, full_sync_completed, history_baseline"
    )

    def get(self, entity_type: Union[str, EntityType], bucket: str = ENTITY_BUCKET) -> Cursor:
        """Return the stored cursor, or a zero cursor when none exists."""
        entity = EntityType.parse(entity_type)
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {self._COLUMNS}
                FROM {self.table("sync_cursor")}
                WHERE entity_type = %s AND bucket = %s
                """,
                (entity.value, bucket),
            )
            row = cur.fetchone()
        if row is None:
            return Cursor(entity_type=entity, bucket=bucket)
        return Cursor.from_row(row)

    def commit(
        self,
        entity_type: Union[str, EntityType],
        new_high_water_mark: int,
        window_bounds: Optional[tuple[date, date]] = None,
        bucket: str = ENTITY_BUCKET,
    ):
        """
        Persist a new high-water-mark.

        The stored mark never decreases. Call inside the transaction that
        staged the batch so both become durable together.
        """
        entity = EntityType.parse(entity_type)
        window_start, window_end = window_bounds or (None, None)
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {self.table("sync_cursor")}
                    (entity_type, bucket, high_water_mark, window_start, window_end, updated_at)
                VALUES (%s, %s, %s, %s, %s, NOW())
                ON CONFLICT (entity_type, bucket) DO UPDATE SET
                    high_water_mark = GREATEST(sync_cursor.high_water_mark, EXCLUDED.high_water_mark),
                    window_start = COALESCE(EXCLUDED.window_start, sync_cursor.window_start),
                    window_end = COALESCE(EXCLUDED.window_end, sync_cursor.window_end),
                    updated_at = NOW()
                """,
                (entity.value, bucket, new_high_water_mark, window_start, window_end),
            )
        logger.debug(f"Cursor {entity.value}[{bucket or '*'}] -> {new_high_water_mark}")

    def mark_bucket_completed(self, entity_type: Union[str, EntityType], bucket: str):
        entity = EntityType.parse(entity_type)
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {self.table("sync_cursor")} (entity_type, bucket, completed, updated_at)
                VALUES (%s, %s, TRUE, NOW())
                ON CONFLICT (entity_type, bucket) DO UPDATE SET
                    completed = TRUE,
                    updated_at = NOW()
                """,
                (entity.value, bucket),
            )

    def completed_buckets(self, entity_type: Union[str, EntityType]) -> set[str]:
        entity = EntityType.parse(entity_type)
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT bucket FROM {self.table("sync_cursor")}
                WHERE entity_type = %s AND bucket <> '' AND completed
                """,
                (entity.value,),
            )
            return {row["bucket"] for row in cur.fetchall()}

    def record_history_baseline(self, entity_type: Union[str, EntityType], alter_id: int):
        """
        Remember the source's highest alter id as a windowed history fetch starts.

        The first recorded value is kept until the history completes or is
        reset, so a history resumed over several runs keeps its original start.
        """
        entity = EntityType.parse(entity_type)
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {self.table("sync_cursor")}
                    (entity_type, bucket, history_baseline, updated_at)
                VALUES (%s, '', %s, NOW())
                ON CONFLICT (entity_type, bucket) DO UPDATE SET
                    history_baseline = COALESCE(sync_cursor.history_baseline, EXCLUDED.history_baseline),
                    updated_at = NOW()
                """,
                (entity.value, alter_id),
            )
        logger.debug(f"History baseline for {entity.value}: alter id {alter_id}")

    def mark_full_sync_completed(self, entity_type: Union[str, EntityType]):
        """
        Close the windowed history and hand over to incremental sync.

        The entity-wide mark moves up to the recorded history baseline; any
        record changed after the history started has a higher alter id and is
        fetched by the next incremental run.
        """
        entity = EntityType.parse(entity_type)
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {self.table("sync_cursor")}
                    (entity_type, bucket, full_sync_completed, updated_at)
                VALUES (%s, '', TRUE, NOW())
                ON CONFLICT (entity_type, bucket) DO UPDATE SET
                    high_water_mark = GREATEST(
                        sync_cursor.high_water_mark, COALESCE(sync_cursor.history_baseline, 0)
                    ),
                    history_baseline = NULL,
                    full_sync_completed = TRUE,
                    updated_at = NOW()
                """,
                (entity.value,),
            )
        logger.info(f"Full sync completed for {entity.value}")

    def is_full_sync_completed(self, entity_type: Union[str, EntityType]) -> bool:
        return self.get(entity_type).full_sync_completed

    def reset_full(self, entity_type: Union[str, EntityType]):
        """
        Forget every checkpoint of an entity before an explicit fresh sync.

        This is the only operation that lowers a high-water-mark.
        """
        entity = EntityType.parse(entity_type)
        with self.conn.cursor() as cur:
            cur.execute(
                f"DELETE FROM {self.table('sync_cursor')} WHERE entity_type = %s AND bucket <> ''",
                (entity.value,),
            )
            cur.execute(
                f"""
                INSERT INTO {self.table("sync_cursor")}
                    (entity_type, bucket, high_water_mark, full_sync_completed, updated_at)
                VALUES (%s, '', 0, FALSE, NOW())
                ON CONFLICT (entity_type, bucket) DO UPDATE SET
                    high_water_mark = 0,
                    window_start = NULL,
                    window_end = NULL,
                    completed = FALSE,
                    full_sync_completed = FALSE,
                    history_baseline = NULL,
                    updated_at = NOW()
                """,
                (entity.value,),
            )
        logger.info(f"Reset cursors for {entity.value}")

    def all(self) -> list[Cursor]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"SELECT {self._COLUMNS} FROM {self.table('sync_cursor')} ORDER BY entity_type, bucket"
            )
            return [Cursor.from_row(row) for row in cur.fetchall()]
