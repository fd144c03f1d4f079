"""
Staging reconciler: idempotent upsert of mapped records.

A record's processing state (status, is_processed, retry_count, comment)
belongs to the delivery side and is never touched by a re-fetch; only
business columns are refreshed, and only when they actually changed.
"""
from __future__ import annotations
import psycopg
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Optional, Union
from loguru import logger
from psycopg.types.json import Jsonb
from pydantic import ValidationError

from ..entities import EntityType, RawRecord, get_spec, map_record
from ..errors import ReconciliationError
from .base import Store


class RecordStatus(str, Enum):
    UNPROCESSED = "Unprocessed"
    PROCESSED = "Processed"
    ERROR = "Error"


@dataclass
class StagingRecord:
    id: int
    entity_type: EntityType
    external_id: str
    alter_id: Optional[int]
    voucher_number: Optional[str]
    record_date: Optional[date]
    party_name: Optional[str]
    amount: Decimal
    payload: dict
    raw: dict
    is_processed: bool
    status: RecordStatus
    retry_count: int
    comment: Optional[str]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict) -> "StagingRecord":
        return cls(
            id=row["id"],
            entity_type=EntityType.parse(row["entity_type"]),
            external_id=row["external_id"],
            alter_id=row["alter_id"],
            voucher_number=row["voucher_number"],
            record_date=row["record_date"],
            party_name=row["party_name"],
            amount=row["amount"],
            payload=row["payload"],
            raw=row["raw"],
            is_processed=row["is_processed"],
            status=RecordStatus(row["status"]),
            retry_count=row["retry_count"],
            comment=row["comment"],
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


class StagingReconciler(Store):
    """Writes normalized records into ``staging_record``."""

    UPSERT_SQL = """
        INSERT INTO {table} AS s
            (entity_type, external_id, alter_id, voucher_number, record_date,
             party_name, amount, payload, raw)
        VALUES (%(entity_type)s, %(external_id)s, %(alter_id)s, %(voucher_number)s,
                %(record_date)s, %(party_name)s, %(amount)s, %(payload)s, %(raw)s)
        ON CONFLICT (entity_type, external_id) DO UPDATE SET
            alter_id = EXCLUDED.alter_id,
            voucher_number = EXCLUDED.voucher_number,
            record_date = EXCLUDED.record_date,
            party_name = EXCLUDED.party_name,
            amount = EXCLUDED.amount,
            payload = EXCLUDED.payload,
            raw = EXCLUDED.raw,
            updated_at = NOW()
        WHERE s.payload IS DISTINCT FROM EXCLUDED.payload
           OR s.voucher_number IS DISTINCT FROM EXCLUDED.voucher_number
           OR s.record_date IS DISTINCT FROM EXCLUDED.record_date
           OR s.party_name IS DISTINCT FROM EXCLUDED.party_name
           OR s.amount IS DISTINCT FROM EXCLUDED.amount
        RETURNING (xmax = 0) AS inserted
    """

    def _rows(self, entity_type: EntityType, records: Iterable[RawRecord]) -> list[dict]:
        spec = get_spec(entity_type)
        rows = []
        for record in records:
            try:
                mapped = map_record(spec, record)
            except ValidationError as e:
                raise ReconciliationError(f"Cannot map {entity_type.value} record: {e}") from e
            rows.append(
                {
                    "entity_type": entity_type.value,
                    "external_id": mapped.external_id,
                    "alter_id": mapped.alter_id,
                    "voucher_number": mapped.voucher_number or None,
                    "record_date": mapped.record_date,
                    "party_name": mapped.party_name or None,
                    "amount": mapped.amount,
                    "payload": Jsonb(mapped.payload_json()),
                    "raw": Jsonb(record),
                }
            )
        return rows

    def upsert(self, entity_type: Union[str, EntityType], records: Iterable[RawRecord]) -> int:
        """
        Insert or refresh records for one entity type.

        Returns:
            Number of records stored (inserted, updated or already current)

        Raises:
            ReconciliationError: A record could not be mapped or written
        """
        entity = EntityType.parse(entity_type)
        rows = self._rows(entity, records)
        if not rows:
            return 0

        sql = self.UPSERT_SQL.format(table=self.table("staging_record"))
        inserted = updated = 0
        try:
            with self.conn.cursor() as cur:
                for row in rows:
                    cur.execute(sql, row)
                    result = cur.fetchone()
                    if result is None:
                        continue
                    if result["inserted"]:
                        inserted += 1
                    else:
                        updated += 1
        except psycopg.Error as e:
            raise ReconciliationError(f"Failed to stage {entity.value} records: {e}") from e

        unchanged = len(rows) - inserted - updated
        logger.debug(
            f"Staged {len(rows)} {entity.value} records "
            f"({inserted} new, {updated} updated, {unchanged} unchanged)"
        )
        return len(rows)

    def _set_status(self, record_id: int, sql: str, params: tuple):
        try:
            with self.conn.cursor() as cur:
                cur.execute(sql, params)
                if cur.rowcount == 0:
                    raise ReconciliationError(f"Staging record {record_id} not found")
        except psycopg.Error as e:
            raise ReconciliationError(f"Failed to update staging record {record_id}: {e}") from e

    def mark_processed(self, record_id: int):
        """Record a successful delivery."""
        self._set_status(
            record_id,
            f"""
            UPDATE {self.table("staging_record")}
            SET status = %s, is_processed = TRUE, updated_at = NOW()
            WHERE id = %s
            """,
            (RecordStatus.PROCESSED.value, record_id),
        )

    def mark_error(self, record_id: int, comment: str):
        """Record a failed delivery; the row is kept for another attempt."""
        self._set_status(
            record_id,
            f"""
            UPDATE {self.table("staging_record")}
            SET status = %s,
                is_processed = FALSE,
                retry_count = retry_count + 1,
                comment = %s,
                updated_at = NOW()
            WHERE id = %s
            """,
            (RecordStatus.ERROR.value, comment, record_id),
        )

    def _select(self, where: str, params: tuple, suffix: str = "") -> list[StagingRecord]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"SELECT * FROM {self.table('staging_record')} WHERE {where} {suffix}",
                params,
            )
            return [StagingRecord.from_row(row) for row in cur.fetchall()]

    def get(self, record_id: int) -> Optional[StagingRecord]:
        rows = self._select("id = %s", (record_id,))
        return rows[0] if rows else None

    def find(self, entity_type: Union[str, EntityType], external_id: str) -> Optional[StagingRecord]:
        entity = EntityType.parse(entity_type)
        rows = self._select("entity_type = %s AND external_id = %s", (entity.value, external_id))
        return rows[0] if rows else None

    def pending(
        self,
        entity_type: Union[str, EntityType],
        limit: int = 100,
        max_retries: Optional[int] = None,
    ) -> list[StagingRecord]:
        """
        Records awaiting delivery, oldest first.

        Includes ``Error`` rows whose retry_count is below ``max_retries``
        (all of them when ``max_retries`` is None).
        """
        entity = EntityType.parse(entity_type)
        where = "entity_type = %s AND status IN (%s, %s)"
        params: list[Any] = [entity.value, RecordStatus.UNPROCESSED.value, RecordStatus.ERROR.value]
        if max_retries is not None:
            where += " AND retry_count < %s"
            params.append(max_retries)
        params.append(limit)
        return self._select(where, tuple(params), "ORDER BY id LIMIT %s")

    def status_counts(self, entity_type: Union[str, EntityType, None] = None) -> dict[str, int]:
        """Row counts per status, optionally for one entity type."""
        counts = {status.value: 0 for status in RecordStatus}
        sql = f"SELECT status, COUNT(*) AS cnt FROM {self.table('staging_record')}"
        params: tuple = ()
        if entity_type is not None:
            sql += " WHERE entity_type = %s"
            params = (EntityType.parse(entity_type).value,)
        sql += " GROUP BY status"
        with self.conn.cursor() as cur:
            cur.execute(sql, params)
            for row in cur.fetchall():
                counts[row["status"]] = row["cnt"]
        return counts
