"""
Shared fixtures: an in-memory Tally endpoint and in-memory stores.

The fakes honour the same contracts as the PostgreSQL stores (monotonic
cursors, delivery state untouched on re-staging, runs finalized once) so
orchestrator scenarios can run without Tally or a database.
"""
import copy
import os
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional

import pytest
from lxml import etree

from tally_sync.config import TallySyncConfig
from tally_sync.entities import EntityType, get_spec, map_record
from tally_sync.errors import ReconciliationError
from tally_sync.events import SyncEventChannel
from tally_sync.leases import RunLeaseRegistry
from tally_sync.stores.cursors import ENTITY_BUCKET, Cursor
from tally_sync.stores.history import FINAL_STATUSES, RUNNING, SyncRunSummary
from tally_sync.stores.staging import RecordStatus, StagingRecord
from tally_sync.sync import SyncOrchestrator


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires PostgreSQL)"
    )


# ---------------------------------------------------------------------------
# Fake Tally endpoint
# ---------------------------------------------------------------------------

def _request_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    return datetime.strptime(value, "%Y%m%d").date()


def _append_fields(elem, fields: dict):
    for key, value in fields.items():
        if isinstance(value, list):
            for item in value:
                child = etree.SubElement(elem, f"{key}.LIST")
                _append_fields(child, item)
        else:
            etree.SubElement(elem, key).text = str(value)


class FakeTally:
    """
    In-memory stand-in for the Tally HTTP endpoint.

    Records are filtered the way the export reports filter them: alter id
    strictly above SVZEROFINNALTERID and, for date requests, DATE inside
    SVFROMDATE..SVTODATE.
    """

    def __init__(self):
        self.records: dict[str, list[tuple[str, dict]]] = {}
        self.requests: list[dict] = []
        self.failures: list[tuple[Callable[[dict], bool], Exception]] = []
        self.responses: list[str] = []
        self.on_send: Optional[Callable[[dict], None]] = None
        self.closed = False
        self.object_types: dict[str, str] = {}
        self.collection_requests: list[str] = []
        self.collection_error: Optional[Exception] = None

    def add(self, entity_type, **fields):
        spec = get_spec(entity_type)
        self.records.setdefault(spec.report, []).append((spec.record_tag, fields))
        self.object_types[spec.report] = spec.object_type

    def fail_when(self, predicate: Callable[[dict], bool], error: Exception):
        self.failures.append((predicate, error))

    def _collection(self, root) -> str:
        object_type = root.findtext(".//COLLECTION/TYPE")
        self.collection_requests.append(object_type)
        if self.collection_error is not None:
            raise self.collection_error
        envelope = etree.Element("ENVELOPE")
        collection = etree.SubElement(etree.SubElement(etree.SubElement(envelope, "BODY"), "DATA"), "COLLECTION")
        for report, rows in self.records.items():
            if self.object_types[report] != object_type:
                continue
            for _, fields in rows:
                obj = etree.SubElement(collection, object_type.upper())
                etree.SubElement(obj, "ALTERID", TYPE="Number").text = str(fields.get("ALTER_ID", 0))
        return etree.tostring(envelope, encoding="unicode")

    def send(self, request_body: str, timeout=None) -> str:
        root = etree.fromstring(request_body.encode("utf-8"))
        if root.findtext("./HEADER/TYPE") == "Collection":
            return self._collection(root)
        request = {
            "report": root.findtext(".//REPORTNAME"),
            "from_alter_id": int(root.findtext(".//SVZEROFINNALTERID")),
            "from_date": _request_date(root.findtext(".//SVFROMDATE")),
            "to_date": _request_date(root.findtext(".//SVTODATE")),
            "company": root.findtext(".//SVCURRENTCOMPANY"),
        }
        self.requests.append(request)
        if self.on_send:
            self.on_send(request)
        for predicate, error in self.failures:
            if predicate(request):
                raise error
        if self.responses:
            return self.responses.pop(0)

        envelope = etree.Element("ENVELOPE")
        for tag, fields in self.records.get(request["report"], []):
            if int(fields.get("ALTER_ID", 0)) <= request["from_alter_id"]:
                continue
            if request["from_date"] is not None:
                record_date = _request_date(fields.get("DATE"))
                if not record_date or not request["from_date"] <= record_date <= request["to_date"]:
                    continue
            _append_fields(etree.SubElement(envelope, tag), fields)
        return etree.tostring(envelope, encoding="unicode")

    def test_connection(self) -> dict:
        return {"status": "connected", "url": "fake://tally"}

    def close(self):
        self.closed = True


# ---------------------------------------------------------------------------
# In-memory stores
# ---------------------------------------------------------------------------

class FakeDatabase:
    """Transactions snapshot every registered store and restore it on error."""

    def __init__(self):
        self.stores = []
        self.committed = 0
        self.rolled_back = 0
        self.initialized = False
        self.closed = False
        self.object_types: dict[str, str] = {}
        self.collection_requests: list[str] = []
        self.collection_error: Optional[Exception] = None

    def register(self, store):
        self.stores.append(store)

    @contextmanager
    def transaction(self):
        snapshots = [copy.deepcopy(store.__dict__) for store in self.stores]
        try:
            yield
        except BaseException:
            for store, snapshot in zip(self.stores, snapshots):
                store.__dict__.update(snapshot)
            self.rolled_back += 1
            raise
        self.committed += 1

    def initialize_schema(self):
        self.initialized = True

    def close(self):
        self.closed = True


class _FakeStore:
    def __init__(self, db: FakeDatabase):
        db.register(self)


class InMemoryCursorStore(_FakeStore):
    def __init__(self, db):
        super().__init__(db)
        self.rows: dict[tuple[EntityType, str], Cursor] = {}

    def get(self, entity_type, bucket=ENTITY_BUCKET) -> Cursor:
        entity = EntityType.parse(entity_type)
        row = self.rows.get((entity, bucket))
        return copy.copy(row) if row else Cursor(entity_type=entity, bucket=bucket)

    def _row(self, entity, bucket) -> Cursor:
        return self.rows.setdefault((entity, bucket), Cursor(entity_type=entity, bucket=bucket))

    def commit(self, entity_type, new_high_water_mark, window_bounds=None, bucket=ENTITY_BUCKET):
        row = self._row(EntityType.parse(entity_type), bucket)
        row.high_water_mark = max(row.high_water_mark, new_high_water_mark)
        if window_bounds:
            row.window_start, row.window_end = window_bounds

    def mark_bucket_completed(self, entity_type, bucket):
        self._row(EntityType.parse(entity_type), bucket).completed = True

    def completed_buckets(self, entity_type) -> set:
        entity = EntityType.parse(entity_type)
        return {b for (e, b), row in self.rows.items() if e == entity and b and row.completed}

    def record_history_baseline(self, entity_type, alter_id):
        row = self._row(EntityType.parse(entity_type), ENTITY_BUCKET)
        if row.history_baseline is None:
            row.history_baseline = alter_id

    def mark_full_sync_completed(self, entity_type):
        row = self._row(EntityType.parse(entity_type), ENTITY_BUCKET)
        row.high_water_mark = max(row.high_water_mark, row.history_baseline or 0)
        row.history_baseline = None
        row.full_sync_completed = True

    def is_full_sync_completed(self, entity_type) -> bool:
        return self.get(entity_type).full_sync_completed

    def reset_full(self, entity_type):
        entity = EntityType.parse(entity_type)
        self.rows = {k: v for k, v in self.rows.items() if k[0] != entity}
        self.rows[(entity, ENTITY_BUCKET)] = Cursor(entity_type=entity)

    def all(self) -> list:
        return [self.rows[k] for k in sorted(self.rows, key=lambda k: (k[0].value, k[1]))]


class InMemoryStagingReconciler(_FakeStore):
    def __init__(self, db):
        super().__init__(db)
        self.rows: dict[tuple[EntityType, str], StagingRecord] = {}
        self.next_id = 1
        self.fail_with: Optional[Exception] = None

    def upsert(self, entity_type, records) -> int:
        entity = EntityType.parse(entity_type)
        spec = get_spec(entity)
        stored = 0
        for record in records:
            if self.fail_with is not None:
                raise self.fail_with
            mapped = map_record(spec, record)
            business = {
                "voucher_number": mapped.voucher_number or None,
                "record_date": mapped.record_date,
                "party_name": mapped.party_name or None,
                "amount": mapped.amount,
                "payload": mapped.payload_json(),
            }
            key = (entity, mapped.external_id)
            existing = self.rows.get(key)
            if existing is None:
                self.rows[key] = StagingRecord(
                    id=self.next_id,
                    entity_type=entity,
                    external_id=mapped.external_id,
                    alter_id=mapped.alter_id,
                    raw=copy.deepcopy(record),
                    is_processed=False,
                    status=RecordStatus.UNPROCESSED,
                    retry_count=0,
                    comment=None,
                    **business,
                )
                self.next_id += 1
            elif any(getattr(existing, k) != v for k, v in business.items()):
                for k, v in business.items():
                    setattr(existing, k, v)
                existing.alter_id = mapped.alter_id
                existing.raw = copy.deepcopy(record)
            stored += 1
        return stored

    def _by_id(self, record_id) -> StagingRecord:
        for row in self.rows.values():
            if row.id == record_id:
                return row
        raise ReconciliationError(f"Staging record {record_id} not found")

    def mark_processed(self, record_id):
        row = self._by_id(record_id)
        row.status = RecordStatus.PROCESSED
        row.is_processed = True

    def mark_error(self, record_id, comment):
        row = self._by_id(record_id)
        row.status = RecordStatus.ERROR
        row.is_processed = False
        row.retry_count += 1
        row.comment = comment

    def get(self, record_id):
        try:
            return self._by_id(record_id)
        except ReconciliationError:
            return None

    def find(self, entity_type, external_id):
        return self.rows.get((EntityType.parse(entity_type), external_id))

    def records(self, entity_type=None) -> list:
        rows = sorted(self.rows.values(), key=lambda r: r.id)
        if entity_type is None:
            return rows
        entity = EntityType.parse(entity_type)
        return [r for r in rows if r.entity_type == entity]


class InMemorySyncHistory(_FakeStore):
    def __init__(self, db):
        super().__init__(db)
        self.runs: dict[int, SyncRunSummary] = {}

    def begin(self, mode, trigger, entity_type=None) -> int:
        run_id = len(self.runs) + 1
        self.runs[run_id] = SyncRunSummary(
            id=run_id, mode=mode, trigger=trigger, entity_type=entity_type, status=RUNNING
        )
        return run_id

    def finish(self, run_id, counts, status, error_detail=None, cursor_reached=None):
        if status not in FINAL_STATUSES:
            raise ValueError(f"Invalid final status: {status}")
        run = self.runs.get(run_id)
        if run is None or run.status != RUNNING:
            raise ReconciliationError(f"Sync run {run_id} is not open")
        run.status = status
        run.counts = copy.deepcopy(counts)
        run.error_detail = error_detail
        run.cursor_reached = dict(cursor_reached or {})
        run.duration_seconds = Decimal("0")

    def get(self, run_id):
        return self.runs.get(run_id)

    def recent(self, limit=20) -> list:
        return sorted(self.runs.values(), key=lambda r: r.id, reverse=True)[:limit]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config():
    return TallySyncConfig(
        tally_url="http://tally.test:9000",
        tally_company="Test Co",
        db_url="postgresql://unused",
        books_from=date(2024, 4, 1),
        max_pages_per_window=20,
        lease_seconds=60,
        sync_interval_minutes=15,
    )


@pytest.fixture
def tally():
    return FakeTally()


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def cursors(db):
    return InMemoryCursorStore(db)


@pytest.fixture
def staging(db):
    return InMemoryStagingReconciler(db)


@pytest.fixture
def history(db):
    return InMemorySyncHistory(db)


@pytest.fixture
def events():
    return SyncEventChannel()


@pytest.fixture
def orchestrator(config, tally, db, cursors, staging, history, events):
    return SyncOrchestrator(
        config,
        client=tally,
        db=db,
        cursors=cursors,
        staging=staging,
        history=history,
        leases=RunLeaseRegistry(config.lease_seconds),
        events=events,
    )


@pytest.fixture
def test_db_url():
    url = os.getenv("TALLY_SYNC_TEST_DB_URL")
    if not url:
        pytest.skip("TALLY_SYNC_TEST_DB_URL not set")
    return url
