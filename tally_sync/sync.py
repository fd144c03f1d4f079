"""
Sync orchestration for the Tally staging store.

Provides:
- Full sync: reset cursors, then fetch history month by month
- Incremental sync: resume an unfinished history fetch, otherwise fetch
  records whose alter id is above the entity's high-water-mark
- Entity sync: incremental sync of a single entity type

Every page of records is staged and its cursor advanced in one database
transaction, so a failure at any point leaves a resumable state and at
worst re-fetches the last page (at-least-once).

A windowed history only moves month cursors. The entity-wide cursor starts
at the source's highest alter id recorded before the first window, so edits
made while the history ran are fetched again by incremental sync.
"""
from __future__ import annotations
import sys
import threading
import uuid
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Iterable, Optional, Union
from loguru import logger

from .client import TallyClient
from .config import TallySyncConfig
from .entities import EntitySpec, EntityType, RawRecord, extract_alter_id, get_spec
from .errors import (
    AlreadyRunning,
    ConfigurationError,
    LeaseLost,
    ParseError,
    ReconciliationError,
    TallySyncError,
    TransportError,
)
from .events import SYNC_COMPLETED, SYNC_STARTED, SyncEventChannel
from .leases import RunLeaseRegistry
from .normalizer import max_alter_id, normalize
from .requests import render_alter_id_request, render_report_request
from .stores import CursorStore, Database, StagingReconciler, SyncHistory
from .stores.cursors import ENTITY_BUCKET
from .windows import Window, month_windows


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    ENTITY = "entity-scoped"


class SyncTrigger(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    STARTUP = "startup"


class EntityState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    FAILED = "FAILED"


class RunStatus(str, Enum):
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


@dataclass
class EntityOutcome:
    """What one entity's part of a run achieved."""

    entity_type: EntityType
    status: RunStatus = RunStatus.SUCCESS
    fetched: int = 0
    stored: int = 0
    windows: int = 0
    failed_windows: int = 0
    succeeded_windows: int = 0
    parse_failures: int = 0
    high_water_mark: int = 0
    cancelled: bool = False
    errors: list[str] = field(default_factory=list)

    def as_counts(self) -> dict:
        return {
            "fetched": self.fetched,
            "stored": self.stored,
            "status": self.status.value,
            "windows": self.windows,
            "failed_windows": self.failed_windows,
        }


@dataclass
class SyncRunResult:
    run_id: int
    mode: SyncMode
    trigger: SyncTrigger
    status: RunStatus
    outcomes: dict[EntityType, EntityOutcome] = field(default_factory=dict)
    error_detail: Optional[str] = None
    cancelled: bool = False

    @property
    def fetched(self) -> int:
        return sum(o.fetched for o in self.outcomes.values())

    @property
    def stored(self) -> int:
        return sum(o.stored for o in self.outcomes.values())

    def counts(self) -> dict:
        return {entity.value: outcome.as_counts() for entity, outcome in self.outcomes.items()}

    def cursor_reached(self) -> dict:
        return {entity.value: outcome.high_water_mark for entity, outcome in self.outcomes.items()}


@dataclass
class _ActiveRun:
    """Lease owner id and cancellation flag of one in-flight run."""

    owner: str
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


def _entity_status(outcome: EntityOutcome) -> RunStatus:
    if outcome.failed_windows == 0:
        return RunStatus.SUCCESS
    if outcome.succeeded_windows > 0 or outcome.parse_failures > 0:
        return RunStatus.PARTIAL
    return RunStatus.FAILED


def _run_status(outcomes: Iterable[EntityOutcome], cancelled: bool = False) -> RunStatus:
    statuses = [o.status for o in outcomes]
    if not statuses:
        return RunStatus.PARTIAL if cancelled else RunStatus.SUCCESS
    if all(s == RunStatus.FAILED for s in statuses):
        return RunStatus.FAILED
    if all(s == RunStatus.SUCCESS for s in statuses) and not cancelled:
        return RunStatus.SUCCESS
    return RunStatus.PARTIAL


def _sort_key(record: RawRecord) -> int:
    alter_id = extract_alter_id(record)
    return alter_id if alter_id is not None else 0


def _is_new(record: RawRecord, mark: int) -> bool:
    # Records without an alter id cannot be compared and are always staged
    alter_id = extract_alter_id(record)
    return alter_id is None or alter_id > mark


class SyncOrchestrator:
    """
    Main synchronization orchestrator.

    Coordinates fetching records from Tally and staging them in PostgreSQL.

    Usage:
        with SyncOrchestrator() as sync:
            sync.initialize_schema()

            # First run fetches history window by window
            sync.run_full_sync()

            # Afterwards only changed records are fetched
            sync.run_incremental_sync()

            # One entity type
            sync.run_entity_sync("INVOICE")
    """

    def __init__(
        self,
        config: Optional[TallySyncConfig] = None,
        client: Optional[TallyClient] = None,
        db: Optional[Database] = None,
        cursors: Optional[CursorStore] = None,
        staging: Optional[StagingReconciler] = None,
        history: Optional[SyncHistory] = None,
        leases: Optional[RunLeaseRegistry] = None,
        events: Optional[SyncEventChannel] = None,
        entities: Optional[Iterable[Union[str, EntityType]]] = None,
    ):
        self.config = config or TallySyncConfig.from_env()
        self.client = client or TallyClient(self.config)
        self.db = db or Database(self.config)
        self.cursors = cursors or CursorStore(self.db)
        self.staging = staging or StagingReconciler(self.db)
        self.history = history or SyncHistory(self.db)
        self.leases = leases or RunLeaseRegistry(self.config.lease_seconds)
        self.events = events or SyncEventChannel()
        self.entities = [EntityType.parse(e) for e in (entities or list(EntityType))]

        self._states: dict[EntityType, EntityState] = {e: EntityState.IDLE for e in EntityType}
        self._states_lock = threading.Lock()
        self._cancel_events: dict[str, threading.Event] = {}
        self._cancel_lock = threading.Lock()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def state(self, entity_type: Union[str, EntityType]) -> EntityState:
        with self._states_lock:
            return self._states[EntityType.parse(entity_type)]

    def _set_state(self, entity: EntityType, state: EntityState):
        with self._states_lock:
            self._states[entity] = state

    def cancel(self):
        """
        Ask every in-flight run to stop.

        Runs stop between windows; a window being fetched finishes or fails
        as a unit.
        """
        with self._cancel_lock:
            for event in self._cancel_events.values():
                event.set()
        logger.info("Cancellation requested")

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def run(
        self,
        mode: Union[str, SyncMode],
        trigger: Union[str, SyncTrigger] = SyncTrigger.MANUAL,
        entity_type: Union[str, EntityType, None] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> SyncRunResult:
        """
        Run a sync and record its summary.

        Args:
            mode: full, incremental or entity-scoped
            trigger: manual, scheduled or startup
            entity_type: Entity to sync; required for entity-scoped runs
            from_date: History start for windowed fetches (defaults to config)
            to_date: History end for windowed fetches (defaults to today)

        Returns:
            SyncRunResult with per-entity outcomes

        Raises:
            AlreadyRunning: An entity of this run is being synced already
            ConfigurationError: entity-scoped run without an entity type
        """
        mode = SyncMode(mode)
        trigger = SyncTrigger(trigger)
        if mode == SyncMode.ENTITY and entity_type is None:
            raise ConfigurationError("entity-scoped sync requires an entity type")
        start = from_date or self.config.history_start
        if start > (to_date or date.today()):
            raise ConfigurationError(f"History start {start} is after {to_date or date.today()}")
        try:
            entities = [EntityType.parse(entity_type)] if entity_type is not None else list(self.entities)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        owner = uuid.uuid4().hex
        acquired: list[EntityType] = []
        try:
            for entity in entities:
                self.leases.acquire(entity, owner)
                acquired.append(entity)
        except AlreadyRunning as e:
            for entity in acquired:
                self.leases.release(entity, owner)
            logger.debug(f"{e}; {mode.value} sync not started")
            raise

        active = _ActiveRun(owner)
        with self._cancel_lock:
            self._cancel_events[owner] = active.cancel_event
        try:
            return self._run(mode, trigger, entities, entity_type, from_date, to_date, active)
        finally:
            with self._cancel_lock:
                self._cancel_events.pop(owner, None)
            for entity in acquired:
                self.leases.release(entity, owner)

    def _run(
        self,
        mode: SyncMode,
        trigger: SyncTrigger,
        entities: list[EntityType],
        entity_type: Union[str, EntityType, None],
        from_date: Optional[date],
        to_date: Optional[date],
        active: _ActiveRun,
    ) -> SyncRunResult:
        scoped = EntityType.parse(entity_type).value if mode == SyncMode.ENTITY else None
        run_id = self.history.begin(mode.value, trigger.value, scoped)
        self.events.publish(
            SYNC_STARTED,
            run_id,
            {"mode": mode.value, "trigger": trigger.value, "entities": [e.value for e in entities]},
        )
        logger.info(f"=== Sync run {run_id}: {mode.value} ({trigger.value}) ===")

        result = SyncRunResult(run_id=run_id, mode=mode, trigger=trigger, status=RunStatus.SUCCESS)
        try:
            for entity in entities:
                if active.cancelled:
                    result.cancelled = True
                    logger.warning(f"Run {run_id} cancelled before {entity.value}")
                    break
                outcome = self._sync_entity_guarded(entity, mode, from_date, to_date, active)
                result.outcomes[entity] = outcome
                if outcome.cancelled:
                    result.cancelled = True
        finally:
            result.status = _run_status(result.outcomes.values(), result.cancelled)
            errors = [err for o in result.outcomes.values() for err in o.errors]
            if result.cancelled:
                errors.append("cancelled")
            result.error_detail = "; ".join(errors) or None
            self.history.finish(
                run_id,
                result.counts(),
                result.status.value,
                error_detail=result.error_detail,
                cursor_reached=result.cursor_reached(),
            )
            self.events.publish(
                SYNC_COMPLETED,
                run_id,
                {
                    "status": result.status.value,
                    "counts": result.counts(),
                    "error_detail": result.error_detail,
                },
            )

        summary = f"Sync run {run_id} {result.status.value}: fetched {result.fetched}, stored {result.stored}"
        if result.status == RunStatus.SUCCESS:
            logger.success(summary)
        else:
            logger.warning(f"{summary} ({result.error_detail})")
        return result

    def _sync_entity_guarded(
        self,
        entity: EntityType,
        mode: SyncMode,
        from_date: Optional[date],
        to_date: Optional[date],
        active: _ActiveRun,
    ) -> EntityOutcome:
        outcome = EntityOutcome(entity_type=entity)
        self._set_state(entity, EntityState.RUNNING)
        try:
            self._sync_entity(entity, mode, outcome, from_date, to_date, active)
            outcome.status = _entity_status(outcome)
        except LeaseLost as e:
            logger.error(f"Stopping {entity.value}: {e}")
            outcome.status = RunStatus.FAILED
            outcome.errors.append(f"{entity.value}: {e}")
        except ReconciliationError as e:
            logger.error(f"Staging failed for {entity.value}: {e}")
            outcome.status = RunStatus.FAILED
            outcome.errors.append(f"{entity.value}: {e}")
        except Exception as e:
            logger.exception(f"Unexpected failure syncing {entity.value}: {e}")
            outcome.status = RunStatus.FAILED
            outcome.errors.append(f"{entity.value}: {e}")

        try:
            outcome.high_water_mark = self.cursors.get(entity).high_water_mark
        except TallySyncError as e:
            logger.error(f"Cannot read cursor for {entity.value}: {e}")

        self._set_state(
            entity, EntityState.FAILED if outcome.status == RunStatus.FAILED else EntityState.IDLE
        )
        logger.info(
            f"  {entity.value}: {outcome.status.value} "
            f"(fetched {outcome.fetched}, stored {outcome.stored}, "
            f"windows {outcome.windows}, failed {outcome.failed_windows})"
        )
        return outcome

    def _renew_lease(self, entity: EntityType, active: _ActiveRun):
        if not self.leases.renew(entity, active.owner):
            raise LeaseLost(entity.value, active.owner)

    def _sync_entity(
        self,
        entity: EntityType,
        mode: SyncMode,
        outcome: EntityOutcome,
        from_date: Optional[date],
        to_date: Optional[date],
        active: _ActiveRun,
    ):
        spec = get_spec(entity)
        if mode == SyncMode.FULL:
            with self.db.transaction():
                self.cursors.reset_full(entity)
            windowed = True
        else:
            windowed = not self.cursors.is_full_sync_completed(entity)

        if not windowed:
            logger.info(f"Syncing {entity.value} changes above alter id {self.cursors.get(entity).high_water_mark}")
            self._run_window(spec, None, outcome, active)
            return

        if self.cursors.get(entity).history_baseline is None and not self._record_baseline(spec, outcome):
            return

        start = from_date or self.config.history_start
        windows = month_windows(start, to_date)
        done = self.cursors.completed_buckets(entity)
        logger.info(
            f"Syncing {entity.value} history {windows[0].start} to {windows[-1].end} "
            f"({len(windows)} windows, {len(done)} already complete)"
        )
        for window in windows:
            if active.cancelled:
                outcome.cancelled = True
                logger.warning(f"  {entity.value}: cancelled before {window.bucket}")
                return
            if window.bucket in done:
                logger.debug(f"  {entity.value} {window.bucket}: already complete")
                continue
            if self._run_window(spec, window, outcome, active):
                self.cursors.mark_bucket_completed(entity, window.bucket)

        reached_today = to_date is None or to_date >= date.today()
        if outcome.failed_windows == 0 and reached_today:
            self.cursors.mark_full_sync_completed(entity)

    def _record_baseline(self, spec: EntitySpec, outcome: EntityOutcome) -> bool:
        """
        Record the source's highest alter id before the first history window.

        Windows only advance their month buckets. Once the history completes
        the entity-wide mark starts from this baseline, so records edited in
        already fetched months while the history ran are picked up by the
        next incremental run.
        """
        entity = spec.entity_type
        request = render_alter_id_request(spec.object_type, company=self.config.tally_company or None)
        try:
            baseline = max_alter_id(self.client.send(request))
        except (TransportError, ParseError) as e:
            outcome.windows += 1
            outcome.failed_windows += 1
            if isinstance(e, ParseError):
                outcome.parse_failures += 1
            outcome.errors.append(f"{entity.value} baseline: {e}")
            logger.error(f"  {entity.value}: cannot read source alter ids: {e}")
            return False
        self.cursors.record_history_baseline(entity, baseline)
        logger.info(f"  {entity.value}: history baseline alter id {baseline}")
        return True

    def _run_window(
        self, spec: EntitySpec, window: Optional[Window], outcome: EntityOutcome, active: _ActiveRun
    ) -> bool:
        """Fetch one window; TransportError and ParseError fail this window only."""
        self._renew_lease(spec.entity_type, active)
        outcome.windows += 1
        label = f"{spec.entity_type.value} {window.bucket if window else 'changes'}"
        try:
            self._fetch_pages(spec, window, outcome, active)
        except (TransportError, ParseError) as e:
            outcome.failed_windows += 1
            if isinstance(e, ParseError):
                outcome.parse_failures += 1
            outcome.errors.append(f"{label}: {e}")
            logger.error(f"  {label} failed: {e}")
            return False
        outcome.succeeded_windows += 1
        return True

    def _fetch_pages(
        self, spec: EntitySpec, window: Optional[Window], outcome: EntityOutcome, active: _ActiveRun
    ):
        """
        Page through a window by alter id.

        Each page is filtered to records above the window's mark, staged in
        ascending alter id order and committed with the advanced mark.
        History windows move only their month bucket; the entity-wide mark
        belongs to incremental fetches. Paging stops once a page brings
        nothing new.
        """
        entity = spec.entity_type
        bucket = window.bucket if window else ENTITY_BUCKET
        mark = self.cursors.get(entity, bucket).high_water_mark

        for page in range(1, self.config.max_pages_per_window + 1):
            if page > 1:
                self._renew_lease(entity, active)
            request = render_report_request(
                spec.report,
                from_alter_id=mark,
                from_date=window.start if window else None,
                to_date=window.end if window else None,
                company=self.config.tally_company or None,
            )
            records = normalize(self.client.send(request), entity)
            outcome.fetched += len(records)

            fresh = [r for r in records if _is_new(r, mark)]
            if not fresh:
                logger.debug(f"  {entity.value} {bucket or '*'} page {page}: nothing above {mark}")
                return
            fresh.sort(key=_sort_key)
            new_mark = max([mark] + [_sort_key(r) for r in fresh])

            # A run that lost its lease must not commit over the new holder
            self._renew_lease(entity, active)
            with self.db.transaction():
                stored = self.staging.upsert(entity, fresh)
                self.cursors.commit(
                    entity, new_mark, (window.start, window.end) if window else None, bucket=bucket
                )
            outcome.stored += stored
            logger.info(f"  {entity.value} {bucket or '*'} page {page}: staged {stored}, mark {new_mark}")

            if new_mark <= mark:
                # Records without alter ids cannot move the mark
                return
            mark = new_mark

        logger.warning(
            f"  {entity.value} {bucket or '*'}: stopped after {self.config.max_pages_per_window} pages"
        )

    def run_full_sync(
        self,
        trigger: Union[str, SyncTrigger] = SyncTrigger.MANUAL,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> SyncRunResult:
        return self.run(SyncMode.FULL, trigger, from_date=from_date, to_date=to_date)

    def run_incremental_sync(
        self, trigger: Union[str, SyncTrigger] = SyncTrigger.MANUAL
    ) -> SyncRunResult:
        return self.run(SyncMode.INCREMENTAL, trigger)

    def run_entity_sync(
        self,
        entity_type: Union[str, EntityType],
        trigger: Union[str, SyncTrigger] = SyncTrigger.MANUAL,
    ) -> SyncRunResult:
        return self.run(SyncMode.ENTITY, trigger, entity_type=entity_type)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def test_connection(self) -> dict:
        """Test connection to Tally."""
        return self.client.test_connection()

    def initialize_schema(self):
        """Create database schema and tables if they don't exist."""
        self.db.initialize_schema()

    def close(self):
        """Close all connections."""
        self.client.close()
        self.db.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def run_sync(
    mode: str = "incremental",
    entity_type: Optional[str] = None,
    trigger: str = "manual",
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    config: Optional[TallySyncConfig] = None,
) -> SyncRunResult:
    """
    Convenience function to run sync.

    Args:
        mode: 'full', 'incremental' or 'entity-scoped'
        entity_type: Entity for 'entity-scoped' mode
        trigger: 'manual', 'scheduled' or 'startup'
        from_date: History start for windowed fetches
        to_date: History end for windowed fetches
        config: Optional config override

    Returns:
        SyncRunResult
    """
    with SyncOrchestrator(config) as sync:
        return sync.run(mode, trigger, entity_type=entity_type, from_date=from_date, to_date=to_date)


def _print_history(sync: SyncOrchestrator, limit: int = 20):
    runs = sync.history.recent(limit)
    if not runs:
        print("No sync runs recorded")
        return
    for run in runs:
        scope = f" [{run.entity_type}]" if run.entity_type else ""
        print(
            f"#{run.id} {run.started_at:%Y-%m-%d %H:%M:%S} {run.mode}{scope} "
            f"({run.trigger}) {run.status}"
        )
        for entity, counts in (run.counts or {}).items():
            print(f"    {entity}: {counts}")
        if run.error_detail:
            print(f"    error: {run.error_detail}")


def main(argv: Optional[list[str]] = None) -> int:
    import argparse
    from .logging_setup import configure_logging
    from .scheduler import SyncScheduler

    parser = argparse.ArgumentParser(
        description="Tally Sync - Incrementally stage Tally records in PostgreSQL"
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in SyncMode],
        default=SyncMode.INCREMENTAL.value,
        help="Sync mode (default: incremental)",
    )
    parser.add_argument(
        "--entity",
        choices=[e.value for e in EntityType],
        type=str.upper,
        help="Entity type (required for entity-scoped mode)",
    )
    parser.add_argument(
        "--trigger",
        choices=[t.value for t in SyncTrigger],
        default=SyncTrigger.MANUAL.value,
        help="Recorded trigger of the run (default: manual)",
    )
    parser.add_argument(
        "--from-date",
        type=lambda s: date.fromisoformat(s),
        help="History start for windowed fetches (YYYY-MM-DD)",
    )
    parser.add_argument(
        "--to-date",
        type=lambda s: date.fromisoformat(s),
        help="History end for windowed fetches (YYYY-MM-DD)",
    )
    parser.add_argument(
        "--init-only",
        action="store_true",
        help="Only initialize database schema, don't sync",
    )
    parser.add_argument(
        "--test-connection",
        action="store_true",
        help="Test Tally connection and exit",
    )
    parser.add_argument(
        "--history",
        action="store_true",
        help="Show recent sync runs and exit",
    )
    parser.add_argument(
        "--daemon",
        action="store_true",
        help="Run incremental syncs on the configured interval until interrupted",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args(argv)

    config = TallySyncConfig.from_env()
    configure_logging(config.log_level, config.log_file, verbose=args.verbose)

    try:
        config.require_valid()
        with SyncOrchestrator(config) as sync:
            if args.test_connection:
                result = sync.test_connection()
                print(f"Connection test: {result}")
                return 0 if result["status"] == "connected" else 1

            if args.init_only:
                sync.initialize_schema()
                print("Schema initialized successfully")
                return 0

            if args.history:
                _print_history(sync)
                return 0

            if args.daemon:
                sync.initialize_schema()
                scheduler = SyncScheduler(sync, run_on_start=True)
                scheduler.start()
                try:
                    scheduler.join()
                except KeyboardInterrupt:
                    logger.info("Interrupted, stopping scheduler")
                    sync.cancel()
                    scheduler.stop()
                return 0

            result = sync.run(
                args.mode,
                args.trigger,
                entity_type=args.entity,
                from_date=args.from_date,
                to_date=args.to_date,
            )

            print(f"\n=== Sync Run {result.run_id}: {result.status.value} ===")
            for entity, counts in result.counts().items():
                print(f"  {entity}: {counts}")
            if result.error_detail:
                print(f"  error: {result.error_detail}")
            return 0 if result.status == RunStatus.SUCCESS else 2

    except AlreadyRunning as e:
        logger.warning(str(e))
        return 3
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except TallySyncError as e:
        logger.error(f"Sync error: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Sync failed: {e}")
        return 1


# CLI entry point
if __name__ == "__main__":
    sys.exit(main())
