"""
Run Coordinator
Drives a synchronization run: resolves tables, computes windows, takes
leases, walks each table through Roots, Missing-Parents and Children, then
advances watermarks. Also hosts the operator-facing wrapper.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from blobdelta.config_manager import ConfigManager
from blobdelta.database.connection import DatabaseConnection, get_db
from blobdelta.database.models import RunStatus, RunType, SyncRun, TableSyncConfig
from blobdelta.sync.batches import (
    BatchConstraints, BatchExecutor, BatchSource, ChildrenBatchSource,
    MissingParentsBatchSource, RootsBatchSource
)
from blobdelta.sync.catalog import TableCatalog
from blobdelta.sync.deletions import DeletionLog
from blobdelta.sync.exceptions import ConfigurationError
from blobdelta.sync.lease import DEFAULT_LEASE_DURATION, Lease, LeaseManager
from blobdelta.sync.ledger import NO_PHASE, Completed, Failed, Phase, ProgressLedger, resume_point
from blobdelta.sync.missing_parents import MissingParentQueue
from blobdelta.sync.observability import LoggingSink, ObservabilitySink, PlannedOperation
from blobdelta.sync.record_store import RecordFilter, RecordStore, SqlRecordStore, TenantResolver
from blobdelta.sync.watermarks import WatermarkStore
from blobdelta.sync.window import SyncWindow, compute_window
from blobdelta.utils.helpers import MAX_ERROR_LENGTH, error_text, format_duration, sanitize_string, utcnow
from blobdelta.utils.logger import LoggerMixin


@dataclass
class SyncRequest:
    """
    Parameters of one invocation.

    Supplying ``run_id`` resumes that run; omitting it starts a new one.
    """
    run_type: str = RunType.DELTA
    table_name: Optional[str] = None
    target_group: Optional[str] = None
    batch_size: int = 500
    max_parallelism: int = 2
    reset: bool = False
    tenant_id: Optional[str] = None
    run_id: Optional[str] = None
    requested_by: Optional[str] = None

    @property
    def is_dry_run(self) -> bool:
        return self.run_type == RunType.DRY_RUN


@dataclass
class _TableProgress:
    """Where a table's processing currently stands, for failure records."""
    phase: int = NO_PHASE
    total_rows: int = 0
    window: Optional[SyncWindow] = None
    started_at: Optional[datetime] = None


class SyncCoordinator(LoggerMixin):
    """
    Orchestrates runs over the configured tables.

    Tables are processed strictly one after another in table-name order; the
    first failing table stops the run.
    """

    def __init__(self, db: DatabaseConnection, record_store: RecordStore,
                 tenant_resolver: Optional[TenantResolver] = None,
                 sink: Optional[ObservabilitySink] = None,
                 excluded_ids: Iterable[str] = (),
                 lease_duration: timedelta = DEFAULT_LEASE_DURATION,
                 clock: Callable = utcnow):
        self.db = db
        self.record_store = record_store
        self.tenant_resolver = tenant_resolver
        self.sink = sink or LoggingSink()
        self.excluded_ids = frozenset(str(i) for i in excluded_ids)
        self.lease_duration = lease_duration
        self.clock = clock

        self.catalog = TableCatalog(db)
        self.watermarks = WatermarkStore(db)
        self.leases = LeaseManager(db)
        self.ledger = ProgressLedger(db)
        self.queue = MissingParentQueue(db)
        self.deletions = DeletionLog(db)
        self.executor = BatchExecutor()

    # ========================================
    # Entry point
    # ========================================

    def run_sync(self, request: SyncRequest) -> str:
        """
        Execute (or resume) a run.

        Args:
            request: Run parameters

        Returns:
            The run ID

        Raises:
            ConfigurationError: on invalid parameters or unusable tables,
                before anything is persisted
            SyncError: re-raised from the first failing table after the
                failure has been recorded
        """
        self._validate_request(request)

        tables = self.catalog.resolve_tables(request.table_name, request.target_group)
        if self.tenant_resolver is not None:
            self.tenant_resolver.validate()
        for config in tables:
            self.record_store.validate(config)

        run_id = request.run_id or str(uuid.uuid4())
        constraints = BatchConstraints(
            record_filter=RecordFilter(excluded_ids=self.excluded_ids, tenant_id=request.tenant_id),
            max_parallelism=request.max_parallelism,
        )

        self.logger.info(
            f"Run {run_id} ({request.run_type}) covering {len(tables)} table(s): "
            f"{', '.join(t.table_name for t in tables) or '-'}"
        )
        start = self.clock()

        if request.is_dry_run:
            self._report('create_run', None, run_id=run_id, requested_by=request.requested_by)
        else:
            self._start_run(run_id, request)

        for config in tables:
            self._sync_table(run_id, config, request, constraints)

        if not request.is_dry_run:
            self._finish_run(run_id)

        elapsed = (self.clock() - start).total_seconds()
        self.logger.info(f"Run {run_id} finished in {format_duration(elapsed)}")
        return run_id

    @staticmethod
    def _validate_request(request: SyncRequest) -> None:
        if request.run_type not in RunType.ALL:
            raise ConfigurationError(f"Unknown run type {request.run_type!r}")
        if request.batch_size is None or request.batch_size < 1:
            raise ConfigurationError(f"Batch size must be positive, got {request.batch_size!r}")
        if request.max_parallelism is None or request.max_parallelism < 1:
            raise ConfigurationError(f"Max parallelism must be positive, got {request.max_parallelism!r}")

    # ========================================
    # Run header
    # ========================================

    def _start_run(self, run_id: str, request: SyncRequest) -> None:
        """Create the run row, or reopen it; a reopened run drops the previous attempt's error text."""
        with self.db.session_scope() as session:
            run = session.get(SyncRun, run_id)
            if run is None:
                session.add(SyncRun(
                    run_id=run_id,
                    run_type=request.run_type,
                    requested_by=request.requested_by,
                    started_at=self.clock(),
                    status=RunStatus.IN_PROGRESS,
                ))
                return

            if run.run_type != request.run_type:
                raise ConfigurationError(
                    f"Run {run_id} is a {run.run_type} run and cannot be resumed as {request.run_type}"
                )
            self.logger.info(f"Resuming run {run_id} (previous status {run.status})")
            run.status = RunStatus.IN_PROGRESS
            run.completed_at = None
            run.error_message = None

    def _finish_run(self, run_id: str) -> None:
        with self.db.session_scope() as session:
            run = session.get(SyncRun, run_id)
            run.status = RunStatus.SUCCEEDED
            run.completed_at = self.clock()

    def _fail_run(self, run_id: str, table_name: str, error: BaseException) -> None:
        message = f"{table_name}: {error_text(error)}"
        with self.db.session_scope() as session:
            run = session.get(SyncRun, run_id)
            run.status = RunStatus.FAILED
            run.completed_at = self.clock()
            run.error_message = sanitize_string(message, MAX_ERROR_LENGTH)

    # ========================================
    # Per-table processing
    # ========================================

    def _sync_table(self, run_id: str, config: TableSyncConfig,
                    request: SyncRequest, constraints: BatchConstraints) -> None:
        name = config.table_name
        dry_run = request.is_dry_run
        progress = _TableProgress(started_at=self.clock())

        try:
            if request.reset:
                if dry_run:
                    self._report('reset', name, run_id=run_id)
                else:
                    self.ledger.reset(run_id, name)

            progress.window = self._window_for(run_id, config, request, progress.started_at)
            self.logger.info(f"{name}: window {progress.window}")

            lease = self._acquire_lease(run_id, name, dry_run)

            for phase in Phase:
                progress.phase = phase
                self._run_phase(run_id, config, phase, progress, constraints, lease, request)

            if config.include_deletes:
                self._report_deletions(config, progress.window)

            if dry_run:
                self._report('advance_watermark', name, window_end=progress.window.end)
                self._report('release_lease', name, run_id=run_id)
            else:
                self.watermarks.advance(name, run_id, progress.window.end, completed_at=self.clock())
                self.leases.release(name)

        except Exception as e:
            self.logger.error(f"{name}: run {run_id} failed in phase {int(progress.phase)}: {e}")
            if dry_run:
                self._report('failure', name, phase=int(progress.phase), error=error_text(e))
                raise

            try:
                self.ledger.record_failure(
                    run_id, name, progress.phase, progress.total_rows,
                    progress.window, e, started_at=progress.started_at, now=self.clock()
                )
            finally:
                try:
                    self.leases.release(name)
                finally:
                    self._fail_run(run_id, name, e)
            raise

    def _window_for(self, run_id: str, config: TableSyncConfig,
                    request: SyncRequest, run_start) -> SyncWindow:
        """The window recorded by an earlier attempt of the run, or a fresh one."""
        name = config.table_name
        if not request.is_dry_run:
            recorded = self.ledger.recorded_window(run_id, name)
            if recorded is not None:
                self.logger.info(f"{name}: resuming with recorded window")
                return recorded

        watermark = None
        if request.run_type != RunType.FULL:
            watermark = self.watermarks.last_modified_at(name)

        return compute_window(
            request.run_type,
            run_start,
            watermark,
            timedelta(minutes=config.safety_buffer_minutes),
        )

    def _acquire_lease(self, run_id: str, table_name: str, dry_run: bool) -> Lease:
        if dry_run:
            lease = Lease(table_name=table_name, run_id=run_id, expires_at=self.clock() + self.lease_duration)
            self._report('acquire_lease', table_name, run_id=run_id, expires_at=lease.expires_at)
            return lease
        return self.leases.acquire(table_name, run_id, self.lease_duration, now=self.clock())

    def _source_for(self, phase: Phase, config: TableSyncConfig, run_id: str) -> BatchSource:
        if phase == Phase.ROOTS:
            return RootsBatchSource(self.record_store, config)
        if phase == Phase.MISSING_PARENTS:
            return MissingParentsBatchSource(self.record_store, config, self.queue, run_id)
        return ChildrenBatchSource(self.record_store, config)

    def _run_phase(self, run_id: str, config: TableSyncConfig, phase: Phase,
                   progress: _TableProgress, constraints: BatchConstraints,
                   lease: Lease, request: SyncRequest) -> None:
        name = config.table_name
        window = progress.window
        source = self._source_for(phase, config, run_id)

        if request.is_dry_run:
            self._report(
                f'phase_{phase.label}', name,
                window=str(window),
                pending=source.preview(window, constraints),
                batch_size=request.batch_size,
                parallelism=source.parallelism(constraints),
                excluded_ids=len(constraints.record_filter.excluded_ids),
                tenant_id=constraints.record_filter.tenant_id,
            )
            return

        state = self.ledger.phase_state(run_id, name, phase)
        if isinstance(state, Completed):
            self.logger.info(f"{name}: {phase.label} already completed ({state.total_rows} rows)")
            progress.total_rows = state.total_rows
            return

        last_batch, total_rows = resume_point(state)
        if isinstance(state, Failed):
            self.logger.info(f"{name}: retrying {phase.label} after failure: {state.reason}")
        if last_batch:
            self.logger.info(f"{name}: resuming {phase.label} after batch {last_batch} ({total_rows} rows)")
        progress.total_rows = total_rows

        if isinstance(source, MissingParentsBatchSource):
            source.populate(window, constraints)

        batch_number = last_batch
        while True:
            batch_number += 1
            if lease.is_expired(self.clock()):
                self.logger.warning(f"{name}: lease of run {run_id} expired at {lease.expires_at.isoformat()}")

            started_at = self.clock()
            result = self.executor.execute(source, window, constraints, request.batch_size, batch_number)
            if result.is_empty and not source.log_final_batch:
                break

            total_rows += result.count
            progress.total_rows = total_rows
            self.ledger.record_batch(
                run_id, name, phase, batch_number, result.count, total_rows,
                window, started_at, completed_at=self.clock()
            )
            if result.is_empty:
                break

        self.ledger.mark_completed(run_id, name, phase, total_rows, window, now=self.clock())
        self.logger.info(f"{name}: {phase.label} completed, {total_rows} rows")

    def _report_deletions(self, config: TableSyncConfig, window: SyncWindow) -> None:
        count = self.deletions.count(config.table_name, window)
        if count:
            self.logger.info(
                f"{config.table_name}: {count} source deletions recorded in window {window}; "
                f"target rows are kept"
            )

    def _report(self, action: str, table_name: Optional[str], **details) -> None:
        self.sink.report(PlannedOperation(action=action, table_name=table_name, details=details))


# ========================================
# Operator wrapper
# ========================================

class OperatorMode:
    """Modes exposed to operators and the scheduler."""
    ALL_TABLES = 'AllTables'
    SINGLE_TABLE = 'SingleTable'

    ALL = (ALL_TABLES, SINGLE_TABLE)


def run_operator(coordinator: SyncCoordinator, mode: str, table_name: Optional[str] = None,
                 batch_size: int = 500, max_parallelism: int = 2,
                 tenant_id: Optional[str] = None,
                 requested_by: Optional[str] = None) -> str:
    """
    Delta run restricted to the two operator modes.

    ``tenant_id`` narrows either mode to one tenant's records.

    Raises:
        ConfigurationError: for an unknown mode, or SingleTable without a table
    """
    if mode == OperatorMode.ALL_TABLES:
        table_name = None
    elif mode == OperatorMode.SINGLE_TABLE:
        if not table_name:
            raise ConfigurationError("SingleTable mode requires a table name")
    else:
        raise ConfigurationError(f"Unknown operator mode {mode!r}; expected one of {', '.join(OperatorMode.ALL)}")

    return coordinator.run_sync(SyncRequest(
        run_type=RunType.DELTA,
        table_name=table_name,
        batch_size=batch_size,
        max_parallelism=max_parallelism,
        reset=False,
        tenant_id=tenant_id,
        requested_by=requested_by,
    ))


def build_coordinator(db: Optional[DatabaseConnection] = None,
                      config: Optional[ConfigManager] = None,
                      sink: Optional[ObservabilitySink] = None) -> SyncCoordinator:
    """Wire a coordinator from the configuration file."""
    config = config or ConfigManager()
    db = db or get_db()

    resolver = None
    resolver_config = config.get_tenant_resolver_config()
    if resolver_config:
        resolver = TenantResolver(
            db.engine,
            resolver_config['table'],
            resolver_config.get('key_column', 'business_unit_id'),
        )

    return SyncCoordinator(
        db,
        SqlRecordStore(db.engine, tenant_resolver=resolver),
        tenant_resolver=resolver,
        sink=sink,
        excluded_ids=config.get_excluded_record_ids(),
        lease_duration=timedelta(minutes=config.get_lease_minutes()),
    )
