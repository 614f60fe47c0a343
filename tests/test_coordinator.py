"""
Integration Tests for the Run Coordinator
End-to-end runs over in-memory SQLite: batching, backfill ordering,
idempotence, resumption, fail-fast, dry runs and reset.
"""

import unittest
from datetime import timedelta
from unittest.mock import Mock, patch

from blobdelta.database.models import (
    COMPLETED_BATCH_NUMBER, FAILURE_BATCH_NUMBER, RunStatus, RunType, StepStatus, SyncRun
)
from blobdelta.sync.coordinator import OperatorMode, SyncCoordinator, SyncRequest, run_operator
from blobdelta.sync.exceptions import BatchExecutionError, ConfigurationError
from blobdelta.sync.lease import LeaseManager
from blobdelta.sync.ledger import Completed, NotStarted, Phase
from blobdelta.sync.missing_parents import MissingParentQueue
from blobdelta.sync.observability import LoggingSink
from blobdelta.sync.record_store import SqlRecordStore
from blobdelta.sync.watermarks import WatermarkStore

from sync_fixtures import BEFORE_WINDOW, RUN_START, TABLE_NAME, RecordFixture

WINDOW_END = RUN_START - timedelta(minutes=240)


class CoordinatorTestCase(unittest.TestCase):

    def setUp(self):
        self.fixture = RecordFixture()
        self.fixture.configure()
        self.db = self.fixture.db
        self.store = SqlRecordStore(self.fixture.engine)
        self.sink = LoggingSink()
        self.coordinator = self.make_coordinator()

    def make_coordinator(self, store=None, **kwargs):
        return SyncCoordinator(
            self.db, store or self.store, sink=self.sink, clock=lambda: RUN_START, **kwargs
        )

    def run_status(self, run_id):
        with self.db.session_scope() as session:
            return session.get(SyncRun, run_id)

    def steps(self, run_id, phase=None):
        steps = self.coordinator.ledger.steps(run_id, TABLE_NAME)
        if phase is not None:
            steps = [s for s in steps if s.phase == int(phase)]
        return steps


class TestPhaseTraversal(CoordinatorTestCase):
    """Test batching and the three-phase protocol."""

    def test_ten_thousand_roots(self):
        """Test 10,000 roots in batches of 500 log 20 full batches and one empty one."""
        self.fixture.add_roots(10000)

        run_id = self.coordinator.run_sync(SyncRequest(batch_size=500))

        roots = self.steps(run_id, Phase.ROOTS)
        batches = [s for s in roots if s.batch_number != COMPLETED_BATCH_NUMBER]
        completed = [s for s in roots if s.batch_number == COMPLETED_BATCH_NUMBER]

        self.assertEqual([s.rows_processed for s in batches if s.rows_processed], [500] * 20)
        self.assertEqual(batches[-1].batch_number, 21)
        self.assertEqual(batches[-1].rows_processed, 0)
        self.assertEqual(batches[-1].total_rows_processed, 10000)
        self.assertEqual(len(completed), 1)
        self.assertEqual(completed[0].status, StepStatus.COMPLETED)
        self.assertEqual(completed[0].total_rows_processed, 10000)
        self.assertEqual(len(self.fixture.target_ids()), 10000)
        self.assertEqual(self.run_status(run_id).status, RunStatus.SUCCEEDED)

    def test_window_and_watermark(self):
        """Test a first Delta run uses the one-year window and advances the watermark to its end."""
        self.fixture.add_roots(3)

        run_id = self.coordinator.run_sync(SyncRequest())

        step = self.steps(run_id)[0]
        self.assertEqual(step.window_start, WINDOW_END - timedelta(days=365))
        self.assertEqual(step.window_end, WINDOW_END)

        watermark = WatermarkStore(self.db).get(TABLE_NAME)
        self.assertEqual(watermark.last_modified_at, WINDOW_END)
        self.assertEqual(watermark.last_run_id, run_id)
        self.assertTrue(watermark.initial_full_load_done)
        self.assertIsNone(LeaseManager(self.db).current(TABLE_NAME))

    def test_successive_runs_overlap_by_buffer(self):
        """Test a second Delta run starts one buffer before the first run's watermark."""
        self.coordinator.run_sync(SyncRequest())
        first_mark = WatermarkStore(self.db).last_modified_at(TABLE_NAME)
        self.assertEqual(first_mark, WINDOW_END)

        self.fixture.add_record('late', modified=WINDOW_END - timedelta(minutes=30))
        later = RUN_START + timedelta(days=1)
        second = SyncCoordinator(self.db, self.store, sink=self.sink, clock=lambda: later)
        run_id = second.run_sync(SyncRequest())

        step = self.steps(run_id)[0]
        self.assertEqual(step.window_start, first_mark - timedelta(minutes=240))
        self.assertEqual(step.window_end, later - timedelta(minutes=240))
        self.assertEqual(WatermarkStore(self.db).last_modified_at(TABLE_NAME), step.window_end)
        self.assertGreater(step.window_end, first_mark)
        self.assertEqual(self.fixture.target_ids(), ['late'])

    def test_missing_parent_backfilled_before_children(self):
        """Test an out-of-window parent is queued and copied before its child."""
        self.fixture.add_record('p-1', modified=BEFORE_WINDOW)
        self.fixture.add_record('c-1', parent_id='p-1', tenant='bu-7')
        spy = Mock(wraps=self.store)
        coordinator = self.make_coordinator(store=spy)

        run_id = coordinator.run_sync(SyncRequest())

        entries = MissingParentQueue(self.db).entries(run_id, TABLE_NAME)
        self.assertEqual([(e.record_id, e.group_tag, e.processed) for e in entries], [('p-1', 'bu-7', True)])
        self.assertEqual(self.fixture.target_ids(), ['c-1', 'p-1'])

        calls = [c[0] for c in spy.method_calls]
        parent_insert = calls.index('insert_records')
        children_copy = max(
            i for i, c in enumerate(spy.method_calls) if c[0] == 'copy_batch' and c[1][1] is False
        )
        self.assertLess(parent_insert, children_copy)

        missing = self.steps(run_id, Phase.MISSING_PARENTS)
        self.assertEqual([(s.batch_number, s.rows_processed) for s in missing], [(0, 0), (1, 1)])
        self.assertEqual(missing[0].total_rows_processed, 1)

    def test_children_run_single_threaded(self):
        """Test requested parallelism reaches Roots but not Children or MissingParents."""
        self.fixture.add_record('p-1', modified=BEFORE_WINDOW)
        self.fixture.add_record('c-1', parent_id='p-1')
        spy = Mock(wraps=self.store)

        self.make_coordinator(store=spy).run_sync(SyncRequest(max_parallelism=8))

        for call in spy.method_calls:
            if call[0] == 'copy_batch':
                roots, parallelism = call[1][1], call[1][5]
                self.assertEqual(parallelism, 8 if roots else 1)
            elif call[0] == 'insert_records':
                self.assertEqual(call[1][2], 1)

    def test_run_is_idempotent(self):
        """Test a second run over the same data inserts nothing new."""
        self.fixture.add_record('p-1', modified=BEFORE_WINDOW)
        self.fixture.add_record('c-1', parent_id='p-1')
        self.fixture.add_roots(5)

        self.coordinator.run_sync(SyncRequest(batch_size=2))
        first = self.fixture.target_ids()
        second_run = self.coordinator.run_sync(SyncRequest(run_type=RunType.FULL, batch_size=2))

        self.assertEqual(self.fixture.target_ids(), first)
        totals = [s.total_rows_processed for s in self.steps(second_run) if s.batch_number == COMPLETED_BATCH_NUMBER]
        self.assertEqual(totals, [0, 0, 0])

    def test_tables_processed_in_name_order(self):
        """Test every active table is processed in table-name order."""
        self.fixture.configure(table_name='zeta')
        self.fixture.configure(table_name='alpha')
        self.fixture.configure(table_name='inactive', is_active=False)

        with patch.object(SyncCoordinator, '_sync_table') as sync_table:
            self.coordinator.run_sync(SyncRequest())

        self.assertEqual([c[0][1].table_name for c in sync_table.call_args_list], ['alpha', TABLE_NAME, 'zeta'])


class TestFailureAndResume(CoordinatorTestCase):
    """Test fail-fast behavior and resumption from the ledger."""

    def test_failure_is_recorded_and_reraised(self):
        """Test a failing batch marks the run Failed, logs the phase and releases the lease."""
        self.fixture.add_roots(3)
        store = Mock(wraps=self.store)
        store.copy_batch.side_effect = RuntimeError('connection reset')

        with self.assertRaises(BatchExecutionError) as ctx:
            self.make_coordinator(store=store).run_sync(SyncRequest(run_id='run-f'))

        self.assertEqual(ctx.exception.phase, int(Phase.ROOTS))
        self.assertEqual(ctx.exception.table_name, TABLE_NAME)

        run = self.run_status('run-f')
        self.assertEqual(run.status, RunStatus.FAILED)
        self.assertIn('connection reset', run.error_message)

        failure = [s for s in self.steps('run-f') if s.batch_number == FAILURE_BATCH_NUMBER]
        self.assertEqual(len(failure), 1)
        self.assertEqual(failure[0].phase, int(Phase.ROOTS))
        self.assertEqual(failure[0].status, StepStatus.FAILED)

        self.assertIsNone(LeaseManager(self.db).current(TABLE_NAME))
        self.assertIsNone(WatermarkStore(self.db).last_modified_at(TABLE_NAME))

    def test_first_failing_table_stops_the_run(self):
        """Test tables after a failing table are not processed."""
        self.fixture.configure(table_name='zeta')
        store = Mock(wraps=self.store)
        store.copy_batch.side_effect = RuntimeError('disk full')

        with self.assertRaises(BatchExecutionError):
            self.make_coordinator(store=store).run_sync(SyncRequest(run_id='run-f'))

        tables = {s.table_name for s in self.coordinator.ledger.steps('run-f')}
        self.assertEqual(tables, {TABLE_NAME})

    def test_resume_after_crash(self):
        """Test a resumed run continues batch numbering and reaches the same final state."""
        self.fixture.add_roots(10)
        store = Mock(wraps=self.store)
        real_copy = self.store.copy_batch
        calls = {'n': 0}

        def crash_on_third(*args, **kwargs):
            calls['n'] += 1
            if calls['n'] == 3:
                raise RuntimeError('killed')
            return real_copy(*args, **kwargs)

        store.copy_batch.side_effect = crash_on_third

        with self.assertRaises(BatchExecutionError):
            self.make_coordinator(store=store).run_sync(SyncRequest(run_id='run-r', batch_size=3))
        self.assertEqual(len(self.fixture.target_ids()), 6)

        self.coordinator.run_sync(SyncRequest(run_id='run-r', batch_size=3))

        roots = [s for s in self.steps('run-r', Phase.ROOTS) if s.batch_number not in (0, FAILURE_BATCH_NUMBER)]
        self.assertEqual([s.batch_number for s in roots], [1, 2, 3, 4, 5])
        self.assertEqual([s.rows_processed for s in roots], [3, 3, 3, 1, 0])
        self.assertEqual(roots[-1].total_rows_processed, 10)
        self.assertEqual(len(self.fixture.target_ids()), 10)
        self.assertEqual(self.run_status('run-r').status, RunStatus.SUCCEEDED)
        self.assertEqual(
            self.coordinator.ledger.phase_state('run-r', TABLE_NAME, Phase.ROOTS),
            Completed(total_rows=10)
        )

    def test_resume_inside_backfill_keeps_queue(self):
        """Test a run killed while draining parents resumes without rebuilding the queue."""
        for i in range(1, 4):
            self.fixture.add_record(f'p-{i}', modified=BEFORE_WINDOW)
            self.fixture.add_record(f'c-{i}', parent_id=f'p-{i}')
        store = Mock(wraps=self.store)
        real_insert = self.store.insert_records
        calls = {'n': 0}

        def crash_on_second(*args, **kwargs):
            calls['n'] += 1
            if calls['n'] == 2:
                raise RuntimeError('killed')
            return real_insert(*args, **kwargs)

        store.insert_records.side_effect = crash_on_second

        with self.assertRaises(BatchExecutionError) as ctx:
            self.make_coordinator(store=store).run_sync(SyncRequest(run_id='run-q', batch_size=1))
        self.assertEqual(ctx.exception.phase, int(Phase.MISSING_PARENTS))
        self.assertEqual(self.fixture.target_ids(), ['p-1'])

        spy = Mock(wraps=self.store)
        self.make_coordinator(store=spy).run_sync(SyncRequest(run_id='run-q', batch_size=1))

        self.assertNotIn('find_missing_parents', [c[0] for c in spy.method_calls])
        self.assertEqual(len(MissingParentQueue(self.db).entries('run-q', TABLE_NAME)), 3)
        self.assertEqual(self.fixture.target_ids(), ['c-1', 'c-2', 'c-3', 'p-1', 'p-2', 'p-3'])

        run = self.run_status('run-q')
        self.assertEqual(run.status, RunStatus.SUCCEEDED)
        self.assertIsNone(run.error_message)

    def test_failure_bookkeeping_survives_ledger_error(self):
        """Test the lease is released and the run failed even if the failure row cannot be written."""
        self.fixture.add_roots(2)
        store = Mock(wraps=self.store)
        store.copy_batch.side_effect = RuntimeError('connection reset')
        coordinator = self.make_coordinator(store=store)

        with patch.object(coordinator.ledger, 'record_failure', side_effect=RuntimeError('ledger down')):
            with self.assertRaises(RuntimeError):
                coordinator.run_sync(SyncRequest(run_id='run-l'))

        self.assertIsNone(LeaseManager(self.db).current(TABLE_NAME))
        run = self.run_status('run-l')
        self.assertEqual(run.status, RunStatus.FAILED)
        self.assertIn('connection reset', run.error_message)

    def test_completed_phases_are_not_reentered(self):
        """Test resuming a finished run performs no batches."""
        self.fixture.add_roots(2)
        run_id = self.coordinator.run_sync(SyncRequest())
        before = len(self.steps(run_id))
        spy = Mock(wraps=self.store)

        self.make_coordinator(store=spy).run_sync(SyncRequest(run_id=run_id))

        self.assertEqual(len(self.steps(run_id)), before)
        self.assertNotIn('copy_batch', [c[0] for c in spy.method_calls])

    def test_unknown_table_fails_before_run_creation(self):
        """Test a missing table is rejected without creating a run."""
        with self.assertRaises(ConfigurationError):
            self.coordinator.run_sync(SyncRequest(table_name='nope', run_id='run-x'))

        self.assertIsNone(self.run_status('run-x'))

    def test_invalid_request(self):
        """Test non-positive batch sizes are rejected."""
        with self.assertRaises(ConfigurationError):
            self.coordinator.run_sync(SyncRequest(batch_size=0))


class TestDryRunAndReset(CoordinatorTestCase):
    """Test side-effect-free previews and progress reset."""

    def test_dry_run_mutates_nothing(self):
        """Test a dry run reports planned operations and persists nothing."""
        self.fixture.add_roots(4)
        self.fixture.add_record('p-1', modified=BEFORE_WINDOW)
        self.fixture.add_record('c-1', parent_id='p-1')

        run_id = self.coordinator.run_sync(SyncRequest(run_type=RunType.DRY_RUN))

        self.assertEqual(self.fixture.target_ids(), [])
        self.assertIsNone(self.run_status(run_id))
        self.assertEqual(self.coordinator.ledger.steps(run_id), [])
        self.assertFalse(MissingParentQueue(self.db).is_populated(run_id, TABLE_NAME))
        self.assertIsNone(LeaseManager(self.db).current(TABLE_NAME))
        self.assertIsNone(WatermarkStore(self.db).last_modified_at(TABLE_NAME))

        self.assertEqual(self.sink.actions(), [
            'create_run', 'acquire_lease', 'phase_Roots', 'phase_MissingParents',
            'phase_Children', 'advance_watermark', 'release_lease'
        ])
        pending = {op.action: op.details['pending'] for op in self.sink.operations if 'pending' in op.details}
        self.assertEqual(pending, {'phase_Roots': 4, 'phase_MissingParents': 1, 'phase_Children': 1})

    def test_dry_run_failure_is_reported_only(self):
        """Test a failing dry run reports the failure and persists nothing."""
        self.fixture.add_roots(2)
        store = Mock(wraps=self.store)
        store.count_pending.side_effect = RuntimeError('source offline')

        with self.assertRaises(RuntimeError):
            self.make_coordinator(store=store).run_sync(SyncRequest(run_type=RunType.DRY_RUN, run_id='run-d'))

        self.assertEqual(self.sink.actions(), ['create_run', 'acquire_lease', 'failure'])
        failure = self.sink.operations[-1]
        self.assertEqual(failure.details['phase'], int(Phase.ROOTS))
        self.assertIn('source offline', failure.details['error'])
        self.assertIsNone(self.run_status('run-d'))
        self.assertEqual(self.coordinator.ledger.steps('run-d'), [])
        self.assertIsNone(LeaseManager(self.db).current(TABLE_NAME))

    def test_reset_restarts_phases_and_keeps_target(self):
        """Test reset returns Roots to NotStarted while copied rows stay."""
        self.fixture.add_roots(3)
        run_id = self.coordinator.run_sync(SyncRequest())
        self.assertEqual(len(self.fixture.target_ids()), 3)

        self.coordinator.ledger.reset(run_id, TABLE_NAME)

        self.assertEqual(self.coordinator.ledger.phase_state(run_id, TABLE_NAME, Phase.ROOTS), NotStarted())
        self.assertEqual(len(self.fixture.target_ids()), 3)

    def test_reset_request_reruns_from_first_batch(self):
        """Test a reset request rebuilds the ledger from batch 1."""
        self.fixture.add_roots(3)
        run_id = self.coordinator.run_sync(SyncRequest())

        self.coordinator.run_sync(SyncRequest(run_id=run_id, reset=True))

        roots = [s for s in self.steps(run_id, Phase.ROOTS) if s.batch_number != COMPLETED_BATCH_NUMBER]
        self.assertEqual([(s.batch_number, s.rows_processed) for s in roots], [(1, 0)])
        self.assertEqual(len(self.fixture.target_ids()), 3)


class TestOperatorWrapper(CoordinatorTestCase):
    """Test the two operator modes."""

    def test_modes_delegate_as_delta(self):
        """Test both modes issue Delta requests without reset and forward the tenant."""
        coordinator = Mock()
        coordinator.run_sync.return_value = 'run-1'

        self.assertEqual(run_operator(coordinator, OperatorMode.ALL_TABLES, table_name='ignored'), 'run-1')
        request = coordinator.run_sync.call_args[0][0]
        self.assertEqual(request.run_type, RunType.DELTA)
        self.assertIsNone(request.table_name)
        self.assertFalse(request.reset)
        self.assertIsNone(request.tenant_id)

        run_operator(coordinator, OperatorMode.SINGLE_TABLE, table_name=TABLE_NAME, tenant_id='bu-7')
        request = coordinator.run_sync.call_args[0][0]
        self.assertEqual(request.table_name, TABLE_NAME)
        self.assertEqual(request.tenant_id, 'bu-7')

        run_operator(coordinator, OperatorMode.ALL_TABLES, tenant_id='bu-7')
        self.assertEqual(coordinator.run_sync.call_args[0][0].tenant_id, 'bu-7')

    def test_invalid_modes(self):
        """Test unknown modes and SingleTable without a table are rejected."""
        coordinator = Mock()
        with self.assertRaises(ConfigurationError):
            run_operator(coordinator, 'Everything')
        with self.assertRaises(ConfigurationError):
            run_operator(coordinator, OperatorMode.SINGLE_TABLE)
        coordinator.run_sync.assert_not_called()

    def test_single_table_end_to_end(self):
        """Test SingleTable mode copies the named table."""
        self.fixture.add_roots(2)

        run_id = run_operator(self.coordinator, OperatorMode.SINGLE_TABLE, table_name=TABLE_NAME)

        self.assertEqual(self.run_status(run_id).run_type, RunType.DELTA)
        self.assertEqual(len(self.fixture.target_ids()), 2)


if __name__ == '__main__':
    unittest.main()
