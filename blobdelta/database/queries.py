"""
Database Query Helpers Module
Read-only monitoring queries over runs, the progress ledger, the
missing-parent queue and watermarks.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import case, desc, func
from sqlalchemy.orm import Session

from blobdelta.database.models import (
    COMPLETED_BATCH_NUMBER, FAILURE_BATCH_NUMBER,
    MissingParentQueueEntry, RunStep, StepStatus, SyncRun, TableSyncConfig, Watermark
)
from blobdelta.utils.helpers import isoformat_or_none, utcnow
from blobdelta.utils.logger import get_logger

logger = get_logger(__name__)

PHASE_LABELS = {1: 'Roots', 2: 'MissingParents', 3: 'Children'}


class SyncQueries:
    """Query helper functions for sync monitoring."""

    def __init__(self, session: Session):
        """Initialize with database session."""
        self.session = session

    # ========================================
    # Runs
    # ========================================

    def get_recent_runs(self, limit: int = 10, status: Optional[str] = None,
                        since: Optional[datetime] = None) -> List[Dict]:
        """Most recent runs, newest first."""
        query = self.session.query(SyncRun)
        if status:
            query = query.filter(SyncRun.status == status)
        if since:
            query = query.filter(SyncRun.started_at >= since)
        runs = query.order_by(desc(SyncRun.started_at)).limit(limit).all()
        return [self._run_dict(run) for run in runs]

    def get_run(self, run_id: str) -> Optional[Dict]:
        """Run header plus per-table, per-phase progress."""
        run = self.session.get(SyncRun, run_id)
        if run is None:
            return None

        result = self._run_dict(run)
        result['tables'] = self.get_phase_progress(run_id)
        return result

    @staticmethod
    def _run_dict(run: SyncRun) -> Dict:
        duration = None
        if run.started_at and run.completed_at:
            duration = (run.completed_at - run.started_at).total_seconds()

        return {
            'run_id': run.run_id,
            'run_type': run.run_type,
            'requested_by': run.requested_by,
            'status': run.status,
            'started_at': isoformat_or_none(run.started_at),
            'completed_at': isoformat_or_none(run.completed_at),
            'duration_seconds': duration,
            'error_message': run.error_message,
        }

    # ========================================
    # Progress ledger
    # ========================================

    def get_phase_progress(self, run_id: str) -> Dict[str, List[Dict]]:
        """
        Summarize the ledger of a run.

        Returns:
            {table_name: [{phase, label, status, batches, total_rows, ...}, ...]}
        """
        is_batch = RunStep.batch_number.notin_([COMPLETED_BATCH_NUMBER, FAILURE_BATCH_NUMBER])
        rows = (
            self.session.query(
                RunStep.table_name,
                RunStep.phase,
                func.sum(case((is_batch, 1), else_=0)).label('batches'),
                func.max(case((is_batch, RunStep.batch_number), else_=0)).label('last_batch'),
                func.max(RunStep.total_rows_processed).label('total_rows'),
                func.max(case((RunStep.status == StepStatus.COMPLETED, 1), else_=0)).label('completed'),
                func.max(case((is_batch, RunStep.batch_completed_at), else_=None)).label('last_batch_at'),
                func.min(RunStep.window_start).label('window_start'),
                func.max(RunStep.window_end).label('window_end'),
                func.max(RunStep.batch_completed_at).label('last_activity'),
            )
            .filter(RunStep.run_id == run_id)
            .group_by(RunStep.table_name, RunStep.phase)
            .order_by(RunStep.table_name, RunStep.phase)
            .all()
        )

        failures = {
            (step.table_name, step.phase): step
            for step in self.session.query(RunStep)
            .filter(RunStep.run_id == run_id)
            .filter(RunStep.batch_number == FAILURE_BATCH_NUMBER)
        }

        progress: Dict[str, List[Dict]] = {}
        for row in rows:
            failure = failures.get((row.table_name, row.phase))
            if row.completed:
                status = StepStatus.COMPLETED
            elif failure is not None and (
                row.last_batch_at is None or failure.batch_completed_at >= row.last_batch_at
            ):
                status = StepStatus.FAILED
            else:
                status = StepStatus.IN_PROGRESS

            progress.setdefault(row.table_name, []).append({
                'phase': row.phase,
                'label': PHASE_LABELS.get(row.phase, 'Setup'),
                'status': status,
                'batches': int(row.batches or 0),
                'last_batch': int(row.last_batch or 0),
                'total_rows': int(row.total_rows or 0),
                'window_start': isoformat_or_none(row.window_start),
                'window_end': isoformat_or_none(row.window_end),
                'last_activity': isoformat_or_none(row.last_activity),
                'error_message': failure.error_message if failure is not None else None,
            })

        return progress

    # ========================================
    # Queue
    # ========================================

    def get_queue_depth(self, run_id: str) -> List[Dict]:
        """Queued and pending missing parents per table for a run."""
        rows = (
            self.session.query(
                MissingParentQueueEntry.table_name,
                func.count(MissingParentQueueEntry.record_id).label('queued'),
                func.sum(case((MissingParentQueueEntry.processed.is_(False), 1), else_=0)).label('pending'),
            )
            .filter(MissingParentQueueEntry.run_id == run_id)
            .group_by(MissingParentQueueEntry.table_name)
            .order_by(MissingParentQueueEntry.table_name)
            .all()
        )
        return [
            {'table_name': row.table_name, 'queued': int(row.queued), 'pending': int(row.pending or 0)}
            for row in rows
        ]

    # ========================================
    # Watermarks
    # ========================================

    def get_watermarks(self, stale_after: timedelta = timedelta(hours=24),
                       now: Optional[datetime] = None) -> List[Dict]:
        """
        Watermarks of all configured tables with staleness and lease state.

        A table is stale when it was never synchronized or its last
        successful run completed more than ``stale_after`` ago.
        """
        now = now or utcnow()
        rows = (
            self.session.query(TableSyncConfig, Watermark)
            .outerjoin(Watermark, Watermark.table_name == TableSyncConfig.table_name)
            .order_by(TableSyncConfig.table_name)
            .all()
        )

        result = []
        for config, watermark in rows:
            completed_at = watermark.last_run_completed_at if watermark else None
            lease_expires = watermark.lease_expires_at if watermark else None
            lease_holder = watermark.lease_holder_run_id if watermark else None

            result.append({
                'table_name': config.table_name,
                'target_group': config.target_group,
                'is_active': config.is_active,
                'last_modified_at': isoformat_or_none(watermark.last_modified_at if watermark else None),
                'last_run_id': watermark.last_run_id if watermark else None,
                'last_run_completed_at': isoformat_or_none(completed_at),
                'initial_full_load_done': bool(watermark and watermark.initial_full_load_done),
                'lease_holder_run_id': lease_holder,
                'lease_expires_at': isoformat_or_none(lease_expires),
                'lease_live': bool(lease_holder and lease_expires and lease_expires > now),
                'stale': completed_at is None or now - completed_at > stale_after,
            })

        return result
