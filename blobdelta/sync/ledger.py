"""
Progress Ledger
Append-only per-batch log of phase outcomes, and the phase state machine
derived from it. The ledger is the source of truth for resuming a run.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from typing import List, Optional, Union

from blobdelta.database.connection import DatabaseConnection
from blobdelta.database.models import (
    COMPLETED_BATCH_NUMBER, FAILURE_BATCH_NUMBER,
    MissingParentQueueEntry, RunStep, StepStatus
)
from blobdelta.sync.window import SyncWindow
from blobdelta.utils.helpers import error_text, utcnow
from blobdelta.utils.logger import LoggerMixin


class Phase(IntEnum):
    """Ordered stages of a table's synchronization."""
    ROOTS = 1
    MISSING_PARENTS = 2
    CHILDREN = 3

    @property
    def label(self) -> str:
        return {
            Phase.ROOTS: 'Roots',
            Phase.MISSING_PARENTS: 'MissingParents',
            Phase.CHILDREN: 'Children',
        }[self]


# Phase number recorded for failures raised before any phase started
NO_PHASE = 0


# ========================================
# Phase states
# ========================================

@dataclass(frozen=True)
class NotStarted:
    """No ledger rows for the phase."""


@dataclass(frozen=True)
class InProgress:
    """Batches logged, phase not completed. Resume after last_batch."""
    last_batch: int
    total_rows: int


@dataclass(frozen=True)
class Completed:
    """Completion marker present. The phase is never re-entered."""
    total_rows: int


@dataclass(frozen=True)
class Failed:
    """Most recent event was a failure. Retrying resumes like InProgress."""
    reason: str
    last_batch: int
    total_rows: int


PhaseState = Union[NotStarted, InProgress, Completed, Failed]


def resume_point(state: PhaseState) -> tuple:
    """(last batch number, cumulative rows) to continue a phase from."""
    if isinstance(state, (InProgress, Failed)):
        return state.last_batch, state.total_rows
    return 0, 0


class ProgressLedger(LoggerMixin):
    """Reads and appends RunStep rows for a (run, table) pair."""

    def __init__(self, db: DatabaseConnection):
        self.db = db

    # ========================================
    # State
    # ========================================

    def phase_state(self, run_id: str, table_name: str, phase: int) -> PhaseState:
        """Derive the current state of a phase from its ledger rows."""
        with self.db.session_scope() as session:
            rows = (
                session.query(RunStep)
                .filter(RunStep.run_id == run_id)
                .filter(RunStep.table_name == table_name)
                .filter(RunStep.phase == int(phase))
                .all()
            )

        completed = next(
            (r for r in rows
             if r.batch_number == COMPLETED_BATCH_NUMBER and r.status == StepStatus.COMPLETED),
            None
        )
        if completed is not None:
            return Completed(total_rows=completed.total_rows_processed)

        batches = [
            r for r in rows
            if r.batch_number not in (COMPLETED_BATCH_NUMBER, FAILURE_BATCH_NUMBER)
        ]
        last = max(batches, key=lambda r: r.batch_number, default=None)
        last_batch = last.batch_number if last else 0
        total_rows = last.total_rows_processed if last else 0

        failure = next((r for r in rows if r.batch_number == FAILURE_BATCH_NUMBER), None)
        if failure is not None and (last is None or failure.batch_completed_at >= last.batch_completed_at):
            return Failed(reason=failure.error_message or '', last_batch=last_batch, total_rows=total_rows)

        if last is not None:
            return InProgress(last_batch=last_batch, total_rows=total_rows)

        return NotStarted()

    def recorded_window(self, run_id: str, table_name: str) -> Optional[SyncWindow]:
        """The window an earlier attempt of this run used for the table, if any."""
        with self.db.session_scope() as session:
            row = (
                session.query(RunStep)
                .filter(RunStep.run_id == run_id)
                .filter(RunStep.table_name == table_name)
                .filter(RunStep.window_start.isnot(None))
                .filter(RunStep.window_end.isnot(None))
                .order_by(RunStep.batch_started_at)
                .first()
            )
            if row is None:
                return None
            return SyncWindow(start=row.window_start, end=row.window_end)

    def steps(self, run_id: str, table_name: Optional[str] = None) -> List[RunStep]:
        """All ledger rows for a run, optionally limited to one table."""
        with self.db.session_scope() as session:
            query = session.query(RunStep).filter(RunStep.run_id == run_id)
            if table_name is not None:
                query = query.filter(RunStep.table_name == table_name)
            return query.order_by(RunStep.table_name, RunStep.phase, RunStep.batch_number).all()

    # ========================================
    # Appends
    # ========================================

    def record_batch(self, run_id: str, table_name: str, phase: int, batch_number: int,
                     rows: int, total_rows: int, window: SyncWindow,
                     started_at: datetime, completed_at: Optional[datetime] = None) -> None:
        """Append one executed batch."""
        with self.db.session_scope() as session:
            session.add(RunStep(
                run_id=run_id,
                table_name=table_name,
                phase=int(phase),
                batch_number=batch_number,
                rows_processed=rows,
                total_rows_processed=total_rows,
                window_start=window.start,
                window_end=window.end,
                batch_started_at=started_at,
                batch_completed_at=completed_at or utcnow(),
                status=StepStatus.IN_PROGRESS,
            ))

    def mark_completed(self, run_id: str, table_name: str, phase: int,
                       total_rows: int, window: SyncWindow,
                       now: Optional[datetime] = None) -> bool:
        """
        Append the completion marker for a phase.

        Returns:
            False if the phase was already marked completed
        """
        now = now or utcnow()
        with self.db.session_scope() as session:
            existing = session.get(RunStep, (run_id, table_name, int(phase), COMPLETED_BATCH_NUMBER))
            if existing is not None:
                self.logger.warning(f"{table_name}: phase {int(phase)} of run {run_id} already completed")
                return False

            session.add(RunStep(
                run_id=run_id,
                table_name=table_name,
                phase=int(phase),
                batch_number=COMPLETED_BATCH_NUMBER,
                rows_processed=0,
                total_rows_processed=total_rows,
                window_start=window.start,
                window_end=window.end,
                batch_started_at=now,
                batch_completed_at=now,
                status=StepStatus.COMPLETED,
            ))
        return True

    def record_failure(self, run_id: str, table_name: str, phase: int, total_rows: int,
                       window: Optional[SyncWindow], error: BaseException,
                       started_at: Optional[datetime] = None,
                       now: Optional[datetime] = None) -> None:
        """
        Append the failure marker for a phase.

        Only one failure marker fits the key, so a repeated failure of the
        same phase replaces the earlier marker.
        """
        now = now or utcnow()
        with self.db.session_scope() as session:
            previous = session.get(RunStep, (run_id, table_name, int(phase), FAILURE_BATCH_NUMBER))
            if previous is not None:
                session.delete(previous)
                session.flush()

            session.add(RunStep(
                run_id=run_id,
                table_name=table_name,
                phase=int(phase),
                batch_number=FAILURE_BATCH_NUMBER,
                rows_processed=0,
                total_rows_processed=total_rows,
                window_start=window.start if window else None,
                window_end=window.end if window else None,
                batch_started_at=started_at or now,
                batch_completed_at=now,
                status=StepStatus.FAILED,
                error_message=error_text(error),
            ))

    # ========================================
    # Reset
    # ========================================

    def reset(self, run_id: str, table_name: str) -> int:
        """
        Forget all progress of a run for one table.

        Deletes ledger rows and queue entries; rows already copied into the
        target stay where they are.

        Returns:
            Number of ledger rows removed
        """
        with self.db.session_scope() as session:
            queue_removed = (
                session.query(MissingParentQueueEntry)
                .filter(MissingParentQueueEntry.run_id == run_id)
                .filter(MissingParentQueueEntry.table_name == table_name)
                .delete(synchronize_session=False)
            )
            steps_removed = (
                session.query(RunStep)
                .filter(RunStep.run_id == run_id)
                .filter(RunStep.table_name == table_name)
                .delete(synchronize_session=False)
            )

        self.logger.info(
            f"{table_name}: reset run {run_id} "
            f"({steps_removed} ledger rows, {queue_removed} queue entries removed)"
        )
        return steps_removed
