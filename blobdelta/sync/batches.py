"""
Batch Sources and Executor
Typed producers of the next bounded batch for each phase, and the executor
that runs one batch and wraps record-store failures.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from blobdelta.database.models import TableSyncConfig
from blobdelta.sync.exceptions import BatchExecutionError, SyncError
from blobdelta.sync.ledger import Phase
from blobdelta.sync.missing_parents import MissingParentQueue
from blobdelta.sync.record_store import RecordFilter, RecordStore
from blobdelta.sync.window import SyncWindow
from blobdelta.utils.logger import LoggerMixin


@dataclass(frozen=True)
class BatchResult:
    """IDs a batch worked on and the number of rows it inserted."""
    record_ids: List[str]
    count: int

    @property
    def is_empty(self) -> bool:
        return not self.record_ids


@dataclass(frozen=True)
class BatchConstraints:
    """Per-run constraints shared by every batch of every phase."""
    record_filter: RecordFilter
    max_parallelism: int = 1


class BatchSource(ABC):
    """Produces and applies the next batch of one phase for one table."""

    phase: Phase
    # Upper bound on statement parallelism; None means the requested value
    parallelism_cap: Optional[int] = None
    # Whether the batch that comes back empty is still written to the ledger
    log_final_batch: bool = True

    def __init__(self, store: RecordStore, config: TableSyncConfig):
        self.store = store
        self.config = config

    def parallelism(self, constraints: BatchConstraints) -> int:
        requested = max(1, constraints.max_parallelism)
        if self.parallelism_cap is None:
            return requested
        return min(requested, self.parallelism_cap)

    @abstractmethod
    def next_batch(self, window: SyncWindow, constraints: BatchConstraints, limit: int) -> BatchResult:
        """Insert the next batch of up to ``limit`` records."""

    @abstractmethod
    def preview(self, window: SyncWindow, constraints: BatchConstraints) -> int:
        """Number of records the phase would still insert. Read-only."""


class RootsBatchSource(BatchSource):
    """Records without a parent."""

    phase = Phase.ROOTS

    def next_batch(self, window, constraints, limit):
        ids = self.store.copy_batch(
            self.config, True, window, constraints.record_filter, limit, self.parallelism(constraints)
        )
        return BatchResult(record_ids=ids, count=len(ids))

    def preview(self, window, constraints):
        return self.store.count_pending(self.config, True, window, constraints.record_filter)


class ChildrenBatchSource(BatchSource):
    """Records with a parent. Always single-threaded."""

    phase = Phase.CHILDREN
    parallelism_cap = 1

    def next_batch(self, window, constraints, limit):
        ids = self.store.copy_batch(
            self.config, False, window, constraints.record_filter, limit, self.parallelism(constraints)
        )
        return BatchResult(record_ids=ids, count=len(ids))

    def preview(self, window, constraints):
        return self.store.count_pending(self.config, False, window, constraints.record_filter)


class MissingParentsBatchSource(BatchSource):
    """
    Parents queued for backfill.

    The window does not restrict these records: a parent is copied because a
    child in the window references it, whenever the parent itself changed.
    """

    phase = Phase.MISSING_PARENTS
    parallelism_cap = 1
    log_final_batch = False

    def __init__(self, store: RecordStore, config: TableSyncConfig,
                 queue: MissingParentQueue, run_id: str):
        super().__init__(store, config)
        self.queue = queue
        self.run_id = run_id

    def populate(self, window: SyncWindow, constraints: BatchConstraints) -> int:
        """Fill the queue for this run/table unless an earlier attempt already did."""
        name = self.config.table_name
        if self.queue.is_populated(self.run_id, name):
            return 0
        parents = self.store.find_missing_parents(self.config, window, constraints.record_filter)
        return self.queue.populate(self.run_id, name, parents)

    def next_batch(self, window, constraints, limit):
        name = self.config.table_name
        claimed = self.queue.claim(self.run_id, name, limit)
        if not claimed:
            return BatchResult(record_ids=[], count=0)

        inserted = self.store.insert_records(self.config, claimed, self.parallelism(constraints))
        self.queue.mark_processed(self.run_id, name, claimed)
        return BatchResult(record_ids=claimed, count=len(inserted))

    def preview(self, window, constraints):
        return len(self.store.find_missing_parents(self.config, window, constraints.record_filter))


class BatchExecutor(LoggerMixin):
    """Runs one batch of a source and normalizes its failures."""

    def execute(self, source: BatchSource, window: SyncWindow, constraints: BatchConstraints,
                limit: int, batch_number: int) -> BatchResult:
        """
        Execute a single batch.

        Raises:
            BatchExecutionError: if the record store fails
        """
        name = source.config.table_name
        start = time.time()

        try:
            result = source.next_batch(window, constraints, limit)
        except SyncError:
            raise
        except Exception as e:
            raise BatchExecutionError(
                f"{source.phase.label} batch {batch_number} failed: {e}",
                table_name=name,
                phase=int(source.phase),
                batch_number=batch_number
            ) from e

        self.logger.debug(
            f"{name} {source.phase.label} batch {batch_number}: "
            f"{result.count} rows in {time.time() - start:.2f}s"
        )
        return result
