"""
Missing-Parent Queue
Durable work queue of ancestor records that must be copied before the
children referencing them.
"""

from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func

from blobdelta.database.connection import DatabaseConnection
from blobdelta.database.models import MissingParentQueueEntry
from blobdelta.utils.helpers import chunk_list, utcnow
from blobdelta.utils.logger import LoggerMixin

# Keeps IN (...) lists within driver parameter limits
_ID_CHUNK = 500


class MissingParentQueue(LoggerMixin):
    """Queue entries scoped by (run, table)."""

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def is_populated(self, run_id: str, table_name: str) -> bool:
        """True once any entry exists for the run/table."""
        with self.db.session_scope() as session:
            return session.query(
                session.query(MissingParentQueueEntry)
                .filter(MissingParentQueueEntry.run_id == run_id)
                .filter(MissingParentQueueEntry.table_name == table_name)
                .exists()
            ).scalar()

    def populate(self, run_id: str, table_name: str,
                 parents: Iterable[Tuple[str, Optional[str]]]) -> int:
        """
        Enqueue parent record IDs as unprocessed.

        IDs already queued for the run/table are skipped, so repeating the
        call is harmless.

        Args:
            parents: (record_id, group_tag) pairs

        Returns:
            Number of new entries
        """
        pending = {}
        for record_id, group_tag in parents:
            pending.setdefault(str(record_id), group_tag)

        if not pending:
            return 0

        now = utcnow()
        added = 0
        with self.db.session_scope() as session:
            for ids in chunk_list(sorted(pending), _ID_CHUNK):
                existing = {
                    row.record_id for row in
                    session.query(MissingParentQueueEntry.record_id)
                    .filter(MissingParentQueueEntry.run_id == run_id)
                    .filter(MissingParentQueueEntry.table_name == table_name)
                    .filter(MissingParentQueueEntry.record_id.in_(ids))
                }
                for record_id in ids:
                    if record_id in existing:
                        continue
                    session.add(MissingParentQueueEntry(
                        run_id=run_id,
                        table_name=table_name,
                        record_id=record_id,
                        group_tag=pending[record_id],
                        processed=False,
                        created_at=now,
                    ))
                    added += 1

        self.logger.info(f"{table_name}: queued {added} missing parents for run {run_id}")
        return added

    def claim(self, run_id: str, table_name: str, limit: int) -> List[str]:
        """
        Read up to ``limit`` unprocessed IDs, skipping rows locked by another drain.

        Claimed entries stay unprocessed until mark_processed is called.
        """
        with self.db.session_scope() as session:
            rows = (
                session.query(MissingParentQueueEntry.record_id)
                .filter(MissingParentQueueEntry.run_id == run_id)
                .filter(MissingParentQueueEntry.table_name == table_name)
                .filter(MissingParentQueueEntry.processed.is_(False))
                .order_by(MissingParentQueueEntry.record_id)
                .limit(limit)
                .with_for_update(skip_locked=True)
                .all()
            )
            return [row.record_id for row in rows]

    def mark_processed(self, run_id: str, table_name: str, record_ids: List[str]) -> None:
        """Flag claimed entries as drained."""
        with self.db.session_scope() as session:
            for ids in chunk_list(list(record_ids), _ID_CHUNK):
                (
                    session.query(MissingParentQueueEntry)
                    .filter(MissingParentQueueEntry.run_id == run_id)
                    .filter(MissingParentQueueEntry.table_name == table_name)
                    .filter(MissingParentQueueEntry.record_id.in_(ids))
                    .update({MissingParentQueueEntry.processed: True}, synchronize_session=False)
                )

    def depth(self, run_id: str, table_name: str) -> int:
        """Number of entries still waiting to be drained."""
        with self.db.session_scope() as session:
            return (
                session.query(func.count(MissingParentQueueEntry.record_id))
                .filter(MissingParentQueueEntry.run_id == run_id)
                .filter(MissingParentQueueEntry.table_name == table_name)
                .filter(MissingParentQueueEntry.processed.is_(False))
                .scalar()
            ) or 0

    def entries(self, run_id: str, table_name: str) -> List[MissingParentQueueEntry]:
        """All entries for a run/table, processed or not."""
        with self.db.session_scope() as session:
            return (
                session.query(MissingParentQueueEntry)
                .filter(MissingParentQueueEntry.run_id == run_id)
                .filter(MissingParentQueueEntry.table_name == table_name)
                .order_by(MissingParentQueueEntry.record_id)
                .all()
            )
