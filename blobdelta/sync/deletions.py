"""
Deletion Log
Records deletions observed in the source. Entries are informational: the
target is append-only and deletions are never applied to it.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func

from blobdelta.database.connection import DatabaseConnection
from blobdelta.database.models import DeletionLogEntry
from blobdelta.sync.window import SyncWindow
from blobdelta.utils.helpers import sanitize_string, utcnow
from blobdelta.utils.logger import LoggerMixin


class DeletionLog(LoggerMixin):

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def record(self, table_name: str, record_id: str, deleted_at: Optional[datetime] = None,
               source: Optional[str] = None, reason: Optional[str] = None) -> bool:
        """
        Record one deletion.

        Returns:
            False if the same deletion was already recorded
        """
        deleted_at = deleted_at or utcnow()
        with self.db.session_scope() as session:
            if session.get(DeletionLogEntry, (table_name, str(record_id), deleted_at)) is not None:
                return False
            session.add(DeletionLogEntry(
                table_name=table_name,
                record_id=str(record_id),
                deleted_at=deleted_at,
                source=sanitize_string(source, 128) if source else None,
                reason=sanitize_string(reason, 256) if reason else None,
            ))
        return True

    def count(self, table_name: str, window: Optional[SyncWindow] = None) -> int:
        """Deletions recorded for a table, optionally only those inside a window."""
        with self.db.session_scope() as session:
            query = (
                session.query(func.count(DeletionLogEntry.record_id))
                .filter(DeletionLogEntry.table_name == table_name)
            )
            if window is not None:
                query = query.filter(
                    DeletionLogEntry.deleted_at >= window.start,
                    DeletionLogEntry.deleted_at < window.end
                )
            return query.scalar() or 0

    def entries(self, table_name: str, limit: int = 100) -> List[DeletionLogEntry]:
        with self.db.session_scope() as session:
            return (
                session.query(DeletionLogEntry)
                .filter(DeletionLogEntry.table_name == table_name)
                .order_by(DeletionLogEntry.deleted_at.desc())
                .limit(limit)
                .all()
            )
