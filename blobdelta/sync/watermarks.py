"""
Watermark Store
Durable per-table record of the last fully synchronized modification time.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from blobdelta.database.connection import DatabaseConnection
from blobdelta.database.models import Watermark
from blobdelta.utils.helpers import utcnow
from blobdelta.utils.logger import LoggerMixin


def get_or_create_watermark(session: Session, table_name: str) -> Watermark:
    """Load the watermark row for a table, creating an empty one if absent."""
    watermark = session.get(Watermark, table_name)
    if watermark is None:
        watermark = Watermark(table_name=table_name, initial_full_load_done=False)
        session.add(watermark)
        session.flush()
    return watermark


class WatermarkStore(LoggerMixin):
    """Reads and advances table watermarks. Watermarks never move backward."""

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def get(self, table_name: str) -> Optional[Watermark]:
        """Get the watermark row for a table, or None if the table was never seen."""
        with self.db.session_scope() as session:
            return session.get(Watermark, table_name)

    def last_modified_at(self, table_name: str) -> Optional[datetime]:
        """Last fully synchronized modification time, or None if never run."""
        watermark = self.get(table_name)
        return watermark.last_modified_at if watermark else None

    def ensure(self, table_name: str) -> Watermark:
        """Make sure a watermark row exists for the table."""
        with self.db.session_scope() as session:
            return get_or_create_watermark(session, table_name)

    def advance(self, table_name: str, run_id: str, window_end: datetime,
                completed_at: Optional[datetime] = None) -> datetime:
        """
        Advance the watermark to the end of a completed window.

        A window older than the stored watermark (e.g. a resumed old run)
        leaves the watermark where it is.

        Returns:
            The watermark value after the update
        """
        completed_at = completed_at or utcnow()

        with self.db.session_scope() as session:
            watermark = get_or_create_watermark(session, table_name)
            previous = watermark.last_modified_at

            if previous is not None and previous > window_end:
                self.logger.warning(
                    f"{table_name}: window end {window_end.isoformat()} is behind watermark "
                    f"{previous.isoformat()}; keeping the existing watermark"
                )
            else:
                watermark.last_modified_at = window_end

            watermark.last_run_id = run_id
            watermark.last_run_completed_at = completed_at
            watermark.initial_full_load_done = True

            self.logger.info(f"{table_name}: watermark {previous} -> {watermark.last_modified_at}")
            return watermark.last_modified_at
