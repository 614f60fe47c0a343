"""
Lease Manager
Advisory, expiring per-table claim that discourages overlapping runs.

Leases are operational signals, not locks: acquiring always succeeds and
overwrites whatever holder was recorded before.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from blobdelta.database.connection import DatabaseConnection
from blobdelta.sync.watermarks import get_or_create_watermark
from blobdelta.utils.helpers import utcnow
from blobdelta.utils.logger import LoggerMixin

DEFAULT_LEASE_DURATION = timedelta(minutes=60)


@dataclass(frozen=True)
class Lease:
    """A lease held by one run on one table."""
    table_name: str
    run_id: str
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class LeaseManager(LoggerMixin):
    """Acquires and releases table leases stored on the watermark row."""

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def acquire(self, table_name: str, run_id: str,
                duration: timedelta = DEFAULT_LEASE_DURATION,
                now: Optional[datetime] = None) -> Lease:
        """
        Record run_id as the lease holder for a table.

        Args:
            table_name: Logical table name
            run_id: Run taking the lease
            duration: Lease lifetime
            now: Acquisition time (defaults to current UTC)

        Returns:
            The acquired Lease
        """
        now = now or utcnow()
        expires_at = now + duration

        with self.db.session_scope() as session:
            watermark = get_or_create_watermark(session, table_name)
            holder = watermark.lease_holder_run_id

            if holder and holder != run_id:
                if watermark.lease_expires_at and watermark.lease_expires_at > now:
                    self.logger.warning(
                        f"{table_name}: overriding live lease held by run {holder} "
                        f"(expires {watermark.lease_expires_at.isoformat()})"
                    )
                else:
                    self.logger.info(f"{table_name}: reclaiming stale lease from run {holder}")

            watermark.lease_holder_run_id = run_id
            watermark.lease_expires_at = expires_at
            watermark.last_run_id = run_id

        self.logger.debug(f"{table_name}: lease acquired by {run_id} until {expires_at.isoformat()}")
        return Lease(table_name=table_name, run_id=run_id, expires_at=expires_at)

    def release(self, table_name: str) -> None:
        """Clear the lease on a table, whoever holds it."""
        with self.db.session_scope() as session:
            watermark = get_or_create_watermark(session, table_name)
            watermark.lease_holder_run_id = None
            watermark.lease_expires_at = None

        self.logger.debug(f"{table_name}: lease released")

    def current(self, table_name: str) -> Optional[Lease]:
        """The lease currently recorded for a table, if any."""
        with self.db.session_scope() as session:
            watermark = get_or_create_watermark(session, table_name)
            if not watermark.lease_holder_run_id:
                return None
            return Lease(
                table_name=table_name,
                run_id=watermark.lease_holder_run_id,
                expires_at=watermark.lease_expires_at,
            )
