"""
SQLAlchemy ORM Models
Defines the persisted state of the delta sync engine: table configuration,
watermarks and leases, runs, the per-batch progress ledger, the missing-parent
queue and the deletion log.
"""

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, PrimaryKeyConstraint,
    String, Text
)
from sqlalchemy.orm import declarative_base, relationship

from blobdelta.utils.helpers import utcnow

Base = declarative_base()


# ============================================
# STATUS VOCABULARIES
# ============================================

class RunType:
    """Run types accepted by the coordinator."""
    FULL = 'Full'
    DELTA = 'Delta'
    DRY_RUN = 'DryRun'

    ALL = (FULL, DELTA, DRY_RUN)


class RunStatus:
    """Terminal and non-terminal states of a run."""
    IN_PROGRESS = 'InProgress'
    SUCCEEDED = 'Succeeded'
    FAILED = 'Failed'


class StepStatus:
    """Status of a progress ledger row."""
    IN_PROGRESS = 'InProgress'
    COMPLETED = 'Completed'
    FAILED = 'Failed'


# Synthetic batch numbers in the progress ledger
COMPLETED_BATCH_NUMBER = 0
FAILURE_BATCH_NUMBER = 999999


# ============================================
# CONFIGURATION
# ============================================

class TableSyncConfig(Base):
    """Per-table sync configuration (one row per logical table)."""
    __tablename__ = 'sync_table_config'

    table_name = Column(String(255), primary_key=True)

    source_table = Column(String(255), nullable=False)    # [schema.]table
    target_table = Column(String(255), nullable=False)
    metadata_table = Column(String(255), nullable=False)

    metadata_id_column = Column(String(128), nullable=False)
    metadata_modified_column = Column(String(128), nullable=False, default='modified_on')
    record_id_column = Column(String(128), nullable=False, default='record_id')
    parent_id_column = Column(String(128), nullable=False, default='parent_id')
    tenant_column = Column(String(128), nullable=False, default='owning_tenant')

    target_group = Column(String(255))
    safety_buffer_minutes = Column(Integer, nullable=False, default=240)
    include_deletes = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, onupdate=utcnow)

    watermark = relationship("Watermark", back_populates="config", uselist=False)

    def __repr__(self) -> str:
        return f"<TableSyncConfig {self.table_name} active={self.is_active}>"


# ============================================
# WATERMARK & LEASE
# ============================================

class Watermark(Base):
    """Per-table high-watermark and advisory run lease."""
    __tablename__ = 'sync_watermark'

    table_name = Column(
        String(255),
        ForeignKey('sync_table_config.table_name', ondelete='CASCADE'),
        primary_key=True
    )
    last_modified_at = Column(DateTime)  # NULL = never synchronized
    last_run_id = Column(String(36))
    last_run_completed_at = Column(DateTime)
    initial_full_load_done = Column(Boolean, nullable=False, default=False)

    lease_holder_run_id = Column(String(36))
    lease_expires_at = Column(DateTime)

    config = relationship("TableSyncConfig", back_populates="watermark")


# ============================================
# RUNS & PROGRESS LEDGER
# ============================================

class SyncRun(Base):
    """Run header, one row per engine invocation (or resumed invocation)."""
    __tablename__ = 'sync_run'

    run_id = Column(String(36), primary_key=True)
    run_type = Column(String(20), nullable=False)
    requested_by = Column(String(255))
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime)
    status = Column(String(20), nullable=False, default=RunStatus.IN_PROGRESS)
    error_message = Column(Text)

    steps = relationship(
        "RunStep",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="RunStep.batch_started_at"
    )

    __table_args__ = (
        Index('ix_sync_run_started_at', 'started_at'),
    )


class RunStep(Base):
    """
    Progress ledger row.

    Append-only. Batch number 0 marks a completed phase, 999999 an
    interrupting failure; every other number is one executed batch.
    """
    __tablename__ = 'sync_run_step'

    run_id = Column(String(36), ForeignKey('sync_run.run_id', ondelete='CASCADE'), nullable=False)
    table_name = Column(String(255), nullable=False)
    phase = Column(Integer, nullable=False)
    batch_number = Column(Integer, nullable=False)

    rows_processed = Column(Integer, nullable=False, default=0)
    total_rows_processed = Column(Integer, nullable=False, default=0)
    window_start = Column(DateTime)
    window_end = Column(DateTime)
    batch_started_at = Column(DateTime, nullable=False)
    batch_completed_at = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False)
    error_message = Column(Text)

    run = relationship("SyncRun", back_populates="steps")

    __table_args__ = (
        PrimaryKeyConstraint('run_id', 'table_name', 'phase', 'batch_number', name='pk_sync_run_step'),
        Index('ix_sync_run_step_run_table', 'run_id', 'table_name'),
    )


# ============================================
# MISSING-PARENT QUEUE
# ============================================

class MissingParentQueueEntry(Base):
    """Ancestor record that must be backfilled before its children."""
    __tablename__ = 'sync_missing_parent_queue'

    run_id = Column(String(36), nullable=False)
    table_name = Column(String(255), nullable=False)
    record_id = Column(String(64), nullable=False)
    group_tag = Column(String(64))  # Owning tenant of the child that referenced it
    processed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        PrimaryKeyConstraint('run_id', 'table_name', 'record_id', name='pk_sync_missing_parent_queue'),
        Index('ix_sync_mpq_pending', 'run_id', 'table_name', 'processed'),
    )


# ============================================
# DELETION LOG
# ============================================

class DeletionLogEntry(Base):
    """Observed source deletion. Recorded only, never applied to the target."""
    __tablename__ = 'sync_deletion_log'

    table_name = Column(String(255), nullable=False)
    record_id = Column(String(64), nullable=False)
    deleted_at = Column(DateTime, nullable=False)
    source = Column(String(128))
    reason = Column(String(256))
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        PrimaryKeyConstraint('table_name', 'record_id', 'deleted_at', name='pk_sync_deletion_log'),
    )
