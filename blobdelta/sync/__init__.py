"""
Sync Module
Delta synchronization engine: windows, leases, the three-phase batch
traversal, the missing-parent queue and the resumable progress ledger.
"""

from .coordinator import (
    OperatorMode,
    SyncCoordinator,
    SyncRequest,
    build_coordinator,
    run_operator
)
from .exceptions import (
    BatchExecutionError,
    ConfigurationError,
    SyncError,
    WindowComputationError
)
from .ledger import Completed, Failed, InProgress, NotStarted, Phase
from .record_store import RecordFilter, RecordStore, SqlRecordStore, TenantResolver
from .window import SyncWindow, compute_window

__all__ = [
    'OperatorMode',
    'SyncCoordinator',
    'SyncRequest',
    'build_coordinator',
    'run_operator',
    'BatchExecutionError',
    'ConfigurationError',
    'SyncError',
    'WindowComputationError',
    'Completed',
    'Failed',
    'InProgress',
    'NotStarted',
    'Phase',
    'RecordFilter',
    'RecordStore',
    'SqlRecordStore',
    'TenantResolver',
    'SyncWindow',
    'compute_window'
]
