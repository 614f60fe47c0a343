"""
Sync Engine Exceptions
Error taxonomy raised by the delta sync engine.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for all sync engine errors."""

    def __init__(self, message: str, table_name: Optional[str] = None):
        self.message = message
        self.table_name = table_name
        super().__init__(self.message)


class ConfigurationError(SyncError):
    """Table not found or inactive, or a required collaborator is unusable."""


class WindowComputationError(SyncError):
    """Malformed or missing timestamp inputs for the sync window."""


class BatchExecutionError(SyncError):
    """A record-source call failed while executing a batch."""

    def __init__(self, message: str, table_name: Optional[str] = None,
                 phase: Optional[int] = None, batch_number: Optional[int] = None):
        self.phase = phase
        self.batch_number = batch_number
        super().__init__(message, table_name)
