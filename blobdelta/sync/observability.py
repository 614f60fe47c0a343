"""
Observability sink for dry runs.
Receives the fully resolved operations a dry run would have performed.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from blobdelta.utils.logger import LoggerMixin


@dataclass(frozen=True)
class PlannedOperation:
    """One mutating call a dry run skipped."""
    action: str
    table_name: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        parts = ', '.join(f"{k}={v}" for k, v in self.details.items())
        target = f" {self.table_name}" if self.table_name else ''
        return f"[dry-run] {self.action}{target}" + (f" ({parts})" if parts else '')


class ObservabilitySink(ABC):

    @abstractmethod
    def report(self, operation: PlannedOperation) -> None:
        """Receive a planned operation."""


class LoggingSink(ObservabilitySink, LoggerMixin):
    """Logs each planned operation and keeps them for later inspection."""

    def __init__(self):
        self.operations: List[PlannedOperation] = []

    def report(self, operation: PlannedOperation) -> None:
        self.operations.append(operation)
        self.logger.info(operation.describe())

    def actions(self) -> List[str]:
        return [op.action for op in self.operations]
