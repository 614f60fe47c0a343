"""
Window Calculator
Derives the time window a run pulls for a table from its watermark and safety buffer.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from blobdelta.database.models import RunType
from blobdelta.sync.exceptions import WindowComputationError

# "Effectively all history" start for Full runs
FULL_LOAD_BASELINE = datetime(1900, 1, 1)

# Look-back for a Delta run on a table that has never been synchronized
DEFAULT_LOOKBACK = timedelta(days=365)

DEFAULT_SAFETY_BUFFER = timedelta(minutes=240)


@dataclass(frozen=True)
class SyncWindow:
    """Half-open modification-time window ``[start, end)``."""
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    def __str__(self) -> str:
        return f"[{self.start.isoformat()}, {self.end.isoformat()})"


def compute_window(run_type: str, run_start: datetime,
                   last_watermark: Optional[datetime],
                   safety_buffer: timedelta = DEFAULT_SAFETY_BUFFER) -> SyncWindow:
    """
    Compute the window to synchronize.

    The window end trails the run start by the safety buffer. A Delta run
    starts one buffer *before* the previous watermark, so consecutive windows
    overlap and late writes are picked up at the cost of duplicate delivery.

    Args:
        run_type: One of RunType.ALL. DryRun uses Delta arithmetic.
        run_start: Wall-clock start of the run for this table (naive UTC)
        last_watermark: Previous watermark, or None if never synchronized
        safety_buffer: Overlap margin

    Returns:
        SyncWindow

    Raises:
        WindowComputationError: on missing or malformed inputs
    """
    if run_type not in RunType.ALL:
        raise WindowComputationError(f"Unknown run type: {run_type!r}")
    if not isinstance(run_start, datetime):
        raise WindowComputationError(f"Run start must be a datetime, got {run_start!r}")
    if last_watermark is not None and not isinstance(last_watermark, datetime):
        raise WindowComputationError(f"Watermark must be a datetime, got {last_watermark!r}")
    if not isinstance(safety_buffer, timedelta) or safety_buffer < timedelta(0):
        raise WindowComputationError(f"Safety buffer must be a non-negative timedelta, got {safety_buffer!r}")

    end = run_start - safety_buffer

    if run_type == RunType.FULL:
        start = FULL_LOAD_BASELINE
    elif last_watermark is None:
        start = end - DEFAULT_LOOKBACK
    else:
        start = last_watermark - safety_buffer

    if start > end:
        raise WindowComputationError(
            f"Inverted window {start.isoformat()} > {end.isoformat()}; "
            f"watermark {last_watermark} is ahead of run start {run_start}"
        )

    return SyncWindow(start=start, end=end)
