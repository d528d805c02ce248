from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

"""Result models for the spreadsheet -> PostgreSQL import reconciler.

ImportResult aggregates the counts of one import, the per-row errors and the
outcome of every submitted batch. BatchOutcome records the states a batch
walked through:

    pending -> submitted -> (success | schema_error)
    schema_error -> retried -> (success | failed)

pending is initial; success and failed are terminal.
"""

__all__ = [
    "BatchOutcome",
    "BatchState",
    "BatchStatsAccumulator",
    "ImportResult",
    "ImportStatus",
    "RowError",
]


class BatchState(Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    SCHEMA_ERROR = "schema_error"
    RETRIED = "retried"
    SUCCESS = "success"
    FAILED = "failed"


class ImportStatus(Enum):
    """Overall status of one import.

    - SUCCESS: every batch succeeded and no row was rejected
    - PARTIAL: every batch succeeded but some rows were rejected
    - FAILED: a batch failed after recovery; remaining batches were not sent
    - CANCELLED: the cancel token was set before all batches were sent
    """
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RowError:
    """A single row (row >= 1) or import-level (row == -1) problem."""
    row: int
    field: str
    message: str


@dataclass
class BatchOutcome:
    """State path and counts of one submitted batch."""
    index: int
    size: int
    states: list[BatchState] = field(default_factory=lambda: [BatchState.PENDING])
    inserted: int = 0
    updated: int = 0
    dropped_column: str | None = None  # drift retry で除去した列
    error: str | None = None
    elapsed_seconds: float = 0.0

    @property
    def state(self) -> BatchState:
        return self.states[-1]

    @property
    def retried(self) -> bool:
        return BatchState.RETRIED in self.states

    def advance(self, state: BatchState) -> None:
        self.states.append(state)


@dataclass(frozen=True)
class ImportResult:
    """Aggregated outcome of one import, returned to the caller."""
    table: str
    status: ImportStatus
    total_rows: int  # 読み込んだデータ行数
    inserted: int
    updated: int
    errors: list[RowError]
    start_time: datetime
    end_time: datetime
    elapsed_seconds: float
    batches: list[BatchOutcome] = field(default_factory=list)
    dropped_columns: list[str] = field(default_factory=list)
    error: str | None = None  # import を停止させた書き込みエラー
    total_batches: int = 0
    avg_batch_seconds: float = 0.0
    p95_batch_seconds: float = 0.0

    @property
    def written(self) -> int:
        return self.inserted + self.updated

    @property
    def retries(self) -> int:
        return sum(1 for b in self.batches if b.retried)

    @property
    def ok(self) -> bool:
        return self.status == ImportStatus.SUCCESS


class BatchStatsAccumulator:
    """Accumulates batch timing measurements for ImportResult."""

    def __init__(self) -> None:
        self.batch_times: list[float] = []

    def add_batch_time(self, elapsed_seconds: float) -> None:
        self.batch_times.append(elapsed_seconds)

    def get_stats(self) -> tuple[int, float, float]:
        """Calculate batch statistics.

        Returns:
            tuple: (total_batches, avg_batch_seconds, p95_batch_seconds)
        """
        if not self.batch_times:
            return (0, 0.0, 0.0)

        total_batches = len(self.batch_times)
        avg_batch_seconds = statistics.mean(self.batch_times)

        if total_batches == 1:
            p95_batch_seconds = self.batch_times[0]
        else:
            p95_batch_seconds = statistics.quantiles(
                self.batch_times, n=20, method='inclusive'
            )[18]  # 95th percentile (19th out of 20 quantiles, 0-indexed)

        return (total_batches, avg_batch_seconds, p95_batch_seconds)
