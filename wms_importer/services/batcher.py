from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field

from ..models.import_result import BatchOutcome, BatchState
from ..models.row_data import TargetRecord
from .drift_retry import (
    SchemaDriftError,
    Write,
    column_variants,
    extract_missing_column,
    write_with_drift_recovery,
)

"""Upsert batcher: ordered, bounded, strictly sequential batch submission.

Batch i is submitted only after batch i-1 reached a terminal state. The first
batch that fails after drift recovery halts the import with WriteError, which
carries the counts accrued by the earlier batches. The cancel token is checked
before each batch; a batch already in flight is never interrupted.
"""

__all__ = [
    "BatchRun",
    "CancelToken",
    "UpsertBatcher",
    "WriteError",
    "chunk",
]

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 200


class CancelToken:
    """Thread-safe cancellation flag shared with the code driving an import."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class WriteError(Exception):
    """A batch failed after recovery; the remaining batches were not sent."""

    def __init__(
        self,
        message: str,
        outcome: BatchOutcome,
        records: Sequence[TargetRecord],
        run: BatchRun,
    ) -> None:
        super().__init__(message)
        self.outcome = outcome
        self.records = list(records)
        self.run = run

    @property
    def inserted(self) -> int:
        return self.run.inserted

    @property
    def updated(self) -> int:
        return self.run.updated


@dataclass
class BatchRun:
    """Counts accrued by the batches submitted so far."""
    outcomes: list[BatchOutcome] = field(default_factory=list)
    inserted: int = 0
    updated: int = 0
    cancelled: bool = False
    dropped_columns: list[str] = field(default_factory=list)


def chunk(records: Sequence[TargetRecord], size: int) -> Iterator[list[TargetRecord]]:
    if size < 1:
        raise ValueError(f"batch size must be >= 1, got {size}")
    for start in range(0, len(records), size):
        yield list(records[start:start + size])


class UpsertBatcher:
    """Submit TargetRecords through ``write`` in fixed-size batches."""

    def __init__(
        self,
        write: Write,
        table: str,
        conflict_key: Sequence[str] = (),
        batch_size: int = DEFAULT_BATCH_SIZE,
        cancel_token: CancelToken | None = None,
        on_batch: Callable[[BatchOutcome], None] | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch size must be >= 1, got {batch_size}")
        self.write = write
        self.table = table
        self.conflict_key = tuple(conflict_key)
        self.batch_size = batch_size
        self.cancel_token = cancel_token
        self.on_batch = on_batch

    def count_batches(self, n_records: int) -> int:
        return -(-n_records // self.batch_size)

    def _payload(self, batch: Sequence[TargetRecord], dropped: set[str]) -> list[dict]:
        # 先行バッチで除去済みの列は最初から送らない
        return [{k: v for k, v in r.values.items() if k not in dropped} for r in batch]

    def submit(self, records: Sequence[TargetRecord]) -> BatchRun:
        """Submit all records in order.

        Raises:
            WriteError: a batch failed after the single drift retry
        """
        run = BatchRun()
        dropped: set[str] = set()
        for index, batch in enumerate(chunk(records, self.batch_size)):
            if self.cancel_token is not None and self.cancel_token.cancelled:
                logger.warning(
                    "table=%s import cancelled before batch %d (%d batches sent)",
                    self.table,
                    index,
                    len(run.outcomes),
                )
                run.cancelled = True
                break

            outcome = BatchOutcome(index=index, size=len(batch))
            start = time.time()
            result = write_with_drift_recovery(
                self.write, self.table, self._payload(batch, dropped), self.conflict_key, outcome
            )
            outcome.elapsed_seconds = time.time() - start
            run.outcomes.append(outcome)

            if outcome.dropped_column is not None:
                dropped |= column_variants(outcome.dropped_column)
                run.dropped_columns.append(outcome.dropped_column)

            if outcome.state == BatchState.FAILED:
                if self.on_batch is not None:
                    self.on_batch(outcome)
                message = f"batch {index} of {self.table} failed: {outcome.error}"
                error = WriteError(message, outcome, batch, run)
                if outcome.retried:
                    column = extract_missing_column(outcome.error) or ""
                    raise error from SchemaDriftError(column, outcome.error or "")
                raise error

            outcome.inserted = result.inserted
            outcome.updated = result.updated
            run.inserted += result.inserted
            run.updated += result.updated
            logger.debug(
                "table=%s batch=%d size=%d inserted=%d updated=%d states=%s",
                self.table,
                index,
                outcome.size,
                result.inserted,
                result.updated,
                [s.value for s in outcome.states],
            )
            if self.on_batch is not None:
                self.on_batch(outcome)
        return run
