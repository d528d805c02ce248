from __future__ import annotations

import sys
from typing import Any

from tqdm import tqdm
from tqdm.std import tqdm as TqdmType

from ..models.import_result import BatchOutcome, BatchState

"""Batch progress display with tqdm (TTY only).

A single tqdm bar counts submitted batches. In non-TTY environments (CI,
redirected output) no bar is created, so log lines are not interleaved with
ANSI control sequences.
"""

__all__ = [
    "ProgressTracker",
    "is_tty_enabled",
]


def is_tty_enabled() -> bool:
    return sys.stdout.isatty()


class ProgressTracker:
    """Progress over the batches of one import.

    ``finish_batch`` has the ``on_batch`` callback signature of UpsertBatcher,
    so the tracker can be passed straight to an ImportSession.
    """

    def __init__(self, total_batches: int | None, *, description: str = "Importing") -> None:
        self.total_batches = total_batches
        self.description = description
        self.finished = 0
        self.inserted = 0
        self.updated = 0
        self.retries = 0

        self.enabled = is_tty_enabled()
        self.pbar: TqdmType[Any] | None
        if self.enabled:
            self.pbar = tqdm(
                total=total_batches,
                desc=description,
                unit="batch",
                leave=True,
                position=0,
                ncols=80,
                ascii=True,
            )
        else:
            self.pbar = None

    def finish_batch(self, outcome: BatchOutcome) -> None:
        self.finished += 1
        if outcome.state == BatchState.SUCCESS:
            self.inserted += outcome.inserted
            self.updated += outcome.updated
        if outcome.retried:
            self.retries += 1
        if self.pbar is not None:
            self.pbar.update(1)
            self.pbar.set_postfix(ins=self.inserted, upd=self.updated, retry=self.retries)

    __call__ = finish_batch

    def close(self) -> None:
        if self.pbar is not None:
            self.pbar.close()
            self.pbar = None

    def __enter__(self) -> ProgressTracker:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
