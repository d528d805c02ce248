from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any

from ..excel.reader import Source, read_sheet
from ..logging.error_log import ErrorLogBuffer
from ..mapping.coercer import RowCoercionError, coerce_row, uniqueness_key
from ..mapping.field_mapper import build_header_map
from ..models.config_models import TableProfile
from ..models.import_result import (
    BatchOutcome,
    BatchState,
    BatchStatsAccumulator,
    ImportResult,
    ImportStatus,
    RowError,
)
from ..models.row_data import RawRow, TargetRecord
from .batcher import DEFAULT_BATCH_SIZE, BatchRun, CancelToken, UpsertBatcher, WriteError
from .changes import ChangeEvent
from .drift_retry import Write
from .lookup import LookupCache, Resolve
from .schema_contract import SchemaContract
from .staging import StagingMap

"""Import orchestration: RawRows -> coerced, staged, batched writes.

Steps of one import:
1. resolve every field's header once for the sheet
2. coerce rows (rows with a null mandatory field become RowErrors)
3. resolve lookups through the session cache, recompute keys
4. apply the schema contract when one is configured
5. stage records by uniqueness key (same-key rows merge; one write per key)
6. submit batches in order; a failed batch halts the import
7. publish a ChangeEvent for the rows written

All mutable state (lookup cache, staging map, error log buffer) lives on the
ImportSession, so concurrent imports never share it.
"""

__all__ = [
    "ImportSession",
    "import_file",
    "run_import",
]

logger = logging.getLogger(__name__)

Notifier = Callable[[ChangeEvent], Any]

ERROR_TYPE_ROW = "ROW_COERCION_ERROR"
ERROR_TYPE_UNKNOWN_COLUMN = "UNKNOWN_COLUMN"
ERROR_TYPE_BATCH = "BATCH_WRITE_ERROR"


def _ordered_headers(raw_rows: Sequence[RawRow]) -> list[str]:
    seen: dict[str, None] = {}
    for row in raw_rows:
        for label in row:
            seen[label] = None
    return list(seen)


class ImportSession:
    """Per-import state and the import pipeline for one table profile."""

    def __init__(
        self,
        profile: TableProfile,
        write: Write,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        staging: StagingMap | None = None,
        lookup_resolver: Resolve | None = None,
        contract: SchemaContract | None = None,
        notifier: Notifier | None = None,
        cancel_token: CancelToken | None = None,
        on_batch: Callable[[BatchOutcome], None] | None = None,
        error_log: ErrorLogBuffer | None = None,
        file_name: str = "<rows>",
        sheet_name: str = "",
    ) -> None:
        if staging is not None and staging.key_fields != profile.conflict_key:
            raise ValueError(
                f"staging keyed by {list(staging.key_fields)} but profile '{profile.name}' "
                f"uses {list(profile.conflict_key)}"
            )
        self.profile = profile
        self.write = write
        self.batch_size = batch_size
        self.staging = staging if staging is not None else StagingMap(profile.conflict_key)
        self.lookups = LookupCache(lookup_resolver) if lookup_resolver is not None else None
        self.contract = contract if contract is not None else SchemaContract.from_profile(profile)
        self.notifier = notifier
        self.cancel_token = cancel_token
        self.on_batch = on_batch
        self.error_log = error_log
        self.file_name = file_name
        self.sheet_name = sheet_name
        self.errors: list[RowError] = []

    def _record_error(self, error: RowError, error_type: str) -> None:
        self.errors.append(error)
        if self.error_log is not None:
            self.error_log.append_row_error(self.file_name, self.sheet_name, error, error_type)

    def prepare(self, raw_rows: Sequence[RawRow]) -> list[TargetRecord]:
        """Steps 1-4: map, coerce, resolve lookups, apply the schema contract."""
        profile = self.profile
        header_map = build_header_map(profile.fields, _ordered_headers(raw_rows))
        unmapped = [name for name, header in header_map.items() if header is None]
        if unmapped:
            logger.info("table=%s no column found for fields %s", profile.table, unmapped)
        logger.debug("table=%s header map %s", profile.table, header_map)

        records: list[TargetRecord] = []
        for row_number, raw in enumerate(raw_rows, start=1):
            try:
                record = coerce_row(raw, profile.fields, row_number, header_map, profile.conflict_key)
            except RowCoercionError as e:
                self._record_error(RowError(row=row_number, field=e.field, message=e.message), ERROR_TYPE_ROW)
                continue
            if self.lookups is not None and profile.lookups:
                record = self.lookups.apply(profile.lookups, record)
                record = TargetRecord(
                    record.row_number,
                    record.values,
                    uniqueness_key(record.values, profile.conflict_key),
                )
            records.append(record)

        if self.contract is not None:
            records, contract_errors = self.contract.check(records)
            for err in contract_errors:
                self._record_error(err, ERROR_TYPE_UNKNOWN_COLUMN)
        return records

    def stage(self, records: Sequence[TargetRecord]) -> list[TargetRecord]:
        """Step 5: merge same-key records; keyless profiles pass through."""
        if not self.profile.conflict_key:
            return list(records)
        touched = self.staging.stage_all(records)
        staged = [self.staging.get(k) for k in touched]
        return [r for r in staged if r is not None]

    def run(self, raw_rows: Sequence[RawRow]) -> ImportResult:
        profile = self.profile
        start_time = datetime.now(UTC)
        logger.info(
            "import table=%s profile=%s rows=%d batch_size=%d",
            profile.table,
            profile.name,
            len(raw_rows),
            self.batch_size,
        )

        to_submit = self.stage(self.prepare(raw_rows))

        batcher = UpsertBatcher(
            self.write,
            profile.table,
            profile.conflict_key,
            batch_size=self.batch_size,
            cancel_token=self.cancel_token,
            on_batch=self.on_batch,
        )
        halt_message: str | None = None
        try:
            run = batcher.submit(to_submit)
        except WriteError as e:
            run = e.run
            halt_message = str(e)
            logger.error("%s; import halted after %d written rows", e, run.inserted + run.updated)
            for record in e.records:
                self._record_error(
                    RowError(row=record.row_number, field="general", message=e.outcome.error or str(e)),
                    ERROR_TYPE_BATCH,
                )

        written = run.inserted + run.updated
        if written and self.notifier is not None:
            self._notify(run, to_submit)

        if halt_message is not None:
            status = ImportStatus.FAILED
        elif run.cancelled:
            status = ImportStatus.CANCELLED
        elif self.errors:
            status = ImportStatus.PARTIAL
        else:
            status = ImportStatus.SUCCESS

        if self.error_log is not None:
            log_path = self.error_log.flush()
            if log_path is not None:
                logger.warning("%d row errors written to %s", len(self.errors), log_path)

        return self._build_result(raw_rows, run, status, halt_message, start_time)

    def _notify(self, run: BatchRun, submitted: Sequence[TargetRecord]) -> None:
        sent = sum(o.size for o in run.outcomes if o.state == BatchState.SUCCESS)
        event = ChangeEvent(
            table=self.profile.table,
            action="upsert" if self.profile.conflict_key else "insert",
            count=run.inserted + run.updated,
            keys=tuple(r.key for r in submitted[:sent] if r.key),
        )
        try:
            self.notifier(event)
        except Exception:
            # 書き込みはコミット済み; 通知失敗で import を失敗扱いにしない
            logger.exception("change notification failed for table=%s", self.profile.table)

    def _build_result(
        self,
        raw_rows: Sequence[RawRow],
        run: BatchRun,
        status: ImportStatus,
        halt_message: str | None,
        start_time: datetime,
    ) -> ImportResult:
        stats = BatchStatsAccumulator()
        for outcome in run.outcomes:
            stats.add_batch_time(outcome.elapsed_seconds)
        total_batches, avg_batch, p95_batch = stats.get_stats()
        end_time = datetime.now(UTC)
        return ImportResult(
            table=self.profile.table,
            status=status,
            total_rows=len(raw_rows),
            inserted=run.inserted,
            updated=run.updated,
            errors=list(self.errors),
            start_time=start_time,
            end_time=end_time,
            elapsed_seconds=(end_time - start_time).total_seconds(),
            batches=list(run.outcomes),
            dropped_columns=list(run.dropped_columns),
            error=halt_message,
            total_batches=total_batches,
            avg_batch_seconds=avg_batch,
            p95_batch_seconds=p95_batch,
        )


def run_import(
    raw_rows: Sequence[RawRow],
    profile: TableProfile,
    write: Write,
    **session_options: Any,
) -> ImportResult:
    """Import already parsed rows; see ImportSession for the options."""
    return ImportSession(profile, write, **session_options).run(raw_rows)


def import_file(
    source: Source,
    profile: TableProfile,
    write: Write,
    *,
    sheet_name: str | None = None,
    header_row: int = 0,
    **session_options: Any,
) -> ImportResult:
    """Parse one sheet and import it.

    Raises:
        ParseError: the source could not be parsed (nothing was written)
    """
    name, rows = read_sheet(source, sheet_name or profile.sheet, header_row=header_row)
    session_options.setdefault("sheet_name", name)
    return run_import(rows, profile, write, **session_options)
