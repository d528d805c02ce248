from __future__ import annotations

import pytest

from wms_importer.db.batch_upsert import WriteResult
from wms_importer.models import BatchState, TargetRecord
from wms_importer.services.batcher import CancelToken, UpsertBatcher, WriteError, chunk
from wms_importer.services.drift_retry import SchemaDriftError

"""UpsertBatcher: ordered sequential batches, halt on failure, cancellation."""


def _records(n: int, **extra) -> list[TargetRecord]:
    return [
        TargetRecord(row_number=i + 1, values={"part_number": f"P{i + 1}", **extra}, key=f"P{i + 1}")
        for i in range(n)
    ]


def test_chunk_sizes():
    sizes = [len(b) for b in chunk(_records(5), 2)]
    assert sizes == [2, 2, 1]
    assert list(chunk([], 3)) == []
    with pytest.raises(ValueError):
        list(chunk(_records(1), 0))


def test_batches_submitted_in_order(fake_write):
    batcher = UpsertBatcher(fake_write, "spare_parts", ("part_number",), batch_size=2)
    run = batcher.submit(_records(5))

    assert [len(batch) for _, batch, _ in fake_write.calls] == [2, 2, 1]
    assert [r["part_number"] for r in fake_write.rows] == ["P1", "P2", "P3", "P4", "P5"]
    assert run.inserted == 5 and run.updated == 0
    assert [o.index for o in run.outcomes] == [0, 1, 2]
    assert all(o.state == BatchState.SUCCESS for o in run.outcomes)
    assert batcher.count_batches(5) == 3


def test_invalid_batch_size():
    with pytest.raises(ValueError):
        UpsertBatcher(lambda *a: WriteResult(), "t", batch_size=0)


def test_failure_halts_remaining_batches(fake_write):
    fake_write.responses = [WriteResult(inserted=2), WriteResult(error="deadlock detected")]
    batcher = UpsertBatcher(fake_write, "spare_parts", ("part_number",), batch_size=2)

    with pytest.raises(WriteError) as exc:
        batcher.submit(_records(6))

    err = exc.value
    assert len(fake_write.calls) == 2  # batch 2 は送信されない
    assert err.inserted == 2 and err.updated == 0
    assert [r.row_number for r in err.records] == [3, 4]
    assert err.outcome.index == 1
    assert "deadlock detected" in str(err)
    assert not isinstance(err.__cause__, SchemaDriftError)


def test_drift_failure_is_chained_schema_drift_error(fake_write):
    msg = 'column "rack_id" of relation "spare_parts" does not exist'
    fake_write.responses = [WriteResult(error=msg), WriteResult(error="permission denied")]
    batcher = UpsertBatcher(fake_write, "spare_parts", batch_size=10)

    with pytest.raises(WriteError) as exc:
        batcher.submit(_records(2, rack_id="R1"))

    cause = exc.value.__cause__
    assert isinstance(cause, SchemaDriftError)
    assert cause.column == "rack_id"


def test_dropped_column_is_not_sent_in_later_batches(fake_write):
    msg = 'column "rack_id" of relation "spare_parts" does not exist'
    fake_write.responses = [WriteResult(error=msg), WriteResult(inserted=2)]
    batcher = UpsertBatcher(fake_write, "spare_parts", ("part_number",), batch_size=2)

    run = batcher.submit(_records(4, rack_id="R1"))

    assert len(fake_write.calls) == 3  # 1 回の再試行 + 次のバッチ
    assert "rack_id" not in fake_write.calls[2][1][0]
    assert run.dropped_columns == ["rack_id"]
    assert run.outcomes[0].retried and not run.outcomes[1].retried


def test_cancel_before_next_batch(fake_write):
    token = CancelToken()
    seen = []

    def on_batch(outcome):
        seen.append(outcome.index)
        token.cancel()

    batcher = UpsertBatcher(fake_write, "spare_parts", batch_size=2, cancel_token=token, on_batch=on_batch)
    run = batcher.submit(_records(6))

    assert run.cancelled
    assert seen == [0]
    assert len(fake_write.calls) == 1
    assert run.inserted == 2


def test_empty_input_sends_nothing(fake_write):
    run = UpsertBatcher(fake_write, "spare_parts").submit([])
    assert run.outcomes == [] and fake_write.calls == []
