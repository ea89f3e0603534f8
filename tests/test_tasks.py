from __future__ import annotations

import threading
from types import SimpleNamespace

import numpy as np
import pytest

from sharded_rmse.errors import PartitionError, ShapeError
from sharded_rmse.model import ShardedModel
from sharded_rmse.partition import PartitionDirectory
from sharded_rmse.scoring import ErrorAccumulator, PredictionScorer, SparseTestRow
from sharded_rmse.tasks import (
    EvaluationContext,
    EvaluationTask,
    SharedAccumulator,
    evaluate_rows,
    iter_batches,
    reduce_accumulators,
    run_shared,
)


def _random_partition(seed: int = 7, *, n_workers: int = 3, dim: int = 4):
    rng = np.random.default_rng(seed)
    row_bounds = np.array([0, 5, 9, 12])
    item_bounds = np.array([0, 6, 6, 15])
    users = rng.normal(size=(12, dim))
    items = rng.normal(size=(15, dim))

    # Global ids are sparse: rows live at even ids, items at ids divisible by 3.
    row_map = np.zeros(30, dtype=np.int64)
    row_map[np.arange(12) * 2] = np.arange(12) + 1
    col_map = np.zeros(50, dtype=np.int64)
    col_map[np.arange(15) * 3] = np.arange(15) + 1

    rows = []
    for gid in range(30):
        cols = rng.choice(52, size=6, replace=False)  # some ids are unmapped or beyond the table
        rows.append(SparseTestRow(row_id=gid, col_ids=cols, ratings=rng.integers(0, 6, size=6)))

    def context(worker: int, alpha: float = 0.7) -> EvaluationContext:
        return EvaluationContext.build(
            num_workers=n_workers,
            worker_id=worker,
            row_map=row_map,
            col_map=col_map,
            start_row=int(row_bounds[worker]),
            end_row=int(row_bounds[worker + 1]),
            boundaries=item_bounds,
            user_block=users[row_bounds[worker] : row_bounds[worker + 1]],
            item_blocks=[items[item_bounds[k] : item_bounds[k + 1]] for k in range(n_workers)],
            alpha=alpha,
            dim=dim,
        )

    def brute_force(alpha: float = 0.7) -> ErrorAccumulator:
        total, count = 0.0, 0
        for row in rows:
            if row_map[row.row_id] == 0:
                continue
            u = users[row_map[row.row_id] - 1]
            for c, r in zip(row.col_ids, row.ratings):
                if c >= len(col_map) or col_map[c] == 0:
                    continue
                v = items[col_map[c] - 1]
                total += (1.0 - float(u @ v)) ** 2 * (1.0 + alpha * r)
                count += 1
        return ErrorAccumulator(total=total, count=count)

    return rows, context, brute_force


def test_workers_reduce_to_the_single_process_result() -> None:
    rows, context, brute_force = _random_partition()

    parts = [evaluate_rows(context(k), rows, max_workers=8) for k in range(3)]
    total = reduce_accumulators(parts)
    expected = brute_force()

    assert total.count == expected.count
    assert total.total == pytest.approx(expected.total)
    assert total.rmse() == pytest.approx(expected.rmse())


def test_order_and_task_split_do_not_change_result() -> None:
    rows, context, _ = _random_partition()
    ctx = context(2)

    sequential = reduce_accumulators(ctx.scorer.score_row(r) for r in rows)
    shuffled = list(rows)
    np.random.default_rng(3).shuffle(shuffled)
    halves = reduce_accumulators(
        [
            evaluate_rows(ctx, shuffled[:11], max_workers=2),
            evaluate_rows(ctx, shuffled[11:], max_workers=5),
        ]
    )

    assert halves.count == sequential.count
    assert halves.total == pytest.approx(sequential.total)


def test_shared_accumulator_under_many_threads_matches_private_partials() -> None:
    rows, context, _ = _random_partition()
    ctx = context(0)

    many = rows * 40
    locked = run_shared(ctx, many, max_workers=16)
    folded = evaluate_rows(ctx, many, max_workers=16)

    assert locked.count == folded.count
    assert locked.total == pytest.approx(folded.total)


def test_task_run_mutates_shared_accumulator_only_for_owned_rows(two_worker_context) -> None:
    acc = SharedAccumulator()
    task = EvaluationTask(two_worker_context, acc)

    assert task.run(SparseTestRow.from_pairs(1, [(0, 5.0)])) is None
    assert acc.value == ErrorAccumulator()

    task.run(SparseTestRow.from_pairs(0, [(0, 5.0), (2, 3.0)]))
    assert acc.value.count == 2
    assert acc.value.total == pytest.approx(1.0)


def test_task_from_flat_arguments() -> None:
    acc = SharedAccumulator()
    task = EvaluationTask.from_arrays(
        2,
        1,
        np.array([0, 2, 3]),
        np.array([1, 2, 3, 4]),
        1,
        3,
        np.array([0, 2, 4]),
        np.array([1.0, 0.0, 0.0, 1.0]),
        [np.array([1.0, 0.0, 0.0, 1.0]), np.array([0.0, 1.0, 1.0, 1.0])],
        0.5,
        2,
        acc,
    )

    # Row id 2 maps to local row 2 = user_block[1] = [0, 1]; col 3 -> worker 1 offset 1 = [1, 1].
    task.run(SparseTestRow.from_pairs(2, [(3, 2.0)]))
    assert acc.value.count == 1
    assert acc.value.total == pytest.approx(0.0)

    # Row id 1 maps to local row 1 = user_block[0] = [1, 0]; col 1 -> worker 0 offset 1 = [0, 1].
    task.run(SparseTestRow.from_pairs(1, [(1, 2.0)]))
    assert acc.value.count == 2
    assert acc.value.total == pytest.approx(2.0)


@pytest.mark.parametrize(
    "overrides",
    [
        {"num_workers": 3},
        {"user_block": np.zeros(4)},
        {"item_blocks": [np.zeros(4), np.zeros(2)]},
        {"user_block": np.zeros(3)},
    ],
)
def test_context_rejects_inconsistent_shapes(overrides: dict) -> None:
    kwargs = dict(
        num_workers=2,
        worker_id=0,
        row_map=[1],
        col_map=[1, 2, 3, 4],
        start_row=0,
        end_row=1,
        boundaries=[0, 2, 4],
        user_block=np.zeros(2),
        item_blocks=[np.zeros(4), np.zeros(4)],
        alpha=0.0,
        dim=2,
    )
    kwargs.update(overrides)
    with pytest.raises(ShapeError):
        EvaluationContext.build(**kwargs)


def test_context_rejects_negative_alpha() -> None:
    with pytest.raises(ValueError):
        EvaluationContext.build(
            num_workers=1,
            worker_id=0,
            row_map=[1],
            col_map=[1],
            start_row=0,
            end_row=1,
            boundaries=[0, 1],
            user_block=[1.0],
            item_blocks=[[1.0]],
            alpha=-1.0,
            dim=1,
        )


class _CountingScorer:
    """Stand-in scorer that records how many rows have been scored."""

    def __init__(self) -> None:
        self.scored = 0
        self._lock = threading.Lock()

    def score_row(self, row: SparseTestRow) -> ErrorAccumulator:
        with self._lock:
            self.scored += 1
        return ErrorAccumulator(total=1.0, count=1)


@pytest.mark.parametrize("max_workers,batch_size", [(1, 1), (2, 8), (4, 32)])
def test_evaluate_rows_pulls_stream_lazily(max_workers: int, batch_size: int) -> None:
    scorer = _CountingScorer()
    context = SimpleNamespace(num_workers=1, worker_id=0, scorer=scorer)
    n_rows = 5000
    max_lag = 0

    def stream():
        nonlocal max_lag
        for i in range(n_rows):
            max_lag = max(max_lag, i - scorer.scored)
            yield SparseTestRow.from_pairs(i, [])

    result = evaluate_rows(context, stream(), max_workers=max_workers, batch_size=batch_size)

    assert result == ErrorAccumulator(total=float(n_rows), count=n_rows)
    # Rows pulled but not yet scored never exceed the in-flight batch window.
    assert max_lag <= 2 * max_workers * batch_size


def test_iter_batches_splits_lazily() -> None:
    batches = list(iter_batches((SparseTestRow.from_pairs(i, []) for i in range(7)), 3))
    assert [len(b) for b in batches] == [3, 3, 1]
    assert [r.row_id for r in batches[-1]] == [6]
    with pytest.raises(ValueError):
        list(iter_batches([], 0))


def _unowned_column_context() -> EvaluationContext:
    # col 1 maps to local item 4, past the last boundary.
    return EvaluationContext.build(
        num_workers=1,
        worker_id=0,
        row_map=[1],
        col_map=[1, 5],
        start_row=0,
        end_row=1,
        boundaries=[0, 1],
        user_block=[1.0],
        item_blocks=[[1.0]],
        alpha=0.0,
        dim=1,
    )


def test_partition_errors_propagate_out_of_thread_pools() -> None:
    ok = [SparseTestRow.from_pairs(0, [(0, 1.0)]) for _ in range(50)]
    bad = SparseTestRow.from_pairs(0, [(0, 1.0), (1, 1.0)])
    rows = ok[:20] + [bad] + ok[20:]

    with pytest.raises(PartitionError):
        evaluate_rows(_unowned_column_context(), rows, max_workers=4, batch_size=4)
    with pytest.raises(PartitionError):
        run_shared(_unowned_column_context(), rows, max_workers=4, batch_size=4)


def test_shape_error_propagates_through_task_run() -> None:
    # Bypass EvaluationContext.build: the owned range claims two rows, the block has one.
    scorer = PredictionScorer(
        row_map=np.array([1, 2]),
        col_map=np.array([1]),
        start_row=0,
        end_row=2,
        directory=PartitionDirectory.from_boundaries([0, 1]),
        model=ShardedModel.from_blocks([1.0], [[1.0]], 1),
        alpha=0.0,
    )
    acc = SharedAccumulator()
    task = EvaluationTask(EvaluationContext(num_workers=1, worker_id=0, scorer=scorer), acc)

    with pytest.raises(ShapeError):
        task.run(SparseTestRow.from_pairs(1, [(0, 1.0)]))
    assert acc.value == ErrorAccumulator()
