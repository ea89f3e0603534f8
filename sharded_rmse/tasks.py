"""Scheduler-facing evaluation tasks and the reductions over their results."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from itertools import islice
from typing import Callable, Iterable, Iterator, Sequence, TypeVar

import numpy as np

from .errors import ShapeError
from .model import ShardedModel
from .partition import PartitionDirectory
from .scoring import ErrorAccumulator, PredictionScorer, SparseTestRow


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 256


@dataclass(frozen=True)
class EvaluationContext:
    """Everything one worker needs for an evaluation run. Built once, never mutated."""

    num_workers: int
    worker_id: int
    scorer: PredictionScorer

    @classmethod
    def build(
        cls,
        *,
        num_workers: int,
        worker_id: int,
        row_map: np.ndarray | Sequence[int],
        col_map: np.ndarray | Sequence[int],
        start_row: int,
        end_row: int,
        boundaries: np.ndarray | Sequence[int],
        user_block: np.ndarray | Sequence[float],
        item_blocks: Sequence[np.ndarray | Sequence[float]],
        alpha: float,
        dim: int,
    ) -> "EvaluationContext":
        directory = PartitionDirectory.from_boundaries(boundaries)
        model = ShardedModel.from_blocks(user_block, item_blocks, dim)

        if directory.num_workers != int(num_workers):
            raise ShapeError(
                f"boundaries describe {directory.num_workers} workers, expected {num_workers}"
            )
        if model.num_shards != int(num_workers):
            raise ShapeError(f"got {model.num_shards} item blocks, expected {num_workers}")
        if not (0 <= int(worker_id) < int(num_workers)):
            raise ValueError(f"worker_id={worker_id} outside [0, {num_workers})")
        if int(start_row) < 0 or int(end_row) < int(start_row):
            raise ValueError(f"invalid owned row range [{start_row}, {end_row})")
        if model.num_users != int(end_row) - int(start_row):
            raise ShapeError(
                f"user block has {model.num_users} rows, owned range [{start_row}, {end_row}) "
                f"needs {int(end_row) - int(start_row)}"
            )
        for k, block in enumerate(model.item_blocks):
            if block.shape[0] != directory.shard_size(k):
                raise ShapeError(
                    f"item block {k} has {block.shape[0]} rows, boundaries assign {directory.shard_size(k)}"
                )
        if float(alpha) < 0.0:
            raise ValueError(f"alpha must be >= 0, got {alpha}")

        row_map_arr = np.array(row_map, dtype=np.int64).reshape(-1)
        col_map_arr = np.array(col_map, dtype=np.int64).reshape(-1)
        row_map_arr.setflags(write=False)
        col_map_arr.setflags(write=False)

        scorer = PredictionScorer(
            row_map=row_map_arr,
            col_map=col_map_arr,
            start_row=int(start_row),
            end_row=int(end_row),
            directory=directory,
            model=model,
            alpha=float(alpha),
        )
        return cls(num_workers=int(num_workers), worker_id=int(worker_id), scorer=scorer)


class SharedAccumulator:
    """Thread-safe running `(total, count)` shared by concurrently running tasks."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = ErrorAccumulator()

    def add(self, part: ErrorAccumulator) -> None:
        if part.count == 0 and part.total == 0.0:
            return
        with self._lock:
            self._value = self._value + part

    @property
    def value(self) -> ErrorAccumulator:
        with self._lock:
            return self._value


class EvaluationTask:
    """Unit of work dispatched once per sparse test row.

    `run` scores the row and adds its contribution to the shared accumulator.
    Unmapped ids are skipped; malformed partitions or blocks raise.
    """

    def __init__(self, context: EvaluationContext, accumulator: SharedAccumulator) -> None:
        self.context = context
        self.accumulator = accumulator

    @classmethod
    def from_arrays(
        cls,
        num_workers: int,
        worker_id: int,
        row_map: np.ndarray | Sequence[int],
        col_map: np.ndarray | Sequence[int],
        start_row: int,
        end_row: int,
        boundaries: np.ndarray | Sequence[int],
        user_block: np.ndarray | Sequence[float],
        item_blocks: Sequence[np.ndarray | Sequence[float]],
        alpha: float,
        dim: int,
        accumulator: SharedAccumulator,
    ) -> "EvaluationTask":
        context = EvaluationContext.build(
            num_workers=num_workers,
            worker_id=worker_id,
            row_map=row_map,
            col_map=col_map,
            start_row=start_row,
            end_row=end_row,
            boundaries=boundaries,
            user_block=user_block,
            item_blocks=item_blocks,
            alpha=alpha,
            dim=dim,
        )
        return cls(context, accumulator)

    def run(self, row: SparseTestRow) -> None:
        self.accumulator.add(self.context.scorer.score_row(row))


def reduce_accumulators(parts: Iterable[ErrorAccumulator]) -> ErrorAccumulator:
    """Fold partial results (per task or per worker) into one accumulator."""
    out = ErrorAccumulator()
    for part in parts:
        out = out + part
    return out


def iter_batches(rows: Iterable[SparseTestRow], batch_size: int) -> Iterator[list[SparseTestRow]]:
    """Pull `rows` lazily in lists of at most `batch_size`."""
    if int(batch_size) < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    it = iter(rows)
    while True:
        batch = list(islice(it, int(batch_size)))
        if not batch:
            return
        yield batch


def _bounded_map(
    pool: ThreadPoolExecutor,
    fn: Callable[[list[SparseTestRow]], T],
    batches: Iterable[list[SparseTestRow]],
    max_pending: int,
) -> Iterator[tuple[int, T]]:
    """Submit batches with at most `max_pending` in flight, yielding `(rows, result)` as they finish."""
    pending: dict[Future, int] = {}
    for batch in batches:
        pending[pool.submit(fn, batch)] = len(batch)
        if len(pending) >= max_pending:
            done, _ = wait(pending, return_when=FIRST_COMPLETED)
            for fut in done:
                yield pending.pop(fut), fut.result()
    for fut, n in pending.items():
        yield n, fut.result()


def evaluate_rows(
    context: EvaluationContext,
    rows: Iterable[SparseTestRow],
    *,
    max_workers: int = 4,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> ErrorAccumulator:
    """Score `rows` on a thread pool and return this worker's accumulated error.

    Rows are pulled lazily in batches and at most `2 * max_workers` batches are
    in flight, so a stream of any length is scored in bounded memory. Each
    batch folds into a private partial; partials are folded as batches finish,
    so no state is shared between running tasks. The first task exception is
    re-raised.
    """
    if int(max_workers) < 1:
        raise ValueError(f"max_workers must be >= 1, got {max_workers}")

    scorer = context.scorer

    def score_batch(batch: list[SparseTestRow]) -> ErrorAccumulator:
        return reduce_accumulators(scorer.score_row(row) for row in batch)

    result = ErrorAccumulator()
    n_rows = 0
    with ThreadPoolExecutor(max_workers=int(max_workers)) as pool:
        batches = iter_batches(rows, batch_size)
        for n, part in _bounded_map(pool, score_batch, batches, 2 * int(max_workers)):
            n_rows += n
            result = result + part

    logger.info(
        "Worker %d/%d: scored rows=%d entries=%d sum=%.6f",
        context.worker_id,
        context.num_workers,
        n_rows,
        result.count,
        result.total,
    )
    return result


def run_shared(
    context: EvaluationContext,
    rows: Iterable[SparseTestRow],
    *,
    max_workers: int = 4,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> ErrorAccumulator:
    """Dispatch `EvaluationTask.run` per row, all writing one locked accumulator."""
    if int(max_workers) < 1:
        raise ValueError(f"max_workers must be >= 1, got {max_workers}")

    accumulator = SharedAccumulator()
    task = EvaluationTask(context, accumulator)

    def run_batch(batch: list[SparseTestRow]) -> None:
        for row in batch:
            task.run(row)

    with ThreadPoolExecutor(max_workers=int(max_workers)) as pool:
        batches = iter_batches(rows, batch_size)
        for _ in _bounded_map(pool, run_batch, batches, 2 * int(max_workers)):
            pass
    return accumulator.value
