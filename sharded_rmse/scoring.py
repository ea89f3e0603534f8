"""Confidence-weighted prediction error over one sparse test row.

For every rating entry `(col, r)` of a row owned by this worker:

    predicted = dot(user_vector, item_vector)
    residual  = (1 - predicted)^2 * (1 + alpha * r)

Residuals are summed and entries counted in an `ErrorAccumulator`. Unmapped
rows/columns and rows owned by another worker contribute nothing.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np

from .mapping import remap, remap_many
from .model import ShardedModel
from .partition import PartitionDirectory


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SparseTestRow:
    row_id: int
    col_ids: np.ndarray
    ratings: np.ndarray

    def __post_init__(self) -> None:
        cols = np.array(self.col_ids, dtype=np.int64).reshape(-1)
        vals = np.array(self.ratings, dtype=np.float64).reshape(-1)
        if cols.shape[0] != vals.shape[0]:
            raise ValueError(
                f"row {self.row_id}: {cols.shape[0]} column ids but {vals.shape[0]} ratings"
            )
        cols.setflags(write=False)
        vals.setflags(write=False)
        object.__setattr__(self, "row_id", int(self.row_id))
        object.__setattr__(self, "col_ids", cols)
        object.__setattr__(self, "ratings", vals)

    @classmethod
    def from_pairs(cls, row_id: int, pairs: Iterable[tuple[int, float]]) -> "SparseTestRow":
        pairs = list(pairs)
        return cls(
            row_id=row_id,
            col_ids=np.array([int(c) for c, _ in pairs], dtype=np.int64),
            ratings=np.array([float(r) for _, r in pairs], dtype=np.float64),
        )

    def __len__(self) -> int:
        return int(self.col_ids.shape[0])


@dataclass(frozen=True)
class ErrorAccumulator:
    """`(sum of weighted squared residuals, entry count)`; combine with `+`."""

    total: float = 0.0
    count: int = 0

    def __add__(self, other: "ErrorAccumulator") -> "ErrorAccumulator":
        if not isinstance(other, ErrorAccumulator):
            return NotImplemented
        return ErrorAccumulator(total=self.total + other.total, count=self.count + other.count)

    def rmse(self) -> float:
        if self.count == 0:
            return math.nan
        return math.sqrt(self.total / self.count)


@dataclass(frozen=True)
class PredictionScorer:
    """Scores rows against one worker's view of a partitioned factor model.

    `row_map` / `col_map` are 1-based dense mapping tables, `start_row` /
    `end_row` the half-open range of local rows this worker owns.
    """

    row_map: np.ndarray
    col_map: np.ndarray
    start_row: int
    end_row: int
    directory: PartitionDirectory
    model: ShardedModel
    alpha: float

    def locate_row(self, row_id: int) -> Optional[int]:
        """Index into the user block for `row_id`, or None when another worker owns it."""
        local = remap(row_id, self.row_map)
        if local is None or not (self.start_row <= local < self.end_row):
            return None
        return local - self.start_row

    def score_entry(self, user_index: int, col_id: int, rating: float) -> Optional[float]:
        """Weighted squared residual of a single entry, None if the column is unmapped.

        Per-entry entry point for schedulers that dispatch individual ratings
        instead of whole rows; it resolves ownership with the linear `locate`.
        `score_row` is the batched equivalent.
        """
        local_col = remap(col_id, self.col_map)
        if local_col is None:
            return None
        owner, offset = self.directory.locate(local_col)
        u = self.model.user_vector(user_index)
        v = self.model.item_vector(owner, offset)
        predicted = float(np.dot(u, v))
        return (1.0 - predicted) ** 2 * (1.0 + self.alpha * float(rating))

    def score_row(self, row: SparseTestRow) -> ErrorAccumulator:
        user_index = self.locate_row(row.row_id)
        if user_index is None:
            logger.debug("Skipping row %d: not owned by this worker", row.row_id)
            return ErrorAccumulator()

        local_cols, mapped = remap_many(row.col_ids, self.col_map)
        n = int(mapped.sum())
        if n < len(row):
            logger.debug("Row %d: skipping %d unmapped columns", row.row_id, len(row) - n)
        if n == 0:
            return ErrorAccumulator()

        owners, offsets = self.directory.locate_many(local_cols[mapped])
        u = self.model.user_vector(user_index)
        items = self.model.item_vectors(owners, offsets)

        predicted = items @ u
        weight = 1.0 + self.alpha * row.ratings[mapped]
        residual = (1.0 - predicted) ** 2 * weight
        return ErrorAccumulator(total=float(residual.sum()), count=n)
