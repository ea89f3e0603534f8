"""Ownership lookup over a partition boundary table."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .errors import PartitionError


def validate_boundaries(boundaries: Sequence[int] | np.ndarray) -> np.ndarray:
    """Check a boundary table and return it as a read-only int64 array."""
    arr = np.array(boundaries, dtype=np.int64).reshape(-1)
    if arr.shape[0] < 2:
        raise PartitionError(f"boundaries need at least 2 entries (one worker), got {arr.shape[0]}")
    if int(arr[0]) != 0:
        raise PartitionError(f"boundaries must start at 0, got {int(arr[0])}")
    if (np.diff(arr) < 0).any():
        raise PartitionError(f"boundaries must be non-decreasing: {arr.tolist()}")
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class PartitionDirectory:
    """Resolves which worker owns a local item column.

    Worker `k` owns the half-open range `[boundaries[k], boundaries[k+1])`.
    """

    boundaries: np.ndarray

    @classmethod
    def from_boundaries(cls, boundaries: Sequence[int] | np.ndarray) -> "PartitionDirectory":
        return cls(boundaries=validate_boundaries(boundaries))

    @property
    def num_workers(self) -> int:
        return int(self.boundaries.shape[0] - 1)

    def shard_size(self, worker: int) -> int:
        return int(self.boundaries[worker + 1] - self.boundaries[worker])

    def locate(self, local_column: int) -> tuple[int, int]:
        """Return `(owner_worker, offset_within_owner)` for a local column index."""
        col = int(local_column)
        # Worker count is small compared to the number of ratings; a scan is fine here.
        for k in range(self.num_workers):
            if col < int(self.boundaries[k + 1]):
                if col < int(self.boundaries[k]):
                    break
                return k, col - int(self.boundaries[k])
        raise PartitionError(
            f"no worker owns local column {col} (boundaries={self.boundaries.tolist()})"
        )

    def locate_many(self, local_columns: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Binary-search variant of `locate` for a batch of columns."""
        cols = np.asarray(local_columns, dtype=np.int64)
        owners = np.searchsorted(self.boundaries[1:], cols, side="right")
        bad = (cols < 0) | (owners >= self.num_workers)
        if bad.any():
            first = int(cols[bad][0])
            raise PartitionError(
                f"no worker owns local column {first} (boundaries={self.boundaries.tolist()})"
            )
        offsets = cols - self.boundaries[owners]
        return owners.astype(np.int64), offsets.astype(np.int64)
