from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

import numpy as np
import pandas as pd

from .mapping import mapping_from_ids
from .model import as_block
from .scoring import SparseTestRow


logger = logging.getLogger(__name__)


REQUIRED_RATING_COLUMNS = ("row", "col", "rating")

REQUIRED_BUNDLE_KEYS = (
    "row_boundaries",
    "item_boundaries",
    "user_factors",
    "item_factors",
    "dim",
    "test_rows",
    "test_cols",
    "test_ratings",
)


@dataclass(frozen=True)
class ModelBundle:
    """A partitioned factor model plus its test ratings, as stored on disk.

    Factor matrices are global (all workers concatenated in worker order);
    `row_boundaries` / `item_boundaries` say which slice each worker owns.
    """

    row_map: np.ndarray
    col_map: np.ndarray
    row_boundaries: np.ndarray
    item_boundaries: np.ndarray
    user_factors: np.ndarray
    item_factors: np.ndarray
    dim: int
    test_ratings: pd.DataFrame

    @property
    def num_workers(self) -> int:
        return int(len(self.item_boundaries) - 1)

    def worker_rows(self, worker: int) -> tuple[int, int]:
        return int(self.row_boundaries[worker]), int(self.row_boundaries[worker + 1])

    def user_block(self, worker: int) -> np.ndarray:
        start, end = self.worker_rows(worker)
        return self.user_factors[start:end]

    def item_blocks(self) -> list[np.ndarray]:
        b = self.item_boundaries
        return [self.item_factors[int(b[k]) : int(b[k + 1])] for k in range(self.num_workers)]


def validate_ratings(df: pd.DataFrame) -> None:
    """Validate the long-format test ratings table (`row`, `col`, `rating`)."""
    missing = [c for c in REQUIRED_RATING_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"test ratings missing columns: {missing}")
    if df[["row", "col", "rating"]].isna().any().any():
        raise ValueError("test ratings contain null values")
    if (df["row"] < 0).any() or (df["col"] < 0).any():
        raise ValueError("test ratings contain negative row/col ids")
    if (df["rating"] < 0).any():
        raise ValueError("test ratings contain negative rating values")


def rows_from_frame(df: pd.DataFrame) -> Iterator[SparseTestRow]:
    """Group long-format ratings into one `SparseTestRow` per row id (ascending)."""
    validate_ratings(df)
    ratings = df[["row", "col", "rating"]].astype({"row": "int64", "col": "int64", "rating": "float64"})
    for row_id, grp in ratings.groupby("row", sort=True):
        yield SparseTestRow(
            row_id=int(row_id),
            col_ids=grp["col"].to_numpy(),
            ratings=grp["rating"].to_numpy(),
        )


def _optional(npz: "np.lib.npyio.NpzFile", key: str) -> Optional[np.ndarray]:
    return npz[key] if key in npz.files else None


def load_bundle(path: Path) -> ModelBundle:
    """Load a partitioned evaluation bundle from an `.npz` file.

    `row_map` / `col_map` may be omitted when `row_ids` / `col_ids` (the ids
    seen during training) are present; the maps are then built from those.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Evaluation bundle not found: {path}")

    with np.load(path, allow_pickle=False) as npz:
        missing = [k for k in REQUIRED_BUNDLE_KEYS if k not in npz.files]
        if missing:
            raise ValueError(f"{path.name} missing required arrays: {missing}")

        row_map = _optional(npz, "row_map")
        if row_map is None:
            row_ids = _optional(npz, "row_ids")
            if row_ids is None:
                raise ValueError(f"{path.name} needs either 'row_map' or 'row_ids'")
            row_map = mapping_from_ids(row_ids)

        col_map = _optional(npz, "col_map")
        if col_map is None:
            col_ids = _optional(npz, "col_ids")
            if col_ids is None:
                raise ValueError(f"{path.name} needs either 'col_map' or 'col_ids'")
            col_map = mapping_from_ids(col_ids)

        dim = int(npz["dim"])
        test_ratings = pd.DataFrame(
            {
                "row": npz["test_rows"].astype(np.int64),
                "col": npz["test_cols"].astype(np.int64),
                "rating": npz["test_ratings"].astype(np.float64),
            }
        )
        bundle = ModelBundle(
            row_map=np.asarray(row_map, dtype=np.int64),
            col_map=np.asarray(col_map, dtype=np.int64),
            row_boundaries=npz["row_boundaries"].astype(np.int64),
            item_boundaries=npz["item_boundaries"].astype(np.int64),
            user_factors=as_block(npz["user_factors"], dim),
            item_factors=as_block(npz["item_factors"], dim),
            dim=dim,
            test_ratings=test_ratings,
        )

    if len(bundle.row_boundaries) != len(bundle.item_boundaries):
        raise ValueError(
            f"row_boundaries ({len(bundle.row_boundaries)}) and item_boundaries "
            f"({len(bundle.item_boundaries)}) disagree on worker count"
        )
    logger.info(
        "Loaded bundle %s: workers=%d users=%d items=%d dim=%d test_ratings=%d",
        path,
        bundle.num_workers,
        bundle.user_factors.shape[0],
        bundle.item_factors.shape[0],
        bundle.dim,
        len(bundle.test_ratings),
    )
    return bundle
