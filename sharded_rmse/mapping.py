"""Global-to-local identifier remapping.

Mapping tables are dense integer arrays indexed by global id. A value of 0
means "not part of this evaluation"; any other value is a 1-based local index.
"""

from __future__ import annotations

from typing import Iterable, Optional

import numpy as np
from sklearn.preprocessing import LabelEncoder


def remap(global_id: int, mapping: np.ndarray) -> Optional[int]:
    """Return the 0-based local index of `global_id`, or None when it is unmapped.

    Ids outside the table (including negative ids) are treated as unmapped:
    test data can reference ids never seen while partitioning.
    """
    gid = int(global_id)
    if gid < 0 or gid >= len(mapping):
        return None
    local = int(mapping[gid])
    if local == 0:
        return None
    return local - 1


def remap_many(global_ids: np.ndarray, mapping: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Vectorised `remap`.

    Returns
    -------
    (local_ids, mapped)
        `local_ids` is int64 and only meaningful where `mapped` is True.
    """
    ids = np.asarray(global_ids, dtype=np.int64)
    table = np.asarray(mapping)
    in_bounds = (ids >= 0) & (ids < table.shape[0])

    raw = np.zeros(ids.shape, dtype=np.int64)
    raw[in_bounds] = table[ids[in_bounds]]
    mapped = raw != 0
    return raw - 1, mapped


def mapping_from_ids(ids: Iterable[int], *, size: Optional[int] = None) -> np.ndarray:
    """Build a dense 1-based mapping table from the ids seen during training.

    Ids are assigned contiguous local indices in ascending order. `size` pads
    the table (default: max id + 1).
    """
    arr = np.asarray(list(ids) if not isinstance(ids, np.ndarray) else ids, dtype=np.int64)
    if arr.size and int(arr.min()) < 0:
        raise ValueError("mapping ids must be non-negative")

    n = int(size) if size is not None else (int(arr.max()) + 1 if arr.size else 0)
    table = np.zeros(n, dtype=np.int64)
    if arr.size == 0:
        return table
    if int(arr.max()) >= n:
        raise ValueError(f"size={n} is too small for max id {int(arr.max())}")

    # Label encoder maps raw ids => contiguous indices [0..n)
    le = LabelEncoder()
    encoded = le.fit_transform(arr)
    table[arr] = encoded.astype(np.int64) + 1
    return table
