from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .errors import ShapeError


def as_block(block: np.ndarray | Sequence[float], dim: int) -> np.ndarray:
    """Reshape a flat row-major factor block to `(n, dim)` as a read-only view."""
    if int(dim) <= 0:
        raise ShapeError(f"latent dimension must be positive, got {dim}")
    flat = np.asarray(block, dtype=np.float64)
    if flat.ndim == 2:
        if flat.shape[1] != int(dim):
            raise ShapeError(f"block has {flat.shape[1]} columns, expected dim={dim}")
        out = flat.view()
    else:
        flat = flat.reshape(-1)
        if flat.shape[0] % int(dim) != 0:
            raise ShapeError(f"block length {flat.shape[0]} is not a multiple of dim={dim}")
        out = flat.reshape(-1, int(dim))
    out.setflags(write=False)
    return out


@dataclass(frozen=True)
class ShardedModel:
    """Read-only view over this worker's user factors and every worker's item factors.

    `user_block` rows are indexed relative to the worker's owned row range;
    `item_blocks[k]` holds only the item vectors worker `k` owns.
    """

    user_block: np.ndarray
    item_blocks: tuple[np.ndarray, ...]
    dim: int

    @classmethod
    def from_blocks(
        cls,
        user_block: np.ndarray | Sequence[float],
        item_blocks: Sequence[np.ndarray | Sequence[float]],
        dim: int,
    ) -> "ShardedModel":
        return cls(
            user_block=as_block(user_block, dim),
            item_blocks=tuple(as_block(b, dim) for b in item_blocks),
            dim=int(dim),
        )

    @property
    def num_shards(self) -> int:
        return len(self.item_blocks)

    @property
    def num_users(self) -> int:
        return int(self.user_block.shape[0])

    def user_vector(self, local_row: int) -> np.ndarray:
        i = int(local_row)
        if i < 0 or i >= self.user_block.shape[0]:
            raise ShapeError(f"user row {i} outside block of {self.user_block.shape[0]} rows")
        return self.user_block[i]

    def item_vector(self, owner: int, offset: int) -> np.ndarray:
        block = self._item_block(owner)
        j = int(offset)
        if j < 0 or j >= block.shape[0]:
            raise ShapeError(f"item offset {j} outside shard {owner} of {block.shape[0]} rows")
        return block[j]

    def item_vectors(self, owners: np.ndarray, offsets: np.ndarray) -> np.ndarray:
        """Gather a `(n, dim)` matrix of item vectors for a batch of entries."""
        owners = np.asarray(owners, dtype=np.int64)
        offsets = np.asarray(offsets, dtype=np.int64)
        out = np.empty((owners.shape[0], self.dim), dtype=np.float64)
        for owner in np.unique(owners):
            sel = owners == owner
            block = self._item_block(int(owner))
            offs = offsets[sel]
            if offs.size and (int(offs.min()) < 0 or int(offs.max()) >= block.shape[0]):
                raise ShapeError(
                    f"item offsets {offs.min()}..{offs.max()} outside shard {int(owner)} "
                    f"of {block.shape[0]} rows"
                )
            out[sel] = block[offs]
        return out

    def _item_block(self, owner: int) -> np.ndarray:
        k = int(owner)
        if k < 0 or k >= len(self.item_blocks):
            raise ShapeError(f"no item shard {k} (have {len(self.item_blocks)})")
        return self.item_blocks[k]
