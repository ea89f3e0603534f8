from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class BlockStats:
    rows: int
    dim: int
    nbytes: int


def setup_logging(level: int | str = "INFO") -> None:
    """Configure stdlib logging with a consistent, project-wide format."""
    root_logger = logging.getLogger()
    if root_logger.handlers:
        # Avoid duplicate handlers if called multiple times (e.g., tests + CLI).
        root_logger.setLevel(level)
        return

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def block_stats(block: np.ndarray, dim: int) -> BlockStats:
    """Summarize a flat row-major factor block for log lines."""
    block = np.asarray(block)
    rows = int(block.size // dim) if dim > 0 else 0
    return BlockStats(rows=rows, dim=int(dim), nbytes=int(block.nbytes))
