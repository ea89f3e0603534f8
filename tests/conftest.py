from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure `import sharded_rmse...` works when pytest uses importlib import mode.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from sharded_rmse.tasks import EvaluationContext  # noqa: E402


@pytest.fixture()
def two_worker_context() -> EvaluationContext:
    """2 workers, dim=2, alpha=0; worker 0 owns row 0 and items [0, 2)."""
    return EvaluationContext.build(
        num_workers=2,
        worker_id=0,
        row_map=np.array([1, 2]),
        col_map=np.array([1, 2, 3, 4]),
        start_row=0,
        end_row=1,
        boundaries=[0, 2, 4],
        user_block=np.array([1.0, 0.0]),
        item_blocks=[
            np.array([1.0, 0.0, 0.5, 0.5]),
            np.array([0.0, 1.0, 0.0, 0.0]),
        ],
        alpha=0.0,
        dim=2,
    )
