from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any

from ..config import evaluation_settings, load_config
from ..data import load_bundle, rows_from_frame
from ..paths import get_repo_root, resolve_path
from ..scoring import ErrorAccumulator
from ..tasks import EvaluationContext, evaluate_rows, reduce_accumulators
from ..utils import block_stats, setup_logging


logger = logging.getLogger(__name__)


def run_evaluation(
    *,
    config_path: Path,
    bundle_path: Path | None = None,
    alpha: float | None = None,
    max_workers: int | None = None,
    log_level: str | None = None,
) -> dict[str, Any]:
    """Evaluate every worker shard of a bundle and reduce to one RMSE."""
    repo_root = get_repo_root()
    config_path = resolve_path(repo_root, config_path)
    config = load_config(config_path)
    settings = evaluation_settings(
        config,
        bundle_path=bundle_path,
        alpha=alpha,
        max_workers=max_workers,
        log_level=log_level,
    )
    setup_logging(settings.log_level)

    bundle = load_bundle(resolve_path(repo_root, settings.bundle_path))
    rows = list(rows_from_frame(bundle.test_ratings))
    item_blocks = bundle.item_blocks()

    parts: list[ErrorAccumulator] = []
    for worker in range(bundle.num_workers):
        start, end = bundle.worker_rows(worker)
        user_block = bundle.user_block(worker)
        stats = block_stats(user_block, bundle.dim)
        logger.info(
            "Worker %d: rows=[%d, %d) user_block=%d x %d (%d bytes)",
            worker,
            start,
            end,
            stats.rows,
            stats.dim,
            stats.nbytes,
        )
        context = EvaluationContext.build(
            num_workers=bundle.num_workers,
            worker_id=worker,
            row_map=bundle.row_map,
            col_map=bundle.col_map,
            start_row=start,
            end_row=end,
            boundaries=bundle.item_boundaries,
            user_block=user_block,
            item_blocks=item_blocks,
            alpha=settings.alpha,
            dim=bundle.dim,
        )
        parts.append(evaluate_rows(context, rows, max_workers=settings.max_workers))

    total = reduce_accumulators(parts)
    rmse = total.rmse()
    logger.info("Evaluation complete: sum=%.6f count=%d rmse=%.6f", total.total, total.count, rmse)

    return {
        "bundle_path": str(settings.bundle_path),
        "alpha": settings.alpha,
        "num_workers": bundle.num_workers,
        "per_worker": [{"total": p.total, "count": p.count} for p in parts],
        "total": total.total,
        "count": total.count,
        "rmse": rmse,
    }


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Evaluate a partitioned factor model (confidence-weighted RMSE).")
    p.add_argument("--config", type=Path, default=Path("config.yaml"), help="Path to config YAML.")
    p.add_argument("--bundle", type=Path, default=None, help="Override evaluation bundle (.npz)")
    p.add_argument("--alpha", type=float, default=None, help="Override confidence scale alpha")
    p.add_argument("--max-workers", type=int, default=None, help="Override scoring threads per worker")
    p.add_argument("--log-level", type=str, default=None, help="DEBUG/INFO/WARNING; default from config")
    return p


def main(argv: list[str] | None = None) -> None:
    args = build_arg_parser().parse_args(argv)
    setup_logging("INFO")

    summary = run_evaluation(
        config_path=args.config,
        bundle_path=args.bundle,
        alpha=args.alpha,
        max_workers=args.max_workers,
        log_level=args.log_level,
    )
    print(f"RMSE={summary['rmse']:.6f} (count={summary['count']}, workers={summary['num_workers']})")


if __name__ == "__main__":
    main()
