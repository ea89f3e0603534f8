"""Evaluation settings read from the `evaluation` section of `config.yaml`."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator


LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class EvaluationSettings(BaseModel):
    """Validated knobs for one evaluation run."""

    bundle_path: Path = Field(Path("artifacts/bundles/eval_bundle.npz"), description="Partitioned model + test data (.npz)")
    alpha: float = Field(0.0, ge=0.0, description="Confidence scale in 1 + alpha * rating")
    max_workers: int = Field(4, ge=1, le=1024, description="Threads used to score rows per worker")
    log_level: LogLevel = Field("INFO", description="stdlib logging level name")

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v


def load_config(config_path: Path) -> dict[str, Any]:
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    config = yaml.safe_load(config_path.read_text())
    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise ValueError(f"Expected config YAML to be a mapping, got: {type(config)}")
    return config


def evaluation_settings(config: dict[str, Any], **overrides: Optional[Any]) -> EvaluationSettings:
    """Build settings from the `evaluation` section; non-None overrides win."""
    section = config.get("evaluation", {}) if isinstance(config.get("evaluation"), dict) else {}
    merged = dict(section)
    merged.update({k: v for k, v in overrides.items() if v is not None})
    return EvaluationSettings(**merged)
