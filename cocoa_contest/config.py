"""Runtime settings, read from the environment on demand."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

from loguru import logger

# Persisted file next to the package unless COCOA_CONTEST_DB points elsewhere
DEFAULT_DB_PATH = os.path.join(os.path.dirname(__file__), "contest.sqlite")

OUTLIER_STRATEGIES = ("exclude", "reduce_weight")


@dataclass(frozen=True)
class OutlierConfig:
    sigma_threshold: float = 2.0
    min_evaluations: int = 3
    strategy: str = "reduce_weight"
    weight_reduction_factor: float = 0.5
    enabled: bool = True

    def __post_init__(self) -> None:
        if self.strategy not in OUTLIER_STRATEGIES:
            raise ValueError(f"Unknown outlier strategy: {self.strategy!r}")
        if not 0.0 <= self.weight_reduction_factor <= 1.0:
            raise ValueError("Outlier weight reduction factor must be within 0-1.")
        if self.sigma_threshold <= 0:
            raise ValueError("Outlier sigma threshold must be positive.")
        if self.min_evaluations < 1:
            raise ValueError("Outlier minimum evaluations must be at least 1.")


def _outlier_config(env, prefix: str) -> OutlierConfig:
    return OutlierConfig(
        sigma_threshold=float(env.get(f"{prefix}_SIGMA", 2.0)),
        min_evaluations=int(env.get(f"{prefix}_MIN_EVALS", 3)),
        strategy=env.get(f"{prefix}_STRATEGY", "reduce_weight"),
        weight_reduction_factor=float(env.get(f"{prefix}_WEIGHT", 0.5)),
        enabled=env.get(f"{prefix}_FILTERING", "1").lower() not in ("0", "false", "no", "off"),
    )


@dataclass(frozen=True)
class Settings:
    db_path: str = DEFAULT_DB_PATH
    log_level: str = "INFO"
    defect_threshold: float = 7.0
    # sensory round and final round are filtered independently
    outliers: OutlierConfig = field(default_factory=OutlierConfig)
    final_outliers: OutlierConfig = field(default_factory=OutlierConfig)
    top_n: int = 10

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        try:
            settings = cls(
                db_path=env.get("COCOA_CONTEST_DB", DEFAULT_DB_PATH),
                log_level=env.get("COCOA_CONTEST_LOG_LEVEL", "INFO").upper(),
                defect_threshold=float(env.get("COCOA_CONTEST_DEFECT_THRESHOLD", 7.0)),
                outliers=_outlier_config(env, "COCOA_CONTEST_OUTLIER"),
                final_outliers=_outlier_config(env, "COCOA_CONTEST_FINAL_OUTLIER"),
                top_n=int(env.get("COCOA_CONTEST_TOP_N", 10)),
            )
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid cocoa contest settings: {e}") from e

        if not 0.0 < settings.defect_threshold <= 10.0:
            raise ValueError("Defect disqualification threshold must be within (0, 10].")
        if settings.top_n < 1:
            raise ValueError("Top N must be at least 1.")
        return settings


def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(settings: Settings) -> None:
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)
