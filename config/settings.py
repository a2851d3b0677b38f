"""Application settings and configuration."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


@dataclass
class Settings:
    """Application configuration settings."""

    # Storage
    db_path: str = field(
        default_factory=lambda: os.getenv("SPORTLINE_DB_PATH", "data/sportline.db")
    )
    artifact_root: str = field(
        default_factory=lambda: os.getenv("SPORTLINE_ARTIFACT_DIR", "")
    )
    backtest_root: str = field(
        default_factory=lambda: os.getenv("SPORTLINE_BACKTEST_DIR", "")
    )

    # Feature Computer
    min_history_games: int = 5  # Both teams need this many settled prior games

    # Classifier (L2 logistic regression)
    l2_lambda: float = field(
        default_factory=lambda: float(os.getenv("L2_LAMBDA", "0.1"))
    )
    max_iter: int = 1000
    tol: float = 1e-6  # Optimizer convergence tolerance

    # Temporal split: earliest fraction trains, latest is held out
    train_fraction: float = 0.7
    min_training_games: int = 10

    # Calibration
    calibration_method: str = field(
        default_factory=lambda: os.getenv("CALIBRATION_METHOD", "isotonic")
    )
    min_calibration_samples: int = 20

    # Moneyline ensemble blend (base model / market-aware model)
    ensemble_base_weight: float = 0.7
    ensemble_market_weight: float = 0.3

    # Scoring
    spread_prob_min: float = 0.05  # Clip spread P(cover) away from extrapolated tails
    spread_prob_max: float = 0.95

    # Backtest
    unit_stake: float = 10.0
    min_backtest_games: int = 30  # Below this the report carries a coverage warning
    underdog_thresholds: tuple = (200, 300, 500, 1000)
    divergence_moderate: float = 0.05
    divergence_high: float = 0.15

    # External fetches
    fetch_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("FETCH_TIMEOUT_SECONDS", "15"))
    )
    max_retries: int = 3

    # Paths
    @property
    def project_root(self) -> Path:
        return Path(__file__).parent.parent

    @property
    def data_dir(self) -> Path:
        return self.project_root / "data"

    @property
    def artifact_dir(self) -> Path:
        if self.artifact_root:
            return Path(self.artifact_root)
        return self.data_dir / "models"

    @property
    def backtest_dir(self) -> Path:
        if self.backtest_root:
            return Path(self.backtest_root)
        return self.data_dir / "backtest_results"

    def validate(self) -> list[str]:
        """Validate settings. Returns list of errors."""
        errors = []
        if not 0.0 < self.train_fraction < 1.0:
            errors.append(f"train_fraction must be in (0, 1), got {self.train_fraction}")
        if self.l2_lambda <= 0:
            errors.append(f"l2_lambda must be positive, got {self.l2_lambda}")
        if self.calibration_method not in ("isotonic", "platt", "none"):
            errors.append(
                f"calibration_method must be isotonic, platt or none, got {self.calibration_method!r}"
            )
        if abs(self.ensemble_base_weight + self.ensemble_market_weight - 1.0) > 1e-9:
            errors.append("Ensemble blend weights must sum to 1")
        if not 0.0 <= self.spread_prob_min < self.spread_prob_max <= 1.0:
            errors.append("Spread probability clip bounds must satisfy 0 <= min < max <= 1")
        if self.unit_stake <= 0:
            errors.append(f"unit_stake must be positive, got {self.unit_stake}")
        return errors


# Singleton instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
