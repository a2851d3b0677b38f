"""Outcome modeling, calibration and backtesting.

Pipeline:
- compute_features: game/odds history -> per-game feature vectors (no lookahead)
- Trainer: L2 logistic regression (moneyline, spread) or OLS regression (total)
- fit_calibration / apply_calibration: isotonic or Platt curves on held-out predictions
- ArtifactStore: immutable versioned ModelArtifact JSON plus a current pointer
- score_vectors: shared artifact -> probability path
- Backtester: decile calibration, ROI, underdog and divergence breakdowns

The Predictor lives in src.modeling.predictor (it depends on the provider
interface in src.api).
"""

from .artifacts import ArtifactStore, ModelArtifact, generate_run_id
from .backtest import Backtester, BacktestReport, BacktestReportStore
from .calibration import CalibrationCurve, apply_calibration, fit_calibration
from .errors import (
    ExternalFetchError,
    MalformedArtifactError,
    MissingArtifactError,
    ModelingError,
    NoDataError,
    RunCancelledError,
)
from .features import FeatureVector, build_feature_matrix, compute_features
from .scoring import score_vectors
from .trainer import (
    MONEYLINE_FEATURES,
    SPREAD_FEATURES,
    TOTAL_FEATURES,
    Trainer,
    TrainingResult,
)

__all__ = [
    "ArtifactStore",
    "ModelArtifact",
    "generate_run_id",
    "Backtester",
    "BacktestReport",
    "BacktestReportStore",
    "CalibrationCurve",
    "apply_calibration",
    "fit_calibration",
    "ExternalFetchError",
    "MalformedArtifactError",
    "MissingArtifactError",
    "ModelingError",
    "NoDataError",
    "RunCancelledError",
    "FeatureVector",
    "build_feature_matrix",
    "compute_features",
    "score_vectors",
    "MONEYLINE_FEATURES",
    "SPREAD_FEATURES",
    "TOTAL_FEATURES",
    "Trainer",
    "TrainingResult",
]
