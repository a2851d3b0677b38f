"""Model training for moneyline, spread and total markets.

moneyline / spread: L2 logistic regression (lbfgs, no intercept; the
constant home_advantage feature carries it), optionally calibrated on the
held-out split.

total: OLS on z-scored features with residual sigma, scored downstream as
P(over) = 1 - Phi((line - predicted) / sigma).

All splits are temporal: rows sorted by (date, game id), the earliest
train_fraction trains and the rest is held out.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import numpy as np
from scipy.special import expit
from sklearn.linear_model import LinearRegression, LogisticRegression

from config.settings import Settings, get_settings
from src.modeling.artifacts import ArtifactStore, ModelArtifact, generate_run_id
from src.modeling.calibration import (
    CalibrationCurve,
    apply_calibration_array,
    fit_calibration,
)
from src.modeling.errors import NoDataError
from src.modeling.features import FeatureVector, build_feature_matrix, compute_features
from src.modeling.metrics import classification_metrics, regression_metrics

logger = logging.getLogger(__name__)

WINDOW_SIZES = (5, 10)
SIDES = ("home", "away")


def _side_features(stats: tuple[str, ...]) -> list[str]:
    return [
        f"{side}_{stat}_{window}"
        for window in WINDOW_SIZES
        for side in SIDES
        for stat in stats
    ]


MONEYLINE_FEATURES = ["home_advantage"] + _side_features(
    ("win_rate", "avg_margin", "opp_win_rate", "opp_avg_margin")
)
MONEYLINE_MARKET_FEATURES = MONEYLINE_FEATURES + ["market_implied_prob"]
SPREAD_FEATURES = ["home_advantage"] + _side_features(
    ("avg_margin", "off_eff", "def_eff", "opp_avg_margin")
) + ["spread_line"]
TOTAL_FEATURES = ["home_advantage"] + _side_features(
    ("points_for", "points_against", "pace", "off_eff", "def_eff")
) + ["total_line"]

FEATURE_SETS = {
    "moneyline": MONEYLINE_FEATURES,
    "spread": SPREAD_FEATURES,
    "total": TOTAL_FEATURES,
}


@dataclass
class TrainingResult:
    """Outcome of one training run."""

    artifact: ModelArtifact
    metrics: dict
    n_train: int
    n_validation: int
    path: Optional[Path] = None


def market_label(vector: FeatureVector, market: str) -> Optional[float]:
    """Training target for a settled game, or None if it has no label.

    moneyline: 1 if home won, ties dropped
    spread: 1 if margin + spread_line > 0, pushes and missing lines dropped
    total: combined score
    """
    if not vector.is_settled:
        return None
    if market == "moneyline":
        if vector.margin == 0:
            return None
        return 1.0 if vector.margin > 0 else 0.0
    if market == "spread":
        line = vector.values.get("spread_line")
        if line is None:
            return None
        cover = vector.margin + line
        if cover == 0:
            return None
        return 1.0 if cover > 0 else 0.0
    if market == "total":
        return float(vector.total_points)
    raise ValueError(f"Unknown market {market!r}")


def temporal_split(n_rows: int, train_fraction: float) -> int:
    """Number of leading rows that train; at least one row on each side."""
    if n_rows < 2:
        return n_rows
    n_train = int(n_rows * train_fraction)
    return min(max(n_train, 1), n_rows - 1)


class Trainer:
    """Fits and persists model artifacts.

    Args:
        store: GameStore to read games and odds from
        artifact_store: Where fitted artifacts are written
        settings: Optimizer, split and calibration settings
    """

    def __init__(
        self,
        store=None,
        artifact_store: Optional[ArtifactStore] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.artifact_store = artifact_store
        self.settings = settings or get_settings()

    def train(
        self,
        sport: str,
        market: str,
        seasons: list[int],
        ensemble: bool = False,
        calibration_method: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        make_current: bool = True,
    ) -> TrainingResult:
        """Load settled games, fit, and save a new artifact version.

        Raises:
            NoDataError: No settled games or too few labeled rows
            RunCancelledError: cancel_event was set during feature computation
        """
        started_at = datetime.now().isoformat()
        games = self.store.load_games(sport, seasons, settled_only=True)
        if games.empty:
            raise NoDataError(f"No settled {sport} games for seasons {seasons}")
        odds = self.store.load_odds(games["id"].tolist())
        logger.info(f"Training {sport}/{market} on {len(games)} games, {len(odds)} odds snapshots")

        vectors = compute_features(
            games,
            odds,
            min_history_games=self.settings.min_history_games,
            odds_policy="earliest",
            cancel_event=cancel_event,
        )
        result = self.fit(
            vectors, sport, market, seasons,
            ensemble=ensemble, calibration_method=calibration_method,
        )

        if self.artifact_store is not None:
            config = {
                "l2_lambda": self.settings.l2_lambda,
                "max_iter": self.settings.max_iter,
                "tol": self.settings.tol,
                "train_fraction": self.settings.train_fraction,
                "calibration_method": calibration_method or self.settings.calibration_method,
                "ensemble": ensemble,
                "feature_names": result.artifact.required_features,
            }
            result.path = self.artifact_store.save(
                result.artifact, config=config, started_at=started_at, make_current=make_current
            )
        return result

    def fit(
        self,
        vectors: list[FeatureVector],
        sport: str,
        market: str,
        seasons: list[int],
        ensemble: bool = False,
        calibration_method: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> TrainingResult:
        """Fit an artifact from precomputed feature vectors (no persistence)."""
        method = calibration_method or self.settings.calibration_method
        run_id = run_id or generate_run_id()

        if market == "total":
            return self._fit_regression(vectors, sport, market, seasons, run_id)
        if ensemble:
            if market != "moneyline":
                raise ValueError("Ensembles are only supported for the moneyline market")
            return self._fit_ensemble(vectors, sport, market, seasons, run_id, method)
        return self._fit_classifier(vectors, sport, market, seasons, run_id, method)

    # --- Dataset assembly ---

    def _labeled_rows(
        self,
        vectors: list[FeatureVector],
        market: str,
        feature_names: list[str],
    ) -> tuple[np.ndarray, np.ndarray, list[FeatureVector]]:
        """Feature matrix and labels in temporal order."""
        labeled = [v for v in vectors if market_label(v, market) is not None]
        labeled.sort(key=lambda v: (v.date, v.game_id))
        X, kept = build_feature_matrix(labeled, feature_names)
        y = np.array([market_label(v, market) for v in kept], dtype=float)

        if len(kept) < self.settings.min_training_games:
            raise NoDataError(
                f"Only {len(kept)} usable {market} rows "
                f"(need {self.settings.min_training_games})"
            )
        return X, y, kept

    # --- Classifier ---

    def _fit_weights(self, X: np.ndarray, y: np.ndarray) -> np.ndarray:
        if len(np.unique(y)) < 2:
            raise NoDataError("Training rows contain a single outcome class")
        model = LogisticRegression(
            C=1.0 / self.settings.l2_lambda,
            solver="lbfgs",
            max_iter=self.settings.max_iter,
            tol=self.settings.tol,
            fit_intercept=False,
        )
        model.fit(X, y.astype(int))
        return model.coef_[0]

    def _fit_curve(self, method: str, probs: np.ndarray, y: np.ndarray) -> Optional[CalibrationCurve]:
        if method == "none":
            return None
        if len(y) < self.settings.min_calibration_samples:
            logger.warning(
                f"Only {len(y)} held-out rows (need {self.settings.min_calibration_samples}); "
                "skipping calibration"
            )
            return None
        try:
            return fit_calibration(method, probs, y)
        except ValueError as e:
            logger.warning(f"Calibration ({method}) failed, using identity: {e}")
            return None

    def _fit_classifier(
        self,
        vectors: list[FeatureVector],
        sport: str,
        market: str,
        seasons: list[int],
        run_id: str,
        method: str,
    ) -> TrainingResult:
        feature_names = FEATURE_SETS[market]
        X, y, _ = self._labeled_rows(vectors, market, feature_names)
        n_train = temporal_split(len(y), self.settings.train_fraction)
        X_train, y_train = X[:n_train], y[:n_train]
        X_val, y_val = X[n_train:], y[n_train:]

        weights = self._fit_weights(X_train, y_train)
        raw_val = expit(X_val @ weights)
        curve = self._fit_curve(method, raw_val, y_val)
        cal_val = apply_calibration_array(raw_val, curve)

        metrics = {
            "train": classification_metrics(expit(X_train @ weights), y_train),
            "validation": classification_metrics(cal_val, y_val),
            "validation_uncalibrated": classification_metrics(raw_val, y_val),
        }
        logger.info(
            f"{sport}/{market} classifier: {n_train} train / {len(y_val)} held out, "
            f"val accuracy {metrics['validation'].get('accuracy', 0):.3f}, "
            f"brier {metrics['validation'].get('brier', 0):.4f}"
        )

        artifact = ModelArtifact(
            run_id=run_id,
            sport=sport,
            market=market,
            model_type="classifier",
            feature_names=list(feature_names),
            weights=[float(w) for w in weights],
            seasons=sorted(seasons),
            calibration=curve,
            metrics=metrics,
            n_train=n_train,
            n_validation=len(y_val),
        )
        return TrainingResult(artifact, metrics, n_train, len(y_val))

    def _fit_ensemble(
        self,
        vectors: list[FeatureVector],
        sport: str,
        market: str,
        seasons: list[int],
        run_id: str,
        method: str,
    ) -> TrainingResult:
        """Base (no market) and market-aware classifiers on the same rows, blended."""
        all_names = MONEYLINE_MARKET_FEATURES
        X, y, _ = self._labeled_rows(vectors, market, all_names)
        n_train = temporal_split(len(y), self.settings.train_fraction)
        y_train, y_val = y[:n_train], y[n_train:]

        components = []
        blend = [self.settings.ensemble_base_weight, self.settings.ensemble_market_weight]
        raw_val = np.zeros(len(y_val))
        raw_train = np.zeros(n_train)
        for names, weight in ((MONEYLINE_FEATURES, blend[0]), (MONEYLINE_MARKET_FEATURES, blend[1])):
            columns = [all_names.index(name) for name in names]
            w = self._fit_weights(X[:n_train, columns], y_train)
            raw_train += weight * expit(X[:n_train, columns] @ w)
            raw_val += weight * expit(X[n_train:, columns] @ w)
            components.append(ModelArtifact(
                run_id=run_id,
                sport=sport,
                market=market,
                model_type="classifier",
                feature_names=list(names),
                weights=[float(v) for v in w],
                seasons=sorted(seasons),
                n_train=n_train,
                n_validation=len(y_val),
            ))

        curve = self._fit_curve(method, raw_val, y_val)
        cal_val = apply_calibration_array(raw_val, curve)
        metrics = {
            "train": classification_metrics(raw_train, y_train),
            "validation": classification_metrics(cal_val, y_val),
            "validation_uncalibrated": classification_metrics(raw_val, y_val),
        }
        logger.info(
            f"{sport}/{market} ensemble ({blend[0]:.1f}/{blend[1]:.1f}): "
            f"{n_train} train / {len(y_val)} held out, "
            f"val brier {metrics['validation'].get('brier', 0):.4f}"
        )

        artifact = ModelArtifact(
            run_id=run_id,
            sport=sport,
            market=market,
            model_type="ensemble",
            feature_names=[],
            weights=[],
            seasons=sorted(seasons),
            calibration=curve,
            components=components,
            blend_weights=blend,
            metrics=metrics,
            n_train=n_train,
            n_validation=len(y_val),
        )
        return TrainingResult(artifact, metrics, n_train, len(y_val))

    # --- Regression ---

    def _fit_regression(
        self,
        vectors: list[FeatureVector],
        sport: str,
        market: str,
        seasons: list[int],
        run_id: str,
    ) -> TrainingResult:
        feature_names = FEATURE_SETS[market]
        X, y, _ = self._labeled_rows(vectors, market, feature_names)
        n_train = temporal_split(len(y), self.settings.train_fraction)
        X_train, y_train = X[:n_train], y[:n_train]
        X_val, y_val = X[n_train:], y[n_train:]

        means = X_train.mean(axis=0)
        stds = X_train.std(axis=0)
        stds[stds == 0] = 1.0

        model = LinearRegression()
        model.fit((X_train - means) / stds, y_train)
        weights = model.coef_
        bias = float(model.intercept_)

        train_pred = bias + ((X_train - means) / stds) @ weights
        sigma = max(float(np.std(y_train - train_pred)), 1e-6)
        val_pred = bias + ((X_val - means) / stds) @ weights

        metrics = {
            "train": regression_metrics(train_pred, y_train),
            "validation": regression_metrics(val_pred, y_val),
            "sigma": sigma,
        }
        logger.info(
            f"{sport}/{market} regression: {n_train} train / {len(y_val)} held out, "
            f"val MAE {metrics['validation'].get('mae', 0):.2f}, sigma {sigma:.2f}"
        )

        artifact = ModelArtifact(
            run_id=run_id,
            sport=sport,
            market=market,
            model_type="regression",
            feature_names=list(feature_names),
            weights=[float(w) for w in weights],
            seasons=sorted(seasons),
            feature_means=[float(m) for m in means],
            feature_stds=[float(s) for s in stds],
            bias=bias,
            sigma=sigma,
            metrics=metrics,
            n_train=n_train,
            n_validation=len(y_val),
        )
        return TrainingResult(artifact, metrics, n_train, len(y_val))
