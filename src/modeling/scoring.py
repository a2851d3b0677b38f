"""Artifact -> probability scoring shared by the Predictor and Backtester."""

import logging
from dataclasses import dataclass, field

import numpy as np
from scipy.special import expit
from scipy.stats import norm

from src.modeling.artifacts import ModelArtifact
from src.modeling.calibration import apply_calibration_array
from src.modeling.errors import MISSING_FEATURES, MISSING_ODDS
from src.modeling.features import MARKET_FEATURES, FeatureVector, build_feature_matrix

logger = logging.getLogger(__name__)


@dataclass
class ScoringResult:
    """Probabilities keyed by game id, plus skip reasons for the rest."""

    probabilities: dict[int, float] = field(default_factory=dict)
    predicted_totals: dict[int, float] = field(default_factory=dict)
    skipped: dict[int, str] = field(default_factory=dict)


def over_probability(predicted: float | np.ndarray, line: float | np.ndarray, sigma: float):
    """P(total > line) under Normal(predicted, sigma).

    z = (line - predicted) / sigma, P(over) = 1 - Phi(z).
    """
    z = (np.asarray(line, dtype=float) - np.asarray(predicted, dtype=float)) / sigma
    return norm.sf(z)


def classifier_probabilities(artifact: ModelArtifact, X: np.ndarray) -> np.ndarray:
    """Calibrated sigmoid(w . x) for each row."""
    raw = expit(X @ np.asarray(artifact.weights, dtype=float))
    return apply_calibration_array(raw, artifact.calibration)


def regression_predictions(artifact: ModelArtifact, X: np.ndarray) -> np.ndarray:
    """Predicted target (e.g. combined points) for each row."""
    means = np.asarray(artifact.feature_means, dtype=float)
    stds = np.asarray(artifact.feature_stds, dtype=float)
    return artifact.bias + ((X - means) / stds) @ np.asarray(artifact.weights, dtype=float)


def _skip_reason(vector: FeatureVector, feature_names: list[str]) -> str:
    missing = [name for name in feature_names if vector.values.get(name) is None]
    if any(name in MARKET_FEATURES for name in missing):
        return MISSING_ODDS
    return MISSING_FEATURES


def score_vectors(
    artifact: ModelArtifact,
    vectors: list[FeatureVector],
    spread_prob_min: float = 0.05,
    spread_prob_max: float = 0.95,
) -> ScoringResult:
    """Score feature vectors with an artifact.

    moneyline: calibrated P(home win), blended across ensemble components
    spread: calibrated P(home cover), clipped to [spread_prob_min, spread_prob_max]
    total: regression P(over the line); classifier artifacts use the sigmoid

    Vectors lacking a required feature are skipped, as are totals games
    without a line.
    """
    result = ScoringResult()
    required = artifact.required_features
    X, kept = build_feature_matrix(vectors, required)

    kept_ids = {v.game_id for v in kept}
    for vector in vectors:
        if vector.game_id not in kept_ids:
            result.skipped[vector.game_id] = _skip_reason(vector, required)
    if not kept:
        return result

    if artifact.model_type == "ensemble":
        probs = np.zeros(len(kept))
        for component, weight in zip(artifact.components, artifact.blend_weights):
            columns = [required.index(name) for name in component.feature_names]
            probs += weight * classifier_probabilities(component, X[:, columns])
        probs = apply_calibration_array(probs, artifact.calibration)
    elif artifact.model_type == "regression":
        predicted = regression_predictions(artifact, X)
        lines = np.array([
            v.values["total_line"] if v.values.get("total_line") is not None else np.nan
            for v in kept
        ])
        has_line = ~np.isnan(lines)
        for vector, ok in zip(kept, has_line):
            if not ok:
                result.skipped[vector.game_id] = MISSING_ODDS
        for vector, value in zip(kept, predicted):
            result.predicted_totals[vector.game_id] = float(value)
        kept = [v for v, ok in zip(kept, has_line) if ok]
        probs = over_probability(predicted[has_line], lines[has_line], artifact.sigma)
    else:
        probs = classifier_probabilities(artifact, X)

    if artifact.market == "spread":
        probs = np.clip(probs, spread_prob_min, spread_prob_max)

    for vector, p in zip(kept, probs):
        result.probabilities[vector.game_id] = float(p)

    if result.skipped:
        logger.debug(
            f"Scored {len(result.probabilities)} games with {artifact.run_id}, "
            f"skipped {len(result.skipped)}"
        )
    return result
