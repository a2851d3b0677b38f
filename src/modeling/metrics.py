"""Evaluation metrics for probability and regression models."""

import numpy as np
from sklearn.metrics import accuracy_score, f1_score, precision_score, recall_score

N_BINS = 10


def decile_index(p: float) -> int:
    """Bin index for a probability; 1.0 lands in the last bin."""
    return min(max(int(p * N_BINS), 0), N_BINS - 1)


def brier_score(y_pred: np.ndarray, y_true: np.ndarray) -> float:
    y_pred = np.asarray(y_pred, dtype=float)
    y_true = np.asarray(y_true, dtype=float)
    if len(y_true) == 0:
        return 0.0
    return float(np.mean((y_pred - y_true) ** 2))


def log_loss(y_pred: np.ndarray, y_true: np.ndarray) -> float:
    y_pred = np.asarray(y_pred, dtype=float)
    y_true = np.asarray(y_true, dtype=float)
    if len(y_true) == 0:
        return 0.0
    eps = 1e-15
    y_pred_clipped = np.clip(y_pred, eps, 1 - eps)
    return float(-np.mean(
        y_true * np.log(y_pred_clipped) + (1 - y_true) * np.log(1 - y_pred_clipped)
    ))


def expected_calibration_error(y_pred: np.ndarray, y_true: np.ndarray) -> float:
    """ECE over ten equal-width bins: sum of (count/total) * |avg pred - actual rate|."""
    y_pred = np.asarray(y_pred, dtype=float)
    y_true = np.asarray(y_true, dtype=float)
    total = len(y_true)
    if total == 0:
        return 0.0
    bins = np.array([decile_index(p) for p in y_pred])
    ece = 0.0
    for b in range(N_BINS):
        mask = bins == b
        count = int(mask.sum())
        if count == 0:
            continue
        ece += (count / total) * abs(y_pred[mask].mean() - y_true[mask].mean())
    return float(ece)


def classification_metrics(y_pred: np.ndarray, y_true: np.ndarray) -> dict:
    """Held-out metrics for a binary probability model (threshold 0.5)."""
    y_pred = np.asarray(y_pred, dtype=float)
    y_true = np.asarray(y_true, dtype=int)
    if len(y_true) == 0:
        return {"n": 0}
    y_hat = (y_pred > 0.5).astype(int)
    return {
        "n": int(len(y_true)),
        "accuracy": float(accuracy_score(y_true, y_hat)),
        "precision": float(precision_score(y_true, y_hat, zero_division=0)),
        "recall": float(recall_score(y_true, y_hat, zero_division=0)),
        "f1": float(f1_score(y_true, y_hat, zero_division=0)),
        "brier": brier_score(y_pred, y_true),
        "log_loss": log_loss(y_pred, y_true),
        "ece": expected_calibration_error(y_pred, y_true),
    }


def regression_metrics(y_pred: np.ndarray, y_true: np.ndarray) -> dict:
    y_pred = np.asarray(y_pred, dtype=float)
    y_true = np.asarray(y_true, dtype=float)
    if len(y_true) == 0:
        return {"n": 0}
    errors = y_pred - y_true
    return {
        "n": int(len(y_true)),
        "mae": float(np.mean(np.abs(errors))),
        "rmse": float(np.sqrt(np.mean(errors ** 2))),
    }


def roi_percent(profit: float, bets: int, unit_stake: float) -> float:
    """Profit as a percentage of total amount staked (0 when nothing was bet)."""
    if bets == 0:
        return 0.0
    return profit / (bets * unit_stake) * 100.0
