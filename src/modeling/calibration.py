"""Probability calibration curves: isotonic (PAVA) and Platt scaling.

A curve is fit on held-out predictions and stored on the model artifact.
`apply_calibration` is pure; a missing curve is the identity.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
from scipy.special import expit
from sklearn.isotonic import IsotonicRegression
from sklearn.linear_model import LogisticRegression

logger = logging.getLogger(__name__)

CALIBRATION_METHODS = ("isotonic", "platt", "none")


@dataclass
class CalibrationCurve:
    """Fitted calibration mapping.

    isotonic: breakpoints x (raw) -> y (calibrated), x spans [0, 1]
    platt: calibrated = expit(slope * raw + intercept)
    """

    method: str
    x: list[float] = field(default_factory=list)
    y: list[float] = field(default_factory=list)
    slope: Optional[float] = None
    intercept: Optional[float] = None
    n_samples: int = 0

    def __post_init__(self):
        if self.method == "isotonic":
            if len(self.x) == 0 or len(self.x) != len(self.y):
                raise ValueError(
                    f"Isotonic curve needs matching non-empty x/y, got {len(self.x)}/{len(self.y)}"
                )
            xs = np.asarray(self.x, dtype=float)
            ys = np.asarray(self.y, dtype=float)
            if xs.min() < 0 or xs.max() > 1 or ys.min() < 0 or ys.max() > 1:
                raise ValueError("Isotonic breakpoints must lie in [0, 1]")
            if np.any(np.diff(xs) < 0) or np.any(np.diff(ys) < -1e-12):
                raise ValueError("Isotonic breakpoints must be non-decreasing")
        elif self.method == "platt":
            if self.slope is None or self.intercept is None:
                raise ValueError("Platt curve needs slope and intercept")
        else:
            raise ValueError(f"Unknown calibration method {self.method!r}")

    def to_dict(self) -> dict:
        if self.method == "isotonic":
            return {
                "method": self.method,
                "x": [float(v) for v in self.x],
                "y": [float(v) for v in self.y],
                "n_samples": self.n_samples,
            }
        return {
            "method": self.method,
            "slope": float(self.slope),
            "intercept": float(self.intercept),
            "n_samples": self.n_samples,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CalibrationCurve":
        return cls(
            method=data["method"],
            x=list(data.get("x", [])),
            y=list(data.get("y", [])),
            slope=data.get("slope"),
            intercept=data.get("intercept"),
            n_samples=int(data.get("n_samples", 0)),
        )


def fit_isotonic(probs: np.ndarray, outcomes: np.ndarray) -> CalibrationCurve:
    """Fit a non-decreasing step mapping with pooled adjacent violators.

    Breakpoints are extended flat to x=0 and x=1 so every input in [0, 1]
    interpolates inside the curve.
    """
    probs = np.asarray(probs, dtype=float)
    outcomes = np.asarray(outcomes, dtype=float)
    if len(probs) != len(outcomes):
        raise ValueError("Predictions and outcomes must have the same length")
    if len(probs) == 0:
        raise ValueError("Cannot fit calibration on zero samples")

    iso = IsotonicRegression(y_min=0.0, y_max=1.0, increasing=True, out_of_bounds="clip")
    iso.fit(np.clip(probs, 0.0, 1.0), outcomes)

    x = [float(v) for v in iso.X_thresholds_]
    y = [float(v) for v in iso.y_thresholds_]
    if x[0] > 0:
        x.insert(0, 0.0)
        y.insert(0, y[0])
    if x[-1] < 1:
        x.append(1.0)
        y.append(y[-1])

    return CalibrationCurve(method="isotonic", x=x, y=y, n_samples=len(probs))


def fit_platt(probs: np.ndarray, outcomes: np.ndarray) -> CalibrationCurve:
    """Fit P(outcome) = expit(slope * p + intercept).

    Raises:
        ValueError: If outcomes contain a single class
    """
    probs = np.asarray(probs, dtype=float)
    outcomes = np.asarray(outcomes, dtype=int)
    if len(np.unique(outcomes)) < 2:
        raise ValueError("Platt scaling needs both outcome classes")

    model = LogisticRegression(C=1.0, solver="lbfgs", max_iter=1000, fit_intercept=True)
    model.fit(probs.reshape(-1, 1), outcomes)

    return CalibrationCurve(
        method="platt",
        slope=float(model.coef_[0][0]),
        intercept=float(model.intercept_[0]),
        n_samples=len(probs),
    )


def fit_calibration(method: str, probs: np.ndarray, outcomes: np.ndarray) -> Optional[CalibrationCurve]:
    """Fit the requested calibration ("none" -> None)."""
    if method == "none":
        return None
    if method == "isotonic":
        return fit_isotonic(probs, outcomes)
    if method == "platt":
        return fit_platt(probs, outcomes)
    raise ValueError(f"Unknown calibration method {method!r}, expected one of {CALIBRATION_METHODS}")


def apply_calibration(p: float, curve: Optional[CalibrationCurve]) -> float:
    """Calibrated probability for a single raw probability."""
    if curve is None:
        return float(p)
    return float(apply_calibration_array(np.array([p], dtype=float), curve)[0])


def apply_calibration_array(probs: np.ndarray, curve: Optional[CalibrationCurve]) -> np.ndarray:
    """Vectorized apply_calibration."""
    probs = np.asarray(probs, dtype=float)
    if curve is None:
        return probs.copy()
    if curve.method == "platt":
        return expit(curve.slope * probs + curve.intercept)
    # np.interp holds the end values outside [x0, xn]
    xs = np.asarray(curve.x, dtype=float)
    ys = np.asarray(curve.y, dtype=float)
    clamped = np.clip(probs, xs[0], xs[-1])
    return np.clip(np.interp(clamped, xs, ys), 0.0, 1.0)
