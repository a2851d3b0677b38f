"""Model artifact persistence.

This module provides:
1. ModelArtifact dataclass (weights, ordered feature names, calibration,
   regression scaling, ensemble components)
2. ArtifactStore for saving/loading versioned artifacts

Design Principles:
- Artifacts are immutable once saved
- Each training run writes a new version directory keyed by run id:
  {artifact_dir}/{sport}/{market}/{run_id}/model.json
- The "current" version per (sport, market) is a pointer in the run
  registry; callers can pin an explicit run id instead
- Anything that fails to parse or validate is a MalformedArtifactError
"""

import json
import logging
import math
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from src.modeling.calibration import CalibrationCurve
from src.modeling.errors import MalformedArtifactError, MissingArtifactError

logger = logging.getLogger(__name__)

MODEL_TYPES = ("classifier", "regression", "ensemble")
ARTIFACT_FILENAME = "model.json"


@dataclass
class ModelArtifact:
    """A trained model for one (sport, market).

    classifier: p = sigmoid(weights . x), then calibration
    regression: predicted = bias + sum(weights * (x - means) / stds),
        residual sigma for the Normal tail probability
    ensemble: blend of classifier components by blend_weights
    """

    run_id: str
    sport: str
    market: str
    model_type: str
    feature_names: list[str]
    weights: list[float]
    seasons: list[int]
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    calibration: Optional[CalibrationCurve] = None

    # Regression only
    feature_means: list[float] = field(default_factory=list)
    feature_stds: list[float] = field(default_factory=list)
    bias: float = 0.0
    sigma: Optional[float] = None

    # Ensemble only
    components: list["ModelArtifact"] = field(default_factory=list)
    blend_weights: list[float] = field(default_factory=list)

    metrics: dict = field(default_factory=dict)
    n_train: int = 0
    n_validation: int = 0

    @property
    def required_features(self) -> list[str]:
        """Every feature a game must supply to be scored, in first-seen order."""
        if self.model_type != "ensemble":
            return list(self.feature_names)
        names: list[str] = []
        for component in self.components:
            for name in component.feature_names:
                if name not in names:
                    names.append(name)
        return names

    @property
    def latest_season(self) -> Optional[int]:
        return max(self.seasons) if self.seasons else None

    def validate(self) -> None:
        """Check internal consistency.

        Raises:
            MalformedArtifactError: On any shape or value inconsistency
        """
        if self.model_type not in MODEL_TYPES:
            raise MalformedArtifactError(
                f"Unknown model type {self.model_type!r} in {self.run_id}"
            )

        if self.model_type == "ensemble":
            if not self.components:
                raise MalformedArtifactError(f"Ensemble {self.run_id} has no components")
            if len(self.blend_weights) != len(self.components):
                raise MalformedArtifactError(
                    f"Ensemble {self.run_id}: {len(self.blend_weights)} blend weights "
                    f"for {len(self.components)} components"
                )
            if abs(sum(self.blend_weights) - 1.0) > 1e-6:
                raise MalformedArtifactError(f"Ensemble {self.run_id} blend weights must sum to 1")
            for component in self.components:
                if component.model_type != "classifier":
                    raise MalformedArtifactError(
                        f"Ensemble {self.run_id} component must be a classifier"
                    )
                component.validate()
            return

        if len(self.weights) != len(self.feature_names):
            raise MalformedArtifactError(
                f"Artifact {self.run_id}: {len(self.weights)} weights "
                f"for {len(self.feature_names)} features"
            )
        if not self.feature_names:
            raise MalformedArtifactError(f"Artifact {self.run_id} has no features")
        if not all(math.isfinite(w) for w in self.weights):
            raise MalformedArtifactError(f"Artifact {self.run_id} has non-finite weights")

        if self.model_type == "regression":
            n = len(self.feature_names)
            if len(self.feature_means) != n or len(self.feature_stds) != n:
                raise MalformedArtifactError(
                    f"Regression {self.run_id}: scaling vectors do not match {n} features"
                )
            if any(s <= 0 for s in self.feature_stds):
                raise MalformedArtifactError(f"Regression {self.run_id} has non-positive stds")
            if self.sigma is None or not self.sigma > 0:
                raise MalformedArtifactError(f"Regression {self.run_id} needs a positive sigma")

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict."""
        return {
            "run_id": self.run_id,
            "sport": self.sport,
            "market": self.market,
            "model_type": self.model_type,
            "feature_names": list(self.feature_names),
            "weights": [float(w) for w in self.weights],
            "seasons": [int(s) for s in self.seasons],
            "created_at": self.created_at,
            "calibration": self.calibration.to_dict() if self.calibration else None,
            "feature_means": [float(v) for v in self.feature_means],
            "feature_stds": [float(v) for v in self.feature_stds],
            "bias": float(self.bias),
            "sigma": float(self.sigma) if self.sigma is not None else None,
            "components": [c.to_dict() for c in self.components],
            "blend_weights": [float(w) for w in self.blend_weights],
            "metrics": _to_python_type(self.metrics),
            "n_train": int(self.n_train),
            "n_validation": int(self.n_validation),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ModelArtifact":
        """Create from dict and validate.

        Raises:
            MalformedArtifactError: If required keys are missing or values are invalid
        """
        try:
            calibration = data.get("calibration")
            artifact = cls(
                run_id=data["run_id"],
                sport=data["sport"],
                market=data["market"],
                model_type=data["model_type"],
                feature_names=list(data["feature_names"]),
                weights=[float(w) for w in data["weights"]],
                seasons=[int(s) for s in data.get("seasons", [])],
                created_at=data.get("created_at", ""),
                calibration=CalibrationCurve.from_dict(calibration) if calibration else None,
                feature_means=[float(v) for v in data.get("feature_means", [])],
                feature_stds=[float(v) for v in data.get("feature_stds", [])],
                bias=float(data.get("bias", 0.0)),
                sigma=float(data["sigma"]) if data.get("sigma") is not None else None,
                components=[cls.from_dict(c) for c in data.get("components", [])],
                blend_weights=[float(w) for w in data.get("blend_weights", [])],
                metrics=data.get("metrics", {}),
                n_train=int(data.get("n_train", 0)),
                n_validation=int(data.get("n_validation", 0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedArtifactError(f"Cannot parse model artifact: {e}") from e
        artifact.validate()
        return artifact


def generate_run_id() -> str:
    """Timestamp plus random suffix; unique across concurrent trainers."""
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"{timestamp}_{secrets.token_hex(3)}"


class ArtifactStore:
    """Versioned storage of model artifacts with a run registry.

    Args:
        artifact_dir: Root directory for artifact versions
        registry: GameStore holding model_runs/model_pointers. Without one,
            the newest version directory is treated as current.
    """

    def __init__(self, artifact_dir: str | Path, registry=None):
        self.artifact_dir = Path(artifact_dir)
        self.artifact_dir.mkdir(parents=True, exist_ok=True)
        self.registry = registry

    def artifact_path(self, sport: str, market: str, run_id: str) -> Path:
        return self.artifact_dir / sport / market / run_id / ARTIFACT_FILENAME

    def save(
        self,
        artifact: ModelArtifact,
        config: Optional[dict] = None,
        started_at: Optional[str] = None,
        make_current: bool = True,
    ) -> Path:
        """Write a new immutable version and register it.

        Returns:
            Path to saved model.json

        Raises:
            FileExistsError: If this run id was already written
        """
        artifact.validate()
        path = self.artifact_path(artifact.sport, artifact.market, artifact.run_id)
        if path.exists():
            raise FileExistsError(
                f"Artifact already exists: {path}. "
                "Artifacts are immutable - train a new version instead."
            )
        path.parent.mkdir(parents=True, exist_ok=False)

        with open(path, "w") as f:
            json.dump(artifact.to_dict(), f, indent=2)

        if self.registry is not None:
            self.registry.insert_model_run(
                run_id=artifact.run_id,
                sport=artifact.sport,
                market=artifact.market,
                seasons=artifact.seasons,
                config=_to_python_type(config or {}),
                started_at=started_at or artifact.created_at,
                finished_at=datetime.now().isoformat(),
                metrics=_to_python_type(artifact.metrics),
                artifacts_path=str(path),
                make_current=make_current,
            )

        logger.info(f"Saved model artifact: {path}")
        return path

    def load(self, sport: str, market: str, run_id: str) -> ModelArtifact:
        """Load and validate one version.

        Raises:
            MissingArtifactError: No such version
            MalformedArtifactError: Unparseable or inconsistent contents
        """
        path = self.artifact_path(sport, market, run_id)
        if not path.exists():
            raise MissingArtifactError(f"No {sport}/{market} model with run id {run_id}")

        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise MalformedArtifactError(f"Cannot read artifact {path}: {e}") from e
        if not isinstance(data, dict):
            raise MalformedArtifactError(f"Artifact {path} is not a JSON object")

        artifact = ModelArtifact.from_dict(data)
        if artifact.sport != sport or artifact.market != market:
            raise MalformedArtifactError(
                f"Artifact {path} is for {artifact.sport}/{artifact.market}, expected {sport}/{market}"
            )
        logger.debug(f"Loaded model artifact: {sport}/{market}/{run_id}")
        return artifact

    def list_versions(self, sport: str, market: str) -> list[str]:
        """Run ids with a written artifact, newest first."""
        market_dir = self.artifact_dir / sport / market
        if not market_dir.exists():
            return []
        return sorted(
            (p.name for p in market_dir.iterdir() if (p / ARTIFACT_FILENAME).exists()),
            reverse=True,
        )

    def current_run_id(self, sport: str, market: str) -> Optional[str]:
        if self.registry is not None:
            return self.registry.get_current_run_id(sport, market)
        versions = self.list_versions(sport, market)
        return versions[0] if versions else None

    def resolve(self, sport: str, market: str, run_id: Optional[str] = None) -> ModelArtifact:
        """Load the pinned version, or the current one when run_id is None.

        Raises:
            MissingArtifactError: Nothing trained (or pinned id not found)
            MalformedArtifactError: Resolved version fails validation
        """
        if run_id is None:
            run_id = self.current_run_id(sport, market)
            if run_id is None:
                raise MissingArtifactError(f"No trained {sport}/{market} model")
        return self.load(sport, market, run_id)


def _to_python_type(val):
    """Convert numpy types to Python native types for JSON serialization."""
    import numpy as np
    if isinstance(val, np.integer):
        return int(val)
    if isinstance(val, np.floating):
        return float(val)
    if isinstance(val, np.ndarray):
        return val.tolist()
    if isinstance(val, dict):
        return {str(k): _to_python_type(v) for k, v in val.items()}
    if isinstance(val, (list, tuple)):
        return [_to_python_type(v) for v in val]
    return val
