"""Error taxonomy for the modeling engine.

Run-level failures (missing artifact, zero data, failed fetch) are converted
into "unavailable" results by the Predictor and skipped reports by the
Backtester; callers fall back to market-only probabilities.
"""


class ModelingError(Exception):
    """Base class for modeling engine errors."""

    pass


class MissingArtifactError(ModelingError):
    """Raised when no trained model exists for the requested sport/market/run."""

    pass


class MalformedArtifactError(MissingArtifactError):
    """Raised when an artifact fails to parse or its shape is inconsistent.

    Subclasses MissingArtifactError so that callers treat it as missing.
    """

    pass


class NoDataError(ModelingError):
    """Raised when a request matches zero games, odds or training rows."""

    pass


class ExternalFetchError(ModelingError):
    """Raised when a schedule/odds provider call fails or times out."""

    pass


class RunCancelledError(ModelingError):
    """Raised when a run is cancelled while computing features."""

    pass


# Skip reasons (filters, not errors)
INSUFFICIENT_HISTORY = "insufficient_history"
MISSING_FEATURES = "missing_features"
MISSING_ODDS = "missing_odds"
FETCH_FAILED = "fetch_failed"
