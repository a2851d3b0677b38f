"""Score an upcoming date's schedule with a trained artifact.

Run-level failures (no artifact, malformed artifact, provider failure, no
games) produce an "unavailable" result rather than an exception, so callers
can fall back to market-only probabilities.
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from typing import Optional

from config.settings import Settings, get_settings
from src.api.provider import ScheduleOddsProvider
from src.modeling.artifacts import ArtifactStore
from src.modeling.errors import (
    FETCH_FAILED,
    INSUFFICIENT_HISTORY,
    ExternalFetchError,
    MalformedArtifactError,
    MissingArtifactError,
)
from src.modeling.features import compute_features
from src.modeling.scoring import score_vectors

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_UNAVAILABLE = "unavailable"


@dataclass
class PredictionResult:
    """Per-event probabilities for one (sport, market, date).

    probabilities: event_id -> P(home win) / P(home cover) / P(over)
    skipped: event_id -> skip reason
    """

    status: str
    probabilities: dict[str, float] = field(default_factory=dict)
    reason: Optional[str] = None
    skipped: dict[str, str] = field(default_factory=dict)
    coverage: str = ""
    run_id: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.status == STATUS_OK


class Predictor:
    """Fetches a schedule, stores it, and scores it with a resolved artifact."""

    def __init__(
        self,
        provider: ScheduleOddsProvider,
        store,
        artifact_store: ArtifactStore,
        settings: Optional[Settings] = None,
    ):
        self.provider = provider
        self.store = store
        self.artifact_store = artifact_store
        self.settings = settings or get_settings()

    def predict(
        self,
        sport: str,
        market: str,
        date: str,
        run_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> PredictionResult:
        """Probabilities for every game on `date`.

        Args:
            sport: Sport key
            market: moneyline, spread or total
            date: YYYYMMDD or YYYY-MM-DD
            run_id: Pin an artifact version; None uses the current pointer
            cancel_event: Set to abandon feature computation (raises RunCancelledError)
        """
        try:
            artifact = self.artifact_store.resolve(sport, market, run_id)
        except MalformedArtifactError as e:
            logger.warning(f"Model for {sport}/{market} is malformed: {e}")
            return PredictionResult(status=STATUS_UNAVAILABLE, reason=f"malformed artifact: {e}")
        except MissingArtifactError as e:
            logger.warning(f"No model for {sport}/{market}: {e}")
            return PredictionResult(status=STATUS_UNAVAILABLE, reason=f"no artifact: {e}")

        try:
            events = self.provider.fetch_events(date)
        except (ExternalFetchError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Schedule fetch failed for {sport} {date}: {e}")
            return PredictionResult(
                status=STATUS_UNAVAILABLE, reason=f"fetch failed: {e}", run_id=artifact.run_id
            )

        if not events:
            return PredictionResult(
                status=STATUS_UNAVAILABLE,
                reason=f"no {sport} games on {date}",
                coverage="0/0 games scored",
                run_id=artifact.run_id,
            )

        season = artifact.latest_season
        event_ids: dict[int, str] = {}
        failed: dict[str, str] = {}
        for event in events:
            try:
                game_id = self.store.upsert_event(sport, season, event)
                quotes = self.provider.fetch_odds(event.event_id)
                for quote in quotes:
                    self.store.record_odds(game_id, quote)
            except (ExternalFetchError, sqlite3.Error, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping {sport} {event.event_id}: could not store event/odds: {e}")
                failed[event.event_id] = FETCH_FAILED
                continue
            event_ids[game_id] = event.event_id

        games = self.store.load_games(sport, [season])
        odds = self.store.load_odds(games["id"].tolist())
        vectors = compute_features(
            games,
            odds,
            min_history_games=self.settings.min_history_games,
            odds_policy="latest",
            cancel_event=cancel_event,
        )
        todays = [v for v in vectors if v.game_id in event_ids]

        scored = score_vectors(
            artifact,
            todays,
            spread_prob_min=self.settings.spread_prob_min,
            spread_prob_max=self.settings.spread_prob_max,
        )

        result = PredictionResult(status=STATUS_OK, run_id=artifact.run_id)
        with_vector = {v.game_id for v in todays}
        for game_id, event_id in event_ids.items():
            if game_id in scored.probabilities:
                result.probabilities[event_id] = scored.probabilities[game_id]
            elif game_id not in with_vector:
                result.skipped[event_id] = INSUFFICIENT_HISTORY
            else:
                result.skipped[event_id] = scored.skipped.get(game_id, INSUFFICIENT_HISTORY)

        for event_id, reason in result.skipped.items():
            logger.warning(f"Skipping {sport} {event_id}: {reason}")
        result.skipped.update(failed)

        result.coverage = f"{len(result.probabilities)}/{len(events)} games scored"
        if not result.probabilities:
            result.status = STATUS_UNAVAILABLE
            result.reason = "no games could be scored"
        logger.info(f"{sport}/{market} {date}: {result.coverage} with {artifact.run_id}")
        return result
