"""Tests for the Predictor.

Uses an in-memory store seeded with settled history and a fake provider.
"""

import json
import threading

import pytest
from scipy.special import expit

from config.settings import Settings
from src.api.provider import OddsQuote, ScheduledEvent, ScheduleOddsProvider
from src.data.store import GameStore
from src.modeling.artifacts import ArtifactStore, ModelArtifact
from src.modeling.errors import (
    FETCH_FAILED,
    INSUFFICIENT_HISTORY,
    MISSING_ODDS,
    ExternalFetchError,
    RunCancelledError,
)
from src.modeling.predictor import STATUS_OK, STATUS_UNAVAILABLE, Predictor

TODAY = "20241110"


class FakeProvider(ScheduleOddsProvider):
    sport = "nba"

    def __init__(self, events=None, odds=None, fail_events=False, fail_odds=(), bad_odds=()):
        self.events = events or []
        self.odds = odds or {}
        self.fail_events = fail_events
        self.fail_odds = set(fail_odds)
        self.bad_odds = set(bad_odds)

    def fetch_events(self, date):
        if self.fail_events:
            raise ExternalFetchError("timed out")
        return self.events

    def fetch_odds(self, event_id):
        if event_id in self.fail_odds:
            raise ExternalFetchError("timed out")
        if event_id in self.bad_odds:
            return [OddsQuote(market="h2h", provider="fake", timestamp="2024-11-10T12:00Z")]
        return self.odds.get(event_id, [])


def _event(event_id, date, home, away, home_score=None, away_score=None):
    return ScheduledEvent(
        event_id=event_id, date=date,
        home_team_id=home, home_team_name=home, away_team_id=away, away_team_name=away,
        home_score=home_score, away_score=away_score,
        status="final" if home_score is not None else "scheduled",
    )


def _today_events():
    return [
        _event("today1", "2024-11-10T19:00Z", "A", "B"),
        _event("today2", "2024-11-10T21:00Z", "C", "D"),  # C and D have no history
    ]


@pytest.fixture
def store():
    with GameStore(":memory:") as s:
        for day in range(1, 7):
            s.upsert_event("nba", 2024, _event(
                f"hist{day}", f"2024-11-0{day}T19:00Z", "A", "B",
                home_score=100 + day, away_score=95,
            ))
        yield s


@pytest.fixture
def artifact_store(tmp_path, store):
    return ArtifactStore(tmp_path / "models", registry=store)


def _classifier(market="moneyline", weight=0.2, run_id="20241101_000000_aaaaaa"):
    return ModelArtifact(
        run_id=run_id, sport="nba", market=market, model_type="classifier",
        feature_names=["home_advantage"], weights=[weight], seasons=[2024],
    )


def _predictor(provider, store, artifact_store):
    return Predictor(provider, store, artifact_store, Settings())


class TestUnavailable:
    def test_no_artifact(self, store, artifact_store):
        result = _predictor(FakeProvider(_today_events()), store, artifact_store).predict(
            "nba", "moneyline", TODAY
        )
        assert result.status == STATUS_UNAVAILABLE
        assert result.probabilities == {}
        assert result.reason.startswith("no artifact")

    def test_malformed_artifact(self, store, artifact_store):
        data = _classifier().to_dict()
        data["weights"] = [0.2, 0.3]
        path = artifact_store.artifact_path("nba", "moneyline", "broken")
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps(data))

        result = _predictor(FakeProvider(_today_events()), store, artifact_store).predict(
            "nba", "moneyline", TODAY, run_id="broken"
        )
        assert result.status == STATUS_UNAVAILABLE
        assert result.reason.startswith("malformed artifact")

    def test_fetch_failure(self, store, artifact_store):
        artifact_store.save(_classifier())
        result = _predictor(FakeProvider(fail_events=True), store, artifact_store).predict(
            "nba", "moneyline", TODAY
        )
        assert result.status == STATUS_UNAVAILABLE
        assert "fetch failed" in result.reason

    def test_no_games(self, store, artifact_store):
        artifact_store.save(_classifier())
        result = _predictor(FakeProvider([]), store, artifact_store).predict("nba", "moneyline", TODAY)
        assert result.status == STATUS_UNAVAILABLE


class TestScoring:
    def test_moneyline(self, store, artifact_store):
        artifact_store.save(_classifier())
        result = _predictor(FakeProvider(_today_events()), store, artifact_store).predict(
            "nba", "moneyline", TODAY
        )
        assert result.status == STATUS_OK
        assert result.probabilities["today1"] == pytest.approx(expit(0.2))
        assert result.skipped == {"today2": INSUFFICIENT_HISTORY}
        assert result.coverage == "1/2 games scored"

    def test_schedule_is_stored(self, store, artifact_store):
        artifact_store.save(_classifier())
        _predictor(FakeProvider(_today_events()), store, artifact_store).predict("nba", "moneyline", TODAY)
        assert sorted(store.games_on_date("nba", TODAY)["event_id"]) == ["today1", "today2"]

    def test_pinned_version(self, store, artifact_store):
        artifact_store.save(_classifier(weight=0.2, run_id="20241101_000000_aaaaaa"))
        artifact_store.save(_classifier(weight=-1.0, run_id="20241102_000000_bbbbbb"))
        predictor = _predictor(FakeProvider(_today_events()), store, artifact_store)

        current = predictor.predict("nba", "moneyline", TODAY)
        pinned = predictor.predict("nba", "moneyline", TODAY, run_id="20241101_000000_aaaaaa")
        assert current.probabilities["today1"] == pytest.approx(expit(-1.0))
        assert pinned.probabilities["today1"] == pytest.approx(expit(0.2))

    def test_spread_is_clipped(self, store, artifact_store):
        artifact_store.save(_classifier(market="spread", weight=10.0))
        result = _predictor(FakeProvider(_today_events()), store, artifact_store).predict(
            "nba", "spread", TODAY
        )
        assert result.probabilities["today1"] == pytest.approx(0.95)

    def test_total_over_probability(self, store, artifact_store):
        """Predicted 145, sigma 10, line 150 -> P(over) ~ 0.3085."""
        artifact_store.save(ModelArtifact(
            run_id="20241101_000000_cccccc", sport="nba", market="total", model_type="regression",
            feature_names=["home_advantage", "total_line"], weights=[0.0, 0.0], seasons=[2024],
            feature_means=[1.0, 0.0], feature_stds=[1.0, 1.0], bias=145.0, sigma=10.0,
        ))
        odds = {"today1": [OddsQuote(
            market="total", provider="fake", timestamp="2024-11-10T12:00Z",
            line=150.0, price_over=-110, price_under=-110,
        )]}
        result = _predictor(FakeProvider(_today_events(), odds), store, artifact_store).predict(
            "nba", "total", TODAY
        )
        assert result.probabilities["today1"] == pytest.approx(0.3085, abs=1e-4)

    def test_total_without_line_is_skipped(self, store, artifact_store):
        artifact_store.save(ModelArtifact(
            run_id="20241101_000000_cccccc", sport="nba", market="total", model_type="regression",
            feature_names=["home_advantage", "total_line"], weights=[0.0, 0.0], seasons=[2024],
            feature_means=[1.0, 0.0], feature_stds=[1.0, 1.0], bias=145.0, sigma=10.0,
        ))
        result = _predictor(FakeProvider(_today_events()), store, artifact_store).predict(
            "nba", "total", TODAY
        )
        assert result.status == STATUS_UNAVAILABLE
        assert result.skipped["today1"] == MISSING_ODDS

    def test_odds_failure_is_per_game(self, store, artifact_store):
        artifact_store.save(_classifier())
        provider = FakeProvider(_today_events(), fail_odds=["today2"])
        result = _predictor(provider, store, artifact_store).predict("nba", "moneyline", TODAY)
        assert result.status == STATUS_OK
        assert result.probabilities["today1"] == pytest.approx(expit(0.2))
        assert result.skipped == {"today2": FETCH_FAILED}
        assert result.coverage == "1/2 games scored"

    def test_malformed_odds_payload_skips_only_that_game(self, store, artifact_store):
        artifact_store.save(_classifier())
        provider = FakeProvider(_today_events(), bad_odds=["today2"])
        result = _predictor(provider, store, artifact_store).predict("nba", "moneyline", TODAY)
        assert result.status == STATUS_OK
        assert "today1" in result.probabilities
        assert result.skipped == {"today2": FETCH_FAILED}

    def test_every_event_failing_is_unavailable(self, store, artifact_store):
        artifact_store.save(_classifier())
        provider = FakeProvider(_today_events(), fail_odds=["today1", "today2"])
        result = _predictor(provider, store, artifact_store).predict("nba", "moneyline", TODAY)
        assert result.status == STATUS_UNAVAILABLE
        assert result.coverage == "0/2 games scored"


class TestCancellation:
    def test_cancel_event_reaches_feature_computation(self, store, artifact_store):
        artifact_store.save(_classifier())
        cancel = threading.Event()
        cancel.set()
        predictor = _predictor(FakeProvider(_today_events()), store, artifact_store)
        with pytest.raises(RunCancelledError):
            predictor.predict("nba", "moneyline", TODAY, cancel_event=cancel)
