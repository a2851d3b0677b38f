"""Tests for the Backtester and BacktestReportStore.

A constant-probability model (single home_advantage weight) makes every
bin, bet and profit predictable by hand.
"""

import pytest
from scipy.special import expit
from scipy.stats import norm

from config.settings import Settings
from src.api.provider import OddsQuote, ScheduledEvent
from src.data.store import GameStore
from src.modeling.artifacts import ArtifactStore, ModelArtifact
from src.modeling.backtest import (
    Backtester,
    BacktestReport,
    BacktestReportStore,
    _market_outcome,
    divergence_bucket,
)
from src.modeling.features import FeatureVector

WEIGHT = 0.4  # expit(0.4) = 0.5987 -> "50-60%" bin, always bet home


def _home_wins(i):
    return i % 3 != 0


def _seed_season(store, n_games=20, home_price=-150, away_price=130, tie_at=None):
    """Two teams, one game a day, alternating home side."""
    for i in range(1, n_games + 1):
        home, away = ("A", "B") if i % 2 else ("B", "A")
        if i == tie_at:
            home_score, away_score = 100, 100
        else:
            home_score, away_score = (105, 100) if _home_wins(i) else (98, 104)
        day = f"2024-11-{i:02d}T19:00Z"
        game_id = store.upsert_event("nba", 2024, ScheduledEvent(
            event_id=f"g{i}", date=day,
            home_team_id=home, home_team_name=home, away_team_id=away, away_team_name=away,
            home_score=home_score, away_score=away_score, status="final",
        ))
        store.record_odds(game_id, OddsQuote(
            market="moneyline", provider="p", timestamp=f"2024-11-{i:02d}T10:00Z",
            price_home=home_price, price_away=away_price,
        ))
        # A later snapshot the backtest must ignore
        store.record_odds(game_id, OddsQuote(
            market="moneyline", provider="p", timestamp=f"2024-11-{i:02d}T18:00Z",
            price_home=-400, price_away=300,
        ))


@pytest.fixture
def store():
    with GameStore(":memory:") as s:
        yield s


@pytest.fixture
def artifact_store(tmp_path, store):
    artifacts = ArtifactStore(tmp_path / "models", registry=store)
    artifacts.save(ModelArtifact(
        run_id="20241201_000000_aaaaaa", sport="nba", market="moneyline",
        model_type="classifier", feature_names=["home_advantage"], weights=[WEIGHT],
        seasons=[2024],
    ))
    return artifacts


def _backtester(store, artifact_store):
    return Backtester(store, artifact_store, Settings())


class TestBacktest:
    def test_coverage_conservation(self, store, artifact_store):
        _seed_season(store)
        report = _backtester(store, artifact_store).run("nba", "moneyline", [2024])

        assert report.total_games == 20
        assert report.matched_games == 15
        assert sum(b.count for b in report.calibration) == report.matched_games
        assert report.coverage == "15/20 games matched features+odds"
        assert report.run_id == "20241201_000000_aaaaaa"

    def test_single_bin(self, store, artifact_store):
        _seed_season(store)
        report = _backtester(store, artifact_store).run("nba", "moneyline", [2024])

        assert [b.label for b in report.calibration] == ["50-60%"]
        wins = sum(_home_wins(i) for i in range(6, 21))
        assert report.calibration[0].predicted == pytest.approx(expit(WEIGHT))
        assert report.calibration[0].actual == pytest.approx(wins / 15)
        assert report.overall_ece == pytest.approx(abs(expit(WEIGHT) - wins / 15))

    def test_roi_arithmetic(self, store, artifact_store):
        """Earliest price -150 pays 100/150 * 10 per win; losses cost 10."""
        _seed_season(store)
        report = _backtester(store, artifact_store).run("nba", "moneyline", [2024])

        wins = sum(_home_wins(i) for i in range(6, 21))
        expected_profit = wins * (100 / 150) * 10 - (15 - wins) * 10
        assert report.total_bets == 15
        assert report.total_profit == pytest.approx(expected_profit)
        assert report.overall_roi == pytest.approx(expected_profit / (15 * 10) * 100)
        assert report.calibration[0].roi == pytest.approx(report.overall_roi)

    def test_small_sample_warning(self, store, artifact_store):
        _seed_season(store)
        report = _backtester(store, artifact_store).run("nba", "moneyline", [2024])
        assert report.coverage_warning
        assert not report.skipped
        assert report.warnings

    def test_ties_excluded_as_pushes(self, store, artifact_store):
        _seed_season(store, tie_at=10)
        report = _backtester(store, artifact_store).run("nba", "moneyline", [2024])
        assert report.pushes == 1
        assert report.matched_games == 14
        assert sum(b.count for b in report.calibration) == 14

    def test_divergence_buckets(self, store, artifact_store):
        _seed_season(store)
        report = _backtester(store, artifact_store).run("nba", "moneyline", [2024])
        # |0.5987 - 0.5798| < 0.05
        assert report.divergence["low"].count == 15
        assert report.divergence["moderate"].count == 0
        assert report.divergence["high"].count == 0

    def test_underdogs(self, store, artifact_store):
        """Home at +250 is always an underdog the model likes more than the market."""
        _seed_season(store, home_price=250, away_price=-300)
        report = _backtester(store, artifact_store).run("nba", "moneyline", [2024])

        wins = sum(_home_wins(i) for i in range(6, 21))
        plus_200 = report.underdogs[0]
        assert plus_200.threshold == 200
        assert plus_200.games == 15
        assert plus_200.model_favored == 15
        assert plus_200.wins == wins
        assert plus_200.profit == pytest.approx(wins * 25.0 - (15 - wins) * 10.0)
        assert report.underdogs[1].games == 0
        # 0.5987 vs market 0.2759
        assert report.divergence["high"].count == 15


def _seed_lines(store, market, scores, early, late):
    """One game a day with an early and a late snapshot for `market`.

    scores(i) -> (home_score, away_score); early/late are OddsQuote kwargs.
    """
    for i in range(1, 21):
        home, away = ("A", "B") if i % 2 else ("B", "A")
        home_score, away_score = scores(i)
        game_id = store.upsert_event("nba", 2024, ScheduledEvent(
            event_id=f"g{i}", date=f"2024-11-{i:02d}T19:00Z",
            home_team_id=home, home_team_name=home, away_team_id=away, away_team_name=away,
            home_score=home_score, away_score=away_score, status="final",
        ))
        store.record_odds(game_id, OddsQuote(
            market=market, provider="p", timestamp=f"2024-11-{i:02d}T10:00Z", **early
        ))
        store.record_odds(game_id, OddsQuote(
            market=market, provider="p", timestamp=f"2024-11-{i:02d}T18:00Z", **late
        ))


def _spread_scores(i):
    # Home margins 3 (push on -3), 7 (cover), 1 and -4 (no cover)
    return 100 + {0: 3, 1: 7, 2: 1, 3: -4}[i % 4], 100


def _total_scores(i):
    # Totals 205 (push on 205), 210 (over), 198 (under)
    return {0: (103, 102), 1: (106, 104), 2: (100, 98)}[i % 3]


class TestSpreadBacktest:
    """Always backs the home side: weight 10 is clipped to 0.95."""

    @pytest.fixture
    def report(self, store, tmp_path):
        artifacts = ArtifactStore(tmp_path / "models", registry=store)
        artifacts.save(ModelArtifact(
            run_id="20241201_000000_bbbbbb", sport="nba", market="spread",
            model_type="classifier", feature_names=["home_advantage"], weights=[10.0],
            seasons=[2024],
        ))
        _seed_lines(
            store, "spread", _spread_scores,
            early={"line": -3.0, "price_home": -110, "price_away": -110},
            # Would flip every cover if used
            late={"line": -10.0, "price_home": -200, "price_away": 170},
        )
        return Backtester(store, artifacts, Settings()).run("nba", "spread", [2024])

    def test_pushes_on_exact_line_excluded(self, report):
        # Games 6..20 with i % 4 == 0: 8, 12, 16, 20
        assert report.pushes == 4
        assert report.matched_games == 11
        assert report.coverage == "11/20 games matched features+odds"

    def test_clipped_probability_bin(self, report):
        assert [b.label for b in report.calibration] == ["90-100%"]
        assert report.calibration[0].predicted == pytest.approx(0.95)
        assert report.calibration[0].actual == pytest.approx(3 / 11)

    def test_profit_at_earliest_home_price(self, report):
        expected = 3 * (100 / 110) * 10 - 8 * 10
        assert report.total_bets == 11
        assert report.total_profit == pytest.approx(expected)
        assert report.overall_roi == pytest.approx(expected / 110 * 100)


class TestTotalBacktest:
    """Predicted total 200 against an earliest line of 205 backs the under."""

    @pytest.fixture
    def report(self, store, tmp_path):
        artifacts = ArtifactStore(tmp_path / "models", registry=store)
        artifacts.save(ModelArtifact(
            run_id="20241201_000000_cccccc", sport="nba", market="total",
            model_type="regression", feature_names=["home_advantage", "total_line"],
            weights=[0.0, 0.0], seasons=[2024],
            feature_means=[1.0, 0.0], feature_stds=[1.0, 1.0], bias=200.0, sigma=10.0,
        ))
        _seed_lines(
            store, "total", _total_scores,
            early={"line": 205.0, "price_over": -105, "price_under": -115},
            late={"line": 190.0, "price_over": -300, "price_under": 250},
        )
        return Backtester(store, artifacts, Settings()).run("nba", "total", [2024])

    def test_pushes_on_exact_total_excluded(self, report):
        # Games 6..20 with i % 3 == 0: 6, 9, 12, 15, 18
        assert report.pushes == 5
        assert report.matched_games == 10

    def test_over_probability_bin(self, report):
        p_over = norm.sf((205.0 - 200.0) / 10.0)
        assert [b.label for b in report.calibration] == ["30-40%"]
        assert report.calibration[0].predicted == pytest.approx(p_over)
        assert report.calibration[0].actual == pytest.approx(0.5)

    def test_profit_at_earliest_under_price(self, report):
        expected = 5 * (100 / 115) * 10 - 5 * 10
        assert report.total_bets == 10
        assert report.total_profit == pytest.approx(expected)


def _vector(home_score, away_score, odds):
    return FeatureVector(
        game_id=1, date="2024-11-10", season=2024, home_team_id=1, away_team_id=2,
        values={}, home_score=home_score, away_score=away_score, odds=odds,
    )


class TestMarketOutcome:
    @pytest.mark.parametrize("home_score,outcome", [(107, 1), (103, None), (101, 0), (96, 0)])
    def test_spread_uses_margin_plus_line(self, home_score, outcome):
        odds = {"spread": {"line": -3.0, "price_home": -110, "price_away": -110}}
        settled = _market_outcome(_vector(home_score, 100, odds), "spread")
        assert settled["outcome"] == outcome
        assert settled["market_prob"] == pytest.approx(0.5)

    def test_spread_underdog_covers_by_losing_close(self):
        odds = {"spread": {"line": 4.5, "price_home": -110, "price_away": -110}}
        assert _market_outcome(_vector(98, 100, odds), "spread")["outcome"] == 1

    @pytest.mark.parametrize("scores,outcome", [((110, 100), 1), ((105, 100), None), ((100, 98), 0)])
    def test_total_uses_points_minus_line(self, scores, outcome):
        odds = {"total": {"line": 205.0, "price_over": -105, "price_under": -115}}
        settled = _market_outcome(_vector(*scores, odds), "total")
        assert settled["outcome"] == outcome
        assert (settled["price_a"], settled["price_b"]) == (-105, -115)

    def test_missing_line_is_unusable(self):
        odds = {"total": {"line": None, "price_over": -110, "price_under": -110}}
        assert _market_outcome(_vector(110, 100, odds), "total") is None

    def test_missing_market_is_unusable(self):
        assert _market_outcome(_vector(110, 100, {}), "spread") is None


class TestEmptyReports:
    def test_no_games(self, store, artifact_store):
        report = _backtester(store, artifact_store).run("nba", "moneyline", [2030])
        assert report.skipped
        assert report.coverage_warning
        assert report.calibration == []
        assert report.overall_roi == 0.0
        assert report.coverage == "0/0 games matched features+odds"

    def test_no_artifact(self, store, artifact_store):
        _seed_season(store)
        report = _backtester(store, artifact_store).run("nba", "spread", [2024])
        assert report.skipped
        assert report.matched_games == 0

    def test_no_odds(self, store, artifact_store):
        for i in range(1, 11):
            store.upsert_event("nba", 2024, ScheduledEvent(
                event_id=f"g{i}", date=f"2024-11-{i:02d}T19:00Z",
                home_team_id="A", home_team_name="A", away_team_id="B", away_team_name="B",
                home_score=100, away_score=90, status="final",
            ))
        report = _backtester(store, artifact_store).run("nba", "moneyline", [2024])
        assert report.skipped
        assert report.games_with_predictions == 5
        assert report.coverage == "0/10 games matched features+odds"


class TestDivergenceBucket:
    @pytest.mark.parametrize("value,bucket", [
        (0.0, "low"), (0.0499, "low"), (0.05, "moderate"), (0.1499, "moderate"), (0.15, "high"),
    ])
    def test_edges(self, value, bucket):
        assert divergence_bucket(value) == bucket


class TestReportStore:
    def _report(self, seasons, roi, ece, skipped=False):
        return BacktestReport(
            sport="nba", market="moneyline", seasons=seasons,
            overall_roi=roi, overall_ece=ece, skipped=skipped,
        )

    def test_file_naming(self, tmp_path):
        reports = BacktestReportStore(tmp_path)
        path = reports.save(self._report([2024, 2023], 1.0, 0.05))
        assert path.name == "nba_moneyline_2023-2024.json"

    def test_round_trip(self, tmp_path, store, artifact_store):
        _seed_season(store)
        report = _backtester(store, artifact_store).run("nba", "moneyline", [2024])
        reports = BacktestReportStore(tmp_path)
        reports.save(report)
        loaded = reports.load("nba", "moneyline", [2024])
        assert loaded == report

    def test_load_missing(self, tmp_path):
        assert BacktestReportStore(tmp_path).load("nba", "moneyline", [2024]) is None

    def test_list_skips_unreadable(self, tmp_path):
        reports = BacktestReportStore(tmp_path)
        reports.save(self._report([2024], 1.0, 0.05))
        (tmp_path / "nba_total_2024.json").write_text("{broken")
        assert len(reports.list_for_sport("nba")) == 1

    def test_best_config_roi_then_ece(self, tmp_path):
        reports = BacktestReportStore(tmp_path)
        reports.save(self._report([2023, 2024, 2025], 5.0, 0.08))
        reports.save(self._report([2024, 2025], 5.3, 0.03))
        reports.save(self._report([2025], 2.0, 0.01))
        reports.save(self._report([2022], 9.0, 0.01, skipped=True))

        best = reports.find_best_config("nba", "moneyline")
        assert best.seasons == [2024, 2025]

    def test_best_config_clear_roi_winner(self, tmp_path):
        reports = BacktestReportStore(tmp_path)
        reports.save(self._report([2024], 7.0, 0.09))
        reports.save(self._report([2025], 5.0, 0.01))
        assert reports.find_best_config("nba", "moneyline").seasons == [2024]

    def test_best_config_none(self, tmp_path):
        assert BacktestReportStore(tmp_path).find_best_config("nba", "total") is None

    def test_best_config_is_order_independent(self, tmp_path):
        """6.0 ~ 5.6 and 5.6 ~ 5.2, but 5.2 is too far below the best ROI."""
        reports = BacktestReportStore(tmp_path)
        reports.save(self._report([2025], 6.0, 0.09))
        reports.save(self._report([2024], 5.6, 0.05))
        reports.save(self._report([2023], 5.2, 0.01))
        assert reports.find_best_config("nba", "moneyline").seasons == [2024]
