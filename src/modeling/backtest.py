"""Retrospective calibration and ROI analysis of a trained model.

Replays the shared scoring path over settled games using the EARLIEST odds
snapshot per (game, market), then bins predictions by decile and settles a
one-unit bet on the model's side of every matched game.

Pushes (ties, exact spread covers, totals landing on the line) are excluded
from the matched set and counted separately.
"""

import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

import pandas as pd

from config.settings import Settings, get_settings
from src.modeling.artifacts import ArtifactStore
from src.modeling.errors import MalformedArtifactError, MissingArtifactError
from src.modeling.features import FeatureVector, compute_features
from src.modeling.metrics import N_BINS, decile_index, expected_calibration_error, roi_percent
from src.modeling.odds import settle_unit_bet, vig_free_first
from src.modeling.scoring import score_vectors

logger = logging.getLogger(__name__)

BIN_LABELS = [f"{i * 10}-{(i + 1) * 10}%" for i in range(N_BINS)]
DIVERGENCE_BUCKETS = ("low", "moderate", "high")
ROI_TIE_MARGIN = 0.5  # ROI points; closer than this falls back to ECE


@dataclass
class CalibrationBin:
    """One decile of model probability."""

    label: str
    predicted: float  # Mean model probability
    actual: float  # Observed rate of the modeled outcome
    count: int
    bets: int
    profit: float
    roi: float


@dataclass
class BucketStats:
    """Bet results for a subset of matched games."""

    count: int = 0
    wins: int = 0
    win_rate: float = 0.0
    profit: float = 0.0
    roi: float = 0.0


@dataclass
class UnderdogStats:
    """Model-backed underdogs at or beyond an American price threshold."""

    threshold: int
    games: int = 0  # Games with a side priced >= threshold
    model_favored: int = 0  # Of those, model priced the underdog above market
    wins: int = 0
    profit: float = 0.0
    roi: float = 0.0


@dataclass
class BacktestReport:
    """Backtest results for one (sport, market, seasons) configuration."""

    sport: str
    market: str
    seasons: list[int]
    run_id: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    total_games: int = 0
    games_with_predictions: int = 0
    games_with_odds: int = 0
    matched_games: int = 0
    pushes: int = 0

    calibration: list[CalibrationBin] = field(default_factory=list)
    overall_ece: float = 0.0
    overall_roi: float = 0.0
    total_profit: float = 0.0
    total_bets: int = 0

    underdogs: list[UnderdogStats] = field(default_factory=list)
    divergence: dict[str, BucketStats] = field(default_factory=dict)

    coverage: str = ""
    skipped: bool = False
    coverage_warning: bool = False
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict."""
        data = asdict(self)
        data["seasons"] = sorted(int(s) for s in self.seasons)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "BacktestReport":
        data = dict(data)
        data["calibration"] = [CalibrationBin(**b) for b in data.get("calibration", [])]
        data["underdogs"] = [UnderdogStats(**u) for u in data.get("underdogs", [])]
        data["divergence"] = {k: BucketStats(**v) for k, v in data.get("divergence", {}).items()}
        return cls(**data)


def divergence_bucket(divergence: float, moderate: float = 0.05, high: float = 0.15) -> str:
    """Bucket |model - market|: low below `moderate`, high at or above `high`."""
    if divergence < moderate:
        return "low"
    if divergence < high:
        return "moderate"
    return "high"


def _market_outcome(vector: FeatureVector, market: str) -> Optional[dict]:
    """Earliest prices and the modeled outcome for a settled game.

    Returns None if the snapshot is unusable. outcome is 1/0, or None for a push.
    """
    snapshot = vector.odds.get(market)
    if snapshot is None:
        return None

    if market == "total":
        price_a, price_b = snapshot.get("price_over"), snapshot.get("price_under")
    else:
        price_a, price_b = snapshot.get("price_home"), snapshot.get("price_away")
    market_prob = vig_free_first(price_a, price_b)
    if market_prob is None:
        return None

    line = snapshot.get("line")
    if market == "moneyline":
        diff = vector.margin
    elif market == "spread":
        if line is None:
            return None
        diff = vector.margin + line
    else:
        if line is None:
            return None
        diff = vector.total_points - line

    return {
        "price_a": price_a,
        "price_b": price_b,
        "market_prob": market_prob,
        "outcome": None if diff == 0 else (1 if diff > 0 else 0),
    }


def _bucket(rows: pd.DataFrame, unit_stake: float) -> BucketStats:
    count = len(rows)
    if count == 0:
        return BucketStats()
    wins = int(rows["won"].sum())
    profit = float(rows["profit"].sum())
    return BucketStats(
        count=count,
        wins=wins,
        win_rate=wins / count,
        profit=profit,
        roi=roi_percent(profit, count, unit_stake),
    )


class Backtester:
    """Replays a model over settled games.

    Args:
        store: GameStore with settled games and odds
        artifact_store: Resolves the model version to evaluate
        settings: Stake, thresholds and coverage settings
    """

    def __init__(self, store, artifact_store: ArtifactStore, settings: Optional[Settings] = None):
        self.store = store
        self.artifact_store = artifact_store
        self.settings = settings or get_settings()

    def run(
        self,
        sport: str,
        market: str,
        seasons: list[int],
        run_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BacktestReport:
        """Backtest a model version over seasons.

        Missing/malformed artifacts and empty seasons produce a skipped
        report instead of raising.
        """
        report = BacktestReport(sport=sport, market=market, seasons=sorted(seasons))

        try:
            artifact = self.artifact_store.resolve(sport, market, run_id)
        except (MissingArtifactError, MalformedArtifactError) as e:
            logger.warning(f"Skipping {sport}/{market} backtest: {e}")
            report.warnings.append(str(e))
            return self._finish(report, pd.DataFrame())
        report.run_id = artifact.run_id

        games = self.store.load_games(sport, seasons, settled_only=True)
        report.total_games = len(games)
        if games.empty:
            msg = f"No completed {sport} games for seasons {', '.join(map(str, sorted(seasons)))}"
            logger.warning(msg)
            report.warnings.append(msg)
            return self._finish(report, pd.DataFrame())

        odds = self.store.load_odds(games["id"].tolist())
        vectors = compute_features(
            games,
            odds,
            min_history_games=self.settings.min_history_games,
            odds_policy="earliest",
            cancel_event=cancel_event,
        )
        scored = score_vectors(
            artifact,
            vectors,
            spread_prob_min=self.settings.spread_prob_min,
            spread_prob_max=self.settings.spread_prob_max,
        )
        report.games_with_predictions = len(scored.probabilities)

        if not odds.empty:
            report.games_with_odds = int(odds.loc[odds["market"] == market, "game_id"].nunique())

        records = []
        for vector in vectors:
            p = scored.probabilities.get(vector.game_id)
            if p is None:
                continue
            settled = _market_outcome(vector, market)
            if settled is None:
                continue
            if settled["outcome"] is None:
                report.pushes += 1
                continue
            bet_a = p > 0.5
            won = settled["outcome"] == 1 if bet_a else settled["outcome"] == 0
            price = settled["price_a"] if bet_a else settled["price_b"]
            records.append({
                "game_id": vector.game_id,
                "p": p,
                "market_prob": settled["market_prob"],
                "outcome": settled["outcome"],
                "price_a": settled["price_a"],
                "price_b": settled["price_b"],
                "bet_a": bet_a,
                "won": won,
                "profit": settle_unit_bet(won, price, self.settings.unit_stake),
            })

        rows = pd.DataFrame(records)
        return self._finish(report, rows)

    def _finish(self, report: BacktestReport, rows: pd.DataFrame) -> BacktestReport:
        """Aggregate matched rows into bins, ROI and secondary breakdowns."""
        unit = self.settings.unit_stake
        report.matched_games = len(rows)
        report.coverage = f"{report.matched_games}/{report.total_games} games matched features+odds"

        if rows.empty:
            report.skipped = True
            report.coverage_warning = True
            logger.warning(f"{report.sport}/{report.market} backtest: {report.coverage}")
            return report

        rows = rows.copy()
        rows["bin"] = [decile_index(p) for p in rows["p"]]
        for b, group in rows.groupby("bin", sort=True):
            profit = float(group["profit"].sum())
            bets = len(group)
            report.calibration.append(CalibrationBin(
                label=BIN_LABELS[b],
                predicted=float(group["p"].mean()),
                actual=float(group["outcome"].mean()),
                count=len(group),
                bets=bets,
                profit=profit,
                roi=roi_percent(profit, bets, unit),
            ))

        report.overall_ece = expected_calibration_error(rows["p"].values, rows["outcome"].values)
        report.total_profit = float(rows["profit"].sum())
        report.total_bets = len(rows)
        report.overall_roi = roi_percent(report.total_profit, report.total_bets, unit)

        report.underdogs = [
            self._underdog_stats(rows, threshold) for threshold in self.settings.underdog_thresholds
        ]

        rows["divergence"] = (rows["p"] - rows["market_prob"]).abs()
        rows["bucket"] = [
            divergence_bucket(d, self.settings.divergence_moderate, self.settings.divergence_high)
            for d in rows["divergence"]
        ]
        report.divergence = {
            name: _bucket(rows[rows["bucket"] == name], unit) for name in DIVERGENCE_BUCKETS
        }

        if report.matched_games < self.settings.min_backtest_games:
            report.coverage_warning = True
            msg = (
                f"Only {report.matched_games} matched games "
                f"(minimum {self.settings.min_backtest_games}); results are noisy"
            )
            report.warnings.append(msg)
            logger.warning(msg)

        logger.info(
            f"{report.sport}/{report.market} {report.seasons}: {report.coverage}, "
            f"ECE {report.overall_ece * 100:.2f}%, ROI {report.overall_roi:+.2f}% "
            f"on {report.total_bets} bets"
        )
        return report

    def _underdog_stats(self, rows: pd.DataFrame, threshold: int) -> UnderdogStats:
        """Bet the underdog only when the model prices it above the market."""
        unit = self.settings.unit_stake
        stats = UnderdogStats(threshold=int(threshold))
        for row in rows.itertuples(index=False):
            a_dog = row.price_a >= threshold
            b_dog = row.price_b >= threshold
            if not (a_dog or b_dog):
                continue
            stats.games += 1
            if a_dog:
                if not row.p > row.market_prob:
                    continue
                won = row.outcome == 1
                price = row.price_a
            else:
                if not row.p < row.market_prob:
                    continue
                won = row.outcome == 0
                price = row.price_b
            stats.model_favored += 1
            stats.wins += int(won)
            stats.profit += settle_unit_bet(won, price, unit)
        stats.roi = roi_percent(stats.profit, stats.model_favored, unit)
        return stats


class BacktestReportStore:
    """One JSON report per {sport}_{market}_{seasons} configuration."""

    def __init__(self, backtest_dir: str | Path):
        self.backtest_dir = Path(backtest_dir)
        self.backtest_dir.mkdir(parents=True, exist_ok=True)

    def report_path(self, sport: str, market: str, seasons: list[int]) -> Path:
        seasons_str = "-".join(str(s) for s in sorted(seasons))
        return self.backtest_dir / f"{sport}_{market}_{seasons_str}.json"

    def save(self, report: BacktestReport) -> Path:
        """Write (or replace) the report for its configuration."""
        path = self.report_path(report.sport, report.market, report.seasons)
        with open(path, "w") as f:
            json.dump(report.to_dict(), f, indent=2)
        logger.info(f"Saved backtest results to {path.name}")
        return path

    def load(self, sport: str, market: str, seasons: list[int]) -> Optional[BacktestReport]:
        path = self.report_path(sport, market, seasons)
        if not path.exists():
            return None
        with open(path) as f:
            return BacktestReport.from_dict(json.load(f))

    def list_for_sport(self, sport: str) -> list[BacktestReport]:
        """All readable reports for a sport; unreadable files are logged and skipped."""
        reports = []
        for path in sorted(self.backtest_dir.glob(f"{sport}_*.json")):
            try:
                with open(path) as f:
                    report = BacktestReport.from_dict(json.load(f))
            except (OSError, json.JSONDecodeError, TypeError, KeyError) as e:
                logger.warning(f"Skipping unreadable backtest report {path.name}: {e}")
                continue
            if report.sport == sport:
                reports.append(report)
        return reports

    def find_best_config(self, sport: str, market: str) -> Optional[BacktestReport]:
        """Best non-skipped report for (sport, market).

        Among reports within half a point of the best ROI, the lowest ECE wins.
        """
        candidates = [
            r for r in self.list_for_sport(sport) if r.market == market and not r.skipped
        ]
        if not candidates:
            return None

        best_roi = max(r.overall_roi for r in candidates)
        contenders = [r for r in candidates if best_roi - r.overall_roi <= ROI_TIE_MARGIN]
        return min(contenders, key=lambda r: (r.overall_ece, -r.overall_roi))
