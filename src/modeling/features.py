"""Per-game feature computation from game and odds history.

Games are walked in chronological order, one calendar date at a time. Every
game on a date is computed from team histories as they stood before that
date; settled results are appended only after the whole date is done, so
same-day games never see each other.

Feature names are `{side}_{stat}_{window}` for side in (home, away),
window in (5, 10), plus `home_advantage` and the market features.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pandas as pd

from src.modeling.errors import MalformedArtifactError, RunCancelledError
from src.modeling.odds import vig_free_first

logger = logging.getLogger(__name__)

# Oldest -> newest
RECENCY_WEIGHTS_5 = [0.08, 0.12, 0.20, 0.25, 0.35]
RECENCY_WEIGHTS_10 = [0.03, 0.04, 0.05, 0.06, 0.07, 0.09, 0.11, 0.14, 0.18, 0.23]
WINDOWS = {5: RECENCY_WEIGHTS_5, 10: RECENCY_WEIGHTS_10}

ROLLING_STATS = [
    "win_rate",
    "avg_margin",
    "points_for",
    "points_against",
    "pace",
    "off_eff",
    "def_eff",
    "opp_win_rate",
    "opp_avg_margin",
]

MARKET_FEATURES = [
    "market_implied_prob",
    "spread_line",
    "spread_implied_prob",
    "total_line",
    "total_implied_prob",
]

ALL_FEATURE_NAMES = (
    [
        f"{side}_{stat}_{window}"
        for window in WINDOWS
        for side in ("home", "away")
        for stat in ROLLING_STATS
    ]
    + ["home_advantage"]
    + MARKET_FEATURES
)

ODDS_POLICIES = ("earliest", "latest")

DEFAULT_OPP_WIN_RATE = 0.5
DEFAULT_OPP_MARGIN = 0.0


@dataclass
class TeamSnapshot:
    """A team's 5-game rolling form at a point in time."""

    win_rate: float
    avg_margin: float
    points_for: float
    points_against: float


@dataclass
class HistoryEntry:
    """One settled game from a team's perspective."""

    date: str
    margin: float
    won: bool
    opponent_id: int
    points_for: float
    points_against: float
    opponent: Optional[TeamSnapshot] = None  # Opponent form at the time played


@dataclass
class FeatureVector:
    """Features for one game plus what labeling and settlement need."""

    game_id: int
    date: str
    season: int
    home_team_id: int
    away_team_id: int
    values: dict[str, Optional[float]]
    event_id: Optional[str] = None
    home_score: Optional[float] = None
    away_score: Optional[float] = None
    odds: dict[str, dict] = field(default_factory=dict)  # market -> selected snapshot

    @property
    def is_settled(self) -> bool:
        return self.home_score is not None and self.away_score is not None

    @property
    def margin(self) -> Optional[float]:
        if not self.is_settled:
            return None
        return self.home_score - self.away_score

    @property
    def total_points(self) -> Optional[float]:
        if not self.is_settled:
            return None
        return self.home_score + self.away_score


def weighted_average(values: list[float], weights: list[float]) -> float:
    """Recency-weighted mean; uniform mean when lengths differ."""
    if not values:
        return 0.0
    if len(values) == len(weights):
        return float(np.dot(values, weights) / sum(weights))
    return float(np.mean(values))


def team_snapshot(history: list[HistoryEntry]) -> Optional[TeamSnapshot]:
    """5-game rolling form, or None for a team with no settled games."""
    if not history:
        return None
    sample = history[-5:]
    return TeamSnapshot(
        win_rate=weighted_average([1.0 if e.won else 0.0 for e in sample], RECENCY_WEIGHTS_5),
        avg_margin=weighted_average([e.margin for e in sample], RECENCY_WEIGHTS_5),
        points_for=weighted_average([e.points_for for e in sample], RECENCY_WEIGHTS_5),
        points_against=weighted_average([e.points_against for e in sample], RECENCY_WEIGHTS_5),
    )


def rolling_features(history: list[HistoryEntry], window: int) -> dict[str, float]:
    """Rolling stats for the last `window` entries of a team history.

    off_eff / def_eff measure points scored / allowed relative to what the
    opponent typically allowed / scored at the time; games against an
    opponent with no prior history are left out of those two.
    """
    weights = WINDOWS[window]
    sample = history[-window:]

    off_resid = [
        e.points_for - e.opponent.points_against for e in sample if e.opponent is not None
    ]
    def_resid = [
        e.points_against - e.opponent.points_for for e in sample if e.opponent is not None
    ]
    opp_win = [e.opponent.win_rate for e in sample if e.opponent is not None]
    opp_margin = [e.opponent.avg_margin for e in sample if e.opponent is not None]

    return {
        "win_rate": weighted_average([1.0 if e.won else 0.0 for e in sample], weights),
        "avg_margin": weighted_average([e.margin for e in sample], weights),
        "points_for": weighted_average([e.points_for for e in sample], weights),
        "points_against": weighted_average([e.points_against for e in sample], weights),
        "pace": weighted_average([e.points_for + e.points_against for e in sample], weights),
        "off_eff": weighted_average(off_resid, weights),
        "def_eff": weighted_average(def_resid, weights),
        "opp_win_rate": weighted_average(opp_win, weights) if opp_win else DEFAULT_OPP_WIN_RATE,
        "opp_avg_margin": weighted_average(opp_margin, weights) if opp_margin else DEFAULT_OPP_MARGIN,
    }


def select_odds_snapshots(odds: pd.DataFrame, policy: str = "earliest") -> dict[int, dict[str, dict]]:
    """Reduce odds snapshots to one per (game, market).

    Args:
        odds: One row per snapshot (game_id, market, line, price_*, timestamp)
        policy: "earliest" for training/backtest, "latest" for scoring

    Returns:
        {game_id: {market: snapshot dict}}
    """
    if policy not in ODDS_POLICIES:
        raise ValueError(f"Unknown odds policy {policy!r}, expected one of {ODDS_POLICIES}")
    if odds is None or odds.empty:
        return {}

    sort_cols = ["game_id", "market", "timestamp"]
    if "id" in odds.columns:
        sort_cols.append("id")
    ordered = odds.sort_values(sort_cols)
    grouped = ordered.groupby(["game_id", "market"], sort=False)
    chosen = grouped.head(1) if policy == "earliest" else grouped.tail(1)

    snapshots: dict[int, dict[str, dict]] = defaultdict(dict)
    for row in chosen.to_dict("records"):
        snapshots[int(row["game_id"])][row["market"]] = {
            key: _clean(row.get(key))
            for key in ("line", "price_home", "price_away", "price_over", "price_under", "timestamp", "provider")
        }
    return dict(snapshots)


def market_features(snapshots: dict[str, dict]) -> dict[str, Optional[float]]:
    """Vig-free market features from the selected snapshots of one game."""
    moneyline = snapshots.get("moneyline")
    spread = snapshots.get("spread")
    total = snapshots.get("total")
    return {
        "market_implied_prob": (
            vig_free_first(moneyline["price_home"], moneyline["price_away"]) if moneyline else None
        ),
        "spread_line": spread["line"] if spread else None,
        "spread_implied_prob": (
            vig_free_first(spread["price_home"], spread["price_away"]) if spread else None
        ),
        "total_line": total["line"] if total else None,
        "total_implied_prob": (
            vig_free_first(total["price_over"], total["price_under"]) if total else None
        ),
    }


def compute_features(
    games: pd.DataFrame,
    odds: Optional[pd.DataFrame] = None,
    min_history_games: int = 5,
    odds_policy: str = "earliest",
    cancel_event: Optional[threading.Event] = None,
) -> list[FeatureVector]:
    """Compute feature vectors for every game with enough team history.

    Args:
        games: Columns id, date, season, home_team_id, away_team_id,
            home_score, away_score (scores NaN/None until settled),
            optionally event_id
        odds: Odds snapshots (see select_odds_snapshots)
        min_history_games: Both teams need this many prior settled games
        odds_policy: Snapshot selection policy
        cancel_event: Checked between dates; set -> RunCancelledError

    Returns:
        Feature vectors in chronological order
    """
    if games is None or games.empty:
        return []

    snapshots = select_odds_snapshots(odds, odds_policy) if odds is not None else {}

    games = games.copy()
    games["_day"] = games["date"].astype(str).str[:10]
    games = games.sort_values(["_day", "date", "id"])

    histories: dict[int, list[HistoryEntry]] = defaultdict(list)
    vectors: list[FeatureVector] = []
    gated = 0

    for day, day_games in games.groupby("_day", sort=True):
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelledError(f"Feature computation cancelled before {day}")

        rows = day_games.to_dict("records")

        # Pre-date snapshots shared by every game on this date
        form = {}
        for row in rows:
            for team in (int(row["home_team_id"]), int(row["away_team_id"])):
                if team not in form:
                    form[team] = team_snapshot(histories[team])

        for row in rows:
            home = int(row["home_team_id"])
            away = int(row["away_team_id"])
            if (
                len(histories[home]) < min_history_games
                or len(histories[away]) < min_history_games
            ):
                gated += 1
                continue

            values: dict[str, Optional[float]] = {}
            for window in WINDOWS:
                for side, team in (("home", home), ("away", away)):
                    for stat, value in rolling_features(histories[team], window).items():
                        values[f"{side}_{stat}_{window}"] = value
            values["home_advantage"] = 1.0
            game_odds = snapshots.get(int(row["id"]), {})
            values.update(market_features(game_odds))

            vectors.append(FeatureVector(
                game_id=int(row["id"]),
                date=str(row["date"]),
                season=int(row["season"]),
                home_team_id=home,
                away_team_id=away,
                values=values,
                event_id=_clean(row.get("event_id")),
                home_score=_clean(row.get("home_score")),
                away_score=_clean(row.get("away_score")),
                odds=game_odds,
            ))

        # Only now does this date's outcome enter the histories
        for row in rows:
            home_score = _clean(row.get("home_score"))
            away_score = _clean(row.get("away_score"))
            if home_score is None or away_score is None:
                continue
            home = int(row["home_team_id"])
            away = int(row["away_team_id"])
            margin = float(home_score) - float(away_score)
            histories[home].append(HistoryEntry(
                date=day,
                margin=margin,
                won=margin > 0,
                opponent_id=away,
                points_for=float(home_score),
                points_against=float(away_score),
                opponent=form[away],
            ))
            histories[away].append(HistoryEntry(
                date=day,
                margin=-margin,
                won=margin < 0,
                opponent_id=home,
                points_for=float(away_score),
                points_against=float(home_score),
                opponent=form[home],
            ))

    logger.debug(
        f"Computed {len(vectors)} feature vectors from {len(games)} games "
        f"({gated} below {min_history_games}-game history gate)"
    )
    return vectors


def build_feature_matrix(
    vectors: list[FeatureVector],
    feature_names: list[str],
) -> tuple[np.ndarray, list[FeatureVector]]:
    """Matrix in `feature_names` order over vectors that supply every feature.

    Vectors with a None in any requested feature are dropped.

    Raises:
        MalformedArtifactError: If a requested name is not a known feature
    """
    unknown = [name for name in feature_names if name not in ALL_FEATURE_NAMES]
    if unknown:
        raise MalformedArtifactError(f"Unknown feature names: {unknown}")

    kept = [
        v for v in vectors
        if all(v.values.get(name) is not None for name in feature_names)
    ]
    if not kept:
        return np.empty((0, len(feature_names))), []
    X = np.array(
        [[float(v.values[name]) for name in feature_names] for v in kept],
        dtype=float,
    )
    return X, kept


def _clean(value):
    """NaN/NA -> None, numpy scalars -> Python scalars."""
    if value is None:
        return None
    if isinstance(value, float) and np.isnan(value):
        return None
    if value is pd.NA or value is pd.NaT:
        return None
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return None if np.isnan(value) else float(value)
    return value
