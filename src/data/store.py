"""SQLite store for games, teams, odds snapshots and the model run registry.

Tables:
    teams          - sport-scoped external team ids
    games          - one row per external event id (scores NULL until settled)
    odds           - append-only snapshots per (game, market, timestamp)
    team_stats     - per-team metric rows keyed by game date
    model_runs     - one row per training run (immutable artifact version)
    model_pointers - (sport, market) -> current run id (last writer wins)
"""

import json
import logging
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import pandas as pd

from src.api.provider import OddsQuote, ScheduledEvent

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS teams (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sport TEXT NOT NULL,
    external_id TEXT NOT NULL,
    name TEXT NOT NULL,
    abbreviation TEXT,
    UNIQUE(sport, external_id)
);

CREATE TABLE IF NOT EXISTS games (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id TEXT NOT NULL,
    sport TEXT NOT NULL,
    date TEXT NOT NULL,
    season INTEGER NOT NULL,
    home_team_id INTEGER NOT NULL,
    away_team_id INTEGER NOT NULL,
    home_score INTEGER,
    away_score INTEGER,
    venue TEXT,
    status TEXT DEFAULT 'scheduled',
    FOREIGN KEY(home_team_id) REFERENCES teams(id),
    FOREIGN KEY(away_team_id) REFERENCES teams(id),
    UNIQUE(event_id)
);

CREATE TABLE IF NOT EXISTS odds (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    game_id INTEGER NOT NULL,
    provider TEXT NOT NULL,
    market TEXT NOT NULL,
    line REAL,
    price_home INTEGER,
    price_away INTEGER,
    price_over INTEGER,
    price_under INTEGER,
    timestamp TEXT NOT NULL,
    FOREIGN KEY(game_id) REFERENCES games(id)
);

CREATE TABLE IF NOT EXISTS team_stats (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    team_id INTEGER NOT NULL,
    sport TEXT NOT NULL,
    season INTEGER NOT NULL,
    game_date TEXT NOT NULL,
    metric_name TEXT NOT NULL,
    metric_value REAL NOT NULL,
    FOREIGN KEY(team_id) REFERENCES teams(id)
);

CREATE TABLE IF NOT EXISTS model_runs (
    run_id TEXT PRIMARY KEY,
    sport TEXT NOT NULL,
    market TEXT NOT NULL,
    seasons TEXT NOT NULL,
    config_json TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    metrics_json TEXT,
    artifacts_path TEXT
);

CREATE TABLE IF NOT EXISTS model_pointers (
    sport TEXT NOT NULL,
    market TEXT NOT NULL,
    run_id TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY(sport, market),
    FOREIGN KEY(run_id) REFERENCES model_runs(run_id)
);

CREATE INDEX IF NOT EXISTS idx_games_date ON games(date);
CREATE INDEX IF NOT EXISTS idx_games_season ON games(season);
CREATE INDEX IF NOT EXISTS idx_odds_game ON odds(game_id);
CREATE INDEX IF NOT EXISTS idx_team_stats_team_season ON team_stats(team_id, season);
CREATE INDEX IF NOT EXISTS idx_model_runs_key ON model_runs(sport, market);
"""

GAME_COLUMNS = [
    "id", "event_id", "sport", "date", "season",
    "home_team_id", "away_team_id", "home_score", "away_score", "status",
]
ODDS_COLUMNS = [
    "id", "game_id", "provider", "market", "line",
    "price_home", "price_away", "price_over", "price_under", "timestamp",
]


def normalize_date(date: str) -> str:
    """YYYYMMDD or YYYY-MM-DD[...] -> YYYY-MM-DD."""
    date = date.strip()
    if len(date) == 8 and date.isdigit():
        return f"{date[:4]}-{date[4:6]}-{date[6:8]}"
    return date[:10]


class GameStore:
    """Relational store over a single SQLite database."""

    def __init__(self, db_path: str | Path = ":memory:"):
        """Open (and create if needed) the database.

        Args:
            db_path: SQLite path, or ":memory:" for an ephemeral store
        """
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(db_path)
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.executescript(SCHEMA)
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "GameStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --- Teams and games ---

    def upsert_team(
        self,
        sport: str,
        external_id: str,
        name: str,
        abbreviation: Optional[str] = None,
    ) -> int:
        """Insert or update a team, returning its internal id."""
        self.conn.execute("""
            INSERT INTO teams (sport, external_id, name, abbreviation)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(sport, external_id) DO UPDATE SET
                name = excluded.name,
                abbreviation = COALESCE(excluded.abbreviation, teams.abbreviation)
        """, (sport, str(external_id), name, abbreviation))
        row = self.conn.execute(
            "SELECT id FROM teams WHERE sport = ? AND external_id = ?",
            (sport, str(external_id)),
        ).fetchone()
        self.conn.commit()
        return int(row["id"])

    def upsert_game(
        self,
        event_id: str,
        sport: str,
        date: str,
        season: int,
        home_team_id: int,
        away_team_id: int,
        home_score: Optional[int] = None,
        away_score: Optional[int] = None,
        venue: Optional[str] = None,
        status: str = "scheduled",
    ) -> int:
        """Insert a game or update its scores/status, returning the internal id.

        Existing scores are never overwritten with NULL, so re-ingesting a
        schedule does not un-settle a finished game.
        """
        self.conn.execute("""
            INSERT INTO games (event_id, sport, date, season, home_team_id, away_team_id,
                               home_score, away_score, venue, status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(event_id) DO UPDATE SET
                home_score = COALESCE(excluded.home_score, games.home_score),
                away_score = COALESCE(excluded.away_score, games.away_score),
                status = CASE WHEN excluded.home_score IS NOT NULL
                              THEN excluded.status ELSE games.status END,
                venue = COALESCE(excluded.venue, games.venue)
        """, (
            str(event_id), sport, date, season, home_team_id, away_team_id,
            home_score, away_score, venue, status,
        ))
        row = self.conn.execute(
            "SELECT id FROM games WHERE event_id = ?", (str(event_id),)
        ).fetchone()
        self.conn.commit()
        return int(row["id"])

    def upsert_event(self, sport: str, season: int, event: ScheduledEvent) -> int:
        """Upsert both teams and the game for a provider event."""
        home_id = self.upsert_team(
            sport, event.home_team_id, event.home_team_name, event.home_abbreviation
        )
        away_id = self.upsert_team(
            sport, event.away_team_id, event.away_team_name, event.away_abbreviation
        )
        return self.upsert_game(
            event_id=event.event_id,
            sport=sport,
            date=event.date,
            season=season,
            home_team_id=home_id,
            away_team_id=away_id,
            home_score=event.home_score,
            away_score=event.away_score,
            venue=event.venue,
            status=event.status,
        )

    def record_odds(self, game_id: int, quote: OddsQuote) -> int:
        """Append one odds snapshot. Odds rows are never updated in place."""
        cursor = self.conn.execute("""
            INSERT INTO odds (game_id, provider, market, line, price_home, price_away,
                              price_over, price_under, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            game_id, quote.provider, quote.market, quote.line,
            quote.price_home, quote.price_away, quote.price_over, quote.price_under,
            quote.timestamp,
        ))
        self.conn.commit()
        return int(cursor.lastrowid)

    def load_games(
        self,
        sport: str,
        seasons: list[int],
        settled_only: bool = False,
    ) -> pd.DataFrame:
        """Games for a sport and seasons, ordered by date then id."""
        if not seasons:
            return pd.DataFrame(columns=GAME_COLUMNS)
        placeholders = ",".join("?" for _ in seasons)
        query = f"""
            SELECT {", ".join(GAME_COLUMNS)}
            FROM games
            WHERE sport = ? AND season IN ({placeholders})
        """
        if settled_only:
            query += " AND home_score IS NOT NULL AND away_score IS NOT NULL"
        query += " ORDER BY date ASC, id ASC"
        return pd.read_sql_query(query, self.conn, params=[sport, *seasons])

    def games_on_date(self, sport: str, date: str) -> pd.DataFrame:
        """Games on a calendar date, including the next day for UTC rollover."""
        day = normalize_date(date)
        next_day = (datetime.strptime(day, "%Y-%m-%d") + timedelta(days=1)).strftime("%Y-%m-%d")
        query = f"""
            SELECT {", ".join(GAME_COLUMNS)}
            FROM games
            WHERE sport = ? AND (date LIKE ? || '%' OR date LIKE ? || '%')
            ORDER BY date ASC, id ASC
        """
        return pd.read_sql_query(query, self.conn, params=[sport, day, next_day])

    def load_odds(self, game_ids: list[int]) -> pd.DataFrame:
        """All odds snapshots for the given games, oldest first."""
        if len(game_ids) == 0:
            return pd.DataFrame(columns=ODDS_COLUMNS)
        frames = []
        # SQLite caps bound parameters; chunk large id lists
        ids = [int(g) for g in game_ids]
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            placeholders = ",".join("?" for _ in chunk)
            frames.append(pd.read_sql_query(f"""
                SELECT {", ".join(ODDS_COLUMNS)}
                FROM odds
                WHERE game_id IN ({placeholders})
            """, self.conn, params=chunk))
        odds = pd.concat(frames, ignore_index=True)
        return odds.sort_values(["game_id", "market", "timestamp", "id"]).reset_index(drop=True)

    # --- Model run registry ---

    def insert_model_run(
        self,
        run_id: str,
        sport: str,
        market: str,
        seasons: list[int],
        config: dict,
        started_at: str,
        finished_at: str,
        metrics: dict,
        artifacts_path: str,
        make_current: bool = True,
    ) -> None:
        """Register a finished run and (optionally) point (sport, market) at it.

        Both writes happen in one transaction. The pointer is last-writer-wins;
        older versions stay addressable by run id.
        """
        with self.conn:
            self.conn.execute("""
                INSERT INTO model_runs (run_id, sport, market, seasons, config_json,
                                        started_at, finished_at, metrics_json, artifacts_path)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                run_id, sport, market, json.dumps(sorted(seasons)), json.dumps(config),
                started_at, finished_at, json.dumps(metrics), artifacts_path,
            ))
            if make_current:
                self.conn.execute("""
                    INSERT INTO model_pointers (sport, market, run_id, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(sport, market) DO UPDATE SET
                        run_id = excluded.run_id,
                        updated_at = excluded.updated_at
                """, (sport, market, run_id, finished_at))
        logger.debug(f"Registered model run {run_id} ({sport}/{market})")

    def set_current_run(self, sport: str, market: str, run_id: str) -> None:
        """Point (sport, market) at an existing run."""
        if self.get_model_run(run_id) is None:
            raise KeyError(f"Unknown run id: {run_id}")
        with self.conn:
            self.conn.execute("""
                INSERT INTO model_pointers (sport, market, run_id, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(sport, market) DO UPDATE SET
                    run_id = excluded.run_id,
                    updated_at = excluded.updated_at
            """, (sport, market, run_id, datetime.now().isoformat()))

    def get_current_run_id(self, sport: str, market: str) -> Optional[str]:
        row = self.conn.execute(
            "SELECT run_id FROM model_pointers WHERE sport = ? AND market = ?",
            (sport, market),
        ).fetchone()
        return row["run_id"] if row else None

    def get_model_run(self, run_id: str) -> Optional[dict]:
        row = self.conn.execute(
            "SELECT * FROM model_runs WHERE run_id = ?", (run_id,)
        ).fetchone()
        if row is None:
            return None
        run = dict(row)
        run["seasons"] = json.loads(run["seasons"])
        run["config"] = json.loads(run.pop("config_json"))
        run["metrics"] = json.loads(run.pop("metrics_json") or "{}")
        return run

    def list_model_runs(self, sport: str, market: Optional[str] = None) -> list[dict]:
        """Runs for a sport (optionally one market), newest first."""
        query = "SELECT run_id FROM model_runs WHERE sport = ?"
        params: list = [sport]
        if market:
            query += " AND market = ?"
            params.append(market)
        query += " ORDER BY finished_at DESC, run_id DESC"
        return [self.get_model_run(r["run_id"]) for r in self.conn.execute(query, params)]
