"""Schedule/odds provider interface.

A provider adapter is pluggable per sport. The modeling core depends only on
the shape defined here:

    fetch_events(date)  -> list[ScheduledEvent]
    fetch_odds(event_id) -> list[OddsQuote]
    normalize_odds(event_id, quotes, home_label, away_label) -> list[BetLeg]

`HttpScheduleOddsProvider` supplies the transport (shared requests session,
per-call timeout, bounded retries) and maps transport failures to
ExternalFetchError. Concrete adapters implement URL building and payload
parsing only.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import requests

from src.modeling.errors import ExternalFetchError
from src.modeling.odds import vig_free_probabilities

logger = logging.getLogger(__name__)

MARKETS = ("moneyline", "spread", "total")


@dataclass
class ScheduledEvent:
    """A game on a provider's schedule."""

    event_id: str
    date: str  # ISO timestamp
    home_team_id: str  # Provider (sport-scoped) team id
    home_team_name: str
    away_team_id: str
    away_team_name: str
    home_abbreviation: Optional[str] = None
    away_abbreviation: Optional[str] = None
    venue: Optional[str] = None
    status: str = "scheduled"
    home_score: Optional[int] = None
    away_score: Optional[int] = None


@dataclass
class OddsQuote:
    """One odds snapshot for a (game, market).

    Prices are American odds. Moneyline/spread use price_home/price_away,
    totals use price_over/price_under. Spread line is from the home
    perspective (negative = home favored).
    """

    market: str
    provider: str
    timestamp: str  # ISO timestamp
    line: Optional[float] = None
    price_home: Optional[int] = None
    price_away: Optional[int] = None
    price_over: Optional[int] = None
    price_under: Optional[int] = None

    def __post_init__(self):
        if self.market not in MARKETS:
            raise ValueError(f"Unknown market {self.market!r}, expected one of {MARKETS}")


@dataclass
class BetLeg:
    """A single vig-free bettable side."""

    event_id: str
    market: str
    side: str  # home / away / over / under
    label: str
    line: Optional[float]
    odds_american: int
    implied_prob: float  # Vig-free


class ScheduleOddsProvider(ABC):
    """Per-sport schedule and odds source."""

    sport: str = ""

    @abstractmethod
    def fetch_events(self, date: str) -> list[ScheduledEvent]:
        """Fetch the schedule for a date (YYYYMMDD or YYYY-MM-DD)."""

    @abstractmethod
    def fetch_odds(self, event_id: str) -> list[OddsQuote]:
        """Fetch all current odds quotes for an event."""

    def normalize_odds(
        self,
        event_id: str,
        quotes: list[OddsQuote],
        home_label: str,
        away_label: str,
    ) -> list[BetLeg]:
        """Convert quotes into vig-free legs, one pair per complete quote.

        Quotes missing either side's price are skipped.
        """
        legs = []
        for quote in quotes:
            if quote.market == "total":
                prices = (quote.price_over, quote.price_under)
                sides = (("over", f"Over {quote.line}"), ("under", f"Under {quote.line}"))
                lines = (quote.line, quote.line)
            else:
                prices = (quote.price_home, quote.price_away)
                sides = (("home", home_label), ("away", away_label))
                if quote.market == "spread" and quote.line is not None:
                    lines = (quote.line, -quote.line)
                else:
                    lines = (quote.line, quote.line)

            if prices[0] is None or prices[1] is None:
                logger.debug(f"Skipping incomplete {quote.market} quote for {event_id}")
                continue

            probs = vig_free_probabilities(prices[0], prices[1])
            for (side, label), line, price, prob in zip(sides, lines, prices, probs):
                legs.append(BetLeg(
                    event_id=event_id,
                    market=quote.market,
                    side=side,
                    label=label,
                    line=line,
                    odds_american=int(price),
                    implied_prob=prob,
                ))
        return legs


class HttpScheduleOddsProvider(ScheduleOddsProvider):
    """JSON-over-HTTP provider base with timeout and retry.

    Subclasses implement `events_url`, `odds_url`, `parse_events` and
    `parse_odds`.
    """

    def __init__(
        self,
        timeout: float = 15.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        session: Optional[requests.Session] = None,
    ):
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.session = session or requests.Session()

    @abstractmethod
    def events_url(self, date: str) -> str:
        """URL of the schedule endpoint for a date."""

    @abstractmethod
    def odds_url(self, event_id: str) -> str:
        """URL of the odds endpoint for an event."""

    @abstractmethod
    def parse_events(self, payload: Any) -> list[ScheduledEvent]:
        """Parse a schedule payload."""

    @abstractmethod
    def parse_odds(self, payload: Any) -> list[OddsQuote]:
        """Parse an odds payload."""

    def fetch_events(self, date: str) -> list[ScheduledEvent]:
        url = self.events_url(date)
        payload = self._get_json(url)
        try:
            return self.parse_events(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise ExternalFetchError(f"Unexpected schedule payload from {url}: {e}") from e

    def fetch_odds(self, event_id: str) -> list[OddsQuote]:
        url = self.odds_url(event_id)
        payload = self._get_json(url)
        try:
            return self.parse_odds(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise ExternalFetchError(f"Unexpected odds payload from {url}: {e}") from e

    def _get_json(self, url: str) -> Any:
        """GET a JSON payload, retrying transient failures with backoff."""
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                response = self.session.get(url, timeout=self.timeout)
                if response.status_code == 429 or response.status_code >= 500:
                    last_error = ExternalFetchError(
                        f"HTTP {response.status_code} from {url}"
                    )
                else:
                    response.raise_for_status()
                    return response.json()
            except requests.Timeout as e:
                last_error = e
                logger.warning(f"Timeout after {self.timeout}s fetching {url} (attempt {attempt + 1})")
            except requests.RequestException as e:
                raise ExternalFetchError(f"Request to {url} failed: {e}") from e
            except ValueError as e:
                raise ExternalFetchError(f"Invalid JSON from {url}: {e}") from e

            if attempt < self.max_retries - 1:
                time.sleep(self.retry_base_delay * (2 ** attempt))

        raise ExternalFetchError(
            f"Giving up on {url} after {self.max_retries} attempts: {last_error}"
        )
