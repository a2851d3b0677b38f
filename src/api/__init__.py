"""Schedule and odds provider interface."""

from .provider import (
    MARKETS,
    BetLeg,
    HttpScheduleOddsProvider,
    OddsQuote,
    ScheduledEvent,
    ScheduleOddsProvider,
)

__all__ = [
    "MARKETS",
    "BetLeg",
    "HttpScheduleOddsProvider",
    "OddsQuote",
    "ScheduledEvent",
    "ScheduleOddsProvider",
]
