"""American odds helpers: conversion, vig removal and unit-stake settlement."""

from typing import Optional


def american_to_decimal(odds: int | float) -> float:
    """Convert American odds to decimal odds.

    Args:
        odds: American odds (e.g., -110, +150)

    Returns:
        Decimal odds (e.g., 1.909, 2.5)

    Raises:
        ValueError: If odds is zero

    Examples:
        >>> american_to_decimal(-110)
        1.909...
        >>> american_to_decimal(+150)
        2.5
    """
    if odds == 0:
        raise ValueError("American odds cannot be zero")
    if odds > 0:
        return 1.0 + odds / 100.0
    else:
        return 1.0 + 100.0 / abs(odds)


def american_to_implied(odds: int | float) -> float:
    """Implied probability of American odds, vig included.

    >>> american_to_implied(-150)
    0.6
    """
    if odds == 0:
        raise ValueError("American odds cannot be zero")
    if odds > 0:
        return 100.0 / (odds + 100.0)
    return abs(odds) / (abs(odds) + 100.0)


def remove_vig(prob_a: float, prob_b: float) -> tuple[float, float]:
    """Normalize two implied probabilities so they sum to 1."""
    total = prob_a + prob_b
    if total <= 0:
        raise ValueError(f"Implied probabilities must sum to a positive value, got {total}")
    return prob_a / total, prob_b / total


def vig_free_probabilities(price_a: int | float, price_b: int | float) -> tuple[float, float]:
    """Vig-free probabilities for a two-sided market quoted in American odds.

    Example: -150 / +130 -> implied 0.6 / 0.4348 (sum 1.0348)
    -> vig-free 0.5798 / 0.4202.
    """
    return remove_vig(american_to_implied(price_a), american_to_implied(price_b))


def vig_free_first(price_a: Optional[float], price_b: Optional[float]) -> Optional[float]:
    """Vig-free probability of the first side, or None if either price is missing."""
    if price_a is None or price_b is None:
        return None
    if _is_nan(price_a) or _is_nan(price_b) or price_a == 0 or price_b == 0:
        return None
    return vig_free_probabilities(price_a, price_b)[0]


def settle_unit_bet(won: bool, odds: int | float, stake: float) -> float:
    """Profit from a single bet of `stake` at American `odds`.

    A winning bet returns stake * (decimal - 1); a losing bet costs the stake.
    """
    if won:
        return (american_to_decimal(odds) - 1.0) * stake
    return -stake


def _is_nan(value: float) -> bool:
    return value != value
