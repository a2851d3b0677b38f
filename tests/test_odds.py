"""Tests for American odds conversion, vig removal and bet settlement."""

import math

import pytest

from src.modeling.odds import (
    american_to_decimal,
    american_to_implied,
    remove_vig,
    settle_unit_bet,
    vig_free_first,
    vig_free_probabilities,
)


class TestConversion:
    def test_favorite_decimal(self):
        assert american_to_decimal(-110) == pytest.approx(1.9091, abs=1e-4)

    def test_underdog_decimal(self):
        assert american_to_decimal(150) == pytest.approx(2.5)

    def test_zero_odds_rejected(self):
        with pytest.raises(ValueError):
            american_to_decimal(0)
        with pytest.raises(ValueError):
            american_to_implied(0)

    def test_implied(self):
        assert american_to_implied(-150) == pytest.approx(0.6)
        assert american_to_implied(130) == pytest.approx(100 / 230)


class TestVigRemoval:
    def test_worked_example(self):
        """-150 / +130: implied 0.6 / 0.4348 -> vig-free 0.5798 / 0.4202."""
        home, away = vig_free_probabilities(-150, 130)
        assert home == pytest.approx(0.5798, abs=1e-4)
        assert away == pytest.approx(0.4202, abs=1e-4)

    @pytest.mark.parametrize("a,b", [(-110, -110), (-300, 250), (105, -125), (1000, -2000)])
    def test_sums_to_one(self, a, b):
        home, away = vig_free_probabilities(a, b)
        assert abs(home + away - 1.0) < 1e-9

    def test_remove_vig_requires_positive_total(self):
        with pytest.raises(ValueError):
            remove_vig(0.0, 0.0)

    def test_first_side_missing_price(self):
        assert vig_free_first(None, -110) is None
        assert vig_free_first(-110, float("nan")) is None

    def test_first_side(self):
        assert vig_free_first(-150, 130) == pytest.approx(0.5798, abs=1e-4)


class TestSettlement:
    def test_win_underdog(self):
        assert settle_unit_bet(True, 150, 10.0) == pytest.approx(15.0)

    def test_win_favorite(self):
        assert settle_unit_bet(True, -200, 10.0) == pytest.approx(5.0)

    def test_loss_costs_stake(self):
        assert settle_unit_bet(False, -200, 10.0) == -10.0
        assert settle_unit_bet(False, 500, 10.0) == -10.0

    def test_profit_is_finite(self):
        assert math.isfinite(settle_unit_bet(True, -10000, 10.0))
