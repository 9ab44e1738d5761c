"""
Unit tests for technical indicators.
"""
import math

import pytest

from arena.market import calculate_ema, calculate_rsi, calculate_sma, calculate_volatility


class TestMovingAverages:
    def test_sma(self, candles_from):
        sma = calculate_sma(candles_from([1, 2, 3, 4, 5]), 3)

        assert math.isnan(sma[0]) and math.isnan(sma[1])
        assert sma[2:] == pytest.approx([2.0, 3.0, 4.0])

    def test_ema_seeded_with_first_close(self, candles_from):
        ema = calculate_ema(candles_from([10, 20]), 3)

        # alpha = 2 / (3 + 1)
        assert ema == pytest.approx([10.0, 15.0])


class TestRSI:
    def test_all_gains_is_100(self, candles_from):
        rsi = calculate_rsi(candles_from(range(100, 120)), 14)

        assert math.isnan(rsi[13])
        assert rsi[14] == 100.0
        assert rsi[-1] == 100.0

    def test_all_losses_is_0(self, candles_from):
        rsi = calculate_rsi(candles_from(range(120, 100, -1)), 14)
        assert rsi[-1] == pytest.approx(0.0)

    def test_balanced_moves_near_50(self, candles_from):
        closes = [100 + (1 if i % 2 else 0) for i in range(40)]
        rsi = calculate_rsi(candles_from(closes), 14)
        assert rsi[-1] == pytest.approx(50.0)

    def test_empty(self):
        assert calculate_rsi([], 14) == []


class TestVolatility:
    def test_flat_prices(self, candles_from):
        assert calculate_volatility(candles_from([100] * 30), 20) == 0.0

    def test_not_enough_history(self, candles_from):
        assert calculate_volatility(candles_from([100, 101]), 20) == 0.0

    def test_annualized(self, candles_from):
        closes = [100 * (1.01 if i % 2 else 1.0) for i in range(21)]

        daily = calculate_volatility(candles_from(closes), 20, periods_per_year=1)
        yearly = calculate_volatility(candles_from(closes), 20, periods_per_year=365)

        assert daily > 0
        assert yearly == pytest.approx(daily * math.sqrt(365))
