import pytest

from cross_backtest.core import indicators


def test_ma_is_none_below_window_and_mean_above():
    data = [1.0, 2.0, 3.0, 4.0, 5.0]
    assert indicators.calculate_ma(data, 3, 1) is None
    assert indicators.calculate_ma(data, 3, 2) == pytest.approx(2.0)
    assert indicators.calculate_ma(data, 3, 4) == pytest.approx(4.0)


def test_ema_seeds_with_sma():
    ema = indicators.calculate_ema([1.0, 2.0, 3.0, 4.0], 3)
    assert ema[0] == pytest.approx(2.0)
    assert ema[1] == pytest.approx((4.0 - 2.0) * 0.5 + 2.0)
    assert indicators.calculate_ema([1.0, 2.0], 3) == []


def test_rsi_is_100_for_non_negative_deltas():
    prices = [float(p) for p in range(100, 116)]
    assert indicators.calculate_rsi(prices) == 100.0
    assert indicators.calculate_rsi([100.0] * 15) == 100.0


def test_rsi_needs_period_plus_one_prices_and_stays_in_range():
    assert indicators.calculate_rsi([100.0] * 14) is None
    prices = [100, 102, 101, 99, 98, 103, 104, 101, 100, 97, 99, 102, 105, 103, 101]
    rsi = indicators.calculate_rsi([float(p) for p in prices])
    assert 0.0 <= rsi <= 100.0


def test_macd_requires_slow_plus_signal_prices():
    assert indicators.calculate_macd([100.0] * 34) is None
    result = indicators.calculate_macd([100.0] * 35)
    assert result.macd == pytest.approx(0.0)
    assert result.histogram == pytest.approx(0.0)


def test_macd_histogram_positive_in_uptrend():
    prices = [100.0 + i * 0.5 for i in range(35)] + [120.0 + i * 2 for i in range(10)]
    assert indicators.calculate_macd(prices).histogram > 0


def test_macd_line_pairs_fast_and_slow_ema_of_the_same_bar():
    prices = [100.0 + (i % 7) * 1.5 + i * 0.3 for i in range(60)]
    fast = indicators.calculate_ema(prices, 12)
    slow = indicators.calculate_ema(prices, 26)

    result = indicators.calculate_macd(prices)
    assert result.macd == pytest.approx(fast[-1] - slow[-1])


def test_bollinger_percent_b_is_half_on_flat_window():
    bands = indicators.calculate_bollinger_bands([50.0] * 20)
    assert bands.upper == bands.lower == bands.middle == 50.0
    assert bands.percent_b == 0.5
    assert indicators.calculate_bollinger_bands([50.0] * 19) is None


def test_bollinger_uses_population_std():
    prices = [1.0, 2.0, 3.0, 4.0]
    bands = indicators.calculate_bollinger_bands(prices, period=4, std_dev=1.0)
    std = (sum((p - 2.5) ** 2 for p in prices) / 4) ** 0.5
    assert bands.upper == pytest.approx(2.5 + std)
    assert bands.percent_b == pytest.approx((4.0 - (2.5 - std)) / (2 * std))


def test_analyze_volume_trend_and_divergence():
    prices = [float(p) for p in range(100, 110)]
    flat = indicators.analyze_volume([100.0] * 10, prices)
    assert flat.trend == "neutral"
    assert flat.divergence is True

    rising = indicators.analyze_volume([100.0] * 5 + [200.0] * 5, prices)
    assert rising.trend == "increasing"
    assert rising.divergence is False

    falling = indicators.analyze_volume([200.0] * 5 + [100.0] * 5, prices[::-1])
    assert falling.trend == "decreasing"
    assert falling.divergence is False

    short = indicators.analyze_volume([100.0] * 9, prices[:9])
    assert (short.trend, short.divergence) == ("neutral", False)


def test_obv_step_and_slope():
    obv = indicators.obv_step(0.0, None, 10.0, 500.0)
    assert obv == 0.0
    obv = indicators.obv_step(obv, 10.0, 11.0, 300.0)
    assert obv == 300.0
    obv = indicators.obv_step(obv, 11.0, 10.5, 100.0)
    assert obv == 200.0
    assert indicators.obv_step(obv, 10.5, 10.5, 999.0) == 200.0

    assert indicators.calculate_obv_slope(200.0, 300.0) == pytest.approx(-100 / 3)
    assert indicators.calculate_obv_slope(200.0, 0.0) == 0.0
    assert indicators.calculate_obv_slope(200.0, None) == 0.0


def test_ma_slope_is_normalized_and_capped():
    assert indicators.calculate_ma_slope(3.0, None) == 0.0
    assert indicators.calculate_ma_slope(3.0, 1.0) == pytest.approx(0.02)
    assert indicators.calculate_ma_slope(-1.0, 1.0) == pytest.approx(0.02)
    assert indicators.calculate_ma_slope(500.0, 0.0) == 1.0


def test_change_rate_and_volume_strength_fallbacks():
    assert indicators.calculate_change_rate(110.0, 100.0) == pytest.approx(10.0)
    assert indicators.calculate_change_rate(110.0, 0.0) == 0.0

    assert indicators.calculate_volume_strength(150.0, 100.0) == pytest.approx(50.0)
    assert indicators.calculate_volume_strength(150.0, None) == 0.0
    assert indicators.calculate_volume_strength(0.0, 100.0) == 0.0
