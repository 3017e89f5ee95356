from datetime import datetime

import pandas as pd

from cross_backtest.backtest.engine import BacktestEngine
from cross_backtest.core.models import Group
from cross_backtest.data.market_data import MarketData
from cross_backtest.utils.config import Config
from run_backtest import apply_overrides, generate_sample_data, parse_param


def test_parse_param_converts_types():
    assert parse_param("buy.stock_rate=0.2") == ("buy.stock_rate", 0.2)
    assert parse_param("buy.symbol_size=5") == ("buy.symbol_size", 5)
    assert parse_param("features.pyramiding=false") == ("features.pyramiding", False)
    assert parse_param("golden_cross.under=50,100") == ("golden_cross.under", [50, 100])
    assert parse_param("golden_cross.min_slope=none") == ("golden_cross.min_slope", None)
    assert parse_param("plan.interval=5m") == ("plan.interval", "5m")


def test_apply_overrides_defaults_to_trading_section():
    config = apply_overrides(Config(), [
        "buy.stock_rate=0.2",
        "features.pyramiding=false",
        "golden_cross.under=50,100",
        "golden_cross.from=10",
        "plan.interval=5m",
    ])
    assert config.trading.buy.stock_rate == 0.2
    assert config.trading.features.pyramiding is False
    assert config.trading.golden_cross.under == (50, 100)
    assert config.trading.golden_cross.from_period == 10
    assert config.plan.interval == "5m"
    assert apply_overrides(config, []) is config


def test_sample_data_is_reproducible():
    start, end = datetime(2025, 1, 1), datetime(2025, 3, 31)
    first = generate_sample_data("005930.KS", start, end)
    second = generate_sample_data("005930.KS", start, end)

    pd.testing.assert_frame_equal(first, second)
    assert list(first.columns) == ["date", "open", "high", "low", "close", "volume"]
    assert (first["date"].dt.dayofweek < 5).all()


def test_sample_backtest_runs_end_to_end():
    start, end = datetime(2025, 1, 1), datetime(2025, 12, 31)
    symbols = ["005930.KS", "000660.KS"]
    frames = {s: generate_sample_data(s, start, end, initial_price=70000 + 40000 * i) for i, s in enumerate(symbols)}
    market = MarketData.from_dataframes(frames, start, end)

    result = BacktestEngine().run_backtest(market, [Group("sample", "샘플", symbols)], start, end, "1d")

    assert len(result.equity_values) == 365
    assert result.summary.total_assets > 0
    assert all(t.quantity > 0 for t in result.transactions)
