from datetime import datetime, timedelta

import pytest

from cross_backtest.backtest.metrics import build_summary, calculate_metrics
from cross_backtest.core.models import TradeSide, Transaction
from cross_backtest.data.ledger import Ledger

T0 = datetime(2025, 1, 2)


def _sell(profit, reason="DEAD_CROSS"):
    return Transaction(
        time=T0, type=TradeSide.SELL, symbol="AAA", quantity=1, price=100.0,
        fees=0.0, total=100.0, avg_buy_price=100.0, profit=profit, reason=reason,
    )


def test_empty_equity_gives_zero_metrics():
    metrics = calculate_metrics([], [], 1_000_000)
    assert metrics.total_return == 0.0
    assert metrics.total_trades == 0


def test_return_and_max_drawdown():
    metrics = calculate_metrics([], [100.0, 110.0, 99.0], 100.0)
    assert metrics.total_return == pytest.approx(-1.0)
    assert metrics.max_drawdown == pytest.approx(10.0)


def test_rising_equity_has_positive_sharpe_and_no_drawdown():
    metrics = calculate_metrics([], [100.0, 101.0, 103.0, 104.0, 106.0], 100.0)
    assert metrics.sharpe_ratio > 0
    assert metrics.max_drawdown == 0.0


def test_annual_return_uses_distinct_days():
    times = [T0 + timedelta(days=i) for i in range(252)]
    values = [100.0] * 251 + [110.0]
    metrics = calculate_metrics([], values, 100.0, equity_times=times)
    assert metrics.annual_return == pytest.approx(10.0)


def test_trade_statistics_use_sells_only():
    buy = Transaction(time=T0, type=TradeSide.BUY, symbol="AAA", quantity=1, price=100.0, fees=0.0, total=100.0)
    trades = [buy, _sell(100.0), _sell(-50.0, "STOP_LOSS"), _sell(-50.0), _sell(200.0, "TAKE_PROFIT")]

    metrics = calculate_metrics(trades, [100.0, 101.0], 100.0)

    assert metrics.total_trades == 4
    assert metrics.win_rate == pytest.approx(50.0)
    assert metrics.avg_profit == pytest.approx(150.0)
    assert metrics.avg_loss == pytest.approx(-50.0)
    assert metrics.profit_factor == pytest.approx(3.0)
    assert metrics.max_consecutive_wins == 1
    assert metrics.max_consecutive_losses == 2
    assert metrics.sell_reasons == {"DEAD_CROSS": 2, "STOP_LOSS": 1, "TAKE_PROFIT": 1}
    assert "STOP_LOSS:" in metrics.summary()


def test_profit_factor_without_losses_is_infinite():
    metrics = calculate_metrics([_sell(10.0)], [100.0, 110.0], 100.0)
    assert metrics.profit_factor == float("inf")


def test_build_summary():
    ledger = Ledger(1_000_000)
    ledger.buy("AAA", 10, 100.0, 0.0, T0)
    summary = build_summary(ledger, {"AAA": 120.0}.get, transaction_count=1)

    assert summary.final_balance == pytest.approx(999_000.0)
    assert summary.holdings_value == pytest.approx(1200.0)
    assert summary.total_profit == pytest.approx(200.0)
    assert summary.return_rate == pytest.approx(0.02)
    assert summary.to_dict()["transaction_count"] == 1
