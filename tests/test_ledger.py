from datetime import datetime

import pytest

from cross_backtest.data.ledger import Ledger

T0 = datetime(2025, 1, 2)
T1 = datetime(2025, 1, 3)


def test_buy_deducts_cost_and_fees():
    ledger = Ledger(1_000_000)
    result = ledger.buy("AAA", 1000, 100.0, 0.001, T0)

    assert result.ok
    assert result.fees == pytest.approx(100.0)
    assert ledger.balance == pytest.approx(899_900.0)
    holding = ledger.holding("AAA")
    assert holding.quantity == 1000
    assert holding.avg_price == 100.0
    assert holding.entry_cost == pytest.approx(100_000.0)


def test_buy_rejects_insufficient_balance_without_change():
    ledger = Ledger(10_000)
    result = ledger.buy("AAA", 100, 100.0, 0.001, T0)

    assert not result.ok
    assert result.reason == "잔고 부족"
    assert ledger.balance == 10_000
    assert not ledger.is_holding("AAA")
    assert not ledger.buy("AAA", 0, 100.0, 0.0, T0).ok


def test_additional_buy_updates_weighted_average():
    ledger = Ledger(1_000_000)
    ledger.buy("AAA", 100, 100.0, 0.0, T0)
    ledger.buy("AAA", 100, 120.0, 0.0, T1, is_pyramiding=True)

    holding = ledger.holding("AAA")
    assert holding.quantity == 200
    assert holding.avg_price == pytest.approx(110.0)
    assert holding.max_price == 120.0
    assert holding.buy_time == T1
    # 피라미딩은 분할 기준 금액을 바꾸지 않는다
    assert holding.entry_cost == pytest.approx(10_000.0)


def test_sell_realizes_profit_and_keeps_avg_price():
    ledger = Ledger(1_000_000)
    ledger.buy("AAA", 100, 100.0, 0.0, T0)
    balance_before = ledger.balance

    result = ledger.sell("AAA", 40, 110.0, 0.01)
    assert result.ok
    assert result.fees == pytest.approx(44.0)
    assert result.profit == pytest.approx(10.0 * 40 - 44.0)
    assert result.avg_price == 100.0
    assert ledger.balance == pytest.approx(balance_before + 4400.0 - 44.0)
    assert ledger.holding("AAA").quantity == 60
    assert ledger.holding("AAA").avg_price == 100.0


def test_sell_all_removes_holding_and_rejects_invalid_quantity():
    ledger = Ledger(1_000_000)
    ledger.buy("AAA", 10, 100.0, 0.0, T0)

    assert not ledger.sell("AAA", 11, 100.0, 0.0).ok
    assert not ledger.sell("BBB", 1, 100.0, 0.0).ok
    assert ledger.sell("AAA", 10, 100.0, 0.0).ok
    assert not ledger.is_holding("AAA")


def test_total_assets_skips_unknown_prices():
    ledger = Ledger(1_000_000)
    ledger.buy("AAA", 10, 100.0, 0.0, T0)
    ledger.buy("BBB", 10, 50.0, 0.0, T0)

    prices = {"AAA": 150.0}
    assert ledger.holdings_value(prices.get) == pytest.approx(1500.0)
    assert ledger.total_assets(prices.get) == pytest.approx(998_500.0 + 1500.0)
