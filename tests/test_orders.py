from datetime import datetime

import pytest

from cross_backtest.backtest.context import SimulationContext, TickContext
from cross_backtest.backtest.orders import (
    OrderExecutionEngine,
    evaluate_buy_filters,
    pyramid_investment,
    round_half_up,
    score_candidate,
)
from cross_backtest.core.models import (
    MACDResult,
    MAValue,
    SellReason,
    TimeSeriesPoint,
    TradeSide,
    VolumeAnalysis,
)
from cross_backtest.utils.config import (
    BuyConfig,
    FeatureFlags,
    GoldenCrossConfig,
    SellConfig,
    TradeFees,
    TradingConfig,
)

NOW = datetime(2025, 3, 4, 10, 0)


def _point(fast=2.0, slow=1.0, fast_slope=0.02, **kwargs):
    return TimeSeriesPoint(
        time=NOW,
        avg_change_rate=0.0,
        avg_volume_strength=kwargs.pop("volume_strength", 0.0),
        ma={5: MAValue(fast, slope=fast_slope), 20: MAValue(slow)},
        **kwargs,
    )


def _config(**overrides):
    base = dict(
        initial_balance=1_000_000,
        trade_fees=TradeFees(buy=0.001, sell=0.001),
        golden_cross=GoldenCrossConfig(from_period=5, to_period=20, under=(), min_slope=None),
    )
    base.update(overrides)
    return TradingConfig(**base)


def test_filters_pass_when_all_disabled():
    decision = evaluate_buy_filters(_config(), TickContext(time=NOW), _point())
    assert decision.ok


def test_filters_stop_at_first_failure_in_order():
    config = _config(
        features=FeatureFlags(time_filter=True, volume_strength_filter=True),
        buy=BuyConfig(min_volume_strength=50.0),
    )
    excluded = TickContext(time=NOW.replace(hour=9))
    decision = evaluate_buy_filters(config, excluded, _point(volume_strength=0.0))
    assert not decision.ok
    assert "시간대" in decision.reason

    decision = evaluate_buy_filters(config, TickContext(time=NOW), _point(volume_strength=0.0))
    assert "거래량 강도" in decision.reason


def test_paused_trading_only_blocks_with_protection_enabled():
    tick = TickContext(time=NOW)
    assert evaluate_buy_filters(_config(), tick, _point(), trading_paused=True).ok

    config = _config(features=FeatureFlags(consecutive_loss_protection=True))
    assert not evaluate_buy_filters(config, tick, _point(), trading_paused=True).ok


def test_indicator_filters_skip_missing_values():
    config = _config(features=FeatureFlags(
        obv_filter=True, rsi_filter=True, macd_filter=True,
        bollinger_bands_filter=True, volume_analysis_filter=True,
    ))
    assert evaluate_buy_filters(config, TickContext(time=NOW), _point()).ok


def test_slope_gap_macd_and_volume_filters():
    tick = TickContext(time=NOW)

    slope = _config(features=FeatureFlags(slope_filter=True), buy=BuyConfig(min_slope=0.01))
    assert not evaluate_buy_filters(slope, tick, _point(fast_slope=0.01)).ok
    assert evaluate_buy_filters(slope, tick, _point(fast_slope=0.011)).ok

    gap = _config(features=FeatureFlags(ma_gap_filter=True), buy=BuyConfig(max_ma_gap=0.05))
    assert not evaluate_buy_filters(gap, tick, _point(fast=1.1, slow=1.0)).ok
    assert evaluate_buy_filters(gap, tick, _point(fast=1.04, slow=1.0)).ok
    assert evaluate_buy_filters(gap, tick, _point(fast=1.0, slow=0.0)).ok

    macd = _config(features=FeatureFlags(macd_filter=True))
    assert not evaluate_buy_filters(macd, tick, _point(macd=MACDResult(0.1, 0.2, -0.1))).ok
    assert evaluate_buy_filters(macd, tick, _point(macd=MACDResult(0.2, 0.1, 0.1))).ok

    volume = _config(
        features=FeatureFlags(volume_analysis_filter=True),
        buy=BuyConfig(volume_trend_required="any", avoid_price_volume_divergence=True),
    )
    assert evaluate_buy_filters(volume, tick, _point(volume_analysis=VolumeAnalysis("neutral", False))).ok
    assert not evaluate_buy_filters(volume, tick, _point(volume_analysis=VolumeAnalysis("increasing", True))).ok


def test_score_only_counts_enabled_terms():
    point = _point(fast=1.02, slow=1.0, fast_slope=0.5, volume_strength=10.0)
    assert score_candidate(_config(), point) == 0.0

    config = _config(features=FeatureFlags(slope_filter=True, volume_strength_filter=True, ma_gap_filter=True))
    expected = 0.5 * 0.5 + 10.0 * 0.3 + (1 - 0.02) * 0.2 * 100
    assert score_candidate(config, point) == pytest.approx(expected)


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(3.5) == 4
    assert round_half_up(2.49) == 2


def test_buy_sizes_from_balance_rate():
    config = _config()
    ctx = SimulationContext(config)
    tick = TickContext(time=NOW)

    result = OrderExecutionEngine(config).buy(ctx, tick, "AAA", 100.0, _point(), is_golden_cross_entry=True)

    assert result.ok
    t = result.transaction
    assert t.type == TradeSide.BUY
    assert t.quantity == 1000
    assert t.fees == pytest.approx(100.0)
    assert t.total == pytest.approx(100_100.0)
    assert t.is_golden_cross_entry is True
    assert t.is_pyramiding is False
    assert ctx.ledger.balance == pytest.approx(899_900.0)
    assert "AAA" in tick.bought_symbols
    assert len(ctx.transactions) == 1


def test_buy_rejects_when_not_one_share():
    config = _config()
    ctx = SimulationContext(config)
    result = OrderExecutionEngine(config).buy(ctx, TickContext(time=NOW), "AAA", 200_000.0, _point())
    assert not result.ok
    assert len(ctx.transactions) == 0


def test_pyramid_investment_halves_per_tranche():
    config = _config(trade_fees=TradeFees(buy=0.0, sell=0.0))
    ctx = SimulationContext(config)
    ctx.ledger.buy("AAA", 1000, 100.0, 0.0, NOW)
    assert pyramid_investment(ctx.ledger.holding("AAA")) == pytest.approx(50_000.0)

    ctx.ledger.buy("AAA", 500, 100.0, 0.0, NOW, is_pyramiding=True)
    assert pyramid_investment(ctx.ledger.holding("AAA")) == pytest.approx(25_000.0)


def test_pyramiding_requires_rising_slope():
    config = _config()
    orders = OrderExecutionEngine(config)
    ctx = SimulationContext(config)
    ctx.ledger.buy("AAA", 1000, 100.0, 0.0, datetime(2025, 3, 3))

    flat = orders.buy(ctx, TickContext(time=NOW), "AAA", 100.0,
                      _point(fast_slope=0.1), previous_point=_point(fast_slope=0.1))
    assert not flat.ok

    rising = orders.buy(ctx, TickContext(time=NOW), "AAA", 100.0,
                        _point(fast_slope=0.2), previous_point=_point(fast_slope=0.1))
    assert rising.ok
    assert rising.transaction.is_pyramiding is True
    assert rising.transaction.quantity == 500


def test_holding_without_pyramiding_is_rejected():
    config = _config(features=FeatureFlags(pyramiding=False))
    ctx = SimulationContext(config)
    ctx.ledger.buy("AAA", 10, 100.0, 0.0, datetime(2025, 3, 3))

    result = OrderExecutionEngine(config).buy(ctx, TickContext(time=NOW), "AAA", 100.0, _point())
    assert not result.ok


def test_sell_quantity_rules():
    orders = OrderExecutionEngine(_config(sell=SellConfig(stock_rate=0.5, min_remaining_quantity=5)))

    assert orders.sell_quantity(100, SellReason.DEAD_CROSS) == 50
    assert orders.sell_quantity(5, SellReason.DEAD_CROSS) == 5       # 3주 팔면 2주 남음 → 전량
    assert orders.sell_quantity(1, SellReason.DEAD_CROSS) == 1
    assert orders.sell_quantity(100, SellReason.STOP_LOSS) == 100
    assert orders.sell_quantity(100, SellReason.DEAD_CROSS_BELOW) == 100
    assert orders.sell_quantity(100, SellReason.DEAD_CROSS_ADDITIONAL, force_full=True) == 100


def test_sell_records_transaction():
    config = _config()
    ctx = SimulationContext(config)
    ctx.ledger.buy("AAA", 100, 100.0, 0.0, datetime(2025, 3, 3))

    result = OrderExecutionEngine(config).sell(ctx, TickContext(time=NOW), "AAA", 90.0, SellReason.DEAD_CROSS)

    t = result.transaction
    assert t.type == TradeSide.SELL
    assert t.quantity == 50
    assert t.reason == "DEAD_CROSS"
    assert t.avg_buy_price == 100.0
    assert t.fees == pytest.approx(4.5)
    assert t.total == pytest.approx(4500.0 - 4.5)
    assert t.profit == pytest.approx(-500.0 - 4.5)
    assert t.profit_rate == pytest.approx(-10.0)

    assert not OrderExecutionEngine(config).sell(ctx, TickContext(time=NOW), "BBB", 90.0, SellReason.DEAD_CROSS).ok
