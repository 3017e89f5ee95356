from datetime import datetime, timedelta

from cross_backtest.backtest.context import SimulationContext, TickContext
from cross_backtest.backtest.orders import OrderExecutionEngine
from cross_backtest.backtest.risk import RiskManager
from cross_backtest.core.models import CrossState, Holding, SellReason
from cross_backtest.data.market_data import MarketData
from cross_backtest.utils.config import FeatureFlags, RiskManagementConfig, TradingConfig

BOUGHT = datetime(2025, 1, 1)


def _holding(avg=100.0, max_price=100.0):
    return Holding(quantity=100, avg_price=avg, max_price=max_price, buy_time=BOUGHT)


def test_stop_loss_only_in_dead_state():
    risk = RiskManager(TradingConfig())
    reason, _ = risk.evaluate(_holding(), 85.0, CrossState.DEAD)
    assert reason == SellReason.STOP_LOSS

    reason, message = risk.evaluate(_holding(), 85.0, CrossState.GOLDEN)
    assert reason is None
    assert "-15.00%" in message


def test_take_profit_in_any_state():
    risk = RiskManager(TradingConfig())
    reason, _ = risk.evaluate(_holding(), 160.0, CrossState.GOLDEN)
    assert reason == SellReason.TAKE_PROFIT


def test_trailing_stop_from_max_price():
    config = TradingConfig(features=FeatureFlags(trailing_stop=True))
    risk = RiskManager(config)

    reason, _ = risk.evaluate(_holding(max_price=120.0), 110.0, CrossState.DEAD)
    assert reason == SellReason.TRAILING_STOP

    reason, _ = risk.evaluate(_holding(max_price=120.0), 110.0, CrossState.GOLDEN)
    assert reason is None

    reason, _ = risk.evaluate(_holding(max_price=112.0), 110.0, CrossState.DEAD)
    assert reason is None


def test_disabled_features_never_trigger():
    config = TradingConfig(features=FeatureFlags(stop_loss=False, take_profit=False))
    risk = RiskManager(config)
    assert risk.evaluate(_holding(), 10.0, CrossState.DEAD)[0] is None
    assert risk.evaluate(_holding(), 1000.0, CrossState.DEAD)[0] is None


def test_check_sells_in_full_and_skips_same_tick_buys(make_quotes):
    config = TradingConfig(initial_balance=1_000_000)
    risk = RiskManager(config)
    orders = OrderExecutionEngine(config, risk)
    market = MarketData.from_quotes({
        "AAA": make_quotes([100.0, 160.0], start=BOUGHT),
        "BBB": make_quotes([100.0, 160.0], start=BOUGHT),
    })
    now = BOUGHT + timedelta(days=1)

    ctx = SimulationContext(config)
    ctx.ledger.buy("AAA", 10, 100.0, 0.0, BOUGHT)
    ctx.ledger.buy("BBB", 10, 100.0, 0.0, now)
    tick = TickContext(time=now)

    sold = risk.check(ctx, tick, market, orders)

    assert sold == {"AAA"}
    assert tick.sold_symbols == {"AAA"}
    assert not ctx.ledger.is_holding("AAA")
    assert ctx.ledger.holding("BBB").quantity == 10
    sell = ctx.transactions.for_symbol("AAA")[-1]
    assert sell.reason == SellReason.TAKE_PROFIT.value
    assert sell.quantity == 10


def test_check_updates_max_price(make_quotes):
    config = TradingConfig(features=FeatureFlags(stop_loss=False, take_profit=False))
    risk = RiskManager(config)
    market = MarketData.from_quotes({"AAA": make_quotes([100.0, 130.0], start=BOUGHT)})

    ctx = SimulationContext(config)
    ctx.ledger.buy("AAA", 10, 100.0, 0.0, BOUGHT)
    risk.check(ctx, TickContext(time=BOUGHT + timedelta(days=1)), market, OrderExecutionEngine(config, risk))

    assert ctx.ledger.holding("AAA").max_price == 130.0


def test_consecutive_losses_pause_and_resume():
    config = TradingConfig(
        features=FeatureFlags(consecutive_loss_protection=True),
        risk_management=RiskManagementConfig(max_consecutive_losses=3),
    )
    risk = RiskManager(config)
    ctx = SimulationContext(config)

    risk.record_trade_result(ctx, -1.0)
    risk.record_trade_result(ctx, -1.0)
    assert not ctx.trading_paused
    risk.record_trade_result(ctx, -1.0)
    assert ctx.trading_paused
    assert ctx.consecutive_losses == 3

    risk.record_trade_result(ctx, 0.0)
    assert not ctx.trading_paused
    assert ctx.consecutive_losses == 0


def test_loss_counter_ignored_without_protection():
    config = TradingConfig()
    risk = RiskManager(config)
    ctx = SimulationContext(config)
    for _ in range(5):
        risk.record_trade_result(ctx, -1.0)
    assert ctx.consecutive_losses == 0
    assert not ctx.trading_paused


def test_sell_feeds_loss_counter():
    config = TradingConfig(
        features=FeatureFlags(consecutive_loss_protection=True),
        risk_management=RiskManagementConfig(max_consecutive_losses=1),
    )
    risk = RiskManager(config)
    orders = OrderExecutionEngine(config, risk)
    ctx = SimulationContext(config)
    ctx.ledger.buy("AAA", 10, 100.0, 0.0, BOUGHT)

    orders.sell(ctx, TickContext(time=BOUGHT + timedelta(days=1)), "AAA", 90.0, SellReason.DEAD_CROSS)
    assert ctx.trading_paused
