"""
리스크 관리 모듈.

[ 역할 ]
    매 틱 교차 판정 전에 보유 종목의 손절/익절/트레일링 스톱을 점검하고,
    매도 결과로 연속 손실 카운터를 관리한다.

[ 점검 흐름 ]
    check() 호출 시 (← backtest/engine.py, 매매 구간에서만):
        보유 종목마다 (이번 틱에 매수한 종목 제외)
        ├── 최고가(max_price) 갱신
        ├── 손절:       stop_loss ON + DEAD 상태 + 수익률 <= sell.stop_loss
        ├── 익절:       take_profit ON + 수익률 >= sell.take_profit
        └── 트레일링:   trailing_stop ON + DEAD 상태 + 최고가 대비 <= -trailing_stop_percent
        → 첫 번째로 걸린 사유로 전량 매도, 매도 종목 집합 반환

[ 연속 손실 보호 ]
    consecutive_loss_protection ON일 때 손실 매도마다 카운터 +1,
    손실이 아닌 매도는 리셋. max_consecutive_losses 도달 시 매수 중단(trading_paused).
"""

import logging

from cross_backtest.backtest.context import SimulationContext, TickContext
from cross_backtest.core.models import CrossState, Holding, SellReason
from cross_backtest.data.market_data import MarketData
from cross_backtest.utils.config import TradingConfig

logger = logging.getLogger("cross_backtest.risk")


class RiskManager:
    """손절/익절/트레일링 스톱 + 연속 손실 보호."""

    def __init__(self, config: TradingConfig):
        self.config = config

    def evaluate(self, holding: Holding, price: float, state: CrossState) -> tuple[SellReason | None, str]:
        """청산 사유 판정. max_price는 호출 전에 갱신되어 있어야 한다.

        Returns:
            (매도 사유 또는 None, 설명)
        """
        features = self.config.features
        sell = self.config.sell
        profit_rate = (price - holding.avg_price) / holding.avg_price

        if features.stop_loss and state == CrossState.DEAD and profit_rate <= sell.stop_loss:
            return SellReason.STOP_LOSS, f"손절 ({profit_rate * 100:.2f}% <= {sell.stop_loss * 100:.2f}%)"

        if features.take_profit and profit_rate >= sell.take_profit:
            return SellReason.TAKE_PROFIT, f"익절 ({profit_rate * 100:.2f}% >= {sell.take_profit * 100:.2f}%)"

        if features.trailing_stop and state == CrossState.DEAD and holding.max_price > 0:
            drawdown = (price - holding.max_price) / holding.max_price
            if drawdown <= -sell.trailing_stop_percent:
                return SellReason.TRAILING_STOP, (
                    f"트레일링 스톱 (최고가 {holding.max_price:,.2f} 대비 {drawdown * 100:.2f}%)"
                )

        return None, f"현재 수익률: {profit_rate * 100:.2f}%"

    def check(self, ctx: SimulationContext, tick: TickContext, market: MarketData, orders) -> set[str]:
        """보유 종목 청산 점검. 이번 틱에 매도된 종목 집합을 반환."""
        sold: set[str] = set()

        for symbol in list(ctx.ledger.holdings):
            holding = ctx.ledger.holding(symbol)
            if holding is None or holding.buy_time == tick.time:
                continue

            price = market.price_at(symbol, tick.time)
            if price is None:
                continue

            holding.max_price = max(holding.max_price, price)
            reason, message = self.evaluate(holding, price, ctx.tracker.state_of(symbol))
            if reason is None:
                continue

            logger.info(f"[{tick.time}] {symbol} {message}")
            if orders.sell(ctx, tick, symbol, price, reason).ok:
                sold.add(symbol)

        tick.sold_symbols.update(sold)
        return sold

    def record_trade_result(self, ctx: SimulationContext, profit: float) -> None:
        """매도 실현 손익 반영. 손실이면 카운터 증가, 아니면 리셋 + 매수 재개."""
        if not self.config.features.consecutive_loss_protection:
            return

        if profit < 0:
            ctx.consecutive_losses += 1
            limit = self.config.risk_management.max_consecutive_losses
            if ctx.consecutive_losses >= limit and not ctx.trading_paused:
                ctx.trading_paused = True
                logger.warning(f"연속 손실 {ctx.consecutive_losses}회 → 매수 중단")
        else:
            if ctx.trading_paused:
                logger.info(f"수익 매도 발생 → 매수 재개 (연속 손실 {ctx.consecutive_losses}회 리셋)")
            ctx.consecutive_losses = 0
            ctx.trading_paused = False
