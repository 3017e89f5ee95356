"""
주문 실행 모듈.

[ 역할 ]
    매수 필터 체인 → 수량 계산 → 원장(Ledger) 반영 → 체결 기록(Transaction) 생성.
    매도도 수량 계산 후 원장 반영, 실현 손익을 RiskManager에 전달.

[ 매수 흐름 ]
    buy() 호출 시 (← backtest/engine.py 종목/그룹 골든크로스)
        ├── evaluate_buy_filters(): 기능 플래그가 켜진 필터만 순서대로 검사
        │     시간대 → 연속 손실 → 거래량 강도 → 기울기 → MA 간격
        │     → OBV → RSI → MACD → 볼린저 %B → 거래량 추세/다이버전스
        ├── 보유 중이면 피라미딩 판정 (골든크로스 진입 시점은 피라미딩 아님)
        ├── 수량 계산
        │     신규/진입: floor(잔고 × buy.stock_rate / 가격)
        │     피라미딩: entry_cost를 절반씩 나눠 다음 분할 금액 결정
        └── Ledger.buy() → Transaction 기록

[ 매도 수량 ]
    손절/익절/트레일링/below 매도 또는 force_full → 전량
    그 외 → round(보유 × sell.stock_rate), 최소 1주, 남는 수량이 적으면 전량

[ 호출하는 곳 ]
    - backtest/engine.py::BacktestEngine (교차 매매)
    - backtest/risk.py::RiskManager.check() (청산 매도)
"""

import logging
import math
from dataclasses import dataclass

from cross_backtest.backtest.context import SimulationContext, TickContext
from cross_backtest.core.models import Holding, SellReason, TimeSeriesPoint, TradeSide, Transaction
from cross_backtest.utils.config import TradingConfig

logger = logging.getLogger("cross_backtest.orders")


@dataclass(frozen=True)
class FilterDecision:
    """매수 필터 판정. ok=False면 reason에 첫 번째로 걸린 필터 사유."""
    ok: bool
    reason: str = ""


@dataclass(frozen=True)
class OrderResult:
    """주문 결과. 거부되면 transaction은 None."""
    ok: bool
    transaction: Transaction | None = None
    reason: str = ""


def evaluate_buy_filters(
    config: TradingConfig,
    tick: TickContext,
    point: TimeSeriesPoint,
    trading_paused: bool = False,
) -> FilterDecision:
    """매수 필터 체인. 지표가 아직 없으면(None) 해당 필터는 통과."""
    features = config.features
    buy = config.buy

    if features.time_filter and tick.time.hour in config.time_filter.exclude_hours:
        return FilterDecision(False, f"제외 시간대 ({tick.time.hour}시)")

    if features.consecutive_loss_protection and trading_paused:
        return FilterDecision(False, "연속 손실로 매수 중단 상태")

    if features.volume_strength_filter and point.avg_volume_strength < buy.min_volume_strength:
        return FilterDecision(False, f"거래량 강도 부족 ({point.avg_volume_strength:.1f}% < {buy.min_volume_strength}%)")

    fast = point.ma.get(config.golden_cross.from_period)
    slow = point.ma.get(config.golden_cross.to_period)

    if features.slope_filter and fast is not None and fast.slope <= buy.min_slope:
        return FilterDecision(False, f"기울기 부족 ({fast.slope:.4f} <= {buy.min_slope})")

    if features.ma_gap_filter and fast is not None and slow is not None and slow.value != 0:
        gap = (fast.value - slow.value) / abs(slow.value)
        if gap > buy.max_ma_gap:
            return FilterDecision(False, f"MA 간격 과다 ({gap * 100:.2f}% > {buy.max_ma_gap * 100:.2f}%)")

    if features.obv_filter and point.obv_slope is not None and point.obv_slope < buy.min_obv_slope:
        return FilterDecision(False, f"OBV 기울기 부족 ({point.obv_slope:.2f}% < {buy.min_obv_slope}%)")

    if features.rsi_filter and point.rsi is not None:
        if point.rsi < buy.min_rsi or point.rsi > buy.max_rsi:
            return FilterDecision(False, f"RSI 범위 밖 ({point.rsi:.1f}, 허용 {buy.min_rsi}~{buy.max_rsi})")

    if features.macd_filter and point.macd is not None:
        if buy.macd_bullish and point.macd.histogram <= 0:
            return FilterDecision(False, f"MACD 약세 (histogram {point.macd.histogram:.4f})")

    if features.bollinger_bands_filter and point.bollinger_bands is not None:
        percent_b = point.bollinger_bands.percent_b
        if percent_b < buy.min_bollinger_percent_b or percent_b > buy.max_bollinger_percent_b:
            return FilterDecision(False, (
                f"볼린저 %B 범위 밖 ({percent_b:.2f}, "
                f"허용 {buy.min_bollinger_percent_b}~{buy.max_bollinger_percent_b})"
            ))

    if features.volume_analysis_filter and point.volume_analysis is not None:
        analysis = point.volume_analysis
        required = buy.volume_trend_required
        if required != "any" and analysis.trend != required:
            return FilterDecision(False, f"거래량 추세 불일치 ({analysis.trend}, 요구 {required})")
        if buy.avoid_price_volume_divergence and analysis.divergence:
            return FilterDecision(False, "가격-거래량 다이버전스")

    return FilterDecision(True)


def score_candidate(config: TradingConfig, point: TimeSeriesPoint) -> float:
    """그룹 골든크로스 후보 점수. 켜진 필터 항목만 가중합."""
    features = config.features
    weights = config.score_weights
    fast = point.ma.get(config.golden_cross.from_period)
    slow = point.ma.get(config.golden_cross.to_period)

    score = 0.0
    if features.slope_filter and fast is not None:
        score += fast.slope * weights.slope
    if features.volume_strength_filter:
        score += point.avg_volume_strength * weights.volume
    if features.ma_gap_filter and fast is not None and slow is not None and slow.value != 0:
        gap = (fast.value - slow.value) / abs(slow.value)
        score += (1 - gap) * weights.ma_gap * 100
    return score


def pyramid_investment(holding: Holding) -> float:
    """다음 피라미딩 분할 금액.

    entry_cost, entry_cost/2, entry_cost/4 ... 순서로 각 분할의 수량을 누적해
    현재 보유 수량에 도달하면, 그다음 절반 금액을 반환한다.
    """
    investment = holding.entry_cost
    accumulated = 0
    while accumulated < holding.quantity:
        step = math.floor(investment / holding.avg_price) if holding.avg_price > 0 else 0
        if step <= 0:
            break
        accumulated += step
        investment /= 2
    return investment


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


class OrderExecutionEngine:
    """매수/매도 실행기. 원장 변경은 항상 이 클래스를 통한다."""

    def __init__(self, config: TradingConfig, risk=None):
        self.config = config
        self.risk = risk  # RiskManager (매도 손익 전달 대상)

    def buy(
        self,
        ctx: SimulationContext,
        tick: TickContext,
        symbol: str,
        price: float,
        point: TimeSeriesPoint,
        previous_point: TimeSeriesPoint | None = None,
        is_rebuy: bool = False,
        is_golden_cross_entry: bool = False,
    ) -> OrderResult:
        """매수 실행. 필터/피라미딩/잔고 조건에 걸리면 ok=False (로그만 남김)."""
        decision = evaluate_buy_filters(self.config, tick, point, ctx.trading_paused)
        if not decision.ok:
            return self._reject(tick, symbol, decision.reason)

        holding = ctx.ledger.holding(symbol)
        is_pyramiding = False
        if holding is not None and not is_golden_cross_entry:
            if not self.config.features.pyramiding:
                return self._reject(tick, symbol, "보유 중 (피라미딩 비활성)")

            fast_period = self.config.golden_cross.from_period
            fast = point.ma.get(fast_period)
            prev_fast = previous_point.ma.get(fast_period) if previous_point else None
            if fast is not None and prev_fast is not None and fast.slope <= prev_fast.slope:
                return self._reject(tick, symbol, (
                    f"기울기 증가 없음 ({fast.slope:.4f} <= {prev_fast.slope:.4f}), 피라미딩 생략"
                ))
            is_pyramiding = True

        if is_pyramiding:
            investment = pyramid_investment(holding)
            quantity = max(1, math.floor(investment / price))
        else:
            investment = ctx.ledger.balance * self.config.buy.stock_rate
            quantity = math.floor(investment / price)

        if quantity == 0:
            return self._reject(tick, symbol, f"1주도 살 수 없음 (가격 {price:,.2f}, 투자금 {investment:,.0f})")

        result = ctx.ledger.buy(symbol, quantity, price, self.config.trade_fees.buy, tick.time,
                                is_pyramiding=is_pyramiding)
        if not result.ok:
            return self._reject(tick, symbol, f"{result.reason} (필요 {result.total + result.fees:,.0f})")

        transaction = Transaction(
            time=tick.time,
            type=TradeSide.BUY,
            symbol=symbol,
            quantity=quantity,
            price=price,
            fees=result.fees,
            total=result.total + result.fees,
            is_pyramiding=is_pyramiding,
            is_rebuy=is_rebuy,
            is_golden_cross_entry=is_golden_cross_entry,
        )
        ctx.transactions.append(transaction)
        tick.bought_symbols.add(symbol)

        tag = "피라미딩" if is_pyramiding else ("재매수" if is_rebuy else "매수")
        logger.info(f"[{tick.time}] {tag}: {symbol} {quantity}주 @ {price:,.2f} (수수료 {result.fees:,.0f})")
        return OrderResult(True, transaction)

    def sell_quantity(self, held: int, reason: SellReason, force_full: bool = False) -> int:
        """매도 수량. 부분 매도 후 남는 수량이 min_remaining_quantity 미만이면 전량."""
        if force_full or reason.forces_full_sell:
            return held

        quantity = round_half_up(held * self.config.sell.stock_rate)
        quantity = min(max(quantity, 1), held)
        remaining = held - quantity
        if 0 < remaining < self.config.sell.min_remaining_quantity:
            return held
        return quantity

    def sell(
        self,
        ctx: SimulationContext,
        tick: TickContext,
        symbol: str,
        price: float,
        reason: SellReason,
        force_full: bool = False,
    ) -> OrderResult:
        """매도 실행. 미보유면 ok=False."""
        holding = ctx.ledger.holding(symbol)
        if holding is None:
            return OrderResult(False, reason="미보유")

        quantity = self.sell_quantity(holding.quantity, reason, force_full)
        result = ctx.ledger.sell(symbol, quantity, price, self.config.trade_fees.sell)
        if not result.ok:
            return self._reject(tick, symbol, result.reason)

        transaction = Transaction(
            time=tick.time,
            type=TradeSide.SELL,
            symbol=symbol,
            quantity=quantity,
            price=price,
            fees=result.fees,
            total=result.total - result.fees,
            avg_buy_price=result.avg_price,
            profit=result.profit,
            reason=reason.value,
        )
        ctx.transactions.append(transaction)

        if self.risk is not None:
            self.risk.record_trade_result(ctx, result.profit)

        logger.info(
            f"[{tick.time}] 매도({reason.value}): {symbol} {quantity}주 @ {price:,.2f} "
            f"→ 손익 {result.profit:+,.0f} ({transaction.profit_rate:+.2f}%)"
        )
        return OrderResult(True, transaction)

    @staticmethod
    def _reject(tick: TickContext, symbol: str, reason: str) -> OrderResult:
        logger.debug(f"[{tick.time}] {symbol} 주문 생략: {reason}")
        return OrderResult(False, reason=reason)
