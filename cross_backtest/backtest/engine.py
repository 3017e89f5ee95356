"""
백테스팅 엔진 모듈.

[ 역할 ]
    과거 봉 데이터를 시간순으로 재생하며 종목/그룹 지표를 누적 계산하고,
    골든/데드크로스 상태에 따라 가상 매매를 실행한 뒤 성과를 측정.
    시스템의 핵심 실행 루프를 담당.

[ 실행 흐름 ]
    run_backtest() 호출 시:
        start ~ end를 interval 간격으로 진행, 각 틱마다 _simulate_tick():
        1. (매매 구간) RiskManager.check() → 손절/익절/트레일링 전량 매도
        2. 그룹 순서대로, 그룹 내 종목 순서대로
           → _compute_symbol_point(): 등락률, 거래량 강도, OBV, RSI, MACD,
             볼린저, 거래량 분석, 등락률 MA/기울기 (한 틱에 종목당 1번만 계산)
           → _symbol_cross_step(): 종목 교차 상태에 따라 매수/매도
        3. _process_group(): 그룹 평균 등락률 MA → 그룹 골든/데드 엣지
           → 화이트리스트 갱신, 골든 엣지면 상위 종목 매수
        4. (매매 구간) 총 자산 기록 (equity curve)
    종료 후 build_summary(), calculate_metrics()로 결과 생성.

[ 매매 구간 ]
    trade_from ~ trade_to 밖에서는 지표/시계열만 쌓고 (워밍업),
    리스크 체크/교차 판정/주문은 하지 않는다.

[ 의존성 ]
    - core/indicators.py, core/cross_state.py
    - backtest/orders.py::OrderExecutionEngine, backtest/risk.py::RiskManager
    - backtest/metrics.py::build_summary(), calculate_metrics()

[ 호출하는 곳 ]
    - run_backtest.py (진입점)에서 생성 및 실행
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

import pandas as pd

from cross_backtest.backtest.context import SimulationContext, TickContext
from cross_backtest.backtest.metrics import BacktestMetrics, BacktestSummary, build_summary, calculate_metrics
from cross_backtest.backtest.orders import OrderExecutionEngine, score_candidate
from cross_backtest.backtest.risk import RiskManager
from cross_backtest.core import indicators
from cross_backtest.core.cross_state import CrossEvaluation, golden_guards_met
from cross_backtest.core.models import CrossState, Group, MAValue, SellReason, TimeSeriesPoint, Transaction
from cross_backtest.data.market_data import MarketData, SymbolSeries
from cross_backtest.utils.config import TradingConfig, parse_interval

logger = logging.getLogger("cross_backtest.backtest")


@dataclass
class BacktestResult:
    """백테스트 결과. 시뮬레이션 종료 후에는 읽기 전용."""
    summary: BacktestSummary
    metrics: BacktestMetrics
    transactions: list[Transaction] = field(default_factory=list)
    symbol_transactions: dict[str, list[Transaction]] = field(default_factory=dict)
    symbol_series: dict[str, list[TimeSeriesPoint]] = field(default_factory=dict)
    group_series: dict[str, list[TimeSeriesPoint]] = field(default_factory=dict)
    equity_times: list[datetime] = field(default_factory=list)
    equity_values: list[float] = field(default_factory=list)
    final_states: dict[str, CrossState] = field(default_factory=dict)

    def transactions_frame(self) -> pd.DataFrame:
        """체결 기록 DataFrame."""
        rows = []
        for t in self.transactions:
            row = asdict(t)
            row["type"] = t.type.value
            row["profit_rate"] = t.profit_rate
            rows.append(row)
        return pd.DataFrame(rows)

    def equity_frame(self) -> pd.DataFrame:
        """틱별 총 자산 DataFrame (index: time)."""
        return pd.DataFrame(
            {"total_assets": self.equity_values},
            index=pd.DatetimeIndex(self.equity_times, name="time"),
        )

    def series_frame(self, key: str, group: bool = False) -> pd.DataFrame:
        """종목(또는 그룹) 시계열 DataFrame. MA는 ma_{기간}, ma_{기간}_slope 컬럼."""
        points = (self.group_series if group else self.symbol_series).get(key, [])
        rows = []
        for p in points:
            row: dict[str, Any] = {
                "time": p.time,
                "avg_change_rate": p.avg_change_rate,
                "avg_volume_strength": p.avg_volume_strength,
                "obv": p.obv,
                "obv_slope": p.obv_slope,
                "rsi": p.rsi,
                "macd_histogram": p.macd.histogram if p.macd else None,
                "percent_b": p.bollinger_bands.percent_b if p.bollinger_bands else None,
                "volume_trend": p.volume_analysis.trend if p.volume_analysis else None,
                "golden_cross": p.golden_cross,
                "dead_cross": p.dead_cross,
            }
            for period, ma in sorted(p.ma.items()):
                row[f"ma_{period}"] = ma.value
                row[f"ma_{period}_slope"] = ma.slope
            rows.append(row)
        df = pd.DataFrame(rows)
        return df.set_index("time") if not df.empty else df

    def to_frames(self) -> dict[str, pd.DataFrame]:
        return {
            "transactions": self.transactions_frame(),
            "equity": self.equity_frame(),
        }


class BacktestEngine:
    """백테스팅 엔진. run_backtest()로 시뮬레이션 실행."""

    def __init__(self, config: TradingConfig | None = None):
        self.config = config or TradingConfig()
        self.risk = RiskManager(self.config)
        self.orders = OrderExecutionEngine(self.config, self.risk)

        # 백테스트 실행 후 채워지는 결과
        self.context: SimulationContext | None = None
        self.result: BacktestResult | None = None

    def run_backtest(
        self,
        market: MarketData,
        groups: list[Group],
        start: datetime | None = None,
        end: datetime | None = None,
        interval: str | timedelta = "1d",
        trade_from: datetime | None = None,
        trade_to: datetime | None = None,
    ) -> BacktestResult:
        """백테스트 실행.

        Args:
            market: 종목별 봉 데이터
            groups: 종목 그룹 (순서대로 처리)
            start: 시뮬레이션 시작 시각 (없으면 데이터 첫 봉)
            end: 시뮬레이션 종료 시각 (포함, 없으면 데이터 마지막 봉)
            interval: 틱 간격 ("1m", "5m", "1d" 또는 timedelta)
            trade_from: 매매 시작 시각 (없으면 start)
            trade_to: 매매 종료 시각 (없으면 end)

        Returns:
            BacktestResult: 요약, 성과 지표, 체결 기록, 시계열
        """
        step = parse_interval(interval) if isinstance(interval, str) else interval
        start, end = self._resolve_period(market, start, end)

        ctx = SimulationContext(self.config)
        self.context = ctx
        for group in groups:
            ctx.group_series[group.id] = []
            ctx.group_change_rates[group.id] = []
        for symbol in market.symbols:
            ctx.symbol_series[symbol] = []

        # 종목의 매수 판단 기준 그룹 = 그 종목을 포함한 첫 번째 그룹
        gating_groups: dict[str, Group] = {}
        for group in groups:
            for symbol in group.symbols:
                gating_groups.setdefault(symbol, group)

        if start is None or end is None:
            logger.warning("시뮬레이션할 데이터가 없습니다.")
        else:
            trade_from = trade_from or start
            trade_to = trade_to or end
            logger.info(
                f"백테스트 시작: {start} ~ {end} (interval {step}, 매매 구간 {trade_from} ~ {trade_to}, "
                f"그룹 {len(groups)}개, 종목 {len(market)}개)"
            )

            current = start
            while current <= end:
                tick = TickContext(time=current, active=trade_from <= current <= trade_to)
                self._simulate_tick(ctx, market, groups, gating_groups, tick)
                current += step

        price_at_end = (lambda s: market.price_at(s, end)) if end is not None else (lambda s: None)
        summary = build_summary(ctx.ledger, price_at_end, len(ctx.transactions))
        metrics = calculate_metrics(
            transactions=ctx.transactions.items,
            equity_values=ctx.equity_values,
            initial_balance=self.config.initial_balance,
            equity_times=ctx.equity_times,
        )

        self.result = BacktestResult(
            summary=summary,
            metrics=metrics,
            transactions=ctx.transactions.items,
            symbol_transactions=ctx.transactions.by_symbol(),
            symbol_series=ctx.symbol_series,
            group_series=ctx.group_series,
            equity_times=ctx.equity_times,
            equity_values=ctx.equity_values,
            final_states=dict(ctx.tracker.states),
        )
        logger.info(
            f"백테스트 완료. 총자산 {summary.total_assets:,.0f}원, "
            f"수익률 {summary.return_rate:.2f}%, 거래 {summary.transaction_count}건"
        )
        return self.result

    @staticmethod
    def _resolve_period(
        market: MarketData,
        start: datetime | None,
        end: datetime | None,
    ) -> tuple[datetime | None, datetime | None]:
        """기간이 없으면 데이터 전체 구간 (첫 봉 ~ 마지막 봉)."""
        if start is not None and end is not None:
            return start, end
        series = [market.get(symbol) for symbol in market.symbols]
        series = [s for s in series if s is not None and len(s)]
        if not series:
            return start, end
        first = min(s.quotes[0].timestamp for s in series)
        last = max(s.quotes[-1].timestamp for s in series)
        return start or first, end or last

    def _simulate_tick(
        self,
        ctx: SimulationContext,
        market: MarketData,
        groups: list[Group],
        gating_groups: dict[str, Group],
        tick: TickContext,
    ) -> None:
        """1틱 시뮬레이션. 리스크 체크 → 종목 → 그룹 순서."""
        if tick.active:
            self.risk.check(ctx, tick, market, self.orders)

        for group in groups:
            for symbol in dict.fromkeys(group.symbols):
                if symbol in tick.points:
                    continue  # 여러 그룹에 속한 종목은 이번 틱에 이미 계산됨
                series = market.get(symbol)
                if series is None:
                    continue
                self._update_symbol(ctx, series, symbol, gating_groups, tick)

            self._process_group(ctx, group, tick)

        if tick.active:
            ctx.equity_times.append(tick.time)
            ctx.equity_values.append(ctx.ledger.total_assets(lambda s: market.price_at(s, tick.time)))

    # ─── 종목 ────────────────────────────────────────────────────────────

    def _update_symbol(
        self,
        ctx: SimulationContext,
        series: SymbolSeries,
        symbol: str,
        gating_groups: dict[str, Group],
        tick: TickContext,
    ) -> None:
        """종목 포인트 계산 → 교차 판정/주문 → 시계열 저장."""
        previous = ctx.previous_point(symbol)
        point = self._compute_symbol_point(ctx, series, symbol, previous, tick)
        if point is None:
            return

        if tick.active and previous is not None:
            self._symbol_cross_step(ctx, symbol, point, previous, gating_groups, tick)

        ctx.symbol_series[symbol].append(point)
        tick.points[symbol] = point

    def _compute_symbol_point(
        self,
        ctx: SimulationContext,
        series: SymbolSeries,
        symbol: str,
        previous: TimeSeriesPoint | None,
        tick: TickContext,
    ) -> TimeSeriesPoint | None:
        """현재 시각 이하 봉으로 종목 지표 계산. 봉이 없거나 기준가가 0이면 None."""
        count = series.count_until(tick.time)
        if count == 0 or not series.open:
            return None

        acc = ctx.accumulator(symbol)
        acc.consume(series.quotes, count)
        quote = series.quotes[count - 1]
        tick.prices[symbol] = quote.close

        change_rate = indicators.calculate_change_rate(quote.close, series.open)
        volume_strength = indicators.calculate_volume_strength(quote.volume, acc.previous_average_volume())
        acc.change_rates.append(change_rate)

        # TODO: MACD는 매 틱 전체 종가로 다시 계산한다. EMA 상태를 누적하면 O(n)으로 줄일 수 있음
        return TimeSeriesPoint(
            time=tick.time,
            avg_change_rate=change_rate,
            avg_volume_strength=volume_strength,
            ma=self._moving_averages(acc.change_rates, previous),
            obv=acc.obv,
            obv_slope=indicators.calculate_obv_slope(acc.obv, previous.obv if previous else None),
            rsi=indicators.calculate_rsi(acc.closes),
            macd=indicators.calculate_macd(acc.closes),
            bollinger_bands=indicators.calculate_bollinger_bands(acc.closes),
            volume_analysis=indicators.analyze_volume(acc.volumes, acc.closes),
        )

    def _moving_averages(self, rates: list[float], previous: TimeSeriesPoint | None) -> dict[int, MAValue]:
        """등락률 시계열의 MA와 직전 포인트 대비 기울기."""
        index = len(rates) - 1
        values: dict[int, MAValue] = {}
        for period in self.config.all_ma_periods:
            value = indicators.calculate_ma(rates, period, index)
            if value is None:
                continue
            prev_ma = previous.ma.get(period) if previous else None
            slope = indicators.calculate_ma_slope(value, prev_ma.value if prev_ma else None)
            values[period] = MAValue(value=value, slope=slope)
        return values

    def _symbol_cross_step(
        self,
        ctx: SimulationContext,
        symbol: str,
        point: TimeSeriesPoint,
        previous: TimeSeriesPoint,
        gating_groups: dict[str, Group],
        tick: TickContext,
    ) -> None:
        evaluation = ctx.tracker.evaluate(symbol, point.ma, previous.ma)
        if not evaluation.available:
            return
        if evaluation.state == CrossState.DEAD:
            self._on_dead(ctx, symbol, point, evaluation, tick)
        elif evaluation.state == CrossState.GOLDEN:
            self._on_golden(ctx, symbol, point, previous, evaluation, gating_groups, tick)

    def _on_dead(
        self,
        ctx: SimulationContext,
        symbol: str,
        point: TimeSeriesPoint,
        evaluation: CrossEvaluation,
        tick: TickContext,
    ) -> None:
        """데드크로스 진입/유지 매도."""
        price = tick.prices[symbol]
        holding = ctx.ledger.holding(symbol)

        if evaluation.entered:
            point.dead_cross = True
            logger.debug(f"[{tick.time}] 데드크로스 진입: {symbol}")
            if holding is None:
                return
            if holding.buy_time == tick.time:
                logger.debug(f"[{tick.time}] {symbol} 이번 틱 매수 종목, 데드크로스 매도 생략")
                return

            profit_rate = (price - holding.avg_price) / holding.avg_price
            if self.config.features.stop_loss and profit_rate <= self.config.sell.stop_loss:
                reason = SellReason.STOP_LOSS
            elif evaluation.below:
                reason = SellReason.DEAD_CROSS_BELOW
            else:
                reason = SellReason.DEAD_CROSS
            self.orders.sell(ctx, tick, symbol, price, reason)
            ctx.last_sell_price[symbol] = price
            return

        if holding is None or holding.buy_time == tick.time:
            return

        if evaluation.below_crossed:
            self.orders.sell(ctx, tick, symbol, price, SellReason.DEAD_CROSS_BELOW)
            return

        if self.config.features.dead_cross_additional_sell:
            last_price = ctx.last_sell_price.get(symbol)
            if last_price:
                decline = (last_price - price) / last_price
                if decline >= self.config.sell.additional_sell_threshold:
                    self.orders.sell(ctx, tick, symbol, price, SellReason.DEAD_CROSS_ADDITIONAL)
                    ctx.last_sell_price[symbol] = price

    def _on_golden(
        self,
        ctx: SimulationContext,
        symbol: str,
        point: TimeSeriesPoint,
        previous: TimeSeriesPoint,
        evaluation: CrossEvaluation,
        gating_groups: dict[str, Group],
        tick: TickContext,
    ) -> None:
        """골든크로스 진입 매수, 유지 중 재매수/피라미딩."""
        golden = self.config.golden_cross
        entry = evaluation.entered

        if entry:
            ctx.golden_cycle_first_buy[symbol] = False
            ctx.last_sell_price.pop(symbol, None)
            if evaluation.guards_met:
                point.golden_cross = True
            logger.debug(f"[{tick.time}] 골든크로스 진입: {symbol} (가드 {'충족' if evaluation.guards_met else '미충족'})")

        holding = ctx.ledger.is_holding(symbol)
        if holding and not self.config.features.pyramiding:
            return
        if not evaluation.guards_met:
            return

        if not entry:
            if golden.from_period not in previous.ma or golden.to_period not in previous.ma:
                return
            if not holding:
                # 청산 후 재매수. 이번 틱에 판 종목은 다음 틱에
                if symbol in tick.sold_symbols:
                    return
            elif golden_guards_met(previous.ma, golden):
                # 보유 중: 직전 틱에 가드 미충족 → 이번 틱 충족일 때만 피라미딩
                return

        if symbol in tick.bought_symbols:
            return

        group = gating_groups.get(symbol)
        if group is None:
            return
        if not self.config.features.only_symbol_golden_cross and not ctx.tracker.is_buyable(group.id):
            logger.debug(f"[{tick.time}] {symbol} 그룹 {group.id} 매수 가능 목록에 없음")
            return

        is_rebuy = ctx.golden_cycle_first_buy.get(symbol, False) and not holding
        result = self.orders.buy(
            ctx, tick, symbol, tick.prices[symbol], point, previous,
            is_rebuy=is_rebuy,
            is_golden_cross_entry=entry,
        )
        if result.ok:
            ctx.golden_cycle_first_buy[symbol] = True

    # ─── 그룹 ────────────────────────────────────────────────────────────

    def _process_group(self, ctx: SimulationContext, group: Group, tick: TickContext) -> None:
        """그룹 평균 등락률/거래량 강도 → 그룹 MA → 그룹 교차 → 화이트리스트/매수."""
        points = [tick.points[s] for s in dict.fromkeys(group.symbols) if s in tick.points]
        if not points:
            return

        avg_change_rate = sum(p.avg_change_rate for p in points) / len(points)
        avg_volume_strength = sum(p.avg_volume_strength for p in points) / len(points)

        rates = ctx.group_change_rates[group.id]
        rates.append(avg_change_rate)
        previous = ctx.previous_group_point(group.id)
        group_point = TimeSeriesPoint(
            time=tick.time,
            avg_change_rate=avg_change_rate,
            avg_volume_strength=avg_volume_strength,
            ma=self._moving_averages(rates, previous),
        )

        if tick.active and previous is not None:
            event = ctx.tracker.evaluate_group(group.id, group_point.ma, previous.ma)
            if event.golden_edge:
                group_point.golden_cross = True
                logger.info(f"[{tick.time}] 그룹 골든크로스: {group.label} → 매수 가능 그룹 {len(ctx.tracker.buyable_groups)}개")
                self._buy_group_candidates(ctx, group, tick)
            if event.dead_edge:
                group_point.dead_cross = True
                logger.info(f"[{tick.time}] 그룹 데드크로스: {group.label} → 매수 가능 목록에서 제거")

        ctx.group_series[group.id].append(group_point)

    def _buy_group_candidates(self, ctx: SimulationContext, group: Group, tick: TickContext) -> None:
        """그룹 골든 엣지: 이미 골든 배열인 종목을 점수순으로 상위 symbol_size개 매수."""
        golden = self.config.golden_cross
        candidates: list[tuple[float, str, TimeSeriesPoint, TimeSeriesPoint | None]] = []

        for symbol in dict.fromkeys(group.symbols):
            series = ctx.symbol_series.get(symbol)
            if not series:
                continue
            current = series[-1]
            fast = current.ma.get(golden.from_period)
            slow = current.ma.get(golden.to_period)
            if fast is None or slow is None or not fast.value > slow.value:
                continue
            if ctx.tracker.state_of(symbol) == CrossState.DEAD:
                continue
            if not golden_guards_met(current.ma, golden):
                continue
            if ctx.ledger.is_holding(symbol) and not self.config.features.pyramiding:
                continue
            previous = series[-2] if len(series) > 1 else None
            candidates.append((score_candidate(self.config, current), symbol, current, previous))

        # 점수 내림차순 (동점은 그룹 내 순서 유지)
        candidates.sort(key=lambda c: c[0], reverse=True)
        for _, symbol, current, previous in candidates[:self.config.buy.symbol_size]:
            if symbol in tick.bought_symbols:
                continue
            price = tick.prices.get(symbol)
            if price is None:
                continue
            self.orders.buy(ctx, tick, symbol, price, current, previous)

    # ─── 리포트 ──────────────────────────────────────────────────────────

    def generate_report(self) -> dict[str, Any]:
        """백테스트 리포트 생성."""
        if self.result is None:
            return {"error": "백테스트를 먼저 실행하세요."}

        result = self.result
        return {
            "summary": result.summary.to_dict(),
            "metrics": result.metrics.to_dict(),
            "trade_count": len(result.transactions),
            "trades": [
                {
                    "time": t.time,
                    "type": t.type.value,
                    "symbol": t.symbol,
                    "quantity": t.quantity,
                    "price": t.price,
                    "profit": t.profit,
                    "reason": t.reason,
                }
                for t in result.transactions
            ],
        }
