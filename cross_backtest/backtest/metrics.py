"""
백테스트 성과 지표 계산 모듈.

[ 역할 ]
    시뮬레이션 결과(체결 기록 + 틱별 총자산)를 받아 최종 요약과 성과 지표를 계산.
    build_summary(), calculate_metrics() 두 함수가 핵심.

[ 계산하는 지표 ]
    - 최종 요약: 잔고, 보유 평가액, 총자산, 총손익, 수익률, 거래 수
    - 총 수익률 / 연환산 수익률
    - 샤프 비율 (위험 대비 수익)
    - MDD (최대 낙폭)
    - 승률, 평균 수익/손실, 수익 팩터, 연속 승/패
    - 매도 사유별 횟수

[ 호출하는 곳 ]
    - backtest/engine.py::BacktestEngine.run_backtest() 완료 시 호출

[ 입력 데이터 ]
    - transactions: SimulationContext.transactions (매도 거래만 손익 분석)
    - equity_values / equity_times: engine.py에서 매 틱 기록한 총자산
"""

from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

import numpy as np

from cross_backtest.core.models import TradeSide, Transaction
from cross_backtest.data.ledger import Ledger

TRADING_DAYS_PER_YEAR = 252  # 한국 기준 연간 약 252 거래일
RISK_FREE_RATE = 0.03


@dataclass
class BacktestSummary:
    """시뮬레이션 종료 시점 계좌 요약."""
    final_balance: float = 0.0     # 현금 잔고
    holdings_value: float = 0.0    # 보유 종목 평가액 (종료 시점 마지막 종가)
    total_assets: float = 0.0
    total_profit: float = 0.0
    return_rate: float = 0.0       # 수익률 (%)
    transaction_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BacktestMetrics:
    """백테스트 성과 지표. summary()로 포맷된 리포트 출력 가능."""
    total_return: float = 0.0         # 총 수익률 (%)
    annual_return: float = 0.0        # 연환산 수익률 (%)
    sharpe_ratio: float = 0.0         # 샤프 비율 (높을수록 좋음, 1 이상 양호)
    max_drawdown: float = 0.0         # 최대 낙폭 MDD (%)
    win_rate: float = 0.0             # 승률 (%)
    avg_profit: float = 0.0           # 수익 거래 평균 이익 (원)
    avg_loss: float = 0.0             # 손실 거래 평균 손실 (원)
    profit_factor: float = 0.0        # 총이익 / 총손실 (1 이상이면 수익)
    total_trades: int = 0             # 매도 거래 횟수
    winning_trades: int = 0           # 수익 거래 수
    losing_trades: int = 0            # 손실 거래 수
    max_consecutive_wins: int = 0     # 최대 연속 수익
    max_consecutive_losses: int = 0   # 최대 연속 손실
    sell_reasons: dict[str, int] = field(default_factory=dict)  # 매도 사유별 횟수

    def to_dict(self) -> dict[str, Any]:
        """딕셔너리 변환."""
        return asdict(self)

    def summary(self) -> str:
        """성과 요약 문자열."""
        lines = [
            "=" * 50,
            "백테스트 성과 리포트",
            "=" * 50,
            f"총 수익률:       {self.total_return:>10.2f}%",
            f"연환산 수익률:    {self.annual_return:>10.2f}%",
            f"샤프 비율:       {self.sharpe_ratio:>10.2f}",
            f"최대 낙폭(MDD):  {self.max_drawdown:>10.2f}%",
            "-" * 50,
            f"총 거래 횟수:    {self.total_trades:>10d}",
            f"승률:            {self.win_rate:>10.2f}%",
            f"수익 거래:       {self.winning_trades:>10d}",
            f"손실 거래:       {self.losing_trades:>10d}",
            f"평균 수익:       {self.avg_profit:>10,.0f}원",
            f"평균 손실:       {self.avg_loss:>10,.0f}원",
            f"수익 팩터:       {self.profit_factor:>10.2f}",
            "-" * 50,
            f"최대 연속 수익:  {self.max_consecutive_wins:>10d}",
            f"최대 연속 손실:  {self.max_consecutive_losses:>10d}",
        ]
        if self.sell_reasons:
            lines.append("-" * 50)
            for reason, count in self.sell_reasons.items():
                lines.append(f"{reason + ':':<22}{count:>6d}")
        lines.append("=" * 50)
        return "\n".join(lines)


def build_summary(
    ledger: Ledger,
    price_fn: Callable[[str], float | None],
    transaction_count: int,
) -> BacktestSummary:
    """종료 시점 계좌 요약. price_fn은 종목의 종료 시점 마지막 종가."""
    holdings_value = ledger.holdings_value(price_fn)
    total_assets = ledger.balance + holdings_value
    total_profit = total_assets - ledger.initial_balance
    return BacktestSummary(
        final_balance=ledger.balance,
        holdings_value=holdings_value,
        total_assets=total_assets,
        total_profit=total_profit,
        return_rate=total_profit / ledger.initial_balance * 100 if ledger.initial_balance else 0.0,
        transaction_count=transaction_count,
    )


def calculate_metrics(
    transactions: Sequence[Transaction],
    equity_values: Sequence[float],
    initial_balance: float,
    equity_times: Sequence[datetime] | None = None,
) -> BacktestMetrics:
    """성과 지표 계산. engine.py에서 백테스트 완료 후 호출됨.

    Args:
        transactions: 전체 체결 기록 (매수+매도)
        equity_values: 틱별 총 자산 리스트 (현금 + 보유종목 평가)
        initial_balance: 초기 자금
        equity_times: equity_values의 시각. 거래일 수/연환산 기준
    """
    metrics = BacktestMetrics()

    if not equity_values:
        return metrics

    # ─── 수익률 계산 ─────────────────────────────────────────────────────
    final_value = equity_values[-1]
    metrics.total_return = (final_value - initial_balance) / initial_balance * 100

    # 거래일 수: 시각이 있으면 날짜 기준, 없으면 틱 하나를 하루로 본다
    if equity_times:
        trading_days = len({t.date() for t in equity_times})
    else:
        trading_days = len(equity_values)
    periods_per_day = len(equity_values) / trading_days if trading_days else 1.0

    # 연환산: (최종/초기)^(1/년수) - 1
    if trading_days > 0 and final_value > 0:
        years = trading_days / TRADING_DAYS_PER_YEAR
        total_ratio = final_value / initial_balance
        metrics.annual_return = (total_ratio ** (1 / years) - 1) * 100

    # ─── 샤프 비율 ────────────────────────────────────────────────────────
    # 틱별 수익률로 계산. 샤프 = (평균 초과수익 / 표준편차) * sqrt(연간 틱 수)
    values = np.asarray(equity_values, dtype=float)
    if len(values) > 1:
        previous = values[:-1]
        valid = previous > 0
        returns_arr = (values[1:][valid] - previous[valid]) / previous[valid]
        if len(returns_arr):
            periods_per_year = TRADING_DAYS_PER_YEAR * periods_per_day
            excess_returns = returns_arr - RISK_FREE_RATE / periods_per_year
            std = float(np.std(excess_returns))
            if std > 0:
                metrics.sharpe_ratio = float(np.mean(excess_returns) / std * np.sqrt(periods_per_year))

    # ─── MDD (Maximum Drawdown) ────────────────────────────────────────────
    # 고점 대비 최대 하락폭. 낮을수록 좋음.
    peaks = np.maximum.accumulate(values)
    drawdowns = np.where(peaks > 0, (peaks - values) / peaks * 100, 0.0)
    metrics.max_drawdown = float(drawdowns.max())

    # ─── 거래 기반 지표 (매도 거래만 분석) ─────────────────────────────────
    sell_trades = [t for t in transactions if t.type == TradeSide.SELL]
    metrics.total_trades = len(sell_trades)
    metrics.sell_reasons = dict(Counter(t.reason or "UNKNOWN" for t in sell_trades))

    if sell_trades:
        profits = [t.profit or 0.0 for t in sell_trades]
        winners = [p for p in profits if p > 0]
        losers = [p for p in profits if p <= 0]

        metrics.winning_trades = len(winners)
        metrics.losing_trades = len(losers)
        metrics.win_rate = len(winners) / len(sell_trades) * 100

        if winners:
            metrics.avg_profit = sum(winners) / len(winners)
        if losers:
            metrics.avg_loss = sum(losers) / len(losers)

        total_profit = sum(winners) if winners else 0
        total_loss = abs(sum(losers)) if losers else 0
        metrics.profit_factor = total_profit / total_loss if total_loss > 0 else float("inf")

        # 연속 승패
        consecutive_wins = 0
        consecutive_losses = 0
        max_wins = 0
        max_losses = 0
        for p in profits:
            if p > 0:
                consecutive_wins += 1
                consecutive_losses = 0
                max_wins = max(max_wins, consecutive_wins)
            else:
                consecutive_losses += 1
                consecutive_wins = 0
                max_losses = max(max_losses, consecutive_losses)
        metrics.max_consecutive_wins = max_wins
        metrics.max_consecutive_losses = max_losses

    return metrics
