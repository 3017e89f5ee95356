"""
시뮬레이션 실행 상태 모듈.

[ 역할 ]
    한 번의 백테스트 동안 변하는 모든 상태를 한 곳에 모은다.
    모듈 전역 상태는 두지 않고, 엔진이 SimulationContext를 만들어 각 컴포넌트에 넘긴다.

[ 주요 클래스 ]
    SymbolAccumulator - 종목별 증분 누적값 (종가/거래량/OBV/등락률 시계열)
    TransactionLog    - 전체 + 종목별 체결 기록 (append-only)
    TickContext       - 1틱 동안만 유효한 상태 (현재 시각, 이번 틱 매수/매도 종목)
    SimulationContext - 원장, 교차 상태, 시계열, 리스크 카운터 등 실행 전체 상태

[ 호출하는 곳 ]
    - backtest/engine.py::BacktestEngine.run_backtest()에서 생성
    - backtest/orders.py, backtest/risk.py에서 읽기/갱신
"""

from dataclasses import dataclass, field
from datetime import datetime

from cross_backtest.core import indicators
from cross_backtest.core.cross_state import CrossStateTracker
from cross_backtest.core.models import Quote, TimeSeriesPoint, Transaction
from cross_backtest.data.ledger import Ledger
from cross_backtest.utils.config import TradingConfig


@dataclass
class SymbolAccumulator:
    """종목별 증분 누적값. 새 봉이 들어올 때마다 consume()으로 갱신."""
    cursor: int = 0                       # 지금까지 소비한 봉 개수
    closes: list[float] = field(default_factory=list)
    volumes: list[float] = field(default_factory=list)
    nonzero_volume_sum: float = 0.0       # 소비한 봉 중 거래량 > 0 합계
    nonzero_volume_count: int = 0
    obv: float = 0.0
    change_rates: list[float] = field(default_factory=list)  # 포인트별 등락률 (MA 입력)

    def consume(self, quotes: tuple[Quote, ...], count: int) -> None:
        """quotes[cursor:count]를 누적."""
        for quote in quotes[self.cursor:count]:
            previous_close = self.closes[-1] if self.closes else None
            self.obv = indicators.obv_step(self.obv, previous_close, quote.close, quote.volume)
            self.closes.append(quote.close)
            self.volumes.append(quote.volume)
            if quote.volume > 0:
                self.nonzero_volume_sum += quote.volume
                self.nonzero_volume_count += 1
        self.cursor = max(self.cursor, count)

    def previous_average_volume(self) -> float | None:
        """마지막 봉을 제외한 이전 봉들의 (0이 아닌) 평균 거래량. 없으면 None."""
        if not self.volumes:
            return None
        total = self.nonzero_volume_sum
        count = self.nonzero_volume_count
        if self.volumes[-1] > 0:
            total -= self.volumes[-1]
            count -= 1
        if count <= 0:
            return None
        return total / count


class TransactionLog:
    """체결 기록. 전체 순서와 종목별 목록을 함께 유지."""

    def __init__(self):
        self._items: list[Transaction] = []
        self._by_symbol: dict[str, list[Transaction]] = {}

    def append(self, transaction: Transaction) -> None:
        self._items.append(transaction)
        self._by_symbol.setdefault(transaction.symbol, []).append(transaction)

    def __iter__(self):
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    @property
    def items(self) -> list[Transaction]:
        return list(self._items)

    def for_symbol(self, symbol: str) -> list[Transaction]:
        return list(self._by_symbol.get(symbol, []))

    def by_symbol(self) -> dict[str, list[Transaction]]:
        return {symbol: list(items) for symbol, items in self._by_symbol.items()}


@dataclass
class TickContext:
    """1틱 상태. 틱이 끝나면 버려진다."""
    time: datetime
    active: bool = True                                           # 매매 구간 여부
    sold_symbols: set[str] = field(default_factory=set)           # 이번 틱 리스크 매도 종목
    bought_symbols: set[str] = field(default_factory=set)         # 이번 틱 매수 종목
    points: dict[str, TimeSeriesPoint] = field(default_factory=dict)  # 이번 틱에 계산된 종목 포인트
    prices: dict[str, float] = field(default_factory=dict)            # 이번 틱 종목별 종가


class SimulationContext:
    """백테스트 1회 실행 상태. BacktestEngine이 소유."""

    def __init__(self, config: TradingConfig):
        self.config = config
        self.ledger = Ledger(config.initial_balance)
        self.tracker = CrossStateTracker(config.golden_cross, config.dead_cross)
        self.transactions = TransactionLog()

        self.symbol_series: dict[str, list[TimeSeriesPoint]] = {}
        self.group_series: dict[str, list[TimeSeriesPoint]] = {}
        self.accumulators: dict[str, SymbolAccumulator] = {}
        self.group_change_rates: dict[str, list[float]] = {}  # 그룹 등락률 시계열 (그룹 MA 입력)

        self.last_sell_price: dict[str, float] = {}        # 데드크로스 추가 매도 기준가
        self.golden_cycle_first_buy: dict[str, bool] = {}  # 골든 사이클 내 첫 매수 완료 여부

        # 연속 손실 보호 (backtest/risk.py가 갱신)
        self.consecutive_losses: int = 0
        self.trading_paused: bool = False

        self.equity_times: list[datetime] = []
        self.equity_values: list[float] = []

    def accumulator(self, symbol: str) -> SymbolAccumulator:
        if symbol not in self.accumulators:
            self.accumulators[symbol] = SymbolAccumulator()
        return self.accumulators[symbol]

    def previous_point(self, symbol: str) -> TimeSeriesPoint | None:
        series = self.symbol_series.get(symbol)
        return series[-1] if series else None

    def previous_group_point(self, group_id: str) -> TimeSeriesPoint | None:
        series = self.group_series.get(group_id)
        return series[-1] if series else None
