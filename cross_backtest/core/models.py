"""
백테스트 공통 데이터 모델 정의.

[ 역할 ]
    엔진 전체에서 주고받는 값 객체(Quote, Group, Transaction, TimeSeriesPoint 등)를 정의.
    계산 로직은 없고, 각 컴포넌트가 이 타입들을 입력/출력으로 사용한다.

[ 주요 타입 ]
    Quote           - 단일 봉(캔들) 데이터 (불변)
    Group           - 종목 그룹 (정적 설정, 한 종목이 여러 그룹에 속할 수 있음)
    Holding         - 보유 종목 (data/ledger.py::Ledger가 독점 소유)
    Transaction     - 체결 기록 (불변, append-only)
    TimeSeriesPoint - 틱별 종목/그룹 지표 스냅샷
    CrossState      - NONE / GOLDEN / DEAD

[ 호출하는 곳 ]
    - core/indicators.py, core/cross_state.py
    - data/ledger.py, data/market_data.py
    - backtest/*.py
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class CrossState(Enum):
    """이동평균 교차 상태. core/cross_state.py만 변경한다."""
    NONE = "NONE"
    GOLDEN = "GOLDEN"
    DEAD = "DEAD"


class TradeSide(Enum):
    """체결 방향."""
    BUY = "BUY"
    SELL = "SELL"


class SellReason(str, Enum):
    """매도 사유 코드. Transaction.reason에 기록된다."""
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    TRAILING_STOP = "TRAILING_STOP"
    DEAD_CROSS = "DEAD_CROSS"
    DEAD_CROSS_BELOW = "DEAD_CROSS_BELOW"
    DEAD_CROSS_ADDITIONAL = "DEAD_CROSS_ADDITIONAL"

    @property
    def forces_full_sell(self) -> bool:
        """전량 매도 사유인지 여부."""
        return self in (
            SellReason.STOP_LOSS,
            SellReason.TAKE_PROFIT,
            SellReason.TRAILING_STOP,
            SellReason.DEAD_CROSS_BELOW,
        )


@dataclass(frozen=True)
class Quote:
    """단일 봉 데이터. 종목별로 timestamp 오름차순 정렬되어 있어야 한다."""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(frozen=True)
class Group:
    """종목 그룹. groups.json의 {group, label, symbols} 항목에 대응."""
    id: str
    label: str
    symbols: tuple[str, ...] = ()

    def __post_init__(self):
        # list로 들어와도 불변으로 고정
        object.__setattr__(self, "symbols", tuple(self.symbols))


@dataclass
class Holding:
    """보유 종목. quantity > 0 인 동안에만 Ledger.holdings에 존재한다."""
    quantity: int
    avg_price: float       # 가중평균 매수가 (매수 시마다 갱신, 매도 시 불변)
    max_price: float       # 보유 이후 최고가 (트레일링 스톱 기준)
    buy_time: datetime     # 마지막 매수 시각
    entry_cost: float = 0.0  # 피라미딩이 아닌 마지막 진입 매수 금액 (분할 기준)


@dataclass(frozen=True)
class Transaction:
    """체결 기록. 매수/매도 1건당 1개 생성."""
    time: datetime
    type: TradeSide
    symbol: str
    quantity: int
    price: float
    fees: float
    total: float
    avg_buy_price: float | None = None   # 매도 시 평균 매수가
    profit: float | None = None          # 매도 시 실현 손익
    reason: str | None = None            # 매도 사유 (SellReason 값)
    is_pyramiding: bool | None = None    # 매수 시 피라미딩 여부
    is_rebuy: bool | None = None         # 매수 시 같은 골든 사이클 내 재매수 여부
    is_golden_cross_entry: bool | None = None  # 매수 시 골든크로스 진입 시점 여부

    @property
    def profit_rate(self) -> float:
        """매도 수익률 (%). 매수 건이면 0."""
        if self.type != TradeSide.SELL or not self.avg_buy_price:
            return 0.0
        return (self.price - self.avg_buy_price) / self.avg_buy_price * 100


@dataclass(frozen=True)
class MAValue:
    """이동평균 값과 정규화된 기울기 (0~1)."""
    value: float
    slope: float = 0.0


@dataclass(frozen=True)
class MACDResult:
    macd: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float
    percent_b: float


@dataclass(frozen=True)
class VolumeAnalysis:
    """거래량 분석 결과. trend는 increasing / decreasing / neutral."""
    trend: str = "neutral"
    divergence: bool = False


@dataclass
class TimeSeriesPoint:
    """틱별 지표 스냅샷. 종목/그룹별로 틱마다 1개씩 append 된다."""
    time: datetime
    avg_change_rate: float
    avg_volume_strength: float
    ma: dict[int, MAValue] = field(default_factory=dict)
    obv: float | None = None
    obv_slope: float | None = None
    rsi: float | None = None
    macd: MACDResult | None = None
    bollinger_bands: BollingerBands | None = None
    volume_analysis: VolumeAnalysis | None = None
    golden_cross: bool = False   # 차트 마커: 조건을 만족한 골든크로스 진입 틱
    dead_cross: bool = False     # 차트 마커: 데드크로스 진입 틱
