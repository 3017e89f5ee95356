"""
기술적 지표 계산 모듈.

[ 역할 ]
    MA, EMA, RSI, MACD, 볼린저 밴드, 거래량 분석, OBV, MA 기울기 등
    순수 계산 함수 모음. 상태를 갖지 않으며 같은 입력에는 항상 같은 값을 반환.

[ 데이터 부족 처리 ]
    윈도우보다 데이터가 적으면 None을 반환한다 (0이 아님).
    호출하는 쪽은 None을 "아직 지표 없음"으로 취급해야 한다.
    분모가 0이 될 수 있는 비율은 함수별로 대체값을 정해 둔다 (NaN/inf 없음).

[ 호출하는 곳 ]
    - backtest/engine.py::BacktestEngine._update_symbol()에서 틱마다 호출
    - backtest/engine.py::BacktestEngine._process_group()에서 그룹 MA 계산
"""

from collections.abc import Sequence

import numpy as np

from cross_backtest.core.models import BollingerBands, MACDResult, VolumeAnalysis

# MA 기울기 정규화 기준: 100% 변화를 기울기 1로 본다
MA_SLOPE_SCALE = 100.0


def calculate_ma(data: Sequence[float], period: int, index: int) -> float | None:
    """단순 이동평균.

    Args:
        data: 값 배열
        period: 이동평균 기간
        index: 기준 인덱스 (index까지 포함한 직전 period개 평균)

    Returns:
        평균값. index < period - 1 이면 None
    """
    if period <= 0 or index < period - 1 or index >= len(data):
        return None
    window = data[index - period + 1:index + 1]
    return sum(window) / period


def calculate_ema(data: Sequence[float], period: int) -> list[float]:
    """지수이동평균 배열.

    첫 값은 처음 period개의 SMA, 이후는 multiplier = 2 / (period + 1).
    데이터가 period보다 적으면 빈 리스트.
    """
    if period <= 0 or len(data) < period:
        return []

    multiplier = 2 / (period + 1)
    ema = [sum(data[:period]) / period]
    for value in data[period:]:
        ema.append((value - ema[-1]) * multiplier + ema[-1])
    return ema


def calculate_rsi(prices: Sequence[float], period: int = 14) -> float | None:
    """RSI (0~100). 직전 period개 변화량의 평균 상승/하락으로 계산.

    평균 하락이 0이면 100을 반환한다.
    """
    if len(prices) < period + 1:
        return None

    gains = 0.0
    losses = 0.0
    for i in range(len(prices) - period, len(prices)):
        change = prices[i] - prices[i - 1]
        if change > 0:
            gains += change
        else:
            losses += abs(change)

    avg_gain = gains / period
    avg_loss = losses / period
    if avg_loss == 0:
        return 100.0

    rs = avg_gain / avg_loss
    return 100 - (100 / (1 + rs))


def calculate_macd(
    prices: Sequence[float],
    fast_period: int = 12,
    slow_period: int = 26,
    signal_period: int = 9,
) -> MACDResult | None:
    """MACD / 시그널 / 히스토그램. len(prices) < slow + signal 이면 None."""
    if len(prices) < slow_period + signal_period:
        return None

    fast_ema = calculate_ema(prices, fast_period)
    slow_ema = calculate_ema(prices, slow_period)

    # fast EMA가 (slow - fast)개 먼저 시작하므로 그만큼 밀어서 정렬
    offset = slow_period - fast_period
    macd_line = [fast_ema[i + offset] - slow_ema[i] for i in range(len(slow_ema))]
    signal_line = calculate_ema(macd_line, signal_period)

    macd = macd_line[-1]
    signal = signal_line[-1]
    return MACDResult(macd=macd, signal=signal, histogram=macd - signal)


def calculate_bollinger_bands(
    prices: Sequence[float],
    period: int = 20,
    std_dev: float = 2.0,
) -> BollingerBands | None:
    """볼린저 밴드 (모표준편차 기준). 밴드 폭이 0이면 %B = 0.5."""
    if len(prices) < period:
        return None

    recent = np.asarray(prices[-period:], dtype=float)
    middle = float(recent.mean())
    deviation = float(recent.std())  # ddof=0

    upper = middle + std_dev * deviation
    lower = middle - std_dev * deviation
    width = upper - lower
    percent_b = (float(recent[-1]) - lower) / width if width > 0 else 0.5

    return BollingerBands(upper=upper, middle=middle, lower=lower, percent_b=percent_b)


def analyze_volume(volumes: Sequence[float], prices: Sequence[float]) -> VolumeAnalysis:
    """최근 5개 vs 이전 5개 거래량 비교로 추세와 가격-거래량 다이버전스 판단.

    10개 미만이면 neutral / False.
    """
    if len(volumes) < 10 or len(prices) < 10:
        return VolumeAnalysis()

    recent_avg = float(np.mean(volumes[-5:]))
    previous_avg = float(np.mean(volumes[-10:-5]))

    trend = "neutral"
    if recent_avg > previous_avg * 1.2:
        trend = "increasing"
    elif recent_avg < previous_avg * 0.8:
        trend = "decreasing"

    # 가격은 오르는데 거래량이 늘지 않으면 다이버전스 (약세 신호)
    price_increasing = prices[-1] > prices[-6]
    divergence = price_increasing and trend != "increasing"

    return VolumeAnalysis(trend=trend, divergence=divergence)


def obv_step(previous_obv: float, previous_close: float | None, close: float, volume: float) -> float:
    """OBV 한 단계 누적. 첫 봉(previous_close None)은 0에서 시작."""
    if previous_close is None:
        return 0.0
    if close > previous_close:
        return previous_obv + volume
    if close < previous_close:
        return previous_obv - volume
    return previous_obv


def calculate_obv_slope(obv: float, previous_obv: float | None) -> float:
    """직전 틱 OBV 대비 변화율 (%). 직전 값이 없거나 0이면 0."""
    if not previous_obv:
        return 0.0
    return (obv - previous_obv) / abs(previous_obv) * 100


def calculate_ma_slope(current: float, previous: float | None) -> float:
    """직전 틱 MA 대비 변화를 0~1로 정규화한 기울기. 직전 값이 없으면 0."""
    if previous is None:
        return 0.0
    return min(1.0, abs(current - previous) / MA_SLOPE_SCALE)


def calculate_change_rate(price: float, base_price: float) -> float:
    """기준가 대비 등락률 (%). 기준가가 0이면 0."""
    if base_price == 0:
        return 0.0
    return (price - base_price) / base_price * 100


def calculate_volume_strength(volume: float, average_volume: float | None) -> float:
    """평균 거래량 대비 거래량 강도 (%).

    이전 거래량이 없거나(None) 현재 거래량/평균이 0이면 0.
    """
    if not average_volume or volume <= 0:
        return 0.0
    return (volume - average_volume) / average_volume * 100
