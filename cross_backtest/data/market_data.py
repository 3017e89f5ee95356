"""
시장 데이터 모듈.

[ 역할 ]
    종목별 봉 데이터(SymbolSeries)를 불변 구조로 보관하고
    "현재 시각 이하" 조회를 제공. 시뮬레이션은 미래 데이터를 볼 수 없다.

[ 데이터 소스 ]
    - from_dataframes(): {symbol: DataFrame[date, open, high, low, close, volume]}
    - from_chart_dir():  {chart_dir}/{interval}/{symbol}.json ({"quotes": [...]})
    - load_groups():     groups.json ([{group, label, symbols}, ...])

[ 검증 ]
    close가 없는 봉은 버리고, 정렬되지 않은 입력은 경고 후 정렬.
    가격 0 이하, high < low, 음수 거래량은 경고만 남긴다.

[ 호출하는 곳 ]
    - run_backtest.py에서 로드
    - backtest/engine.py::BacktestEngine에서 틱마다 조회
"""

import json
import logging
from bisect import bisect_right
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import pandas as pd

from cross_backtest.core.models import Group, Quote

logger = logging.getLogger("cross_backtest.data")

REQUIRED_COLUMNS = ["date", "open", "high", "low", "close", "volume"]


@dataclass(frozen=True)
class SymbolSeries:
    """단일 종목 봉 데이터. quotes는 timestamp 오름차순.

    open: 세션 기준가 (구간 첫 봉의 시가). 등락률의 기준이 된다.
    """
    open: float
    quotes: tuple[Quote, ...]
    _timestamps: list[datetime] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "quotes", tuple(self.quotes))
        object.__setattr__(self, "_timestamps", [q.timestamp for q in self.quotes])

    def __len__(self) -> int:
        return len(self.quotes)

    def count_until(self, time: datetime) -> int:
        """timestamp <= time 인 봉의 개수."""
        return bisect_right(self._timestamps, time)

    def quotes_until(self, time: datetime) -> tuple[Quote, ...]:
        return self.quotes[:self.count_until(time)]

    def latest(self, time: datetime) -> Quote | None:
        """time 이하의 마지막 봉."""
        n = self.count_until(time)
        return self.quotes[n - 1] if n else None


class MarketData:
    """종목 → SymbolSeries 맵. 시뮬레이션 중에는 읽기 전용."""

    def __init__(self, series: dict[str, SymbolSeries] | None = None):
        self._series: dict[str, SymbolSeries] = dict(series or {})

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._series

    def __len__(self) -> int:
        return len(self._series)

    @property
    def symbols(self) -> list[str]:
        return list(self._series)

    def get(self, symbol: str) -> SymbolSeries | None:
        return self._series.get(symbol)

    def price_at(self, symbol: str, time: datetime) -> float | None:
        """time 이하 마지막 종가. 데이터가 없으면 None."""
        series = self._series.get(symbol)
        if series is None:
            return None
        quote = series.latest(time)
        return quote.close if quote else None

    @classmethod
    def from_quotes(cls, quotes: dict[str, list[Quote]]) -> "MarketData":
        """{symbol: [Quote, ...]}에서 생성. 빈 종목은 제외."""
        series = {}
        for symbol, items in quotes.items():
            built = _build_series(symbol, list(items))
            if built is not None:
                series[symbol] = built
        return cls(series)

    @classmethod
    def from_dataframes(
        cls,
        frames: dict[str, pd.DataFrame],
        start: datetime | None = None,
        end: datetime | None = None,
        timezone: str | None = None,
    ) -> "MarketData":
        """{symbol: DataFrame}에서 생성.

        DataFrame은 date 컬럼(또는 DatetimeIndex)과 open/high/low/close/volume 컬럼.
        start ~ end 구간 밖의 봉은 버린다.
        """
        quotes = {}
        for symbol, df in frames.items():
            quotes[symbol] = _frame_to_quotes(symbol, df, start, end, timezone)
        return cls.from_quotes(quotes)

    @classmethod
    def from_chart_dir(
        cls,
        chart_dir: str | Path,
        interval: str,
        symbols: list[str],
        start: datetime | None = None,
        end: datetime | None = None,
        timezone: str | None = None,
    ) -> "MarketData":
        """{chart_dir}/{interval}/{symbol}.json 파일들에서 로드.

        파일이 없거나 구간 내 봉이 없는 종목은 경고 후 건너뛴다.
        """
        base = Path(chart_dir) / interval
        quotes = {}
        for symbol in dict.fromkeys(symbols):
            path = base / f"{symbol}.json"
            if not path.exists():
                logger.warning(f"[{symbol}] {interval} 차트 파일 없음, 건너뜀: {path}")
                continue
            with open(path, "r", encoding="utf-8") as f:
                chart = json.load(f)
            raw = chart.get("quotes") or []
            if not raw:
                logger.warning(f"[{symbol}] 차트 데이터 비어 있음: {path}")
                continue
            df = pd.DataFrame(raw)
            df["date"] = pd.to_datetime(df["date"], utc=True)
            quotes[symbol] = _frame_to_quotes(symbol, df, start, end, timezone)
            logger.info(f"[{symbol}] {interval} 차트 로드: {len(raw)}개 봉")
        return cls.from_quotes(quotes)


def load_groups(path: str | Path) -> list[Group]:
    """groups.json 로드. 파일이 없으면 FileNotFoundError."""
    path = Path(path)
    with open(path, "r", encoding="utf-8") as f:
        items = json.load(f)
    groups = [
        Group(id=item["group"], label=item.get("label", item["group"]), symbols=item.get("symbols", []))
        for item in items
    ]
    logger.info(f"그룹 {len(groups)}개 로드: {path}")
    return groups


def _build_series(symbol: str, quotes: list[Quote]) -> SymbolSeries | None:
    if not quotes:
        return None
    timestamps = [q.timestamp for q in quotes]
    if any(a > b for a, b in zip(timestamps, timestamps[1:])):
        logger.warning(f"[{symbol}] 봉이 시간순으로 정렬되어 있지 않음, 정렬 후 사용")
        quotes = sorted(quotes, key=lambda q: q.timestamp)
    return SymbolSeries(open=quotes[0].open, quotes=tuple(quotes))


def _frame_to_quotes(
    symbol: str,
    df: pd.DataFrame,
    start: datetime | None,
    end: datetime | None,
    timezone: str | None,
) -> list[Quote]:
    """DataFrame → Quote 리스트. 검증 경고를 남기고 close 없는 행은 제외."""
    if df is None or df.empty:
        logger.warning(f"[{symbol}] 빈 DataFrame")
        return []

    df = df.copy()
    if "date" not in df.columns:
        df = df.rename_axis("date").reset_index()

    missing = set(REQUIRED_COLUMNS) - set(df.columns) - {"volume"}
    if missing:
        logger.error(f"[{symbol}] 필수 컬럼 누락: {sorted(missing)}")
        return []
    if "volume" not in df.columns:
        df["volume"] = 0.0

    dates = pd.to_datetime(df["date"])
    if dates.dt.tz is not None:
        dates = dates.dt.tz_convert(timezone or "UTC").dt.tz_localize(None)
    df["date"] = dates

    no_close = df["close"].isnull()
    if no_close.any():
        logger.debug(f"[{symbol}] close 없는 봉 {int(no_close.sum())}개 제외")
        df = df[~no_close]

    if start is not None:
        df = df[df["date"] >= pd.Timestamp(start)]
    if end is not None:
        df = df[df["date"] <= pd.Timestamp(end)]
    if df.empty:
        return []

    _validate(symbol, df)

    df = df.fillna({"open": 0.0, "high": 0.0, "low": 0.0, "volume": 0.0})
    return [
        Quote(
            timestamp=row.date.to_pydatetime(),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for row in df.itertuples(index=False)
    ]


def _validate(symbol: str, df: pd.DataFrame) -> None:
    """가격/거래량 이상값 경고. 데이터는 변경하지 않는다."""
    for col in ("open", "high", "low", "close"):
        invalid = int((df[col] <= 0).sum())
        if invalid:
            logger.warning(f"[{symbol}] {col} 값이 0 이하인 봉 {invalid}개")

    invalid = int((df["high"] < df["low"]).sum())
    if invalid:
        logger.warning(f"[{symbol}] high < low 인 봉 {invalid}개")

    invalid = int((df["volume"] < 0).sum())
    if invalid:
        logger.warning(f"[{symbol}] 음수 거래량 봉 {invalid}개")
