"""
설정 관리 모듈.

[ 역할 ]
    config.yaml (또는 .json) 파일을 파싱하여 Config 객체로 변환.
    매매 파라미터(TradingConfig), 실행 기간(PlanConfig), 데이터 경로(DataConfig),
    로깅 설정을 통합 관리.

[ 설정 파일 구조 (config.yaml) ]
    trading:          → TradingConfig (수수료, 기능 플래그, 매수/매도, 리스크, 크로스 설정)
    plan:             → PlanConfig (봉 간격, 데이터 구간, 매매 구간)
    data:             → DataConfig (차트 디렉토리, groups.json 경로, 타임존)
    log_level:        → "INFO" / "DEBUG"
    log_dir:          → 로그 디렉토리 경로

[ 검증 ]
    모든 설정 타입은 불변(frozen)이며 생성 시점에 한 번 검증한다.
    알 수 없는 키, 음수 기간, 범위를 벗어난 비율 등은 ConfigError.
    시뮬레이션 도중에는 설정을 다시 확인하지 않는다.

[ 호출하는 곳 ]
    - run_backtest.py에서 Config.from_yaml()로 로드
    - backtest/engine.py::BacktestEngine 생성 시 TradingConfig 전달
"""

import json
import re
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import yaml


class ConfigError(ValueError):
    """잘못된 설정값. 설정 객체 생성 시점에만 발생한다."""


_INTERVAL_PATTERN = re.compile(r"^(\d+)([mhd])$")
_INTERVAL_UNITS = {"m": "minutes", "h": "hours", "d": "days"}


def parse_interval(interval: str) -> timedelta:
    """봉 간격 문자열("1m", "5m", "1d", "4h" ...)을 timedelta로 변환."""
    match = _INTERVAL_PATTERN.match(interval.strip()) if isinstance(interval, str) else None
    if not match:
        raise ConfigError(f"알 수 없는 interval: '{interval}' (예: 1m, 5m, 1h, 1d)")
    value = int(match.group(1))
    if value <= 0:
        raise ConfigError(f"interval은 0보다 커야 합니다: '{interval}'")
    return timedelta(**{_INTERVAL_UNITS[match.group(2)]: value})


def _check(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigError(message)


def _as_tuple(value) -> tuple:
    """단일 값 또는 리스트를 튜플로 (예: under: 50 → (50,))."""
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return (value,)


@dataclass(frozen=True)
class TradeFees:
    """매수/매도 수수료율 (매도는 거래세 포함)."""
    buy: float = 0.00015     # 0.015%
    sell: float = 0.00245    # 0.015% + 거래세 0.23%

    def __post_init__(self):
        _check(0 <= self.buy < 1, f"trade_fees.buy 범위 오류: {self.buy}")
        _check(0 <= self.sell < 1, f"trade_fees.sell 범위 오류: {self.sell}")


@dataclass(frozen=True)
class FeatureFlags:
    """기능 활성화 플래그. 이 목록 밖의 키는 허용하지 않는다."""
    pyramiding: bool = True                    # 피라미딩 (추가 매수)
    stop_loss: bool = True                     # 손절 (데드크로스 상태에서만)
    take_profit: bool = True                   # 익절
    trailing_stop: bool = False                # 트레일링 스톱 (데드크로스 상태에서만)
    dead_cross_additional_sell: bool = True    # 데드크로스 유지 중 추가 하락 시 추가 매도
    time_filter: bool = False                  # 시간대 제외
    ma_gap_filter: bool = False                # MA 간격 필터
    consecutive_loss_protection: bool = False  # 연속 손실 시 매수 중단
    position_sizing: bool = False              # 설정 파일 호환용. 읽는 곳 없음 (항상 잔고 비율 매수)
    volume_strength_filter: bool = False       # 거래량 강도 필터
    slope_filter: bool = False                 # 기울기 필터
    obv_filter: bool = False                   # OBV 필터
    rsi_filter: bool = False                   # RSI 필터
    macd_filter: bool = False                  # MACD 필터
    bollinger_bands_filter: bool = False       # 볼린저 밴드 필터
    volume_analysis_filter: bool = False       # 거래량 추세/다이버전스 필터
    only_symbol_golden_cross: bool = True      # 그룹 골든크로스 확인 없이 종목 골든크로스만으로 매수

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            _check(isinstance(value, bool), f"features.{f.name}는 bool이어야 합니다: {value!r}")


_BOLLINGER_POSITIONS = ("lower", "middle", "upper")
_VOLUME_TRENDS = ("increasing", "decreasing", "neutral", "any")


@dataclass(frozen=True)
class BuyConfig:
    """매수 사이징 및 필터 임계값."""
    stock_rate: float = 0.10                 # 잔고 대비 1회 투자 비율
    symbol_size: int = 3                     # 그룹 골든크로스 시 매수할 상위 종목 수
    min_volume_strength: float = 50.0        # 최소 거래량 강도 (%)
    min_slope: float = 0.01                  # 최소 MA 기울기
    max_ma_gap: float = 0.05                 # MA 간격 최대 5%
    min_obv_slope: float = 0.0               # 최소 OBV 기울기 (%)
    min_rsi: float = 30.0
    max_rsi: float = 70.0
    macd_bullish: bool = True                # MACD 히스토그램 양수 요구
    bollinger_position: str = "lower"        # 설정 파일 호환용 라벨. 필터는 %B 범위만 사용
    min_bollinger_percent_b: float = 0.2
    max_bollinger_percent_b: float = 0.5
    volume_trend_required: str = "increasing"
    avoid_price_volume_divergence: bool = True

    def __post_init__(self):
        _check(0 < self.stock_rate <= 1, f"buy.stock_rate 범위 오류: {self.stock_rate}")
        _check(self.symbol_size >= 1, f"buy.symbol_size는 1 이상: {self.symbol_size}")
        _check(0 <= self.min_rsi <= self.max_rsi <= 100,
               f"buy.min_rsi/max_rsi 범위 오류: {self.min_rsi}/{self.max_rsi}")
        _check(self.min_bollinger_percent_b <= self.max_bollinger_percent_b,
               f"buy %B 구간 오류: {self.min_bollinger_percent_b} > {self.max_bollinger_percent_b}")
        _check(self.bollinger_position in _BOLLINGER_POSITIONS,
               f"buy.bollinger_position은 {_BOLLINGER_POSITIONS} 중 하나: {self.bollinger_position}")
        _check(self.volume_trend_required in _VOLUME_TRENDS,
               f"buy.volume_trend_required는 {_VOLUME_TRENDS} 중 하나: {self.volume_trend_required}")


@dataclass(frozen=True)
class SellConfig:
    """매도 비율 및 청산 임계값."""
    stock_rate: float = 0.5                  # 데드크로스 시 보유 수량 대비 매도 비율
    symbol_size: int = 3                     # 설정 파일 호환용. 매도 로직에서 읽지 않음
    stop_loss: float = -0.10                 # -10% 손절
    take_profit: float = 0.50                # +50% 익절
    trailing_stop_percent: float = 0.02      # 최고가 대비 -2%
    additional_sell_threshold: float = 0.01  # 직전 매도가 대비 1% 추가 하락 시 추가 매도
    min_remaining_quantity: int = 5          # 이보다 적게 남으면 전량 매도

    def __post_init__(self):
        _check(0 < self.stock_rate <= 1, f"sell.stock_rate 범위 오류: {self.stock_rate}")
        _check(self.symbol_size >= 1, f"sell.symbol_size는 1 이상: {self.symbol_size}")
        _check(self.stop_loss <= 0, f"sell.stop_loss는 0 이하: {self.stop_loss}")
        _check(self.take_profit >= 0, f"sell.take_profit은 0 이상: {self.take_profit}")
        _check(0 <= self.trailing_stop_percent < 1,
               f"sell.trailing_stop_percent 범위 오류: {self.trailing_stop_percent}")
        _check(self.additional_sell_threshold >= 0,
               f"sell.additional_sell_threshold는 0 이상: {self.additional_sell_threshold}")
        _check(self.min_remaining_quantity >= 0,
               f"sell.min_remaining_quantity는 0 이상: {self.min_remaining_quantity}")


@dataclass(frozen=True)
class TimeFilterConfig:
    exclude_hours: tuple[int, ...] = (9, 15)  # 9시대, 15시대 매수 제외

    def __post_init__(self):
        object.__setattr__(self, "exclude_hours", _as_tuple(self.exclude_hours))
        for hour in self.exclude_hours:
            _check(isinstance(hour, int) and 0 <= hour <= 23, f"time_filter.exclude_hours 오류: {hour}")


@dataclass(frozen=True)
class RiskManagementConfig:
    max_consecutive_losses: int = 3

    def __post_init__(self):
        _check(self.max_consecutive_losses >= 1,
               f"risk_management.max_consecutive_losses는 1 이상: {self.max_consecutive_losses}")


@dataclass(frozen=True)
class ScoreWeights:
    """그룹 골든크로스 시 후보 종목 점수 가중치."""
    slope: float = 0.5
    volume: float = 0.3
    ma_gap: float = 0.2


@dataclass(frozen=True)
class GoldenCrossConfig:
    """골든크로스: from MA가 to MA 위. under 기간 MA보다도 위여야 진입 인정."""
    from_period: int = 5
    to_period: int = 20
    under: tuple[int, ...] = (50,)
    min_slope: float | None = 0.0005

    def __post_init__(self):
        object.__setattr__(self, "under", _as_tuple(self.under))
        _check(self.from_period > 0 and self.to_period > 0,
               f"golden_cross 기간은 양수: {self.from_period}/{self.to_period}")
        _check(all(p > 0 for p in self.under), f"golden_cross.under 기간은 양수: {self.under}")


@dataclass(frozen=True)
class DeadCrossConfig:
    """데드크로스: from MA가 to MA 아래. below 기간 MA 아래로 떨어지면 전량 매도."""
    from_period: int = 5
    to_period: int = 20
    below: tuple[int, ...] = (50,)

    def __post_init__(self):
        object.__setattr__(self, "below", _as_tuple(self.below))
        _check(self.from_period > 0 and self.to_period > 0,
               f"dead_cross 기간은 양수: {self.from_period}/{self.to_period}")
        _check(all(p > 0 for p in self.below), f"dead_cross.below 기간은 양수: {self.below}")


# 파일 키 ↔ 필드 이름 (from은 파이썬 예약어)
_CROSS_ALIASES = {"from": "from_period", "to": "to_period"}


def _build(cls, data: dict[str, Any] | None, section: str, aliases: dict[str, str] | None = None):
    """딕셔너리에서 설정 dataclass 생성. 알 수 없는 키는 ConfigError."""
    data = dict(data or {})
    aliases = aliases or {}
    known = {f.name for f in fields(cls)}
    kwargs = {}
    for key, value in data.items():
        name = aliases.get(key, key)
        if name not in known:
            raise ConfigError(f"{section}: 알 수 없는 설정 키 '{key}'")
        kwargs[name] = value
    try:
        return cls(**kwargs)
    except TypeError as e:
        raise ConfigError(f"{section}: {e}") from e


@dataclass(frozen=True)
class TradingConfig:
    """매매 설정 전체. 한 번의 시뮬레이션 동안 변하지 않는다."""
    initial_balance: float = 300_000_000  # 3억원
    ma_periods: tuple[int, ...] = (5, 10, 20, 50)
    trade_fees: TradeFees = field(default_factory=TradeFees)
    features: FeatureFlags = field(default_factory=FeatureFlags)
    buy: BuyConfig = field(default_factory=BuyConfig)
    sell: SellConfig = field(default_factory=SellConfig)
    time_filter: TimeFilterConfig = field(default_factory=TimeFilterConfig)
    risk_management: RiskManagementConfig = field(default_factory=RiskManagementConfig)
    score_weights: ScoreWeights = field(default_factory=ScoreWeights)
    golden_cross: GoldenCrossConfig = field(default_factory=GoldenCrossConfig)
    dead_cross: DeadCrossConfig = field(default_factory=DeadCrossConfig)

    def __post_init__(self):
        object.__setattr__(self, "ma_periods", _as_tuple(self.ma_periods))
        _check(self.initial_balance > 0, f"initial_balance는 양수: {self.initial_balance}")
        _check(all(p > 0 for p in self.ma_periods), f"ma_periods는 양수: {self.ma_periods}")

    @property
    def all_ma_periods(self) -> tuple[int, ...]:
        """계산이 필요한 모든 MA 기간 (중복 제거, 오름차순)."""
        periods = set(self.ma_periods)
        periods.update((
            self.golden_cross.from_period,
            self.golden_cross.to_period,
            self.dead_cross.from_period,
            self.dead_cross.to_period,
        ))
        periods.update(self.golden_cross.under)
        periods.update(self.dead_cross.below)
        return tuple(sorted(periods))

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TradingConfig":
        """trading 섹션 딕셔너리에서 생성. 없는 값은 기본값."""
        data = dict(data or {})
        sections = {
            "trade_fees": (TradeFees, None),
            "features": (FeatureFlags, None),
            "buy": (BuyConfig, None),
            "sell": (SellConfig, None),
            "time_filter": (TimeFilterConfig, None),
            "risk_management": (RiskManagementConfig, None),
            "score_weights": (ScoreWeights, None),
            "golden_cross": (GoldenCrossConfig, _CROSS_ALIASES),
            "dead_cross": (DeadCrossConfig, _CROSS_ALIASES),
        }
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key in sections:
                section_cls, aliases = sections[key]
                kwargs[key] = _build(section_cls, value, f"trading.{key}", aliases)
            elif key in ("initial_balance", "ma_periods"):
                kwargs[key] = value
            else:
                raise ConfigError(f"trading: 알 수 없는 설정 키 '{key}'")
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """파일 저장용 딕셔너리 (from/to 키, 튜플 → 리스트)."""
        data = _plain(asdict(self))
        for key in ("golden_cross", "dead_cross"):
            section = data[key]
            section["from"] = section.pop("from_period")
            section["to"] = section.pop("to_period")
        return data


def _plain(value: Any) -> Any:
    """yaml.safe_load로 다시 읽을 수 있도록 튜플을 리스트로 변환."""
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def _parse_time(value: str | None) -> datetime | None:
    if value is None or value == "":
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError as e:
        raise ConfigError(f"날짜 형식 오류: '{value}'") from e


@dataclass
class PlanConfig:
    """실행 기간 설정. config.yaml의 plan 섹션에 대응.

    data_from ~ data_to 전체를 시뮬레이션하고(지표 워밍업 포함),
    trade_from ~ trade_to 구간에서만 매매한다. trade_*가 없으면 전체 구간 매매.
    """
    interval: str = "1d"
    data_from: str = "2025-04-01"
    data_to: str = "2026-01-02"
    trade_from: str | None = None
    trade_to: str | None = None

    def __post_init__(self):
        parse_interval(self.interval)
        _check(self.start_time <= self.end_time, f"plan 기간 오류: {self.data_from} > {self.data_to}")
        if self.trade_start is not None and self.trade_end is not None:
            _check(self.trade_start <= self.trade_end, f"plan 매매 기간 오류: {self.trade_from} > {self.trade_to}")

    @property
    def interval_delta(self) -> timedelta:
        return parse_interval(self.interval)

    @property
    def start_time(self) -> datetime:
        return _parse_time(self.data_from)

    @property
    def end_time(self) -> datetime:
        return _parse_time(self.data_to)

    @property
    def trade_start(self) -> datetime | None:
        return _parse_time(self.trade_from)

    @property
    def trade_end(self) -> datetime | None:
        return _parse_time(self.trade_to)


@dataclass
class DataConfig:
    """데이터 위치 설정. config.yaml의 data 섹션에 대응."""
    chart_dir: str = "datas/finance/chart"       # {chart_dir}/{interval}/{symbol}.json
    groups_path: str = "datas/finance/groups.json"
    timezone: str | None = None                  # 예: "Asia/Seoul" (시간 필터 기준)


@dataclass
class Config:
    """전체 설정. from_yaml() 또는 from_json()으로 파일에서 로드."""
    trading: TradingConfig = field(default_factory=TradingConfig)
    plan: PlanConfig = field(default_factory=PlanConfig)
    data: DataConfig = field(default_factory=DataConfig)
    log_level: str = "INFO"
    log_dir: str = "logs"

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Config":
        """YAML 파일에서 설정 로드."""
        path = Path(path)
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return cls._from_dict(data or {})

    @classmethod
    def from_json(cls, path: str | Path) -> "Config":
        """JSON 파일에서 설정 로드."""
        path = Path(path)
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """딕셔너리에서 Config 생성."""
        unknown = set(data) - {"trading", "plan", "data", "log_level", "log_dir"}
        if unknown:
            raise ConfigError(f"알 수 없는 최상위 설정 키: {sorted(unknown)}")

        return cls(
            trading=TradingConfig.from_dict(data.get("trading")),
            plan=_build(PlanConfig, data.get("plan"), "plan"),
            data=_build(DataConfig, data.get("data"), "data"),
            log_level=data.get("log_level", "INFO"),
            log_dir=data.get("log_dir", "logs"),
        )

    def to_dict(self) -> dict[str, Any]:
        """딕셔너리로 변환."""
        return {
            "trading": self.trading.to_dict(),
            "plan": asdict(self.plan),
            "data": asdict(self.data),
            "log_level": self.log_level,
            "log_dir": self.log_dir,
        }

    def save_yaml(self, path: str | Path) -> None:
        """YAML 파일로 저장."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(self.to_dict(), f, allow_unicode=True, default_flow_style=False, sort_keys=False)
