import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# 프로젝트 루트를 sys.path에 추가 (설치 없이 cross_backtest 패키지 import)
ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from cross_backtest.core.models import Group, Quote  # noqa: E402
from cross_backtest.data.market_data import MarketData  # noqa: E402
from cross_backtest.utils.config import (  # noqa: E402
    DeadCrossConfig,
    FeatureFlags,
    GoldenCrossConfig,
    TradingConfig,
)

START = datetime(2025, 1, 1)


def build_quotes(closes, open_price=100.0, volumes=None, start=START, step=timedelta(days=1)):
    volumes = volumes or [1000.0] * len(closes)
    return [
        Quote(
            timestamp=start + step * i,
            open=open_price,
            high=max(open_price, close),
            low=min(open_price, close),
            close=close,
            volume=volume,
        )
        for i, (close, volume) in enumerate(zip(closes, volumes))
    ]


@pytest.fixture
def make_quotes():
    return build_quotes


@pytest.fixture
def scenario_closes():
    # 40봉 횡보 → 5봉 상승 → 15봉 급락
    return [100.0] * 40 + [101.0, 102.0, 103.0, 104.0, 105.0] + [95.0] * 15


@pytest.fixture
def scenario_market(scenario_closes):
    return MarketData.from_quotes({"AAA": build_quotes(scenario_closes)})


@pytest.fixture
def scenario_groups():
    return [Group(id="g1", label="Group 1", symbols=["AAA"])]


@pytest.fixture
def cross_config():
    return TradingConfig(
        initial_balance=1_000_000,
        ma_periods=(5, 20),
        features=FeatureFlags(stop_loss=False, take_profit=False),
        golden_cross=GoldenCrossConfig(from_period=5, to_period=20, under=(), min_slope=0.0),
        dead_cross=DeadCrossConfig(from_period=5, to_period=20, below=()),
    )
