"""
백테스트 실행 스크립트 (시스템 진입점).

[ 사용법 ]
    # 기본 실행 (config.yaml의 plan/data 설정, 차트 디렉토리 데이터)
    python run_backtest.py

    # 샘플 데이터로 테스트
    python run_backtest.py --sample
    python run_backtest.py --sample --symbols 005930.KS 000660.KS 035420.KS

    # 파라미터 오버라이드 (trading. 접두사는 생략 가능)
    python run_backtest.py --sample -p buy.stock_rate=0.2 -p features.pyramiding=false
    python run_backtest.py -p golden_cross.under=50,100 -p plan.interval=5m

    # 결과 CSV 저장
    python run_backtest.py --sample --export results/
"""

import argparse
import zlib
from datetime import datetime, timedelta
from pathlib import Path

import numpy as np
import pandas as pd

from cross_backtest.backtest.engine import BacktestEngine, BacktestResult
from cross_backtest.core.models import Group, TradeSide
from cross_backtest.data.market_data import MarketData, load_groups
from cross_backtest.utils.config import Config, ConfigError
from cross_backtest.utils.logger import setup_logger

DEFAULT_SAMPLE_SYMBOLS = ["005930.KS", "000660.KS", "035420.KS", "051910.KS"]


def generate_sample_data(
    symbol: str,
    start: datetime,
    end: datetime,
    step: timedelta = timedelta(days=1),
    initial_price: float = 70000,
    volatility: float = 0.02,
) -> pd.DataFrame:
    """백테스트용 샘플 봉 데이터 생성 (종목별 고정 시드 랜덤워크)."""
    rng = np.random.default_rng(zlib.crc32(symbol.encode()))

    if step >= timedelta(days=1):
        dates = pd.bdate_range(start=start, end=end)
    else:
        dates = pd.date_range(start=start, end=end, freq=step)
    n = len(dates)

    returns = rng.normal(0.0002, volatility, n)
    prices = initial_price * np.cumprod(1 + returns)

    data = []
    for i, d in enumerate(dates):
        close = prices[i]
        high = close * (1 + abs(rng.normal(0, 0.01)))
        low = close * (1 - abs(rng.normal(0, 0.01)))
        open_price = close * (1 + rng.normal(0, 0.005))
        volume = int(rng.lognormal(12, 1))

        data.append({
            "date": d,
            "open": round(open_price, 0),
            "high": round(high, 0),
            "low": round(low, 0),
            "close": round(close, 0),
            "volume": volume,
        })

    return pd.DataFrame(data)


def parse_param(param_str: str) -> tuple[str, object]:
    """'key=value' 문자열을 파싱하여 (key, value) 반환. 숫자/bool/쉼표 리스트 자동 변환."""
    key, _, value = param_str.partition("=")
    key = key.strip()
    value = value.strip()

    if "," in value:
        return key, [_convert(v.strip()) for v in value.split(",") if v.strip()]
    return key, _convert(value)


def _convert(value: str) -> object:
    # 숫자 자동 변환
    try:
        if "." in value or "e" in value.lower():
            return float(value)
        return int(value)
    except ValueError:
        # bool 변환
        if value.lower() in ("true", "yes"):
            return True
        if value.lower() in ("false", "no"):
            return False
        if value.lower() in ("none", "null"):
            return None
        return value


def apply_overrides(config: Config, params: list[str]) -> Config:
    """점(.) 경로 오버라이드 적용. 최상위 키가 아니면 trading 섹션으로 본다."""
    if not params:
        return config

    data = config.to_dict()
    for p in params:
        key, value = parse_param(p)
        path = key.split(".")
        if path[0] not in data:
            path = ["trading"] + path
        node = data
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value
    return Config._from_dict(data)


def load_data(config: Config, args: argparse.Namespace) -> tuple[MarketData, list[Group]]:
    """데이터 소스에서 봉 데이터와 그룹 로드."""
    plan = config.plan

    if args.sample:
        print("샘플 데이터 생성 중...")
        symbols = args.symbols or DEFAULT_SAMPLE_SYMBOLS
        frames = {}
        for i, symbol in enumerate(symbols):
            frames[symbol] = generate_sample_data(
                symbol=symbol,
                start=plan.start_time,
                end=plan.end_time,
                step=plan.interval_delta,
                initial_price=70000 + 40000 * i,
            )
            print(f"  {symbol}: {len(frames[symbol])}개 봉")
        groups = [Group(id="sample", label="샘플 그룹", symbols=symbols)]
        market = MarketData.from_dataframes(frames, plan.start_time, plan.end_time)
        return market, groups

    groups_path = Path(config.data.groups_path)
    if not groups_path.exists():
        print(f"오류: 그룹 파일 없음: {groups_path}")
        print("  --sample 옵션으로 샘플 데이터 사용")
        return MarketData(), []

    groups = load_groups(groups_path)
    if args.symbols:
        wanted = set(args.symbols)
        groups = [Group(g.id, g.label, [s for s in g.symbols if s in wanted]) for g in groups]
        groups = [g for g in groups if g.symbols]

    symbols = [s for g in groups for s in g.symbols]
    print(f"차트 데이터 로드 중... ({config.data.chart_dir}/{plan.interval}, 종목 {len(set(symbols))}개)")
    market = MarketData.from_chart_dir(
        config.data.chart_dir,
        plan.interval,
        symbols,
        start=plan.start_time,
        end=plan.end_time,
        timezone=config.data.timezone,
    )
    if not len(market):
        print("\n오류: 백테스트할 데이터가 없습니다.")
    return market, groups


def print_result(result: BacktestResult, config: Config) -> None:
    """결과 출력."""
    summary = result.summary
    plan = config.plan

    print(f"\n[기간: {plan.data_from} ~ {plan.data_to}, 매매: {plan.trade_from or plan.data_from} ~ "
          f"{plan.trade_to or plan.data_to}, interval {plan.interval}]")
    print(f"초기 자금:     {config.trading.initial_balance:>18,.0f}원")
    print(f"최종 잔고:     {summary.final_balance:>18,.0f}원")
    print(f"보유 평가액:   {summary.holdings_value:>18,.0f}원")
    print(f"총 자산:       {summary.total_assets:>18,.0f}원")
    print(f"총 손익:       {summary.total_profit:>+18,.0f}원 ({summary.return_rate:+.2f}%)")
    print(result.metrics.summary())

    buys = [t for t in result.transactions if t.type == TradeSide.BUY]
    sells = [t for t in result.transactions if t.type == TradeSide.SELL]
    print(f"\n총 거래 횟수: {summary.transaction_count}")
    print(f"  매수: {len(buys)}회 (피라미딩 {sum(1 for t in buys if t.is_pyramiding)}회, "
          f"재매수 {sum(1 for t in buys if t.is_rebuy)}회)")
    print(f"  매도: {len(sells)}회")

    if sells:
        print("\n최근 매도 거래 (최대 5건):")
        for t in sells[-5:]:
            print(f"  [{t.time}] {t.symbol} {t.quantity}주 @ {t.price:,.0f}원 "
                  f"-> {t.profit:+,.0f}원 ({t.reason})")


def export_result(result: BacktestResult, out_dir: Path) -> None:
    """체결 기록/자산 곡선/종목 시계열을 CSV로 저장."""
    out_dir.mkdir(parents=True, exist_ok=True)
    for name, df in result.to_frames().items():
        df.to_csv(out_dir / f"{name}.csv", encoding="utf-8")
    for symbol in result.symbol_series:
        result.series_frame(symbol).to_csv(out_dir / f"series_{symbol}.csv", encoding="utf-8")
    print(f"\n결과 저장: {out_dir}")


def main():
    parser = argparse.ArgumentParser(description="그룹 골든/데드크로스 백테스트 실행")
    parser.add_argument("--config", type=str, default="config.yaml", help="설정 파일 경로 (.yaml / .json)")
    parser.add_argument("-p", "--param", action="append", default=[],
                        help="파라미터 오버라이드 (예: -p buy.stock_rate=0.2)")
    parser.add_argument("--sample", action="store_true", help="샘플 데이터로 테스트")
    parser.add_argument("--symbols", nargs="+", help="대상 종목 (샘플 종목 또는 그룹 필터)")
    parser.add_argument("--export", type=str, default=None, help="결과 CSV 저장 디렉토리")
    args = parser.parse_args()

    # 설정 로드
    config_path = Path(args.config)
    try:
        if config_path.exists():
            if config_path.suffix == ".json":
                config = Config.from_json(config_path)
            else:
                config = Config.from_yaml(config_path)
        else:
            print(f"설정 파일 없음: {config_path}, 기본값 사용")
            config = Config()
        config = apply_overrides(config, args.param)
    except ConfigError as e:
        print(f"설정 오류: {e}")
        return

    # 로거
    setup_logger(level=config.log_level, log_dir=config.log_dir)

    if args.param:
        print(f"파라미터 오버라이드: {dict(parse_param(p) for p in args.param)}")

    market, groups = load_data(config, args)
    if not len(market) or not groups:
        return

    plan = config.plan
    engine = BacktestEngine(config.trading)
    result = engine.run_backtest(
        market,
        groups,
        start=plan.start_time,
        end=plan.end_time,
        interval=plan.interval,
        trade_from=plan.trade_start,
        trade_to=plan.trade_end,
    )
    print_result(result, config)

    if args.export:
        export_result(result, Path(args.export))


if __name__ == "__main__":
    main()
