"""
=============================================================================
그룹 골든/데드크로스 백테스트 엔진 (Cross Backtest)
=============================================================================

[ 시스템 전체 구조 ]

    run_backtest.py (진입점)
         │
         ├── utils/config.py        ← config.yaml 설정 로드 (TradingConfig, PlanConfig)
         ├── utils/logger.py        ← 로깅
         ├── data/market_data.py    ← 차트 JSON / DataFrame → 종목별 봉 데이터
         │
         └── backtest/engine.py     ← 시간 진행 시뮬레이션 루프
               │
               ├── core/indicators.py   ← MA, RSI, MACD, 볼린저, OBV 등 지표
               ├── core/cross_state.py  ← NONE / GOLDEN / DEAD 상태 추적
               ├── backtest/risk.py     ← 손절/익절/트레일링, 연속 손실
               ├── backtest/orders.py   ← 매수 필터, 수량 계산, 체결 기록
               │     └── data/ledger.py ← 잔고/보유 종목 원장
               └── backtest/metrics.py  ← 최종 요약, 성과 지표


[ 데이터 흐름 ]

    1. config.yaml에서 매매 설정/기간 로드
    2. MarketData가 종목별 봉 데이터 제공, groups.json으로 그룹 구성
    3. BacktestEngine이 틱마다 종목/그룹 지표를 누적 계산
    4. CrossStateTracker가 교차 상태를 판정하고, 엔진이 그 결과로
       OrderExecutionEngine을 통해 Ledger에 매수/매도 반영
    5. metrics.py가 체결 기록과 총자산 곡선으로 성과 지표 계산


[ 원칙 ]

    - 시뮬레이션은 결정적이다 (같은 입력 → 같은 체결 기록)
    - 틱 시각 이후의 봉은 절대 읽지 않는다
    - 실행 상태는 SimulationContext 하나에 모두 담긴다
"""
