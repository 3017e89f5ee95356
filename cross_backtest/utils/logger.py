"""
로깅 모듈.

[ 역할 ]
    파일 + 콘솔 로거를 설정. 체결 내역, 필터 거부, 데이터 경고 등을 기록.

[ 로그 파일 위치 ]
    {log_dir}/{name}_{YYYYMMDD}.log (예: logs/cross_backtest_20260601.log)

[ 로거 이름 ]
    cross_backtest            - 루트 (setup_logger 대상)
    cross_backtest.backtest   - 시뮬레이션 루프
    cross_backtest.orders     - 매수/매도 실행, 필터 거부 (DEBUG)
    cross_backtest.risk       - 손절/익절/트레일링, 연속 손실
    cross_backtest.data       - 데이터 로드 경고

[ 호출하는 곳 ]
    - run_backtest.py에서 setup_logger() 호출
    - 각 모듈에서 logging.getLogger("cross_backtest.backtest") 등으로 사용
"""

import logging
import sys
from datetime import datetime
from pathlib import Path

ROOT_LOGGER_NAME = "cross_backtest"


def setup_logger(
    name: str = ROOT_LOGGER_NAME,
    level: str = "INFO",
    log_dir: str | None = "logs",
    console: bool = True,
) -> logging.Logger:
    """로거 설정. 파일 핸들러(일별) + 콘솔 핸들러 등록.

    log_dir이 None이면 파일 핸들러 없이 콘솔만 사용.
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper()))

    if logger.handlers:
        return logger

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # 파일 핸들러
    if log_dir is not None:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        today = datetime.now().strftime("%Y%m%d")
        file_handler = logging.FileHandler(
            log_path / f"{name}_{today}.log",
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # 콘솔 핸들러
    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger

