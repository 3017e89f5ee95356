"""
가상 계좌(원장) 모듈.

[ 역할 ]
    현금 잔고와 종목별 보유(Holding)를 관리.
    매수/매도 실행 시 잔고와 가중평균 매수가를 갱신한다.
    거래 기록(Transaction)은 만들지 않는다 → backtest/orders.py 담당.

[ 불변 조건 ]
    - 잔고는 매수로 음수가 되지 않는다 (부족하면 거부, 변경 없음)
    - holdings에는 quantity > 0 인 종목만 존재
    - avg_price는 매수 시에만 가중평균으로 갱신, 매도 시 불변

[ 호출하는 곳 ]
    - backtest/orders.py::OrderExecutionEngine.buy/sell()
    - backtest/risk.py::RiskManager.check()에서 보유 종목 순회
    - backtest/engine.py에서 총자산 평가
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from cross_backtest.core.models import Holding


@dataclass(frozen=True)
class LedgerResult:
    """원장 변경 결과. ok=False면 아무것도 변경되지 않았다."""
    ok: bool
    quantity: int = 0
    price: float = 0.0
    fees: float = 0.0
    total: float = 0.0             # 매수: 주문금액, 매도: 매도금액 (수수료 제외 전)
    avg_price: float | None = None  # 매도 시점 평균 매수가
    profit: float | None = None     # 매도 실현 손익 (수수료 차감)
    reason: str = ""                # 거부 사유


class Ledger:
    """현금 + 보유 종목 원장.

    SimulationContext가 소유하며 시뮬레이션 1회당 1개.
    holdings는 삽입 순서를 유지한다 (리스크 체크 순서).
    """

    def __init__(self, initial_balance: float):
        self.initial_balance = initial_balance
        self.balance = initial_balance           # 가용 현금
        self.holdings: dict[str, Holding] = {}   # symbol → Holding

    def holding(self, symbol: str) -> Holding | None:
        return self.holdings.get(symbol)

    def is_holding(self, symbol: str) -> bool:
        return symbol in self.holdings

    def buy(
        self,
        symbol: str,
        quantity: int,
        price: float,
        fee_rate: float,
        time: datetime,
        is_pyramiding: bool = False,
    ) -> LedgerResult:
        """매수 실행. 수량이 0 이하이거나 잔고 부족이면 거부.

        피라미딩이 아닌 매수는 주문금액을 entry_cost로 기록한다 (분할 기준 금액).
        """
        if quantity <= 0:
            return LedgerResult(ok=False, reason="수량 0")

        cost = price * quantity
        fees = cost * fee_rate
        if self.balance < cost + fees:
            return LedgerResult(ok=False, quantity=quantity, price=price, fees=fees,
                                total=cost, reason="잔고 부족")

        self.balance -= cost + fees

        holding = self.holdings.get(symbol)
        if holding is None:
            self.holdings[symbol] = Holding(
                quantity=quantity,
                avg_price=price,
                max_price=price,
                buy_time=time,
                entry_cost=cost,
            )
        else:
            total_cost = holding.avg_price * holding.quantity + cost
            holding.quantity += quantity
            holding.avg_price = total_cost / holding.quantity
            holding.max_price = max(holding.max_price, price)
            holding.buy_time = time
            if not is_pyramiding:
                holding.entry_cost = cost

        return LedgerResult(ok=True, quantity=quantity, price=price, fees=fees, total=cost)

    def sell(self, symbol: str, quantity: int, price: float, fee_rate: float) -> LedgerResult:
        """매도 실행. 0 < quantity <= 보유 수량이어야 한다."""
        holding = self.holdings.get(symbol)
        if holding is None:
            return LedgerResult(ok=False, reason="미보유")
        if quantity <= 0 or quantity > holding.quantity:
            return LedgerResult(ok=False, quantity=quantity, price=price,
                                reason=f"매도 수량 오류 (보유 {holding.quantity})")

        revenue = price * quantity
        fees = revenue * fee_rate
        avg_price = holding.avg_price
        profit = (price - avg_price) * quantity - fees

        self.balance += revenue - fees
        holding.quantity -= quantity
        if holding.quantity == 0:
            del self.holdings[symbol]

        return LedgerResult(
            ok=True,
            quantity=quantity,
            price=price,
            fees=fees,
            total=revenue,
            avg_price=avg_price,
            profit=profit,
        )

    def holdings_value(self, price_fn: Callable[[str], float | None]) -> float:
        """보유 종목 평가액. 가격을 알 수 없는 종목은 제외."""
        value = 0.0
        for symbol, holding in self.holdings.items():
            price = price_fn(symbol)
            if price is not None:
                value += holding.quantity * price
        return value

    def total_assets(self, price_fn: Callable[[str], float | None]) -> float:
        """총 자산 (현금 + 보유 평가액)."""
        return self.balance + self.holdings_value(price_fn)
