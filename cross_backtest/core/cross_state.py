"""
이동평균 교차 상태 추적 모듈.

[ 역할 ]
    종목/그룹별로 NONE / GOLDEN / DEAD 상태를 관리.
    틱마다 현재/직전 MA 맵을 받아 상태를 다시 판정하고, 진입(상태 변경) 여부와
    가드 조건(under, min_slope, below)을 함께 돌려준다.
    매수/매도 실행은 하지 않는다 → backtest/engine.py가 결과를 보고 주문.

[ 판정 우선순위 ]
    1. dead.from MA < dead.to MA          → DEAD (항상 우선)
    2. golden.from MA > golden.to MA      → GOLDEN
    3. 그 외                               → NONE
    dead 쌍 MA가 아직 없으면 상태를 바꾸지 않는다.

[ 그룹 화이트리스트 ]
    그룹 MA의 골든 엣지(직전 from <= to, 현재 from > to)에서 buyable_groups에 추가,
    데드 엣지(직전 from >= to, 현재 from < to)에서 제거.
    두 엣지는 각자의 MA 쌍만 보고 판정한다 (상태 판정 가능 여부와 무관).

[ 호출하는 곳 ]
    - backtest/engine.py::BacktestEngine._symbol_cross_step()
    - backtest/engine.py::BacktestEngine._process_group()
"""

from dataclasses import dataclass

from cross_backtest.core.models import CrossState, MAValue
from cross_backtest.utils.config import DeadCrossConfig, GoldenCrossConfig


@dataclass(frozen=True)
class CrossEvaluation:
    """종목 1틱 판정 결과."""
    state: CrossState
    previous_state: CrossState
    available: bool = True        # dead 쌍 MA가 있어 판정했는지
    guards_met: bool = False      # golden: under MA 위 + 기울기 조건
    below: bool = False           # dead: from MA가 below MA 중 하나 아래
    below_crossed: bool = False   # dead: 이번 틱에 새로 below MA 아래로 내려감

    @property
    def entered(self) -> bool:
        """이번 틱에 상태가 바뀌었는지 (진입 이벤트)."""
        return self.state != self.previous_state

    @property
    def golden_entry(self) -> bool:
        return self.entered and self.state == CrossState.GOLDEN

    @property
    def dead_entry(self) -> bool:
        return self.entered and self.state == CrossState.DEAD


@dataclass(frozen=True)
class GroupCrossEvent:
    """그룹 1틱 판정 결과. 엣지는 직전/현재 MA 비교로만 판단."""
    state: CrossState
    golden_edge: bool = False
    dead_edge: bool = False


def _value(ma: dict[int, MAValue] | None, period: int) -> float | None:
    if not ma or period not in ma:
        return None
    return ma[period].value


def classify(ma: dict[int, MAValue], golden: GoldenCrossConfig, dead: DeadCrossConfig) -> CrossState | None:
    """MA 맵으로 상태 판정. dead 쌍이 없으면 None (판정 불가)."""
    dead_fast = _value(ma, dead.from_period)
    dead_slow = _value(ma, dead.to_period)
    if dead_fast is None or dead_slow is None:
        return None
    if dead_fast < dead_slow:
        return CrossState.DEAD

    golden_fast = _value(ma, golden.from_period)
    golden_slow = _value(ma, golden.to_period)
    if golden_fast is not None and golden_slow is not None and golden_fast > golden_slow:
        return CrossState.GOLDEN
    return CrossState.NONE


def golden_guards_met(ma: dict[int, MAValue] | None, golden: GoldenCrossConfig) -> bool:
    """골든크로스 가드: from MA가 (존재하는) 모든 under MA보다 위, 기울기 >= min_slope."""
    fast = ma.get(golden.from_period) if ma else None
    if fast is None:
        return False
    for period in golden.under:
        under = _value(ma, period)
        if under is not None and not fast.value > under:
            return False
    if golden.min_slope is not None and fast.slope < golden.min_slope:
        return False
    return True


def is_below(ma: dict[int, MAValue] | None, dead: DeadCrossConfig) -> bool:
    """dead.from MA가 below MA 중 하나라도 아래인지."""
    fast = _value(ma, dead.from_period)
    if fast is None:
        return False
    for period in dead.below:
        below = _value(ma, period)
        if below is not None and fast < below:
            return True
    return False


def crossed_below(ma: dict[int, MAValue], previous_ma: dict[int, MAValue] | None, dead: DeadCrossConfig) -> bool:
    """직전 틱에는 below MA 이상이었다가 이번 틱에 아래로 내려갔는지."""
    fast = _value(ma, dead.from_period)
    prev_fast = _value(previous_ma, dead.from_period)
    if fast is None or prev_fast is None:
        return False
    for period in dead.below:
        below = _value(ma, period)
        prev_below = _value(previous_ma, period)
        if below is None or prev_below is None:
            continue
        if fast < below and prev_fast >= prev_below:
            return True
    return False


class CrossStateTracker:
    """종목/그룹 교차 상태 저장소.

    SimulationContext가 소유하며, 상태는 evaluate()/evaluate_group()에서만 바뀐다.
    """

    def __init__(self, golden: GoldenCrossConfig, dead: DeadCrossConfig):
        self.golden = golden
        self.dead = dead
        self.states: dict[str, CrossState] = {}          # symbol → 상태
        self.group_states: dict[str, CrossState] = {}    # group id → 상태
        self.buyable_groups: set[str] = set()

    def state_of(self, symbol: str) -> CrossState:
        return self.states.get(symbol, CrossState.NONE)

    def group_state_of(self, group_id: str) -> CrossState:
        return self.group_states.get(group_id, CrossState.NONE)

    def evaluate(
        self,
        symbol: str,
        ma: dict[int, MAValue],
        previous_ma: dict[int, MAValue] | None,
    ) -> CrossEvaluation:
        """종목 상태 갱신. dead 쌍 MA가 없으면 상태 유지."""
        previous_state = self.state_of(symbol)
        state = classify(ma, self.golden, self.dead)
        if state is None:
            return CrossEvaluation(state=previous_state, previous_state=previous_state, available=False)

        self.states[symbol] = state
        if state == CrossState.DEAD:
            return CrossEvaluation(
                state=state,
                previous_state=previous_state,
                below=is_below(ma, self.dead),
                below_crossed=crossed_below(ma, previous_ma, self.dead),
            )
        if state == CrossState.GOLDEN:
            return CrossEvaluation(
                state=state,
                previous_state=previous_state,
                guards_met=golden_guards_met(ma, self.golden),
            )
        return CrossEvaluation(state=state, previous_state=previous_state)

    def evaluate_group(
        self,
        group_id: str,
        ma: dict[int, MAValue],
        previous_ma: dict[int, MAValue] | None,
    ) -> GroupCrossEvent:
        """그룹 상태 갱신 + 화이트리스트 반영.

        엣지는 golden/dead 쌍을 각자 판정하므로, dead 쌍 MA가 아직 없어도
        골든 엣지로 화이트리스트에 들어갈 수 있다. 상태만 dead 쌍이 있을 때 갱신.
        """
        state = classify(ma, self.golden, self.dead)
        if state is None:
            state = self.group_state_of(group_id)
        else:
            self.group_states[group_id] = state

        golden_edge = _edge(ma, previous_ma, self.golden.from_period, self.golden.to_period, rising=True)
        dead_edge = _edge(ma, previous_ma, self.dead.from_period, self.dead.to_period, rising=False)
        if golden_edge:
            self.buyable_groups.add(group_id)
        if dead_edge:
            self.buyable_groups.discard(group_id)
        return GroupCrossEvent(state=state, golden_edge=golden_edge, dead_edge=dead_edge)

    def is_buyable(self, group_id: str) -> bool:
        return group_id in self.buyable_groups


def _edge(
    ma: dict[int, MAValue],
    previous_ma: dict[int, MAValue] | None,
    from_period: int,
    to_period: int,
    rising: bool,
) -> bool:
    fast = _value(ma, from_period)
    slow = _value(ma, to_period)
    prev_fast = _value(previous_ma, from_period)
    prev_slow = _value(previous_ma, to_period)
    if None in (fast, slow, prev_fast, prev_slow):
        return False
    if rising:
        return prev_fast <= prev_slow and fast > slow
    return prev_fast >= prev_slow and fast < slow
