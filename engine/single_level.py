"""単一地域の档位配分（SingleLevelAllocator）。

顧客数行は档位区間へ切り出し済みの前提で、index 0 が区間の最高位。
粗調整で目標を跨ぐまで 1 巡ずつ積み上げ、微調整で最高位の顧客数未満まで
残差を詰めたうえで、候補 1〜4 から誤差最小のものを選ぶ。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from core.settings import AllocationSettings, load_settings
from domain.models import AllocationError, AllocationErrorKind
from engine.candidates import AllocationOutcome, Candidate
from engine.matrix_utils import ZERO, clamp_monotonic, row_delivered, to_decimal

logger = logging.getLogger(__name__)


@dataclass
class _CoarseResult:
    allocation: List[int]
    amount: Decimal
    last_grade: int
    exhausted: bool = False


@dataclass
class _FillResult:
    allocation: List[int]
    amount: Decimal
    progress: bool = False
    exceeded: bool = False
    exact: bool = False
    last_grade: int = -1


class SingleLevelAllocator:
    def __init__(self, settings: Optional[AllocationSettings] = None):
        self.settings = settings or load_settings()

    def allocate(
        self,
        customer_row: Sequence[object],
        target: Decimal,
        *,
        region: Optional[str] = None,
    ) -> AllocationOutcome:
        """1 行分の配分を計算する。戻り値の allocation は 1 行の行列。"""
        row = [to_decimal(v) for v in customer_row]
        width = len(row)
        if width == 0 or target <= 0:
            return AllocationOutcome(allocation=[[0] * width], delivered=ZERO)
        if not any(v > 0 for v in row):
            raise AllocationError.of(
                AllocationErrorKind.BUSINESS_RULE_VIOLATION,
                "ZERO_ROW_IN_RANGE",
                f"地域【{region or '-'}】は档位区間内の顧客数がすべて0のため配分を停止しました",
                region=region,
            )

        coarse = self._coarse(row, target)
        cand1 = Candidate.build(1, [coarse.allocation], coarse.amount, target)
        if coarse.amount == target:
            return AllocationOutcome.from_candidates([cand1])

        rolled, rolled_amount = self._rollback(coarse.allocation, coarse.amount, row, coarse.last_grade)
        state, amount, third, fourth, exhausted = self._refine(rolled, rolled_amount, row, target)
        exhausted = exhausted or coarse.exhausted

        cand2 = Candidate.build(2, [state], amount, target)
        cand3 = Candidate.build(3, [third[0]], third[1], target) if third else None
        cand4 = Candidate.build(4, [fourth[0]], fourth[1], target) if fourth else None

        outcome = AllocationOutcome.from_candidates([cand1, cand2, cand3, cand4], exhausted=exhausted)
        clamped = clamp_monotonic(outcome.allocation[0])
        if clamped != outcome.allocation[0]:
            outcome.allocation = [clamped]
            outcome.delivered = row_delivered(clamped, row)
        if exhausted:
            logger.warning(
                "refinement_incomplete",
                extra={"event": "refinement_incomplete", "algorithm": "single_level", "region": region},
            )
        return outcome

    # ------------------------------------------------------------------
    # 粗調整
    # ------------------------------------------------------------------
    def _coarse(self, row: Sequence[Decimal], target: Decimal) -> _CoarseResult:
        width = len(row)
        allocation = [0] * width
        amount = ZERO
        last_grade = -1
        rounds = 0
        while True:
            rounds += 1
            if rounds > self.settings.max_iterations:
                return _CoarseResult(allocation, amount, last_grade, exhausted=True)
            for grade in range(width):
                new_amount = amount + row[grade]
                allocation[grade] += 1
                if new_amount == target:
                    return _CoarseResult(allocation, new_amount, -1)
                amount = new_amount
                last_grade = grade
                if new_amount > target:
                    return _CoarseResult(allocation, amount, last_grade)

    @staticmethod
    def _rollback(
        allocation: Sequence[int],
        amount: Decimal,
        row: Sequence[Decimal],
        last_grade: int,
    ) -> Tuple[List[int], Decimal]:
        """直前の +1 を取り消す。記録がなければ最下位側の非 0 档から 1 引く。"""
        out = list(allocation)
        if 0 <= last_grade < len(out) and out[last_grade] > 0:
            out[last_grade] -= 1
            return out, amount - row[last_grade]
        for grade in range(len(out) - 1, -1, -1):
            if out[grade] > 0:
                out[grade] -= 1
                return out, amount - row[grade]
        return out, amount

    # ------------------------------------------------------------------
    # 微調整
    # ------------------------------------------------------------------
    def _refine(
        self,
        allocation: List[int],
        amount: Decimal,
        row: Sequence[Decimal],
        target: Decimal,
    ):
        hg_count = row[0]
        state = list(allocation)
        current = amount
        third: Optional[Tuple[List[int], Decimal]] = None
        fourth: Optional[Tuple[List[int], Decimal]] = None
        last_remainder: Optional[Decimal] = None
        stagnant = 0
        iterations = 0
        exhausted = False

        while True:
            iterations += 1
            if iterations > self.settings.max_iterations:
                exhausted = True
                break

            remainder = target - current
            if hg_count > 0:
                if remainder < hg_count:
                    third = (list(state), current)
                    bumped = list(state)
                    bumped[0] += 1
                    fourth = (bumped, current + hg_count)
                    break
            else:
                if last_remainder is not None and remainder == last_remainder:
                    stagnant += 1
                else:
                    stagnant = 1
                last_remainder = remainder
                if stagnant >= self.settings.stagnant_rounds:
                    third = (list(state), current)
                    break

            fill = self._fill(state, row, target, current)
            if not fill.progress:
                break
            state = fill.allocation
            if fill.exact:
                current = fill.amount
                third = (list(state), current)
                break
            if fill.exceeded:
                state[fill.last_grade] -= 1
                current = fill.amount - row[fill.last_grade]
            else:
                current = fill.amount

        return state, current, third, fourth, exhausted

    def _fill(
        self,
        allocation: Sequence[int],
        row: Sequence[Decimal],
        target: Decimal,
        amount: Decimal,
    ) -> _FillResult:
        """最高位から 1 巡ずつ +1 し、目標を跨ぐか一致した時点で止める。"""
        working = list(allocation)
        result = _FillResult(working, amount)
        sweeps = 0
        while sweeps < self.settings.max_iterations:
            sweeps += 1
            for grade in range(len(working)):
                working[grade] += 1
                new_amount = result.amount + row[grade]
                result.progress = True
                if new_amount > target:
                    result.amount = new_amount
                    result.exceeded = True
                    result.last_grade = grade
                    return result
                result.amount = new_amount
                if new_amount == target:
                    result.exact = True
                    return result
        return result
