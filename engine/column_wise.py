"""複数地域の列単位配分（ColumnWiseAllocator）。

「档位 g を +1」は全地域の g 列を同時に +1 することを意味し、その増分は
g 列の顧客数合計となる。候補 1〜4 は単一地域と同じ手順で作り、最高位列では
地域ごとの部分和（0/1 ナップサック）による候補 5 を追加する。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from core.settings import AllocationSettings, load_settings
from core.sorting import ordered_indices
from domain.models import AllocationError, AllocationErrorKind
from engine.candidates import AllocationOutcome, Candidate
from engine.matrix_utils import (
    ZERO,
    clamp_monotonic,
    column_sums,
    delivered_amount,
    find_zero_rows,
    to_decimal,
)

logger = logging.getLogger(__name__)


@dataclass
class _FillResult:
    matrix: List[List[int]]
    amount: Decimal
    progress: bool = False
    exceeded: bool = False
    exact: bool = False
    last_grade: int = -1


@dataclass
class SubsetChoice:
    """最高位列で個別に +1 する地域の組み合わせ。"""

    chosen: List[int] = field(default_factory=list)
    free: List[int] = field(default_factory=list)
    total: int = 0


def _copy(matrix: Sequence[Sequence[int]]) -> List[List[int]]:
    return [list(row) for row in matrix]


def _add_column(matrix: List[List[int]], grade: int, delta: int = 1) -> None:
    for row in matrix:
        row[grade] += delta


def can_increment_column(matrix: Sequence[Sequence[int]], grade: int) -> bool:
    """全地域で g 列を +1 しても上位列以下に収まるか。"""
    if grade == 0:
        return True
    return all(row[grade - 1] >= row[grade] + 1 for row in matrix)


def solve_subset_sum(
    weights: Sequence[int], remainder: int, ceiling: int
) -> Optional[Tuple[int, List[int]]]:
    """重み集合の部分和のうち remainder に最も近いものを求める。

    同距離なら大きい和を採用する。各和は最初にそれを到達可能にした要素で
    復元するため、weights の並び順がそのまま優先順位になる。
    容量（重み合計）が ceiling を超える場合や到達和がない場合は None。
    """
    if remainder <= 0 or not weights:
        return None
    capacity = sum(weights)
    if capacity <= 0 or capacity > ceiling:
        return None

    limit = (1 << (capacity + 1)) - 1
    reach = 1
    history = [reach]
    for w in weights:
        reach = (reach | (reach << w)) & limit
        history.append(reach)

    best = None
    upper = reach >> remainder
    if upper:
        best = remainder + (upper & -upper).bit_length() - 1
    lower = (reach & ((1 << (min(remainder, capacity) + 1)) - 1)) & ~1
    if lower:
        down = lower.bit_length() - 1
        if best is None or remainder - down < best - remainder:
            best = down
    if not best:
        return None

    picked: List[int] = []
    current = best
    while current > 0:
        item = next(
            i for i in range(len(weights)) if (history[i + 1] >> current) & 1 and not (history[i] >> current) & 1
        )
        picked.append(item)
        current -= weights[item]
    return best, sorted(picked)


class ColumnWiseAllocator:
    def __init__(self, settings: Optional[AllocationSettings] = None):
        self.settings = settings or load_settings()

    def allocate(
        self,
        regions: Sequence[str],
        customer_matrix: Sequence[Sequence[object]],
        target: Decimal,
        *,
        region_order: Optional[Sequence[str]] = None,
    ) -> AllocationOutcome:
        matrix = [[to_decimal(v) for v in row] for row in customer_matrix]
        width = len(matrix[0]) if matrix else 0
        if not matrix or width == 0 or target <= 0:
            return AllocationOutcome(allocation=[[0] * width for _ in matrix], delivered=ZERO)

        zero_regions = find_zero_rows(regions, matrix)
        if zero_regions:
            raise AllocationError.of(
                AllocationErrorKind.BUSINESS_RULE_VIOLATION,
                "ZERO_ROW_IN_RANGE",
                "列単位配分を停止しました。档位区間内の顧客数がすべて0の地域: "
                + "、".join(zero_regions),
                regions=zero_regions,
            )

        increments = column_sums(matrix, width)
        coarse, coarse_amount, coarse_exhausted = self._coarse(matrix, increments, target)
        cand1 = Candidate.build(1, coarse, coarse_amount, target)
        if coarse_amount == target:
            return AllocationOutcome.from_candidates([cand1])

        rolled, rolled_amount = self._rollback(coarse, coarse_amount, increments, target)

        state = rolled
        current = rolled_amount
        hg_increment = increments[0]
        third = fourth = fifth = None
        last_remainder: Optional[Decimal] = None
        stagnant = 0
        iterations = 0
        exhausted = coarse_exhausted

        while True:
            iterations += 1
            if iterations > self.settings.max_iterations:
                exhausted = True
                break

            remainder = target - current
            if hg_increment > 0:
                if remainder < hg_increment:
                    third = Candidate.build(3, state, current, target)
                    if can_increment_column(state, 0):
                        bumped = _copy(state)
                        _add_column(bumped, 0)
                        fourth = Candidate.build(4, bumped, current + hg_increment, target)
                    fifth = self._subset_candidate(
                        regions, matrix, state, remainder, current, target, region_order
                    )
                    break
            else:
                if last_remainder is not None and remainder == last_remainder:
                    stagnant += 1
                else:
                    stagnant = 1
                last_remainder = remainder
                if stagnant >= self.settings.stagnant_rounds:
                    third = Candidate.build(3, state, current, target)
                    break

            fill = self._fill(state, increments, target, current)
            if not fill.progress:
                break
            state = fill.matrix
            if fill.exact:
                current = fill.amount
                third = Candidate.build(3, state, current, target)
                break
            if fill.exceeded:
                _add_column(state, fill.last_grade, -1)
                current = fill.amount - increments[fill.last_grade]
            else:
                current = fill.amount

        cand2 = Candidate.build(2, state, current, target)
        outcome = AllocationOutcome.from_candidates(
            [cand1, cand2, third, fourth, fifth], exhausted=exhausted
        )
        clamped = [clamp_monotonic(row) for row in outcome.allocation]
        if clamped != outcome.allocation:
            outcome.allocation = clamped
            outcome.delivered = delivered_amount(clamped, matrix)
        if exhausted:
            logger.warning(
                "refinement_incomplete",
                extra={"event": "refinement_incomplete", "algorithm": "column_wise", "regions": len(regions)},
            )
        return outcome

    def _coarse(
        self,
        matrix: Sequence[Sequence[Decimal]],
        increments: Sequence[Decimal],
        target: Decimal,
    ) -> Tuple[List[List[int]], Decimal, bool]:
        """目標を超えない範囲で列を 1 巡ずつ積み上げる。一致したら即終了。"""
        width = len(increments)
        allocation = [[0] * width for _ in matrix]
        amount = ZERO
        rounds = 0
        while True:
            rounds += 1
            if rounds > self.settings.max_iterations:
                return allocation, amount, True
            for grade in range(width):
                new_amount = amount + increments[grade]
                if new_amount == target:
                    _add_column(allocation, grade)
                    return allocation, new_amount, False
                if new_amount > target:
                    return allocation, amount, False
                _add_column(allocation, grade)
                amount = new_amount

    @staticmethod
    def _rollback(
        allocation: Sequence[Sequence[int]],
        amount: Decimal,
        increments: Sequence[Decimal],
        target: Decimal,
    ) -> Tuple[List[List[int]], Decimal]:
        """最下位側から、全地域が正の値を持つ最初の列を 1 つ戻す。"""
        out = _copy(allocation)
        for grade in range(len(increments) - 1, -1, -1):
            if all(row[grade] > 0 for row in out):
                new_amount = amount - increments[grade]
                if new_amount <= target:
                    _add_column(out, grade, -1)
                    return out, new_amount
        return out, amount

    def _fill(
        self,
        allocation: Sequence[Sequence[int]],
        increments: Sequence[Decimal],
        target: Decimal,
        amount: Decimal,
    ) -> _FillResult:
        working = _copy(allocation)
        result = _FillResult(working, amount)
        sweeps = 0
        while sweeps < self.settings.max_iterations:
            sweeps += 1
            round_progress = False
            for grade in range(len(increments)):
                if not can_increment_column(working, grade):
                    continue
                _add_column(working, grade)
                round_progress = True
                result.progress = True
                new_amount = result.amount + increments[grade]
                if new_amount > target:
                    result.amount = new_amount
                    result.exceeded = True
                    result.last_grade = grade
                    return result
                result.amount = new_amount
                if new_amount == target:
                    result.exact = True
                    return result
            if not round_progress:
                break
        return result

    def _subset_candidate(
        self,
        regions: Sequence[str],
        matrix: Sequence[Sequence[Decimal]],
        base: Sequence[Sequence[int]],
        remainder: Decimal,
        current: Decimal,
        target: Decimal,
        region_order: Optional[Sequence[str]],
    ) -> Optional[Candidate]:
        choice = self.choose_top_subset(regions, matrix, remainder, region_order)
        if choice is None:
            return None
        candidate = _copy(base)
        for idx in choice.chosen + choice.free:
            candidate[idx][0] += 1
        return Candidate.build(5, candidate, current + choice.total, target)

    def choose_top_subset(
        self,
        regions: Sequence[str],
        matrix: Sequence[Sequence[Decimal]],
        remainder: Decimal,
        region_order: Optional[Sequence[str]] = None,
    ) -> Optional[SubsetChoice]:
        """最高位列で個別 +1 する地域を部分和 DP で選ぶ。

        顧客数 0 の地域は費用なしで必ず +1 する。重みが整数でない場合や
        重み合計が上限を超える場合は候補を作らない。
        """
        budget = int(remainder)
        if budget <= 0:
            return None
        free: List[int] = []
        items: List[int] = []
        weights: List[int] = []
        for idx in ordered_indices(regions, region_order):
            count = matrix[idx][0]
            if count <= 0:
                free.append(idx)
                continue
            if count != count.to_integral_value():
                logger.debug(
                    "subset candidate skipped: fractional weight",
                    extra={"event": "subset_candidate_skipped", "region": regions[idx]},
                )
                return None
            items.append(idx)
            weights.append(int(count))
        solved = solve_subset_sum(weights, budget, self.settings.subset_sum_ceiling)
        if solved is None:
            return None
        total, picked = solved
        return SubsetChoice(chosen=sorted(items[i] for i in picked), free=sorted(free), total=total)
