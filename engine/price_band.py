"""価格帯截断・微調整（PriceBandTruncationAdjuster）とバッチ実行。

同一価格帯に属する 2 銘柄以上の初期配分に共通の截断档位を設け、
截断後は銘柄ごとに自身の目標量へ向けて最高位から截断档位まで微調整する。
全 0 になった銘柄は初期配分へ戻し、エラーとしてまとめて返す。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from core import metrics
from core.settings import AllocationSettings, load_settings
from domain.grades import GRADE_COUNT, GradeRange
from domain.models import (
    AllocationError,
    AllocationErrorKind,
    AllocationIssue,
    AllocationPeriod,
    PriceBandBatchResult,
    PriceBandCandidate,
    PriceBandDefinition,
)
from engine.matrix_utils import ZERO, enforce_range_bounds, round_half_up, row_delivered, to_decimal
from engine.single_level import SingleLevelAllocator

logger = logging.getLogger(__name__)

NO_BAND = 0


class PriceBandRule:
    """批発価格から価格帯コードを引く。該当なしは 0。"""

    def __init__(self, definitions: Iterable[PriceBandDefinition]):
        self.definitions = sorted(definitions, key=lambda d: d.code)

    def resolve(self, price: Optional[Decimal]) -> int:
        if price is None:
            return NO_BAND
        for band in self.definitions:
            if band.min_inclusive is not None and price < band.min_inclusive:
                continue
            if band.max_exclusive is not None and price >= band.max_exclusive:
                continue
            return band.code
        return NO_BAND


def _order_key(c: PriceBandCandidate) -> Tuple[int, Decimal, str]:
    band = c.band if c.band is not None else NO_BAND
    price = c.wholesale_price if c.wholesale_price is not None else ZERO
    return (band, -price, c.code)


def order_candidates(candidates: Iterable[PriceBandCandidate]) -> List[PriceBandCandidate]:
    """価格帯昇順、批発価格降順、銘柄コード順。"""
    return sorted(candidates, key=_order_key)


def needs_boost(remark: Optional[str], phrase: str) -> bool:
    if not remark or not phrase:
        return False
    return phrase in remark.strip()


@dataclass
class _FillResult:
    amount: Decimal
    progress: bool = False
    exceeded: bool = False
    exact: bool = False
    last_grade: int = -1


class PriceBandTruncationAdjuster:
    def __init__(self, settings: Optional[AllocationSettings] = None):
        self.settings = settings or load_settings()

    def customer_row_for(
        self,
        candidate: PriceBandCandidate,
        base_row: Sequence[Decimal],
        boosted_row: Optional[Sequence[Decimal]],
    ) -> Sequence[Decimal]:
        boost = candidate.use_boosted
        if boost is None:
            boost = needs_boost(candidate.remark, self.settings.boost_phrase)
        if boost and boosted_row is not None:
            return boosted_row
        return base_row

    @staticmethod
    def find_cutoff(rows: Sequence[Sequence[int]], grade_range: GradeRange) -> int:
        """最低位側から走査し、2 銘柄以上が正の値を持つ最初の档位。なければ -1。"""
        for col in range(grade_range.min_index, grade_range.max_index - 1, -1):
            positives = sum(1 for row in rows if row[col] > 0)
            if positives >= 2:
                return col
        return -1

    def truncate_and_adjust(
        self,
        bands: Mapping[int, Sequence[PriceBandCandidate]],
        base_row: Sequence[object],
        boosted_row: Optional[Sequence[object]] = None,
        grade_range: Optional[GradeRange] = None,
        period: Optional[AllocationPeriod] = None,
    ) -> PriceBandBatchResult:
        """価格帯ごとに截断・微調整を行う。1 銘柄しかない帯はそのまま返す。"""
        grade_range = grade_range or GradeRange.full()
        period = period or AllocationPeriod()
        base = [to_decimal(v) for v in base_row]
        boosted = [to_decimal(v) for v in boosted_row] if boosted_row is not None else None

        adjusted: List[PriceBandCandidate] = []
        issues: List[AllocationIssue] = []
        for band, group in bands.items():
            rows, band_issues = self.adjust_band(band, list(group), base, boosted, grade_range, period)
            adjusted.extend(rows)
            issues.extend(band_issues)
        self.report_restores(issues)
        return PriceBandBatchResult(candidates=adjusted, issues=issues)

    def adjust_band(
        self,
        band: int,
        group: Sequence[PriceBandCandidate],
        base: Sequence[Decimal],
        boosted: Optional[Sequence[Decimal]],
        grade_range: GradeRange,
        period: AllocationPeriod,
    ) -> Tuple[List[PriceBandCandidate], List[AllocationIssue]]:
        """1 価格帯分の截断・微調整。戻り値の候補は group と同じ並び。"""
        if len(group) <= 1:
            return list(group), []
        before = [list(c.grades) for c in group]
        rows = [enforce_range_bounds(c.grades, grade_range) for c in group]
        cutoff = self.find_cutoff(rows, grade_range)
        if cutoff < 0:
            return list(group), []

        for row in rows:
            for col in range(cutoff + 1, grade_range.min_index + 1):
                row[col] = 0
        logger.info(
            "price_band_truncated",
            extra={
                "event": "price_band_truncated",
                "band": band,
                "cutoff": cutoff,
                "candidates": len(group),
            },
        )

        adjusted: List[PriceBandCandidate] = []
        issues: List[AllocationIssue] = []
        for candidate, row, original in zip(group, rows, before):
            customers = self.customer_row_for(candidate, base, boosted)
            target = round_half_up(candidate.target_amount)
            if target > 0:
                self.adjust_row(row, customers, target, grade_range.max_index, cutoff)
            final = enforce_range_bounds(row, grade_range)
            if any(final):
                adjusted.append(candidate.with_grades(final))
                continue
            adjusted.append(candidate.with_grades(original))
            issues.append(self._zero_allocation_issue(candidate, band, period))
        return adjusted, issues

    def report_restores(self, issues: Sequence[AllocationIssue]) -> None:
        if not issues:
            return
        logger.warning(
            "price_band_zero_allocation",
            extra={"event": "price_band_zero_allocation", "count": len(issues)},
        )
        if self.settings.metrics_enabled:
            metrics.PRICE_BAND_RESTORES.inc(len(issues))

    def adjust_row(
        self,
        grades: List[int],
        customers: Sequence[Decimal],
        target: Decimal,
        max_index: int,
        cutoff: int,
    ) -> List[int]:
        """最高位から截断档位までを 1 巡ずつ埋め、目標に最も近い状態で止める。"""
        current = row_delivered(grades, customers)
        if current >= target:
            return grades
        if not any(customers[g] > 0 for g in range(max_index, cutoff + 1)):
            return grades

        hg_count = customers[max_index]
        last_remainder: Optional[Decimal] = None
        stagnant = 0
        iterations = 0
        while True:
            iterations += 1
            if iterations > self.settings.max_iterations:
                logger.warning(
                    "refinement_incomplete",
                    extra={"event": "refinement_incomplete", "algorithm": "price_band"},
                )
                break

            remainder = target - current
            if hg_count > 0:
                if remainder < hg_count:
                    self._final_adjustment(grades, current, target, max_index, hg_count)
                    break
            else:
                if last_remainder is not None and remainder == last_remainder:
                    stagnant += 1
                else:
                    stagnant = 1
                last_remainder = remainder
                if stagnant >= self.settings.stagnant_rounds:
                    break

            fill = self._fill(grades, customers, target, max_index, cutoff, current)
            if not fill.progress or fill.exact:
                break
            if fill.exceeded:
                grades[fill.last_grade] -= 1
                current = fill.amount - customers[fill.last_grade]
            else:
                current = fill.amount
        return grades

    @staticmethod
    def _final_adjustment(
        grades: List[int],
        current: Decimal,
        target: Decimal,
        max_index: int,
        hg_count: Decimal,
    ) -> None:
        # 同誤差なら最高位 +1 を採用
        error_keep = abs(target - current)
        error_bump = abs(target - (current + hg_count))
        if error_bump <= error_keep:
            grades[max_index] += 1

    @staticmethod
    def _fill(
        grades: List[int],
        customers: Sequence[Decimal],
        target: Decimal,
        max_index: int,
        cutoff: int,
        amount: Decimal,
    ) -> _FillResult:
        result = _FillResult(amount)
        for grade in range(max_index, min(cutoff, len(grades) - 1) + 1):
            if grade > max_index and grades[grade - 1] < grades[grade] + 1:
                continue
            grades[grade] += 1
            result.progress = True
            new_amount = result.amount + customers[grade]
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

    @staticmethod
    def _zero_allocation_issue(
        candidate: PriceBandCandidate, band: int, period: AllocationPeriod
    ) -> AllocationIssue:
        name = candidate.name or "不明"
        return AllocationIssue(
            kind=AllocationErrorKind.DEGENERATE_RESULT,
            code="ZERO_ALLOCATION_AFTER_TRUNCATION",
            message=(
                f"銘柄【{name}({candidate.code})】は価格帯{band}の截断・微調整後に"
                f"配分が全0となったため初期配分へ戻しました。期間: {period.label}"
            ),
            context={"code": candidate.code, "band": band, "period": period.label},
        )


def band_positions(candidates: Sequence[PriceBandCandidate]) -> Dict[int, List[int]]:
    """価格帯ごとの候補位置（order_candidates の並び）。band 未設定の候補は截断対象外。"""
    bands: Dict[int, List[int]] = {}
    for pos in sorted(range(len(candidates)), key=lambda i: _order_key(candidates[i])):
        band = candidates[pos].band
        if band is None:
            continue
        bands.setdefault(band, []).append(pos)
    return bands


def _customer_row(
    values: Optional[Sequence[object]], name: str
) -> Tuple[List[Decimal], List[AllocationIssue]]:
    if values is None or len(values) != GRADE_COUNT:
        size = 0 if values is None else len(values)
        issue = AllocationIssue(
            kind=AllocationErrorKind.INVALID_INPUT,
            code="SHAPE_MISMATCH",
            message=f"顧客数行 {name} の列数({size})が{GRADE_COUNT}ではありません",
            context={"row": name, "columns": size},
        )
        return [], [issue]
    row: List[Decimal] = []
    issues: List[AllocationIssue] = []
    for idx, cell in enumerate(values):
        try:
            value = to_decimal(cell)
        except ValueError:
            issues.append(
                AllocationIssue(
                    kind=AllocationErrorKind.INVALID_INPUT,
                    code="MALFORMED_COUNT",
                    message=f"顧客数行 {name} の列{idx}を解釈できません: {cell!r}",
                    context={"row": name, "index": idx},
                )
            )
            value = ZERO
        if value < 0:
            issues.append(
                AllocationIssue(
                    kind=AllocationErrorKind.INVALID_INPUT,
                    code="NEGATIVE_COUNT",
                    message=f"顧客数行 {name} の列{idx}が負です: {value}",
                    context={"row": name, "index": idx},
                )
            )
        row.append(value)
    return row, issues


def allocate_price_band_batch(
    candidates: Iterable[PriceBandCandidate],
    base_row: Sequence[object],
    boosted_row: Optional[Sequence[object]] = None,
    grade_range: Optional[GradeRange] = None,
    period: Optional[AllocationPeriod] = None,
    *,
    rule: Optional[PriceBandRule] = None,
    settings: Optional[AllocationSettings] = None,
) -> PriceBandBatchResult:
    """銘柄ごとに単一地域配分を行い、価格帯ごとに截断・微調整する。

    例外は送出せず、入力不備（顧客数行の形状、区間内顧客数が全 0 など）と
    截断後の全 0 は issues にまとめて返す。候補の並びは入力順を保つ。
    顧客数行自体が不正な場合は配分せず、候補をそのまま返す。
    """
    settings = settings or load_settings()
    grade_range = grade_range or GradeRange.full()
    period = period or AllocationPeriod()
    candidates = list(candidates)

    base, issues = _customer_row(base_row, "base_row")
    boosted: Optional[List[Decimal]] = None
    if boosted_row is not None:
        boosted, boosted_issues = _customer_row(boosted_row, "boosted_row")
        issues.extend(boosted_issues)
    if issues:
        logger.warning(
            "price_band_invalid_input",
            extra={"event": "price_band_invalid_input", "count": len(issues)},
        )
        return PriceBandBatchResult(candidates=candidates, issues=issues)

    allocator = SingleLevelAllocator(settings)
    adjuster = PriceBandTruncationAdjuster(settings)
    allocated: List[PriceBandCandidate] = []
    for candidate in candidates:
        if candidate.band is None and rule is not None:
            candidate = candidate.model_copy(update={"band": rule.resolve(candidate.wholesale_price)})
        customers = adjuster.customer_row_for(candidate, base, boosted)
        target = round_half_up(candidate.target_amount)
        row = [0] * GRADE_COUNT
        try:
            outcome = allocator.allocate(grade_range.compact_row(customers), target, region=candidate.code)
            row = grade_range.expand_row(outcome.allocation[0])
        except AllocationError as exc:
            for issue in exc.issues:
                issues.append(
                    AllocationIssue(
                        kind=issue.kind,
                        code=issue.code,
                        message=(
                            f"銘柄【{candidate.name or '不明'}({candidate.code})】は档位区間 "
                            f"{grade_range} の顧客数がすべて0のため配分できません"
                        ),
                        context={"code": candidate.code, "grade_range": str(grade_range)},
                    )
                )
        allocated.append(candidate.with_grades(row))

    final = list(allocated)
    restored: List[AllocationIssue] = []
    for band, positions in band_positions(allocated).items():
        group, band_issues = adjuster.adjust_band(
            band, [allocated[p] for p in positions], base, boosted, grade_range, period
        )
        for pos, candidate in zip(positions, group):
            final[pos] = candidate
        restored.extend(band_issues)
    adjuster.report_restores(restored)
    return PriceBandBatchResult(candidates=final, issues=issues + restored)
