"""配分行列の共通処理（投放量計算・丸め・入力検証・単調性補正）。"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, List, Optional, Sequence

from domain.grades import GRADE_COUNT, GradeRange
from domain.models import AllocationError, AllocationErrorKind, AllocationIssue

ZERO = Decimal(0)
ONE = Decimal(1)


def to_decimal(value: Any) -> Decimal:
    """顧客数セルを Decimal へ正規化する。None は 0 とみなす。"""
    if value is None:
        return ZERO
    if isinstance(value, bool):
        raise ValueError(f"boolean is not a valid count: {value!r}")
    if isinstance(value, Decimal):
        d = value
    elif isinstance(value, int):
        d = Decimal(value)
    elif isinstance(value, float):
        d = Decimal(str(value))
    else:
        text = str(value).strip()
        if not text:
            return ZERO
        try:
            d = Decimal(text)
        except InvalidOperation as exc:
            raise ValueError(f"not a number: {value!r}") from exc
    # NaN / Infinity は比較で InvalidOperation になる
    if not d.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return d


def round_half_up(value: Any) -> Decimal:
    return to_decimal(value).quantize(ONE, rounding=ROUND_HALF_UP)


def normalize_matrix(
    regions: Sequence[str],
    matrix: Optional[Sequence[Optional[Sequence[Any]]]],
    width: int = GRADE_COUNT,
) -> List[List[Decimal]]:
    """地域リストと顧客数行列の形状を検証し、Decimal 行列を返す。

    問題はすべて収集してから 1 回の AllocationError で通知する。
    """
    if not regions or not matrix:
        raise AllocationError.of(
            AllocationErrorKind.INVALID_INPUT,
            "EMPTY_MATRIX",
            "地域リストまたは顧客数行列が空です",
        )
    if len(regions) != len(matrix):
        raise AllocationError.of(
            AllocationErrorKind.INVALID_INPUT,
            "SHAPE_MISMATCH",
            f"地域数({len(regions)})と顧客数行列の行数({len(matrix)})が一致しません",
            regions=len(regions),
            rows=len(matrix),
        )

    issues: List[AllocationIssue] = []
    normalized: List[List[Decimal]] = []
    for region, row in zip(regions, matrix):
        if row is None or len(row) != width:
            size = 0 if row is None else len(row)
            issues.append(
                AllocationIssue(
                    kind=AllocationErrorKind.INVALID_INPUT,
                    code="SHAPE_MISMATCH",
                    message=f"地域【{region}】の顧客数行の列数({size})が{width}ではありません",
                    context={"region": region, "columns": size},
                )
            )
            continue
        values: List[Decimal] = []
        for idx, cell in enumerate(row):
            try:
                value = to_decimal(cell)
            except ValueError:
                issues.append(
                    AllocationIssue(
                        kind=AllocationErrorKind.INVALID_INPUT,
                        code="MALFORMED_COUNT",
                        message=f"地域【{region}】の列{idx}の顧客数を解釈できません: {cell!r}",
                        context={"region": region, "index": idx},
                    )
                )
                value = ZERO
            if value < 0:
                issues.append(
                    AllocationIssue(
                        kind=AllocationErrorKind.INVALID_INPUT,
                        code="NEGATIVE_COUNT",
                        message=f"地域【{region}】の列{idx}の顧客数が負です: {value}",
                        context={"region": region, "index": idx},
                    )
                )
            values.append(value)
        normalized.append(values)
    if issues:
        raise AllocationError(issues)
    return normalized


def zero_matrix(rows: int, width: int = GRADE_COUNT) -> List[List[int]]:
    return [[0] * width for _ in range(rows)]


def row_delivered(allocation: Sequence[int], customers: Sequence[Decimal]) -> Decimal:
    total = ZERO
    for units, count in zip(allocation, customers):
        if units:
            total += units * count
    return total


def delivered_amount(
    allocation: Sequence[Sequence[int]], customers: Sequence[Sequence[Decimal]]
) -> Decimal:
    """Σ allocation × customerCount。"""
    return sum(
        (row_delivered(a, c) for a, c in zip(allocation, customers)),
        ZERO,
    )


def column_sums(matrix: Sequence[Sequence[Decimal]], width: int) -> List[Decimal]:
    sums = [ZERO] * width
    for row in matrix:
        for g in range(width):
            sums[g] += row[g]
    return sums


def find_zero_rows(regions: Sequence[str], matrix: Sequence[Sequence[Decimal]]) -> List[str]:
    return [region for region, row in zip(regions, matrix) if not any(v > 0 for v in row)]


def validate_no_zero_rows(
    regions: Sequence[str],
    matrix: Sequence[Sequence[Decimal]],
    grade_range: Optional[GradeRange] = None,
) -> None:
    """区間内で顧客数が全 0 の地域を一括で報告する。matrix は区間幅に切り出し済みであること。"""
    offending = find_zero_rows(regions, matrix)
    if not offending:
        return
    span = str(grade_range or GradeRange.full())
    names = "、".join(offending)
    raise AllocationError.of(
        AllocationErrorKind.BUSINESS_RULE_VIOLATION,
        "ZERO_ROW_IN_RANGE",
        f"以下の地域は档位区間 {span} の顧客数がすべて0のため配分できません: {names}",
        regions=list(offending),
        grade_range=span,
    )


def is_monotonic(row: Sequence[int]) -> bool:
    return all(row[i] <= row[i - 1] for i in range(1, len(row)))


def clamp_monotonic(row: Sequence[int]) -> List[int]:
    """上位より大きいセルを上位の値まで切り下げる。"""
    out = list(row)
    for i in range(1, len(out)):
        if out[i] > out[i - 1]:
            out[i] = out[i - 1]
    return out


def _push_excess_upward(row: List[int], start: int, excess: int) -> None:
    remaining = excess
    idx = start
    while idx > 0 and remaining > 0:
        capacity = row[idx - 1] - row[idx]
        if capacity > 0:
            delta = min(remaining, capacity)
            row[idx] += delta
            remaining -= delta
        idx -= 1
    if remaining > 0:
        row[0] += remaining


def enforce_monotonic_row(row: Sequence[int]) -> List[int]:
    """単調性違反を補正する。超過分は上位档へ戻し、行合計を保つ。"""
    out = [int(v or 0) for v in row]
    for i in range(1, len(out)):
        if out[i] > out[i - 1]:
            excess = out[i] - out[i - 1]
            out[i] = out[i - 1]
            _push_excess_upward(out, i - 1, excess)
    return out


def enforce_monotonic_rows(matrix: Sequence[Sequence[int]]) -> List[List[int]]:
    return [enforce_monotonic_row(row) for row in matrix]


def enforce_range_bounds(row: Sequence[int], grade_range: GradeRange) -> List[int]:
    """30 列の行について区間外を 0 にする。"""
    return [v if grade_range.contains(i) else 0 for i, v in enumerate(row)]
