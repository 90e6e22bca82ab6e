from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from domain.grades import GradeRange
from domain.models import (
    AllocationPeriod,
    PriceBandBatchRequest,
    PriceBandCandidate,
    PriceBandDefinition,
)
from engine.price_band import (
    PriceBandRule,
    PriceBandTruncationAdjuster,
    allocate_price_band_batch,
    needs_boost,
    order_candidates,
)


def _row(*head):
    return list(head) + [0] * (30 - len(head))


def _cand(code, grades=None, target=0, band=1, **kwargs):
    return PriceBandCandidate(
        code=code,
        name=f"cig-{code}",
        band=band,
        target_amount=Decimal(target),
        grades=grades if grades is not None else _row(),
        **kwargs,
    )


def test_find_cutoff_scans_from_lowest_grade():
    rows = [_row(3, 3, 2, 2, 1), _row(2, 2, 1)]
    assert PriceBandTruncationAdjuster.find_cutoff(rows, GradeRange.full()) == 2
    assert PriceBandTruncationAdjuster.find_cutoff([_row(1), _row()], GradeRange.full()) == -1


def test_truncate_then_refill_to_target(settings):
    adjuster = PriceBandTruncationAdjuster(settings)
    a = _cand("A", _row(3, 3, 2, 2, 1), target=110)
    b = _cand("B", _row(2, 2, 1), target=50)
    result = adjuster.truncate_and_adjust({1: [a, b]}, [10] * 30)
    rows = result.by_code()
    assert rows["A"].grades == _row(4, 4, 3)
    assert rows["B"].grades == _row(2, 2, 1)
    assert result.issues == []
    # 入力の候補は変更されない
    assert a.grades == _row(3, 3, 2, 2, 1)


def test_final_adjustment_prefers_highest_grade_on_tie(settings):
    adjuster = PriceBandTruncationAdjuster(settings)
    grades = [1, 0, 0]
    adjuster.adjust_row(grades, [Decimal(10), Decimal(10), Decimal(10)], Decimal(15), 0, 0)
    assert grades == [2, 0, 0]


def test_single_candidate_band_untouched(settings):
    adjuster = PriceBandTruncationAdjuster(settings)
    only = _cand("A", _row(3, 2, 1), target=5)
    result = adjuster.truncate_and_adjust({1: [only]}, [10] * 30)
    assert result.candidates == [only]


def test_zero_result_is_restored_and_reported(settings):
    adjuster = PriceBandTruncationAdjuster(settings)
    a = _cand("A", _row(3, 3, 3, 3, 2))
    b = _cand("B", _row(3, 3, 3, 3, 1))
    c = _cand("C", _row(1, 1))
    result = adjuster.truncate_and_adjust(
        {7: [a, b, c]},
        [10] * 30,
        grade_range=GradeRange(2, 29),
        period=AllocationPeriod(year=2025, month=3, week_seq=2),
    )
    rows = result.by_code()
    assert rows["C"].grades == _row(1, 1)
    assert rows["A"].grades == _row(0, 0, 3, 3, 2)
    assert len(result.issues) == 1
    issue = result.issues[0]
    assert issue.code == "ZERO_ALLOCATION_AFTER_TRUNCATION"
    assert issue.context == {"code": "C", "band": 7, "period": "2025-3-2"}
    assert "cig-C(C)" in issue.message
    assert result.has_errors
    assert "1 銘柄" in result.message


def test_boost_selection(settings):
    adjuster = PriceBandTruncationAdjuster(settings)
    base, boosted = [Decimal(1)] * 30, [Decimal(2)] * 30
    assert needs_boost(" 两周一访上浮100% ", "两周一访上浮100%")
    assert not needs_boost(None, "两周一访上浮100%")
    assert adjuster.customer_row_for(_cand("A", remark="两周一访上浮100%"), base, boosted) is boosted
    assert adjuster.customer_row_for(_cand("A", remark="两周一访上浮100%"), base, None) is base
    assert adjuster.customer_row_for(_cand("A", use_boosted=True), base, boosted) is boosted
    assert (
        adjuster.customer_row_for(_cand("A", remark="两周一访上浮100%", use_boosted=False), base, boosted)
        is base
    )


def test_price_band_rule():
    rule = PriceBandRule(
        [
            PriceBandDefinition(code=2, min_inclusive=Decimal(100), max_exclusive=Decimal(200)),
            PriceBandDefinition(code=1, min_inclusive=Decimal(0), max_exclusive=Decimal(100)),
            PriceBandDefinition(code=3, min_inclusive=Decimal(200)),
        ]
    )
    assert rule.resolve(Decimal(50)) == 1
    assert rule.resolve(Decimal(100)) == 2
    assert rule.resolve(Decimal(5000)) == 3
    assert rule.resolve(Decimal(-1)) == 0
    assert rule.resolve(None) == 0


def test_order_candidates():
    items = [
        _cand("X", band=2, wholesale_price=Decimal(10)),
        _cand("Y", band=1, wholesale_price=Decimal(5)),
        _cand("Z", band=1, wholesale_price=Decimal(8)),
    ]
    assert [c.code for c in order_candidates(items)] == ["Z", "Y", "X"]


def test_batch_allocates_truncates_and_keeps_order(settings):
    candidates = [
        _cand("A", target=100, band=1),
        _cand("B", target=50, band=1),
        _cand("C", target=30, band=2),
    ]
    result = allocate_price_band_batch(candidates, [10] * 30, settings=settings)
    assert [c.code for c in result.candidates] == ["A", "B", "C"]
    assert result.candidates[0].grades == _row(2, 2, 2, 2, 2)
    assert result.candidates[1].grades == _row(1, 1, 1, 1, 1)
    assert result.candidates[2].grades == _row(1, 1, 1)
    assert result.issues == []


def test_batch_uses_rule_and_boosted_row(settings):
    rule = PriceBandRule([PriceBandDefinition(code=4, min_inclusive=Decimal(0))])
    candidate = _cand("A", target=100, band=None, wholesale_price=Decimal(30), remark="两周一访上浮100%")
    result = allocate_price_band_batch([candidate], [10] * 30, [20] * 30, rule=rule, settings=settings)
    out = result.candidates[0]
    assert out.band == 4
    assert out.grades == _row(1, 1, 1, 1, 1)


def test_batch_reports_zero_customer_row(settings):
    result = allocate_price_band_batch(
        [_cand("A", target=10)], [0] * 30, grade_range=GradeRange(0, 4), settings=settings
    )
    assert result.candidates[0].grades == _row()
    assert [i.code for i in result.issues] == ["ZERO_ROW_IN_RANGE"]


def test_batch_candidates_without_band_keep_own_allocation(settings):
    candidates = [
        _cand("A", target=100, band=None),
        _cand("B", target=50, band=None),
        _cand("C", target=10, band=None),
    ]
    result = allocate_price_band_batch(candidates, [10] * 30, settings=settings)
    assert [c.grades for c in result.candidates] == [[1] * 10 + [0] * 20, _row(1, 1, 1, 1, 1), _row(1)]
    assert result.issues == []


def test_batch_keeps_candidates_sharing_a_code_apart(settings):
    candidates = [_cand("X", target=100), _cand("X", target=20)]
    result = allocate_price_band_batch(candidates, [10] * 30, settings=settings)
    first, second = result.candidates
    assert (first.target_amount, first.grades) == (Decimal(100), _row(5, 5))
    assert (second.target_amount, second.grades) == (Decimal(20), _row(1, 1))


def test_batch_reports_bad_customer_row_without_raising(settings):
    candidate = _cand("A", target=10)
    result = allocate_price_band_batch([candidate], [10] * 29, settings=settings)
    assert result.candidates == [candidate]
    assert [i.code for i in result.issues] == ["SHAPE_MISMATCH"]
    assert result.issues[0].context == {"row": "base_row", "columns": 29}

    result = allocate_price_band_batch([candidate], [10] * 30, ["NaN"] + [10] * 29, settings=settings)
    assert [i.code for i in result.issues] == ["MALFORMED_COUNT"]
    assert result.issues[0].context == {"row": "boosted_row", "index": 0}


def test_batch_request_rejects_short_rows():
    with pytest.raises(ValidationError):
        PriceBandBatchRequest(candidates=[], base_row=[10] * 29)
    with pytest.raises(ValidationError):
        PriceBandBatchRequest(candidates=[], base_row=[10] * 30, boosted_row=[1])
