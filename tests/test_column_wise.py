from __future__ import annotations

from decimal import Decimal

import pytest

from core.settings import AllocationSettings
from domain.models import AllocationError, AllocationErrorKind
from engine.column_wise import ColumnWiseAllocator, can_increment_column, solve_subset_sum
from engine.matrix_utils import is_monotonic


def _matrix(*rows):
    return [[Decimal(v) for v in row] for row in rows]


def test_two_identical_regions_split_evenly(settings):
    matrix = _matrix([1] * 30, [1] * 30)
    out = ColumnWiseAllocator(settings).allocate(["A", "B"], matrix, Decimal(20))
    expected = [1] * 10 + [0] * 20
    assert out.allocation == [expected, expected]
    assert out.delivered == Decimal(20)


def test_subset_candidate_hits_exact_target(settings):
    matrix = _matrix([3], [4], [5])
    out = ColumnWiseAllocator(settings).allocate(["A", "B", "C"], matrix, Decimal(20))
    assert out.chosen == 5
    assert out.allocation == [[2], [1], [2]]
    assert out.delivered == Decimal(20)


def test_subset_candidate_increments_zero_weight_regions_for_free(settings):
    matrix = _matrix([0, 1], [4, 1], [5, 1])
    out = ColumnWiseAllocator(settings).allocate(["A", "B", "C"], matrix, Decimal(20))
    # 候補 2/3/5 が誤差 2 で並び、番号の大きい候補 5 を採用
    assert out.chosen == 5
    assert out.allocation == [[3, 0], [3, 0], [2, 0]]
    assert out.delivered == Decimal(22)
    assert all(is_monotonic(row) for row in out.allocation)


def test_region_order_changes_subset_priority(settings):
    matrix = _matrix([4], [4])
    allocator = ColumnWiseAllocator(settings)
    default = allocator.allocate(["A", "B"], matrix, Decimal(12))
    reordered = allocator.allocate(["A", "B"], matrix, Decimal(12), region_order=["B", "A"])
    assert default.delivered == reordered.delivered == Decimal(12)
    assert default.allocation == [[2], [1]]
    assert reordered.allocation == [[1], [2]]


def test_zero_row_regions_are_reported_together(settings):
    matrix = _matrix([0, 0], [1, 1], [0, 0])
    with pytest.raises(AllocationError) as excinfo:
        ColumnWiseAllocator(settings).allocate(["A", "B", "C"], matrix, Decimal(5))
    assert excinfo.value.issues[0].context["regions"] == ["A", "C"]
    assert excinfo.value.issues[0].kind is AllocationErrorKind.BUSINESS_RULE_VIOLATION


def test_solve_subset_sum():
    assert solve_subset_sum([3, 4, 5], 8, 100) == (8, [0, 2])
    # 5 と 7 が等距離なら大きい方
    assert solve_subset_sum([3, 4, 5], 6, 100) == (7, [0, 1])
    assert solve_subset_sum([3, 4], 2, 100) == (3, [0])
    assert solve_subset_sum([3, 4], 5, 5) is None
    assert solve_subset_sum([3, 4], 0, 100) is None
    assert solve_subset_sum([], 3, 100) is None


def test_subset_candidate_skipped_above_ceiling():
    cfg = AllocationSettings(subset_sum_ceiling=5, metrics_enabled=False)
    out = ColumnWiseAllocator(cfg).allocate(["A", "B", "C"], _matrix([3], [4], [5]), Decimal(20))
    assert 5 not in out.candidate_errors
    assert out.chosen == 4
    assert out.allocation == [[2], [2], [2]]


def test_can_increment_column():
    assert can_increment_column([[1, 0], [2, 1]], 0)
    assert not can_increment_column([[1, 0], [2, 2]], 1)
    assert can_increment_column([[1, 0], [2, 1]], 1)
