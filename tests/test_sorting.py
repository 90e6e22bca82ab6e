from __future__ import annotations

from core.sorting import natural_sort_key, ordered_indices


def test_natural_sort_key_orders_numbers_numerically():
    names = ["区10", "区2", "区1"]
    assert sorted(names, key=natural_sort_key) == ["区1", "区2", "区10"]


def test_ordered_indices_prefers_caller_order():
    regions = ["r10", "r2", "r1", "hub"]
    assert ordered_indices(regions) == [3, 2, 1, 0]
    assert ordered_indices(regions, ["r10"]) == [0, 3, 2, 1]
