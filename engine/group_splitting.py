"""重み付きグループ分割配分（GroupSplittingAllocator）。

目標量をグループ重みで按分し、グループごとに地域数 1 なら単一地域配分、
2 以上なら列単位配分へ委譲する。グループ目標は個別に四捨五入するため、
合計は全体目標から最大 0.5 × グループ数だけずれることがある。
"""

from __future__ import annotations

import logging
from decimal import Decimal, localcontext
from typing import Dict, List, Mapping, Optional, Sequence

from core.settings import AllocationSettings, load_settings
from domain.models import AllocationError, AllocationErrorKind
from engine.candidates import AllocationOutcome
from engine.column_wise import ColumnWiseAllocator
from engine.matrix_utils import ONE, ZERO, find_zero_rows, round_half_up, to_decimal
from engine.single_level import SingleLevelAllocator

logger = logging.getLogger(__name__)

UNSPECIFIED_GROUP = "UNSPECIFIED"
_DIVISION_PRECISION = 16


def build_groups(regions: Sequence[str], mapping: Mapping[str, str]) -> Dict[str, List[int]]:
    """グループ ID -> 行インデックス。未登録地域は自身の名前を ID とする。"""
    groups: Dict[str, List[int]] = {}
    for idx, region in enumerate(regions):
        group_id = mapping.get(region, region)
        if group_id is None or not str(group_id).strip():
            group_id = UNSPECIFIED_GROUP
        groups.setdefault(str(group_id), []).append(idx)
    return groups


def group_weights(group_ids: Sequence[str], ratios: Mapping[str, object]) -> Dict[str, Decimal]:
    """設定比率を重みにする。欠落・非正の比率は 1 とみなす。"""
    weights: Dict[str, Decimal] = {}
    for group_id in group_ids:
        raw = ratios.get(group_id)
        ratio = to_decimal(raw) if raw is not None else None
        if ratio is None or ratio <= 0:
            ratio = ONE
        weights[group_id] = ratio
    return weights


def split_target(target: Decimal, weights: Mapping[str, Decimal]) -> Dict[str, Decimal]:
    """グループ目標 = round_half_up(target × weight / Σweight)。"""
    total = sum(weights.values(), ZERO)
    if total <= 0:
        raise AllocationError.of(
            AllocationErrorKind.BUSINESS_RULE_VIOLATION,
            "ZERO_GROUP_WEIGHT",
            "すべてのグループ重みが0のため目標量を分割できません",
            groups=sorted(weights),
        )
    targets: Dict[str, Decimal] = {}
    for group_id, weight in weights.items():
        with localcontext() as ctx:
            ctx.prec = _DIVISION_PRECISION
            share = weight / total
        targets[group_id] = round_half_up(target * share)
    return targets


class GroupSplittingAllocator:
    def __init__(
        self,
        single_level: Optional[SingleLevelAllocator] = None,
        column_wise: Optional[ColumnWiseAllocator] = None,
        settings: Optional[AllocationSettings] = None,
    ):
        self.settings = settings or load_settings()
        self.single_level = single_level or SingleLevelAllocator(self.settings)
        self.column_wise = column_wise or ColumnWiseAllocator(self.settings)

    def allocate(
        self,
        regions: Sequence[str],
        customer_matrix: Sequence[Sequence[object]],
        target: Decimal,
        region_group_mapping: Optional[Mapping[str, str]] = None,
        group_ratios: Optional[Mapping[str, object]] = None,
        *,
        region_order: Optional[Sequence[str]] = None,
    ) -> AllocationOutcome:
        matrix = [[to_decimal(v) for v in row] for row in customer_matrix]
        width = len(matrix[0]) if matrix else 0
        normalized = round_half_up(target)
        if not matrix or normalized <= 0:
            return AllocationOutcome(allocation=[[0] * width for _ in matrix], delivered=ZERO)

        zero_regions = find_zero_rows(regions, matrix)
        if zero_regions:
            raise AllocationError.of(
                AllocationErrorKind.BUSINESS_RULE_VIOLATION,
                "ZERO_ROW_IN_RANGE",
                "グループ分割配分を停止しました。档位区間内の顧客数がすべて0の地域: "
                + "、".join(zero_regions),
                regions=zero_regions,
            )

        groups = build_groups(regions, region_group_mapping or {})
        weights = group_weights(list(groups), group_ratios or {})
        targets = split_target(normalized, weights)
        drift = sum(targets.values(), ZERO) - normalized
        if drift:
            logger.debug(
                "group targets drift from overall target by %s",
                drift,
                extra={"event": "group_target_drift", "drift": str(drift), "groups": len(groups)},
            )

        allocation: List[List[int]] = [[0] * width for _ in matrix]
        delivered = ZERO
        exhausted = False
        for group_id, indices in groups.items():
            sub_regions = [regions[i] for i in indices]
            sub_matrix = [matrix[i] for i in indices]
            group_target = targets[group_id]
            if len(indices) == 1:
                outcome = self.single_level.allocate(sub_matrix[0], group_target, region=sub_regions[0])
            else:
                outcome = self.column_wise.allocate(
                    sub_regions, sub_matrix, group_target, region_order=region_order
                )
            for local, original in enumerate(indices):
                allocation[original] = list(outcome.allocation[local])
            delivered += outcome.delivered
            exhausted = exhausted or outcome.exhausted

        return AllocationOutcome(
            allocation=allocation,
            delivered=delivered,
            exhausted=exhausted,
            group_targets=targets,
        )
