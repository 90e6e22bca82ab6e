"""配分アルゴリズムの選択と実行（AlgorithmSelector）。

档位区間の解決、顧客数行列の切り出し・検証、目標量の四捨五入、
アルゴリズム選択、単調性補正、30 列への展開までを担う。
エンジン内部の AllocationError はここで失敗結果へ変換する。
"""

from __future__ import annotations

import logging
import time
from decimal import Decimal
from typing import Any, List, Mapping, Optional, Sequence

from core import metrics
from core.settings import AllocationSettings, load_settings
from domain.grades import GradeRange
from domain.models import (
    AlgorithmType,
    AllocationError,
    AllocationErrorKind,
    AllocationIssue,
    AllocationRequest,
    AllocationResult,
)
from engine.candidates import AllocationOutcome
from engine.column_wise import ColumnWiseAllocator
from engine.group_splitting import UNSPECIFIED_GROUP, GroupSplittingAllocator
from engine.matrix_utils import (
    delivered_amount,
    enforce_monotonic_rows,
    normalize_matrix,
    round_half_up,
    validate_no_zero_rows,
    zero_matrix,
)
from engine.ratio_providers import GroupRatioProvider, default_providers, resolve_weighting
from engine.single_level import SingleLevelAllocator

logger = logging.getLogger(__name__)


def _effective_group(region: str, mapping: Mapping[str, str]) -> str:
    group_id = mapping.get(region, region)
    if group_id is None or not str(group_id).strip():
        return UNSPECIFIED_GROUP
    return str(group_id)


class AlgorithmSelector:
    def __init__(
        self,
        single_level: Optional[SingleLevelAllocator] = None,
        column_wise: Optional[ColumnWiseAllocator] = None,
        group_splitting: Optional[GroupSplittingAllocator] = None,
        ratio_providers: Optional[Sequence[GroupRatioProvider]] = None,
        settings: Optional[AllocationSettings] = None,
    ):
        self.settings = settings or load_settings()
        self.single_level = single_level or SingleLevelAllocator(self.settings)
        self.column_wise = column_wise or ColumnWiseAllocator(self.settings)
        self.group_splitting = group_splitting or GroupSplittingAllocator(
            self.single_level, self.column_wise, self.settings
        )
        self.ratio_providers = (
            list(ratio_providers) if ratio_providers is not None else default_providers()
        )

    @staticmethod
    def decide_algorithm(
        regions: Sequence[str],
        group_ratios: Optional[Mapping[str, Any]] = None,
        region_group_mapping: Optional[Mapping[str, str]] = None,
    ) -> AlgorithmType:
        """地域数と重み付きグループの有無からアルゴリズムを決める。"""
        if len(regions) <= 1:
            return AlgorithmType.SINGLE_LEVEL
        if not group_ratios:
            return AlgorithmType.COLUMN_WISE
        mapping = region_group_mapping or {}
        groups = {_effective_group(r, mapping) for r in regions}
        if len(groups) <= 1:
            return AlgorithmType.COLUMN_WISE
        return AlgorithmType.GROUP_SPLITTING

    def execute(self, request: AllocationRequest) -> AllocationResult:
        return self.allocate(
            request.regions,
            request.customer_matrix,
            request.target_amount,
            max_grade=request.max_grade,
            min_grade=request.min_grade,
            group_ratios=request.group_ratios,
            region_group_mapping=request.region_group_mapping,
            weighting_kind=request.weighting_kind,
            region_order=request.region_order,
        )

    def allocate(
        self,
        regions: Sequence[str],
        customer_matrix: Sequence[Sequence[Any]],
        target: Any,
        *,
        max_grade: Any = None,
        min_grade: Any = None,
        group_ratios: Optional[Mapping[str, Any]] = None,
        region_group_mapping: Optional[Mapping[str, str]] = None,
        weighting_kind: Optional[str] = None,
        region_order: Optional[Sequence[str]] = None,
    ) -> AllocationResult:
        started = time.perf_counter()
        region_list = [str(r) for r in (regions or [])]
        grade_range = GradeRange.from_labels(max_grade, min_grade)
        algorithm: Optional[AlgorithmType] = None
        normalized_target: Optional[Decimal] = None
        try:
            full = normalize_matrix(region_list, customer_matrix)
            compact = grade_range.compact(full)
            validate_no_zero_rows(region_list, compact, grade_range)
            normalized_target = self._normalize_target(target)

            weighting = resolve_weighting(
                self.ratio_providers,
                weighting_kind,
                region_list,
                compact,
                ratios=group_ratios,
                mapping=region_group_mapping,
            )
            algorithm = self.decide_algorithm(region_list, weighting.ratios, weighting.mapping)
            if normalized_target <= 0:
                outcome = AllocationOutcome(
                    allocation=zero_matrix(len(region_list), grade_range.width),
                    delivered=Decimal(0),
                )
            else:
                outcome = self._run(
                    algorithm,
                    region_list,
                    compact,
                    normalized_target,
                    weighting.ratios,
                    weighting.mapping,
                    region_order,
                )
        except AllocationError as exc:
            self._record_failure(algorithm, exc.issues, started)
            return AllocationResult.failed(exc.issues, algorithm=algorithm, target=normalized_target)

        repaired = enforce_monotonic_rows(outcome.allocation)
        allocation = grade_range.expand(repaired)
        delivered = delivered_amount(allocation, full)
        warnings: List[AllocationIssue] = []
        if outcome.exhausted:
            warnings.append(
                AllocationIssue(
                    kind=AllocationErrorKind.DEGENERATE_RESULT,
                    code="REFINEMENT_INCOMPLETE",
                    message="微調整が反復上限に達したため、その時点の最良候補を採用しました",
                    severity="warning",
                    context={"algorithm": algorithm.value, "max_iterations": self.settings.max_iterations},
                )
            )

        result = AllocationResult.succeeded(
            algorithm=algorithm,
            regions=region_list,
            customer_matrix=full,
            allocation_matrix=allocation,
            target=normalized_target,
            delivered=delivered,
            max_grade=grade_range.max_label,
            min_grade=grade_range.min_label,
            warnings=warnings,
        )
        self._record_success(result, outcome, started)
        return result

    @staticmethod
    def _normalize_target(target: Any) -> Decimal:
        try:
            return round_half_up(target)
        except ValueError as exc:
            raise AllocationError.of(
                AllocationErrorKind.INVALID_INPUT,
                "INVALID_TARGET",
                f"目標量を解釈できません: {target!r}",
                target=str(target),
            ) from exc

    def _run(
        self,
        algorithm: AlgorithmType,
        regions: List[str],
        compact: List[List[Decimal]],
        target: Decimal,
        ratios: Mapping[str, Decimal],
        mapping: Mapping[str, str],
        region_order: Optional[Sequence[str]],
    ) -> AllocationOutcome:
        if algorithm is AlgorithmType.SINGLE_LEVEL:
            return self.single_level.allocate(compact[0], target, region=regions[0])
        if algorithm is AlgorithmType.COLUMN_WISE:
            return self.column_wise.allocate(regions, compact, target, region_order=region_order)
        return self.group_splitting.allocate(
            regions, compact, target, mapping, ratios, region_order=region_order
        )

    def _record_success(
        self, result: AllocationResult, outcome: AllocationOutcome, started: float
    ) -> None:
        algorithm = result.algorithm.value if result.algorithm else "none"
        elapsed = time.perf_counter() - started
        error = result.error_amount
        logger.info(
            "allocation_completed",
            extra={
                "event": "allocation_completed",
                "algorithm": algorithm,
                "regions": len(result.regions),
                "target": str(result.target),
                "delivered": str(result.delivered),
                "candidate": outcome.chosen,
                "elapsed_ms": int(elapsed * 1000),
            },
        )
        if not self.settings.metrics_enabled:
            return
        metrics.ALLOCATION_RUNS.labels(algorithm=algorithm, outcome="success").inc()
        metrics.ALLOCATION_DURATION.labels(algorithm=algorithm).observe(elapsed)
        if error is not None:
            metrics.ALLOCATION_ABS_ERROR.observe(float(error))

    def _record_failure(
        self,
        algorithm: Optional[AlgorithmType],
        issues: Sequence[AllocationIssue],
        started: float,
    ) -> None:
        label = algorithm.value if algorithm else "none"
        logger.warning(
            "allocation_failed",
            extra={
                "event": "allocation_failed",
                "algorithm": label,
                "codes": [issue.code for issue in issues],
            },
        )
        if not self.settings.metrics_enabled:
            return
        metrics.ALLOCATION_RUNS.labels(algorithm=label, outcome="failure").inc()
        metrics.ALLOCATION_DURATION.labels(algorithm=label).observe(time.perf_counter() - started)
