"""配分エンジンの入出力モデルとエラー種別。"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from domain.grades import GRADE_COUNT


Severity = Literal["error", "warning"]


class AlgorithmType(str, Enum):
    SINGLE_LEVEL = "single_level"
    COLUMN_WISE = "column_wise"
    GROUP_SPLITTING = "group_splitting"


class AllocationErrorKind(str, Enum):
    """失敗理由の分類。"""

    INVALID_INPUT = "invalid_input"
    BUSINESS_RULE_VIOLATION = "business_rule_violation"
    DEGENERATE_INPUT = "degenerate_input"
    DEGENERATE_RESULT = "degenerate_result"


class AllocationIssue(BaseModel):
    """単一の検出事項。context には地域・グループ・銘柄などの識別子を入れる。"""

    kind: AllocationErrorKind
    code: str
    message: str
    severity: Severity = "error"
    context: Dict[str, Any] = Field(default_factory=dict)


class AllocationError(RuntimeError):
    """エンジン内部で検出した前提条件違反。セレクタ境界で失敗結果へ変換される。"""

    def __init__(self, issues: Iterable[AllocationIssue]):
        self.issues: List[AllocationIssue] = list(issues)
        super().__init__("\n".join(issue.message for issue in self.issues))

    @classmethod
    def of(
        cls,
        kind: AllocationErrorKind,
        code: str,
        message: str,
        **context: Any,
    ) -> "AllocationError":
        return cls([AllocationIssue(kind=kind, code=code, message=message, context=context)])


class RegionRow(BaseModel):
    """顧客数行列の 1 行（地域 × 30 グレード）。"""

    region: str
    grades: List[Optional[Decimal]] = Field(default_factory=list)


class AllocationRequest(BaseModel):
    """通常配分（単一地域／複数地域／重み付きグループ）の入力。"""

    rows: List[RegionRow] = Field(default_factory=list)
    target_amount: Decimal
    max_grade: Optional[str] = Field(default=None, description="最高位ラベル。例: 'D30'")
    min_grade: Optional[str] = Field(default=None, description="最低位ラベル。例: 'D1'")
    group_ratios: Dict[str, Decimal] = Field(default_factory=dict)
    region_group_mapping: Dict[str, str] = Field(default_factory=dict)
    weighting_kind: Optional[str] = Field(
        default=None, description="比率プロバイダのキー。例: 'customer_share'"
    )
    region_order: List[str] = Field(
        default_factory=list, description="列単位配分で優先する地域の順序"
    )

    @property
    def regions(self) -> List[str]:
        return [row.region for row in self.rows]

    @property
    def customer_matrix(self) -> List[List[Optional[Decimal]]]:
        return [list(row.grades) for row in self.rows]


class AllocationResult(BaseModel):
    """配分結果。success=False の場合は issues に理由が入る。"""

    success: bool
    algorithm: Optional[AlgorithmType] = None
    regions: List[str] = Field(default_factory=list)
    customer_matrix: List[List[Decimal]] = Field(default_factory=list)
    allocation_matrix: List[List[int]] = Field(default_factory=list)
    target: Optional[Decimal] = None
    delivered: Optional[Decimal] = None
    max_grade: Optional[str] = None
    min_grade: Optional[str] = None
    issues: List[AllocationIssue] = Field(default_factory=list)

    @classmethod
    def succeeded(
        cls,
        *,
        algorithm: Optional[AlgorithmType],
        regions: List[str],
        customer_matrix: List[List[Decimal]],
        allocation_matrix: List[List[int]],
        target: Decimal,
        delivered: Decimal,
        max_grade: Optional[str] = None,
        min_grade: Optional[str] = None,
        warnings: Optional[List[AllocationIssue]] = None,
    ) -> "AllocationResult":
        return cls(
            success=True,
            algorithm=algorithm,
            regions=regions,
            customer_matrix=customer_matrix,
            allocation_matrix=allocation_matrix,
            target=target,
            delivered=delivered,
            max_grade=max_grade,
            min_grade=min_grade,
            issues=list(warnings or []),
        )

    @classmethod
    def failed(
        cls,
        issues: Iterable[AllocationIssue],
        *,
        algorithm: Optional[AlgorithmType] = None,
        target: Optional[Decimal] = None,
    ) -> "AllocationResult":
        return cls(success=False, algorithm=algorithm, target=target, issues=list(issues))

    @property
    def errors(self) -> List[AllocationIssue]:
        return [issue for issue in self.issues if issue.severity == "error"]

    @property
    def warnings(self) -> List[AllocationIssue]:
        return [issue for issue in self.issues if issue.severity == "warning"]

    @property
    def message(self) -> Optional[str]:
        errors = self.errors
        if not errors:
            return None
        return "\n".join(issue.message for issue in errors)

    @property
    def error_amount(self) -> Optional[Decimal]:
        if self.target is None or self.delivered is None:
            return None
        return abs(self.target - self.delivered)


class AllocationPeriod(BaseModel):
    """価格帯バッチの対象期間（エラーメッセージ用）。"""

    year: Optional[int] = None
    month: Optional[int] = None
    week_seq: Optional[int] = None

    @property
    def label(self) -> str:
        parts = [self.year, self.month, self.week_seq]
        return "-".join("?" if p is None else str(p) for p in parts)


class PriceBandDefinition(BaseModel):
    """価格帯定義。min_inclusive <= price < max_exclusive で判定する。"""

    code: int
    label: Optional[str] = None
    min_inclusive: Optional[Decimal] = None
    max_exclusive: Optional[Decimal] = None


class PriceBandCandidate(BaseModel):
    """価格帯配分の候補銘柄。grades は常に 30 列で、段階ごとに新しいインスタンスを返す。"""

    code: str
    name: Optional[str] = None
    band: Optional[int] = None
    target_amount: Decimal = Decimal(0)
    wholesale_price: Optional[Decimal] = None
    remark: Optional[str] = None
    use_boosted: Optional[bool] = Field(
        default=None, description="None の場合は remark から判定する"
    )
    grades: List[int] = Field(default_factory=lambda: [0] * GRADE_COUNT)

    model_config = {"frozen": True}

    @field_validator("grades")
    @classmethod
    def _check_grades(cls, value: List[int]) -> List[int]:
        if len(value) != GRADE_COUNT:
            raise ValueError(f"grades must contain {GRADE_COUNT} values")
        if any(v < 0 for v in value):
            raise ValueError("grades must be non-negative")
        return value

    def with_grades(self, grades: List[int]) -> "PriceBandCandidate":
        return self.model_copy(update={"grades": list(grades)})

    @property
    def is_all_zero(self) -> bool:
        return not any(self.grades)


class PriceBandBatchRequest(BaseModel):
    """価格帯バッチの入力。base_row / boosted_row は 30 列の顧客数行。"""

    candidates: List[PriceBandCandidate] = Field(default_factory=list)
    base_row: List[Optional[Decimal]]
    boosted_row: Optional[List[Optional[Decimal]]] = None
    max_grade: Optional[str] = None
    min_grade: Optional[str] = None
    period: AllocationPeriod = Field(default_factory=AllocationPeriod)
    bands: List[PriceBandDefinition] = Field(
        default_factory=list, description="band 未指定の候補を批発価格から分類する定義"
    )

    @field_validator("base_row", "boosted_row")
    @classmethod
    def _check_row_width(cls, value: Optional[List[Optional[Decimal]]]):
        if value is not None and len(value) != GRADE_COUNT:
            raise ValueError(f"customer row must contain {GRADE_COUNT} values")
        return value


class PriceBandBatchResult(BaseModel):
    """価格帯バッチの結果。全候補の最終行と、収集された全エラーを保持する。"""

    candidates: List[PriceBandCandidate] = Field(default_factory=list)
    issues: List[AllocationIssue] = Field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(issue.severity == "error" for issue in self.issues)

    @property
    def message(self) -> Optional[str]:
        errors = [issue for issue in self.issues if issue.severity == "error"]
        if not errors:
            return None
        header = f"価格帯截断で異常が発生しました（{len(errors)} 銘柄）"
        return "\n".join([header] + [issue.message for issue in errors])

    def raise_for_errors(self) -> None:
        if self.has_errors:
            raise AllocationError(issue for issue in self.issues if issue.severity == "error")

    def by_code(self) -> Dict[str, PriceBandCandidate]:
        return {c.code: c for c in self.candidates}
