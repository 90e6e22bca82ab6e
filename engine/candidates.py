"""配分候補の比較と選択。"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple


Matrix = Tuple[Tuple[int, ...], ...]


def freeze(matrix: Sequence[Sequence[int]]) -> Matrix:
    return tuple(tuple(int(v) for v in row) for row in matrix)


@dataclass(frozen=True)
class Candidate:
    """候補 1..5 のいずれか。number が大きいほど同誤差時に優先される。"""

    number: int
    allocation: Matrix
    delivered: Decimal
    error: Decimal

    @classmethod
    def build(
        cls,
        number: int,
        allocation: Sequence[Sequence[int]],
        delivered: Decimal,
        target: Decimal,
    ) -> "Candidate":
        return cls(number, freeze(allocation), delivered, abs(target - delivered))


def select_best(candidates: Iterable[Optional[Candidate]]) -> Candidate:
    """誤差最小の候補を選ぶ。同誤差なら番号の大きい方。"""
    best: Optional[Candidate] = None
    for cand in candidates:
        if cand is None:
            continue
        if (
            best is None
            or cand.error < best.error
            or (cand.error == best.error and cand.number > best.number)
        ):
            best = cand
    if best is None:
        raise ValueError("no allocation candidate was generated")
    return best


@dataclass
class AllocationOutcome:
    """単一アルゴリズム実行の結果（区間幅の行列）。"""

    allocation: List[List[int]]
    delivered: Decimal
    chosen: int = 0
    candidate_errors: Dict[int, Decimal] = field(default_factory=dict)
    exhausted: bool = False
    group_targets: Dict[str, Decimal] = field(default_factory=dict)

    @classmethod
    def from_candidates(
        cls, candidates: Sequence[Optional[Candidate]], *, exhausted: bool = False
    ) -> "AllocationOutcome":
        best = select_best(candidates)
        return cls(
            allocation=[list(row) for row in best.allocation],
            delivered=best.delivered,
            chosen=best.number,
            candidate_errors={c.number: c.error for c in candidates if c is not None},
            exhausted=exhausted,
        )
