"""グループ比率プロバイダ。

重み付き配分の種別（kind）ごとに、地域→グループの対応と
グループ比率を導出する。該当しない場合は None を返し、
呼び出し側は重みなし（列単位）配分へ退化する。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from engine.matrix_utils import ZERO, to_decimal

logger = logging.getLogger(__name__)

_RATIO_QUANT = Decimal("0.0000000001")


@dataclass(frozen=True)
class GroupWeighting:
    ratios: Dict[str, Decimal] = field(default_factory=dict)
    mapping: Dict[str, str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.ratios


def positive_ratios(raw: Optional[Mapping[str, object]]) -> Dict[str, Decimal]:
    """解釈できない値や 0 以下の比率を除外する。"""
    result: Dict[str, Decimal] = {}
    for key, value in (raw or {}).items():
        try:
            ratio = to_decimal(value)
        except ValueError:
            logger.warning("比率を解釈できません: %s=%r", key, value)
            continue
        if ratio > 0:
            result[str(key)] = ratio
    return result


class GroupRatioProvider:
    kind: str = ""

    def supports(self, kind: Optional[str]) -> bool:
        return bool(kind) and kind == self.kind

    def weighting(
        self,
        regions: Sequence[str],
        customer_matrix: Sequence[Sequence[Decimal]],
        *,
        mapping: Optional[Mapping[str, str]] = None,
    ) -> Optional[GroupWeighting]:
        raise NotImplementedError


class CustomerShareRatioProvider(GroupRatioProvider):
    """各地域を 1 グループとし、区間内顧客数の占有率を比率にする。"""

    kind = "customer_share"

    def weighting(self, regions, customer_matrix, *, mapping=None):
        totals: Dict[str, Decimal] = {}
        overall = ZERO
        for region, row in zip(regions, customer_matrix):
            subtotal = sum((to_decimal(v) for v in row), ZERO)
            totals[region] = totals.get(region, ZERO) + subtotal
            overall += subtotal
        if overall <= 0:
            logger.warning(
                "customer_share: 顧客数合計が0のため比率を計算できません",
                extra={"event": "ratio_provider_skipped", "kind": self.kind},
            )
            return None
        shares = {
            region: (subtotal / overall).quantize(_RATIO_QUANT, rounding=ROUND_HALF_UP)
            for region, subtotal in totals.items()
        }
        return GroupWeighting(ratios=shares, mapping={r: r for r in regions})


class MarketTypeRatioProvider(GroupRatioProvider):
    """都市（urban）／農村（rural）の 2 グループで按分する。"""

    kind = "market_type"
    URBAN = "urban"
    RURAL = "rural"
    DEFAULT_RATIOS = {URBAN: Decimal("0.4"), RURAL: Decimal("0.6")}

    def weighting(self, regions, customer_matrix, *, mapping=None):
        if len(regions) <= 1:
            return None
        lookup = dict(mapping or {})
        effective = {r: lookup.get(r, r) for r in regions}
        present = set(effective.values())
        if self.URBAN not in present or self.RURAL not in present:
            return None

        return GroupWeighting(ratios=dict(self.DEFAULT_RATIOS), mapping=effective)


def default_providers() -> List[GroupRatioProvider]:
    return [CustomerShareRatioProvider(), MarketTypeRatioProvider()]


def resolve_weighting(
    providers: Iterable[GroupRatioProvider],
    kind: Optional[str],
    regions: Sequence[str],
    customer_matrix: Sequence[Sequence[Decimal]],
    *,
    ratios: Optional[Mapping[str, object]] = None,
    mapping: Optional[Mapping[str, str]] = None,
) -> GroupWeighting:
    """明示比率を優先し、なければ kind に対応する最初のプロバイダを使う。"""
    explicit = positive_ratios(ratios)
    if explicit:
        return GroupWeighting(ratios=explicit, mapping=dict(mapping or {}))
    for provider in providers:
        if provider.supports(kind):
            found = provider.weighting(regions, customer_matrix, mapping=mapping)
            return found or GroupWeighting(mapping=dict(mapping or {}))
    return GroupWeighting(mapping=dict(mapping or {}))
