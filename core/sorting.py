"""共通のNatural Sortキー生成ユーティリティ。"""

from __future__ import annotations

import re
from typing import Any, Callable, List, Optional, Sequence, Tuple

_TOKEN_PATTERN = re.compile(r"(\d+)")


def natural_sort_key(value: Any) -> Tuple[Tuple[int, object], ...]:
    """文字列中の数値を数値として扱うソートキーを生成する。"""
    if value is None:
        return ((2, ""),)
    if isinstance(value, bool):
        return ((0, str(value)),)
    if isinstance(value, (int, float)):
        return ((1, value),)

    text = str(value)
    tokens: list[Tuple[int, object]] = []
    for part in _TOKEN_PATTERN.split(text):
        if not part:
            continue
        if part.isdigit():
            tokens.append((1, int(part)))
        else:
            tokens.append((0, part))
    if not tokens:
        tokens.append((0, text))
    return tuple(tokens)


def region_order_key(
    preferred: Optional[Sequence[str]] = None,
) -> Callable[[str], Tuple[int, Tuple[Tuple[int, object], ...]]]:
    """呼び出し側指定の地域順を優先し、残りは Natural Sort で並べるキー関数。"""
    rank = {name: i for i, name in enumerate(preferred or [])}
    fallback = len(rank)

    def _key(region: str) -> Tuple[int, Tuple[Tuple[int, object], ...]]:
        return (rank.get(region, fallback), natural_sort_key(region))

    return _key


def ordered_indices(regions: Sequence[str], preferred: Optional[Sequence[str]] = None) -> List[int]:
    """regions の行インデックスを優先順に並べ替えて返す。"""
    key = region_order_key(preferred)
    return sorted(range(len(regions)), key=lambda i: key(regions[i]))
