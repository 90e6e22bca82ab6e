"""档位（グレード）軸の定数・ラベル解析・GradeRange 値オブジェクト。

グレード軸は 30 段の固定順序で、index 0 が最高位（D30）、index 29 が最低位（D1）。
配分行列・顧客数行列はすべてこのインデックスで並ぶ。
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, List, Sequence, Tuple

GRADE_COUNT = 30
HIGHEST_GRADE_INDEX = 0
LOWEST_GRADE_INDEX = GRADE_COUNT - 1

GRADE_LABELS: Tuple[str, ...] = tuple(f"D{GRADE_COUNT - i}" for i in range(GRADE_COUNT))

_NON_DIGIT = re.compile(r"[^0-9]")

_CHINESE_DIGITS = {
    "零": 0,
    "〇": 0,
    "一": 1,
    "壹": 1,
    "二": 2,
    "贰": 2,
    "两": 2,
    "三": 3,
    "叁": 3,
    "四": 4,
    "肆": 4,
    "五": 5,
    "伍": 5,
    "六": 6,
    "陆": 6,
    "七": 7,
    "柒": 7,
    "八": 8,
    "捌": 8,
    "九": 9,
    "玖": 9,
    "十": 10,
    "拾": 10,
}
_CHINESE_NOISE = ("第", "档", "级", "等", "位", "层")


def grade_label(index: int) -> str:
    """インデックスをラベルへ変換する（0 -> 'D30'）。"""
    if index < 0 or index >= GRADE_COUNT:
        raise ValueError(f"grade index out of range: {index}")
    return GRADE_LABELS[index]


def parse_chinese_number(raw: str) -> int:
    """漢数字（'十二', '第三档', '贰拾' など）を整数へ変換する。解析不能時は -1。"""
    text = raw or ""
    for noise in _CHINESE_NOISE:
        text = text.replace(noise, "")
    text = text.strip()
    if not text:
        return -1

    result = 0
    temp = 0
    seen = False
    for ch in text:
        num = _CHINESE_DIGITS.get(ch)
        if num is None:
            continue
        seen = True
        if num == 10:
            result += (temp or 1) * 10
            temp = 0
        else:
            temp = num
    if not seen:
        return -1
    return result + temp


def extract_grade_number(label: Any) -> int:
    """ラベルから段数 k を取り出す。'D12' / '12' / '第十二档' を受け付ける。"""
    if label is None:
        return -1
    text = str(label).strip()
    if not text:
        return -1

    upper = text.upper()
    if upper.startswith("D"):
        digits = _NON_DIGIT.sub("", upper[1:])
        if digits:
            return int(digits)

    digits = _NON_DIGIT.sub("", text)
    if digits:
        return int(digits)

    chinese = "".join(ch for ch in text if ch in _CHINESE_DIGITS)
    if chinese:
        return parse_chinese_number(chinese)
    return -1


def parse_grade_index(label: Any) -> int:
    """ラベルを軸インデックス（30 - k）へ変換する。範囲外・解析不能は -1。"""
    number = extract_grade_number(label)
    if number < 1 or number > GRADE_COUNT:
        return -1
    return GRADE_COUNT - number


@dataclass(frozen=True)
class GradeRange:
    """配分対象となるグレードの連続区間 [max_index, min_index]（両端含む）。

    max_index は最高位側（小さいインデックス）、min_index は最低位側。
    区間外のセルは配分結果で常に 0 でなければならない。
    """

    max_index: int = HIGHEST_GRADE_INDEX
    min_index: int = LOWEST_GRADE_INDEX

    def __post_init__(self) -> None:
        if not (
            HIGHEST_GRADE_INDEX <= self.max_index <= self.min_index <= LOWEST_GRADE_INDEX
        ):
            raise ValueError(
                f"invalid grade range: max_index={self.max_index}, min_index={self.min_index}"
            )

    @classmethod
    def full(cls) -> "GradeRange":
        return cls(HIGHEST_GRADE_INDEX, LOWEST_GRADE_INDEX)

    @classmethod
    def from_labels(cls, max_label: Any = None, min_label: Any = None) -> "GradeRange":
        """'D30'〜'D1' 形式のラベルから区間を構築する。

        最高位ラベルが解析できない場合は D30、最低位ラベルが解析できないか
        最高位より上位を指す場合は D1 を採用する。
        """
        max_index = parse_grade_index(max_label)
        min_index = parse_grade_index(min_label)
        if max_index < 0:
            max_index = HIGHEST_GRADE_INDEX
        if min_index < 0 or min_index < max_index:
            min_index = LOWEST_GRADE_INDEX
        return cls(max_index, min_index)

    @property
    def width(self) -> int:
        return self.min_index - self.max_index + 1

    @property
    def max_label(self) -> str:
        return grade_label(self.max_index)

    @property
    def min_label(self) -> str:
        return grade_label(self.min_index)

    @property
    def labels(self) -> Tuple[str, ...]:
        return tuple(GRADE_LABELS[self.max_index : self.min_index + 1])

    @property
    def is_full(self) -> bool:
        return self.max_index == HIGHEST_GRADE_INDEX and self.min_index == LOWEST_GRADE_INDEX

    def contains(self, index: int) -> bool:
        return self.max_index <= index <= self.min_index

    def indices(self) -> range:
        return range(self.max_index, self.min_index + 1)

    def compact_row(self, row: Sequence[Any]) -> List[Any]:
        return list(row[self.max_index : self.min_index + 1])

    def expand_row(self, row: Sequence[Any], fill: Any = 0) -> List[Any]:
        if len(row) != self.width:
            raise ValueError(
                f"compact row width {len(row)} does not match range width {self.width}"
            )
        expanded = [fill] * GRADE_COUNT
        expanded[self.max_index : self.min_index + 1] = list(row)
        return expanded

    def compact(self, matrix: Sequence[Sequence[Any]]) -> List[List[Any]]:
        """30 列行列を区間幅の行列へ切り出す。"""
        return [self.compact_row(row) for row in matrix]

    def expand(self, matrix: Sequence[Sequence[Any]], fill: Any = 0) -> List[List[Any]]:
        """区間幅の行列を 30 列へ戻す。区間外は fill で埋める。"""
        return [self.expand_row(row, fill) for row in matrix]

    def __str__(self) -> str:
        return f"{self.max_label}..{self.min_label}"
