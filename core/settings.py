"""環境変数から配分エンジンの設定を読み込む。"""

from __future__ import annotations

import os

from pydantic import BaseModel, Field

DEFAULT_MAX_ITERATIONS = 10_000_000
DEFAULT_SUBSET_SUM_CEILING = 10_000_000
DEFAULT_STAGNANT_ROUNDS = 100
DEFAULT_BOOST_PHRASE = "两周一访上浮100%"


class AllocationSettings(BaseModel):
    max_iterations: int = Field(DEFAULT_MAX_ITERATIONS, gt=0)
    subset_sum_ceiling: int = Field(DEFAULT_SUBSET_SUM_CEILING, ge=0)
    stagnant_rounds: int = Field(DEFAULT_STAGNANT_ROUNDS, gt=0)
    boost_phrase: str = DEFAULT_BOOST_PHRASE
    metrics_enabled: bool = True


def _int_from_env(key: str, default: int, *, allow_zero: bool = False) -> int:
    s = os.getenv(key)
    if not s:
        return default
    try:
        v = int(s)
    except Exception:
        return default
    if v > 0 or (allow_zero and v == 0):
        return v
    return default


def load_settings() -> AllocationSettings:
    """GRADE_ALLOC_* 環境変数を読み取る。不正値は既定値へフォールバック。"""
    phrase = (os.getenv("GRADE_ALLOC_BOOST_PHRASE") or "").strip()
    return AllocationSettings(
        max_iterations=_int_from_env("GRADE_ALLOC_MAX_ITERATIONS", DEFAULT_MAX_ITERATIONS),
        subset_sum_ceiling=_int_from_env(
            "GRADE_ALLOC_SUBSET_SUM_CEILING", DEFAULT_SUBSET_SUM_CEILING, allow_zero=True
        ),
        stagnant_rounds=_int_from_env("GRADE_ALLOC_STAGNANT_ROUNDS", DEFAULT_STAGNANT_ROUNDS),
        boost_phrase=phrase or DEFAULT_BOOST_PHRASE,
        metrics_enabled=os.getenv("GRADE_ALLOC_METRICS_ENABLED", "1") == "1",
    )
