from __future__ import annotations

from core.settings import (
    DEFAULT_BOOST_PHRASE,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_STAGNANT_ROUNDS,
    load_settings,
)


def test_defaults(monkeypatch):
    for key in (
        "GRADE_ALLOC_MAX_ITERATIONS",
        "GRADE_ALLOC_SUBSET_SUM_CEILING",
        "GRADE_ALLOC_STAGNANT_ROUNDS",
        "GRADE_ALLOC_BOOST_PHRASE",
        "GRADE_ALLOC_METRICS_ENABLED",
    ):
        monkeypatch.delenv(key, raising=False)
    s = load_settings()
    assert s.max_iterations == DEFAULT_MAX_ITERATIONS
    assert s.subset_sum_ceiling == 10_000_000
    assert s.stagnant_rounds == DEFAULT_STAGNANT_ROUNDS
    assert s.boost_phrase == DEFAULT_BOOST_PHRASE
    assert s.metrics_enabled is True


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("GRADE_ALLOC_MAX_ITERATIONS", "500")
    monkeypatch.setenv("GRADE_ALLOC_SUBSET_SUM_CEILING", "0")
    monkeypatch.setenv("GRADE_ALLOC_STAGNANT_ROUNDS", "7")
    monkeypatch.setenv("GRADE_ALLOC_BOOST_PHRASE", "上浮")
    monkeypatch.setenv("GRADE_ALLOC_METRICS_ENABLED", "0")
    s = load_settings()
    assert s.max_iterations == 500
    assert s.subset_sum_ceiling == 0
    assert s.stagnant_rounds == 7
    assert s.boost_phrase == "上浮"
    assert s.metrics_enabled is False


def test_invalid_values_fall_back(monkeypatch):
    monkeypatch.setenv("GRADE_ALLOC_MAX_ITERATIONS", "lots")
    monkeypatch.setenv("GRADE_ALLOC_STAGNANT_ROUNDS", "-3")
    monkeypatch.setenv("GRADE_ALLOC_BOOST_PHRASE", "   ")
    s = load_settings()
    assert s.max_iterations == DEFAULT_MAX_ITERATIONS
    assert s.stagnant_rounds == DEFAULT_STAGNANT_ROUNDS
    assert s.boost_phrase == DEFAULT_BOOST_PHRASE
