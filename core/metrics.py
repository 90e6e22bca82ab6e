from __future__ import annotations

from prometheus_client import Counter, Histogram

# ---------------------------------------------------------------------------
# Grade allocation
# ---------------------------------------------------------------------------

ALLOCATION_RUNS = Counter(
    "grade_alloc_runs_total",
    "Number of grade allocation runs",
    labelnames=("algorithm", "outcome"),
)

ALLOCATION_DURATION = Histogram(
    "grade_alloc_duration_seconds",
    "Grade allocation processing time",
    labelnames=("algorithm",),
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1, 5, float("inf")),
)

ALLOCATION_ABS_ERROR = Histogram(
    "grade_alloc_abs_error",
    "Absolute difference between target and delivered amount",
    buckets=(0, 1, 5, 10, 50, 100, 500, 1000, float("inf")),
)

# ---------------------------------------------------------------------------
# Price band truncation
# ---------------------------------------------------------------------------

PRICE_BAND_RESTORES = Counter(
    "grade_alloc_price_band_restores_total",
    "Price band candidates restored to their pre-truncation allocation",
)
