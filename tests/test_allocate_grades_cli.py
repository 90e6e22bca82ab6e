from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

pytestmark = pytest.mark.slow

BASE = Path(__file__).resolve().parents[1]


def _write_json(p: Path, payload: dict) -> None:
    p.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")


def _run(*args: str) -> subprocess.CompletedProcess:
    env = os.environ.copy()
    env["PYTHONPATH"] = str(BASE)
    env["GRADE_ALLOC_METRICS_ENABLED"] = "0"
    return subprocess.run(
        [sys.executable, str(BASE / "scripts" / "allocate_grades.py"), *args],
        capture_output=True,
        text=True,
        env=env,
    )


def test_standard_mode_writes_result(tmp_path: Path):
    req = {
        "rows": [
            {"region": "A", "grades": [1] * 30},
            {"region": "B", "grades": [1] * 30},
        ],
        "target_amount": 20,
    }
    _write_json(tmp_path / "req.json", req)
    out = tmp_path / "out" / "result.json"
    proc = _run("-i", str(tmp_path / "req.json"), "-o", str(out))
    assert proc.returncode == 0, proc.stderr
    body = json.loads(out.read_text(encoding="utf-8"))
    assert body["success"] is True
    assert body["algorithm"] == "column_wise"
    assert body["allocation_matrix"][0][:10] == [1] * 10
    assert body["error_amount"] == "0"


def test_standard_mode_failure_exits_nonzero(tmp_path: Path):
    req = {
        "rows": [{"region": "A", "grades": [0] * 30}],
        "target_amount": 10,
    }
    _write_json(tmp_path / "req.json", req)
    out = tmp_path / "result.json"
    proc = _run("-i", str(tmp_path / "req.json"), "-o", str(out))
    assert proc.returncode == 1
    assert "[error]" in proc.stderr
    body = json.loads(out.read_text(encoding="utf-8"))
    assert body["issues"][0]["code"] == "ZERO_ROW_IN_RANGE"


def test_invalid_request_is_rejected(tmp_path: Path):
    _write_json(tmp_path / "req.json", {"rows": []})
    proc = _run("-i", str(tmp_path / "req.json"), "-o", str(tmp_path / "result.json"))
    assert proc.returncode == 1
    assert "[error]" in proc.stderr
    assert not (tmp_path / "result.json").exists()


def test_price_band_mode(tmp_path: Path):
    req = {
        "candidates": [
            {"code": "A", "band": 1, "target_amount": 100},
            {"code": "B", "band": 1, "target_amount": 50},
        ],
        "base_row": [10] * 30,
        "period": {"year": 2025, "month": 3, "week_seq": 1},
    }
    _write_json(tmp_path / "batch.json", req)
    out = tmp_path / "result.json"
    proc = _run("-i", str(tmp_path / "batch.json"), "-o", str(out), "--mode", "price-band")
    assert proc.returncode == 0, proc.stderr
    body = json.loads(out.read_text(encoding="utf-8"))
    grades = {c["code"]: c["grades"] for c in body["candidates"]}
    assert grades["A"][:6] == [2, 2, 2, 2, 2, 0]
    assert grades["B"][:6] == [1, 1, 1, 1, 1, 0]
