#!/usr/bin/env python3
"""
档位配分エンジンの CLI。JSON リクエストを読み、配分結果を JSON で書き出す。

使い方:
  python scripts/allocate_grades.py -i request.json -o result.json
  python scripts/allocate_grades.py -i batch.json -o result.json --mode price-band
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict

from pydantic import ValidationError

from core.settings import load_settings
from domain.grades import GradeRange
from domain.models import AllocationRequest, PriceBandBatchRequest
from engine.price_band import PriceBandRule, allocate_price_band_batch
from engine.selector import AlgorithmSelector


def _run_standard(payload: Dict[str, Any]) -> tuple[Dict[str, Any], str | None]:
    request = AllocationRequest.model_validate(payload)
    result = AlgorithmSelector(settings=load_settings()).execute(request)
    body = result.model_dump(mode="json")
    body["error_amount"] = None if result.error_amount is None else str(result.error_amount)
    return body, result.message


def _run_price_band(payload: Dict[str, Any]) -> tuple[Dict[str, Any], str | None]:
    request = PriceBandBatchRequest.model_validate(payload)
    rule = PriceBandRule(request.bands) if request.bands else None
    result = allocate_price_band_batch(
        request.candidates,
        request.base_row,
        request.boosted_row,
        GradeRange.from_labels(request.max_grade, request.min_grade),
        request.period,
        rule=rule,
        settings=load_settings(),
    )
    return result.model_dump(mode="json"), result.message


def main() -> None:
    ap = argparse.ArgumentParser(description="档位配分（単一地域／複数地域／価格帯截断）")
    ap.add_argument("-i", "--input", required=True, help="リクエストJSON")
    ap.add_argument("-o", "--output", required=True, help="出力JSON")
    ap.add_argument(
        "--mode",
        dest="mode",
        default="standard",
        choices=["standard", "price-band"],
        help="standard: 通常配分 / price-band: 価格帯バッチ",
    )
    ap.add_argument("--log-level", dest="log_level", default="WARNING", help="ログレベル")
    args = ap.parse_args()

    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.WARNING))

    try:
        with open(args.input, encoding="utf-8") as f:
            payload = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        print(f"[error] 入力JSONを読み込めません: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        if args.mode == "price-band":
            body, message = _run_price_band(payload)
        else:
            body, message = _run_standard(payload)
    except ValidationError as exc:
        print(f"[error] リクエストが不正です: {exc}", file=sys.stderr)
        sys.exit(1)

    out = Path(args.output)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(body, ensure_ascii=False, indent=2), encoding="utf-8")

    if message:
        print(f"[error] {message}", file=sys.stderr)
        sys.exit(1)
    print(f"[ok] wrote {args.output}")


if __name__ == "__main__":
    main()
