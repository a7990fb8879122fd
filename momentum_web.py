#!/usr/bin/env python3
from __future__ import annotations

import json
import logging
import os
from typing import Any

from flask import Flask, Response, request

from momentum_scanner import DEFAULT_TIMEFRAME, TickerSnapshot, scan

app = Flask(__name__)
logger = logging.getLogger(__name__)


def _json_response(payload: Any, status: int = 200) -> Response:
    return Response(json.dumps(payload), status=status, mimetype="application/json")


def _safe_num(value: float, ndigits: int = 4) -> float | None:
    if value != value or value in (float("inf"), float("-inf")):
        return None
    return round(value, ndigits)


def snapshot_row(snapshot: TickerSnapshot) -> dict[str, Any]:
    return {
        "symbol": snapshot.symbol,
        "price": _safe_num(snapshot.price),
        "pctChange": _safe_num(snapshot.pct_change),
        "rvol": _safe_num(snapshot.relative_volume),
        "rsi": _safe_num(snapshot.rsi),
        "emaStatus": snapshot.ema_cross_up,
        "macdStatus": snapshot.macd_cross_up,
        "trend200": snapshot.above_ema200,
        "trendVwap": snapshot.above_vwap,
        "earnStr": snapshot.earnings_label,
        "category": snapshot.category,
    }


def _parse_symbols(raw: str) -> list[str]:
    return [s for s in dict.fromkeys(x.strip() for x in raw.split(",")) if s]


@app.route("/api/scan", methods=["GET"])
def api_scan() -> Response:
    timeframe = str(request.args.get("timeframe", "")).strip() or DEFAULT_TIMEFRAME
    symbols = _parse_symbols(str(request.args.get("symbols", "")))
    if not symbols:
        return _json_response({"error": "No symbols provided"}, status=400)

    try:
        snapshots = scan(symbols, timeframe)
    except Exception as exc:
        logger.exception("scan failed")
        return _json_response({"error": str(exc)}, status=500)
    return _json_response([snapshot_row(s) for s in snapshots])


@app.route("/health", methods=["GET"])
def health() -> Response:
    return _json_response({"status": "ok"})


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    app.run(host="127.0.0.1", port=int(os.getenv("PORT", "5055")), debug=False, use_reloader=False)
