#!/usr/bin/env python3
"""Intraday momentum scanner.

Fetches recent intraday candles from Yahoo Finance for a watchlist, derives
EMA/MACD/RSI/VWAP/relative-volume signals per ticker and sorts each ticker
into an alert tier.
"""

from __future__ import annotations

import argparse
import concurrent.futures
import http.client
import http.cookiejar
import json
import logging
import math
import os
import statistics
import sys
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple


logger = logging.getLogger(__name__)

YAHOO_CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart"
YAHOO_QUOTE_URL = "https://query1.finance.yahoo.com/v7/finance/quote"
YAHOO_COOKIE_URL = "https://fc.yahoo.com"
YAHOO_CRUMB_URL = "https://query1.finance.yahoo.com/v1/test/getcrumb"

HTTP_TIMEOUT_SEC = float(os.getenv("SCANNER_HTTP_TIMEOUT_SEC", "15"))
USER_AGENT = os.getenv("SCANNER_USER_AGENT", "Mozilla/5.0 (MomentumScanner/1.0)")
POLL_SEC = float(os.getenv("SCANNER_POLL_SEC", "15"))
SYMBOLS_FILE = os.getenv(
    "SCANNER_SYMBOLS_FILE",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "data", "default_symbols.txt"),
)

EARNINGS_BATCH_SIZE = 10
SCAN_WORKERS = 5
MIN_BARS = 50
LOOKBACK_DAYS = 5
RVOL_SURGE = 2.0

EMA_FAST = 9
EMA_MID = 20
EMA_TREND = 200
MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9
RSI_LENGTH = 14
VOLUME_SMA_LENGTH = 20

DEFAULT_TIMEFRAME = "5m"
INTERVALS = {
    "1m": "1m",
    "2m": "2m",
    "5m": "5m",
    "15m": "15m",
    "1h": "60m",
}

NO_EARNINGS = "-"


class ProviderFetchError(RuntimeError):
    """Market-data request failed for a symbol or a quote batch."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


@dataclass
class Candle:
    date: datetime
    open: Optional[float]
    high: Optional[float]
    low: Optional[float]
    close: Optional[float]
    volume: Optional[float]


@dataclass
class Quote:
    symbol: str
    earnings_at: Optional[datetime] = None


@dataclass
class IndicatorSeries:
    ema9: List[float]
    ema20: List[float]
    ema200: List[float]
    ema12: List[float]
    ema26: List[float]
    macd_line: List[float]
    macd_signal: List[float]
    vwap: List[float]
    volume_sma20: List[float]
    rsi14: List[float]


@dataclass(frozen=True)
class TickerSnapshot:
    symbol: str
    price: float
    pct_change: float
    relative_volume: float
    rsi: float
    ema_cross_up: bool
    macd_cross_up: bool
    above_ema200: bool
    above_vwap: bool
    earnings_label: str
    category: int


@dataclass
class ScanStats:
    scanned: int = 0
    failures: int = 0
    short_history: int = 0
    failed_symbols: List[str] = field(default_factory=list)


BarsFetcher = Callable[[str, str, datetime], Sequence[Candle]]
QuotesFetcher = Callable[[Sequence[str]], Iterable[Quote]]


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Scan a watchlist for intraday momentum and volume surges.")
    parser.add_argument(
        "--symbols",
        help="Comma-separated symbols (e.g. AAPL,MSFT,TSLA).",
    )
    parser.add_argument(
        "--symbols-file",
        default=SYMBOLS_FILE,
        help="Path to newline-delimited symbols list.",
    )
    parser.add_argument(
        "--timeframe",
        default=DEFAULT_TIMEFRAME,
        help="Bar size: 1m, 2m, 5m, 15m or 1h. Anything else scans 5m bars.",
    )
    parser.add_argument("--watch", action="store_true", help="Rescan in a loop until interrupted.")
    parser.add_argument(
        "--interval",
        type=float,
        default=POLL_SEC,
        help="Seconds between scans in --watch mode.",
    )
    parser.add_argument("--top", type=int, default=20, help="Max rows to print per tier.")
    parser.add_argument("--verbose", action="store_true", help="Log per-symbol failures and scan stats.")
    return parser.parse_args(argv)


def load_symbols(symbols_arg: str | None, symbols_file: str) -> List[str]:
    if symbols_arg:
        symbols = [s.strip().upper() for s in symbols_arg.split(",") if s.strip()]
    else:
        with open(symbols_file, "r", encoding="utf-8") as f:
            symbols = [line.strip().upper() for line in f if line.strip() and not line.startswith("#")]
    return _dedupe_symbols(symbols)


def _dedupe_symbols(symbols: Iterable[str]) -> List[str]:
    deduped: List[str] = []
    seen = set()
    for symbol in symbols:
        if symbol and symbol not in seen:
            deduped.append(symbol)
            seen.add(symbol)
    return deduped


def resolve_interval(timeframe: str | None) -> str:
    return INTERVALS.get(timeframe or "", INTERVALS[DEFAULT_TIMEFRAME])


def _http_get_text(url: str, what: str, opener: urllib.request.OpenerDirector | None = None) -> str:
    req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
    try:
        if opener is None:
            response = urllib.request.urlopen(req, timeout=HTTP_TIMEOUT_SEC)
        else:
            response = opener.open(req, timeout=HTTP_TIMEOUT_SEC)
        with response:
            return response.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as exc:
        raise ProviderFetchError(f"failed to fetch {what}: HTTP {exc.code}", status=exc.code) from exc
    except urllib.error.URLError as exc:
        raise ProviderFetchError(f"failed to fetch {what}: {exc.reason}") from exc
    # Body reads raise socket errors directly, not URLError.
    except (TimeoutError, OSError, http.client.HTTPException) as exc:
        raise ProviderFetchError(f"failed to fetch {what}: {exc}") from exc


def _http_get_json(url: str, what: str, opener: urllib.request.OpenerDirector | None = None) -> dict:
    raw = _http_get_text(url, what, opener)
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProviderFetchError(f"invalid response for {what}: {exc}") from exc


_YAHOO_AUTH_LOCK = threading.Lock()
_YAHOO_AUTH: dict = {}


def _yahoo_auth() -> Tuple[urllib.request.OpenerDirector, str]:
    """Cookie-carrying opener plus crumb for Yahoo's quote endpoint.

    Built once per process and shared by all batches; cleared by
    ``_reset_yahoo_auth`` when Yahoo rejects the crumb.
    """
    with _YAHOO_AUTH_LOCK:
        if not _YAHOO_AUTH:
            jar = http.cookiejar.CookieJar()
            opener = urllib.request.build_opener(urllib.request.HTTPCookieProcessor(jar))
            try:
                _http_get_text(YAHOO_COOKIE_URL, "yahoo session cookie", opener)
            except ProviderFetchError as exc:
                # fc.yahoo.com answers 404 but still sets the session cookie.
                if exc.status is None:
                    raise
            crumb = _http_get_text(YAHOO_CRUMB_URL, "yahoo crumb", opener).strip()
            if not crumb or "<" in crumb or " " in crumb:
                raise ProviderFetchError("yahoo returned no usable crumb")
            _YAHOO_AUTH.update(opener=opener, crumb=crumb)
        return _YAHOO_AUTH["opener"], _YAHOO_AUTH["crumb"]


def _reset_yahoo_auth() -> None:
    with _YAHOO_AUTH_LOCK:
        _YAHOO_AUTH.clear()


def _opt_float(value) -> Optional[float]:
    if value is None:
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(out) else out


def _column(quote: Mapping, key: str, size: int) -> list:
    values = quote.get(key) or []
    if len(values) < size:
        values = list(values) + [None] * (size - len(values))
    return values


def parse_chart_payload(symbol: str, payload: Mapping) -> List[Candle]:
    chart = payload.get("chart") or {}
    if chart.get("error"):
        err = chart["error"]
        detail = err.get("description") if isinstance(err, dict) else err
        raise ProviderFetchError(f"chart request rejected for {symbol}: {detail}")

    results = chart.get("result") or []
    if not results or not isinstance(results[0], dict):
        raise ProviderFetchError(f"unexpected chart payload for {symbol}")
    result = results[0]

    timestamps = result.get("timestamp") or []
    quotes = (result.get("indicators") or {}).get("quote") or [{}]
    quote = quotes[0] or {}
    size = len(timestamps)
    opens = _column(quote, "open", size)
    highs = _column(quote, "high", size)
    lows = _column(quote, "low", size)
    closes = _column(quote, "close", size)
    volumes = _column(quote, "volume", size)

    by_ts: Dict[int, Candle] = {}
    for i, ts in enumerate(timestamps):
        try:
            when = datetime.fromtimestamp(int(ts), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            continue
        by_ts[int(ts)] = Candle(
            date=when,
            open=_opt_float(opens[i]),
            high=_opt_float(highs[i]),
            low=_opt_float(lows[i]),
            close=_opt_float(closes[i]),
            volume=_opt_float(volumes[i]),
        )

    return [by_ts[ts] for ts in sorted(by_ts)]


def parse_quote_payload(payload: Mapping) -> List[Quote]:
    finance_error = (payload.get("finance") or {}).get("error")
    if finance_error:
        detail = finance_error.get("description") if isinstance(finance_error, dict) else finance_error
        raise ProviderFetchError(f"quote request rejected: {detail}")

    response = payload.get("quoteResponse") or {}
    if response.get("error"):
        raise ProviderFetchError(f"quote request rejected: {response['error']}")

    out: List[Quote] = []
    for row in response.get("result") or []:
        symbol = row.get("symbol")
        if not symbol:
            continue
        earnings_at = None
        raw = row.get("earningsTimestamp")
        if raw is not None:
            try:
                earnings_at = datetime.fromtimestamp(int(raw), tz=timezone.utc)
            except (TypeError, ValueError, OverflowError):
                earnings_at = None
        out.append(Quote(symbol=symbol, earnings_at=earnings_at))
    return out


def fetch_chart_bars(symbol: str, interval: str, period_start: datetime) -> List[Candle]:
    query = urllib.parse.urlencode(
        {
            "period1": str(int(period_start.timestamp())),
            "period2": str(int(time.time())),
            "interval": interval,
            "includePrePost": "false",
        }
    )
    url = f"{YAHOO_CHART_URL}/{urllib.parse.quote(symbol.upper())}?{query}"
    payload = _http_get_json(url, symbol)
    return parse_chart_payload(symbol, payload)


def fetch_quote_batch(symbols: Sequence[str]) -> List[Quote]:
    if not symbols:
        return []
    opener, crumb = _yahoo_auth()
    query = urllib.parse.urlencode({"symbols": ",".join(symbols), "crumb": crumb})
    try:
        payload = _http_get_json(f"{YAHOO_QUOTE_URL}?{query}", "quotes " + ",".join(symbols), opener)
        return parse_quote_payload(payload)
    except ProviderFetchError as exc:
        if exc.status in (401, 403) or "crumb" in str(exc).lower():
            # Stale session; the next batch authenticates again.
            _reset_yahoo_auth()
        raise


def ema_series(values: Sequence[float], period: int) -> List[float]:
    if not values:
        return []
    k = 2.0 / (period + 1.0)
    out = [float(values[0])]
    for value in values[1:]:
        out.append(value * k + out[-1] * (1.0 - k))
    return out


def sma_series(values: Sequence[float], period: int) -> List[float]:
    # 0.0 marks "not enough history yet".
    out = [0.0] * len(values)
    if period <= 0:
        return out
    for idx in range(period - 1, len(values)):
        out[idx] = statistics.fmean(values[idx - period + 1 : idx + 1])
    return out


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def rsi_series(values: Sequence[float], period: int = RSI_LENGTH) -> List[float]:
    """Wilder RSI aligned with ``values``; warm-up indices hold 0.0."""
    out = [0.0] * len(values)
    if len(values) < period + 1:
        return out

    gains = []
    losses = []
    for i in range(1, period + 1):
        change = values[i] - values[i - 1]
        gains.append(max(change, 0.0))
        losses.append(max(-change, 0.0))
    avg_gain = sum(gains) / period
    avg_loss = sum(losses) / period
    out[period] = _rsi_value(avg_gain, avg_loss)

    for i in range(period + 1, len(values)):
        change = values[i] - values[i - 1]
        gain = change if change > 0 else 0.0
        loss = -change if change < 0 else 0.0
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period
        out[i] = _rsi_value(avg_gain, avg_loss)
    return out


def macd_series(
    values: Sequence[float], fast: int = MACD_FAST, slow: int = MACD_SLOW, signal: int = MACD_SIGNAL
) -> Tuple[List[float], List[float]]:
    if not values:
        return [], []
    fast_ema = ema_series(values, fast)
    slow_ema = ema_series(values, slow)
    macd_line = [f - s for f, s in zip(fast_ema, slow_ema)]
    signal_line = ema_series(macd_line, signal)
    return macd_line, signal_line


def vwap_series(candles: Sequence[Candle]) -> List[float]:
    """Cumulative VWAP over the whole window.

    Never resets at session boundaries; callers wanting a daily VWAP have to
    slice the candles per day first.
    """
    out: List[float] = []
    cum_vol = 0.0
    cum_tpv = 0.0
    for c in candles:
        close = c.close
        high = c.high if c.high is not None else close
        low = c.low if c.low is not None else close
        typical = (high + low + close) / 3.0
        cum_vol += c.volume
        cum_tpv += typical * c.volume
        out.append(cum_tpv / cum_vol if cum_vol > 0 else math.nan)
    return out


def relative_volume(current_volume: float, volume_sma: float) -> float:
    return current_volume / volume_sma if volume_sma > 0 else 0.0


def usable_candles(candles: Iterable[Candle]) -> List[Candle]:
    return [c for c in candles if c.close is not None and c.volume is not None]


def compute_indicators(candles: Sequence[Candle]) -> IndicatorSeries:
    closes = [c.close for c in candles]
    volumes = [c.volume for c in candles]
    ema12 = ema_series(closes, MACD_FAST)
    ema26 = ema_series(closes, MACD_SLOW)
    macd_line = [f - s for f, s in zip(ema12, ema26)]
    return IndicatorSeries(
        ema9=ema_series(closes, EMA_FAST),
        ema20=ema_series(closes, EMA_MID),
        ema200=ema_series(closes, EMA_TREND),
        ema12=ema12,
        ema26=ema26,
        macd_line=macd_line,
        macd_signal=ema_series(macd_line, MACD_SIGNAL),
        vwap=vwap_series(candles),
        volume_sma20=sma_series(volumes, VOLUME_SMA_LENGTH),
        rsi14=rsi_series(closes, RSI_LENGTH),
    )


def _utc_day(when: datetime) -> str:
    if when.tzinfo is not None:
        when = when.astimezone(timezone.utc)
    return when.strftime("%Y-%m-%d")


def prior_session_close(candles: Sequence[Candle]) -> float:
    """Close of the last bar dated before the latest bar's UTC day.

    Falls back to the latest close when the window holds a single day.
    """
    current = candles[-1]
    current_day = _utc_day(current.date)
    for c in reversed(candles[:-1]):
        # ISO day strings compare lexically.
        if _utc_day(c.date) < current_day:
            return c.close
    return current.close


def categorize(ema_cross_up: bool, macd_cross_up: bool, rvol: float) -> int:
    if not (ema_cross_up and macd_cross_up):
        return 0
    return 2 if rvol > RVOL_SURGE else 1


def earnings_label(earnings_at: datetime | None) -> str:
    if earnings_at is None:
        return NO_EARNINGS
    return _utc_day(earnings_at)


def analyze_candles(symbol: str, candles: Sequence[Candle], earnings_at: datetime | None = None) -> TickerSnapshot | None:
    bars = usable_candles(candles)
    if len(bars) < MIN_BARS:
        return None

    ind = compute_indicators(bars)
    last = len(bars) - 1
    price = bars[last].close
    prev_close = prior_session_close(bars)
    pct_change = (price - prev_close) / prev_close * 100.0 if prev_close else 0.0
    rvol = relative_volume(bars[last].volume, ind.volume_sma20[last])

    ema_cross_up = ind.ema9[last] > ind.ema20[last]
    macd_cross_up = ind.macd_line[last] > ind.macd_signal[last]

    return TickerSnapshot(
        symbol=symbol,
        price=price,
        pct_change=pct_change,
        relative_volume=rvol,
        rsi=ind.rsi14[last],
        ema_cross_up=ema_cross_up,
        macd_cross_up=macd_cross_up,
        above_ema200=price > ind.ema200[last],
        above_vwap=price > ind.vwap[last],
        earnings_label=earnings_label(earnings_at),
        category=categorize(ema_cross_up, macd_cross_up, rvol),
    )


def fetch_earnings_index(symbols: Sequence[str], fetch_quotes: QuotesFetcher) -> Dict[str, datetime]:
    """Build symbol -> earnings datetime, one quote batch at a time."""
    index: Dict[str, datetime] = {}
    for start in range(0, len(symbols), EARNINGS_BATCH_SIZE):
        batch = list(symbols[start : start + EARNINGS_BATCH_SIZE])
        try:
            quotes = fetch_quotes(batch)
            for q in quotes:
                if q.earnings_at is not None:
                    index[q.symbol] = q.earnings_at
        except Exception as exc:
            logger.warning(f"earnings batch {','.join(batch)} failed: {exc}")
    return index


class _SymbolCursor:
    """Hands out each backlog symbol exactly once across worker threads."""

    def __init__(self, symbols: Sequence[str]):
        self._symbols = list(symbols)
        self._next = 0
        self._lock = threading.Lock()

    def claim(self) -> str | None:
        with self._lock:
            if self._next >= len(self._symbols):
                return None
            symbol = self._symbols[self._next]
            self._next += 1
            return symbol


def scan(
    symbols: Iterable[str],
    timeframe: str = DEFAULT_TIMEFRAME,
    fetch_bars: BarsFetcher | None = None,
    fetch_quotes: QuotesFetcher | None = None,
    workers: int = SCAN_WORKERS,
    stats: ScanStats | None = None,
) -> List[TickerSnapshot]:
    """Run one scan cycle and return a snapshot per analyzable symbol.

    Provider and analysis failures are logged and the symbol is dropped, so
    the result may be empty but this never raises for them. The returned
    list is unordered; use ``rank_snapshots`` to sort it.
    """
    fetch_bars = fetch_bars or fetch_chart_bars
    fetch_quotes = fetch_quotes or fetch_quote_batch
    stats = stats if stats is not None else ScanStats()

    backlog = _dedupe_symbols(symbols)
    if not backlog:
        return []

    interval = resolve_interval(timeframe)
    period_start = datetime.now(timezone.utc) - timedelta(days=LOOKBACK_DAYS)
    earnings = fetch_earnings_index(backlog, fetch_quotes)

    cursor = _SymbolCursor(backlog)
    stats_lock = threading.Lock()

    def _worker() -> List[TickerSnapshot]:
        found: List[TickerSnapshot] = []
        while True:
            symbol = cursor.claim()
            if symbol is None:
                return found
            try:
                candles = fetch_bars(symbol, interval, period_start)
                snapshot = analyze_candles(symbol, candles, earnings.get(symbol))
            except Exception as exc:
                logger.warning(f"skipping {symbol}: {exc}")
                with stats_lock:
                    stats.scanned += 1
                    stats.failures += 1
                    stats.failed_symbols.append(symbol)
                continue
            with stats_lock:
                stats.scanned += 1
                if snapshot is None:
                    stats.short_history += 1
            if snapshot is None:
                logger.debug(f"skipping {symbol}: fewer than {MIN_BARS} usable bars")
                continue
            found.append(snapshot)

    pool_size = max(1, min(int(workers), len(backlog)))
    results: List[TickerSnapshot] = []
    with concurrent.futures.ThreadPoolExecutor(max_workers=pool_size) as executor:
        futures = [executor.submit(_worker) for _ in range(pool_size)]
        for fut in futures:
            results.extend(fut.result())

    logger.info(
        f"scan {timeframe} ({interval}): {stats.scanned}/{len(backlog)} symbols, "
        f"{len(results)} snapshots, {stats.failures} failures, {stats.short_history} short"
    )
    return results


def rank_snapshots(snapshots: Iterable[TickerSnapshot]) -> List[TickerSnapshot]:
    return sorted(snapshots, key=lambda s: s.relative_volume, reverse=True)


def split_by_category(snapshots: Iterable[TickerSnapshot]) -> Tuple[List[TickerSnapshot], List[TickerSnapshot], List[TickerSnapshot]]:
    ranked = rank_snapshots(snapshots)
    surge = [s for s in ranked if s.category == 2]
    momentum = [s for s in ranked if s.category == 1]
    rest = [s for s in ranked if s.category == 0]
    return surge, momentum, rest


def _flag(value: bool) -> str:
    return "yes" if value else "no"


def print_results(snapshots: Iterable[TickerSnapshot], top: int) -> None:
    surge, momentum, rest = split_by_category(snapshots)
    if not (surge or momentum or rest):
        print("No symbols could be analyzed.")
        return

    headers = ["Symbol", "Price", "Chg%", "RVol", "RSI", "EMA9>20", "MACD", ">EMA200", ">VWAP", "Earnings"]
    sections = [
        ("Momentum + volume surge", surge),
        ("Momentum", momentum),
        ("Other", rest),
    ]
    for title, rows in sections:
        if not rows:
            continue
        print(f"\n{title} ({len(rows)})")
        print(" ".join(h.ljust(10) for h in headers))
        for row in rows[:top]:
            print(
                f"{row.symbol:<11}"
                f"{row.price:<11.2f}"
                f"{row.pct_change:<11.2f}"
                f"{row.relative_volume:<11.2f}"
                f"{row.rsi:<11.1f}"
                f"{_flag(row.ema_cross_up):<11}"
                f"{_flag(row.macd_cross_up):<11}"
                f"{_flag(row.above_ema200):<11}"
                f"{_flag(row.above_vwap):<11}"
                f"{row.earnings_label:<11}"
            )


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        symbols = load_symbols(args.symbols, args.symbols_file)
    except OSError as exc:
        print(f"error loading symbols: {exc}", file=sys.stderr)
        return 1

    if not symbols:
        print("No symbols provided.", file=sys.stderr)
        return 1

    while True:
        if args.verbose:
            print(f"Scanning {len(symbols)} symbols ({args.timeframe})...", file=sys.stderr, flush=True)
        stats = ScanStats()
        snapshots = scan(symbols, args.timeframe, stats=stats)
        print_results(snapshots, args.top)
        if stats.failures and args.verbose:
            print(f"\nCompleted with {stats.failures} fetch failure(s).", file=sys.stderr)

        if not args.watch:
            return 0
        try:
            time.sleep(max(1.0, args.interval))
        except KeyboardInterrupt:
            return 0


if __name__ == "__main__":
    raise SystemExit(main())
