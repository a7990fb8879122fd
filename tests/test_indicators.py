import math
import unittest
from datetime import datetime, timedelta, timezone

from momentum_scanner import (
    Candle,
    ema_series,
    macd_series,
    relative_volume,
    rsi_series,
    sma_series,
    vwap_series,
)


def _candles(closes, volumes):
    start = datetime(2024, 3, 4, 14, 30, tzinfo=timezone.utc)
    return [
        Candle(date=start + timedelta(minutes=5 * i), open=c, high=c + 1, low=c - 1, close=c, volume=v)
        for i, (c, v) in enumerate(zip(closes, volumes))
    ]


class IndicatorTests(unittest.TestCase):
    def test_ema_seeds_with_first_value(self):
        vals = [3.5, 7, 1, 9, 4]
        for period in (1, 9, 200):
            out = ema_series(vals, period)
            self.assertEqual(out[0], 3.5)
            self.assertEqual(len(out), len(vals))

    def test_ema_recursion(self):
        out = ema_series([10, 20], 3)
        self.assertAlmostEqual(out[1], 20 * 0.5 + 10 * 0.5)

    def test_sma(self):
        out = sma_series([1, 2, 3, 4, 5], 3)
        self.assertEqual(out[:2], [0.0, 0.0])
        self.assertEqual(out[2:], [2, 3, 4])

    def test_sma_short_series_is_all_sentinel(self):
        self.assertEqual(sma_series([1, 2], 5), [0.0, 0.0])

    def test_rsi_uptrend(self):
        vals = list(range(1, 30))
        out = rsi_series(vals, 14)
        self.assertEqual(out[-1], 100)
        self.assertEqual(out[:14], [0.0] * 14)

    def test_rsi_downtrend(self):
        vals = list(range(30, 1, -1))
        self.assertEqual(rsi_series(vals, 14)[-1], 0)

    def test_rsi_too_short(self):
        self.assertEqual(rsi_series([1, 2, 3], 14), [0.0, 0.0, 0.0])

    def test_rsi_flat_then_jump(self):
        vals = [10.0] * 20 + [20.0]
        out = rsi_series(vals, 14)
        self.assertEqual(out[-1], 100)
        self.assertEqual(out[:14], [0.0] * 14)

    def test_rsi_bounds_on_mixed_series(self):
        vals = [100 + (i % 7) - (i % 3) for i in range(80)]
        out = rsi_series(vals, 14)
        self.assertTrue(all(0 <= x <= 100 for x in out))
        self.assertTrue(0 < out[-1] < 100)

    def test_macd_line_is_ema_difference(self):
        vals = [100 + math.sin(i / 3.0) * 5 + i * 0.1 for i in range(90)]
        macd_line, signal = macd_series(vals)
        fast = ema_series(vals, 12)
        slow = ema_series(vals, 26)
        for i in range(len(vals)):
            self.assertEqual(macd_line[i], fast[i] - slow[i])
        self.assertEqual(signal, ema_series(macd_line, 9))

    def test_vwap_running_matches_prefix(self):
        candles = _candles([10, 11, 12, 11, 13, 14], [100, 250, 50, 400, 120, 80])
        full = vwap_series(candles)
        for end in range(1, len(candles) + 1):
            self.assertAlmostEqual(vwap_series(candles[:end])[-1], full[end - 1])

    def test_vwap_typical_price(self):
        candles = _candles([10, 20], [1, 3])
        out = vwap_series(candles)
        self.assertAlmostEqual(out[0], 10)
        self.assertAlmostEqual(out[1], (10 * 1 + 20 * 3) / 4)

    def test_vwap_zero_volume_is_nan(self):
        out = vwap_series(_candles([10, 12], [0, 5]))
        self.assertTrue(math.isnan(out[0]))
        self.assertAlmostEqual(out[1], 12)

    def test_relative_volume(self):
        self.assertEqual(relative_volume(300, 100), 3)
        self.assertEqual(relative_volume(300, 0), 0)


if __name__ == "__main__":
    unittest.main()
