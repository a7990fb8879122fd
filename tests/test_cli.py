import os
import unittest
from unittest import mock

import momentum_scanner
from momentum_scanner import load_symbols, main


class CliTests(unittest.TestCase):
    def test_default_symbols_file_resolves_beside_module(self):
        if "SCANNER_SYMBOLS_FILE" in os.environ:
            self.skipTest("symbols file overridden by environment")
        path = momentum_scanner.SYMBOLS_FILE
        self.assertTrue(os.path.isabs(path))
        self.assertEqual(
            os.path.dirname(os.path.dirname(path)),
            os.path.dirname(os.path.abspath(momentum_scanner.__file__)),
        )
        symbols = load_symbols(None, path)
        self.assertEqual(symbols[0], "AMZN")

    def test_default_watchlist_loads_from_another_directory(self):
        if "SCANNER_SYMBOLS_FILE" in os.environ:
            self.skipTest("symbols file overridden by environment")
        cwd = os.getcwd()
        os.chdir(os.path.dirname(os.path.abspath(__file__)))
        try:
            with mock.patch.object(momentum_scanner, "scan", return_value=[]) as scan, mock.patch.object(
                momentum_scanner, "print_results"
            ):
                self.assertEqual(main([]), 0)
        finally:
            os.chdir(cwd)
        self.assertEqual(scan.call_args[0][0][0], "AMZN")

    def test_symbols_flag_overrides_file(self):
        with mock.patch.object(momentum_scanner, "scan", return_value=[]) as scan, mock.patch.object(
            momentum_scanner, "print_results"
        ):
            self.assertEqual(main(["--symbols", "aaa, bbb,aaa", "--timeframe", "15m"]), 0)
        self.assertEqual(scan.call_args[0][:2], (["AAA", "BBB"], "15m"))

    def test_missing_symbols_file_exits_1(self):
        self.assertEqual(main(["--symbols-file", "/nonexistent/watchlist.txt"]), 1)


if __name__ == "__main__":
    unittest.main()
