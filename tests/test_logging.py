"""
Loan Harness - Structured Logging Tests

JSON log lines, run-scoped events, and secret masking on the handler.
"""

import io
import json
import logging
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.logging import RunLogger, configure_logging, get_logger
from engine.secrets import MASK, get_registry, reset_registry


class TestLogRedaction(unittest.TestCase):

    def setUp(self):
        reset_registry()
        self.stream = io.StringIO()
        configure_logging(level="DEBUG", stream=self.stream)

    def tearDown(self):
        root = logging.getLogger("loan_harness")
        root.handlers.clear()
        root.propagate = True
        reset_registry()

    def _lines(self):
        return [json.loads(line) for line in self.stream.getvalue().splitlines()]

    def test_message_redacted(self):
        with get_registry().scoped("word1 word2 word3"):
            get_logger("test").info("Executing with %s", "word1 word2 word3")
        entry = self._lines()[0]
        self.assertEqual(entry["message"], f"Executing with {MASK}")
        self.assertEqual(entry["logger"], "loan_harness.test")

    def test_structured_fields_redacted(self):
        with get_registry().scoped("word1 word2"):
            RunLogger("run-1").on_cli_invocation("borrow init", "MNEMONIC=word1 word2 cli",
                                                 True, 0, 1.234)
        entry = self._lines()[0]
        self.assertEqual(entry["run_id"], "run-1")
        self.assertEqual(entry["action"], "cli_invocation")
        self.assertEqual(entry["command"], f"MNEMONIC={MASK} cli")
        self.assertEqual(entry["elapsed_s"], 1.23)

    def test_run_logger_levels(self):
        log = RunLogger("run-2")
        log.on_step_failed("fund", "BTC faucet request failed", fatal=True)
        log.on_step_failed("borrow repay", "exit status 4", fatal=False)
        levels = [e["level"] for e in self._lines()]
        self.assertEqual(levels, ["ERROR", "WARNING"])

    def test_json_lines(self):
        RunLogger("run-3").on_state_change("init", "credential_generated")
        entry = self._lines()[0]
        self.assertEqual(entry["service.name"], "loan_harness")
        self.assertEqual(entry["from_state"], "init")
        self.assertEqual(entry["to_state"], "credential_generated")
        self.assertIn("timestamp", entry)


if __name__ == "__main__":
    unittest.main()
