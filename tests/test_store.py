"""
Loan Harness - Result Store Tests

SQLite persistence of TestResult rows against a temp database file.
"""

import os
import shutil
import sys
import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from harness.store import DuplicateResultError, ResultStore, StoreError
from harness.types import TestResult

T0 = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _result(run_id, ts=T0, success=True, **kw):
    return TestResult(
        id=run_id,
        timestamp=ts,
        success=success,
        mnemonic="abandon about",
        btc_address="tb1qtest",
        lava_usd_pubkey="PUBKEY",
        contract_id=kw.get("contract_id", "LOAN77"),
        collateral_repayment_txid=kw.get("txid", "abc123" if success else None),
        error_message=kw.get("error"),
        details=kw.get("details", {"Closed": {}}),
    )


class TestResultStore(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.store = ResultStore(os.path.join(self.tmpdir, "results.db"))

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_put_get_round_trip(self):
        original = _result("run-1", details={"Closed": {}, "outcome": {"repayment": {"x": 1}}})
        self.store.put(original)
        loaded = self.store.get("run-1")
        self.assertEqual(loaded, original)

    def test_get_missing(self):
        self.assertIsNone(self.store.get("nope"))
        self.assertFalse(self.store.exists("nope"))

    def test_failed_record_round_trip(self):
        failed = TestResult.failed("run-x", "BTC faucet request failed with status: 500", timestamp=T0)
        self.store.put(failed)
        loaded = self.store.get("run-x")
        self.assertFalse(loaded.success)
        self.assertEqual(loaded.mnemonic, "Failed to generate")
        self.assertEqual(loaded.btc_address, "N/A")
        self.assertIsNone(loaded.contract_id)
        self.assertEqual(loaded.details, {"error": failed.error_message})

    def test_null_details(self):
        self.store.put(_result("run-n", details=None))
        self.assertIsNone(self.store.get("run-n").details)

    def test_duplicate_rejected(self):
        self.store.put(_result("run-1"))
        with self.assertRaises(DuplicateResultError):
            self.store.put(_result("run-1", success=False, error="second"))
        self.assertTrue(self.store.get("run-1").success)
        self.assertEqual(self.store.count(), 1)

    def test_duplicate_is_store_error(self):
        self.assertTrue(issubclass(DuplicateResultError, StoreError))

    def test_list_newest_first(self):
        self.store.put(_result("old", ts=T0))
        self.store.put(_result("new", ts=T0 + timedelta(seconds=1)))
        self.store.put(_result("mid", ts=T0 + timedelta(microseconds=500)))
        self.assertEqual([r.id for r in self.store.list_all()], ["new", "mid", "old"])

    def test_list_same_timestamp_latest_insert_first(self):
        self.store.put(_result("a"))
        self.store.put(_result("b"))
        self.assertEqual([r.id for r in self.store.list_all()], ["b", "a"])

    def test_list_limit(self):
        for i in range(5):
            self.store.put(_result(f"run-{i}", ts=T0 + timedelta(seconds=i)))
        self.assertEqual([r.id for r in self.store.list_all(limit=2)], ["run-4", "run-3"])

    def test_list_empty(self):
        self.assertEqual(self.store.list_all(), [])

    def test_list_is_union_of_writes(self):
        ids = {f"run-{i}" for i in range(10)}
        for run_id in ids:
            self.store.put(_result(run_id))
        self.assertEqual({r.id for r in self.store.list_all()}, ids)

    def test_concurrent_writes(self):
        errors = []

        def write(i):
            try:
                ResultStore(self.store.db_path).put(_result(f"t-{i}"))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=write, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(errors, [])
        self.assertEqual(self.store.count(), 8)

    def test_timestamp_is_utc(self):
        local = datetime(2025, 3, 1, 14, 0, 0, tzinfo=timezone(timedelta(hours=2)))
        self.store.put(_result("tz", ts=local))
        loaded = self.store.get("tz")
        self.assertEqual(loaded.timestamp, T0)
        self.assertEqual(loaded.timestamp.utcoffset(), timedelta(0))

    def test_ping(self):
        ok, detail = self.store.ping()
        self.assertTrue(ok)
        self.assertEqual(detail, "0 results")

    def test_unreachable_store(self):
        store = ResultStore(os.path.join(self.tmpdir, "missing-dir", "results.db"))
        with self.assertRaises(StoreError):
            store.list_all()
        ok, _ = store.ping()
        self.assertFalse(ok)


if __name__ == "__main__":
    unittest.main()
