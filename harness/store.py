"""
Loan Harness - Result Store

SQLite-backed persistence for TestResult records, one row per run.

Each operation opens its own connection and closes it afterwards; no
connection is shared between runs or threads. The run id is the primary
key, so a second write for the same run is rejected instead of creating
a competing record.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from harness.types import TestResult, format_timestamp, parse_timestamp

logger = logging.getLogger("loan_harness.store")

SCHEMA = """
CREATE TABLE IF NOT EXISTS test_results (
    id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    success INTEGER NOT NULL,
    mnemonic TEXT NOT NULL,
    btc_address TEXT NOT NULL,
    lava_usd_pubkey TEXT NOT NULL,
    contract_id TEXT,
    collateral_repayment_txid TEXT,
    error_message TEXT,
    details TEXT
);

CREATE INDEX IF NOT EXISTS idx_test_results_timestamp ON test_results(timestamp);
"""


class StoreError(Exception):
    """The store could not be reached or the query failed."""


class DuplicateResultError(StoreError):
    """A result for this run id has already been written."""


class ResultStore:
    """Write-once store of TestResult rows keyed by run id."""

    def __init__(self, db_path: str | Path = "test_results.db", busy_timeout: int = 5000):
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout
        self._schema_ready = False

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to connect to database: {e}") from e
        try:
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout={self.busy_timeout}")
            if not self._schema_ready:
                conn.executescript(SCHEMA)
                self._schema_ready = True
            yield conn
            conn.commit()
        except sqlite3.IntegrityError:
            conn.rollback()
            raise
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    # ─── Writes ──────────────────────────────────────────────────────

    def put(self, result: TestResult):
        try:
            with self._connect() as conn:
                conn.execute("""
                    INSERT INTO test_results
                    (id, timestamp, success, mnemonic, btc_address, lava_usd_pubkey,
                     contract_id, collateral_repayment_txid, error_message, details)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    result.id,
                    format_timestamp(result.timestamp),
                    int(result.success),
                    result.mnemonic,
                    result.btc_address,
                    result.lava_usd_pubkey,
                    result.contract_id,
                    result.collateral_repayment_txid,
                    result.error_message,
                    json.dumps(result.details),
                ))
        except sqlite3.IntegrityError as e:
            raise DuplicateResultError(f"Result already stored for run {result.id}") from e
        logger.info("Saved test result to database: %s", result.id)

    # ─── Reads ───────────────────────────────────────────────────────

    def get(self, run_id: str) -> TestResult | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM test_results WHERE id = ?", (run_id,)
            ).fetchone()
        return self._row_to_result(row) if row else None

    def exists(self, run_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM test_results WHERE id = ?", (run_id,)
            ).fetchone()
        return row is not None

    def list_all(self, limit: int | None = None) -> list[TestResult]:
        """All results, newest first."""
        query = "SELECT * FROM test_results ORDER BY timestamp DESC, rowid DESC"
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_result(r) for r in rows]

    def count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM test_results").fetchone()[0]

    def ping(self) -> tuple[bool, str]:
        """Readiness check: (ok, detail)."""
        try:
            n = self.count()
        except StoreError as e:
            return False, str(e)[:200]
        return True, f"{n} results"

    @staticmethod
    def _row_to_result(row: sqlite3.Row) -> TestResult:
        details = None
        if row["details"]:
            try:
                details = json.loads(row["details"])
            except json.JSONDecodeError:
                logger.warning("Unparsable details for run %s", row["id"])
        return TestResult(
            id=row["id"],
            timestamp=parse_timestamp(row["timestamp"]),
            success=bool(row["success"]),
            mnemonic=row["mnemonic"],
            btc_address=row["btc_address"],
            lava_usd_pubkey=row["lava_usd_pubkey"],
            contract_id=row["contract_id"],
            collateral_repayment_txid=row["collateral_repayment_txid"],
            error_message=row["error_message"],
            details=details,
        )
