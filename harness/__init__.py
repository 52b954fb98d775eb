"""
Loan Harness - End-to-End Loan Verification

Funds a fresh test credential from the testnet faucets, drives the
loans-borrower CLI through origination, repayment and inspection, and
records a pass/fail verdict per run.

Usage:
    from harness.orchestrator import RunOrchestrator
    from harness.store import ResultStore

    orch = RunOrchestrator(store=ResultStore("test_results.db"))
    result = orch.run("run-42")
"""

from harness.types import (
    Credential,
    CliOutcome,
    FaucetOutcome,
    RunState,
    TestResult,
    Verdict,
)
from harness.orchestrator import RunOrchestrator, PLACEHOLDER_CONTRACT_ID
from harness.store import ResultStore, StoreError, DuplicateResultError

__all__ = [
    "RunOrchestrator",
    "PLACEHOLDER_CONTRACT_ID",
    "ResultStore",
    "StoreError",
    "DuplicateResultError",
    "Credential",
    "CliOutcome",
    "FaucetOutcome",
    "RunState",
    "TestResult",
    "Verdict",
]
