"""
Loan Harness - Type Definitions

Data structures for one end-to-end run: the per-run credential, the
orchestrator's states, the outcome of a CLI invocation, the verdict,
and the terminal TestResult record.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


# ─── Run Lifecycle ──────────────────────────────────────────────────

class RunState(str, enum.Enum):
    """States of the run orchestrator, in order."""
    INIT = "init"
    CREDENTIAL_GENERATED = "credential_generated"
    FUNDED = "funded"
    CLI_READY = "cli_ready"
    LOAN_OPENED = "loan_opened"
    LOAN_REPAID = "loan_repaid"
    STATUS_FETCHED = "status_fetched"
    VERDICTED = "verdicted"
    DONE = "done"
    # Terminal states outside the happy path
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunState.DONE, RunState.FAILED, RunState.CANCELLED)


# Each state's only legal predecessor.
RUN_SEQUENCE = [
    RunState.INIT,
    RunState.CREDENTIAL_GENERATED,
    RunState.FUNDED,
    RunState.CLI_READY,
    RunState.LOAN_OPENED,
    RunState.LOAN_REPAID,
    RunState.STATUS_FETCHED,
    RunState.VERDICTED,
    RunState.DONE,
]


# ─── Credential ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class Credential:
    """Secret phrase plus the two addresses funded for this run."""
    mnemonic: str = field(repr=False)
    funding_address: str
    settlement_pubkey: str


# ─── Step Outcomes ──────────────────────────────────────────────────

@dataclass
class FaucetOutcome:
    success: bool
    error: str | None = None


@dataclass
class CliOutcome:
    """
    Result of one CLI invocation. Never carries the secret: `command` is
    the redacted command line.
    """
    success: bool
    stdout: str = ""
    stderr: str = ""
    returncode: int | None = None
    error: str | None = None
    command: str = ""
    elapsed_seconds: float = 0.0

    @property
    def failure_detail(self) -> str:
        if self.error:
            return self.error
        return self.stderr.strip() or f"exit status {self.returncode}"


@dataclass
class Verdict:
    success: bool
    settlement_txid: str | None = None
    reason: str = ""


# ─── Terminal Record ────────────────────────────────────────────────

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(ts: datetime) -> str:
    """ISO-8601 UTC with fixed microsecond precision so strings sort by time."""
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(raw: str) -> datetime:
    ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


@dataclass
class TestResult:
    """
    The record of one finished run. Assembled through the run and
    written to the result store exactly once.

    Field names match the JSON served by the gateway.
    """
    __test__ = False  # not a test case

    id: str
    timestamp: datetime
    success: bool = False
    mnemonic: str = ""
    btc_address: str = ""
    lava_usd_pubkey: str = ""
    contract_id: str | None = None
    collateral_repayment_txid: str | None = None
    error_message: str | None = None
    details: Any = None

    @staticmethod
    def start(run_id: str, credential: Credential,
              timestamp: datetime | None = None) -> TestResult:
        return TestResult(
            id=run_id,
            timestamp=timestamp or utcnow(),
            mnemonic=credential.mnemonic,
            btc_address=credential.funding_address,
            lava_usd_pubkey=credential.settlement_pubkey,
        )

    @staticmethod
    def failed(run_id: str, error: str,
               timestamp: datetime | None = None) -> TestResult:
        """Record for a run that broke before it had a credential."""
        return TestResult(
            id=run_id,
            timestamp=timestamp or utcnow(),
            success=False,
            mnemonic="Failed to generate",
            btc_address="N/A",
            lava_usd_pubkey="N/A",
            error_message=error,
            details={"error": error},
        )

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = format_timestamp(self.timestamp)
        return d

    @staticmethod
    def from_dict(d: dict[str, Any]) -> TestResult:
        ts = d["timestamp"]
        return TestResult(
            id=d["id"],
            timestamp=parse_timestamp(ts) if isinstance(ts, str) else ts,
            success=bool(d.get("success", False)),
            mnemonic=d.get("mnemonic", ""),
            btc_address=d.get("btc_address", ""),
            lava_usd_pubkey=d.get("lava_usd_pubkey", ""),
            contract_id=d.get("contract_id"),
            collateral_repayment_txid=d.get("collateral_repayment_txid"),
            error_message=d.get("error_message"),
            details=d.get("details"),
        )
