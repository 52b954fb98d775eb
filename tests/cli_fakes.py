"""
Loan Harness - Test Doubles

A stand-in for the loans-borrower CLI (a small Python script written
into a temp directory and marked executable) plus in-process fakes for
the faucet and installer.

The fake CLI reads behavior.json next to itself and appends one line per
invocation to calls.jsonl:

    {"argv": [...], "mnemonic": "<value of MNEMONIC in its env>"}

behavior.json keys:
    init:        "ok" | "fail" | "noid" | "leak"   (default "ok")
    contract_id: id printed by a successful init   (default "LOAN77")
    repay:       "ok" | "fail"
    inspect:     "ok" | "fail"
    status:      JSON value written by get-contract (omit/null: no file)
    status_raw:  raw text written by get-contract instead of status
"""

from __future__ import annotations

import json
import os
import stat
import sys
from pathlib import Path

from harness.types import CliOutcome, FaucetOutcome

_SCRIPT = r'''
import json, os, sys

here = os.path.dirname(os.path.abspath(__file__))
with open(os.path.join(here, "behavior.json")) as f:
    behavior = json.load(f)

args = sys.argv[1:]
with open(os.path.join(here, "calls.jsonl"), "a") as f:
    f.write(json.dumps({"argv": args, "mnemonic": os.environ.get("MNEMONIC")}) + "\n")

rest = [a for a in args if a not in ("--testnet", "--disable-backup-contracts")]


def opt(name):
    return rest[rest.index(name) + 1] if name in rest else None


if rest[:2] == ["borrow", "init"]:
    mode = behavior.get("init", "ok")
    if mode == "fail":
        print("insufficient collateral", file=sys.stderr)
        sys.exit(3)
    if mode == "noid":
        print("loan created")
        sys.exit(0)
    if mode == "leak":
        print("using mnemonic " + os.environ.get("MNEMONIC", ""))
    print("Loan offer accepted")
    print("contract-id: " + behavior.get("contract_id", "LOAN77"))
    sys.exit(0)

if rest[:2] == ["borrow", "repay"]:
    if behavior.get("repay") == "fail":
        print("repay failed", file=sys.stderr)
        sys.exit(4)
    print("repaid " + str(opt("--contract-id")))
    sys.exit(0)

if rest[:1] == ["get-contract"]:
    if behavior.get("inspect") == "fail":
        print("contract not found", file=sys.stderr)
        sys.exit(5)
    out = opt("--output-file")
    if "status_raw" in behavior:
        content = behavior["status_raw"]
    elif behavior.get("status") is None:
        sys.exit(0)
    else:
        content = json.dumps(behavior["status"])
    with open(out, "w") as f:
        f.write(content)
    sys.exit(0)

print("unknown command: " + " ".join(args), file=sys.stderr)
sys.exit(2)
'''

CLOSED_WITH_REPAYMENT = {
    "Closed": {},
    "outcome": {"repayment": {"collateral_repayment_txid": "abc123"}},
}


def make_fake_cli(directory: str, behavior: dict | None = None) -> Path:
    """Write the fake CLI into directory and return its path."""
    d = Path(directory)
    d.mkdir(parents=True, exist_ok=True)
    script = d / "loans-borrower-cli"
    script.write_text(f"#!{sys.executable}\n{_SCRIPT}")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    set_behavior(directory, behavior or {})
    return script


def set_behavior(directory: str, behavior: dict):
    (Path(directory) / "behavior.json").write_text(json.dumps(behavior))


def read_calls(directory: str) -> list[dict]:
    path = Path(directory) / "calls.jsonl"
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines() if line]


class FakeFaucet:
    """Records credentials; fails with `error` when given."""

    def __init__(self, error: str | None = None):
        self.error = error
        self.funded = []

    def fund(self, credential):
        self.funded.append(credential)
        if self.error:
            return FaucetOutcome(success=False, error=self.error)
        return FaucetOutcome(success=True)


class FakeInstaller:
    """Returns a fixed executable, or raises the given error."""

    def __init__(self, executable=None, error: Exception | None = None):
        self.executable = executable
        self.error = error
        self.calls = 0

    def ensure(self):
        self.calls += 1
        if self.error:
            raise self.error
        return Path(self.executable)


def fixed_credential_factory(mnemonic: str = "abandon " * 11 + "about"):
    """Credential factory with a known phrase, so tests can search for it."""
    from harness.types import Credential

    def factory(settings):
        return Credential(
            mnemonic=mnemonic.strip(),
            funding_address=settings.btc_address,
            settlement_pubkey=settings.lava_usd_pubkey,
        )
    return factory


def fast_settings(work_dir: str, cli_executable: str = "", db_path: str = ""):
    """HarnessSettings with short settling waits and everything under work_dir."""
    from engine.config import HarnessSettings

    s = HarnessSettings()
    s.settle.after_funding = 0
    s.settle.after_cli_step = 0.2
    s.settle.poll_interval = 0.01
    s.storage.work_dir = os.path.join(work_dir, "runs")
    s.storage.db_path = db_path or os.path.join(work_dir, "results.db")
    s.cli.executable = cli_executable
    s.cli.timeout_seconds = 30
    return s


class FakeRunner:
    """Scripted CliRunner: no child process. Doubles as its own factory."""

    def __init__(self, init_stdout="contract-id: LOAN77\n", init_ok=True,
                 repay_ok=True, status=CLOSED_WITH_REPAYMENT, status_bytes=None):
        self.init_stdout = init_stdout
        self.init_ok = init_ok
        self.repay_ok = repay_ok
        self.status = status
        self.status_bytes = status_bytes
        self.calls = []

    def __call__(self, executable, settings):
        return self

    def borrow_init(self, secret):
        self.calls.append(("borrow_init",))
        if not self.init_ok:
            return CliOutcome(success=False, stderr="boom", returncode=1)
        return CliOutcome(success=True, stdout=self.init_stdout, returncode=0)

    def borrow_repay(self, contract_id, secret):
        self.calls.append(("borrow_repay", contract_id))
        return CliOutcome(success=self.repay_ok, returncode=0 if self.repay_ok else 4)

    def get_contract(self, contract_id, output_file, secret):
        self.calls.append(("get_contract", contract_id, str(output_file)))
        if self.status_bytes is not None:
            Path(output_file).write_bytes(self.status_bytes)
        elif self.status is not None:
            Path(output_file).write_text(json.dumps(self.status))
        return CliOutcome(success=True, returncode=0)
