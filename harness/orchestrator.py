"""
Loan Harness - Run Orchestrator

Drives one end-to-end run through a fixed sequence of states:

    init -> credential_generated -> funded -> cli_ready -> loan_opened
         -> loan_repaid -> status_fetched -> verdicted -> done

Failure policy per step:
  - credential generation, either faucet call, CLI availability: FATAL.
    The run stops and a failed TestResult is persisted.
  - borrow init, borrow repay, get-contract: NON-FATAL. Logged; the run
    continues (a failed or unparsable `borrow init` falls back to the
    placeholder contract id).
  - the verdict is computed from whatever status document exists; see
    harness.verdict for the simulation-mode fallback.

Run-scoped files are named after the run id, never after the contract
id, so concurrent runs that all fall back to the placeholder contract
id do not share a status file.

Usage:
    from harness.orchestrator import RunOrchestrator

    orch = RunOrchestrator(settings, store=ResultStore("results.db"))
    result = orch.run("run-42")
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable

from engine.config import HarnessSettings
from engine.logging import RunLogger
from engine.secrets import get_registry
from harness.cli_install import CliInstaller, CliUnavailableError
from harness.cli_runner import CliRunner, extract_contract_id
from harness.credentials import CredentialError, generate_credential
from harness.faucet import FaucetClient
from harness.settle import RunCancelled, SettleTimeout, Settler
from harness.store import ResultStore
from harness.types import (
    RUN_SEQUENCE,
    CliOutcome,
    Credential,
    RunState,
    TestResult,
    Verdict,
    utcnow,
)
from harness.verdict import evaluate, load_status_document

logger = logging.getLogger("loan_harness.orchestrator")

PLACEHOLDER_CONTRACT_ID = "test-contract-12345"

StateCallback = Callable[[str, RunState], None]


class IllegalTransition(RuntimeError):
    """A state was entered from anything other than its predecessor."""


class InvalidRunId(ValueError):
    """The run id cannot name a file inside the work directory."""


class _FatalStep(Exception):
    """Internal: a fatal step failed; message becomes the run's error."""


@dataclass
class _Run:
    """Mutable per-run context. Never shared between runs."""
    run_id: str
    started: datetime
    log: RunLogger
    settler: Settler
    on_state: StateCallback | None
    state: RunState = RunState.INIT
    credential: Credential | None = None
    result: TestResult | None = None
    history: list[RunState] = field(default_factory=lambda: [RunState.INIT])


class RunOrchestrator:
    """
    Sequences the steps of a run. Every collaborator is injectable so
    tests can swap faucets, the CLI and the store for fakes.
    """

    def __init__(
        self,
        settings: HarnessSettings | None = None,
        store: ResultStore | None = None,
        faucet: FaucetClient | None = None,
        installer: CliInstaller | None = None,
        runner_factory: Callable[..., CliRunner] = CliRunner,
        credential_factory: Callable[..., Credential] = generate_credential,
        settler_factory: Callable[..., Settler] = Settler,
    ):
        self.settings = settings or HarnessSettings()
        self.store = store or ResultStore(self.settings.storage.db_path)
        self.faucet = faucet or FaucetClient(self.settings.faucet)
        self.installer = installer or CliInstaller(self.settings.cli)
        self.runner_factory = runner_factory
        self.credential_factory = credential_factory
        self.settler_factory = settler_factory

    def status_path(self, run_id: str) -> Path:
        work_dir = Path(self.settings.storage.work_dir).resolve()
        path = (work_dir / f"{run_id}.json").resolve()
        if not run_id or path.parent != work_dir:
            raise InvalidRunId(f"run id does not name a file in {work_dir}: {run_id!r}")
        return path

    # ─── Entry Point ─────────────────────────────────────────────────

    def run(
        self,
        run_id: str,
        cancel_event: threading.Event | None = None,
        on_state: StateCallback | None = None,
    ) -> TestResult:
        """
        Execute one run to completion and persist its TestResult.

        Always returns the persisted result. Raises InvalidRunId before
        anything runs when the run id would escape the work directory;
        otherwise only a store failure raises.
        """
        self.status_path(run_id)
        run = _Run(
            run_id=run_id,
            started=utcnow(),
            log=RunLogger(run_id),
            settler=self.settler_factory(cancel_event),
            on_state=on_state,
        )
        t0 = time.time()
        run.log.on_run_start(simulate=self.settings.simulate)

        try:
            self._execute(run)
        except _FatalStep as e:
            self._fail(run, str(e), RunState.FAILED)
        except RunCancelled:
            self._fail(run, "run cancelled", RunState.CANCELLED)
        except Exception as e:
            logger.exception("Test failed with error: %s", e)
            self._fail(run, str(e) or e.__class__.__name__, RunState.FAILED)

        run.log.on_run_end(run.result.success, run.state.value, time.time() - t0)
        self.store.put(run.result)
        return run.result

    # ─── State Machine ───────────────────────────────────────────────

    def _advance(self, run: _Run, to_state: RunState):
        expected = RUN_SEQUENCE[RUN_SEQUENCE.index(to_state) - 1]
        if run.state is not expected:
            raise IllegalTransition(f"{run.state.value} -> {to_state.value}")
        run.settler.check_cancelled()
        run.log.on_state_change(run.state.value, to_state.value)
        run.state = to_state
        run.history.append(to_state)
        self._notify(run)

    def _notify(self, run: _Run):
        if run.on_state is None:
            return
        try:
            run.on_state(run.run_id, run.state)
        except Exception as e:
            logger.warning("State callback failed for %s: %s", run.run_id, e)

    def _fail(self, run: _Run, error: str, terminal: RunState):
        if run.result is None:
            run.result = TestResult.failed(run.run_id, error, timestamp=run.started)
        else:
            run.result.success = False
            run.result.collateral_repayment_txid = None
            run.result.error_message = error
        run.log.on_state_change(run.state.value, terminal.value)
        run.state = terminal
        run.history.append(terminal)
        self._notify(run)

    def _execute(self, run: _Run):
        s = self.settings

        # Init -> CredentialGenerated
        run.settler.check_cancelled()
        try:
            run.credential = self.credential_factory(s.credentials)
        except CredentialError as e:
            run.log.on_step_failed("generate_credential", str(e), fatal=True)
            raise _FatalStep(str(e)) from e
        run.result = TestResult.start(run.run_id, run.credential, timestamp=run.started)
        self._advance(run, RunState.CREDENTIAL_GENERATED)

        secret = run.credential.mnemonic
        with get_registry().scoped(secret):
            self._fund(run)
            runner = self._ensure_cli(run)
            contract_id = self._open_loan(run, runner, secret)
            self._repay_loan(run, runner, contract_id, secret)
            status_file = self._fetch_status(run, runner, contract_id, secret)
            self._verdict(run, status_file)

        self._advance(run, RunState.DONE)

    # ─── Fatal Steps ─────────────────────────────────────────────────

    def _fund(self, run: _Run):
        outcome = self.faucet.fund(run.credential)
        if not outcome.success:
            run.log.on_step_failed("fund", outcome.error or "faucet failure", fatal=True)
            raise _FatalStep(outcome.error or "faucet request failed")
        run.settler.wait("faucet transactions to be processed",
                         self.settings.settle.after_funding)
        self._advance(run, RunState.FUNDED)

    def _ensure_cli(self, run: _Run) -> CliRunner:
        try:
            executable = self.installer.ensure()
        except CliUnavailableError as e:
            run.log.on_step_failed("install_cli", str(e), fatal=True)
            raise _FatalStep(str(e)) from e
        self._advance(run, RunState.CLI_READY)
        return self.runner_factory(executable, self.settings.cli)

    # ─── Non-Fatal Steps ─────────────────────────────────────────────

    def _record_cli(self, run: _Run, subcommand: str, outcome: CliOutcome):
        run.log.on_cli_invocation(subcommand, outcome.command, outcome.success,
                                  outcome.returncode, outcome.elapsed_seconds)
        if not outcome.success:
            run.log.on_step_failed(subcommand, outcome.failure_detail, fatal=False)

    def _open_loan(self, run: _Run, runner: CliRunner, secret: str) -> str:
        outcome = runner.borrow_init(secret)
        self._record_cli(run, "borrow init", outcome)

        contract_id = extract_contract_id(outcome.stdout) if outcome.success else None
        placeholder = contract_id is None
        if placeholder:
            contract_id = PLACEHOLDER_CONTRACT_ID
        run.log.on_contract_id(contract_id, placeholder)
        run.result.contract_id = contract_id

        self._advance(run, RunState.LOAN_OPENED)
        run.settler.wait("loan to be processed", self.settings.settle.after_cli_step)
        return contract_id

    def _repay_loan(self, run: _Run, runner: CliRunner, contract_id: str, secret: str):
        outcome = runner.borrow_repay(contract_id, secret)
        self._record_cli(run, "borrow repay", outcome)
        self._advance(run, RunState.LOAN_REPAID)
        run.settler.wait("repayment to be processed", self.settings.settle.after_cli_step)

    def _fetch_status(self, run: _Run, runner: CliRunner, contract_id: str,
                      secret: str) -> Path:
        status_file = self.status_path(run.run_id)
        status_file.parent.mkdir(parents=True, exist_ok=True)
        status_file.unlink(missing_ok=True)

        outcome = runner.get_contract(contract_id, status_file, secret)
        self._record_cli(run, "get-contract", outcome)
        self._advance(run, RunState.STATUS_FETCHED)

        try:
            run.settler.wait(
                "status document",
                self.settings.settle.after_cli_step,
                probe=status_file.exists,
                interval=self.settings.settle.poll_interval,
            )
        except SettleTimeout as e:
            run.log.on_step_failed("get-contract", str(e), fatal=False)
        return status_file

    # ─── Verdict ─────────────────────────────────────────────────────

    def _verdict(self, run: _Run, status_file: Path):
        document, error, synthetic = load_status_document(
            status_file, simulate=self.settings.simulate)

        if document is None:
            verdict = Verdict(success=False, reason=error or "status document unavailable")
        else:
            verdict = evaluate(document)

        run.log.on_verdict(verdict.success, verdict.settlement_txid,
                           verdict.reason, synthetic)
        run.result.success = verdict.success
        run.result.collateral_repayment_txid = verdict.settlement_txid if verdict.success else None
        run.result.error_message = None if verdict.success else verdict.reason
        run.result.details = document
        self._advance(run, RunState.VERDICTED)
