"""
Loan Harness - CLI Invocation Step

Runs the loans-borrower CLI as a child process. The run's mnemonic is
handed over in the child's own environment (MNEMONIC) and nowhere else:
the harness process environment is never touched, the argv carries no
secret, and the command line that gets logged or returned is redacted.

invoke() never raises. A missing binary, a non-zero exit or a timeout all
come back as a CliOutcome with success=False; the orchestrator decides
whether that is fatal.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
import time
from pathlib import Path

from engine.config import CliSettings
from engine.secrets import get_registry
from harness.types import CliOutcome

logger = logging.getLogger("loan_harness.cli_runner")

SECRET_ENV_VAR = "MNEMONIC"
CONTRACT_ID_PATTERN = re.compile(r"contract-id: ([a-zA-Z0-9]+)")


def extract_contract_id(stdout: str) -> str | None:
    """Pull the contract id out of `borrow init` output."""
    m = CONTRACT_ID_PATTERN.search(stdout or "")
    return m.group(1) if m else None


class CliRunner:
    """Invokes CLI subcommands for one run."""

    def __init__(self, executable: str | Path, settings: CliSettings | None = None):
        self.executable = str(executable)
        self.settings = settings or CliSettings()

    def _argv(self, args: list[str]) -> list[str]:
        return [self.executable, *self.settings.global_args, *args]

    def describe(self, args: list[str]) -> str:
        """Shell-like rendering of an invocation, with the secret masked."""
        rendered = shlex.join(self._argv(args))
        return f"{SECRET_ENV_VAR}=**** {get_registry().redact(rendered)}"

    def invoke(self, args: list[str], secret: str) -> CliOutcome:
        command = self.describe(args)
        logger.info("Executing command: %s", command)

        env = dict(os.environ)
        env[SECRET_ENV_VAR] = secret

        t0 = time.time()
        with get_registry().scoped(secret):
            try:
                proc = subprocess.run(
                    self._argv(args),
                    env=env,
                    capture_output=True,
                    text=True,
                    timeout=self.settings.timeout_seconds,
                )
            except subprocess.TimeoutExpired as e:
                return CliOutcome(
                    success=False,
                    stdout=_text(e.stdout),
                    stderr=_text(e.stderr),
                    error=f"timed out after {e.timeout}s",
                    command=command,
                    elapsed_seconds=time.time() - t0,
                )
            except (OSError, ValueError) as e:
                return CliOutcome(
                    success=False,
                    error=f"Failed to execute command: {e}",
                    command=command,
                    elapsed_seconds=time.time() - t0,
                )
            registry = get_registry()
            return CliOutcome(
                success=proc.returncode == 0,
                stdout=registry.redact(proc.stdout),
                stderr=registry.redact(proc.stderr),
                returncode=proc.returncode,
                command=command,
                elapsed_seconds=time.time() - t0,
            )

    # ─── Subcommands ─────────────────────────────────────────────────

    def borrow_init(self, secret: str) -> CliOutcome:
        s = self.settings
        return self.invoke([
            "borrow", "init",
            "--loan-capital-asset", s.loan_capital_asset,
            "--ltv-ratio-bp", str(s.ltv_ratio_bp),
            "--loan-duration-days", str(s.loan_duration_days),
            "--loan-amount", str(s.loan_amount),
            "--finalize",
        ], secret)

    def borrow_repay(self, contract_id: str, secret: str) -> CliOutcome:
        return self.invoke(["borrow", "repay", "--contract-id", contract_id], secret)

    def get_contract(self, contract_id: str, output_file: str | Path,
                     secret: str) -> CliOutcome:
        return self.invoke([
            "get-contract",
            "--contract-id", contract_id,
            "--verbose",
            "--output-file", str(output_file),
        ], secret)


def _text(raw) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return get_registry().redact(raw.decode("utf-8", "replace"))
    return get_registry().redact(raw)
