"""
Loan Harness - Structured Logging with Run IDs

Emits JSON log lines for every harness event. Each run gets a RunLogger
that stamps its run_id on every entry so a whole run can be pulled out
of the log stream with one filter.

Design decisions:
  - Transport: Python logging with a JSON formatter
  - Every handler carries a RedactingFilter: registered secrets are
    masked in the message and in structured fields before formatting

Usage:
    from engine.logging import RunLogger, configure_logging

    configure_logging(level="INFO")
    log = RunLogger(run_id="run-42")
    log.on_run_start()
    log.on_state_change("init", "credential_generated")
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from engine.secrets import get_registry

ROOT_LOGGER = "loan_harness"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def __init__(self, service_name: str = "loan_harness"):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("LH_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


class RedactingFilter(logging.Filter):
    """Masks every registered secret in the rendered message and structured fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        registry = get_registry()
        if not len(registry):
            return True
        record.msg = registry.redact(record.getMessage())
        record.args = ()
        if hasattr(record, "structured"):
            record.structured = {
                k: registry.redact(v) if isinstance(v, str) else v
                for k, v in record.structured.items()
            }
        return True


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = "loan_harness",
) -> logging.Logger:
    """
    Configure the loan_harness logger with JSON output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries

    Returns:
        The configured root logger for loan_harness
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()
    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(f"{ROOT_LOGGER}."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.addFilter(RedactingFilter())
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)

    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the loan_harness namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


# ═══════════════════════════════════════════════════════════════════
# Run Logger
# ═══════════════════════════════════════════════════════════════════

class RunLogger:
    """
    Structured logger bound to one run.

    Every entry includes run_id and an action name. Event methods mirror
    the orchestrator's lifecycle.
    """

    def __init__(self, run_id: str):
        self.run_id = run_id
        self._logger = get_logger("run")

    def _emit(self, level: int, action: str, message: str = "", **fields):
        if not self._logger.isEnabledFor(level):
            return
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=message or action,
            args=(), exc_info=None,
        )
        record.structured = {"run_id": self.run_id, "action": action, **fields}
        self._logger.handle(record)

    def on_run_start(self, simulate: bool = False) -> None:
        self._emit(logging.INFO, "run_start", f"Starting test run: {self.run_id}",
                   simulate=simulate)

    def on_state_change(self, from_state: str, to_state: str) -> None:
        self._emit(logging.INFO, "state_change",
                   from_state=from_state, to_state=to_state)

    def on_step_failed(self, step: str, error: str, fatal: bool) -> None:
        self._emit(
            logging.ERROR if fatal else logging.WARNING, "step_failed",
            f"{step} failed: {error[:500]}",
            step=step, error=error[:500], fatal=fatal,
        )

    def on_cli_invocation(self, subcommand: str, command: str, success: bool,
                          returncode: int | None, elapsed_s: float) -> None:
        """command must already be redacted."""
        self._emit(
            logging.INFO, "cli_invocation",
            subcommand=subcommand,
            command=command,
            success=success,
            returncode=returncode,
            elapsed_s=round(elapsed_s, 2),
        )

    def on_contract_id(self, contract_id: str, placeholder: bool) -> None:
        self._emit(logging.INFO, "contract_id",
                   f"Using contract id: {contract_id}",
                   contract_id=contract_id, placeholder=placeholder)

    def on_verdict(self, success: bool, settlement_txid: str | None,
                   reason: str, synthetic: bool) -> None:
        self._emit(
            logging.INFO, "verdict",
            "Test successful! Loan is closed with repayment." if success
            else f"Test failed: {reason}",
            success=success,
            settlement_txid=settlement_txid,
            reason=reason,
            synthetic_document=synthetic,
        )

    def on_run_end(self, success: bool, state: str, elapsed_s: float) -> None:
        self._emit(
            logging.INFO, "run_end",
            f"Test completed: success={success}, id={self.run_id}",
            success=success, final_state=state, elapsed_s=round(elapsed_s, 2),
        )
