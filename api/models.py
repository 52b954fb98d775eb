"""
Loan Harness - API Models

Request/response dataclasses for the gateway.
No FastAPI dependency: used by server, worker, and tests.
"""

from __future__ import annotations

import enum
import re
from dataclasses import asdict, dataclass
from typing import Any

RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9_.-]{0,127}$")


class JobStatus(str, enum.Enum):
    """Status of a run in the worker backend."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class TriggerRequest:
    """POST /run-test request body."""
    run_id: str | None = None

    @staticmethod
    def from_body(body: Any) -> TriggerRequest:
        if not isinstance(body, dict):
            return TriggerRequest()
        return TriggerRequest(run_id=body.get("run_id"))

    def validate(self) -> list[str]:
        """Return list of validation errors (empty = valid)."""
        if self.run_id is None:
            return []
        if not isinstance(self.run_id, str) or not RUN_ID_PATTERN.match(self.run_id):
            return ["run_id must be 1-128 characters of letters, digits, '_', '-' "
                    "or '.', and must not start with '.'"]
        return []


@dataclass
class TriggerResponse:
    """POST /run-test response: returned before the run does anything."""
    run_id: str
    status: str = "started"
    message: str = "Test started successfully"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class NotFoundResponse:
    """GET /test-status/{id} body while no result is stored."""
    run_id: str
    error: str = "Test not found in database"
    job_status: str | None = None
    run_state: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
