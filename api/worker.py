"""
Loan Harness - Worker Backends

Pluggable backends that execute runs off the request path:
  - InlineBackend: synchronous in-process (dev/testing)
  - ThreadPoolBackend: ThreadPoolExecutor in-process, bounded concurrency

Every enqueued run gets a JobRecord (queued/running/completed/failed/
cancelled plus the orchestrator state it last reached) and a cancel
event the run checks between steps.

The active backend is selected by LH_WORKER_MODE (or worker.mode):
  inline    -> InlineBackend
  thread    -> ThreadPoolBackend
"""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable

from api.models import JobStatus
from harness.types import RunState

logger = logging.getLogger("loan_harness.worker")

# run_fn(run_id, cancel_event, on_state) executes one run to completion.
RunFn = Callable[[str, threading.Event, Callable[[str, RunState], None]], Any]


class DuplicateRunError(Exception):
    """A job for this run id already exists."""


# ═══════════════════════════════════════════════════════════════════
# Job Tracking
# ═══════════════════════════════════════════════════════════════════

@dataclass
class JobRecord:
    """In-memory record for tracking a run's job lifecycle."""
    job_id: str
    run_id: str
    status: str = JobStatus.QUEUED.value
    run_state: str = RunState.INIT.value
    enqueued_at: float = 0.0
    started_at: float = 0.0
    completed_at: float = 0.0
    error: str = ""

    @property
    def finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED.value, JobStatus.FAILED.value,
                               JobStatus.CANCELLED.value)


class JobTracker:
    """
    Thread-safe in-memory job status tracker. One job per run id.

    Finished jobs are kept for polling and duplicate detection, but only
    the newest `max_finished` of them; older ones are evicted when a new
    job is created. Their results live on in the result store.
    """

    def __init__(self, max_finished: int = 1000):
        self.max_finished = max_finished
        self._jobs: dict[str, JobRecord] = {}
        self._by_run: dict[str, str] = {}
        self._lock = threading.Lock()

    def create(self, run_id: str) -> JobRecord:
        record = JobRecord(
            job_id=f"job_{uuid.uuid4().hex[:12]}",
            run_id=run_id,
            enqueued_at=time.time(),
        )
        with self._lock:
            if run_id in self._by_run:
                raise DuplicateRunError(f"Run already exists: {run_id}")
            self._evict_finished()
            self._jobs[record.job_id] = record
            self._by_run[run_id] = record.job_id
        return record

    def _evict_finished(self):
        """Drop the oldest finished jobs beyond max_finished. Caller holds the lock."""
        finished = [j for j in self._jobs.values() if j.finished]
        excess = len(finished) - self.max_finished
        if excess <= 0:
            return
        finished.sort(key=lambda j: j.completed_at)
        for record in finished[:excess]:
            del self._jobs[record.job_id]
            if self._by_run.get(record.run_id) == record.job_id:
                del self._by_run[record.run_id]
        logger.debug("Evicted %d finished jobs", excess)

    def get(self, job_id: str) -> JobRecord | None:
        with self._lock:
            return self._jobs.get(job_id)

    def get_by_run(self, run_id: str) -> JobRecord | None:
        with self._lock:
            job_id = self._by_run.get(run_id)
            return self._jobs.get(job_id) if job_id else None

    def _update(self, job_id: str, **fields):
        with self._lock:
            record = self._jobs.get(job_id)
            if record:
                for k, v in fields.items():
                    setattr(record, k, v)

    def mark_running(self, job_id: str):
        self._update(job_id, status=JobStatus.RUNNING.value, started_at=time.time())

    def mark_state(self, job_id: str, state: RunState):
        self._update(job_id, run_state=state.value)

    def mark_completed(self, job_id: str):
        self._update(job_id, status=JobStatus.COMPLETED.value, completed_at=time.time())

    def mark_cancelled(self, job_id: str):
        self._update(job_id, status=JobStatus.CANCELLED.value, completed_at=time.time())

    def mark_failed(self, job_id: str, error: str):
        self._update(job_id, status=JobStatus.FAILED.value,
                     completed_at=time.time(), error=error[:500])

    @property
    def stats(self) -> dict[str, int]:
        with self._lock:
            counts = {s.value: 0 for s in JobStatus}
            for j in self._jobs.values():
                counts[j.status] = counts.get(j.status, 0) + 1
            return counts


# ═══════════════════════════════════════════════════════════════════
# Worker Backend Interface
# ═══════════════════════════════════════════════════════════════════

class WorkerBackend:
    """Shared bookkeeping for job dispatch."""

    def __init__(self, run_fn: RunFn, max_finished: int = 1000):
        self.run_fn = run_fn
        self.tracker = JobTracker(max_finished=max_finished)
        self._cancel_events: dict[str, threading.Event] = {}
        self._events_lock = threading.Lock()

    def enqueue(self, run_id: str) -> str:
        """Enqueue a run for execution. Returns job_id."""
        raise NotImplementedError

    def get_job(self, job_id: str) -> JobRecord | None:
        return self.tracker.get(job_id)

    def get_run(self, run_id: str) -> JobRecord | None:
        return self.tracker.get_by_run(run_id)

    def cancel(self, run_id: str) -> bool:
        """
        Ask a queued or running run to stop at its next step boundary.
        Returns False when the run is unknown or already finished.
        """
        record = self.tracker.get_by_run(run_id)
        if record is None or record.finished:
            return False
        with self._events_lock:
            event = self._cancel_events.get(run_id)
        if event is None:
            return False
        event.set()
        logger.info("Cancellation requested for run %s", run_id)
        return True

    def shutdown(self):
        """Graceful shutdown."""
        pass

    def _register(self, run_id: str) -> tuple[JobRecord, threading.Event]:
        record = self.tracker.create(run_id)
        event = threading.Event()
        with self._events_lock:
            self._cancel_events[run_id] = event
        return record, event

    def _execute(self, job_id: str, run_id: str, cancel_event: threading.Event):
        """Run one job and settle its record. Never raises."""
        self.tracker.mark_running(job_id)

        def on_state(_run_id: str, state: RunState):
            self.tracker.mark_state(job_id, state)

        try:
            self.run_fn(run_id, cancel_event, on_state)
        except Exception as e:
            self.tracker.mark_failed(job_id, str(e))
            logger.error("Job %s failed for run %s: %s", job_id, run_id, e)
        else:
            record = self.tracker.get(job_id)
            if record and record.run_state == RunState.CANCELLED.value:
                self.tracker.mark_cancelled(job_id)
            else:
                self.tracker.mark_completed(job_id)
            logger.info("Job %s completed for run %s", job_id, run_id)
        finally:
            with self._events_lock:
                self._cancel_events.pop(run_id, None)


# ═══════════════════════════════════════════════════════════════════
# Inline Backend (synchronous, dev/test)
# ═══════════════════════════════════════════════════════════════════

class InlineBackend(WorkerBackend):
    """Synchronous in-process execution. Blocks until the run completes."""

    def enqueue(self, run_id: str) -> str:
        record, event = self._register(run_id)
        self._execute(record.job_id, run_id, event)
        return record.job_id


# ═══════════════════════════════════════════════════════════════════
# Thread Pool Backend
# ═══════════════════════════════════════════════════════════════════

class ThreadPoolBackend(WorkerBackend):
    """
    Async execution via ThreadPoolExecutor.
    Bounded concurrency; each run blocks only its own worker thread.
    """

    def __init__(self, run_fn: RunFn, max_workers: int = 4, max_finished: int = 1000):
        super().__init__(run_fn, max_finished=max_finished)
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="lh_worker",
        )
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()
        logger.info("ThreadPoolBackend started: max_workers=%d", max_workers)

    def enqueue(self, run_id: str) -> str:
        record, event = self._register(run_id)
        future = self._pool.submit(self._execute, record.job_id, run_id, event)
        with self._lock:
            self._futures[record.job_id] = future
        logger.info("Enqueued job %s for run %s", record.job_id, run_id)
        return record.job_id

    def wait(self, job_id: str, timeout: float | None = None) -> JobRecord | None:
        """Block until a job finishes (tests and the operator CLI)."""
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.tracker.get(job_id)

    def shutdown(self, cancel_running: bool = False):
        logger.info("Shutting down ThreadPoolBackend...")
        if cancel_running:
            with self._events_lock:
                events = list(self._cancel_events.values())
            for event in events:
                event.set()
        self._pool.shutdown(wait=True, cancel_futures=False)


# ═══════════════════════════════════════════════════════════════════
# Backend Factory
# ═══════════════════════════════════════════════════════════════════

def create_backend(
    run_fn: RunFn,
    mode: str | None = None,
    max_workers: int = 4,
    max_finished: int = 1000,
) -> WorkerBackend:
    """
    Create the worker backend.

    Mode selection: explicit mode, else LH_WORKER_MODE, else "thread".
    """
    mode = mode or os.environ.get("LH_WORKER_MODE", "thread")

    if mode == "inline":
        logger.info("Worker backend: InlineBackend (synchronous)")
        return InlineBackend(run_fn, max_finished=max_finished)
    if mode == "thread":
        logger.info("Worker backend: ThreadPoolBackend (max_workers=%d)", max_workers)
        return ThreadPoolBackend(run_fn, max_workers=max_workers,
                                 max_finished=max_finished)
    raise ValueError(f"Unknown worker mode: {mode!r} (expected 'inline' or 'thread')")
