"""
Loan Harness - API Server

FastAPI application serving:
  POST /run-test                  - start a run (returns immediately)
  GET  /test-status/{run_id}      - poll for a run's result
  GET  /test-results              - all results, newest first
  POST /test-runs/{run_id}/cancel - stop a queued or running run
  GET  /health                    - liveness
  GET  /ready                     - readiness (result store reachable)
  GET  /stats                     - worker job counts

Usage:
    uvicorn api.server:app --host 0.0.0.0 --port 8080

    # Development (synchronous runs)
    LH_WORKER_MODE=inline uvicorn api.server:app --reload
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.models import NotFoundResponse, TriggerRequest, TriggerResponse
from api.worker import DuplicateRunError, WorkerBackend, create_backend
from engine.config import HarnessSettings, load_settings
from engine.logging import configure_logging
from harness.orchestrator import RunOrchestrator
from harness.store import ResultStore, StoreError

logger = logging.getLogger("loan_harness.api")


def create_app(
    settings: HarnessSettings | None = None,
    store: ResultStore | None = None,
    orchestrator: RunOrchestrator | None = None,
    backend: WorkerBackend | None = None,
    configure_logs: bool = True,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Separated from module-level creation so tests can build fresh
    instances with fake collaborators.
    """
    settings = settings or load_settings()
    if configure_logs:
        configure_logging(level=settings.log_level)
    store = store or ResultStore(settings.storage.db_path)

    app = FastAPI(
        title="Loan Harness API",
        version="0.1.0",
        description="End-to-end verification of the loan lifecycle on testnet",
    )

    # ── State ────────────────────────────────────────────────

    _orchestrator = orchestrator
    _backend = backend

    def get_orchestrator() -> RunOrchestrator:
        nonlocal _orchestrator
        if _orchestrator is None:
            _orchestrator = RunOrchestrator(settings, store=store)
        return _orchestrator

    def run_fn(run_id, cancel_event, on_state):
        return get_orchestrator().run(run_id, cancel_event=cancel_event, on_state=on_state)

    def get_backend() -> WorkerBackend:
        nonlocal _backend
        if _backend is None:
            _backend = create_backend(
                run_fn,
                mode=settings.worker.mode,
                max_workers=settings.worker.max_workers,
                max_finished=settings.worker.max_finished_jobs,
            )
        return _backend

    app.state.get_backend = get_backend
    app.state.store = store

    # ── Lifecycle ─────────────────────────────────────────────

    @app.on_event("shutdown")
    async def shutdown():
        if _backend:
            _backend.shutdown()

    # ── Trigger ───────────────────────────────────────────────

    @app.post("/run-test")
    async def run_test(request: Request):
        try:
            body = await request.json()
        except ValueError:
            body = {}

        req = TriggerRequest.from_body(body)
        errors = req.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        run_id = req.run_id or str(uuid.uuid4())
        logger.info("Received test request with run_id: %s", run_id)

        try:
            already_stored = store.exists(run_id)
        except StoreError as e:
            logger.warning("Could not check for existing run %s: %s", run_id, e)
            already_stored = False
        if already_stored:
            return JSONResponse(status_code=409,
                                content={"error": f"Run already exists: {run_id}"})

        try:
            get_backend().enqueue(run_id)
        except DuplicateRunError as e:
            return JSONResponse(status_code=409, content={"error": str(e)})

        return JSONResponse(content=TriggerResponse(run_id=run_id).to_dict())

    # ── Poll ──────────────────────────────────────────────────

    @app.get("/test-status/{run_id}")
    async def test_status(run_id: str):
        try:
            result = store.get(run_id)
        except StoreError as e:
            logger.error("Failed to get test result %s: %s", run_id, e)
            return JSONResponse(
                status_code=503,
                content={"error": f"Failed to retrieve test result: {e}"},
            )

        if result is None:
            job = get_backend().get_run(run_id)
            body = NotFoundResponse(
                run_id=run_id,
                job_status=job.status if job else None,
                run_state=job.run_state if job else None,
            )
            return JSONResponse(status_code=404, content=body.to_dict())

        return JSONResponse(content=result.to_dict())

    # ── List ──────────────────────────────────────────────────

    @app.get("/test-results")
    async def test_results():
        try:
            results = store.list_all()
        except StoreError as e:
            logger.error("Failed to get test results: %s", e)
            return JSONResponse(
                status_code=500,
                content={"error": f"Failed to retrieve test results: {e}"},
            )
        return JSONResponse(content=[r.to_dict() for r in results])

    # ── Cancel ────────────────────────────────────────────────

    @app.post("/test-runs/{run_id}/cancel")
    async def cancel_run(run_id: str):
        backend = get_backend()
        job = backend.get_run(run_id)
        if job is None:
            return JSONResponse(status_code=404,
                                content={"error": f"No active run: {run_id}"})
        if not backend.cancel(run_id):
            return JSONResponse(status_code=409, content={
                "error": f"Run already finished: {run_id}",
                "job_status": job.status,
            })
        return JSONResponse(status_code=202, content={
            "run_id": run_id,
            "status": "cancelling",
        })

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return JSONResponse(content={
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    @app.get("/ready")
    async def ready():
        ok, detail = store.ping()
        checks: dict[str, Any] = {"result_store": {"status": "ok" if ok else "fail",
                                                   "detail": detail}}
        if not ok:
            return JSONResponse(status_code=503,
                                content={"status": "fail", "checks": checks})
        return JSONResponse(content={"status": "ok", "checks": checks})

    @app.get("/stats")
    async def stats():
        return JSONResponse(content={
            "worker": get_backend().tracker.stats,
            "simulate": settings.simulate,
        })

    return app


# ── Module-level app for uvicorn ──────────────────────────────

app = create_app()
