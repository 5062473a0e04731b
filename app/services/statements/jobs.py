"""Background statement batch jobs.

Lets the API accept a batch run, return a job id immediately and let the
caller poll.  Jobs live in an in-memory dict, so they are per-process and
lost on restart.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Callable

from fastapi import BackgroundTasks

from app.core.exceptions import RoyaltyError
from app.core.logging import get_logger
from app.core.permissions import Actor
from app.services.statements.orchestrator import (
    BatchRequest,
    CancellationToken,
    StatementBatchOrchestrator,
)

logger = get_logger(__name__)

_jobs: dict[str, dict] = {}
_tokens: dict[str, CancellationToken] = {}


def submit_statement_job(
    orchestrator_factory: Callable[[], StatementBatchOrchestrator],
    request: BatchRequest,
    actor: Actor,
    background_tasks: BackgroundTasks,
) -> str:
    """Queue a batch run and return its job id."""
    job_id = str(uuid.uuid4())
    _jobs[job_id] = {
        "job_id": job_id,
        "status": "pending",
        "tenant_id": str(request.tenant_id),
        "period_start": str(request.period_start),
        "period_end": str(request.period_end),
        "requested_by": actor.user_id,
        "submitted_at": datetime.utcnow().isoformat(),
        "total": None,
        "succeeded": None,
        "failed": None,
        "results": None,
        "error": None,
    }
    _tokens[job_id] = CancellationToken()
    background_tasks.add_task(_run_job, job_id, orchestrator_factory, request, actor)
    return job_id


def _run_job(
    job_id: str,
    orchestrator_factory: Callable[[], StatementBatchOrchestrator],
    request: BatchRequest,
    actor: Actor,
) -> None:
    """Background task body; records the report or the failure on the job."""
    token = _tokens[job_id]
    if token.cancelled:
        _jobs[job_id]["status"] = "cancelled"
        return

    _jobs[job_id]["status"] = "running"
    try:
        report = orchestrator_factory().run(request, actor, cancel_token=token)
    except RoyaltyError as e:
        logger.error("Job %s failed: %s", job_id, e.message)
        _jobs[job_id]["status"] = "failed"
        _jobs[job_id]["error"] = e.message
        return
    except Exception as e:
        logger.exception("Job %s crashed", job_id)
        _jobs[job_id]["status"] = "failed"
        _jobs[job_id]["error"] = str(e)
        return

    _jobs[job_id].update(
        status="cancelled" if report.cancelled else "completed",
        total=report.total,
        succeeded=report.succeeded,
        failed=report.failed,
        results=[
            {
                "author_id": str(r.author_id),
                "success": r.success,
                "outcome": r.outcome.value,
                "stage": r.stage.value,
                "statement_id": str(r.statement_id) if r.statement_id else None,
                "error": r.error,
                "delivered": r.delivered,
            }
            for r in report.results
        ],
    )


def get_job_status(job_id: str) -> dict | None:
    """Look up a job by ID.  Returns None if not found."""
    return _jobs.get(job_id)


def list_jobs() -> list[dict]:
    """Return all tracked jobs in submission order."""
    return list(_jobs.values())


def cancel_job(job_id: str) -> dict | None:
    """Request cancellation.  Running authors stop at their next stage boundary."""
    job = _jobs.get(job_id)
    if job is None:
        return None
    _tokens[job_id].cancel()
    if job["status"] == "pending":
        job["status"] = "cancelled"
    logger.info("Cancellation requested for job %s (status=%s)", job_id, job["status"])
    return job
