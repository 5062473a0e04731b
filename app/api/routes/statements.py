"""Royalty statement endpoints.

Batch generation (synchronous and background), statement lookup,
presigned download links and manual email resend.
"""

from __future__ import annotations

from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.api.dependencies import (
    get_actor,
    get_artifact_store,
    get_email_transport,
    get_permission_gate,
)
from app.core.config import settings
from app.core.database import get_db, get_session_factory
from app.core.exceptions import (
    ArtifactError,
    DeliveryError,
    DeliveryValidationError,
    RepositoryUnavailableError,
    UnauthorizedError,
    ValidationError,
)
from app.core.logging import get_logger
from app.core.permissions import Actor, PermissionGate, require_permission
from app.models.statement import Statement
from app.repositories.royalty_repository import RoyaltyRepository
from app.schemas.statement import (
    BatchReportResponse,
    BatchRunRequest,
    DeliveryResponse,
    DownloadUrlResponse,
    JobResponse,
    StatementDetailResponse,
    StatementResponse,
)
from app.services.statements import jobs
from app.services.statements.artifacts import ArtifactStore
from app.services.statements.delivery import StatementDeliveryService
from app.services.statements.mailer import (
    EmailTransport,
    format_period_label,
    statement_pdf_filename,
)
from app.services.statements.orchestrator import (
    GENERATE_ACTION,
    StatementBatchOrchestrator,
)

logger = get_logger(__name__)

router = APIRouter()

RESEND_ACTION = "statements:resend"


def _orchestrator(
    session_factory=Depends(get_session_factory),
    artifact_store: ArtifactStore = Depends(get_artifact_store),
    transport: EmailTransport = Depends(get_email_transport),
    gate: PermissionGate = Depends(get_permission_gate),
) -> StatementBatchOrchestrator:
    return StatementBatchOrchestrator(session_factory, artifact_store, transport, gate)


def _get_statement_or_404(db: Session, tenant_id: UUID, statement_id: UUID) -> Statement:
    statement = RoyaltyRepository(db).get_statement(tenant_id, statement_id)
    if statement is None:
        raise HTTPException(status_code=404, detail="Statement not found")
    return statement


# ── Batch runs ──────────────────────────────────────────────────────


@router.post("/batch", response_model=BatchReportResponse)
def run_batch(
    body: BatchRunRequest,
    actor: Actor = Depends(get_actor),
    orchestrator: StatementBatchOrchestrator = Depends(_orchestrator),
) -> BatchReportResponse:
    """Generate statements for the requested authors and period.

    Per-author failures are reported in ``results``; the request itself
    only fails on permission denial, bad input or an unreachable database.
    """
    logger.info(
        "Batch requested: tenant=%s period=%s..%s authors=%d by=%s",
        body.tenant_id,
        body.period_start,
        body.period_end,
        len(body.author_ids),
        actor.user_id,
    )
    try:
        report = orchestrator.run(body.to_batch_request(), actor)
    except UnauthorizedError as exc:
        raise HTTPException(status_code=403, detail=exc.message)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.message)
    except RepositoryUnavailableError as exc:
        logger.exception("Batch aborted")
        raise HTTPException(status_code=503, detail=exc.message)

    return BatchReportResponse.model_validate(report)


@router.post("/batch-async", response_model=JobResponse, status_code=202)
def submit_batch(
    body: BatchRunRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    gate: PermissionGate = Depends(get_permission_gate),
    orchestrator: StatementBatchOrchestrator = Depends(_orchestrator),
) -> dict:
    """Queue a batch run and return immediately; poll ``/jobs/{job_id}``."""
    try:
        require_permission(gate, body.tenant_id, actor, GENERATE_ACTION)
    except UnauthorizedError as exc:
        raise HTTPException(status_code=403, detail=exc.message)

    job_id = jobs.submit_statement_job(
        lambda: orchestrator, body.to_batch_request(), actor, background_tasks
    )
    return jobs.get_job_status(job_id)


@router.get("/jobs", response_model=List[JobResponse])
def list_batch_jobs() -> list[dict]:
    """List background batch jobs in submission order."""
    return jobs.list_jobs()


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_batch_job(job_id: str) -> dict:
    job = jobs.get_job_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("/jobs/{job_id}/cancel", response_model=JobResponse)
def cancel_batch_job(job_id: str) -> dict:
    job = jobs.cancel_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


# ── Statements ──────────────────────────────────────────────────────


@router.get("/", response_model=List[StatementResponse])
def list_statements(
    tenant_id: UUID = Query(...),
    period_start: Optional[date] = Query(None),
    period_end: Optional[date] = Query(None),
    author_id: Optional[UUID] = Query(None),
    delivery_failed: Optional[bool] = Query(
        None, description="Only statements whose last delivery failed (true) or did not (false)"
    ),
    db: Session = Depends(get_db),
) -> list[Statement]:
    """List a tenant's statements, newest period first."""
    return RoyaltyRepository(db).list_statements(
        tenant_id,
        period_start=period_start,
        period_end=period_end,
        author_id=author_id,
        delivery_failed=delivery_failed,
    )


@router.get("/{statement_id}", response_model=StatementDetailResponse)
def get_statement(
    statement_id: UUID,
    tenant_id: UUID = Query(...),
    db: Session = Depends(get_db),
) -> Statement:
    return _get_statement_or_404(db, tenant_id, statement_id)


@router.get("/{statement_id}/download-url", response_model=DownloadUrlResponse)
def get_download_url(
    statement_id: UUID,
    tenant_id: UUID = Query(...),
    db: Session = Depends(get_db),
    artifact_store: ArtifactStore = Depends(get_artifact_store),
) -> dict:
    """Return a short-lived link to the statement PDF."""
    statement = _get_statement_or_404(db, tenant_id, statement_id)
    if not statement.artifact_key:
        raise HTTPException(status_code=409, detail="Statement document not generated yet")

    author = RoyaltyRepository(db).get_author(tenant_id, statement.author_id)
    filename = statement_pdf_filename(
        format_period_label(statement.period_start, statement.period_end),
        author.name if author else "author",
    )
    try:
        url = artifact_store.presigned_get(
            statement.artifact_key, filename, settings.presigned_url_ttl_seconds
        )
    except ArtifactError as exc:
        logger.exception("Presign failed for statement %s", statement_id)
        raise HTTPException(status_code=502, detail=exc.message)

    return {"url": url, "expires_in": settings.presigned_url_ttl_seconds}


@router.post("/{statement_id}/resend", response_model=DeliveryResponse)
def resend_statement(
    statement_id: UUID,
    tenant_id: UUID = Query(...),
    actor: Actor = Depends(get_actor),
    gate: PermissionGate = Depends(get_permission_gate),
    db: Session = Depends(get_db),
    artifact_store: ArtifactStore = Depends(get_artifact_store),
    transport: EmailTransport = Depends(get_email_transport),
):
    """Manually (re)send a statement email, even if it was sent before."""
    service = StatementDeliveryService(RoyaltyRepository(db), artifact_store, transport)
    try:
        require_permission(gate, tenant_id, actor, RESEND_ACTION)
        outcome = service.resend(tenant_id, statement_id)
    except UnauthorizedError as exc:
        raise HTTPException(status_code=403, detail=exc.message)
    except DeliveryValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.message)
    except (DeliveryError, ArtifactError) as exc:
        logger.exception("Resend failed for statement %s", statement_id)
        raise HTTPException(status_code=502, detail=exc.message)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=503, detail=exc.message)

    return outcome
