"""Pydantic schemas for statement batch runs, statements and delivery."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.services.statements.orchestrator import AuthorOutcome, AuthorStage, BatchRequest


class BatchRunRequest(BaseModel):
    """Request body for a statement batch run."""

    tenant_id: UUID
    period_start: date = Field(..., description="First day of the period (inclusive)")
    period_end: date = Field(..., description="Last day of the period (inclusive)")
    author_ids: list[UUID] = Field(
        default_factory=list,
        description="Authors to generate for; empty = every author with an active contract",
    )
    send_email: bool = Field(False, description="Email each statement once generated")

    def to_batch_request(self) -> BatchRequest:
        return BatchRequest(
            tenant_id=self.tenant_id,
            period_start=self.period_start,
            period_end=self.period_end,
            author_ids=list(self.author_ids),
            send_email=self.send_email,
        )


class AuthorResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    author_id: UUID
    success: bool
    outcome: AuthorOutcome
    stage: AuthorStage
    statement_id: Optional[UUID] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_code: Optional[str] = None
    failed_stage: Optional[AuthorStage] = None
    delivered: bool = False


class BatchReportResponse(BaseModel):
    """Per-author outcomes of one batch run, sorted by author id."""

    model_config = ConfigDict(from_attributes=True)

    tenant_id: UUID
    period_start: date
    period_end: date
    generated_at: datetime
    cancelled: bool = False
    total: int
    succeeded: int
    failed: int
    delivered: int
    results: list[AuthorResultResponse]


class StatementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    author_id: UUID
    contract_id: UUID
    period_start: date
    period_end: date
    total_royalty_earned: Decimal
    recoupment: Decimal
    net_payable: Decimal
    status: str
    artifact_key: Optional[str] = None
    email_sent_at: Optional[datetime] = None
    delivery_error: Optional[str] = None
    delivery_failed_at: Optional[datetime] = None
    generated_by: Optional[str] = None
    created_at: Optional[datetime] = None


class StatementDetailResponse(StatementResponse):
    """Statement plus its full calculation breakdown."""

    calculations: dict[str, Any]


class DeliveryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    success: bool
    message_id: Optional[str] = None
    attempts: int
    recipient: str
    recorded: bool = False


class DownloadUrlResponse(BaseModel):
    url: str
    expires_in: int


class JobResponse(BaseModel):
    job_id: str
    status: str
    tenant_id: str
    period_start: str
    period_end: str
    requested_by: Optional[str] = None
    submitted_at: str
    total: Optional[int] = None
    succeeded: Optional[int] = None
    failed: Optional[int] = None
    results: Optional[list[dict[str, Any]]] = None
    error: Optional[str] = None
