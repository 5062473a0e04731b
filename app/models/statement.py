"""Statement model: the persisted per-author, per-period royalty result."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class Statement(Base):
    """One royalty statement per (tenant, contract, period).

    Inserted as ``draft`` by the batch.  Attaching the rendered document
    finalizes it; ``email_sent_at`` is written once, on the first
    successful delivery.  A delivery that exhausts its retries leaves
    ``delivery_error`` set until a later send succeeds.
    """

    __tablename__ = "statements"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id"),
        nullable=False,
        index=True,
    )
    author_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("authors.id"),
        nullable=False,
        index=True,
    )
    contract_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("contracts.id"),
        nullable=False,
    )
    period_start: Mapped[date] = mapped_column(
        Date,
        nullable=False,
    )
    period_end: Mapped[date] = mapped_column(
        Date,
        nullable=False,
    )
    total_royalty_earned: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )
    recoupment: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )
    net_payable: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )
    calculations: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
    )
    artifact_key: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="draft",
        comment="draft | finalized",
    )
    email_sent_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        nullable=True,
    )
    delivery_error: Mapped[Optional[str]] = mapped_column(
        String(1000),
        nullable=True,
        comment="last terminal delivery failure; cleared by a successful send",
    )
    delivery_failed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        nullable=True,
    )
    generated_by: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        onupdate=func.now(),
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "contract_id",
            "period_start",
            "period_end",
            name="uq_statement_contract_period",
        ),
        Index("ix_statement_period", "period_start", "period_end"),
    )

    def __repr__(self) -> str:
        return (
            f"<Statement(id={self.id!r}, status={self.status!r}, "
            f"net_payable={self.net_payable})>"
        )
