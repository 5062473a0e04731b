"""Sale and return records: immutable unit-level inputs to royalties."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class SaleRecord(Base):
    """Units of one title/format sold in a single transaction."""

    __tablename__ = "sales"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id"),
        nullable=False,
    )
    title_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("titles.id"),
        nullable=False,
    )
    format: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    quantity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    unit_price: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )
    channel: Mapped[Optional[str]] = mapped_column(
        String(50),
        comment="retail | ebook_store | distributor | direct",
    )
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_sales_tenant_title_date", "tenant_id", "title_id", "occurred_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SaleRecord(format={self.format!r}, quantity={self.quantity}, "
            f"total_amount={self.total_amount})>"
        )


class ReturnRecord(Base):
    """Units returned.  Only ``approved`` returns reduce royalties."""

    __tablename__ = "returns"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id"),
        nullable=False,
    )
    title_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("titles.id"),
        nullable=False,
    )
    original_sale_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("sales.id", ondelete="SET NULL"),
        nullable=True,
    )
    format: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    quantity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    unit_price: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )
    reason: Mapped[Optional[str]] = mapped_column(
        Text,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        comment="pending | approved | rejected",
    )
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_returns_tenant_title_date", "tenant_id", "title_id", "occurred_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ReturnRecord(format={self.format!r}, quantity={self.quantity}, "
            f"status={self.status!r})>"
        )
