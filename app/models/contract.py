"""Contract and rate tier models: the terms royalties are computed from."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base

CONTRACT_FORMATS = ("physical", "ebook", "audiobook")


class Contract(Base):
    """Royalty contract between one author and one title.

    ``advance_recouped`` only ever grows.  It is advanced by the statement
    batch in the same transaction that inserts the statement.
    """

    __tablename__ = "contracts"

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
    title_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("titles.id"),
        nullable=False,
    )
    advance_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0"),
    )
    advance_paid: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0"),
    )
    advance_recouped: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0"),
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="active",
        comment="active | terminated | suspended",
    )
    tier_calculation_mode: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="period",
        comment="period | lifetime",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        onupdate=func.now(),
    )

    # -- Relationships --
    tiers: Mapped[list[RateTier]] = relationship(
        "RateTier",
        back_populates="contract",
        order_by="RateTier.min_quantity",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "author_id", "title_id", name="uq_contract_tenant_author_title"
        ),
        CheckConstraint("advance_amount >= 0", name="ck_contract_advance_nonnegative"),
        CheckConstraint(
            "advance_recouped >= 0", name="ck_contract_recouped_nonnegative"
        ),
        Index("ix_contract_tenant_author_status", "tenant_id", "author_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Contract(id={self.id!r}, author_id={self.author_id!r}, "
            f"status={self.status!r})>"
        )


class RateTier(Base):
    """One quantity band ``[min_quantity, max_quantity)`` of a format's schedule."""

    __tablename__ = "contract_tiers"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )
    contract_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("contracts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    format: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="physical | ebook | audiobook",
    )
    min_quantity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    max_quantity: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="NULL = unbounded; must be the last tier of the format",
    )
    rate: Mapped[Decimal] = mapped_column(
        Numeric(5, 4),
        nullable=False,
    )

    # -- Relationships --
    contract: Mapped[Contract] = relationship(
        "Contract",
        back_populates="tiers",
    )

    def __repr__(self) -> str:
        return (
            f"<RateTier(format={self.format!r}, min={self.min_quantity}, "
            f"max={self.max_quantity}, rate={self.rate})>"
        )
