"""Tenant-scoped data access for statement generation.

Every method takes ``tenant_id`` and filters on it; the services above this
layer never re-derive tenant isolation.  Connectivity failures are
translated to ``RepositoryUnavailableError`` so the batch can tell an
unreachable store apart from one author's bad data.
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Iterator, NamedTuple, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session

from app.core.exceptions import (
    ConcurrentRecoupmentError,
    DuplicateStatementError,
    RepositoryUnavailableError,
)
from app.core.logging import get_logger
from app.models.author import Author
from app.models.contract import Contract, RateTier
from app.models.sales import ReturnRecord, SaleRecord
from app.models.statement import Statement
from app.models.tenant import Tenant
from app.models.title import Title

logger = get_logger(__name__)


class FormatTotals(NamedTuple):
    """Summed units and amount for one format."""

    quantity: int
    amount: Decimal


class RoyaltyRepository:
    """SQLAlchemy-backed repository; one instance per session."""

    def __init__(self, db: Session) -> None:
        self.db = db

    # ── Reads ────────────────────────────────────────────────────────

    def get_tenant(self, tenant_id: uuid.UUID) -> Optional[Tenant]:
        with self._guard():
            return self.db.get(Tenant, tenant_id)

    def get_author(self, tenant_id: uuid.UUID, author_id: uuid.UUID) -> Optional[Author]:
        with self._guard():
            return self.db.scalars(
                select(Author).where(
                    Author.id == author_id,
                    Author.tenant_id == tenant_id,
                )
            ).first()

    def get_title(self, tenant_id: uuid.UUID, title_id: uuid.UUID) -> Optional[Title]:
        with self._guard():
            return self.db.scalars(
                select(Title).where(Title.id == title_id, Title.tenant_id == tenant_id)
            ).first()

    def list_eligible_author_ids(self, tenant_id: uuid.UUID) -> list[uuid.UUID]:
        """Authors holding at least one active contract in the tenant."""
        with self._guard():
            rows = self.db.scalars(
                select(Contract.author_id)
                .where(Contract.tenant_id == tenant_id, Contract.status == "active")
                .distinct()
            ).all()
        return sorted(rows, key=str)

    def list_active_contracts(
        self, tenant_id: uuid.UUID, author_id: uuid.UUID
    ) -> list[Contract]:
        with self._guard():
            return list(
                self.db.scalars(
                    select(Contract)
                    .where(
                        Contract.tenant_id == tenant_id,
                        Contract.author_id == author_id,
                        Contract.status == "active",
                    )
                    .order_by(Contract.created_at, Contract.id)
                ).all()
            )

    def get_contract(
        self, tenant_id: uuid.UUID, contract_id: uuid.UUID
    ) -> Optional[Contract]:
        """Fresh read of one contract, overwriting any copy already in the session."""
        with self._guard():
            return self.db.scalars(
                select(Contract)
                .where(Contract.id == contract_id, Contract.tenant_id == tenant_id)
                .execution_options(populate_existing=True)
            ).first()

    def list_rate_tiers(
        self, tenant_id: uuid.UUID, contract_id: uuid.UUID
    ) -> list[RateTier]:
        with self._guard():
            return list(
                self.db.scalars(
                    select(RateTier)
                    .join(Contract, RateTier.contract_id == Contract.id)
                    .where(
                        RateTier.contract_id == contract_id,
                        Contract.tenant_id == tenant_id,
                    )
                    .order_by(RateTier.format, RateTier.min_quantity)
                ).all()
            )

    def sales_totals_by_format(
        self,
        tenant_id: uuid.UUID,
        title_id: uuid.UUID,
        starts_at: Optional[datetime],
        ends_before: datetime,
    ) -> dict[str, FormatTotals]:
        """Sum sales per format with ``starts_at <= occurred_at < ends_before``.

        ``starts_at=None`` sums everything before ``ends_before``.
        """
        query = select(
            SaleRecord.format,
            func.coalesce(func.sum(SaleRecord.quantity), 0),
            func.coalesce(func.sum(SaleRecord.total_amount), 0),
        ).where(
            SaleRecord.tenant_id == tenant_id,
            SaleRecord.title_id == title_id,
            SaleRecord.occurred_at < ends_before,
        )
        if starts_at is not None:
            query = query.where(SaleRecord.occurred_at >= starts_at)
        return self._totals(query.group_by(SaleRecord.format))

    def approved_return_totals_by_format(
        self,
        tenant_id: uuid.UUID,
        title_id: uuid.UUID,
        starts_at: Optional[datetime],
        ends_before: datetime,
    ) -> dict[str, FormatTotals]:
        """Same as ``sales_totals_by_format`` for returns with status=approved."""
        query = select(
            ReturnRecord.format,
            func.coalesce(func.sum(ReturnRecord.quantity), 0),
            func.coalesce(func.sum(ReturnRecord.total_amount), 0),
        ).where(
            ReturnRecord.tenant_id == tenant_id,
            ReturnRecord.title_id == title_id,
            ReturnRecord.status == "approved",
            ReturnRecord.occurred_at < ends_before,
        )
        if starts_at is not None:
            query = query.where(ReturnRecord.occurred_at >= starts_at)
        return self._totals(query.group_by(ReturnRecord.format))

    def find_statement(
        self,
        tenant_id: uuid.UUID,
        contract_id: uuid.UUID,
        period_start: date,
        period_end: date,
    ) -> Optional[Statement]:
        with self._guard():
            return self.db.scalars(
                select(Statement).where(
                    Statement.tenant_id == tenant_id,
                    Statement.contract_id == contract_id,
                    Statement.period_start == period_start,
                    Statement.period_end == period_end,
                )
            ).first()

    def get_statement(
        self, tenant_id: uuid.UUID, statement_id: uuid.UUID
    ) -> Optional[Statement]:
        with self._guard():
            return self.db.scalars(
                select(Statement).where(
                    Statement.id == statement_id,
                    Statement.tenant_id == tenant_id,
                )
            ).first()

    def list_statements(
        self,
        tenant_id: uuid.UUID,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
        author_id: Optional[uuid.UUID] = None,
        delivery_failed: Optional[bool] = None,
    ) -> list[Statement]:
        query = select(Statement).where(Statement.tenant_id == tenant_id)
        if delivery_failed is not None:
            query = query.where(
                Statement.delivery_error.is_not(None)
                if delivery_failed
                else Statement.delivery_error.is_(None)
            )
        if period_start is not None:
            query = query.where(Statement.period_start >= period_start)
        if period_end is not None:
            query = query.where(Statement.period_end <= period_end)
        if author_id is not None:
            query = query.where(Statement.author_id == author_id)
        with self._guard():
            return list(
                self.db.scalars(
                    query.order_by(Statement.period_start.desc(), Statement.created_at)
                ).all()
            )

    # ── Writes ───────────────────────────────────────────────────────

    def insert_statement(
        self,
        statement: Statement,
        expected_recouped: Decimal,
        new_recouped: Decimal,
    ) -> Statement:
        """Insert *statement* and advance its contract's recouped advance.

        Both happen in one transaction.  The contract update is conditional
        on ``advance_recouped`` still equalling *expected_recouped*; if some
        other writer moved it, nothing is written.
        """
        with self._guard():
            try:
                result = self.db.execute(
                    update(Contract)
                    .where(
                        Contract.id == statement.contract_id,
                        Contract.tenant_id == statement.tenant_id,
                        Contract.advance_recouped == expected_recouped,
                    )
                    .values(advance_recouped=new_recouped, updated_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    self.db.rollback()
                    raise ConcurrentRecoupmentError(
                        f"Contract {statement.contract_id} advance_recouped changed "
                        f"from {expected_recouped} before the statement was saved",
                        contract_id=str(statement.contract_id),
                    )

                self.db.add(statement)
                self.db.flush()
                self.db.commit()
            except IntegrityError as exc:
                self.db.rollback()
                raise DuplicateStatementError(
                    f"Statement already exists for contract {statement.contract_id} "
                    f"and period {statement.period_start}..{statement.period_end}"
                ) from exc

        logger.info(
            "Statement inserted: id=%s contract=%s recouped %s -> %s",
            statement.id,
            statement.contract_id,
            expected_recouped,
            new_recouped,
        )
        return statement

    def attach_artifact(
        self, tenant_id: uuid.UUID, statement_id: uuid.UUID, artifact_key: str
    ) -> None:
        """Record the stored document key and finalize the statement."""
        with self._guard():
            self.db.execute(
                update(Statement)
                .where(
                    Statement.id == statement_id,
                    Statement.tenant_id == tenant_id,
                    Statement.artifact_key.is_(None),
                )
                .values(
                    artifact_key=artifact_key,
                    status="finalized",
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()

    def mark_email_sent(
        self, tenant_id: uuid.UUID, statement_id: uuid.UUID, sent_at: datetime
    ) -> bool:
        """Set ``email_sent_at`` unless already set and clear any recorded
        delivery failure.  Returns True if ``email_sent_at`` was written."""
        with self._guard():
            result = self.db.execute(
                update(Statement)
                .where(
                    Statement.id == statement_id,
                    Statement.tenant_id == tenant_id,
                    Statement.email_sent_at.is_(None),
                )
                .values(email_sent_at=sent_at, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            self.db.execute(
                update(Statement)
                .where(
                    Statement.id == statement_id,
                    Statement.tenant_id == tenant_id,
                    Statement.delivery_error.is_not(None),
                )
                .values(delivery_error=None, delivery_failed_at=None)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        return result.rowcount == 1

    def record_delivery_failure(
        self, tenant_id: uuid.UUID, statement_id: uuid.UUID, error: str, failed_at: datetime
    ) -> None:
        """Keep the last terminal delivery failure on the statement for follow-up."""
        with self._guard():
            self.db.execute(
                update(Statement)
                .where(Statement.id == statement_id, Statement.tenant_id == tenant_id)
                .values(
                    delivery_error=error[:1000],
                    delivery_failed_at=failed_at,
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()

    # ── Private helpers ──────────────────────────────────────────────

    def _totals(self, query) -> dict[str, FormatTotals]:
        with self._guard():
            rows = self.db.execute(query).all()
        return {
            fmt: FormatTotals(int(quantity or 0), Decimal(str(amount or 0)))
            for fmt, quantity, amount in rows
        }

    @contextmanager
    def _guard(self) -> Iterator[None]:
        try:
            yield
        except (OperationalError, InterfaceError) as exc:
            self.db.rollback()
            logger.error("Data store unavailable: %s", exc)
            raise RepositoryUnavailableError(
                "Data store unavailable", reason=str(exc.orig or exc)
            ) from exc
