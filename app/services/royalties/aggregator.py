"""Net sales aggregation per format and period.

Sums gross sales and approved returns for one title over a half-open
period.  A format with no activity aggregates to all-zero figures; that is
never an error.  Read-only.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from app.core.logging import get_logger
from app.services.royalties.types import ZERO, NetSales, Period

logger = get_logger(__name__)


class NetSalesAggregator:
    """Aggregates sale and return totals through the repository."""

    def __init__(self, repository) -> None:
        self.repository = repository

    def aggregate(
        self,
        tenant_id: uuid.UUID,
        title_id: uuid.UUID,
        period: Period,
    ) -> dict[str, NetSales]:
        """Return ``NetSales`` for every format with sales or approved returns."""
        sales = self.repository.sales_totals_by_format(
            tenant_id, title_id, period.starts_at, period.ends_before
        )
        returns = self.repository.approved_return_totals_by_format(
            tenant_id, title_id, period.starts_at, period.ends_before
        )

        result: dict[str, NetSales] = {}
        for fmt in sorted(set(sales) | set(returns)):
            sold = sales.get(fmt)
            returned = returns.get(fmt)
            result[fmt] = NetSales(
                format=fmt,
                gross_quantity=sold.quantity if sold else 0,
                gross_revenue=sold.amount if sold else ZERO,
                returns_quantity=returned.quantity if returned else 0,
                returns_amount=returned.amount if returned else ZERO,
            )

        logger.debug(
            "Aggregated title=%s period=%s..%s formats=%s",
            title_id,
            period.start,
            period.end,
            sorted(result),
        )
        return result

    def aggregate_format(
        self,
        tenant_id: uuid.UUID,
        title_id: uuid.UUID,
        format: str,
        period: Period,
    ) -> NetSales:
        """Net figures for a single format (all zero when there was no activity)."""
        return self.aggregate(tenant_id, title_id, period).get(format, NetSales(format))

    def lifetime_net_quantity_before(
        self,
        tenant_id: uuid.UUID,
        title_id: uuid.UUID,
        format: str,
        before: datetime,
    ) -> int:
        """Net units of *format* sold before *before*, for lifetime tier mode."""
        sales = self.repository.sales_totals_by_format(tenant_id, title_id, None, before)
        returns = self.repository.approved_return_totals_by_format(
            tenant_id, title_id, None, before
        )
        sold = sales[format].quantity if format in sales else 0
        returned = returns[format].quantity if format in returns else 0
        return max(sold - returned, 0)
