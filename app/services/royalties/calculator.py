"""Tiered royalty calculation with advance recoupment.

The module-level functions are *pure*: they take net figures, tier bands
and advance balances and return immutable breakdowns, so they need no
database session and recompute identically from the same snapshot.
``RoyaltyCalculator`` wires them to the aggregator and the schedule
resolver for one contract and period.

Revenue is spread across tiers by the period's average unit price
(``net_revenue / net_quantity``) rather than by each sale's own price, so
the result depends only on aggregate net quantity and revenue.

All money is ``Decimal``.  Rounding to cents happens once per tier
royalty and once for net payable, never on intermediate ratios.
"""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence

from app.core.exceptions import CalculationError, ScheduleError
from app.core.logging import get_logger
from app.services.royalties.aggregator import NetSalesAggregator
from app.services.royalties.rate_schedule import RateScheduleResolver
from app.services.royalties.types import (
    ZERO,
    AdvanceRecoupment,
    FormatBreakdown,
    NetSales,
    Period,
    StatementCalculation,
    TierBand,
    TierBreakdown,
    quantize_money,
    to_decimal,
)

logger = get_logger(__name__)

FORMAT_ORDER = ("physical", "ebook", "audiobook")


def _format_sort_key(fmt: str) -> tuple[int, str]:
    return (FORMAT_ORDER.index(fmt) if fmt in FORMAT_ORDER else len(FORMAT_ORDER), fmt)


# ── Pure calculation ────────────────────────────────────────────────


def apply_tiers(
    net_sales: NetSales,
    tiers: Sequence[TierBand],
    lifetime_before: Optional[int] = None,
) -> FormatBreakdown:
    """Apply a validated tier schedule to one format's net sales.

    For each tier, ascending::

        quantity_in_tier = max(0, min(end, tier_max ?? end) - max(start, tier_min))
        royalty_earned   = round(quantity_in_tier * avg_unit_price * rate)

    where ``start`` is 0 in period mode (or the lifetime net units sold
    before the period in lifetime mode) and ``end = start + net_quantity``.
    Allocation is clamped to the units still unallocated, so the tiers
    partition ``net_quantity`` exactly.

    Raises:
        CalculationError: net quantity or net revenue is negative (returns
            exceed recorded sales).
    """
    net_quantity = net_sales.net_quantity
    net_revenue = net_sales.net_revenue

    if net_quantity < 0:
        raise CalculationError(
            f"Net quantity for {net_sales.format} is negative ({net_quantity}): "
            f"{net_sales.returns_quantity} units returned against "
            f"{net_sales.gross_quantity} sold",
            format=net_sales.format,
        )
    if net_revenue < 0:
        raise CalculationError(
            f"Net revenue for {net_sales.format} is negative ({net_revenue})",
            format=net_sales.format,
        )

    average_unit_price = net_revenue / net_quantity if net_quantity else ZERO

    start = lifetime_before or 0
    end = start + net_quantity
    remaining = net_quantity

    breakdowns: list[TierBreakdown] = []
    for tier in sorted(tiers, key=lambda t: t.min_quantity):
        if remaining <= 0:
            break

        ceiling = end if tier.max_quantity is None else tier.max_quantity
        in_tier = max(0, min(end, ceiling) - max(start, tier.min_quantity))
        in_tier = min(in_tier, remaining)
        if in_tier == 0:
            continue

        revenue_in_tier = in_tier * average_unit_price
        breakdowns.append(
            TierBreakdown(
                tier_min_quantity=tier.min_quantity,
                tier_max_quantity=tier.max_quantity,
                tier_rate=tier.rate,
                quantity_in_tier=in_tier,
                royalty_earned=quantize_money(revenue_in_tier * tier.rate),
            )
        )
        remaining -= in_tier

    return FormatBreakdown(
        format=net_sales.format,
        gross_quantity=net_sales.gross_quantity,
        gross_revenue=net_sales.gross_revenue,
        returns_quantity=net_sales.returns_quantity,
        returns_amount=net_sales.returns_amount,
        net_quantity=net_quantity,
        net_revenue=net_revenue,
        tier_breakdowns=tuple(breakdowns),
        format_royalty=sum((tb.royalty_earned for tb in breakdowns), ZERO),
        lifetime_quantity_before=lifetime_before,
    )


def calculate_recoupment(
    advance_amount: Any,
    advance_recouped: Any,
    gross_royalty: Decimal,
) -> AdvanceRecoupment:
    """Recoup as much of the outstanding advance as this period's royalty covers.

    ``this_periods_recoupment = min(gross_royalty, advance - recouped)``.
    Both the recoupment and the remaining advance are non-negative by
    construction.

    Raises:
        CalculationError: the contract already shows more recouped than
            advanced, or a negative advance.
    """
    original = to_decimal(advance_amount)
    recouped = to_decimal(advance_recouped)

    if original < 0 or recouped < 0:
        raise CalculationError(
            f"Advance figures must be non-negative (advance={original}, recouped={recouped})"
        )
    if recouped > original:
        raise CalculationError(
            f"Recouped advance {recouped} exceeds advance amount {original}"
        )

    remaining_before = original - recouped
    this_period = min(gross_royalty, remaining_before)
    return AdvanceRecoupment(
        original_advance=original,
        previously_recouped=recouped,
        this_periods_recoupment=this_period,
        remaining_advance=remaining_before - this_period,
    )


def build_statement_calculation(
    period: Period,
    format_breakdowns: Iterable[FormatBreakdown],
    advance_amount: Any,
    advance_recouped: Any,
) -> StatementCalculation:
    """Sum format royalties, apply recoupment and assemble the statement tree."""
    ordered = tuple(sorted(format_breakdowns, key=lambda fb: _format_sort_key(fb.format)))
    gross_royalty = sum((fb.format_royalty for fb in ordered), ZERO)
    recoupment = calculate_recoupment(advance_amount, advance_recouped, gross_royalty)

    return StatementCalculation(
        period=period,
        format_breakdowns=ordered,
        gross_royalty=gross_royalty,
        advance_recoupment=recoupment,
        net_payable=quantize_money(gross_royalty - recoupment.this_periods_recoupment),
        returns_deduction=sum((fb.returns_amount for fb in ordered), ZERO),
    )


# ── Service ─────────────────────────────────────────────────────────


class RoyaltyCalculator:
    """Calculates one contract's statement for a period."""

    def __init__(
        self,
        aggregator: NetSalesAggregator,
        resolver: RateScheduleResolver,
    ) -> None:
        self.aggregator = aggregator
        self.resolver = resolver

    @classmethod
    def from_repository(cls, repository) -> "RoyaltyCalculator":
        return cls(NetSalesAggregator(repository), RateScheduleResolver(repository))

    def resolve_contract(self, tenant_id: uuid.UUID, author_id: uuid.UUID) -> Any:
        """Return the author's active contract in the tenant.

        With several active contracts the earliest one (by ``created_at``,
        then id) is used, the same contract on every run.

        Raises:
            CalculationError: the author is unknown or has no active contract.
        """
        repository = self.aggregator.repository
        author = repository.get_author(tenant_id, author_id)
        if author is None:
            raise CalculationError(
                f"Author {author_id} not found in tenant {tenant_id}",
                author_id=str(author_id),
            )

        contracts = repository.list_active_contracts(tenant_id, author_id)
        if not contracts:
            raise CalculationError(
                f"No active contract found for author {author_id} in tenant {tenant_id}",
                author_id=str(author_id),
            )
        if len(contracts) > 1:
            logger.warning(
                "Author %s has %d active contracts; using %s",
                author_id,
                len(contracts),
                contracts[0].id,
            )
        return contracts[0]

    def calculate(
        self,
        tenant_id: uuid.UUID,
        contract: Any,
        period: Period,
    ) -> StatementCalculation:
        """Calculate the full statement tree for *contract* over *period*.

        Formats are the union of those with a rate schedule and those with
        activity in the period.  Activity in a format with no schedule is a
        ``ScheduleError``.
        """
        schedules = self.resolver.resolve_all(contract)
        activity = self.aggregator.aggregate(tenant_id, contract.title_id, period)
        lifetime_mode = getattr(contract, "tier_calculation_mode", "period") == "lifetime"

        breakdowns: list[FormatBreakdown] = []
        for fmt in sorted(set(schedules) | set(activity), key=_format_sort_key):
            if fmt not in schedules:
                raise ScheduleError(
                    f"Contract {contract.id} has {fmt} sales but no {fmt} rate tiers",
                    contract_id=contract.id,
                    format=fmt,
                )

            lifetime_before = None
            if lifetime_mode:
                lifetime_before = self.aggregator.lifetime_net_quantity_before(
                    tenant_id, contract.title_id, fmt, period.starts_at
                )

            breakdowns.append(
                apply_tiers(
                    activity.get(fmt, NetSales(fmt)),
                    schedules[fmt],
                    lifetime_before,
                )
            )

        calculation = build_statement_calculation(
            period,
            breakdowns,
            contract.advance_amount,
            contract.advance_recouped,
        )

        logger.info(
            "Calculated contract=%s period=%s..%s gross=%s recoup=%s net=%s",
            contract.id,
            period.start,
            period.end,
            calculation.gross_royalty,
            calculation.advance_recoupment.this_periods_recoupment,
            calculation.net_payable,
        )
        return calculation
