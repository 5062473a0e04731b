"""Immutable value types for royalty calculation.

The calculation is built bottom-up as a tree of frozen dataclasses:
``TierBreakdown`` -> ``FormatBreakdown`` -> ``StatementCalculation``.
Nothing in the tree is mutated after construction; the whole tree is
serialized once into the statement's ``calculations`` JSON column.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from app.core.exceptions import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(value: Any) -> Decimal:
    """Coerce a DB/JSON value to ``Decimal`` without going through float."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_money(value: Decimal) -> Decimal:
    """Round to the currency's minor unit (2 places, half-up)."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _money(value: Decimal) -> str:
    return str(value)


@dataclass(frozen=True)
class Period:
    """A statement period given as calendar days, both inclusive.

    At the instant level it covers ``[start 00:00, (end + 1 day) 00:00)``.
    """

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValidationError(
                f"Period end {self.end} is before period start {self.start}",
                period_start=str(self.start),
                period_end=str(self.end),
            )

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.start, time.min)

    @property
    def ends_before(self) -> datetime:
        return datetime.combine(self.end + timedelta(days=1), time.min)

    def contains(self, moment: datetime) -> bool:
        return self.starts_at <= moment < self.ends_before

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class TierBand:
    """One resolved tier: units in ``[min_quantity, max_quantity)`` earn ``rate``."""

    min_quantity: int
    max_quantity: Optional[int]
    rate: Decimal


@dataclass(frozen=True)
class NetSales:
    """Gross sales and approved returns for one format in one period."""

    format: str
    gross_quantity: int = 0
    gross_revenue: Decimal = ZERO
    returns_quantity: int = 0
    returns_amount: Decimal = ZERO

    @property
    def net_quantity(self) -> int:
        return self.gross_quantity - self.returns_quantity

    @property
    def net_revenue(self) -> Decimal:
        return self.gross_revenue - self.returns_amount


@dataclass(frozen=True)
class TierBreakdown:
    tier_min_quantity: int
    tier_max_quantity: Optional[int]
    tier_rate: Decimal
    quantity_in_tier: int
    royalty_earned: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier_min_quantity": self.tier_min_quantity,
            "tier_max_quantity": self.tier_max_quantity,
            "tier_rate": str(self.tier_rate),
            "quantity_in_tier": self.quantity_in_tier,
            "royalty_earned": _money(self.royalty_earned),
        }


@dataclass(frozen=True)
class FormatBreakdown:
    format: str
    gross_quantity: int
    gross_revenue: Decimal
    returns_quantity: int
    returns_amount: Decimal
    net_quantity: int
    net_revenue: Decimal
    tier_breakdowns: tuple[TierBreakdown, ...]
    format_royalty: Decimal
    lifetime_quantity_before: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "format": self.format,
            "gross_quantity": self.gross_quantity,
            "gross_revenue": _money(self.gross_revenue),
            "returns_quantity": self.returns_quantity,
            "returns_amount": _money(self.returns_amount),
            "net_quantity": self.net_quantity,
            "net_revenue": _money(self.net_revenue),
            "tier_breakdowns": [tb.to_dict() for tb in self.tier_breakdowns],
            "format_royalty": _money(self.format_royalty),
        }
        if self.lifetime_quantity_before is not None:
            data["lifetime"] = {
                "quantity_before": self.lifetime_quantity_before,
                "quantity_after": self.lifetime_quantity_before + self.net_quantity,
            }
        return data


@dataclass(frozen=True)
class AdvanceRecoupment:
    original_advance: Decimal
    previously_recouped: Decimal
    this_periods_recoupment: Decimal
    remaining_advance: Decimal

    @property
    def remaining_before(self) -> Decimal:
        return self.original_advance - self.previously_recouped

    def to_dict(self) -> dict[str, str]:
        return {
            "original_advance": _money(self.original_advance),
            "previously_recouped": _money(self.previously_recouped),
            "this_periods_recoupment": _money(self.this_periods_recoupment),
            "remaining_advance": _money(self.remaining_advance),
        }


@dataclass(frozen=True)
class StatementCalculation:
    period: Period
    format_breakdowns: tuple[FormatBreakdown, ...]
    gross_royalty: Decimal
    advance_recoupment: AdvanceRecoupment
    net_payable: Decimal
    returns_deduction: Decimal = field(default=ZERO)

    @property
    def recouped_after(self) -> Decimal:
        """The contract's ``advance_recouped`` once this statement is persisted."""
        return (
            self.advance_recoupment.previously_recouped
            + self.advance_recoupment.this_periods_recoupment
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": self.period.to_dict(),
            "format_breakdowns": [fb.to_dict() for fb in self.format_breakdowns],
            "returns_deduction": _money(self.returns_deduction),
            "gross_royalty": _money(self.gross_royalty),
            "advance_recoupment": self.advance_recoupment.to_dict(),
            "net_payable": _money(self.net_payable),
        }
