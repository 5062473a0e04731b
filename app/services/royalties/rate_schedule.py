"""Rate schedule resolution and validation.

A format's schedule is a list of quantity bands ``[min, max)`` that must
start at zero, touch end-to-end without gaps or overlaps, and finish with
exactly one unbounded band.  Anything else is a data-integrity fault in the
contract and raises ``ScheduleError``; the batch treats that as fatal for
the one author whose contract it is.
"""

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal
from typing import Any, Iterable, Sequence

from app.core.exceptions import ScheduleError
from app.core.logging import get_logger
from app.services.royalties.types import TierBand, to_decimal

logger = get_logger(__name__)

RATE_MIN = Decimal("0")
RATE_MAX = Decimal("1")


def to_band(tier: Any) -> TierBand:
    """Convert a tier-like object (ORM row or stand-in) into a ``TierBand``."""
    return TierBand(
        min_quantity=int(tier.min_quantity),
        max_quantity=None if tier.max_quantity is None else int(tier.max_quantity),
        rate=to_decimal(tier.rate),
    )


def validate_schedule(
    format: str,
    tiers: Sequence[TierBand],
    contract_id: Any = None,
) -> tuple[TierBand, ...]:
    """Sort *tiers* by ``min_quantity`` and check the schedule invariants.

    Returns:
        The tiers in ascending order.

    Raises:
        ScheduleError: if the schedule is empty, does not start at zero,
            has an empty band, a gap or overlap, a rate outside [0, 1], or
            does not end with a single unbounded band.
    """

    def fail(reason: str) -> ScheduleError:
        return ScheduleError(
            f"Invalid {format} rate schedule for contract {contract_id}: {reason}",
            contract_id=contract_id,
            format=format,
        )

    if not tiers:
        raise fail("no tiers defined")

    ordered = tuple(sorted(tiers, key=lambda t: t.min_quantity))

    if ordered[0].min_quantity != 0:
        raise fail(f"first tier starts at {ordered[0].min_quantity}, expected 0")

    for index, tier in enumerate(ordered):
        if not RATE_MIN <= tier.rate <= RATE_MAX:
            raise fail(f"rate {tier.rate} outside [0, 1]")

        is_last = index == len(ordered) - 1
        if tier.max_quantity is None:
            if not is_last:
                raise fail(
                    f"unbounded tier starting at {tier.min_quantity} is not the last tier"
                )
            continue

        if tier.max_quantity <= tier.min_quantity:
            raise fail(
                f"tier {tier.min_quantity}-{tier.max_quantity} has no capacity"
            )
        if is_last:
            raise fail(f"last tier is capped at {tier.max_quantity}; expected unbounded")

        following = ordered[index + 1]
        if following.min_quantity < tier.max_quantity:
            raise fail(
                f"tier starting at {following.min_quantity} overlaps "
                f"tier {tier.min_quantity}-{tier.max_quantity}"
            )
        if following.min_quantity > tier.max_quantity:
            raise fail(
                f"gap between {tier.max_quantity} and {following.min_quantity}"
            )

    return ordered


def group_by_format(tiers: Iterable[Any]) -> dict[str, list[TierBand]]:
    grouped: dict[str, list[TierBand]] = defaultdict(list)
    for tier in tiers:
        grouped[tier.format].append(to_band(tier))
    return dict(grouped)


class RateScheduleResolver:
    """Loads a contract's tiers through the repository and validates them."""

    def __init__(self, repository) -> None:
        self.repository = repository

    def resolve(self, contract: Any, format: str) -> tuple[TierBand, ...]:
        """Return the validated, ordered schedule for one format."""
        schedules = group_by_format(
            self.repository.list_rate_tiers(contract.tenant_id, contract.id)
        )
        return validate_schedule(format, schedules.get(format, []), contract.id)

    def resolve_all(self, contract: Any) -> dict[str, tuple[TierBand, ...]]:
        """Return every format's validated schedule for *contract*."""
        schedules = group_by_format(
            self.repository.list_rate_tiers(contract.tenant_id, contract.id)
        )
        if not schedules:
            raise ScheduleError(
                f"Contract {contract.id} has no rate tiers",
                contract_id=contract.id,
            )

        resolved = {
            fmt: validate_schedule(fmt, bands, contract.id)
            for fmt, bands in schedules.items()
        }
        logger.debug(
            "Resolved schedules for contract %s: %s",
            contract.id,
            {fmt: len(bands) for fmt, bands in resolved.items()},
        )
        return resolved
