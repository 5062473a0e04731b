"""Tests for rate schedule validation and resolution.

Pure unit tests: tiers are SimpleNamespace stand-ins and the repository is
a MagicMock.
"""

from __future__ import annotations

import uuid
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from app.core.exceptions import ScheduleError
from app.services.royalties.rate_schedule import (
    RateScheduleResolver,
    group_by_format,
    to_band,
    validate_schedule,
)
from app.services.royalties.types import TierBand


def _band(low, high, rate="0.10") -> TierBand:
    return TierBand(low, high, Decimal(rate))


def _tier(fmt, low, high, rate) -> SimpleNamespace:
    return SimpleNamespace(format=fmt, min_quantity=low, max_quantity=high, rate=Decimal(rate))


# ── Test: validate_schedule ─────────────────────────────────────────


class TestValidateSchedule:
    def test_valid_schedule_is_returned_sorted(self):
        tiers = [_band(50, None, "0.15"), _band(0, 50, "0.10")]
        result = validate_schedule("physical", tiers)
        assert [t.min_quantity for t in result] == [0, 50]

    def test_single_unbounded_tier_is_valid(self):
        result = validate_schedule("ebook", [_band(0, None, "0.25")])
        assert len(result) == 1

    def test_empty_schedule_raises(self):
        with pytest.raises(ScheduleError, match="no tiers"):
            validate_schedule("physical", [])

    def test_must_start_at_zero(self):
        with pytest.raises(ScheduleError, match="expected 0"):
            validate_schedule("physical", [_band(10, None)])

    def test_gap_between_tiers_raises(self):
        with pytest.raises(ScheduleError, match="gap"):
            validate_schedule("physical", [_band(0, 50), _band(60, None)])

    def test_overlapping_tiers_raise(self):
        with pytest.raises(ScheduleError, match="overlaps"):
            validate_schedule("physical", [_band(0, 50), _band(40, None)])

    def test_unbounded_tier_must_be_last(self):
        with pytest.raises(ScheduleError):
            validate_schedule("physical", [_band(0, None), _band(0, 50)])

    def test_last_tier_must_be_unbounded(self):
        with pytest.raises(ScheduleError, match="expected unbounded"):
            validate_schedule("physical", [_band(0, 50), _band(50, 100)])

    def test_empty_band_raises(self):
        with pytest.raises(ScheduleError, match="no capacity"):
            validate_schedule("physical", [_band(0, 0), _band(0, None)])

    @pytest.mark.parametrize("rate", ["-0.01", "1.01"])
    def test_rate_out_of_range_raises(self, rate):
        with pytest.raises(ScheduleError, match="outside"):
            validate_schedule("physical", [_band(0, None, rate)])

    def test_error_carries_contract_and_format(self):
        contract_id = uuid.uuid4()
        with pytest.raises(ScheduleError) as exc_info:
            validate_schedule("audiobook", [], contract_id)
        assert exc_info.value.contract_id == contract_id
        assert exc_info.value.format == "audiobook"
        assert exc_info.value.code == "SCHEDULE_ERROR"


# ── Test: helpers ───────────────────────────────────────────────────


class TestHelpers:
    def test_to_band_coerces_rate_to_decimal(self):
        band = to_band(SimpleNamespace(min_quantity=0, max_quantity=None, rate=0.1))
        assert band.rate == Decimal("0.1")
        assert band.max_quantity is None

    def test_group_by_format(self):
        grouped = group_by_format(
            [
                _tier("physical", 0, 50, "0.10"),
                _tier("ebook", 0, None, "0.25"),
                _tier("physical", 50, None, "0.15"),
            ]
        )
        assert set(grouped) == {"physical", "ebook"}
        assert len(grouped["physical"]) == 2


# ── Test: RateScheduleResolver ──────────────────────────────────────


class TestResolver:
    def _contract(self):
        return SimpleNamespace(id=uuid.uuid4(), tenant_id=uuid.uuid4())

    def test_resolve_all_returns_every_format(self):
        repo = MagicMock()
        repo.list_rate_tiers.return_value = [
            _tier("physical", 50, None, "0.15"),
            _tier("physical", 0, 50, "0.10"),
            _tier("ebook", 0, None, "0.25"),
        ]
        contract = self._contract()

        schedules = RateScheduleResolver(repo).resolve_all(contract)

        repo.list_rate_tiers.assert_called_once_with(contract.tenant_id, contract.id)
        assert [t.min_quantity for t in schedules["physical"]] == [0, 50]
        assert schedules["ebook"][0].rate == Decimal("0.25")

    def test_resolve_all_without_tiers_raises(self):
        repo = MagicMock()
        repo.list_rate_tiers.return_value = []
        with pytest.raises(ScheduleError, match="no rate tiers"):
            RateScheduleResolver(repo).resolve_all(self._contract())

    def test_resolve_missing_format_raises(self):
        repo = MagicMock()
        repo.list_rate_tiers.return_value = [_tier("physical", 0, None, "0.10")]
        with pytest.raises(ScheduleError):
            RateScheduleResolver(repo).resolve(self._contract(), "audiobook")

    def test_resolve_all_rejects_any_broken_format(self):
        repo = MagicMock()
        repo.list_rate_tiers.return_value = [
            _tier("physical", 0, None, "0.10"),
            _tier("ebook", 5, None, "0.25"),
        ]
        with pytest.raises(ScheduleError) as exc_info:
            RateScheduleResolver(repo).resolve_all(self._contract())
        assert exc_info.value.format == "ebook"
