"""Tests for app/pricing.py: price breakdown arithmetic and slot resolution."""

from __future__ import annotations

from decimal import Decimal

import pytest

from app.errors import InvalidArgument, SlotNotFound
from app.pricing import PriceBreakdown, price_listing, resolve_slot

from .factories import make_appointment_listing, make_listing, slot_template


class TestPriceBreakdown:
    def test_hundred(self):
        b = PriceBreakdown.from_total(Decimal("100.00"))
        assert b.total_amount == Decimal("100.00")
        assert b.down_payment == Decimal("30.00")
        assert b.platform_fee == Decimal("10.00")
        assert b.provider_payout_from_down_payment == Decimal("20.00")
        assert b.due_amount == Decimal("70.00")

    def test_two_hundred(self):
        b = PriceBreakdown.from_total(Decimal("200.00"))
        assert (b.down_payment, b.due_amount) == (Decimal("60.00"), Decimal("140.00"))

    def test_fractional_total_rounds_half_up(self):
        # 33.35 * 0.30 = 10.005 -> 10.01; 33.35 * 0.10 = 3.335 -> 3.34
        b = PriceBreakdown.from_total(Decimal("33.35"))
        assert b.down_payment == Decimal("10.01")
        assert b.platform_fee == Decimal("3.34")
        assert b.due_amount == Decimal("23.34")
        assert b.provider_payout_from_down_payment == Decimal("6.67")

    @pytest.mark.parametrize(
        "total", ["0.01", "0.05", "1.00", "9.99", "33.33", "49.95", "1234.56", "99999.99"]
    )
    def test_parts_sum_to_total(self, total):
        b = PriceBreakdown.from_total(Decimal(total))
        assert b.down_payment + b.due_amount == b.total_amount
        assert b.down_payment >= (b.total_amount * Decimal("0.30")).quantize(
            Decimal("0.01")
        ) - Decimal("0.01")

    def test_zero_total_is_all_zero(self):
        b = PriceBreakdown.from_total(Decimal("0"))
        assert set(b.as_fields().values()) == {Decimal("0.00")}

    def test_amounts_have_two_fractional_digits(self):
        b = PriceBreakdown.from_total(Decimal("10"))
        for value in b.as_fields().values():
            assert value.as_tuple().exponent == -2

    def test_to_schema(self):
        schema = PriceBreakdown.from_total(Decimal("100")).to_schema()
        assert schema.due_amount == Decimal("70.00")


class TestPriceListing:
    def test_flat_listing_uses_base_price(self):
        assert price_listing(make_listing()).total_amount == Decimal("100.00")

    def test_flat_listing_without_price_is_rejected(self):
        with pytest.raises(InvalidArgument):
            price_listing(make_listing(base_price="0"))

    def test_appointment_listing_uses_slot_price(self):
        listing = make_appointment_listing()
        b = price_listing(listing, "T1")
        assert b.total_amount == Decimal("50.00")
        assert b.down_payment == Decimal("15.00")

    def test_appointment_listing_ignores_base_price(self):
        listing = make_appointment_listing(base_price="999.00")
        assert price_listing(listing, "T1").total_amount == Decimal("50.00")

    def test_zero_priced_slot_is_all_zero(self):
        listing = make_appointment_listing(appointment_slots=[slot_template(price="0")])
        assert price_listing(listing, "T1").down_payment == Decimal("0.00")

    def test_missing_slot_id(self):
        with pytest.raises(InvalidArgument):
            price_listing(make_appointment_listing())

    def test_unknown_slot_id(self):
        with pytest.raises(SlotNotFound):
            price_listing(make_appointment_listing(), "nope")


class TestResolveSlot:
    def test_returns_template(self):
        slot = resolve_slot(make_appointment_listing(), "T1")
        assert slot.duration == 30
        assert slot.price == Decimal("50.00")

    def test_numeric_template_ids_are_matched_as_text(self):
        listing = make_appointment_listing(appointment_slots=[slot_template(id=7)])
        assert resolve_slot(listing, "7").id == "7"
