"""
Pricing policy: listing (+ selected slot template) -> price breakdown.

All arithmetic is done on whole cents so that the 30 % down payment and the
10 % platform fee never drift; results are emitted with two fractional digits.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from app.errors import InvalidArgument, SlotNotFound
from app.schemas import Listing, PaymentBreakdown, SlotTemplate

CENT = Decimal("0.01")
DOWN_PAYMENT_RATE = Decimal("0.30")
PLATFORM_FEE_RATE = Decimal("0.10")


def _to_cents(amount: Decimal) -> int:
    return int((amount / CENT).to_integral_value(rounding=ROUND_HALF_UP))


def _share(cents: int, rate: Decimal) -> int:
    """``round(cents * rate)`` half away from zero."""
    return int((cents * rate).to_integral_value(rounding=ROUND_HALF_UP))


def _from_cents(cents: int) -> Decimal:
    return (Decimal(cents) * CENT).quantize(CENT)


@dataclass(frozen=True)
class PriceBreakdown:
    total_amount: Decimal
    down_payment: Decimal
    platform_fee: Decimal
    provider_payout_from_down_payment: Decimal
    due_amount: Decimal

    @classmethod
    def from_total(cls, total: Decimal) -> PriceBreakdown:
        total_cents = _to_cents(total)
        down_cents = _share(total_cents, DOWN_PAYMENT_RATE)
        fee_cents = _share(total_cents, PLATFORM_FEE_RATE)
        return cls(
            total_amount=_from_cents(total_cents),
            down_payment=_from_cents(down_cents),
            platform_fee=_from_cents(fee_cents),
            provider_payout_from_down_payment=_from_cents(max(down_cents - fee_cents, 0)),
            due_amount=_from_cents(total_cents - down_cents),
        )

    def as_fields(self) -> dict[str, Decimal]:
        return {
            "total_amount": self.total_amount,
            "down_payment": self.down_payment,
            "platform_fee": self.platform_fee,
            "provider_payout_from_down_payment": self.provider_payout_from_down_payment,
            "due_amount": self.due_amount,
        }

    def to_schema(self) -> PaymentBreakdown:
        return PaymentBreakdown(**self.as_fields())


def resolve_slot(listing: Listing, template_id: str | None) -> SlotTemplate:
    if not template_id:
        raise InvalidArgument("slot_id is required for appointment services")
    slot = listing.find_slot(template_id)
    if slot is None:
        raise SlotNotFound("Selected appointment slot not found")
    return slot


def price_listing(listing: Listing, template_id: str | None = None) -> PriceBreakdown:
    """
    Price a reservation of ``listing``.

    Flat listings are priced at their base price, which must be positive.
    Appointment listings are priced at the selected slot template's price;
    a zero-priced template yields an all-zero breakdown.
    """
    if listing.appointment_enabled:
        return PriceBreakdown.from_total(resolve_slot(listing, template_id).price)
    if listing.base_price <= 0:
        raise InvalidArgument("Service has no base price")
    return PriceBreakdown.from_total(listing.base_price)
