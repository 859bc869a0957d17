from __future__ import annotations

import re
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Generic, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.models import (
    CancelledBy,
    DurationUnit,
    ModerationStatus,
    PaidVia,
    PaymentStatus,
    ReservationStatus,
)

T = TypeVar("T")

NOTES_MAX_LENGTH = 500
_WALL_CLOCK = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def normalize_wall_clock(value: str) -> str:
    """Validate an ``H:MM``/``HH:MM`` 24-hour string and zero-pad it."""
    match = _WALL_CLOCK.match(value.strip())
    if not match:
        raise ValueError("time must be in HH:MM 24-hour format")
    return f"{int(match.group(1)):02d}:{match.group(2)}"


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class ApiResponse(BaseModel, Generic[T]):
    success: bool = True
    message: str | None = None
    data: T | None = None


class Page(BaseModel, Generic[T]):
    items: list[T]
    total: int
    page: int
    limit: int
    total_pages: int


# ---------------------------------------------------------------------------
# Catalog snapshots (read-only input)
# ---------------------------------------------------------------------------


class SlotTemplate(BaseModel):
    id: str
    duration: int = Field(ge=1)
    duration_unit: DurationUnit = DurationUnit.HOURS
    price: Decimal = Field(ge=0)

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, v: object) -> str:
        return str(v)


class Listing(BaseModel):
    """Snapshot of a catalog service as the engine reads it."""

    id: UUID
    provider_id: UUID
    headline: str = ""
    photo: str | None = None
    category_id: UUID | None = None
    base_price: Decimal = Field(default=Decimal("0"), ge=0)
    appointment_enabled: bool = False
    is_active: bool = True
    appointment_slots: list[SlotTemplate] = Field(default_factory=list)

    def find_slot(self, template_id: str) -> SlotTemplate | None:
        return next((s for s in self.appointment_slots if s.id == template_id), None)


class ServiceSnapshot(BaseModel):
    """Frozen copy of listing attributes embedded in a reservation."""

    name: str
    photo: str | None = None
    headline: str | None = None
    base_price: Decimal | None = None
    category_id: UUID | None = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def of(cls, listing: Listing) -> ServiceSnapshot:
        return cls(
            name=listing.headline,
            photo=listing.photo,
            headline=listing.headline,
            base_price=None if listing.appointment_enabled else listing.base_price,
            category_id=listing.category_id,
        )


class AggregateRating(BaseModel):
    average: Decimal
    count: int


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class TimeSlot(BaseModel):
    start_time: str
    end_time: str

    @field_validator("start_time", "end_time", mode="after")
    @classmethod
    def wall_clock(cls, v: str) -> str:
        return normalize_wall_clock(v)

    @model_validator(mode="after")
    def validate_order(self) -> TimeSlot:
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class BookingCreate(BaseModel):
    service_id: UUID
    booking_date: datetime
    user_notes: str | None = Field(default=None, max_length=NOTES_MAX_LENGTH)

    @field_validator("booking_date", mode="after")
    @classmethod
    def to_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)


class AppointmentCreate(BaseModel):
    service_id: UUID
    appointment_date: date
    time_slot: TimeSlot
    slot_id: str = Field(min_length=1)
    user_notes: str | None = Field(default=None, max_length=NOTES_MAX_LENGTH)


class AppointmentReschedule(BaseModel):
    appointment_date: date
    time_slot: TimeSlot
    user_notes: str | None = Field(default=None, max_length=NOTES_MAX_LENGTH)


class ProviderReschedule(BaseModel):
    appointment_date: date
    time_slot: TimeSlot
    provider_notes: str | None = Field(default=None, max_length=NOTES_MAX_LENGTH)


class CancelRequest(BaseModel):
    cancellation_reason: str | None = Field(default=None, max_length=NOTES_MAX_LENGTH)


class ConfirmRequest(BaseModel):
    provider_notes: str | None = Field(default=None, max_length=NOTES_MAX_LENGTH)


class ReviewCreate(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: str = Field(max_length=NOTES_MAX_LENGTH)

    @field_validator("comment", mode="after")
    @classmethod
    def non_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Review comment is required")
        return v


class HideReview(BaseModel):
    reason: str | None = Field(default=None, max_length=NOTES_MAX_LENGTH)


class ReservationFilters(BaseModel):
    """Bind to a FastAPI route via Depends(ReservationFilters)."""

    status: ReservationStatus | None = None

    # Pagination
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class PaymentBreakdown(BaseModel):
    total_amount: Decimal
    down_payment: Decimal
    platform_fee: Decimal
    provider_payout_from_down_payment: Decimal
    due_amount: Decimal


class ReservationResponse(BaseModel):
    id: UUID
    user_id: UUID
    listing_id: UUID
    provider_id: UUID
    service_snapshot: ServiceSnapshot
    status: ReservationStatus

    total_amount: Decimal
    down_payment: Decimal
    platform_fee: Decimal
    provider_payout_from_down_payment: Decimal
    due_amount: Decimal
    remaining_amount: Decimal

    payment_status: PaymentStatus
    paid_via: PaidVia | None = None
    payment_intent_id: str | None = None
    payment_intent_status: str | None = None
    due_payment_intent_id: str | None = None
    due_payment_intent_status: str | None = None
    due_requested_at: datetime | None = None
    due_paid_at: datetime | None = None
    offline_paid_at: datetime | None = None

    user_notes: str | None = None
    provider_notes: str | None = None
    cancellation_reason: str | None = None
    cancelled_by: CancelledBy | None = None
    cancelled_at: datetime | None = None
    completed_at: datetime | None = None

    rating: int | None = None
    review: str | None = None
    reviewed_at: datetime | None = None

    created_at: datetime
    updated_at: datetime

    # Filled in for provider-side listings only
    customer_username: str | None = None
    customer_full_name: str | None = None

    model_config = ConfigDict(from_attributes=True)


class BookingResponse(ReservationResponse):
    booking_date: datetime


class AppointmentResponse(ReservationResponse):
    appointment_date: date
    time_slot: TimeSlot
    selected_slot: SlotTemplate

    @model_validator(mode="before")
    @classmethod
    def nest_slot_columns(cls, data: object) -> object:
        """Build ``time_slot``/``selected_slot`` from the flat ORM columns."""
        if isinstance(data, dict) or not hasattr(data, "start_time"):
            return data
        values = {
            name: getattr(data, name)
            for name in cls.model_fields
            if name not in ("time_slot", "selected_slot") and hasattr(data, name)
        }
        values["time_slot"] = {"start_time": data.start_time, "end_time": data.end_time}
        values["selected_slot"] = {
            "id": data.slot_template_id,
            "duration": data.slot_duration,
            "duration_unit": data.slot_duration_unit,
            "price": data.slot_price,
        }
        return values


class BookingCreated(BaseModel):
    booking: BookingResponse
    payment: PaymentBreakdown


class ClientSecret(BaseModel):
    client_secret: str | None
    status: str | None
    amount: Decimal | None = None


class PaymentStatusView(BaseModel):
    id: UUID
    status: ReservationStatus
    payment_status: PaymentStatus
    payment_intent_status: str | None = None
    due_payment_intent_status: str | None = None
    paid_via: PaidVia | None = None
    total_amount: Decimal
    down_payment: Decimal
    due_amount: Decimal
    remaining_amount: Decimal
    due_requested_at: datetime | None = None
    due_paid_at: datetime | None = None
    offline_paid_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class ReviewResponse(BaseModel):
    id: UUID
    listing_id: UUID
    provider_id: UUID
    user_id: UUID
    booking_id: UUID | None = None
    appointment_id: UUID | None = None
    rating: int
    comment: str
    moderation_status: ModerationStatus
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TimeRange(BaseModel):
    start_time: str
    end_time: str

    model_config = ConfigDict(from_attributes=True)


class AvailableSlots(BaseModel):
    """Templates plus booked ranges; the client intersects the two."""

    listing_id: UUID
    day: date
    templates: list[SlotTemplate]
    booked: list[TimeRange]


class StatusCount(BaseModel):
    status: ReservationStatus
    count: int
    total_amount: Decimal


class ProviderStats(BaseModel):
    booking_stats: list[StatusCount]
    appointment_stats: list[StatusCount]
    pending_requests: dict[str, int]
    today_appointments: int
    income_total: Decimal
    income_this_month: Decimal
