from datetime import date, datetime, timezone
from decimal import Decimal
from enum import StrEnum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Enum,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


class ReservationKind(StrEnum):
    BOOKING = "booking"  # flat-priced listing, one date
    APPOINTMENT = "appointment"  # appointment-enabled listing, date + time slot


class ReservationStatus(StrEnum):
    PENDING = "pending"  # just created, awaiting provider confirmation
    CONFIRMED = "confirmed"  # provider accepted
    IN_PROGRESS = "in_progress"  # service is being delivered
    COMPLETED = "completed"  # provider marked done
    CANCELLED = "cancelled"  # cancelled by user, provider or admin
    REJECTED = "rejected"  # provider declined a pending request


class PaymentStatus(StrEnum):
    PENDING = "pending"  # no down payment captured yet
    AUTHORIZED = "authorized"  # down payment authorized, awaiting capture
    PARTIAL = "partial"  # down payment captured
    DUE_REQUESTED = "due_requested"  # provider created the due intent
    COMPLETED = "completed"  # due paid online
    OFFLINE_PAID = "offline_paid"  # due settled outside the platform
    REFUNDED = "refunded"  # admin voided the payment


class PaidVia(StrEnum):
    ONLINE = "online"
    OFFLINE = "offline"


class CancelledBy(StrEnum):
    USER = "user"
    PROVIDER = "provider"
    ADMIN = "admin"


class DurationUnit(StrEnum):
    MINUTES = "minutes"
    HOURS = "hours"


class ModerationStatus(StrEnum):
    ACTIVE = "active"
    HIDDEN_BY_ADMIN = "hidden_by_admin"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls: type[StrEnum], length: int) -> Enum:
    # Stored as the lowercase value in a plain VARCHAR
    return Enum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
    )


def _money() -> Numeric:
    return Numeric(10, 2, asdecimal=True)


class ReservationColumns:
    """Columns shared by bookings and appointments."""

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    user_id: Mapped[UUID] = mapped_column(Uuid, index=True)  # the consumer who reserved
    listing_id: Mapped[UUID] = mapped_column(Uuid, index=True)
    provider_id: Mapped[UUID] = mapped_column(Uuid, index=True)  # snapshot from the catalog

    # Frozen copy of the listing at creation time, see schemas.ServiceSnapshot
    service_snapshot: Mapped[dict[str, Any]] = mapped_column(JSON)

    status: Mapped[ReservationStatus] = mapped_column(
        _enum(ReservationStatus, 16), default=ReservationStatus.PENDING
    )

    # Price breakdown, see pricing.PriceBreakdown
    total_amount: Mapped[Decimal] = mapped_column(_money())
    down_payment: Mapped[Decimal] = mapped_column(_money())
    platform_fee: Mapped[Decimal] = mapped_column(_money())
    provider_payout_from_down_payment: Mapped[Decimal] = mapped_column(_money())
    due_amount: Mapped[Decimal] = mapped_column(_money())
    remaining_amount: Mapped[Decimal] = mapped_column(_money())

    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus, 16), default=PaymentStatus.PENDING
    )
    paid_via: Mapped[PaidVia | None] = mapped_column(_enum(PaidVia, 8), nullable=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_intent_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    due_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    due_payment_intent_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    # bumped after each definitive processor failure, part of the idempotency key
    intent_attempts: Mapped[int] = mapped_column(Integer, default=0)
    due_requested_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    due_paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    offline_paid_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    user_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[CancelledBy | None] = mapped_column(
        _enum(CancelledBy, 8), nullable=True
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    rating: Mapped[int | None] = mapped_column(SmallInteger, nullable=True)
    review: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class Booking(ReservationColumns, Base):
    __tablename__ = "bookings"

    booking_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    @property
    def kind(self) -> ReservationKind:
        return ReservationKind.BOOKING


class Appointment(ReservationColumns, Base):
    __tablename__ = "appointments"

    appointment_date: Mapped[date] = mapped_column(Date, index=True)
    # Wall-clock "HH:MM" in the listing's zone; zero-padded so they sort as text
    start_time: Mapped[str] = mapped_column(String(5))
    end_time: Mapped[str] = mapped_column(String(5))

    # Resolved from the listing's slot template at creation
    slot_template_id: Mapped[str] = mapped_column(String(64))
    slot_duration: Mapped[int] = mapped_column(Integer)
    slot_duration_unit: Mapped[DurationUnit] = mapped_column(_enum(DurationUnit, 8))
    slot_price: Mapped[Decimal] = mapped_column(_money())

    @property
    def kind(self) -> ReservationKind:
        return ReservationKind.APPOINTMENT


# Either model; used where code handles both kinds
Reservation = Booking | Appointment


class Review(Base):
    __tablename__ = "reviews"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    listing_id: Mapped[UUID] = mapped_column(Uuid, index=True)
    provider_id: Mapped[UUID] = mapped_column(Uuid, index=True)
    user_id: Mapped[UUID] = mapped_column(Uuid)
    # Exactly one of these is set; unique so a reservation is reviewed once
    booking_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, unique=True)
    appointment_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, unique=True)

    rating: Mapped[int] = mapped_column(SmallInteger)
    comment: Mapped[str] = mapped_column(Text)

    moderation_status: Mapped[ModerationStatus] = mapped_column(
        _enum(ModerationStatus, 16), default=ModerationStatus.ACTIVE
    )
    moderation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    moderated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class SlotLock(Base):
    """One row per (listing, day); written first while checking and writing appointments."""

    __tablename__ = "appointment_slot_locks"
    __table_args__ = (UniqueConstraint("listing_id", "day"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    listing_id: Mapped[UUID] = mapped_column(Uuid)
    day: Mapped[date] = mapped_column(Date)
    version: Mapped[int] = mapped_column(Integer, default=0)
