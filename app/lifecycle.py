"""
Booking lifecycle: creation, state transitions and payment steps for
bookings and appointments.

Every mutation goes through ``ReservationManager`` and lands in the store as a
compare-and-set on the record's current ``status`` (and payment status where
it matters), so two concurrent transitions on one record cannot both commit.
Allowed transitions are the explicit tables below.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import StrEnum
from typing import TYPE_CHECKING, Any
from uuid import UUID

from loguru import logger

from app.crud import (
    ReservationCRUD,
    appointment_crud,
    booking_crud,
    review_crud,
)
from app.db import transaction
from app.errors import (
    Gone,
    InvalidArgument,
    NotFound,
    PaymentIncomplete,
    ProcessorError,
    StateInvalid,
    Transient,
    Unauthorized,
    WrongKind,
)
from app.models import (
    Appointment,
    Booking,
    CancelledBy,
    PaymentStatus,
    Reservation,
    ReservationKind,
    ReservationStatus,
    Review,
    utcnow,
)
from app.payments import (
    IntentKind,
    IntentStatus,
    PaymentCoordinator,
    ProcessorIntent,
)
from app.pricing import PriceBreakdown, price_listing, resolve_slot
from app.schemas import (
    AggregateRating,
    AppointmentCreate,
    AppointmentReschedule,
    AvailableSlots,
    BookingCreate,
    Listing,
    Page,
    ProviderReschedule,
    ProviderStats,
    ReservationFilters,
    ReviewCreate,
    ServiceSnapshot,
    StatusCount,
    TimeRange,
)

if TYPE_CHECKING:
    from app.deps import CatalogClient


class Action(StrEnum):
    CONFIRM = "confirm"
    REJECT = "reject"
    START = "start"
    COMPLETE = "complete"
    CANCEL = "cancel"
    RESCHEDULE = "reschedule"
    PROVIDER_RESCHEDULE = "provider_reschedule"
    REVIEW = "review"


NON_TERMINAL = frozenset(
    {ReservationStatus.PENDING, ReservationStatus.CONFIRMED, ReservationStatus.IN_PROGRESS}
)
TERMINAL = frozenset(
    {ReservationStatus.COMPLETED, ReservationStatus.CANCELLED, ReservationStatus.REJECTED}
)


@dataclass(frozen=True)
class Transition:
    sources: frozenset[ReservationStatus]
    # None keeps the current status
    target: ReservationStatus | None


BOOKING_TRANSITIONS: dict[Action, Transition] = {
    Action.CONFIRM: Transition(frozenset({ReservationStatus.PENDING}), ReservationStatus.CONFIRMED),
    Action.REJECT: Transition(frozenset({ReservationStatus.PENDING}), ReservationStatus.REJECTED),
    Action.START: Transition(frozenset({ReservationStatus.CONFIRMED}), ReservationStatus.IN_PROGRESS),
    Action.COMPLETE: Transition(
        frozenset({ReservationStatus.IN_PROGRESS}), ReservationStatus.COMPLETED
    ),
    Action.CANCEL: Transition(NON_TERMINAL, ReservationStatus.CANCELLED),
    Action.REVIEW: Transition(frozenset({ReservationStatus.COMPLETED}), None),
}

APPOINTMENT_TRANSITIONS: dict[Action, Transition] = {
    **BOOKING_TRANSITIONS,
    Action.RESCHEDULE: Transition(
        frozenset({ReservationStatus.IN_PROGRESS}), ReservationStatus.PENDING
    ),
    Action.PROVIDER_RESCHEDULE: Transition(NON_TERMINAL, None),
}

TRANSITIONS: dict[ReservationKind, dict[Action, Transition]] = {
    ReservationKind.BOOKING: BOOKING_TRANSITIONS,
    ReservationKind.APPOINTMENT: APPOINTMENT_TRANSITIONS,
}

SETTLED_PAYMENT_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.OFFLINE_PAID)
SYNCABLE_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.AUTHORIZED)
# Due intents in these states need a new payment attempt from the customer
FAILED_INTENT_STATUSES = (IntentStatus.CANCELED, IntentStatus.REQUIRES_PAYMENT_METHOD)


def allowed_transition(
    kind: ReservationKind, action: Action, current: ReservationStatus
) -> Transition:
    """Return the transition for ``action`` or raise StateInvalid from ``current``."""
    transition = TRANSITIONS[kind].get(action)
    if transition is None:
        raise WrongKind(f"Cannot {action} a {kind}")
    if current not in transition.sources:
        allowed = sorted(s.value for s in transition.sources)
        raise StateInvalid(
            f"Cannot {action} a {kind} that is {current}. Allowed from: {allowed}"
        )
    return transition


def _append_note(*parts: str | None) -> str:
    return "\n\n".join(p for p in parts if p)


def _require_future_slot(day: date, start_time: str) -> None:
    # Slot times are compared as UTC wall-clock
    starts_at = datetime.combine(day, time.fromisoformat(start_time), tzinfo=timezone.utc)
    if starts_at <= utcnow():
        raise InvalidArgument("Appointment time must be in the future")


def _require_listing(listing: Listing | None, appointment: bool) -> Listing:
    if listing is None:
        raise NotFound("Service not found")
    if not listing.is_active:
        raise Gone("Service is no longer available")
    if listing.appointment_enabled != appointment:
        if appointment:
            raise WrongKind("This service does not take appointments, create a booking")
        raise WrongKind("This service requires an appointment")
    return listing


class ReservationManager:
    def __init__(self, payments: PaymentCoordinator | None = None) -> None:
        self.payments = payments or PaymentCoordinator()

    @staticmethod
    def _crud(kind: ReservationKind) -> ReservationCRUD:
        if kind == ReservationKind.APPOINTMENT:
            return appointment_crud
        return booking_crud

    # -- loading ------------------------------------------------------------

    async def get(self, kind: ReservationKind, reservation_id: UUID) -> Reservation:
        record = await self._crud(kind).get(reservation_id)
        if record is None:
            raise NotFound(f"{kind.capitalize()} not found")
        return record

    async def get_for_user(
        self, kind: ReservationKind, reservation_id: UUID, user_id: UUID
    ) -> Reservation:
        record = await self.get(kind, reservation_id)
        if record.user_id != user_id:
            raise Unauthorized(f"Not authorized to access this {kind}")
        return record

    async def get_for_provider(
        self, kind: ReservationKind, reservation_id: UUID, provider_id: UUID
    ) -> Reservation:
        record = await self.get(kind, reservation_id)
        if record.provider_id != provider_id:
            raise Unauthorized(f"This {kind} is not for one of your services")
        return record

    async def list(
        self,
        kind: ReservationKind,
        filters: ReservationFilters,
        user_id: UUID | None = None,
        provider_id: UUID | None = None,
    ) -> Page:
        items, total = await self._crud(kind).list(
            filters, user_id=user_id, provider_id=provider_id
        )
        return Page(
            items=items,
            total=total,
            page=filters.page,
            limit=filters.limit,
            total_pages=math.ceil(total / filters.limit) if total else 0,
        )

    # -- persistence --------------------------------------------------------

    async def _commit(
        self,
        record: Reservation,
        transition: Transition | None = None,
        expected: dict[str, Any] | None = None,
        **changes: Any,
    ) -> Reservation:
        """Compare-and-set ``changes`` against the record as it was read."""
        if transition is not None and transition.target is not None:
            changes["status"] = transition.target
        updated = await self._crud(record.kind).transition(
            record.id, {"status": record.status, **(expected or {})}, **changes
        )
        if updated is None:
            raise StateInvalid(
                f"{record.kind.capitalize()} was modified concurrently, please retry"
            )
        if updated.status != record.status:
            logger.info(
                "{} {}: {} -> {}", record.kind, record.id, record.status, updated.status
            )
        return updated

    # -- creation -----------------------------------------------------------

    async def _record_failed_attempt(self, record: Reservation) -> None:
        """Move the next intent request onto a fresh idempotency key."""
        attempts = record.intent_attempts or 0
        await self._crud(record.kind).transition(
            record.id, {"intent_attempts": attempts}, intent_attempts=attempts + 1
        )

    async def _attach_down_payment(
        self, record: Reservation
    ) -> tuple[Reservation, ProcessorIntent]:
        try:
            intent, changes = await self.payments.create_down_payment_intent(record)
        except ProcessorError:
            await self._record_failed_attempt(record)
            raise
        if not changes:
            return record, intent
        updated = await self._crud(record.kind).transition(
            record.id,
            {"payment_intent_id__isnull": True, "payment_status": record.payment_status},
            **changes,
        )
        if updated is None:
            # Another request attached the intent first; its idempotency key
            # resolves to the same processor intent.
            return await self.get(record.kind, record.id), intent
        return updated, intent

    async def _request_initial_intent(self, record: Reservation) -> Reservation:
        try:
            record, _ = await self._attach_down_payment(record)
        except (ProcessorError, Transient) as exc:
            logger.warning(
                "Down payment intent for {} {} not created, caller may retry: {}",
                record.kind,
                record.id,
                exc.detail,
            )
        return record

    async def create_booking(
        self, user_id: UUID, listing: Listing | None, payload: BookingCreate
    ) -> tuple[Booking, PriceBreakdown]:
        listing = _require_listing(listing, appointment=False)
        if payload.booking_date <= utcnow():
            raise InvalidArgument("Booking date must be in the future")

        breakdown = price_listing(listing)
        booking = await booking_crud.create(
            user_id=user_id,
            listing_id=listing.id,
            provider_id=listing.provider_id,
            service_snapshot=ServiceSnapshot.of(listing).model_dump(mode="json"),
            booking_date=payload.booking_date,
            user_notes=payload.user_notes,
            remaining_amount=breakdown.total_amount,
            **breakdown.as_fields(),
        )
        logger.info(
            "Booking {} created by user {} for listing {} ({})",
            booking.id,
            user_id,
            listing.id,
            breakdown.total_amount,
        )
        return await self._request_initial_intent(booking), breakdown

    async def create_appointment(
        self, user_id: UUID, listing: Listing | None, payload: AppointmentCreate
    ) -> tuple[Appointment, PriceBreakdown]:
        listing = _require_listing(listing, appointment=True)
        _require_future_slot(payload.appointment_date, payload.time_slot.start_time)

        slot = resolve_slot(listing, payload.slot_id)
        breakdown = price_listing(listing, slot.id)
        appointment = await appointment_crud.create_without_overlap(
            user_id=user_id,
            listing_id=listing.id,
            provider_id=listing.provider_id,
            service_snapshot=ServiceSnapshot.of(listing).model_dump(mode="json"),
            appointment_date=payload.appointment_date,
            start_time=payload.time_slot.start_time,
            end_time=payload.time_slot.end_time,
            slot_template_id=slot.id,
            slot_duration=slot.duration,
            slot_duration_unit=slot.duration_unit,
            slot_price=slot.price,
            user_notes=payload.user_notes,
            remaining_amount=breakdown.total_amount,
            **breakdown.as_fields(),
        )
        logger.info(
            "Appointment {} created by user {} for listing {} on {} {}-{}",
            appointment.id,
            user_id,
            listing.id,
            payload.appointment_date,
            payload.time_slot.start_time,
            payload.time_slot.end_time,
        )
        return await self._request_initial_intent(appointment), breakdown

    # -- provider transitions -----------------------------------------------

    async def confirm(
        self,
        kind: ReservationKind,
        reservation_id: UUID,
        provider_id: UUID,
        provider_notes: str | None = None,
    ) -> Reservation:
        record = await self.get_for_provider(kind, reservation_id, provider_id)
        transition = allowed_transition(kind, Action.CONFIRM, record.status)
        changes = {"provider_notes": provider_notes} if provider_notes else {}
        return await self._commit(record, transition, **changes)

    async def reject(
        self,
        kind: ReservationKind,
        reservation_id: UUID,
        provider_id: UUID,
        reason: str | None = None,
    ) -> Reservation:
        record = await self.get_for_provider(kind, reservation_id, provider_id)
        transition = allowed_transition(kind, Action.REJECT, record.status)
        return await self._commit(
            record,
            transition,
            cancellation_reason=reason,
            cancelled_by=CancelledBy.PROVIDER,
        )

    async def start(
        self, kind: ReservationKind, reservation_id: UUID, provider_id: UUID
    ) -> Reservation:
        record = await self.get_for_provider(kind, reservation_id, provider_id)
        transition = allowed_transition(kind, Action.START, record.status)
        return await self._commit(record, transition)

    async def complete(
        self, kind: ReservationKind, reservation_id: UUID, provider_id: UUID
    ) -> Reservation:
        record = await self.get_for_provider(kind, reservation_id, provider_id)
        transition = allowed_transition(kind, Action.COMPLETE, record.status)
        if record.payment_status not in SETTLED_PAYMENT_STATUSES:
            raise PaymentIncomplete(
                "Collect the due amount online or mark it paid offline before completing"
            )
        return await self._commit(
            record,
            transition,
            expected={"payment_status": record.payment_status},
            completed_at=utcnow(),
        )

    # -- cancellation -------------------------------------------------------

    async def cancel(
        self,
        record: Reservation,
        cancelled_by: CancelledBy,
        reason: str | None = None,
    ) -> Reservation:
        """Cancel from any non-terminal state; payments are left as they are."""
        transition = allowed_transition(record.kind, Action.CANCEL, record.status)
        return await self._commit(
            record,
            transition,
            cancellation_reason=reason,
            cancelled_by=cancelled_by,
            cancelled_at=utcnow(),
        )

    async def cancel_by_user(
        self,
        kind: ReservationKind,
        reservation_id: UUID,
        user_id: UUID,
        reason: str | None = None,
    ) -> Reservation:
        record = await self.get_for_user(kind, reservation_id, user_id)
        return await self.cancel(record, CancelledBy.USER, reason)

    async def cancel_by_provider(
        self,
        kind: ReservationKind,
        reservation_id: UUID,
        provider_id: UUID,
        reason: str | None = None,
    ) -> Reservation:
        record = await self.get_for_provider(kind, reservation_id, provider_id)
        return await self.cancel(record, CancelledBy.PROVIDER, reason)

    async def cancel_by_admin(
        self, kind: ReservationKind, reservation_id: UUID, reason: str | None = None
    ) -> Reservation:
        record = await self.get(kind, reservation_id)
        return await self.cancel(record, CancelledBy.ADMIN, reason)

    # -- rescheduling -------------------------------------------------------

    @staticmethod
    def _reschedule_note(
        who: str, appointment: Appointment, day: date, start: str, end: str
    ) -> str:
        return (
            f"Rescheduled by {who} from {appointment.appointment_date.isoformat()} "
            f"({appointment.start_time}-{appointment.end_time}) "
            f"to {day.isoformat()} ({start}-{end})"
        )

    async def reschedule(
        self, appointment_id: UUID, user_id: UUID, payload: AppointmentReschedule
    ) -> Appointment:
        """Move the appointment to a new slot and send it back for confirmation."""
        record = await self.get_for_user(ReservationKind.APPOINTMENT, appointment_id, user_id)
        transition = allowed_transition(record.kind, Action.RESCHEDULE, record.status)
        _require_future_slot(payload.appointment_date, payload.time_slot.start_time)

        start, end = payload.time_slot.start_time, payload.time_slot.end_time
        note = self._reschedule_note("user", record, payload.appointment_date, start, end)
        updated = await appointment_crud.move_without_overlap(
            record,
            payload.appointment_date,
            start,
            end,
            expected={"status": record.status},
            status=transition.target,
            user_notes=_append_note(record.user_notes, payload.user_notes, note),
        )
        logger.info(
            "appointment {}: {} -> {} (rescheduled to {} {}-{})",
            record.id,
            record.status,
            updated.status,
            payload.appointment_date,
            start,
            end,
        )
        return updated

    async def provider_reschedule(
        self, appointment_id: UUID, provider_id: UUID, payload: ProviderReschedule
    ) -> Appointment:
        record = await self.get_for_provider(
            ReservationKind.APPOINTMENT, appointment_id, provider_id
        )
        allowed_transition(record.kind, Action.PROVIDER_RESCHEDULE, record.status)
        _require_future_slot(payload.appointment_date, payload.time_slot.start_time)

        start, end = payload.time_slot.start_time, payload.time_slot.end_time
        note = self._reschedule_note(
            "provider", record, payload.appointment_date, start, end
        )
        updated = await appointment_crud.move_without_overlap(
            record,
            payload.appointment_date,
            start,
            end,
            expected={"status": record.status},
            provider_notes=_append_note(record.provider_notes, payload.provider_notes, note),
        )
        logger.info(
            "appointment {} moved by provider to {} {}-{}",
            record.id,
            payload.appointment_date,
            start,
            end,
        )
        return updated

    # -- reviews ------------------------------------------------------------

    async def _publish_ratings(
        self, listing_id: UUID, provider_id: UUID, catalog: CatalogClient | None
    ) -> AggregateRating:
        listing_rating = await review_crud.aggregate(listing_id=listing_id)
        provider_rating = await review_crud.aggregate(provider_id=provider_id)
        logger.info(
            "Listing {} rating {} over {} reviews",
            listing_id,
            listing_rating.average,
            listing_rating.count,
        )
        if catalog is not None:
            await catalog.update_listing_rating(listing_id, listing_rating)
            await catalog.update_provider_rating(provider_id, provider_rating)
        return listing_rating

    async def review(
        self,
        kind: ReservationKind,
        reservation_id: UUID,
        user_id: UUID,
        payload: ReviewCreate,
        catalog: CatalogClient | None = None,
    ) -> Review:
        record = await self.get_for_user(kind, reservation_id, user_id)
        allowed_transition(kind, Action.REVIEW, record.status)
        if record.reviewed_at is not None:
            raise StateInvalid(f"You have already reviewed this {kind}")

        now = utcnow()
        async with transaction():
            review = await review_crud.create(
                listing_id=record.listing_id,
                provider_id=record.provider_id,
                user_id=user_id,
                rating=payload.rating,
                comment=payload.comment,
                **{f"{kind}_id": record.id},
            )
            await self._commit(
                record,
                expected={"reviewed_at__isnull": True},
                rating=payload.rating,
                review=payload.comment,
                reviewed_at=now,
            )

        await self._publish_ratings(record.listing_id, record.provider_id, catalog)
        return review

    async def hide_review(
        self,
        review_id: UUID,
        reason: str | None = None,
        catalog: CatalogClient | None = None,
    ) -> Review:
        existing = await review_crud.get(review_id)
        if existing is None:
            raise NotFound("Review not found")
        review = await review_crud.hide(review_id, reason)
        if review is None:
            raise StateInvalid("Review is already hidden")
        logger.info("Review {} hidden by admin: {}", review_id, reason)
        await self._publish_ratings(review.listing_id, review.provider_id, catalog)
        return review

    # -- payments -----------------------------------------------------------

    async def _sync_down_payment(
        self, record: Reservation, intent: ProcessorIntent
    ) -> Reservation:
        changes = self.payments.sync_down_payment(record, intent)
        if not changes:
            return record
        updated = await self._crud(record.kind).transition(
            record.id, {"payment_status": record.payment_status}, **changes
        )
        if updated is None:
            return await self.get(record.kind, record.id)
        if updated.payment_status != record.payment_status:
            logger.info(
                "{} {} payment: {} -> {}",
                record.kind,
                record.id,
                record.payment_status,
                updated.payment_status,
            )
        return updated

    async def checkout_session(
        self, kind: ReservationKind, reservation_id: UUID, user_id: UUID
    ) -> ProcessorIntent:
        """Return the down-payment intent, creating it if creation previously failed."""
        record = await self.get_for_user(kind, reservation_id, user_id)
        if record.payment_intent_id is None:
            if record.status in TERMINAL:
                raise StateInvalid(f"Cannot pay for a {record.status} {kind}")
            record, intent = await self._attach_down_payment(record)
        else:
            intent = await self.payments.retrieve(record.payment_intent_id)
        await self._sync_down_payment(record, intent)
        return intent

    async def payment_status(
        self, kind: ReservationKind, reservation_id: UUID, user_id: UUID
    ) -> Reservation:
        record = await self.get_for_user(kind, reservation_id, user_id)
        if record.payment_intent_id and record.payment_status in SYNCABLE_PAYMENT_STATUSES:
            try:
                intent = await self.payments.retrieve(record.payment_intent_id)
            except Transient:
                logger.warning(
                    "Serving stored payment status for {} {}, processor unavailable",
                    kind,
                    record.id,
                )
                return record
            record = await self._sync_down_payment(record, intent)
        return record

    async def request_due(
        self, kind: ReservationKind, reservation_id: UUID, provider_id: UUID
    ) -> Reservation:
        record = await self.get_for_provider(kind, reservation_id, provider_id)
        try:
            _, changes = await self.payments.create_due_intent(record)
        except ProcessorError:
            await self._record_failed_attempt(record)
            raise
        if not changes:
            return record
        updated = await self._crud(kind).transition(
            record.id,
            {
                "payment_status": PaymentStatus.PARTIAL,
                "due_payment_intent_id__isnull": True,
            },
            **changes,
        )
        if updated is None:
            return await self.get(kind, record.id)
        logger.info("{} {}: due payment requested ({})", kind, record.id, record.due_amount)
        return updated

    async def due_intent(
        self, kind: ReservationKind, reservation_id: UUID, user_id: UUID
    ) -> ProcessorIntent:
        record = await self.get_for_user(kind, reservation_id, user_id)
        if (
            record.payment_status != PaymentStatus.DUE_REQUESTED
            or not record.due_payment_intent_id
        ):
            raise InvalidArgument("Due payment has not been requested")
        return await self.payments.retrieve(record.due_payment_intent_id)

    async def confirm_due(
        self, kind: ReservationKind, reservation_id: UUID, user_id: UUID
    ) -> Reservation:
        record = await self.get_for_user(kind, reservation_id, user_id)
        intent, changes = await self.payments.confirm_due_payment(record)
        if changes:
            updated = await self._crud(kind).transition(
                record.id, {"payment_status": record.payment_status}, **changes
            )
            record = updated or await self.get(kind, record.id)
        if record.payment_status != PaymentStatus.COMPLETED:
            if intent.status in FAILED_INTENT_STATUSES:
                raise ProcessorError("Due payment failed", processor_status=intent.status)
            raise StateInvalid("Due payment not completed", processor_status=intent.status)
        logger.info("{} {}: due payment completed online", kind, record.id)
        return record

    async def mark_offline_paid(
        self, kind: ReservationKind, reservation_id: UUID, provider_id: UUID
    ) -> Reservation:
        record = await self.get_for_provider(kind, reservation_id, provider_id)
        changes = self.payments.mark_offline_paid(record)
        updated = await self._commit(
            record, expected={"payment_status": record.payment_status}, **changes
        )
        logger.info("{} {}: due amount settled offline", kind, record.id)
        return updated

    async def void_payment(
        self, kind: ReservationKind, reservation_id: UUID
    ) -> Reservation:
        record = await self.get(kind, reservation_id)
        if record.status not in (ReservationStatus.CANCELLED, ReservationStatus.REJECTED):
            raise StateInvalid(f"Only cancelled or rejected {kind}s can be voided")
        changes = await self.payments.void(record)
        updated = await self._commit(
            record, expected={"payment_status": record.payment_status}, **changes
        )
        logger.info("{} {}: payment voided by admin", kind, record.id)
        return updated

    async def apply_processor_event(self, intent: ProcessorIntent) -> Reservation | None:
        """Apply an intent pushed by the processor; unknown intents are ignored."""
        try:
            kind = ReservationKind(intent.metadata.get("reservation_kind", ""))
            intent_kind = IntentKind(intent.metadata.get("intent_kind", ""))
            reservation_id = UUID(intent.metadata.get("reservation_id", ""))
        except ValueError:
            logger.debug("Ignoring processor event for unrelated intent {}", intent.id)
            return None

        record = await self._crud(kind).get(reservation_id)
        if record is None:
            logger.warning("Processor event for unknown {} {}", kind, reservation_id)
            return None

        if intent_kind == IntentKind.DOWN:
            if record.payment_intent_id not in (None, intent.id):
                logger.warning(
                    "Ignoring stale down intent {} for {} {}", intent.id, kind, record.id
                )
                return record
            if record.payment_intent_id is None:
                record = await self._commit(
                    record,
                    expected={"payment_intent_id__isnull": True},
                    payment_intent_id=intent.id,
                    payment_intent_status=intent.status,
                )
            return await self._sync_down_payment(record, intent)

        if record.due_payment_intent_id != intent.id:
            logger.warning("Ignoring stale due intent {} for {} {}", intent.id, kind, record.id)
            return record
        changes = self.payments.due_payment_changes(record, intent)
        updated = await self._crud(kind).transition(
            record.id, {"payment_status": record.payment_status}, **changes
        )
        if updated is not None and updated.payment_status != record.payment_status:
            logger.info(
                "{} {} payment: {} -> {}",
                kind,
                record.id,
                record.payment_status,
                updated.payment_status,
            )
        return updated or await self.get(kind, record.id)

    # -- queries ------------------------------------------------------------

    async def available_slots(
        self,
        listing: Listing | None,
        day: date,
        booked: list[TimeRange] | None = None,
    ) -> AvailableSlots:
        """Slot templates of ``listing`` and the ranges already held on ``day``."""
        listing = _require_listing(listing, appointment=True)
        if booked is None:
            booked = await appointment_crud.booked_ranges(listing.id, day)
        return AvailableSlots(
            listing_id=listing.id,
            day=day,
            templates=listing.appointment_slots,
            booked=booked,
        )

    async def provider_stats(self, provider_id: UUID) -> ProviderStats:
        now = utcnow()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        stats: dict[ReservationKind, list[StatusCount]] = {}
        for kind in ReservationKind:
            rows = await self._crud(kind).status_counts(provider_id)
            stats[kind] = [
                StatusCount(
                    status=row["status"],
                    count=row["count"],
                    total_amount=Decimal(str(row["total"] or 0)),
                )
                for row in rows
            ]

        income_total = Decimal("0")
        income_this_month = Decimal("0")
        for kind in ReservationKind:
            income_total += await self._crud(kind).income(provider_id)
            income_this_month += await self._crud(kind).income(provider_id, since=month_start)

        return ProviderStats(
            booking_stats=stats[ReservationKind.BOOKING],
            appointment_stats=stats[ReservationKind.APPOINTMENT],
            pending_requests={
                str(kind): sum(
                    s.count for s in stats[kind] if s.status == ReservationStatus.PENDING
                )
                for kind in ReservationKind
            },
            today_appointments=await appointment_crud.count_live_on(provider_id, now.date()),
            income_total=income_total,
            income_this_month=income_this_month,
        )

    # -- implicit start -----------------------------------------------------

    async def start_due(self, now: datetime | None = None) -> int:
        """Move confirmed records whose scheduled time has passed to in_progress."""
        now = now or utcnow()
        started = 0
        for crud in (booking_crud, appointment_crud):
            for record in await crud.due_to_start(now):
                transition = allowed_transition(record.kind, Action.START, record.status)
                try:
                    await self._commit(record, transition)
                except StateInvalid:
                    logger.debug("{} {} changed before auto-start", record.kind, record.id)
                    continue
                started += 1
        return started


reservation_manager = ReservationManager()
