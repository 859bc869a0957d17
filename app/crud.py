from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from functools import wraps
from typing import Any, Generic, TypeVar
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app import settings
from app.conflicts import booked_ranges, has_conflict
from app.db import transaction
from app.errors import Conflict, StateInvalid, Transient
from app.models import (
    Appointment,
    Booking,
    ModerationStatus,
    PaymentStatus,
    Reservation,
    ReservationStatus,
    Review,
    SlotLock,
    utcnow,
)
from app.schemas import AggregateRating, ReservationFilters, TimeRange

M = TypeVar("M", bound=Reservation)

RATING_STEP = Decimal("0.1")
CENT = Decimal("0.01")
INCOME_PAYMENT_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.OFFLINE_PAID)


def bounded(fn):
    """Bound a store coroutine by STORE_TIMEOUT and map store outages to Transient."""

    @wraps(fn)
    async def _wrapper(*args, **kwargs):
        try:
            return await asyncio.wait_for(fn(*args, **kwargs), timeout=settings.store_timeout)
        except TimeoutError:
            raise Transient("Record store timed out, please retry") from None
        except IntegrityError:
            raise
        except OperationalError as exc:
            raise Transient("Record store unavailable, please retry") from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                raise Transient("Record store unavailable, please retry") from exc
            raise

    return _wrapper


def _criteria(model, expected: dict[str, Any]) -> list:
    """Turn ``{"status": ..., "due_payment_intent_id__isnull": True}`` into WHERE clauses."""
    clauses = []
    for key, value in expected.items():
        if key.endswith("__isnull"):
            column = getattr(model, key.removesuffix("__isnull"))
            clauses.append(column.is_(None) if value else column.is_not(None))
        else:
            clauses.append(getattr(model, key) == value)
    return clauses


async def _refetch(session: AsyncSession, model, pk):
    stmt = select(model).where(model.id == pk).execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalar_one()


def _insert_ignoring_duplicates(session: AsyncSession, model):
    if session.bind.dialect.name == "postgresql":
        return postgresql_insert(model).on_conflict_do_nothing()
    return sqlite_insert(model).on_conflict_do_nothing()


async def _lock_slot(session: AsyncSession, listing_id: UUID, day: date) -> None:
    # The lock row is written before anything is read so concurrent holders queue
    # on the write lock (row lock on Postgres, database lock on SQLite).
    await session.execute(
        _insert_ignoring_duplicates(session, SlotLock).values(
            listing_id=listing_id, day=day, version=0
        )
    )
    await session.execute(
        update(SlotLock)
        .where(SlotLock.listing_id == listing_id, SlotLock.day == day)
        .values(version=SlotLock.version + 1)
    )


@asynccontextmanager
async def slot_lock(listing_id: UUID, day: date) -> AsyncIterator[AsyncSession]:
    """
    Serialize appointment writes for one (listing, day) across nodes.

    Opens a transaction and locks the lock row for that pair; everything
    executed inside the block commits or rolls back together.
    """
    async with transaction() as session:
        await _lock_slot(session, listing_id, day)
        yield session


class ReservationCRUD(Generic[M]):
    def __init__(self, model: type[M]) -> None:
        self.model = model

    @bounded
    async def get(self, reservation_id: UUID) -> M | None:
        stmt = select(self.model).where(self.model.id == reservation_id)
        async with transaction() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    def _ordering(self) -> tuple:
        return (self.model.created_at.desc(),)

    @bounded
    async def list(
        self,
        filters: ReservationFilters,
        user_id: UUID | None = None,
        provider_id: UUID | None = None,
    ) -> tuple[list[M], int]:
        conditions = []
        if user_id is not None:
            conditions.append(self.model.user_id == user_id)
        if provider_id is not None:
            conditions.append(self.model.provider_id == provider_id)
        if filters.status is not None:
            conditions.append(self.model.status == filters.status)

        offset = (filters.page - 1) * filters.limit
        async with transaction() as session:
            total = await session.scalar(
                select(func.count()).select_from(self.model).where(*conditions)
            )
            rows = await session.scalars(
                select(self.model)
                .where(*conditions)
                .order_by(*self._ordering())
                .offset(offset)
                .limit(filters.limit)
            )
            return list(rows), int(total or 0)

    @bounded
    async def create(self, **values: Any) -> M:
        record = self.model(**values)
        async with transaction() as session:
            session.add(record)
            await session.flush()
        return record

    @bounded
    async def transition(
        self,
        reservation_id: UUID,
        expected: dict[str, Any],
        **changes: Any,
    ) -> M | None:
        """
        Compare-and-set: apply ``changes`` only if the row still matches ``expected``.

        Returns the refreshed row, or None when a concurrent writer got there first.
        """
        changes["updated_at"] = utcnow()
        stmt = (
            update(self.model)
            .where(self.model.id == reservation_id, *_criteria(self.model, expected))
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        async with transaction() as session:
            if not (await session.execute(stmt)).rowcount:
                return None
            return await _refetch(session, self.model, reservation_id)

    @bounded
    async def status_counts(self, provider_id: UUID) -> list[dict[str, Any]]:
        stmt = (
            select(
                self.model.status,
                func.count(self.model.id).label("count"),
                func.sum(self.model.total_amount).label("total"),
            )
            .where(self.model.provider_id == provider_id)
            .group_by(self.model.status)
        )
        async with transaction() as session:
            rows = (await session.execute(stmt)).mappings().all()
        return [dict(row) for row in rows]

    @bounded
    async def income(self, provider_id: UUID, since: datetime | None = None) -> Decimal:
        stmt = select(func.sum(self.model.total_amount)).where(
            self.model.provider_id == provider_id,
            self.model.payment_status.in_(INCOME_PAYMENT_STATUSES),
        )
        if since is not None:
            stmt = stmt.where(self.model.created_at >= since)
        async with transaction() as session:
            total = await session.scalar(stmt)
        return Decimal(str(total or 0)).quantize(CENT)


class BookingCRUD(ReservationCRUD[Booking]):
    @bounded
    async def due_to_start(self, now: datetime) -> list[Booking]:
        stmt = select(Booking).where(
            Booking.status == ReservationStatus.CONFIRMED, Booking.booking_date <= now
        )
        async with transaction() as session:
            return list(await session.scalars(stmt))


class AppointmentCRUD(ReservationCRUD[Appointment]):
    def _ordering(self) -> tuple:
        return (Appointment.appointment_date, Appointment.start_time)

    async def create_without_overlap(self, **values: Any) -> Appointment:
        """Check for overlap and insert under the (listing, day) lock."""
        async with slot_lock(values["listing_id"], values["appointment_date"]) as session:
            if await has_conflict(
                session,
                values["listing_id"],
                values["appointment_date"],
                values["start_time"],
                values["end_time"],
            ):
                raise Conflict(
                    "This time slot is already booked. Please choose a different time."
                )
            appointment = Appointment(**values)
            session.add(appointment)
            await session.flush()
        return appointment

    async def move_without_overlap(
        self,
        appointment: Appointment,
        day: date,
        start: str,
        end: str,
        expected: dict[str, Any],
        **changes: Any,
    ) -> Appointment:
        """Move ``appointment`` to ``[start, end)`` on ``day`` under the lock for ``day``."""
        async with slot_lock(appointment.listing_id, day) as session:
            if await has_conflict(
                session, appointment.listing_id, day, start, end, exclude_id=appointment.id
            ):
                raise Conflict(
                    "The new time slot conflicts with another appointment. "
                    "Please choose a different time."
                )
            stmt = (
                update(Appointment)
                .where(Appointment.id == appointment.id, *_criteria(Appointment, expected))
                .values(
                    appointment_date=day,
                    start_time=start,
                    end_time=end,
                    updated_at=utcnow(),
                    **changes,
                )
                .execution_options(synchronize_session=False)
            )
            if not (await session.execute(stmt)).rowcount:
                raise StateInvalid("Appointment was modified concurrently, please retry")
            return await _refetch(session, Appointment, appointment.id)

    @bounded
    async def due_to_start(self, now: datetime) -> list[Appointment]:
        # start_time is stored without a zone and read as UTC wall-clock here
        today, clock = now.date(), now.strftime("%H:%M")
        stmt = select(Appointment).where(
            Appointment.status == ReservationStatus.CONFIRMED,
            or_(
                Appointment.appointment_date < today,
                and_(Appointment.appointment_date == today, Appointment.start_time <= clock),
            ),
        )
        async with transaction() as session:
            return list(await session.scalars(stmt))

    @bounded
    async def booked_ranges(self, listing_id: UUID, day: date) -> list[TimeRange]:
        async with transaction() as session:
            return await booked_ranges(session, listing_id, day)

    @bounded
    async def count_live_on(self, provider_id: UUID, day: date) -> int:
        stmt = (
            select(func.count())
            .select_from(Appointment)
            .where(
                Appointment.provider_id == provider_id,
                Appointment.appointment_date == day,
                Appointment.status.in_((ReservationStatus.PENDING, ReservationStatus.CONFIRMED)),
            )
        )
        async with transaction() as session:
            return int(await session.scalar(stmt) or 0)


class ReviewCRUD:
    @bounded
    async def create(self, **values: Any) -> Review:
        review = Review(**values)
        async with transaction() as session:
            session.add(review)
            try:
                await session.flush()
            except IntegrityError:
                raise StateInvalid("Already reviewed") from None
        return review

    @bounded
    async def get(self, review_id: UUID) -> Review | None:
        async with transaction() as session:
            return await session.get(Review, review_id)

    @bounded
    async def hide(self, review_id: UUID, reason: str | None) -> Review | None:
        stmt = (
            update(Review)
            .where(Review.id == review_id, Review.moderation_status == ModerationStatus.ACTIVE)
            .values(
                moderation_status=ModerationStatus.HIDDEN_BY_ADMIN,
                moderation_reason=reason,
                moderated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        async with transaction() as session:
            if not (await session.execute(stmt)).rowcount:
                return None
            return await _refetch(session, Review, review_id)

    @bounded
    async def aggregate(self, **scope: UUID) -> AggregateRating:
        """
        Mean of active review ratings for one listing or provider, in one query.

        ``scope`` is ``listing_id=...`` or ``provider_id=...``.
        """
        ((key, value),) = scope.items()
        stmt = select(func.sum(Review.rating), func.count(Review.id)).where(
            Review.moderation_status == ModerationStatus.ACTIVE,
            getattr(Review, key) == value,
        )
        async with transaction() as session:
            total, count = (await session.execute(stmt)).one()
        if not count:
            return AggregateRating(average=Decimal("0"), count=0)
        average = (Decimal(int(total)) / Decimal(int(count))).quantize(
            RATING_STEP, rounding=ROUND_HALF_UP
        )
        return AggregateRating(average=average, count=int(count))


booking_crud = BookingCRUD(Booking)
appointment_crud = AppointmentCRUD(Appointment)
review_crud = ReviewCRUD()
