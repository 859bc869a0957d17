"""
Customer routes shared by /bookings and /appointments.

The payment lifecycle, cancellation and reviews behave the same for both
kinds; each kind's router includes the routes built here after its own
fixed paths so that e.g. ``/my-bookings`` wins over ``/{reservation_id}``.
"""

from __future__ import annotations

from enum import StrEnum
from uuid import UUID

from fastapi import APIRouter, Depends, status

from app.cache import invalidate_slots_cache
from app.deps import (
    CatalogClient,
    CurrentUser,
    can_cancel_booking,
    can_pay_booking,
    can_read_booking,
    can_review_booking,
    get_catalog_client,
)
from app.lifecycle import reservation_manager
from app.models import ReservationKind
from app.schemas import (
    ApiResponse,
    AppointmentResponse,
    BookingResponse,
    CancelRequest,
    ClientSecret,
    PaymentStatusView,
    ReservationResponse,
    ReviewCreate,
    ReviewResponse,
)


class KindPath(StrEnum):
    """Plural path segment naming a reservation kind."""

    BOOKINGS = "bookings"
    APPOINTMENTS = "appointments"

    @property
    def kind(self) -> ReservationKind:
        if self is KindPath.APPOINTMENTS:
            return ReservationKind.APPOINTMENT
        return ReservationKind.BOOKING


RESPONSE_MODELS: dict[ReservationKind, type[ReservationResponse]] = {
    ReservationKind.BOOKING: BookingResponse,
    ReservationKind.APPOINTMENT: AppointmentResponse,
}


def serialize(kind: ReservationKind, record) -> ReservationResponse:
    return RESPONSE_MODELS[kind].model_validate(record, from_attributes=True)


async def release_slot(reservation: ReservationResponse) -> None:
    """Drop the cached booked ranges an appointment change affects."""
    if isinstance(reservation, AppointmentResponse):
        await invalidate_slots_cache(reservation.listing_id, reservation.appointment_date)


def build_customer_routes(kind: ReservationKind) -> APIRouter:
    router = APIRouter()
    model = RESPONSE_MODELS[kind]
    title = kind.capitalize()

    @router.get("/{reservation_id}", response_model=ApiResponse[model])
    async def get_reservation(
        reservation_id: UUID,
        current_user: CurrentUser = Depends(can_read_booking),
    ):
        record = await reservation_manager.get_for_user(kind, reservation_id, current_user.id)
        return ApiResponse(data=serialize(kind, record))

    @router.patch("/{reservation_id}/cancel", response_model=ApiResponse[model])
    async def cancel_reservation(
        reservation_id: UUID,
        payload: CancelRequest,
        current_user: CurrentUser = Depends(can_cancel_booking),
    ):
        record = await reservation_manager.cancel_by_user(
            kind, reservation_id, current_user.id, payload.cancellation_reason
        )
        data = serialize(kind, record)
        await release_slot(data)
        return ApiResponse(message=f"{title} cancelled successfully", data=data)

    @router.post(
        "/{reservation_id}/review",
        response_model=ApiResponse[ReviewResponse],
        status_code=status.HTTP_201_CREATED,
    )
    async def review_reservation(
        reservation_id: UUID,
        payload: ReviewCreate,
        current_user: CurrentUser = Depends(can_review_booking),
        catalog: CatalogClient = Depends(get_catalog_client),
    ):
        review = await reservation_manager.review(
            kind, reservation_id, current_user.id, payload, catalog=catalog
        )
        return ApiResponse(
            message="Review submitted successfully",
            data=ReviewResponse.model_validate(review, from_attributes=True),
        )

    @router.get("/{reservation_id}/checkout-session", response_model=ApiResponse[ClientSecret])
    async def checkout_session(
        reservation_id: UUID,
        current_user: CurrentUser = Depends(can_pay_booking),
    ):
        intent = await reservation_manager.checkout_session(
            kind, reservation_id, current_user.id
        )
        return ApiResponse(
            data=ClientSecret(
                client_secret=intent.client_secret,
                status=intent.status,
                amount=intent.amount,
            )
        )

    @router.get("/{reservation_id}/due/intent", response_model=ApiResponse[ClientSecret])
    async def due_intent(
        reservation_id: UUID,
        current_user: CurrentUser = Depends(can_pay_booking),
    ):
        intent = await reservation_manager.due_intent(kind, reservation_id, current_user.id)
        return ApiResponse(
            data=ClientSecret(
                client_secret=intent.client_secret,
                status=intent.status,
                amount=intent.amount,
            )
        )

    @router.post("/{reservation_id}/due/confirm", response_model=ApiResponse[model])
    async def confirm_due(
        reservation_id: UUID,
        current_user: CurrentUser = Depends(can_pay_booking),
    ):
        record = await reservation_manager.confirm_due(kind, reservation_id, current_user.id)
        return ApiResponse(message="Payment completed", data=serialize(kind, record))

    @router.get(
        "/{reservation_id}/payment-status", response_model=ApiResponse[PaymentStatusView]
    )
    async def payment_status(
        reservation_id: UUID,
        current_user: CurrentUser = Depends(can_read_booking),
    ):
        record = await reservation_manager.payment_status(
            kind, reservation_id, current_user.id
        )
        return ApiResponse(
            data=PaymentStatusView.model_validate(record, from_attributes=True)
        )

    return router
