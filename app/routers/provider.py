from uuid import UUID

from fastapi import APIRouter, Depends

from app.cache import invalidate_slots_cache
from app.deps import (
    CurrentUser,
    UsersClient,
    can_manage_booking,
    get_current_provider_id,
    get_users_client,
)
from app.lifecycle import reservation_manager
from app.models import ReservationKind
from app.routers.reservations import KindPath, release_slot, serialize
from app.schemas import (
    ApiResponse,
    AppointmentResponse,
    BookingResponse,
    CancelRequest,
    ConfirmRequest,
    Page,
    ProviderReschedule,
    ProviderStats,
    ReservationFilters,
    ReservationResponse,
)

router = APIRouter(prefix="/providers", tags=["providers"])

AnyReservation = BookingResponse | AppointmentResponse


# ---------------------------------------------------------------------------
# Enrichment helper
# ---------------------------------------------------------------------------


async def _enrich(
    reservations: list[ReservationResponse],
    current_user: CurrentUser,
    users_client: UsersClient,
) -> list[ReservationResponse]:
    """
    Attach the customer's username and full name to each reservation.
    Degrades gracefully: enriched fields stay None when users-ms fails.
    """
    if not reservations:
        return []

    users_raw = await users_client.get_by_ids({r.user_id for r in reservations}, current_user)
    user_map: dict[str, dict] = {
        u["id"]: {"username": u.get("username"), "full_name": u.get("full_name")}
        for u in users_raw
    }

    result = []
    for r in reservations:
        customer = user_map.get(str(r.user_id), {})
        result.append(
            r.model_copy(
                update={
                    "customer_username": customer.get("username"),
                    "customer_full_name": customer.get("full_name"),
                }
            )
        )
    return result


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/stats", response_model=ApiResponse[ProviderStats])
async def provider_stats(
    provider_id: UUID = Depends(get_current_provider_id),
) -> ApiResponse[ProviderStats]:
    return ApiResponse(data=await reservation_manager.provider_stats(provider_id))


@router.get("/{kinds}", response_model=ApiResponse[Page[AnyReservation]])
async def list_reservations(
    kinds: KindPath,
    filters: ReservationFilters = Depends(),
    provider_id: UUID = Depends(get_current_provider_id),
    current_user: CurrentUser = Depends(can_manage_booking),
    users_client: UsersClient = Depends(get_users_client),
) -> ApiResponse[Page[AnyReservation]]:
    page = await reservation_manager.list(kinds.kind, filters, provider_id=provider_id)
    items = await _enrich(
        [serialize(kinds.kind, r) for r in page.items], current_user, users_client
    )
    return ApiResponse(data=page.model_copy(update={"items": items}))


@router.get("/{kinds}/{reservation_id}", response_model=ApiResponse[AnyReservation])
async def get_reservation(
    kinds: KindPath,
    reservation_id: UUID,
    provider_id: UUID = Depends(get_current_provider_id),
    current_user: CurrentUser = Depends(can_manage_booking),
    users_client: UsersClient = Depends(get_users_client),
) -> ApiResponse[AnyReservation]:
    record = await reservation_manager.get_for_provider(
        kinds.kind, reservation_id, provider_id
    )
    (data,) = await _enrich([serialize(kinds.kind, record)], current_user, users_client)
    return ApiResponse(data=data)


@router.patch("/{kinds}/{reservation_id}/confirm", response_model=ApiResponse[AnyReservation])
async def confirm_reservation(
    kinds: KindPath,
    reservation_id: UUID,
    payload: ConfirmRequest | None = None,
    provider_id: UUID = Depends(get_current_provider_id),
) -> ApiResponse[AnyReservation]:
    record = await reservation_manager.confirm(
        kinds.kind,
        reservation_id,
        provider_id,
        provider_notes=payload.provider_notes if payload else None,
    )
    return ApiResponse(
        message=f"{kinds.kind.capitalize()} confirmed", data=serialize(kinds.kind, record)
    )


@router.patch("/{kinds}/{reservation_id}/reject", response_model=ApiResponse[AnyReservation])
async def reject_reservation(
    kinds: KindPath,
    reservation_id: UUID,
    payload: CancelRequest,
    provider_id: UUID = Depends(get_current_provider_id),
) -> ApiResponse[AnyReservation]:
    record = await reservation_manager.reject(
        kinds.kind, reservation_id, provider_id, payload.cancellation_reason
    )
    data = serialize(kinds.kind, record)
    await release_slot(data)
    return ApiResponse(message=f"{kinds.kind.capitalize()} rejected", data=data)


@router.patch("/{kinds}/{reservation_id}/start", response_model=ApiResponse[AnyReservation])
async def start_reservation(
    kinds: KindPath,
    reservation_id: UUID,
    provider_id: UUID = Depends(get_current_provider_id),
) -> ApiResponse[AnyReservation]:
    record = await reservation_manager.start(kinds.kind, reservation_id, provider_id)
    return ApiResponse(
        message=f"{kinds.kind.capitalize()} started", data=serialize(kinds.kind, record)
    )


@router.patch(
    "/{kinds}/{reservation_id}/complete", response_model=ApiResponse[AnyReservation]
)
async def complete_reservation(
    kinds: KindPath,
    reservation_id: UUID,
    provider_id: UUID = Depends(get_current_provider_id),
) -> ApiResponse[AnyReservation]:
    record = await reservation_manager.complete(kinds.kind, reservation_id, provider_id)
    data = serialize(kinds.kind, record)
    await release_slot(data)
    return ApiResponse(message=f"{kinds.kind.capitalize()} completed", data=data)


@router.patch("/{kinds}/{reservation_id}/cancel", response_model=ApiResponse[AnyReservation])
async def cancel_reservation(
    kinds: KindPath,
    reservation_id: UUID,
    payload: CancelRequest,
    provider_id: UUID = Depends(get_current_provider_id),
) -> ApiResponse[AnyReservation]:
    record = await reservation_manager.cancel_by_provider(
        kinds.kind, reservation_id, provider_id, payload.cancellation_reason
    )
    data = serialize(kinds.kind, record)
    await release_slot(data)
    return ApiResponse(message=f"{kinds.kind.capitalize()} cancelled", data=data)


@router.post(
    "/{kinds}/{reservation_id}/request-due", response_model=ApiResponse[AnyReservation]
)
async def request_due_payment(
    kinds: KindPath,
    reservation_id: UUID,
    provider_id: UUID = Depends(get_current_provider_id),
) -> ApiResponse[AnyReservation]:
    record = await reservation_manager.request_due(kinds.kind, reservation_id, provider_id)
    return ApiResponse(
        message="Due payment requested from the customer",
        data=serialize(kinds.kind, record),
    )


@router.post(
    "/{kinds}/{reservation_id}/mark-offline-paid",
    response_model=ApiResponse[AnyReservation],
)
async def mark_offline_paid(
    kinds: KindPath,
    reservation_id: UUID,
    provider_id: UUID = Depends(get_current_provider_id),
) -> ApiResponse[AnyReservation]:
    record = await reservation_manager.mark_offline_paid(
        kinds.kind, reservation_id, provider_id
    )
    return ApiResponse(
        message="Due amount marked as paid offline", data=serialize(kinds.kind, record)
    )


@router.patch(
    "/appointments/{appointment_id}/reschedule",
    response_model=ApiResponse[AppointmentResponse],
)
async def reschedule_appointment(
    appointment_id: UUID,
    payload: ProviderReschedule,
    provider_id: UUID = Depends(get_current_provider_id),
) -> ApiResponse[AppointmentResponse]:
    previous = serialize(
        ReservationKind.APPOINTMENT,
        await reservation_manager.get_for_provider(
            ReservationKind.APPOINTMENT, appointment_id, provider_id
        ),
    )
    appointment = await reservation_manager.provider_reschedule(
        appointment_id, provider_id, payload
    )
    await invalidate_slots_cache(
        previous.listing_id, previous.appointment_date, payload.appointment_date
    )
    return ApiResponse(
        message="Appointment rescheduled",
        data=serialize(ReservationKind.APPOINTMENT, appointment),
    )
