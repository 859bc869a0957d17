from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from loguru import logger

from app.cache import get_slots_cache, invalidate_slots_cache, set_slots_cache
from app.deps import (
    CatalogClient,
    CurrentUser,
    can_read_booking,
    can_write_booking,
    get_catalog_client,
    get_optional_user,
)
from app.lifecycle import reservation_manager
from app.models import ReservationKind
from app.routers.reservations import build_customer_routes
from app.schemas import (
    ApiResponse,
    AppointmentCreate,
    AppointmentReschedule,
    AppointmentResponse,
    AvailableSlots,
    Page,
    ReservationFilters,
    TimeRange,
)

router = APIRouter(prefix="/appointments", tags=["appointments"])


@router.post(
    "/",
    response_model=ApiResponse[AppointmentResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_appointment(
    payload: AppointmentCreate,
    current_user: CurrentUser = Depends(can_write_booking),
    catalog: CatalogClient = Depends(get_catalog_client),
) -> ApiResponse[AppointmentResponse]:
    listing = await catalog.get_listing(payload.service_id, current_user)
    appointment, _ = await reservation_manager.create_appointment(
        current_user.id, listing, payload
    )
    await invalidate_slots_cache(payload.service_id, payload.appointment_date)
    return ApiResponse(
        message="Appointment created successfully",
        data=AppointmentResponse.model_validate(appointment, from_attributes=True),
    )


@router.get("/my-appointments", response_model=ApiResponse[Page[AppointmentResponse]])
async def my_appointments(
    filters: ReservationFilters = Depends(),
    current_user: CurrentUser = Depends(can_read_booking),
) -> ApiResponse[Page[AppointmentResponse]]:
    page = await reservation_manager.list(
        ReservationKind.APPOINTMENT, filters, user_id=current_user.id
    )
    items = [
        AppointmentResponse.model_validate(a, from_attributes=True) for a in page.items
    ]
    return ApiResponse(data=page.model_copy(update={"items": items}))


@router.get("/available-slots/{service_id}", response_model=ApiResponse[AvailableSlots])
async def available_slots(
    service_id: UUID,
    day: date = Query(alias="date"),
    current_user: CurrentUser | None = Depends(get_optional_user),
    catalog: CatalogClient = Depends(get_catalog_client),
) -> ApiResponse[AvailableSlots]:
    """
    Slot templates plus the time ranges already held on ``date``.
    Public; the response contains NO user identity.
    """
    listing = await catalog.get_listing(service_id, current_user)

    cached = await get_slots_cache(service_id, day)
    if cached is not None:
        logger.debug("Cache hit for slots: listing_id={} day={}", service_id, day)
        booked = [TimeRange(**r) for r in cached]
        return ApiResponse(
            data=await reservation_manager.available_slots(listing, day, booked=booked)
        )

    logger.debug("Cache miss for slots: listing_id={} day={}", service_id, day)
    slots = await reservation_manager.available_slots(listing, day)
    await set_slots_cache(
        service_id, day, [r.model_dump(mode="json") for r in slots.booked]
    )
    return ApiResponse(data=slots)


@router.patch("/{appointment_id}/reschedule", response_model=ApiResponse[AppointmentResponse])
async def reschedule_appointment(
    appointment_id: UUID,
    payload: AppointmentReschedule,
    current_user: CurrentUser = Depends(can_write_booking),
) -> ApiResponse[AppointmentResponse]:
    previous = AppointmentResponse.model_validate(
        await reservation_manager.get_for_user(
            ReservationKind.APPOINTMENT, appointment_id, current_user.id
        ),
        from_attributes=True,
    )
    appointment = await reservation_manager.reschedule(
        appointment_id, current_user.id, payload
    )
    await invalidate_slots_cache(
        previous.listing_id, previous.appointment_date, payload.appointment_date
    )
    return ApiResponse(
        message="Appointment rescheduled, awaiting provider confirmation",
        data=AppointmentResponse.model_validate(appointment, from_attributes=True),
    )


router.include_router(build_customer_routes(ReservationKind.APPOINTMENT))
