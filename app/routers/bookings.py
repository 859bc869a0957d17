from fastapi import APIRouter, Depends, status

from app.deps import (
    CatalogClient,
    CurrentUser,
    can_read_booking,
    can_write_booking,
    get_catalog_client,
)
from app.lifecycle import reservation_manager
from app.models import ReservationKind
from app.routers.reservations import build_customer_routes
from app.schemas import (
    ApiResponse,
    BookingCreate,
    BookingCreated,
    BookingResponse,
    Page,
    ReservationFilters,
)

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post(
    "/",
    response_model=ApiResponse[BookingCreated],
    status_code=status.HTTP_201_CREATED,
)
async def create_booking(
    payload: BookingCreate,
    current_user: CurrentUser = Depends(can_write_booking),
    catalog: CatalogClient = Depends(get_catalog_client),
) -> ApiResponse[BookingCreated]:
    listing = await catalog.get_listing(payload.service_id, current_user)
    booking, breakdown = await reservation_manager.create_booking(
        current_user.id, listing, payload
    )
    return ApiResponse(
        message="Booking created successfully",
        data=BookingCreated(
            booking=BookingResponse.model_validate(booking, from_attributes=True),
            payment=breakdown.to_schema(),
        ),
    )


@router.get("/my-bookings", response_model=ApiResponse[Page[BookingResponse]])
async def my_bookings(
    filters: ReservationFilters = Depends(),
    current_user: CurrentUser = Depends(can_read_booking),
) -> ApiResponse[Page[BookingResponse]]:
    page = await reservation_manager.list(
        ReservationKind.BOOKING, filters, user_id=current_user.id
    )
    items = [BookingResponse.model_validate(b, from_attributes=True) for b in page.items]
    return ApiResponse(data=page.model_copy(update={"items": items}))


router.include_router(build_customer_routes(ReservationKind.BOOKING))
