from uuid import UUID

from fastapi import APIRouter, Depends

from app.deps import (
    CatalogClient,
    can_admin_read_booking,
    can_admin_write_booking,
    can_moderate_reviews,
    get_catalog_client,
)
from app.lifecycle import reservation_manager
from app.routers.reservations import KindPath, release_slot, serialize
from app.schemas import (
    ApiResponse,
    AppointmentResponse,
    BookingResponse,
    CancelRequest,
    HideReview,
    Page,
    ReservationFilters,
    ReviewResponse,
)

router = APIRouter(prefix="/admin", tags=["admin"])

AnyReservation = BookingResponse | AppointmentResponse


@router.get(
    "/{kinds}",
    response_model=ApiResponse[Page[AnyReservation]],
    dependencies=[Depends(can_admin_read_booking)],
)
async def list_all(
    kinds: KindPath,
    filters: ReservationFilters = Depends(),
) -> ApiResponse[Page[AnyReservation]]:
    page = await reservation_manager.list(kinds.kind, filters)
    items = [serialize(kinds.kind, r) for r in page.items]
    return ApiResponse(data=page.model_copy(update={"items": items}))


@router.get(
    "/{kinds}/{reservation_id}",
    response_model=ApiResponse[AnyReservation],
    dependencies=[Depends(can_admin_read_booking)],
)
async def get_any(kinds: KindPath, reservation_id: UUID) -> ApiResponse[AnyReservation]:
    record = await reservation_manager.get(kinds.kind, reservation_id)
    return ApiResponse(data=serialize(kinds.kind, record))


@router.patch(
    "/{kinds}/{reservation_id}/cancel",
    response_model=ApiResponse[AnyReservation],
    dependencies=[Depends(can_admin_write_booking)],
)
async def cancel_any(
    kinds: KindPath, reservation_id: UUID, payload: CancelRequest
) -> ApiResponse[AnyReservation]:
    record = await reservation_manager.cancel_by_admin(
        kinds.kind, reservation_id, payload.cancellation_reason
    )
    data = serialize(kinds.kind, record)
    await release_slot(data)
    return ApiResponse(message=f"{kinds.kind.capitalize()} cancelled by admin", data=data)


@router.post(
    "/{kinds}/{reservation_id}/void-payment",
    response_model=ApiResponse[AnyReservation],
    dependencies=[Depends(can_admin_write_booking)],
)
async def void_payment(kinds: KindPath, reservation_id: UUID) -> ApiResponse[AnyReservation]:
    record = await reservation_manager.void_payment(kinds.kind, reservation_id)
    return ApiResponse(message="Payment voided", data=serialize(kinds.kind, record))


@router.patch(
    "/reviews/{review_id}/hide",
    response_model=ApiResponse[ReviewResponse],
    dependencies=[Depends(can_moderate_reviews)],
)
async def hide_review(
    review_id: UUID,
    payload: HideReview,
    catalog: CatalogClient = Depends(get_catalog_client),
) -> ApiResponse[ReviewResponse]:
    review = await reservation_manager.hide_review(review_id, payload.reason, catalog=catalog)
    return ApiResponse(
        message="Review hidden",
        data=ReviewResponse.model_validate(review, from_attributes=True),
    )
