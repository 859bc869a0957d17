"""
Full endpoint test suite for /bookings.

Testing strategy:
  - Auth/scope deps are overridden via conftest.build_app()
  - ReservationManager methods are patched per-test with AsyncMock (no DB)
  - CatalogClient is injected as a mock via client_factory(..., catalog_client=mock_cc)
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi.testclient import TestClient

from app.errors import Conflict, Gone, NotFound, StateInvalid, Unauthorized, WrongKind
from app.models import CancelledBy, ReservationKind
from app.payments import ProcessorIntent
from app.pricing import PriceBreakdown
from app.schemas import Page

from .factories import (
    BOOKING_ID,
    CUSTOMER_ID,
    LISTING_ID,
    booking_create_payload,
    booking_response,
    make_customer,
    make_listing,
    review_response,
)

MANAGER_PATH = "app.routers.bookings.reservation_manager"
SHARED_MANAGER_PATH = "app.routers.reservations.reservation_manager"


def _mock_cc(listing=None) -> MagicMock:
    mock_cc = MagicMock()
    mock_cc.get_listing = AsyncMock(return_value=listing)
    mock_cc.update_listing_rating = AsyncMock(return_value=True)
    mock_cc.update_provider_rating = AsyncMock(return_value=True)
    return mock_cc


# ---------------------------------------------------------------------------
# POST /bookings
# ---------------------------------------------------------------------------


class TestCreateBooking:
    def test_success_returns_201_with_breakdown(self, client_factory):
        client = client_factory(make_customer(), catalog_client=_mock_cc(make_listing()))
        with patch(MANAGER_PATH) as mock_manager:
            mock_manager.create_booking = AsyncMock(
                return_value=(
                    booking_response(),
                    PriceBreakdown.from_total(Decimal("100.00")),
                )
            )
            resp = client.post("/bookings/", json=booking_create_payload())
        assert resp.status_code == 201
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["booking"]["id"] == str(BOOKING_ID)
        assert body["data"]["payment"] == {
            "total_amount": "100.00",
            "down_payment": "30.00",
            "platform_fee": "10.00",
            "provider_payout_from_down_payment": "20.00",
            "due_amount": "70.00",
        }

    def test_listing_fetched_from_catalog(self, client_factory):
        mock_cc = _mock_cc(make_listing())
        client = client_factory(make_customer(), catalog_client=mock_cc)
        with patch(MANAGER_PATH) as mock_manager:
            mock_manager.create_booking = AsyncMock(
                return_value=(booking_response(), PriceBreakdown.from_total(Decimal("100")))
            )
            client.post("/bookings/", json=booking_create_payload())
        mock_cc.get_listing.assert_awaited_once()
        assert mock_cc.get_listing.call_args[0][0] == LISTING_ID
        user_id, listing, payload = mock_manager.create_booking.call_args[0]
        assert user_id == CUSTOMER_ID
        assert listing.id == LISTING_ID
        assert payload.booking_date.tzinfo is not None

    def test_unknown_listing_returns_404(self, client_factory):
        client = client_factory(make_customer(), catalog_client=_mock_cc(None))
        with patch(MANAGER_PATH) as mock_manager:
            mock_manager.create_booking = AsyncMock(side_effect=NotFound("Service not found"))
            resp = client.post("/bookings/", json=booking_create_payload())
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_inactive_listing_returns_410(self, client_factory):
        client = client_factory(make_customer(), catalog_client=_mock_cc(make_listing()))
        with patch(MANAGER_PATH) as mock_manager:
            mock_manager.create_booking = AsyncMock(side_effect=Gone("gone"))
            resp = client.post("/bookings/", json=booking_create_payload())
        assert resp.status_code == 410

    def test_appointment_listing_returns_400_wrong_kind(self, client_factory):
        client = client_factory(make_customer(), catalog_client=_mock_cc(make_listing()))
        with patch(MANAGER_PATH) as mock_manager:
            mock_manager.create_booking = AsyncMock(
                side_effect=WrongKind("This service requires an appointment")
            )
            resp = client.post("/bookings/", json=booking_create_payload())
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "wrong_kind"

    def test_missing_booking_date_returns_422(self, customer_client):
        payload = booking_create_payload()
        del payload["booking_date"]
        resp = customer_client.post("/bookings/", json=payload)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "invalid_argument"

    def test_notes_too_long_returns_422(self, customer_client):
        resp = customer_client.post(
            "/bookings/", json=booking_create_payload(user_notes="x" * 501)
        )
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# GET /bookings/my-bookings
# ---------------------------------------------------------------------------


class TestMyBookings:
    def test_lists_own_bookings(self, customer_client):
        page = Page(items=[booking_response()], total=1, page=1, limit=10, total_pages=1)
        with patch(MANAGER_PATH) as mock_manager:
            mock_manager.list = AsyncMock(return_value=page)
            resp = customer_client.get("/bookings/my-bookings")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["total"] == 1
        assert data["items"][0]["id"] == str(BOOKING_ID)
        args, kwargs = mock_manager.list.call_args
        assert args[0] == ReservationKind.BOOKING
        assert kwargs["user_id"] == CUSTOMER_ID

    def test_status_and_pagination_forwarded(self, customer_client):
        page = Page(items=[], total=0, page=2, limit=5, total_pages=0)
        with patch(MANAGER_PATH) as mock_manager:
            mock_manager.list = AsyncMock(return_value=page)
            resp = customer_client.get(
                "/bookings/my-bookings", params={"status": "confirmed", "page": 2, "limit": 5}
            )
        assert resp.status_code == 200
        filters = mock_manager.list.call_args[0][1]
        assert (filters.status, filters.page, filters.limit) == ("confirmed", 2, 5)

    def test_limit_above_100_rejected(self, customer_client):
        resp = customer_client.get("/bookings/my-bookings", params={"limit": 101})
        assert resp.status_code == 422

    def test_no_relevant_scope_returns_403(self, anon_app):
        from app.deps import get_current_user

        async def _no_scope_user():
            return make_customer(scopes=["services:read"])

        anon_app.dependency_overrides[get_current_user] = _no_scope_user
        with TestClient(anon_app) as c:
            resp = c.get("/bookings/my-bookings")
        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# GET /bookings/{id}
# ---------------------------------------------------------------------------


class TestGetBooking:
    def test_owner_gets_booking(self, customer_client):
        with patch(SHARED_MANAGER_PATH) as mock_manager:
            mock_manager.get_for_user = AsyncMock(return_value=booking_response())
            resp = customer_client.get(f"/bookings/{BOOKING_ID}")
        assert resp.status_code == 200
        assert resp.json()["data"]["total_amount"] == "100.00"
        mock_manager.get_for_user.assert_awaited_once_with(
            ReservationKind.BOOKING, BOOKING_ID, CUSTOMER_ID
        )

    def test_other_users_booking_returns_403(self, customer_client):
        with patch(SHARED_MANAGER_PATH) as mock_manager:
            mock_manager.get_for_user = AsyncMock(side_effect=Unauthorized("nope"))
            resp = customer_client.get(f"/bookings/{BOOKING_ID}")
        assert resp.status_code == 403

    def test_invalid_uuid_returns_422(self, customer_client):
        resp = customer_client.get("/bookings/not-a-uuid")
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# PATCH /bookings/{id}/cancel
# ---------------------------------------------------------------------------


class TestCancelBooking:
    def test_cancel(self, customer_client):
        cancelled = booking_response(
            status="cancelled", cancelled_by="user", cancellation_reason="plans changed"
        )
        with patch(SHARED_MANAGER_PATH) as mock_manager:
            mock_manager.cancel_by_user = AsyncMock(return_value=cancelled)
            resp = customer_client.patch(
                f"/bookings/{BOOKING_ID}/cancel",
                json={"cancellation_reason": "plans changed"},
            )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["status"] == "cancelled"
        assert data["cancelled_by"] == CancelledBy.USER
        # monetary fields are untouched by cancellation
        assert data["total_amount"] == "100.00"
        mock_manager.cancel_by_user.assert_awaited_once_with(
            ReservationKind.BOOKING, BOOKING_ID, CUSTOMER_ID, "plans changed"
        )

    def test_cancel_completed_returns_400(self, customer_client):
        with patch(SHARED_MANAGER_PATH) as mock_manager:
            mock_manager.cancel_by_user = AsyncMock(side_effect=StateInvalid("terminal"))
            resp = customer_client.patch(f"/bookings/{BOOKING_ID}/cancel", json={})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "state_invalid"


# ---------------------------------------------------------------------------
# POST /bookings/{id}/review
# ---------------------------------------------------------------------------


class TestReviewBooking:
    def test_review_returns_201(self, client_factory):
        mock_cc = _mock_cc()
        client = client_factory(make_customer(), catalog_client=mock_cc)
        with patch(SHARED_MANAGER_PATH) as mock_manager:
            mock_manager.review = AsyncMock(return_value=review_response())
            resp = client.post(
                f"/bookings/{BOOKING_ID}/review",
                json={"rating": 5, "comment": "  Spotless, thank you  "},
            )
        assert resp.status_code == 201
        assert resp.json()["data"]["rating"] == 5
        kind, reservation_id, user_id, payload = mock_manager.review.call_args[0]
        assert (kind, reservation_id, user_id) == (
            ReservationKind.BOOKING,
            BOOKING_ID,
            CUSTOMER_ID,
        )
        assert payload.comment == "Spotless, thank you"
        assert mock_manager.review.call_args.kwargs["catalog"] is mock_cc

    def test_rating_out_of_range_returns_422(self, customer_client):
        resp = customer_client.post(
            f"/bookings/{BOOKING_ID}/review", json={"rating": 6, "comment": "great"}
        )
        assert resp.status_code == 422

    def test_blank_comment_returns_422(self, customer_client):
        resp = customer_client.post(
            f"/bookings/{BOOKING_ID}/review", json={"rating": 4, "comment": "   "}
        )
        assert resp.status_code == 422

    def test_second_review_returns_400(self, customer_client):
        with patch(SHARED_MANAGER_PATH) as mock_manager:
            mock_manager.review = AsyncMock(side_effect=StateInvalid("Already reviewed"))
            resp = customer_client.post(
                f"/bookings/{BOOKING_ID}/review", json={"rating": 4, "comment": "ok"}
            )
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Payment routes
# ---------------------------------------------------------------------------


class TestPaymentRoutes:
    def test_checkout_session_returns_client_secret(self, customer_client):
        intent = ProcessorIntent(
            id="pi_1", client_secret="pi_1_secret", status="requires_payment_method",
            amount=Decimal("30.00"),
        )
        with patch(SHARED_MANAGER_PATH) as mock_manager:
            mock_manager.checkout_session = AsyncMock(return_value=intent)
            resp = customer_client.get(f"/bookings/{BOOKING_ID}/checkout-session")
        assert resp.status_code == 200
        assert resp.json()["data"] == {
            "client_secret": "pi_1_secret",
            "status": "requires_payment_method",
            "amount": "30.00",
        }

    def test_due_intent_before_request_returns_400(self, customer_client):
        from app.errors import InvalidArgument

        with patch(SHARED_MANAGER_PATH) as mock_manager:
            mock_manager.due_intent = AsyncMock(
                side_effect=InvalidArgument("Due payment has not been requested")
            )
            resp = customer_client.get(f"/bookings/{BOOKING_ID}/due/intent")
        assert resp.status_code == 400

    def test_confirm_due(self, customer_client):
        paid = booking_response(
            payment_status="completed", paid_via="online", remaining_amount=Decimal("0.00")
        )
        with patch(SHARED_MANAGER_PATH) as mock_manager:
            mock_manager.confirm_due = AsyncMock(return_value=paid)
            resp = customer_client.post(f"/bookings/{BOOKING_ID}/due/confirm")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["payment_status"] == "completed"
        assert data["remaining_amount"] == "0.00"

    def test_payment_status(self, customer_client):
        with patch(SHARED_MANAGER_PATH) as mock_manager:
            mock_manager.payment_status = AsyncMock(
                return_value=booking_response(payment_status="partial")
            )
            resp = customer_client.get(f"/bookings/{BOOKING_ID}/payment-status")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["payment_status"] == "partial"
        assert data["due_amount"] == "70.00"

    def test_concurrent_transition_surfaces_as_400(self, customer_client):
        with patch(SHARED_MANAGER_PATH) as mock_manager:
            mock_manager.confirm_due = AsyncMock(
                side_effect=StateInvalid("Booking was modified concurrently, please retry")
            )
            resp = customer_client.post(f"/bookings/{BOOKING_ID}/due/confirm")
        assert resp.status_code == 400

    def test_conflict_error_shape(self, customer_client):
        with patch(SHARED_MANAGER_PATH) as mock_manager:
            mock_manager.get_for_user = AsyncMock(side_effect=Conflict("taken"))
            resp = customer_client.get(f"/bookings/{BOOKING_ID}")
        assert resp.status_code == 409
        assert resp.json() == {
            "success": False,
            "message": "taken",
            "error": {"code": "conflict"},
        }
