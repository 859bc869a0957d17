"""Stripe webhook endpoint: signature checks and forwarding of PaymentIntent events."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
import stripe

from app import settings
from app.payments import ProcessorIntent

from .factories import BOOKING_ID

MANAGER_PATH = "app.routers.webhooks.reservation_manager"
CONSTRUCT_PATH = "app.routers.webhooks.stripe.Webhook.construct_event"


def _event(event_type: str, status: str = "succeeded") -> dict:
    return {
        "type": event_type,
        "data": {
            "object": {
                "id": "pi_1",
                "client_secret": "pi_1_secret",
                "status": status,
                "amount": 3000,
                "metadata": {
                    "reservation_id": str(BOOKING_ID),
                    "reservation_kind": "booking",
                    "intent_kind": "down",
                },
            }
        },
    }


@pytest.fixture(autouse=True)
def webhook_secret():
    with patch.object(settings, "stripe_webhook_secret", "whsec_test"):
        yield


class TestStripeWebhook:
    def test_succeeded_event_forwarded(self, customer_client):
        with (
            patch(CONSTRUCT_PATH, return_value=_event("payment_intent.succeeded")),
            patch(MANAGER_PATH) as mock_manager,
        ):
            mock_manager.apply_processor_event = AsyncMock(return_value=None)
            resp = customer_client.post(
                "/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"}
            )
        assert resp.status_code == 200
        assert resp.json()["message"] == "received"
        (intent,) = mock_manager.apply_processor_event.call_args[0]
        assert intent == ProcessorIntent(
            id="pi_1",
            client_secret="pi_1_secret",
            status="succeeded",
            amount=Decimal("30.00"),
            metadata={
                "reservation_id": str(BOOKING_ID),
                "reservation_kind": "booking",
                "intent_kind": "down",
            },
        )

    def test_signature_passed_to_stripe(self, customer_client):
        with (
            patch(CONSTRUCT_PATH, return_value=_event("payment_intent.succeeded")) as construct,
            patch(MANAGER_PATH) as mock_manager,
        ):
            mock_manager.apply_processor_event = AsyncMock(return_value=None)
            customer_client.post(
                "/webhooks/stripe", content=b"raw-body", headers={"Stripe-Signature": "sig"}
            )
        construct.assert_called_once_with(b"raw-body", "sig", "whsec_test")

    def test_unhandled_event_ignored(self, customer_client):
        with (
            patch(CONSTRUCT_PATH, return_value=_event("customer.created")),
            patch(MANAGER_PATH) as mock_manager,
        ):
            mock_manager.apply_processor_event = AsyncMock()
            resp = customer_client.post("/webhooks/stripe", content=b"{}")
        assert resp.status_code == 200
        assert resp.json()["message"] == "ignored"
        mock_manager.apply_processor_event.assert_not_awaited()

    def test_bad_signature_returns_400(self, customer_client):
        error = stripe.SignatureVerificationError("bad signature", "sig")
        with patch(CONSTRUCT_PATH, side_effect=error):
            resp = customer_client.post(
                "/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "sig"}
            )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_argument"

    def test_unparseable_payload_returns_400(self, customer_client):
        with patch(CONSTRUCT_PATH, side_effect=ValueError("not json")):
            resp = customer_client.post("/webhooks/stripe", content=b"not json")
        assert resp.status_code == 400

    def test_missing_secret_returns_402(self, customer_client):
        with patch.object(settings, "stripe_webhook_secret", ""):
            resp = customer_client.post("/webhooks/stripe", content=b"{}")
        assert resp.status_code == 402
        assert resp.json()["error"]["code"] == "processor_error"
