"""
Payment coordination: down-payment and due intents on the external processor.

The coordinator holds no state of its own. Each operation checks its
precondition against the reservation, talks to the processor, and returns the
column changes to persist; the reservation manager applies them with a
compare-and-set so concurrent callers cannot both commit.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from enum import StrEnum
from functools import lru_cache
from typing import Any, Protocol

import stripe
from loguru import logger

from app import settings
from app.errors import InvalidArgument, ProcessorError, StateInvalid, Transient
from app.models import PaidVia, PaymentStatus, Reservation, ReservationStatus, utcnow

CENT = Decimal("0.01")
# Zero-amount intents never reach the processor; the id is recorded so that
# status tracking is the same as for paid reservations.
ZERO_INTENT_PREFIX = "zero_"


class IntentKind(StrEnum):
    DOWN = "down"
    DUE = "due"


class IntentStatus(StrEnum):
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    REQUIRES_CAPTURE = "requires_capture"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"


# Reservation states from which the provider may collect the due amount
DUE_COLLECTABLE_STATUSES = (ReservationStatus.IN_PROGRESS, ReservationStatus.COMPLETED)
SETTLED_PAYMENT_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.OFFLINE_PAID)


@dataclass(frozen=True)
class ProcessorIntent:
    id: str
    client_secret: str | None
    status: str
    amount: Decimal | None = None
    metadata: dict[str, str] = field(default_factory=dict)


class PaymentProcessor(Protocol):
    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ProcessorIntent: ...

    async def retrieve_intent(self, intent_id: str) -> ProcessorIntent: ...

    async def cancel_intent(self, intent_id: str) -> ProcessorIntent: ...


def to_minor_units(amount: Decimal) -> int:
    return int((amount / CENT).to_integral_value())


def from_minor_units(amount: int | None) -> Decimal | None:
    if amount is None:
        return None
    return (Decimal(amount) * CENT).quantize(CENT)


class StripeProcessor:
    """PaymentProcessor backed by Stripe PaymentIntents over its async httpx transport."""

    def __init__(self, api_key: str, timeout: float) -> None:
        self._timeout = timeout
        self._client = stripe.StripeClient(
            api_key,
            http_client=stripe.HTTPXClient(timeout=timeout),
            max_network_retries=0,
        )

    async def _call(self, coro) -> ProcessorIntent:
        try:
            intent = await asyncio.wait_for(coro, timeout=self._timeout)
        except TimeoutError:
            raise Transient("Payment processor timed out, please retry") from None
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            raise Transient("Payment processor unavailable, please retry") from exc
        except stripe.StripeError as exc:
            failed = getattr(exc, "error", None)
            failed_intent = getattr(failed, "payment_intent", None) if failed else None
            raise ProcessorError(
                exc.user_message or "Payment processor rejected the request",
                processor_status=failed_intent.get("status") if failed_intent else None,
            ) from exc
        return ProcessorIntent(
            id=intent.id,
            client_secret=intent.client_secret,
            status=intent.status,
            amount=from_minor_units(intent.amount),
            metadata=dict(intent.metadata or {}),
        )

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ProcessorIntent:
        return await self._call(
            self._client.v1.payment_intents.create_async(
                params={
                    "amount": to_minor_units(amount),
                    "currency": currency,
                    "metadata": metadata,
                    "automatic_payment_methods": {"enabled": True},
                },
                options={"idempotency_key": idempotency_key},
            )
        )

    async def retrieve_intent(self, intent_id: str) -> ProcessorIntent:
        return await self._call(self._client.v1.payment_intents.retrieve_async(intent_id))

    async def cancel_intent(self, intent_id: str) -> ProcessorIntent:
        return await self._call(self._client.v1.payment_intents.cancel_async(intent_id))


@lru_cache(maxsize=1)
def _get_stripe_processor() -> StripeProcessor:
    if not settings.stripe_secret_key:
        raise ProcessorError("Stripe secret key not configured")
    return StripeProcessor(settings.stripe_secret_key, settings.processor_timeout)


def _zero_intent(intent_id: str) -> ProcessorIntent:
    return ProcessorIntent(
        id=intent_id,
        client_secret=None,
        status=IntentStatus.SUCCEEDED,
        amount=Decimal("0.00"),
    )


def captured_down_payment_changes(record: Reservation) -> dict[str, Any]:
    """Columns for a captured down payment; a zero due settles the reservation."""
    if record.due_amount <= 0:
        return {
            "payment_status": PaymentStatus.COMPLETED,
            "paid_via": PaidVia.ONLINE,
            "remaining_amount": Decimal("0.00"),
        }
    return {
        "payment_status": PaymentStatus.PARTIAL,
        "remaining_amount": record.total_amount - record.down_payment,
    }


class PaymentCoordinator:
    def __init__(self, processor: PaymentProcessor | None = None) -> None:
        self._processor = processor

    @property
    def processor(self) -> PaymentProcessor:
        if self._processor is None:
            return _get_stripe_processor()
        return self._processor

    @staticmethod
    def _metadata(record: Reservation, kind: IntentKind) -> dict[str, str]:
        return {
            "reservation_id": str(record.id),
            "reservation_kind": str(record.kind),
            "intent_kind": str(kind),
            "user_id": str(record.user_id),
            "provider_id": str(record.provider_id),
        }

    async def _create(
        self, record: Reservation, kind: IntentKind, amount: Decimal
    ) -> ProcessorIntent:
        if amount <= 0:
            return _zero_intent(f"{ZERO_INTENT_PREFIX}{record.id}_{kind}")
        intent = await self.processor.create_intent(
            amount,
            settings.payment_currency,
            self._metadata(record, kind),
            idempotency_key=f"{record.id}:{kind}:{record.intent_attempts or 0}",
        )
        logger.info(
            "Created {} intent {} for {} {} ({} {})",
            kind,
            intent.id,
            record.kind,
            record.id,
            amount,
            settings.payment_currency,
        )
        return intent

    async def retrieve(self, intent_id: str) -> ProcessorIntent:
        """Read an intent, retrying once on a transport failure."""
        if intent_id.startswith(ZERO_INTENT_PREFIX):
            return _zero_intent(intent_id)
        try:
            return await self.processor.retrieve_intent(intent_id)
        except Transient:
            logger.warning("Retrying processor read for intent {}", intent_id)
            return await self.processor.retrieve_intent(intent_id)

    # -- down payment -------------------------------------------------------

    async def create_down_payment_intent(
        self, record: Reservation
    ) -> tuple[ProcessorIntent, dict[str, Any]]:
        """
        Request the down-payment intent, or return the existing one unchanged.

        A record that already carries an intent id never gets a second one.
        """
        if record.payment_intent_id:
            return await self.retrieve(record.payment_intent_id), {}
        if record.payment_status != PaymentStatus.PENDING:
            raise StateInvalid(
                f"Cannot start a down payment while payment is {record.payment_status}"
            )

        intent = await self._create(record, IntentKind.DOWN, record.down_payment)
        changes: dict[str, Any] = {
            "payment_intent_id": intent.id,
            "payment_intent_status": intent.status,
        }
        if intent.status == IntentStatus.SUCCEEDED:
            changes.update(captured_down_payment_changes(record))
        elif intent.status == IntentStatus.REQUIRES_CAPTURE:
            changes["payment_status"] = PaymentStatus.AUTHORIZED
        return intent, changes

    def sync_down_payment(
        self, record: Reservation, intent: ProcessorIntent
    ) -> dict[str, Any]:
        """Map a fresh down-payment intent status onto the record."""
        changes: dict[str, Any] = {}
        if intent.status != record.payment_intent_status:
            changes["payment_intent_status"] = intent.status
        if record.payment_status not in (PaymentStatus.PENDING, PaymentStatus.AUTHORIZED):
            return changes

        if intent.status == IntentStatus.SUCCEEDED:
            changes.update(captured_down_payment_changes(record))
        elif (
            intent.status == IntentStatus.REQUIRES_CAPTURE
            and record.payment_status == PaymentStatus.PENDING
        ):
            changes["payment_status"] = PaymentStatus.AUTHORIZED
        return changes

    # -- due amount ---------------------------------------------------------

    async def create_due_intent(
        self, record: Reservation
    ) -> tuple[ProcessorIntent, dict[str, Any]]:
        if record.due_payment_intent_id:
            return await self.retrieve(record.due_payment_intent_id), {}
        if record.status not in DUE_COLLECTABLE_STATUSES:
            raise StateInvalid("Service must be in progress to request the due payment")
        if record.payment_status in SETTLED_PAYMENT_STATUSES:
            raise StateInvalid("Already paid")
        if record.payment_status != PaymentStatus.PARTIAL:
            raise StateInvalid("Down payment has not been captured yet")
        if record.due_amount <= 0:
            raise InvalidArgument("Nothing is due on this reservation")

        intent = await self._create(record, IntentKind.DUE, record.due_amount)
        return intent, {
            "due_payment_intent_id": intent.id,
            "due_payment_intent_status": intent.status,
            "payment_status": PaymentStatus.DUE_REQUESTED,
            "due_requested_at": utcnow(),
        }

    async def confirm_due_payment(
        self, record: Reservation
    ) -> tuple[ProcessorIntent, dict[str, Any]]:
        """
        Refresh the due intent; a succeeded intent settles the reservation.

        The caller surfaces any other status after persisting it.
        """
        if not record.due_payment_intent_id:
            raise StateInvalid("Due payment not initialized")

        intent = await self.retrieve(record.due_payment_intent_id)
        if record.payment_status == PaymentStatus.COMPLETED:
            return intent, {}
        return intent, self.due_payment_changes(record, intent)

    def due_payment_changes(
        self, record: Reservation, intent: ProcessorIntent
    ) -> dict[str, Any]:
        changes: dict[str, Any] = {"due_payment_intent_status": intent.status}
        if (
            intent.status == IntentStatus.SUCCEEDED
            and record.payment_status == PaymentStatus.DUE_REQUESTED
        ):
            changes.update(
                payment_status=PaymentStatus.COMPLETED,
                paid_via=PaidVia.ONLINE,
                due_paid_at=utcnow(),
                remaining_amount=Decimal("0.00"),
            )
        return changes

    def mark_offline_paid(self, record: Reservation) -> dict[str, Any]:
        if record.status not in DUE_COLLECTABLE_STATUSES:
            raise StateInvalid("Service must be in progress to mark offline payment")
        if record.payment_status not in (
            PaymentStatus.PARTIAL,
            PaymentStatus.DUE_REQUESTED,
        ):
            raise StateInvalid(
                f"Cannot mark offline payment while payment is {record.payment_status}"
            )
        return {
            "payment_status": PaymentStatus.OFFLINE_PAID,
            "paid_via": PaidVia.OFFLINE,
            "offline_paid_at": utcnow(),
            "remaining_amount": Decimal("0.00"),
        }

    # -- admin --------------------------------------------------------------

    async def void(self, record: Reservation) -> dict[str, Any]:
        """Cancel every open intent of an uncaptured reservation."""
        if record.payment_status not in (PaymentStatus.PENDING, PaymentStatus.AUTHORIZED):
            raise StateInvalid("Captured payments cannot be voided")

        changes: dict[str, Any] = {"payment_status": PaymentStatus.REFUNDED}
        if record.payment_intent_id and not record.payment_intent_id.startswith(
            ZERO_INTENT_PREFIX
        ):
            if record.payment_intent_status != IntentStatus.CANCELED:
                intent = await self.processor.cancel_intent(record.payment_intent_id)
                changes["payment_intent_status"] = intent.status
        return changes
