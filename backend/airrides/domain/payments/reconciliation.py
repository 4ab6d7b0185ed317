"""Turns a verified payment into exactly one seat decrement and one booking.

Both entry points, the client's verify call and the gateway webhook, run the
same state machine::

    RECEIVED -> AUTHENTICATED -> IDEMPOTENCY_CHECKED -> SEATS_RESERVED
             -> BOOKING_WRITTEN -> COMMITTED

``ABORTED`` is reachable from every non-terminal state and
``ALREADY_CONFIRMED`` short-circuits from IDEMPOTENCY_CHECKED. Authentication
happens before anything is written. The idempotency check, the seat
reservation and the booking write share one database transaction. The ledger
is only told about the outcome after that transaction has committed or
aborted.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from airrides.domain.bookings import ids as booking_ids
from airrides.domain.bookings import service as booking_service
from airrides.domain.errors import (
    DomainError,
    NotFoundError,
    PaymentOwnershipError,
    ReconciliationError,
    SignatureVerificationError,
    TransientStorageError,
    TRANSIENT_STORAGE_FAILURE,
)
from airrides.domain.flights import inventory
from airrides.domain.flights.db_models import Flight
from airrides.domain.payments import signatures
from airrides.domain.payments.db_models import SOURCE_CLIENT, SOURCE_WEBHOOK, PaymentAttempt
from airrides.domain.payments.ledger import PaymentLedger
from airrides.domain.payments.webhooks import (
    Ignored,
    PaymentCaptured,
    PaymentFailed,
    parse_webhook_event,
)
from airrides.domain.users.db_models import User
from airrides.infra.db import transaction
from airrides.infra.metrics import metrics

logger = logging.getLogger(__name__)

GATEWAY_PAYMENT_FAILED = "GATEWAY_PAYMENT_FAILED"


class ReconciliationState(str, enum.Enum):
    RECEIVED = "RECEIVED"
    AUTHENTICATED = "AUTHENTICATED"
    IDEMPOTENCY_CHECKED = "IDEMPOTENCY_CHECKED"
    SEATS_RESERVED = "SEATS_RESERVED"
    BOOKING_WRITTEN = "BOOKING_WRITTEN"
    COMMITTED = "COMMITTED"
    ALREADY_CONFIRMED = "ALREADY_CONFIRMED"
    ABORTED = "ABORTED"


class PaymentConfigurationError(DomainError):
    def __init__(self, detail: str) -> None:
        super().__init__(detail=detail, title="Payment Gateway Not Configured", status_code=503)


class WebhookLinkageError(DomainError):
    """The webhook names a payment we cannot tie to a user and flight."""

    def __init__(self, detail: str, *, status_code: int) -> None:
        super().__init__(detail=detail, title="Webhook Linkage Missing", status_code=status_code)


@dataclass
class VerifyPaymentCommand:
    order_id: str
    payment_id: str
    signature: str
    flight_id: str
    passengers: int
    user_id: str


@dataclass
class ReconciliationResult:
    payment_id: str
    state: ReconciliationState
    booking_id: str | None = None
    seats_remaining: int | None = None
    idempotent: bool = False

    @property
    def status(self) -> str:
        return "success"

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "state": self.state.value,
            "booking_id": self.booking_id,
            "formatted_booking_id": booking_ids.format_booking_id(self.booking_id) if self.booking_id else None,
            "payment_id": self.payment_id,
            "seats_remaining": self.seats_remaining,
            "idempotent": self.idempotent,
        }


@dataclass
class WebhookOutcome:
    event: str
    status: str
    payment_id: str | None = None
    booking_id: str | None = None
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"received": True, "event": self.event, "status": self.status}
        if self.payment_id:
            body["payment_id"] = self.payment_id
        if self.booking_id:
            body["booking_id"] = self.booking_id
        if self.error:
            body["error"] = self.error
        body.update(self.extra)
        return body


@dataclass
class _Attempt:
    entry: str
    payment_id: str
    order_id: str
    user_id: str
    flight_id: str
    passengers: int
    booking_signature: str | None
    ledger_signature: str | None
    source: str
    state: ReconciliationState = ReconciliationState.AUTHENTICATED


class ReconciliationService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: PaymentLedger,
        *,
        key_secret: str | None,
        webhook_secret: str | None,
        monitor=None,  # noqa: ANN001
        booking_id_factory: Callable[[], str] = booking_ids.generate_booking_id,
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.monitor = monitor
        self.booking_id_factory = booking_id_factory

    async def verify_client_payment(self, command: VerifyPaymentCommand) -> ReconciliationResult:
        if not self.key_secret:
            raise PaymentConfigurationError("Payment gateway key secret is not configured")
        if not signatures.verify_client_signature(
            self.key_secret, command.order_id, command.payment_id, command.signature
        ):
            self._record_outcome("client", "SIGNATURE_VERIFICATION_FAILED")
            logger.warning(
                "payment_signature_invalid",
                extra={"extra": {"payment_id": command.payment_id, "order_id": command.order_id}},
            )
            raise SignatureVerificationError(detail="Payment signature verification failed")

        attempt = _Attempt(
            entry="client",
            payment_id=command.payment_id,
            order_id=command.order_id,
            user_id=command.user_id,
            flight_id=command.flight_id,
            passengers=command.passengers,
            booking_signature=command.signature,
            ledger_signature=command.signature,
            source=SOURCE_CLIENT,
        )
        return await self._reconcile(attempt)

    async def handle_webhook(self, raw_body: bytes, signature: str | None) -> WebhookOutcome:
        if not self.webhook_secret:
            raise PaymentConfigurationError("Webhook secret is not configured")
        if not signatures.verify_webhook_signature(self.webhook_secret, raw_body, signature):
            metrics.record_webhook("invalid_signature")
            logger.warning("razorpay_webhook_invalid_signature")
            raise SignatureVerificationError(detail="Invalid webhook signature")

        event = parse_webhook_event(raw_body)
        if isinstance(event, Ignored):
            metrics.record_webhook("ignored")
            logger.info("razorpay_webhook_ignored", extra={"extra": {"event": event.event}})
            return WebhookOutcome(event=event.event, status="event_ignored")

        if isinstance(event, PaymentFailed):
            payment_id = event.payment.id
            await self.ledger.mark_failed(payment_id, event.reason, code=GATEWAY_PAYMENT_FAILED)
            self._record_outcome("webhook", GATEWAY_PAYMENT_FAILED)
            metrics.record_webhook("payment_failed")
            return WebhookOutcome(event=event.event, status="payment_failed", payment_id=payment_id)

        attempt = await self._webhook_attempt(event)
        try:
            result = await self._reconcile(attempt)
        except TransientStorageError:
            metrics.record_webhook("error")
            raise
        except ReconciliationError as exc:
            # Business rejections are acknowledged so the gateway stops redelivering.
            metrics.record_webhook("rejected")
            return WebhookOutcome(
                event=event.event,
                status="rejected",
                payment_id=attempt.payment_id,
                error=exc.code,
                extra={"detail": exc.detail},
            )
        metrics.record_webhook("already_processed" if result.idempotent else "processed")
        return WebhookOutcome(
            event=event.event,
            status="already_processed" if result.idempotent else "booking_created",
            payment_id=result.payment_id,
            booking_id=result.booking_id,
        )

    async def _webhook_attempt(self, event: PaymentCaptured) -> _Attempt:
        payment = event.payment
        entry = await self.ledger.get(payment.id)
        if entry is None and not payment.note("user_id"):
            metrics.record_webhook("missing_linkage")
            logger.warning("razorpay_webhook_no_ledger_entry", extra={"extra": {"payment_id": payment.id}})
            raise WebhookLinkageError("Payment log not found", status_code=404)

        user_id = (entry.user_id if entry else None) or payment.note("user_id")
        flight_id = (entry.flight_id if entry else None) or payment.note("flight_id")
        order_id = payment.order_id or (entry.order_id if entry else None)
        if not user_id or not flight_id or not order_id:
            metrics.record_webhook("missing_linkage")
            raise WebhookLinkageError("User, flight or order missing for payment", status_code=400)

        passengers = entry.passengers if entry else _coerce_passengers(payment.note("passengers"))
        return _Attempt(
            entry="webhook",
            payment_id=payment.id,
            order_id=order_id,
            user_id=user_id,
            flight_id=flight_id,
            passengers=passengers,
            # The webhook carries no client signature; the booking stores the placeholder.
            booking_signature=None,
            ledger_signature=None,
            source=SOURCE_WEBHOOK,
        )

    async def _reconcile(self, attempt: _Attempt) -> ReconciliationResult:
        snapshot = await self._flight_snapshot(attempt.flight_id, attempt.passengers)
        await self.ledger.record_attempt(
            attempt.payment_id,
            attempt.order_id,
            attempt.ledger_signature,
            attempt.user_id,
            attempt.flight_id,
            snapshot,
            passengers=attempt.passengers,
            source=attempt.source,
        )

        try:
            result = await self._run_transaction(attempt)
        except PaymentOwnershipError as exc:
            self._reject_claim(attempt, exc)
            raise
        except ReconciliationError as exc:
            await self._abort(attempt, exc.detail, exc.kind, exc.code)
            raise
        except IntegrityError as exc:
            try:
                existing = await self._existing_booking(attempt)
            except PaymentOwnershipError as claim:
                self._reject_claim(attempt, claim)
                raise claim from exc
            if existing is None:
                await self._abort(
                    attempt,
                    f"Booking could not be stored: {type(exc).__name__}",
                    TRANSIENT_STORAGE_FAILURE,
                    "SERVER_ERROR",
                )
                raise TransientStorageError(detail="Failed to store booking") from exc
            # A concurrent delivery for the same payment committed first.
            result = ReconciliationResult(
                payment_id=attempt.payment_id,
                state=ReconciliationState.ALREADY_CONFIRMED,
                booking_id=existing,
                idempotent=True,
            )
        except Exception as exc:  # noqa: BLE001
            await self._abort(
                attempt,
                f"Booking transaction failed: {type(exc).__name__}",
                TRANSIENT_STORAGE_FAILURE,
                "SERVER_ERROR",
            )
            raise TransientStorageError(detail="Failed to store booking") from exc

        await self.ledger.mark_processed(attempt.payment_id, result.booking_id)
        outcome = "ALREADY_CONFIRMED" if result.idempotent else "SUCCESS"
        self._record_outcome(attempt.entry, outcome)
        logger.info(
            "payment_reconciled",
            extra={
                "extra": {
                    "entry": attempt.entry,
                    "payment_id": attempt.payment_id,
                    "booking_id": result.booking_id,
                    "state": result.state.value,
                    "idempotent": result.idempotent,
                }
            },
        )
        return result

    async def _run_transaction(self, attempt: _Attempt) -> ReconciliationResult:
        async with transaction(self.session_factory) as session:
            user = await session.get(User, attempt.user_id)
            if user is None:
                raise NotFoundError(detail="User not found")
            entry = await session.get(PaymentAttempt, attempt.payment_id)
            if entry is not None and (
                (entry.user_id and entry.user_id != attempt.user_id)
                or (entry.flight_id and entry.flight_id != attempt.flight_id)
            ):
                raise PaymentOwnershipError(detail="Payment is already linked to another booking request")
            existing = await booking_service.find_booking_by_payment(session, attempt.payment_id)
            if existing is not None and existing.user_id != attempt.user_id:
                raise PaymentOwnershipError(detail="Payment is already linked to another booking request")
            attempt.state = ReconciliationState.IDEMPOTENCY_CHECKED
            if existing is not None:
                flight = await session.get(Flight, existing.flight_id)
                attempt.state = ReconciliationState.ALREADY_CONFIRMED
                return ReconciliationResult(
                    payment_id=attempt.payment_id,
                    state=ReconciliationState.ALREADY_CONFIRMED,
                    booking_id=existing.booking_id,
                    seats_remaining=flight.seats_available if flight else None,
                    idempotent=True,
                )

            flight = await inventory.reserve_seats(session, attempt.flight_id, attempt.passengers)
            if flight is None:
                await inventory.describe_unavailable(session, attempt.flight_id, attempt.passengers)
            attempt.state = ReconciliationState.SEATS_RESERVED

            record = booking_service.build_booking_record(
                flight,
                booking_id=self.booking_id_factory(),
                passengers=attempt.passengers,
                order_id=attempt.order_id,
                payment_id=attempt.payment_id,
                payment_signature=attempt.booking_signature,
            )
            booking = await booking_service.append_booking(session, attempt.user_id, record)
            attempt.state = ReconciliationState.BOOKING_WRITTEN
            result = ReconciliationResult(
                payment_id=attempt.payment_id,
                state=ReconciliationState.COMMITTED,
                booking_id=booking.booking_id,
                seats_remaining=flight.seats_available,
            )
        attempt.state = result.state
        return result

    async def _abort(self, attempt: _Attempt, reason: str, kind: str, code: str) -> None:
        failed_in = attempt.state
        attempt.state = ReconciliationState.ABORTED
        await self.ledger.mark_failed(attempt.payment_id, reason, code=kind)
        self._record_outcome(attempt.entry, code)
        logger.warning(
            "payment_reconciliation_aborted",
            extra={
                "extra": {
                    "entry": attempt.entry,
                    "payment_id": attempt.payment_id,
                    "failed_in": failed_in.value,
                    "code": code,
                    "reason": reason,
                }
            },
        )

    def _reject_claim(self, attempt: _Attempt, exc: PaymentOwnershipError) -> None:
        # The ledger entry belongs to the original claimant and is left as is.
        attempt.state = ReconciliationState.ABORTED
        self._record_outcome(attempt.entry, exc.code)
        logger.warning(
            "payment_ownership_mismatch",
            extra={
                "extra": {
                    "entry": attempt.entry,
                    "payment_id": attempt.payment_id,
                    "user_id": attempt.user_id,
                    "flight_id": attempt.flight_id,
                }
            },
        )

    async def _existing_booking(self, attempt: _Attempt) -> str | None:
        async with self.session_factory() as session:
            booking = await booking_service.find_booking_by_payment(session, attempt.payment_id)
        if booking is None:
            return None
        if booking.user_id != attempt.user_id:
            raise PaymentOwnershipError(detail="Payment is already linked to another booking request")
        return booking.booking_id

    async def _flight_snapshot(self, flight_id: str, passengers: int) -> dict[str, Any]:
        """Flight details at attempt time; empty when the flight cannot be read."""
        try:
            async with self.session_factory() as session:
                flight = await session.get(Flight, flight_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "flight_snapshot_failed",
                extra={"extra": {"flight_id": flight_id, "error": type(exc).__name__}},
            )
            return {"passengers": passengers}
        if flight is None:
            return {"passengers": passengers}
        return {**flight.snapshot(), "passengers": passengers}

    def _record_outcome(self, entry: str, outcome: str) -> None:
        metrics.record_reconciliation(entry, outcome)
        if self.monitor is not None:
            self.monitor.record_outcome(outcome)


def _coerce_passengers(value: str | None) -> int:
    try:
        passengers = int(value) if value is not None else 1
    except ValueError:
        return 1
    return passengers if passengers > 0 else 1
