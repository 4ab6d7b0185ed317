import asyncio
import json

import pytest
import sqlalchemy as sa

from airrides.domain.bookings.db_models import Booking
from airrides.domain.bookings.service import RECOVERY_SIGNATURE_PLACEHOLDER
from airrides.domain.flights.db_models import Flight
from airrides.domain.payments.db_models import STATUS_FAILED, STATUS_PENDING, STATUS_PROCESSED, PaymentAttempt
from airrides.domain.payments.ledger import PaymentLedger
from airrides.domain.payments.webhooks import (
    Ignored,
    PaymentCaptured,
    PaymentFailed,
    WebhookPayloadError,
    parse_webhook_event,
)
from tests.conftest import sign_client, sign_webhook


def _event(event: str, payment_id: str, *, order_id: str | None = "order_wh_1", notes=None, **entity) -> bytes:
    payment = {
        "id": payment_id,
        "order_id": order_id,
        "amount": 499900,
        "currency": "INR",
        "status": "captured" if event == "payment.captured" else "failed",
        "notes": notes if notes is not None else [],
        **entity,
    }
    return json.dumps({"entity": "event", "event": event, "payload": {"payment": {"entity": payment}}}).encode()


def _post(client, body: bytes, *, path: str = "/v1/payments/webhook", signature: str | None = None):
    return client.post(
        path,
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Razorpay-Signature": signature if signature is not None else sign_webhook(body),
        },
    )


def _seed(async_session_maker, make_user, make_flight, *, seats: int = 5, passengers: int = 2, ledger: bool = True):
    async def seed():
        user_id = await make_user()
        flight_id = await make_flight(seats=seats)
        if ledger:
            await PaymentLedger(async_session_maker).record_attempt(
                "pay_wh_1", "order_wh_1", "client_sig", user_id, flight_id, {}, passengers=passengers
            )
        return user_id, flight_id

    return asyncio.run(seed())


def _load(async_session_maker, model, key):
    async def load():
        async with async_session_maker() as session:
            return await session.get(model, key)

    return asyncio.run(load())


def _bookings_for(async_session_maker, payment_id: str) -> list[Booking]:
    async def load():
        async with async_session_maker() as session:
            result = await session.scalars(sa.select(Booking).where(Booking.payment_id == payment_id))
            return list(result)

    return asyncio.run(load())


def test_parse_webhook_event_variants():
    captured = parse_webhook_event(_event("payment.captured", "pay_1", notes={"user_id": "u1", "passengers": 2}))
    assert isinstance(captured, PaymentCaptured)
    assert captured.payment.note("user_id") == "u1"
    assert captured.payment.note("passengers") == "2"
    assert captured.payment.note("flight_id") is None

    failed = parse_webhook_event(_event("payment.failed", "pay_2", error_description="Card declined"))
    assert isinstance(failed, PaymentFailed)
    assert failed.reason == "Card declined"

    assert parse_webhook_event(b'{"event": "order.paid", "payload": {}}') == Ignored(event="order.paid")


@pytest.mark.parametrize(
    "body",
    [b"not json", b"[]", b'{"payload": {}}', b'{"event": "payment.captured", "payload": {}}'],
)
def test_parse_webhook_event_rejects_malformed_bodies(body):
    with pytest.raises(WebhookPayloadError):
        parse_webhook_event(body)


def test_captured_webhook_creates_booking_from_ledger(client, async_session_maker, make_user, make_flight):
    user_id, flight_id = _seed(async_session_maker, make_user, make_flight, seats=5, passengers=2)

    response = _post(client, _event("payment.captured", "pay_wh_1"))

    assert response.status_code == 200
    body = response.json()
    assert body["received"] is True
    assert body["event"] == "payment.captured"
    assert body["status"] == "booking_created"
    assert body["payment_id"] == "pay_wh_1"

    bookings = _bookings_for(async_session_maker, "pay_wh_1")
    assert len(bookings) == 1
    assert bookings[0].booking_id == body["booking_id"]
    assert bookings[0].user_id == user_id
    assert bookings[0].passengers == 2
    assert bookings[0].payment_signature == RECOVERY_SIGNATURE_PLACEHOLDER
    assert _load(async_session_maker, Flight, flight_id).seats_available == 3
    assert _load(async_session_maker, PaymentAttempt, "pay_wh_1").status == STATUS_PROCESSED


def test_captured_webhook_falls_back_to_payment_notes(client, async_session_maker, make_user, make_flight):
    user_id, flight_id = _seed(async_session_maker, make_user, make_flight, seats=4, ledger=False)
    body = _event(
        "payment.captured",
        "pay_wh_notes",
        notes={"user_id": user_id, "flight_id": flight_id, "passengers": "3"},
    )

    response = _post(client, body)

    assert response.status_code == 200
    assert response.json()["status"] == "booking_created"
    assert _load(async_session_maker, Flight, flight_id).seats_available == 1
    entry = _load(async_session_maker, PaymentAttempt, "pay_wh_notes")
    assert entry.status == STATUS_PROCESSED
    assert entry.source == "webhook"
    assert entry.passengers == 3


def test_duplicate_webhook_is_acknowledged_without_second_booking(client, async_session_maker, make_user, make_flight):
    _, flight_id = _seed(async_session_maker, make_user, make_flight, seats=5, passengers=1)
    body = _event("payment.captured", "pay_wh_1")

    first = _post(client, body)
    second = _post(client, body)

    assert first.json()["status"] == "booking_created"
    assert second.status_code == 200
    assert second.json()["status"] == "already_processed"
    assert second.json()["booking_id"] == first.json()["booking_id"]
    assert len(_bookings_for(async_session_maker, "pay_wh_1")) == 1
    assert _load(async_session_maker, Flight, flight_id).seats_available == 4


def test_legacy_webhook_path_is_supported(client, async_session_maker, make_user, make_flight):
    _seed(async_session_maker, make_user, make_flight)

    response = _post(client, _event("payment.captured", "pay_wh_1"), path="/razorpay-webhook")

    assert response.status_code == 200
    assert response.json()["status"] == "booking_created"


def test_payment_failed_webhook_marks_ledger_failed(client, async_session_maker, make_user, make_flight):
    _, flight_id = _seed(async_session_maker, make_user, make_flight, seats=5)

    response = _post(
        client, _event("payment.failed", "pay_wh_1", error_description="Payment declined by bank")
    )

    assert response.status_code == 200
    assert response.json()["status"] == "payment_failed"
    entry = _load(async_session_maker, PaymentAttempt, "pay_wh_1")
    assert entry.status == STATUS_FAILED
    assert entry.error_message == "Payment declined by bank"
    assert entry.failure_code == "GATEWAY_PAYMENT_FAILED"
    assert _load(async_session_maker, Flight, flight_id).seats_available == 5


def test_unhandled_event_is_ignored(client):
    body = json.dumps({"event": "refund.processed", "payload": {}}).encode()

    response = _post(client, body)

    assert response.status_code == 200
    assert response.json() == {"received": True, "event": "refund.processed", "status": "event_ignored"}


def test_invalid_signature_is_rejected(client, async_session_maker, make_user, make_flight):
    _, flight_id = _seed(async_session_maker, make_user, make_flight, seats=5)

    response = _post(client, _event("payment.captured", "pay_wh_1"), signature="not-a-signature")

    assert response.status_code == 400
    assert response.json()["error"] == "SIGNATURE_VERIFICATION_FAILED"
    assert _load(async_session_maker, PaymentAttempt, "pay_wh_1").status == STATUS_PENDING
    assert _load(async_session_maker, Flight, flight_id).seats_available == 5


def test_non_ascii_signature_header_is_rejected(client, async_session_maker, make_user, make_flight):
    _, flight_id = _seed(async_session_maker, make_user, make_flight, seats=5)
    body = _event("payment.captured", "pay_wh_1")

    response = client.post(
        "/v1/payments/webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-Razorpay-Signature": "\u00e9".encode("latin-1")},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "SIGNATURE_VERIFICATION_FAILED"
    assert _load(async_session_maker, Flight, flight_id).seats_available == 5


def test_missing_signature_header_is_rejected(client):
    response = client.post("/v1/payments/webhook", content=_event("payment.captured", "pay_x"))

    assert response.status_code == 400
    assert response.json()["error"] == "SIGNATURE_VERIFICATION_FAILED"


def test_webhook_without_secret_is_unavailable(client, services):
    services.reconciliation.webhook_secret = None

    response = _post(client, _event("payment.captured", "pay_x"), signature="anything")

    assert response.status_code == 503


def test_webhook_without_linkage_is_not_found(client):
    response = _post(client, _event("payment.captured", "pay_unknown"))

    assert response.status_code == 404
    assert response.json()["detail"] == "Payment log not found"


def test_webhook_with_partial_linkage_is_bad_request(client, async_session_maker, make_user):
    user_id = asyncio.run(make_user())

    response = _post(client, _event("payment.captured", "pay_partial", notes={"user_id": user_id}))

    assert response.status_code == 400


def test_malformed_signed_payload_is_bad_request(client):
    body = b'{"event": "payment.captured", "payload": {"payment": {}}}'

    response = _post(client, body)

    assert response.status_code == 400
    assert response.json()["error"] == "BAD_REQUEST_ERROR"


def test_sold_out_flight_is_acknowledged_as_rejected(client, async_session_maker, make_user, make_flight):
    _, flight_id = _seed(async_session_maker, make_user, make_flight, seats=1, passengers=2)

    response = _post(client, _event("payment.captured", "pay_wh_1"))

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "rejected"
    assert body["error"] == "SEATS_UNAVAILABLE"
    assert "1 seat(s) available" in body["detail"]
    assert _load(async_session_maker, Flight, flight_id).seats_available == 1
    assert _load(async_session_maker, PaymentAttempt, "pay_wh_1").failure_code == "RESOURCE_EXHAUSTED"


def test_webhook_after_client_verification_does_not_double_book(client, async_session_maker, make_user, make_flight):
    user_id, flight_id = _seed(async_session_maker, make_user, make_flight, seats=5, ledger=False)
    verify = client.post(
        "/v1/payments/verify",
        json={
            "razorpay_order_id": "order_wh_1",
            "razorpay_payment_id": "pay_wh_1",
            "razorpay_signature": sign_client("order_wh_1", "pay_wh_1"),
            "flightId": flight_id,
            "passengers": 1,
            "userId": user_id,
        },
    )
    assert verify.status_code == 200

    response = _post(client, _event("payment.captured", "pay_wh_1"))

    assert response.json()["status"] == "already_processed"
    assert response.json()["booking_id"] == verify.json()["booking_id"]
    assert _load(async_session_maker, Flight, flight_id).seats_available == 4
