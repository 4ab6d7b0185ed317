import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import sqlalchemy as sa

from airrides.domain.bookings import ids as booking_ids
from airrides.domain.bookings import service as booking_service
from airrides.domain.bookings.db_models import Booking
from airrides.domain.flights.db_models import Flight
from airrides.domain.payments.db_models import STATUS_PENDING, PaymentAttempt
from airrides.domain.payments.ledger import PaymentLedger
from airrides.infra.razorpay_client import RazorpayError
from airrides.settings import settings
from airrides.shared.circuit_breaker import CircuitBreaker
from tests.conftest import sign_client


def _seed(make_user, make_flight, *, seats: int = 5):
    async def seed():
        return await make_user(), await make_flight(seats=seats)

    return asyncio.run(seed())


def _verify_payload(user_id: str, flight_id: str, *, payment_id: str = "pay_api_1", passengers: int = 1, signature=None):
    order_id = f"order_{payment_id}"
    return {
        "razorpay_order_id": order_id,
        "razorpay_payment_id": payment_id,
        "razorpay_signature": signature or sign_client(order_id, payment_id),
        "flightId": flight_id,
        "passengers": passengers,
        "userId": user_id,
    }


def _seats(async_session_maker, flight_id: str) -> int:
    async def load():
        async with async_session_maker() as session:
            return (await session.get(Flight, flight_id)).seats_available

    return asyncio.run(load())


def _load_attempt(async_session_maker, payment_id: str) -> PaymentAttempt:
    async def load():
        async with async_session_maker() as session:
            return await session.get(PaymentAttempt, payment_id)

    return asyncio.run(load())


def test_create_order_converts_amount_to_minor_units(client, services):
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        body = captured["body"]
        return httpx.Response(
            200,
            json={
                "id": "order_abc",
                "entity": "order",
                "amount": body["amount"],
                "currency": body["currency"],
                "receipt": body["receipt"],
                "status": "created",
                "notes": body["notes"],
            },
        )

    services.razorpay_client.transport = httpx.MockTransport(handler)

    response = client.post("/v1/payments/orders", json={"amount": "4999.505"})

    assert response.status_code == 201
    assert response.json()["id"] == "order_abc"
    sent = captured["body"]
    assert sent["amount"] == 499951
    assert sent["currency"] == "INR"
    assert sent["receipt"].startswith("receipt_")
    assert sent["notes"]["order_type"] == "flight_booking"
    assert "created_at" in sent["notes"]


def test_create_order_rejects_non_positive_amounts(client):
    for amount in (0, -10):
        response = client.post("/v1/payments/orders", json={"amount": amount})

        assert response.status_code == 400
        assert response.json()["error"] == "BAD_REQUEST_ERROR"


def test_create_order_requires_amount(client):
    response = client.post("/v1/payments/orders", json={})

    assert response.status_code == 422
    assert response.json()["errors"][0]["field"] == "amount"


def test_create_order_surfaces_gateway_rejection(client, services):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"code": "BAD_REQUEST_ERROR", "description": "Currency not supported"}})

    services.razorpay_client.transport = httpx.MockTransport(handler)

    response = client.post("/v1/payments/orders", json={"amount": 100})

    assert response.status_code == 400
    assert response.json()["error"] == "BAD_REQUEST_ERROR"
    assert response.json()["detail"] == "Currency not supported"


def test_create_order_without_credentials_is_configuration_error(client, services):
    services.razorpay_client.key_secret = None

    response = client.post("/v1/payments/orders", json={"amount": 100})

    assert response.status_code == 500
    assert response.json()["error"] == "CONFIGURATION_ERROR"


def test_gateway_outage_opens_the_circuit(client, services):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    services.razorpay_client.transport = httpx.MockTransport(handler)
    services.razorpay_client.circuit = CircuitBreaker(
        name="razorpay-api-test", failure_threshold=1, recovery_time=60, ignore=(RazorpayError,)
    )

    first = client.post("/v1/payments/orders", json={"amount": 100})
    second = client.post("/v1/payments/orders", json={"amount": 100})

    assert first.status_code == 500
    assert first.json()["error"] == "SERVER_ERROR"
    assert second.status_code == 503
    assert second.json()["error"] == "GATEWAY_UNAVAILABLE"


def test_payment_status_reports_captured_payment(client, services):
    def handler(request: httpx.Request) -> httpx.Response:
        status = "captured" if request.url.path.endswith("/pay_ok") else "authorized"
        return httpx.Response(200, json={"id": request.url.path.rsplit("/", 1)[-1], "status": status})

    services.razorpay_client.transport = httpx.MockTransport(handler)

    ok = client.post("/v1/payments/status", json={"paymentId": "pay_ok"})
    pending = client.post("/v1/payments/status", json={"payment_id": "pay_hold"})

    assert ok.status_code == 200
    assert ok.json() == {"message": "Payment successful", "status": "captured"}
    assert pending.status_code == 400
    assert pending.json()["error"] == "PAYMENT_NOT_CAPTURED"
    assert pending.json()["payment_status"] == "authorized"


def test_gateway_key_is_exposed(client):
    response = client.get("/v1/payments/key")

    assert response.status_code == 200
    assert response.json() == {"key_id": "rzp_test_key"}


def test_gateway_key_missing_is_configuration_error(client):
    settings.razorpay_key_id = None

    response = client.get("/v1/payments/key")

    assert response.status_code == 500
    assert response.json()["error"] == "CONFIGURATION_ERROR"


def test_verify_payment_books_and_replays_idempotently(client, async_session_maker, make_user, make_flight):
    user_id, flight_id = _seed(make_user, make_flight, seats=5)
    payload = _verify_payload(user_id, flight_id, passengers=2)

    first = client.post("/v1/payments/verify", json=payload)
    second = client.post("/v1/payments/verify", json=payload)

    assert first.status_code == 200
    body = first.json()
    assert body["status"] == "success"
    assert body["state"] == "COMMITTED"
    assert body["idempotent"] is False
    assert body["seats_remaining"] == 3
    assert body["formatted_booking_id"] == booking_ids.format_booking_id(body["booking_id"])
    assert second.status_code == 200
    assert second.json()["idempotent"] is True
    assert second.json()["booking_id"] == body["booking_id"]
    assert _seats(async_session_maker, flight_id) == 3


def test_verify_payment_accepts_plain_field_names(client, make_user, make_flight):
    user_id, flight_id = _seed(make_user, make_flight)

    response = client.post(
        "/v1/payments/verify",
        json={
            "order_id": "order_plain",
            "payment_id": "pay_plain",
            "signature": sign_client("order_plain", "pay_plain"),
            "flight_id": flight_id,
            "user_id": user_id,
        },
    )

    assert response.status_code == 200
    assert response.json()["seats_remaining"] == 4


def test_verify_payment_rejects_bad_signature(client, async_session_maker, make_user, make_flight):
    user_id, flight_id = _seed(make_user, make_flight)

    response = client.post("/v1/payments/verify", json=_verify_payload(user_id, flight_id, signature="f" * 64))

    assert response.status_code == 400
    assert response.json()["error"] == "SIGNATURE_VERIFICATION_FAILED"
    assert _seats(async_session_maker, flight_id) == 5


def test_verify_payment_rejects_non_ascii_signature(client, async_session_maker, make_user, make_flight):
    user_id, flight_id = _seed(make_user, make_flight)

    response = client.post("/v1/payments/verify", json=_verify_payload(user_id, flight_id, signature="\u00e9" * 64))

    assert response.status_code == 400
    assert response.json()["error"] == "SIGNATURE_VERIFICATION_FAILED"
    assert _seats(async_session_maker, flight_id) == 5


def test_verified_payment_cannot_be_replayed_for_another_user(client, async_session_maker, make_user, make_flight):
    alice, flight_id = _seed(make_user, make_flight, seats=5)
    mallory = asyncio.run(make_user())
    payload = _verify_payload(alice, flight_id, payment_id="pay_one")

    first = client.post("/v1/payments/verify", json=payload)
    replay = client.post("/v1/payments/verify", json={**payload, "userId": mallory})

    assert first.status_code == 200
    assert replay.status_code == 409
    assert replay.json()["error"] == "PAYMENT_ALREADY_CLAIMED"
    assert replay.json()["type"].endswith("/payment-already-claimed")
    assert _seats(async_session_maker, flight_id) == 4

    async def bookings():
        async with async_session_maker() as session:
            return list(await session.scalars(sa.select(Booking).where(Booking.payment_id == "pay_one")))

    stored = asyncio.run(bookings())
    assert [booking.user_id for booking in stored] == [alice]


def test_pending_payment_cannot_be_claimed_for_another_flight(client, async_session_maker, make_user, make_flight):
    user_id, flight_id = _seed(make_user, make_flight, seats=5)
    other_flight = asyncio.run(make_flight(seats=5))
    asyncio.run(
        PaymentLedger(async_session_maker).record_attempt(
            "pay_two", "order_pay_two", "sig", user_id, flight_id, {}
        )
    )

    response = client.post("/v1/payments/verify", json=_verify_payload(user_id, other_flight, payment_id="pay_two"))

    assert response.status_code == 409
    assert response.json()["error"] == "PAYMENT_ALREADY_CLAIMED"
    assert _seats(async_session_maker, other_flight) == 5
    assert _load_attempt(async_session_maker, "pay_two").status == STATUS_PENDING


def test_verify_payment_reports_seat_conflict(client, make_user, make_flight):
    user_id, flight_id = _seed(make_user, make_flight, seats=1)

    response = client.post("/v1/payments/verify", json=_verify_payload(user_id, flight_id, passengers=2))

    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "SEATS_UNAVAILABLE"
    assert body["seats_available"] == 1
    assert body["type"].endswith("/seats-unavailable")


def test_verify_payment_unknown_flight_is_not_found(client, make_user):
    user_id = asyncio.run(make_user())

    response = client.post("/v1/payments/verify", json=_verify_payload(user_id, "missing-flight"))

    assert response.status_code == 404
    assert response.json()["error"] == "NOT_FOUND"


def test_verify_payment_validates_passenger_count(client, make_user, make_flight):
    user_id, flight_id = _seed(make_user, make_flight)

    response = client.post("/v1/payments/verify", json=_verify_payload(user_id, flight_id, passengers=0))

    assert response.status_code == 422
    assert response.json()["error"] == "BAD_REQUEST_ERROR"


def test_storage_failure_maps_to_server_error(client_no_raise, make_user, make_flight, monkeypatch):
    user_id, flight_id = _seed(make_user, make_flight)

    async def failing_append(session, user_id, record):
        raise RuntimeError("disk full")

    monkeypatch.setattr(booking_service, "append_booking", failing_append)

    response = client_no_raise.post("/v1/payments/verify", json=_verify_payload(user_id, flight_id))

    assert response.status_code == 500
    assert response.json()["error"] == "SERVER_ERROR"


def test_payment_stats_and_health(client, make_user, make_flight):
    user_id, flight_id = _seed(make_user, make_flight)
    client.post("/v1/payments/verify", json=_verify_payload(user_id, flight_id))

    stats = client.get("/v1/payments/stats")
    health = client.get("/v1/payments/health")

    assert stats.status_code == 200
    body = stats.json()
    assert body["database"]["total_attempts"] == 1
    assert body["database"]["successful"] == 1
    assert body["realtime"]["by_outcome"] == {"SUCCESS": 1}
    assert body["reliability"]["meets_threshold"] is True
    assert health.status_code == 200
    assert health.json()["status"] == "healthy"
    assert health.json()["alerts"] == []


def test_manual_recovery_requires_ops_token(client, async_session_maker, make_user, make_flight):
    user_id, flight_id = _seed(make_user, make_flight, seats=3)

    async def orphan():
        await PaymentLedger(async_session_maker).record_attempt(
            "pay_manual", "order_manual", "sig", user_id, flight_id, {}
        )
        async with async_session_maker() as session:
            await session.execute(
                sa.update(PaymentAttempt)
                .where(PaymentAttempt.payment_id == "pay_manual")
                .values(created_at=datetime.now(tz=timezone.utc) - timedelta(minutes=30))
            )
            await session.commit()

    asyncio.run(orphan())
    settings.ops_token = "ops-secret"

    denied = client.post("/v1/payments/recovery/manual")
    allowed = client.post("/v1/payments/recovery/manual", headers={"Authorization": "Bearer ops-secret"})

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert allowed.json() == {"scanned": 1, "recovered": 1, "repaired": 0, "failed": 0}
    assert _seats(async_session_maker, flight_id) == 2
