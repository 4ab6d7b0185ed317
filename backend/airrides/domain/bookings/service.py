from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from airrides.domain.bookings.db_models import BOOKING_STATUS_CONFIRMED, Booking
from airrides.domain.errors import NotFoundError
from airrides.domain.flights.db_models import Flight
from airrides.domain.users.db_models import User

logger = logging.getLogger(__name__)

# Stored in place of a client signature on bookings synthesized without one.
# Downstream readers expect the field to be populated.
RECOVERY_SIGNATURE_PLACEHOLDER = "webhook_recovery"


@dataclass
class BookingRecord:
    booking_id: str
    flight_id: str
    flight_number: str
    origin: str
    destination: str
    departure_time: datetime
    arrival_time: datetime
    airline: str
    price: Decimal
    non_stop: bool
    passengers: int
    order_id: str
    payment_id: str
    payment_signature: str
    recovered_from_failure: bool = False
    booking_date: datetime | None = None


def build_booking_record(
    flight: Flight,
    *,
    booking_id: str,
    passengers: int,
    order_id: str,
    payment_id: str,
    payment_signature: str | None,
    recovered_from_failure: bool = False,
) -> BookingRecord:
    return BookingRecord(
        booking_id=booking_id,
        flight_id=flight.id,
        flight_number=flight.flight_number,
        origin=flight.origin,
        destination=flight.destination,
        departure_time=flight.departure_time,
        arrival_time=flight.arrival_time,
        airline=flight.airline,
        price=flight.price,
        non_stop=bool(flight.non_stop),
        passengers=passengers,
        order_id=order_id,
        payment_id=payment_id,
        payment_signature=payment_signature or RECOVERY_SIGNATURE_PLACEHOLDER,
        recovered_from_failure=recovered_from_failure,
    )


def _parse_snapshot_time(value: object, fallback: datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return fallback
    return fallback


def build_booking_record_from_snapshot(
    snapshot: dict,
    flight: Flight,
    *,
    booking_id: str,
    passengers: int,
    order_id: str,
    payment_id: str,
    payment_signature: str | None,
    recovered_from_failure: bool = False,
) -> BookingRecord:
    """Like :func:`build_booking_record` but prefers the snapshot taken at attempt time.

    The flight may have been edited since the customer paid; the booking keeps
    what they paid for. Fields missing from the snapshot come from ``flight``.
    """
    record = build_booking_record(
        flight,
        booking_id=booking_id,
        passengers=passengers,
        order_id=order_id,
        payment_id=payment_id,
        payment_signature=payment_signature,
        recovered_from_failure=recovered_from_failure,
    )
    snapshot = snapshot or {}
    record.flight_number = snapshot.get("flight_number") or record.flight_number
    record.origin = snapshot.get("origin") or record.origin
    record.destination = snapshot.get("destination") or record.destination
    record.airline = snapshot.get("airline") or record.airline
    record.departure_time = _parse_snapshot_time(snapshot.get("departure_time"), record.departure_time)
    record.arrival_time = _parse_snapshot_time(snapshot.get("arrival_time"), record.arrival_time)
    if snapshot.get("price") is not None:
        record.price = Decimal(str(snapshot["price"]))
    if snapshot.get("non_stop") is not None:
        record.non_stop = bool(snapshot["non_stop"])
    return record


async def find_booking_for_payment(session: AsyncSession, user_id: str, payment_id: str) -> Booking | None:
    stmt = select(Booking).where(Booking.user_id == user_id, Booking.payment_id == payment_id)
    return await session.scalar(stmt)


async def find_booking_by_payment(session: AsyncSession, payment_id: str) -> Booking | None:
    stmt = select(Booking).where(Booking.payment_id == payment_id).limit(1)
    return await session.scalar(stmt)


async def append_booking(session: AsyncSession, user_id: str, record: BookingRecord) -> Booking:
    """Append ``record`` to the user's reservations inside the caller's transaction.

    The caller has already checked that no booking exists for this payment.
    A missing user raises :class:`NotFoundError`, which must abort the
    enclosing transaction.
    """
    user = await session.get(User, user_id)
    if user is None:
        raise NotFoundError(detail="User not found")

    booking = Booking(
        booking_id=record.booking_id,
        user_id=user.id,
        flight_id=record.flight_id,
        flight_number=record.flight_number,
        origin=record.origin,
        destination=record.destination,
        departure_time=record.departure_time,
        arrival_time=record.arrival_time,
        airline=record.airline,
        price=record.price,
        non_stop=record.non_stop,
        booking_date=record.booking_date or datetime.now(tz=timezone.utc),
        passengers=record.passengers,
        order_id=record.order_id,
        payment_id=record.payment_id,
        payment_signature=record.payment_signature,
        status=BOOKING_STATUS_CONFIRMED,
        recovered_from_failure=record.recovered_from_failure,
    )
    session.add(booking)
    await session.flush()
    logger.info(
        "booking_appended",
        extra={"extra": {"booking_id": booking.booking_id, "user_id": user.id, "payment_id": record.payment_id}},
    )
    return booking


async def list_user_bookings(session: AsyncSession, user_id: str) -> list[Booking]:
    stmt = select(Booking).where(Booking.user_id == user_id).order_by(Booking.booking_date)
    result = await session.execute(stmt)
    return list(result.scalars())


async def get_booking(session: AsyncSession, booking_id: str) -> Booking | None:
    return await session.get(Booking, booking_id)
