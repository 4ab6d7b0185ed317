from __future__ import annotations

import logging

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from airrides.domain.errors import NotFoundError, SeatsUnavailableError
from airrides.domain.flights.db_models import Flight
from airrides.infra.metrics import metrics

logger = logging.getLogger(__name__)


async def reserve_seats(session: AsyncSession, flight_id: str, count: int) -> Flight | None:
    """Decrement ``seats_available`` by ``count`` if enough seats remain.

    Check and decrement happen in one conditional UPDATE inside the caller's
    transaction, so concurrent reservations for a flight serialize on the row.
    Returns the updated flight, or ``None`` when the flight is missing or short
    of seats; use :func:`describe_unavailable` to tell the two apart.
    """
    if not isinstance(count, int) or isinstance(count, bool) or count < 1:
        raise ValueError("seat count must be a positive integer")

    stmt = (
        update(Flight)
        .where(Flight.id == flight_id, Flight.seats_available >= count)
        .values(seats_available=Flight.seats_available - count)
        .returning(Flight)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    flight = result.scalar_one_or_none()
    if flight is not None:
        # RETURNING may hand back an identity-mapped instance with the old count.
        await session.refresh(flight)
        logger.info(
            "seats_reserved",
            extra={"extra": {"flight_id": flight_id, "count": count, "remaining": flight.seats_available}},
        )
    return flight


async def describe_unavailable(session: AsyncSession, flight_id: str, count: int) -> None:
    """Raise the error explaining why :func:`reserve_seats` matched nothing."""
    flight = await session.get(Flight, flight_id, populate_existing=True)
    if flight is None:
        metrics.record_seat_conflict("flight_not_found")
        raise NotFoundError(detail="Flight not found")
    metrics.record_seat_conflict("insufficient_seats")
    logger.info(
        "seats_unavailable",
        extra={"extra": {"flight_id": flight_id, "requested": count, "available": flight.seats_available}},
    )
    raise SeatsUnavailableError(
        detail=(
            f"Sorry, only {flight.seats_available} seat(s) available. "
            "Another user just booked this flight."
        ),
        seats_available=flight.seats_available,
    )
