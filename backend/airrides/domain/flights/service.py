from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from airrides.domain.flights.db_models import Flight


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


async def search_flights(
    session: AsyncSession,
    *,
    origin: str | None = None,
    destination: str | None = None,
    departure_date: date | None = None,
    limit: int = 100,
) -> list[Flight]:
    """Case-insensitive route match, optionally restricted to one departure day (UTC)."""
    stmt = select(Flight)
    if origin:
        stmt = stmt.where(func.lower(Flight.origin).contains(origin.strip().lower()))
    if destination:
        stmt = stmt.where(func.lower(Flight.destination).contains(destination.strip().lower()))
    if departure_date:
        start, end = _day_bounds(departure_date)
        stmt = stmt.where(Flight.departure_time >= start, Flight.departure_time < end)
    stmt = stmt.order_by(Flight.departure_time, Flight.flight_number).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars())


async def get_flight(session: AsyncSession, flight_id: str) -> Flight | None:
    return await session.get(Flight, flight_id)
