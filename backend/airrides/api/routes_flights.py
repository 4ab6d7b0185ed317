from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from airrides.domain.errors import NotFoundError
from airrides.domain.flights import schemas
from airrides.domain.flights import service as flight_service
from airrides.infra.db import get_db_session

router = APIRouter()


@router.get("/v1/flights", response_model=list[schemas.FlightResponse])
async def list_flights(
    origin: str | None = Query(None, max_length=100),
    destination: str | None = Query(None, max_length=100),
    departure_date: date | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    session: AsyncSession = Depends(get_db_session),
):
    return await flight_service.search_flights(
        session,
        origin=origin,
        destination=destination,
        departure_date=departure_date,
        limit=limit,
    )


@router.get("/v1/flights/{flight_id}", response_model=schemas.FlightResponse)
async def get_flight(flight_id: str, session: AsyncSession = Depends(get_db_session)):
    flight = await flight_service.get_flight(session, flight_id)
    if flight is None:
        raise NotFoundError(detail="Flight not found")
    return flight
