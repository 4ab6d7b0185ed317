from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from airrides.domain.bookings import ids as booking_ids
from airrides.domain.bookings import schemas
from airrides.domain.bookings import service as booking_service
from airrides.domain.errors import DomainError, NotFoundError
from airrides.domain.users import service as user_service
from airrides.infra.db import get_db_session

router = APIRouter()


@router.get("/v1/users/{user_id}/bookings", response_model=list[schemas.BookingResponse])
async def list_user_bookings(user_id: str, session: AsyncSession = Depends(get_db_session)):
    user = await user_service.get_user(session, user_id)
    if user is None:
        raise NotFoundError(detail="User not found")
    return await booking_service.list_user_bookings(session, user_id)


@router.get("/v1/bookings/{booking_ref}", response_model=schemas.BookingResponse)
async def get_booking(booking_ref: str, session: AsyncSession = Depends(get_db_session)):
    booking_id = booking_ids.normalize_booking_id(booking_ref)
    if not booking_ids.is_valid_booking_id(booking_id):
        raise DomainError(detail="Invalid booking reference", title="Invalid Booking Reference")
    booking = await booking_service.get_booking(session, booking_id)
    if booking is None:
        raise NotFoundError(detail="Booking not found")
    return booking
