from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, computed_field

from airrides.domain.bookings.ids import format_booking_id


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    user_id: str
    flight_id: str
    flight_number: str
    origin: str
    destination: str
    departure_time: datetime
    arrival_time: datetime
    airline: str
    price: Decimal
    non_stop: bool
    booking_date: datetime
    passengers: int
    order_id: str
    payment_id: str
    status: str
    recovered_from_failure: bool

    @computed_field
    @property
    def formatted_booking_id(self) -> str:
        return format_booking_id(self.booking_id)
