from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict


class FlightResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    flight_number: str
    origin: str
    destination: str
    departure_time: datetime
    arrival_time: datetime
    estimated_flight_time: str | None = None
    airline: str
    price: Decimal
    non_stop: bool
    seats_available: int
