from decimal import Decimal
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class CreateOrderRequest(BaseModel):
    amount: Decimal = Field(description="Amount in major currency units")


class OrderResponse(BaseModel):
    id: str
    entity: str | None = None
    amount: int
    amount_paid: int | None = None
    amount_due: int | None = None
    currency: str
    receipt: str | None = None
    status: str | None = None
    attempts: int | None = None
    notes: dict[str, Any] | list[Any] | None = None
    created_at: int | None = None


class VerifyPaymentRequest(BaseModel):
    """Accepts both the gateway checkout field names and the camelCase ones the web client sends."""

    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(
        min_length=1, validation_alias=AliasChoices("order_id", "razorpay_order_id", "orderId")
    )
    payment_id: str = Field(
        min_length=1, validation_alias=AliasChoices("payment_id", "razorpay_payment_id", "paymentId")
    )
    signature: str = Field(
        min_length=1, validation_alias=AliasChoices("signature", "razorpay_signature")
    )
    flight_id: str = Field(min_length=1, validation_alias=AliasChoices("flight_id", "flightId"))
    passengers: int = Field(1, ge=1, le=50)
    user_id: str = Field(min_length=1, validation_alias=AliasChoices("user_id", "userId"))


class VerifyPaymentResponse(BaseModel):
    status: str
    state: str
    booking_id: str | None
    formatted_booking_id: str | None
    payment_id: str
    seats_remaining: int | None
    idempotent: bool


class PaymentStatusRequest(BaseModel):
    payment_id: str = Field(min_length=1, validation_alias=AliasChoices("payment_id", "paymentId"))


class PaymentStatusResponse(BaseModel):
    message: str
    status: str


class GatewayKeyResponse(BaseModel):
    key_id: str


class RecoveryRunResponse(BaseModel):
    scanned: int
    recovered: int
    repaired: int
    failed: int
