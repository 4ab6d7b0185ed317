"""Typed view of gateway webhook deliveries.

Only ``payment.captured`` and ``payment.failed`` drive reconciliation. Every
other event type parses to :class:`Ignored` so callers can acknowledge it
explicitly.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

EVENT_PAYMENT_CAPTURED = "payment.captured"
EVENT_PAYMENT_FAILED = "payment.failed"


class WebhookPayloadError(ValueError):
    pass


class PaymentEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    order_id: str | None = None
    amount: int | None = None
    currency: str | None = None
    status: str | None = None
    notes: dict[str, Any] = Field(default_factory=dict)
    error_code: str | None = None
    error_description: str | None = None

    @field_validator("notes", mode="before")
    @classmethod
    def empty_notes(cls, value: Any) -> Any:
        # The gateway sends an empty list rather than an object when there are no notes.
        if value is None or value == []:
            return {}
        return value

    def note(self, key: str) -> str | None:
        value = self.notes.get(key)
        if value is None or value == "":
            return None
        return str(value)


class _Envelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: str
    payload: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class PaymentCaptured:
    payment: PaymentEntity
    event: str = EVENT_PAYMENT_CAPTURED


@dataclass(frozen=True)
class PaymentFailed:
    payment: PaymentEntity
    event: str = EVENT_PAYMENT_FAILED

    @property
    def reason(self) -> str:
        return self.payment.error_description or "Payment failed"


@dataclass(frozen=True)
class Ignored:
    event: str


WebhookEvent = Union[PaymentCaptured, PaymentFailed, Ignored]


def _payment_entity(envelope: _Envelope) -> PaymentEntity:
    payment = envelope.payload.get("payment")
    entity = payment.get("entity") if isinstance(payment, dict) else None
    if not isinstance(entity, dict):
        raise WebhookPayloadError("payment entity missing")
    try:
        return PaymentEntity.model_validate(entity)
    except ValidationError as exc:
        raise WebhookPayloadError("payment entity invalid") from exc


def parse_webhook_event(raw_body: bytes) -> WebhookEvent:
    try:
        data = json.loads(raw_body or b"")
    except (ValueError, UnicodeDecodeError) as exc:
        raise WebhookPayloadError("body is not valid JSON") from exc
    if not isinstance(data, dict):
        raise WebhookPayloadError("body must be a JSON object")
    try:
        envelope = _Envelope.model_validate(data)
    except ValidationError as exc:
        raise WebhookPayloadError("event type missing") from exc

    if envelope.event == EVENT_PAYMENT_CAPTURED:
        return PaymentCaptured(payment=_payment_entity(envelope))
    if envelope.event == EVENT_PAYMENT_FAILED:
        return PaymentFailed(payment=_payment_entity(envelope))
    return Ignored(event=envelope.event)
