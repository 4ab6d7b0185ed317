from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from airrides.shared.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)


class RazorpayNotConfiguredError(RuntimeError):
    pass


@dataclass
class RazorpayError(Exception):
    """The gateway answered with a client error (4xx)."""

    status_code: int
    code: str = "RAZORPAY_ERROR"
    description: str = "Payment gateway rejected the request"

    def __str__(self) -> str:
        return f"{self.status_code} {self.code}: {self.description}"


class RazorpayClient:
    """Minimal REST client for the payment gateway.

    Only the two calls the booking flow needs are implemented. Requests go
    through a circuit breaker; 4xx answers raise :class:`RazorpayError` and do
    not count against the breaker, transport errors and 5xx answers do.
    """

    def __init__(
        self,
        *,
        key_id: str | None,
        key_secret: str | None,
        base_url: str = "https://api.razorpay.com/v1",
        timeout_seconds: float = 10.0,
        circuit: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        self.circuit = circuit or CircuitBreaker(name="razorpay", ignore=(RazorpayError,))

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    async def create_order(
        self,
        amount_minor_units: int,
        currency: str,
        receipt: str,
        notes: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        payload = {
            "amount": amount_minor_units,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        order = await self._request("POST", "/orders", json=payload)
        logger.info(
            "razorpay_order_created",
            extra={"extra": {"order_id": order.get("id"), "amount": amount_minor_units, "currency": currency}},
        )
        return order

    async def fetch_payment(self, payment_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/payments/{payment_id}")

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        if not self.configured:
            raise RazorpayNotConfiguredError("Razorpay credentials are not configured")
        return await self.circuit.call(self._send, method, path, **kwargs)

    async def _send(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.key_id, self.key_secret),
            timeout=self.timeout_seconds,
            transport=self.transport,
        ) as client:
            response = await client.request(method, path, **kwargs)

        if 400 <= response.status_code < 500:
            code, description = _error_fields(response)
            logger.warning(
                "razorpay_request_rejected",
                extra={"extra": {"path": path, "status_code": response.status_code, "code": code}},
            )
            raise RazorpayError(response.status_code, code, description)
        response.raise_for_status()
        return response.json()


def _error_fields(response: httpx.Response) -> tuple[str, str]:
    try:
        error = response.json().get("error") or {}
    except ValueError:
        error = {}
    if not isinstance(error, dict):
        error = {}
    return (
        error.get("code") or "RAZORPAY_ERROR",
        error.get("description") or f"Gateway returned {response.status_code}",
    )


def razorpay_client_from_settings(app_settings, transport: httpx.AsyncBaseTransport | None = None) -> RazorpayClient:
    circuit = CircuitBreaker(
        name="razorpay",
        failure_threshold=app_settings.razorpay_circuit_failure_threshold,
        recovery_time=app_settings.razorpay_circuit_recovery_seconds,
        window_seconds=app_settings.razorpay_circuit_window_seconds,
        half_open_max_calls=app_settings.razorpay_circuit_half_open_max_calls,
        ignore=(RazorpayError,),
    )
    return RazorpayClient(
        key_id=app_settings.razorpay_key_id,
        key_secret=app_settings.razorpay_key_secret,
        base_url=app_settings.razorpay_api_base_url,
        timeout_seconds=app_settings.razorpay_timeout_seconds,
        circuit=circuit,
        transport=transport,
    )
