from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from fastapi import APIRouter, HTTPException, Request, status

from airrides.api.problem_details import PROBLEM_TYPE_GATEWAY, problem_details
from airrides.domain.payments import schemas
from airrides.domain.payments.reconciliation import VerifyPaymentCommand
from airrides.infra.auth import token_matches
from airrides.infra.razorpay_client import RazorpayError, RazorpayNotConfiguredError
from airrides.services import AppServices, resolve_services
from airrides.shared.circuit_breaker import CircuitBreakerOpenError

router = APIRouter()
logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Razorpay-Signature"


def _services(request: Request) -> AppServices:
    services = resolve_services(request.app)
    if services is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Services not initialised")
    return services


def _require_ops_token(request: Request) -> None:
    app_settings = getattr(request.app.state, "app_settings", None)
    token = getattr(app_settings, "ops_token", None) if app_settings else None
    if not token:
        return
    auth_header = request.headers.get("Authorization")
    provided = None
    if auth_header and auth_header.lower().startswith("bearer "):
        provided = auth_header.split(" ", 1)[1]
    if not token_matches(provided, token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def _gateway_problem(request: Request, exc: Exception, *, operation: str):
    if isinstance(exc, RazorpayError):
        return problem_details(
            request,
            status=exc.status_code,
            title="Payment Gateway Error",
            detail=exc.description,
            type_=PROBLEM_TYPE_GATEWAY,
            error_code=exc.code,
        )
    if isinstance(exc, CircuitBreakerOpenError):
        return problem_details(
            request,
            status=status.HTTP_503_SERVICE_UNAVAILABLE,
            title="Payment Gateway Unavailable",
            detail="Payment gateway temporarily unavailable",
            type_=PROBLEM_TYPE_GATEWAY,
            error_code="GATEWAY_UNAVAILABLE",
        )
    if isinstance(exc, RazorpayNotConfiguredError):
        return problem_details(
            request,
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            title="Payment Gateway Not Configured",
            detail="Razorpay key not configured",
            error_code="CONFIGURATION_ERROR",
        )
    logger.exception("razorpay_request_failed", extra={"extra": {"operation": operation}})
    return problem_details(
        request,
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        title="Server Error",
        detail=f"Failed to {operation}. Please try again.",
        error_code="SERVER_ERROR",
    )


@router.post("/v1/payments/orders", status_code=status.HTTP_201_CREATED, response_model=schemas.OrderResponse)
async def create_order(request: Request, payload: schemas.CreateOrderRequest):
    if payload.amount <= 0:
        return problem_details(
            request,
            status=status.HTTP_400_BAD_REQUEST,
            title="Invalid Amount",
            detail="Invalid amount provided. Amount must be a positive number.",
            error_code="BAD_REQUEST_ERROR",
        )
    services = _services(request)
    app_settings = request.app.state.app_settings
    amount_minor = int((payload.amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    now = datetime.now(tz=timezone.utc)
    try:
        order = await services.razorpay_client.create_order(
            amount_minor,
            app_settings.payment_currency,
            f"receipt_{int(time.time() * 1000)}",
            notes={"order_type": "flight_booking", "created_at": now.isoformat()},
        )
    except Exception as exc:  # noqa: BLE001
        return _gateway_problem(request, exc, operation="create payment order")
    return order


@router.post("/v1/payments/verify", response_model=schemas.VerifyPaymentResponse)
async def verify_payment(request: Request, payload: schemas.VerifyPaymentRequest):
    services = _services(request)
    result = await services.reconciliation.verify_client_payment(
        VerifyPaymentCommand(
            order_id=payload.order_id,
            payment_id=payload.payment_id,
            signature=payload.signature,
            flight_id=payload.flight_id,
            passengers=payload.passengers,
            user_id=payload.user_id,
        )
    )
    return result.as_dict()


@router.post("/v1/payments/status", response_model=schemas.PaymentStatusResponse)
async def payment_status(request: Request, payload: schemas.PaymentStatusRequest):
    services = _services(request)
    try:
        payment = await services.razorpay_client.fetch_payment(payload.payment_id)
    except Exception as exc:  # noqa: BLE001
        return _gateway_problem(request, exc, operation="verify payment status")
    payment_status_value = str(payment.get("status") or "unknown")
    if payment_status_value != "captured":
        return problem_details(
            request,
            status=status.HTTP_400_BAD_REQUEST,
            title="Payment Not Captured",
            detail="Payment not captured",
            error_code="PAYMENT_NOT_CAPTURED",
            extensions={"payment_status": payment_status_value},
        )
    return {"message": "Payment successful", "status": payment_status_value}


@router.get("/v1/payments/key", response_model=schemas.GatewayKeyResponse)
async def gateway_key(request: Request):
    key_id = getattr(request.app.state.app_settings, "razorpay_key_id", None)
    if not key_id:
        return problem_details(
            request,
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            title="Payment Gateway Not Configured",
            detail="Razorpay key not configured",
            error_code="CONFIGURATION_ERROR",
        )
    return {"key_id": key_id}


async def _webhook_handler(request: Request) -> dict:
    services = _services(request)
    body = await request.body()
    outcome = await services.reconciliation.handle_webhook(body, request.headers.get(SIGNATURE_HEADER))
    return outcome.as_dict()


@router.post("/v1/payments/webhook", status_code=status.HTTP_200_OK)
async def razorpay_webhook(request: Request) -> dict:
    return await _webhook_handler(request)


@router.post("/razorpay-webhook", status_code=status.HTTP_200_OK, include_in_schema=False)
async def legacy_razorpay_webhook(request: Request) -> dict:
    return await _webhook_handler(request)


@router.get("/v1/payments/stats")
async def payment_stats(request: Request) -> dict:
    monitor = _services(request).monitor
    snapshot = await monitor.refresh()
    return monitor.stats_report(snapshot)


@router.get("/v1/payments/health")
async def payment_health(request: Request) -> dict:
    monitor = _services(request).monitor
    snapshot = await monitor.refresh()
    return monitor.health_report(snapshot)


@router.post("/v1/payments/recovery/manual", response_model=schemas.RecoveryRunResponse)
async def manual_recovery(request: Request):
    _require_ops_token(request)
    report = await _services(request).sweeper.run_once()
    logger.info("payment_recovery_manual", extra={"extra": report.as_dict()})
    return report.as_dict()
