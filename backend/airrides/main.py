import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager, suppress
from typing import Awaitable, Callable, Iterable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from airrides.api.problem_details import (
    PROBLEM_TYPE_DOMAIN,
    PROBLEM_TYPE_SERVER,
    PROBLEM_TYPE_VALIDATION,
    problem_details,
)
from airrides.api.routes_bookings import router as bookings_router
from airrides.api.routes_flights import router as flights_router
from airrides.api.routes_health import router as health_router
from airrides.api.routes_payments import router as payments_router
from airrides.domain.errors import DomainError, ReconciliationError, SeatsUnavailableError
from airrides.domain.payments.webhooks import WebhookPayloadError
from airrides.infra.db import dispose_engine, get_session_factory
from airrides.infra.logging import clear_log_context, configure_logging, update_log_context
from airrides.infra.metrics import configure_metrics
from airrides.services import build_app_services
from airrides.settings import settings

logger = logging.getLogger(__name__)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_logger = logging.getLogger("airrides.request")
        start = time.time()
        request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
        if not request_id:
            request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        update_log_context(request_id=request_id, method=request.method, path=request.url.path)

        response = None
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            latency_ms = int((time.time() - start) * 1000)
            update_log_context(status_code=status_code, latency_ms=latency_ms)
            request_logger.info("request", extra={"latency_ms": latency_ms})
            if response is not None:
                response.headers.setdefault("X-Request-ID", request_id)
            clear_log_context()


class MetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: FastAPI, metrics_client) -> None:
        super().__init__(app)
        self.metrics = metrics_client

    async def dispatch(self, request: Request, call_next: Callable):
        route_label = "unmatched"
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            route = request.scope.get("route")
            route_label = getattr(route, "path", route_label)
            self.metrics.record_http_5xx(request.method, route_label)
            raise
        finally:
            route = request.scope.get("route")
            route_label = getattr(route, "path", route_label)
            self.metrics.record_http_latency(request.method, route_label, status_code, time.perf_counter() - start)
        if status_code >= 500:
            self.metrics.record_http_5xx(request.method, route_label)
        return response


def _resolve_cors_origins(app_settings) -> Iterable[str]:
    if app_settings.cors_origins:
        return app_settings.cors_origins
    if app_settings.strict_cors:
        return []
    if app_settings.app_env == "dev":
        return ["http://localhost:5173", "http://localhost:3000"]
    return []


def _validate_prod_config(app_settings) -> None:
    if app_settings.app_env != "prod":
        return

    errors: list[str] = []
    required = {
        "RAZORPAY_KEY_ID": app_settings.razorpay_key_id,
        "RAZORPAY_KEY_SECRET": app_settings.razorpay_key_secret,
        "RAZORPAY_WEBHOOK_SECRET": app_settings.razorpay_webhook_secret,
    }
    if app_settings.metrics_enabled:
        required["METRICS_TOKEN"] = app_settings.metrics_token
    for name, value in required.items():
        if not value or not value.strip():
            errors.append(f"APP_ENV=prod requires {name} to be configured")

    if errors:
        for error in errors:
            logger.error("startup_config_error", extra={"extra": {"detail": error}})
        raise RuntimeError("Invalid production configuration: " + "; ".join(errors))


async def _periodic(name: str, interval_seconds: int, task: Callable[[], Awaitable[object]]) -> None:
    while True:
        await asyncio.sleep(max(interval_seconds, 1))
        try:
            await task()
        except Exception as exc:  # noqa: BLE001
            logger.warning("background_task_failed", extra={"extra": {"task": name, "reason": type(exc).__name__}})


def create_app(app_settings) -> FastAPI:
    configure_logging()
    metrics_client = configure_metrics(app_settings.metrics_enabled)
    _validate_prod_config(app_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.app_settings = getattr(app.state, "app_settings", app_settings)
        app.state.metrics = getattr(app.state, "metrics", None) or metrics_client
        app.state.db_session_factory = getattr(app.state, "db_session_factory", None) or get_session_factory()
        app.state.services = getattr(app.state, "services", None) or build_app_services(
            app.state.app_settings, app.state.db_session_factory, metrics=app.state.metrics
        )

        background: list[asyncio.Task] = []
        if app.state.app_settings.payment_recovery_enabled:
            services = app.state.services
            background.append(
                asyncio.create_task(
                    _periodic(
                        "payment-recovery",
                        app.state.app_settings.payment_recovery_interval_seconds,
                        services.sweeper.run_once,
                    )
                )
            )
            background.append(
                asyncio.create_task(
                    _periodic(
                        "payment-monitor",
                        app.state.app_settings.payment_monitor_interval_seconds,
                        services.monitor.refresh,
                    )
                )
            )
        yield
        for task in background:
            task.cancel()
        for task in background:
            with suppress(asyncio.CancelledError):
                await task
        await dispose_engine()

    app = FastAPI(title="AirRides Booking API", version="1.0.0", lifespan=lifespan)

    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware, metrics_client=metrics_client)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(_resolve_cors_origins(app_settings)),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            loc = error.get("loc", [])
            field = ".".join(str(part) for part in loc if part not in {"body", "query", "path"}) or "body"
            errors.append({"field": field, "message": error.get("msg", "Invalid value")})
        return problem_details(
            request=request,
            status=422,
            title="Validation Error",
            detail="Request validation failed",
            errors=errors,
            type_=PROBLEM_TYPE_VALIDATION,
            error_code="BAD_REQUEST_ERROR",
        )

    @app.exception_handler(DomainError)
    async def domain_exception_handler(request: Request, exc: DomainError):
        error_code = exc.code if isinstance(exc, ReconciliationError) else None
        extensions = None
        if isinstance(exc, SeatsUnavailableError):
            extensions = {"seats_available": exc.seats_available}
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.title,
            detail=exc.detail,
            errors=exc.errors or [],
            type_=exc.type or PROBLEM_TYPE_DOMAIN,
            error_code=error_code,
            extensions=extensions,
        )

    @app.exception_handler(WebhookPayloadError)
    async def webhook_payload_exception_handler(request: Request, exc: WebhookPayloadError):
        return problem_details(
            request=request,
            status=400,
            title="Invalid Webhook Payload",
            detail=str(exc),
            error_code="BAD_REQUEST_ERROR",
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.detail if isinstance(exc.detail, str) else "HTTP Error",
            detail=exc.detail if isinstance(exc.detail, str) else "Request failed",
            type_=PROBLEM_TYPE_DOMAIN if exc.status_code < 500 else PROBLEM_TYPE_SERVER,
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", None)
        error_type = type(exc).__name__
        update_log_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=500,
            error_type=error_type,
        )
        logger.exception(
            "unhandled_exception",
            extra={"request_id": request_id, "path": request.url.path, "error_type": error_type},
        )
        return problem_details(
            request=request,
            status=500,
            title="Internal Server Error",
            detail="Unexpected error",
            type_=PROBLEM_TYPE_SERVER,
            error_code="SERVER_ERROR",
        )

    app.include_router(health_router)
    app.include_router(flights_router)
    app.include_router(bookings_router)
    app.include_router(payments_router)
    if app_settings.metrics_enabled:
        from airrides.api.routes_metrics import router as metrics_router

        app.include_router(metrics_router)
    return app


app = create_app(settings)
