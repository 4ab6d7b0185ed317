import json
import logging

from airrides.infra.logging import configure_logging, redact
from airrides.main import app


def _remove_route(path: str) -> None:
    app.router.routes = [route for route in app.router.routes if getattr(route, "path", None) != path]


def _last_payload(capsys, marker: str | None = None) -> dict:
    captured = capsys.readouterr()
    lines = (captured.out + captured.err).strip().splitlines()
    assert lines
    if marker:
        return json.loads(next(line for line in reversed(lines) if marker in line))
    return json.loads(lines[-1])


def test_redact_masks_gateway_secrets_and_contacts():
    text = (
        "key rzp_live_AbC123 paid by traveller@example.com "
        "callback?razorpay_signature=deadbeef&x=1 authorization=cnpwOnNlY3JldA=="
    )

    redacted = redact(text)

    assert "rzp_live_AbC123" not in redacted
    assert "traveller@example.com" not in redacted
    assert "deadbeef" not in redacted
    assert "cnpwOnNlY3JldA==" not in redacted
    assert "[REDACTED_KEY]" in redacted


def test_logging_redacts_signatures_and_tokens(capsys):
    configure_logging()
    logger = logging.getLogger("redaction-test")

    logger.info(
        "payment_logged",
        extra={
            "authorization": "Bearer super-secret",
            "extra": {"payment_id": "pay_1", "signature": "abc123", "note": "Bearer leaked-token"},
        },
    )

    payload = _last_payload(capsys)
    assert payload["message"] == "payment_logged"
    assert payload["authorization"] == "[REDACTED]"
    assert payload["signature"] == "[REDACTED]"
    assert payload["payment_id"] == "pay_1"
    assert "leaked-token" not in payload["note"]


def test_request_id_present_in_logs_and_response(client_no_raise, capsys):
    configure_logging()

    async def boom():  # pragma: no cover - executed via HTTP
        raise RuntimeError("boom")

    route_path = "/boom-log"
    app.router.add_api_route(route_path, boom, methods=["GET"])
    try:
        response = client_no_raise.get(route_path, headers={"X-Request-ID": "req-123"})
    finally:
        _remove_route(route_path)

    assert response.status_code == 500
    assert response.json()["request_id"] == "req-123"
    assert response.json()["error"] == "SERVER_ERROR"
    payload = _last_payload(capsys, marker="unhandled_exception")
    assert payload.get("request_id") == "req-123"
