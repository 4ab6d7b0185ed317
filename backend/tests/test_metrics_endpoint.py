from airrides.infra.metrics import metrics
from airrides.settings import settings


def test_metrics_endpoint_exposes_payment_metrics(client):
    metrics.record_reconciliation("client", "SUCCESS")
    metrics.record_webhook("processed")
    settings.metrics_token = None

    response = client.get("/metrics")

    assert response.status_code == 200
    body = response.text
    assert "payment_reconciliations_total" in body
    assert 'outcome="SUCCESS"' in body
    assert "razorpay_webhook_events_total" in body
    assert "http_request_latency_seconds" in body


def test_metrics_endpoint_requires_token_when_configured(client):
    settings.metrics_token = "metrics-secret"

    denied = client.get("/metrics")
    wrong = client.get("/metrics", headers={"Authorization": "Bearer nope"})
    allowed = client.get("/metrics", headers={"Authorization": "Bearer metrics-secret"})

    assert denied.status_code == 401
    assert wrong.status_code == 401
    assert allowed.status_code == 200


def test_metrics_endpoint_refuses_prod_without_token(client):
    settings.metrics_token = None
    settings.app_env = "prod"

    response = client.get("/metrics")

    assert response.status_code == 500


def test_metrics_endpoint_rejects_non_ascii_token(client):
    settings.metrics_token = "metrics-secret"

    response = client.get("/metrics", headers={"Authorization": "Bearer caf\u00e9".encode("latin-1")})

    assert response.status_code == 401
