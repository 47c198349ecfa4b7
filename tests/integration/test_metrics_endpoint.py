"""Integration tests for metrics endpoint."""

from __future__ import annotations


def test_metrics_endpoint_available(client):
    client.get("/health")
    response = client.get("/metrics")
    assert response.status_code == 200
    body = response.content.decode()
    assert "payproof_http_requests_total" in body
    assert "payproof_submissions_total" in body
