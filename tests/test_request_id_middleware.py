from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from keygate.core.app_factory import create_app


@pytest.fixture
def client(service):
    app = create_app(service, run_sweeper=False, configure_logs=False)
    with TestClient(app) as test_client:
        yield test_client


def test_preserves_incoming_request_id_header(client):
    incoming_id = "test-request-id-123"
    resp = client.get("/health", headers={"X-Request-ID": incoming_id})

    assert resp.status_code == 200
    assert resp.headers.get("X-Request-ID") == incoming_id


def test_generates_request_id_when_missing(client):
    resp = client.get("/health")

    assert resp.status_code == 200
    generated = resp.headers.get("X-Request-ID")
    assert generated
    assert isinstance(generated, str)

    duration = resp.headers.get("X-Request-Duration-ms")
    assert duration is not None


def test_error_envelope_carries_request_id(client):
    resp = client.get(
        "/v1/keys/nobody",
        headers={"X-Request-ID": "req-404", "X-API-Key": "test-api-key-123"},
    )

    assert resp.status_code == 404
    assert resp.json()["error"]["request_id"] == "req-404"
    assert resp.headers.get("X-Request-ID") == "req-404"
