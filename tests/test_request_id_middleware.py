from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from gatekeeper.main import app


@pytest.fixture
def client():
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
    assert resp.headers.get("X-Request-ID")
    assert resp.headers.get("X-Request-Duration-ms") is not None


def test_request_id_is_echoed_in_error_body(client):
    resp = client.post(
        "/v1/admission/check",
        json={"key": "user:1", "max_requests": 1, "window_ms": 60_000},
        headers={"X-Request-ID": "req-limit-1"},
    )
    assert resp.status_code == 200

    blocked = client.post(
        "/v1/admission/check",
        json={"key": "user:1", "max_requests": 1, "window_ms": 60_000},
        headers={"X-Request-ID": "req-limit-2"},
    )

    assert blocked.status_code == 429
    assert blocked.headers.get("X-Request-ID") == "req-limit-2"
    assert blocked.json()["error"]["request_id"] == "req-limit-2"
