"""
test_main.py
------------
MamaCare - Maternal Health Dashboard - Test Suite for main.py
-------------------------------------------------------------
FastAPI routes exercised with TestClient, so no running server is needed.
The app is built with create_app() around a gateway and an OpenMRS client
that both talk to the fake upstream through httpx.MockTransport.

Tests cover:
    - GET /health returns 200 and required fields
    - /api/openmrs proxy: path param and wildcard forms, preflight, 405, 400
    - GET /dashboard returns every section, 404 for unknown e-mail
    - GET /dashboard/status and DELETE /dashboard/error

Run:
    pytest tests/test_main.py -v --tb=short

Project: MamaCare - Maternal Health Dashboard
"""

import os
import sys

import httpx
import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from main import create_app
from mock_data.openmrs_payloads import PATIENT_EMAIL, SESSION, FakeOpenMRS
from openmrs_client import OpenMRSClient
from proxy_gateway import ProxyGateway, ProxyTarget

TARGET = ProxyTarget(base_url="https://emr.example.org", username="nurse", password="s3cret")
ORIGIN = "http://localhost:3000"


# ── Helpers ────────────────────────────────────────────────────────────────────

def _app(fake=None):
    fake = fake or FakeOpenMRS()
    gateway = ProxyGateway(target=TARGET, allow_origin=ORIGIN, transport=fake.transport())
    app = create_app(
        gateway=gateway,
        client_factory=lambda tracker: OpenMRSClient(
            tracker=tracker,
            use_proxy=True,
            proxy_url="http://proxy.test/api/openmrs",
            transport=fake.transport(),
        ),
        allowed_origin=ORIGIN,
    )
    return app, fake


@pytest.fixture
def fake():
    return FakeOpenMRS()


@pytest.fixture
def client(fake, monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    app, _ = _app(fake)
    return TestClient(app)


# ── GET /health ────────────────────────────────────────────────────────────────

def test_health_returns_200(client):
    """GET /health should return HTTP 200 with status ok."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_health_required_fields(client):
    """GET /health response must include service, version, status, timestamp, proxy_path."""
    data = client.get("/health").json()
    for field in ["service", "version", "status", "timestamp", "openmrs_url", "proxy_path"]:
        assert field in data, f"Missing field in /health response: {field}"
    assert data["proxy_path"] == "/api/openmrs"


# ── /api/openmrs ───────────────────────────────────────────────────────────────

def test_proxy_path_param(client, fake):
    response = client.get("/api/openmrs", params={"path": "ws/rest/v1/session"})
    assert response.status_code == 200
    assert response.json() == SESSION
    assert response.headers["access-control-allow-origin"] == ORIGIN
    sent = fake.requests[0]
    assert str(sent.url) == "https://emr.example.org/openmrs/ws/rest/v1/session"
    assert sent.headers["Authorization"] == TARGET.auth_header()


def test_proxy_wildcard_path_keeps_query(client, fake):
    response = client.get("/api/openmrs/ws/rest/v1/patient", params={"q": PATIENT_EMAIL, "limit": "1"})
    assert response.status_code == 200
    assert fake.requests[0].url.params["q"] == PATIENT_EMAIL


def test_proxy_upstream_error_envelope():
    app, fake = _app(FakeOpenMRS(failures={"visit"}, failure_status=404))
    response = TestClient(app).get("/api/openmrs/ws/rest/v1/visit")
    assert response.status_code == 404
    body = response.json()
    assert body["error"] == "OpenMRS API error"
    assert body["status"] == 404
    assert body["requestedUrl"] == "https://emr.example.org/openmrs/ws/rest/v1/visit"


def test_proxy_text_passthrough():
    gateway = ProxyGateway(
        target=TARGET,
        allow_origin=ORIGIN,
        transport=httpx.MockTransport(lambda r: httpx.Response(200, text="pong")),
    )
    response = TestClient(create_app(gateway=gateway, allowed_origin=ORIGIN)).get("/api/openmrs/ws/rest/v1/ping")
    assert response.status_code == 200
    assert response.text == "pong"
    assert response.headers["content-type"].startswith("text/plain")


def test_proxy_options_is_empty_200_without_upstream(client, fake):
    response = client.options("/api/openmrs/ws/rest/v1/session")
    assert response.status_code == 200
    assert response.content == b""
    assert response.headers["access-control-allow-methods"] == "GET, OPTIONS"
    assert fake.requests == []


def test_browser_preflight_reaches_gateway(client, fake):
    response = client.options(
        "/api/openmrs/ws/rest/v1/session",
        headers={"Origin": ORIGIN, "Access-Control-Request-Method": "GET"},
    )
    assert response.status_code == 200
    assert response.content == b""
    assert response.headers["access-control-allow-methods"] == "GET, OPTIONS"
    assert response.headers["access-control-allow-origin"] == ORIGIN
    assert fake.requests == []


def test_browser_preflight_from_other_origin_is_not_rejected(client, fake):
    response = client.options(
        "/api/openmrs",
        headers={"Origin": "http://other.example", "Access-Control-Request-Method": "GET"},
    )
    assert response.status_code == 200
    assert response.content == b""
    assert fake.requests == []


def test_dashboard_preflight_still_handled_by_middleware(client):
    response = client.options(
        "/dashboard/error",
        headers={"Origin": ORIGIN, "Access-Control-Request-Method": "DELETE"},
    )
    assert response.status_code == 200
    assert "DELETE" in response.headers["access-control-allow-methods"]


def test_proxy_post_is_405_without_upstream(client, fake):
    response = client.post("/api/openmrs/ws/rest/v1/patient", json={"name": "x"})
    assert response.status_code == 405
    assert response.json() == {"error": "Method not allowed"}
    assert response.headers["access-control-allow-origin"] == ORIGIN
    assert fake.requests == []


def test_proxy_post_with_path_param_is_405(client, fake):
    response = client.post("/api/openmrs", params={"path": "ws/rest/v1/visit"})
    assert response.status_code == 405
    assert fake.requests == []


def test_proxy_no_path_is_400(client, fake):
    response = client.get("/api/openmrs")
    assert response.status_code == 400
    body = response.json()
    assert "No API path provided" in body["message"]
    assert body["url"] == "/api/openmrs"
    assert fake.requests == []


# ── /dashboard ─────────────────────────────────────────────────────────────────

def test_dashboard_returns_all_sections(client):
    response = client.get("/dashboard", params={"email": PATIENT_EMAIL})
    assert response.status_code == 200
    data = response.json()
    for field in ["patient", "pregnancy", "appointments", "medications", "lab_reports", "diagnoses", "advisory", "errors"]:
        assert field in data, f"Missing field in /dashboard response: {field}"
    assert data["patient"]["email"] == PATIENT_EMAIL
    assert data["advisory"]["show"] is True


def test_dashboard_unknown_email_is_404():
    app, _ = _app(FakeOpenMRS(routes={"patient": {"results": []}}))
    response = TestClient(app).get("/dashboard", params={"email": "nobody@example.org"})
    assert response.status_code == 404
    assert response.json()["detail"] == "User not registered"


def test_dashboard_upstream_failure_is_502():
    app, _ = _app(FakeOpenMRS(failures={"session"}))
    response = TestClient(app).get("/dashboard", params={"email": PATIENT_EMAIL})
    assert response.status_code == 502


def test_dashboard_requires_email(client):
    assert client.get("/dashboard").status_code == 422


def test_status_idle_after_dashboard(client):
    client.get("/dashboard", params={"email": PATIENT_EMAIL})
    status = client.get("/dashboard/status").json()
    assert status["loading"] is False
    assert status["in_flight"] == 0


def test_status_shows_and_clears_error():
    app, _ = _app()
    tracker = app.state.tracker
    tracker.end_call(tracker.begin_call(), error="Failed to fetch data from OpenMRS: 500 Internal Server Error")
    client = TestClient(app)
    assert client.get("/dashboard/status").json()["error"] == "Failed to fetch data from OpenMRS: 500 Internal Server Error"
    cleared = client.delete("/dashboard/error").json()
    assert cleared["error"] is None
    assert client.get("/dashboard/status").json()["error"] is None
