"""
test_main.py
------------
ClaimBridge — Test Suite for main.py
------------------------------------
HTTP surface through FastAPI's TestClient.  The app is built with
``create_app(settings, transport=...)`` so the Blue Button client talks to
the in-memory fake provider; entering the TestClient context runs the
lifespan (DB init, client connect).

Tests cover:
    - GET /health
    - POST /auth/initiate requires X-Clinic-Id and sets the session cookie
    - GET /auth/callback redirects to the success / error URLs
    - callback sessions are discarded; unfinished ones expire
    - GET /eob categorizes claims, rejects unknown types, maps provider errors
    - GET /patient and GET /clinics/consents
    - refresh tokens never appear in a response body

Run:
    pytest tests/test_main.py -v --tb=short

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

import os
import re
import sys
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from main import SessionStore, create_app
from tests.conftest import make_eob

CLINIC = {"X-Clinic-Id": "clinic-1"}


@pytest.fixture
def client(settings, provider):
    app = create_app(settings, transport=provider.transport())
    with TestClient(app) as test_client:
        yield test_client


def _initiate(client, ref="int-1"):
    response = client.post("/auth/initiate", json={"internal_patient_ref": ref}, headers=CLINIC)
    assert response.status_code == 200
    return response.json()["authorization_url"]


def _consent(client, ref="int-1", code="good-code"):
    url = _initiate(client, ref)
    state = parse_qs(urlparse(url).query)["state"][0]
    return client.get("/auth/callback", params={"code": code, "state": state}, follow_redirects=False)


# ── /health ────────────────────────────────────────────────────────────────────

def test_health_returns_ok(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert "version" in body


# ── /auth ──────────────────────────────────────────────────────────────────────

def test_initiate_without_clinic_header_is_unauthorized(client):
    response = client.post("/auth/initiate", json={"internal_patient_ref": "int-1"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Unauthorized: clinic identity not found."


def test_initiate_with_blank_ref_is_bad_request(client):
    response = client.post("/auth/initiate", json={"internal_patient_ref": ""}, headers=CLINIC)
    assert response.status_code == 400


def test_initiate_sets_httponly_session_cookie(client, settings):
    response = client.post("/auth/initiate", json={"internal_patient_ref": "int-1"}, headers=CLINIC)
    cookie = response.headers["set-cookie"]
    assert cookie.startswith(settings.session_cookie_name + "=")
    assert "httponly" in cookie.lower()
    assert response.json()["authorization_url"].startswith(settings.auth_url)


def test_callback_success_redirects_and_lists_consent(client, settings):
    response = _consent(client)
    assert response.status_code == 303
    assert response.headers["location"] == settings.success_redirect_url

    consents = client.get("/clinics/consents", headers=CLINIC).json()
    assert [c["internal_patient_ref"] for c in consents] == ["int-1"]
    assert consents[0]["patient_external_id"] == "patient-123"
    assert "encrypted_refresh_token" not in consents[0]


def test_callback_with_forged_state_redirects_with_reason(client, settings):
    _initiate(client)
    response = client.get(
        "/auth/callback",
        params={"code": "good-code", "state": "clinicId=clinic-1&nonce=forged"},
        follow_redirects=False,
    )
    assert response.status_code == 303
    location = urlparse(response.headers["location"])
    assert response.headers["location"].startswith(settings.error_redirect_url)
    assert parse_qs(location.query) == {"consent": ["error"], "reason": ["invalid_state"]}


def test_callback_with_rejected_code_redirects_with_reason(client):
    response = _consent(client, code="bad-code")
    assert response.status_code == 303
    assert "reason=token_exchange_failed" in response.headers["location"]


def test_callback_discards_its_session(client):
    _consent(client)
    assert len(client.app.state.sessions) == 0


def test_failed_callback_discards_its_session(client):
    _consent(client, code="bad-code")
    assert len(client.app.state.sessions) == 0


def test_expired_sessions_are_pruned_on_open():
    now = [0.0]
    store = SessionStore(ttl_seconds=60, clock=lambda: now[0])
    first, _ = store.open(None)
    store.open(None)
    assert len(store) == 2

    now[0] = 61.0
    latest, session = store.open(None)
    assert len(store) == 1
    assert store.get(first) is None
    assert store.get(latest) is session


def test_expired_session_is_not_returned():
    now = [0.0]
    store = SessionStore(ttl_seconds=60, clock=lambda: now[0])
    session_id, session = store.open(None)
    session["pending"] = "x"
    assert store.open(session_id) == (session_id, session)

    now[0] = 120.0
    assert store.get(session_id) is None
    assert len(store) == 0


def test_consents_are_scoped_to_calling_clinic(client):
    _consent(client)
    response = client.get("/clinics/consents", headers={"X-Clinic-Id": "clinic-2"})
    assert response.status_code == 200
    assert response.json() == []


# ── /eob ───────────────────────────────────────────────────────────────────────

def test_eob_without_consent_is_not_found(client):
    response = client.get("/eob/int-404", headers=CLINIC)
    assert response.status_code == 404


def test_eob_returns_categorized_claims(client, provider):
    provider.eob_by_type[None] = [
        {"resource": make_eob("c1", "CARRIER")},
        {"resource": make_eob("p1", "PDE")},
    ]
    _consent(client)

    response = client.get("/eob/int-1", headers=CLINIC)
    assert response.status_code == 200
    body = response.json()
    assert set(body) == {"CARRIER", "PDE"}
    assert body["CARRIER"][0]["claimInfo"]["id"] == "c1"
    assert body["PDE"][0]["id"] == "p1"


def test_eob_type_filter_is_forwarded(client, provider):
    provider.eob_by_type["pde"] = [{"resource": make_eob("p1", "PDE")}]
    _consent(client)

    response = client.get("/eob/int-1", params={"type": "PDE"}, headers=CLINIC)
    assert response.status_code == 200
    assert list(response.json()) == ["PDE"]
    assert provider.fhir_requests[-1].url.params["type"] == "pde"


def test_eob_unknown_type_is_bad_request(client):
    _consent(client)
    response = client.get("/eob/int-1", params={"type": "dental"}, headers=CLINIC)
    assert response.status_code == 400


def test_eob_provider_failure_is_bad_gateway(client, provider):
    provider.fail_types.add("carrier")
    _consent(client)
    response = client.get("/eob/int-1", params={"type": "carrier"}, headers=CLINIC)
    assert response.status_code == 502


def test_revoked_refresh_token_asks_for_reauthorization(client, provider):
    _consent(client)
    provider.revoked_refresh_tokens.add("rt-0")

    response = client.get("/eob/int-1", headers=CLINIC)
    assert response.status_code == 409
    assert response.json()["reauthorize"] is True


def test_refresh_tokens_never_leave_the_server(client, provider):
    provider.eob_by_type[None] = [{"resource": make_eob("c1", "CARRIER")}]
    _consent(client)

    bodies = [
        client.get("/eob/int-1", headers=CLINIC).text,
        client.get("/patient/int-1", headers=CLINIC).text,
        client.get("/clinics/consents", headers=CLINIC).text,
    ]
    for text in bodies:
        assert not re.search(r"\b[ar]t-\d+\b", text)


# ── /patient, /coverage ────────────────────────────────────────────────────────

def test_patient_is_normalized(client, provider):
    provider.patient = {
        "resourceType": "Patient",
        "id": "patient-123",
        "name": [{"given": ["Ann"], "family": "Cole"}],
    }
    _consent(client)

    body = client.get("/patient/int-1", headers=CLINIC).json()
    assert body["firstname"] == "Ann"
    assert body["lastname"] == "Cole"
    assert body["middlename"] == "N/A"


def test_coverage_returns_bundle(client):
    _consent(client)
    response = client.get("/coverage/int-1", headers=CLINIC)
    assert response.status_code == 200
    assert response.json()["resourceType"] == "Bundle"
