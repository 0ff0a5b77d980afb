"""
tests/conftest.py
-----------------
Shared fixtures: test Settings, a temp consent DB, the Crypto Vault, and a
fake Blue Button provider served through ``httpx.MockTransport``.

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

import json
import os
import sys
from urllib.parse import parse_qs

import httpx
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Settings
from consent_store import init_db
from crypto_vault import CryptoVault

TEST_KEY_HEX = "ab" * 32
TOKEN_URL = "https://bb.test/v2/o/token/"
AUTH_URL = "https://bb.test/v2/o/authorize/"
API_BASE_URL = "https://bb.test/v2/fhir/"


# ── Sample resources ───────────────────────────────────────────────────────────

EOB_TYPE_SYSTEM = "https://bluebutton.cms.gov/resources/codesystem/eob-type"


def make_eob(resource_id, category, **extra):
    """Minimal ExplanationOfBenefit coded with *category* (None → no type)."""
    resource = {"resourceType": "ExplanationOfBenefit", "id": resource_id}
    if category is not None:
        resource["type"] = {"coding": [{"system": EOB_TYPE_SYSTEM, "code": category}]}
    resource.update(extra)
    return resource


def bundle_of(*resources):
    return {
        "resourceType": "Bundle",
        "type": "searchset",
        "total": len(resources),
        "entry": [{"resource": r} for r in resources],
    }


# ── Fake provider ──────────────────────────────────────────────────────────────

class FakeBlueButton:
    """
    In-memory stand-in for the Blue Button token endpoint and FHIR API.

    Every refresh returns a new refresh token (``rt-1``, ``rt-2`` …) unless
    ``rotate_refresh_tokens`` is False.  ``eob_by_type`` maps a claim type
    (or None for unfiltered searches) to the entries returned.
    """

    def __init__(self):
        self.valid_codes = {"good-code": "patient-123"}
        self.revoked_refresh_tokens = set()
        self.rotate_refresh_tokens = True
        self.refresh_count = 0
        self.token_requests = []
        self.fhir_requests = []
        self.eob_by_type = {None: []}
        self.fail_types = set()
        self.patient = {"resourceType": "Patient", "id": "patient-123"}

    def transport(self):
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url.startswith(TOKEN_URL):
            return self._token(request)
        self.fhir_requests.append(request)
        path = request.url.path
        if path.endswith("/ExplanationOfBenefit"):
            claim_type = request.url.params.get("type")
            if claim_type in self.fail_types:
                return httpx.Response(500, json={"error": "boom"})
            entries = self.eob_by_type.get(claim_type, [])
            return httpx.Response(200, json={"resourceType": "Bundle", "entry": entries})
        if "/Patient/" in path:
            return httpx.Response(200, json=self.patient)
        if path.endswith("/Coverage"):
            return httpx.Response(200, json={"resourceType": "Bundle", "entry": []})
        return httpx.Response(404, json={"error": "not_found"})

    def _token(self, request):
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.token_requests.append((request, form))
        grant = form.get("grant_type")
        if grant == "authorization_code":
            patient = self.valid_codes.get(form.get("code"))
            if patient is None or not form.get("code_verifier"):
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(200, json={
                "access_token": "at-0",
                "refresh_token": "rt-0",
                "patient": patient,
                "expires_in": 3600,
            })
        if grant == "refresh_token":
            token = form.get("refresh_token")
            if token in self.revoked_refresh_tokens:
                return httpx.Response(400, json={"error": "invalid_grant"})
            self.refresh_count += 1
            body = {"access_token": f"at-{self.refresh_count}", "expires_in": 3600}
            if self.rotate_refresh_tokens:
                body["refresh_token"] = f"rt-{self.refresh_count}"
            return httpx.Response(200, json=body)
        return httpx.Response(400, content=json.dumps({"error": "unsupported_grant_type"}))


# ── Fixtures ───────────────────────────────────────────────────────────────────

@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "consents.sqlite"
    init_db(path)
    return path


@pytest.fixture
def settings(db_path):
    return Settings(
        client_id="client-abc",
        client_secret="secret-xyz",
        redirect_uri="https://clinic.test/auth/callback",
        auth_url=AUTH_URL,
        token_url=TOKEN_URL,
        api_base_url=API_BASE_URL,
        encryption_key=TEST_KEY_HEX,
        consent_db_path=db_path,
        success_redirect_url="https://ui.test/patients-list",
        error_redirect_url="https://ui.test/patient-data",
        cors_origins=["https://ui.test"],
    )


@pytest.fixture
def vault():
    return CryptoVault(bytes.fromhex(TEST_KEY_HEX))


@pytest.fixture
def provider():
    return FakeBlueButton()
