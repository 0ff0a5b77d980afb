"""
test_oauth_flow.py
------------------
ClaimBridge — Tests for oauth_flow.py
-------------------------------------
Consent lifecycle against the fake Blue Button provider:
    - initiate stores nonce / verifier / pending ref and builds the URL
    - callback: nonce and clinic checks, single-use session and code,
      encrypted persistence
    - rotation: swap on success, stale snapshot and concurrent races,
      provider rejection

Run:
    pytest tests/test_oauth_flow.py -v --tb=short

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

import asyncio
import os
import sys
from urllib.parse import parse_qs, urlparse

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import consent_store
from bluebutton_client import BlueButtonClient
from errors import (
    AuthContextError,
    ConsentNotFoundError,
    IntegrityError,
    NonceMismatchError,
    RefreshConflictError,
    RefreshError,
    TokenExchangeError,
)
from oauth_flow import SESSION_KEY, OAuthFlowManager, build_state, parse_state
from pkce import challenge_for


def _run_with_flow(settings, vault, provider, scenario):
    """Run ``scenario(flow)`` inside a connected client and return its result."""
    async def _go():
        async with BlueButtonClient(settings, transport=provider.transport()) as client:
            flow = OAuthFlowManager(client, vault, db_path=settings.consent_db_path)
            return await scenario(flow)
    return asyncio.run(_go())


def _state_from(url):
    return parse_qs(urlparse(url).query)["state"][0]


async def _authorize(flow, session, code="good-code", clinic="clinic-1", ref="int-1"):
    url = flow.initiate(session, clinic, ref)
    return await flow.handle_callback(session, code, _state_from(url))


# ── state helpers ──────────────────────────────────────────────────────────────

def test_state_round_trip():
    assert parse_state(build_state("clinic-1", "n0nce")) == ("clinic-1", "n0nce")


def test_parse_state_tolerates_garbage():
    assert parse_state(None) == (None, None)
    assert parse_state("garbage") == (None, None)


# ── initiate ───────────────────────────────────────────────────────────────────

def test_initiate_builds_authorize_url_and_pending_state(settings, vault, provider):
    session = {}

    async def scenario(flow):
        return flow.initiate(session, "clinic-1", "int-1")

    url = _run_with_flow(settings, vault, provider, scenario)
    query = parse_qs(urlparse(url).query)
    pending = session[SESSION_KEY]

    assert url.startswith(settings.auth_url)
    assert query["response_type"] == ["code"]
    assert query["client_id"] == ["client-abc"]
    assert query["code_challenge_method"] == ["S256"]
    assert query["code_challenge"] == [challenge_for(pending["code_verifier"])]
    assert parse_state(query["state"][0]) == ("clinic-1", pending["nonce"])
    assert pending["pending_internal_patient_ref"] == "int-1"


def test_initiate_without_clinic_raises_auth_context_error(settings, vault, provider):
    async def scenario(flow):
        flow.initiate({}, None, "int-1")

    with pytest.raises(AuthContextError):
        _run_with_flow(settings, vault, provider, scenario)


def test_initiate_without_patient_ref_raises_value_error(settings, vault, provider):
    async def scenario(flow):
        flow.initiate({}, "clinic-1", "")

    with pytest.raises(ValueError):
        _run_with_flow(settings, vault, provider, scenario)


# ── callback ───────────────────────────────────────────────────────────────────

def test_callback_stores_encrypted_consent(settings, vault, provider):
    session = {}

    async def scenario(flow):
        return await _authorize(flow, session)

    record = _run_with_flow(settings, vault, provider, scenario)
    stored = consent_store.get_consent("clinic-1", "int-1", db_path=settings.consent_db_path)

    assert record.patient_external_id == "patient-123"
    assert stored.encrypted_refresh_token != "rt-0"
    assert vault.decrypt(stored.encrypted_refresh_token) == "rt-0"
    assert SESSION_KEY not in session


def test_callback_sends_pkce_verifier_and_basic_auth(settings, vault, provider):
    session = {}

    async def scenario(flow):
        url = flow.initiate(session, "clinic-1", "int-1")
        verifier = session[SESSION_KEY]["code_verifier"]
        await flow.handle_callback(session, "good-code", _state_from(url))
        return verifier

    verifier = _run_with_flow(settings, vault, provider, scenario)
    request, form = provider.token_requests[0]
    assert form["grant_type"] == "authorization_code"
    assert form["code_verifier"] == verifier
    assert form["redirect_uri"] == settings.redirect_uri
    assert request.headers["authorization"].startswith("Basic ")


def test_nonce_mismatch_creates_no_record(settings, vault, provider):
    session = {}

    async def scenario(flow):
        flow.initiate(session, "clinic-1", "int-1")
        await flow.handle_callback(session, "good-code", build_state("clinic-1", "forged"))

    with pytest.raises(NonceMismatchError):
        _run_with_flow(settings, vault, provider, scenario)
    assert consent_store.get_consent("clinic-1", "int-1", db_path=settings.consent_db_path) is None
    assert provider.token_requests == []


def test_state_naming_another_clinic_is_rejected(settings, vault, provider):
    session = {}

    async def scenario(flow):
        flow.initiate(session, "clinic-1", "int-1")
        nonce = session[SESSION_KEY]["nonce"]
        await flow.handle_callback(session, "good-code", build_state("clinic-2", nonce))

    with pytest.raises(NonceMismatchError):
        _run_with_flow(settings, vault, provider, scenario)
    assert consent_store.list_consents("clinic-2", db_path=settings.consent_db_path) == []


def test_callback_without_pending_session_is_rejected(settings, vault, provider):
    async def scenario(flow):
        await flow.handle_callback({}, "good-code", build_state("clinic-1", "anything"))

    with pytest.raises(NonceMismatchError):
        _run_with_flow(settings, vault, provider, scenario)


def test_pending_state_is_single_use(settings, vault, provider):
    session = {}

    async def scenario(flow):
        url = flow.initiate(session, "clinic-1", "int-1")
        await flow.handle_callback(session, "good-code", _state_from(url))
        await flow.handle_callback(session, "good-code", _state_from(url))

    with pytest.raises(NonceMismatchError):
        _run_with_flow(settings, vault, provider, scenario)


def test_reused_authorization_code_is_rejected(settings, vault, provider):
    async def scenario(flow):
        await _authorize(flow, {}, ref="int-1")
        await _authorize(flow, {}, ref="int-1")

    with pytest.raises(TokenExchangeError):
        _run_with_flow(settings, vault, provider, scenario)
    assert len(provider.token_requests) == 1


def test_provider_rejection_raises_token_exchange_error(settings, vault, provider):
    async def scenario(flow):
        await _authorize(flow, {}, code="bad-code")

    with pytest.raises(TokenExchangeError):
        _run_with_flow(settings, vault, provider, scenario)
    assert consent_store.get_consent("clinic-1", "int-1", db_path=settings.consent_db_path) is None


def test_missing_code_raises_token_exchange_error(settings, vault, provider):
    async def scenario(flow):
        await _authorize(flow, {}, code=None)

    with pytest.raises(TokenExchangeError):
        _run_with_flow(settings, vault, provider, scenario)


# ── rotation ───────────────────────────────────────────────────────────────────

def test_rotate_persists_new_refresh_token(settings, vault, provider):
    async def scenario(flow):
        record = await _authorize(flow, {})
        return await flow.rotate(record)

    tokens = _run_with_flow(settings, vault, provider, scenario)
    stored = consent_store.get_consent("clinic-1", "int-1", db_path=settings.consent_db_path)
    assert tokens.access_token == "at-1"
    assert vault.decrypt(stored.encrypted_refresh_token) == "rt-1"


def test_rotate_without_new_refresh_token_keeps_stored_value(settings, vault, provider):
    provider.rotate_refresh_tokens = False

    async def scenario(flow):
        record = await _authorize(flow, {})
        await flow.rotate(record)
        return record

    record = _run_with_flow(settings, vault, provider, scenario)
    stored = consent_store.get_consent("clinic-1", "int-1", db_path=settings.consent_db_path)
    assert stored.encrypted_refresh_token == record.encrypted_refresh_token


def test_rotate_with_stale_record_raises_conflict(settings, vault, provider):
    async def scenario(flow):
        record = await _authorize(flow, {})
        await flow.rotate(record)
        await flow.rotate(record)

    with pytest.raises(RefreshConflictError):
        _run_with_flow(settings, vault, provider, scenario)
    assert provider.refresh_count == 1


def test_concurrent_rotation_has_exactly_one_winner(settings, vault, provider):
    async def scenario(flow):
        record = await _authorize(flow, {})
        return await asyncio.gather(
            flow.rotate(record), flow.rotate(record), return_exceptions=True,
        )

    results = _run_with_flow(settings, vault, provider, scenario)
    conflicts = [r for r in results if isinstance(r, RefreshConflictError)]
    winners = [r for r in results if not isinstance(r, BaseException)]
    assert len(winners) == 1
    assert len(conflicts) == 1
    stored = consent_store.get_consent("clinic-1", "int-1", db_path=settings.consent_db_path)
    assert vault.decrypt(stored.encrypted_refresh_token) == winners[0].refresh_token


def test_rotation_lock_is_released_from_the_lock_map(settings, vault, provider):
    async def scenario(flow):
        record = await _authorize(flow, {})
        await flow.rotate(record)
        return len(flow._locks)

    assert _run_with_flow(settings, vault, provider, scenario) == 0


def test_revoked_refresh_token_raises_refresh_error(settings, vault, provider):
    provider.revoked_refresh_tokens.add("rt-0")

    async def scenario(flow):
        record = await _authorize(flow, {})
        await flow.rotate(record)

    with pytest.raises(RefreshError):
        _run_with_flow(settings, vault, provider, scenario)


def test_rotate_missing_consent_raises_not_found(settings, vault, provider):
    async def scenario(flow):
        record = await _authorize(flow, {})
        with consent_store.get_connection(settings.consent_db_path) as conn:
            conn.execute("DELETE FROM consents")
        await flow.rotate(record)

    with pytest.raises(ConsentNotFoundError):
        _run_with_flow(settings, vault, provider, scenario)


def test_corrupted_envelope_raises_integrity_error(settings, vault, provider):
    async def scenario(flow):
        record = await _authorize(flow, {})
        nonce, ciphertext, tag = record.encrypted_refresh_token.split(":")
        forged = ":".join((nonce, ciphertext, ("0" if tag[0] != "0" else "1") + tag[1:]))
        consent_store.swap_refresh_token(
            "clinic-1", "int-1", record.encrypted_refresh_token, forged,
            db_path=settings.consent_db_path,
        )
        fresh = consent_store.get_consent("clinic-1", "int-1", db_path=settings.consent_db_path)
        await flow.rotate(fresh)

    with pytest.raises(IntegrityError):
        _run_with_flow(settings, vault, provider, scenario)
    assert provider.refresh_count == 0
