"""
oauth_flow.py
-------------
ClaimBridge — Blue Button Consent Broker — OAuth Flow Manager
-------------------------------------------------------------
Owns the three transitions of the consent lifecycle:

  initiate        clinic identity + internal patient ref
                  → nonce, PKCE pair and pending ref stored in the session
                  → provider authorize URL
  handle_callback code + state
                  → session state consumed (exactly once)
                  → nonce / clinic checked (fails closed)
                  → code marked used, exchanged with the PKCE verifier
                  → refresh token encrypted, consent upserted
  rotate          stored consent
                  → refresh token decrypted and exchanged
                  → new refresh token encrypted and compare-and-swapped

The session is any mutable mapping scoped to one user session (the HTTP
layer supplies a server-side store).  Only JSON-safe values are written to it.

Rotation is a critical section per (clinic_id, internal_patient_ref): an
asyncio.Lock serialises callers inside this process and the conditional
UPDATE in ``consent_store.swap_refresh_token`` arbitrates between processes.
A caller holding a stale record loses with RefreshConflictError.

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import secrets
import weakref
from pathlib import Path
from typing import MutableMapping, Optional, Tuple
from urllib.parse import parse_qs, urlencode

from pydantic import ValidationError

import consent_store
from errors import (
    AuthContextError,
    ConsentNotFoundError,
    NonceMismatchError,
    RefreshConflictError,
    TokenExchangeError,
)
from pkce import generate_pkce
from schemas import ConsentRecord, OAuthSessionState, TokenSet

logger = logging.getLogger(__name__)

# Session key under which the pending OAuthSessionState is kept.
SESSION_KEY = "bb_oauth_pending"


def build_state(clinic_id: str, nonce: str) -> str:
    """Encode the opaque OAuth ``state`` carrying clinic id and nonce."""
    return urlencode({"clinicId": clinic_id, "nonce": nonce})


def parse_state(state: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(clinic_id, nonce)`` from a state string; missing parts are None."""
    if not state:
        return None, None
    params = parse_qs(state, keep_blank_values=False)
    clinic = params.get("clinicId", [None])[0]
    nonce = params.get("nonce", [None])[0]
    return clinic, nonce


class OAuthFlowManager:
    """
    Orchestrates consent creation and refresh-token rotation.

    Args:
        client:  Connected ``BlueButtonClient``.
        vault:   ``CryptoVault`` for refresh tokens at rest.
        db_path: Consent store location (None → module default).
    """

    def __init__(self, client, vault, db_path: Optional[Path] = None) -> None:
        self._client = client
        self._vault = vault
        self._db_path = db_path
        # Entries vanish once no coroutine holds or awaits the lock.
        self._locks: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = weakref.WeakValueDictionary()

    # ── Initiate ─────────────────────────────────────────────────────────────

    def initiate(
        self,
        session: MutableMapping,
        clinic_id: Optional[str],
        internal_patient_ref: Optional[str],
    ) -> str:
        """
        Start an authorization for *internal_patient_ref* on behalf of
        *clinic_id* and return the provider authorize URL.

        Any earlier pending flow in the same session is replaced.

        Raises:
            AuthContextError: no authenticated clinic identity.
            ValueError:       no internal patient reference to bind.
        """
        if not clinic_id:
            raise AuthContextError("Clinic identity missing from request context.")
        if not internal_patient_ref:
            raise ValueError("internal_patient_ref is required.")

        nonce = secrets.token_urlsafe(32)
        state = build_state(clinic_id, nonce)
        codes = generate_pkce()

        pending = OAuthSessionState(
            state=state,
            nonce=nonce,
            code_verifier=codes.code_verifier,
            clinic_id=clinic_id,
            pending_internal_patient_ref=internal_patient_ref,
        )
        session[SESSION_KEY] = pending.model_dump(mode="json")

        logger.info(
            "OAuthFlow: authorization initiated (clinic=%s, internal_ref=%s).",
            clinic_id, internal_patient_ref,
        )
        return self._client.authorization_url(state, codes.code_challenge)

    # ── Callback ─────────────────────────────────────────────────────────────

    def _consume_pending(self, session: MutableMapping) -> Optional[OAuthSessionState]:
        raw = session.pop(SESSION_KEY, None)
        if not raw:
            return None
        try:
            return OAuthSessionState.model_validate(raw)
        except ValidationError:
            logger.warning("OAuthFlow: discarded unreadable pending session state.")
            return None

    async def handle_callback(
        self,
        session: MutableMapping,
        code: Optional[str],
        state: Optional[str],
    ) -> ConsentRecord:
        """
        Complete an authorization started by ``initiate()``.

        The pending session state is removed before any check runs, so a
        second callback on the same session always fails.

        Raises:
            NonceMismatchError:  no pending state, nonce absent or different,
                                 or the state names a different clinic.
            TokenExchangeError:  code missing or reused, or the provider
                                 rejected the exchange.
            ConsentBindingError: beneficiary bound to another internal ref.
        """
        pending = self._consume_pending(session)
        state_clinic, state_nonce = parse_state(state)

        if (
            pending is None
            or not state_nonce
            or not hmac.compare_digest(state_nonce.encode(), pending.nonce.encode())
            or state_clinic != pending.clinic_id
        ):
            logger.warning(
                "OAuthFlow: callback rejected, state nonce mismatch (clinic=%s, pending=%s).",
                state_clinic or "<none>", pending is not None,
            )
            raise NonceMismatchError("OAuth state does not match the pending session.")

        if not code:
            raise TokenExchangeError("Callback carried no authorization code.")

        if not consent_store.claim_authorization_code(code, db_path=self._db_path):
            logger.warning(
                "OAuthFlow: authorization code replay rejected (clinic=%s).", pending.clinic_id,
            )
            raise TokenExchangeError("Authorization code has already been used.")

        tokens = await self._client.exchange_authorization_code(code, pending.code_verifier)

        envelope = self._vault.encrypt(tokens.refresh_token)
        record = consent_store.upsert_consent(
            clinic_id=pending.clinic_id,
            internal_patient_ref=pending.pending_internal_patient_ref,
            patient_external_id=tokens.patient_id,
            encrypted_refresh_token=envelope,
            db_path=self._db_path,
        )
        logger.info(
            "OAuthFlow: consent stored (clinic=%s, internal_ref=%s).",
            record.clinic_id, record.internal_patient_ref,
        )
        return record

    # ── Rotate ───────────────────────────────────────────────────────────────

    def _lock_for(self, key: Tuple[str, str]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks.setdefault(key, asyncio.Lock())
        return lock

    async def rotate(self, record: ConsentRecord) -> TokenSet:
        """
        Exchange the consent's refresh token for a fresh access token and
        persist the rotated refresh token.

        Raises:
            ConsentNotFoundError: the consent no longer exists.
            RefreshConflictError: *record* is stale or another writer won the
                                  compare-and-swap.
            IntegrityError / FormatError: stored envelope is unreadable.
            RefreshError:         provider rejected the refresh token.
        """
        async with self._lock_for(record.key):
            current = consent_store.get_consent(
                record.clinic_id, record.internal_patient_ref, db_path=self._db_path,
            )
            if current is None:
                raise ConsentNotFoundError(
                    f"Consent vanished (clinic={record.clinic_id}, ref={record.internal_patient_ref})."
                )
            if current.encrypted_refresh_token != record.encrypted_refresh_token:
                logger.info(
                    "OAuthFlow: stale consent snapshot, rotation skipped (clinic=%s, internal_ref=%s).",
                    record.clinic_id, record.internal_patient_ref,
                )
                raise RefreshConflictError("Refresh token was rotated by another request.")

            refresh_token = self._vault.decrypt(record.encrypted_refresh_token)
            tokens = await self._client.refresh_access_token(refresh_token)

            if tokens.refresh_token and tokens.refresh_token != refresh_token:
                swapped = consent_store.swap_refresh_token(
                    record.clinic_id,
                    record.internal_patient_ref,
                    expected_envelope=record.encrypted_refresh_token,
                    new_envelope=self._vault.encrypt(tokens.refresh_token),
                    db_path=self._db_path,
                )
                if not swapped:
                    logger.error(
                        "OAuthFlow: lost refresh-token swap after provider rotation "
                        "(clinic=%s, internal_ref=%s).",
                        record.clinic_id, record.internal_patient_ref,
                    )
                    raise RefreshConflictError("Consent changed while the token was rotating.")

            logger.info(
                "OAuthFlow: refresh token rotated (clinic=%s, internal_ref=%s).",
                record.clinic_id, record.internal_patient_ref,
            )
            return tokens
