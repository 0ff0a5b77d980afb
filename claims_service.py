"""
claims_service.py
-----------------
ClaimBridge — Blue Button Consent Broker — Claims Broker
--------------------------------------------------------
Request-level orchestration used by the HTTP layer:

  consent lookup (clinic_id, internal_patient_ref)
    → OAuthFlowManager.rotate()          fresh access token, rotated refresh token
    → BlueButtonClient.get_eob_bundle()  fan-out per claim type
    → claims_classifier.classify()       CategorizedClaims

A lost rotation race (RefreshConflictError) is retried against the freshly
persisted consent up to ``rotation_conflict_retries`` times; the winner's new
refresh token is what the retry uses.

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import consent_store
from bluebutton_client import normalize_claim_types
from claims_classifier import classify
from errors import ConsentNotFoundError, RefreshConflictError
from normalizers import normalize_patient
from schemas import ConsentRecord, ConsentSummary, TokenSet

logger = logging.getLogger(__name__)


class ClaimsBroker:
    """
    Args:
        client:            Connected ``BlueButtonClient``.
        flow:              ``OAuthFlowManager`` owning token rotation.
        db_path:           Consent store location (None → module default).
        conflict_retries:  Extra rotation attempts after RefreshConflictError.
    """

    def __init__(self, client, flow, db_path: Optional[Path] = None, conflict_retries: int = 1) -> None:
        self._client = client
        self._flow = flow
        self._db_path = db_path
        self._conflict_retries = conflict_retries

    def _load(self, clinic_id: str, internal_patient_ref: str) -> ConsentRecord:
        record = consent_store.get_consent(clinic_id, internal_patient_ref, db_path=self._db_path)
        if record is None:
            raise ConsentNotFoundError(
                f"No consent for clinic={clinic_id}, internal_ref={internal_patient_ref}."
            )
        return record

    async def access_token_for(self, clinic_id: str, internal_patient_ref: str) -> tuple:
        """
        Rotate the stored refresh token and return ``(record, tokens)``.

        Raises:
            ConsentNotFoundError: no consent for the pair.
            RefreshConflictError: still conflicting after the allowed retries.
            RefreshError / IntegrityError / FormatError: from rotation.
        """
        record = self._load(clinic_id, internal_patient_ref)
        attempt = 0
        while True:
            try:
                tokens: TokenSet = await self._flow.rotate(record)
                return record, tokens
            except RefreshConflictError:
                if attempt >= self._conflict_retries:
                    raise
                attempt += 1
                logger.info(
                    "ClaimsBroker: rotation conflict, retrying with current consent "
                    "(clinic=%s, internal_ref=%s, attempt=%d).",
                    clinic_id, internal_patient_ref, attempt,
                )
                record = self._load(clinic_id, internal_patient_ref)

    async def get_claims(
        self,
        clinic_id: str,
        internal_patient_ref: str,
        types: Optional[Iterable[str]] = None,
    ) -> Dict[str, List[Dict[str, Any]]]:
        """
        Fetch and classify the patient's claims.

        Raises:
            ValueError: unknown claim type (checked before any token work).
            plus everything ``access_token_for`` and ``get_eob_bundle`` raise.
        """
        requested = normalize_claim_types(types)
        record, tokens = await self.access_token_for(clinic_id, internal_patient_ref)
        bundle = await self._client.get_eob_bundle(
            tokens.access_token, record.patient_external_id, requested,
        )
        categorized = classify(bundle)
        logger.info(
            "ClaimsBroker: claims served (clinic=%s, internal_ref=%s, categories=%s).",
            clinic_id, internal_patient_ref, sorted(categorized),
        )
        return categorized

    async def get_patient_summary(self, clinic_id: str, internal_patient_ref: str) -> Dict[str, Any]:
        record, tokens = await self.access_token_for(clinic_id, internal_patient_ref)
        patient = await self._client.get_patient(tokens.access_token, record.patient_external_id)
        return normalize_patient(patient)

    async def get_coverage(self, clinic_id: str, internal_patient_ref: str) -> Dict[str, Any]:
        record, tokens = await self.access_token_for(clinic_id, internal_patient_ref)
        return await self._client.get_coverage(tokens.access_token, record.patient_external_id)

    def list_consents(self, clinic_id: str) -> List[ConsentSummary]:
        return [
            ConsentSummary.from_record(r)
            for r in consent_store.list_consents(clinic_id, db_path=self._db_path)
        ]
