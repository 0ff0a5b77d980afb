"""
schemas.py
----------
ClaimBridge — Blue Button Consent Broker — Pydantic Data Contracts
------------------------------------------------------------------
Pydantic v2 models shared by the consent store, the OAuth flow and the HTTP
layer, plus the claim-category constants used by the fetcher and the
classifier.

Secret-bearing fields (``encrypted_refresh_token``, ``code_verifier``,
``access_token``, ``refresh_token``) are declared with ``repr=False`` so an
accidental ``logger.info("%s", record)`` never prints them.

Public API
----------
    EOB_TYPE_SYSTEM      Blue Button eob-type CodeSystem URI.
    CLAIM_CATEGORIES     ("CARRIER", "INPATIENT", "OUTPATIENT", "PDE").
    OTHER_CATEGORY       Bucket for unrecognised resources.
    ConsentRecord        Stored consent binding (encrypted token only).
    ConsentSummary       Token-free view of a consent for API responses.
    OAuthSessionState    Ephemeral per-session authorization state.
    TokenSet             Parsed token-endpoint response.

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

EOB_TYPE_SYSTEM = "https://bluebutton.cms.gov/resources/codesystem/eob-type"

CARRIER = "CARRIER"
INPATIENT = "INPATIENT"
OUTPATIENT = "OUTPATIENT"
PDE = "PDE"
OTHER_CATEGORY = "OTHER"
CLAIM_CATEGORIES = (CARRIER, INPATIENT, OUTPATIENT, PDE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConsentRecord(BaseModel):
    """
    Binding that authorizes a clinic to read one patient's claims.

    Keyed by ``(clinic_id, internal_patient_ref)``; ``patient_external_id`` is
    the provider-issued beneficiary id and is unique per clinic.
    """

    model_config = ConfigDict(frozen=True)

    patient_external_id: str
    clinic_id: str
    internal_patient_ref: str
    encrypted_refresh_token: str = Field(repr=False)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> tuple:
        return (self.clinic_id, self.internal_patient_ref)


class ConsentSummary(BaseModel):
    """Consent fields safe to return over HTTP."""

    patient_external_id: str
    clinic_id: str
    internal_patient_ref: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: ConsentRecord) -> "ConsentSummary":
        return cls(
            patient_external_id=record.patient_external_id,
            clinic_id=record.clinic_id,
            internal_patient_ref=record.internal_patient_ref,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class OAuthSessionState(BaseModel):
    """State captured at authorization initiation and consumed at callback."""

    state: str
    nonce: str
    code_verifier: str = Field(repr=False)
    clinic_id: str
    pending_internal_patient_ref: str
    created_at: datetime = Field(default_factory=_utcnow)


class TokenSet(BaseModel):
    """Subset of an OAuth2 token response the broker relies on."""

    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    patient_id: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None

    @field_validator("access_token")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("access_token is empty")
        return value

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "TokenSet":
        """Build from the provider JSON (``patient`` carries the beneficiary id)."""
        expires = data.get("expires_in")
        return cls(
            access_token=data.get("access_token") or "",
            refresh_token=data.get("refresh_token") or None,
            patient_id=str(data["patient"]) if data.get("patient") else None,
            expires_in=int(expires) if expires is not None else None,
            scope=data.get("scope"),
        )
