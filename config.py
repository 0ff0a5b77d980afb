"""
config.py
---------
ClaimBridge — Blue Button Consent Broker — Runtime Settings
-----------------------------------------------------------
Loads process-wide configuration from the environment (and a local ``.env``
file via python-dotenv) exactly once.  Key material for the Crypto Vault is
validated here so a malformed key fails at startup rather than on the first
encryption.

Environment variables:
    BB_CLIENT_ID / BB_CLIENT_SECRET   OAuth2 confidential client credentials.
    BB_REDIRECT_URI                   Registered callback URL.
    BB_AUTH_URL                       Provider authorize endpoint.
    BB_TOKEN_URL                      Provider token endpoint.
    BB_API_BASE_URL                   FHIR base URL (trailing slash optional).
    ENCRYPTION_KEY                    64 hex chars (AES-256 key).
    LEGACY_INIT_VECTOR                Optional 32 hex chars; enables decryption
                                      of two-part fixed-IV envelopes.
    CONSENT_DB_PATH                   SQLite file for consent records.
    HTTP_TIMEOUT_SECONDS              Bound on every outbound HTTP call.
    EOB_SUMMARY                       Value sent as ``_summary`` on EOB searches.
    SUCCESS_REDIRECT_URL / ERROR_REDIRECT_URL
    SESSION_COOKIE_NAME               Cookie carrying the server-side session id.
    SESSION_TTL_SECONDS               Lifetime of an unfinished OAuth session.
    CORS_ORIGINS                      Comma-separated allowed origins.
    ROTATION_CONFLICT_RETRIES         Retries after a lost rotation race.

Public API:
    Settings         — pydantic model holding the values above.
    load_settings()  — build Settings from the current environment.
    get_settings()   — cached load_settings() for the running process.
    parse_cors_origins() — split CORS_ORIGINS into a list.

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

_DEFAULT_DB_PATH = Path(__file__).parent / "consent_store.sqlite"
DEFAULT_CORS_ORIGINS = ["http://localhost:5173"]


def _decode_hex(value: str, expected_len: int, name: str) -> bytes:
    try:
        raw = bytes.fromhex(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be hex-encoded.") from exc
    if len(raw) != expected_len:
        raise ValueError(f"{name} must decode to {expected_len} bytes, got {len(raw)}.")
    return raw


class Settings(BaseModel):
    """Validated process configuration."""

    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = "http://localhost:8000/auth/callback"
    auth_url: str = "https://sandbox.bluebutton.cms.gov/v2/o/authorize/"
    token_url: str = "https://sandbox.bluebutton.cms.gov/v2/o/token/"
    api_base_url: str = "https://sandbox.bluebutton.cms.gov/v2/fhir/"

    encryption_key: str
    legacy_init_vector: Optional[str] = None

    consent_db_path: Path = _DEFAULT_DB_PATH
    http_timeout_seconds: float = Field(default=15.0, gt=0)
    eob_summary: str = "true"

    success_redirect_url: str = "http://localhost:5173/patients-list"
    error_redirect_url: str = "http://localhost:5173/patient-data"
    session_cookie_name: str = "claimbridge_session"
    session_ttl_seconds: float = Field(default=600, gt=0)
    cors_origins: List[str] = Field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))
    rotation_conflict_retries: int = Field(default=1, ge=0)

    @field_validator("encryption_key")
    @classmethod
    def _check_key(cls, value: str) -> str:
        _decode_hex(value, 32, "ENCRYPTION_KEY")
        return value.lower()

    @field_validator("legacy_init_vector")
    @classmethod
    def _check_iv(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        _decode_hex(value, 16, "LEGACY_INIT_VECTOR")
        return value.lower()

    @field_validator("api_base_url")
    @classmethod
    def _trailing_slash(cls, value: str) -> str:
        return value if value.endswith("/") else value + "/"

    @property
    def key_bytes(self) -> bytes:
        return bytes.fromhex(self.encryption_key)

    @property
    def legacy_iv_bytes(self) -> Optional[bytes]:
        return bytes.fromhex(self.legacy_init_vector) if self.legacy_init_vector else None


def parse_cors_origins(raw: Optional[str]) -> List[str]:
    """Split a comma-separated origin list, dropping blanks."""
    return [o.strip() for o in (raw or "").split(",") if o.strip()]


def load_settings() -> Settings:
    """
    Build a Settings instance from environment variables.

    ``.env`` in the working directory is loaded first; variables already set
    in the process environment win.

    Raises:
        pydantic.ValidationError: if ENCRYPTION_KEY is missing or malformed.
    """
    load_dotenv()
    values = {
        "client_id": os.getenv("BB_CLIENT_ID", ""),
        "client_secret": os.getenv("BB_CLIENT_SECRET", ""),
        "encryption_key": os.getenv("ENCRYPTION_KEY", ""),
        "legacy_init_vector": os.getenv("LEGACY_INIT_VECTOR") or None,
    }
    optional = {
        "redirect_uri": "BB_REDIRECT_URI",
        "auth_url": "BB_AUTH_URL",
        "token_url": "BB_TOKEN_URL",
        "api_base_url": "BB_API_BASE_URL",
        "consent_db_path": "CONSENT_DB_PATH",
        "http_timeout_seconds": "HTTP_TIMEOUT_SECONDS",
        "eob_summary": "EOB_SUMMARY",
        "success_redirect_url": "SUCCESS_REDIRECT_URL",
        "error_redirect_url": "ERROR_REDIRECT_URL",
        "session_cookie_name": "SESSION_COOKIE_NAME",
        "session_ttl_seconds": "SESSION_TTL_SECONDS",
        "rotation_conflict_retries": "ROTATION_CONFLICT_RETRIES",
    }
    for field_name, env_var in optional.items():
        raw = os.getenv(env_var)
        if raw:
            values[field_name] = raw

    origins = parse_cors_origins(os.getenv("CORS_ORIGINS"))
    if origins:
        values["cors_origins"] = origins

    return Settings(**values)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide Settings, loading them on first use."""
    return load_settings()
