"""
pkce.py
-------
ClaimBridge — Blue Button Consent Broker — PKCE Generator
---------------------------------------------------------
RFC 7636 Proof Key for Code Exchange, S256 method only.

    code_verifier  = base64url(32 random bytes), no padding  (43 chars)
    code_challenge = base64url(SHA-256(code_verifier)), no padding

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass

VERIFIER_BYTES = 32
CHALLENGE_METHOD = "S256"


@dataclass(frozen=True)
class PkceCodes:
    """PKCE verifier/challenge pair.

    Attributes:
        code_verifier: Client-held secret, kept server-side in the session.
        code_challenge: Derived value sent on the authorize URL.
    """
    code_verifier: str
    code_challenge: str


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def challenge_for(code_verifier: str) -> str:
    """Return the S256 challenge for *code_verifier*."""
    return _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


def generate_pkce() -> PkceCodes:
    """Generate a fresh verifier and its S256 challenge."""
    verifier = _b64url(secrets.token_bytes(VERIFIER_BYTES))
    return PkceCodes(code_verifier=verifier, code_challenge=challenge_for(verifier))
