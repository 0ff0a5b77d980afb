"""
crypto_vault.py
---------------
ClaimBridge — Blue Button Consent Broker — Secrets-at-Rest Vault
----------------------------------------------------------------
AES-256-GCM wrapper used to store refresh tokens.  Every call to
``encrypt()`` draws a fresh 96-bit nonce and emits a three-part envelope:

    <hex-nonce>:<hex-ciphertext>:<hex-tag>

Deployments that still hold rows written by the earlier fixed-IV scheme can
configure ``legacy_iv``; two-part ``<hex-ciphertext>:<hex-tag>`` envelopes
are then decrypted with that IV.  New envelopes are never written in the
legacy format.

Failure modes:
    FormatError     envelope is not 2 or 3 hex parts, has a malformed
                    nonce/tag length, or is legacy with no IV configured.
    IntegrityError  the GCM tag does not verify (tampered data or wrong key).

Public API:
    CryptoVault(key, legacy_iv=None)
        .encrypt(plaintext) -> str
        .decrypt(envelope)  -> str

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

from __future__ import annotations

import logging
import os
from typing import Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from errors import FormatError, IntegrityError

logger = logging.getLogger(__name__)

KEY_LENGTH = 32      # AES-256
NONCE_LENGTH = 12    # 96-bit GCM nonce
TAG_LENGTH = 16      # 128-bit authentication tag
DELIMITER = ":"


class CryptoVault:
    """
    Authenticated encryption for short secrets.

    Args:
        key:        32-byte AES key, loaded once at startup.
        legacy_iv:  Optional fixed IV used only to read two-part envelopes.
    """

    def __init__(self, key: bytes, legacy_iv: Optional[bytes] = None) -> None:
        if len(key) != KEY_LENGTH:
            raise ValueError(f"Encryption key must be {KEY_LENGTH} bytes, got {len(key)}.")
        self._aead = AESGCM(key)
        self._legacy_iv = legacy_iv

    @classmethod
    def from_settings(cls, settings) -> "CryptoVault":
        return cls(settings.key_bytes, settings.legacy_iv_bytes)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt *plaintext* and return the three-part hex envelope."""
        if not isinstance(plaintext, str):
            raise TypeError("plaintext must be str")
        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return DELIMITER.join((nonce.hex(), ciphertext.hex(), tag.hex()))

    def decrypt(self, envelope: str) -> str:
        """
        Decrypt an envelope produced by ``encrypt()`` (or the legacy scheme).

        Raises:
            FormatError:    envelope cannot be parsed.
            IntegrityError: tag verification failed.
        """
        nonce, ciphertext, tag = self._parse(envelope)
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            logger.warning("CryptoVault: envelope failed integrity check.")
            raise IntegrityError("Envelope authentication tag did not verify.") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise FormatError("Decrypted payload is not UTF-8 text.") from exc

    # ── Envelope parsing ─────────────────────────────────────────────────────

    def _parse(self, envelope: str) -> Tuple[bytes, bytes, bytes]:
        if not isinstance(envelope, str) or not envelope:
            raise FormatError("Envelope must be a non-empty string.")

        parts = envelope.split(DELIMITER)
        try:
            decoded = [bytes.fromhex(p) for p in parts]
        except ValueError as exc:
            raise FormatError("Envelope contains non-hex data.") from exc

        if len(decoded) == 3:
            nonce, ciphertext, tag = decoded
            if len(nonce) != NONCE_LENGTH:
                raise FormatError("Envelope nonce has the wrong length.")
        elif len(decoded) == 2:
            if self._legacy_iv is None:
                raise FormatError("Two-part envelope found but no legacy IV is configured.")
            nonce = self._legacy_iv
            ciphertext, tag = decoded
        else:
            raise FormatError(f"Envelope must have 2 or 3 parts, got {len(parts)}.")

        if len(tag) != TAG_LENGTH:
            raise FormatError("Envelope tag has the wrong length.")
        return nonce, ciphertext, tag
