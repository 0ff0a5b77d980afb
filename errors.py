"""
errors.py
---------
ClaimBridge — Blue Button Consent Broker — Exception Taxonomy
-------------------------------------------------------------
Every failure the broker raises on purpose derives from ``ClaimBridgeError``.
Each class carries a ``public_message``: the categorical text that is safe to
hand back to an external caller.  The constructor message is the detailed,
log-only description and must never be echoed to the client for
security-relevant errors (nonce, integrity, token exchange).

Hierarchy:
    ClaimBridgeError
    ├── AuthContextError        missing / invalid caller identity
    ├── NonceMismatchError      OAuth state nonce absent or mismatched
    ├── TokenExchangeError      authorization-code exchange rejected / reused
    ├── RefreshError            refresh-token exchange rejected (re-authorize)
    ├── RefreshConflictError    concurrent rotation lost the race (retriable)
    ├── VaultError
    │   ├── IntegrityError      AEAD tag did not verify
    │   └── FormatError         envelope not parseable
    ├── InvalidClaimShapeError  raw claim is not of the expected kind
    ├── ClaimsFetchError        claims API request failed / timed out
    ├── ConsentNotFoundError    no consent for (clinic, internal ref)
    └── ConsentBindingError     provider patient already bound elsewhere

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

from __future__ import annotations

from typing import Optional


class ClaimBridgeError(Exception):
    """Base class for all broker errors."""

    public_message = "Request could not be completed."

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.public_message)


class AuthContextError(ClaimBridgeError):
    """Raised when no authenticated clinic identity accompanies a request."""

    public_message = "Unauthorized: clinic identity not found."


class NonceMismatchError(ClaimBridgeError):
    """Raised when the callback state cannot be matched to the session."""

    public_message = "Invalid state in OAuth callback."


class TokenExchangeError(ClaimBridgeError):
    """Raised when an authorization code cannot be exchanged for tokens."""

    public_message = "Token exchange failed."


class RefreshError(ClaimBridgeError):
    """
    Raised when the provider rejects a stored refresh token.

    Terminal for the consent record: the patient must re-authorize.
    """

    public_message = "Consent is no longer valid; re-authorization required."


class RefreshConflictError(ClaimBridgeError):
    """Raised when another request rotated the same consent first."""

    public_message = "Consent is being refreshed by another request; retry."


class VaultError(ClaimBridgeError):
    """Base class for secret-at-rest failures."""

    public_message = "Stored consent credentials are unreadable."


class IntegrityError(VaultError):
    """Raised when an envelope's authentication tag does not verify."""


class FormatError(VaultError):
    """Raised when an envelope cannot be split into its parts."""


class InvalidClaimShapeError(ClaimBridgeError):
    """Raised by a normalizer handed a resource of the wrong kind."""

    public_message = "Claim resource has an unexpected shape."

    def __init__(self, message: Optional[str] = None, resource_id: Optional[str] = None) -> None:
        self.resource_id = resource_id
        super().__init__(message)


class ClaimsFetchError(ClaimBridgeError):
    """Raised when a Blue Button data request fails or times out."""

    public_message = "Failed to retrieve claims from the provider."

    def __init__(self, message: Optional[str] = None, status_code: int = 0) -> None:
        self.status_code = status_code
        super().__init__(message)


class ConsentNotFoundError(ClaimBridgeError):
    """Raised when no consent exists for the requested patient."""

    public_message = "No consent on record for this patient."


class ConsentBindingError(ClaimBridgeError):
    """Raised when a provider patient is already bound to another internal ref."""

    public_message = "Patient is already linked to a different record in this clinic."
