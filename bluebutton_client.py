"""
bluebutton_client.py
--------------------
ClaimBridge — Blue Button Consent Broker — Blue Button 2.0 Client
-----------------------------------------------------------------
Async client for the CMS Blue Button 2.0 OAuth2 token endpoint and FHIR R4
read API.

OAuth2 (confidential client, Authorization Code + PKCE):
  1. ``authorization_url()`` builds the authorize redirect.
  2. ``exchange_authorization_code()`` posts grant_type=authorization_code
     with ``code``, ``redirect_uri`` and ``code_verifier``.
  3. ``refresh_access_token()`` posts grant_type=refresh_token.
  Both token calls are form-encoded and authenticated with HTTP Basic
  (client_id:client_secret).

FHIR reads (bearer access token):
  - ``get_eob_bundle()``  fans out one ExplanationOfBenefit search per
    requested claim type and merges the entries into one searchset Bundle.
  - ``get_patient()``     Patient/{id}
  - ``get_coverage()``    Coverage?beneficiary={id}

Every request is bounded by ``timeout`` seconds.  Nothing is retried: code
and refresh-token exchanges are not idempotent once the provider has
answered.

Usage (async context manager preferred):
    async with BlueButtonClient(settings) as client:
        tokens = await client.refresh_access_token(refresh_token)
        bundle = await client.get_eob_bundle(tokens.access_token, patient_id)

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Type
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from errors import ClaimsFetchError, RefreshError, TokenExchangeError
from pkce import CHALLENGE_METHOD
from schemas import TokenSet

logger = logging.getLogger(__name__)

# Claim types accepted by the ExplanationOfBenefit ``type`` search parameter.
SUPPORTED_EOB_TYPES = (
    "carrier", "dme", "hha", "hospice", "inpatient", "outpatient", "pde", "snf",
)


def normalize_claim_types(types: Optional[Iterable[str]]) -> List[str]:
    """
    Lower-case, de-duplicate (order kept) and validate requested claim types.

    Raises:
        ValueError: if any type is not a Blue Button EOB type.
    """
    result: List[str] = []
    for raw in types or []:
        value = (raw or "").strip().lower()
        if not value:
            continue
        if value not in SUPPORTED_EOB_TYPES:
            raise ValueError(
                f"Unsupported claim type '{raw}'. Expected one of {list(SUPPORTED_EOB_TYPES)}."
            )
        if value not in result:
            result.append(value)
    return result


def _provider_error(resp: httpx.Response) -> str:
    """OAuth ``error`` code from a token-endpoint error body, or an empty string."""
    try:
        body = resp.json()
    except ValueError:
        return ""
    return str(body.get("error", "")) if isinstance(body, dict) else ""


class BlueButtonClient:
    """
    Async Blue Button 2.0 client.

    Args:
        settings:  ``config.Settings`` supplying endpoints and credentials.
        transport: Optional httpx transport (``httpx.MockTransport`` in tests).
    """

    def __init__(self, settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.client_id = settings.client_id
        self.client_secret = settings.client_secret
        self.redirect_uri = settings.redirect_uri
        self.auth_url = settings.auth_url
        self.token_url = settings.token_url
        self.api_base_url = settings.api_base_url
        self.timeout = settings.http_timeout_seconds
        self.eob_summary = settings.eob_summary
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the underlying HTTP connection pool."""
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
            logger.debug("BlueButtonClient: HTTP transport initialised (timeout=%ss).", self.timeout)

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None
            logger.debug("BlueButtonClient: HTTP transport closed.")

    async def __aenter__(self) -> "BlueButtonClient":
        await self.connect()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    def _require_http(self) -> httpx.AsyncClient:
        if self._http is None:
            raise RuntimeError(
                "BlueButtonClient is not connected. "
                "Use 'async with BlueButtonClient(settings) as client:' or call connect() first."
            )
        return self._http

    # ── OAuth2 ───────────────────────────────────────────────────────────────

    def authorization_url(self, state: str, code_challenge: str) -> str:
        """Return the provider authorize URL for *state* and *code_challenge*."""
        if not state or not code_challenge:
            raise ValueError("state and code_challenge are required.")
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": CHALLENGE_METHOD,
        }
        return f"{self.auth_url}?{urlencode(params)}"

    async def _post_token(
        self,
        form: Dict[str, str],
        error_cls: Type[Exception],
    ) -> Dict[str, Any]:
        http = self._require_http()
        grant = form.get("grant_type")
        try:
            resp = await http.post(
                self.token_url,
                data=form,
                auth=(self.client_id, self.client_secret),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "BlueButtonClient: %s request failed (%s).", grant, type(exc).__name__,
            )
            raise error_cls(f"Token request ({grant}) failed: {type(exc).__name__}") from exc

        if resp.status_code != 200:
            provider_error = _provider_error(resp)
            logger.warning(
                "BlueButtonClient: token endpoint returned %d for %s (error=%s).",
                resp.status_code, grant, provider_error or "<none>",
            )
            raise error_cls(
                f"Token endpoint returned {resp.status_code} for {grant} ({provider_error})."
            )

        try:
            return resp.json()
        except ValueError as exc:
            raise error_cls("Token endpoint returned a non-JSON body.") from exc

    async def exchange_authorization_code(self, code: str, code_verifier: str) -> TokenSet:
        """
        Exchange an authorization code (plus PKCE verifier) for tokens.

        Raises:
            TokenExchangeError: on transport failure, non-200, or a response
                                missing ``access_token``, ``refresh_token`` or
                                ``patient``.
        """
        if not code or not code_verifier:
            raise TokenExchangeError("Authorization code and code_verifier are required.")
        data = await self._post_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
                "code_verifier": code_verifier,
            },
            TokenExchangeError,
        )
        try:
            tokens = TokenSet.from_response(data)
        except (ValidationError, TypeError, ValueError, AttributeError) as exc:
            raise TokenExchangeError("Token response is malformed.") from exc
        if not tokens.refresh_token or not tokens.patient_id:
            raise TokenExchangeError("Token response is missing refresh_token or patient.")
        logger.info(
            "BlueButtonClient: authorization code exchanged (expires_in=%s).", tokens.expires_in,
        )
        return tokens

    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        """
        Exchange a refresh token for a new access token (and usually a new
        refresh token).

        Raises:
            RefreshError: on transport failure, non-200 (expired / revoked
                          token) or a response without ``access_token``.
        """
        if not refresh_token:
            raise RefreshError("No refresh token to exchange.")
        data = await self._post_token(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            RefreshError,
        )
        try:
            tokens = TokenSet.from_response(data)
        except (ValidationError, TypeError, ValueError, AttributeError) as exc:
            raise RefreshError("Refresh response is malformed.") from exc
        logger.info(
            "BlueButtonClient: access token refreshed (rotated=%s, expires_in=%s).",
            bool(tokens.refresh_token), tokens.expires_in,
        )
        return tokens

    # ── FHIR reads ───────────────────────────────────────────────────────────

    async def _request(
        self,
        path: str,
        access_token: str,
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Execute an authenticated FHIR GET and return the parsed JSON body.

        Raises:
            ClaimsFetchError: on transport failure, timeout, non-2xx or a
                              non-JSON body.
        """
        http = self._require_http()
        url = f"{self.api_base_url}{path}"
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/fhir+json",
        }
        try:
            resp = await http.get(url, headers=headers, params=params)
        except httpx.HTTPError as exc:
            logger.warning("BlueButtonClient: GET %s failed (%s).", path, type(exc).__name__)
            raise ClaimsFetchError(f"GET {path} failed: {type(exc).__name__}") from exc

        if resp.status_code not in range(200, 300):
            logger.warning("BlueButtonClient: GET %s returned %d.", path, resp.status_code)
            raise ClaimsFetchError(
                f"GET {path} returned {resp.status_code}", status_code=resp.status_code,
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise ClaimsFetchError(f"GET {path} returned a non-JSON body.") from exc
        if not isinstance(body, dict):
            raise ClaimsFetchError(f"GET {path} returned an unexpected payload.")
        return body

    async def _search_eob(
        self, access_token: str, patient_id: str, claim_type: Optional[str],
    ) -> List[Dict[str, Any]]:
        params = {"patient": patient_id, "_summary": self.eob_summary}
        if claim_type:
            params["type"] = claim_type
        bundle = await self._request("ExplanationOfBenefit", access_token, params)
        entries = bundle.get("entry")
        if entries is None:
            entries = []
        elif not isinstance(entries, list):
            raise ClaimsFetchError("ExplanationOfBenefit search returned a non-list entry.")
        logger.debug(
            "BlueButtonClient: EOB search type=%s returned %d entries.",
            claim_type or "<all>", len(entries),
        )
        return list(entries)

    async def get_eob_bundle(
        self,
        access_token: str,
        patient_id: str,
        types: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        """
        Fetch ExplanationOfBenefit resources and merge them into one Bundle.

        With no *types* a single unfiltered search is issued; otherwise one
        search per type runs concurrently.  Entries keep the provider's order
        within each type; across types they follow the request order, which
        callers must not rely on.

        Raises:
            ValueError:       unknown claim type (before any I/O).
            ClaimsFetchError: any search failed; remaining searches are
                              cancelled and no partial bundle is returned.
        """
        requested = normalize_claim_types(types)
        searches: List[Optional[str]] = list(requested) if requested else [None]

        tasks = [
            asyncio.ensure_future(self._search_eob(access_token, patient_id, t))
            for t in searches
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        entries = [entry for chunk in results for entry in chunk]
        logger.info(
            "BlueButtonClient: fetched %d EOB entries across %d request(s).",
            len(entries), len(searches),
        )
        return {"resourceType": "Bundle", "type": "searchset", "total": len(entries), "entry": entries}

    async def get_patient(self, access_token: str, patient_id: str) -> Dict[str, Any]:
        """Read Patient/{patient_id}."""
        return await self._request(f"Patient/{patient_id}", access_token)

    async def get_coverage(self, access_token: str, patient_id: str) -> Dict[str, Any]:
        """Search Coverage resources for the beneficiary."""
        return await self._request("Coverage", access_token, {"beneficiary": f"Patient/{patient_id}"})
