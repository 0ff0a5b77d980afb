"""
main.py
-------
ClaimBridge — Blue Button Consent Broker — FastAPI server
--------------------------------------------------------
Exposes the consent flow and the normalized claims API to the clinic UI.
Clinic identity arrives in the ``X-Clinic-Id`` header set by the upstream
authentication proxy.  OAuth state lives in an in-memory, server-side
session store keyed by an httpOnly cookie, so the PKCE verifier never
reaches the browser.

Endpoints:
    GET  /health                          — Service health check
    POST /auth/initiate                   — Start Blue Button authorization for a patient
    GET  /auth/callback                   — OAuth redirect target (303 to the UI)
    GET  /eob/{internal_patient_ref}      — Categorized, normalized claims (?type=carrier&type=pde)
    GET  /patient/{internal_patient_ref}  — Flattened beneficiary demographics
    GET  /coverage/{internal_patient_ref} — Raw Coverage bundle
    GET  /clinics/consents                — Consent summaries for the calling clinic

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

import logging
import os
import secrets
import time
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

import consent_store
from bluebutton_client import BlueButtonClient
from claims_service import ClaimsBroker
from config import DEFAULT_CORS_ORIGINS, Settings, get_settings, parse_cors_origins
from crypto_vault import CryptoVault
from errors import (
    AuthContextError,
    ClaimBridgeError,
    ClaimsFetchError,
    ConsentBindingError,
    ConsentNotFoundError,
    NonceMismatchError,
    RefreshConflictError,
    RefreshError,
    TokenExchangeError,
    VaultError,
)
from oauth_flow import OAuthFlowManager
from schemas import ConsentSummary

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# ── Config ─────────────────────────────────────────────────────────────────────

VERSION = "1.0.0"
SERVICE_NAME = "ClaimBridge Blue Button Consent Broker"


# ── In-memory session store ────────────────────────────────────────────────────

class SessionStore:
    """
    Server-side session dicts keyed by an opaque cookie value.

    Only the cookie id travels to the browser; values (nonce, PKCE verifier,
    pending patient ref) stay in process memory.  A session lives until its
    callback completes or ``ttl_seconds`` pass since it was opened; expired
    sessions are pruned whenever a new one is opened.
    """

    def __init__(self, ttl_seconds: float = 600, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._sessions: Dict[str, Tuple[float, dict]] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def new_id(self) -> str:
        return secrets.token_urlsafe(32)

    def _expired(self, opened_at: float) -> bool:
        return self._clock() - opened_at > self._ttl

    def _prune(self) -> None:
        stale = [sid for sid, (opened_at, _) in self._sessions.items() if self._expired(opened_at)]
        for sid in stale:
            del self._sessions[sid]
        if stale:
            logger.debug("SessionStore: pruned %d expired session(s).", len(stale))

    def get(self, session_id: Optional[str]) -> Optional[dict]:
        if not session_id:
            return None
        entry = self._sessions.get(session_id)
        if entry is None:
            return None
        opened_at, session = entry
        if self._expired(opened_at):
            del self._sessions[session_id]
            return None
        return session

    def open(self, session_id: Optional[str]) -> tuple:
        """Return ``(session_id, session)``, creating a session if needed."""
        existing = self.get(session_id)
        if existing is not None:
            return session_id, existing
        self._prune()
        fresh_id = self.new_id()
        session: dict = {}
        self._sessions[fresh_id] = (self._clock(), session)
        return fresh_id, session

    def discard(self, session_id: Optional[str]) -> None:
        if session_id:
            self._sessions.pop(session_id, None)


# ── Request / Response models ──────────────────────────────────────────────────

class InitiateRequest(BaseModel):
    """Request body for POST /auth/initiate."""
    internal_patient_ref: str


class InitiateResponse(BaseModel):
    """Response body for POST /auth/initiate."""
    authorization_url: str


# ── Error mapping ──────────────────────────────────────────────────────────────

# Errors after which the clinic must send the patient through consent again.
_REAUTHORIZE = (RefreshError, TokenExchangeError, VaultError)


def _status_for(exc: ClaimBridgeError) -> int:
    if isinstance(exc, AuthContextError):
        return 401
    if isinstance(exc, ConsentNotFoundError):
        return 404
    if isinstance(exc, (RefreshConflictError, ConsentBindingError) + _REAUTHORIZE):
        return 409
    if isinstance(exc, ClaimsFetchError):
        return 502
    if isinstance(exc, NonceMismatchError):
        return 400
    return 500


def claimbridge_error_response(exc: ClaimBridgeError) -> JSONResponse:
    """Build the client-facing JSON for *exc*; only ``public_message`` is exposed."""
    body: dict = {"detail": exc.public_message}
    if isinstance(exc, _REAUTHORIZE):
        body["reauthorize"] = True
    if isinstance(exc, RefreshConflictError):
        body["retriable"] = True
    return JSONResponse(status_code=_status_for(exc), content=body)


# ── Dependencies ───────────────────────────────────────────────────────────────

def require_clinic(x_clinic_id: Optional[str] = Header(default=None)) -> str:
    """Clinic identity from the upstream-authenticated ``X-Clinic-Id`` header."""
    if not x_clinic_id or not x_clinic_id.strip():
        raise AuthContextError("X-Clinic-Id header missing.")
    return x_clinic_id.strip()


def _broker(request: Request) -> ClaimsBroker:
    return request.app.state.broker


# ── App factory ────────────────────────────────────────────────────────────────

def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings:  Explicit settings (tests); None → ``get_settings()`` at startup.
        transport: Optional httpx transport for the Blue Button client (tests).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        resolved = settings or get_settings()
        consent_store.init_db(resolved.consent_db_path)

        client = BlueButtonClient(resolved, transport=transport)
        await client.connect()
        vault = CryptoVault.from_settings(resolved)
        flow = OAuthFlowManager(client, vault, db_path=resolved.consent_db_path)

        app.state.settings = resolved
        app.state.sessions = SessionStore(ttl_seconds=resolved.session_ttl_seconds)
        app.state.flow = flow
        app.state.broker = ClaimsBroker(
            client,
            flow,
            db_path=resolved.consent_db_path,
            conflict_retries=resolved.rotation_conflict_retries,
        )
        logger.info("%s v%s ready.", SERVICE_NAME, VERSION)
        try:
            yield
        finally:
            await client.close()

    app = FastAPI(
        title=SERVICE_NAME,
        version=VERSION,
        description="Blue Button 2.0 consent broker and claims normalizer.",
        lifespan=lifespan,
    )

    origins = (
        settings.cors_origins if settings is not None
        else parse_cors_origins(os.getenv("CORS_ORIGINS")) or list(DEFAULT_CORS_ORIGINS)
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(ClaimBridgeError)
    async def _handle_claimbridge_error(request: Request, exc: ClaimBridgeError) -> JSONResponse:
        logger.warning("%s %s failed: %s: %s", request.method, request.url.path, type(exc).__name__, exc)
        return claimbridge_error_response(exc)

    # ── Routes ─────────────────────────────────────────────────────────────────

    @app.get("/health")
    def health_check() -> dict:
        """Return service status and version."""
        return {"status": "ok", "service": SERVICE_NAME, "version": VERSION}

    @app.post("/auth/initiate", response_model=InitiateResponse)
    def initiate_auth(
        body: InitiateRequest,
        request: Request,
        response: Response,
        clinic_id: str = Depends(require_clinic),
    ) -> InitiateResponse:
        """
        Start an authorization for ``internal_patient_ref`` and return the
        Blue Button authorize URL for the browser to open.
        """
        cfg: Settings = request.app.state.settings
        store: SessionStore = request.app.state.sessions
        session_id, session = store.open(request.cookies.get(cfg.session_cookie_name))
        try:
            url = request.app.state.flow.initiate(session, clinic_id, body.internal_patient_ref)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        response.set_cookie(
            cfg.session_cookie_name, session_id, httponly=True, samesite="lax",
        )
        return InitiateResponse(authorization_url=url)

    @app.get("/auth/callback")
    async def auth_callback(
        request: Request,
        code: Optional[str] = Query(default=None),
        state: Optional[str] = Query(default=None),
    ) -> RedirectResponse:
        """
        Complete the authorization and redirect to the UI.

        Failures redirect to ERROR_REDIRECT_URL with ``consent=error`` and a
        categorical ``reason``.
        """
        cfg: Settings = request.app.state.settings
        store: SessionStore = request.app.state.sessions
        session_id = request.cookies.get(cfg.session_cookie_name)
        session = store.get(session_id)
        if session is None:
            session = {}

        reason = None
        try:
            await request.app.state.flow.handle_callback(session, code, state)
        except NonceMismatchError:
            reason = "invalid_state"
        except TokenExchangeError:
            reason = "token_exchange_failed"
        except ConsentBindingError:
            reason = "patient_already_linked"
        finally:
            # A callback consumes its session whatever the outcome.
            store.discard(session_id)

        if reason is not None:
            target = f"{cfg.error_redirect_url}?{urlencode({'consent': 'error', 'reason': reason})}"
            return RedirectResponse(target, status_code=303)
        return RedirectResponse(cfg.success_redirect_url, status_code=303)

    @app.get("/eob/{internal_patient_ref}")
    async def get_eob(
        internal_patient_ref: str,
        claim_types: Optional[List[str]] = Query(default=None, alias="type"),
        clinic_id: str = Depends(require_clinic),
        broker: ClaimsBroker = Depends(_broker),
    ) -> dict:
        """Return CategorizedClaims for the patient (sparse: empty categories omitted)."""
        try:
            return await broker.get_claims(clinic_id, internal_patient_ref, claim_types)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))

    @app.get("/patient/{internal_patient_ref}")
    async def get_patient(
        internal_patient_ref: str,
        clinic_id: str = Depends(require_clinic),
        broker: ClaimsBroker = Depends(_broker),
    ) -> dict:
        return await broker.get_patient_summary(clinic_id, internal_patient_ref)

    @app.get("/coverage/{internal_patient_ref}")
    async def get_coverage(
        internal_patient_ref: str,
        clinic_id: str = Depends(require_clinic),
        broker: ClaimsBroker = Depends(_broker),
    ) -> dict:
        return await broker.get_coverage(clinic_id, internal_patient_ref)

    @app.get("/clinics/consents", response_model=List[ConsentSummary])
    def list_clinic_consents(
        clinic_id: str = Depends(require_clinic),
        broker: ClaimsBroker = Depends(_broker),
    ) -> List[ConsentSummary]:
        return broker.list_consents(clinic_id)

    return app


app = create_app()
