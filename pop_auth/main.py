# pop_auth/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is thin orchestration glue:
#   - It wires HTTP endpoints to the primitives implemented elsewhere.
#   - It MUST NOT implement crypto itself (crypto lives in proof.py,
#     challenge.py and keys.py).
#   - Collaborators (secret provider, replay guard, session store, ceremony
#     verifier) are built or injected in create_app() and live on app.state.
#
# Key modules / responsibilities:
#   - config.py     : environment-driven settings
#   - keys.py       : HMAC secret provider + EC P-256 helpers
#   - proof.py      : DPoP proof sign / verify
#   - challenge.py  : signed passkey challenge cookie
#   - storage.py    : replay guard + sessions bound to a proof key
#   - ceremony.py   : boundary to the WebAuthn verifier
#   - audit.py      : hash-chained audit log
#
# Flow:
#   1. POST /api/challenge/{ceremony}           -> challenge + signed cookie
#   2. browser runs navigator.credentials.*()
#   3. POST /api/challenge/{ceremony}/complete  (DPoP) -> session bound to the
#      proof key thumbprint
#   4. GET / DELETE /api/session                (DPoP)
#
# WARNING (DEPLOYMENT):
# - The default replay guard and session store are in-memory: NOT shared
#   across Uvicorn workers or nodes. Set REPLAY_STORE_DIR (shared volume) or
#   inject a shared ReplayGuard / SessionStore.
# -----------------------------------------------------------------------------

from contextlib import asynccontextmanager
from functools import partial
from typing import Any, Dict, Optional

import anyio.to_thread
from fastapi import Body, Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from .audit import append_event, build_common
from .ceremony import CeremonyVerifier
from .challenge import challenge_cookie_kwargs, new_challenge, sign_challenge, verify_challenge
from .clock import Clock, default_clock
from .config import Settings, settings
from .keys import SigningKeyProvider
from .log_utils import configure_logging, get_auth_logger
from .models import Ceremony, CeremonyCompletion, ChallengePayload, ChallengeRequest, ChallengeValue
from .proof import ProofPolicy, ProofVerified, verify_proof_from_headers
from .storage import DiskReplayGuard, InMemoryReplayGuard, InMemorySessionStore, ReplayGuard, SessionStore

WWW_AUTHENTICATE_DPOP = 'DPoP error="invalid_dpop_proof"'


# -----------------------------------------------------------------------------
# Request helpers
# -----------------------------------------------------------------------------
def _client_meta(request: Request) -> Dict[str, Optional[str]]:
    return {
        "request_ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _access_token(request: Request) -> Optional[str]:
    """Token from ``Authorization: DPoP <token>``, if the caller sent one."""
    auth = request.headers.get("authorization", "")
    scheme, _, token = auth.partition(" ")
    if scheme.lower() == "dpop" and token.strip():
        return token.strip()
    return None


async def _audit(request: Request, event: Dict[str, Any]) -> None:
    s: Settings = request.app.state.settings
    if not s.AUDIT_ENABLED:
        return
    # fsync under an flock; keep it off the event loop
    await anyio.to_thread.run_sync(partial(append_event, event, directory=s.AUDIT_DIR))


# -----------------------------------------------------------------------------
# DPoP dependency
# -----------------------------------------------------------------------------
async def require_dpop(request: Request) -> ProofVerified:
    """
    Verify the request's DPoP proof against its own method and URL.

    Any failure is a 401 carrying the rejection code as ``reason``.
    """
    state = request.app.state
    s: Settings = state.settings

    policy = ProofPolicy(
        max_age_seconds=s.DPOP_MAX_AGE_SECONDS,
        clock_skew_seconds=s.DPOP_CLOCK_SKEW_SECONDS,
        clock=state.clock,
        expected_access_token=_access_token(request),
        replay_guard=state.replay_guard,
        replay_ttl_seconds=s.DPOP_JTI_TTL_SECONDS,
        replay_timeout_seconds=s.REPLAY_TIMEOUT_SECONDS,
    )
    result = await verify_proof_from_headers(request.headers, request.method, str(request.url), policy)

    common = build_common(
        event="dpop_proof",
        htm=request.method,
        htu=str(request.url),
        proof=request.headers.get("dpop"),
        **_client_meta(request),
    )

    if not result.valid:
        await _audit(request, {**common, "result": "denied", "reason": result.error.value})
        raise HTTPException(
            status_code=401,
            detail={"error": "invalid_dpop_proof", "reason": result.error.value},
            headers={"WWW-Authenticate": WWW_AUTHENTICATE_DPOP},
        )

    await _audit(
        request,
        {**common, "jti": result.claims.jti, "jkt": result.thumbprint, "result": "accepted"},
    )
    return result


# -----------------------------------------------------------------------------
# Application factory
# -----------------------------------------------------------------------------
def create_app(
    app_settings: Settings = settings,
    *,
    key_provider: Optional[SigningKeyProvider] = None,
    replay_guard: Optional[ReplayGuard] = None,
    session_store: Optional[SessionStore] = None,
    ceremony_verifier: Optional[CeremonyVerifier] = None,
    clock: Clock = default_clock,
) -> FastAPI:
    s = app_settings

    if key_provider is None:
        key_provider = SigningKeyProvider(lambda: s.HMAC_KEY)
    if replay_guard is None:
        if s.REPLAY_STORE_DIR:
            replay_guard = DiskReplayGuard(
                s.REPLAY_STORE_DIR,
                clock=clock,
                cleanup_interval=s.REPLAY_CLEANUP_INTERVAL_SECONDS,
                orphan_age=s.DPOP_JTI_TTL_SECONDS,
            )
        else:
            replay_guard = InMemoryReplayGuard(clock=clock)
    if session_store is None:
        session_store = InMemorySessionStore(clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(s.LOG_LEVEL)
        # Fail fast: a missing / malformed HMAC_KEY aborts startup
        key_provider.get()
        if isinstance(replay_guard, DiskReplayGuard):
            await anyio.to_thread.run_sync(replay_guard.cleanup_expired)
        yield

    app = FastAPI(title="pop-auth", version="0.1.0", lifespan=lifespan)
    app.state.settings = s
    app.state.key_provider = key_provider
    app.state.replay_guard = replay_guard
    app.state.session_store = session_store
    app.state.ceremony_verifier = ceremony_verifier
    app.state.clock = clock

    # -------------------------------------------------------------------------
    # Passkey ceremonies
    # -------------------------------------------------------------------------
    @app.post("/api/challenge/{ceremony}")
    def issue_challenge(
        ceremony: Ceremony,
        response: Response,
        body: Optional[ChallengeRequest] = Body(default=None),
    ):
        user_id = body.user_id if body else ""
        payload = ChallengePayload(
            user_id=user_id,
            type=ceremony.value,
            value=ChallengeValue(challenge=new_challenge(), origin=s.ORIGIN),
        )
        token = sign_challenge(payload, key_provider)
        response.set_cookie(
            s.CHALLENGE_COOKIE_NAME,
            token,
            **challenge_cookie_kwargs(s.ORIGIN, s.CHALLENGE_COOKIE_MAX_AGE_SECONDS),
        )
        get_auth_logger(base_logger_name="pop_auth.main", ceremony=ceremony.value).info("Issued challenge")
        return {
            "challenge": payload.value.challenge,
            "origin": payload.value.origin,
            "rpId": s.RP_ID,
            "rpName": s.RP_NAME,
            "userId": user_id,
            "type": ceremony.value,
        }

    @app.post("/api/challenge/{ceremony}/complete")
    async def complete_ceremony(
        ceremony: Ceremony,
        request: Request,
        body: CeremonyCompletion,
        proof: ProofVerified = Depends(require_dpop),
    ):
        """
        Finish a ceremony. The challenge cookie is single-shot: it is cleared
        on every outcome, so a failed attempt has to start over.
        """
        jkt = proof.thumbprint
        log = get_auth_logger(base_logger_name="pop_auth.main", jkt=jkt, ceremony=ceremony.value)
        common = build_common(
            event="ceremony_complete",
            jti=proof.claims.jti,
            jkt=jkt,
            ceremony=ceremony.value,
            user_id=body.user_id,
            **_client_meta(request),
        )

        def _reply(status: int, content: Dict[str, Any]) -> JSONResponse:
            resp = JSONResponse(status_code=status, content=content)
            resp.delete_cookie(s.CHALLENGE_COOKIE_NAME, path="/")
            return resp

        value = verify_challenge(
            request.cookies.get(s.CHALLENGE_COOKIE_NAME),
            user_id=body.user_id,
            ceremony=ceremony.value,
            key_provider=key_provider,
        )
        if value is None:
            log.info("Challenge token rejected")
            await _audit(request, {**common, "result": "denied", "reason": "invalid_challenge"})
            return _reply(400, {"detail": {"error": "invalid_challenge", "message": "restart the ceremony"}})

        verifier: Optional[CeremonyVerifier] = request.app.state.ceremony_verifier
        if verifier is None:
            log.warning("No ceremony verifier configured")
            await _audit(request, {**common, "result": "error", "reason": "verifier_unavailable"})
            return _reply(
                503,
                {"detail": {"error": "unavailable", "message": "ceremony verification is not configured"}},
            )

        try:
            outcome = await verifier.verify(
                ceremony=ceremony.value,
                user_id=body.user_id,
                response=body.response,
                expected_challenge=value.challenge,
                expected_origin=value.origin,
                rp_id=s.RP_ID,
            )
        except Exception as e:
            log.exception("Ceremony verifier raised")
            await _audit(
                request,
                {**common, "result": "error", "reason": "verifier_exception", "detail": str(e)[:200]},
            )
            return _reply(500, {"detail": {"error": "verifier_error", "message": "ceremony verification failed"}})
        user_id = outcome.user_id or body.user_id
        if not outcome.verified or not user_id:
            reason = outcome.reason or ("ceremony_failed" if not outcome.verified else "unknown_user")
            await _audit(request, {**common, "result": "denied", "reason": reason})
            return _reply(
                403,
                {"detail": {"error": "not_authorized", "reason": reason, "message": "passkey verification failed"}},
            )

        sess = request.app.state.session_store.create(jkt, user_id, s.SESSION_TTL_SECONDS)
        await _audit(request, {**common, "user_id": user_id, "result": "approved"})
        log.info("Session bound to proof key")
        return _reply(200, {"verified": True, "session": sess.public_view()})

    # -------------------------------------------------------------------------
    # Sessions bound to the proof key
    # -------------------------------------------------------------------------
    @app.get("/api/session")
    def get_session(request: Request, proof: ProofVerified = Depends(require_dpop)):
        jkt = proof.thumbprint
        sess = request.app.state.session_store.get(jkt)
        if sess is None:
            return {"authenticated": False, "jkt": jkt}
        return sess.public_view()

    @app.delete("/api/session")
    def delete_session(request: Request, proof: ProofVerified = Depends(require_dpop)):
        jkt = proof.thumbprint
        request.app.state.session_store.delete(jkt)
        return {"authenticated": False, "jkt": jkt}

    return app


app = create_app()
