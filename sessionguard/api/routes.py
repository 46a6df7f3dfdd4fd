from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request

from sessionguard.api.schemas import (
    Envelope,
    InvalidationResponse,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    TokenPairResponse,
    TokenRefreshRequest,
    VerifyResponse,
)
from sessionguard.logging import get_logger
from sessionguard.service.auth import AuthContext, extract_bearer
from sessionguard.service.errors import InvalidToken
from sessionguard.service.issuer import ClientMeta
from sessionguard.service.runtime import Runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SESSION_ID_PATTERN = "^[0-9a-f]{64}$"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise _http_error("service_unavailable", "service starting", status_code=503)
    return runtime


def _client_meta(request: Request, user_agent: Optional[str]) -> ClientMeta:
    return ClientMeta(
        user_agent=(user_agent or "")[:512] or None,
        ip_addr=request.client.host if request.client else None,
    )


async def get_user(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    return await runtime.auth.authenticate(authorization)


async def get_admin_user(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    return await runtime.auth.authenticate(authorization, required_role="admin")


@router.get("/healthz", response_model=Envelope, tags=["system"])
async def healthz(runtime: Runtime = Depends(get_runtime)):
    return Envelope(
        status="ok",
        data={
            "store": type(runtime.store).__name__,
            "cache": getattr(runtime.cache, "backend", "custom"),
            "janitor_running": runtime.janitor.running,
        },
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    user_agent: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    """Authenticate with email and password and open a new session.

    Raises:
        401: If credentials are invalid or the identity is inactive
        503: If the session could not be persisted
    """
    result = await runtime.auth.login(
        body.email, body.password, _client_meta(request, user_agent)
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            identity_id=result.identity.id,
            session_id=result.session_id,
            role=result.identity.role,
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            token_type=result.token_type,
            expires_in=result.expires_in,
        ),
    )


@router.post("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify(principal: AuthContext = Depends(get_user)):
    return Envelope(
        status="ok",
        data=VerifyResponse(
            identity_id=principal.identity_id,
            session_id=principal.session_id,
            role=principal.role,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    body: TokenRefreshRequest,
    runtime: Runtime = Depends(get_runtime),
):
    pair = await runtime.auth.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data=TokenPairResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    token = extract_bearer(authorization)
    if not token:
        raise InvalidToken()
    refresh_token = body.refresh_token if body else None
    ended = await runtime.auth.logout(token, refresh_token)
    return Envelope(status="ok", data={"message": "logged out", "session_ended": ended})


@router.post(
    "/admin/sessions/{session_id}/invalidate", response_model=Envelope, tags=["admin"]
)
async def admin_invalidate_session(
    session_id: str = Path(..., pattern=SESSION_ID_PATTERN),
    principal: AuthContext = Depends(get_admin_user),
    runtime: Runtime = Depends(get_runtime),
):
    found = await runtime.auth.invalidate_session(session_id)
    if not found:
        raise _http_error("not_found", "session not found", status_code=404)
    logger.info(
        "admin_session_invalidated", session_id=session_id, admin_id=principal.identity_id
    )
    return Envelope(status="ok", data=InvalidationResponse(invalidated=1))


@router.post(
    "/admin/identities/{identity_id}/sessions/invalidate",
    response_model=Envelope,
    tags=["admin"],
)
async def admin_invalidate_identity_sessions(
    identity_id: str = Path(..., min_length=1, max_length=128),
    principal: AuthContext = Depends(get_admin_user),
    runtime: Runtime = Depends(get_runtime),
):
    count = await runtime.auth.invalidate_identity_sessions(identity_id)
    logger.info(
        "admin_identity_sessions_invalidated",
        identity_id=identity_id,
        admin_id=principal.identity_id,
        count=count,
    )
    return Envelope(status="ok", data=InvalidationResponse(invalidated=count))
