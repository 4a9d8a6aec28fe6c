from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Path, Request, Response
from fastapi.responses import JSONResponse

from ciamflow.api.error_handling import error_response
from ciamflow.api.schemas import (
    DeviceBindRequest,
    DeviceListResponse,
    DeviceResponse,
    DocumentResponse,
    Envelope,
    ESignAcceptRequest,
    ESignDeclineRequest,
    FlowResponse,
    LoginRequest,
    LogoutRequest,
    MFAInitiateRequest,
    OTPVerifyRequest,
    PushApproveRequest,
    PushApproveResponse,
    PushVerifyRequest,
    SessionListResponse,
    SessionResponse,
    SessionVerifyResponse,
    TokenRefreshRequest,
    TokenRequest,
    TokenResponse,
)
from ciamflow.config import get_settings
from ciamflow.logging import get_correlation_id, get_logger
from ciamflow.service.context import RequestContext
from ciamflow.service.errors import AuthenticationError, ErrorKind, TokenError
from ciamflow.service.flow import FlowOutcome, FlowResult
from ciamflow.service.runtime import get_runtime
from ciamflow.service.tokens import IssuedTokens, Principal

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_COOKIE = "refresh_token"


def _request_context(
    request: Request,
    *,
    device_fingerprint: Optional[str] = None,
    app_id: Optional[str] = None,
    app_version: Optional[str] = None,
) -> RequestContext:
    headers = request.headers
    return RequestContext(
        correlation_id=get_correlation_id(),
        ip_address=request.client.host if request.client else None,
        user_agent=headers.get("User-Agent"),
        app_id=app_id or headers.get("X-App-Id") or "default",
        app_version=app_version or headers.get("X-App-Version"),
        device_fingerprint=device_fingerprint or headers.get("X-Device-Fingerprint"),
    )


def _set_refresh_cookie(response: Response, tokens: IssuedTokens) -> None:
    settings = get_settings()
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=tokens.refresh_max_age,
        path=settings.refresh_cookie_path,
    )


def _clear_refresh_cookie(response: Response) -> None:
    settings = get_settings()
    response.delete_cookie(
        REFRESH_COOKIE,
        path=settings.refresh_cookie_path,
        secure=settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


def _flow_envelope(result: FlowResult, response: Response) -> Envelope:
    body = FlowResponse(
        response_type_code=result.outcome.value,
        context_id=result.context_id,
        transaction_id=result.transaction_id,
        **result.data,
    )
    if result.outcome is FlowOutcome.SUCCESS and result.tokens is not None:
        # The refresh token only ever travels in the cookie
        _set_refresh_cookie(response, result.tokens)
        body.access_token = result.tokens.access_token
        body.id_token = result.tokens.id_token
        body.token_type = result.tokens.token_type
        body.expires_in = result.tokens.expires_in
        body.session_id = result.tokens.session_id
    return Envelope(status="ok", data=body)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    token = _bearer_token(authorization)
    if not token:
        raise AuthenticationError("missing bearer token")
    return await get_runtime().flow.authenticate(token)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Verify credentials and open a login flow.

    Returns MFA_REQUIRED with the offered methods, or skips straight to the
    next step when the presented device is trusted.
    """
    runtime = get_runtime()
    ctx = _request_context(
        request,
        device_fingerprint=body.device_fingerprint,
        app_id=body.app_id,
        app_version=body.app_version,
    )
    result = await runtime.flow.login(ctx, body.username, body.password)
    return _flow_envelope(result, response)


@router.post("/mfa/initiate", response_model=Envelope, tags=["mfa"])
async def initiate_mfa(body: MFAInitiateRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.flow.initiate_mfa(
        _request_context(request),
        body.context_id,
        body.transaction_id,
        body.method,
        body.mfa_option_id,
    )
    return _flow_envelope(result, response)


@router.post("/mfa/otp/verify", response_model=Envelope, tags=["mfa"])
async def verify_otp(body: OTPVerifyRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.flow.verify_otp(
        _request_context(request), body.context_id, body.transaction_id, body.code
    )
    return _flow_envelope(result, response)


@router.post("/mfa/push/verify", response_model=Envelope, tags=["mfa"])
async def verify_push(body: PushVerifyRequest, request: Request, response: Response):
    """Poll a push challenge. PENDING answers carry ``retry_after_ms``."""
    runtime = get_runtime()
    result = await runtime.flow.poll_push(
        _request_context(request), body.context_id, body.transaction_id
    )
    return _flow_envelope(result, response)


@router.post("/mfa/push/approve", response_model=Envelope, tags=["mfa"])
async def approve_push(body: PushApproveRequest):
    runtime = get_runtime()
    decided = await runtime.flow.approve_push(body.transaction_id, body.selected_number)
    return Envelope(
        status="ok",
        data=PushApproveResponse(
            transaction_id=decided.transaction_id, status=decided.status.value
        ),
    )


@router.post("/esign/accept", response_model=Envelope, tags=["esign"])
async def accept_esign(body: ESignAcceptRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.flow.accept_esign(
        _request_context(request),
        body.context_id,
        body.transaction_id,
        body.document_id,
    )
    return _flow_envelope(result, response)


@router.post("/esign/decline", response_model=Envelope, tags=["esign"])
async def decline_esign(body: ESignDeclineRequest, request: Request):
    """Decline ends the flow; the response is always the esign_declined error."""
    runtime = get_runtime()
    await runtime.flow.decline_esign(
        _request_context(request),
        body.context_id,
        body.transaction_id,
        body.document_id,
        body.reason,
    )


@router.get("/esign/documents/{document_id}", response_model=Envelope, tags=["esign"])
async def get_document(document_id: str = Path(..., max_length=128)):
    document = get_runtime().flow.document(document_id)
    return Envelope(
        status="ok",
        data=DocumentResponse(
            document_id=document.document_id,
            title=document.title,
            version=document.version,
            mandatory=document.mandatory,
        ),
    )


@router.post("/device/bind", response_model=Envelope, tags=["devices"])
async def bind_device(body: DeviceBindRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.flow.bind_device(
        _request_context(request),
        body.context_id,
        body.transaction_id,
        body.bind_device,
        device_name=body.device_name,
        device_type=body.device_type,
    )
    return _flow_envelope(result, response)


@router.get("/devices", response_model=Envelope, tags=["devices"])
async def list_devices(principal: Principal = Depends(get_principal)):
    devices = await get_runtime().flow.list_devices(principal)
    return Envelope(
        status="ok",
        data=DeviceListResponse(
            items=[
                DeviceResponse(
                    device_id=device.device_id,
                    device_name=device.device_name,
                    device_type=device.device_type,
                    app_id=device.app_id,
                    status=device.status.value,
                    trusted_at=device.trusted_at,
                    last_used_at=device.last_used_at,
                    expires_at=device.expires_at,
                )
                for device in devices
            ]
        ),
    )


@router.delete("/devices/{device_id}", response_model=Envelope, tags=["devices"])
async def revoke_device(
    device_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_principal),
):
    await get_runtime().flow.revoke_device(principal, device_id)
    return Envelope(status="ok", data={"device_id": device_id, "revoked": True})


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: Principal = Depends(get_principal)):
    sessions = await get_runtime().flow.list_sessions(principal)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[
                SessionResponse(
                    session_id=session.session_id,
                    device_id=session.device_id,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    created_at=session.created_at,
                    last_seen_at=session.last_seen_at,
                    expires_at=session.expires_at,
                    current=session.session_id == principal.session_id,
                )
                for session in sessions
            ]
        ),
    )


@router.delete("/sessions", response_model=Envelope, tags=["sessions"])
async def revoke_all_sessions(principal: Principal = Depends(get_principal)):
    """Sign out everywhere, including the calling session."""
    count = await get_runtime().flow.end_all_sessions(principal)
    return Envelope(status="ok", data={"revoked_sessions": count})


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_principal),
):
    await get_runtime().flow.end_session(principal, session_id)
    return Envelope(status="ok", data={"session_id": session_id, "revoked": True})


@router.get("/session/verify", response_model=Envelope, tags=["sessions"])
async def verify_session(principal: Principal = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=SessionVerifyResponse(
            sub=principal.cupid, session_id=principal.session_id, roles=principal.roles
        ),
    )


@router.post("/token/refresh", response_model=Envelope, tags=["tokens"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Rotate the refresh token from the cookie (preferred) or the body."""
    runtime = get_runtime()
    presented = refresh_cookie or (body.refresh_token if body else None)
    if not presented:
        raise TokenError(ErrorKind.TOKEN_NOT_FOUND)
    try:
        issued = await runtime.flow.refresh(_request_context(request), presented)
    except TokenError as exc:
        logger.warning("token_refresh_rejected", kind=exc.kind.value)
        failed: JSONResponse = error_response(exc.status_code, exc.message, code=exc.error_code)
        if exc.kind is ErrorKind.TOKEN_REUSE_DETECTED:
            _clear_refresh_cookie(failed)
        return failed
    _set_refresh_cookie(response, issued)
    return Envelope(
        status="ok",
        data=TokenResponse(
            access_token=issued.access_token,
            id_token=issued.id_token,
            token_type=issued.token_type,
            expires_in=issued.expires_in,
            session_id=issued.session_id,
        ),
    )


@router.post("/token/revoke", response_model=Envelope, tags=["tokens"])
async def revoke_token(body: TokenRequest, request: Request):
    # Unknown tokens are not an error, so callers cannot probe for valid ones
    await get_runtime().flow.revoke_token(_request_context(request), body.token)
    return Envelope(status="ok", data={"revoked": True})


@router.post("/token/introspect", response_model=Envelope, tags=["tokens"])
async def introspect_token(body: TokenRequest):
    return Envelope(status="ok", data=await get_runtime().flow.introspect(body.token))


@router.post("/token/logout", response_model=Envelope, tags=["auth"])
@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """End the session behind the bearer token or the refresh cookie.

    The cookie is scoped to the token path, so browser clients log out
    through ``/token/logout``; ``/auth/logout`` serves bearer callers.
    """
    runtime = get_runtime()
    logged_out = await runtime.flow.logout(
        _request_context(request),
        access_token=_bearer_token(authorization),
        refresh_token=refresh_cookie or (body.refresh_token if body else None),
    )
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data={"logged_out": logged_out})
