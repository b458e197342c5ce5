from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Header, HTTPException, Request

from deskgate.api.schemas import (
    Envelope,
    MFAResendRequest,
    MFAResendResponse,
    MFAVerifyRequest,
    SessionResponse,
    SignInRequest,
    SignInResponse,
    SignOutRequest,
    SignOutResponse,
)
from deskgate.logging import get_logger
from deskgate.service.auth import AuthContext, SignInResult
from deskgate.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


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


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _sign_in_response(result: SignInResult) -> SignInResponse:
    return SignInResponse(
        state=result.state,
        requires_mfa=result.requires_mfa,
        session_token=result.session_token,
        is_admin=result.is_admin,
        principal_id=result.principal_id,
        expires_at=result.expires_at,
        code_expires_at=result.code_expires_at,
    )


async def get_auth_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    token = _extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    return await get_runtime().auth.authenticate(token)


@router.post("/auth/sign-in", response_model=Envelope, tags=["auth"])
async def sign_in(body: SignInRequest, request: Request):
    """Check captcha and password, then either send a code or (operator fast path) open a session.

    Raises:
        400: captcha missing or rejected
        401: invalid credentials
        429: a code was issued too recently or too often
        503: a dependency could not confirm the step
    """
    runtime = get_runtime()
    result = await runtime.auth.sign_in(
        body.email,
        body.password,
        body.captcha_token,
        admin_path=body.admin_path,
        remote_ip=_client_ip(request),
    )
    return Envelope(status="ok", data=_sign_in_response(result))


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["auth"])
async def verify_mfa(body: MFAVerifyRequest, request: Request):
    """Verify the emailed code with a fresh captcha and open a session."""
    runtime = get_runtime()
    result = await runtime.auth.verify_mfa(
        body.email, body.code, body.captcha_token, remote_ip=_client_ip(request)
    )
    return Envelope(status="ok", data=_sign_in_response(result))


@router.post("/auth/mfa/resend", response_model=Envelope, tags=["auth"])
async def resend_code(body: MFAResendRequest, request: Request):
    runtime = get_runtime()
    receipt = await runtime.auth.resend_code(
        body.email, body.captcha_token, remote_ip=_client_ip(request)
    )
    return Envelope(
        status="ok",
        data=MFAResendResponse(
            code_expires_at=receipt.expires_at,
            issuances_remaining=receipt.issuances_remaining,
        ),
    )


@router.post("/auth/sign-out", response_model=Envelope, tags=["auth"])
async def sign_out(
    body: Optional[SignOutRequest] = Body(None),
    authorization: Optional[str] = Header(None),
):
    """End the session named by the bearer token, or by ``session_token`` in the body."""
    token = _extract_bearer(authorization) or (body.session_token if body else None)
    if not token:
        raise _http_error("unauthorized", "missing session token", status_code=401)
    await get_runtime().auth.sign_out(token)
    return Envelope(status="ok", data=SignOutResponse())


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(authorization: Optional[str] = Header(None)):
    ctx = await get_auth_context(authorization)
    return Envelope(
        status="ok",
        data=SessionResponse(
            principal_id=ctx.principal_id,
            email=ctx.email,
            is_admin=ctx.is_admin,
            session_id=ctx.session_id,
        ),
    )
