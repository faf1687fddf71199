from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from ticketgate.api.schemas import (
    AnonymousRequest,
    EmailChangeRequest,
    EmailPasswordRequest,
    Envelope,
    MfaBody,
    MfaTotpRequest,
    OtpRequest,
    PasswordlessEmailRequest,
    PasswordlessSmsRequest,
    ProviderRequest,
    RefreshTokenRequest,
    SessionBody,
    SignInResponse,
    UserBody,
)
from ticketgate.logging import get_logger
from ticketgate.service.runtime import get_runtime
from ticketgate.service.signin import (
    AnonymousSignIn,
    EmailPasswordSignIn,
    MfaTotpSignIn,
    OtpSignIn,
    PasswordlessEmailSignIn,
    PasswordlessSmsSignIn,
    ProviderSignIn,
    SignInResult,
)
from ticketgate.storage.models import TicketKind, UserSnapshot

logger = get_logger(__name__)

router = APIRouter()


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


def _signin_envelope(result: SignInResult) -> Envelope:
    if result.sent:
        return Envelope(status="ok", data="sent")
    response = SignInResponse(
        session=SessionBody.from_payload(result.session) if result.session else None,
        mfa=MfaBody(ticket=result.mfa_ticket) if result.mfa_ticket else None,
    )
    return Envelope(status="ok", data=response.to_wire())


async def get_user_id(authorization: Optional[str] = Header(None)) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    claims = get_runtime().sessions.decode_access_token(authorization[7:].strip())
    if not claims or not claims.get("sub"):
        raise _http_error("unauthorized", "invalid access token", status_code=401)
    return str(claims["sub"])


@router.get("/healthz", response_model=Envelope, tags=["meta"])
async def healthz():
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data={"status": "ok", "store_backend": runtime.settings.store_backend.value},
    )


@router.post("/signin/email-password", response_model=Envelope, tags=["signin"])
async def signin_email_password(body: EmailPasswordRequest):
    result = await get_runtime().signin.dispatch(
        EmailPasswordSignIn(email=body.email, password=body.password)
    )
    return _signin_envelope(result)


@router.post("/signin/anonymous", response_model=Envelope, tags=["signin"])
async def signin_anonymous(body: Optional[AnonymousRequest] = None):
    body = body or AnonymousRequest()
    result = await get_runtime().signin.dispatch(
        AnonymousSignIn(display_name=body.display_name, locale=body.locale)
    )
    return _signin_envelope(result)


@router.post("/signin/passwordless/email", response_model=Envelope, tags=["signin"])
async def signin_passwordless_email(body: PasswordlessEmailRequest):
    result = await get_runtime().signin.dispatch(
        PasswordlessEmailSignIn(
            email=body.email,
            redirect_to=body.options.redirect_to if body.options else None,
        )
    )
    return _signin_envelope(result)


@router.post("/signin/passwordless/sms", response_model=Envelope, tags=["signin"])
async def signin_passwordless_sms(body: PasswordlessSmsRequest):
    result = await get_runtime().signin.dispatch(
        PasswordlessSmsSignIn(phone_number=body.phone_number)
    )
    return _signin_envelope(result)


@router.post("/signin/passwordless/sms/otp", response_model=Envelope, tags=["signin"])
async def signin_passwordless_sms_otp(body: OtpRequest):
    result = await get_runtime().signin.dispatch(
        OtpSignIn(phone_number=body.phone_number, otp=body.otp)
    )
    return _signin_envelope(result)


@router.post("/signin/provider/{provider}", response_model=Envelope, tags=["signin"])
async def signin_provider(provider: str, body: ProviderRequest):
    result = await get_runtime().signin.dispatch(
        ProviderSignIn(provider=provider.lower(), code=body.code)
    )
    return _signin_envelope(result)


@router.post("/signin/mfa/totp", response_model=Envelope, tags=["signin"])
async def signin_mfa_totp(body: MfaTotpRequest):
    result = await get_runtime().signin.dispatch(
        MfaTotpSignIn(ticket=body.ticket, otp_code=body.otp)
    )
    return _signin_envelope(result)


@router.get("/verify", response_model=Envelope, tags=["verify"])
async def verify(ticket: str = Query(..., min_length=1, max_length=1024)):
    """Landing endpoint for emailed links (magic link sign-in, email change)."""
    outcome = await get_runtime().account.verify_ticket(ticket)
    if outcome.kind is TicketKind.PASSWORDLESS_EMAIL and outcome.signin is not None:
        return _signin_envelope(outcome.signin)
    user = UserBody.from_snapshot(UserSnapshot.from_user(outcome.user))
    return Envelope(status="ok", data={"user": user.model_dump(by_alias=True, mode="json")})


@router.post("/user/email/change", response_model=Envelope, tags=["user"])
async def change_email(body: EmailChangeRequest, user_id: str = Depends(get_user_id)):
    await get_runtime().account.request_email_change(
        user_id,
        body.new_email,
        redirect_to=body.options.redirect_to if body.options else None,
    )
    return Envelope(status="ok", data="OK")


@router.post("/token", response_model=Envelope, tags=["session"])
async def refresh_token(body: RefreshTokenRequest):
    payload = await get_runtime().sessions.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data=SignInResponse(session=SessionBody.from_payload(payload)).to_wire()["session"],
    )


@router.post("/signout", response_model=Envelope, tags=["session"])
async def signout(body: RefreshTokenRequest):
    await get_runtime().sessions.revoke(body.refresh_token)
    return Envelope(status="ok", data="OK")
