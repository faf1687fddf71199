from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ticketgate.logging import get_correlation_id
from ticketgate.storage.models import SessionPayload, UserSnapshot

MAX_STRING_LENGTH = 1024


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class CamelModel(BaseModel):
    """Request/response bodies use camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RedirectOptions(CamelModel):
    redirect_to: Optional[str] = Field(None, max_length=MAX_STRING_LENGTH)


class EmailPasswordRequest(CamelModel):
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)


class AnonymousRequest(CamelModel):
    display_name: Optional[str] = Field(None, max_length=255)
    locale: Optional[str] = Field(None, min_length=2, max_length=2)


class PasswordlessEmailRequest(CamelModel):
    email: str = Field(..., min_length=3, max_length=320)
    options: Optional[RedirectOptions] = None


class PasswordlessSmsRequest(CamelModel):
    phone_number: str = Field(..., min_length=3, max_length=32)


class OtpRequest(CamelModel):
    phone_number: str = Field(..., min_length=3, max_length=32)
    otp: str = Field(..., min_length=1, max_length=16)


class ProviderRequest(CamelModel):
    code: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)


class MfaTotpRequest(CamelModel):
    ticket: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)
    otp: str = Field(..., min_length=1, max_length=16)


class EmailChangeRequest(CamelModel):
    new_email: str = Field(..., min_length=3, max_length=320)
    options: Optional[RedirectOptions] = None


class RefreshTokenRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)


class UserBody(CamelModel):
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    locale: str
    phone_number: Optional[str] = None
    is_anonymous: bool
    email_verified: bool
    default_role: str

    @classmethod
    def from_snapshot(cls, user: UserSnapshot) -> "UserBody":
        return cls(
            id=user.id,
            email=user.email,
            display_name=user.display_name,
            locale=user.locale,
            phone_number=user.phone_number,
            is_anonymous=user.is_anonymous,
            email_verified=user.email_verified,
            default_role=user.default_role,
        )


class SessionBody(CamelModel):
    access_token: str
    access_token_expires_in: int
    access_token_expires_at: datetime
    refresh_token: str
    user: UserBody

    @classmethod
    def from_payload(cls, payload: SessionPayload) -> "SessionBody":
        return cls(
            access_token=payload.access_token,
            access_token_expires_in=payload.access_token_expires_in,
            access_token_expires_at=payload.access_token_expires_at,
            refresh_token=payload.refresh_token,
            user=UserBody.from_snapshot(payload.user),
        )


class MfaBody(CamelModel):
    ticket: str


class SignInResponse(CamelModel):
    session: Optional[SessionBody] = None
    mfa: Optional[MfaBody] = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")
