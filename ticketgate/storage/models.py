from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TicketKind(str, Enum):
    """Kinds of single-use tickets; the value doubles as the ticket prefix."""

    EMAIL_CONFIRM_CHANGE = "emailConfirmChange"
    PASSWORDLESS_EMAIL = "passwordlessEmail"
    PASSWORDLESS_SMS = "passwordlessSms"
    MFA_TOTP_CHALLENGE = "mfaTotp"


@dataclass
class User:
    id: str
    email: Optional[str] = None
    new_email: Optional[str] = None
    password_hash: Optional[str] = None
    locale: str = "en"
    disabled: bool = False
    mfa_secret: Optional[str] = None
    mfa_enabled: bool = False
    phone_number: Optional[str] = None
    display_name: Optional[str] = None
    is_anonymous: bool = False
    email_verified: bool = False
    default_role: str = "user"
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None


@dataclass
class UserAuthProvider:
    user_id: str
    provider: str
    provider_uid: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Ticket:
    kind: TicketKind
    value: str
    owner_user_id: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class OtpCode:
    code: str
    phone_number: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class RefreshToken:
    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class UserSnapshot:
    """The part of a user returned alongside a session."""

    id: str
    email: Optional[str]
    display_name: Optional[str]
    locale: str
    phone_number: Optional[str]
    is_anonymous: bool
    email_verified: bool
    default_role: str

    @classmethod
    def from_user(cls, user: User) -> "UserSnapshot":
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


@dataclass
class SessionPayload:
    access_token: str
    access_token_expires_at: datetime
    access_token_expires_in: int
    refresh_token: str
    user: UserSnapshot


@dataclass
class UserIdentity:
    """Identity returned by an OAuth provider after a code exchange."""

    provider: str
    provider_uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    locale: Optional[str] = None
