from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Union
from urllib.parse import urlparse

from ticketgate.config import Settings
from ticketgate.logging import get_logger
from ticketgate.service.credentials import CredentialValidator
from ticketgate.service.email import EmailSender
from ticketgate.service.errors import (
    AuthenticationError,
    DisabledUserError,
    FeatureDisabledError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from ticketgate.service.outbound import call_with_timeout
from ticketgate.service.providers import IdentityResolver
from ticketgate.service.sessions import SessionIssuer
from ticketgate.service.sms import SmsSender
from ticketgate.service.tickets import TicketManager, UserRepository
from ticketgate.storage.models import SessionPayload, TicketKind, User, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class EmailPasswordSignIn:
    email: str
    password: str


@dataclass(frozen=True)
class AnonymousSignIn:
    display_name: Optional[str] = None
    locale: Optional[str] = None


@dataclass(frozen=True)
class PasswordlessEmailSignIn:
    email: str
    redirect_to: Optional[str] = None


@dataclass(frozen=True)
class PasswordlessSmsSignIn:
    phone_number: str


@dataclass(frozen=True)
class OtpSignIn:
    phone_number: str
    otp: str


@dataclass(frozen=True)
class ProviderSignIn:
    provider: str
    code: str


@dataclass(frozen=True)
class MfaTotpSignIn:
    ticket: str
    otp_code: str


SignInRequest = Union[
    EmailPasswordSignIn,
    AnonymousSignIn,
    PasswordlessEmailSignIn,
    PasswordlessSmsSignIn,
    OtpSignIn,
    ProviderSignIn,
    MfaTotpSignIn,
]


class SignInState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    PENDING_VERIFICATION = "pending_verification"
    AUTHENTICATED_FIRST_FACTOR = "authenticated_first_factor"
    AUTHENTICATED_FULL = "authenticated_full"
    REJECTED = "rejected"


@dataclass
class SignInResult:
    state: SignInState
    session: Optional[SessionPayload] = None
    mfa_ticket: Optional[str] = None
    sent: bool = False


def _redirect_matches(redirect_to: str, allowed_url: str) -> bool:
    target = urlparse(redirect_to)
    allowed = urlparse(allowed_url)
    if target.scheme.lower() != allowed.scheme.lower() or not allowed.netloc:
        return False
    # netloc includes userinfo, so "host@evil" never equals "host"
    if target.netloc.lower() != allowed.netloc.lower():
        return False
    base = allowed.path.rstrip("/")
    return not base or target.path == base or target.path.startswith(base + "/")


def is_valid_redirect_to(settings: Settings, redirect_to: Optional[str]) -> bool:
    """Redirects must stay on the client URL or one of the allowed URLs.

    Scheme and host must match exactly; the path must sit under the allowed path.
    """
    if not redirect_to:
        return True
    allowed = [settings.client_url, *settings.allowed_redirect_urls]
    return any(url and _redirect_matches(redirect_to, url) for url in allowed)


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class SignInDispatcher:
    """Routes each sign-in request through its verification pipeline.

    Every pipeline either returns a result or raises a ``ServiceError``; users
    with MFA turned on only ever get an MFA ticket from a first factor.
    """

    def __init__(
        self,
        settings: Settings,
        users: UserRepository,
        tickets: TicketManager,
        credentials: CredentialValidator,
        sessions: SessionIssuer,
        *,
        email_sender: EmailSender,
        sms_sender: SmsSender,
        identity_resolver: Optional[IdentityResolver] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.users = users
        self.tickets = tickets
        self.credentials = credentials
        self.sessions = sessions
        self.email_sender = email_sender
        self.sms_sender = sms_sender
        self.identity_resolver = identity_resolver
        self._clock = clock or utcnow
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    async def dispatch(self, request: SignInRequest) -> SignInResult:
        method = type(request).__name__
        self.logger.debug("signin_started", method=method, state=SignInState.UNAUTHENTICATED.value)
        try:
            if isinstance(request, EmailPasswordSignIn):
                result = await self._email_password(request)
            elif isinstance(request, AnonymousSignIn):
                result = await self._anonymous(request)
            elif isinstance(request, PasswordlessEmailSignIn):
                result = await self._passwordless_email(request)
            elif isinstance(request, PasswordlessSmsSignIn):
                result = await self._passwordless_sms(request)
            elif isinstance(request, OtpSignIn):
                result = await self._otp(request)
            elif isinstance(request, ProviderSignIn):
                result = await self._provider(request)
            elif isinstance(request, MfaTotpSignIn):
                result = await self._mfa_totp(request)
            else:
                raise ValidationError("unsupported sign-in method", detail={"method": method})
        except ServiceError as exc:
            self.logger.warning(
                "signin_rejected",
                method=method,
                state=SignInState.REJECTED.value,
                error_code=exc.error_code,
            )
            raise
        self.logger.info("signin_transition", method=method, state=result.state.value)
        return result

    async def complete_passwordless_email(self, ticket: str) -> SignInResult:
        """Magic-link landing: consume the emailed ticket and finish sign-in."""
        try:
            user = await self.tickets.consume(ticket, kind=TicketKind.PASSWORDLESS_EMAIL)
            if not user.email_verified:
                user = self.users.update_user(user.id, email_verified=True) or user
            result = await self._finish_first_factor(user)
        except ServiceError as exc:
            self.logger.warning(
                "signin_rejected",
                method="PasswordlessEmailLink",
                state=SignInState.REJECTED.value,
                error_code=exc.error_code,
            )
            raise
        self.logger.info("signin_transition", method="PasswordlessEmailLink", state=result.state.value)
        return result

    async def _finish_first_factor(self, user: User) -> SignInResult:
        if user.disabled:
            raise DisabledUserError("user is disabled")
        if user.mfa_enabled:
            ticket = await self.tickets.issue(
                TicketKind.MFA_TOTP_CHALLENGE, user.id, self.settings.mfa_ticket_ttl_seconds
            )
            return SignInResult(SignInState.AUTHENTICATED_FIRST_FACTOR, mfa_ticket=ticket.value)
        session = await self.sessions.issue(user)
        return SignInResult(SignInState.AUTHENTICATED_FULL, session=session)

    async def _email_password(self, request: EmailPasswordSignIn) -> SignInResult:
        if not self.settings.email_password_enabled:
            raise FeatureDisabledError("email and password sign-in is disabled")
        email = _normalize_email(request.email)
        if not email or not request.password:
            raise ValidationError("email and password are required")
        user = self.users.get_user_by_email(email)
        if user is None or not self.credentials.verify_password(user.password_hash, request.password):
            raise AuthenticationError("Incorrect email or password")
        if user.disabled:
            raise DisabledUserError("user is disabled")
        if self.settings.email_verification_required and not user.email_verified:
            raise AuthenticationError("email is not verified", error_code="unverified_user")
        return await self._finish_first_factor(user)

    async def _anonymous(self, request: AnonymousSignIn) -> SignInResult:
        if not self.settings.anonymous_users_enabled:
            raise FeatureDisabledError("anonymous users are disabled")
        user = self.users.create_user(
            display_name=request.display_name or "Anonymous User",
            locale=request.locale or self.settings.default_locale,
            is_anonymous=True,
            default_role="anonymous",
        )
        session = await self.sessions.issue(user)
        return SignInResult(SignInState.AUTHENTICATED_FULL, session=session)

    async def _passwordless_email(self, request: PasswordlessEmailSignIn) -> SignInResult:
        if not self.settings.passwordless_email_enabled:
            raise FeatureDisabledError("passwordless email sign-in is disabled")
        if not is_valid_redirect_to(self.settings, request.redirect_to):
            raise ValidationError("redirectTo is not allowed")
        email = _normalize_email(request.email)
        if "@" not in email:
            raise ValidationError("a valid email is required")
        user = self.users.get_user_by_email(email)
        if user is None and self.settings.passwordless_auto_signup:
            user = self.users.create_user(
                email,
                locale=self.settings.default_locale,
                disabled=self.settings.disable_new_users,
                default_role=self.settings.default_role,
            )
        if user is None or user.disabled:
            self.logger.info("passwordless_email_suppressed")
            return SignInResult(SignInState.PENDING_VERIFICATION, sent=True)

        ticket = await self.tickets.issue(
            TicketKind.PASSWORDLESS_EMAIL, user.id, self.settings.passwordless_ticket_ttl_seconds
        )
        redirect_to = request.redirect_to or self.settings.client_url
        await call_with_timeout(
            self.email_sender.send(
                "signin-passwordless",
                {
                    "display_name": user.display_name,
                    "ticket": ticket.value,
                    "redirect_to": redirect_to,
                    "locale": user.locale,
                    "server_url": self.settings.server_url,
                    "client_url": self.settings.client_url,
                },
                email,
                {
                    "x-ticket": ticket.value,
                    "x-redirect-to": redirect_to,
                    "x-email-template": "signin-passwordless",
                },
            ),
            timeout=self.settings.outbound_timeout_seconds,
            collaborator="email",
        )
        return SignInResult(SignInState.PENDING_VERIFICATION, sent=True)

    async def _passwordless_sms(self, request: PasswordlessSmsSignIn) -> SignInResult:
        if not self.settings.passwordless_sms_enabled:
            raise FeatureDisabledError("passwordless sms sign-in is disabled")
        phone_number = (request.phone_number or "").strip()
        if not phone_number:
            raise ValidationError("phoneNumber is required")
        user = self.users.get_user_by_phone(phone_number)
        if user is None and self.settings.passwordless_auto_signup:
            user = self.users.create_user(
                phone_number=phone_number,
                locale=self.settings.default_locale,
                disabled=self.settings.disable_new_users,
                default_role=self.settings.default_role,
            )
        if user is None or user.disabled:
            self.logger.info("passwordless_sms_suppressed")
            return SignInResult(SignInState.PENDING_VERIFICATION, sent=True)

        otp = await self.tickets.issue_otp(phone_number)
        minutes = max(1, self.settings.otp_ttl_seconds // 60)
        await call_with_timeout(
            self.sms_sender.send(
                phone_number,
                f"Your sign-in code is {otp.code}. It expires in {minutes} minutes.",
            ),
            timeout=self.settings.outbound_timeout_seconds,
            collaborator="sms",
        )
        self.logger.info("otp_sent")
        return SignInResult(SignInState.PENDING_VERIFICATION, sent=True)

    async def _otp(self, request: OtpSignIn) -> SignInResult:
        if not self.settings.passwordless_sms_enabled:
            raise FeatureDisabledError("passwordless sms sign-in is disabled")
        phone_number = (request.phone_number or "").strip()
        if not phone_number or not request.otp:
            raise ValidationError("phoneNumber and otp are required")
        await self.tickets.consume_otp(phone_number, request.otp)
        user = self.users.get_user_by_phone(phone_number)
        if user is None:
            raise NotFoundError("user not found")
        return await self._finish_first_factor(user)

    async def _provider(self, request: ProviderSignIn) -> SignInResult:
        if self.identity_resolver is None or (
            request.provider not in self.settings.configured_providers
            and not self.settings.test_mode
        ):
            raise FeatureDisabledError(
                "provider is not enabled", detail={"provider": request.provider}
            )
        if not request.code:
            raise ValidationError("code is required")
        identity = await call_with_timeout(
            self.identity_resolver.resolve_identity(request.provider, request.code),
            timeout=self.settings.outbound_timeout_seconds,
            collaborator=f"provider:{request.provider}",
        )
        user = self.users.get_user_by_provider(identity.provider, identity.provider_uid)
        if user is None:
            email = _normalize_email(identity.email) if identity.email else None
            user = self.users.get_user_by_email(email) if email else None
            if user is None:
                user = self.users.create_user(
                    email,
                    display_name=identity.display_name,
                    locale=identity.locale or self.settings.default_locale,
                    disabled=self.settings.disable_new_users,
                    email_verified=bool(email),
                    default_role=self.settings.default_role,
                )
                self.logger.info("provider_user_created", provider=identity.provider, user_id=user.id)
            self.users.link_user_auth_provider(user.id, identity.provider, identity.provider_uid)
        return await self._finish_first_factor(user)

    async def _mfa_totp(self, request: MfaTotpSignIn) -> SignInResult:
        if not self.settings.mfa_enabled:
            raise FeatureDisabledError("multi-factor authentication is disabled")
        if not request.ticket or not request.otp_code:
            raise ValidationError("ticket and otp are required")
        user = await self.tickets.consume(request.ticket, kind=TicketKind.MFA_TOTP_CHALLENGE)
        if not user.mfa_enabled or not user.mfa_secret:
            raise AuthenticationError("user has no TOTP secret")
        if not await self.credentials.verify_totp(request.otp_code, user.mfa_secret):
            raise AuthenticationError("invalid TOTP code")
        if user.disabled:
            raise DisabledUserError("user is disabled")
        session = await self.sessions.issue(user)
        return SignInResult(SignInState.AUTHENTICATED_FULL, session=session)
