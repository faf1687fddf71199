from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ticketgate.config import Settings
from ticketgate.logging import get_logger
from ticketgate.service.email import EmailSender
from ticketgate.service.errors import (
    AuthenticationError,
    ConflictError,
    FeatureDisabledError,
    NotFoundError,
    ValidationError,
)
from ticketgate.service.outbound import call_with_timeout
from ticketgate.service.signin import SignInDispatcher, SignInResult, is_valid_redirect_to
from ticketgate.service.tickets import TicketManager, UserRepository, parse_kind
from ticketgate.storage.models import TicketKind, User

logger = get_logger(__name__)

EMAIL_CONFIRM_CHANGE_TEMPLATE = "email-confirm-change"


@dataclass
class VerifyOutcome:
    kind: TicketKind
    user: Optional[User] = None
    signin: Optional[SignInResult] = None


class AccountService:
    """Email change flow and routing of emailed verification links."""

    def __init__(
        self,
        settings: Settings,
        users: UserRepository,
        tickets: TicketManager,
        dispatcher: SignInDispatcher,
        *,
        email_sender: EmailSender,
    ) -> None:
        self.settings = settings
        self.users = users
        self.tickets = tickets
        self.dispatcher = dispatcher
        self.email_sender = email_sender
        self.logger = logger

    def is_valid_redirect_to(self, redirect_to: Optional[str]) -> bool:
        return is_valid_redirect_to(self.settings, redirect_to)

    async def request_email_change(
        self, user_id: str, new_email: str, redirect_to: Optional[str] = None
    ) -> None:
        if not self.is_valid_redirect_to(redirect_to):
            raise ValidationError("redirectTo is not allowed")
        if not self.settings.emails_enabled:
            raise FeatureDisabledError("emails are disabled")
        normalized = (new_email or "").strip().lower()
        if "@" not in normalized:
            raise ValidationError("a valid email is required")
        user = self.users.get_user(user_id)
        if user is None:
            raise AuthenticationError("user not found")
        if self.users.get_user_by_email(normalized):
            raise ConflictError("email already in use", status_code=409)

        ticket = await self.tickets.issue(
            TicketKind.EMAIL_CONFIRM_CHANGE,
            user.id,
            self.settings.email_change_ticket_ttl_seconds,
        )
        self.users.update_user(user.id, new_email=normalized)
        redirect = redirect_to or self.settings.client_url
        await call_with_timeout(
            self.email_sender.send(
                EMAIL_CONFIRM_CHANGE_TEMPLATE,
                {
                    "display_name": user.display_name,
                    "ticket": ticket.value,
                    "redirect_to": redirect,
                    "locale": user.locale,
                    "server_url": self.settings.server_url,
                    "client_url": self.settings.client_url,
                },
                normalized,
                {
                    "x-ticket": ticket.value,
                    "x-redirect-to": redirect,
                    "x-email-template": EMAIL_CONFIRM_CHANGE_TEMPLATE,
                },
            ),
            timeout=self.settings.outbound_timeout_seconds,
            collaborator="email",
        )
        self.logger.info("email_change_requested", user_id=user.id)

    async def confirm_email_change(self, ticket: str) -> User:
        user = await self.tickets.consume(ticket, kind=TicketKind.EMAIL_CONFIRM_CHANGE)
        if not user.new_email:
            raise NotFoundError("no email change pending")
        updated = self.users.update_user(
            user.id, email=user.new_email, new_email=None, email_verified=True
        )
        self.logger.info("email_change_confirmed", user_id=user.id)
        return updated or user

    async def verify_ticket(self, value: str) -> VerifyOutcome:
        kind = parse_kind(value)
        if kind is TicketKind.EMAIL_CONFIRM_CHANGE:
            return VerifyOutcome(kind, await self.confirm_email_change(value))
        if kind is TicketKind.PASSWORDLESS_EMAIL:
            result = await self.dispatcher.complete_passwordless_email(value)
            return VerifyOutcome(kind, signin=result)
        raise NotFoundError("ticket not found")
