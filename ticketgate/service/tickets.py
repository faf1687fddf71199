from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from ticketgate.config import Settings
from ticketgate.logging import get_logger, ticket_prefix
from ticketgate.service.credentials import verify_otp_code
from ticketgate.service.errors import (
    AuthenticationError,
    ConflictError,
    ExpiredTicketError,
    NotFoundError,
)
from ticketgate.service.outbound import store_errors
from ticketgate.storage.models import OtpCode, Ticket, TicketKind, User, utcnow

logger = get_logger(__name__)

OTP_DIGITS = 6


class UserRepository(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_phone(self, phone_number: str) -> Optional[User]: ...

    def get_user_by_ticket(self, value: str) -> Optional[User]: ...

    def get_user_by_provider(self, provider: str, provider_uid: str) -> Optional[User]: ...

    def create_user(self, email: Optional[str] = None, **fields: Any) -> User: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def link_user_auth_provider(
        self, user_id: str, provider: str, provider_uid: str
    ) -> None: ...


class TicketStore(Protocol):
    """Durable store for single-use records with atomic conditional clears."""

    async def save_ticket(self, ticket: Ticket) -> None: ...

    async def get_ticket(self, value: str) -> Optional[Ticket]: ...

    async def pop_ticket(self, value: str) -> Optional[Ticket]: ...

    async def save_otp(self, otp: OtpCode) -> None: ...

    async def get_otp(self, phone_number: str) -> Optional[OtpCode]: ...

    async def pop_otp(self, phone_number: str, code: str) -> Optional[OtpCode]: ...

    async def record_otp_failure(self, phone_number: str, code: str, ttl_seconds: int) -> int: ...

    async def claim_totp_step(self, key: str, step: int, ttl_seconds: int) -> bool: ...


def parse_kind(value: str) -> TicketKind:
    """Read the kind prefix of a ticket value without touching storage."""
    prefix, sep, rest = (value or "").partition(":")
    if not sep or not rest:
        raise NotFoundError("ticket not found")
    try:
        return TicketKind(prefix)
    except ValueError as exc:
        raise NotFoundError("ticket not found") from exc


class TicketManager:
    """Issues, verifies and consumes single-use tickets and SMS codes."""

    def __init__(
        self,
        users: UserRepository,
        store: TicketStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.users = users
        self.store = store
        self.settings = settings
        self._clock = clock or utcnow
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    parse_kind = staticmethod(parse_kind)

    async def issue(
        self, kind: TicketKind, owner_user_id: str, ttl_seconds: int
    ) -> Ticket:
        ticket = Ticket(
            kind=kind,
            value=f"{kind.value}:{uuid.uuid4()}",
            owner_user_id=owner_user_id,
            expires_at=self._now() + timedelta(seconds=ttl_seconds),
        )
        async with store_errors("ticket_store"):
            await self.store.save_ticket(ticket)
        self.logger.info(
            "ticket_issued",
            ticket_kind=kind.value,
            ticket_prefix=ticket_prefix(ticket.value),
            user_id=owner_user_id,
            ttl_seconds=ttl_seconds,
        )
        return ticket

    async def verify(self, value: str) -> User:
        """Return the ticket owner without consuming the ticket."""
        ticket = await self.store.get_ticket(value)
        if ticket is None:
            raise NotFoundError("ticket not found")
        if ticket.is_expired(self._now()):
            raise ExpiredTicketError("ticket has expired")
        return self._owner(ticket)

    async def consume(self, value: str, *, kind: Optional[TicketKind] = None) -> User:
        """Verify and clear a ticket; exactly one caller wins per value."""
        if kind is not None and parse_kind(value) != kind:
            raise NotFoundError("ticket not found")
        current = await self.store.get_ticket(value)
        if current is None:
            raise NotFoundError("ticket not found")
        popped = await self.store.pop_ticket(value)
        if popped is None:
            self.logger.warning(
                "ticket_consume_conflict",
                ticket_kind=current.kind.value,
                ticket_prefix=ticket_prefix(value),
            )
            raise ConflictError("ticket already used")
        if popped.is_expired(self._now()):
            raise ExpiredTicketError("ticket has expired")
        user = self._owner(popped)
        self.logger.info(
            "ticket_consumed",
            ticket_kind=popped.kind.value,
            ticket_prefix=ticket_prefix(value),
            user_id=user.id,
        )
        return user

    def _owner(self, ticket: Ticket) -> User:
        user = self.users.get_user(ticket.owner_user_id)
        if user is None:
            raise NotFoundError("ticket owner not found")
        return user

    async def issue_otp(
        self, phone_number: str, ttl_seconds: Optional[int] = None
    ) -> OtpCode:
        ttl = ttl_seconds if ttl_seconds is not None else self.settings.otp_ttl_seconds
        code = "".join(secrets.choice("0123456789") for _ in range(OTP_DIGITS))
        otp = OtpCode(
            code=code,
            phone_number=phone_number,
            expires_at=self._now() + timedelta(seconds=ttl),
        )
        async with store_errors("ticket_store"):
            await self.store.save_otp(otp)
        self.logger.info("otp_issued", ttl_seconds=ttl)
        return otp

    async def consume_otp(self, phone_number: str, submitted: str) -> OtpCode:
        """Check a submitted code and clear it.

        Wrong codes leave it in place until `otp_max_attempts` have been spent.
        """
        current = await self.store.get_otp(phone_number)
        if current is None:
            raise NotFoundError("no code issued for this phone number")
        if current.is_expired(self._now()):
            raise ExpiredTicketError("code has expired")
        if not verify_otp_code(submitted, current.code):
            await self._record_mismatch(phone_number, current)
            raise AuthenticationError("invalid code")
        popped = await self.store.pop_otp(phone_number, current.code)
        if popped is None:
            raise ConflictError("code already used")
        self.logger.info("otp_consumed")
        return popped

    async def _record_mismatch(self, phone_number: str, current: OtpCode) -> None:
        ttl = max(1, int((current.expires_at - self._now()).total_seconds()))
        async with store_errors("ticket_store"):
            failures = await self.store.record_otp_failure(phone_number, current.code, ttl)
            if failures < self.settings.otp_max_attempts:
                self.logger.warning("otp_mismatch", failures=failures)
                return
            # too many wrong guesses; the code has to be reissued
            await self.store.pop_otp(phone_number, current.code)
        self.logger.warning("otp_attempts_exhausted", failures=failures)
