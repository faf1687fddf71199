"""Tests for ticket issuance, verification and single-use consumption."""

import asyncio

import pytest

from ticketgate.service.errors import (
    AuthenticationError,
    ConflictError,
    DownstreamUnavailableError,
    ExpiredTicketError,
    NotFoundError,
)
from ticketgate.service.tickets import TicketManager, parse_kind
from ticketgate.storage.models import TicketKind

from conftest import BrokenStore


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("owner@example.com")


class TestIssue:
    async def test_value_carries_kind_prefix(self, ticket_manager, user):
        ticket = await ticket_manager.issue(TicketKind.EMAIL_CONFIRM_CHANGE, user.id, 3600)
        kind, _, suffix = ticket.value.partition(":")
        assert kind == "emailConfirmChange"
        assert len(suffix) == 36

    async def test_expiry_is_now_plus_ttl(self, ticket_manager, user, clock):
        ticket = await ticket_manager.issue(TicketKind.PASSWORDLESS_EMAIL, user.id, 3600)
        assert (ticket.expires_at - clock.now).total_seconds() == 3600

    async def test_new_ticket_replaces_previous_of_same_kind(self, ticket_manager, user):
        first = await ticket_manager.issue(TicketKind.PASSWORDLESS_EMAIL, user.id, 3600)
        second = await ticket_manager.issue(TicketKind.PASSWORDLESS_EMAIL, user.id, 3600)
        with pytest.raises(NotFoundError):
            await ticket_manager.verify(first.value)
        assert (await ticket_manager.verify(second.value)).id == user.id

    async def test_other_kinds_are_independent(self, ticket_manager, user):
        change = await ticket_manager.issue(TicketKind.EMAIL_CONFIRM_CHANGE, user.id, 3600)
        await ticket_manager.issue(TicketKind.PASSWORDLESS_EMAIL, user.id, 3600)
        assert (await ticket_manager.verify(change.value)).id == user.id


class TestVerify:
    async def test_verify_does_not_consume(self, ticket_manager, user):
        ticket = await ticket_manager.issue(TicketKind.PASSWORDLESS_EMAIL, user.id, 60)
        await ticket_manager.verify(ticket.value)
        assert (await ticket_manager.consume(ticket.value)).id == user.id

    async def test_unknown_value(self, ticket_manager):
        with pytest.raises(NotFoundError):
            await ticket_manager.verify("passwordlessEmail:does-not-exist")

    async def test_expired_exactly_at_expiry(self, ticket_manager, user, clock):
        ticket = await ticket_manager.issue(TicketKind.PASSWORDLESS_EMAIL, user.id, 60)
        clock.advance(60)
        with pytest.raises(ExpiredTicketError):
            await ticket_manager.verify(ticket.value)


class TestConsume:
    async def test_email_change_ticket_consumed_once(self, ticket_manager, user):
        ticket = await ticket_manager.issue(TicketKind.EMAIL_CONFIRM_CHANGE, user.id, 3600)
        assert (await ticket_manager.consume(ticket.value)).id == user.id
        with pytest.raises(NotFoundError):
            await ticket_manager.consume(ticket.value)

    async def test_expired_ticket_rejected(self, ticket_manager, user, clock):
        ticket = await ticket_manager.issue(TicketKind.MFA_TOTP_CHALLENGE, user.id, 300)
        clock.advance(301)
        with pytest.raises(ExpiredTicketError):
            await ticket_manager.consume(ticket.value)

    async def test_wrong_kind_is_not_consumed(self, ticket_manager, user):
        ticket = await ticket_manager.issue(TicketKind.PASSWORDLESS_EMAIL, user.id, 3600)
        with pytest.raises(NotFoundError):
            await ticket_manager.consume(ticket.value, kind=TicketKind.MFA_TOTP_CHALLENGE)
        assert (await ticket_manager.consume(ticket.value)).id == user.id

    async def test_concurrent_consumers_have_one_winner(self, ticket_manager, user):
        ticket = await ticket_manager.issue(TicketKind.PASSWORDLESS_EMAIL, user.id, 3600)
        results = await asyncio.gather(
            *(ticket_manager.consume(ticket.value) for _ in range(5)),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(isinstance(e, (NotFoundError, ConflictError)) for e in losers)

    async def test_lost_race_reports_conflict(self, memory_store, settings, user):
        class RacingStore:
            """Reads succeed but another caller clears the record first."""

            def __init__(self, inner):
                self.inner = inner

            async def get_ticket(self, value):
                return await self.inner.get_ticket(value)

            async def pop_ticket(self, value):
                await self.inner.pop_ticket(value)
                return None

            async def save_ticket(self, ticket):
                await self.inner.save_ticket(ticket)

        manager = TicketManager(memory_store, RacingStore(memory_store), settings)
        ticket = await manager.issue(TicketKind.PASSWORDLESS_EMAIL, user.id, 60)
        with pytest.raises(ConflictError):
            await manager.consume(ticket.value)

    async def test_owner_removed(self, ticket_manager, memory_store, user):
        ticket = await ticket_manager.issue(TicketKind.PASSWORDLESS_EMAIL, user.id, 60)
        memory_store.users.pop(user.id)
        with pytest.raises(NotFoundError):
            await ticket_manager.consume(ticket.value)


class TestOtp:
    async def test_code_shape_and_ttl(self, ticket_manager, clock):
        otp = await ticket_manager.issue_otp("+15551234567")
        assert len(otp.code) == 6 and otp.code.isdigit()
        assert (otp.expires_at - clock.now).total_seconds() == 300

    async def test_wrong_code_keeps_the_stored_one(self, ticket_manager):
        otp = await ticket_manager.issue_otp("+15551234567")
        wrong = "000000" if otp.code != "000000" else "111111"
        with pytest.raises(AuthenticationError):
            await ticket_manager.consume_otp("+15551234567", wrong)
        assert (await ticket_manager.consume_otp("+15551234567", otp.code)).code == otp.code

    async def test_code_used_once(self, ticket_manager):
        otp = await ticket_manager.issue_otp("+15551234567")
        await ticket_manager.consume_otp("+15551234567", otp.code)
        with pytest.raises(NotFoundError):
            await ticket_manager.consume_otp("+15551234567", otp.code)

    async def test_expired_code(self, ticket_manager, clock):
        otp = await ticket_manager.issue_otp("+15551234567", ttl_seconds=30)
        clock.advance(30)
        with pytest.raises(ExpiredTicketError):
            await ticket_manager.consume_otp("+15551234567", otp.code)

    async def test_reissue_invalidates_old_code(self, ticket_manager):
        first = await ticket_manager.issue_otp("+15551234567")
        second = await ticket_manager.issue_otp("+15551234567")
        if first.code != second.code:
            with pytest.raises(AuthenticationError):
                await ticket_manager.consume_otp("+15551234567", first.code)
        assert (await ticket_manager.consume_otp("+15551234567", second.code)).code == second.code

    async def test_code_cleared_after_too_many_wrong_guesses(self, ticket_manager, memory_store):
        otp = await ticket_manager.issue_otp("+15551234567")
        wrong = "000000" if otp.code != "000000" else "111111"
        for _ in range(ticket_manager.settings.otp_max_attempts - 1):
            with pytest.raises(AuthenticationError):
                await ticket_manager.consume_otp("+15551234567", wrong)
        assert "+15551234567" in memory_store.otp_codes

        with pytest.raises(AuthenticationError):
            await ticket_manager.consume_otp("+15551234567", wrong)
        assert "+15551234567" not in memory_store.otp_codes
        with pytest.raises(NotFoundError):
            await ticket_manager.consume_otp("+15551234567", otp.code)

    async def test_reissue_resets_wrong_guess_count(self, ticket_manager, settings):
        ticket_manager.settings = settings.model_copy(update={"otp_max_attempts": 2})
        await ticket_manager.issue_otp("+15551234567")
        with pytest.raises(AuthenticationError):
            await ticket_manager.consume_otp("+15551234567", "not-a-code")
        otp = await ticket_manager.issue_otp("+15551234567")
        with pytest.raises(AuthenticationError):
            await ticket_manager.consume_otp("+15551234567", "not-a-code")
        assert (await ticket_manager.consume_otp("+15551234567", otp.code)).code == otp.code

    async def test_store_failure_on_issue(self, ticket_manager, memory_store):
        ticket_manager.store = BrokenStore(memory_store, "save_otp")
        with pytest.raises(DownstreamUnavailableError) as exc_info:
            await ticket_manager.issue_otp("+15551234567")
        assert exc_info.value.detail == {"collaborator": "ticket_store"}


class TestParseKind:
    def test_known_prefixes(self):
        assert parse_kind("mfaTotp:abc") is TicketKind.MFA_TOTP_CHALLENGE
        assert parse_kind("emailConfirmChange:abc") is TicketKind.EMAIL_CONFIRM_CHANGE

    @pytest.mark.parametrize("value", ["", "nocolon", "unknownKind:abc", "passwordlessEmail:"])
    def test_malformed_values(self, value):
        with pytest.raises(NotFoundError):
            parse_kind(value)
