"""Redis ticket store tests; skipped when no Redis server answers at REDIS_URL."""

import asyncio
import os
import uuid
from datetime import timedelta

import pytest
from redis import Redis
from redis.exceptions import RedisError

from ticketgate.service.errors import ConflictError, NotFoundError
from ticketgate.service.tickets import TicketManager
from ticketgate.storage.models import OtpCode, RefreshToken, Ticket, TicketKind, utcnow
from ticketgate.storage.redis_cache import RedisTicketStore

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/1")


def _redis_available() -> bool:
    client = Redis.from_url(REDIS_URL, socket_connect_timeout=0.5)
    try:
        return bool(client.ping())
    except (RedisError, OSError):
        return False
    finally:
        client.close()


requires_redis = pytest.mark.skipif(not _redis_available(), reason="Redis not available")


def _ticket(owner, value=None, ttl=60):
    return Ticket(
        kind=TicketKind.PASSWORDLESS_EMAIL,
        value=value or f"passwordlessEmail:{uuid.uuid4()}",
        owner_user_id=owner,
        expires_at=utcnow() + timedelta(seconds=ttl),
    )


@requires_redis
class TestRedisTicketStore:
    async def test_pop_ticket_once(self):
        store = RedisTicketStore(REDIS_URL)
        try:
            ticket = _ticket(str(uuid.uuid4()))
            await store.save_ticket(ticket)
            assert (await store.get_ticket(ticket.value)).owner_user_id == ticket.owner_user_id
            assert (await store.pop_ticket(ticket.value)).value == ticket.value
            assert await store.pop_ticket(ticket.value) is None
        finally:
            await store.close()

    async def test_save_replaces_owner_ticket(self):
        store = RedisTicketStore(REDIS_URL)
        try:
            owner = str(uuid.uuid4())
            first, second = _ticket(owner), _ticket(owner)
            await store.save_ticket(first)
            await store.save_ticket(second)
            assert await store.get_ticket(first.value) is None
            assert await store.get_ticket(second.value) is not None
        finally:
            await store.close()

    async def test_expired_ticket_still_readable(self):
        store = RedisTicketStore(REDIS_URL)
        try:
            ticket = _ticket(str(uuid.uuid4()), ttl=-5)
            await store.save_ticket(ticket)
            assert (await store.get_ticket(ticket.value)).is_expired(utcnow())
        finally:
            await store.close()

    async def test_pop_otp_compare_and_delete(self):
        store = RedisTicketStore(REDIS_URL)
        phone = f"+1555{uuid.uuid4().int % 10**7:07d}"
        try:
            await store.save_otp(OtpCode("123456", phone, utcnow() + timedelta(minutes=5)))
            assert await store.pop_otp(phone, "000000") is None
            assert (await store.pop_otp(phone, "123456")).code == "123456"
            assert await store.get_otp(phone) is None
        finally:
            await store.close()

    async def test_otp_failure_counter(self):
        store = RedisTicketStore(REDIS_URL)
        phone = f"+1555{uuid.uuid4().int % 10**7:07d}"
        try:
            assert await store.record_otp_failure(phone, "123456", 60) == 1
            assert await store.record_otp_failure(phone, "123456", 60) == 2
            assert await store.record_otp_failure(phone, "654321", 60) == 1
        finally:
            await store.close()

    async def test_refresh_tokens(self):
        store = RedisTicketStore(REDIS_URL)
        token = f"rt-{uuid.uuid4()}"
        try:
            await store.save_refresh_token(RefreshToken(token, "u1", utcnow() + timedelta(days=1)))
            assert (await store.pop_refresh_token(token)).user_id == "u1"
            assert await store.pop_refresh_token(token) is None
        finally:
            await store.close()

    async def test_claim_totp_step(self):
        store = RedisTicketStore(REDIS_URL)
        key = str(uuid.uuid4())
        try:
            assert await store.claim_totp_step(key, 5, 60)
            assert not await store.claim_totp_step(key, 5, 60)
            assert not await store.claim_totp_step(key, 4, 60)
            assert await store.claim_totp_step(key, 6, 60)
        finally:
            await store.close()

    async def test_concurrent_consume_single_winner(self, memory_store, settings):
        store = RedisTicketStore(REDIS_URL)
        try:
            user = memory_store.create_user("race@example.com")
            manager = TicketManager(memory_store, store, settings)
            ticket = await manager.issue(TicketKind.PASSWORDLESS_EMAIL, user.id, 60)
            results = await asyncio.gather(
                *(manager.consume(ticket.value) for _ in range(10)),
                return_exceptions=True,
            )
            winners = [r for r in results if not isinstance(r, Exception)]
            assert len(winners) == 1
            assert all(
                isinstance(r, (NotFoundError, ConflictError))
                for r in results
                if isinstance(r, Exception)
            )
        finally:
            await store.close()
