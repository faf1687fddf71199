from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis

from ticketgate.storage.models import OtpCode, RefreshToken, Ticket, TicketKind


class RedisTicketStore:
    """Redis-backed ticket, OTP and refresh token store.

    Every compare-and-clear runs as a single Lua script or GETDEL so that two
    app instances racing on the same ticket or code see exactly one winner.
    Records outlive their logical expiry by ``EXPIRED_RETENTION_SECONDS`` so
    that late presentations can be told apart from unknown values.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0
    EXPIRED_RETENTION_SECONDS = 60 * 60

    # Replace the owner's previous ticket of the same kind, then store the new one.
    _SAVE_TICKET_SCRIPT = """
local previous = redis.call('GET', KEYS[2])
if previous then
  redis.call('DEL', ARGV[3] .. previous)
end
redis.call('SET', KEYS[1], ARGV[1], 'EX', tonumber(ARGV[2]))
redis.call('SET', KEYS[2], ARGV[4], 'EX', tonumber(ARGV[2]))
return 1
"""

    _POP_TICKET_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if not value then
  return nil
end
redis.call('DEL', KEYS[1])
local data = cjson.decode(value)
local owner_key = ARGV[1] .. data['owner_user_id'] .. ':' .. data['kind']
if redis.call('GET', owner_key) == data['value'] then
  redis.call('DEL', owner_key)
end
return value
"""

    # Delete the stored code only when it matches the submitted one.
    _POP_OTP_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if not value then
  return nil
end
local data = cjson.decode(value)
if data['code'] ~= ARGV[1] then
  return nil
end
redis.call('DEL', KEYS[1])
return value
"""

    # Count wrong submissions against one issued code; the counter lives as long as the code.
    _OTP_FAILURE_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return count
"""

    _CLAIM_STEP_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]))
local step = tonumber(ARGV[1])
if current and step <= current then
  return 0
end
redis.call('SET', KEYS[1], step, 'EX', tonumber(ARGV[2]))
return 1
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._save_ticket = self.client.register_script(self._SAVE_TICKET_SCRIPT)
        self._pop_ticket = self.client.register_script(self._POP_TICKET_SCRIPT)
        self._pop_otp = self.client.register_script(self._POP_OTP_SCRIPT)
        self._otp_failure = self.client.register_script(self._OTP_FAILURE_SCRIPT)
        self._claim_step = self.client.register_script(self._CLAIM_STEP_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Seconds until ``expires_at``, clamped to at least one."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def _retained_ttl(self, expires_at: datetime) -> int:
        return self._ttl_seconds(expires_at) + self.EXPIRED_RETENTION_SECONDS

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        from redis import Redis

        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()

    # tickets
    @staticmethod
    def _ticket_key(value: str) -> str:
        return f"auth:ticket:{value}"

    @staticmethod
    def _ticket_owner_key(owner_user_id: str, kind: TicketKind) -> str:
        return f"auth:ticket-owner:{owner_user_id}:{kind.value}"

    @staticmethod
    def _dump_ticket(ticket: Ticket) -> str:
        return json.dumps(
            {
                "kind": ticket.kind.value,
                "value": ticket.value,
                "owner_user_id": ticket.owner_user_id,
                "expires_at": ticket.expires_at.isoformat(),
            }
        )

    @staticmethod
    def _load_ticket(raw: Optional[str]) -> Optional[Ticket]:
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return Ticket(
                kind=TicketKind(data["kind"]),
                value=data["value"],
                owner_user_id=data["owner_user_id"],
                expires_at=datetime.fromisoformat(data["expires_at"]),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None

    async def save_ticket(self, ticket: Ticket) -> None:
        await self._save_ticket(
            keys=[
                self._ticket_key(ticket.value),
                self._ticket_owner_key(ticket.owner_user_id, ticket.kind),
            ],
            args=[
                self._dump_ticket(ticket),
                self._retained_ttl(ticket.expires_at),
                self._ticket_key(""),
                ticket.value,
            ],
        )

    async def get_ticket(self, value: str) -> Optional[Ticket]:
        return self._load_ticket(await self.client.get(self._ticket_key(value)))

    async def pop_ticket(self, value: str) -> Optional[Ticket]:
        raw = await self._pop_ticket(
            keys=[self._ticket_key(value)], args=["auth:ticket-owner:"]
        )
        return self._load_ticket(raw)

    # otp codes
    @staticmethod
    def _otp_key(phone_number: str) -> str:
        return f"auth:otp:{phone_number}"

    @staticmethod
    def _load_otp(raw: Optional[str]) -> Optional[OtpCode]:
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return OtpCode(
                code=data["code"],
                phone_number=data["phone_number"],
                expires_at=datetime.fromisoformat(data["expires_at"]),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None

    async def save_otp(self, otp: OtpCode) -> None:
        payload = {
            "code": otp.code,
            "phone_number": otp.phone_number,
            "expires_at": otp.expires_at.isoformat(),
        }
        await self.client.set(
            self._otp_key(otp.phone_number),
            json.dumps(payload),
            ex=self._retained_ttl(otp.expires_at),
        )

    async def get_otp(self, phone_number: str) -> Optional[OtpCode]:
        return self._load_otp(await self.client.get(self._otp_key(phone_number)))

    async def pop_otp(self, phone_number: str, code: str) -> Optional[OtpCode]:
        raw = await self._pop_otp(keys=[self._otp_key(phone_number)], args=[code])
        return self._load_otp(raw)

    async def record_otp_failure(self, phone_number: str, code: str, ttl_seconds: int) -> int:
        result = await self._otp_failure(
            keys=[f"auth:otp-failures:{phone_number}:{code}"], args=[max(1, ttl_seconds)]
        )
        return int(result)

    # refresh tokens
    @staticmethod
    def _refresh_key(token: str) -> str:
        return f"auth:refresh:{token}"

    async def save_refresh_token(self, refresh_token: RefreshToken) -> None:
        payload = {
            "token": refresh_token.token,
            "user_id": refresh_token.user_id,
            "expires_at": refresh_token.expires_at.isoformat(),
            "created_at": refresh_token.created_at.isoformat(),
        }
        await self.client.set(
            self._refresh_key(refresh_token.token),
            json.dumps(payload),
            ex=self._ttl_seconds(refresh_token.expires_at),
        )

    async def pop_refresh_token(self, token: str) -> Optional[RefreshToken]:
        raw = await self.client.getdel(self._refresh_key(token))
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return RefreshToken(
                token=data["token"],
                user_id=data["user_id"],
                expires_at=datetime.fromisoformat(data["expires_at"]),
                created_at=datetime.fromisoformat(data["created_at"]),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None

    async def delete_refresh_token(self, token: str) -> None:
        await self.client.delete(self._refresh_key(token))

    # totp replay guard
    async def claim_totp_step(self, key: str, step: int, ttl_seconds: int) -> bool:
        result = await self._claim_step(
            keys=[f"auth:totp-step:{key}"], args=[step, max(1, ttl_seconds)]
        )
        return bool(int(result))
