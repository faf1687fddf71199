from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from ticketgate.config import Settings
from ticketgate.logging import get_logger
from ticketgate.service.errors import (
    AuthenticationError,
    DisabledUserError,
    ExpiredTicketError,
    NotFoundError,
)
from ticketgate.service.outbound import store_errors
from ticketgate.service.tickets import UserRepository
from ticketgate.storage.models import (
    RefreshToken,
    SessionPayload,
    User,
    UserSnapshot,
    utcnow,
)

logger = get_logger(__name__)


class RefreshTokenStore(Protocol):
    async def save_refresh_token(self, refresh_token: RefreshToken) -> None: ...

    async def pop_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    async def delete_refresh_token(self, token: str) -> None: ...


class SessionIssuer:
    """Mints access/refresh token pairs for verified users."""

    def __init__(
        self,
        users: UserRepository,
        store: RefreshTokenStore,
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

    async def issue(self, user: User) -> SessionPayload:
        if user.disabled:
            self.logger.warning("session_refused_disabled_user", user_id=user.id)
            raise DisabledUserError("user is disabled")
        now = self._now()
        access_ttl = self.settings.access_token_ttl_seconds
        access_expires_at = now + timedelta(seconds=access_ttl)
        access_token = self._encode_jwt(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": user.id,
                "role": user.default_role,
                "anonymous": user.is_anonymous,
                "token_type": "access",
                "jti": str(uuid.uuid4()),
                "iat": int(now.timestamp()),
                "exp": int(access_expires_at.timestamp()),
            }
        )
        refresh = RefreshToken(
            token=secrets.token_urlsafe(48),
            user_id=user.id,
            expires_at=now + timedelta(seconds=self.settings.refresh_token_ttl_seconds),
            created_at=now,
        )
        async with store_errors("session_store"):
            await self.store.save_refresh_token(refresh)
        self.logger.info("session_issued", user_id=user.id)
        return SessionPayload(
            access_token=access_token,
            access_token_expires_at=access_expires_at,
            access_token_expires_in=access_ttl,
            refresh_token=refresh.token,
            user=UserSnapshot.from_user(user),
        )

    async def revoke(self, refresh_token: str) -> None:
        async with store_errors("session_store"):
            await self.store.delete_refresh_token(refresh_token)
        self.logger.info("refresh_token_revoked")

    async def refresh(self, refresh_token: str) -> SessionPayload:
        """Rotate a refresh token: the old one is spent whether or not issuance succeeds."""
        async with store_errors("session_store"):
            record = await self.store.pop_refresh_token(refresh_token)
        if record is None:
            raise NotFoundError("refresh token not found")
        if record.is_expired(self._now()):
            raise ExpiredTicketError("refresh token has expired")
        user = self.users.get_user(record.user_id)
        if user is None:
            raise AuthenticationError("user not found")
        return await self.issue(user)

    def decode_access_token(self, token: str) -> Optional[dict[str, Any]]:
        payload = self._decode_jwt(token)
        if payload is None or payload.get("token_type") != "access":
            return None
        return payload

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._now().timestamp():
            return None
        return payload
