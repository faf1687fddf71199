from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Protocol
from urllib.parse import quote, urlencode

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from ticketgate.config import Settings
from ticketgate.logging import get_logger
from ticketgate.service.breach import BreachChecker
from ticketgate.service.errors import (
    DownstreamUnavailableError,
    ServiceError,
    ValidationError,
)
from ticketgate.service.outbound import call_with_timeout
from ticketgate.storage.models import utcnow

logger = get_logger(__name__)

TOTP_DIGITS = 6


class TotpStepStore(Protocol):
    async def claim_totp_step(self, key: str, step: int, ttl_seconds: int) -> bool: ...


class PolicyRejection(str, Enum):
    MISSING = "missing"
    TOO_SHORT = "too_short"
    COMPROMISED = "compromised"
    DOWNSTREAM_UNAVAILABLE = "downstream_unavailable"


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    reason: Optional[PolicyRejection] = None
    message: Optional[str] = None


def verify_otp_code(submitted: str, stored: str) -> bool:
    if not submitted or not stored:
        return False
    return hmac.compare_digest(submitted.strip().encode(), stored.encode())


def generate_totp(
    secret: str,
    timestamp: float,
    *,
    time_step_seconds: int = 30,
    digits: int = TOTP_DIGITS,
) -> str:
    """RFC 6238 code for ``timestamp``; empty string for an undecodable secret."""
    return _hotp(secret, int(timestamp // time_step_seconds), digits=digits)


def _hotp(secret: str, counter: int, *, digits: int = TOTP_DIGITS) -> str:
    normalized = secret.replace(" ", "").upper()
    padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    digest = hmac.new(key, counter.to_bytes(8, "big"), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def new_totp_secret() -> str:
    return base64.b32encode(secrets.token_bytes(20)).decode().rstrip("=")


def provisioning_uri(secret: str, account: str, *, issuer: str = "ticketgate") -> str:
    label = quote(f"{issuer}:{account}")
    params = urlencode({"secret": secret, "issuer": issuer, "digits": TOTP_DIGITS})
    return f"otpauth://totp/{label}?{params}"


class CredentialValidator:
    """Password policy, password hashing and TOTP checks."""

    def __init__(
        self,
        settings: Settings,
        *,
        step_store: TotpStepStore,
        breach_checker: Optional[BreachChecker] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.step_store = step_store
        self.breach_checker = breach_checker
        self._clock = clock or utcnow
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    async def check_password_policy(
        self,
        password: Optional[str],
        min_length: Optional[int] = None,
        breach_check_enabled: Optional[bool] = None,
    ) -> ValidationResult:
        if not password:
            return ValidationResult(False, PolicyRejection.MISSING, "Password is not set")
        required = min_length if min_length is not None else self.settings.min_password_length
        if len(password) < required:
            return ValidationResult(
                False,
                PolicyRejection.TOO_SHORT,
                f"Password is too short, it must be at least {required} characters",
            )
        check_breach = (
            self.settings.breach_check_enabled
            if breach_check_enabled is None
            else breach_check_enabled
        )
        if not check_breach or self.breach_checker is None:
            return ValidationResult(True)
        try:
            compromised = await call_with_timeout(
                self.breach_checker.is_compromised(password),
                timeout=self.settings.outbound_timeout_seconds,
                collaborator="breach_lookup",
            )
        except DownstreamUnavailableError:
            if self.settings.breach_check_fail_open:
                self.logger.warning("breach_lookup_unavailable_fail_open")
                return ValidationResult(True)
            return ValidationResult(
                False,
                PolicyRejection.DOWNSTREAM_UNAVAILABLE,
                "Password could not be checked, try again later",
            )
        if compromised:
            return ValidationResult(
                False, PolicyRejection.COMPROMISED, "Password is too weak (it has been pwned)"
            )
        return ValidationResult(True)

    async def enforce_password_policy(
        self,
        password: Optional[str],
        min_length: Optional[int] = None,
        breach_check_enabled: Optional[bool] = None,
    ) -> None:
        result = await self.check_password_policy(password, min_length, breach_check_enabled)
        if result.ok:
            return
        error_cls: type[ServiceError] = (
            DownstreamUnavailableError
            if result.reason is PolicyRejection.DOWNSTREAM_UNAVAILABLE
            else ValidationError
        )
        raise error_cls(result.message or "invalid password", detail={"reason": result.reason.value})

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password_hash: Optional[str], password: str) -> bool:
        if not password_hash or not password:
            return False
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unusable")
            return False

    async def verify_totp(
        self,
        code: str,
        secret: str,
        time_step_seconds: Optional[int] = None,
        window: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Check a TOTP code and claim its time step so it cannot be replayed."""
        if not code or not secret:
            return False
        submitted = code.strip().encode("utf-8")
        interval = time_step_seconds or self.settings.totp_time_step_seconds
        skew = self.settings.totp_window if window is None else window
        current = int((now or self._now()).timestamp() // interval)
        matched_step: Optional[int] = None
        for step in range(current - skew, current + skew + 1):
            generated = _hotp(secret, step)
            if not generated:
                return False
            if hmac.compare_digest(generated.encode("utf-8"), submitted):
                matched_step = step
                break
        if matched_step is None:
            return False
        replay_key = hashlib.sha256(secret.encode()).hexdigest()
        claimed = await self.step_store.claim_totp_step(
            replay_key, matched_step, interval * (2 * skew + 2)
        )
        if not claimed:
            self.logger.warning("totp_replay_rejected")
            return False
        return True


__all__ = [
    "CredentialValidator",
    "PolicyRejection",
    "ValidationResult",
    "generate_totp",
    "new_totp_secret",
    "provisioning_uri",
    "verify_otp_code",
]
