from __future__ import annotations

import base64
import hashlib
import json
import os
import secrets
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from ticketgate.logging import get_logger
from ticketgate.storage.errors import ConstraintViolation
from ticketgate.storage.models import (
    OtpCode,
    RefreshToken,
    Ticket,
    TicketKind,
    User,
    UserAuthProvider,
    utcnow,
)

_UPDATABLE_USER_FIELDS = {
    "email",
    "new_email",
    "password_hash",
    "locale",
    "disabled",
    "mfa_secret",
    "mfa_enabled",
    "phone_number",
    "display_name",
    "is_anonymous",
    "email_verified",
    "default_role",
    "meta",
}


class MemoryStore:
    """In-process user repository and ticket store backed by a JSON state file.

    All reads and writes go through one re-entrant lock, so the ``pop_*``
    methods are compare-and-clear operations: for a given key exactly one
    caller gets the record back.
    """

    def __init__(
        self, fs_root: str = "/tmp/ticketgate", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.providers: List[UserAuthProvider] = []
        self.tickets: Dict[str, Ticket] = {}
        # (owner_user_id, kind) -> ticket value
        self.ticket_owners: Dict[tuple[str, str], str] = {}
        self.otp_codes: Dict[str, OtpCode] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # replay key -> (last accepted step, expires_at)
        self.totp_steps: Dict[str, tuple[int, datetime]] = {}
        # phone number -> (code, wrong submissions)
        self.otp_failures: Dict[str, tuple[str, int]] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "ticketgate_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("MFA_ENCRYPTION_KEY") or os.getenv("JWT_SECRET")
        if not material:
            key_path = self.fs_root / ".mfa_key"
            try:
                if key_path.exists():
                    material = key_path.read_text().strip()
                if not material:
                    material = secrets.token_urlsafe(64)
                    key_path.write_text(material)
                    os.chmod(key_path, 0o600)
            except OSError as exc:
                raise RuntimeError("Unable to persist MFA encryption key") from exc
        return Fernet(self._derive_cipher_key(material))

    # users
    def create_user(
        self,
        email: Optional[str] = None,
        *,
        phone_number: Optional[str] = None,
        password_hash: Optional[str] = None,
        display_name: Optional[str] = None,
        locale: str = "en",
        is_anonymous: bool = False,
        disabled: bool = False,
        email_verified: bool = False,
        default_role: str = "user",
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if email and self.get_user_by_email(email):
                raise ConstraintViolation("email")
            if phone_number and self.get_user_by_phone(phone_number):
                raise ConstraintViolation("phone_number")
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                phone_number=phone_number,
                password_hash=password_hash,
                display_name=display_name,
                locale=locale,
                is_anonymous=is_anonymous,
                disabled=disabled,
                email_verified=email_verified,
                default_role=default_role,
                meta=dict(meta) if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.email and u.email.lower() == normalized
                ),
                None,
            )

    def get_user_by_phone(self, phone_number: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.phone_number == phone_number),
                None,
            )

    def get_user_by_ticket(self, value: str) -> Optional[User]:
        """Owner of a live ticket held by this store (expiry is not checked here)."""
        with self._data_lock:
            ticket = self.tickets.get(value)
            if not ticket:
                return None
            return self.users.get(ticket.owner_user_id)

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {', '.join(sorted(unknown))}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            email = fields.get("email")
            if email:
                existing = self.get_user_by_email(email)
                if existing and existing.id != user_id:
                    raise ConstraintViolation("email")
            phone = fields.get("phone_number")
            if phone:
                existing = self.get_user_by_phone(phone)
                if existing and existing.id != user_id:
                    raise ConstraintViolation("phone_number")
            for name, value in fields.items():
                setattr(user, name, value)
            self._persist_state()
            return user

    def link_user_auth_provider(
        self, user_id: str, provider: str, provider_uid: str
    ) -> None:
        with self._data_lock:
            for existing in self.providers:
                if existing.provider == provider and existing.provider_uid == provider_uid:
                    return
            self.providers.append(
                UserAuthProvider(user_id=user_id, provider=provider, provider_uid=provider_uid)
            )
            self._persist_state()

    def get_user_by_provider(self, provider: str, provider_uid: str) -> Optional[User]:
        with self._data_lock:
            for mapping in self.providers:
                if mapping.provider == provider and mapping.provider_uid == provider_uid:
                    return self.users.get(mapping.user_id)
            return None

    # tickets
    async def save_ticket(self, ticket: Ticket) -> None:
        with self._data_lock:
            owner_key = (ticket.owner_user_id, ticket.kind.value)
            previous = self.ticket_owners.get(owner_key)
            if previous:
                self.tickets.pop(previous, None)
            self.tickets[ticket.value] = ticket
            self.ticket_owners[owner_key] = ticket.value
            self._persist_state()

    async def get_ticket(self, value: str) -> Optional[Ticket]:
        with self._data_lock:
            return self.tickets.get(value)

    async def pop_ticket(self, value: str) -> Optional[Ticket]:
        with self._data_lock:
            ticket = self.tickets.pop(value, None)
            if ticket is None:
                return None
            owner_key = (ticket.owner_user_id, ticket.kind.value)
            if self.ticket_owners.get(owner_key) == value:
                self.ticket_owners.pop(owner_key, None)
            self._persist_state()
            return ticket

    # otp codes
    async def save_otp(self, otp: OtpCode) -> None:
        with self._data_lock:
            self.otp_codes[otp.phone_number] = otp
            self.otp_failures.pop(otp.phone_number, None)
            self._persist_state()

    async def get_otp(self, phone_number: str) -> Optional[OtpCode]:
        with self._data_lock:
            return self.otp_codes.get(phone_number)

    async def pop_otp(self, phone_number: str, code: str) -> Optional[OtpCode]:
        with self._data_lock:
            current = self.otp_codes.get(phone_number)
            if current is None or current.code != code:
                return None
            self.otp_codes.pop(phone_number, None)
            self.otp_failures.pop(phone_number, None)
            self._persist_state()
            return current

    async def record_otp_failure(self, phone_number: str, code: str, ttl_seconds: int) -> int:
        with self._data_lock:
            previous_code, count = self.otp_failures.get(phone_number, (code, 0))
            count = count + 1 if previous_code == code else 1
            self.otp_failures[phone_number] = (code, count)
            return count

    # refresh tokens
    async def save_refresh_token(self, refresh_token: RefreshToken) -> None:
        with self._data_lock:
            self.refresh_tokens[refresh_token.token] = refresh_token
            self._persist_state()

    async def pop_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.pop(token, None)
            if record is not None:
                self._persist_state()
            return record

    async def delete_refresh_token(self, token: str) -> None:
        with self._data_lock:
            if self.refresh_tokens.pop(token, None) is not None:
                self._persist_state()

    # totp replay guard
    async def claim_totp_step(self, key: str, step: int, ttl_seconds: int) -> bool:
        now = utcnow()
        with self._data_lock:
            current = self.totp_steps.get(key)
            if current and current[1] > now and step <= current[0]:
                return False
            expires_at = datetime.fromtimestamp(now.timestamp() + ttl_seconds, now.tzinfo)
            self.totp_steps[key] = (step, expires_at)
            self._persist_state()
            return True

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Drop expired tickets, codes, refresh tokens and replay markers."""
        now = now or utcnow()
        with self._data_lock:
            expired_tickets = [v for v, t in self.tickets.items() if t.is_expired(now)]
            for value in expired_tickets:
                ticket = self.tickets.pop(value)
                owner_key = (ticket.owner_user_id, ticket.kind.value)
                if self.ticket_owners.get(owner_key) == value:
                    self.ticket_owners.pop(owner_key, None)
            expired_otps = [p for p, o in self.otp_codes.items() if o.is_expired(now)]
            for phone in expired_otps:
                self.otp_codes.pop(phone, None)
                self.otp_failures.pop(phone, None)
            expired_refresh = [
                t for t, r in self.refresh_tokens.items() if r.is_expired(now)
            ]
            for token in expired_refresh:
                self.refresh_tokens.pop(token, None)
            expired_steps = [k for k, (_, exp) in self.totp_steps.items() if exp <= now]
            for key in expired_steps:
                self.totp_steps.pop(key, None)
            purged = (
                len(expired_tickets)
                + len(expired_otps)
                + len(expired_refresh)
                + len(expired_steps)
            )
            if purged:
                self._persist_state()
                self.logger.debug(
                    "store_purged",
                    tickets=len(expired_tickets),
                    otp_codes=len(expired_otps),
                    refresh_tokens=len(expired_refresh),
                    totp_steps=len(expired_steps),
                )
            return purged

    # persistence
    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _encrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return None

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "providers": [
                {
                    "user_id": p.user_id,
                    "provider": p.provider,
                    "provider_uid": p.provider_uid,
                    "created_at": self._serialize_datetime(p.created_at),
                }
                for p in self.providers
            ],
            "tickets": [
                {
                    "kind": t.kind.value,
                    "value": t.value,
                    "owner_user_id": t.owner_user_id,
                    "expires_at": self._serialize_datetime(t.expires_at),
                }
                for t in self.tickets.values()
            ],
            "otp_codes": [
                {
                    "code": o.code,
                    "phone_number": o.phone_number,
                    "expires_at": self._serialize_datetime(o.expires_at),
                }
                for o in self.otp_codes.values()
            ],
            "refresh_tokens": [
                {
                    "token": r.token,
                    "user_id": r.user_id,
                    "expires_at": self._serialize_datetime(r.expires_at),
                    "created_at": self._serialize_datetime(r.created_at),
                }
                for r in self.refresh_tokens.values()
            ],
            "totp_steps": [
                {"key": key, "step": step, "expires_at": self._serialize_datetime(exp)}
                for key, (step, exp) in self.totp_steps.items()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.providers = [
            UserAuthProvider(
                user_id=p["user_id"],
                provider=p["provider"],
                provider_uid=p["provider_uid"],
                created_at=self._deserialize_datetime(p["created_at"]),
            )
            for p in data.get("providers", [])
        ]
        self.tickets = {}
        self.ticket_owners = {}
        for raw in data.get("tickets", []):
            ticket = Ticket(
                kind=TicketKind(raw["kind"]),
                value=raw["value"],
                owner_user_id=raw["owner_user_id"],
                expires_at=self._deserialize_datetime(raw["expires_at"]),
            )
            self.tickets[ticket.value] = ticket
            self.ticket_owners[(ticket.owner_user_id, ticket.kind.value)] = ticket.value
        self.otp_codes = {
            raw["phone_number"]: OtpCode(
                code=raw["code"],
                phone_number=raw["phone_number"],
                expires_at=self._deserialize_datetime(raw["expires_at"]),
            )
            for raw in data.get("otp_codes", [])
        }
        self.refresh_tokens = {
            raw["token"]: RefreshToken(
                token=raw["token"],
                user_id=raw["user_id"],
                expires_at=self._deserialize_datetime(raw["expires_at"]),
                created_at=self._deserialize_datetime(raw["created_at"]),
            )
            for raw in data.get("refresh_tokens", [])
        }
        self.totp_steps = {
            raw["key"]: (int(raw["step"]), self._deserialize_datetime(raw["expires_at"]))
            for raw in data.get("totp_steps", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "new_email": user.new_email,
            "password_hash": user.password_hash,
            "locale": user.locale,
            "disabled": user.disabled,
            "mfa_secret": self._encrypt_mfa_secret(user.mfa_secret),
            "mfa_enabled": user.mfa_enabled,
            "phone_number": user.phone_number,
            "display_name": user.display_name,
            "is_anonymous": user.is_anonymous,
            "email_verified": user.email_verified,
            "default_role": user.default_role,
            "created_at": self._serialize_datetime(user.created_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data.get("email"),
            new_email=data.get("new_email"),
            password_hash=data.get("password_hash"),
            locale=data.get("locale", "en"),
            disabled=data.get("disabled", False),
            mfa_secret=self._decrypt_mfa_secret(data.get("mfa_secret")),
            mfa_enabled=data.get("mfa_enabled", False),
            phone_number=data.get("phone_number"),
            display_name=data.get("display_name"),
            is_anonymous=data.get("is_anonymous", False),
            email_verified=data.get("email_verified", False),
            default_role=data.get("default_role", "user"),
            created_at=self._deserialize_datetime(data["created_at"]),
            meta=data.get("meta"),
        )
