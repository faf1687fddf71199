from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from ticketgate.config import Settings, StoreBackend, get_settings, reset_settings_cache
from ticketgate.logging import get_logger
from ticketgate.service.account import AccountService
from ticketgate.service.breach import PwnedPasswordsClient
from ticketgate.service.credentials import CredentialValidator
from ticketgate.service.email import EmailService
from ticketgate.service.providers import OAuthProviderResolver
from ticketgate.service.sessions import SessionIssuer
from ticketgate.service.signin import SignInDispatcher
from ticketgate.service.sms import SmsService
from ticketgate.service.tickets import TicketManager
from ticketgate.storage.memory import MemoryStore
from ticketgate.storage.redis_cache import RedisTicketStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """redis://:secret@host:6379 -> redis://:***@host:6379"""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            store_backend=self.settings.store_backend.value,
            test_mode=self.settings.test_mode,
        )

        self.store = MemoryStore(
            fs_root=self.settings.shared_fs_root,
            mfa_encryption_key=self.settings.mfa_encryption_key,
        )
        self.ticket_store: MemoryStore | RedisTicketStore = self.store
        if self.settings.store_backend is StoreBackend.REDIS:
            redis_store = RedisTicketStore(
                self.settings.redis_url,
                socket_timeout=self.settings.outbound_timeout_seconds,
            )
            try:
                redis_store.verify_connection()
            except Exception as exc:
                logger.error(
                    "runtime_redis_unavailable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
                raise RuntimeError(
                    "Redis is required when STORE_BACKEND=redis; start Redis or use STORE_BACKEND=memory"
                ) from exc
            self.ticket_store = redis_store

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            timeout=self.settings.outbound_timeout_seconds,
        )
        self.sms = SmsService(
            api_url=self.settings.sms_api_url,
            account_sid=self.settings.sms_account_sid,
            auth_token=self.settings.sms_auth_token,
            from_number=self.settings.sms_from_number,
            timeout=self.settings.outbound_timeout_seconds,
        )
        self.breach = PwnedPasswordsClient(
            self.settings.breach_api_url, timeout=self.settings.outbound_timeout_seconds
        )
        self.providers = OAuthProviderResolver(self.settings)

        self.tickets = TicketManager(self.store, self.ticket_store, self.settings)
        self.credentials = CredentialValidator(
            self.settings, step_store=self.ticket_store, breach_checker=self.breach
        )
        self.sessions = SessionIssuer(self.store, self.ticket_store, self.settings)
        self.signin = SignInDispatcher(
            self.settings,
            self.store,
            self.tickets,
            self.credentials,
            self.sessions,
            email_sender=self.email,
            sms_sender=self.sms,
            identity_resolver=self.providers,
        )
        self.account = AccountService(
            self.settings,
            self.store,
            self.tickets,
            self.signin,
            email_sender=self.email,
        )
        logger.info(
            "runtime_initialized",
            store_backend=self.settings.store_backend.value,
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
            providers=sorted(self.settings.configured_providers),
        )

    async def close(self) -> None:
        if isinstance(self.ticket_store, RedisTicketStore):
            await self.ticket_store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
