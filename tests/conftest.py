import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="ticketgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ticketgate.config import Settings  # noqa: E402
from ticketgate.service.credentials import CredentialValidator  # noqa: E402
from ticketgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from ticketgate.service.sessions import SessionIssuer  # noqa: E402
from ticketgate.service.signin import SignInDispatcher  # noqa: E402
from ticketgate.service.tickets import TicketManager  # noqa: E402
from ticketgate.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Settable UTC clock handed to services in place of utcnow."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingEmailSender:
    def __init__(self, fail_with: Exception | None = None):
        self.sent: list[dict] = []
        self.fail_with = fail_with

    async def send(self, template, locals, destination, headers=None):
        if self.fail_with:
            raise self.fail_with
        self.sent.append(
            {
                "template": template,
                "locals": dict(locals),
                "destination": destination,
                "headers": dict(headers or {}),
            }
        )


class RecordingSmsSender:
    def __init__(self):
        self.sent: list[tuple[str, str]] = []

    async def send(self, phone_number, message):
        self.sent.append((phone_number, message))


class FakeBreachChecker:
    def __init__(self, compromised: bool = False, delay: float = 0.0, error: Exception | None = None):
        self.compromised = compromised
        self.delay = delay
        self.error = error
        self.calls: list[str] = []

    async def is_compromised(self, password):
        self.calls.append(password)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.compromised


class FakeIdentityResolver:
    def __init__(self):
        self.identities = {}

    async def resolve_identity(self, provider, code):
        from ticketgate.service.errors import AuthenticationError

        identity = self.identities.get((provider, code))
        if identity is None:
            raise AuthenticationError("authorization code rejected")
        return identity


class BrokenStore:
    """Wraps a store and fails the named operations with ``error``."""

    def __init__(self, inner, *failing, error=None):
        from redis.exceptions import ConnectionError as RedisConnectionError

        self._inner = inner
        self._failing = set(failing)
        self._error = error or RedisConnectionError("connection refused")

    def __getattr__(self, name):
        if name in self._failing:
            async def fail(*args, **kwargs):
                raise self._error

            return fail
        return getattr(self._inner, name)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        anonymous_users_enabled=True,
        passwordless_email_enabled=True,
        passwordless_sms_enabled=True,
        test_mode=True,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="test-mfa-key")


@pytest.fixture
def ticket_manager(memory_store, settings, clock):
    return TicketManager(memory_store, memory_store, settings, clock=clock)


@pytest.fixture
def breach_checker():
    return FakeBreachChecker()


@pytest.fixture
def credentials(memory_store, settings, clock, breach_checker):
    return CredentialValidator(
        settings, step_store=memory_store, breach_checker=breach_checker, clock=clock
    )


@pytest.fixture
def session_issuer(memory_store, settings, clock):
    return SessionIssuer(memory_store, memory_store, settings, clock=clock)


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def sms_sender():
    return RecordingSmsSender()


@pytest.fixture
def identity_resolver():
    return FakeIdentityResolver()


@pytest.fixture
def dispatcher(
    settings,
    memory_store,
    ticket_manager,
    credentials,
    session_issuer,
    email_sender,
    sms_sender,
    identity_resolver,
    clock,
):
    return SignInDispatcher(
        settings,
        memory_store,
        ticket_manager,
        credentials,
        session_issuer,
        email_sender=email_sender,
        sms_sender=sms_sender,
        identity_resolver=identity_resolver,
        clock=clock,
    )


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None
