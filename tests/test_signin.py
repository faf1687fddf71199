"""Tests for the sign-in dispatcher pipelines and the MFA gate."""

import pytest

from ticketgate.service.credentials import generate_totp, new_totp_secret
from ticketgate.service.errors import (
    AuthenticationError,
    DisabledUserError,
    DownstreamUnavailableError,
    FeatureDisabledError,
    NotFoundError,
    ValidationError,
)
from ticketgate.service.signin import (
    AnonymousSignIn,
    EmailPasswordSignIn,
    MfaTotpSignIn,
    OtpSignIn,
    PasswordlessEmailSignIn,
    PasswordlessSmsSignIn,
    ProviderSignIn,
    SignInDispatcher,
    SignInState,
)
from ticketgate.storage.models import TicketKind, UserIdentity

from conftest import BrokenStore, RecordingEmailSender

PHONE = "+15551234567"


@pytest.fixture
def password_user(memory_store, credentials):
    return memory_store.create_user(
        "alice@example.com",
        password_hash=credentials.hash_password("correct horse battery"),
        email_verified=True,
    )


@pytest.fixture
def mfa_user(memory_store, credentials):
    user = memory_store.create_user(
        "mfa@example.com",
        password_hash=credentials.hash_password("correct horse battery"),
    )
    memory_store.update_user(user.id, mfa_enabled=True, mfa_secret=new_totp_secret())
    return user


class TestEmailPassword:
    async def test_success_issues_session(self, dispatcher, password_user):
        result = await dispatcher.dispatch(
            EmailPasswordSignIn("Alice@Example.com", "correct horse battery")
        )
        assert result.state is SignInState.AUTHENTICATED_FULL
        assert result.session.user.id == password_user.id
        assert result.mfa_ticket is None

    async def test_wrong_password(self, dispatcher, password_user):
        with pytest.raises(AuthenticationError):
            await dispatcher.dispatch(EmailPasswordSignIn("alice@example.com", "nope"))

    async def test_unknown_email(self, dispatcher):
        with pytest.raises(AuthenticationError):
            await dispatcher.dispatch(EmailPasswordSignIn("ghost@example.com", "whatever1"))

    async def test_disabled_user(self, dispatcher, memory_store, password_user):
        memory_store.update_user(password_user.id, disabled=True)
        with pytest.raises(DisabledUserError):
            await dispatcher.dispatch(
                EmailPasswordSignIn("alice@example.com", "correct horse battery")
            )

    async def test_feature_flag(self, dispatcher, settings, password_user):
        dispatcher.settings = settings.model_copy(update={"email_password_enabled": False})
        with pytest.raises(FeatureDisabledError):
            await dispatcher.dispatch(
                EmailPasswordSignIn("alice@example.com", "correct horse battery")
            )

    async def test_unverified_email_when_required(self, dispatcher, settings, memory_store, credentials):
        memory_store.create_user(
            "new@example.com", password_hash=credentials.hash_password("correct horse battery")
        )
        dispatcher.settings = settings.model_copy(update={"email_verification_required": True})
        with pytest.raises(AuthenticationError) as exc_info:
            await dispatcher.dispatch(
                EmailPasswordSignIn("new@example.com", "correct horse battery")
            )
        assert exc_info.value.error_code == "unverified_user"


class TestMfaGate:
    async def test_first_factor_yields_ticket_then_totp_session(self, dispatcher, mfa_user, clock):
        first = await dispatcher.dispatch(
            EmailPasswordSignIn("mfa@example.com", "correct horse battery")
        )
        assert first.state is SignInState.AUTHENTICATED_FIRST_FACTOR
        assert first.session is None
        assert first.mfa_ticket.startswith("mfaTotp:")

        code = generate_totp(mfa_user.mfa_secret, clock.now.timestamp())
        second = await dispatcher.dispatch(MfaTotpSignIn(first.mfa_ticket, code))
        assert second.state is SignInState.AUTHENTICATED_FULL
        assert second.session.user.id == mfa_user.id

    async def test_ticket_spent_even_when_code_is_wrong(self, dispatcher, mfa_user, clock):
        first = await dispatcher.dispatch(
            EmailPasswordSignIn("mfa@example.com", "correct horse battery")
        )
        with pytest.raises(AuthenticationError):
            await dispatcher.dispatch(MfaTotpSignIn(first.mfa_ticket, "000000x"))
        code = generate_totp(mfa_user.mfa_secret, clock.now.timestamp())
        with pytest.raises(NotFoundError):
            await dispatcher.dispatch(MfaTotpSignIn(first.mfa_ticket, code))

    async def test_fullwidth_digits_are_a_wrong_code(self, dispatcher, mfa_user):
        first = await dispatcher.dispatch(
            EmailPasswordSignIn("mfa@example.com", "correct horse battery")
        )
        with pytest.raises(AuthenticationError):
            await dispatcher.dispatch(MfaTotpSignIn(first.mfa_ticket, "１２３４５６"))

    async def test_other_ticket_kinds_rejected(self, dispatcher, ticket_manager, mfa_user, clock):
        ticket = await ticket_manager.issue(TicketKind.PASSWORDLESS_EMAIL, mfa_user.id, 60)
        code = generate_totp(mfa_user.mfa_secret, clock.now.timestamp())
        with pytest.raises(NotFoundError):
            await dispatcher.dispatch(MfaTotpSignIn(ticket.value, code))

    async def test_otp_pipeline_is_gated(self, dispatcher, memory_store, sms_sender):
        user = memory_store.create_user(phone_number=PHONE)
        memory_store.update_user(user.id, mfa_enabled=True, mfa_secret=new_totp_secret())
        await dispatcher.dispatch(PasswordlessSmsSignIn(PHONE))
        result = await dispatcher.dispatch(OtpSignIn(PHONE, memory_store.otp_codes[PHONE].code))
        assert result.state is SignInState.AUTHENTICATED_FIRST_FACTOR
        assert result.session is None

    async def test_magic_link_is_gated(self, dispatcher, ticket_manager, mfa_user):
        ticket = await ticket_manager.issue(TicketKind.PASSWORDLESS_EMAIL, mfa_user.id, 60)
        result = await dispatcher.complete_passwordless_email(ticket.value)
        assert result.state is SignInState.AUTHENTICATED_FIRST_FACTOR
        assert result.session is None

    async def test_mfa_disabled(self, dispatcher, settings):
        dispatcher.settings = settings.model_copy(update={"mfa_enabled": False})
        with pytest.raises(FeatureDisabledError):
            await dispatcher.dispatch(MfaTotpSignIn("mfaTotp:abc", "123456"))


class TestAnonymous:
    async def test_creates_anonymous_user(self, dispatcher, memory_store):
        result = await dispatcher.dispatch(AnonymousSignIn(display_name="Guest", locale="fr"))
        assert result.state is SignInState.AUTHENTICATED_FULL
        user = memory_store.get_user(result.session.user.id)
        assert user.is_anonymous
        assert user.locale == "fr"

    async def test_flag_off(self, dispatcher, settings):
        dispatcher.settings = settings.model_copy(update={"anonymous_users_enabled": False})
        with pytest.raises(FeatureDisabledError) as exc_info:
            await dispatcher.dispatch(AnonymousSignIn())
        assert exc_info.value.status_code == 404


class TestPasswordlessEmail:
    async def test_link_sent_and_completes(self, dispatcher, email_sender, memory_store):
        result = await dispatcher.dispatch(PasswordlessEmailSignIn("link@example.com"))
        assert result.state is SignInState.PENDING_VERIFICATION
        assert result.sent
        message = email_sender.sent[-1]
        assert message["template"] == "signin-passwordless"
        assert message["destination"] == "link@example.com"
        ticket = message["headers"]["x-ticket"]

        completed = await dispatcher.complete_passwordless_email(ticket)
        assert completed.state is SignInState.AUTHENTICATED_FULL
        assert memory_store.get_user_by_email("link@example.com").email_verified
        with pytest.raises(NotFoundError):
            await dispatcher.complete_passwordless_email(ticket)

    async def test_disallowed_redirect(self, dispatcher):
        with pytest.raises(ValidationError):
            await dispatcher.dispatch(
                PasswordlessEmailSignIn("link@example.com", redirect_to="https://evil.test/")
            )

    async def test_unknown_address_without_signup_is_uniform(self, dispatcher, settings, email_sender):
        dispatcher.settings = settings.model_copy(update={"passwordless_auto_signup": False})
        result = await dispatcher.dispatch(PasswordlessEmailSignIn("ghost@example.com"))
        assert result.sent
        assert email_sender.sent == []

    async def test_disabled_user_gets_uniform_response(self, dispatcher, memory_store, email_sender):
        user = memory_store.create_user("off@example.com", disabled=True)
        result = await dispatcher.dispatch(PasswordlessEmailSignIn("off@example.com"))
        assert result.sent
        assert email_sender.sent == []
        assert not any(t.owner_user_id == user.id for t in memory_store.tickets.values())

    async def test_delivery_failure(
        self, settings, memory_store, ticket_manager, credentials, session_issuer, sms_sender
    ):
        failing = SignInDispatcher(
            settings,
            memory_store,
            ticket_manager,
            credentials,
            session_issuer,
            email_sender=RecordingEmailSender(fail_with=OSError("smtp down")),
            sms_sender=sms_sender,
        )
        with pytest.raises(DownstreamUnavailableError):
            await failing.dispatch(PasswordlessEmailSignIn("link@example.com"))


class TestPasswordlessSms:
    async def test_otp_round_trip(self, dispatcher, sms_sender, memory_store, clock):
        result = await dispatcher.dispatch(PasswordlessSmsSignIn(PHONE))
        assert result.sent
        phone, message = sms_sender.sent[-1]
        assert phone == PHONE
        otp = memory_store.otp_codes[PHONE]
        assert (otp.expires_at - clock.now).total_seconds() == 300
        assert otp.code in message

        session = await dispatcher.dispatch(OtpSignIn(PHONE, otp.code))
        assert session.state is SignInState.AUTHENTICATED_FULL
        assert session.session.user.phone_number == PHONE
        with pytest.raises(NotFoundError):
            await dispatcher.dispatch(OtpSignIn(PHONE, otp.code))

    async def test_disabled_user_gets_no_code(self, dispatcher, memory_store, sms_sender):
        memory_store.create_user(phone_number=PHONE, disabled=True)
        result = await dispatcher.dispatch(PasswordlessSmsSignIn(PHONE))
        assert result.sent
        assert sms_sender.sent == []
        assert PHONE not in memory_store.otp_codes

    async def test_disabled_after_code_issued(self, dispatcher, memory_store):
        await dispatcher.dispatch(PasswordlessSmsSignIn(PHONE))
        user = memory_store.get_user_by_phone(PHONE)
        memory_store.update_user(user.id, disabled=True)
        with pytest.raises(DisabledUserError):
            await dispatcher.dispatch(OtpSignIn(PHONE, memory_store.otp_codes[PHONE].code))

    async def test_flag_off(self, dispatcher, settings):
        dispatcher.settings = settings.model_copy(update={"passwordless_sms_enabled": False})
        with pytest.raises(FeatureDisabledError):
            await dispatcher.dispatch(PasswordlessSmsSignIn(PHONE))


class TestProvider:
    async def test_creates_and_links_user(self, dispatcher, identity_resolver, memory_store):
        identity_resolver.identities[("github", "code-1")] = UserIdentity(
            provider="github", provider_uid="42", email="octo@example.com", display_name="Octo"
        )
        result = await dispatcher.dispatch(ProviderSignIn("github", "code-1"))
        assert result.state is SignInState.AUTHENTICATED_FULL
        linked = memory_store.get_user_by_provider("github", "42")
        assert linked.id == result.session.user.id
        assert linked.email_verified

    async def test_links_existing_email(self, dispatcher, identity_resolver, password_user):
        identity_resolver.identities[("google", "code-2")] = UserIdentity(
            provider="google", provider_uid="g-1", email="alice@example.com"
        )
        result = await dispatcher.dispatch(ProviderSignIn("google", "code-2"))
        assert result.session.user.id == password_user.id

    async def test_rejected_code(self, dispatcher):
        with pytest.raises(AuthenticationError):
            await dispatcher.dispatch(ProviderSignIn("github", "bad"))

    async def test_provider_not_enabled(self, dispatcher, settings):
        dispatcher.settings = settings.model_copy(update={"test_mode": False})
        with pytest.raises(FeatureDisabledError):
            await dispatcher.dispatch(ProviderSignIn("github", "code-1"))


class TestDispatch:
    async def test_unknown_request_type(self, dispatcher):
        with pytest.raises(ValidationError):
            await dispatcher.dispatch(object())

    async def test_disabled_user_never_receives_session(
        self, dispatcher, memory_store, credentials, identity_resolver, clock
    ):
        """Every session-producing method refuses a disabled user."""
        user = memory_store.create_user(
            "blocked@example.com",
            phone_number=PHONE,
            password_hash=credentials.hash_password("correct horse battery"),
        )
        identity_resolver.identities[("github", "c")] = UserIdentity(
            provider="github", provider_uid="blocked", email="blocked@example.com"
        )
        memory_store.link_user_auth_provider(user.id, "github", "blocked")
        otp = await dispatcher.tickets.issue_otp(PHONE)
        link = await dispatcher.tickets.issue(TicketKind.PASSWORDLESS_EMAIL, user.id, 60)
        memory_store.update_user(user.id, disabled=True)

        attempts = [
            dispatcher.dispatch(EmailPasswordSignIn("blocked@example.com", "correct horse battery")),
            dispatcher.dispatch(OtpSignIn(PHONE, otp.code)),
            dispatcher.dispatch(ProviderSignIn("github", "c")),
            dispatcher.complete_passwordless_email(link.value),
        ]
        for attempt in attempts:
            with pytest.raises(DisabledUserError):
                await attempt
        assert memory_store.refresh_tokens == {}


class TestStoreFailureAfterConsume:
    async def test_otp_spent_when_session_store_fails(
        self, dispatcher, session_issuer, memory_store
    ):
        memory_store.create_user(phone_number=PHONE)
        await dispatcher.dispatch(PasswordlessSmsSignIn(PHONE))
        code = memory_store.otp_codes[PHONE].code
        session_issuer.store = BrokenStore(memory_store, "save_refresh_token")

        with pytest.raises(DownstreamUnavailableError) as exc_info:
            await dispatcher.dispatch(OtpSignIn(PHONE, code))
        assert exc_info.value.error_code == "downstream_unavailable"
        assert exc_info.value.detail == {"collaborator": "session_store"}

        session_issuer.store = memory_store
        assert await memory_store.get_otp(PHONE) is None
        with pytest.raises(NotFoundError):
            await dispatcher.dispatch(OtpSignIn(PHONE, code))

    async def test_mfa_ticket_spent_when_session_store_fails(
        self, dispatcher, session_issuer, memory_store, mfa_user, clock
    ):
        first = await dispatcher.dispatch(
            EmailPasswordSignIn("mfa@example.com", "correct horse battery")
        )
        session_issuer.store = BrokenStore(memory_store, "save_refresh_token")
        code = generate_totp(mfa_user.mfa_secret, clock.now.timestamp())

        with pytest.raises(DownstreamUnavailableError):
            await dispatcher.dispatch(MfaTotpSignIn(first.mfa_ticket, code))

        session_issuer.store = memory_store
        assert await memory_store.get_ticket(first.mfa_ticket) is None
        with pytest.raises(NotFoundError):
            await dispatcher.dispatch(MfaTotpSignIn(first.mfa_ticket, code))

    async def test_mfa_ticket_issue_failure_after_otp(
        self, dispatcher, ticket_manager, memory_store
    ):
        user = memory_store.create_user(phone_number=PHONE)
        memory_store.update_user(user.id, mfa_enabled=True, mfa_secret=new_totp_secret())
        await dispatcher.dispatch(PasswordlessSmsSignIn(PHONE))
        code = memory_store.otp_codes[PHONE].code
        ticket_manager.store = BrokenStore(memory_store, "save_ticket", error=RuntimeError("disk full"))

        with pytest.raises(DownstreamUnavailableError) as exc_info:
            await dispatcher.dispatch(OtpSignIn(PHONE, code))
        assert exc_info.value.detail == {"collaborator": "ticket_store"}
        assert await memory_store.get_otp(PHONE) is None
