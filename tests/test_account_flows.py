"""Email verification and password reset flows."""

import asyncio
from datetime import timedelta

import pytest

from authcore.config import Settings
from authcore.service import opaque
from authcore.service.account_flows import AccountFlows
from authcore.service.errors import (
    InternalError,
    InvalidOrExpiredToken,
    InvalidToken,
    MalformedToken,
    NotFound,
)
from authcore.service.refresh_tokens import RefreshTokenManager
from authcore.storage.models import utcnow


class RecordingNotifier:
    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent = []

    def send_email_verification(self, to_email, token):
        self.sent.append(("verify", to_email, token))
        return self.succeed

    def send_password_reset(self, to_email, token):
        self.sent.append(("reset", to_email, token))
        return self.succeed


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def refresh_tokens(memory_store, fast_hasher):
    return RefreshTokenManager(memory_store, fast_hasher)


@pytest.fixture
def flows(memory_store, fast_hasher, notifier, settings, refresh_tokens):
    return AccountFlows(memory_store, fast_hasher, notifier, settings, refresh_tokens)


@pytest.fixture
def user(memory_store, fast_hasher):
    return memory_store.create_user("reader@example.com", fast_hasher.hash("OldPassword123!"))


class TestEmailVerification:
    async def test_issue_dispatches_and_echoes_token(self, flows, notifier, memory_store, user):
        result = await flows.send_email_verification(user.id)
        assert result.ok
        assert result.token
        kind, to_email, sent_token = notifier.sent[-1]
        assert (kind, to_email, sent_token) == ("verify", "reader@example.com", result.token)
        assert opaque.decode(result.token).id == user.id
        stored = memory_store.get_user(user.id, include_secrets=True)
        assert stored.email_verification_token != opaque.decode(result.token).secret

    async def test_verify_marks_verified_once(self, flows, memory_store, user):
        token = (await flows.send_email_verification(user.id)).token
        assert (await flows.verify_email(token)).ok
        stored = memory_store.get_user(user.id, include_secrets=True)
        assert stored.email_verified is True
        assert stored.email_verified_at is not None
        assert stored.email_verification_token is None
        with pytest.raises(InvalidToken):
            await flows.verify_email(token)

    async def test_concurrent_verification_consumes_once(self, flows, memory_store, user):
        token = (await flows.send_email_verification(user.id)).token
        results = await asyncio.gather(
            flows.verify_email(token), flows.verify_email(token), return_exceptions=True
        )
        assert sum(getattr(r, "ok", False) is True for r in results) == 1
        assert sum(isinstance(r, InvalidToken) for r in results) == 1
        actions = [entry.action for entry in memory_store.list_audit_logs(user.id)]
        assert actions.count("email_verified") == 1

    async def test_reissue_overwrites_previous_token(self, flows, user):
        first = (await flows.send_email_verification(user.id)).token
        second = (await flows.send_email_verification(user.id)).token
        with pytest.raises(InvalidToken):
            await flows.verify_email(first)
        await flows.verify_email(second)

    async def test_already_verified_is_noop(self, flows, notifier, memory_store, user):
        memory_store.update_user(user.id, email_verified=True)
        result = await flows.send_email_verification(user.id)
        assert result.ok and result.already_verified
        assert result.token is None
        assert notifier.sent == []

    async def test_wrong_secret(self, flows, user):
        await flows.send_email_verification(user.id)
        with pytest.raises(InvalidToken):
            await flows.verify_email(opaque.encode(user.id, opaque.generate_secret()))

    async def test_unknown_user(self, flows):
        with pytest.raises(NotFound):
            await flows.send_email_verification("missing")
        with pytest.raises(InvalidToken):
            await flows.verify_email(opaque.encode("missing", "secret"))

    async def test_malformed_token(self, flows):
        with pytest.raises(MalformedToken):
            await flows.verify_email("no-separator")


class TestPasswordReset:
    async def test_unknown_email_succeeds_silently(self, flows, notifier):
        result = await flows.request_password_reset("nobody@example.com")
        assert result.ok
        assert result.token is None
        assert notifier.sent == []

    async def test_reset_changes_password(self, flows, fast_hasher, memory_store, user):
        token = (await flows.request_password_reset("Reader@Example.com")).token
        await flows.reset_password(token, "NewPassword456!")
        stored = memory_store.get_user(user.id, include_secrets=True)
        assert fast_hasher.verify(stored.password_hash, "NewPassword456!")
        assert not fast_hasher.verify(stored.password_hash, "OldPassword123!")
        assert stored.password_reset_token is None
        assert stored.password_reset_expires_at is None

    async def test_reset_token_is_single_use(self, flows, user):
        token = (await flows.request_password_reset(user.email)).token
        await flows.reset_password(token, "NewPassword456!")
        with pytest.raises(InvalidOrExpiredToken):
            await flows.reset_password(token, "AnotherPassword789!")

    async def test_concurrent_resets_apply_one_password(self, flows, fast_hasher, memory_store, user):
        token = (await flows.request_password_reset(user.email)).token
        passwords = ["FirstPassword456!", "SecondPassword789!"]
        results = await asyncio.gather(
            *[flows.reset_password(token, password) for password in passwords],
            return_exceptions=True,
        )
        winners = [p for p, r in zip(passwords, results) if getattr(r, "ok", False) is True]
        assert len(winners) == 1
        assert sum(isinstance(r, InvalidToken) for r in results) == 1
        stored = memory_store.get_user(user.id, include_secrets=True)
        assert fast_hasher.verify(stored.password_hash, winners[0])

    async def test_expired_token(self, flows, memory_store, user):
        token = (await flows.request_password_reset(user.email)).token
        memory_store.update_user(
            user.id, password_reset_expires_at=utcnow() - timedelta(seconds=1)
        )
        with pytest.raises(InvalidOrExpiredToken):
            await flows.reset_password(token, "NewPassword456!")

    async def test_expiry_is_one_hour(self, flows, memory_store, user):
        await flows.request_password_reset(user.email)
        stored = memory_store.get_user(user.id, include_secrets=True)
        remaining = stored.password_reset_expires_at - utcnow()
        assert timedelta(minutes=59) < remaining <= timedelta(minutes=60)

    async def test_wrong_secret(self, flows, user):
        await flows.request_password_reset(user.email)
        with pytest.raises(InvalidToken):
            await flows.reset_password(
                opaque.encode(user.id, opaque.generate_secret()), "NewPassword456!"
            )

    async def test_no_pending_reset(self, flows, user):
        with pytest.raises(InvalidOrExpiredToken):
            await flows.reset_password(opaque.encode(user.id, "secret"), "NewPassword456!")

    async def test_reset_revokes_refresh_tokens(self, flows, refresh_tokens, memory_store, user):
        await refresh_tokens.issue(user.id)
        token = (await flows.request_password_reset(user.email)).token
        await flows.reset_password(token, "NewPassword456!")
        assert memory_store.list_refresh_tokens(user.id, active_only=True) == []
        actions = [entry.action for entry in memory_store.list_audit_logs(user.id)]
        assert "password_reset" in actions


class TestDelivery:
    async def test_production_hides_tokens(self, memory_store, fast_hasher, notifier, refresh_tokens, user):
        prod = Settings(jwt_secret="x" * 40, production=True)
        flows = AccountFlows(memory_store, fast_hasher, notifier, prod, refresh_tokens)
        assert (await flows.request_password_reset(user.email)).token is None
        assert (await flows.send_email_verification(user.id)).token is None
        # still delivered out of band
        assert [kind for kind, _, _ in notifier.sent] == ["reset", "verify"]

    async def test_notifier_failure_is_internal_error(self, memory_store, fast_hasher, settings, refresh_tokens, user):
        flows = AccountFlows(
            memory_store, fast_hasher, RecordingNotifier(succeed=False), settings, refresh_tokens
        )
        with pytest.raises(InternalError) as excinfo:
            await flows.request_password_reset(user.email)
        assert excinfo.value.status_code == 500
