"""Shared lockout state in Redis and fallback to the in-process tracker."""

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from authcore.service.auth import AuthService
from authcore.service.errors import AccountLocked, InvalidCredentials
from authcore.storage.redis_cache import RedisCache

PASSWORD = "TestPassword123!"


class FakeAsyncRedis:
    """Just enough of redis.asyncio.Redis for the lockout script.

    ``eval`` runs without awaiting anything, so it is atomic with respect to
    other coroutines the same way the Lua script is atomic on the server.
    """

    def __init__(self):
        self.values = {}
        self.ttls = {}
        self.eval_calls = []

    async def eval(self, script, numkeys, lockout_key, attempts_key, max_attempts, window, lockout):
        self.eval_calls.append((lockout_key, attempts_key, max_attempts, window, lockout))
        if self.ttls.get(lockout_key, 0) > 0:
            return [self.ttls[lockout_key], 0]
        attempts = self.values.get(attempts_key, 0) + 1
        self.values[attempts_key] = attempts
        if attempts == 1:
            self.ttls[attempts_key] = window
        if attempts >= max_attempts:
            self.values[lockout_key] = "1"
            self.ttls[lockout_key] = lockout
        return [0, attempts]

    async def delete(self, *keys):
        for key in keys:
            self.values.pop(key, None)
            self.ttls.pop(key, None)


class BrokenCache:
    async def claim_login_attempt(self, email, **kwargs):
        raise RedisConnectionError("redis down")

    async def clear_login_attempts(self, email):
        raise RedisConnectionError("redis down")


@pytest.fixture
def fake_redis():
    return FakeAsyncRedis()


@pytest.fixture
def cache(fake_redis):
    # from_url does not connect, so no server is needed
    cache = RedisCache("redis://localhost:6379/15")
    cache.client = fake_redis
    return cache


def _service(store, cache, settings, hasher):
    class _Silent:
        def send_email_verification(self, to_email, token):
            return True

        def send_password_reset(self, to_email, token):
            return True

    return AuthService(store, cache, settings, _Silent(), hasher=hasher)


class TestRedisCache:
    async def test_keys_hash_the_normalized_email(self, cache, fake_redis):
        await cache.claim_login_attempt("User@Example.com ", max_attempts=5)
        lockout_key, attempts_key, *_ = fake_redis.eval_calls[0]
        assert "example" not in lockout_key
        assert lockout_key.startswith("login:lockout:")
        assert attempts_key.startswith("login:attempts:")
        assert lockout_key.split(":")[-1] == RedisCache._key_suffix("user@example.com")

    async def test_lockout_after_max_attempts(self, cache):
        for expected in (1, 2, 3):
            retry_after, attempts = await cache.claim_login_attempt(
                "a@example.com", max_attempts=3, lockout_seconds=120
            )
            assert (retry_after, attempts) == (0, expected)
        # locked: reported without counting
        assert await cache.claim_login_attempt(
            "a@example.com", max_attempts=3, lockout_seconds=120
        ) == (120, 0)
        await cache.clear_login_attempts("a@example.com")
        assert await cache.claim_login_attempt("a@example.com", max_attempts=3) == (0, 1)


class TestAuthServiceWithRedis:
    async def test_lockout_goes_through_redis(self, memory_store, cache, fake_redis, settings, fast_hasher):
        service = _service(memory_store, cache, settings, fast_hasher)
        await service.register("a@example.com", PASSWORD)
        for _ in range(settings.login_max_attempts):
            with pytest.raises(InvalidCredentials):
                await service.login("a@example.com", "wrong-password")
        with pytest.raises(AccountLocked) as excinfo:
            await service.login("a@example.com", PASSWORD)
        assert excinfo.value.retry_after == settings.login_lockout_seconds
        # process-local tracker untouched while Redis works
        assert len(service.tracker) == 0

    async def test_success_clears_redis_state(self, memory_store, cache, fake_redis, settings, fast_hasher):
        service = _service(memory_store, cache, settings, fast_hasher)
        await service.register("a@example.com", PASSWORD)
        with pytest.raises(InvalidCredentials):
            await service.login("a@example.com", "wrong-password")
        await service.login("a@example.com", PASSWORD)
        assert fake_redis.values == {}

    async def test_concurrent_guesses_share_one_budget(
        self, memory_store, cache, fake_redis, settings, fast_hasher, monkeypatch
    ):
        service = _service(memory_store, cache, settings, fast_hasher)
        await service.register("a@example.com", PASSWORD)
        verified = []
        original_verify = fast_hasher.verify

        def counting_verify(hash_value, password):
            verified.append(password)
            return original_verify(hash_value, password)

        monkeypatch.setattr(fast_hasher, "verify", counting_verify)
        results = await asyncio.gather(
            *[service.login("a@example.com", "wrong-password") for _ in range(20)],
            return_exceptions=True,
        )

        assert len(verified) <= settings.login_max_attempts
        assert sum(isinstance(r, InvalidCredentials) for r in results) == len(verified)
        assert sum(isinstance(r, AccountLocked) for r in results) == 20 - len(verified)

    async def test_redis_errors_fall_back_to_tracker(self, memory_store, settings, fast_hasher):
        service = _service(memory_store, BrokenCache(), settings, fast_hasher)
        await service.register("a@example.com", PASSWORD)
        for _ in range(settings.login_max_attempts):
            with pytest.raises(InvalidCredentials):
                await service.login("a@example.com", "wrong-password")
        with pytest.raises(AccountLocked):
            await service.login("a@example.com", PASSWORD)
