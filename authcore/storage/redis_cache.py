from __future__ import annotations

import hashlib

import redis.asyncio as aioredis

from authcore.storage.models import normalize_email


class RedisCache:
    """Shared login-attempt state for deployments running several processes.

    Mirrors :class:`authcore.service.login_attempts.LoginAttemptTracker`: the
    failure counter lives for ``window_seconds`` from the first failure and a
    separate lockout key is set once the counter reaches ``max_attempts``.
    Keys hash the normalized email so no address is stored in Redis.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # KEYS[1] lockout key, KEYS[2] attempts key
    # ARGV[1] max attempts, ARGV[2] window seconds, ARGV[3] lockout seconds
    # Returns {lockout ttl, 0} when locked, otherwise {0, attempts} after counting.
    _CLAIM_ATTEMPT_SCRIPT = """
local ttl = redis.call('TTL', KEYS[1])
if ttl > 0 then
  return {ttl, 0}
end
local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 then
  redis.call('EXPIRE', KEYS[2], ARGV[2])
end
if attempts >= tonumber(ARGV[1]) then
  redis.call('SET', KEYS[1], '1', 'EX', ARGV[3])
end
return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _key_suffix(email: str) -> str:
        return hashlib.sha256(normalize_email(email).encode("utf-8")).hexdigest()

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def claim_login_attempt(
        self,
        email: str,
        *,
        max_attempts: int = 5,
        window_seconds: int = 900,
        lockout_seconds: int = 600,
    ) -> tuple[int, int]:
        """Atomically check the lockout and count one login attempt.

        The attempt is counted before the password is verified, so concurrent
        guesses from several processes share one budget.

        Returns:
            Tuple of (retry_after_seconds, current_attempts). ``retry_after`` is
            non-zero only when the account was already locked, in which case
            nothing was counted.
        """
        suffix = self._key_suffix(email)
        result = await self.client.eval(
            self._CLAIM_ATTEMPT_SCRIPT,
            2,
            f"login:lockout:{suffix}",
            f"login:attempts:{suffix}",
            max_attempts,
            window_seconds,
            lockout_seconds,
        )
        return (max(0, int(result[0])), int(result[1]))

    async def clear_login_attempts(self, email: str) -> None:
        suffix = self._key_suffix(email)
        await self.client.delete(f"login:attempts:{suffix}", f"login:lockout:{suffix}")

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
