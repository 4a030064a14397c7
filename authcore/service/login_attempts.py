from __future__ import annotations

import threading
import time
import zlib
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from authcore.logging import get_logger
from authcore.storage.models import normalize_email

logger = get_logger(__name__)

_STRIPE_COUNT = 16


@dataclass
class LoginAttemptState:
    count: int
    window_start_at: float
    locked_until: Optional[float] = None


class _Stripe:
    __slots__ = ("lock", "entries")

    def __init__(self) -> None:
        # claim_attempt re-enters through retry_after and record_failure
        self.lock = threading.RLock()
        self.entries: "OrderedDict[str, LoginAttemptState]" = OrderedDict()


class LoginAttemptTracker:
    """Process-local sliding-window failure counter with temporary lockout.

    Keys are normalized emails. State lives in ``_STRIPE_COUNT`` independent
    stripes, each with its own lock and LRU-ordered dict, so concurrent logins
    for different accounts rarely contend. Each stripe holds at most
    ``max_entries / stripes`` keys; the least recently touched are evicted
    first, and entries whose window and lockout have both lapsed are pruned
    whenever their stripe is written.

    Times are unix seconds. ``clock`` can be replaced in tests.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        window_seconds: float = 15 * 60,
        lockout_seconds: float = 10 * 60,
        max_entries: int = 10000,
        stripes: int = _STRIPE_COUNT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.lockout_seconds = lockout_seconds
        self.clock = clock
        self._stripes = [_Stripe() for _ in range(max(1, stripes))]
        self._per_stripe_cap = max(1, max_entries // len(self._stripes))

    @classmethod
    def from_settings(cls, settings) -> "LoginAttemptTracker":
        return cls(
            max_attempts=settings.login_max_attempts,
            window_seconds=settings.login_window_seconds,
            lockout_seconds=settings.login_lockout_seconds,
            max_entries=settings.login_tracker_max_entries,
        )

    def _stripe_for(self, key: str) -> _Stripe:
        return self._stripes[zlib.crc32(key.encode("utf-8")) % len(self._stripes)]

    def _expired(self, state: LoginAttemptState, now: float) -> bool:
        window_over = now - state.window_start_at > self.window_seconds
        lock_over = state.locked_until is None or state.locked_until <= now
        return window_over and lock_over

    def _prune(self, stripe: _Stripe, now: float) -> None:
        # Caller holds stripe.lock
        stale = [key for key, state in stripe.entries.items() if self._expired(state, now)]
        for key in stale:
            del stripe.entries[key]
        while len(stripe.entries) > self._per_stripe_cap:
            evicted, _ = stripe.entries.popitem(last=False)
            logger.debug("login_tracker_evicted", key_hash=zlib.crc32(evicted.encode()))

    def is_locked(self, email: str, now: Optional[float] = None) -> bool:
        key = normalize_email(email)
        now = self.clock() if now is None else now
        stripe = self._stripe_for(key)
        with stripe.lock:
            state = stripe.entries.get(key)
            return bool(state and state.locked_until is not None and state.locked_until > now)

    def retry_after(self, email: str, now: Optional[float] = None) -> int:
        """Seconds until the lockout lifts, 0 when not locked."""
        key = normalize_email(email)
        now = self.clock() if now is None else now
        stripe = self._stripe_for(key)
        with stripe.lock:
            state = stripe.entries.get(key)
            if not state or state.locked_until is None or state.locked_until <= now:
                return 0
            return max(1, int(state.locked_until - now))

    def record_failure(self, email: str, now: Optional[float] = None) -> LoginAttemptState:
        """Count one failed attempt; returns a snapshot of the resulting state."""
        key = normalize_email(email)
        now = self.clock() if now is None else now
        stripe = self._stripe_for(key)
        with stripe.lock:
            state = stripe.entries.get(key)
            if state is None or now - state.window_start_at > self.window_seconds:
                state = LoginAttemptState(count=1, window_start_at=now)
            else:
                state.count += 1
            if state.count >= self.max_attempts:
                state.locked_until = now + self.lockout_seconds
            stripe.entries[key] = state
            stripe.entries.move_to_end(key)
            self._prune(stripe, now)
            return LoginAttemptState(state.count, state.window_start_at, state.locked_until)

    def claim_attempt(
        self, email: str, now: Optional[float] = None
    ) -> Tuple[int, Optional[LoginAttemptState]]:
        """Check the lockout and count one attempt in a single step.

        Returns ``(retry_after, None)`` without counting anything when the key
        is locked, otherwise ``(0, state)`` after the attempt was counted.
        Attempts are counted before the password is checked so a burst of
        concurrent guesses cannot all pass the lockout check; callers reset
        the key once the password verifies.
        """
        key = normalize_email(email)
        now = self.clock() if now is None else now
        stripe = self._stripe_for(key)
        with stripe.lock:
            retry_after = self.retry_after(key, now)
            if retry_after:
                return retry_after, None
            return 0, self.record_failure(key, now)

    def reset(self, email: str) -> None:
        key = normalize_email(email)
        stripe = self._stripe_for(key)
        with stripe.lock:
            stripe.entries.pop(key, None)

    def __len__(self) -> int:
        total = 0
        for stripe in self._stripes:
            with stripe.lock:
                total += len(stripe.entries)
        return total
