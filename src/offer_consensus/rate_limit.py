"""
Per-user rate limiting for contribution actions.

Three checks are evaluated on every attempt for a (user, action) key:

1. Burst: more than ``burst_limit`` actions within ``burst_window_seconds``.
2. Hourly: more than ``hourly_limit`` actions within one hour.
3. Per-action rule: more than ``max_attempts`` within ``window_minutes``
   blocks the key for ``block_minutes``.

Exceeding the rule always starts its block, even when the attempt would
also trip the burst or hourly check. Denied attempts are never recorded.
State is in-process and guarded by a lock per key; nothing here awaits.
Idle keys are pruned as the registry grows.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .config import RateLimitConfig, RateLimitRule

logger = logging.getLogger(__name__)

HOUR_SECONDS = 3600


@dataclass
class RateLimitDecision:
    """Outcome of RateLimiter.check_and_record()."""

    allowed: bool
    message: str | None = None
    retry_after_seconds: int | None = None

    def __bool__(self) -> bool:
        return self.allowed


@dataclass
class _KeyState:
    timestamps: list[float] = field(default_factory=list)
    blocked_until: float | None = None
    # Rule attempts only count after the last block was released
    released_at: float | None = None
    # Set once the key is dropped from the registry; holders must re-fetch
    retired: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock)


PRUNE_MIN_KEYS = 1024


class RateLimiter:
    """Rolling-window limiter keyed by (user_id, action_key)."""

    def __init__(
        self,
        limits: RateLimitConfig | None = None,
        rules: dict[str, RateLimitRule] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limits = limits or RateLimitConfig()
        self.rules = rules or {}
        self.clock = clock
        self._states: dict[tuple[str, str], _KeyState] = {}
        self._registry_lock = threading.Lock()
        self._prune_at = PRUNE_MIN_KEYS

    def __len__(self) -> int:
        return len(self._states)

    def _state(self, key: tuple[str, str]) -> _KeyState:
        with self._registry_lock:
            state = self._states.get(key)
            if state is None:
                if len(self._states) >= self._prune_at:
                    self._prune_locked()
                    self._prune_at = max(PRUNE_MIN_KEYS, 2 * len(self._states))
                state = self._states[key] = _KeyState()
            return state

    def _retention_seconds(self, rule: RateLimitRule | None) -> float:
        seconds = max(HOUR_SECONDS, self.limits.burst_window_seconds)
        if rule is not None:
            seconds = max(seconds, rule.window_minutes * 60)
        return seconds

    def _is_idle(self, state: _KeyState, rule: RateLimitRule | None, now: float) -> bool:
        cutoff = now - self._retention_seconds(rule)
        state.timestamps = [t for t in state.timestamps if t > cutoff]
        blocked = state.blocked_until is not None and now < state.blocked_until
        return not state.timestamps and not blocked

    def _prune_locked(self) -> int:
        now = self.clock()
        dropped = 0
        for key, state in list(self._states.items()):
            # Keys being checked right now are skipped
            if not state.lock.acquire(blocking=False):
                continue
            try:
                if self._is_idle(state, self.rules.get(key[1]), now):
                    state.retired = True
                    del self._states[key]
                    dropped += 1
            finally:
                state.lock.release()
        return dropped

    def prune(self) -> int:
        """Drop keys with no attempts in their window and no active block."""
        with self._registry_lock:
            dropped = self._prune_locked()
        if dropped:
            logger.debug(f"Pruned {dropped} idle rate-limit key(s)")
        return dropped

    def check_and_record(self, user_id: str, action_key: str) -> RateLimitDecision:
        """
        Decide whether ``user_id`` may perform ``action_key`` now.

        Burst, hourly and the per-action rule are evaluated on every
        attempt. Exceeding the rule starts its block even when a burst or
        hourly threshold is exceeded as well; the block then takes
        precedence in the answer. Records a timestamp only when the
        attempt is allowed.
        """
        rule = self.rules.get(action_key)
        while True:
            state = self._state((user_id, action_key))
            with state.lock:
                if state.retired:
                    continue
                return self._decide(state, rule, user_id, action_key)

    def _decide(
        self, state: _KeyState, rule: RateLimitRule | None, user_id: str, action_key: str
    ) -> RateLimitDecision:
        now = self.clock()
        cutoff = now - self._retention_seconds(rule)
        state.timestamps = [t for t in state.timestamps if t > cutoff]

        if state.blocked_until is not None:
            if now < state.blocked_until:
                return RateLimitDecision(
                    allowed=False,
                    message=f"Too many attempts. Try again in {rule.block_minutes if rule else 0} minutes.",
                    retry_after_seconds=int(state.blocked_until - now) + 1,
                )
            state.released_at = state.blocked_until
            state.blocked_until = None

        if rule is not None:
            window_start = now - rule.window_minutes * 60
            if state.released_at is not None:
                window_start = max(window_start, state.released_at)
            attempts = [t for t in state.timestamps if t >= window_start]
            if len(attempts) + 1 > rule.max_attempts:
                state.blocked_until = now + rule.block_minutes * 60
                logger.warning(
                    f"User {user_id} blocked on {action_key} for {rule.block_minutes} minutes"
                )
                return RateLimitDecision(
                    allowed=False,
                    message=f"Too many attempts. Try again in {rule.block_minutes} minutes.",
                    retry_after_seconds=rule.block_minutes * 60,
                )

        burst_start = now - self.limits.burst_window_seconds
        burst = [t for t in state.timestamps if t > burst_start]
        if len(burst) + 1 > self.limits.burst_limit:
            logger.warning(f"Burst limit hit for user {user_id} on {action_key}")
            return RateLimitDecision(
                allowed=False,
                message="Too many actions in a short period. Wait a minute and try again.",
                retry_after_seconds=int(burst[0] + self.limits.burst_window_seconds - now) + 1,
            )

        hour_start = now - HOUR_SECONDS
        hourly = [t for t in state.timestamps if t > hour_start]
        if len(hourly) + 1 > self.limits.hourly_limit:
            logger.warning(f"Hourly limit hit for user {user_id} on {action_key}")
            return RateLimitDecision(
                allowed=False,
                message="Hourly action limit reached. Take a break and try again later.",
                retry_after_seconds=int(hourly[0] + HOUR_SECONDS - now) + 1,
            )

        state.timestamps.append(now)
        return RateLimitDecision(allowed=True)

    def reset(self, user_id: str | None = None) -> None:
        """Forget recorded attempts for one user, or for everyone."""
        with self._registry_lock:
            keys = [k for k in self._states if user_id is None or k[0] == user_id]
            for key in keys:
                self._states.pop(key).retired = True
