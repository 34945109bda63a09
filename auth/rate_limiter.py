"""
auth/rate_limiter.py -- Persistent fixed-window attempt limiter.

This is the inner, per-account limiter used by CredentialAuthProvider. It is
distinct from the outer slowapi throttle in api/limiter.py, which limits raw
request volume per client IP and lives in process memory.

Algorithm (per identifier):
  1. ensure a counter row exists            (insert-or-ignore)
  2. start a new window if the current one   (conditional UPDATE)
     has elapsed or its lockout has expired
  3. deny if blocked_until is in the future
  4. attempt_count += 1 WHERE count < max    (conditional UPDATE)
  5. if step 4 changed no row, the window is exhausted:
     set blocked_until = now + lockout and deny

Every step is a single statement, so concurrent callers never lose an
increment and at most max_attempts calls per window are allowed.

Store failures propagate as StoreUnavailableError -- the limiter fails closed
and the provider reports the service as unavailable.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import timedelta

from auth.audit import mask_email, mask_ip
from auth.models import Clock, utcnow
from auth.store import AuthStore, normalize_email

logger = logging.getLogger("gatehouse.auth.rate_limiter")

KEY_MODES = ("email", "ip", "email_ip")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int | None = None
    remaining: int = 0


class RateLimiter:
    """Count attempts per identifier and lock out after max_attempts in a window.

    Usage:
        limiter = RateLimiter(store, max_attempts=5, window_seconds=900, lockout_seconds=900)
        key = limiter.compose_identifier("a@example.com", "203.0.113.7")
        decision = limiter.check_and_increment(key)
        if not decision.allowed:
            ...  # decision.retry_after_seconds
    """

    def __init__(
        self,
        store: AuthStore,
        max_attempts: int = 5,
        window_seconds: int = 15 * 60,
        lockout_seconds: int = 15 * 60,
        extend_on_blocked: bool = False,
        key_mode: str = "email_ip",
        clock: Clock = utcnow,
    ) -> None:
        if key_mode not in KEY_MODES:
            raise ValueError(f"key_mode must be one of {KEY_MODES}, got {key_mode!r}")
        self.store = store
        self.max_attempts = max_attempts
        self.window = timedelta(seconds=window_seconds)
        self.lockout = timedelta(seconds=lockout_seconds)
        self.extend_on_blocked = extend_on_blocked
        self.key_mode = key_mode
        self._clock = clock

    def compose_identifier(self, email: str | None, ip_address: str | None, action: str = "login") -> str:
        """Build the counter key for an attempt according to key_mode.

        A missing signal becomes "-" so requests lacking it still share one
        bucket instead of bypassing the limiter.
        """
        email_part = normalize_email(email) if email else "-"
        ip_part = ip_address or "-"
        if self.key_mode == "email":
            return f"{action}:email:{email_part}"
        if self.key_mode == "ip":
            return f"{action}:ip:{ip_part}"
        return f"{action}:email:{email_part}|ip:{ip_part}"

    def user_identifier(self, user_id: str, action: str) -> str:
        """Counter key for an action by a known account, independent of key_mode.

        Re-entering the current password from a live session is guessed per
        account, so the budget follows the account across addresses.
        """
        return f"{action}:user:{user_id}"

    def check_and_increment(self, identifier: str) -> RateLimitDecision:
        now = self._clock()
        self.store.ensure_counter(identifier, now)
        self.store.reset_counter_if_stale(identifier, now - self.window, now)

        counter = self.store.get_counter(identifier)
        if counter is not None and counter.blocked_until is not None and counter.blocked_until > now:
            blocked_until = counter.blocked_until
            if self.extend_on_blocked:
                blocked_until = now + self.lockout
                self.store.block_counter(identifier, blocked_until, now, extend=True)
            return RateLimitDecision(allowed=False, retry_after_seconds=_seconds_until(blocked_until, now))

        if self.store.increment_counter(identifier, self.max_attempts, now):
            counter = self.store.get_counter(identifier)
            used = counter.attempt_count if counter is not None else self.max_attempts
            return RateLimitDecision(allowed=True, remaining=max(0, self.max_attempts - used))

        # Window exhausted. If a concurrent caller already set the block,
        # block_counter leaves it alone and we report theirs.
        self.store.block_counter(identifier, now + self.lockout, now, extend=False)
        counter = self.store.get_counter(identifier)
        blocked_until = counter.blocked_until if counter and counter.blocked_until else now + self.lockout
        logger.warning(
            "Rate limit exceeded for %s; blocked for %ds", mask_identifier(identifier), self.lockout.total_seconds()
        )
        return RateLimitDecision(allowed=False, retry_after_seconds=_seconds_until(blocked_until, now))

    def reset(self, identifier: str) -> None:
        """Forget an identifier's attempts (after a successful login)."""
        self.store.delete_counter(identifier)

    def cleanup_stale_counters(self) -> int:
        now = self._clock()
        removed = self.store.delete_stale_counters(now - self.window, now)
        if removed:
            logger.info("Removed %d stale rate-limit counter(s)", removed)
        return removed


def _seconds_until(moment, now) -> int:
    return max(1, math.ceil((moment - now).total_seconds()))


def mask_identifier(identifier: str) -> str:
    """Mask the email and IP parts of a counter key for logging."""
    action, _, rest = identifier.partition(":")
    parts = []
    for part in rest.split("|"):
        kind, _, value = part.partition(":")
        if kind == "email" and value != "-":
            value = mask_email(value)
        elif kind == "ip" and value != "-":
            value = mask_ip(value)
        parts.append(f"{kind}:{value}")
    return f"{action}:{'|'.join(parts)}"
