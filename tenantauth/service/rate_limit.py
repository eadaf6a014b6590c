from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from redis.exceptions import RedisError

from tenantauth.logging import get_logger
from tenantauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class RatePolicy:
    name: str
    limit: int
    window_seconds: int


@dataclass
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


class FixedWindowLimiter:
    """Fixed-window counters keyed by identifier.

    Counters live in Redis (one atomic script: INCR, TTL set whenever the key
    has none). With no cache configured they are kept in process under a
    lock, and counters whose window has ended are swept out periodically. A
    configured cache that errors fails open: the request is allowed and a
    warning logged.
    """

    SWEEP_INTERVAL_SECONDS = 60.0

    def __init__(self, cache: Optional[RedisCache]) -> None:
        self.cache = cache
        self._local: Dict[str, Tuple[int, float]] = {}
        self._local_lock = threading.Lock()
        self._next_sweep = 0.0

    def _sweep(self, now: float) -> None:
        expired = [key for key, (_, window_end) in self._local.items() if window_end <= now]
        for key in expired:
            del self._local[key]
        self._next_sweep = now + self.SWEEP_INTERVAL_SECONDS

    def _local_hit(self, key: str, window_seconds: int) -> Tuple[int, int]:
        now = time.monotonic()
        with self._local_lock:
            if now >= self._next_sweep:
                self._sweep(now)
            count, window_end = self._local.get(key, (0, 0.0))
            if now >= window_end:
                count, window_end = 0, now + window_seconds
            count += 1
            self._local[key] = (count, window_end)
        return count, max(0, int(window_end - now))

    async def hit(self, policy: RatePolicy, identifier: str) -> RateDecision:
        key = f"rate:{policy.name}:{identifier}"
        if self.cache is None:
            count, reset = self._local_hit(key, policy.window_seconds)
        else:
            try:
                count, reset = await self.cache.incr_window(key, policy.window_seconds)
            except (RedisError, OSError) as exc:
                logger.warning("rate_limit_check_failed", key=key, error=str(exc))
                return RateDecision(True, policy.limit, policy.limit, 0)
        return RateDecision(
            allowed=count <= policy.limit,
            limit=policy.limit,
            remaining=max(0, policy.limit - count),
            reset_seconds=max(0, reset),
        )


class AuthRateLimiter:
    """Named rate-limit policies for the authentication endpoints."""

    def __init__(
        self,
        limiter: FixedWindowLimiter,
        *,
        login: RatePolicy = RatePolicy("login", 5, 15 * 60),
        register: RatePolicy = RatePolicy("register", 3, 3600),
        password_reset: RatePolicy = RatePolicy("password-reset", 3, 3600),
        email_verify: RatePolicy = RatePolicy("email-verify", 5, 3600),
    ) -> None:
        self.limiter = limiter
        self.login = login
        self.register = register
        self.password_reset = password_reset
        self.email_verify = email_verify

    async def check_login(self, ip_address: str) -> RateDecision:
        return await self.limiter.hit(self.login, ip_address)

    async def check_registration(self, ip_address: str) -> RateDecision:
        return await self.limiter.hit(self.register, ip_address)

    async def check_password_reset(self, ip_address: str) -> RateDecision:
        return await self.limiter.hit(self.password_reset, ip_address)

    async def check_email_verification(self, user_id: str) -> RateDecision:
        return await self.limiter.hit(self.email_verify, user_id)
