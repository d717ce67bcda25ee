"""
Per-client rate limiting for the HTTP routes.

Fixed-window counters keyed by rule, client address and window index.
With a Redis client the counters live in Redis (INCR + EXPIRE in one
pipeline) and are shared by every worker; without one they are kept in
process.
"""
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis
import structlog
from fastapi import Request, Response
from redis.exceptions import RedisError

from tutorpay.config import Settings
from tutorpay.core.exceptions import RateLimitExceeded
from tutorpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    """A request budget for one group of routes."""

    name: str
    limit: int
    window_seconds: int
    message: str


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of counting one request against a rule."""

    allowed: bool
    limit: int
    remaining: int
    reset_after: int


def build_rules(settings: Settings) -> Dict[str, RateLimitRule]:
    """Rate limit rules from settings, keyed by rule name."""
    return {
        "api": RateLimitRule(
            name="api",
            limit=settings.rate_limit_api_requests,
            window_seconds=settings.rate_limit_api_window_seconds,
            message="Too many requests from this IP, please try again later.",
        ),
        "payments": RateLimitRule(
            name="payments",
            limit=settings.rate_limit_payments_per_minute,
            window_seconds=60,
            message="Too many payment attempts, please try again later.",
        ),
        "webhooks": RateLimitRule(
            name="webhooks",
            limit=settings.rate_limit_webhooks_per_minute,
            window_seconds=60,
            message="Webhook rate limit exceeded",
        ),
    }


class RateLimiter:
    """
    Counts requests per client against named rules.

    Example:
        result = await limiter.hit("payments", "203.0.113.7")
        if not result.allowed:
            ...
    """

    def __init__(
        self,
        settings: Settings,
        redis_client: Optional[aioredis.Redis] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize rate limiter.

        Args:
            settings: Application settings
            redis_client: Optional Redis client for shared counters
            clock: Wall clock in seconds (injectable for tests)
        """
        self.enabled = settings.rate_limit_enabled
        self.rules = build_rules(settings)
        self.redis_client = redis_client
        self._clock = clock
        self._local: Dict[Tuple[str, str], Tuple[int, int]] = {}

    @property
    def backend(self) -> str:
        return "redis" if self.redis_client is not None else "local"

    async def hit(self, rule_name: str, client: str) -> RateLimitResult:
        """
        Count one request for ``client`` under ``rule_name``.

        Redis errors do not block traffic: the request is allowed and the
        failure is logged and counted.
        """
        rule = self.rules[rule_name]
        now = self._clock()
        window = int(now // rule.window_seconds)
        reset_after = max(1, int((window + 1) * rule.window_seconds - now))

        if self.redis_client is not None:
            try:
                count = await self._incr_redis(rule, client, window)
            except RedisError as e:
                metrics.record_rate_limit_backend_error()
                logger.warning("rate_limit_backend_unavailable", rule=rule.name, error=str(e))
                return RateLimitResult(True, rule.limit, rule.limit, reset_after)
        else:
            count = self._incr_local(rule, client, window)

        return RateLimitResult(
            allowed=count <= rule.limit,
            limit=rule.limit,
            remaining=max(0, rule.limit - count),
            reset_after=reset_after,
        )

    async def _incr_redis(self, rule: RateLimitRule, client: str, window: int) -> int:
        key = f"ratelimit:{rule.name}:{client}:{window}"
        pipe = self.redis_client.pipeline()
        pipe.incr(key)
        pipe.expire(key, rule.window_seconds)
        count, _ = await pipe.execute()
        return int(count)

    def _incr_local(self, rule: RateLimitRule, client: str, window: int) -> int:
        key = (rule.name, client)
        current_window, count = self._local.get(key, (window, 0))
        if current_window != window:
            count = 0
        count += 1
        self._local[key] = (window, count)

        if len(self._local) > 10_000:
            self._prune(rule.name, window)
        return count

    def _prune(self, rule_name: str, window: int) -> None:
        stale = [
            key for key, (seen, _) in self._local.items()
            if key[0] == rule_name and seen != window
        ]
        for key in stale:
            del self._local[key]


def client_key(request: Request) -> str:
    """Client identity for rate limiting: peer address plus any forwarded-for chain."""
    host = request.client.host if request.client else "unknown"
    return f"{host}:{request.headers.get('x-forwarded-for', '')}"


def rate_limit(rule_name: str) -> Callable:
    """
    Build a route dependency enforcing ``rule_name``.

    Raises:
        RateLimitExceeded: When the client is over budget (rendered as 429)
    """

    async def dependency(request: Request, response: Response) -> None:
        limiter: Optional[RateLimiter] = getattr(request.app.state, "rate_limiter", None)
        if limiter is None or not limiter.enabled:
            return

        result = await limiter.hit(rule_name, client_key(request))
        if not result.allowed:
            metrics.record_rate_limited(rule_name)
            logger.warning(
                "rate_limit_exceeded",
                rule=rule_name,
                limit=result.limit,
                retry_after=result.reset_after,
            )
            raise RateLimitExceeded(
                limiter.rules[rule_name].message,
                retry_after_seconds=result.reset_after,
            )

        response.headers["RateLimit-Limit"] = str(result.limit)
        response.headers["RateLimit-Remaining"] = str(result.remaining)
        response.headers["RateLimit-Reset"] = str(result.reset_after)

    return dependency
