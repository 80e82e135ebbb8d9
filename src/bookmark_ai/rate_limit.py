"""Per-principal sliding-window rate limiting.

Three implementations share the `RateLimiter` interface and are picked by
`build_rate_limiter` from configuration:

- `InMemoryRateLimiter`: process-local sliding log.
- `UpstashRateLimiter`: sliding log in Redis, via the Upstash REST API.
- `FailOpenRateLimiter`: always admits.

`check` never raises. A backend that cannot answer admits the request.
"""

from __future__ import annotations

import abc
import math
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from .config import AIConfig, RateLimitPolicy
from .metrics import rate_limit_decisions_total

log = structlog.get_logger()

DEFAULT_AI_POLICY = RateLimitPolicy(limit=20, window_seconds=60)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float

    def retry_after_seconds(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        return max(0, math.ceil(self.reset_at - now))


class RateLimiter(abc.ABC):
    backend_name = "abstract"

    def __init__(self, default_policy: RateLimitPolicy = DEFAULT_AI_POLICY, *, clock: Callable[[], float] | None = None):
        self.default_policy = default_policy
        self._clock: Callable[[], float] = clock or time.time

    async def check(self, principal: str, policy: RateLimitPolicy | None = None) -> RateLimitDecision:
        policy = policy or self.default_policy
        decision = await self._decide(principal, policy, self._clock())
        rate_limit_decisions_total.labels(
            backend=self.backend_name, outcome="allowed" if decision.allowed else "denied"
        ).inc()
        if not decision.allowed:
            log.info(
                "rate_limit_denied",
                principal=principal,
                limit=policy.limit,
                reset_at=decision.reset_at,
            )
        return decision

    @abc.abstractmethod
    async def _decide(self, principal: str, policy: RateLimitPolicy, now: float) -> RateLimitDecision: ...

    async def close(self) -> None:
        return None


class FailOpenRateLimiter(RateLimiter):
    backend_name = "disabled"

    async def _decide(self, principal: str, policy: RateLimitPolicy, now: float) -> RateLimitDecision:
        return RateLimitDecision(allowed=True, remaining=policy.limit, reset_at=now + policy.window_seconds)


class InMemoryRateLimiter(RateLimiter):
    """Sliding log of admitted request timestamps per (principal, policy).

    Denied checks do not consume quota. Pruning and the admit decision happen
    under one lock, so concurrent callers never share the last unit.
    """

    backend_name = "memory"
    _SWEEP_EVERY = 1024

    def __init__(self, default_policy: RateLimitPolicy = DEFAULT_AI_POLICY, *, clock: Callable[[], float] | None = None):
        super().__init__(default_policy, clock=clock)
        self._logs: dict[tuple[str, int, float], deque[float]] = {}
        self._lock = threading.Lock()
        self._checks = 0

    async def _decide(self, principal: str, policy: RateLimitPolicy, now: float) -> RateLimitDecision:
        return self.check_sync(principal, policy, now)

    def check_sync(self, principal: str, policy: RateLimitPolicy, now: float) -> RateLimitDecision:
        key = (principal, policy.limit, policy.window_seconds)
        cutoff = now - policy.window_seconds
        with self._lock:
            self._checks += 1
            if self._checks % self._SWEEP_EVERY == 0:
                self._sweep(now)

            entries = self._logs.setdefault(key, deque())
            while entries and entries[0] <= cutoff:
                entries.popleft()

            if len(entries) < policy.limit:
                entries.append(now)
                return RateLimitDecision(
                    allowed=True,
                    remaining=policy.limit - len(entries),
                    reset_at=entries[0] + policy.window_seconds,
                )
            return RateLimitDecision(allowed=False, remaining=0, reset_at=entries[0] + policy.window_seconds)

    def _sweep(self, now: float) -> None:
        for key in [k for k, entries in self._logs.items() if not entries or entries[-1] <= now - k[2]]:
            del self._logs[key]

    def tracked_principals(self) -> int:
        with self._lock:
            return len(self._logs)


# Prune, count and conditionally add in one script so the decision is atomic in Redis.
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call("ZREMRANGEBYSCORE", key, "-inf", now - window)
local count = redis.call("ZCARD", key)
local allowed = 0
if count < limit then
  redis.call("ZADD", key, now, ARGV[4])
  count = count + 1
  allowed = 1
end
redis.call("PEXPIRE", key, window)
local reset = now + window
local oldest = redis.call("ZRANGE", key, 0, 0, "WITHSCORES")
if oldest[2] then
  reset = tonumber(oldest[2]) + window
end
return {allowed, limit - count, reset}
"""


class UpstashRateLimiter(RateLimiter):
    backend_name = "upstash"

    def __init__(
        self,
        url: str,
        token: str,
        default_policy: RateLimitPolicy = DEFAULT_AI_POLICY,
        *,
        prefix: str = "ai:ratelimit",
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 2.0,
        clock: Callable[[], float] | None = None,
    ):
        super().__init__(default_policy, clock=clock)
        self._url = url.rstrip("/")
        self._token = token
        self._prefix = prefix
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def close(self) -> None:
        await self._client.aclose()

    def _fail_open(self, policy: RateLimitPolicy, now: float, reason: str) -> RateLimitDecision:
        rate_limit_decisions_total.labels(backend=self.backend_name, outcome="fail_open").inc()
        log.warning("rate_limit_backend_unavailable", backend=self.backend_name, reason=reason)
        return RateLimitDecision(allowed=True, remaining=policy.limit, reset_at=now + policy.window_seconds)

    async def _decide(self, principal: str, policy: RateLimitPolicy, now: float) -> RateLimitDecision:
        now_ms = int(now * 1000)
        window_ms = int(policy.window_seconds * 1000)
        key = f"{self._prefix}:{policy.limit}:{window_ms}:{principal}"
        command: list[Any] = [
            "EVAL",
            SLIDING_WINDOW_SCRIPT,
            "1",
            key,
            str(now_ms),
            str(window_ms),
            str(policy.limit),
            f"{now_ms}-{uuid.uuid4().hex}",
        ]
        try:
            resp = await self._client.post(
                self._url,
                json=command,
                headers={"Authorization": f"Bearer {self._token}"},
            )
        except httpx.HTTPError as e:
            return self._fail_open(policy, now, f"transport error: {type(e).__name__}")

        if resp.status_code >= 400:
            return self._fail_open(policy, now, f"status {resp.status_code}")

        try:
            data = resp.json()
        except ValueError:
            return self._fail_open(policy, now, "invalid JSON")

        result = data.get("result") if isinstance(data, dict) else None
        if (
            not isinstance(result, list)
            or len(result) != 3
            or not all(isinstance(v, int) and not isinstance(v, bool) for v in result)
        ):
            return self._fail_open(policy, now, "unexpected reply")

        allowed, remaining, reset_ms = result
        reset_at = reset_ms / 1000.0
        if not allowed:
            reset_at = max(reset_at, now)
        return RateLimitDecision(allowed=bool(allowed), remaining=max(0, remaining), reset_at=reset_at)


def build_rate_limiter(cfg: AIConfig, *, client: httpx.AsyncClient | None = None) -> RateLimiter:
    default_policy = cfg.rate_limit_policies["ai"]
    backend = cfg.rate_limit_backend
    if backend == "disabled":
        return FailOpenRateLimiter(default_policy)
    if backend == "upstash":
        if not (cfg.upstash_redis_rest_url and cfg.upstash_redis_rest_token):
            log.warning("rate_limit_backend_not_configured", backend=backend, fallback="disabled")
            return FailOpenRateLimiter(default_policy)
        return UpstashRateLimiter(
            cfg.upstash_redis_rest_url,
            cfg.upstash_redis_rest_token,
            default_policy,
            prefix=cfg.rate_limit_prefix,
            client=client,
        )
    return InMemoryRateLimiter(default_policy)
