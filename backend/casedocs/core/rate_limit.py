"""
Token Bucket Rate Limiter
═════════════════════════

An explicitly owned limiter. The FastAPI app builds one in its lifespan and
stores it on app.state; nothing here is process-global.

  bucket(key) ──▶ tokens ≤ max_tokens
                   │
                   ├─ every refill_interval_seconds: + refill_rate
                   └─ check_limit(key, n): allowed iff tokens ≥ n

Buckets are keyed by strings ("user:<id>:<scope>", "model:<name>", "global").
The bucket map is bounded: beyond max_keys the least recently checked
bucket is dropped, which only ever resets that key to a full bucket.

The clock is injectable so refill is testable without sleeping. reset_at is
expressed on the same clock (wall-clock epoch seconds by default).
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    max_tokens:              int
    refill_rate:             int
    refill_interval_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        if self.refill_rate <= 0:
            raise ValueError("refill_rate must be positive")
        if self.refill_interval_seconds <= 0:
            raise ValueError("refill_interval_seconds must be positive")

    @classmethod
    def per_minute(cls, requests: int) -> "RateLimitConfig":
        """Fixed allowance of `requests` that fully refills each minute."""
        return cls(max_tokens=requests, refill_rate=requests, refill_interval_seconds=60.0)


DEFAULT_GLOBAL_LIMIT = RateLimitConfig(max_tokens=100, refill_rate=10)
DEFAULT_USER_LIMIT   = RateLimitConfig(max_tokens=20, refill_rate=5)

MODEL_LIMITS: dict[str, RateLimitConfig] = {
    "gpt-4o":                      RateLimitConfig(max_tokens=50, refill_rate=10),
    "azure-document-intelligence": RateLimitConfig(max_tokens=30, refill_rate=10),
    "gemini-vision":               RateLimitConfig(max_tokens=50, refill_rate=10),
    "ocr":                         RateLimitConfig(max_tokens=50, refill_rate=10),
}


@dataclass(frozen=True)
class RateLimitDecision:
    allowed:   bool
    remaining: int
    reset_at:  float
    reason:    str | None = None


@dataclass
class RateLimitStats:
    total_requests:   int = 0
    allowed_requests: int = 0
    denied_requests:  int = 0
    current_tokens:   int = 0
    max_tokens:       int = 0


@dataclass
class _Bucket:
    tokens:      int
    last_refill: float
    stats:       RateLimitStats = field(default_factory=RateLimitStats)


class TokenBucketRateLimiter:
    def __init__(
        self,
        *,
        global_config: RateLimitConfig = DEFAULT_GLOBAL_LIMIT,
        user_config:   RateLimitConfig = DEFAULT_USER_LIMIT,
        model_limits:  dict[str, RateLimitConfig] | None = None,
        clock:         Callable[[], float] = time.time,
        max_keys:      int = 10_000,
    ) -> None:
        if max_keys <= 0:
            raise ValueError("max_keys must be positive")
        self._global_config = global_config
        self._user_config   = user_config
        self._model_limits  = MODEL_LIMITS if model_limits is None else model_limits
        self._clock         = clock
        self._max_keys      = max_keys
        self._buckets: OrderedDict[str, _Bucket] = OrderedDict()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Core check
    # ------------------------------------------------------------------

    def check_limit(
        self,
        key: str,
        tokens: int = 1,
        config: RateLimitConfig | None = None,
    ) -> RateLimitDecision:
        config = config or self._user_config
        with self._lock:
            now = self._clock()
            bucket = self._bucket(key, config, now)

            intervals = math.floor((now - bucket.last_refill) / config.refill_interval_seconds)
            if intervals > 0:
                bucket.tokens = min(config.max_tokens, bucket.tokens + intervals * config.refill_rate)
                bucket.last_refill += intervals * config.refill_interval_seconds

            stats = bucket.stats
            stats.total_requests += 1
            stats.max_tokens = config.max_tokens

            if bucket.tokens >= tokens:
                bucket.tokens -= tokens
                stats.allowed_requests += 1
                stats.current_tokens = bucket.tokens
                return RateLimitDecision(
                    allowed=True,
                    remaining=bucket.tokens,
                    reset_at=bucket.last_refill + config.refill_interval_seconds,
                )

            stats.denied_requests += 1
            stats.current_tokens = bucket.tokens
            needed = tokens - bucket.tokens
            wait_intervals = math.ceil(needed / config.refill_rate)
            reset_at = bucket.last_refill + wait_intervals * config.refill_interval_seconds

        logger.info("Rate limit | key=%s denied remaining=%d reset_at=%.0f", key, bucket.tokens, reset_at)
        return RateLimitDecision(allowed=False, remaining=bucket.tokens, reset_at=reset_at)

    def _bucket(self, key: str, config: RateLimitConfig, now: float) -> _Bucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = _Bucket(tokens=config.max_tokens, last_refill=now)
            self._buckets[key] = bucket
            while len(self._buckets) > self._max_keys:
                self._buckets.popitem(last=False)
        else:
            self._buckets.move_to_end(key)
        return bucket

    # ------------------------------------------------------------------
    # Convenience scopes
    # ------------------------------------------------------------------

    def check_user_limit(
        self,
        user_id: str,
        tokens: int = 1,
        *,
        scope: str | None = None,
        config: RateLimitConfig | None = None,
    ) -> RateLimitDecision:
        key = f"user:{user_id}" if scope is None else f"user:{user_id}:{scope}"
        return self.check_limit(key, tokens, config or self._user_config)

    def check_model_limit(self, model: str, tokens: int = 1) -> RateLimitDecision:
        config = self._model_limits.get(model, self._global_config)
        return self.check_limit(f"model:{model}", tokens, config)

    def check_global_limit(self, tokens: int = 1) -> RateLimitDecision:
        return self.check_limit("global", tokens, self._global_config)

    def check_combined_limit(
        self,
        user_id: str,
        model: str | None = None,
        tokens: int = 1,
    ) -> RateLimitDecision:
        """Global, then user, then model; the first denial wins."""
        global_decision = self.check_global_limit(tokens)
        if not global_decision.allowed:
            return _with_reason(global_decision, "Global rate limit exceeded")

        user_decision = self.check_user_limit(user_id, tokens)
        if not user_decision.allowed:
            return _with_reason(user_decision, "User rate limit exceeded")

        if model:
            model_decision = self.check_model_limit(model, tokens)
            if not model_decision.allowed:
                return _with_reason(model_decision, f"Model {model} rate limit exceeded")

        return RateLimitDecision(
            allowed=True,
            remaining=min(global_decision.remaining, user_decision.remaining),
            reset_at=max(global_decision.reset_at, user_decision.reset_at),
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def now(self) -> float:
        return self._clock()

    def get_stats(self, key: str) -> RateLimitStats:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                return RateLimitStats()
            return RateLimitStats(**vars(bucket.stats))

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(key, None)

    def __len__(self) -> int:
        return len(self._buckets)


def _with_reason(decision: RateLimitDecision, reason: str) -> RateLimitDecision:
    return RateLimitDecision(
        allowed=decision.allowed,
        remaining=decision.remaining,
        reset_at=decision.reset_at,
        reason=reason,
    )
