"""
Channel Adapters — shared infrastructure for outbound providers.

Provides:
- ChannelError: structured error hierarchy (rejection, timeout, rate limit)
- DeliveryReceipt: normalized provider acceptance
- TokenBucketRateLimiter: async token bucket with configurable burst
- ChannelMetrics: per-adapter send/fail/latency tracking
- DeliveryAdapter: abstract base wrapping every send with limiting and metrics
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from dataclasses import dataclass
from typing import Any, Optional

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class DeliveryError(ChannelError):
    """The provider refused or failed the send."""

    def __init__(self, provider_message: str, provider_code: Any = None, channel: str = ""):
        self.provider_message = provider_message
        self.provider_code = provider_code
        super().__init__(provider_message, channel)


class DeliveryTimeout(ChannelError):
    def __init__(self, timeout: float, channel: str = ""):
        self.timeout = timeout
        super().__init__(f"Provider did not answer within {timeout}s", channel, retryable=True)


class RateLimitedError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Rate limit exceeded for {channel}", channel, retryable=True)


@dataclass(frozen=True)
class DeliveryReceipt:
    provider_message_id: Optional[str]
    latency_ms: float = 0.0


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Async token bucket rate limiter.
    Tokens refill at `rate` per second up to `burst` capacity.
    """

    def __init__(self, rate: float = 10.0, burst: int = 10):
        self.rate = rate
        self.burst = burst
        self._tokens: float = float(burst)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            wait = min(1.0 / max(self.rate, 0.001), remaining)
            await asyncio.sleep(wait)

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(self.burst, self._tokens + elapsed * self.rate)
        self._last_refill = now


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks per-adapter send, failure, and latency metrics."""

    def __init__(self, channel: str):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-1000]

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-100]

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  DELIVERY ADAPTER — Abstract Base
# ══════════════════════════════════════════════════════════════

class DeliveryAdapter(abc.ABC):
    """
    Base class for provider adapters.

    Subclasses implement _do_send. The base class wraps every send with
    rate limiting and metrics. Sends are never retried here: a provider
    failure is an outcome to record, not something to hide.
    """

    channel: str = ""

    def __init__(self, rate_limiter: Optional[TokenBucketRateLimiter] = None,
                 acquire_timeout: float = 10.0):
        self._rate_limiter = rate_limiter
        self._acquire_timeout = acquire_timeout
        self.metrics = ChannelMetrics(self.channel)

    @abc.abstractmethod
    async def _do_send(self, payload: dict[str, Any]) -> Optional[str]:
        """Perform the provider call and return its message id."""
        ...

    async def send(self, payload: dict[str, Any]) -> DeliveryReceipt:
        if self._rate_limiter:
            if not await self._rate_limiter.acquire(timeout=self._acquire_timeout):
                self.metrics.record_failure("rate_limited")
                raise RateLimitedError(self.channel)

        start = time.monotonic()
        try:
            provider_message_id = await self._do_send(payload)
        except ChannelError as e:
            self.metrics.record_failure(str(e))
            raise
        latency = (time.monotonic() - start) * 1000
        self.metrics.record_send(latency)
        return DeliveryReceipt(provider_message_id=provider_message_id, latency_ms=round(latency, 1))

    async def health_check(self) -> dict[str, Any]:
        return {"channel": self.channel, "metrics": self.metrics.to_dict()}

    async def shutdown(self) -> None:
        pass
