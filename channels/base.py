"""
Channel Adapters — delivery and webhook parsing for every messaging surface.

Provides:
- ChannelError: structured error hierarchy
- TokenBucketRateLimiter: async token bucket for provider rate limits
- CircuitBreaker: stops hammering a provider that keeps failing
- ChannelMetrics: per-channel send/fail/latency counters for /health
- InputSanitizer: strips control characters from inbound text
- ChannelAdapter: abstract base; subclasses build provider payloads from
  OutboundMessage and parse provider webhooks into InboundEvent
- ChannelRegistry: adapter lookup by ChannelType
"""
from __future__ import annotations

import abc
import asyncio
import hashlib
import hmac
import time
import uuid
import structlog
from collections import deque
from typing import Any, Optional

from channels.capabilities import ChannelCapabilities, capabilities_for
from models.schemas import ChannelType, InboundEvent, OutboundMessage

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


class RateLimitedError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Rate limit exceeded for {channel}", channel, retryable=True)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """Tokens refill at `rate` per second up to `burst` capacity."""

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
            await asyncio.sleep(min(1.0 / max(self.rate, 0.001), remaining))

    def _refill(self):
        now = time.monotonic()
        self._tokens = min(self.burst, self._tokens + (now - self._last_refill) * self.rate)
        self._last_refill = now


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0

    @property
    def state(self) -> str:
        if self._state == "open" and time.monotonic() - self._opened_at >= self.recovery_timeout:
            return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._state = "open"
            self._opened_at = time.monotonic()
            logger.warning("circuit_opened", failures=self._failure_count)

    def record_success(self):
        self._state = "closed"
        self._failure_count = 0


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Running counters; only the most recent errors are kept."""

    def __init__(self, channel: ChannelType, max_errors: int = 10):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self.events_received: int = 0
        self._latency_total_ms: float = 0.0
        self._latency_count: int = 0
        self._errors: deque[str] = deque(maxlen=max_errors)

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latency_total_ms += latency_ms
            self._latency_count += 1

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)

    @property
    def avg_latency_ms(self) -> float:
        return self._latency_total_ms / self._latency_count if self._latency_count else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "received": self.events_received,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "recent_errors": list(self._errors),
        }


# ══════════════════════════════════════════════════════════════
#  INPUT SANITIZER
# ══════════════════════════════════════════════════════════════

class InputSanitizer:
    def __init__(self, max_length: int = 4096):
        self.max_length = max_length

    def sanitize(self, content: str) -> str:
        if not content:
            return ""
        content = "".join(c for c in content if c in ("\n", "\t", "\r") or ord(c) >= 32)
        return content[: self.max_length].strip()


def verify_meta_signature(app_secret: str, body: bytes, signature: str) -> bool:
    """X-Hub-Signature-256 check shared by WhatsApp, Messenger and Instagram webhooks."""
    if not app_secret:
        return True
    if not signature.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature[len("sha256="):])


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER: Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for all channel adapters.

    Subclasses implement to_payload, _do_send and parse_inbound. The base
    class wraps every send with rate limiting, circuit breaker, retry and
    metrics.
    """

    channel_type: ChannelType
    max_attempts = 3

    def __init__(self):
        self._initialized = False
        self._config: dict[str, Any] = {}
        self._breaker = CircuitBreaker()
        self._rate_limiter: Optional[TokenBucketRateLimiter] = None
        self._metrics = ChannelMetrics(self.channel_type)
        self._sanitizer = InputSanitizer()

    @property
    def capabilities(self) -> ChannelCapabilities:
        return capabilities_for(self.channel_type)

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    def to_payload(self, address: str, message: OutboundMessage) -> dict[str, Any]:
        """Provider request body for one outbound message."""
        ...

    @abc.abstractmethod
    async def _do_send(self, payload: dict[str, Any], channel_id: Optional[str]) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    def parse_inbound(self, raw_payload: dict[str, Any], organization_id: str) -> list[InboundEvent]:
        ...

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        rate = config.get("rate_per_second", 0)
        if rate > 0:
            self._rate_limiter = TokenBucketRateLimiter(rate=rate, burst=config.get("burst", rate))
        self._initialized = True

    # ── Public send ───────────────────────────────────────────

    async def send(self, address: str, message: OutboundMessage,
                   channel_id: Optional[str] = None) -> dict[str, Any]:
        message_id = uuid.uuid4().hex
        start = time.monotonic()

        if self._rate_limiter and not await self._rate_limiter.acquire(timeout=10.0):
            self._metrics.record_failure("rate_limited")
            raise RateLimitedError(self.channel_type.value)

        if self._breaker.is_open:
            self._metrics.record_failure("circuit_open")
            raise CircuitOpenError(self.channel_type.value)

        payload = self.to_payload(address, message)
        last_error = ""
        for attempt in range(self.max_attempts):
            try:
                result = await self._do_send(payload, channel_id)
            except Exception as e:
                last_error = str(e)
                self._breaker.record_failure()
                logger.warning("channel_send_attempt_failed",
                               channel=self.channel_type.value,
                               attempt=attempt + 1,
                               error=last_error)
                if attempt < self.max_attempts - 1:
                    await asyncio.sleep(min(0.5 * (2 ** attempt), 5.0))
                continue

            latency = (time.monotonic() - start) * 1000
            self._breaker.record_success()
            self._metrics.record_send(latency)
            result.setdefault("message_id", message_id)
            result["attempts"] = attempt + 1
            logger.info("channel_message_sent",
                        channel=self.channel_type.value,
                        to=address,
                        message_type=message.type,
                        status=result.get("status"))
            return result

        self._metrics.record_failure(last_error)
        raise ChannelError(
            f"{self.channel_type.value} send failed after {self.max_attempts} attempts: {last_error}",
            self.channel_type.value,
            retryable=True,
        )

    def _sanitize(self, content: str) -> str:
        self._metrics.events_received += 1
        return self._sanitizer.sanitize(content)

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel_type.value,
            "initialized": self._initialized,
            "circuit_breaker": self._breaker.state,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    def __init__(self):
        self._adapters: dict[ChannelType, ChannelAdapter] = {}

    def register(self, adapter: ChannelAdapter):
        self._adapters[adapter.channel_type] = adapter

    def get(self, channel_type: ChannelType) -> Optional[ChannelAdapter]:
        return self._adapters.get(channel_type)

    def get_available(self) -> list[ChannelType]:
        return list(self._adapters.keys())

    async def health_check_all(self) -> dict[str, Any]:
        return {ch.value: await a.health_check() for ch, a in self._adapters.items()}

    async def initialize_all(self, configs: dict[str, Any]):
        for ch, adapter in self._adapters.items():
            try:
                ch_cfg = configs.get(ch.value, {})
                # ChannelConfig dataclass → dict so adapters can call .get()
                if hasattr(ch_cfg, "credentials"):
                    ch_cfg = ch_cfg.credentials
                await adapter.initialize(ch_cfg)
            except Exception as e:
                logger.error("channel_init_failed", channel=ch.value, error=str(e))

    async def shutdown_all(self):
        for adapter in self._adapters.values():
            try:
                await adapter.shutdown()
            except Exception as e:
                logger.warning("channel_shutdown_failed",
                               channel=adapter.channel_type.value, error=str(e))
