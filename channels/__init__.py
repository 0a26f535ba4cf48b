"""Channel adapters, capability descriptors and the menu renderer."""
from channels.base import (
    ChannelAdapter,
    ChannelRegistry,
    ChannelError,
    RateLimitedError,
    CircuitOpenError,
    TokenBucketRateLimiter,
    CircuitBreaker,
    ChannelMetrics,
)
from channels.capabilities import ChannelCapabilities, capabilities_for
from channels.renderer import MessageRenderer
from channels.whatsapp_adapter import WhatsAppAdapter
from channels.meta_adapter import MessengerAdapter, InstagramAdapter
from channels.widget_adapter import WidgetAdapter

__all__ = [
    "ChannelAdapter", "ChannelRegistry", "ChannelError",
    "RateLimitedError", "CircuitOpenError",
    "TokenBucketRateLimiter", "CircuitBreaker", "ChannelMetrics",
    "ChannelCapabilities", "capabilities_for", "MessageRenderer",
    "WhatsAppAdapter", "MessengerAdapter", "InstagramAdapter", "WidgetAdapter",
]
