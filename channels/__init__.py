"""Outbound delivery adapters."""
from channels.base import (
    ChannelError,
    DeliveryAdapter,
    DeliveryError,
    DeliveryReceipt,
    DeliveryTimeout,
    RateLimitedError,
    TokenBucketRateLimiter,
    ChannelMetrics,
)
from channels.whatsapp_adapter import WhatsAppAdapter

__all__ = [
    "ChannelError", "DeliveryAdapter", "DeliveryError", "DeliveryReceipt",
    "DeliveryTimeout", "RateLimitedError",
    "TokenBucketRateLimiter", "ChannelMetrics",
    "WhatsAppAdapter",
]
