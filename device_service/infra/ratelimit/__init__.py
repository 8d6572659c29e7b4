"""Rate limiting for realtime handshakes and client operations."""

from device_service.infra.ratelimit.limiter import RateLimiter

__all__ = ["RateLimiter"]
