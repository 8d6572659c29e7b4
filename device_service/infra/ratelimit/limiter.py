"""Moving-window rate limiting backed by the ``limits`` library."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import time
from typing import TYPE_CHECKING, Any

from limits import RateLimitItem, RateLimitItemPerSecond
from limits.errors import StorageError
from limits.storage import MemoryStorage, storage_from_string
from limits.strategies import MovingWindowRateLimiter

from device_service.core.exceptions import RateLimited
from device_service.infra.metrics.prometheus import rate_limit_checks_total

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """Moving-window rate limiter.

    Storage is chosen by URI. ``memory://`` keeps counters in this process
    and expires them in the background; ``redis://host:6379/0`` shares them
    between instances.

    Attributes:
        storage: The ``limits`` storage backend.
        key_prefix: Prefix for every bucket key.
        default_limit: Default number of requests allowed per window.
        default_window: Default window length in seconds.

    Example:
        limiter = RateLimiter("memory://", key_prefix="realtime")
        allowed, meta = await limiter.check_limit("ws:conn-1", limit=100, window=60)
        if not allowed:
            print(f"Rate limited. Retry after {meta['retry_after']} seconds")
    """

    def __init__(
        self,
        storage_uri: str = "memory://",
        key_prefix: str = "ratelimit",
        default_limit: int = 100,
        default_window: int = 60,
    ) -> None:
        self.key_prefix = key_prefix
        self.default_limit = default_limit
        self.default_window = default_window
        self.storage = storage_from_string(storage_uri, wrap_exceptions=True)
        self.strategy = MovingWindowRateLimiter(self.storage)
        # Network storages block on I/O
        self._offload = not isinstance(self.storage, MemoryStorage)

    def _make_key(self, identifier: str) -> str:
        # Hash long identifiers to keep key size reasonable
        if len(identifier) > 50:
            identifier = hashlib.sha256(identifier.encode()).hexdigest()[:16]
        return f"{self.key_prefix}:{identifier}"

    def _item(self, limit: int | None, window: int | None) -> RateLimitItem:
        return RateLimitItemPerSecond(limit or self.default_limit, window or self.default_window)

    async def _run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        if self._offload:
            return await asyncio.to_thread(fn, *args, **kwargs)
        return fn(*args, **kwargs)

    async def check_limit(
        self,
        key: str,
        limit: int | None = None,
        window: int | None = None,
        cost: int = 1,
        scope: str = "unknown",
    ) -> tuple[bool, dict[str, int]]:
        """Record a request against ``key`` if it fits in the window.

        Args:
            key: Identifier to limit (connection id, client address).
            limit: Requests allowed per window (uses default if None).
            window: Window length in seconds (uses default if None).
            cost: Number of requests this call counts as.
            scope: Label for the checks metric.

        Returns:
            Tuple of (is_allowed, metadata) where metadata contains:
                - limit: The rate limit
                - remaining: Requests remaining in the window
                - reset: Unix timestamp when the oldest request leaves the window
                - retry_after: Seconds to wait before retrying (0 if allowed)
        """
        item = self._item(limit, window)
        bucket_key = self._make_key(key)

        try:
            allowed = await self._run(self.strategy.hit, item, bucket_key, cost=cost)
            stats = await self._run(self.strategy.get_window_stats, item, bucket_key)
        except StorageError as e:
            # If the storage is unavailable, log error and allow request
            logger.error(
                "Rate limit check failed, allowing request",
                extra={"key": key, "error": str(e)},
                exc_info=True,
            )
            return True, {
                "limit": item.amount,
                "remaining": max(item.amount - cost, 0),
                "reset": int(time.time() + item.get_expiry()),
                "retry_after": 0,
            }

        metadata = {
            "limit": item.amount,
            "remaining": stats.remaining,
            "reset": int(stats.reset_time),
            "retry_after": 0 if allowed else max(math.ceil(stats.reset_time - time.time()), 1),
        }

        rate_limit_checks_total.labels(scope=scope, allowed=str(allowed).lower()).inc()
        if not allowed:
            logger.warning(
                "Rate limit exceeded",
                extra={"key": key, "limit": item.amount, "window": item.get_expiry(), "scope": scope},
            )
        return allowed, metadata

    async def enforce(
        self,
        key: str,
        limit: int | None = None,
        window: int | None = None,
        scope: str = "unknown",
    ) -> dict[str, int]:
        """Like :meth:`check_limit` but raises when the limit is exceeded.

        Raises:
            RateLimited: With ``retry_after`` in seconds.
        """
        allowed, metadata = await self.check_limit(key, limit, window, scope=scope)
        if not allowed:
            raise RateLimited(retry_after=metadata["retry_after"])
        return metadata

    async def reset_limit(self, key: str, limit: int | None = None, window: int | None = None) -> bool:
        """Forget every recorded request for ``key`` under the given limit.

        Returns:
            True if the bucket was cleared.
        """
        try:
            await self._run(self.strategy.clear, self._item(limit, window), self._make_key(key))
        except StorageError:
            logger.error("Failed to reset rate limit", extra={"key": key}, exc_info=True)
            return False
        return True

    async def get_limit_info(self, key: str, limit: int | None = None, window: int | None = None) -> dict[str, int]:
        """Current window state for ``key`` without consuming a request."""
        item = self._item(limit, window)
        stats = await self._run(self.strategy.get_window_stats, item, self._make_key(key))
        return {
            "limit": item.amount,
            "remaining": stats.remaining,
            "reset": int(stats.reset_time),
            "current": item.amount - stats.remaining,
        }
