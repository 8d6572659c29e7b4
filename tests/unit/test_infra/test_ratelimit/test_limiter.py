"""Tests for the moving-window rate limiter on in-memory storage."""

from __future__ import annotations

import asyncio
import hashlib
from unittest.mock import patch

import pytest
from limits.errors import StorageError
from limits.storage import MemoryStorage

from device_service.core.exceptions import RateLimited
from device_service.infra.ratelimit import RateLimiter


@pytest.fixture
def limiter() -> RateLimiter:
    return RateLimiter("memory://", key_prefix="test", default_limit=3, default_window=60)


class TestCheckLimit:
    def test_memory_storage_runs_inline(self, limiter):
        assert isinstance(limiter.storage, MemoryStorage)
        assert limiter._offload is False

    @pytest.mark.asyncio
    async def test_allows_up_to_limit(self, limiter):
        results = [await limiter.check_limit("client") for _ in range(4)]

        assert [allowed for allowed, _ in results] == [True, True, True, False]
        assert [meta["remaining"] for _, meta in results] == [2, 1, 0, 0]

    @pytest.mark.asyncio
    async def test_denied_request_reports_retry_after(self, limiter):
        for _ in range(3):
            await limiter.check_limit("client")

        allowed, meta = await limiter.check_limit("client")

        assert not allowed
        assert meta["limit"] == 3
        assert 1 <= meta["retry_after"] <= 60

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, limiter):
        for _ in range(3):
            await limiter.check_limit("a")

        allowed, _ = await limiter.check_limit("b")

        assert allowed

    @pytest.mark.asyncio
    async def test_window_slides(self, limiter):
        for _ in range(3):
            await limiter.check_limit("client", window=1)

        assert not (await limiter.check_limit("client", window=1))[0]
        await asyncio.sleep(1.1)
        assert (await limiter.check_limit("client", window=1))[0]

    @pytest.mark.asyncio
    async def test_cost_counts_multiple_hits(self, limiter):
        allowed, meta = await limiter.check_limit("client", cost=3)

        assert allowed
        assert meta["remaining"] == 0
        assert not (await limiter.check_limit("client"))[0]

    def test_long_identifiers_are_hashed(self, limiter):
        key = "x" * 200

        bucket = limiter._make_key(key)

        assert bucket == f"test:{hashlib.sha256(key.encode()).hexdigest()[:16]}"
        assert limiter._make_key("short") == "test:short"

    @pytest.mark.asyncio
    async def test_storage_failure_allows_request(self, limiter, caplog):
        with patch.object(limiter.strategy, "hit", side_effect=StorageError(ConnectionError("storage down"))):
            allowed, meta = await limiter.check_limit("client")

        assert allowed
        assert meta["retry_after"] == 0
        assert "Rate limit check failed" in caplog.text


class TestEnforce:
    @pytest.mark.asyncio
    async def test_raises_when_exceeded(self, limiter):
        for _ in range(3):
            await limiter.enforce("client")

        with pytest.raises(RateLimited) as exc_info:
            await limiter.enforce("client")

        assert exc_info.value.status_code == 429
        assert exc_info.value.close_code == 4429
        assert exc_info.value.extra["retry_after"] >= 1


class TestResetAndInfo:
    @pytest.mark.asyncio
    async def test_reset_clears_key(self, limiter):
        for _ in range(3):
            await limiter.enforce("client")

        assert await limiter.reset_limit("client") is True

        assert (await limiter.enforce("client"))["remaining"] == 2

    @pytest.mark.asyncio
    async def test_limit_info_does_not_consume(self, limiter):
        await limiter.check_limit("client")

        first = await limiter.get_limit_info("client")
        second = await limiter.get_limit_info("client")

        assert first == second
        assert first["current"] == 1
        assert first["remaining"] == 2
