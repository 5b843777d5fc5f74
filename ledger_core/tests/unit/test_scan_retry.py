"""Tests for ledger_core.retry."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from ledger_core.config import LedgerSettings
from ledger_core.errors import ReconciliationConflict, ScanIOError, ScanTimeout
from ledger_core.retry import RetryConfig, async_retry_with_backoff, compute_delay

_FAST = RetryConfig(max_retries=2, base_delay=0.01, max_delay=0.02, jitter=False)


class TestComputeDelay:
    def test_exponential_growth_capped(self) -> None:
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False)
        assert [compute_delay(n, config) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_within_bounds(self) -> None:
        config = RetryConfig(base_delay=2.0, max_delay=60.0, jitter=True)
        for _ in range(50):
            assert 1.0 <= compute_delay(0, config) <= 3.0

    def test_from_settings(self) -> None:
        settings = LedgerSettings(_env_file=None, max_retries=5, retry_backoff_base=0.5)  # type: ignore[call-arg]
        config = RetryConfig.from_settings(settings)
        assert config.max_retries == 5
        assert config.base_delay == 0.5


class TestAsyncRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self) -> None:
        fn = AsyncMock(return_value=42)
        assert await async_retry_with_backoff(fn, _FAST) == 42
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_retries_scan_errors(self) -> None:
        fn = AsyncMock(side_effect=[ScanTimeout("slow"), ScanIOError("io"), "ok"])
        with patch("ledger_core.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await async_retry_with_backoff(fn, _FAST) == "ok"
        assert fn.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last(self) -> None:
        fn = AsyncMock(side_effect=[ScanIOError("one"), ScanIOError("two"), ScanIOError("three")])
        with patch("ledger_core.retry.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(ScanIOError, match="three"):
                await async_retry_with_backoff(fn, _FAST, description="test scan")
        assert fn.await_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_immediately(self) -> None:
        fn = AsyncMock(side_effect=ReconciliationConflict("T1", "capacity_tokens"))
        with pytest.raises(ReconciliationConflict):
            await async_retry_with_backoff(fn, _FAST)
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_zero_retries(self) -> None:
        fn = AsyncMock(side_effect=ScanIOError("down"))
        with pytest.raises(ScanIOError):
            await async_retry_with_backoff(fn, RetryConfig(max_retries=0))
        assert fn.await_count == 1
