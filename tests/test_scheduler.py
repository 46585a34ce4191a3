"""Tests for per-account background refresh scheduling."""

from __future__ import annotations

import asyncio

from unittest.mock import AsyncMock

import pytest

from deskauth.scheduler import RefreshScheduler
from deskauth.types import TokenSet, now_ms
from tests.conftest import make_tokens


T0 = 1_700_000_000_000


class TestDelay:
    """Delay arithmetic."""

    def test_delay_is_expiry_minus_lead(self) -> None:
        scheduler = RefreshScheduler(AsyncMock(), lead_time_ms=300_000)
        assert scheduler.delay_for(T0 + 3_600_000, at_ms=T0) == 3300.0

    def test_delay_never_negative(self) -> None:
        scheduler = RefreshScheduler(AsyncMock(), lead_time_ms=300_000)
        assert scheduler.delay_for(T0 + 60_000, at_ms=T0) == 0
        assert scheduler.delay_for(T0 - 1, at_ms=T0) == 0


class TestArm:
    """Arming, firing and re-arming timers."""

    @pytest.mark.asyncio
    async def test_fires_and_rearms(self) -> None:
        fresh = make_tokens("at_fresh", expires_in_ms=3_600_000)
        refresh = AsyncMock(return_value=fresh)
        scheduler = RefreshScheduler(refresh, lead_time_ms=0)

        first = scheduler.arm("gmail_1", now_ms() + 20)
        await asyncio.sleep(0.2)

        refresh.assert_awaited_once_with("gmail_1")
        assert first.fired
        second = scheduler.pending("gmail_1")
        assert second is not None
        assert second is not first
        assert second.fires_at >= fresh.expires_at - 1000
        scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_rearm_respects_floor(self) -> None:
        """Tokens that expire immediately again are not refreshed in a tight loop."""
        refresh = AsyncMock(return_value=make_tokens(expires_in_ms=0))
        scheduler = RefreshScheduler(refresh, lead_time_ms=0, rearm_floor_seconds=30.0)

        scheduler.arm("gmail_1", now_ms())
        await asyncio.sleep(0.2)

        assert refresh.await_count == 1
        handle = scheduler.pending("gmail_1")
        assert handle is not None
        assert handle.fires_at >= now_ms() + 29_000
        scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_failure_does_not_rearm(self) -> None:
        refresh = AsyncMock(return_value=None)
        scheduler = RefreshScheduler(refresh, lead_time_ms=0)

        scheduler.arm("gmail_1", now_ms())
        await asyncio.sleep(0.1)

        assert refresh.await_count == 1
        assert scheduler.pending("gmail_1") is None
        assert len(scheduler) == 0

    @pytest.mark.asyncio
    async def test_callback_exception_does_not_rearm(self) -> None:
        refresh = AsyncMock(side_effect=RuntimeError("boom"))
        scheduler = RefreshScheduler(refresh, lead_time_ms=0)

        scheduler.arm("gmail_1", now_ms())
        await asyncio.sleep(0.1)

        assert scheduler.pending("gmail_1") is None

    @pytest.mark.asyncio
    async def test_arm_replaces_existing(self) -> None:
        refresh = AsyncMock(return_value=None)
        scheduler = RefreshScheduler(refresh, lead_time_ms=0)

        old = scheduler.arm("gmail_1", now_ms() + 60_000)
        new = scheduler.arm("gmail_1", now_ms() + 120_000)

        assert old.cancelled
        assert scheduler.pending("gmail_1") is new
        assert len(scheduler) == 1
        scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_one_timer_per_account(self) -> None:
        scheduler = RefreshScheduler(AsyncMock(return_value=None))
        scheduler.arm("gmail_1", now_ms() + 3_600_000)
        scheduler.arm("gmail_2", now_ms() + 3_600_000)
        assert len(scheduler) == 2
        scheduler.cancel_all()
        assert len(scheduler) == 0


class TestCancel:
    """Cancelling timers and in-flight refreshes."""

    @pytest.mark.asyncio
    async def test_cancelled_timer_never_fires(self) -> None:
        refresh = AsyncMock(return_value=None)
        scheduler = RefreshScheduler(refresh, lead_time_ms=0)

        handle = scheduler.arm("gmail_1", now_ms() + 30)
        assert scheduler.cancel("gmail_1")
        await asyncio.sleep(0.1)

        refresh.assert_not_awaited()
        assert handle.cancelled
        assert not handle.fired

    @pytest.mark.asyncio
    async def test_cancel_unknown(self) -> None:
        assert not RefreshScheduler(AsyncMock()).cancel("gmail_zzz")

    @pytest.mark.asyncio
    async def test_cancel_interrupts_running_refresh(self) -> None:
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def refresh(_account_id: str) -> None:
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        scheduler = RefreshScheduler(refresh, lead_time_ms=0)
        scheduler.arm("gmail_1", now_ms())
        await asyncio.wait_for(started.wait(), 1.0)

        scheduler.cancel("gmail_1")

        await asyncio.wait_for(cancelled.wait(), 1.0)
        assert scheduler.pending("gmail_1") is None

    @pytest.mark.asyncio
    async def test_refresh_rearming_itself_is_not_cancelled(self) -> None:
        """A callback that arms its own account (as the manager does) completes."""
        scheduler: RefreshScheduler
        done = asyncio.Event()
        fresh = make_tokens(expires_in_ms=3_600_000)

        async def refresh(account_id: str) -> TokenSet:
            scheduler.arm(account_id, fresh.expires_at, min_delay=30.0)
            await asyncio.sleep(0)
            done.set()
            return fresh

        scheduler = RefreshScheduler(refresh, lead_time_ms=0)
        scheduler.arm("gmail_1", now_ms())
        await asyncio.wait_for(done.wait(), 1.0)
        await asyncio.sleep(0.05)

        assert scheduler.pending("gmail_1") is not None
        scheduler.cancel_all()
