"""
Unit tests for SilenceTimer.

Tests debounce restart and cancellation behavior.
"""

import asyncio

import pytest

from convo_coach.orchestration.silence_timer import SilenceTimer


class TestSilenceTimer:
    """Test silence timer functionality."""

    @pytest.mark.asyncio
    async def test_timer_completion(self):
        """Test timer fires callback after debounce period."""
        completed = False

        def on_complete():
            nonlocal completed
            completed = True

        timer = SilenceTimer(on_complete, debounce_ms=50)
        timer.start()

        assert timer.is_running()
        await asyncio.sleep(0.1)

        assert completed
        assert not timer.is_running()
        assert timer.fire_count == 1

    @pytest.mark.asyncio
    async def test_async_callback(self):
        """Async callbacks are awaited."""
        completed = asyncio.Event()

        async def on_complete():
            completed.set()

        timer = SilenceTimer(on_complete, debounce_ms=20)
        timer.start()

        await asyncio.wait_for(completed.wait(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_timer_cancellation(self):
        """Test timer can be cancelled before completion."""
        completed = False

        def on_complete():
            nonlocal completed
            completed = True

        timer = SilenceTimer(on_complete, debounce_ms=100)
        timer.start()

        await asyncio.sleep(0.03)
        timer.cancel()

        await asyncio.sleep(0.1)

        assert not completed
        assert not timer.is_running()
        assert timer.fire_count == 0

    @pytest.mark.asyncio
    async def test_timer_restart(self):
        """Test starting timer again restarts the countdown."""
        completed = []

        def on_complete():
            completed.append(True)

        timer = SilenceTimer(on_complete, debounce_ms=100)
        timer.start()

        await asyncio.sleep(0.05)
        timer.start()
        assert timer.is_running()

        await asyncio.sleep(0.07)
        # Original deadline has passed but the restarted countdown has not
        assert completed == []

        await asyncio.sleep(0.08)
        assert len(completed) == 1
        assert not timer.is_running()

    @pytest.mark.asyncio
    async def test_override_duration(self):
        """An override applies to a single start."""
        completed = []
        timer = SilenceTimer(lambda: completed.append(True), debounce_ms=1000)
        timer.start(override_ms=20)

        await asyncio.sleep(0.08)
        assert completed == [True]

    @pytest.mark.asyncio
    async def test_callback_can_restart_its_own_timer(self):
        """Restarting from inside the callback schedules a new fire."""
        fires = []
        timer = None

        def on_complete():
            fires.append(True)
            if len(fires) < 3:
                timer.start()

        timer = SilenceTimer(on_complete, debounce_ms=20)
        timer.start()

        await asyncio.sleep(0.2)
        assert len(fires) == 3
        assert timer.fire_count == 3

    @pytest.mark.asyncio
    async def test_callback_error_is_contained(self):
        """A failing callback is logged, not raised into the loop."""
        def on_complete():
            raise RuntimeError("boom")

        timer = SilenceTimer(on_complete, debounce_ms=10)
        timer.start()
        await asyncio.sleep(0.05)

        assert not timer.is_running()
        assert timer.fire_count == 1

    def test_cancel_when_idle_is_noop(self):
        timer = SilenceTimer(lambda: None, debounce_ms=500)
        timer.cancel()
        assert not timer.is_running()

    def test_repr(self):
        timer = SilenceTimer(lambda: None, debounce_ms=500, name="resume")
        assert "resume" in repr(timer)
        assert "500ms" in repr(timer)
