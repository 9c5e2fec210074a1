"""
Restartable one-shot timer used for silence detection.

Triggers auto-submission of the draft transcript after the configured
silence period. The same class drives the no-speech restart backoff and the
post-playback resume delay, which need identical start/restart/cancel
semantics.
"""

import asyncio
import inspect
import logging
from typing import Callable, Optional, Awaitable, Union

logger = logging.getLogger(__name__)


class SilenceTimer:
    """
    Manages a debounced countdown that fires a callback once.

    Key Features:
    - Fixed debounce duration (1500ms for silence detection)
    - start() while running restarts the countdown (debounce, not queueing)
    - Cancellable for mode toggles and session end
    - Callback may be sync or async
    """

    def __init__(
        self,
        on_silence_complete: Callable[[], Union[Awaitable[None], None]],
        debounce_ms: int = 1500,
        name: str = "silence",
    ):
        """
        Initialize silence timer.

        Args:
            on_silence_complete: Callback to invoke when the period completes
            debounce_ms: Countdown duration in milliseconds
            name: Label used in log lines
        """
        self.on_silence_complete = on_silence_complete
        self.debounce_ms = debounce_ms
        self.name = name

        self._timer_task: Optional[asyncio.Task] = None
        self._is_running = False
        self._override_ms: Optional[int] = None
        self._fire_count = 0

    def start(self, override_ms: Optional[int] = None):
        """
        Start the timer.

        If timer is already running, this restarts it (resets the countdown).

        Args:
            override_ms: If provided, use this duration instead of debounce_ms
        """
        # A callback restarting its own timer must not cancel itself
        if self._timer_task and not self._timer_task.done() and self._timer_task is not asyncio.current_task():
            self._timer_task.cancel()

        self._is_running = True
        self._override_ms = override_ms
        self._timer_task = asyncio.create_task(self._run_timer())
        duration = override_ms if override_ms is not None else self.debounce_ms
        logger.debug(f"{self.name} timer started: {duration}ms{' (override)' if override_ms is not None else ''}")

    def cancel(self):
        """
        Cancel the running timer.

        Used when a mode toggle or session end makes the pending fire stale.
        """
        if not self._is_running:
            return

        self._is_running = False

        if self._timer_task and not self._timer_task.done() and self._timer_task is not asyncio.current_task():
            self._timer_task.cancel()
            logger.debug(f"{self.name} timer cancelled")

    def is_running(self) -> bool:
        """Check if timer is currently active."""
        return self._is_running

    @property
    def fire_count(self) -> int:
        """Number of times the callback has been invoked."""
        return self._fire_count

    async def _run_timer(self):
        """
        Internal timer coroutine.

        Waits for the debounce period, then invokes callback if not cancelled.
        """
        try:
            duration_ms = self._override_ms if self._override_ms is not None else self.debounce_ms
            await asyncio.sleep(duration_ms / 1000.0)

            # Still running means nobody cancelled during the sleep
            if self._is_running:
                logger.debug(f"{self.name} period complete - triggering callback")
                self._is_running = False
                self._fire_count += 1
                result = self.on_silence_complete()
                if inspect.isawaitable(result):
                    await result

        except asyncio.CancelledError:
            logger.debug(f"{self.name} timer task cancelled")
        except Exception as e:
            logger.error(f"Error in {self.name} timer callback: {e}", exc_info=True)

    def __repr__(self) -> str:
        status = "running" if self._is_running else "idle"
        return f"SilenceTimer(name={self.name}, debounce={self.debounce_ms}ms, status={status})"
