"""
Shared fakes for the turn-taking tests.

The fake capture and playback adapters record every call and flag any
moment where capture and playback are active together.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from convo_coach.adapters import CompletionBackend, SpeechCaptureAdapter, SpeechPlaybackAdapter
from convo_coach.errors import CompletionError
from convo_coach.models import RecognitionErrorKind
from convo_coach.orchestration.turn_controller import TurnController

CLEAN_REPLY = (
    "That sounds lovely! What did you buy there?\n"
    '{"grammarFix": "None", "betterPhrase": "None", "fluencyTip": "Try adding more detail."}'
)
CORRECTED_REPLY = (
    "Nice try! Did you enjoy it?\n"
    '{"grammarFix": "I went to the market", "betterPhrase": "I popped over to the market", '
    '"fluencyTip": "None"}'
)
PLAIN_REPLY = "Sorry, could you tell me more about that?"


class Monitor:
    """Collects invariant violations seen by the fakes."""

    def __init__(self):
        self.violations: List[str] = []
        self.capture: Optional["FakeCapture"] = None
        self.playback: Optional["FakePlayback"] = None

    def check(self, where: str):
        if self.capture and self.playback and self.capture.is_capturing and self.playback.is_speaking:
            self.violations.append(f"capturing while speaking ({where})")


class FakeCapture(SpeechCaptureAdapter):
    def __init__(self, monitor: Monitor):
        super().__init__()
        self.monitor = monitor
        self.start_calls = 0
        self.stop_calls = 0
        self.fail_on_start = False
        self._capturing = False

    @property
    def is_capturing(self) -> bool:
        return self._capturing

    async def start(self) -> None:
        self.start_calls += 1
        if self.fail_on_start:
            raise RuntimeError("microphone unavailable")
        self._capturing = True
        self.monitor.check("capture.start")

    async def stop(self) -> None:
        self.stop_calls += 1
        if not self._capturing:
            return
        self._capturing = False
        await self._emit_ended()

    async def interim(self, text: str):
        await self._emit_interim(text)

    async def final(self, text: str):
        await self._emit_final(text)

    async def error(self, kind: RecognitionErrorKind):
        if kind == RecognitionErrorKind.NO_SPEECH:
            self._capturing = False
        await self._emit_error(kind)


class FakePlayback(SpeechPlaybackAdapter):
    def __init__(self, monitor: Monitor, auto_finish_s: Optional[float] = None):
        super().__init__()
        self.monitor = monitor
        self.auto_finish_s = auto_finish_s
        self.spoken: List[str] = []
        self.cancel_calls = 0
        self._speaking = False
        self._finish_task: Optional[asyncio.Task] = None

    @property
    def is_speaking(self) -> bool:
        return self._speaking

    async def speak(self, text: str) -> None:
        self.spoken.append(text)
        self._speaking = True
        self.monitor.check("playback.speak")
        if self.auto_finish_s is not None:
            self._finish_task = asyncio.create_task(self._auto_finish())

    async def cancel(self) -> None:
        self.cancel_calls += 1
        self._speaking = False
        if self._finish_task and not self._finish_task.done():
            self._finish_task.cancel()

    async def finish(self):
        """Simulate the utterance ending on its own."""
        self._speaking = False
        await self._emit_ended()

    async def _auto_finish(self):
        await asyncio.sleep(self.auto_finish_s)
        await self.finish()


class ScriptedCompletion(CompletionBackend):
    """Returns queued replies in order; the last one repeats."""

    def __init__(self, *replies: str):
        self.replies = list(replies) or [PLAIN_REPLY]
        self.calls = []

    async def complete(self, system_prompt, messages):
        self.calls.append((system_prompt, list(messages)))
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]


class FailingCompletion(CompletionBackend):
    def __init__(self):
        self.calls = 0

    async def complete(self, system_prompt, messages):
        self.calls += 1
        raise CompletionError("service unavailable", status=503)


class GatedCompletion(CompletionBackend):
    """Blocks every request until release() is called."""

    def __init__(self, reply: str = CLEAN_REPLY):
        self.reply = reply
        self.started = asyncio.Event()
        self._gate = asyncio.Event()
        self.calls = []

    async def complete(self, system_prompt, messages):
        self.calls.append((system_prompt, list(messages)))
        self.started.set()
        await self._gate.wait()
        return self.reply

    def release(self):
        self._gate.set()


class FakeClock:
    """Deterministic clock for duration tests."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


async def wait_until(predicate, timeout: float = 1.0, interval: float = 0.005):
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def monitor():
    return Monitor()


@pytest.fixture
def capture(monitor):
    fake = FakeCapture(monitor)
    monitor.capture = fake
    return fake


@pytest.fixture
def playback(monitor):
    fake = FakePlayback(monitor)
    monitor.playback = fake
    return fake


@pytest.fixture
def make_controller(capture, playback, monitor):
    """Build a controller with short timers around the shared fakes."""

    def factory(completion=None, **kwargs) -> TurnController:
        options = dict(
            silence_debounce_ms=60,
            no_speech_restart_ms=20,
            playback_resume_delay_ms=20,
            send_greeting=False,
        )
        options.update(kwargs)
        user_on_state_change = options.pop("on_state_change", None)

        async def on_state_change(from_state, to_state):
            monitor.check(f"{from_state.value} -> {to_state.value}")
            if user_on_state_change:
                await user_on_state_change(from_state, to_state)

        return TurnController(
            capture,
            playback,
            completion or ScriptedCompletion(CLEAN_REPLY),
            on_state_change=on_state_change,
            **options,
        )

    return factory
