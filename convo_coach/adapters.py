"""
Capability interfaces the turn-taking engine talks to.

Concrete speech engines (cloud or on-device) and language model clients
plug in behind these base classes without the engine changing.
"""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Mapping, Optional, Sequence

from convo_coach.models import RecognitionErrorKind

TextHandler = Callable[[str], Awaitable[None]]
ErrorHandler = Callable[[RecognitionErrorKind], Awaitable[None]]
EndedHandler = Callable[[], Awaitable[None]]


class SpeechCaptureAdapter(ABC):
    """
    Continuous speech-to-text capability.

    Subclasses implement start()/stop() and report recognition through the
    _emit_* helpers. Both start() and stop() must be idempotent.
    """

    def __init__(self):
        self._on_interim: Optional[TextHandler] = None
        self._on_final: Optional[TextHandler] = None
        self._on_error: Optional[ErrorHandler] = None
        self._on_ended: Optional[EndedHandler] = None

    def attach(
        self,
        on_interim: TextHandler,
        on_final: TextHandler,
        on_error: ErrorHandler,
        on_ended: EndedHandler,
    ) -> None:
        """Bind the event listener (one per adapter)."""
        self._on_interim = on_interim
        self._on_final = on_final
        self._on_error = on_error
        self._on_ended = on_ended

    @abstractmethod
    async def start(self) -> None:
        """Begin capturing. No-op when already capturing."""

    @abstractmethod
    async def stop(self) -> None:
        """
        Stop capturing. No-op when not capturing.

        A stop() issued while start() is still pending must leave the
        microphone closed once start() returns.
        """

    @property
    @abstractmethod
    def is_capturing(self) -> bool:
        """True while the microphone is open."""

    async def _emit_interim(self, text: str) -> None:
        if self._on_interim:
            await self._on_interim(text)

    async def _emit_final(self, text: str) -> None:
        if self._on_final:
            await self._on_final(text)

    async def _emit_error(self, kind: RecognitionErrorKind) -> None:
        if self._on_error:
            await self._on_error(kind)

    async def _emit_ended(self) -> None:
        if self._on_ended:
            await self._on_ended()


class SpeechPlaybackAdapter(ABC):
    """
    Text-to-speech capability.

    speak() replaces any utterance in progress. The ended event fires only
    when an utterance finishes on its own, never after cancel().
    """

    def __init__(self):
        self._on_ended: Optional[EndedHandler] = None

    def attach(self, on_ended: EndedHandler) -> None:
        """Bind the playback-completion listener."""
        self._on_ended = on_ended

    @abstractmethod
    async def speak(self, text: str) -> None:
        """Start speaking text, cancelling any prior utterance."""

    @abstractmethod
    async def cancel(self) -> None:
        """Stop any utterance immediately. Idempotent."""

    @property
    @abstractmethod
    def is_speaking(self) -> bool:
        """True while audio is being produced."""

    async def _emit_ended(self) -> None:
        if self._on_ended:
            await self._on_ended()


class CompletionBackend(ABC):
    """Remote language model returning one text completion per request."""

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        messages: Sequence[Mapping[str, str]],
    ) -> str:
        """
        Return the raw completion text.

        Raises:
            CompletionError: On any failure
        """

    async def close(self) -> None:
        """Release network resources."""
