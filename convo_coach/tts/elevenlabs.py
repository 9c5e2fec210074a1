"""
ElevenLabs streaming TTS behind the speech playback interface.

Converts assistant replies to speech and hands the audio to a host sink,
with cancellation support and best-effort voice selection.
"""

import asyncio
import logging
from typing import AsyncGenerator, Awaitable, Callable, List, Mapping, Optional, Sequence

import aiohttp

from convo_coach.adapters import SpeechPlaybackAdapter
from convo_coach.config import settings

logger = logging.getLogger(__name__)

ELEVENLABS_API_URL = "https://api.elevenlabs.io/v1"

AudioSink = Callable[[bytes], Awaitable[None]]


def _voice_locale(voice: Mapping) -> str:
    """Language of a catalogue entry; unlabelled premade voices are English."""
    labels = voice.get("labels") or {}
    if labels.get("language"):
        return str(labels["language"]).lower()
    for verified in voice.get("verified_languages") or []:
        if verified.get("language"):
            return str(verified["language"]).lower()
    return "en"


def _voice_gender(voice: Mapping) -> str:
    labels = voice.get("labels") or {}
    return str(labels.get("gender") or "").lower()


def select_voice(
    voices: Sequence[Mapping],
    locale: str,
    gender: str,
    default_voice_id: str,
) -> str:
    """
    Pick the voice to speak with.

    Preference order:
    1. A voice labelled with the target locale and gender
    2. The configured default voice, if it speaks the locale
    3. Any voice speaking the locale
    4. The configured default voice id

    Args:
        voices: Entries from the /voices catalogue
        locale: Language prefix, e.g. "en"
        gender: Gender label, e.g. "female"
        default_voice_id: Configured fallback voice

    Returns:
        The chosen voice id
    """
    locale = (locale or "").lower()
    gender = (gender or "").lower()
    speaks_locale = [v for v in voices if v.get("voice_id") and _voice_locale(v).startswith(locale)]

    for voice in speaks_locale:
        if _voice_gender(voice) == gender:
            return voice["voice_id"]

    for voice in speaks_locale:
        if voice["voice_id"] == default_voice_id:
            return default_voice_id

    if speaks_locale:
        return speaks_locale[0]["voice_id"]

    return default_voice_id


class ElevenLabsPlaybackAdapter(SpeechPlaybackAdapter):
    """
    Speaks text through ElevenLabs streaming synthesis.

    Features:
    - Streaming audio generation with cancellation
    - Persistent HTTP session with connection pooling
    - Voice catalogue lookup cached per adapter, bounded by a timeout
    - Falls back to text-only (ended fires, no audio) on TTS failure
    """

    def __init__(
        self,
        audio_sink: AudioSink,
        api_key: Optional[str] = None,
        voice_id: Optional[str] = None,
        model: Optional[str] = None,
        locale: Optional[str] = None,
        gender: Optional[str] = None,
        lookup_timeout_s: Optional[float] = None,
    ):
        super().__init__()
        self.audio_sink = audio_sink
        self.api_key = api_key if api_key is not None else settings.elevenlabs_api_key
        self.voice_id = voice_id or settings.elevenlabs_voice_id
        self.model = model or settings.elevenlabs_model
        self.locale = locale or settings.voice_locale
        self.gender = gender or settings.voice_gender
        self.lookup_timeout_s = (
            settings.voice_lookup_timeout_s if lookup_timeout_s is None else lookup_timeout_s
        )

        self._session: Optional[aiohttp.ClientSession] = None
        self._resolved_voice_id: Optional[str] = None
        self._speak_task: Optional[asyncio.Task] = None
        self._cancel_event = asyncio.Event()
        self._speaking = False

    @property
    def is_speaking(self) -> bool:
        return self._speaking

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create persistent aiohttp session with connection pooling."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=5,
                ttl_dns_cache=300,
                keepalive_timeout=120,
            )
            timeout = aiohttp.ClientTimeout(
                total=30,
                connect=3,
                sock_read=10,
            )
            self._session = aiohttp.ClientSession(connector=connector, timeout=timeout)
            logger.info("Created persistent ElevenLabs session with connection pooling")
        return self._session

    async def close(self):
        """Cancel playback and close the persistent session."""
        await self.cancel()
        if self._session and not self._session.closed:
            await self._session.close()
            logger.info("Closed ElevenLabs persistent session")

    async def resolve_voice(self) -> str:
        """
        Voice id to speak with, looked up once.

        Any lookup failure or timeout falls back to the configured voice.
        """
        if self._resolved_voice_id is not None:
            return self._resolved_voice_id

        voice_id = self.voice_id
        if self.api_key:
            try:
                voices = await asyncio.wait_for(self._fetch_voices(), timeout=self.lookup_timeout_s)
                voice_id = select_voice(voices, self.locale, self.gender, self.voice_id)
            except asyncio.TimeoutError:
                logger.warning(f"Voice lookup timed out after {self.lookup_timeout_s}s - using configured voice")
            except (aiohttp.ClientError, ValueError) as e:
                logger.warning(f"Voice lookup failed (non-critical): {e}")

        self._resolved_voice_id = voice_id
        logger.info(f"Using ElevenLabs voice {voice_id}")
        return voice_id

    async def _fetch_voices(self) -> List[dict]:
        session = await self._get_session()
        async with session.get(
            f"{ELEVENLABS_API_URL}/voices",
            headers={"xi-api-key": self.api_key},
        ) as response:
            if response.status != 200:
                raise ValueError(f"voice catalogue returned {response.status}")
            data = await response.json()
        return data.get("voices", [])

    async def speak(self, text: str) -> None:
        """Start speaking text, cancelling any prior utterance."""
        await self.cancel()

        self._cancel_event = asyncio.Event()
        self._speaking = True
        self._speak_task = asyncio.create_task(self._speak(text, self._cancel_event))

    async def cancel(self) -> None:
        """Stop any utterance immediately. Ended is not reported."""
        self._cancel_event.set()
        task = self._speak_task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("TTS playback cancelled")
        self._speaking = False

    async def _speak(self, text: str, cancel_event: asyncio.Event):
        voice_id = await self.resolve_voice()
        chunk_count = 0
        try:
            async for chunk in self.generate_audio(text, voice_id, cancel_event):
                await self.audio_sink(chunk)
                chunk_count += 1
        except Exception as e:
            logger.error(f"Audio sink failed - ending playback early: {e}", exc_info=True)

        if cancel_event.is_set():
            return

        logger.info(f"TTS playback complete: {chunk_count} chunks")
        self._speaking = False
        await self._emit_ended()

    async def generate_audio(
        self,
        text: str,
        voice_id: str,
        cancel_event: asyncio.Event,
    ) -> AsyncGenerator[bytes, None]:
        """
        Generate streaming audio from text.

        Args:
            text: Text to convert to speech
            voice_id: Voice to synthesise with
            cancel_event: Event to signal cancellation

        Yields:
            Audio chunks as bytes (MPEG)
        """
        if not self.api_key:
            logger.warning("ElevenLabs API key not configured - text-only reply")
            return

        url = f"{ELEVENLABS_API_URL}/text-to-speech/{voice_id}/stream"
        payload = {
            "text": text,
            "model_id": self.model,
            "voice_settings": {
                "stability": 0.5,
                "similarity_boost": 0.75,
            },
        }
        headers = {
            "xi-api-key": self.api_key,
            "Content-Type": "application/json",
            "Accept": "audio/mpeg",
        }

        try:
            session = await self._get_session()
            async with session.post(url, headers=headers, json=payload) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"ElevenLabs API error {response.status}: {error_text}")
                    return

                async for chunk in response.content.iter_chunked(4096):
                    if cancel_event.is_set():
                        logger.info("TTS generation cancelled")
                        return
                    if chunk:
                        yield chunk

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Error during TTS generation: {e}")
