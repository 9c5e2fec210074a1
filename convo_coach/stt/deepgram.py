"""
Deepgram live transcription behind the speech capture interface.

Uses the /v1/listen streaming endpoint with interim results enabled:
- Results with is_final=false → interim transcript (draft display)
- Results with is_final=true  → final transcript (restarts the silence timer)

Silence detection stays in the turn controller, so no endpointing or
utterance-end events are requested. A watchdog reports a no-speech error
when nothing has been transcribed for a while, after which the stream is
closed and the controller decides whether to restart it.
"""

import asyncio
import json
import logging
from typing import AsyncIterator, Callable, Optional

from websockets import connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from convo_coach.adapters import SpeechCaptureAdapter
from convo_coach.config import settings
from convo_coach.models import RecognitionErrorKind

logger = logging.getLogger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"

AudioSource = Callable[[], AsyncIterator[bytes]]


class DeepgramCaptureAdapter(SpeechCaptureAdapter):
    """
    Streams microphone audio to Deepgram and reports transcripts.

    Features:
    - One websocket per start()/stop() cycle
    - Audio pulled from an async iterator factory (PCM 16kHz mono)
    - No-speech watchdog mirroring browser recognition behaviour
    - Connection failures surface as network recognition errors
    """

    def __init__(
        self,
        audio_source: AudioSource,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        language: Optional[str] = None,
        no_speech_timeout_s: Optional[float] = None,
        sample_rate: int = 16000,
        connector=connect,
    ):
        """
        Args:
            audio_source: Called on every start(); yields raw audio chunks
            api_key: Overrides settings.deepgram_api_key
            model: Overrides settings.deepgram_model
            language: Overrides settings.capture_language
            no_speech_timeout_s: Overrides settings.no_speech_timeout_s
            sample_rate: Sample rate of the linear16 audio
            connector: Websocket connect function (replaceable in tests)
        """
        super().__init__()
        self.audio_source = audio_source
        self.api_key = api_key if api_key is not None else settings.deepgram_api_key
        self.model = model or settings.deepgram_model
        self.language = language or settings.capture_language
        self.no_speech_timeout_s = (
            settings.no_speech_timeout_s if no_speech_timeout_s is None else no_speech_timeout_s
        )
        self.sample_rate = sample_rate
        self._connector = connector

        self.ws = None
        self._capturing = False
        self._closing = False
        self._starting = False
        self._stop_requested = False
        self._send_task: Optional[asyncio.Task] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._last_activity = 0.0
        self._audio_chunks_sent = 0

    @property
    def is_capturing(self) -> bool:
        return self._capturing

    def build_url(self) -> str:
        params = {
            "model": self.model,
            "language": self.language,
            "encoding": "linear16",
            "sample_rate": self.sample_rate,
            "channels": 1,
            "interim_results": "true",
            "punctuate": "true",
            "smart_format": "true",
        }
        query_string = "&".join(f"{k}={v}" for k, v in params.items())
        return f"{DEEPGRAM_LISTEN_URL}?{query_string}"

    async def start(self) -> None:
        """
        Open the stream. No-op when already capturing or connecting.

        A stop() that arrives while the websocket is still connecting wins:
        the new connection is closed as soon as it opens.
        """
        if self._starting:
            # A later start() overrides a stop() issued mid-connect
            self._stop_requested = False
            return
        if self._capturing:
            logger.debug("Capture already running")
            return

        if not self.api_key:
            logger.error("Deepgram API key not configured")
            await self._emit_error(RecognitionErrorKind.NOT_ALLOWED)
            return

        url = self.build_url()
        self._starting = True
        self._stop_requested = False
        try:
            ws = await self._connector(
                url,
                additional_headers={"Authorization": f"Token {self.api_key}"},
                ping_interval=10,
                ping_timeout=5,
            )
        except Exception as e:
            self._starting = False
            logger.error(f"Failed to connect to Deepgram: {e}")
            await self._emit_error(RecognitionErrorKind.NETWORK)
            return
        self._starting = False

        if self._stop_requested:
            logger.info("Capture stopped while connecting - closing Deepgram stream")
            try:
                await ws.close()
            except Exception as e:
                logger.warning(f"Error closing abandoned Deepgram stream: {e}")
            return

        self.ws = ws
        self._capturing = True
        self._closing = False
        self._audio_chunks_sent = 0
        self._last_activity = asyncio.get_running_loop().time()
        logger.info(f"Connected to Deepgram ({self.model}, {self.language})")

        self._receive_task = asyncio.create_task(self._receive_loop())
        self._send_task = asyncio.create_task(self._send_loop())
        self._watchdog_task = asyncio.create_task(self._no_speech_watchdog())

    async def stop(self) -> None:
        """Close the stream, or abandon a connection still being opened."""
        if self._starting:
            logger.debug("Stop requested while connecting to Deepgram")
            self._stop_requested = True
            return
        if not self._capturing:
            return
        await self._shutdown(reason="stopped")

    async def _shutdown(self, reason: str):
        """Tear the stream down once and report ended."""
        if self._closing:
            return
        self._closing = True
        self._capturing = False

        if self.ws:
            try:
                await self.ws.send(json.dumps({"type": "CloseStream"}))
                await self.ws.close()
            except Exception as e:
                logger.warning(f"Error during Deepgram disconnect: {e}")

        current = asyncio.current_task()
        for task in (self._send_task, self._receive_task, self._watchdog_task):
            if task and not task.done() and task is not current:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self.ws = None
        logger.info(f"Deepgram capture ended ({reason}, {self._audio_chunks_sent} chunks sent)")
        await self._emit_ended()

    async def _send_loop(self):
        """Forward audio chunks until the source is exhausted or capture stops."""
        try:
            async for chunk in self.audio_source():
                if self._closing or not self.ws:
                    break
                await self.ws.send(chunk)
                self._audio_chunks_sent += 1
                if self._audio_chunks_sent == 1:
                    logger.debug(f"First audio chunk sent to Deepgram: {len(chunk)} bytes")
        except asyncio.CancelledError:
            logger.debug("Audio send loop cancelled")
        except ConnectionClosed:
            logger.debug("Audio send loop stopped: connection closed")
        except Exception as e:
            logger.error(f"Error sending audio to Deepgram: {e}")
            if not self._closing:
                await self._emit_error(RecognitionErrorKind.AUDIO_CAPTURE)
                await self._shutdown(reason="audio source failed")

    async def _receive_loop(self):
        """Read transcription messages until the connection closes."""
        try:
            while not self._closing and self.ws:
                message = await self.ws.recv()
                await self._process_message(message)
        except asyncio.CancelledError:
            logger.debug("Deepgram receive loop cancelled")
        except ConnectionClosedOK:
            if not self._closing:
                logger.info("Deepgram closed the stream")
                await self._shutdown(reason="remote close")
        except WebSocketException as e:
            if not self._closing:
                logger.error(f"Deepgram WebSocket error: {e}")
                await self._emit_error(RecognitionErrorKind.NETWORK)
                await self._shutdown(reason="connection error")

    async def _process_message(self, message):
        try:
            data = json.loads(message)
        except (json.JSONDecodeError, TypeError) as e:
            logger.error(f"Failed to decode Deepgram message: {e}")
            return

        msg_type = data.get("type", "")
        if msg_type == "Results":
            await self._handle_results(data)
        elif msg_type == "Metadata":
            logger.debug(f"Deepgram metadata: {data}")
        elif msg_type == "Error":
            logger.error(f"Deepgram error: {data.get('description') or data.get('message')}")
            await self._emit_error(RecognitionErrorKind.OTHER)
            await self._shutdown(reason="service error")
        else:
            logger.debug(f"Unhandled Deepgram message type: {msg_type}")

    async def _handle_results(self, data: dict):
        alternatives = data.get("channel", {}).get("alternatives", [])
        if not alternatives:
            return

        transcript = (alternatives[0].get("transcript") or "").strip()
        if not transcript:
            return

        self._last_activity = asyncio.get_running_loop().time()
        if data.get("is_final", False):
            logger.debug(f"Deepgram final: '{transcript}'")
            await self._emit_final(transcript)
        else:
            await self._emit_interim(transcript)

    async def _no_speech_watchdog(self):
        """Report no-speech after a quiet stretch, then close the stream."""
        loop = asyncio.get_running_loop()
        try:
            while not self._closing:
                remaining = self._last_activity + self.no_speech_timeout_s - loop.time()
                if remaining <= 0:
                    logger.info(f"No speech for {self.no_speech_timeout_s}s")
                    await self._emit_error(RecognitionErrorKind.NO_SPEECH)
                    await self._shutdown(reason="no speech")
                    return
                await asyncio.sleep(remaining)
        except asyncio.CancelledError:
            logger.debug("No-speech watchdog cancelled")
