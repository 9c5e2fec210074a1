"""
Turn Controller - the conversational turn-taking engine.

Coordinates, for one practice session:
- Voice state machine transitions
- Continuous speech capture and silence-triggered submission
- Completion requests and feedback extraction
- Speech playback with echo prevention
- Mode toggles (voice/text, microphone mute) and session end

Critical: capture is never running while the assistant is speaking. Capture
stops before playback starts and resumes only after playback has ended and
a short delay has passed.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from convo_coach.adapters import CompletionBackend, SpeechCaptureAdapter, SpeechPlaybackAdapter
from convo_coach.config import settings
from convo_coach.feedback import extract_feedback
from convo_coach.llm.prompts import build_system_prompt, welcome_message
from convo_coach.models import (
    Preferences,
    RecognitionErrorKind,
    SessionSummary,
    Speaker,
    Turn,
    utc_now,
)
from convo_coach.orchestration.conversation_log import ConversationLog
from convo_coach.orchestration.session_summarizer import SessionSummarizer
from convo_coach.orchestration.silence_timer import SilenceTimer
from convo_coach.orchestration.transcript_buffer import TranscriptBuffer
from convo_coach.state_machine import StateMachine, VoiceState

logger = logging.getLogger(__name__)

ERROR_PLACEHOLDER_TEXT = "I'm having trouble connecting right now. Could you try saying that again?"

_UNSET = object()


class TurnController:
    """
    Orchestrates turn-taking between the learner and the AI partner.

    State Flow:
    voice mode: IDLE → LISTENING → PROCESSING → SPEAKING → IDLE → LISTENING
    text mode:  IDLE → PROCESSING → IDLE

    One session per instance. The processing guard serializes round trips,
    so the conversation log is only mutated by one completion at a time.
    """

    def __init__(
        self,
        capture: SpeechCaptureAdapter,
        playback: SpeechPlaybackAdapter,
        completion: CompletionBackend,
        preferences: Optional[Preferences] = None,
        summarizer: Optional[SessionSummarizer] = None,
        voice_mode: bool = True,
        send_greeting: Optional[bool] = None,
        silence_debounce_ms: Optional[int] = None,
        no_speech_restart_ms: Optional[int] = None,
        playback_resume_delay_ms: Optional[int] = None,
        max_no_speech_restarts=_UNSET,
        on_state_change: Optional[Callable[[VoiceState, VoiceState], Awaitable[None]]] = None,
        on_draft: Optional[Callable[[str], Awaitable[None]]] = None,
        on_turn: Optional[Callable[[Turn], Awaitable[None]]] = None,
        on_error: Optional[Callable[[str, str], Awaitable[None]]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        # Collaborators
        self.capture = capture
        self.playback = playback
        self.completion = completion
        self.preferences = preferences
        self.summarizer = summarizer or SessionSummarizer(clock=clock)

        # Callbacks
        self.on_state_change = on_state_change
        self.on_draft = on_draft
        self.on_turn = on_turn
        self.on_error = on_error

        # Core components
        self.state_machine = StateMachine()
        self.transcript_buffer = TranscriptBuffer()
        self.conversation_log = ConversationLog()
        self.state_machine.register_on_transition(self._notify_state_change)

        # Timers
        self.silence_timer = SilenceTimer(
            on_silence_complete=self._on_silence_complete,
            debounce_ms=settings.silence_debounce_ms if silence_debounce_ms is None else silence_debounce_ms,
            name="silence",
        )
        self.restart_timer = SilenceTimer(
            on_silence_complete=self._restart_capture,
            debounce_ms=settings.no_speech_restart_ms if no_speech_restart_ms is None else no_speech_restart_ms,
            name="no-speech restart",
        )
        self.resume_timer = SilenceTimer(
            on_silence_complete=self._resume_listening,
            debounce_ms=(
                settings.playback_resume_delay_ms
                if playback_resume_delay_ms is None else playback_resume_delay_ms
            ),
            name="playback resume",
        )
        self.max_no_speech_restarts = (
            settings.max_no_speech_restarts
            if max_no_speech_restarts is _UNSET else max_no_speech_restarts
        )

        # Mode flags
        self.voice_mode = voice_mode
        self.mic_enabled = True
        self.send_greeting = settings.send_greeting if send_greeting is None else send_greeting

        # Session lifecycle
        self.clock = clock
        self.started_at = clock()
        self._started = False
        self._ended = False
        self._end_task: Optional[asyncio.Task] = None
        self._processing_task: Optional[asyncio.Task] = None

        # Statistics for telemetry
        self._no_speech_restarts = 0
        self._total_no_speech_restarts = 0
        self._completion_failures = 0

        self.capture.attach(
            on_interim=self._handle_interim_result,
            on_final=self._handle_final_result,
            on_error=self._handle_recognition_error,
            on_ended=self._handle_capture_ended,
        )
        self.playback.attach(on_ended=self._handle_playback_ended)

        logger.info(f"TurnController initialized (voice_mode={voice_mode})")

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def voice_state(self) -> VoiceState:
        return self.state_machine.current_state

    @property
    def is_ended(self) -> bool:
        return self._ended

    @property
    def draft_text(self) -> str:
        """Draft shown to the learner: latest final, else latest interim."""
        return self.transcript_buffer.get_draft() or self.transcript_buffer.get_current_interim()

    async def start(self):
        """
        Open the session: resolve preferences, greet, and start capture in
        voice mode.
        """
        if self._started or self._ended:
            return
        self._started = True

        if self.preferences is None:
            self.preferences = await self._load_preferences()

        if self.send_greeting:
            greeting = Turn(
                speaker=Speaker.ASSISTANT,
                text=welcome_message(self.preferences.learning_goal),
            )
            self.conversation_log.append(greeting, counts_toward_stats=False)
            await self._notify_turn(greeting)

        if self.voice_mode:
            if self.mic_enabled:
                await self._enter_listening("session started")
            else:
                await self.state_machine.transition(VoiceState.MUTED, reason="session started muted")

    async def submit_text(self, text: str) -> Optional[Turn]:
        """
        Submit a typed turn and wait for the round trip.

        Args:
            text: Learner's text; ignored when blank

        Returns:
            The appended assistant turn, or None when the submission was
            ignored (blank, busy, or session ended) or discarded
        """
        text = (text or "").strip()
        if not text:
            logger.debug("Ignoring blank submission")
            return None
        if self._ended:
            logger.warning("Ignoring submission after session end")
            return None

        current = self.voice_state
        if current in (VoiceState.PROCESSING, VoiceState.SPEAKING):
            logger.info(f"Ignoring submission while {current}")
            return None

        self.silence_timer.cancel()
        self.restart_timer.cancel()
        self.resume_timer.cancel()
        self.transcript_buffer.clear()
        self.transcript_buffer.lock()

        await self.state_machine.transition(VoiceState.PROCESSING, reason="text submitted")
        if current == VoiceState.LISTENING:
            await self._stop_capture()

        task = self._launch_processing(text)
        await asyncio.wait({task})
        if task.cancelled():
            return None
        return task.result()

    async def toggle_voice_mode(self) -> bool:
        """
        Flip voice mode.

        Turning it off always stops capture and clears pending timers.
        Turning it on only starts capture from a resting state; an in-flight
        turn picks it up at its next natural transition.

        Returns:
            The new voice mode
        """
        if self._ended:
            return self.voice_mode

        self.voice_mode = not self.voice_mode
        logger.info(f"Voice mode {'on' if self.voice_mode else 'off'}")
        current = self.voice_state

        if not self.voice_mode:
            self._cancel_capture_timers()
            if current in (VoiceState.LISTENING, VoiceState.MUTED):
                self.transcript_buffer.clear()
                await self.state_machine.transition(VoiceState.IDLE, reason="voice mode off")
            await self._stop_capture()
            return self.voice_mode

        if current in (VoiceState.IDLE, VoiceState.MUTED):
            if self.mic_enabled:
                await self._enter_listening("voice mode on")
            elif current == VoiceState.IDLE:
                await self.state_machine.transition(VoiceState.MUTED, reason="voice mode on, mic muted")
        return self.voice_mode

    async def toggle_microphone(self) -> bool:
        """
        Flip the microphone.

        Muting stops capture immediately when listening. Unmuting restarts
        capture when voice mode is on and nothing is in flight.

        Returns:
            True if the microphone is now enabled
        """
        if self._ended:
            return self.mic_enabled

        self.mic_enabled = not self.mic_enabled
        logger.info(f"Microphone {'enabled' if self.mic_enabled else 'muted'}")
        current = self.voice_state

        if not self.mic_enabled:
            self._cancel_capture_timers()
            if current == VoiceState.LISTENING:
                self.transcript_buffer.clear()
                await self.state_machine.transition(VoiceState.MUTED, reason="microphone muted")
                await self._stop_capture()
            elif current == VoiceState.IDLE and self.voice_mode:
                await self.state_machine.transition(VoiceState.MUTED, reason="microphone muted")
            return self.mic_enabled

        self._no_speech_restarts = 0
        if self.voice_mode and current in (VoiceState.IDLE, VoiceState.MUTED):
            await self._enter_listening("microphone enabled")
        elif current == VoiceState.MUTED:
            await self.state_machine.transition(VoiceState.IDLE, reason="microphone enabled in text mode")
        return self.mic_enabled

    async def end_session(self) -> SessionSummary:
        """
        Terminal transition: stop everything and deliver the summary.

        Safe to call repeatedly; later calls return the same summary.
        """
        if self._end_task is None:
            self._end_task = asyncio.create_task(self._end_session())
        return await asyncio.shield(self._end_task)

    def get_telemetry(self) -> dict:
        """
        Get current telemetry metrics.

        Returns:
            Dict with metrics for monitoring
        """
        stats = self.conversation_log.stats
        return {
            "state": self.voice_state.value,
            "voice_mode": self.voice_mode,
            "mic_enabled": self.mic_enabled,
            "ended": self._ended,
            "turns_logged": len(self.conversation_log),
            "turn_count": stats.turn_count,
            "grammar_clean_count": stats.grammar_clean_count,
            "improvement_suggested_count": stats.improvement_suggested_count,
            "completion_failures": self._completion_failures,
            "no_speech_restarts": self._total_no_speech_restarts,
        }

    # ------------------------------------------------------------------
    # Capture events
    # ------------------------------------------------------------------

    async def _handle_interim_result(self, text: str):
        """Interim transcript: update the draft display only."""
        if self._ended or self.voice_state != VoiceState.LISTENING:
            return
        self.transcript_buffer.add_interim(text)
        await self._notify_draft(text)

    async def _handle_final_result(self, text: str):
        """
        Final transcript: replace the draft and (re)start the silence timer.

        While processing, a fresh utterance is parked for the next turn.
        """
        if self._ended:
            return

        current = self.voice_state
        if current == VoiceState.LISTENING:
            self._no_speech_restarts = 0
            if self.transcript_buffer.add_final(text):
                self.silence_timer.start()
                await self._notify_draft(self.transcript_buffer.get_draft())
        elif current == VoiceState.PROCESSING:
            self.transcript_buffer.add_final(text)
        else:
            logger.debug(f"Ignoring final transcript in {current} state")

    async def _on_silence_complete(self):
        """
        Called when the silence timer completes (learner stopped speaking).

        Transitions LISTENING → PROCESSING and submits the draft.
        """
        if self._ended:
            return

        current = self.voice_state
        if current != VoiceState.LISTENING:
            logger.warning(f"Silence timer fired in {current} state - ignoring")
            return
        if not self.transcript_buffer.has_draft() or not self.mic_enabled:
            logger.debug("Silence timer fired with nothing to submit")
            return

        user_text = self.transcript_buffer.take_draft()
        await self.state_machine.transition(VoiceState.PROCESSING, reason="silence detected")
        await self._stop_capture()
        self._launch_processing(user_text)

    async def _handle_recognition_error(self, kind: RecognitionErrorKind):
        """
        Recognition errors never crash the engine.

        No-speech: restart capture after a backoff while voice mode holds.
        Anything else: stop capture and degrade to MUTED; the learner
        re-enables the microphone manually.
        """
        if self._ended:
            return

        if kind == RecognitionErrorKind.NO_SPEECH:
            if not self.voice_mode:
                return
            if (
                self.max_no_speech_restarts is not None
                and self._no_speech_restarts >= self.max_no_speech_restarts
            ):
                logger.warning(
                    f"No-speech restart limit ({self.max_no_speech_restarts}) reached - muting"
                )
                await self._degrade_capture("no-speech restart limit reached")
                return
            logger.debug("No speech detected - scheduling capture restart")
            self.restart_timer.start()
            return

        logger.warning(f"Recognition error: {kind.value} - disabling microphone")
        await self._degrade_capture(kind.value)

    async def _handle_capture_ended(self):
        """Capture stopped on its own while listening: restart after backoff."""
        if self._ended or self.voice_state != VoiceState.LISTENING:
            return
        if self.voice_mode and self.mic_enabled:
            logger.info("Capture ended unexpectedly - scheduling restart")
            self.restart_timer.start()

    async def _restart_capture(self):
        """Backoff elapsed: restart capture if we are still meant to listen."""
        if self._ended or not self.voice_mode or not self.mic_enabled:
            return
        if self.voice_state != VoiceState.LISTENING:
            return

        self._no_speech_restarts += 1
        self._total_no_speech_restarts += 1
        logger.info(f"Restarting capture (attempt {self._no_speech_restarts})")
        try:
            await self.capture.start()
        except Exception as e:
            logger.error(f"Capture restart failed: {e}", exc_info=True)
            await self._degrade_capture("capture restart failed")
            return

        if not self._still_listening():
            logger.info("Listening was abandoned while capture restarted - stopping it")
            await self._stop_capture()

    async def _degrade_capture(self, reason: str):
        self._cancel_capture_timers()
        self.mic_enabled = False
        current = self.voice_state
        if current in (VoiceState.LISTENING, VoiceState.IDLE):
            self.transcript_buffer.clear()
            target = VoiceState.MUTED if self.voice_mode else VoiceState.IDLE
            if target != current:
                await self.state_machine.transition(target, reason=f"recognition error: {reason}")
        await self._stop_capture()
        await self._notify_error("recognition_error", reason)

    # ------------------------------------------------------------------
    # Round trip
    # ------------------------------------------------------------------

    def _launch_processing(self, user_text: str) -> asyncio.Task:
        self._processing_task = asyncio.create_task(self._process_turn(user_text))
        return self._processing_task

    async def _process_turn(self, user_text: str) -> Optional[Turn]:
        """
        Run one round trip: log the user turn, ask the model, log the reply,
        then speak it or return to rest.
        """
        history = self.conversation_log.get_messages()
        user_turn = self._append_turn(Turn(speaker=Speaker.USER, text=user_text))
        if user_turn is None:
            return None
        await self._notify_turn(user_turn)

        messages = [*history, {"role": "user", "content": user_text}]
        system_prompt = build_system_prompt(self.preferences.learning_goal if self.preferences else None)

        try:
            raw = await self.completion.complete(system_prompt, messages)
        except Exception as e:
            if self._ended:
                logger.info("Completion failed after session end - discarding")
                return None
            self._completion_failures += 1
            logger.error(f"Completion failed: {e}")
            placeholder = self._append_turn(Turn(
                speaker=Speaker.ASSISTANT,
                text=ERROR_PLACEHOLDER_TEXT,
                is_error_placeholder=True,
            ))
            await self._notify_turn(placeholder)
            await self._notify_error("completion_failed", str(e)[:200])
            await self._return_to_rest("completion failed")
            return placeholder

        if self._ended:
            logger.info("Completion arrived after session end - discarding")
            return None

        display_text, feedback = extract_feedback(raw)
        assistant_turn = self._append_turn(Turn(
            speaker=Speaker.ASSISTANT,
            text=display_text,
            feedback=feedback,
        ))
        await self._notify_turn(assistant_turn)

        if self.voice_mode and display_text:
            await self._start_speaking(display_text)
        else:
            await self._return_to_rest("reply delivered")
        return assistant_turn

    def _append_turn(self, turn: Turn) -> Optional[Turn]:
        if self._ended:
            logger.info(f"Discarding {turn.speaker.value} turn after session end")
            return None
        return self.conversation_log.append(turn)

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------

    async def _start_speaking(self, text: str):
        """PROCESSING → SPEAKING with capture stopped first."""
        await self.state_machine.transition(VoiceState.SPEAKING, reason="reply ready")
        self.transcript_buffer.unlock()
        await self._cancel_playback()
        await self._stop_capture()

        try:
            await self.playback.speak(text)
        except Exception as e:
            logger.error(f"Playback failed to start: {e}", exc_info=True)
            await self._finish_speaking("playback failed")

    async def _handle_playback_ended(self):
        """Playback finished on its own."""
        if self._ended or self.voice_state != VoiceState.SPEAKING:
            logger.debug("Playback ended outside SPEAKING - ignoring")
            return
        await self._finish_speaking("playback finished")

    async def _finish_speaking(self, reason: str):
        if not self.voice_mode:
            self.transcript_buffer.clear()
        if self.voice_mode and not self.mic_enabled:
            await self.state_machine.transition(VoiceState.MUTED, reason=reason)
            return
        await self.state_machine.transition(VoiceState.IDLE, reason=reason)
        if self.voice_mode:
            self.resume_timer.start()

    async def _resume_listening(self):
        """Resume delay elapsed after playback or a failed turn."""
        await self._enter_listening("resume after turn")

    async def _cancel_playback(self):
        try:
            await self.playback.cancel()
        except Exception as e:
            logger.error(f"Playback cancel failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    async def _return_to_rest(self, reason: str):
        """Leave PROCESSING without speaking."""
        if self.voice_state != VoiceState.PROCESSING:
            return
        self.transcript_buffer.unlock()
        if not self.voice_mode:
            # No capture will follow to submit a parked utterance
            self.transcript_buffer.clear()
        if self.voice_mode and not self.mic_enabled:
            await self.state_machine.transition(VoiceState.MUTED, reason=reason)
            return
        await self.state_machine.transition(VoiceState.IDLE, reason=reason)
        if self.voice_mode:
            self.resume_timer.start()

    async def _enter_listening(self, reason: str):
        """
        Start capture if voice mode is on, the mic is enabled and nothing is
        in flight. Already listening is a no-op.
        """
        if self._ended or not self.voice_mode or not self.mic_enabled:
            return

        current = self.voice_state
        if current == VoiceState.LISTENING:
            return
        if current not in (VoiceState.IDLE, VoiceState.MUTED):
            logger.debug(f"Not entering LISTENING from {current}")
            return

        await self.state_machine.transition(VoiceState.LISTENING, reason=reason)
        try:
            await self.capture.start()
        except Exception as e:
            logger.error(f"Capture failed to start: {e}", exc_info=True)
            await self._degrade_capture("capture failed to start")
            return

        # start() may suspend while connecting; anything can happen meanwhile
        if not self._still_listening():
            logger.info("Listening was abandoned while capture started - stopping it")
            await self._stop_capture()
            return

        # A fresh utterance parked during the last turn is submitted after silence
        if self.transcript_buffer.has_draft():
            self.silence_timer.start()

    def _still_listening(self) -> bool:
        return (
            not self._ended
            and self.voice_mode
            and self.mic_enabled
            and self.voice_state == VoiceState.LISTENING
        )

    async def _stop_capture(self):
        self.silence_timer.cancel()
        try:
            await self.capture.stop()
        except Exception as e:
            logger.error(f"Capture stop failed: {e}", exc_info=True)

    def _cancel_capture_timers(self):
        self.silence_timer.cancel()
        self.restart_timer.cancel()
        self.resume_timer.cancel()

    async def _load_preferences(self) -> Preferences:
        store = self.summarizer.store
        learner_id = self.summarizer.learner_id
        if store is None or learner_id is None:
            return Preferences()
        try:
            return await store.load_preferences(learner_id)
        except Exception as e:
            logger.error(f"Failed to load preferences - using defaults: {e}")
            return Preferences()

    async def _end_session(self) -> SessionSummary:
        logger.info("Ending session")
        self._ended = True
        self._cancel_capture_timers()

        if (
            self._processing_task
            and not self._processing_task.done()
            and self._processing_task is not asyncio.current_task()
        ):
            self._processing_task.cancel()

        await self._cancel_playback()
        await self._stop_capture()

        current = self.voice_state
        if current != VoiceState.IDLE:
            await self.state_machine.transition(VoiceState.IDLE, reason="session ended")

        self.transcript_buffer.clear()
        self.conversation_log.close()

        return await self.summarizer.finalize(self.conversation_log.stats, self.started_at)

    # ------------------------------------------------------------------
    # Host notifications
    # ------------------------------------------------------------------

    async def _notify_state_change(self, from_state: VoiceState, to_state: VoiceState):
        """Notify state change via callback."""
        if not self.on_state_change:
            return
        try:
            await self.on_state_change(from_state, to_state)
        except Exception as e:
            logger.error(f"Error in state change callback: {e}")

    async def _notify_draft(self, text: str):
        if not self.on_draft:
            return
        try:
            await self.on_draft(text)
        except Exception as e:
            logger.error(f"Error in draft callback: {e}")

    async def _notify_turn(self, turn: Optional[Turn]):
        if turn is None or not self.on_turn:
            return
        try:
            await self.on_turn(turn)
        except Exception as e:
            logger.error(f"Error in turn callback: {e}")

    async def _notify_error(self, code: str, message: str):
        if not self.on_error:
            return
        try:
            await self.on_error(code, message)
        except Exception as e:
            logger.error(f"Error in error callback: {e}")
