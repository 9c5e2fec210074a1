"""
State Machine for the practice engine's voice lifecycle.
Implements deterministic state transitions with validation and hooks.

States: IDLE → LISTENING → PROCESSING → SPEAKING → LISTENING (voice loop)
        IDLE → PROCESSING → IDLE (text mode)
"""

import logging
from enum import Enum
from typing import Optional, Callable, Awaitable, Dict, Set
import time

logger = logging.getLogger(__name__)


class VoiceState(str, Enum):
    """
    Voice engine states. Exactly one holds at a time.

    State flow:
    IDLE: Not capturing, not speaking, nothing in flight
    LISTENING: Speech capture is running
    PROCESSING: A completion round trip is in flight
    SPEAKING: The assistant reply is being played back
    MUTED: Voice mode is on but the microphone is disabled
    """
    IDLE = "IDLE"
    LISTENING = "LISTENING"
    PROCESSING = "PROCESSING"
    SPEAKING = "SPEAKING"
    MUTED = "MUTED"


class StateMachine:
    """
    Deterministic state machine for the turn-taking engine.

    Enforces valid state transitions and provides hooks for state changes.
    LISTENING and SPEAKING are never adjacent: playback only starts from
    PROCESSING, and capture only resumes after playback has ended.
    """

    # Define all valid state transitions
    ALLOWED_TRANSITIONS: Dict[VoiceState, Set[VoiceState]] = {
        VoiceState.IDLE: {
            VoiceState.LISTENING,  # Voice mode capture starts
            VoiceState.PROCESSING,  # Typed submission
            VoiceState.MUTED,  # Voice mode on with the mic disabled
        },
        VoiceState.LISTENING: {
            VoiceState.PROCESSING,  # Silence detected, utterance submitted
            VoiceState.IDLE,  # Voice mode off / session end
            VoiceState.MUTED,  # Mic disabled or recognition failure
        },
        VoiceState.PROCESSING: {
            VoiceState.SPEAKING,  # Reply ready in voice mode
            VoiceState.IDLE,  # Reply ready in text mode, or failure
            VoiceState.MUTED,  # Reply ready while the mic is disabled
        },
        VoiceState.SPEAKING: {
            VoiceState.IDLE,  # Playback done, waiting to resume capture
            VoiceState.MUTED,  # Playback done with the mic disabled
        },
        VoiceState.MUTED: {
            VoiceState.LISTENING,  # Mic re-enabled
            VoiceState.PROCESSING,  # Typed submission while muted
            VoiceState.IDLE,  # Voice mode off / session end
        },
    }

    def __init__(self, initial_state: VoiceState = VoiceState.IDLE):
        """
        Initialize state machine.

        Args:
            initial_state: Starting state (default: IDLE)
        """
        self._current_state: VoiceState = initial_state
        self._previous_state: Optional[VoiceState] = None
        self._state_history: list[dict] = []

        # Hooks for state lifecycle events
        self._on_enter_hooks: Dict[VoiceState, list[Callable]] = {
            state: [] for state in VoiceState
        }
        self._on_exit_hooks: Dict[VoiceState, list[Callable]] = {
            state: [] for state in VoiceState
        }
        self._on_transition_hooks: list[Callable] = []

        logger.info(f"State machine initialized in state: {initial_state}")
        self._record_state_change(None, initial_state, "initialization")

    @property
    def current_state(self) -> VoiceState:
        """Get current state."""
        return self._current_state

    @property
    def previous_state(self) -> Optional[VoiceState]:
        """Get previous state."""
        return self._previous_state

    @property
    def state_history(self) -> list[dict]:
        """Get state history for debugging/telemetry."""
        return self._state_history.copy()

    def can_transition(self, to_state: VoiceState) -> bool:
        """
        Check if transition to target state is allowed.

        Args:
            to_state: Target state

        Returns:
            True if transition is allowed, False otherwise
        """
        allowed = to_state in self.ALLOWED_TRANSITIONS.get(self._current_state, set())

        if not allowed:
            logger.warning(
                f"Invalid transition attempted: {self._current_state} → {to_state}"
            )

        return allowed

    async def transition(self, to_state: VoiceState, reason: str = "") -> bool:
        """
        Transition to new state with validation and hooks.

        Args:
            to_state: Target state
            reason: Optional reason for transition (for logging)

        Returns:
            True if transition succeeded, False if not allowed
        """
        if not self.can_transition(to_state):
            logger.error(
                f"Invalid state transition: {self._current_state} → {to_state}. "
                f"Allowed transitions: {self.ALLOWED_TRANSITIONS.get(self._current_state, set())}"
            )
            return False

        from_state = self._current_state

        await self._execute_exit_hooks(from_state)

        self._previous_state = self._current_state
        self._current_state = to_state

        self._record_state_change(from_state, to_state, reason)

        log_msg = f"State transition: {from_state} → {to_state}"
        if reason:
            log_msg += f" (reason: {reason})"
        logger.info(log_msg)

        await self._execute_enter_hooks(to_state)
        await self._execute_transition_hooks(from_state, to_state)

        return True

    def register_on_enter(
        self,
        state: VoiceState,
        callback: Callable[[], Awaitable[None]]
    ) -> None:
        """
        Register callback to execute when entering a state.

        Args:
            state: State to hook into
            callback: Async callback function
        """
        self._on_enter_hooks[state].append(callback)
        logger.debug(f"Registered on_enter hook for state: {state}")

    def register_on_exit(
        self,
        state: VoiceState,
        callback: Callable[[], Awaitable[None]]
    ) -> None:
        """
        Register callback to execute when exiting a state.

        Args:
            state: State to hook into
            callback: Async callback function
        """
        self._on_exit_hooks[state].append(callback)
        logger.debug(f"Registered on_exit hook for state: {state}")

    def register_on_transition(
        self,
        callback: Callable[[VoiceState, VoiceState], Awaitable[None]]
    ) -> None:
        """
        Register callback to execute on any state transition.

        Args:
            callback: Async callback function receiving (from_state, to_state)
        """
        self._on_transition_hooks.append(callback)
        logger.debug("Registered on_transition hook")

    def _record_state_change(
        self,
        from_state: Optional[VoiceState],
        to_state: VoiceState,
        reason: str
    ) -> None:
        """Record state change in history."""
        record = {
            "from_state": from_state.value if from_state else None,
            "to_state": to_state.value,
            "reason": reason,
            "timestamp": int(time.time() * 1000),  # Unix timestamp in milliseconds
        }
        self._state_history.append(record)

    async def _execute_enter_hooks(self, state: VoiceState) -> None:
        """Execute all on_enter hooks for a state."""
        for callback in self._on_enter_hooks[state]:
            try:
                await callback()
            except Exception as e:
                logger.error(f"Error in on_enter hook for {state}: {e}", exc_info=True)

    async def _execute_exit_hooks(self, state: VoiceState) -> None:
        """Execute all on_exit hooks for a state."""
        for callback in self._on_exit_hooks[state]:
            try:
                await callback()
            except Exception as e:
                logger.error(f"Error in on_exit hook for {state}: {e}", exc_info=True)

    async def _execute_transition_hooks(
        self,
        from_state: VoiceState,
        to_state: VoiceState
    ) -> None:
        """Execute all on_transition hooks."""
        for callback in self._on_transition_hooks:
            try:
                await callback(from_state, to_state)
            except Exception as e:
                logger.error(f"Error in on_transition hook: {e}", exc_info=True)

    def get_allowed_transitions(self) -> Set[VoiceState]:
        """Get all allowed transitions from current state."""
        return self.ALLOWED_TRANSITIONS.get(self._current_state, set()).copy()

    def __repr__(self) -> str:
        """String representation of state machine."""
        return (
            f"StateMachine(current={self._current_state}, "
            f"previous={self._previous_state})"
        )
