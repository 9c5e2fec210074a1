"""
Conversation log for maintaining turn-based context.

Stores every user/assistant turn in order, exposes them as chat messages
for the next request, and derives the session statistics.
"""

import logging
from typing import Dict, List, Tuple

from convo_coach.errors import SessionEndedError
from convo_coach.models import SessionStats, Speaker, Turn

logger = logging.getLogger(__name__)


class ConversationLog:
    """
    Append-only record of the session's turns.

    No turn is ever mutated or removed. Statistics move only when a
    successful assistant turn is appended; greeting and error placeholder
    turns do not count.
    """

    def __init__(self) -> None:
        self._turns: List[Turn] = []
        self._stats = SessionStats()
        self._closed = False

    def append(self, turn: Turn, counts_toward_stats: bool = True) -> Turn:
        """
        Append a turn and update statistics.

        Args:
            turn: Turn to record
            counts_toward_stats: False for turns that are not the result of a
                completed round trip (e.g. the opening greeting)

        Returns:
            The appended turn

        Raises:
            SessionEndedError: If the log has been closed
        """
        if self._closed:
            raise SessionEndedError("Conversation log is closed")

        self._turns.append(turn)

        if (
            counts_toward_stats
            and turn.speaker == Speaker.ASSISTANT
            and not turn.is_error_placeholder
        ):
            self._record_stats(turn)

        logger.debug(f"Appended {turn.speaker.value} turn {turn.id}: {turn.text[:50]}")
        return turn

    def _record_stats(self, turn: Turn) -> None:
        stats = self._stats
        feedback = turn.feedback
        self._stats = SessionStats(
            turn_count=stats.turn_count + 1,
            grammar_clean_count=stats.grammar_clean_count + (
                1 if feedback is not None and feedback.is_grammar_clean else 0
            ),
            improvement_suggested_count=stats.improvement_suggested_count + (
                1 if feedback is not None and feedback.suggests_improvement else 0
            ),
        )

    @property
    def turns(self) -> Tuple[Turn, ...]:
        """Snapshot of all turns in append order."""
        return tuple(self._turns)

    @property
    def stats(self) -> SessionStats:
        """Snapshot of the session statistics."""
        return self._stats.model_copy()

    def get_messages(self) -> List[Dict[str, str]]:
        """
        Get the history as role-tagged chat messages.

        Returns:
            List of chat messages with roles and content
        """
        return [{"role": turn.role, "content": turn.text} for turn in self._turns]

    def close(self) -> None:
        """Stop accepting turns. Idempotent."""
        self._closed = True

    @property
    def is_closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._turns)
