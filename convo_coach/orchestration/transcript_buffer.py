"""
Draft buffer for interim and final transcripts.

Critical Rule: interim transcripts are NEVER submitted - UI display only.
Only the most recent final transcript is submitted; a newer final replaces
the draft rather than appending to it.
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


class TranscriptBuffer:
    """
    Holds the draft utterance for the current turn.

    Key Features:
    - Interim text tracked separately for the UI
    - Final text replaces the draft (debounced re-speaking submits the last one)
    - Locked while a turn is processing; late finals are parked for the next
      turn only when they are a fresh utterance
    """

    def __init__(self):
        self._draft = ""
        self._current_interim = ""
        self._is_locked = False
        self._last_submitted: Optional[str] = None
        self._pending: Optional[str] = None

    def add_interim(self, text: str):
        """
        Record an interim transcript (UI display only).

        Args:
            text: Interim transcript text
        """
        if self._is_locked:
            logger.debug("Buffer is locked - ignoring interim transcript")
            return

        self._current_interim = text
        logger.debug(f"Added interim transcript: {text[:50]}")

    def add_final(self, text: str) -> bool:
        """
        Record a final transcript.

        While locked, a final that repeats the utterance being processed is
        dropped; anything else is parked as the next turn's draft.

        Args:
            text: Final transcript text

        Returns:
            True if the draft was updated (caller should restart the silence
            timer), False if the transcript was dropped or parked
        """
        text = text.strip()
        if not text:
            return False

        if self._is_locked:
            if self._is_stale(text):
                logger.debug(f"Dropping stale final during processing: {text[:50]}")
            else:
                self._pending = text
                logger.info(f"Parked fresh utterance for next turn: {text[:50]}")
            return False

        self._draft = text
        self._current_interim = ""
        logger.info(f"Draft updated from final transcript: {text}")
        return True

    def get_draft(self) -> str:
        """Text that would be submitted if the silence timer fired now."""
        return self._draft

    def get_current_interim(self) -> str:
        """
        Get the most recent interim transcript for UI display.

        Returns:
            Current interim text (empty string if none)
        """
        return self._current_interim

    def has_draft(self) -> bool:
        return bool(self._draft)

    def take_draft(self) -> str:
        """
        Consume the draft for submission and lock the buffer.

        Returns:
            The submitted text
        """
        text = self._draft
        self._last_submitted = text
        self._draft = ""
        self._current_interim = ""
        self.lock()
        return text

    def lock(self):
        """Lock the buffer while a turn is processing."""
        self._is_locked = True
        logger.debug("Buffer locked")

    def unlock(self) -> bool:
        """
        Unlock the buffer and promote any parked utterance to the draft.

        Returns:
            True if a parked utterance became the draft
        """
        self._is_locked = False
        logger.debug("Buffer unlocked")
        if self._pending:
            self._draft = self._pending
            self._pending = None
            return True
        return False

    def is_locked(self) -> bool:
        """Check if buffer is currently locked."""
        return self._is_locked

    def clear(self):
        """Clear the draft, any parked utterance and unlock."""
        self._draft = ""
        self._current_interim = ""
        self._pending = None
        self._is_locked = False
        logger.debug("Buffer cleared")

    def _is_stale(self, text: str) -> bool:
        if not self._last_submitted:
            return False
        return _normalize(text) == _normalize(self._last_submitted)

    def __repr__(self) -> str:
        locked_status = "locked" if self._is_locked else "unlocked"
        return f"TranscriptBuffer(draft={self._draft[:30]!r}, pending={self._pending is not None}, {locked_status})"


def _normalize(text: str) -> str:
    return " ".join(text.lower().split())
