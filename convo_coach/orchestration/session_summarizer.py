"""
Session summarizer.

Turns the session's elapsed time and statistics into the summary handed to
the caller, and forwards a progress update to the store. A store failure is
logged and never keeps the summary from the caller.
"""

import logging
import math
from datetime import datetime
from typing import Callable, Optional

from convo_coach.models import ProgressUpdate, SessionStats, SessionSummary, utc_now
from convo_coach.persistence import ProgressStore

logger = logging.getLogger(__name__)


def elapsed_minutes(started_at: datetime, ended_at: datetime) -> int:
    """Whole minutes between two instants, rounded half up, never negative."""
    seconds = (ended_at - started_at).total_seconds()
    return max(0, int(math.floor(seconds / 60.0 + 0.5)))


class SessionSummarizer:
    """Aggregates a finished session and hands it to the progress store."""

    def __init__(
        self,
        store: Optional[ProgressStore] = None,
        learner_id: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            store: Progress store; None skips persistence (demo mode)
            learner_id: Learner the progress belongs to
            clock: Source of "now" (overridable in tests)
        """
        self.store = store
        self.learner_id = learner_id
        self.clock = clock

    def summarize(self, stats: SessionStats, started_at: datetime, ended_at: datetime) -> SessionSummary:
        return SessionSummary(
            duration_minutes=elapsed_minutes(started_at, ended_at),
            turn_count=stats.turn_count,
            grammar_clean_count=stats.grammar_clean_count,
            improvement_suggested_count=stats.improvement_suggested_count,
        )

    async def finalize(self, stats: SessionStats, started_at: datetime) -> SessionSummary:
        """
        Build the summary and persist progress best-effort.

        Args:
            stats: Final session statistics
            started_at: When the session started

        Returns:
            The summary, whether or not persistence succeeded
        """
        ended_at = self.clock()
        summary = self.summarize(stats, started_at, ended_at)
        logger.info(
            f"Session summary: {summary.duration_minutes} min, {summary.turn_count} turns, "
            f"{summary.grammar_clean_count} grammar-clean, "
            f"{summary.improvement_suggested_count} improvements"
        )

        if self.store is None or self.learner_id is None:
            logger.debug("No progress store configured - skipping persistence")
            return summary

        try:
            await self.store.record_session(
                self.learner_id,
                ProgressUpdate.from_summary(summary, at=ended_at),
            )
        except Exception as e:
            logger.error(f"Failed to persist session progress (summary still delivered): {e}", exc_info=True)

        return summary
