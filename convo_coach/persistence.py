"""
Progress store: the persistence collaborator of the practice engine.

The engine only reads preferences and writes one best-effort progress update
per finished session. Two implementations are provided: an in-memory store
(demo mode, tests) and a SQLAlchemy store.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from convo_coach.db.database import Database
from convo_coach.db.models import Learner, PracticeSession
from convo_coach.errors import PersistenceError
from convo_coach.models import Preferences, ProgressUpdate

logger = logging.getLogger(__name__)


def next_streak(
    current_streak: int,
    last_practice_at: Optional[datetime],
    practiced_at: datetime,
    increment: int = 1,
) -> int:
    """
    Compute the daily practice streak after a session.

    Same UTC day keeps the streak, the following day extends it, anything
    older restarts it.
    """
    if last_practice_at is None:
        return increment

    last_day = _as_utc(last_practice_at).date()
    this_day = _as_utc(practiced_at).date()
    gap_days = (this_day - last_day).days

    if gap_days <= 0:
        return max(current_streak, increment)
    if gap_days == 1:
        return current_streak + increment
    return increment


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ProgressStore(ABC):
    """Read path for preferences, write path for session progress."""

    @abstractmethod
    async def load_preferences(self, learner_id: str) -> Preferences:
        """
        Look up a learner's preferences.

        Raises:
            PersistenceError: If the store cannot be read
        """

    @abstractmethod
    async def record_session(self, learner_id: str, update: ProgressUpdate) -> None:
        """
        Apply a finished session's progress.

        Raises:
            PersistenceError: If the write fails
        """


class InMemoryProgressStore(ProgressStore):
    """
    Dictionary-backed store.

    Used for demo sessions that must not touch a database, and by tests.
    """

    def __init__(self, preferences: Optional[Dict[str, Preferences]] = None):
        self._preferences: Dict[str, Preferences] = dict(preferences or {})
        self._progress: Dict[str, dict] = {}
        self.updates: List[Tuple[str, ProgressUpdate]] = []

    async def load_preferences(self, learner_id: str) -> Preferences:
        return self._preferences.get(learner_id, Preferences())

    def set_preferences(self, learner_id: str, preferences: Preferences) -> None:
        self._preferences[learner_id] = preferences

    async def record_session(self, learner_id: str, update: ProgressUpdate) -> None:
        progress = self._progress.setdefault(learner_id, {
            "total_minutes": 0,
            "total_sessions": 0,
            "current_streak": 0,
            "last_practice_at": None,
        })
        progress["current_streak"] = next_streak(
            progress["current_streak"],
            progress["last_practice_at"],
            update.last_practice_at,
            update.streak_increment,
        )
        progress["total_minutes"] += update.duration_minutes
        progress["total_sessions"] += update.session_increment
        progress["last_practice_at"] = update.last_practice_at
        self.updates.append((learner_id, update))

    def get_progress(self, learner_id: str) -> dict:
        """Running totals for a learner (empty dict if never recorded)."""
        return dict(self._progress.get(learner_id, {}))


class SqlProgressStore(ProgressStore):
    """
    SQLAlchemy-backed store.

    Learner rows are created on first write; a practice_sessions row is
    appended for every recorded session.
    """

    def __init__(self, database: Optional[Database] = None):
        self.database = database or Database()

    async def load_preferences(self, learner_id: str) -> Preferences:
        try:
            async with self.database.get_session() as session:
                learner = await session.get(Learner, learner_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not load preferences for {learner_id}") from e

        if learner is None:
            logger.info(f"No stored preferences for learner {learner_id} - using defaults")
            return Preferences()
        return Preferences(learning_goal=learner.learning_goal)

    async def save_preferences(self, learner_id: str, preferences: Preferences) -> None:
        """Upsert a learner's preferences (the onboarding write path)."""
        try:
            async with self.database.get_session() as session:
                learner = await session.get(Learner, learner_id)
                if learner is None:
                    learner = Learner(id=learner_id, total_minutes=0, total_sessions=0, current_streak=0)
                    session.add(learner)
                learner.learning_goal = preferences.learning_goal.value
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not save preferences for {learner_id}") from e

    async def record_session(self, learner_id: str, update: ProgressUpdate) -> None:
        try:
            async with self.database.get_session() as session:
                learner = await session.get(Learner, learner_id, with_for_update=True)
                if learner is None:
                    learner = Learner(id=learner_id, total_minutes=0, total_sessions=0, current_streak=0)
                    session.add(learner)

                learner.current_streak = next_streak(
                    learner.current_streak or 0,
                    learner.last_practice_at,
                    update.last_practice_at,
                    update.streak_increment,
                )
                learner.total_minutes = (learner.total_minutes or 0) + update.duration_minutes
                learner.total_sessions = (learner.total_sessions or 0) + update.session_increment
                learner.last_practice_at = update.last_practice_at

                session.add(PracticeSession(
                    learner_id=learner_id,
                    ended_at=update.last_practice_at,
                    duration_minutes=update.duration_minutes,
                    turn_count=update.turn_count,
                    grammar_clean_count=update.grammar_clean_count,
                    improvement_suggested_count=update.improvement_suggested_count,
                ))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not record session for {learner_id}") from e

        logger.info(f"Recorded session for learner {learner_id}: {update.duration_minutes} min")
