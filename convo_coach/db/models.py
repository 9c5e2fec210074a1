"""
SQLAlchemy models for learner progress.
Defines schema for learners and finished practice sessions.
"""

from sqlalchemy import Column, String, Integer, TIMESTAMP, ForeignKey
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
import uuid

Base = declarative_base()


class Learner(Base):
    """
    Learner profile and running progress counters.
    Preferences are written by onboarding; counters by session end.
    """
    __tablename__ = "learners"

    id = Column(String(128), primary_key=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)

    # Preferences
    learning_goal = Column(String(32), nullable=False, default="fluency")

    # Progress
    total_minutes = Column(Integer, default=0, nullable=False)
    total_sessions = Column(Integer, default=0, nullable=False)
    current_streak = Column(Integer, default=0, nullable=False)
    last_practice_at = Column(TIMESTAMP(timezone=True), nullable=True)

    def __repr__(self):
        return (
            f"<Learner(id={self.id}, goal={self.learning_goal}, "
            f"sessions={self.total_sessions}, streak={self.current_streak})>"
        )


class PracticeSession(Base):
    """
    One finished practice session.
    Mirrors the summary delivered to the learner at session end.
    """
    __tablename__ = "practice_sessions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    learner_id = Column(String(128), ForeignKey("learners.id", ondelete="CASCADE"), nullable=False)

    ended_at = Column(TIMESTAMP(timezone=True), nullable=False)
    duration_minutes = Column(Integer, default=0, nullable=False)

    # Session statistics
    turn_count = Column(Integer, default=0, nullable=False)
    grammar_clean_count = Column(Integer, default=0, nullable=False)
    improvement_suggested_count = Column(Integer, default=0, nullable=False)

    def __repr__(self):
        return (
            f"<PracticeSession(id={self.id}, learner_id={self.learner_id}, "
            f"minutes={self.duration_minutes}, turns={self.turn_count})>"
        )
