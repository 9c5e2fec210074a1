"""
Pydantic models for the practice engine.
Turns, feedback, statistics, preferences and the wire shapes exchanged with
the language model and the progress store are all defined here.
"""

import itertools
from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# Enums
# ============================================================================

class Speaker(str, Enum):
    """Who produced a turn."""
    USER = "user"
    ASSISTANT = "assistant"


class LearningGoal(str, Enum):
    """Practice focus chosen during onboarding."""
    FLUENCY = "fluency"
    INTERVIEW = "interview"
    TRAVEL = "travel"
    ACADEMIC = "academic"


class RecognitionErrorKind(str, Enum):
    """Error kinds reported by a speech capture adapter."""
    NO_SPEECH = "no-speech"
    AUDIO_CAPTURE = "audio-capture"
    NOT_ALLOWED = "not-allowed"
    NETWORK = "network"
    ABORTED = "aborted"
    OTHER = "other"


# ============================================================================
# Feedback
# ============================================================================

# Literal the model writes when a feedback field has nothing to flag
NONE_MARKER = "None"


class Feedback(BaseModel):
    """
    Structured corrective feedback attached to an assistant turn.

    A field set to ``None`` is the none-marker: the model found nothing to
    flag. An empty string is kept as-is and is not the marker.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    grammar_fix: Optional[str] = Field(..., alias="grammarFix")
    better_phrase: Optional[str] = Field(default=None, alias="betterPhrase")
    fluency_tip: Optional[str] = Field(default=None, alias="fluencyTip")

    @field_validator("grammar_fix", "better_phrase", "fluency_tip", mode="before")
    @classmethod
    def normalize_none_marker(cls, v):
        """Map the model's 'None' literal onto the Python sentinel."""
        if v is None:
            return None
        if not isinstance(v, str):
            raise ValueError("feedback fields must be strings")
        if v.strip().lower() == NONE_MARKER.lower():
            return None
        return v.strip()

    @property
    def is_grammar_clean(self) -> bool:
        return self.grammar_fix is None

    @property
    def suggests_improvement(self) -> bool:
        return self.better_phrase is not None


# ============================================================================
# Conversation
# ============================================================================

_turn_sequence = itertools.count(1)


def next_turn_id() -> int:
    """Process-wide monotonic turn identifier."""
    return next(_turn_sequence)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Turn(BaseModel):
    """
    One utterance in the conversation.
    Immutable once appended to the conversation log.
    """
    model_config = ConfigDict(frozen=True)

    id: int = Field(default_factory=next_turn_id)
    speaker: Speaker
    text: str
    created_at: datetime = Field(default_factory=utc_now)
    feedback: Optional[Feedback] = None
    is_error_placeholder: bool = False

    @property
    def role(self) -> str:
        """Chat role used when the turn is replayed to the model."""
        return self.speaker.value


class SessionStats(BaseModel):
    """Derived counters; only ever incremented."""
    turn_count: int = 0
    grammar_clean_count: int = 0
    improvement_suggested_count: int = 0


class Preferences(BaseModel):
    """Read-only learner preferences owned by the progress store."""
    learning_goal: LearningGoal = LearningGoal.FLUENCY

    @field_validator("learning_goal", mode="before")
    @classmethod
    def fallback_goal(cls, v):
        """Unknown goals fall back to fluency practice."""
        if isinstance(v, LearningGoal):
            return v
        try:
            return LearningGoal(str(v).lower())
        except ValueError:
            return LearningGoal.FLUENCY


class SessionSummary(BaseModel):
    """Package handed to the caller when a session ends."""
    model_config = ConfigDict(frozen=True)

    duration_minutes: int = Field(..., ge=0)
    turn_count: int = Field(..., ge=0)
    grammar_clean_count: int = Field(..., ge=0)
    improvement_suggested_count: int = Field(..., ge=0)


# ============================================================================
# Language model wire shapes
# ============================================================================

class ChatMessage(BaseModel):
    """Single role-tagged chat message."""
    role: Literal["system", "user", "assistant"]
    content: str


class ChatCompletionRequest(BaseModel):
    """
    Non-streaming chat completion request body.
    The system prompt travels as the first message.
    """
    model: str
    messages: List[ChatMessage]
    temperature: float = 0.7
    max_tokens: int = 300
    stream: Literal[False] = False


# ============================================================================
# Progress store wire shapes
# ============================================================================

class ProgressUpdate(BaseModel):
    """Best-effort write sent to the progress store at session end."""
    model_config = ConfigDict(frozen=True)

    duration_minutes: int = Field(..., ge=0)
    session_increment: int = 1
    streak_increment: int = 1
    last_practice_at: datetime = Field(default_factory=utc_now)
    turn_count: int = 0
    grammar_clean_count: int = 0
    improvement_suggested_count: int = 0

    @classmethod
    def from_summary(cls, summary: SessionSummary, at: Optional[datetime] = None) -> "ProgressUpdate":
        return cls(
            duration_minutes=summary.duration_minutes,
            last_practice_at=at or utc_now(),
            turn_count=summary.turn_count,
            grammar_clean_count=summary.grammar_clean_count,
            improvement_suggested_count=summary.improvement_suggested_count,
        )
