"""
Turn-taking engine for English conversation practice.

Spoken or typed turns go to a language model acting as a conversation
partner; each reply carries corrective feedback that is tallied per session.
"""

from .orchestration.turn_controller import TurnController
from .orchestration.session_summarizer import SessionSummarizer
from .persistence import InMemoryProgressStore, SqlProgressStore
from .state_machine import VoiceState

__all__ = [
    "TurnController",
    "SessionSummarizer",
    "InMemoryProgressStore",
    "SqlProgressStore",
    "VoiceState",
]
