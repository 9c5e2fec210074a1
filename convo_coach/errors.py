"""Exception hierarchy for the practice engine."""

from typing import Optional


class ConvoCoachError(Exception):
    """Base class for all package errors."""


class CompletionError(ConvoCoachError):
    """
    The language model round trip failed.

    Covers missing configuration, transport errors, timeouts, non-2xx
    responses and response bodies without a completion.
    """

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class SessionEndedError(ConvoCoachError):
    """Session state was mutated after the session ended."""


class PersistenceError(ConvoCoachError):
    """The progress store could not complete a read or write."""
