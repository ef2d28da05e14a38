"""Exception types raised across the moderation pipeline."""
from __future__ import annotations

from typing import Optional


class ConfigurationError(Exception):
    """Fatal misconfiguration — the pipeline must not start."""


class ClassifierError(Exception):
    """Base class for every way an image analysis can fail."""

    retryable = False

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TransientClassifierError(ClassifierError):
    """HTTP 429 or 5xx from the classifier endpoint."""

    retryable = True


class MalformedResponseError(ClassifierError):
    """No JSON object, invalid JSON, or required fields missing."""


class ExhaustedRetriesError(ClassifierError):
    """Every attempt failed transiently."""

    def __init__(self, message: str, *, attempts: int, status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code)
        self.attempts = attempts


class ClassifierRequestError(ClassifierError):
    """Any other request failure (4xx, transport error) — surfaced immediately."""


class QueueEntryNotFound(LookupError):
    """No review queue entry with the given id."""


class QueueEntryConflict(Exception):
    """The queue entry is not in a state that allows the requested transition."""
