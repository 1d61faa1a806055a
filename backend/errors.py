"""
Exception hierarchy for the triage backend.

Only failures that cross a module boundary get a type here. Running out of
retries on a slot or hearing a malformed phone number are normal dialogue
transitions, not errors.
"""

from typing import Optional


class DispatchError(Exception):
    """Base exception for all triage backend errors."""

    code: str = "DISPATCH_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# -----------------------------------------------------------------------------
# External collaborators: always recovered locally, never fatal to a call.
# -----------------------------------------------------------------------------

class TransientExternalFailure(DispatchError):
    """An external model or service timed out or errored."""
    code = "EXTERNAL_FAILURE"


class ExtractionError(TransientExternalFailure):
    """The language model failed after all retry attempts."""
    code = "EXTRACTION_FAILED"


class ClassificationError(TransientExternalFailure):
    """The zero-shot classifier failed or returned something unusable."""
    code = "CLASSIFICATION_FAILED"


# -----------------------------------------------------------------------------
# Persistence and session lifecycle
# -----------------------------------------------------------------------------

class PersistenceError(DispatchError):
    """Writing to or reading from the case store failed."""
    code = "PERSISTENCE_FAILED"


class SessionClosedError(DispatchError):
    """The call already ended; its session was discarded."""
    code = "SESSION_CLOSED"


class DialogueStateError(DispatchError):
    """A session was asked to do something its state forbids."""
    code = "DIALOGUE_STATE_ERROR"
