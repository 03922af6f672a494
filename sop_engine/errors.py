"""
SOP Engine — Error Types

Validation and configuration problems are raised. Navigation and
completion outcomes are returned as result objects by the sequencer,
so only conditions the caller must handle explicitly live here.
"""

from __future__ import annotations


class SOPEngineError(Exception):
    """Base class for all engine errors."""
    pass


class TemplateError(SOPEngineError):
    """Raised when a template cannot be executed (e.g. it has no steps)."""
    pass


class EvidenceRejected(SOPEngineError):
    """
    Raised by a validator when captured input cannot become evidence.

    The message is user-facing. Rejected input never reaches the
    sequencer's evidence collection.
    """

    def __init__(self, code: str, message: str, step_id: str = ""):
        super().__init__(message)
        self.code = code
        self.message = message
        self.step_id = step_id

    def __repr__(self) -> str:
        return f"EvidenceRejected(code={self.code!r}, message={self.message!r})"


class SkipNotAllowed(SOPEngineError):
    """Raised when a skip is requested for a step that requires evidence or without a reason."""
    pass


class SignoffRejected(SOPEngineError):
    """Raised when a signature artifact fails the dual sign-off rules."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class SignoffIncomplete(SOPEngineError):
    """Raised when the combined payload is requested before both slots are signed."""
    pass


class TaskFinalized(SOPEngineError):
    """Raised on any mutation attempt after a task has been completed."""
    pass


class DraftCacheError(SOPEngineError):
    """Raised by draft cache backends when a write or delete fails."""
    pass
