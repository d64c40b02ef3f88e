from __future__ import annotations

"""Error taxonomy shared by the chat and curriculum services.

Every error carries a stable ``code`` so the realtime and HTTP layers can
surface it without string matching on messages.
"""


class TutorError(Exception):
    code = "tutor_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(TutorError):
    """Rejected input (empty message, unknown tier, ...). Raised before any write."""

    code = "validation_error"


class QuotaExceeded(TutorError):
    """The conversation already holds the maximum number of turns."""

    code = "quota_exceeded"


class GenerationFailure(TutorError):
    """The generation capability failed or returned unusable output."""

    code = "generation_failure"


class NotFound(TutorError, KeyError):
    code = "not_found"

    def __str__(self) -> str:
        return self.message
