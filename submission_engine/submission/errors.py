"""
Submission Framework Errors.

Every failure the transition engine reports is a ``SubmissionError``. None of
them are retried by the engine; callers decide whether to retry, typically by
transitioning the run to DEFERRED with ``schedule_retry``.
"""

from typing import Any, Dict, Iterable, Optional


class SubmissionError(Exception):
    """Base class for submission domain errors."""

    code = "SUBMISSION_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class InvalidTransitionInputError(SubmissionError):
    """Unknown enum value or missing required metadata. Raised before any write."""

    code = "INVALID_INPUT"


class InvalidTransitionError(SubmissionError):
    """The requested edge is not in the transition table."""

    code = "INVALID_TRANSITION"

    def __init__(self, from_status: str, to_status: str, allowed: Iterable[str]):
        self.from_status = from_status
        self.to_status = to_status
        self.allowed = list(allowed)
        super().__init__(
            f"Invalid transition: {from_status} -> {to_status}. "
            f"Allowed: {', '.join(self.allowed) or 'none'}",
            details={
                "from_status": from_status,
                "to_status": to_status,
                "allowed": self.allowed,
            },
        )


class TransitionPreconditionError(SubmissionError):
    """A gating rule for the transition is not satisfied."""

    code = "PRECONDITION_FAILED"


class RunNotFoundError(SubmissionError):
    """The submission run does not exist."""

    code = "NOT_FOUND"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}", details={"run_id": run_id})


class TargetNotFoundError(SubmissionError):
    """The submission target does not exist."""

    code = "NOT_FOUND"

    def __init__(self, target_id: str):
        self.target_id = target_id
        super().__init__(
            f"Target not found: {target_id}", details={"target_id": target_id}
        )


class ArtifactRedactionError(SubmissionError):
    """Strict redaction found sensitive content; the artifact was not stored."""

    code = "REDACTION_FAILED"
