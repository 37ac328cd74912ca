"""
Submission Framework.

Status taxonomy, classification enums, retry policy and domain errors. The
database-backed services live in their own modules (``state_machine``,
``artifacts``, ``leases``, ``sweeper``, ``targets``) and are re-exported from
the top-level package.
"""

from .enums import (
    ActionNeededType,
    ArtifactRedactionMode,
    ArtifactType,
    ConnectorResultStatus,
    ErrorType,
    StatusReason,
    SubmissionEventType,
    SubmissionMode,
    SubmissionStatus,
    TriggeredBy,
    is_retryable_error,
    map_action_needed_to_status_reason,
    map_error_type_to_status_reason,
)
from .errors import (
    ArtifactRedactionError,
    InvalidTransitionError,
    InvalidTransitionInputError,
    RunNotFoundError,
    SubmissionError,
    TargetNotFoundError,
    TransitionPreconditionError,
)
from .retry import DEFAULT_RETRY_POLICY, RetryPolicy, calculate_retry_delay
from .status_table import (
    STATUS_META,
    TERMINAL_STATUSES,
    allowed_next_states,
    is_terminal_status,
    is_valid_transition,
)

__all__ = [
    # Enums
    "SubmissionStatus",
    "StatusReason",
    "ActionNeededType",
    "ErrorType",
    "SubmissionEventType",
    "TriggeredBy",
    "ArtifactType",
    "ArtifactRedactionMode",
    "SubmissionMode",
    "ConnectorResultStatus",
    # Mappings
    "map_action_needed_to_status_reason",
    "map_error_type_to_status_reason",
    "is_retryable_error",
    # Transition table
    "STATUS_META",
    "TERMINAL_STATUSES",
    "is_valid_transition",
    "is_terminal_status",
    "allowed_next_states",
    # Retry
    "RetryPolicy",
    "DEFAULT_RETRY_POLICY",
    "calculate_retry_delay",
    # Errors
    "SubmissionError",
    "InvalidTransitionInputError",
    "InvalidTransitionError",
    "TransitionPreconditionError",
    "RunNotFoundError",
    "TargetNotFoundError",
    "ArtifactRedactionError",
]
