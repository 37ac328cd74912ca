"""
Submission Framework Schemas.

Pydantic models for transition metadata and for the ``event_data`` payload of
each event type. The payload shape is determined by the event type; types
without a dedicated model store free-form data.
"""

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .enums import (
    ActionNeededType,
    ArtifactType,
    ErrorType,
    SubmissionEventType,
)
from .errors import InvalidTransitionInputError


class ActionNeeded(BaseModel):
    """What the user has to do before an ACTION_NEEDED run can continue."""

    model_config = ConfigDict(extra="forbid")

    type: ActionNeededType
    url: Optional[str] = None
    fields: Optional[Union[List[str], Dict[str, Any]]] = None
    deadline: Optional[datetime] = None


class TransitionMeta(BaseModel):
    """Optional metadata accompanying a status transition."""

    model_config = ConfigDict(extra="forbid")

    action_needed: Optional[ActionNeeded] = None

    error_type: Optional[ErrorType] = None
    error_code: Optional[str] = Field(None, max_length=64)
    error_message: Optional[str] = None

    schedule_retry: bool = False
    retry_delay_ms: Optional[int] = Field(None, ge=0)
    next_run_at: Optional[datetime] = None

    clear_lock: bool = False

    external_submission_id: Optional[str] = Field(None, max_length=255)
    raw_status: Optional[str] = Field(None, max_length=64)
    raw_status_message: Optional[str] = None

    changes_acknowledged: bool = False
    acknowledged_by: Optional[str] = Field(None, max_length=64)


def parse_transition_meta(
    meta: Union[TransitionMeta, Mapping[str, Any], None],
) -> TransitionMeta:
    """Validate ``meta`` into a TransitionMeta, raising InvalidTransitionInputError."""
    if meta is None:
        return TransitionMeta()
    if isinstance(meta, TransitionMeta):
        return meta
    try:
        return TransitionMeta.model_validate(dict(meta))
    except ValidationError as e:
        raise InvalidTransitionInputError(
            "Invalid transition metadata",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e


# Event payloads


class EventPayload(BaseModel):
    """Base for typed ``event_data`` payloads."""

    model_config = ConfigDict(extra="forbid")


class ErrorDetails(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: ErrorType
    code: Optional[str] = None
    message: Optional[str] = None


class StatusChangeData(EventPayload):
    """Payload of a STATUS_CHANGE event: a subset of the transition metadata."""

    action_needed: Optional[ActionNeeded] = None
    error: Optional[ErrorDetails] = None
    external_submission_id: Optional[str] = None


class RunCreatedData(EventPayload):
    attempt_no: int = Field(..., ge=1)
    previous_run_id: Optional[str] = None
    correlation_id: Optional[str] = None


class ActionRequiredData(EventPayload):
    action_type: ActionNeededType
    action_url: Optional[str] = None
    action_fields: Optional[Union[List[str], Dict[str, Any]]] = None
    action_deadline: Optional[datetime] = None


class RetryScheduledData(EventPayload):
    attempt_no: int
    next_run_at: Optional[datetime] = None


class ChangesAcknowledgedData(EventPayload):
    acknowledged_by: str


class LockData(EventPayload):
    worker_id: str
    lease_expires_at: Optional[datetime] = None


class ArtifactStoredData(EventPayload):
    artifact_id: str
    artifact_type: ArtifactType
    redaction_applied: bool = False
    size_bytes: Optional[int] = None


class ArtifactRedactionFailedData(EventPayload):
    artifact_type: ArtifactType
    leaks_count: int
    patterns: List[str] = Field(default_factory=list)


EVENT_PAYLOAD_TYPES: Mapping[SubmissionEventType, Type[EventPayload]] = {
    SubmissionEventType.STATUS_CHANGE: StatusChangeData,
    SubmissionEventType.CREATED: RunCreatedData,
    SubmissionEventType.ACTION_REQUIRED: ActionRequiredData,
    SubmissionEventType.RETRY_SCHEDULED: RetryScheduledData,
    SubmissionEventType.USER_CHANGES_ACKNOWLEDGED: ChangesAcknowledgedData,
    SubmissionEventType.LOCK_ACQUIRED: LockData,
    SubmissionEventType.LOCK_RELEASED: LockData,
    SubmissionEventType.ARTIFACT_STORED: ArtifactStoredData,
    SubmissionEventType.ARTIFACT_REDACTION_FAILED: ArtifactRedactionFailedData,
}


def serialize_event_data(
    event_type: SubmissionEventType,
    data: Union[EventPayload, Mapping[str, Any], None],
) -> Dict[str, Any]:
    """Validate ``data`` against the payload model for ``event_type``.

    Returns a JSON-safe dict with unset optional fields dropped.
    """
    if data is None:
        data = {}
    payload_cls = EVENT_PAYLOAD_TYPES.get(event_type)
    if payload_cls is None:
        if isinstance(data, BaseModel):
            return data.model_dump(mode="json", exclude_none=True)
        return dict(data)
    if not isinstance(data, payload_cls):
        try:
            data = payload_cls.model_validate(dict(data))
        except ValidationError as e:
            raise InvalidTransitionInputError(
                f"Invalid {event_type.value} event data",
                details={"errors": e.errors(include_url=False, include_context=False)},
            ) from e
    return data.model_dump(mode="json", exclude_none=True)


def parse_event_data(
    event_type: object, data: Optional[Mapping[str, Any]]
) -> Union[EventPayload, Dict[str, Any]]:
    """Load a stored ``event_data`` dict back into its payload model, if any."""
    try:
        member = SubmissionEventType(event_type)
    except ValueError:
        return dict(data or {})
    payload_cls = EVENT_PAYLOAD_TYPES.get(member)
    if payload_cls is None:
        return dict(data or {})
    return payload_cls.model_validate(data or {})

