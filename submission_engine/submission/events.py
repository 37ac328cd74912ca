"""
Append-only submission event log.

Events are only ever inserted. History is read back in ``id`` order, which is
insertion order.
"""

from datetime import datetime
from typing import Any, List, Mapping, Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db.models import SubmissionEventModel
from .enums import (
    StatusReason,
    SubmissionEventType,
    SubmissionStatus,
    TriggeredBy,
    coerce_enum,
)
from .errors import InvalidTransitionInputError
from .primitives import utc_now
from .schemas import EventPayload, serialize_event_data


def _require(enum_cls, value, field_name: str):
    if value is None:
        return None
    member = coerce_enum(enum_cls, value)
    if member is None:
        raise InvalidTransitionInputError(
            f"Invalid {field_name}: {value}",
            details={field_name: str(value)},
        )
    return member


class EventLog:
    """Writes and reads submission events within a caller's session.

    Usage:
        events = EventLog(db_session)
        events.append(run.id, run.submission_target_id, SubmissionEventType.CREATED,
                      data={"attempt_no": 1})
    """

    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        run_id: str,
        target_id: str,
        event_type: Union[SubmissionEventType, str],
        from_status: Optional[Union[SubmissionStatus, str]] = None,
        to_status: Optional[Union[SubmissionStatus, str]] = None,
        status_reason: Optional[Union[StatusReason, str]] = None,
        triggered_by: Union[TriggeredBy, str] = TriggeredBy.SYSTEM,
        triggered_by_id: Optional[str] = None,
        data: Union[EventPayload, Mapping[str, Any], None] = None,
        created_at: Optional[datetime] = None,
    ) -> SubmissionEventModel:
        """Insert one event and flush so it gets its ordering id.

        Unknown enum values raise InvalidTransitionInputError before anything
        is added to the session.
        """
        event_type = _require(SubmissionEventType, event_type, "event_type")
        if event_type is None:
            raise InvalidTransitionInputError("event_type is required")

        event = SubmissionEventModel(
            submission_run_id=run_id,
            submission_target_id=target_id,
            event_type=event_type,
            from_status=_require(SubmissionStatus, from_status, "from_status"),
            to_status=_require(SubmissionStatus, to_status, "to_status"),
            status_reason=_require(StatusReason, status_reason, "status_reason"),
            triggered_by=_require(TriggeredBy, triggered_by, "triggered_by"),
            triggered_by_id=triggered_by_id,
            event_data=serialize_event_data(event_type, data),
            created_at=created_at or utc_now(),
        )
        self.db.add(event)
        self.db.flush()
        return event

    def history(self, run_id: str) -> List[SubmissionEventModel]:
        """All events for a run, oldest first."""
        stmt = (
            select(SubmissionEventModel)
            .where(SubmissionEventModel.submission_run_id == run_id)
            .order_by(SubmissionEventModel.id)
        )
        return list(self.db.scalars(stmt))

    def for_target(
        self,
        target_id: str,
        event_type: Optional[Union[SubmissionEventType, str]] = None,
    ) -> List[SubmissionEventModel]:
        """Events across every run of a target, oldest first."""
        stmt = select(SubmissionEventModel).where(
            SubmissionEventModel.submission_target_id == target_id
        )
        if event_type is not None:
            stmt = stmt.where(
                SubmissionEventModel.event_type
                == _require(SubmissionEventType, event_type, "event_type")
            )
        return list(self.db.scalars(stmt.order_by(SubmissionEventModel.id)))
