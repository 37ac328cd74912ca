"""
Submission State Machine.

``SubmissionStateMachine`` is the only code path that writes ``run.status``.
Every transition:

1. validates its inputs without touching storage
2. locks the run row and re-checks the edge against the current status
3. checks the gating preconditions (LIVE needs verification evidence,
   retrying after NEEDS_CHANGES/REJECTED needs an acknowledgement)
4. applies the field set and appends exactly one STATUS_CHANGE event
5. syncs the parent target and appends any supplementary events

all inside one unit of work, so either everything is written or nothing is.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Union

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db.models import SubmissionRunModel, SubmissionTargetModel
from .artifacts import ArtifactLookup, SqlArtifactLookup
from .enums import (
    ArtifactType,
    StatusReason,
    SubmissionEventType,
    SubmissionStatus,
    TriggeredBy,
    coerce_enum,
)
from .errors import (
    InvalidTransitionError,
    InvalidTransitionInputError,
    RunNotFoundError,
    SubmissionError,
    TargetNotFoundError,
    TransitionPreconditionError,
)
from .events import EventLog
from .primitives import generate_ulid, utc_now
from .retry import DEFAULT_RETRY_POLICY, RetryPolicy, calculate_retry_delay
from .schemas import (
    ActionRequiredData,
    ChangesAcknowledgedData,
    ErrorDetails,
    RetryScheduledData,
    RunCreatedData,
    StatusChangeData,
    TransitionMeta,
    parse_transition_meta,
)
from .status_table import allowed_next_states, is_terminal_status, is_valid_transition
from .unit_of_work import SessionFactory, unit_of_work

logger = structlog.get_logger()

S = SubmissionStatus

# Entering IN_PROGRESS from one of these starts a new attempt.
ATTEMPT_START_STATUSES = frozenset({S.QUEUED, S.DEFERRED})

# Leaving one of these for IN_PROGRESS requires acknowledged changes.
ACK_REQUIRED_STATUSES = frozenset({S.NEEDS_CHANGES, S.REJECTED})


@dataclass(frozen=True)
class TransitionRequest:
    """Statically validated transition input."""

    to_status: SubmissionStatus
    reason: Optional[StatusReason]
    triggered_by: TriggeredBy
    meta: TransitionMeta


def validate_transition_input(
    to_status: object,
    reason: object = None,
    triggered_by: object = TriggeredBy.SYSTEM,
    meta: Union[TransitionMeta, Mapping[str, Any], None] = None,
) -> TransitionRequest:
    """Check a transition request without touching storage.

    Raises:
        InvalidTransitionInputError: unknown status, reason or trigger, or
            metadata the target status requires is missing
    """
    status = coerce_enum(SubmissionStatus, to_status)
    if status is None:
        raise InvalidTransitionInputError(
            f"Invalid status: {to_status}", details={"to_status": str(to_status)}
        )

    status_reason = None
    if reason is not None:
        status_reason = coerce_enum(StatusReason, reason)
        if status_reason is None:
            raise InvalidTransitionInputError(
                f"Invalid status_reason: {reason}", details={"reason": str(reason)}
            )

    trigger = coerce_enum(TriggeredBy, triggered_by)
    if trigger is None:
        raise InvalidTransitionInputError(
            f"Invalid triggered_by: {triggered_by}",
            details={"triggered_by": str(triggered_by)},
        )

    transition_meta = parse_transition_meta(meta)

    if status is S.ACTION_NEEDED and transition_meta.action_needed is None:
        raise InvalidTransitionInputError(
            "action_needed metadata is required when transitioning to action_needed"
        )
    if status is S.FAILED and transition_meta.error_type is None:
        raise InvalidTransitionInputError(
            "error_type is required when transitioning to failed"
        )

    return TransitionRequest(status, status_reason, trigger, transition_meta)


def build_update_fields(
    run: SubmissionRunModel,
    to_status: SubmissionStatus,
    reason: Optional[StatusReason],
    meta: TransitionMeta,
    now: datetime,
    retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> Dict[str, Any]:
    """Column values to write for ``run -> to_status``. Does not modify ``run``."""
    fields: Dict[str, Any] = {
        "status": to_status,
        "status_changed_at": now,
    }

    if reason is not None:
        fields["status_reason"] = reason

    from_status = coerce_enum(SubmissionStatus, run.status)
    if to_status is S.IN_PROGRESS and from_status in ATTEMPT_START_STATUSES:
        fields["attempt_no"] = (run.attempt_no or 0) + 1
        fields["started_at"] = now

    if to_status is S.ACTION_NEEDED and meta.action_needed is not None:
        action = meta.action_needed
        fields["action_needed_type"] = action.type
        if action.url is not None:
            fields["action_needed_url"] = action.url
        if action.fields is not None:
            fields["action_needed_fields"] = action.fields
        if action.deadline is not None:
            fields["action_needed_deadline"] = action.deadline

    if meta.error_type is not None:
        fields["last_error_type"] = meta.error_type
        if meta.error_code is not None:
            fields["last_error_code"] = meta.error_code
        if meta.error_message is not None:
            fields["last_error_message"] = meta.error_message

    if to_status is S.DEFERRED:
        if meta.next_run_at is not None:
            fields["next_run_at"] = meta.next_run_at
        elif meta.retry_delay_ms is not None:
            fields["next_run_at"] = now + timedelta(milliseconds=meta.retry_delay_ms)
        elif meta.schedule_retry:
            delay_ms = calculate_retry_delay(run.attempt_no or 1, retry_policy)
            fields["next_run_at"] = now + timedelta(milliseconds=delay_ms)

    if meta.clear_lock:
        fields["locked_at"] = None
        fields["locked_by"] = None
        fields["lease_expires_at"] = None

    if meta.external_submission_id is not None:
        fields["external_submission_id"] = meta.external_submission_id
    if meta.raw_status is not None:
        fields["raw_status"] = meta.raw_status
    if meta.raw_status_message is not None:
        fields["raw_status_message"] = meta.raw_status_message

    if is_terminal_status(to_status):
        fields["completed_at"] = now

    if meta.changes_acknowledged:
        fields["changes_acknowledged"] = True
        fields["changes_acknowledged_at"] = now
        if meta.acknowledged_by is not None:
            fields["changes_acknowledged_by"] = meta.acknowledged_by

    return fields


def status_change_payload(meta: TransitionMeta) -> StatusChangeData:
    """The part of the metadata recorded on the STATUS_CHANGE event."""
    error = None
    if meta.error_type is not None:
        error = ErrorDetails(
            type=meta.error_type, code=meta.error_code, message=meta.error_message
        )
    return StatusChangeData(
        action_needed=meta.action_needed,
        error=error,
        external_submission_id=meta.external_submission_id,
    )


def lock_run(db: Session, run_id: str) -> SubmissionRunModel:
    """Load the run row with an exclusive lock, refreshing any cached copy."""
    stmt = (
        select(SubmissionRunModel)
        .where(SubmissionRunModel.id == run_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    run = db.scalars(stmt).first()
    if run is None:
        raise RunNotFoundError(run_id)
    return run


def lock_target(db: Session, target_id: str) -> SubmissionTargetModel:
    target = db.get(
        SubmissionTargetModel,
        target_id,
        with_for_update=True,
        populate_existing=True,
    )
    if target is None:
        raise TargetNotFoundError(target_id)
    return target


class SubmissionStateMachine:
    """Transition engine, acknowledgement flow and run factory.

    Usage:
        machine = SubmissionStateMachine(get_session_local())
        machine.transition_run_status(run_id, "in_progress", triggered_by="worker",
                                      triggered_by_id="worker-1")

    Every method accepts an optional ``session``. Without one the method owns
    its transaction and commits; with one it works inside a SAVEPOINT and the
    caller commits.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        artifact_lookup: Optional[ArtifactLookup] = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.artifact_lookup = artifact_lookup or SqlArtifactLookup()
        self.retry_policy = retry_policy
        self.clock = clock

    def transition_run_status(
        self,
        run_id: str,
        to_status: Union[SubmissionStatus, str],
        reason: Optional[Union[StatusReason, str]] = None,
        triggered_by: Union[TriggeredBy, str] = TriggeredBy.SYSTEM,
        triggered_by_id: Optional[str] = None,
        meta: Union[TransitionMeta, Mapping[str, Any], None] = None,
        session: Optional[Session] = None,
    ) -> SubmissionRunModel:
        """Move a run to ``to_status``.

        Returns:
            The updated run

        Raises:
            InvalidTransitionInputError: bad input, nothing was read or written
            RunNotFoundError: no such run
            InvalidTransitionError: edge not allowed from the current status
            TransitionPreconditionError: a gating rule is not satisfied
        """
        request = validate_transition_input(to_status, reason, triggered_by, meta)
        log = logger.bind(run_id=run_id, to_status=request.to_status.value)

        try:
            with unit_of_work(self.session_factory, session) as db:
                run = lock_run(db, run_id)
                from_status = coerce_enum(SubmissionStatus, run.status)

                if not is_valid_transition(from_status, request.to_status):
                    raise InvalidTransitionError(
                        from_status.value,
                        request.to_status.value,
                        [status.value for status in allowed_next_states(from_status)],
                    )

                self._check_preconditions(db, run, from_status, request.to_status)

                now = self.clock()
                fields = build_update_fields(
                    run,
                    request.to_status,
                    request.reason,
                    request.meta,
                    now,
                    self.retry_policy,
                )
                for column, value in fields.items():
                    setattr(run, column, value)
                run.updated_at = now

                events = EventLog(db)
                events.append(
                    run.id,
                    run.submission_target_id,
                    SubmissionEventType.STATUS_CHANGE,
                    from_status=from_status,
                    to_status=request.to_status,
                    status_reason=request.reason,
                    triggered_by=request.triggered_by,
                    triggered_by_id=triggered_by_id,
                    data=status_change_payload(request.meta),
                    created_at=now,
                )

                self._after_transition(db, events, run, request, now)
        except SubmissionError as e:
            log.info("transition_rejected", error=e.code, message=e.message)
            raise

        log.info(
            "run_transitioned",
            from_status=from_status.value,
            reason=request.reason.value if request.reason else None,
            triggered_by=request.triggered_by.value,
            attempt_no=run.attempt_no,
        )
        return run

    def _check_preconditions(
        self,
        db: Session,
        run: SubmissionRunModel,
        from_status: SubmissionStatus,
        to_status: SubmissionStatus,
    ) -> None:
        if to_status is S.LIVE and not self.artifact_lookup.has_artifact(
            db, run.id, ArtifactType.LIVE_VERIFICATION_RESULT
        ):
            raise TransitionPreconditionError(
                "Cannot transition to live without a live_verification_result artifact",
                details={"run_id": run.id, "required_artifact": "live_verification_result"},
            )

        if (
            to_status is S.IN_PROGRESS
            and from_status in ACK_REQUIRED_STATUSES
            and not run.changes_acknowledged
        ):
            raise TransitionPreconditionError(
                f"Cannot retry from {from_status.value} until changes are acknowledged",
                details={"run_id": run.id, "from_status": from_status.value},
            )

    def _after_transition(
        self,
        db: Session,
        events: EventLog,
        run: SubmissionRunModel,
        request: TransitionRequest,
        now: datetime,
    ) -> None:
        target = lock_target(db, run.submission_target_id)
        target.current_status = request.to_status
        target.current_run_id = run.id
        target.updated_at = now

        if request.to_status is S.ACTION_NEEDED:
            action = request.meta.action_needed
            events.append(
                run.id,
                run.submission_target_id,
                SubmissionEventType.ACTION_REQUIRED,
                triggered_by=TriggeredBy.SYSTEM,
                data=ActionRequiredData(
                    action_type=action.type,
                    action_url=action.url,
                    action_fields=action.fields,
                    action_deadline=action.deadline,
                ),
                created_at=now,
            )

        if request.to_status is S.DEFERRED and request.meta.schedule_retry:
            events.append(
                run.id,
                run.submission_target_id,
                SubmissionEventType.RETRY_SCHEDULED,
                triggered_by=TriggeredBy.SYSTEM,
                data=RetryScheduledData(
                    attempt_no=run.attempt_no, next_run_at=run.next_run_at
                ),
                created_at=now,
            )

        if request.to_status is S.LIVE:
            target.live_verified_at = now

        db.flush()

    def acknowledge_changes(
        self, run_id: str, user_id: str, session: Optional[Session] = None
    ) -> SubmissionRunModel:
        """Record that a user has made the changes a directory asked for.

        Required before a NEEDS_CHANGES or REJECTED run may go back to
        IN_PROGRESS.
        """
        if not user_id:
            raise InvalidTransitionInputError("user_id is required")

        with unit_of_work(self.session_factory, session) as db:
            run = lock_run(db, run_id)
            now = self.clock()
            run.changes_acknowledged = True
            run.changes_acknowledged_at = now
            run.changes_acknowledged_by = user_id
            run.updated_at = now

            EventLog(db).append(
                run.id,
                run.submission_target_id,
                SubmissionEventType.USER_CHANGES_ACKNOWLEDGED,
                triggered_by=TriggeredBy.USER,
                triggered_by_id=user_id,
                data=ChangesAcknowledgedData(acknowledged_by=user_id),
                created_at=now,
            )

        logger.info("changes_acknowledged", run_id=run_id, user_id=user_id)
        return run

    def create_run(
        self,
        target_id: str,
        triggered_by: Union[TriggeredBy, str] = TriggeredBy.SYSTEM,
        triggered_by_id: Optional[str] = None,
        previous_run_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> SubmissionRunModel:
        """Create a QUEUED run for a target.

        With ``previous_run_id`` the new run continues that run's lineage:
        ``attempt_no`` is one more than the predecessor's and the correlation
        id is inherited unless one is given explicitly.
        """
        trigger = coerce_enum(TriggeredBy, triggered_by)
        if trigger is None:
            raise InvalidTransitionInputError(
                f"Invalid triggered_by: {triggered_by}",
                details={"triggered_by": str(triggered_by)},
            )

        with unit_of_work(self.session_factory, session) as db:
            target = lock_target(db, target_id)

            attempt_no = 1
            if previous_run_id is not None:
                previous = db.get(SubmissionRunModel, previous_run_id)
                if previous is None:
                    raise RunNotFoundError(previous_run_id)
                if previous.submission_target_id != target_id:
                    raise InvalidTransitionInputError(
                        "Previous run belongs to a different target",
                        details={
                            "previous_run_id": previous_run_id,
                            "target_id": target_id,
                        },
                    )
                attempt_no = (previous.attempt_no or 0) + 1
                correlation_id = correlation_id or previous.correlation_id

            now = self.clock()
            run = SubmissionRunModel(
                id=generate_ulid(),
                submission_target_id=target_id,
                attempt_no=attempt_no,
                previous_run_id=previous_run_id,
                correlation_id=correlation_id or generate_ulid(),
                status=S.QUEUED,
                status_changed_at=now,
                changes_acknowledged=False,
                triggered_by=trigger,
                triggered_by_id=triggered_by_id,
                created_at=now,
                updated_at=now,
            )
            db.add(run)
            db.flush()

            target.current_status = S.QUEUED
            target.current_run_id = run.id
            target.updated_at = now

            EventLog(db).append(
                run.id,
                target_id,
                SubmissionEventType.CREATED,
                to_status=S.QUEUED,
                triggered_by=trigger,
                triggered_by_id=triggered_by_id,
                data=RunCreatedData(
                    attempt_no=attempt_no,
                    previous_run_id=previous_run_id,
                    correlation_id=run.correlation_id,
                ),
                created_at=now,
            )

        logger.info(
            "run_created",
            run_id=run.id,
            target_id=target_id,
            attempt_no=attempt_no,
            previous_run_id=previous_run_id,
        )
        return run

    def get_run(
        self, run_id: str, session: Optional[Session] = None
    ) -> SubmissionRunModel:
        """Fetch a run. Raises RunNotFoundError."""
        with unit_of_work(self.session_factory, session) as db:
            run = db.get(SubmissionRunModel, run_id)
            if run is None:
                raise RunNotFoundError(run_id)
        return run

    def get_history(self, run_id: str, session: Optional[Session] = None):
        """STATUS_CHANGE and supplementary events of a run, oldest first."""
        with unit_of_work(self.session_factory, session) as db:
            if db.get(SubmissionRunModel, run_id) is None:
                raise RunNotFoundError(run_id)
            return EventLog(db).history(run_id)
