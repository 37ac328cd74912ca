"""
Connector result handling.

A worker hands the outcome of one submission attempt to
``SubmissionResultHandler``, which turns it into the matching transition:

- ``submitted``      -> SUBMITTED, external id and raw status recorded
- ``action_needed``  -> ACTION_NEEDED, with a default deadline when none is given
- ``already_listed`` -> ALREADY_LISTED
- ``error``          -> DEFERRED with backoff while the error is retryable and
                        attempts remain, FAILED otherwise

The response payload, any user instructions and the error log are stored as
artifacts in the same unit of work as the transition.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db.models import SubmissionRunModel
from .artifacts import ArtifactService
from .enums import (
    ArtifactType,
    ConnectorResultStatus,
    ErrorType,
    StatusReason,
    SubmissionStatus,
    TriggeredBy,
    is_retryable_error,
    map_action_needed_to_status_reason,
    map_error_type_to_status_reason,
)
from .errors import InvalidTransitionInputError, SubmissionError
from .primitives import utc_now
from .retry import DEFAULT_RETRY_POLICY, RetryPolicy, calculate_retry_delay
from .schemas import ActionNeeded, TransitionMeta
from .state_machine import SubmissionStateMachine, lock_run
from .unit_of_work import SessionFactory, unit_of_work

logger = structlog.get_logger()

S = SubmissionStatus

ACTION_DEADLINE = timedelta(days=10)


class ActionNeededResult(ActionNeeded):
    """ACTION_NEEDED details plus free-text instructions for the user."""

    instructions: Optional[str] = None


class ConnectorResult(BaseModel):
    """What a connector reports back after one attempt."""

    model_config = ConfigDict(extra="forbid")

    status: ConnectorResultStatus
    external_id: Optional[str] = Field(default=None, max_length=255)
    raw_status: Optional[str] = Field(default=None, max_length=64)
    raw_status_message: Optional[str] = None
    existing_listing_id: Optional[str] = Field(default=None, max_length=255)
    action_needed: Optional[ActionNeededResult] = None
    error_type: Optional[ErrorType] = None
    error_code: Optional[str] = Field(default=None, max_length=64)
    error_message: Optional[str] = None
    response: Any = None


def parse_connector_result(
    result: Union[ConnectorResult, Mapping[str, Any]]
) -> ConnectorResult:
    if isinstance(result, ConnectorResult):
        parsed = result
    else:
        try:
            parsed = ConnectorResult.model_validate(dict(result))
        except ValidationError as e:
            raise InvalidTransitionInputError(
                "Invalid connector result",
                details={"errors": e.errors(include_url=False, include_context=False)},
            ) from e

    if parsed.status is ConnectorResultStatus.ACTION_NEEDED and parsed.action_needed is None:
        raise InvalidTransitionInputError(
            "action_needed result requires action_needed.type",
            details={"field": "action_needed"},
        )
    return parsed


class SubmissionResultHandler:
    """Applies connector results to runs through the state machine.

    Usage:
        handler = SubmissionResultHandler(session_factory, worker_id="worker-1")
        handler.handle(run.id, {"status": "submitted", "external_id": "ext-42"})
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        state_machine: Optional[SubmissionStateMachine] = None,
        artifacts: Optional[ArtifactService] = None,
        worker_id: Optional[str] = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.retry_policy = retry_policy
        self.clock = clock
        self.state_machine = state_machine or SubmissionStateMachine(
            session_factory, retry_policy=retry_policy, clock=clock
        )
        self.artifacts = artifacts or ArtifactService(session_factory, clock=clock)
        self.worker_id = worker_id

    def handle(
        self,
        run_id: str,
        result: Union[ConnectorResult, Mapping[str, Any]],
        session: Optional[Session] = None,
    ) -> SubmissionRunModel:
        """Record one connector result against ``run_id``.

        Returns:
            The updated run

        Raises:
            InvalidTransitionInputError: malformed result, nothing was written
            RunNotFoundError / InvalidTransitionError /
            TransitionPreconditionError: as raised by the state machine; the
                artifacts stored for this result are rolled back with it
        """
        parsed = parse_connector_result(result)
        log = logger.bind(
            run_id=run_id, result_status=parsed.status.value, worker_id=self.worker_id
        )

        with unit_of_work(self.session_factory, session) as db:
            run = lock_run(db, run_id)

            if parsed.response is not None:
                self.artifacts.store(
                    ArtifactType.RESPONSE_PAYLOAD,
                    run_id=run_id,
                    content=parsed.response,
                    session=db,
                )

            if parsed.status is ConnectorResultStatus.SUBMITTED:
                run = self._submitted(db, run_id, parsed)
            elif parsed.status is ConnectorResultStatus.ACTION_NEEDED:
                run = self._action_needed(db, run_id, parsed)
            elif parsed.status is ConnectorResultStatus.ALREADY_LISTED:
                run = self._already_listed(db, run_id, parsed)
            else:
                run = self._error(db, run, parsed)

        log.info("result_recorded", status=run.status.value, attempt_no=run.attempt_no)
        return run

    def handle_exception(
        self, run_id: str, error: BaseException, session: Optional[Session] = None
    ) -> Optional[SubmissionRunModel]:
        """Record an unexpected connector crash as a retry or a failure.

        The error is unclassified, so the retry decision only looks at the
        attempt count. Returns None when the run could not be moved.
        """
        message = str(error) or error.__class__.__name__
        log = logger.bind(run_id=run_id, worker_id=self.worker_id)

        try:
            with unit_of_work(self.session_factory, session) as db:
                run = lock_run(db, run_id)
                attempt_no = run.attempt_no or 1
                can_retry = attempt_no < self.retry_policy.max_attempts

                meta = TransitionMeta(
                    error_type=ErrorType.UNKNOWN,
                    error_message=message,
                    clear_lock=True,
                )
                if can_retry:
                    meta.schedule_retry = True
                    meta.retry_delay_ms = calculate_retry_delay(attempt_no, self.retry_policy)

                run = self._transition(
                    db,
                    run_id,
                    S.DEFERRED if can_retry else S.FAILED,
                    StatusReason.CONNECTOR_ERROR,
                    meta,
                )
        except (SubmissionError, SQLAlchemyError) as e:
            log.error("error_transition_failed", error=str(e), original_error=message)
            return None

        log.warning(
            "connector_crashed",
            error=message,
            status=run.status.value,
            attempt_no=run.attempt_no,
        )
        return run

    def _transition(
        self,
        db: Session,
        run_id: str,
        to_status: SubmissionStatus,
        reason: StatusReason,
        meta: TransitionMeta,
    ) -> SubmissionRunModel:
        return self.state_machine.transition_run_status(
            run_id,
            to_status,
            reason=reason,
            triggered_by=TriggeredBy.WORKER,
            triggered_by_id=self.worker_id,
            meta=meta,
            session=db,
        )

    def _submitted(self, db: Session, run_id: str, result: ConnectorResult):
        return self._transition(
            db,
            run_id,
            S.SUBMITTED,
            StatusReason.SUBMISSION_ACCEPTED,
            TransitionMeta(
                external_submission_id=result.external_id,
                raw_status=result.raw_status,
                raw_status_message=result.raw_status_message,
            ),
        )

    def _action_needed(self, db: Session, run_id: str, result: ConnectorResult):
        action = result.action_needed
        deadline = action.deadline or self.clock() + ACTION_DEADLINE

        run = self._transition(
            db,
            run_id,
            S.ACTION_NEEDED,
            map_action_needed_to_status_reason(action.type),
            TransitionMeta(
                action_needed=ActionNeeded(
                    type=action.type,
                    url=action.url,
                    fields=action.fields,
                    deadline=deadline,
                ),
                raw_status=result.raw_status,
                raw_status_message=result.raw_status_message,
            ),
        )

        if action.instructions:
            self.artifacts.store(
                ArtifactType.INSTRUCTIONS,
                run_id=run_id,
                content_text=action.instructions,
                content_type="text/plain",
                metadata={"action_type": action.type.value},
                session=db,
            )
        return run

    def _already_listed(self, db: Session, run_id: str, result: ConnectorResult):
        return self._transition(
            db,
            run_id,
            S.ALREADY_LISTED,
            StatusReason.ALREADY_EXISTS,
            TransitionMeta(
                external_submission_id=result.existing_listing_id,
                raw_status="already_listed",
                raw_status_message=result.raw_status_message,
            ),
        )

    def _error(self, db: Session, run: SubmissionRunModel, result: ConnectorResult):
        error_type = result.error_type or ErrorType.CONNECTOR_ERROR
        attempt_no = run.attempt_no or 1
        max_attempts = self.retry_policy.max_attempts
        retryable = is_retryable_error(error_type)
        can_retry = retryable and attempt_no < max_attempts

        meta = TransitionMeta(
            error_type=error_type,
            error_code=result.error_code,
            error_message=result.error_message,
            raw_status=result.raw_status,
            raw_status_message=result.raw_status_message,
            clear_lock=True,
        )
        if can_retry:
            meta.schedule_retry = True
            meta.retry_delay_ms = calculate_retry_delay(attempt_no, self.retry_policy)
            to_status = S.DEFERRED
        else:
            if meta.error_message is None:
                meta.error_message = (
                    f"Max attempts ({max_attempts}) exceeded"
                    if retryable
                    else f"Non-retryable error: {error_type.value}"
                )
            to_status = S.FAILED

        run_id = run.id
        run = self._transition(
            db, run_id, to_status, map_error_type_to_status_reason(error_type), meta
        )

        self.artifacts.store(
            ArtifactType.ERROR_LOG,
            run_id=run_id,
            content={
                "error_type": error_type.value,
                "error_code": result.error_code,
                "error_message": meta.error_message,
                "attempt_no": attempt_no,
                "can_retry": can_retry,
                "timestamp": self.clock().isoformat(),
            },
            session=db,
        )
        return run
