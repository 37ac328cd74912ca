"""
Retry sweeper and action timeout detector.

Runs periodically (see ``submission-engine sweep``). Both passes select
candidate runs first and then transition each one through the state machine
in its own transaction, so a run that changed in between is simply rejected
by the transition table and skipped.
"""

from datetime import datetime
from typing import Callable, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from ..db.models import SubmissionRunModel
from .enums import StatusReason, SubmissionStatus, TriggeredBy
from .errors import SubmissionError
from .primitives import utc_now
from .state_machine import SubmissionStateMachine
from .unit_of_work import SessionFactory, unit_of_work

logger = structlog.get_logger()


class RetrySweeper:
    """Re-queues due DEFERRED runs and blocks ACTION_NEEDED runs past their deadline."""

    def __init__(
        self,
        session_factory: SessionFactory,
        state_machine: Optional[SubmissionStateMachine] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.state_machine = state_machine or SubmissionStateMachine(
            session_factory, clock=clock
        )
        self.clock = clock

    def _candidates(self, stmt) -> List[str]:
        with unit_of_work(self.session_factory) as db:
            return list(db.scalars(stmt))

    def _transition_each(
        self,
        run_ids: List[str],
        to_status: SubmissionStatus,
        reason: StatusReason,
        triggered_by: TriggeredBy,
    ) -> int:
        moved = 0
        for run_id in run_ids:
            try:
                self.state_machine.transition_run_status(
                    run_id, to_status, reason=reason, triggered_by=triggered_by
                )
                moved += 1
            except (SubmissionError, SQLAlchemyError) as e:
                logger.warning(
                    "sweep_transition_failed",
                    run_id=run_id,
                    to_status=to_status.value,
                    error=str(e),
                )
        return moved

    def requeue_due(self, now: Optional[datetime] = None, limit: int = 100) -> int:
        """Move DEFERRED runs whose ``next_run_at`` has passed back to QUEUED."""
        now = now or self.clock()
        stmt = (
            select(SubmissionRunModel.id)
            .where(
                SubmissionRunModel.status == SubmissionStatus.DEFERRED,
                SubmissionRunModel.next_run_at.is_not(None),
                SubmissionRunModel.next_run_at <= now,
            )
            .order_by(SubmissionRunModel.next_run_at)
            .limit(limit)
        )
        moved = self._transition_each(
            self._candidates(stmt),
            SubmissionStatus.QUEUED,
            StatusReason.SCHEDULED,
            TriggeredBy.SCHEDULER,
        )
        if moved:
            logger.info("deferred_runs_requeued", count=moved)
        return moved

    def block_expired_actions(
        self, now: Optional[datetime] = None, limit: int = 100
    ) -> int:
        """Move ACTION_NEEDED runs whose action deadline has passed to BLOCKED."""
        now = now or self.clock()
        stmt = (
            select(SubmissionRunModel.id)
            .where(
                SubmissionRunModel.status == SubmissionStatus.ACTION_NEEDED,
                SubmissionRunModel.action_needed_deadline.is_not(None),
                SubmissionRunModel.action_needed_deadline <= now,
            )
            .order_by(SubmissionRunModel.action_needed_deadline)
            .limit(limit)
        )
        blocked = self._transition_each(
            self._candidates(stmt),
            SubmissionStatus.BLOCKED,
            StatusReason.ACTION_DEADLINE_EXPIRED,
            TriggeredBy.SCHEDULER,
        )
        if blocked:
            logger.info("expired_actions_blocked", count=blocked)
        return blocked

    def sweep(self, now: Optional[datetime] = None, limit: int = 100) -> dict:
        """Run both passes. Returns the count for each."""
        now = now or self.clock()
        return {
            "requeued": self.requeue_due(now, limit),
            "blocked": self.block_expired_actions(now, limit),
        }
