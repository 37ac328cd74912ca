"""
Worker leases on submission runs.

A worker leases a QUEUED run before picking it up. Leases expire; a run left
IN_PROGRESS with a lease that expired more than the grace period ago is moved
to DEFERRED through the state machine so another worker can retry it. This
module never writes ``run.status`` itself.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db.models import SubmissionRunModel
from .enums import (
    ErrorType,
    StatusReason,
    SubmissionEventType,
    SubmissionStatus,
    TriggeredBy,
)
from .errors import RunNotFoundError, SubmissionError
from .events import EventLog
from .primitives import as_utc, utc_now
from .schemas import LockData
from .state_machine import SubmissionStateMachine, lock_run
from .unit_of_work import SessionFactory, unit_of_work

logger = structlog.get_logger()

DEFAULT_LEASE_DURATION_MS = 30000
LOCK_GRACE_PERIOD_MS = 5000


@dataclass
class LeaseResult:
    """Outcome of a lease operation.

    ``reason`` is one of acquired, already_held, not_found, invalid_status,
    lock_held, released, extended or not_holder.
    """

    success: bool
    reason: str
    run: Optional[SubmissionRunModel] = None
    holder: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    status: Optional[str] = None


class LeaseManager:
    """Acquire, release, extend and clean up worker leases."""

    def __init__(
        self,
        session_factory: SessionFactory,
        state_machine: Optional[SubmissionStateMachine] = None,
        lease_duration_ms: int = DEFAULT_LEASE_DURATION_MS,
        grace_period_ms: int = LOCK_GRACE_PERIOD_MS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.state_machine = state_machine or SubmissionStateMachine(
            session_factory, clock=clock
        )
        self.lease_duration_ms = lease_duration_ms
        self.grace_period_ms = grace_period_ms
        self.clock = clock

    def _grace_cutoff(self, now: datetime) -> datetime:
        return now - timedelta(milliseconds=self.grace_period_ms)

    def acquire(
        self,
        run_id: str,
        worker_id: str,
        lease_ms: Optional[int] = None,
        session: Optional[Session] = None,
    ) -> LeaseResult:
        """Lease a QUEUED run for ``worker_id``.

        A lease held by another worker can be taken over once it has been
        expired for longer than the grace period.
        """
        lease_ms = lease_ms or self.lease_duration_ms
        log = logger.bind(run_id=run_id, worker_id=worker_id)

        with unit_of_work(self.session_factory, session) as db:
            try:
                run = lock_run(db, run_id)
            except RunNotFoundError:
                return LeaseResult(False, "not_found")

            if run.status is not SubmissionStatus.QUEUED:
                log.info("lease_rejected", reason="invalid_status", status=run.status.value)
                return LeaseResult(False, "invalid_status", status=run.status.value)

            now = self.clock()
            lease_free = run.locked_at is None or as_utc(
                run.lease_expires_at
            ) < self._grace_cutoff(now)

            if not lease_free:
                if run.locked_by == worker_id:
                    return LeaseResult(
                        True,
                        "already_held",
                        run=run,
                        holder=worker_id,
                        lease_expires_at=run.lease_expires_at,
                    )
                log.info("lease_rejected", reason="lock_held", holder=run.locked_by)
                return LeaseResult(
                    False,
                    "lock_held",
                    holder=run.locked_by,
                    lease_expires_at=run.lease_expires_at,
                )

            run.locked_at = now
            run.locked_by = worker_id
            run.lease_expires_at = now + timedelta(milliseconds=lease_ms)
            run.updated_at = now

            EventLog(db).append(
                run.id,
                run.submission_target_id,
                SubmissionEventType.LOCK_ACQUIRED,
                triggered_by=TriggeredBy.WORKER,
                triggered_by_id=worker_id,
                data=LockData(worker_id=worker_id, lease_expires_at=run.lease_expires_at),
                created_at=now,
            )

        log.info("lease_acquired", lease_ms=lease_ms)
        return LeaseResult(
            True,
            "acquired",
            run=run,
            holder=worker_id,
            lease_expires_at=run.lease_expires_at,
        )

    def release(
        self, run_id: str, worker_id: str, session: Optional[Session] = None
    ) -> LeaseResult:
        """Drop the lease. Only the current holder may release it."""
        with unit_of_work(self.session_factory, session) as db:
            try:
                run = lock_run(db, run_id)
            except RunNotFoundError:
                return LeaseResult(False, "not_found")

            if run.locked_by != worker_id:
                return LeaseResult(False, "not_holder", holder=run.locked_by)

            now = self.clock()
            run.locked_at = None
            run.locked_by = None
            run.lease_expires_at = None
            run.updated_at = now

            EventLog(db).append(
                run.id,
                run.submission_target_id,
                SubmissionEventType.LOCK_RELEASED,
                triggered_by=TriggeredBy.WORKER,
                triggered_by_id=worker_id,
                data=LockData(worker_id=worker_id),
                created_at=now,
            )

        logger.info("lease_released", run_id=run_id, worker_id=worker_id)
        return LeaseResult(True, "released", run=run)

    def extend(
        self,
        run_id: str,
        worker_id: str,
        extension_ms: Optional[int] = None,
        session: Optional[Session] = None,
    ) -> LeaseResult:
        """Push the lease expiry out to ``now + extension_ms``. Holder only."""
        extension_ms = extension_ms or self.lease_duration_ms

        with unit_of_work(self.session_factory, session) as db:
            try:
                run = lock_run(db, run_id)
            except RunNotFoundError:
                return LeaseResult(False, "not_found")

            if run.locked_by != worker_id:
                return LeaseResult(False, "not_holder", holder=run.locked_by)

            now = self.clock()
            run.lease_expires_at = now + timedelta(milliseconds=extension_ms)
            run.updated_at = now

        logger.debug("lease_extended", run_id=run_id, worker_id=worker_id)
        return LeaseResult(
            True,
            "extended",
            run=run,
            holder=worker_id,
            lease_expires_at=run.lease_expires_at,
        )

    def find_expired(self, limit: int = 100) -> List[SubmissionRunModel]:
        """IN_PROGRESS runs whose lease expired more than the grace period ago."""
        cutoff = self._grace_cutoff(self.clock())
        stmt = (
            select(SubmissionRunModel)
            .where(
                SubmissionRunModel.status == SubmissionStatus.IN_PROGRESS,
                SubmissionRunModel.locked_at.is_not(None),
                SubmissionRunModel.lease_expires_at < cutoff,
            )
            .order_by(SubmissionRunModel.lease_expires_at)
            .limit(limit)
        )
        with unit_of_work(self.session_factory) as db:
            return list(db.scalars(stmt))

    def cleanup_expired(self, limit: int = 100) -> int:
        """Move runs with expired leases to DEFERRED with a scheduled retry.

        Each run gets its own transition; a run that fails to transition is
        logged and skipped. Returns the number of runs cleaned up.
        """
        cleaned = 0
        for run in self.find_expired(limit):
            try:
                self.state_machine.transition_run_status(
                    run.id,
                    SubmissionStatus.DEFERRED,
                    reason=StatusReason.LOCK_EXPIRED,
                    triggered_by=TriggeredBy.SYSTEM,
                    meta={
                        "error_type": ErrorType.LOCK_ERROR,
                        "error_message": f"Lock expired for worker: {run.locked_by}",
                        "schedule_retry": True,
                        "clear_lock": True,
                    },
                )
                cleaned += 1
            except (SubmissionError, SQLAlchemyError) as e:
                logger.warning(
                    "lease_cleanup_failed",
                    run_id=run.id,
                    worker_id=run.locked_by,
                    error=str(e),
                )

        if cleaned:
            logger.info("expired_leases_cleaned", count=cleaned)
        return cleaned
