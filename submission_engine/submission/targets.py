"""
Submission target service.

Targets are created here; afterwards only the state machine touches their
status projection.
"""

from datetime import datetime
from typing import Callable, List, Optional, Union

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.models import SubmissionRunModel, SubmissionTargetModel
from .enums import SubmissionMode, SubmissionStatus, coerce_enum
from .errors import InvalidTransitionInputError, TargetNotFoundError
from .primitives import generate_ulid, utc_now
from .unit_of_work import SessionFactory, unit_of_work

logger = structlog.get_logger()


class TargetService:
    """Create and read submission targets."""

    def __init__(
        self,
        session_factory: SessionFactory,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.clock = clock

    def create_target(
        self,
        business_profile_id: str,
        directory_id: str,
        connector_key: Optional[str] = None,
        submission_mode: Union[SubmissionMode, str] = SubmissionMode.MANUAL,
        priority: int = 50,
        session: Optional[Session] = None,
    ) -> SubmissionTargetModel:
        """Create a target for a (business, directory) pair.

        Raises:
            InvalidTransitionInputError: bad mode or priority, or the pair
                already has a target
        """
        mode = coerce_enum(SubmissionMode, submission_mode)
        if mode is None:
            raise InvalidTransitionInputError(
                f"Invalid submission_mode: {submission_mode}",
                details={"submission_mode": str(submission_mode)},
            )
        if not 1 <= priority <= 100:
            raise InvalidTransitionInputError(
                "priority must be between 1 and 100", details={"priority": priority}
            )

        now = self.clock()
        target = SubmissionTargetModel(
            id=generate_ulid(),
            business_profile_id=business_profile_id,
            directory_id=directory_id,
            connector_key=connector_key,
            submission_mode=mode,
            priority=priority,
            current_status=SubmissionStatus.QUEUED,
            created_at=now,
            updated_at=now,
        )
        try:
            with unit_of_work(self.session_factory, session) as db:
                db.add(target)
                db.flush()
        except IntegrityError as e:
            raise InvalidTransitionInputError(
                "A target already exists for this business and directory",
                details={
                    "business_profile_id": business_profile_id,
                    "directory_id": directory_id,
                },
            ) from e

        logger.info(
            "target_created",
            target_id=target.id,
            business_profile_id=business_profile_id,
            directory_id=directory_id,
        )
        return target

    def get_target(
        self, target_id: str, session: Optional[Session] = None
    ) -> SubmissionTargetModel:
        with unit_of_work(self.session_factory, session) as db:
            target = db.get(SubmissionTargetModel, target_id)
            if target is None:
                raise TargetNotFoundError(target_id)
        return target

    def list_runs(
        self, target_id: str, session: Optional[Session] = None
    ) -> List[SubmissionRunModel]:
        """Every run of a target in lineage order (oldest first)."""
        with unit_of_work(self.session_factory, session) as db:
            if db.get(SubmissionTargetModel, target_id) is None:
                raise TargetNotFoundError(target_id)
            stmt = (
                select(SubmissionRunModel)
                .where(SubmissionRunModel.submission_target_id == target_id)
                .order_by(SubmissionRunModel.created_at, SubmissionRunModel.id)
            )
            return list(db.scalars(stmt))
