"""
Submission artifact storage.

Artifacts are evidence (payloads, screenshots, verification results) attached
to a run or a target. Linkage and the default redaction policy come from
``ARTIFACT_TYPE_META``.
"""

import hashlib
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Union

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db.models import SubmissionArtifactModel, SubmissionRunModel, SubmissionTargetModel
from .enums import (
    ARTIFACT_TYPE_META,
    ArtifactLink,
    ArtifactRedactionMode,
    ArtifactType,
    SubmissionEventType,
    coerce_enum,
)
from .errors import (
    ArtifactRedactionError,
    InvalidTransitionInputError,
    RunNotFoundError,
    TargetNotFoundError,
)
from .events import EventLog
from .primitives import generate_ulid, utc_now
from .redaction import content_bytes, detect_leaks, redact
from .schemas import ArtifactRedactionFailedData, ArtifactStoredData
from .unit_of_work import SessionFactory, unit_of_work

logger = structlog.get_logger()


class ArtifactLookup(ABC):
    """Existence queries the transition engine needs for its preconditions."""

    @abstractmethod
    def has_artifact(
        self, session: Session, run_id: str, artifact_type: ArtifactType
    ) -> bool:
        """Whether ``run_id`` has at least one artifact of ``artifact_type``."""


class SqlArtifactLookup(ArtifactLookup):
    """Looks artifacts up in the ``submission_artifacts`` table."""

    def has_artifact(
        self, session: Session, run_id: str, artifact_type: ArtifactType
    ) -> bool:
        stmt = (
            select(SubmissionArtifactModel.id)
            .where(
                SubmissionArtifactModel.submission_run_id == run_id,
                SubmissionArtifactModel.artifact_type == artifact_type,
            )
            .limit(1)
        )
        return session.scalar(stmt) is not None


class ArtifactService:
    """Stores artifacts with linkage checks and PII redaction.

    Usage:
        artifacts = ArtifactService(session_factory)
        artifacts.store(ArtifactType.LIVE_VERIFICATION_RESULT, run_id=run.id,
                        content={"verified": True})
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        clock: Callable = utc_now,
    ):
        self.session_factory = session_factory
        self.clock = clock

    def store(
        self,
        artifact_type: Union[ArtifactType, str],
        run_id: Optional[str] = None,
        target_id: Optional[str] = None,
        content: Any = None,
        content_text: Optional[str] = None,
        content_url: Optional[str] = None,
        content_type: str = "application/json",
        redaction_mode: Optional[Union[ArtifactRedactionMode, str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        session: Optional[Session] = None,
    ) -> SubmissionArtifactModel:
        """Store one artifact.

        Raises:
            InvalidTransitionInputError: unknown type/mode, missing linkage or
                no content at all
            RunNotFoundError / TargetNotFoundError: linked entity is missing
            ArtifactRedactionError: strict mode found sensitive content. The
                failure is recorded as an event on the run and nothing is stored.
        """
        member = coerce_enum(ArtifactType, artifact_type)
        if member is None:
            raise InvalidTransitionInputError(
                f"Invalid artifact type: {artifact_type}",
                details={"artifact_type": str(artifact_type)},
            )
        type_meta = ARTIFACT_TYPE_META[member]

        if redaction_mode is None:
            mode = (
                ArtifactRedactionMode.BEST_EFFORT
                if type_meta.requires_redaction
                else ArtifactRedactionMode.SKIP
            )
        else:
            mode = coerce_enum(ArtifactRedactionMode, redaction_mode)
            if mode is None:
                raise InvalidTransitionInputError(
                    f"Invalid redaction mode: {redaction_mode}",
                    details={"redaction_mode": str(redaction_mode)},
                )

        if type_meta.linked_to is ArtifactLink.RUN and not run_id:
            raise InvalidTransitionInputError(
                f"Artifact type {member.value} requires run_id"
            )
        if type_meta.linked_to is ArtifactLink.TARGET and not target_id:
            raise InvalidTransitionInputError(
                f"Artifact type {member.value} requires target_id"
            )
        if content is None and content_text is None and content_url is None:
            raise InvalidTransitionInputError(
                "Artifact needs content, content_text or content_url"
            )

        log = logger.bind(artifact_type=member.value, run_id=run_id, target_id=target_id)

        if mode is ArtifactRedactionMode.STRICT_FAIL_ON_LEAK:
            leaks, patterns = self._detect(content, content_text)
            if leaks:
                if run_id:
                    self._record_redaction_failure(
                        run_id, member, leaks, patterns, session=session
                    )
                log.warning("artifact_redaction_failed", leaks_count=leaks)
                raise ArtifactRedactionError(
                    f"Artifact {member.value} contains {leaks} potential leak(s)",
                    details={
                        "artifact_type": member.value,
                        "leaks_count": leaks,
                        "patterns": patterns,
                    },
                )

        redaction_applied = False
        leaks_count = 0
        if mode is ArtifactRedactionMode.BEST_EFFORT:
            if content is not None:
                scrubbed = redact(content)
                content = scrubbed.content
                redaction_applied = scrubbed.applied
                leaks_count += scrubbed.leaks_count
            if content_text is not None:
                scrubbed_text = redact(content_text)
                content_text = scrubbed_text.content
                redaction_applied = redaction_applied or scrubbed_text.applied
                leaks_count += scrubbed_text.leaks_count

        body = content if content is not None else content_text
        raw = content_bytes(body) if body is not None else None

        with unit_of_work(self.session_factory, session) as db:
            if run_id:
                run = db.get(SubmissionRunModel, run_id)
                if run is None:
                    raise RunNotFoundError(run_id)
                target_id = target_id or run.submission_target_id
            if target_id and db.get(SubmissionTargetModel, target_id) is None:
                raise TargetNotFoundError(target_id)

            artifact = SubmissionArtifactModel(
                id=generate_ulid(),
                submission_run_id=run_id,
                submission_target_id=target_id,
                artifact_type=member,
                content_type=content_type,
                content=content,
                content_text=content_text,
                content_url=content_url,
                size_bytes=len(raw) if raw is not None else None,
                checksum=hashlib.sha256(raw).hexdigest() if raw is not None else None,
                redaction_mode=mode,
                redaction_applied=redaction_applied,
                redaction_leaks_count=leaks_count,
                meta=metadata or {},
                created_at=self.clock(),
            )
            db.add(artifact)
            db.flush()

            if run_id:
                EventLog(db).append(
                    run_id,
                    target_id,
                    SubmissionEventType.ARTIFACT_STORED,
                    data=ArtifactStoredData(
                        artifact_id=artifact.id,
                        artifact_type=member,
                        redaction_applied=redaction_applied,
                        size_bytes=artifact.size_bytes,
                    ),
                    created_at=self.clock(),
                )

        log.info(
            "artifact_stored",
            artifact_id=artifact.id,
            redaction_applied=redaction_applied,
            leaks_count=leaks_count,
        )
        return artifact

    def list_for_run(
        self, run_id: str, session: Optional[Session] = None
    ) -> List[SubmissionArtifactModel]:
        """Artifacts of a run, oldest first."""
        with unit_of_work(self.session_factory, session) as db:
            stmt = (
                select(SubmissionArtifactModel)
                .where(SubmissionArtifactModel.submission_run_id == run_id)
                .order_by(SubmissionArtifactModel.created_at, SubmissionArtifactModel.id)
            )
            return list(db.scalars(stmt))

    @staticmethod
    def _detect(content: Any, content_text: Optional[str]):
        leaks = 0
        patterns: List[str] = []
        for part in (content, content_text):
            if part is None:
                continue
            count, names = detect_leaks(part)
            leaks += count
            patterns.extend(name for name in names if name not in patterns)
        return leaks, patterns

    def _record_redaction_failure(
        self,
        run_id: str,
        artifact_type: ArtifactType,
        leaks: int,
        patterns: List[str],
        session: Optional[Session] = None,
    ) -> None:
        with unit_of_work(self.session_factory, session) as db:
            run = db.get(SubmissionRunModel, run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            EventLog(db).append(
                run_id,
                run.submission_target_id,
                SubmissionEventType.ARTIFACT_REDACTION_FAILED,
                data=ArtifactRedactionFailedData(
                    artifact_type=artifact_type,
                    leaks_count=leaks,
                    patterns=patterns,
                ),
                created_at=self.clock(),
            )
