"""
SQLAlchemy models for the submission framework.

Enum columns are generated from ``submission_engine.submission.enums`` with
CHECK constraints, so the database rejects values the Python vocabulary does
not know about.
"""

from typing import Any, Dict, Type

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from ..submission.enums import (
    ActionNeededType,
    ArtifactRedactionMode,
    ArtifactType,
    ErrorType,
    LiveVerificationMethod,
    StatusReason,
    SubmissionEventType,
    SubmissionMode,
    SubmissionStatus,
    TriggeredBy,
    enum_values,
)
from .base import Base


def db_enum(enum_cls: Type, name: str) -> Enum:
    """Database enum type backed by the values of ``enum_cls``."""
    return Enum(
        enum_cls,
        name=name,
        values_callable=enum_values,
        create_constraint=True,
        validate_strings=True,
    )


submission_status_enum = db_enum(SubmissionStatus, "submission_status")
status_reason_enum = db_enum(StatusReason, "status_reason")
triggered_by_enum = db_enum(TriggeredBy, "triggered_by")
action_needed_type_enum = db_enum(ActionNeededType, "action_needed_type")
error_type_enum = db_enum(ErrorType, "error_type")
submission_event_type_enum = db_enum(SubmissionEventType, "submission_event_type")
artifact_type_enum = db_enum(ArtifactType, "artifact_type")
artifact_redaction_mode_enum = db_enum(ArtifactRedactionMode, "artifact_redaction_mode")
submission_mode_enum = db_enum(SubmissionMode, "submission_mode")
live_verification_method_enum = db_enum(
    LiveVerificationMethod, "live_verification_method"
)


def _iso(value) -> Any:
    return value.isoformat() if value else None


def _val(value) -> Any:
    return value.value if hasattr(value, "value") else value


class SubmissionTargetModel(Base):
    """One directory x business pairing that may receive a listing."""

    __tablename__ = "submission_targets"

    id = Column(String(128), primary_key=True)

    business_profile_id = Column(String(128), nullable=False, index=True)
    directory_id = Column(String(128), nullable=False, index=True)

    # Configuration
    connector_key = Column(String(64), nullable=True)
    submission_mode = Column(
        submission_mode_enum, nullable=False, default=SubmissionMode.MANUAL
    )
    priority = Column(Integer, nullable=False, default=50)

    # Denormalized from the latest run
    current_status = Column(
        submission_status_enum,
        nullable=False,
        default=SubmissionStatus.QUEUED,
        index=True,
    )
    current_run_id = Column(
        String(128),
        ForeignKey(
            "submission_runs.id",
            use_alter=True,
            name="fk_submission_targets_current_run",
            ondelete="SET NULL",
        ),
        nullable=True,
    )

    # External tracking
    external_listing_id = Column(String(255), nullable=True)
    external_listing_url = Column(Text, nullable=True)

    # Live verification
    live_verified_at = Column(DateTime(timezone=True), nullable=True)
    live_verification_method = Column(live_verification_method_enum, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        UniqueConstraint(
            "business_profile_id",
            "directory_id",
            name="submission_targets_unique_business_directory",
        ),
        CheckConstraint(
            "priority BETWEEN 1 AND 100", name="submission_targets_priority_range"
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "business_profile_id": self.business_profile_id,
            "directory_id": self.directory_id,
            "connector_key": self.connector_key,
            "submission_mode": _val(self.submission_mode),
            "priority": self.priority,
            "current_status": _val(self.current_status),
            "current_run_id": self.current_run_id,
            "external_listing_id": self.external_listing_id,
            "external_listing_url": self.external_listing_url,
            "live_verified_at": _iso(self.live_verified_at),
            "live_verification_method": _val(self.live_verification_method),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class SubmissionRunModel(Base):
    """One attempt to get a target listed."""

    __tablename__ = "submission_runs"

    id = Column(String(128), primary_key=True)
    submission_target_id = Column(
        String(128),
        ForeignKey("submission_targets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Attempt lineage
    attempt_no = Column(Integer, nullable=False, default=1)
    previous_run_id = Column(
        String(128),
        ForeignKey("submission_runs.id", ondelete="SET NULL"),
        nullable=True,
    )
    correlation_id = Column(String(128), nullable=False, index=True)

    # Status
    status = Column(
        submission_status_enum,
        nullable=False,
        default=SubmissionStatus.QUEUED,
        index=True,
    )
    status_reason = Column(status_reason_enum, nullable=True)
    status_changed_at = Column(DateTime(timezone=True), nullable=False)

    # Scheduling
    next_run_at = Column(DateTime(timezone=True), nullable=True, index=True)

    # Worker lease (all three set or all three null)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    locked_by = Column(String(64), nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)

    # External tracking
    external_submission_id = Column(String(255), nullable=True)
    raw_status = Column(String(64), nullable=True)
    raw_status_message = Column(Text, nullable=True)

    # Last error
    last_error_type = Column(error_type_enum, nullable=True)
    last_error_code = Column(String(64), nullable=True)
    last_error_message = Column(Text, nullable=True)

    # Action needed
    action_needed_type = Column(action_needed_type_enum, nullable=True)
    action_needed_url = Column(Text, nullable=True)
    action_needed_fields = Column(JSON, nullable=True)
    action_needed_deadline = Column(DateTime(timezone=True), nullable=True)

    # Retry from NEEDS_CHANGES / REJECTED requires acknowledgement
    changes_acknowledged = Column(Boolean, nullable=False, default=False)
    changes_acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    changes_acknowledged_by = Column(String(64), nullable=True)

    # Who created the run
    triggered_by = Column(triggered_by_enum, nullable=False, default=TriggeredBy.SYSTEM)
    triggered_by_id = Column(String(64), nullable=True)

    # Timing
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("attempt_no >= 1", name="submission_runs_attempt_positive"),
        CheckConstraint(
            "(locked_at IS NULL AND locked_by IS NULL AND lease_expires_at IS NULL)"
            " OR (locked_at IS NOT NULL AND locked_by IS NOT NULL"
            " AND lease_expires_at IS NOT NULL)",
            name="submission_runs_lock_all_or_nothing",
        ),
        Index("ix_submission_runs_status_next_run", "status", "next_run_at"),
        Index("ix_submission_runs_status_lease", "status", "lease_expires_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "submission_target_id": self.submission_target_id,
            "attempt_no": self.attempt_no,
            "previous_run_id": self.previous_run_id,
            "correlation_id": self.correlation_id,
            "status": _val(self.status),
            "status_reason": _val(self.status_reason),
            "status_changed_at": _iso(self.status_changed_at),
            "next_run_at": _iso(self.next_run_at),
            "locked_at": _iso(self.locked_at),
            "locked_by": self.locked_by,
            "lease_expires_at": _iso(self.lease_expires_at),
            "external_submission_id": self.external_submission_id,
            "raw_status": self.raw_status,
            "raw_status_message": self.raw_status_message,
            "last_error": {
                "type": _val(self.last_error_type),
                "code": self.last_error_code,
                "message": self.last_error_message,
            },
            "action_needed": {
                "type": _val(self.action_needed_type),
                "url": self.action_needed_url,
                "fields": self.action_needed_fields,
                "deadline": _iso(self.action_needed_deadline),
            },
            "changes_acknowledged": self.changes_acknowledged,
            "changes_acknowledged_at": _iso(self.changes_acknowledged_at),
            "changes_acknowledged_by": self.changes_acknowledged_by,
            "triggered_by": _val(self.triggered_by),
            "triggered_by_id": self.triggered_by_id,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class SubmissionEventModel(Base):
    """Immutable fact about a run. Read back in ``id`` order."""

    __tablename__ = "submission_events"

    id = Column(Integer, primary_key=True, autoincrement=True)

    submission_run_id = Column(
        String(128),
        ForeignKey("submission_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    submission_target_id = Column(
        String(128),
        ForeignKey("submission_targets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    event_type = Column(submission_event_type_enum, nullable=False, index=True)

    # Status change specific
    from_status = Column(submission_status_enum, nullable=True)
    to_status = Column(submission_status_enum, nullable=True)
    status_reason = Column(status_reason_enum, nullable=True)

    triggered_by = Column(triggered_by_enum, nullable=False, default=TriggeredBy.SYSTEM)
    triggered_by_id = Column(String(64), nullable=True)

    event_data = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (
        Index("ix_submission_events_run_id_id", "submission_run_id", "id"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "submission_run_id": self.submission_run_id,
            "submission_target_id": self.submission_target_id,
            "event_type": _val(self.event_type),
            "from_status": _val(self.from_status),
            "to_status": _val(self.to_status),
            "status_reason": _val(self.status_reason),
            "triggered_by": _val(self.triggered_by),
            "triggered_by_id": self.triggered_by_id,
            "event_data": self.event_data,
            "created_at": _iso(self.created_at),
        }


class SubmissionArtifactModel(Base):
    """Evidence stored against a run or a target."""

    __tablename__ = "submission_artifacts"

    id = Column(String(128), primary_key=True)

    submission_run_id = Column(
        String(128),
        ForeignKey("submission_runs.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    submission_target_id = Column(
        String(128),
        ForeignKey("submission_targets.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )

    artifact_type = Column(artifact_type_enum, nullable=False, index=True)

    content_type = Column(String(128), nullable=False, default="application/json")
    content = Column(JSON, nullable=True)
    content_text = Column(Text, nullable=True)
    content_url = Column(Text, nullable=True)
    size_bytes = Column(Integer, nullable=True)
    checksum = Column(String(64), nullable=True)

    redaction_mode = Column(
        artifact_redaction_mode_enum,
        nullable=False,
        default=ArtifactRedactionMode.BEST_EFFORT,
    )
    redaction_applied = Column(Boolean, nullable=False, default=False)
    redaction_leaks_count = Column(Integer, nullable=False, default=0)

    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (
        CheckConstraint(
            "submission_run_id IS NOT NULL OR submission_target_id IS NOT NULL",
            name="artifact_must_have_link",
        ),
        CheckConstraint(
            "content IS NOT NULL OR content_text IS NOT NULL OR content_url IS NOT NULL",
            name="artifact_must_have_content",
        ),
        Index(
            "ix_submission_artifacts_run_type", "submission_run_id", "artifact_type"
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "submission_run_id": self.submission_run_id,
            "submission_target_id": self.submission_target_id,
            "artifact_type": _val(self.artifact_type),
            "content_type": self.content_type,
            "content": self.content,
            "content_text": self.content_text,
            "content_url": self.content_url,
            "size_bytes": self.size_bytes,
            "checksum": self.checksum,
            "redaction_mode": _val(self.redaction_mode),
            "redaction_applied": self.redaction_applied,
            "redaction_leaks_count": self.redaction_leaks_count,
            "metadata": self.meta,
            "created_at": _iso(self.created_at),
        }
