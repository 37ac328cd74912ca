"""create submission tables

Revision ID: 0001_submission
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

from submission_engine.submission.enums import (
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

# revision identifiers, used by Alembic.
revision = "0001_submission"
down_revision = None
branch_labels = None
depends_on = None

ENUM_TYPES = {
    "submission_status": SubmissionStatus,
    "status_reason": StatusReason,
    "triggered_by": TriggeredBy,
    "action_needed_type": ActionNeededType,
    "error_type": ErrorType,
    "submission_event_type": SubmissionEventType,
    "artifact_type": ArtifactType,
    "artifact_redaction_mode": ArtifactRedactionMode,
    "submission_mode": SubmissionMode,
    "live_verification_method": LiveVerificationMethod,
}


def _enum(name: str) -> sa.types.TypeEngine:
    values = enum_values(ENUM_TYPES[name])
    # Postgres types are created once up front and shared between tables
    return sa.Enum(*values, name=name, create_constraint=True).with_variant(
        postgresql.ENUM(*values, name=name, create_type=False), "postgresql"
    )


def _timestamps() -> list:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    is_sqlite = bind.dialect.name == "sqlite"

    if bind.dialect.name == "postgresql":
        for name, enum_cls in ENUM_TYPES.items():
            postgresql.ENUM(*enum_values(enum_cls), name=name).create(
                bind, checkfirst=True
            )

    # SQLite cannot add constraints later, but accepts forward references
    current_run_fk = []
    if is_sqlite:
        current_run_fk.append(
            sa.ForeignKeyConstraint(
                ["current_run_id"],
                ["submission_runs.id"],
                name="fk_submission_targets_current_run",
                ondelete="SET NULL",
            )
        )

    op.create_table(
        "submission_targets",
        sa.Column("id", sa.String(length=128), nullable=False),
        sa.Column("business_profile_id", sa.String(length=128), nullable=False),
        sa.Column("directory_id", sa.String(length=128), nullable=False),
        sa.Column("connector_key", sa.String(length=64), nullable=True),
        sa.Column(
            "submission_mode",
            _enum("submission_mode"),
            nullable=False,
            server_default="manual",
        ),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="50"),
        sa.Column(
            "current_status",
            _enum("submission_status"),
            nullable=False,
            server_default="queued",
        ),
        sa.Column("current_run_id", sa.String(length=128), nullable=True),
        sa.Column("external_listing_id", sa.String(length=255), nullable=True),
        sa.Column("external_listing_url", sa.Text(), nullable=True),
        sa.Column("live_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "live_verification_method",
            _enum("live_verification_method"),
            nullable=True,
        ),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "business_profile_id",
            "directory_id",
            name="submission_targets_unique_business_directory",
        ),
        sa.CheckConstraint(
            "priority BETWEEN 1 AND 100", name="submission_targets_priority_range"
        ),
        *current_run_fk,
    )
    op.create_index(
        "ix_submission_targets_business_profile_id",
        "submission_targets",
        ["business_profile_id"],
    )
    op.create_index(
        "ix_submission_targets_directory_id", "submission_targets", ["directory_id"]
    )
    op.create_index(
        "ix_submission_targets_current_status", "submission_targets", ["current_status"]
    )

    op.create_table(
        "submission_runs",
        sa.Column("id", sa.String(length=128), nullable=False),
        sa.Column("submission_target_id", sa.String(length=128), nullable=False),
        sa.Column("attempt_no", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("previous_run_id", sa.String(length=128), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=False),
        sa.Column(
            "status",
            _enum("submission_status"),
            nullable=False,
            server_default="queued",
        ),
        sa.Column("status_reason", _enum("status_reason"), nullable=True),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(length=64), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_submission_id", sa.String(length=255), nullable=True),
        sa.Column("raw_status", sa.String(length=64), nullable=True),
        sa.Column("raw_status_message", sa.Text(), nullable=True),
        sa.Column("last_error_type", _enum("error_type"), nullable=True),
        sa.Column("last_error_code", sa.String(length=64), nullable=True),
        sa.Column("last_error_message", sa.Text(), nullable=True),
        sa.Column("action_needed_type", _enum("action_needed_type"), nullable=True),
        sa.Column("action_needed_url", sa.Text(), nullable=True),
        sa.Column("action_needed_fields", sa.JSON(), nullable=True),
        sa.Column("action_needed_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "changes_acknowledged",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("changes_acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("changes_acknowledged_by", sa.String(length=64), nullable=True),
        sa.Column(
            "triggered_by",
            _enum("triggered_by"),
            nullable=False,
            server_default="system",
        ),
        sa.Column("triggered_by_id", sa.String(length=64), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["submission_target_id"], ["submission_targets.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["previous_run_id"], ["submission_runs.id"], ondelete="SET NULL"
        ),
        sa.CheckConstraint("attempt_no >= 1", name="submission_runs_attempt_positive"),
        sa.CheckConstraint(
            "(locked_at IS NULL AND locked_by IS NULL AND lease_expires_at IS NULL)"
            " OR (locked_at IS NOT NULL AND locked_by IS NOT NULL"
            " AND lease_expires_at IS NOT NULL)",
            name="submission_runs_lock_all_or_nothing",
        ),
    )
    op.create_index(
        "ix_submission_runs_submission_target_id",
        "submission_runs",
        ["submission_target_id"],
    )
    op.create_index(
        "ix_submission_runs_correlation_id", "submission_runs", ["correlation_id"]
    )
    op.create_index("ix_submission_runs_status", "submission_runs", ["status"])
    op.create_index("ix_submission_runs_next_run_at", "submission_runs", ["next_run_at"])
    op.create_index(
        "ix_submission_runs_status_next_run", "submission_runs", ["status", "next_run_at"]
    )
    op.create_index(
        "ix_submission_runs_status_lease",
        "submission_runs",
        ["status", "lease_expires_at"],
    )

    if not is_sqlite:
        op.create_foreign_key(
            "fk_submission_targets_current_run",
            "submission_targets",
            "submission_runs",
            ["current_run_id"],
            ["id"],
            ondelete="SET NULL",
        )

    op.create_table(
        "submission_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("submission_run_id", sa.String(length=128), nullable=False),
        sa.Column("submission_target_id", sa.String(length=128), nullable=False),
        sa.Column("event_type", _enum("submission_event_type"), nullable=False),
        sa.Column("from_status", _enum("submission_status"), nullable=True),
        sa.Column("to_status", _enum("submission_status"), nullable=True),
        sa.Column("status_reason", _enum("status_reason"), nullable=True),
        sa.Column(
            "triggered_by",
            _enum("triggered_by"),
            nullable=False,
            server_default="system",
        ),
        sa.Column("triggered_by_id", sa.String(length=64), nullable=True),
        sa.Column("event_data", sa.JSON(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["submission_run_id"], ["submission_runs.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["submission_target_id"], ["submission_targets.id"], ondelete="CASCADE"
        ),
    )
    op.create_index(
        "ix_submission_events_submission_run_id",
        "submission_events",
        ["submission_run_id"],
    )
    op.create_index(
        "ix_submission_events_submission_target_id",
        "submission_events",
        ["submission_target_id"],
    )
    op.create_index(
        "ix_submission_events_event_type", "submission_events", ["event_type"]
    )
    op.create_index(
        "ix_submission_events_run_id_id",
        "submission_events",
        ["submission_run_id", "id"],
    )

    op.create_table(
        "submission_artifacts",
        sa.Column("id", sa.String(length=128), nullable=False),
        sa.Column("submission_run_id", sa.String(length=128), nullable=True),
        sa.Column("submission_target_id", sa.String(length=128), nullable=True),
        sa.Column("artifact_type", _enum("artifact_type"), nullable=False),
        sa.Column(
            "content_type",
            sa.String(length=128),
            nullable=False,
            server_default="application/json",
        ),
        sa.Column("content", sa.JSON(), nullable=True),
        sa.Column("content_text", sa.Text(), nullable=True),
        sa.Column("content_url", sa.Text(), nullable=True),
        sa.Column("size_bytes", sa.Integer(), nullable=True),
        sa.Column("checksum", sa.String(length=64), nullable=True),
        sa.Column(
            "redaction_mode",
            _enum("artifact_redaction_mode"),
            nullable=False,
            server_default="best_effort",
        ),
        sa.Column(
            "redaction_applied", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "redaction_leaks_count", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["submission_run_id"], ["submission_runs.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["submission_target_id"], ["submission_targets.id"], ondelete="CASCADE"
        ),
        sa.CheckConstraint(
            "submission_run_id IS NOT NULL OR submission_target_id IS NOT NULL",
            name="artifact_must_have_link",
        ),
        sa.CheckConstraint(
            "content IS NOT NULL OR content_text IS NOT NULL OR content_url IS NOT NULL",
            name="artifact_must_have_content",
        ),
    )
    op.create_index(
        "ix_submission_artifacts_submission_run_id",
        "submission_artifacts",
        ["submission_run_id"],
    )
    op.create_index(
        "ix_submission_artifacts_submission_target_id",
        "submission_artifacts",
        ["submission_target_id"],
    )
    op.create_index(
        "ix_submission_artifacts_artifact_type",
        "submission_artifacts",
        ["artifact_type"],
    )
    op.create_index(
        "ix_submission_artifacts_run_type",
        "submission_artifacts",
        ["submission_run_id", "artifact_type"],
    )


def downgrade() -> None:
    bind = op.get_bind()

    op.drop_table("submission_artifacts")
    op.drop_table("submission_events")
    if bind.dialect.name != "sqlite":
        op.drop_constraint(
            "fk_submission_targets_current_run", "submission_targets", type_="foreignkey"
        )
    op.drop_table("submission_runs")
    op.drop_table("submission_targets")

    if bind.dialect.name == "postgresql":
        for name, enum_cls in ENUM_TYPES.items():
            postgresql.ENUM(*enum_values(enum_cls), name=name).drop(
                bind, checkfirst=True
            )
