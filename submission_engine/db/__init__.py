"""
Database package for the Submission Engine.
"""

from .base import (
    Base,
    build_engine,
    drop_database,
    get_db,
    get_engine,
    get_session_local,
    init_database,
)
from .models import (
    SubmissionArtifactModel,
    SubmissionEventModel,
    SubmissionRunModel,
    SubmissionTargetModel,
)

__all__ = [
    "Base",
    "build_engine",
    "get_engine",
    "get_session_local",
    "get_db",
    "init_database",
    "drop_database",
    "SubmissionTargetModel",
    "SubmissionRunModel",
    "SubmissionEventModel",
    "SubmissionArtifactModel",
]
