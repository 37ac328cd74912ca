"""
Submission Engine

Lifecycle state machine for directory-listing submission runs.
"""

import importlib.metadata

__version__ = importlib.metadata.version("submission-engine")

from .submission.artifacts import ArtifactService, SqlArtifactLookup
from .submission.leases import LeaseManager, LeaseResult
from .submission.results import ConnectorResult, SubmissionResultHandler
from .submission.state_machine import SubmissionStateMachine
from .submission.sweeper import RetrySweeper
from .submission.targets import TargetService

__all__ = [
    "ArtifactService",
    "ConnectorResult",
    "LeaseManager",
    "LeaseResult",
    "RetrySweeper",
    "SqlArtifactLookup",
    "SubmissionResultHandler",
    "SubmissionStateMachine",
    "TargetService",
]
