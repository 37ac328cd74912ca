"""Test configuration and fixtures."""

import pytest

from helpers import FrozenClock
from submission_engine.db.base import Base, build_engine, get_session_local
from submission_engine.logging_config import configure_logging
from submission_engine.submission.artifacts import ArtifactService
from submission_engine.submission.state_machine import SubmissionStateMachine
from submission_engine.submission.targets import TargetService


@pytest.fixture(autouse=True)
def structured_logging():
    """Route structlog output through the stdlib root logger on stderr."""
    configure_logging("INFO", "json")


@pytest.fixture
def engine():
    """Fresh in-memory database for each test."""
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_engine(tmp_path):
    """File-backed database, needed when several connections run at once."""
    engine = build_engine(f"sqlite:///{tmp_path / 'submissions.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_local(engine)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def machine(session_factory, clock):
    return SubmissionStateMachine(session_factory, clock=clock)


@pytest.fixture
def targets(session_factory, clock):
    return TargetService(session_factory, clock=clock)


@pytest.fixture
def artifacts(session_factory, clock):
    return ArtifactService(session_factory, clock=clock)


@pytest.fixture
def target(targets):
    return targets.create_target("biz-1", "dir-yelp", connector_key="yelp")


@pytest.fixture
def run(machine, target):
    return machine.create_run(target.id, triggered_by="user", triggered_by_id="user-1")
