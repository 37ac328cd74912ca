"""Shared test helpers."""

from datetime import datetime, timedelta, timezone

from submission_engine.submission.enums import ArtifactType

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def advance(machine, run_id, *path, **kwargs):
    """Walk a run along ``path``, returning the final run."""
    result = None
    for status in path:
        result = machine.transition_run_status(run_id, status, **kwargs)
    return result


def store_live_evidence(artifacts, run_id):
    return artifacts.store(
        ArtifactType.LIVE_VERIFICATION_RESULT,
        run_id=run_id,
        content={"verified": True, "method": "listing_url_200"},
    )

