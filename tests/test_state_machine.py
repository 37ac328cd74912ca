"""
Tests for SubmissionStateMachine.transition_run_status().

Verifies:
- Input validation happens before any read or write
- Invalid edges leave the run and the event log untouched
- Valid edges write the field set and exactly one STATUS_CHANGE event
- Supplementary events and target projection
"""

from datetime import timedelta

import pytest

from helpers import NOW, advance, store_live_evidence
from submission_engine.submission.enums import (
    ActionNeededType,
    ErrorType,
    StatusReason,
    SubmissionEventType,
    SubmissionStatus,
    TriggeredBy,
)
from submission_engine.submission.errors import (
    InvalidTransitionError,
    InvalidTransitionInputError,
    RunNotFoundError,
)
from submission_engine.submission.primitives import as_utc
from submission_engine.submission.schemas import StatusChangeData, parse_event_data
from submission_engine.submission.status_table import STATUS_META, is_valid_transition

S = SubmissionStatus
E = SubmissionEventType


def event_types(machine, run_id):
    return [event.event_type for event in machine.get_history(run_id)]


class TestInputValidation:
    """Bad input is rejected before storage is touched."""

    def test_unknown_status(self, machine, run):
        """Verify an unknown target status is rejected."""
        with pytest.raises(InvalidTransitionInputError, match="Invalid status"):
            machine.transition_run_status(run.id, "teleported")

    def test_unknown_reason(self, machine, run):
        """Verify an unknown status reason is rejected."""
        with pytest.raises(InvalidTransitionInputError, match="status_reason"):
            machine.transition_run_status(run.id, S.IN_PROGRESS, reason="because")

    def test_unknown_trigger(self, machine, run):
        """Verify an unknown trigger source is rejected."""
        with pytest.raises(InvalidTransitionInputError, match="triggered_by"):
            machine.transition_run_status(run.id, S.IN_PROGRESS, triggered_by="robot")

    def test_action_needed_requires_metadata(self, machine, run):
        """Verify ACTION_NEEDED without action details is rejected."""
        advance(machine, run.id, S.IN_PROGRESS)
        with pytest.raises(InvalidTransitionInputError, match="action_needed"):
            machine.transition_run_status(run.id, S.ACTION_NEEDED)

    def test_action_needed_type_must_be_known(self, machine, run):
        """Verify an unknown action-needed type is rejected."""
        advance(machine, run.id, S.IN_PROGRESS)
        with pytest.raises(InvalidTransitionInputError):
            machine.transition_run_status(
                run.id, S.ACTION_NEEDED, meta={"action_needed": {"type": "dance"}}
            )

    def test_failed_requires_error_type(self, machine, run):
        """Verify FAILED without an error type is rejected."""
        advance(machine, run.id, S.IN_PROGRESS)
        with pytest.raises(InvalidTransitionInputError, match="error_type"):
            machine.transition_run_status(run.id, S.FAILED)

    def test_deferred_error_type_must_be_known(self, machine, run):
        """Verify an unknown error type is rejected on DEFERRED."""
        with pytest.raises(InvalidTransitionInputError):
            machine.transition_run_status(
                run.id, S.DEFERRED, meta={"error_type": "cosmic_rays"}
            )

    def test_unknown_meta_field_rejected(self, machine, run):
        """Verify metadata keys outside the schema are rejected."""
        with pytest.raises(InvalidTransitionInputError):
            machine.transition_run_status(run.id, S.DEFERRED, meta={"retry_later": True})

    def test_validation_precedes_lookup(self, machine):
        """Verify bad input is reported before the run is looked up."""
        # The run does not exist, but the bad status is reported first
        with pytest.raises(InvalidTransitionInputError):
            machine.transition_run_status("missing-run", "teleported")

    def test_rejected_input_writes_nothing(self, machine, run):
        """Verify rejected input leaves the run and its history unchanged."""
        with pytest.raises(InvalidTransitionInputError):
            machine.transition_run_status(run.id, "teleported")
        assert machine.get_run(run.id).status is S.QUEUED
        assert event_types(machine, run.id) == [E.CREATED]


class TestInvalidTransitions:
    """Edges missing from the table are rejected without side effects."""

    def test_missing_run(self, machine):
        """Verify an unknown run raises NOT_FOUND."""
        with pytest.raises(RunNotFoundError) as exc_info:
            machine.transition_run_status("missing-run", S.IN_PROGRESS)
        assert exc_info.value.code == "NOT_FOUND"

    def test_queued_to_live_rejected(self, machine, run):
        """Verify the error lists the allowed next statuses."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            machine.transition_run_status(run.id, S.LIVE)

        error = exc_info.value
        assert error.from_status == "queued"
        assert error.to_status == "live"
        assert error.allowed == ["in_progress", "paused", "cancelled", "deferred"]
        assert "Allowed: in_progress, paused, cancelled, deferred" in str(error)

    @pytest.mark.parametrize("to_status", [S.SUBMITTED, S.APPROVED, S.QUEUED, S.BLOCKED])
    def test_invalid_edge_leaves_run_untouched(self, machine, run, to_status):
        """Verify a refused edge changes neither the run nor the event log."""
        before = machine.get_run(run.id)

        with pytest.raises(InvalidTransitionError):
            machine.transition_run_status(run.id, to_status)

        after = machine.get_run(run.id)
        assert after.status is S.QUEUED
        assert after.status_changed_at == before.status_changed_at
        assert after.attempt_no == before.attempt_no
        assert event_types(machine, run.id) == [E.CREATED]

    def test_terminal_without_reopen_edge(self, machine, run):
        """Verify a dead-end status reports no allowed transitions."""
        advance(machine, run.id, S.IN_PROGRESS, S.ALREADY_LISTED)
        with pytest.raises(InvalidTransitionError) as exc_info:
            machine.transition_run_status(run.id, S.QUEUED)
        assert exc_info.value.allowed == []
        assert "Allowed: none" in str(exc_info.value)


class TestValidTransitions:
    """Field updates and the STATUS_CHANGE event."""

    def test_single_status_change_event(self, machine, run, clock):
        """Verify one STATUS_CHANGE event with the actor and both statuses."""
        clock.advance(seconds=5)
        updated = machine.transition_run_status(
            run.id,
            S.IN_PROGRESS,
            triggered_by=TriggeredBy.WORKER,
            triggered_by_id="worker-1",
        )

        assert updated.status is S.IN_PROGRESS
        assert as_utc(updated.status_changed_at) == NOW + timedelta(seconds=5)

        history = machine.get_history(run.id)
        status_changes = [e for e in history if e.event_type is E.STATUS_CHANGE]
        assert len(status_changes) == 1
        event = status_changes[0]
        assert event.from_status is S.QUEUED
        assert event.to_status is S.IN_PROGRESS
        assert event.triggered_by is TriggeredBy.WORKER
        assert event.triggered_by_id == "worker-1"

    def test_every_valid_edge_writes_one_event(self, machine, run):
        """Verify a walk through several edges logs one event per edge."""
        path = [S.IN_PROGRESS, S.PAUSED, S.QUEUED, S.DEFERRED, S.QUEUED, S.CANCELLED, S.QUEUED]
        advance(machine, run.id, *path)

        history = machine.get_history(run.id)
        status_changes = [e for e in history if e.event_type is E.STATUS_CHANGE]
        assert [e.to_status for e in status_changes] == path
        assert [e.from_status for e in status_changes] == [S.QUEUED] + path[:-1]

    def test_history_is_in_insertion_order(self, machine, run):
        """Verify history comes back oldest first."""
        advance(machine, run.id, S.IN_PROGRESS, S.SUBMITTED, S.AWAITING_REVIEW)
        ids = [event.id for event in machine.get_history(run.id)]
        assert ids == sorted(ids)

    def test_accepts_raw_strings(self, machine, run):
        """Verify plain string values are coerced to enums."""
        updated = machine.transition_run_status(
            run.id, "in_progress", reason="scheduled", triggered_by="scheduler"
        )
        assert updated.status is S.IN_PROGRESS
        assert updated.status_reason is StatusReason.SCHEDULED

    def test_reason_recorded(self, machine, run):
        """Verify the reason lands on the run and on the event."""
        machine.transition_run_status(run.id, S.PAUSED, reason=StatusReason.MANUAL_PAUSE)
        run_after = machine.get_run(run.id)
        assert run_after.status_reason is StatusReason.MANUAL_PAUSE
        last = machine.get_history(run.id)[-1]
        assert last.status_reason is StatusReason.MANUAL_PAUSE

    def test_reason_kept_when_not_given(self, machine, run):
        """Verify a transition without a reason keeps the previous one."""
        machine.transition_run_status(run.id, S.PAUSED, reason=StatusReason.MANUAL_PAUSE)
        machine.transition_run_status(run.id, S.QUEUED)
        assert machine.get_run(run.id).status_reason is StatusReason.MANUAL_PAUSE


class TestAttemptTracking:
    """attempt_no and started_at when a run is picked up."""

    def test_entering_in_progress_from_queued(self, machine, run, clock):
        """Verify pickup from QUEUED bumps attempt_no and stamps started_at."""
        assert run.attempt_no == 1
        clock.advance(minutes=1)
        updated = machine.transition_run_status(run.id, S.IN_PROGRESS)
        assert updated.attempt_no == 2
        assert as_utc(updated.started_at) == NOW + timedelta(minutes=1)

    def test_entering_in_progress_from_deferred(self, machine, run):
        """Verify pickup from DEFERRED starts a new attempt."""
        advance(machine, run.id, S.DEFERRED, S.IN_PROGRESS)
        assert machine.get_run(run.id).attempt_no == 2

    def test_resuming_from_action_needed_keeps_attempt(self, machine, run):
        """Verify resuming after user action is not a new attempt."""
        advance(machine, run.id, S.IN_PROGRESS)
        machine.transition_run_status(
            run.id, S.ACTION_NEEDED, meta={"action_needed": {"type": "captcha"}}
        )
        resumed = machine.transition_run_status(run.id, S.IN_PROGRESS)
        assert resumed.attempt_no == 2


class TestTerminalTransitions:
    """completed_at on terminal statuses."""

    def test_completed_at_set_on_terminal(self, machine, run, clock):
        """Verify a terminal status stamps completed_at and the error fields."""
        advance(machine, run.id, S.IN_PROGRESS)
        assert machine.get_run(run.id).completed_at is None

        clock.advance(minutes=3)
        failed = machine.transition_run_status(
            run.id,
            S.FAILED,
            reason=StatusReason.VALIDATION_FAILED,
            meta={
                "error_type": ErrorType.VALIDATION_ERROR,
                "error_code": "E_PHONE",
                "error_message": "Phone number rejected",
            },
        )
        assert as_utc(failed.completed_at) == NOW + timedelta(minutes=3)
        assert failed.last_error_type is ErrorType.VALIDATION_ERROR
        assert failed.last_error_code == "E_PHONE"
        assert failed.last_error_message == "Phone number rejected"

    def test_non_terminal_leaves_completed_at(self, machine, run):
        """Verify a non-terminal status leaves completed_at empty."""
        updated = machine.transition_run_status(run.id, S.PAUSED)
        assert updated.completed_at is None

    def test_failed_run_can_be_requeued(self, machine, run):
        """Verify FAILED can be re-enabled back to QUEUED."""
        advance(machine, run.id, S.IN_PROGRESS)
        machine.transition_run_status(run.id, S.FAILED, meta={"error_type": "unknown"})
        requeued = machine.transition_run_status(
            run.id, S.QUEUED, reason=StatusReason.MANUAL_RE_ENABLE, triggered_by="admin"
        )
        assert requeued.status is S.QUEUED


class TestActionNeeded:
    """ACTION_NEEDED fields and the ACTION_REQUIRED event."""

    def test_fields_and_events(self, machine, run, clock):
        """Verify action fields on the run and the STATUS_CHANGE plus ACTION_REQUIRED events."""
        advance(machine, run.id, S.IN_PROGRESS)
        deadline = NOW + timedelta(days=2)
        updated = machine.transition_run_status(
            run.id,
            S.ACTION_NEEDED,
            reason=StatusReason.CAPTCHA_REQUIRED,
            meta={
                "action_needed": {
                    "type": "captcha",
                    "url": "https://directory.example/verify",
                    "fields": ["phone", "hours"],
                    "deadline": deadline,
                }
            },
        )

        assert updated.action_needed_type is ActionNeededType.CAPTCHA
        assert updated.action_needed_url == "https://directory.example/verify"
        assert updated.action_needed_fields == ["phone", "hours"]
        assert as_utc(updated.action_needed_deadline) == deadline

        history = machine.get_history(run.id)
        assert [e.event_type for e in history[-2:]] == [E.STATUS_CHANGE, E.ACTION_REQUIRED]

        status_change = history[-2]
        payload = parse_event_data(status_change.event_type, status_change.event_data)
        assert isinstance(payload, StatusChangeData)
        assert payload.action_needed.type is ActionNeededType.CAPTCHA
        assert payload.error is None

        action_required = history[-1]
        assert action_required.event_data["action_type"] == "captcha"
        assert action_required.triggered_by is TriggeredBy.SYSTEM

    def test_prefill_mapping_stored_unchanged(self, machine, run):
        """Verify a mapping of prefill values is stored and emitted unchanged."""
        advance(machine, run.id, S.IN_PROGRESS)
        prefill = {
            "business_name": "Acme Plumbing",
            "website": "https://acme.example",
            "hours": {"mon": "9-17", "sat": "10-14"},
        }
        updated = machine.transition_run_status(
            run.id,
            S.ACTION_NEEDED,
            reason=StatusReason.MANUAL_REVIEW_REQUIRED,
            meta={"action_needed": {"type": "manual_review", "fields": prefill}},
        )

        assert updated.action_needed_fields == prefill
        assert machine.get_run(run.id).action_needed_fields == prefill

        action_required = machine.get_history(run.id)[-1]
        assert action_required.event_type is E.ACTION_REQUIRED
        assert action_required.event_data["action_type"] == "manual_review"
        assert action_required.event_data["action_fields"] == prefill


class TestDeferredScheduling:
    """next_run_at precedence and the RETRY_SCHEDULED event."""

    def test_explicit_timestamp_wins(self, machine, run):
        """Verify an explicit next_run_at beats a delay and backoff."""
        explicit = NOW + timedelta(hours=1)
        updated = machine.transition_run_status(
            run.id,
            S.DEFERRED,
            meta={"next_run_at": explicit, "retry_delay_ms": 1000, "schedule_retry": True},
        )
        assert as_utc(updated.next_run_at) == explicit

    def test_explicit_delay_beats_backoff(self, machine, run):
        """Verify an explicit delay beats computed backoff."""
        updated = machine.transition_run_status(
            run.id, S.DEFERRED, meta={"retry_delay_ms": 1500, "schedule_retry": True}
        )
        assert as_utc(updated.next_run_at) == NOW + timedelta(milliseconds=1500)

    def test_backoff_from_attempt_number(self, machine, run):
        """Verify backoff for attempt 1 is the base delay."""
        updated = machine.transition_run_status(
            run.id, S.DEFERRED, meta={"schedule_retry": True}
        )
        assert updated.attempt_no == 1
        assert as_utc(updated.next_run_at) == NOW + timedelta(milliseconds=5000)

    def test_backoff_after_pickup(self, machine, run):
        """Verify backoff after the first pickup uses attempt 2."""
        advance(machine, run.id, S.IN_PROGRESS)
        updated = machine.transition_run_status(
            run.id,
            S.DEFERRED,
            reason=StatusReason.RATE_LIMITED,
            meta={"schedule_retry": True, "error_type": "rate_limited"},
        )
        assert updated.attempt_no == 2
        assert as_utc(updated.next_run_at) == NOW + timedelta(milliseconds=10000)
        assert updated.last_error_type is ErrorType.RATE_LIMITED

    def test_retry_scheduled_event(self, machine, run):
        """Verify a scheduled retry appends RETRY_SCHEDULED."""
        machine.transition_run_status(run.id, S.DEFERRED, meta={"schedule_retry": True})
        last = machine.get_history(run.id)[-1]
        assert last.event_type is E.RETRY_SCHEDULED
        assert last.event_data["attempt_no"] == 1
        assert last.event_data["next_run_at"].startswith("2026-01-15T12:00:05")

    def test_no_schedule_without_request(self, machine, run):
        """Verify DEFERRED without a schedule request leaves next_run_at empty."""
        updated = machine.transition_run_status(run.id, S.DEFERRED)
        assert updated.next_run_at is None
        assert event_types(machine, run.id)[-1] is E.STATUS_CHANGE

    def test_next_run_at_only_for_deferred(self, machine, run):
        """Verify schedule metadata is ignored for other statuses."""
        updated = machine.transition_run_status(
            run.id, S.PAUSED, meta={"schedule_retry": True, "retry_delay_ms": 100}
        )
        assert updated.next_run_at is None


class TestMetaFields:
    """Lock clearing and external tracking."""

    def test_clear_lock(self, machine, run, clock):
        """Verify clear_lock drops the lease fields."""
        from submission_engine.submission.leases import LeaseManager

        leases = LeaseManager(machine.session_factory, state_machine=machine, clock=clock)
        assert leases.acquire(run.id, "worker-1").success

        updated = machine.transition_run_status(
            run.id, S.DEFERRED, meta={"clear_lock": True}
        )
        assert updated.locked_at is None
        assert updated.locked_by is None
        assert updated.lease_expires_at is None

    def test_external_tracking_fields(self, machine, run):
        """Verify external id and raw status are stored and the id is logged."""
        advance(machine, run.id, S.IN_PROGRESS)
        updated = machine.transition_run_status(
            run.id,
            S.SUBMITTED,
            reason=StatusReason.SUBMISSION_ACCEPTED,
            meta={
                "external_submission_id": "ext-42",
                "raw_status": "PENDING",
                "raw_status_message": "Queued for moderation",
            },
        )
        assert updated.external_submission_id == "ext-42"
        assert updated.raw_status == "PENDING"
        assert updated.raw_status_message == "Queued for moderation"

        status_change = machine.get_history(run.id)[-1]
        assert status_change.event_data == {"external_submission_id": "ext-42"}


class TestTargetProjection:
    """The target mirrors its latest run."""

    def test_target_follows_run(self, machine, targets, run, target):
        """Verify the target mirrors the run status."""
        advance(machine, run.id, S.IN_PROGRESS, S.SUBMITTED)
        refreshed = targets.get_target(target.id)
        assert refreshed.current_status is S.SUBMITTED
        assert refreshed.current_run_id == run.id

    def test_live_stamps_target(self, machine, targets, artifacts, run, target, clock):
        """Verify going LIVE stamps live_verified_at on the target."""
        advance(machine, run.id, S.IN_PROGRESS, S.SUBMITTED)
        store_live_evidence(artifacts, run.id)
        clock.advance(hours=1)

        machine.transition_run_status(run.id, S.LIVE, reason=StatusReason.LIVE_VERIFIED)

        refreshed = targets.get_target(target.id)
        assert refreshed.current_status is S.LIVE
        assert as_utc(refreshed.live_verified_at) == NOW + timedelta(hours=1)


# Shortest route from QUEUED to each status through the table.
ROUTE_FROM_QUEUED = {
    S.QUEUED: [],
    S.DEFERRED: [S.DEFERRED],
    S.PAUSED: [S.PAUSED],
    S.CANCELLED: [S.CANCELLED],
    S.IN_PROGRESS: [S.IN_PROGRESS],
    S.ACTION_NEEDED: [S.IN_PROGRESS, S.ACTION_NEEDED],
    S.ALREADY_LISTED: [S.IN_PROGRESS, S.ALREADY_LISTED],
    S.SUBMITTED: [S.IN_PROGRESS, S.SUBMITTED],
    S.AWAITING_REVIEW: [S.IN_PROGRESS, S.SUBMITTED, S.AWAITING_REVIEW],
    S.APPROVED: [S.IN_PROGRESS, S.SUBMITTED, S.APPROVED],
    S.NEEDS_CHANGES: [S.IN_PROGRESS, S.SUBMITTED, S.NEEDS_CHANGES],
    S.REJECTED: [S.IN_PROGRESS, S.SUBMITTED, S.REJECTED],
    S.LIVE: [S.IN_PROGRESS, S.SUBMITTED, S.LIVE],
    S.DISABLED: [S.IN_PROGRESS, S.SUBMITTED, S.LIVE, S.DISABLED],
    S.EXPIRED: [S.IN_PROGRESS, S.SUBMITTED, S.APPROVED, S.EXPIRED],
    S.BLOCKED: [S.IN_PROGRESS, S.ACTION_NEEDED, S.BLOCKED],
    S.FAILED: [S.DEFERRED, S.FAILED],
}

ALL_PAIRS = [(from_status, to_status) for from_status in STATUS_META for to_status in S]
VALID_PAIRS = [pair for pair in ALL_PAIRS if is_valid_transition(*pair)]
INVALID_PAIRS = [pair for pair in ALL_PAIRS if not is_valid_transition(*pair)]


def pair_id(pair):
    return f"{pair[0].value}->{pair[1].value}"


def required_meta(to_status):
    if to_status is S.ACTION_NEEDED:
        return {"action_needed": {"type": "captcha"}}
    if to_status is S.FAILED:
        return {"error_type": "timeout"}
    return None


def park_run_at(machine, artifacts, run_id, status):
    # Satisfy every gate up front so only the table decides
    store_live_evidence(artifacts, run_id)
    machine.acknowledge_changes(run_id, "user-1")
    for step in ROUTE_FROM_QUEUED[status]:
        machine.transition_run_status(run_id, step, meta=required_meta(step))
    return machine.get_run(run_id)


def status_changes(machine, run_id):
    return [e for e in machine.get_history(run_id) if e.event_type is E.STATUS_CHANGE]


class TestEveryStatusPair:
    """Each (from, to) pair obeys the table exactly."""

    def test_routes_cover_every_status(self):
        """Verify every status has a route and each route ends where it claims."""
        assert set(ROUTE_FROM_QUEUED) == set(S)
        for status, route in ROUTE_FROM_QUEUED.items():
            hops = [S.QUEUED] + route
            assert hops[-1] is status
            assert all(is_valid_transition(a, b) for a, b in zip(hops, hops[1:]))

    @pytest.mark.parametrize("pair", VALID_PAIRS, ids=pair_id)
    def test_valid_pair_applies(self, machine, artifacts, run, clock, pair):
        """Verify a table edge moves the run and writes exactly one STATUS_CHANGE."""
        from_status, to_status = pair
        parked = park_run_at(machine, artifacts, run.id, from_status)
        assert parked.status is from_status
        changes_before = len(status_changes(machine, run.id))

        clock.advance(minutes=1)
        machine.transition_run_status(run.id, to_status, meta=required_meta(to_status))

        after = machine.get_run(run.id)
        assert after.status is to_status
        assert as_utc(after.status_changed_at) == clock.now

        changes = status_changes(machine, run.id)
        assert len(changes) == changes_before + 1
        assert changes[-1].from_status is from_status
        assert changes[-1].to_status is to_status

    @pytest.mark.parametrize("pair", INVALID_PAIRS, ids=pair_id)
    def test_invalid_pair_rejected(self, machine, artifacts, run, clock, pair):
        """Verify a missing edge raises and leaves the run and its history untouched."""
        from_status, to_status = pair
        before = park_run_at(machine, artifacts, run.id, from_status)
        history_before = len(machine.get_history(run.id))

        clock.advance(minutes=1)
        with pytest.raises(InvalidTransitionError) as exc_info:
            machine.transition_run_status(run.id, to_status, meta=required_meta(to_status))
        assert exc_info.value.from_status == from_status.value

        after = machine.get_run(run.id)
        assert after.status is from_status
        assert after.status_changed_at == before.status_changed_at
        assert after.attempt_no == before.attempt_no
        assert len(machine.get_history(run.id)) == history_before
