"""
Tests for the event log and typed event payloads.
"""

import pytest

from submission_engine.submission.enums import (
    ActionNeededType,
    SubmissionEventType,
    SubmissionStatus,
    TriggeredBy,
)
from submission_engine.submission.errors import InvalidTransitionInputError
from submission_engine.submission.events import EventLog
from submission_engine.submission.schemas import (
    ActionRequiredData,
    RunCreatedData,
    TransitionMeta,
    parse_event_data,
    parse_transition_meta,
    serialize_event_data,
)

E = SubmissionEventType


class TestEventLog:
    """Tests for EventLog append/history."""

    def test_append_assigns_increasing_ids(self, session_factory, run):
        """Verify appended events get increasing ids and keep their payload."""
        with session_factory() as db:
            log = EventLog(db)
            first = log.append(run.id, run.submission_target_id, E.CONNECTOR_CALLED)
            second = log.append(
                run.id,
                run.submission_target_id,
                "connector_response",
                data={"http_status": 200},
            )
            db.commit()

        assert second.id > first.id

        with session_factory() as db:
            history = EventLog(db).history(run.id)
        assert [e.event_type for e in history] == [
            E.CREATED,
            E.CONNECTOR_CALLED,
            E.CONNECTOR_RESPONSE,
        ]
        assert history[-1].event_data == {"http_status": 200}

    def test_unknown_event_type_rejected(self, session_factory, run):
        """Verify an unknown event type is refused."""
        with session_factory() as db:
            with pytest.raises(InvalidTransitionInputError):
                EventLog(db).append(run.id, run.submission_target_id, "party_started")

    def test_unknown_trigger_rejected(self, session_factory, run):
        """Verify an unknown trigger source is refused."""
        with session_factory() as db:
            with pytest.raises(InvalidTransitionInputError):
                EventLog(db).append(
                    run.id, run.submission_target_id, E.TIMEOUT, triggered_by="robot"
                )

    def test_typed_payload_validated(self, session_factory, run):
        """Verify a payload that does not fit its event type is refused."""
        with session_factory() as db:
            with pytest.raises(InvalidTransitionInputError):
                EventLog(db).append(
                    run.id, run.submission_target_id, E.CREATED, data={"attempt_no": 0}
                )

    def test_for_target_filters_by_type(self, machine, session_factory, run, target):
        """Verify target history can be filtered by event type."""
        machine.transition_run_status(run.id, SubmissionStatus.PAUSED)
        second = machine.create_run(target.id)

        with session_factory() as db:
            created = EventLog(db).for_target(target.id, E.CREATED)
            everything = EventLog(db).for_target(target.id)

        assert [e.submission_run_id for e in created] == [run.id, second.id]
        assert len(everything) == 3


class TestPayloads:
    """Tests for payload serialization and parsing."""

    def test_serialize_drops_unset_fields(self):
        """Verify unset optional payload fields are not stored."""
        data = serialize_event_data(E.CREATED, RunCreatedData(attempt_no=1))
        assert data == {"attempt_no": 1}

    def test_free_form_types_pass_through(self):
        """Verify event types without a model store data as given."""
        assert serialize_event_data(E.WEBHOOK_RECEIVED, {"raw": [1, 2]}) == {"raw": [1, 2]}
        assert serialize_event_data(E.WEBHOOK_RECEIVED, None) == {}

    def test_parse_round_trip(self):
        """Verify a stored payload loads back into its model."""
        stored = serialize_event_data(
            E.ACTION_REQUIRED,
            {"action_type": "mfa", "action_fields": ["code"]},
        )
        payload = parse_event_data("action_required", stored)
        assert isinstance(payload, ActionRequiredData)
        assert payload.action_type is ActionNeededType.MFA

    def test_parse_unknown_type_returns_dict(self):
        """Verify an unknown event type parses to a plain dict."""
        assert parse_event_data("not_an_event", {"a": 1}) == {"a": 1}


class TestTransitionMeta:
    """Tests for TransitionMeta parsing."""

    def test_none_gives_defaults(self):
        """Verify missing metadata yields defaults."""
        meta = parse_transition_meta(None)
        assert meta.schedule_retry is False
        assert meta.action_needed is None

    def test_model_passes_through(self):
        """Verify a TransitionMeta instance is returned as-is."""
        meta = TransitionMeta(clear_lock=True)
        assert parse_transition_meta(meta) is meta

    def test_negative_delay_rejected(self):
        """Verify a negative retry delay is rejected with error details."""
        with pytest.raises(InvalidTransitionInputError) as exc_info:
            parse_transition_meta({"retry_delay_ms": -1})
        assert exc_info.value.details["errors"]

    def test_default_trigger_is_system(self, machine, run):
        """Verify transitions default to the system trigger."""
        history = machine.get_history(run.id)
        assert history[0].triggered_by is TriggeredBy.USER
        machine.transition_run_status(run.id, SubmissionStatus.PAUSED)
        assert machine.get_history(run.id)[-1].triggered_by is TriggeredBy.SYSTEM
