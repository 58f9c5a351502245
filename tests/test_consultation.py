"""
Consultation scheduler tests.

Session lifecycle (scheduled → in_progress → completed, cancel / no-show)
and the order edges it drives:

    consultation_pending → consultation_scheduled → consultation_completed
                         → design_in_progress
"""

from datetime import datetime, timedelta, timezone

import pytest

from orderflow.core.exceptions import NotFoundError, TransitionError, ValidationError
from orderflow.models.production import CONSULTATION_TRANSITIONS, validate_consultation_transition
from orderflow.services import consultation_service, order_lifecycle

CUSTOMER = "cust-0001"
PROVIDER = "prov-0001"
STRANGER = "user-9999"


def _when(days=2):
    return datetime.now(timezone.utc) + timedelta(days=days)


@pytest.fixture()
def consult_order(make_order, consult_listing):
    return make_order(listing=consult_listing, specification={})


def _schedule(order, actor=CUSTOMER, **kwargs):
    return consultation_service.schedule(order.id, actor, _when(), **kwargs)


class TestScheduling:

    def test_consultation_flow_reaches_design(self, consult_order):
        """pending → scheduled → completed → design_in_progress."""
        assert consult_order.status == "consultation_pending"

        session = _schedule(consult_order, meeting_url="https://meet.example.com/abc",
                            meeting_id="abc", meeting_password="s3cret")
        assert session.status == "scheduled"
        assert session.scheduled_by == CUSTOMER
        assert consult_order.status == "consultation_scheduled"
        assert consult_order.consultation_scheduled_at is not None

        consultation_service.complete(session.id, PROVIDER, "Gold foil, ivory card",
                                      {"paper": "ivory", "finish": "gold foil"})

        assert session.status == "completed"
        assert session.completed_at is not None
        assert session.consultation_summary == "Gold foil, ivory card"
        assert session.key_decisions == {"paper": "ivory", "finish": "gold foil"}
        assert consult_order.status == "design_in_progress"
        assert consult_order.consultation_completed_at is not None
        assert consult_order.design_started_at is not None

        statuses = [e.new_status for e in order_lifecycle.get_timeline(consult_order.id, CUSTOMER)]
        assert statuses == [
            "consultation_pending",
            "consultation_scheduled",
            "consultation_completed",
            "design_in_progress",
        ]

    def test_start_then_complete(self, consult_order):
        session = _schedule(consult_order)

        consultation_service.start(session.id, PROVIDER)
        assert session.status == "in_progress"
        assert session.started_at is not None
        assert consult_order.status == "consultation_scheduled"

        consultation_service.complete(session.id, PROVIDER, None)
        assert consult_order.status == "design_in_progress"

    def test_credentials_only_on_request(self, consult_order):
        session = _schedule(consult_order, meeting_id="m-1", meeting_password="pw")

        assert "meeting_password" not in session.to_dict()
        assert session.to_dict(include_credentials=True)["meeting_password"] == "pw"

    def test_cannot_schedule_twice(self, consult_order):
        _schedule(consult_order)

        with pytest.raises(TransitionError):
            _schedule(consult_order)

    def test_cannot_schedule_for_design_order(self, make_order):
        order = make_order()

        with pytest.raises(TransitionError):
            _schedule(order)

    @pytest.mark.parametrize("kwargs", [
        {"session_type": "carrier_pigeon"},
        {"duration_minutes": 0},
        {"duration_minutes": "30"},
    ])
    def test_invalid_booking_details(self, consult_order, kwargs):
        with pytest.raises(ValidationError):
            _schedule(consult_order, **kwargs)
        assert consult_order.status == "consultation_pending"

    def test_scheduled_at_required(self, consult_order):
        with pytest.raises(ValidationError):
            consultation_service.schedule(consult_order.id, CUSTOMER, None)

    def test_stranger_cannot_schedule(self, consult_order):
        with pytest.raises(NotFoundError):
            _schedule(consult_order, actor=STRANGER)


class TestCancelAndNoShow:

    def test_cancel_returns_order_to_pending(self, consult_order):
        session = _schedule(consult_order)

        consultation_service.cancel(session.id, CUSTOMER, "Travelling")

        assert session.status == "cancelled"
        assert session.cancelled_at is not None
        assert session.cancellation_reason == "Travelling"
        assert consult_order.status == "consultation_pending"
        event = order_lifecycle.get_timeline(consult_order.id, CUSTOMER)[-1]
        assert event.event_type == "consultation_cancelled"
        assert event.note == "Travelling"

    def test_no_show_returns_order_to_pending(self, consult_order):
        session = _schedule(consult_order)

        consultation_service.mark_no_show(session.id, PROVIDER)

        assert session.status == "no_show"
        assert session.ended_at is not None
        assert consult_order.status == "consultation_pending"

    def test_reschedule_after_cancel(self, consult_order):
        first = _schedule(consult_order)
        consultation_service.cancel(first.id, CUSTOMER)

        second = _schedule(consult_order)

        assert consult_order.status == "consultation_scheduled"
        sessions = consultation_service.list_sessions(consult_order.id, PROVIDER)
        assert [s.id for s in sessions] == [first.id, second.id]

    def test_no_show_only_before_start(self, consult_order):
        session = _schedule(consult_order)
        consultation_service.start(session.id, PROVIDER)

        with pytest.raises(TransitionError):
            consultation_service.mark_no_show(session.id, PROVIDER)

    @pytest.mark.parametrize("close", ["complete", "cancel", "mark_no_show"])
    def test_closed_sessions_are_frozen(self, consult_order, close):
        session = _schedule(consult_order)
        if close == "complete":
            consultation_service.complete(session.id, PROVIDER, "done")
        else:
            getattr(consultation_service, close)(session.id, PROVIDER)

        with pytest.raises(TransitionError):
            consultation_service.start(session.id, PROVIDER)
        with pytest.raises(TransitionError):
            consultation_service.cancel(session.id, PROVIDER)

    def test_stranger_cannot_touch_session(self, consult_order):
        session = _schedule(consult_order)

        with pytest.raises(NotFoundError):
            consultation_service.cancel(session.id, STRANGER)
        with pytest.raises(NotFoundError):
            consultation_service.list_sessions(consult_order.id, STRANGER)
        assert session.status == "scheduled"

    def test_unknown_session(self):
        with pytest.raises(NotFoundError):
            consultation_service.start("missing", PROVIDER)


def test_session_state_machine():
    assert validate_consultation_transition("scheduled", "in_progress")
    assert validate_consultation_transition("in_progress", "completed")
    assert not validate_consultation_transition("in_progress", "no_show")
    for closed in ("completed", "cancelled", "no_show"):
        assert CONSULTATION_TRANSITIONS[closed] == []
