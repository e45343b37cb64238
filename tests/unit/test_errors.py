"""Unit tests for booking failures and outcomes."""
from datetime import datetime, timezone

import pytest

from lounge.domain import ReservationStatus
from lounge.errors import ExtensionConflict, IllegalTransition, Outcome, ResourceUnavailable


class TestOutcome:
    def test_accepted_unwraps_to_value(self):
        outcome = Outcome.accepted(42)

        assert outcome.ok
        assert outcome.unwrap() == 42

    def test_rejected_unwrap_raises_failure(self):
        failure = ResourceUnavailable(3, 9)
        outcome = Outcome.rejected(failure)

        assert not outcome.ok
        assert outcome.value is None
        with pytest.raises(ResourceUnavailable) as excinfo:
            outcome.unwrap()
        assert excinfo.value is failure


class TestFailureDetails:
    def test_resource_unavailable_names_conflict(self):
        detail = ResourceUnavailable(3, 9).to_detail()

        assert detail["code"] == "resource_unavailable"
        assert detail["machine_id"] == 3
        assert detail["conflicting_reservation_id"] == 9

    def test_illegal_transition_reports_status_value(self):
        detail = IllegalTransition(ReservationStatus.COMPLETED, "start").to_detail()

        assert detail["current_status"] == "Completed"
        assert detail["requested"] == "start"
        assert detail["message"] == "Cannot start a reservation that is Completed"

    def test_extension_conflict_names_next_booking(self):
        next_start = datetime(2025, 6, 1, 11, 0, tzinfo=timezone.utc)
        detail = ExtensionConflict(1, 2, 7, next_start).to_detail()

        assert detail["next_reservation_id"] == 7
        assert detail["next_start"] == "2025-06-01T11:00:00+00:00"
