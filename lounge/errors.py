"""Failure taxonomy for the booking engine.

``BookingFailure`` subclasses describe expected outcomes (a busy machine, an
illegal transition). Engine operations hand them back inside an ``Outcome``
instead of raising them. ``StoreUnavailable`` is the only infrastructure
error allowed to propagate.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class BookingFailure(Exception):
    code = "booking_failure"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class InvalidDuration(BookingFailure):
    code = "invalid_duration"

    def __init__(self, duration: Any) -> None:
        super().__init__(f"Duration must be a positive whole number of minutes, got {duration!r}")
        self.duration = duration


class InvalidProposal(BookingFailure):
    code = "invalid_proposal"


class InvalidTimestamp(BookingFailure):
    code = "invalid_timestamp"


class StartInPast(BookingFailure):
    code = "start_in_past"

    def __init__(self, start_time: datetime, grace_minutes: int) -> None:
        super().__init__(
            f"Start time {start_time.isoformat()} is more than {grace_minutes} minutes in the past"
        )
        self.start_time = start_time


class MachineNotFound(BookingFailure):
    code = "machine_not_found"

    def __init__(self, machine_id: int) -> None:
        super().__init__(f"Machine {machine_id} does not exist")
        self.machine_id = machine_id


class ReservationNotFound(BookingFailure):
    code = "reservation_not_found"

    def __init__(self, reservation_id: int) -> None:
        super().__init__(f"Reservation {reservation_id} does not exist")
        self.reservation_id = reservation_id


class ResourceUnavailable(BookingFailure):
    code = "resource_unavailable"

    def __init__(self, machine_id: int, conflicting_reservation_id: Optional[int]) -> None:
        if conflicting_reservation_id is None:
            message = f"Machine {machine_id} is already booked for the selected time slot"
        else:
            message = (
                f"Machine {machine_id} is already booked for the selected time slot "
                f"(reservation {conflicting_reservation_id})"
            )
        super().__init__(message)
        self.machine_id = machine_id
        self.conflicting_reservation_id = conflicting_reservation_id

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail.update(
            machine_id=self.machine_id,
            conflicting_reservation_id=self.conflicting_reservation_id,
        )
        return detail


class IllegalTransition(BookingFailure):
    code = "illegal_transition"

    def __init__(self, current_status: Any, requested: str) -> None:
        current = getattr(current_status, "value", current_status)
        super().__init__(f"Cannot {requested} a reservation that is {current}")
        self.current_status = current_status
        self.requested = requested

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail.update(
            current_status=getattr(self.current_status, "value", self.current_status),
            requested=self.requested,
        )
        return detail


class ExtensionConflict(BookingFailure):
    code = "extension_conflict"

    def __init__(self, reservation_id: int, machine_id: int, next_reservation_id: int, next_start: datetime) -> None:
        super().__init__(
            f"Extending reservation {reservation_id} would overlap reservation {next_reservation_id} "
            f"on machine {machine_id} starting at {next_start.isoformat()}"
        )
        self.reservation_id = reservation_id
        self.machine_id = machine_id
        self.next_reservation_id = next_reservation_id
        self.next_start = next_start

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail.update(
            machine_id=self.machine_id,
            next_reservation_id=self.next_reservation_id,
            next_start=self.next_start.isoformat(),
        )
        return detail


class StoreConflict(Exception):
    """Raised by the store when a commit loses a race for a machine window."""

    def __init__(self, machine_id: int, reservation_id: Optional[int]) -> None:
        super().__init__(f"machine {machine_id} overlaps reservation {reservation_id}")
        self.machine_id = machine_id
        self.reservation_id = reservation_id


class StoreUnavailable(Exception):
    """The reservation store could not be reached in time. Safe to retry."""

    retryable = True


@dataclass(frozen=True)
class Outcome(Generic[T]):
    value: Optional[T] = None
    failure: Optional[BookingFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def accepted(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def rejected(cls, failure: BookingFailure) -> "Outcome[T]":
        return cls(failure=failure)

    def unwrap(self) -> T:
        if self.failure is not None:
            raise self.failure
        return self.value  # type: ignore[return-value]


class DuplicateMachine(BookingFailure):
    code = "duplicate_machine"

    def __init__(self, serial_number: str) -> None:
        super().__init__(f"A machine with serial number {serial_number} already exists")
        self.serial_number = serial_number
