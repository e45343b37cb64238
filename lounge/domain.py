"""Plain domain types shared by the store, resolver, validator and lifecycle.

Everything here is immutable. ORM rows never leave the store; callers only
ever see these dataclasses.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple


class MachineCategory(str, Enum):
    CONSOLE = "Console"
    PC_LEFT = "PC-L"
    PC_RIGHT = "PC-R"


class ReservationStatus(str, Enum):
    BOOKED = "Booked"
    IN_USE = "InUse"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class MachineStatus(str, Enum):
    AVAILABLE = "Available"
    BOOKED = "Booked"
    IN_USE = "InUse"
    MAINTENANCE = "Maintenance"


class WindowPhase(str, Enum):
    UPCOMING = "Upcoming"
    ONGOING = "Ongoing"
    COMPLETED = "Completed"


ACTIVE_STATUSES = frozenset({ReservationStatus.BOOKED, ReservationStatus.IN_USE})
TERMINAL_STATUSES = frozenset({ReservationStatus.COMPLETED, ReservationStatus.CANCELLED})

# Lifecycle graph: status -> statuses reachable in one step.
TRANSITIONS: dict[ReservationStatus, frozenset[ReservationStatus]] = {
    ReservationStatus.BOOKED: frozenset({ReservationStatus.IN_USE, ReservationStatus.CANCELLED}),
    ReservationStatus.IN_USE: frozenset({ReservationStatus.COMPLETED, ReservationStatus.CANCELLED}),
    ReservationStatus.COMPLETED: frozenset(),
    ReservationStatus.CANCELLED: frozenset(),
}


def can_transition(current: ReservationStatus, target: ReservationStatus) -> bool:
    return target in TRANSITIONS[current]


def allowed_sources(target: ReservationStatus) -> frozenset[ReservationStatus]:
    """Statuses from which ``target`` may be entered."""
    return frozenset(source for source, targets in TRANSITIONS.items() if target in targets)


@dataclass(frozen=True)
class MachineInfo:
    id: int
    category: MachineCategory
    serial_number: str
    machine_type: str
    under_maintenance: bool = False


@dataclass(frozen=True)
class Customer:
    name: str
    phone: str
    email: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class Assignment:
    machine_id: int
    occupancy: int = 1


@dataclass(frozen=True)
class Reservation:
    id: int
    customer: Customer
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    status: ReservationStatus
    machines: Tuple[Assignment, ...]
    transaction_ref: Optional[str] = None
    created_at: Optional[datetime] = None
    actual_started_at: Optional[datetime] = None
    actual_ended_at: Optional[datetime] = None

    @property
    def machine_ids(self) -> Tuple[int, ...]:
        return tuple(assignment.machine_id for assignment in self.machines)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


@dataclass(frozen=True)
class BookingProposal:
    """A request to reserve one or more machines for ``duration_minutes``.

    The end of the window is never part of a proposal; it is always derived
    from ``start_time`` and ``duration_minutes``.
    """

    customer: Customer
    start_time: datetime
    duration_minutes: int
    machines: Tuple[Assignment, ...]
    transaction_ref: Optional[str] = None


@dataclass(frozen=True)
class ReservationDraft:
    """A validated proposal with its canonical window, ready to be committed."""

    customer: Customer
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    machines: Tuple[Assignment, ...]
    transaction_ref: Optional[str] = None
    status: ReservationStatus = field(default=ReservationStatus.BOOKED)


TRANSITION_VERBS: dict[ReservationStatus, str] = {
    ReservationStatus.BOOKED: "rebook",
    ReservationStatus.IN_USE: "start",
    ReservationStatus.COMPLETED: "end",
    ReservationStatus.CANCELLED: "cancel",
}
