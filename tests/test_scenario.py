"""End-to-end walk through a single machine's day, driven with explicit clocks."""
from datetime import datetime, timezone

from lounge.domain import Assignment, BookingProposal, Customer, MachineStatus, ReservationStatus
from lounge.errors import ResourceUnavailable
from lounge.resolver import resolve_machine


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def proposal(machine_id, name, start, minutes=60):
    return BookingProposal(
        customer=Customer(name=name, phone="0771234567"),
        start_time=start,
        duration_minutes=minutes,
        machines=(Assignment(machine_id=machine_id),),
    )


def test_alice_plays_bob_is_turned_away(validator, lifecycle, store, make_machines):
    (machine_id,) = make_machines()
    booked_at = utc(2025, 6, 1, 9, 55)

    alice = validator.propose(proposal(machine_id, "Alice", utc(2025, 6, 1, 10, 0)), now=booked_at)
    assert alice.ok
    assert alice.value.status is ReservationStatus.BOOKED
    assert alice.value.end_time == utc(2025, 6, 1, 11, 0)

    bob = validator.propose(proposal(machine_id, "Bob", utc(2025, 6, 1, 10, 30)), now=booked_at)
    assert isinstance(bob.failure, ResourceUnavailable)
    assert bob.failure.conflicting_reservation_id == alice.value.id

    started = lifecycle.start(alice.value.id, at=utc(2025, 6, 1, 10, 0))
    assert started.value.status is ReservationStatus.IN_USE

    during = resolve_machine(machine_id, store.list_for_resource(machine_id), utc(2025, 6, 1, 10, 15))
    assert during.status is MachineStatus.IN_USE
    assert during.current.id == alice.value.id
    assert during.next is None

    ended = lifecycle.end(alice.value.id, utc(2025, 6, 1, 11, 5))
    assert ended.value.status is ReservationStatus.COMPLETED
    assert ended.value.actual_ended_at == utc(2025, 6, 1, 11, 5)

    after = resolve_machine(machine_id, store.list_for_resource(machine_id), utc(2025, 6, 1, 11, 10))
    assert after.status is MachineStatus.AVAILABLE
    assert after.current is None
    assert after.next is None
