"""Unit tests for the availability resolver."""
from datetime import datetime, timedelta, timezone

from lounge.domain import (
    Assignment,
    Customer,
    MachineCategory,
    MachineInfo,
    MachineStatus,
    Reservation,
    ReservationStatus,
)
from lounge.resolver import RequestedWindow, group_by_machine, resolve_all, resolve_machine


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def reservation(rid, machines, start, minutes, status=ReservationStatus.BOOKED):
    return Reservation(
        id=rid,
        customer=Customer(name=f"customer-{rid}", phone="0771234567"),
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        duration_minutes=minutes,
        status=status,
        machines=tuple(Assignment(machine_id=m) for m in machines),
    )


def machine(mid, maintenance=False):
    return MachineInfo(
        id=mid,
        category=MachineCategory.CONSOLE,
        serial_number=f"SN-{mid}",
        machine_type="PS5",
        under_maintenance=maintenance,
    )


class TestResolveMachine:
    def test_no_reservations_is_available(self):
        result = resolve_machine(1, [], utc(2025, 6, 1, 10, 0))
        assert result.status is MachineStatus.AVAILABLE
        assert result.current is None
        assert result.next is None

    def test_booked_reservation_containing_now_is_current(self):
        r = reservation(1, [1], utc(2025, 6, 1, 10, 0), 60)
        result = resolve_machine(1, [r], utc(2025, 6, 1, 10, 0))
        assert result.status is MachineStatus.BOOKED
        assert result.current == r
        assert result.next is None

    def test_in_use_reservation_reports_in_use(self):
        r = reservation(1, [1], utc(2025, 6, 1, 10, 0), 60, ReservationStatus.IN_USE)
        result = resolve_machine(1, [r], utc(2025, 6, 1, 10, 15))
        assert result.status is MachineStatus.IN_USE
        assert result.current == r

    def test_end_instant_is_not_current(self):
        r = reservation(1, [1], utc(2025, 6, 1, 10, 0), 60, ReservationStatus.IN_USE)
        result = resolve_machine(1, [r], utc(2025, 6, 1, 11, 0))
        assert result.status is MachineStatus.AVAILABLE
        assert result.current is None

    def test_next_is_earliest_upcoming(self):
        later = reservation(3, [1], utc(2025, 6, 1, 14, 0), 60)
        soon = reservation(2, [1], utc(2025, 6, 1, 12, 0), 60)
        now_r = reservation(1, [1], utc(2025, 6, 1, 10, 0), 60, ReservationStatus.IN_USE)
        result = resolve_machine(1, [later, now_r, soon], utc(2025, 6, 1, 10, 30))
        assert result.current == now_r
        assert result.next == soon

    def test_back_to_back_booking_is_next_not_current(self):
        current = reservation(1, [1], utc(2025, 6, 1, 10, 0), 60, ReservationStatus.IN_USE)
        following = reservation(2, [1], utc(2025, 6, 1, 11, 0), 60)
        result = resolve_machine(1, [current, following], utc(2025, 6, 1, 10, 59))
        assert result.current == current
        assert result.next == following

    def test_cancelled_and_completed_are_ignored(self):
        cancelled = reservation(1, [1], utc(2025, 6, 1, 10, 0), 60, ReservationStatus.CANCELLED)
        completed = reservation(2, [1], utc(2025, 6, 1, 10, 0), 60, ReservationStatus.COMPLETED)
        upcoming_cancelled = reservation(3, [1], utc(2025, 6, 1, 12, 0), 60, ReservationStatus.CANCELLED)
        result = resolve_machine(1, [cancelled, completed, upcoming_cancelled], utc(2025, 6, 1, 10, 30))
        assert result.status is MachineStatus.AVAILABLE
        assert result.current is None
        assert result.next is None

    def test_maintenance_overrides_everything(self):
        r = reservation(1, [1], utc(2025, 6, 1, 10, 0), 60, ReservationStatus.IN_USE)
        result = resolve_machine(1, [r], utc(2025, 6, 1, 10, 30), under_maintenance=True)
        assert result.status is MachineStatus.MAINTENANCE
        assert result.current == r

    def test_reservations_for_other_machines_are_ignored(self):
        other = reservation(1, [2], utc(2025, 6, 1, 10, 0), 60, ReservationStatus.IN_USE)
        result = resolve_machine(1, [other], utc(2025, 6, 1, 10, 30))
        assert result.status is MachineStatus.AVAILABLE

    def test_lookahead_limits_next(self):
        far = reservation(1, [1], utc(2025, 6, 1, 14, 0), 60)
        now = utc(2025, 6, 1, 10, 0)
        assert resolve_machine(1, [far], now, lookahead_minutes=120).next is None
        assert resolve_machine(1, [far], now, lookahead_minutes=240).next == far

    def test_requested_window_reports_first_clash(self):
        r = reservation(7, [1], utc(2025, 6, 1, 11, 0), 60)
        now = utc(2025, 6, 1, 9, 0)
        free = resolve_machine(1, [r], now, window=RequestedWindow(utc(2025, 6, 1, 10, 0), utc(2025, 6, 1, 11, 0)))
        assert free.window_available is True
        assert free.window_conflict_id is None
        busy = resolve_machine(1, [r], now, window=RequestedWindow(utc(2025, 6, 1, 10, 30), utc(2025, 6, 1, 11, 30)))
        assert busy.window_available is False
        assert busy.window_conflict_id == 7

    def test_same_inputs_same_output(self):
        rs = [
            reservation(1, [1], utc(2025, 6, 1, 10, 0), 60, ReservationStatus.IN_USE),
            reservation(2, [1], utc(2025, 6, 1, 12, 0), 30),
        ]
        now = utc(2025, 6, 1, 10, 20)
        assert resolve_machine(1, rs, now) == resolve_machine(1, list(reversed(rs)), now)


class TestBatchResolution:
    def test_batch_equals_individual_resolution(self):
        now = utc(2025, 6, 1, 10, 0)
        rs = [
            reservation(1, [1, 2], now, 60, ReservationStatus.IN_USE),
            reservation(2, [2], now + timedelta(hours=1), 60),
            reservation(3, [3], now + timedelta(hours=2), 30),
            reservation(4, [4], now, 60),
            reservation(5, [3], now - timedelta(minutes=30), 60, ReservationStatus.CANCELLED),
        ]
        machines = [machine(1), machine(2), machine(3), machine(4, maintenance=True), machine(5)]
        grouped = group_by_machine(rs)

        batch = resolve_all(machines, grouped, now)

        for m in machines:
            single = resolve_machine(m.id, grouped.get(m.id, ()), now, under_maintenance=m.under_maintenance)
            assert batch[m.id] == single
        assert batch[1].status is MachineStatus.IN_USE
        assert batch[2].next.id == 2
        assert batch[3].next.id == 3
        assert batch[4].status is MachineStatus.MAINTENANCE
        assert batch[5].status is MachineStatus.AVAILABLE

    def test_batch_with_shared_start_keeps_machines_separate(self):
        now = utc(2025, 6, 1, 10, 0)
        a = reservation(1, [1], now, 60)
        b = reservation(2, [2], now, 90, ReservationStatus.IN_USE)
        batch = resolve_all([machine(1), machine(2)], group_by_machine([a, b]), now)
        assert batch[1].current == a
        assert batch[2].current == b
        assert batch[1].status is MachineStatus.BOOKED
        assert batch[2].status is MachineStatus.IN_USE

    def test_group_by_machine_lists_multi_machine_reservations_under_each(self):
        r = reservation(1, [1, 2], utc(2025, 6, 1, 10, 0), 60)
        grouped = group_by_machine([r])
        assert grouped == {1: (r,), 2: (r,)}
