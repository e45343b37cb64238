"""Availability resolver.

Given one machine's reservations and a caller-supplied ``now``, work out the
machine's status and its current and next reservation. Nothing here touches
the store or the clock; the same inputs always produce the same answer, and
batch resolution is just single resolution applied per machine.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple

from .domain import MachineInfo, MachineStatus, Reservation, ReservationStatus, WindowPhase
from .timeutils import classify, overlaps, to_canonical


@dataclass(frozen=True)
class RequestedWindow:
    start: datetime
    end: datetime


@dataclass(frozen=True)
class MachineAvailability:
    machine_id: int
    status: MachineStatus
    current: Optional[Reservation]
    next: Optional[Reservation]
    window_available: Optional[bool] = None
    window_conflict_id: Optional[int] = None


def _active_for(machine_id: int, reservations: Iterable[Reservation]) -> Tuple[Reservation, ...]:
    relevant = (r for r in reservations if r.is_active and machine_id in r.machine_ids)
    return tuple(sorted(relevant, key=lambda r: (r.start_time, r.id)))


def resolve_machine(
    machine_id: int,
    reservations: Iterable[Reservation],
    now: datetime,
    *,
    under_maintenance: bool = False,
    window: Optional[RequestedWindow] = None,
    lookahead_minutes: Optional[int] = None,
) -> MachineAvailability:
    now = to_canonical(now)
    active = _active_for(machine_id, reservations)

    current = next(
        (r for r in active if classify(r.start_time, r.end_time, now) is WindowPhase.ONGOING),
        None,
    )
    horizon = None if lookahead_minutes is None else now + timedelta(minutes=lookahead_minutes)
    upcoming = next(
        (
            r
            for r in active
            if r is not current and r.start_time >= now and (horizon is None or r.start_time <= horizon)
        ),
        None,
    )

    if under_maintenance:
        status = MachineStatus.MAINTENANCE
    elif current is None:
        status = MachineStatus.AVAILABLE
    elif current.status is ReservationStatus.IN_USE:
        status = MachineStatus.IN_USE
    else:
        status = MachineStatus.BOOKED

    window_available = window_conflict_id = None
    if window is not None:
        clash = next((r for r in active if overlaps(window.start, window.end, r.start_time, r.end_time)), None)
        window_available = clash is None
        window_conflict_id = clash.id if clash is not None else None

    return MachineAvailability(
        machine_id=machine_id,
        status=status,
        current=current,
        next=upcoming,
        window_available=window_available,
        window_conflict_id=window_conflict_id,
    )


def group_by_machine(reservations: Iterable[Reservation]) -> Dict[int, Tuple[Reservation, ...]]:
    grouped: Dict[int, list] = defaultdict(list)
    for reservation in reservations:
        for machine_id in reservation.machine_ids:
            grouped[machine_id].append(reservation)
    return {machine_id: tuple(items) for machine_id, items in grouped.items()}


def resolve_all(
    machines: Sequence[MachineInfo],
    reservations_by_machine: Mapping[int, Iterable[Reservation]],
    now: datetime,
    *,
    window: Optional[RequestedWindow] = None,
    lookahead_minutes: Optional[int] = None,
) -> Dict[int, MachineAvailability]:
    return {
        machine.id: resolve_machine(
            machine.id,
            reservations_by_machine.get(machine.id, ()),
            now,
            under_maintenance=machine.under_maintenance,
            window=window,
            lookahead_minutes=lookahead_minutes,
        )
        for machine in machines
    }
