"""Reservation store: the contract the engine consumes and its SQL implementation.

Reads are plain queries. Writes lock the affected machine rows in ascending
id order (``SELECT ... FOR UPDATE``; SQLite ignores the clause and relies on
its single-writer lock) and re-check overlaps inside the same transaction,
so a commit that lost a race surfaces as ``StoreConflict``.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import ContextManager, Iterable, Iterator, List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, selectinload

from .cache import SnapshotCache, snapshot_cache
from .domain import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    TRANSITION_VERBS,
    Assignment,
    Customer,
    Reservation,
    ReservationDraft,
    ReservationStatus,
    allowed_sources,
)
from .errors import IllegalTransition, MachineNotFound, ReservationNotFound, StoreConflict, StoreUnavailable
from .database import apply_wait_budget, reset_wait_budget
from .locking import Deadline
from .models import Booking, BookingMachine, Machine
from .timeutils import compute_end, to_canonical

logger = logging.getLogger(__name__)


class ReservationStore(Protocol):
    def query_overlapping(
        self,
        machine_id: int,
        window_start: datetime,
        window_end: datetime,
        statuses: Iterable[ReservationStatus] = ACTIVE_STATUSES,
        exclude_id: Optional[int] = None,
    ) -> List[Reservation]: ...

    def create(self, draft: ReservationDraft) -> Reservation: ...

    def update_status(
        self, reservation_id: int, new_status: ReservationStatus, actual_timestamp: datetime
    ) -> Reservation: ...

    def extend(self, reservation_id: int, additional_minutes: int) -> Reservation: ...

    def list_for_resource(
        self, machine_id: int, statuses: Iterable[ReservationStatus] = ACTIVE_STATUSES
    ) -> List[Reservation]: ...

    def get(self, reservation_id: int) -> Reservation: ...

    def missing_machines(self, machine_ids: Iterable[int]) -> List[int]: ...

    def bounded(self, timeout: float) -> ContextManager[Deadline]: ...


def to_reservation(booking: Booking) -> Reservation:
    return Reservation(
        id=booking.id,
        customer=Customer(
            name=booking.customer_name,
            phone=booking.customer_phone,
            email=booking.customer_email,
            notes=booking.notes,
        ),
        start_time=booking.start_time,
        end_time=booking.end_time,
        duration_minutes=booking.duration_minutes,
        status=ReservationStatus(booking.status),
        machines=tuple(
            Assignment(machine_id=row.machine_id, occupancy=row.occupancy)
            for row in sorted(booking.machines, key=lambda row: row.machine_id)
        ),
        transaction_ref=booking.transaction_ref,
        created_at=booking.created_at,
        actual_started_at=booking.actual_started_at,
        actual_ended_at=booking.actual_ended_at,
    )


class SqlReservationStore:
    def __init__(self, db: Session) -> None:
        self.db = db
        self._deadline: Optional[Deadline] = None

    @contextmanager
    def bounded(self, timeout: float) -> Iterator[Deadline]:
        """Run the enclosed store calls against one shared time budget."""
        outer = self._deadline
        self._deadline = Deadline(timeout)
        try:
            yield self._deadline
        finally:
            self._deadline = outer
            if outer is None:
                reset_wait_budget(self.db)

    @contextmanager
    def _io(self) -> Iterator[None]:
        try:
            if self._deadline is not None:
                apply_wait_budget(self.db, self._deadline.check())
            yield
        except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
            self.db.rollback()
            logger.error("Reservation store unavailable: %s", exc)
            raise StoreUnavailable("Reservation store is unavailable, retry later") from exc

    def _bookings(self):
        return select(Booking).options(selectinload(Booking.machines)).execution_options(populate_existing=True)

    def _overlap_query(
        self,
        machine_id: int,
        window_start: datetime,
        window_end: datetime,
        statuses: Iterable[ReservationStatus],
        exclude_id: Optional[int],
    ):
        stmt = (
            self._bookings()
            .join(BookingMachine, BookingMachine.booking_id == Booking.id)
            .where(
                BookingMachine.machine_id == machine_id,
                Booking.status.in_(list(statuses)),
                BookingMachine.start_time < to_canonical(window_end),
                BookingMachine.end_time > to_canonical(window_start),
            )
            .order_by(Booking.start_time, Booking.id)
        )
        if exclude_id is not None:
            stmt = stmt.where(Booking.id != exclude_id)
        return stmt

    def _lock_machines(self, machine_ids: Iterable[int]) -> List[int]:
        ordered = sorted(set(machine_ids))
        stmt = select(Machine.id).where(Machine.id.in_(ordered)).order_by(Machine.id).with_for_update()
        return list(self.db.scalars(stmt).all())

    def _first_clash(
        self, machines: Sequence[int], start: datetime, end: datetime, exclude_id: Optional[int] = None
    ) -> Optional[Tuple[int, int]]:
        for machine_id in sorted(machines):
            clash = self.db.scalars(
                self._overlap_query(machine_id, start, end, ACTIVE_STATUSES, exclude_id).limit(1)
            ).first()
            if clash is not None:
                return machine_id, clash.id
        return None

    def query_overlapping(
        self,
        machine_id: int,
        window_start: datetime,
        window_end: datetime,
        statuses: Iterable[ReservationStatus] = ACTIVE_STATUSES,
        exclude_id: Optional[int] = None,
    ) -> List[Reservation]:
        with self._io():
            rows = self.db.scalars(
                self._overlap_query(machine_id, window_start, window_end, statuses, exclude_id)
            ).unique()
            return [to_reservation(row) for row in rows]

    def list_for_resource(
        self, machine_id: int, statuses: Iterable[ReservationStatus] = ACTIVE_STATUSES
    ) -> List[Reservation]:
        stmt = (
            self._bookings()
            .join(BookingMachine, BookingMachine.booking_id == Booking.id)
            .where(BookingMachine.machine_id == machine_id, Booking.status.in_(list(statuses)))
            .order_by(Booking.start_time, Booking.id)
        )
        with self._io():
            return [to_reservation(row) for row in self.db.scalars(stmt).unique()]

    def search(
        self,
        machine_id: Optional[int] = None,
        status: Optional[ReservationStatus] = None,
        limit: int = 100,
    ) -> List[Reservation]:
        stmt = self._bookings().order_by(Booking.start_time.desc(), Booking.id.desc()).limit(limit)
        if machine_id is not None:
            stmt = stmt.where(Booking.machines.any(BookingMachine.machine_id == machine_id))
        if status is not None:
            stmt = stmt.where(Booking.status == status)
        with self._io():
            return [to_reservation(row) for row in self.db.scalars(stmt).unique()]

    def get(self, reservation_id: int) -> Reservation:
        with self._io():
            booking = self.db.scalars(self._bookings().where(Booking.id == reservation_id)).first()
        if booking is None:
            raise ReservationNotFound(reservation_id)
        return to_reservation(booking)

    def missing_machines(self, machine_ids: Iterable[int]) -> List[int]:
        wanted = set(machine_ids)
        with self._io():
            found = set(self.db.scalars(select(Machine.id).where(Machine.id.in_(wanted))).all())
        return sorted(wanted - found)

    def create(self, draft: ReservationDraft) -> Reservation:
        machine_ids = [assignment.machine_id for assignment in draft.machines]
        with self._io():
            try:
                missing = sorted(set(machine_ids) - set(self._lock_machines(machine_ids)))
                if missing:
                    self.db.rollback()
                    raise MachineNotFound(missing[0])
                clash = self._first_clash(machine_ids, draft.start_time, draft.end_time)
                if clash is not None:
                    self.db.rollback()
                    raise StoreConflict(*clash)
                booking = Booking(
                    customer_name=draft.customer.name,
                    customer_phone=draft.customer.phone,
                    customer_email=draft.customer.email,
                    notes=draft.customer.notes,
                    start_time=draft.start_time,
                    end_time=draft.end_time,
                    duration_minutes=draft.duration_minutes,
                    status=draft.status,
                    transaction_ref=draft.transaction_ref,
                )
                booking.machines = [
                    BookingMachine(
                        machine_id=assignment.machine_id,
                        occupancy=assignment.occupancy,
                        start_time=draft.start_time,
                        end_time=draft.end_time,
                        active=True,
                    )
                    for assignment in sorted(draft.machines, key=lambda a: a.machine_id)
                ]
                self.db.add(booking)
                self.db.commit()
            except IntegrityError as exc:
                # exclusion constraint (PostgreSQL) rejected a concurrent writer
                self.db.rollback()
                clash = self._first_clash(machine_ids, draft.start_time, draft.end_time)
                if clash is None:
                    raise
                raise StoreConflict(*clash) from exc
        logger.info("Committed reservation %s on machines %s", booking.id, sorted(machine_ids))
        return self.get(booking.id)

    def update_status(
        self, reservation_id: int, new_status: ReservationStatus, actual_timestamp: datetime
    ) -> Reservation:
        values = {"status": new_status}
        if new_status is ReservationStatus.IN_USE:
            values["actual_started_at"] = to_canonical(actual_timestamp)
        elif new_status in TERMINAL_STATUSES:
            values["actual_ended_at"] = to_canonical(actual_timestamp)

        with self._io():
            # compare-and-set on the expected source statuses
            result = self.db.execute(
                update(Booking)
                .where(Booking.id == reservation_id, Booking.status.in_(list(allowed_sources(new_status))))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.rollback()
                current = self.db.scalars(select(Booking.status).where(Booking.id == reservation_id)).first()
                if current is None:
                    raise ReservationNotFound(reservation_id)
                raise IllegalTransition(ReservationStatus(current), TRANSITION_VERBS[new_status])
            if new_status in TERMINAL_STATUSES:
                self.db.execute(
                    update(BookingMachine)
                    .where(BookingMachine.booking_id == reservation_id)
                    .values(active=False)
                    .execution_options(synchronize_session=False)
                )
            self.db.commit()
        return self.get(reservation_id)

    def extend(self, reservation_id: int, additional_minutes: int) -> Reservation:
        with self._io():
            try:
                booking = self.db.scalars(
                    self._bookings().where(Booking.id == reservation_id).with_for_update()
                ).first()
                if booking is None:
                    self.db.rollback()
                    raise ReservationNotFound(reservation_id)
                if booking.status != ReservationStatus.IN_USE:
                    current = ReservationStatus(booking.status)
                    self.db.rollback()
                    raise IllegalTransition(current, "extend")
                machine_ids = [row.machine_id for row in booking.machines]
                self._lock_machines(machine_ids)
                duration = booking.duration_minutes + additional_minutes
                new_end = compute_end(booking.start_time, duration)
                clash = self._first_clash(machine_ids, booking.start_time, new_end, exclude_id=booking.id)
                if clash is not None:
                    self.db.rollback()
                    raise StoreConflict(*clash)
                booking.duration_minutes = duration
                booking.end_time = new_end
                for row in booking.machines:
                    row.end_time = new_end
                self.db.commit()
            except IntegrityError as exc:
                self.db.rollback()
                current = self.get(reservation_id)
                new_end = compute_end(current.start_time, current.duration_minutes + additional_minutes)
                clash = self._first_clash(current.machine_ids, current.start_time, new_end, exclude_id=reservation_id)
                if clash is None:
                    raise
                raise StoreConflict(*clash) from exc
        return self.get(reservation_id)


def active_snapshot(
    store: ReservationStore, machine_id: int, cache: SnapshotCache = snapshot_cache
) -> Tuple[Reservation, ...]:
    """Booked/InUse reservations of one machine, served from cache when fresh."""
    cached = cache.get(machine_id)
    if cached is not None:
        return cached
    snapshot = tuple(store.list_for_resource(machine_id, ACTIVE_STATUSES))
    cache.set(machine_id, snapshot)
    return snapshot
