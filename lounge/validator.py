"""Conflict validator: the only way a reservation is created or extended.

Each proposal is checked and committed while holding the per-machine locks
of every machine it touches, taken in ascending id order. The store re-checks
inside its write transaction, and a commit that still loses a race is
reported as ``ResourceUnavailable`` like any other conflict.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from .cache import SnapshotCache, snapshot_cache
from .config import Settings, get_settings
from .domain import ACTIVE_STATUSES, BookingProposal, Reservation, ReservationDraft, ReservationStatus
from .errors import (
    BookingFailure,
    ExtensionConflict,
    IllegalTransition,
    InvalidDuration,
    InvalidProposal,
    MachineNotFound,
    Outcome,
    ResourceUnavailable,
    StartInPast,
    StoreConflict,
)
from .locking import MachineLockRegistry, machine_locks
from .notifications import LogNotifier, Notifier, notify_safely
from .store import ReservationStore
from .timeutils import compute_end, is_valid_duration, to_canonical, utcnow

logger = logging.getLogger(__name__)


class ConflictValidator:
    def __init__(
        self,
        store: ReservationStore,
        notifier: Optional[Notifier] = None,
        locks: MachineLockRegistry = machine_locks,
        cache: SnapshotCache = snapshot_cache,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.notifier = notifier or LogNotifier()
        self.locks = locks
        self.cache = cache
        self.settings = settings or get_settings()

    def _timeout(self, timeout: Optional[float]) -> float:
        return timeout if timeout is not None else self.settings.store_timeout_seconds

    def _check_proposal(self, proposal: BookingProposal, now: datetime) -> Optional[BookingFailure]:
        if not proposal.machines:
            return InvalidProposal("At least one machine is required")
        machine_ids = [a.machine_id for a in proposal.machines]
        if len(set(machine_ids)) != len(machine_ids):
            return InvalidProposal("Each machine may appear only once in a booking")
        if any(a.occupancy < 1 for a in proposal.machines):
            return InvalidProposal("Occupancy must be at least 1 for every machine")
        if not proposal.customer.name or not proposal.customer.name.strip():
            return InvalidProposal("Customer name is required")
        if not is_valid_duration(proposal.duration_minutes):
            return InvalidDuration(proposal.duration_minutes)
        grace = self.settings.booking_start_grace_minutes
        if to_canonical(proposal.start_time) < now - timedelta(minutes=grace):
            return StartInPast(to_canonical(proposal.start_time), grace)
        return None

    def propose(
        self,
        proposal: BookingProposal,
        *,
        now: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> Outcome[Reservation]:
        now = to_canonical(now) if now is not None else utcnow()
        failure = self._check_proposal(proposal, now)
        if failure is not None:
            logger.info("Rejected proposal: %s", failure.message)
            return Outcome.rejected(failure)

        start = to_canonical(proposal.start_time)
        draft = ReservationDraft(
            customer=proposal.customer,
            start_time=start,
            end_time=compute_end(start, proposal.duration_minutes),
            duration_minutes=proposal.duration_minutes,
            machines=tuple(sorted(proposal.machines, key=lambda a: a.machine_id)),
            transaction_ref=proposal.transaction_ref,
        )
        machine_ids = [a.machine_id for a in draft.machines]

        with self.store.bounded(self._timeout(timeout)) as deadline:
            missing = self.store.missing_machines(machine_ids)
            if missing:
                return Outcome.rejected(MachineNotFound(missing[0]))

            with self.locks.hold(machine_ids, timeout=deadline.remaining()):
                for machine_id in machine_ids:
                    clashes = self.store.query_overlapping(
                        machine_id, draft.start_time, draft.end_time, ACTIVE_STATUSES
                    )
                    if clashes:
                        failure = ResourceUnavailable(machine_id, clashes[0].id)
                        logger.info("Rejected proposal: %s", failure.message)
                        return Outcome.rejected(failure)
                try:
                    reservation = self.store.create(draft)
                except StoreConflict as exc:
                    failure = ResourceUnavailable(exc.machine_id, exc.reservation_id)
                    logger.warning("Lost commit race: %s", failure.message)
                    return Outcome.rejected(failure)
                except BookingFailure as failure:
                    return Outcome.rejected(failure)

        self.cache.invalidate(machine_ids)
        logger.info(
            "Booked reservation %s for %s on machines %s [%s, %s)",
            reservation.id,
            reservation.customer.name,
            list(reservation.machine_ids),
            reservation.start_time.isoformat(),
            reservation.end_time.isoformat(),
        )
        notify_safely(self.notifier, "reservation.created", reservation)
        return Outcome.accepted(reservation)

    def _extension_conflict(self, reservation: Reservation, machine_id: int, other_id: int) -> ExtensionConflict:
        other = self.store.get(other_id)
        return ExtensionConflict(reservation.id, machine_id, other.id, other.start_time)

    def extend(
        self,
        reservation_id: int,
        additional_minutes: int,
        *,
        timeout: Optional[float] = None,
    ) -> Outcome[Reservation]:
        if not is_valid_duration(additional_minutes):
            return Outcome.rejected(InvalidDuration(additional_minutes))
        with self.store.bounded(self._timeout(timeout)) as deadline:
            try:
                machine_ids = self.store.get(reservation_id).machine_ids
            except BookingFailure as failure:
                return Outcome.rejected(failure)

            with self.locks.hold(machine_ids, timeout=deadline.remaining()):
                reservation = self.store.get(reservation_id)
                if reservation.status is not ReservationStatus.IN_USE:
                    return Outcome.rejected(IllegalTransition(reservation.status, "extend"))
                new_end = compute_end(reservation.start_time, reservation.duration_minutes + additional_minutes)
                for machine_id in sorted(machine_ids):
                    clashes = self.store.query_overlapping(
                        machine_id, reservation.start_time, new_end, ACTIVE_STATUSES, exclude_id=reservation.id
                    )
                    if clashes:
                        failure = ExtensionConflict(
                            reservation.id, machine_id, clashes[0].id, clashes[0].start_time
                        )
                        logger.info("Rejected extension: %s", failure.message)
                        return Outcome.rejected(failure)
                try:
                    extended = self.store.extend(reservation_id, additional_minutes)
                except StoreConflict as exc:
                    failure = self._extension_conflict(reservation, exc.machine_id, exc.reservation_id)
                    return Outcome.rejected(failure)
                except BookingFailure as failure:
                    return Outcome.rejected(failure)

        self.cache.invalidate(machine_ids)
        logger.info("Extended reservation %s by %s minutes", reservation_id, additional_minutes)
        notify_safely(self.notifier, "reservation.extended", extended)
        return Outcome.accepted(extended)
