"""Booking lifecycle: Booked -> InUse -> Completed, with cancellation from
Booked or InUse and extension while InUse.

The scheduled window is never rewritten by a late start or an early end. The
moments a reservation actually started and ended are recorded separately and
feed :func:`usage_summary`, which is what pricing consumes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from .cache import SnapshotCache, snapshot_cache
from .config import get_settings
from .domain import TRANSITION_VERBS, Assignment, Reservation, ReservationStatus, can_transition
from .errors import BookingFailure, IllegalTransition, InvalidTimestamp, Outcome
from .notifications import LogNotifier, Notifier, notify_safely
from .store import ReservationStore
from .timeutils import minutes_between, to_canonical, utcnow
from .validator import ConflictValidator

logger = logging.getLogger(__name__)

_EVENTS = {
    ReservationStatus.IN_USE: "reservation.started",
    ReservationStatus.COMPLETED: "reservation.ended",
    ReservationStatus.CANCELLED: "reservation.cancelled",
}


class ReservationLifecycle:
    def __init__(
        self,
        store: ReservationStore,
        validator: Optional[ConflictValidator] = None,
        notifier: Optional[Notifier] = None,
        cache: SnapshotCache = snapshot_cache,
    ) -> None:
        self.store = store
        self.notifier = notifier or LogNotifier()
        self.validator = validator or ConflictValidator(store, notifier=self.notifier, cache=cache)
        self.cache = cache

    def _refuse(self, verb: str, reservation_id: int, failure: BookingFailure) -> Outcome[Reservation]:
        logger.info("Refused to %s reservation %s: %s", verb, reservation_id, failure.message)
        return Outcome.rejected(failure)

    def _transition(
        self, reservation_id: int, target: ReservationStatus, at: datetime, timeout: Optional[float]
    ) -> Outcome[Reservation]:
        budget = timeout if timeout is not None else get_settings().store_timeout_seconds
        with self.store.bounded(budget):
            outcome = self._apply(reservation_id, target, at)
        if outcome.ok:
            updated = outcome.value
            self.cache.invalidate(updated.machine_ids)
            logger.info("Reservation %s is now %s", reservation_id, updated.status.value)
            notify_safely(self.notifier, _EVENTS[target], updated)
        return outcome

    def _apply(self, reservation_id: int, target: ReservationStatus, at: datetime) -> Outcome[Reservation]:
        verb = TRANSITION_VERBS[target]
        try:
            reservation = self.store.get(reservation_id)
        except BookingFailure as failure:
            return self._refuse(verb, reservation_id, failure)
        if not can_transition(reservation.status, target):
            return self._refuse(verb, reservation_id, IllegalTransition(reservation.status, verb))
        if (
            target is ReservationStatus.COMPLETED
            and reservation.actual_started_at is not None
            and at < reservation.actual_started_at
        ):
            return self._refuse(
                verb,
                reservation_id,
                InvalidTimestamp(
                    f"Actual end {at.isoformat()} is before actual start {reservation.actual_started_at.isoformat()}"
                ),
            )
        try:
            updated = self.store.update_status(reservation_id, target, at)
        except BookingFailure as failure:
            return self._refuse(verb, reservation_id, failure)
        return Outcome.accepted(updated)

    def start(
        self, reservation_id: int, at: Optional[datetime] = None, *, timeout: Optional[float] = None
    ) -> Outcome[Reservation]:
        moment = to_canonical(at) if at else utcnow()
        return self._transition(reservation_id, ReservationStatus.IN_USE, moment, timeout)

    def end(
        self, reservation_id: int, actual_end_time: datetime, *, timeout: Optional[float] = None
    ) -> Outcome[Reservation]:
        return self._transition(reservation_id, ReservationStatus.COMPLETED, to_canonical(actual_end_time), timeout)

    def cancel(
        self, reservation_id: int, at: Optional[datetime] = None, *, timeout: Optional[float] = None
    ) -> Outcome[Reservation]:
        moment = to_canonical(at) if at else utcnow()
        return self._transition(reservation_id, ReservationStatus.CANCELLED, moment, timeout)

    def extend(
        self, reservation_id: int, additional_minutes: int, *, timeout: Optional[float] = None
    ) -> Outcome[Reservation]:
        return self.validator.extend(reservation_id, additional_minutes, timeout=timeout)


@dataclass(frozen=True)
class UsageSummary:
    reservation_id: int
    status: ReservationStatus
    machines: Tuple[Assignment, ...]
    scheduled_start: datetime
    scheduled_end: datetime
    actual_start: Optional[datetime]
    actual_end: Optional[datetime]
    billable_minutes: int


def usage_summary(reservation: Reservation, now: Optional[datetime] = None) -> UsageSummary:
    """Derive the actual usage window of a reservation for the pricing service.

    A reservation that never started has no billable time. One still in use is
    measured up to ``now``.
    """
    actual_start = reservation.actual_started_at
    actual_end = reservation.actual_ended_at
    if actual_start is None:
        billable = 0
    elif actual_end is None:
        billable = minutes_between(actual_start, to_canonical(now) if now else utcnow())
    else:
        billable = minutes_between(actual_start, actual_end)
    return UsageSummary(
        reservation_id=reservation.id,
        status=reservation.status,
        machines=reservation.machines,
        scheduled_start=reservation.start_time,
        scheduled_end=reservation.end_time,
        actual_start=actual_start,
        actual_end=actual_end,
        billable_minutes=billable,
    )
