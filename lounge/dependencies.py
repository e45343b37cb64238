"""Reusable FastAPI dependencies and the failure -> HTTP mapping."""
from functools import lru_cache
from typing import Dict, NoReturn, Type, TypeVar

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .catalog import MachineCatalog
from .config import get_settings
from .database import get_db
from .errors import (
    BookingFailure,
    DuplicateMachine,
    ExtensionConflict,
    IllegalTransition,
    InvalidDuration,
    InvalidProposal,
    InvalidTimestamp,
    MachineNotFound,
    Outcome,
    ReservationNotFound,
    ResourceUnavailable,
    StartInPast,
    StoreUnavailable,
)
from .lifecycle import ReservationLifecycle
from .notifications import Notifier, build_notifier
from .store import SqlReservationStore
from .validator import ConflictValidator

T = TypeVar("T")

FAILURE_STATUS: Dict[Type[BookingFailure], int] = {
    InvalidDuration: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidProposal: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidTimestamp: status.HTTP_422_UNPROCESSABLE_ENTITY,
    StartInPast: status.HTTP_422_UNPROCESSABLE_ENTITY,
    MachineNotFound: status.HTTP_404_NOT_FOUND,
    ReservationNotFound: status.HTTP_404_NOT_FOUND,
    ResourceUnavailable: status.HTTP_409_CONFLICT,
    ExtensionConflict: status.HTTP_409_CONFLICT,
    IllegalTransition: status.HTTP_409_CONFLICT,
    DuplicateMachine: status.HTTP_409_CONFLICT,
}


def raise_for_failure(failure: BookingFailure) -> NoReturn:
    code = FAILURE_STATUS.get(type(failure), status.HTTP_400_BAD_REQUEST)
    raise HTTPException(status_code=code, detail=failure.to_detail())


def unwrap_outcome(outcome: Outcome[T]) -> T:
    if outcome.failure is not None:
        raise_for_failure(outcome.failure)
    return outcome.value


@lru_cache
def get_notifier() -> Notifier:
    return build_notifier(get_settings())


def get_store(db: Session = Depends(get_db)) -> SqlReservationStore:
    return SqlReservationStore(db)


def get_catalog(db: Session = Depends(get_db)) -> MachineCatalog:
    return MachineCatalog(db)


def get_validator(
    store: SqlReservationStore = Depends(get_store),
    notifier: Notifier = Depends(get_notifier),
) -> ConflictValidator:
    return ConflictValidator(store, notifier=notifier)


def get_lifecycle(
    store: SqlReservationStore = Depends(get_store),
    validator: ConflictValidator = Depends(get_validator),
    notifier: Notifier = Depends(get_notifier),
) -> ReservationLifecycle:
    return ReservationLifecycle(store, validator=validator, notifier=notifier)


def store_unavailable_handler(_: Request, exc: StoreUnavailable) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": {"code": "store_unavailable", "message": str(exc), "retryable": True}},
        headers={"Retry-After": "1"},
    )


def add_store_error_handler(app: FastAPI) -> None:
    app.add_exception_handler(StoreUnavailable, store_unavailable_handler)
