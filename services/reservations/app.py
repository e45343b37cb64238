from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from lounge.config import get_settings
from lounge.database import Base, engine
from lounge.dependencies import (
    add_store_error_handler,
    get_lifecycle,
    get_store,
    get_validator,
    raise_for_failure,
    unwrap_outcome,
)
from lounge.domain import Reservation, ReservationStatus
from lounge.errors import BookingFailure
from lounge.lifecycle import ReservationLifecycle, UsageSummary, usage_summary
from lounge.logging_middleware import add_audit_middleware
from lounge.rate_limit import apply_rate_limiter, booking_limit, limiter
from lounge.schemas import (
    CancelRequest,
    EndRequest,
    ExtendRequest,
    ReservationCreate,
    ReservationRead,
    ServicePing,
    StartRequest,
    UsageRead,
)
from lounge.store import SqlReservationStore
from lounge.validator import ConflictValidator

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Reservations Service", version="0.1.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_audit_middleware(fastapi_app, "reservations")
    add_store_error_handler(fastapi_app)
    Instrumentator().instrument(fastapi_app).expose(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", response_model=ServicePing, tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "reservations"}


@app.post("/reservations", response_model=ReservationRead, status_code=status.HTTP_201_CREATED)
@limiter.limit(booking_limit)
def create_reservation(
    request: Request,
    reservation_in: ReservationCreate,
    timeout: Optional[float] = Query(None, gt=0, le=60, description="Seconds to wait for machine locks and the reservation store"),
    validator: ConflictValidator = Depends(get_validator),
) -> Reservation:
    return unwrap_outcome(validator.propose(reservation_in.to_proposal(), timeout=timeout))


@app.get("/reservations", response_model=List[ReservationRead])
def list_reservations(
    request: Request,
    machine_id: Optional[int] = None,
    status_filter: Optional[ReservationStatus] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    store: SqlReservationStore = Depends(get_store),
) -> List[Reservation]:
    return store.search(machine_id=machine_id, status=status_filter, limit=limit)


@app.get("/reservations/{reservation_id}", response_model=ReservationRead)
def get_reservation(
    request: Request,
    reservation_id: int,
    store: SqlReservationStore = Depends(get_store),
) -> Reservation:
    try:
        return store.get(reservation_id)
    except BookingFailure as failure:
        raise_for_failure(failure)


@app.get("/reservations/{reservation_id}/usage", response_model=UsageRead)
def get_usage(
    request: Request,
    reservation_id: int,
    store: SqlReservationStore = Depends(get_store),
) -> UsageSummary:
    try:
        return usage_summary(store.get(reservation_id))
    except BookingFailure as failure:
        raise_for_failure(failure)


@app.post("/reservations/{reservation_id}/start", response_model=ReservationRead)
@limiter.limit(booking_limit)
def start_reservation(
    request: Request,
    reservation_id: int,
    body: Optional[StartRequest] = None,
    timeout: Optional[float] = Query(None, gt=0, le=60, description="Seconds to wait on the reservation store"),
    lifecycle: ReservationLifecycle = Depends(get_lifecycle),
) -> Reservation:
    return unwrap_outcome(lifecycle.start(reservation_id, at=body.at if body else None, timeout=timeout))


@app.post("/reservations/{reservation_id}/end", response_model=ReservationRead)
@limiter.limit(booking_limit)
def end_reservation(
    request: Request,
    reservation_id: int,
    body: EndRequest,
    timeout: Optional[float] = Query(None, gt=0, le=60, description="Seconds to wait on the reservation store"),
    lifecycle: ReservationLifecycle = Depends(get_lifecycle),
) -> Reservation:
    return unwrap_outcome(lifecycle.end(reservation_id, body.actual_end_time, timeout=timeout))


@app.post("/reservations/{reservation_id}/cancel", response_model=ReservationRead)
@limiter.limit(booking_limit)
def cancel_reservation(
    request: Request,
    reservation_id: int,
    body: Optional[CancelRequest] = None,
    timeout: Optional[float] = Query(None, gt=0, le=60, description="Seconds to wait on the reservation store"),
    lifecycle: ReservationLifecycle = Depends(get_lifecycle),
) -> Reservation:
    return unwrap_outcome(lifecycle.cancel(reservation_id, at=body.at if body else None, timeout=timeout))


@app.post("/reservations/{reservation_id}/extend", response_model=ReservationRead)
@limiter.limit(booking_limit)
def extend_reservation(
    request: Request,
    reservation_id: int,
    body: ExtendRequest,
    timeout: Optional[float] = Query(None, gt=0, le=60, description="Seconds to wait for machine locks and the reservation store"),
    lifecycle: ReservationLifecycle = Depends(get_lifecycle),
) -> Reservation:
    return unwrap_outcome(lifecycle.extend(reservation_id, body.additional_minutes, timeout=timeout))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.reservations_service_port)
