from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from lounge.catalog import MachineCatalog
from lounge.config import get_settings
from lounge.database import Base, engine
from lounge.dependencies import add_store_error_handler, get_catalog, get_store, raise_for_failure
from lounge.domain import MachineCategory, MachineInfo
from lounge.errors import BookingFailure, InvalidDuration
from lounge.logging_middleware import add_audit_middleware
from lounge.rate_limit import apply_rate_limiter, limiter
from lounge.resolver import MachineAvailability, RequestedWindow, resolve_all
from lounge.schemas import AvailabilityRead, MachineCreate, MachineRead, MaintenanceUpdate, ServicePing
from lounge.store import SqlReservationStore, active_snapshot
from lounge.timeutils import compute_end, is_valid_duration, to_canonical, utcnow

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Machines Service", version="0.1.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_audit_middleware(fastapi_app, "machines")
    add_store_error_handler(fastapi_app)
    Instrumentator().instrument(fastapi_app).expose(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", response_model=ServicePing, tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "machines"}


@app.post("/machines", response_model=MachineRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def provision_machine(
    request: Request,
    machine_in: MachineCreate,
    catalog: MachineCatalog = Depends(get_catalog),
) -> MachineInfo:
    try:
        return catalog.provision(machine_in.category, machine_in.serial_number, machine_in.machine_type)
    except BookingFailure as failure:
        raise_for_failure(failure)


@app.get("/machines", response_model=List[MachineRead])
def list_machines(
    request: Request,
    category: Optional[MachineCategory] = None,
    catalog: MachineCatalog = Depends(get_catalog),
) -> List[MachineInfo]:
    return catalog.list_machines(category)


def _requested_window(start_time: Optional[datetime], duration_minutes: Optional[int]) -> Optional[RequestedWindow]:
    if start_time is None and duration_minutes is None:
        return None
    if start_time is None or duration_minutes is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="start_time and duration_minutes must be given together",
        )
    if not is_valid_duration(duration_minutes):
        raise_for_failure(InvalidDuration(duration_minutes))
    start = to_canonical(start_time)
    return RequestedWindow(start=start, end=compute_end(start, duration_minutes))


def _resolve(
    machines: List[MachineInfo],
    store: SqlReservationStore,
    now: Optional[datetime],
    window: Optional[RequestedWindow],
) -> List[MachineAvailability]:
    snapshots = {machine.id: active_snapshot(store, machine.id) for machine in machines}
    resolved = resolve_all(
        machines,
        snapshots,
        to_canonical(now) if now else utcnow(),
        window=window,
        lookahead_minutes=settings.next_booking_lookahead_minutes,
    )
    return [resolved[machine.id] for machine in machines]


@app.get("/machines/availability", response_model=List[AvailabilityRead])
@limiter.limit("120/minute")
def machines_availability(
    request: Request,
    category: Optional[MachineCategory] = None,
    start_time: Optional[datetime] = Query(None),
    duration_minutes: Optional[int] = Query(None),
    now: Optional[datetime] = Query(None, description="Reference instant; defaults to the server clock"),
    catalog: MachineCatalog = Depends(get_catalog),
    store: SqlReservationStore = Depends(get_store),
) -> List[MachineAvailability]:
    window = _requested_window(start_time, duration_minutes)
    return _resolve(catalog.list_machines(category), store, now, window)


@app.get("/machines/serial/{serial_number}", response_model=MachineRead)
def get_machine_by_serial(
    request: Request,
    serial_number: str,
    catalog: MachineCatalog = Depends(get_catalog),
) -> MachineInfo:
    machine = catalog.by_serial(serial_number)
    if machine is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Machine not found")
    return machine


@app.get("/machines/{machine_id}", response_model=MachineRead)
def get_machine(
    request: Request,
    machine_id: int,
    catalog: MachineCatalog = Depends(get_catalog),
) -> MachineInfo:
    try:
        return catalog.get(machine_id)
    except BookingFailure as failure:
        raise_for_failure(failure)


@app.patch("/machines/{machine_id}/maintenance", response_model=MachineRead)
@limiter.limit("15/minute")
def set_maintenance(
    request: Request,
    machine_id: int,
    update: MaintenanceUpdate,
    catalog: MachineCatalog = Depends(get_catalog),
) -> MachineInfo:
    try:
        return catalog.set_maintenance(machine_id, update.under_maintenance)
    except BookingFailure as failure:
        raise_for_failure(failure)


@app.get("/machines/{machine_id}/availability", response_model=AvailabilityRead)
@limiter.limit("120/minute")
def machine_availability(
    request: Request,
    machine_id: int,
    start_time: Optional[datetime] = Query(None),
    duration_minutes: Optional[int] = Query(None),
    now: Optional[datetime] = Query(None, description="Reference instant; defaults to the server clock"),
    catalog: MachineCatalog = Depends(get_catalog),
    store: SqlReservationStore = Depends(get_store),
) -> MachineAvailability:
    try:
        machine = catalog.get(machine_id)
    except BookingFailure as failure:
        raise_for_failure(failure)
    window = _requested_window(start_time, duration_minutes)
    return _resolve([machine], store, now, window)[0]


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.machines_service_port)
