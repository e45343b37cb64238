"""Machine catalog. Machines carry no booking state; only a maintenance flag."""
from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session

from .domain import MachineCategory, MachineInfo
from .errors import DuplicateMachine, MachineNotFound, StoreUnavailable
from .models import Machine

logger = logging.getLogger(__name__)


def to_machine_info(machine: Machine) -> MachineInfo:
    return MachineInfo(
        id=machine.id,
        category=MachineCategory(machine.category),
        serial_number=machine.serial_number,
        machine_type=machine.machine_type,
        under_maintenance=bool(machine.under_maintenance),
    )


class MachineCatalog:
    def __init__(self, db: Session) -> None:
        self.db = db

    def _fetch(self, machine_id: int) -> Machine:
        try:
            machine = self.db.get(Machine, machine_id, populate_existing=True)
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailable("Machine catalog is unavailable, retry later") from exc
        if machine is None:
            raise MachineNotFound(machine_id)
        return machine

    def provision(self, category: MachineCategory, serial_number: str, machine_type: str = "") -> MachineInfo:
        machine = Machine(category=category, serial_number=serial_number, machine_type=machine_type)
        self.db.add(machine)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise DuplicateMachine(serial_number) from exc
        except (OperationalError, InterfaceError) as exc:
            self.db.rollback()
            raise StoreUnavailable("Machine catalog is unavailable, retry later") from exc
        logger.info("Provisioned %s machine %s (%s)", category.value, machine.id, serial_number)
        return to_machine_info(machine)

    def list_machines(self, category: Optional[MachineCategory] = None) -> List[MachineInfo]:
        stmt = select(Machine).order_by(Machine.id)
        if category is not None:
            stmt = stmt.where(Machine.category == category)
        try:
            return [to_machine_info(m) for m in self.db.scalars(stmt.execution_options(populate_existing=True))]
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailable("Machine catalog is unavailable, retry later") from exc

    def get(self, machine_id: int) -> MachineInfo:
        return to_machine_info(self._fetch(machine_id))

    def by_serial(self, serial_number: str) -> Optional[MachineInfo]:
        machine = self.db.scalars(select(Machine).where(Machine.serial_number == serial_number)).first()
        return to_machine_info(machine) if machine else None

    def set_maintenance(self, machine_id: int, under_maintenance: bool) -> MachineInfo:
        machine = self._fetch(machine_id)
        machine.under_maintenance = under_maintenance
        self.db.commit()
        logger.info("Machine %s maintenance=%s", machine_id, under_maintenance)
        return to_machine_info(machine)
