"""Pydantic schemas for the machines and reservations services."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from .domain import (
    Assignment,
    BookingProposal,
    Customer,
    MachineCategory,
    MachineStatus,
    ReservationStatus,
)


class MachineCreate(BaseModel):
    category: MachineCategory
    serial_number: str = Field(..., min_length=1, max_length=50)
    machine_type: str = Field("", max_length=100)


class MachineRead(BaseModel):
    id: int
    category: MachineCategory
    serial_number: str
    machine_type: str
    under_maintenance: bool

    model_config = {"from_attributes": True}


class MaintenanceUpdate(BaseModel):
    under_maintenance: bool


class CustomerIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    phone: str = Field(..., pattern=r"^\d{10}$")
    email: Optional[EmailStr] = None
    notes: Optional[str] = Field(None, max_length=500)

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Customer name is required")
        return value.strip()


class AssignmentIn(BaseModel):
    machine_id: int
    occupancy: int = Field(1, ge=1)


class ReservationCreate(BaseModel):
    """Booking request. There is no end time field: end is always start + duration."""

    customer: CustomerIn
    start_time: datetime
    duration_minutes: int
    machines: List[AssignmentIn] = Field(..., min_length=1)
    transaction_ref: Optional[str] = Field(None, max_length=100)

    @field_validator("machines")
    @classmethod
    def machines_unique(cls, value: List[AssignmentIn]) -> List[AssignmentIn]:
        ids = [item.machine_id for item in value]
        if len(ids) != len(set(ids)):
            raise ValueError("Each machine may appear only once in a booking")
        return value

    def to_proposal(self) -> BookingProposal:
        return BookingProposal(
            customer=Customer(
                name=self.customer.name,
                phone=self.customer.phone,
                email=self.customer.email,
                notes=self.customer.notes,
            ),
            start_time=self.start_time,
            duration_minutes=self.duration_minutes,
            machines=tuple(Assignment(machine_id=m.machine_id, occupancy=m.occupancy) for m in self.machines),
            transaction_ref=self.transaction_ref,
        )


class CustomerRead(BaseModel):
    name: str
    phone: str
    email: Optional[str] = None
    notes: Optional[str] = None

    model_config = {"from_attributes": True}


class AssignmentRead(BaseModel):
    machine_id: int
    occupancy: int

    model_config = {"from_attributes": True}


class ReservationRead(BaseModel):
    id: int
    customer: CustomerRead
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    status: ReservationStatus
    machines: List[AssignmentRead]
    transaction_ref: Optional[str] = None
    created_at: Optional[datetime] = None
    actual_started_at: Optional[datetime] = None
    actual_ended_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class StartRequest(BaseModel):
    at: Optional[datetime] = None


class EndRequest(BaseModel):
    actual_end_time: datetime


class CancelRequest(BaseModel):
    at: Optional[datetime] = None


class ExtendRequest(BaseModel):
    additional_minutes: int


class UsageRead(BaseModel):
    reservation_id: int
    status: ReservationStatus
    machines: List[AssignmentRead]
    scheduled_start: datetime
    scheduled_end: datetime
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    billable_minutes: int

    model_config = {"from_attributes": True}


class AvailabilityRead(BaseModel):
    machine_id: int
    status: MachineStatus
    current: Optional[ReservationRead] = None
    next: Optional[ReservationRead] = None
    window_available: Optional[bool] = None
    window_conflict_id: Optional[int] = None

    model_config = {"from_attributes": True}


class ServicePing(BaseModel):
    status: str
    service: str
