"""SQLAlchemy models backing the machine catalog and the reservation store."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import Boolean, DateTime, Enum as SqlEnum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from .database import Base
from .domain import MachineCategory, ReservationStatus


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns tz-aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Machine(Base):
    __tablename__ = "machines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    category: Mapped[MachineCategory] = mapped_column(SqlEnum(MachineCategory), index=True)
    serial_number: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    machine_type: Mapped[str] = mapped_column(String(100), default="")
    under_maintenance: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)

    assignments: Mapped[List["BookingMachine"]] = relationship(back_populates="machine")


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    customer_name: Mapped[str] = mapped_column(String(100))
    customer_phone: Mapped[str] = mapped_column(String(20))
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    notes: Mapped[Optional[str]] = mapped_column(Text, default=None)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[ReservationStatus] = mapped_column(
        SqlEnum(ReservationStatus), default=ReservationStatus.BOOKED, index=True
    )
    transaction_ref: Mapped[Optional[str]] = mapped_column(String(100), default=None)
    actual_started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, default=None)
    actual_ended_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)

    machines: Mapped[List["BookingMachine"]] = relationship(
        back_populates="booking", cascade="all, delete-orphan", order_by="BookingMachine.machine_id"
    )


class BookingMachine(Base):
    """One machine of a booking.

    The window and ``active`` flag are copies of the parent booking's so the
    overlap check (and the PostgreSQL exclusion constraint) can run on this
    table alone.
    """

    __tablename__ = "booking_machines"
    __table_args__ = (Index("ix_booking_machines_window", "machine_id", "active", "start_time", "end_time"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), index=True)
    machine_id: Mapped[int] = mapped_column(ForeignKey("machines.id"), index=True)
    occupancy: Mapped[int] = mapped_column(Integer, default=1)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True)

    booking: Mapped[Booking] = relationship(back_populates="machines")
    machine: Mapped[Machine] = relationship(back_populates="assignments")
