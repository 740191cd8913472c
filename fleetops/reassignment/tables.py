from __future__ import annotations

import enum
import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base
from .errors import HistoryImmutableError


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class DriverStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    ASSIGNED = "ASSIGNED"
    IN_ROUTE = "IN_ROUTE"
    ON_PAUSE = "ON_PAUSE"
    COMPLETED = "COMPLETED"
    UNAVAILABLE = "UNAVAILABLE"
    ABSENT = "ABSENT"


class StopStatus(str, enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Stops in these states still need a driver
OPEN_STOP_STATUSES = (StopStatus.PENDING, StopStatus.IN_PROGRESS)

# A driver in one of these states must never receive work
BLOCKED_DRIVER_STATUSES = (DriverStatus.UNAVAILABLE, DriverStatus.ABSENT)


class Fleet(Base):
    __tablename__ = "fleets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    company_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[Optional[str]] = mapped_column(String(50))
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    drivers: Mapped[list["Driver"]] = relationship("Driver", back_populates="fleet")


class Driver(Base):
    __tablename__ = "drivers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    company_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    fleet_id: Mapped[Optional[str]] = mapped_column(ForeignKey("fleets.id"))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[DriverStatus] = mapped_column(
        Enum(DriverStatus), default=DriverStatus.AVAILABLE, nullable=False
    )
    license_expiry: Mapped[Optional[date]] = mapped_column(Date)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    fleet: Mapped[Optional[Fleet]] = relationship("Fleet", back_populates="drivers")
    skills: Mapped[list["DriverSkill"]] = relationship("DriverSkill", back_populates="driver")


class Skill(Base):
    __tablename__ = "skills"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    company_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class DriverSkill(Base):
    __tablename__ = "driver_skills"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    company_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    driver_id: Mapped[str] = mapped_column(ForeignKey("drivers.id"), nullable=False)
    skill_id: Mapped[str] = mapped_column(ForeignKey("skills.id"), nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    driver: Mapped[Driver] = relationship("Driver", back_populates="skills")
    skill: Mapped[Skill] = relationship("Skill")


class Vehicle(Base):
    __tablename__ = "vehicles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    company_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    fleet_id: Mapped[Optional[str]] = mapped_column(ForeignKey("fleets.id"))
    plate: Mapped[str] = mapped_column(String(50), nullable=False)
    weight_capacity: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    volume_capacity: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)


class OptimizationJob(Base):
    __tablename__ = "optimization_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    company_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    company_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    tracking_id: Mapped[Optional[str]] = mapped_column(String(100))
    weight_required: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    volume_required: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    # list of skill ids
    required_skills: Mapped[Optional[list]] = mapped_column(JSON)


class RouteStop(Base):
    __tablename__ = "route_stops"
    __table_args__ = (
        Index("ix_route_stops_owner", "company_id", "driver_id", "status"),
        Index("ix_route_stops_route", "company_id", "route_id", "vehicle_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    company_id: Mapped[str] = mapped_column(String(36), nullable=False)
    job_id: Mapped[Optional[str]] = mapped_column(ForeignKey("optimization_jobs.id"))
    route_id: Mapped[str] = mapped_column(String(100), nullable=False)
    vehicle_id: Mapped[str] = mapped_column(ForeignKey("vehicles.id"), nullable=False)
    driver_id: Mapped[str] = mapped_column(ForeignKey("drivers.id"), nullable=False)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    address: Mapped[Optional[str]] = mapped_column(Text)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    time_window_start: Mapped[Optional[datetime]] = mapped_column(DateTime)
    time_window_end: Mapped[Optional[datetime]] = mapped_column(DateTime)
    estimated_arrival: Mapped[Optional[datetime]] = mapped_column(DateTime)
    status: Mapped[StopStatus] = mapped_column(Enum(StopStatus), default=StopStatus.PENDING, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    vehicle: Mapped[Vehicle] = relationship("Vehicle")
    order: Mapped[Order] = relationship("Order")


class ReassignmentHistory(Base):
    __tablename__ = "reassignments_history"
    __table_args__ = (Index("ix_reassignments_history_company_executed", "company_id", "executed_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    company_id: Mapped[str] = mapped_column(String(36), nullable=False)
    job_id: Mapped[Optional[str]] = mapped_column(String(36))
    absent_driver_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    absent_driver_name: Mapped[str] = mapped_column(String(255), nullable=False)
    route_ids: Mapped[list] = mapped_column(JSON, nullable=False)
    vehicle_ids: Mapped[list] = mapped_column(JSON, nullable=False)
    # [{driver_id, driver_name, stop_ids, stop_count, route_id, vehicle_id}]
    reassignments: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    executed_by: Mapped[Optional[str]] = mapped_column(String(36))
    executed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


@event.listens_for(ReassignmentHistory, "before_update")
def _refuse_history_update(mapper, connection, target):
    raise HistoryImmutableError(f"reassignment history {target.id} is append-only")


@event.listens_for(ReassignmentHistory, "before_delete")
def _refuse_history_delete(mapper, connection, target):
    raise HistoryImmutableError(f"reassignment history {target.id} is append-only")
