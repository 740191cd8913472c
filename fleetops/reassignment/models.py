from __future__ import annotations

import enum
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class ReassignmentStrategy(str, enum.Enum):
    SAME_FLEET = "SAME_FLEET"                 # prefer the absent driver's fleet, backfill if short
    ANY_FLEET = "ANY_FLEET"
    BALANCED_WORKLOAD = "BALANCED_WORKLOAD"
    CONSOLIDATE = "CONSOLIDATE"


class PriorityTier(enum.IntEnum):
    SAME_FLEET = 1
    SAME_FLEET_TYPE = 2
    OTHER_FLEET = 3


# -----------------------------
# Affected work
# -----------------------------

class AffectedStop(BaseModel):
    id: str
    order_id: str
    sequence: int
    address: Optional[str] = None
    latitude: float
    longitude: float
    status: str
    time_window_start: Optional[datetime] = None
    time_window_end: Optional[datetime] = None
    estimated_arrival: Optional[datetime] = None


class AffectedRoute(BaseModel):
    route_id: str
    vehicle_id: str
    vehicle_plate: str
    stops: List[AffectedStop] = []
    total_stops: int = 0
    pending_stops: int = 0
    in_progress_stops: int = 0


# -----------------------------
# Candidates & impact
# -----------------------------

class CandidateDriver(BaseModel):
    id: str
    name: str
    fleet_id: Optional[str] = None
    fleet_name: str = "Unknown"
    priority: PriorityTier


class DistanceDelta(BaseModel):
    absolute: float = 0.0      # meters
    percentage: float = 0.0    # of the candidate's current route distance


class TimeDelta(BaseModel):
    absolute: float = 0.0      # seconds
    percentage: float = 0.0
    formatted: str = "0m"


class CompromisedWindows(BaseModel):
    count: int = 0
    percentage: float = 0.0


class CapacityUtilization(BaseModel):
    current: float = 0.0
    projected: float = 0.0
    available: float = 100.0


class SkillsMatch(BaseModel):
    percentage: float = 100.0
    missing: List[str] = []


class AvailabilityStatus(BaseModel):
    is_available: bool = True
    current_stops: int = 0
    max_capacity: int = 50
    can_absorb_stops: bool = True


class ImpactReport(BaseModel):
    replacement_driver_id: str
    replacement_driver_name: str = ""
    stops_count: int = 0
    additional_distance: DistanceDelta = Field(default_factory=DistanceDelta)
    additional_time: TimeDelta = Field(default_factory=TimeDelta)
    compromised_windows: CompromisedWindows = Field(default_factory=CompromisedWindows)
    capacity_utilization: CapacityUtilization = Field(default_factory=CapacityUtilization)
    skills_match: SkillsMatch = Field(default_factory=SkillsMatch)
    availability_status: AvailabilityStatus = Field(default_factory=AvailabilityStatus)
    is_valid: bool = True
    errors: List[str] = []
    warnings: List[str] = []


class ReassignmentOption(BaseModel):
    option_id: str
    replacement_driver: CandidateDriver
    impact: ImpactReport
    strategy: ReassignmentStrategy
    route_ids: List[str] = []


# -----------------------------
# Execution
# -----------------------------

class ReassignmentOperation(BaseModel):
    route_id: str = Field(..., min_length=1)
    vehicle_id: str = Field(..., min_length=1)
    to_driver_id: str = Field(..., min_length=1)
    stop_ids: List[str] = Field(..., min_length=1)


class ExecutionResult(BaseModel):
    success: bool
    reassigned_stops: int = 0
    reassigned_routes: int = 0
    history_id: Optional[str] = None
    errors: List[str] = []
    warnings: List[str] = []
    manual_verification_required: bool = False


# -----------------------------
# History
# -----------------------------

class ReplacementSummary(BaseModel):
    id: str
    name: str
    stops_assigned: int


class HistoryEntry(BaseModel):
    id: str
    job_id: Optional[str] = None
    absent_driver_id: str
    absent_driver_name: str
    replacement_drivers: List[ReplacementSummary] = []
    route_ids: List[str] = []
    vehicle_ids: List[str] = []
    reason: str = ""
    created_at: datetime
    created_by: str = ""


class OutputStop(BaseModel):
    sequence: int
    order_id: str
    address: Optional[str] = None
    time_window_start: Optional[datetime] = None
    time_window_end: Optional[datetime] = None
    estimated_arrival: Optional[datetime] = None
    status: str


class DriverRouteOutput(BaseModel):
    driver_id: str
    driver_name: str
    vehicle_id: str
    vehicle_plate: str
    stops: List[OutputStop] = []
    total_stops: int = 0
    pending_stops: int = 0
    completed_stops: int = 0


class ReassignmentOutput(BaseModel):
    history_id: str
    generated_at: datetime
    generated_by: str = ""
    absent_driver_id: str
    absent_driver_name: str
    reason: Optional[str] = None
    driver_routes: List[DriverRouteOutput] = []
    total_stops: int = 0
    total_routes: int = 0
    total_replacement_drivers: int = 0


# -----------------------------
# HTTP request bodies
# -----------------------------

class ImpactRequest(BaseModel):
    absent_driver_id: str
    replacement_driver_id: str
    job_id: Optional[str] = None


class OptionsRequest(BaseModel):
    absent_driver_id: str
    strategy: ReassignmentStrategy = ReassignmentStrategy.SAME_FLEET
    job_id: Optional[str] = None
    limit: Optional[int] = Field(None, ge=1, le=20)


class ExecuteRequest(BaseModel):
    absent_driver_id: str
    job_id: Optional[str] = None
    reassignments: List[ReassignmentOperation] = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=2000)
