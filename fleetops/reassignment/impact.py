"""
impact.py

Quantify what happens when one candidate driver absorbs all of an absent
driver's outstanding stops.

The report compares the candidate's workload before and after on five axes
(distance/time, time windows, vehicle capacity, skills, stop count) and
splits findings into blocking ``errors`` and advisory ``warnings``. Only
``errors`` and the stop-count threshold decide ``is_valid``; everything else
is for the dispatcher to weigh.

The calculation is advisory and reads without locks: the executor re-checks
what matters at write time.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from .affected import open_stops_for_driver
from .config import ReassignmentSettings, load_settings
from .geo import RouteMetricsProvider, format_duration, haversine_route_metrics, points_of, round_half_up
from .lookups import find_driver, require_driver, require_job
from .models import (
    AvailabilityStatus,
    CapacityUtilization,
    CompromisedWindows,
    DistanceDelta,
    ImpactReport,
    SkillsMatch,
    TimeDelta,
)
from .tables import (
    OPEN_STOP_STATUSES,
    Driver,
    DriverSkill,
    DriverStatus,
    Order,
    RouteStop,
    Skill,
    StopStatus,
    Vehicle,
    utcnow,
)

logger = logging.getLogger(__name__)

NO_ACTIVE_ROUTES_WARNING = "No active routes found for driver"
CANDIDATE_NOT_FOUND_ERROR = "Replacement driver not found"


def percent(part: float, whole: float, when_zero: float = 0.0) -> float:
    """part/whole as a percentage rounded half up; ``when_zero`` if whole is 0."""
    if whole <= 0:
        return float(when_zero)
    return round_half_up(part * 100.0 / whole)


@dataclass
class _Load:
    weight: float = 0.0
    volume: float = 0.0

    def __add__(self, other: "_Load") -> "_Load":
        return _Load(self.weight + other.weight, self.volume + other.volume)


# ----------------------------------------------------------------------------
# Individual metrics
# ----------------------------------------------------------------------------

def candidate_pending_stops(db: Session, company_id: str, driver_id: str) -> List[RouteStop]:
    stmt = (
        select(RouteStop)
        .where(
            RouteStop.company_id == company_id,
            RouteStop.driver_id == driver_id,
            RouteStop.status == StopStatus.PENDING,
        )
        .order_by(RouteStop.sequence, RouteStop.id)
    )
    return list(db.scalars(stmt).all())


def route_delta(
    current_stops: Sequence[RouteStop],
    moving_stops: Sequence[RouteStop],
    metrics: RouteMetricsProvider,
) -> Tuple[DistanceDelta, TimeDelta]:
    """
    Metrics of the moved stops as a new segment, relative to the candidate's
    current open route. Both passes are ordered by current sequence.
    """
    by_sequence = lambda s: (s.sequence, s.id)
    current = metrics(points_of(sorted(current_stops, key=by_sequence))) if current_stops else None
    added = metrics(points_of(sorted(moving_stops, key=by_sequence))) if moving_stops else None

    current_distance = current.distance_meters if current else 0.0
    current_time = current.duration_seconds if current else 0.0
    added_distance = added.distance_meters if added else 0.0
    added_time = added.duration_seconds if added else 0.0

    # 100% signals an entirely new load when the candidate has no route yet
    distance = DistanceDelta(
        absolute=round_half_up(added_distance),
        percentage=percent(added_distance, current_distance, when_zero=100.0),
    )
    time = TimeDelta(
        absolute=round_half_up(added_time),
        percentage=percent(added_time, current_time, when_zero=100.0),
        formatted=format_duration(added_time),
    )
    return distance, time


def compromised_windows(stops: Iterable[RouteStop]) -> CompromisedWindows:
    windowed = 0
    late = 0
    for stop in stops:
        if stop.time_window_start is None or stop.time_window_end is None:
            continue
        windowed += 1
        if stop.estimated_arrival is not None and stop.estimated_arrival > stop.time_window_end:
            late += 1
    return CompromisedWindows(count=late, percentage=percent(late, windowed))


def _order_loads(db: Session, company_id: str, order_ids: Iterable[str]) -> Dict[str, _Load]:
    ids = sorted(set(order_ids))
    if not ids:
        return {}
    rows = db.execute(
        select(Order.id, Order.weight_required, Order.volume_required).where(
            Order.company_id == company_id, Order.id.in_(ids)
        )
    ).all()
    return {oid: _Load(float(w or 0.0), float(v or 0.0)) for oid, w, v in rows}


def capacity_utilization(
    db: Session,
    company_id: str,
    moving_stops: Sequence[RouteStop],
) -> CapacityUtilization:
    """
    Load of the affected vehicles before and after the move, as the larger of
    the weight and volume percentages of their combined capacity.

    Current load is what the vehicles already carry for open stops outside the
    moved set; projected adds the moved orders.
    """
    vehicle_ids = sorted({s.vehicle_id for s in moving_stops})
    if not vehicle_ids:
        return CapacityUtilization()

    vehicles = db.scalars(
        select(Vehicle).where(Vehicle.company_id == company_id, Vehicle.id.in_(vehicle_ids))
    ).all()
    weight_cap = sum(float(v.weight_capacity or 0.0) for v in vehicles)
    volume_cap = sum(float(v.volume_capacity or 0.0) for v in vehicles)

    moving_ids = {s.id for s in moving_stops}
    moving_orders = {s.order_id for s in moving_stops}
    other_orders = set(
        db.scalars(
            select(RouteStop.order_id).where(
                RouteStop.company_id == company_id,
                RouteStop.vehicle_id.in_(vehicle_ids),
                RouteStop.status.in_(OPEN_STOP_STATUSES),
                RouteStop.id.not_in(sorted(moving_ids)),
            )
        ).all()
    ) - moving_orders

    loads = _order_loads(db, company_id, moving_orders | other_orders)
    current = sum((loads[o] for o in other_orders if o in loads), _Load())
    moved = sum((loads[o] for o in moving_orders if o in loads), _Load())
    projected = current + moved

    current_pct = max(percent(current.weight, weight_cap), percent(current.volume, volume_cap))
    projected_pct = max(percent(projected.weight, weight_cap), percent(projected.volume, volume_cap))
    return CapacityUtilization(
        current=current_pct,
        projected=projected_pct,
        available=max(0.0, 100.0 - projected_pct),
    )


def skills_match(
    db: Session,
    company_id: str,
    candidate: Driver,
    order_ids: Iterable[str],
    now: datetime,
) -> Tuple[SkillsMatch, List[str]]:
    """Returns the match plus warnings about expired skills the candidate holds."""
    ids = sorted(set(order_ids))
    required: Set[str] = set()
    if ids:
        for skills in db.scalars(
            select(Order.required_skills).where(Order.company_id == company_id, Order.id.in_(ids))
        ).all():
            required.update(str(s) for s in (skills or []))

    held = db.scalars(
        select(DriverSkill)
        .options(joinedload(DriverSkill.skill))
        .where(DriverSkill.driver_id == candidate.id, DriverSkill.active.is_(True))
    ).all()

    warnings: List[str] = []
    unexpired: Set[str] = set()
    for ds in held:
        if ds.expires_at is not None and ds.expires_at < now:
            warnings.append(f'Skill "{ds.skill.name if ds.skill else ds.skill_id}" expired')
        else:
            unexpired.add(ds.skill_id)

    missing_ids = sorted(required - unexpired)
    names: Dict[str, str] = {}
    if missing_ids:
        names = dict(db.execute(
            select(Skill.id, Skill.name).where(Skill.company_id == company_id, Skill.id.in_(missing_ids))
        ).all())

    matched = len(required) - len(missing_ids)
    match = SkillsMatch(
        percentage=percent(matched, len(required), when_zero=100.0),
        missing=[names.get(sid, sid) for sid in missing_ids],
    )
    if required and matched < len(required):
        warnings.append(f"{matched}/{len(required)} skills matched")
    return match, warnings


def license_findings(candidate: Driver, now: datetime, warning_days: int) -> Tuple[List[str], List[str]]:
    """(errors, warnings) for the candidate's driving license."""
    if candidate.license_expiry is None:
        return [], []
    days_left = (candidate.license_expiry - now.date()).days
    if days_left < 0:
        return ["License expired"], []
    if days_left <= warning_days:
        return [], [f"License expires in {days_left} days"]
    return [], []


# ----------------------------------------------------------------------------
# Report
# ----------------------------------------------------------------------------

def _no_work_report(candidate_id: str, candidate: Optional[Driver], settings: ReassignmentSettings) -> ImpactReport:
    return ImpactReport(
        replacement_driver_id=candidate_id,
        replacement_driver_name=candidate.name if candidate else "",
        availability_status=AvailabilityStatus(max_capacity=settings.max_stops_per_driver),
        is_valid=True,
        warnings=[NO_ACTIVE_ROUTES_WARNING],
    )


def _unknown_candidate_report(candidate_id: str, settings: ReassignmentSettings) -> ImpactReport:
    return ImpactReport(
        replacement_driver_id=candidate_id,
        additional_distance=DistanceDelta(),
        additional_time=TimeDelta(),
        skills_match=SkillsMatch(percentage=0.0),
        availability_status=AvailabilityStatus(
            is_available=False,
            current_stops=0,
            max_capacity=settings.max_stops_per_driver,
            can_absorb_stops=False,
        ),
        is_valid=False,
        errors=[CANDIDATE_NOT_FOUND_ERROR],
    )


def compute_impact(
    db: Session,
    company_id: str,
    driver_id: str,
    candidate_id: str,
    job_id: Optional[str] = None,
    *,
    settings: Optional[ReassignmentSettings] = None,
    metrics: Optional[RouteMetricsProvider] = None,
    now: Optional[datetime] = None,
    moving_stops: Optional[Sequence[RouteStop]] = None,
) -> ImpactReport:
    """
    Impact of handing every open stop of ``driver_id`` to ``candidate_id``.

    ``moving_stops`` lets callers that evaluate many candidates load the
    affected stops once.
    """
    settings = settings or load_settings()
    metrics = metrics or haversine_route_metrics(settings.average_speed_kmh)
    now = now or utcnow()

    if moving_stops is None:
        require_driver(db, company_id, driver_id)
        require_job(db, company_id, job_id)
        moving_stops = open_stops_for_driver(db, company_id, driver_id, job_id)

    candidate = find_driver(db, company_id, candidate_id)
    if not moving_stops:
        return _no_work_report(candidate_id, candidate, settings)
    if candidate is None or not candidate.active:
        return _unknown_candidate_report(candidate_id, settings)

    errors: List[str] = []
    warnings: List[str] = []

    if candidate.id == driver_id:
        errors.append("Replacement driver cannot be the absent driver")

    license_errors, license_warnings = license_findings(candidate, now, settings.license_warning_days)
    errors += license_errors
    warnings += license_warnings

    status = DriverStatus(candidate.status)
    is_available = status in (DriverStatus.AVAILABLE, DriverStatus.COMPLETED)
    if not is_available:
        warnings.append(f"Driver status is {status.value}")

    current_stops = candidate_pending_stops(db, company_id, candidate.id)
    stops_to_move = len(moving_stops)
    projected_stops = len(current_stops) + stops_to_move
    can_absorb = projected_stops <= settings.max_stops_per_driver
    if not can_absorb:
        errors.append(
            f"Driver cannot absorb {stops_to_move} stops. "
            f"Current: {len(current_stops)}, Max: {settings.max_stops_per_driver}"
        )

    distance, time = route_delta(current_stops, moving_stops, metrics)

    order_ids = [s.order_id for s in moving_stops]
    skills, skill_warnings = skills_match(db, company_id, candidate, order_ids, now)
    warnings += skill_warnings

    capacity = capacity_utilization(db, company_id, moving_stops)
    if capacity.projected > 100:
        errors.append("Capacity constraints violated")
    elif capacity.projected > settings.capacity_warning_pct:
        warnings.append("High capacity utilization after reassignment")

    report = ImpactReport(
        replacement_driver_id=candidate.id,
        replacement_driver_name=candidate.name,
        stops_count=stops_to_move,
        additional_distance=distance,
        additional_time=time,
        compromised_windows=compromised_windows(moving_stops),
        capacity_utilization=capacity,
        skills_match=skills,
        availability_status=AvailabilityStatus(
            is_available=is_available,
            current_stops=len(current_stops),
            max_capacity=settings.max_stops_per_driver,
            can_absorb_stops=can_absorb,
        ),
        is_valid=not errors and can_absorb,
        errors=errors,
        warnings=warnings,
    )
    logger.debug(
        "impact %s -> %s: stops=%d valid=%s errors=%d warnings=%d",
        driver_id, candidate_id, stops_to_move, report.is_valid, len(errors), len(warnings),
    )
    return report
