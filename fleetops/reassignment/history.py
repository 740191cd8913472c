from __future__ import annotations
from collections import OrderedDict
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from .errors import NotFoundError
from .models import (
    DriverRouteOutput,
    HistoryEntry,
    OutputStop,
    ReassignmentOutput,
    ReplacementSummary,
)
from .tables import Driver, ReassignmentHistory, RouteStop, StopStatus, utcnow

MAX_HISTORY_PAGE = 100


def _to_entry(record: ReassignmentHistory) -> HistoryEntry:
    return HistoryEntry(
        id=record.id,
        job_id=record.job_id,
        absent_driver_id=record.absent_driver_id,
        absent_driver_name=record.absent_driver_name,
        replacement_drivers=[
            ReplacementSummary(
                id=r.get("driver_id", ""),
                name=r.get("driver_name", ""),
                stops_assigned=int(r.get("stop_count", len(r.get("stop_ids") or []))),
            )
            for r in (record.reassignments or [])
        ],
        route_ids=list(record.route_ids or []),
        vehicle_ids=list(record.vehicle_ids or []),
        reason=record.reason or "",
        created_at=record.executed_at,
        created_by=record.executed_by or "",
    )


def get_history(
    db: Session,
    company_id: str,
    job_id: Optional[str] = None,
    driver_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[HistoryEntry]:
    """Newest first. ``driver_id`` filters on the absent driver."""
    limit = max(1, min(int(limit), MAX_HISTORY_PAGE))
    offset = max(0, int(offset))

    stmt = select(ReassignmentHistory).where(ReassignmentHistory.company_id == company_id)
    if job_id:
        stmt = stmt.where(ReassignmentHistory.job_id == job_id)
    if driver_id:
        stmt = stmt.where(ReassignmentHistory.absent_driver_id == driver_id)
    stmt = (
        stmt.order_by(ReassignmentHistory.executed_at.desc(), ReassignmentHistory.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return [_to_entry(r) for r in db.scalars(stmt).all()]


def get_history_record(db: Session, company_id: str, history_id: str) -> ReassignmentHistory:
    record = db.scalar(
        select(ReassignmentHistory).where(
            ReassignmentHistory.company_id == company_id,
            ReassignmentHistory.id == history_id,
        )
    )
    if record is None:
        raise NotFoundError(f"Reassignment history record {history_id} not found")
    return record


def build_reassignment_output(
    db: Session,
    company_id: str,
    history_id: str,
    generated_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ReassignmentOutput:
    """
    Route sheets for every replacement driver of one execution, so the
    drivers who picked up work get their updated stop list.

    Lists the reassigned stops each driver still owns, ordered by sequence;
    stops moved on again since then are left out.
    """
    record = get_history_record(db, company_id, history_id)

    stop_ids_by_driver: Dict[str, List[str]] = OrderedDict()
    for r in record.reassignments or []:
        stop_ids_by_driver.setdefault(r.get("driver_id", ""), []).extend(r.get("stop_ids") or [])

    routes: List[DriverRouteOutput] = []
    for driver_id, stop_ids in stop_ids_by_driver.items():
        driver = db.scalar(select(Driver).where(Driver.company_id == company_id, Driver.id == driver_id))
        if driver is None or not stop_ids:
            continue
        stops = db.scalars(
            select(RouteStop)
            .options(joinedload(RouteStop.vehicle), joinedload(RouteStop.order))
            .where(
                RouteStop.company_id == company_id,
                RouteStop.driver_id == driver_id,
                RouteStop.id.in_(stop_ids),
            )
            .order_by(RouteStop.sequence, RouteStop.id)
        ).unique().all()
        if not stops:
            continue

        by_vehicle: Dict[str, List[RouteStop]] = OrderedDict()
        for s in stops:
            by_vehicle.setdefault(s.vehicle_id, []).append(s)

        for vehicle_id, vehicle_stops in by_vehicle.items():
            first = vehicle_stops[0]
            routes.append(DriverRouteOutput(
                driver_id=driver.id,
                driver_name=driver.name,
                vehicle_id=vehicle_id,
                vehicle_plate=first.vehicle.plate if first.vehicle else "Unknown",
                stops=[_to_output_stop(s) for s in vehicle_stops],
                total_stops=len(vehicle_stops),
                pending_stops=sum(1 for s in vehicle_stops if s.status == StopStatus.PENDING),
                completed_stops=sum(1 for s in vehicle_stops if s.status == StopStatus.COMPLETED),
            ))

    return ReassignmentOutput(
        history_id=record.id,
        generated_at=now or utcnow(),
        generated_by=generated_by or "",
        absent_driver_id=record.absent_driver_id,
        absent_driver_name=record.absent_driver_name,
        reason=record.reason,
        driver_routes=routes,
        total_stops=sum(r.total_stops for r in routes),
        total_routes=len(routes),
        total_replacement_drivers=len({r.driver_id for r in routes}),
    )


def _to_output_stop(stop: RouteStop) -> OutputStop:
    return OutputStop(
        sequence=stop.sequence,
        order_id=stop.order.tracking_id if stop.order and stop.order.tracking_id else stop.order_id,
        address=stop.address,
        time_window_start=stop.time_window_start,
        time_window_end=stop.time_window_end,
        estimated_arrival=stop.estimated_arrival,
        status=StopStatus(stop.status).value,
    )
