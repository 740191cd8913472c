"""
affected.py

Locate the outstanding work of a driver who can no longer drive: every
PENDING / IN_PROGRESS stop they own in the tenant, grouped by route.
"""

from __future__ import annotations
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from .lookups import require_driver, require_job
from .models import AffectedRoute, AffectedStop
from .tables import OPEN_STOP_STATUSES, RouteStop, StopStatus


def open_stops_for_driver(
    db: Session,
    company_id: str,
    driver_id: str,
    job_id: Optional[str] = None,
) -> List[RouteStop]:
    stmt = (
        select(RouteStop)
        .options(joinedload(RouteStop.vehicle))
        .where(
            RouteStop.company_id == company_id,
            RouteStop.driver_id == driver_id,
            RouteStop.status.in_(OPEN_STOP_STATUSES),
        )
        .order_by(RouteStop.route_id, RouteStop.sequence, RouteStop.id)
    )
    if job_id is not None:
        stmt = stmt.where(RouteStop.job_id == job_id)
    return list(db.scalars(stmt).unique().all())


def locate_affected_work(
    db: Session,
    company_id: str,
    driver_id: str,
    job_id: Optional[str] = None,
) -> List[AffectedRoute]:
    """
    Group the driver's open stops by route. An empty list means there is
    nothing to hand over; it is not an error.
    """
    require_driver(db, company_id, driver_id)
    require_job(db, company_id, job_id)

    routes: Dict[str, AffectedRoute] = {}
    for stop in open_stops_for_driver(db, company_id, driver_id, job_id):
        route = routes.get(stop.route_id)
        if route is None:
            route = AffectedRoute(
                route_id=stop.route_id,
                vehicle_id=stop.vehicle_id,
                vehicle_plate=stop.vehicle.plate if stop.vehicle else "Unknown",
            )
            routes[stop.route_id] = route

        route.stops.append(AffectedStop(
            id=stop.id,
            order_id=stop.order_id,
            sequence=stop.sequence,
            address=stop.address,
            latitude=stop.latitude,
            longitude=stop.longitude,
            status=StopStatus(stop.status).value,
            time_window_start=stop.time_window_start,
            time_window_end=stop.time_window_end,
            estimated_arrival=stop.estimated_arrival,
        ))
        route.total_stops += 1
        if stop.status == StopStatus.PENDING:
            route.pending_stops += 1
        elif stop.status == StopStatus.IN_PROGRESS:
            route.in_progress_stops += 1

    return list(routes.values())
