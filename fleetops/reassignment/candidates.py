from __future__ import annotations
import logging
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from .lookups import require_driver, require_job
from .models import CandidateDriver, PriorityTier, ReassignmentStrategy
from .tables import Driver, DriverStatus

logger = logging.getLogger(__name__)


def _eligible_drivers(db: Session, company_id: str, exclude_id: str, *conditions) -> Sequence[Driver]:
    stmt = (
        select(Driver)
        .options(joinedload(Driver.fleet))
        .where(
            Driver.company_id == company_id,
            Driver.active.is_(True),
            Driver.status == DriverStatus.AVAILABLE,
            Driver.id != exclude_id,
            *conditions,
        )
    )
    return db.scalars(stmt).unique().all()


def tier_for(candidate: Driver, absent: Driver) -> PriorityTier:
    if absent.fleet_id is not None and candidate.fleet_id == absent.fleet_id:
        return PriorityTier.SAME_FLEET
    absent_type = absent.fleet.type if absent.fleet else None
    candidate_type = candidate.fleet.type if candidate.fleet else None
    if absent_type is not None and candidate_type == absent_type:
        return PriorityTier.SAME_FLEET_TYPE
    return PriorityTier.OTHER_FLEET


def candidate_pool(
    db: Session,
    company_id: str,
    driver_id: str,
    strategy: ReassignmentStrategy,
    job_id: Optional[str] = None,
    backfill_below: Optional[int] = None,
) -> List[CandidateDriver]:
    """
    Every eligible replacement, ordered but not truncated.

    Under SAME_FLEET, drivers outside the absent driver's fleet are only
    pulled in when the fleet has fewer than ``backfill_below`` candidates
    (always, when ``backfill_below`` is None).
    """
    absent = require_driver(db, company_id, driver_id)
    require_job(db, company_id, job_id)
    strategy = ReassignmentStrategy(strategy)

    if absent.fleet_id is not None:
        same_fleet = list(_eligible_drivers(db, company_id, absent.id, Driver.fleet_id == absent.fleet_id))
    else:
        same_fleet = []

    others: List[Driver] = []
    needs_backfill = backfill_below is None or len(same_fleet) < backfill_below
    if strategy != ReassignmentStrategy.SAME_FLEET or needs_backfill:
        conditions = [Driver.fleet_id.is_not(None)]
        if absent.fleet_id is not None:
            conditions.append(Driver.fleet_id != absent.fleet_id)
        others = list(_eligible_drivers(db, company_id, absent.id, *conditions))

    ranked = [
        CandidateDriver(
            id=d.id,
            name=d.name,
            fleet_id=d.fleet_id,
            fleet_name=d.fleet.name if d.fleet else "Unknown",
            priority=tier_for(d, absent),
        )
        for d in [*same_fleet, *others]
    ]
    ranked.sort(key=lambda c: (int(c.priority), c.name.casefold(), c.id))

    logger.debug(
        "candidate pool for driver %s: %d drivers (strategy=%s, same_fleet=%d)",
        driver_id, len(ranked), strategy.value, len(same_fleet),
    )
    return ranked


def rank_candidates(
    db: Session,
    company_id: str,
    driver_id: str,
    strategy: ReassignmentStrategy = ReassignmentStrategy.SAME_FLEET,
    job_id: Optional[str] = None,
    limit: int = 10,
) -> List[CandidateDriver]:
    """
    AVAILABLE, active drivers of the tenant ordered by affinity to the
    absent driver: same fleet (1), same fleet type (2), anything else (3);
    name breaks ties inside a tier.
    """
    pool = candidate_pool(db, company_id, driver_id, strategy, job_id, backfill_below=limit)
    return pool[:limit]
