from __future__ import annotations
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from .affected import open_stops_for_driver
from .candidates import candidate_pool
from .config import ReassignmentSettings, load_settings
from .geo import RouteMetricsProvider, haversine_route_metrics
from .impact import compute_impact
from .lookups import require_driver, require_job
from .models import ReassignmentOption, ReassignmentStrategy
from .tables import utcnow

logger = logging.getLogger(__name__)


def option_sort_key(option: ReassignmentOption) -> Tuple[int, int, int, float]:
    """
    Ascending key: valid before invalid, then affinity tier, then fewer
    late windows, then better skills coverage.
    """
    impact = option.impact
    return (
        0 if impact.is_valid else 1,
        int(option.replacement_driver.priority),
        impact.compromised_windows.count,
        -impact.skills_match.percentage,
    )


def generate_options(
    db: Session,
    company_id: str,
    driver_id: str,
    strategy: ReassignmentStrategy = ReassignmentStrategy.SAME_FLEET,
    job_id: Optional[str] = None,
    limit: Optional[int] = None,
    *,
    settings: Optional[ReassignmentSettings] = None,
    metrics: Optional[RouteMetricsProvider] = None,
    now: Optional[datetime] = None,
) -> List[ReassignmentOption]:
    """
    Score every eligible candidate against the full affected-work set and
    return the best ``limit`` options (``default_option_limit`` when not
    given). Ranking sees the whole pool; the cut happens after sorting.
    """
    settings = settings or load_settings()
    metrics = metrics or haversine_route_metrics(settings.average_speed_kmh)
    now = now or utcnow()
    strategy = ReassignmentStrategy(strategy)
    limit = limit or settings.default_option_limit

    require_driver(db, company_id, driver_id)
    require_job(db, company_id, job_id)

    moving_stops = open_stops_for_driver(db, company_id, driver_id, job_id)
    route_ids = list(dict.fromkeys(s.route_id for s in moving_stops))
    pool = candidate_pool(db, company_id, driver_id, strategy, job_id, backfill_below=limit)

    options: List[ReassignmentOption] = []
    for candidate in pool:
        impact = compute_impact(
            db, company_id, driver_id, candidate.id, job_id,
            settings=settings, metrics=metrics, now=now, moving_stops=moving_stops,
        )
        options.append(ReassignmentOption(
            option_id=f"{driver_id}-{candidate.id}",
            replacement_driver=candidate,
            impact=impact,
            strategy=strategy,
            route_ids=route_ids,
        ))

    # stable sort keeps the candidate pool's name order for full ties
    options.sort(key=option_sort_key)
    logger.info(
        "generated %d options for driver %s (pool=%d, valid=%d)",
        min(len(options), limit), driver_id, len(pool), sum(1 for o in options if o.impact.is_valid),
    )
    return options[:limit]
