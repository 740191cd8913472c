from __future__ import annotations
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import NotFoundError
from .tables import Driver, OptimizationJob


def find_driver(db: Session, company_id: str, driver_id: str) -> Optional[Driver]:
    return db.scalar(
        select(Driver).where(Driver.company_id == company_id, Driver.id == driver_id)
    )


def require_driver(db: Session, company_id: str, driver_id: str) -> Driver:
    driver = find_driver(db, company_id, driver_id)
    if driver is None:
        raise NotFoundError(f"Driver {driver_id} not found")
    return driver


def require_job(db: Session, company_id: str, job_id: Optional[str]) -> None:
    """No-op for an unscoped request; raises when the job is not in the tenant."""
    if job_id is None:
        return
    found = db.scalar(
        select(OptimizationJob.id).where(
            OptimizationJob.company_id == company_id, OptimizationJob.id == job_id
        )
    )
    if found is None:
        raise NotFoundError(f"Optimization job {job_id} not found")
