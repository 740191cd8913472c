"""
execute.py

Apply a chosen set of per-route reassignments as one unit of work.

Phases:
1. Validate every operation before touching anything (not-found, validation,
   capacity). Any problem returns a failed result with zero mutations.
2. Inside one database transaction, move stops with an UPDATE guarded by
   "still owned by the absent driver and still open", adjust driver statuses
   and append the history row. A guard that moves fewer rows than requested
   means another execution got there first; the whole call is abandoned.
3. On failure roll the transaction back, then confirm every touched stop is
   owned by the absent driver again. Stops still held by the driver this
   call gave them to are restored one by one. Stops that someone else has
   since taken are left alone; those, like a failed restore, make the result
   ask for manual verification.
"""

from __future__ import annotations
import logging
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from .config import ReassignmentSettings, load_settings
from .errors import NotFoundError, PartialFailureError, StopOwnershipConflict
from .impact import capacity_utilization, license_findings
from .lookups import find_driver, require_job
from .models import ExecutionResult, ReassignmentOperation
from .status import transition_driver
from .tables import (
    BLOCKED_DRIVER_STATUSES,
    OPEN_STOP_STATUSES,
    Driver,
    DriverStatus,
    ReassignmentHistory,
    RouteStop,
    StopStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

OperationInput = Union[ReassignmentOperation, Dict[str, Any]]


@dataclass
class _UnitOfWork:
    """What this call has touched so far, for the last-resort revert."""
    moved_stop_ids: List[str] = field(default_factory=list)
    moved_to: Dict[str, str] = field(default_factory=dict)
    prior_status: Dict[str, DriverStatus] = field(default_factory=dict)
    history_id: Optional[str] = None
    applied_operations: int = 0


def _failed(errors: List[str], warnings: Optional[List[str]] = None, manual: bool = False) -> ExecutionResult:
    return ExecutionResult(
        success=False,
        reassigned_stops=0,
        reassigned_routes=0,
        errors=errors,
        warnings=warnings or [],
        manual_verification_required=manual,
    )


# ----------------------------------------------------------------------------
# Phase 1: validation
# ----------------------------------------------------------------------------

def _parse_operations(raw: Sequence[OperationInput]) -> Tuple[List[ReassignmentOperation], List[str]]:
    ops: List[ReassignmentOperation] = []
    errors: List[str] = []
    for index, item in enumerate(raw or [], start=1):
        try:
            ops.append(item if isinstance(item, ReassignmentOperation) else ReassignmentOperation.model_validate(item))
        except PydanticValidationError as exc:
            for err in exc.errors():
                loc = ".".join(str(p) for p in err.get("loc", ()))
                errors.append(f"Operation {index}: {loc} {err.get('msg', 'invalid')}".strip())
    if not raw:
        errors.append("No reassignment operations provided")
    return ops, errors


def _validate_replacements(
    db: Session,
    company_id: str,
    absent: Driver,
    ops: Sequence[ReassignmentOperation],
    settings: ReassignmentSettings,
    now: datetime,
) -> Tuple[Dict[str, Driver], List[str], List[str]]:
    """(replacements by id, blocking errors, advisory warnings)"""
    errors: List[str] = []
    warnings: List[str] = []
    replacements: Dict[str, Driver] = {}
    added = Counter()
    for op in ops:
        added[op.to_driver_id] += len(set(op.stop_ids))

    for driver_id, stop_count in added.items():
        driver = find_driver(db, company_id, driver_id)
        if driver is None:
            errors.append(f"Replacement driver {driver_id} not found")
            continue
        if driver.id == absent.id:
            errors.append("Replacement driver cannot be the absent driver")
            continue
        if not driver.active:
            errors.append(f"Replacement driver {driver.name} is inactive")
            continue
        if driver.status in BLOCKED_DRIVER_STATUSES:
            errors.append(f"Replacement driver {driver.name} is not available ({DriverStatus(driver.status).value})")
            continue
        license_errors, license_warnings = license_findings(driver, now, settings.license_warning_days)
        errors += [f"Replacement driver {driver.name}: {e}" for e in license_errors]
        warnings += [f"Replacement driver {driver.name}: {w}" for w in license_warnings]
        if driver.status not in (DriverStatus.AVAILABLE, DriverStatus.COMPLETED):
            warnings.append(f"Replacement driver {driver.name} status is {DriverStatus(driver.status).value}")

        current = db.scalar(
            select(func.count(RouteStop.id)).where(
                RouteStop.company_id == company_id,
                RouteStop.driver_id == driver.id,
                RouteStop.status == StopStatus.PENDING,
            )
        ) or 0
        if current + stop_count > settings.max_stops_per_driver:
            errors.append(
                f"Driver {driver.name} cannot absorb {stop_count} stops. "
                f"Current: {current}, Max: {settings.max_stops_per_driver}"
            )
        replacements[driver.id] = driver
    return replacements, errors, warnings


def _validate_stops(
    db: Session,
    company_id: str,
    absent_id: str,
    ops: Sequence[ReassignmentOperation],
    job_id: Optional[str],
) -> List[str]:
    errors: List[str] = []
    seen = Counter(sid for op in ops for sid in set(op.stop_ids))
    for stop_id, count in sorted(seen.items()):
        if count > 1:
            errors.append(f"Stop {stop_id} appears in more than one operation")

    all_ids = sorted(seen)
    stops = {
        s.id: s
        for s in db.scalars(
            select(RouteStop).where(RouteStop.company_id == company_id, RouteStop.id.in_(all_ids))
        ).all()
    }
    for op in ops:
        for stop_id in dict.fromkeys(op.stop_ids):
            stop = stops.get(stop_id)
            if stop is None:
                errors.append(f"Stop {stop_id} not found")
            elif stop.route_id != op.route_id or stop.vehicle_id != op.vehicle_id:
                errors.append(f"Stop {stop_id} is not on route {op.route_id} / vehicle {op.vehicle_id}")
            elif job_id is not None and stop.job_id != job_id:
                errors.append(f"Stop {stop_id} does not belong to job {job_id}")
            elif stop.status not in OPEN_STOP_STATUSES:
                errors.append(f"Stop {stop_id} is {StopStatus(stop.status).value} and cannot be reassigned")
            elif stop.driver_id != absent_id:
                errors.append(f"Stop {stop_id} is no longer owned by the absent driver")
    return errors


def _validate_capacity(db: Session, company_id: str, ops: Sequence[ReassignmentOperation]) -> List[str]:
    stop_ids = sorted({sid for op in ops for sid in op.stop_ids})
    stops = db.scalars(
        select(RouteStop).where(RouteStop.company_id == company_id, RouteStop.id.in_(stop_ids))
    ).all()
    capacity = capacity_utilization(db, company_id, stops)
    if capacity.projected > 100:
        return [f"Capacity constraints violated: projected load {capacity.projected:.0f}%"]
    return []


# ----------------------------------------------------------------------------
# Phase 2: mutation
# ----------------------------------------------------------------------------

def _apply_operation(
    db: Session,
    company_id: str,
    absent_id: str,
    op: ReassignmentOperation,
    job_id: Optional[str],
    now: datetime,
    uow: _UnitOfWork,
) -> List[str]:
    """Move the operation's stops; returns the ids that moved."""
    requested = list(dict.fromkeys(op.stop_ids))
    guard = [
        RouteStop.company_id == company_id,
        RouteStop.route_id == op.route_id,
        RouteStop.vehicle_id == op.vehicle_id,
        RouteStop.driver_id == absent_id,
        RouteStop.status.in_(OPEN_STOP_STATUSES),
        RouteStop.id.in_(requested),
    ]
    if job_id is not None:
        guard.append(RouteStop.job_id == job_id)

    owned = list(db.scalars(select(RouteStop.id).where(*guard).with_for_update()).all())
    uow.moved_stop_ids.extend(owned)
    uow.moved_to.update((stop_id, op.to_driver_id) for stop_id in owned)

    result = db.execute(
        update(RouteStop)
        .where(*guard)
        .values(driver_id=op.to_driver_id, updated_at=now)
        .execution_options(synchronize_session="evaluate")
    )
    if len(owned) != len(requested) or result.rowcount != len(owned):
        raise StopOwnershipConflict(op.route_id, len(requested), min(len(owned), result.rowcount))
    return owned


def _promote_replacement(db: Session, company_id: str, driver: Driver, uow: _UnitOfWork) -> None:
    has_in_progress = db.scalar(
        select(RouteStop.id)
        .where(
            RouteStop.company_id == company_id,
            RouteStop.driver_id == driver.id,
            RouteStop.status == StopStatus.IN_PROGRESS,
        )
        .limit(1)
    )
    if has_in_progress is not None:
        uow.prior_status.setdefault(driver.id, DriverStatus(driver.status))
        transition_driver(driver, DriverStatus.IN_ROUTE)


def _release_absent_driver(db: Session, company_id: str, absent: Driver, uow: _UnitOfWork) -> List[str]:
    remaining = db.scalar(
        select(func.count(RouteStop.id)).where(
            RouteStop.company_id == company_id,
            RouteStop.driver_id == absent.id,
            RouteStop.status.in_(OPEN_STOP_STATUSES),
        )
    ) or 0
    if remaining == 0 and absent.status == DriverStatus.ABSENT:
        uow.prior_status.setdefault(absent.id, DriverStatus(absent.status))
        transition_driver(absent, DriverStatus.UNAVAILABLE)
        return [f"Absent driver {absent.name} status updated to UNAVAILABLE"]
    return []


# ----------------------------------------------------------------------------
# Phase 3: revert
# ----------------------------------------------------------------------------

def _rollback_unit_of_work(db: Session) -> None:
    db.rollback()


def _restore_stop_owner(
    db: Session,
    company_id: str,
    stop_id: str,
    owner_id: str,
    moved_to_id: str,
    now: datetime,
) -> int:
    """Give the stop back to ``owner_id`` only while it still sits with ``moved_to_id``."""
    result = db.execute(
        update(RouteStop)
        .where(
            RouteStop.company_id == company_id,
            RouteStop.id == stop_id,
            RouteStop.driver_id == moved_to_id,
        )
        .values(driver_id=owner_id, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def _revert(db: Session, company_id: str, absent_id: str, uow: _UnitOfWork, now: datetime) -> Tuple[List[str], List[str]]:
    """(notes, revert_errors) after a failed execution."""
    notes: List[str] = []
    revert_errors: List[str] = []

    try:
        _rollback_unit_of_work(db)
    except Exception as exc:
        revert_errors.append(f"Transaction rollback failed: {exc}")

    if not uow.moved_stop_ids:
        if not revert_errors:
            notes.append("No changes were applied")
        return notes, revert_errors

    try:
        owners = db.execute(
            select(RouteStop.id, RouteStop.driver_id).where(
                RouteStop.company_id == company_id,
                RouteStop.id.in_(sorted(set(uow.moved_stop_ids))),
                RouteStop.driver_id != absent_id,
            )
        ).all()
    except Exception as exc:
        revert_errors.append(f"Could not verify rollback: {exc}")
        return notes, revert_errors

    # Only stops still held by the driver this call gave them to are ours to undo.
    stragglers = [stop_id for stop_id, owner in owners if owner == uow.moved_to.get(stop_id)]
    taken = [(stop_id, owner) for stop_id, owner in owners if owner != uow.moved_to.get(stop_id)]
    conflicts = [
        f"Stop {stop_id} is now owned by driver {owner}; it was left as is" for stop_id, owner in taken
    ]
    if taken:
        logger.error("%d stops were reassigned elsewhere after rollback, not restoring them", len(taken))

    if not stragglers:
        if not revert_errors and not conflicts:
            notes.append("All changes were rolled back successfully")
        return notes, revert_errors + conflicts

    # The transaction did not undo everything; put stops back one by one.
    logger.error("rollback left %d stops with a new owner, restoring manually", len(stragglers))
    db.expunge_all()
    restored = 0
    for stop_id in stragglers:
        try:
            if _restore_stop_owner(db, company_id, stop_id, absent_id, uow.moved_to[stop_id], now):
                restored += 1
            else:
                conflicts.append(f"Stop {stop_id} changed owner during manual rollback; it was left as is")
        except Exception as exc:
            revert_errors.append(f"Failed to rollback stop {stop_id}: {exc}")
    for driver_id, status in uow.prior_status.items():
        try:
            db.execute(update(Driver).where(Driver.id == driver_id).values(status=status, updated_at=now))
        except Exception as exc:
            revert_errors.append(f"Failed to restore status of driver {driver_id}: {exc}")
    if uow.history_id is not None:
        try:
            db.execute(delete(ReassignmentHistory).where(ReassignmentHistory.id == uow.history_id))
        except Exception as exc:
            revert_errors.append(f"Failed to discard uncommitted history {uow.history_id}: {exc}")

    if revert_errors:
        return notes, revert_errors + conflicts
    try:
        db.commit()
    except Exception as exc:
        revert_errors.append(f"Failed to commit manual rollback: {exc}")
        return notes, revert_errors + conflicts
    if restored:
        notes.append(f"{restored} stops were restored manually after rollback")
    return notes, conflicts


# ----------------------------------------------------------------------------
# Entry point
# ----------------------------------------------------------------------------

def execute_reassignment(
    db: Session,
    company_id: str,
    driver_id: str,
    operations: Sequence[OperationInput],
    reason: Optional[str] = None,
    actor_id: Optional[str] = None,
    job_id: Optional[str] = None,
    *,
    settings: Optional[ReassignmentSettings] = None,
    now: Optional[datetime] = None,
) -> ExecutionResult:
    settings = settings or load_settings()
    now = now or utcnow()

    ops, errors = _parse_operations(operations)
    if errors:
        return _failed(errors)

    absent = find_driver(db, company_id, driver_id)
    if absent is None:
        return _failed([f"Absent driver {driver_id} not found"])
    try:
        require_job(db, company_id, job_id)
    except NotFoundError as exc:
        return _failed([str(exc)])

    replacements, errors, warnings = _validate_replacements(db, company_id, absent, ops, settings, now)
    errors += _validate_stops(db, company_id, absent.id, ops, job_id)
    if not errors:
        errors += _validate_capacity(db, company_id, ops)
    if errors:
        db.rollback()
        logger.info("reassignment for driver %s rejected before mutation: %s", driver_id, "; ".join(errors))
        return _failed(errors)

    uow = _UnitOfWork()
    absent_id = absent.id
    details: List[Dict[str, Any]] = []
    try:
        for op in ops:
            moved = _apply_operation(db, company_id, absent.id, op, job_id, now, uow)
            replacement = replacements[op.to_driver_id]
            _promote_replacement(db, company_id, replacement, uow)
            details.append({
                "driver_id": replacement.id,
                "driver_name": replacement.name,
                "stop_ids": moved,
                "stop_count": len(moved),
                "route_id": op.route_id,
                "vehicle_id": op.vehicle_id,
            })
            uow.applied_operations += 1

        warnings += _release_absent_driver(db, company_id, absent, uow)

        route_ids = list(OrderedDict.fromkeys(d["route_id"] for d in details))
        vehicle_ids = list(OrderedDict.fromkeys(d["vehicle_id"] for d in details))
        entry = ReassignmentHistory(
            company_id=company_id,
            job_id=job_id,
            absent_driver_id=absent.id,
            absent_driver_name=absent.name,
            route_ids=route_ids,
            vehicle_ids=vehicle_ids,
            reassignments=details,
            reason=reason,
            executed_by=actor_id,
            executed_at=now,
        )
        db.add(entry)
        db.flush()
        uow.history_id = entry.id
        db.commit()
    except Exception as exc:
        if isinstance(exc, StopOwnershipConflict):
            failure = f"Consistency error: {exc}"
        else:
            failure = str(PartialFailureError(
                f"Reassignment failed after {uow.applied_operations} of {len(ops)} operations: {exc}"
            ))
        logger.exception("reassignment for driver %s failed, reverting", driver_id)
        notes, revert_errors = _revert(db, company_id, absent_id, uow, now)
        errors = [failure, *revert_errors]
        if revert_errors:
            errors.append("Partial rollback may have occurred - manual verification required")
        else:
            errors += notes
        return _failed(errors, warnings, manual=bool(revert_errors))

    moved_total = sum(d["stop_count"] for d in details)
    logger.info(
        "audit execute_reassignment history=%s absent=%s stops=%d routes=%d actor=%s reason=%r",
        entry.id, absent.id, moved_total, len(route_ids), actor_id, reason,
    )
    for d in details:
        logger.info(
            "audit driver_reassignment route=%s vehicle=%s from=%s to=%s stops=%d",
            d["route_id"], d["vehicle_id"], absent.id, d["driver_id"], d["stop_count"],
        )
    return ExecutionResult(
        success=True,
        reassigned_stops=moved_total,
        reassigned_routes=len(route_ids),
        history_id=entry.id,
        errors=[],
        warnings=warnings,
    )
