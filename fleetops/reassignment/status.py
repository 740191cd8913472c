from __future__ import annotations

import logging
from typing import Dict, FrozenSet

from .errors import InvalidStatusTransition
from .tables import Driver, DriverStatus, utcnow

logger = logging.getLogger(__name__)

S = DriverStatus

DRIVER_STATUS_TRANSITIONS: Dict[DriverStatus, FrozenSet[DriverStatus]] = {
    S.AVAILABLE: frozenset({S.ASSIGNED, S.IN_ROUTE, S.ON_PAUSE, S.UNAVAILABLE, S.ABSENT}),
    S.ASSIGNED: frozenset({S.AVAILABLE, S.IN_ROUTE, S.UNAVAILABLE, S.ABSENT}),
    S.IN_ROUTE: frozenset({S.ON_PAUSE, S.COMPLETED, S.UNAVAILABLE, S.ABSENT}),
    S.ON_PAUSE: frozenset({S.IN_ROUTE, S.COMPLETED, S.UNAVAILABLE, S.ABSENT}),
    S.COMPLETED: frozenset({S.AVAILABLE, S.ASSIGNED, S.IN_ROUTE, S.UNAVAILABLE, S.ABSENT}),
    S.UNAVAILABLE: frozenset({S.AVAILABLE}),
    S.ABSENT: frozenset({S.AVAILABLE, S.UNAVAILABLE}),
}


def can_transition(current: DriverStatus, target: DriverStatus) -> bool:
    if current == target:
        return True
    return target in DRIVER_STATUS_TRANSITIONS.get(current, frozenset())


def transition_driver(driver: Driver, target: DriverStatus) -> bool:
    """
    Move ``driver`` to ``target`` in place. Returns True when the status
    changed, False when it already had that status.
    """
    current = DriverStatus(driver.status)
    if current == target:
        return False
    if not can_transition(current, target):
        raise InvalidStatusTransition(current.value, target.value)
    driver.status = target
    driver.updated_at = utcnow()
    logger.info("driver %s status %s -> %s", driver.id, current.value, target.value)
    return True
