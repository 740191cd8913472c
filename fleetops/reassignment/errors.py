from __future__ import annotations


class ReassignmentError(Exception):
    """Base for every failure raised by the reassignment engine."""


class NotFoundError(ReassignmentError):
    """A driver, job or history entry does not resolve inside the tenant."""


class StopOwnershipConflict(ReassignmentError):
    """Fewer stops moved than requested: someone else reassigned them first."""

    def __init__(self, route_id: str, requested: int, moved: int):
        self.route_id = route_id
        self.requested = requested
        self.moved = moved
        super().__init__(
            f"Route {route_id}: {requested - moved} of {requested} stops are no longer "
            f"owned by the absent driver"
        )


class PartialFailureError(ReassignmentError):
    pass


class InvalidStatusTransition(ReassignmentError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Driver status cannot move from {current} to {target}")


class HistoryImmutableError(ReassignmentError):
    pass
