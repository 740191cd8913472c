from datetime import date, datetime

import pytest
from sqlalchemy import update

from conftest import NOW, add_pending_load
from fleetops.reassignment.errors import NotFoundError
from fleetops.reassignment.geo import RouteMetrics
from fleetops.reassignment.impact import (
    CANDIDATE_NOT_FOUND_ERROR,
    NO_ACTIVE_ROUTES_WARNING,
    compromised_windows,
    compute_impact,
    license_findings,
    percent,
)
from fleetops.reassignment.tables import Driver, Order, RouteStop, Vehicle


def flat_metrics(points):
    """1 km per point and a fixed 90 minutes, whatever the geometry."""
    return RouteMetrics(distance_meters=1000.0 * len(points), duration_seconds=5400.0)


def impact(db, seed, candidate, **kw):
    kw.setdefault("now", NOW)
    return compute_impact(db, seed.company, seed.alice, candidate, **kw)


def test_percent_helper():
    assert percent(1, 3) == 33.0
    assert percent(5, 0) == 0.0
    assert percent(5, 0, when_zero=100.0) == 100.0


def test_percent_rounds_halves_up():
    assert percent(201, 200) == 101.0
    assert percent(181, 200) == 91.0
    assert percent(1, 200) == 1.0


def test_zero_stop_impact_is_valid(db, seed):
    report = compute_impact(db, seed.company, seed.dan, seed.bob, now=NOW)
    assert report.is_valid
    assert report.stops_count == 0
    assert report.warnings == [NO_ACTIVE_ROUTES_WARNING]
    assert report.errors == []


def test_unknown_candidate_is_invalid_with_zeroed_metrics(db, seed):
    report = impact(db, seed, "nobody")
    assert not report.is_valid
    assert report.errors == [CANDIDATE_NOT_FOUND_ERROR]
    assert report.skills_match.percentage == 0.0
    assert report.additional_distance.absolute == 0.0
    assert report.availability_status.can_absorb_stops is False


def test_unknown_absent_driver_raises(db, seed):
    with pytest.raises(NotFoundError):
        compute_impact(db, seed.company, "ghost", seed.bob, now=NOW)


def test_valid_same_fleet_candidate(db, seed):
    report = impact(db, seed, seed.bob)
    assert report.is_valid
    assert report.stops_count == 4
    assert report.replacement_driver_name == "Bob"
    assert report.skills_match.percentage == 100.0
    assert report.skills_match.missing == []
    assert report.availability_status.current_stops == 2
    assert report.availability_status.max_capacity == 50
    assert report.errors == []


def test_distance_percentage_is_100_when_candidate_has_no_route(db, seed):
    report = impact(db, seed, seed.carol)
    assert report.additional_distance.absolute > 0
    assert report.additional_distance.percentage == 100.0
    assert report.additional_time.percentage == 100.0


def test_injected_metrics_provider(db, seed):
    report = impact(db, seed, seed.bob, metrics=flat_metrics)
    # four moved points against Bob's two current ones
    assert report.additional_distance.absolute == 4000.0
    assert report.additional_distance.percentage == 200.0
    assert report.additional_time.absolute == 5400.0
    assert report.additional_time.percentage == 100.0
    assert report.additional_time.formatted == "1h 30m"


def test_absorb_threshold_at_fifty(db, seed):
    add_pending_load(db, seed, seed.carol, 46)
    report = impact(db, seed, seed.carol)
    assert report.availability_status.current_stops == 46
    assert report.availability_status.can_absorb_stops
    assert not any("cannot absorb" in e for e in report.errors)


def test_absorb_threshold_at_fifty_one(db, seed):
    add_pending_load(db, seed, seed.carol, 47)
    report = impact(db, seed, seed.carol)
    assert not report.is_valid
    assert not report.availability_status.can_absorb_stops
    assert "Driver cannot absorb 4 stops. Current: 47, Max: 50" in report.errors


def test_expired_skill_counts_as_missing(db, seed):
    report = impact(db, seed, seed.carol)
    assert report.skills_match.percentage == 0.0
    assert report.skills_match.missing == ["Refrigeration"]
    assert 'Skill "Refrigeration" expired' in report.warnings
    assert "0/1 skills matched" in report.warnings
    # skills never block on their own
    assert report.is_valid


def test_compromised_windows(db, seed):
    report = impact(db, seed, seed.bob)
    # s1 arrives late, s3 on time, s4 has no estimate, s2 has no window
    assert report.compromised_windows.count == 1
    assert report.compromised_windows.percentage == 33.0


def test_compromised_windows_needs_both_bounds():
    stop = RouteStop(time_window_start=None, time_window_end=datetime(2026, 3, 2, 10),
                     estimated_arrival=datetime(2026, 3, 2, 11))
    assert compromised_windows([stop]).count == 0
    assert compromised_windows([]).percentage == 0.0


def test_capacity_over_limit_is_an_error(db, seed):
    db.execute(update(Vehicle).where(Vehicle.id.in_([seed.v1, seed.v2])).values(weight_capacity=100.0))
    db.commit()
    report = impact(db, seed, seed.bob)
    assert report.capacity_utilization.projected == 200.0
    assert report.capacity_utilization.available == 0.0
    assert "Capacity constraints violated" in report.errors
    assert not report.is_valid


def test_high_capacity_is_a_warning(db, seed):
    db.execute(update(Vehicle).where(Vehicle.id == seed.v1).values(weight_capacity=230.0))
    db.execute(update(Vehicle).where(Vehicle.id == seed.v2).values(weight_capacity=200.0))
    db.commit()
    report = impact(db, seed, seed.bob)
    assert report.capacity_utilization.projected == 93.0
    assert "High capacity utilization after reassignment" in report.warnings
    assert report.is_valid


def _load_alice_vehicles(db, seed, trk2_weight):
    # Alice moves 4 orders; three weigh 100 kg. Both vans hold 200 kg.
    db.execute(update(Order).where(Order.tracking_id == "TRK-2").values(weight_required=trk2_weight))
    db.execute(update(Vehicle).where(Vehicle.id.in_([seed.v1, seed.v2])).values(weight_capacity=200.0))
    db.commit()


def test_capacity_just_over_full_is_an_error(db, seed):
    _load_alice_vehicles(db, seed, 102.0)   # 402 of 400 kg
    report = impact(db, seed, seed.bob)
    assert report.capacity_utilization.projected == 101.0
    assert "Capacity constraints violated" in report.errors
    assert not report.is_valid


def test_capacity_just_over_warning_threshold_warns(db, seed):
    _load_alice_vehicles(db, seed, 62.0)   # 362 of 400 kg
    report = impact(db, seed, seed.bob)
    assert report.capacity_utilization.projected == 91.0
    assert "High capacity utilization after reassignment" in report.warnings
    assert report.is_valid


def test_capacity_current_counts_other_open_work_on_the_vehicles(db, seed):
    report = impact(db, seed, seed.bob)
    assert report.capacity_utilization.current == 0.0
    # 4 x 100 kg and 4 x 1 m3 over 2000 kg / 20 m3
    assert report.capacity_utilization.projected == 20.0
    assert report.capacity_utilization.available == 80.0


def test_expired_license_blocks(db, seed):
    db.execute(update(Driver).where(Driver.id == seed.bob).values(license_expiry=date(2026, 1, 1)))
    db.commit()
    report = impact(db, seed, seed.bob)
    assert "License expired" in report.errors
    assert not report.is_valid


def test_status_warning_for_busy_candidate(db, seed):
    report = impact(db, seed, seed.gina)
    assert "Driver status is IN_ROUTE" in report.warnings
    assert report.availability_status.is_available is False


def test_candidate_equal_to_absent_driver(db, seed):
    report = impact(db, seed, seed.alice)
    assert "Replacement driver cannot be the absent driver" in report.errors
    assert not report.is_valid


@pytest.mark.parametrize("expiry,errors,warnings", [
    (None, [], []),
    (date(2026, 3, 1), ["License expired"], []),
    (date(2026, 3, 12), [], ["License expires in 10 days"]),
    (date(2026, 4, 1), [], ["License expires in 30 days"]),
    (date(2026, 4, 2), [], []),
])
def test_license_findings(expiry, errors, warnings):
    driver = Driver(name="X", license_expiry=expiry)
    assert license_findings(driver, NOW, 30) == (errors, warnings)
