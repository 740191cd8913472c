# tests/conftest.py
from datetime import date, datetime, timedelta
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.pool import StaticPool

from fleetops.reassignment.config import ReassignmentSettings
from fleetops.reassignment.db import create_schema, make_engine, make_session_factory
from fleetops.reassignment.tables import (
    Driver,
    DriverSkill,
    DriverStatus,
    Fleet,
    OptimizationJob,
    Order,
    RouteStop,
    Skill,
    StopStatus,
    Vehicle,
)

COMPANY = "acme"
OTHER_COMPANY = "globex"

# Fixed clock so license and skill expiry checks are deterministic
NOW = datetime(2026, 3, 2, 8, 0)


@pytest.fixture(autouse=True)
def _env_test_data(monkeypatch, tmp_path):
    """
    Point the settings loader at an empty temp data dir and clear any
    overrides from the developer's shell.
    """
    data_root = tmp_path / "data"
    data_root.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("PRIVATE_DATA_DIR", str(data_root))
    for name in (
        "MAX_STOPS_PER_DRIVER",
        "CAPACITY_WARNING_PCT",
        "LICENSE_WARNING_DAYS",
        "AVERAGE_SPEED_KMH",
        "DEFAULT_CANDIDATE_LIMIT",
        "DEFAULT_OPTION_LIMIT",
        "DATABASE_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    yield data_root


@pytest.fixture()
def settings():
    return ReassignmentSettings()


@pytest.fixture()
def db():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    create_schema(engine)
    session = make_session_factory(engine)()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        engine.dispose()


# -----------------------------------------------------------------------------
# Seed data
# -----------------------------------------------------------------------------

def add_stop(db, *, driver_id, vehicle_id, order_id, route_id, sequence, lat, lon,
             status=StopStatus.PENDING, job_id=None, company_id=COMPANY,
             window=None, eta=None, address=None):
    stop = RouteStop(
        company_id=company_id,
        job_id=job_id,
        route_id=route_id,
        vehicle_id=vehicle_id,
        driver_id=driver_id,
        order_id=order_id,
        sequence=sequence,
        address=address or f"{route_id} stop {sequence}",
        latitude=lat,
        longitude=lon,
        time_window_start=window[0] if window else None,
        time_window_end=window[1] if window else None,
        estimated_arrival=eta,
        status=status,
    )
    db.add(stop)
    db.flush()
    return stop.id


def add_pending_load(db, seed, driver_id, count, route_id="R-LOAD"):
    """Give ``driver_id`` ``count`` extra PENDING stops on the spare vehicle."""
    for i in range(count):
        add_stop(
            db, driver_id=driver_id, vehicle_id=seed.v_spare, order_id=seed.o_plain,
            route_id=route_id, sequence=i + 1, lat=40.40 + i * 0.001, lon=-3.70,
        )
    db.commit()


@pytest.fixture()
def seed(db):
    """
    One tenant with an ABSENT driver holding two routes of open work, and a
    second tenant that must never leak into results.

    Fleets: North and South share type VAN, Cargo is TRUCK.
    Drivers: Alice (absent, North), Bob (North), Carol (South), Dan (Cargo),
    plus Eve (UNAVAILABLE), Frank (inactive) and Gina (IN_ROUTE) in North,
    none of whom may be offered.
    """
    north = Fleet(company_id=COMPANY, name="North", type="VAN")
    south = Fleet(company_id=COMPANY, name="South", type="VAN")
    cargo = Fleet(company_id=COMPANY, name="Cargo", type="TRUCK")
    db.add_all([north, south, cargo])
    db.flush()

    far = date(2030, 1, 1)
    alice = Driver(company_id=COMPANY, fleet_id=north.id, name="Alice", status=DriverStatus.ABSENT, license_expiry=far)
    bob = Driver(company_id=COMPANY, fleet_id=north.id, name="Bob", status=DriverStatus.AVAILABLE, license_expiry=far)
    carol = Driver(company_id=COMPANY, fleet_id=south.id, name="Carol", status=DriverStatus.AVAILABLE, license_expiry=far)
    dan = Driver(company_id=COMPANY, fleet_id=cargo.id, name="Dan", status=DriverStatus.AVAILABLE, license_expiry=far)
    eve = Driver(company_id=COMPANY, fleet_id=north.id, name="Eve", status=DriverStatus.UNAVAILABLE, license_expiry=far)
    frank = Driver(company_id=COMPANY, fleet_id=north.id, name="Frank", status=DriverStatus.AVAILABLE, active=False)
    gina = Driver(company_id=COMPANY, fleet_id=north.id, name="Gina", status=DriverStatus.IN_ROUTE, license_expiry=far)
    db.add_all([alice, bob, carol, dan, eve, frank, gina])
    db.flush()

    refrig = Skill(company_id=COMPANY, code="REFRIG", name="Refrigeration")
    db.add(refrig)
    db.flush()
    db.add_all([
        DriverSkill(company_id=COMPANY, driver_id=bob.id, skill_id=refrig.id, expires_at=NOW + timedelta(days=365)),
        DriverSkill(company_id=COMPANY, driver_id=carol.id, skill_id=refrig.id, expires_at=NOW - timedelta(days=1)),
    ])

    v1 = Vehicle(company_id=COMPANY, fleet_id=north.id, plate="VAN-001", weight_capacity=1000.0, volume_capacity=10.0)
    v2 = Vehicle(company_id=COMPANY, fleet_id=north.id, plate="VAN-002", weight_capacity=1000.0, volume_capacity=10.0)
    v_bob = Vehicle(company_id=COMPANY, fleet_id=north.id, plate="VAN-003", weight_capacity=1000.0, volume_capacity=10.0)
    v_spare = Vehicle(company_id=COMPANY, fleet_id=south.id, plate="VAN-004", weight_capacity=5000.0, volume_capacity=50.0)
    job = OptimizationJob(company_id=COMPANY, name="Monday plan")
    db.add_all([v1, v2, v_bob, v_spare, job])
    db.flush()

    o_cold = Order(company_id=COMPANY, tracking_id="TRK-1", weight_required=100.0, volume_required=1.0,
                   required_skills=[refrig.id])
    o2 = Order(company_id=COMPANY, tracking_id="TRK-2", weight_required=100.0, volume_required=1.0)
    o3 = Order(company_id=COMPANY, tracking_id="TRK-3", weight_required=100.0, volume_required=1.0)
    o4 = Order(company_id=COMPANY, tracking_id="TRK-4", weight_required=100.0, volume_required=1.0)
    o_plain = Order(company_id=COMPANY, tracking_id="TRK-X", weight_required=10.0, volume_required=0.1)
    db.add_all([o_cold, o2, o3, o4, o_plain])
    db.flush()

    day = datetime(2026, 3, 2)
    s1 = add_stop(db, driver_id=alice.id, vehicle_id=v1.id, order_id=o_cold.id, route_id="R1", sequence=1,
                  lat=40.4168, lon=-3.7038, job_id=job.id,
                  window=(day.replace(hour=9), day.replace(hour=10)), eta=day.replace(hour=10, minute=30))
    s2 = add_stop(db, driver_id=alice.id, vehicle_id=v1.id, order_id=o2.id, route_id="R1", sequence=2,
                  lat=40.4300, lon=-3.6900, job_id=job.id, status=StopStatus.IN_PROGRESS)
    s3 = add_stop(db, driver_id=alice.id, vehicle_id=v1.id, order_id=o3.id, route_id="R1", sequence=3,
                  lat=40.4500, lon=-3.6800, job_id=job.id,
                  window=(day.replace(hour=11), day.replace(hour=12)), eta=day.replace(hour=11, minute=30))
    s4 = add_stop(db, driver_id=alice.id, vehicle_id=v2.id, order_id=o4.id, route_id="R2", sequence=1,
                  lat=40.3900, lon=-3.7200, job_id=job.id,
                  window=(day.replace(hour=9), day.replace(hour=10)))
    s_done = add_stop(db, driver_id=alice.id, vehicle_id=v1.id, order_id=o2.id, route_id="R1", sequence=0,
                      lat=40.4100, lon=-3.7100, job_id=job.id, status=StopStatus.COMPLETED)
    b1 = add_stop(db, driver_id=bob.id, vehicle_id=v_bob.id, order_id=o_plain.id, route_id="R9", sequence=1,
                  lat=40.4000, lon=-3.7000)
    b2 = add_stop(db, driver_id=bob.id, vehicle_id=v_bob.id, order_id=o_plain.id, route_id="R9", sequence=2,
                  lat=40.4100, lon=-3.6900)

    # Another tenant with a look-alike driver and work
    other_fleet = Fleet(company_id=OTHER_COMPANY, name="North", type="VAN")
    db.add(other_fleet)
    db.flush()
    zed = Driver(company_id=OTHER_COMPANY, fleet_id=other_fleet.id, name="Zed", status=DriverStatus.AVAILABLE)
    db.add(zed)
    db.commit()

    return SimpleNamespace(
        company=COMPANY,
        north=north.id, south=south.id, cargo=cargo.id,
        alice=alice.id, bob=bob.id, carol=carol.id, dan=dan.id,
        eve=eve.id, frank=frank.id, gina=gina.id, zed=zed.id,
        refrig=refrig.id,
        v1=v1.id, v2=v2.id, v_bob=v_bob.id, v_spare=v_spare.id,
        job=job.id,
        o_plain=o_plain.id,
        s1=s1, s2=s2, s3=s3, s4=s4, s_done=s_done, b1=b1, b2=b2,
    )


# -----------------------------------------------------------------------------
# Query helpers (read straight from the database, never from cached objects)
# -----------------------------------------------------------------------------

def owner_of(db, stop_id):
    return db.scalar(select(RouteStop.driver_id).where(RouteStop.id == stop_id))


def status_of(db, driver_id):
    return db.scalar(select(Driver.status).where(Driver.id == driver_id))


@pytest.fixture()
def full_handover(seed):
    """Route R1 to Bob and route R2 to Carol."""
    return [
        {"route_id": "R1", "vehicle_id": seed.v1, "to_driver_id": seed.bob, "stop_ids": [seed.s1, seed.s2, seed.s3]},
        {"route_id": "R2", "vehicle_id": seed.v2, "to_driver_id": seed.carol, "stop_ids": [seed.s4]},
    ]


# -----------------------------------------------------------------------------
# API client
# -----------------------------------------------------------------------------

@pytest.fixture()
def client(db, monkeypatch):
    import backend.main as main
    from fleetops.reassignment.db import get_db

    monkeypatch.setattr(main, "SETTINGS", ReassignmentSettings())
    app = main.create_app()

    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    return TestClient(app)
