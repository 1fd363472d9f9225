"""Pytest configuration and fixtures for FleetHub tests.

Provides an in-memory database, a seeded two-tenant graph and principals
for every role.
"""

import os

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RATE_LIMIT", "10000/minute")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("AUTO_CREATE_DB", "false")

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fleethub.db import Base
from fleethub.errors import Rejected
from fleethub.models.models import Branch, Company, User, Vehicle
from fleethub.schemas.work_orders import PartLineCreate, ServiceLineCreate, WorkOrderCreate
from fleethub.services import work_orders as wo_service
from fleethub.services.access_guard import principal_from_user
from fleethub.services.store import EntityStore


@pytest.fixture
def engine():
    """In-memory SQLite shared by every session of one test."""
    eng = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store(db) -> EntityStore:
    return EntityStore(db)


@pytest.fixture
def tenant(db):
    """Two companies; ACME has two branches and a Car/Truck mix."""
    acme = Company(name="ACME Logistics")
    globex = Company(name="Globex Transport")
    db.add_all([acme, globex])
    db.flush()

    north = Branch(company_id=acme.id, name="North Depot", code="NTH")
    south = Branch(company_id=acme.id, name="South Depot", code="STH")
    west = Branch(company_id=globex.id, name="West Yard", code="WST")
    db.add_all([north, south, west])
    db.flush()

    car_north = Vehicle(company_id=acme.id, branch_id=north.id, plate_number="ABC-123", vehicle_type="Car", odometer=45200)
    truck_north = Vehicle(company_id=acme.id, branch_id=north.id, plate_number="TRK-900", vehicle_type="Truck", odometer=310450)
    car_south = Vehicle(company_id=acme.id, branch_id=south.id, plate_number="CAR-777", vehicle_type="Car", odometer=1200)
    globex_car = Vehicle(company_id=globex.id, branch_id=west.id, plate_number="GLX-001", vehicle_type="Car", odometer=500)
    db.add_all([car_north, truck_north, car_south, globex_car])

    def user(email, role, company=None, branches=(), **kwargs):
        row = User(email=email, role=role, company_id=company.id if company else None, **kwargs)
        row.branches = list(branches)
        db.add(row)
        return row

    users = SimpleNamespace(
        sysop=user("ops@fleethub.example", "system_operator"),
        admin=user("admin@acme.example", "company_administrator", acme),
        manager_north=user("north.manager@acme.example", "branch_manager", acme, [north]),
        manager_south=user("south.manager@acme.example", "branch_manager", acme, [south]),
        mechanic=user("mechanic@acme.example", "mechanic", acme, [north]),
        car_mechanic=user("car.mechanic@acme.example", "mechanic", acme, [north], vehicle_type_access=["Car"]),
        viewer=user("viewer@acme.example", "viewer", acme, [north]),
        globex_admin=user("admin@globex.example", "company_administrator", globex),
    )
    db.commit()

    return SimpleNamespace(
        acme=acme,
        globex=globex,
        north=north,
        south=south,
        west=west,
        car_north=car_north,
        truck_north=truck_north,
        car_south=car_south,
        globex_car=globex_car,
        users=users,
    )


@pytest.fixture
def principals(tenant):
    return SimpleNamespace(**{name: principal_from_user(u) for name, u in vars(tenant.users).items()})


@pytest.fixture
def tomorrow() -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=1)


@pytest.fixture
def create_order(store, principals, tenant, tomorrow):
    """Create a work order through the service as the company administrator."""

    def _create(vehicle=None, services=(), parts=(), principal=None, **fields):
        payload = WorkOrderCreate(
            vehicle_id=(vehicle or tenant.car_north).id,
            type=fields.pop("type", "corrective"),
            scheduled_date=fields.pop("scheduled_date", tomorrow),
            description=fields.pop("description", "Brake noise at low speed"),
            services=[ServiceLineCreate(**s) for s in services],
            parts=[PartLineCreate(**p) for p in parts],
            **fields,
        )
        result = wo_service.create_work_order(store, principal or principals.admin, payload)
        assert not isinstance(result, Rejected), result
        return result

    return _create
