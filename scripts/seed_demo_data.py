"""
Seed the local database with a demo tenant: one company, two branches, a few
vehicles and one user per role, then print a bearer token for each user.

Usage:
  python scripts/seed_demo_data.py

This script is idempotent: running it multiple times will upsert the same
records based on unique fields (name for companies, code for branches,
plate number for vehicles, email for users).
"""

from datetime import datetime, timezone

from fleethub.db import SessionLocal, Base, engine
from fleethub.models.models import Branch, Company, User, Vehicle
from fleethub.auth.security import create_access_token


def ensure_company(session, name: str) -> Company:
    company = session.query(Company).filter(Company.name == name).first()
    if company:
        company.is_active = True
        session.add(company)
        session.flush()
        return company
    company = Company(name=name, is_active=True, created_at=datetime.now(timezone.utc))
    session.add(company)
    session.flush()
    return company


def ensure_branch(session, company: Company, code: str, name: str) -> Branch:
    branch = (
        session.query(Branch)
        .filter(Branch.company_id == company.id, Branch.code == code)
        .first()
    )
    if branch:
        branch.name = name
        session.add(branch)
        session.flush()
        return branch
    branch = Branch(company_id=company.id, code=code, name=name)
    session.add(branch)
    session.flush()
    return branch


def ensure_vehicle(session, branch: Branch, plate_number: str, vehicle_type: str, **kwargs) -> Vehicle:
    vehicle = (
        session.query(Vehicle)
        .filter(Vehicle.company_id == branch.company_id, Vehicle.plate_number == plate_number)
        .first()
    )
    if vehicle:
        vehicle.vehicle_type = vehicle_type
        for k, v in kwargs.items():
            if hasattr(vehicle, k):
                setattr(vehicle, k, v)
        session.add(vehicle)
        session.flush()
        return vehicle
    vehicle = Vehicle(
        company_id=branch.company_id,
        branch_id=branch.id,
        plate_number=plate_number,
        vehicle_type=vehicle_type,
        **{k: v for k, v in kwargs.items() if hasattr(Vehicle, k)}
    )
    session.add(vehicle)
    session.flush()
    return vehicle


def ensure_user(session, email: str, role: str, company: Company | None, branches: list[Branch], **kwargs) -> User:
    user = session.query(User).filter(User.email == email).first()
    if user is None:
        user = User(email=email, role=role, created_at=datetime.now(timezone.utc))
    user.role = role
    user.company_id = company.id if company else None
    user.branches = branches
    user.is_active = True
    for k, v in kwargs.items():
        if hasattr(user, k):
            setattr(user, k, v)
    session.add(user)
    session.flush()
    return user


def main() -> None:
    # Ensure tables exist (safe for SQLite dev)
    Base.metadata.create_all(bind=engine)

    session = SessionLocal()
    try:
        acme = ensure_company(session, "ACME Logistics")
        north = ensure_branch(session, acme, "NTH", "North Depot")
        south = ensure_branch(session, acme, "STH", "South Depot")

        ensure_vehicle(session, north, "ABC-123", "Car", make="Toyota", model="Corolla", year=2021, odometer=45200)
        ensure_vehicle(session, north, "TRK-900", "Truck", make="Volvo", model="FH16", year=2019, odometer=310450)
        ensure_vehicle(session, south, "VAN-042", "Van", make="Ford", model="Transit", year=2022, odometer=18900)

        users = [
            ensure_user(session, "ops@fleethub.example", "system_operator", None, [], first_name="System", last_name="Operator"),
            ensure_user(session, "admin@acme.example", "company_administrator", acme, [], first_name="Ada", last_name="Admin"),
            ensure_user(session, "north.manager@acme.example", "branch_manager", acme, [north], first_name="Nora", last_name="Manager"),
            ensure_user(session, "car.mechanic@acme.example", "mechanic", acme, [north], first_name="Carl", last_name="Mechanic", vehicle_type_access=["Car"]),
            ensure_user(session, "viewer@acme.example", "viewer", acme, [north, south], first_name="Vic", last_name="Viewer"),
        ]

        session.commit()

        print("Seed complete. Bearer tokens:")
        for user in users:
            print(f"  {user.role:<22} {user.email:<32} {create_access_token(user.id, user.role)}")
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


if __name__ == "__main__":
    main()
