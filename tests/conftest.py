"""
Pytest configuration for ParkWatch tests.

Every test gets its own SQLite database file; the app's session dependency is
pointed at it, so HTTP tests and direct service calls see the same rows.
"""
from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from parkwatch.core.constants import StickerStatus, UserRole, VehicleApprovalStatus
from parkwatch.core.database import aget_db, build_engine, create_all
from parkwatch.core.security import create_jwt_token
from parkwatch.models.user import User, Vehicle
from parkwatch.models.violations import Violation, ViolationType

pytest_plugins = ('pytest_asyncio',)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "api: tests that go through the HTTP app"
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'parkwatch-test.db'}")
    await create_all(bind=engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def world(session_factory):
    """Two admins, a security officer, two owners with one vehicle each and one pending violation.

    Seeded through a session of its own, so the returned rows stay loaded
    whatever the test session commits or rolls back.
    """
    async with session_factory() as db:
        return await _seed(db)


async def _seed(db):
    admin = User(email="admin@campus.edu", full_name="Ada Admin", role=UserRole.ADMIN)
    admin2 = User(email="admin2@campus.edu", full_name="Abe Admin", role=UserRole.ADMIN)
    officer = User(email="guard@campus.edu", full_name="Sam Security", role=UserRole.SECURITY)
    owner = User(email="owner@campus.edu", full_name="Olu Owner", role=UserRole.OWNER)
    other = User(email="other@campus.edu", full_name="Ola Other", role=UserRole.OWNER)
    db.add_all([admin, admin2, officer, owner, other])
    await db.flush()

    vehicle = Vehicle(owner_id=owner.id, plate_number="GR-1234-24", make="Toyota", model="Corolla",
                      approval_status=VehicleApprovalStatus.APPROVED, sticker_status=StickerStatus.ASSIGNED)
    other_vehicle = Vehicle(owner_id=other.id, plate_number="AS-777-23", make="Kia", model="Rio")
    parking = ViolationType(name="Illegal parking", description="Parked outside a marked bay")
    db.add_all([vehicle, other_vehicle, parking])
    await db.flush()

    violation = Violation(vehicle_id=vehicle.id, violation_type_id=parking.id, reported_by=officer.id,
                          description="Parked on the fire lane", location="Library car park")
    db.add(violation)
    await db.commit()

    return SimpleNamespace(
        admin=admin, admin2=admin2, officer=officer, owner=owner, other=other,
        vehicle=vehicle, other_vehicle=other_vehicle, parking=parking, violation=violation,
    )


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_jwt_token({'sub': str(user.id)})}"}


@pytest_asyncio.fixture
async def client(session_factory):
    from parkwatch.main import app

    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[aget_db] = override_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    return auth_headers
