"""
Shared fixtures: a fresh in-memory SQLite database per test, Redis replaced
by an AsyncMock, and small factories that return plain integer ids.
"""
import itertools
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import tripsalama.models  # noqa: F401  (registers every table on Base.metadata)
from tripsalama import redis_client
from tripsalama.database import Base, get_db
from tripsalama.middleware.auth import create_access_token
from tripsalama.schemas.schemas import RideCreateRequest, VehicleCreateRequest
from tripsalama.services import rides, users, vehicles

CASABLANCA = (33.5731, -7.5898)
RABAT = (34.0209, -6.8416)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    redis = AsyncMock()
    redis.get.return_value = None
    monkeypatch.setattr(redis_client, "_redis_pool", redis)
    return redis


@pytest_asyncio.fixture
async def client(session_factory):
    from tripsalama.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def headers_for():
    def _headers(user_id: int, role: str) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}

    return _headers


@pytest.fixture
def make_user(db):
    counter = itertools.count(1)

    async def _make(role: str = "passenger", verified: bool | None = None) -> int:
        n = next(counter)
        user = await users.create_user(
            f"{role}{n}@tripsalama.test", "secret-pass-123", "Test", f"{role.title()} {n}", db,
            phone=f"+2126000000{n:02d}", role=role,
        )
        if verified is not None and verified != user.is_verified:
            await users.update(user.id, db, is_verified=verified)
        return user.id

    return _make


@pytest.fixture
def make_vehicle(db):
    async def _make(driver_id: int, plate: str = "12345-A-6") -> int:
        payload = VehicleCreateRequest(brand="Dacia", model="Logan", color="White", license_plate=plate, year=2021)
        return (await vehicles.create(driver_id, payload, db)).id

    return _make


@pytest.fixture
def make_ride(db, make_user):
    async def _make(passenger_id: int | None = None, price: str = "80.00") -> int:
        if passenger_id is None:
            passenger_id = await make_user("passenger")
        payload = RideCreateRequest(
            pickup_address="Place Mohammed V, Casablanca",
            pickup_lat=CASABLANCA[0],
            pickup_lng=CASABLANCA[1],
            dropoff_address="Gare Casa-Port",
            dropoff_lat=33.5990,
            dropoff_lng=-7.6130,
            estimated_distance_km=4.2,
            estimated_duration_min=14,
            estimated_price=Decimal(price),
        )
        return (await rides.create_ride(passenger_id, payload, db)).id

    return _make


@pytest.fixture
def completed_ride(db, make_user, make_ride):
    """Returns (ride_id, passenger_id, driver_id) for a ride driven to completion."""
    async def _make(price: str = "80.00") -> tuple[int, int, int]:
        passenger_id = await make_user("passenger")
        driver_id = await make_user("driver", verified=True)
        ride_id = await make_ride(passenger_id, price=price)
        await rides.assign_driver(ride_id, driver_id, None, db)
        await rides.update_status(ride_id, "in_progress", db)
        await rides.complete(ride_id, db)
        return ride_id, passenger_id, driver_id

    return _make
