"""
Centralized Test Configuration.
"""

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from shipping_backend.app.main import app
from shipping_backend.app.db.session import get_db, Base
from shipping_backend.app.core.dependencies import get_tracking_cache, get_notification_dispatcher
from shipping_backend.app.core.reliability import CircuitBreaker
from shipping_backend.app.models.enums import UserRole, DriverType, DriverCountry, VerificationStatus
from shipping_backend.app.models.user import User
from shipping_backend.app.services.notification_service import NotificationDispatcher
from shipping_backend.app.services.tracking_cache import InMemoryTrackingCache

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Event handler to enable foreign keys for SQLite
from sqlalchemy import event
from sqlalchemy.pool import Pool

@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)).lower():
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


class FakeClock:
    """Manually advanced monotonic clock for TTL tests."""
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePushSender:
    """Records sent push messages instead of calling the push service."""
    def __init__(self):
        self.sent = []
        self.fail_with = None

    async def send(self, messages):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.extend(messages)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracking_cache(clock):
    return InMemoryTrackingCache(default_ttl=30, clock=clock)


@pytest.fixture
def push_sender():
    return FakePushSender()


@pytest.fixture
def dispatcher(push_sender):
    return NotificationDispatcher(
        push_sender,
        TestingSessionLocal,
        timeout_seconds=1.0,
        breaker=CircuitBreaker("push-test", failure_threshold=3, reset_timeout=60),
        enabled=True,
    )


@pytest.fixture(autouse=True)
def apply_overrides(tracking_cache, dispatcher):
    """Point the app at the test database, cache and dispatcher."""
    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_tracking_cache] = lambda: tracking_cache
    app.dependency_overrides[get_notification_dispatcher] = lambda: dispatcher
    yield
    app.dependency_overrides = {}


@pytest.fixture(autouse=True)
async def setup_database():
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


async def create_user(db: AsyncSession, **fields) -> User:
    fields.setdefault("full_name", "Test User")
    fields.setdefault("role", UserRole.USER)
    user = User(**fields)
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def customer(db_session):
    return await create_user(
        db_session, full_name="Ama Mensah", email="ama@example.com",
        phone="+447700900001", push_token="ExponentPushToken[customer]",
    )


@pytest.fixture
async def admin_user(db_session):
    return await create_user(
        db_session, full_name="Ops Admin", email="admin@example.com",
        role=UserRole.ADMIN, push_token="ExponentPushToken[admin]",
    )


@pytest.fixture
async def pickup_driver(db_session):
    return await create_user(
        db_session, full_name="Tom Pickup", email="pickup@example.com", phone="+447700900002",
        role=UserRole.DRIVER, driver_type=DriverType.PICKUP, country=DriverCountry.UK,
        verification_status=VerificationStatus.VERIFIED, push_token="ExponentPushToken[pickup]",
    )


@pytest.fixture
async def delivery_driver(db_session):
    return await create_user(
        db_session, full_name="Kofi Delivery", email="delivery@example.com", phone="+233200000003",
        role=UserRole.DRIVER, driver_type=DriverType.DELIVERY, country=DriverCountry.GHANA,
        verification_status=VerificationStatus.VERIFIED, push_token="ExponentPushToken[delivery]",
    )


@pytest.fixture
async def unverified_delivery_driver(db_session):
    return await create_user(
        db_session, full_name="New Driver", email="new@example.com",
        role=UserRole.DRIVER, driver_type=DriverType.DELIVERY, country=DriverCountry.GHANA,
        verification_status=VerificationStatus.PENDING,
    )


def booking_payload(**overrides) -> dict:
    payload = {
        "sender_name": "Ama Mensah",
        "sender_phone": "+447700900001",
        "sender_email": "ama@example.com",
        "pickup_address": "12 High Street",
        "pickup_city": "London",
        "pickup_postcode": "E1 6AN",
        "pickup_date": "2030-03-01",
        "pickup_time": "09:00-12:00",
        "receiver_name": "Kwame Mensah",
        "receiver_phone": "+233200000001",
        "delivery_address": "5 Ring Road",
        "delivery_city": "Accra",
        "delivery_region": "Greater Accra",
        "weight_kg": 6,
        "parcel_description": "Clothes",
        "items": [{"name": "Shirts", "quantity": 3, "value": 40.0}],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
async def booked(client, customer):
    """A booked shipment owned by the customer; returns the booking response body."""
    response = await client.post("/v1/shipments", json=booking_payload(user_id=customer.id))
    assert response.status_code == 200, response.text
    return response.json()


@pytest.fixture
def make_booking():
    return booking_payload
