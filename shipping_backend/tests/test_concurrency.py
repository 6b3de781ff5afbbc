"""
Concurrency Tests.

Bookings race against each other on a file-backed SQLite database with one
connection per session, so the counter and unique indexes are exercised by
real concurrent transactions.
"""

import asyncio

import pytest
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import NullPool

from shipping_backend.app.main import app
from shipping_backend.app.core.exceptions import ConcurrentModificationError
from shipping_backend.app.db.session import get_db, Base
from shipping_backend.app.models.shipment import Shipment
from shipping_backend.app.models.shipment_enums import ShipmentStatus
from shipping_backend.app.services.parcel_identifier import parse_short_suffix
from shipping_backend.app.services.sequence_allocator import SequenceAllocator
from shipping_backend.app.services.shipment_service import commit_shipment

CONCURRENT_BOOKINGS = 12


@pytest.fixture
async def file_sessions(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'shipments.db'}",
        connect_args={"timeout": 30},
        poolclass=NullPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _wal(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    sessions = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with sessions() as db:
        await SequenceAllocator().ensure_counter(db)

    async def override_get_db():
        async with sessions() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield sessions
    await engine.dispose()


@pytest.mark.asyncio
async def test_concurrent_bookings_get_unique_increasing_ids(client, file_sessions, make_booking):
    responses = await asyncio.gather(*[
        client.post("/v1/shipments", json=make_booking(sender_name=f"Sender {i}"))
        for i in range(CONCURRENT_BOOKINGS)
    ])
    assert all(r.status_code == 200 for r in responses), [r.text for r in responses if r.status_code != 200]

    async with file_sessions() as db:
        shipments = (await db.execute(select(Shipment).order_by(Shipment.id))).scalars().all()

    assert len(shipments) == CONCURRENT_BOOKINGS
    assert len({s.tracking_number for s in shipments}) == CONCURRENT_BOOKINGS
    assert len({s.parcel_id for s in shipments}) == CONCURRENT_BOOKINGS

    suffixes = [parse_short_suffix(s.parcel_id_short) for s in shipments]
    assert suffixes == sorted(suffixes)
    assert len(set(suffixes)) == CONCURRENT_BOOKINGS


@pytest.mark.asyncio
async def test_stale_write_is_rejected(client, file_sessions, make_booking):
    response = await client.post("/v1/shipments", json=make_booking())
    shipment_id = response.json()["shipment"]["id"]

    async with file_sessions() as first, file_sessions() as second:
        mine = await first.get(Shipment, shipment_id)
        theirs = await second.get(Shipment, shipment_id)

        theirs.status = ShipmentStatus.PICKED_UP
        await commit_shipment(second, theirs)

        mine.status = ShipmentStatus.CANCELLED
        with pytest.raises(ConcurrentModificationError):
            await commit_shipment(first, mine)

    async with file_sessions() as db:
        stored = await db.get(Shipment, shipment_id)
        assert stored.status == ShipmentStatus.PICKED_UP
