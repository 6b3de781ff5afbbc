"""
Shipment service.

Booking, lookups and the commit/invalidate/publish sequence shared by every
lifecycle endpoint.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from shipping_backend.app.core.config import settings
from shipping_backend.app.core.exceptions import (
    ResourceNotFoundError, DuplicateIdentifierError, ConcurrentModificationError
)
from shipping_backend.app.models.shipment import Shipment, ShipmentItem, utcnow
from shipping_backend.app.models.shipment_enums import ShipmentStatus, WarehouseStatus, AssignmentKind
from shipping_backend.app.models.user import User
from shipping_backend.app.schemas.shipment import ShipmentCreate, ShipmentResponse, DriverSummary
from shipping_backend.app.services.audit import log_event, AuditAction
from shipping_backend.app.services import driver_assignment
from shipping_backend.app.services import shipment_state_machine as state_machine
from shipping_backend.app.services.notification_service import NotificationDispatcher, ShipmentEvent, EventKind
from shipping_backend.app.services.parcel_identifier import (
    format_parcel_ids, generate_tracking_number, determine_parcel_size, calculate_total_cost,
    build_scan_payload, serialize_scan_payload, try_render_qr_data_url
)
from shipping_backend.app.services.sequence_allocator import SequenceAllocator
from shipping_backend.app.services.tracking_cache import tracking_cache_key

logger = logging.getLogger(__name__)

IN_TRANSIT_STATUSES = (
    ShipmentStatus.PICKED_UP,
    ShipmentStatus.IN_TRANSIT,
    ShipmentStatus.CUSTOMS,
    ShipmentStatus.OUT_FOR_DELIVERY,
)


# Booking

IDENTIFIER_COLUMNS = ("tracking_number", "parcel_id", "parcel_id_short")


def is_identifier_collision(exc: IntegrityError) -> bool:
    """True when a unique index on one of the generated identifiers rejected the insert."""
    message = str(exc.orig).lower()
    if "unique" not in message and "duplicate" not in message:
        return False
    return any(column in message for column in IDENTIFIER_COLUMNS)


def _new_shipment(data: ShipmentCreate, sequence: int, tracking_number: str) -> Shipment:
    now = utcnow()
    ids = format_parcel_ids(sequence, now.year)
    shipment = Shipment(
        tracking_number=tracking_number,
        parcel_id=ids.parcel_id,
        parcel_id_short=ids.parcel_id_short,
        parcel_size=determine_parcel_size(data.weight_kg, data.dimensions),
        total_cost=calculate_total_cost(data.weight_kg),
        status=ShipmentStatus.BOOKED,
        warehouse_status=WarehouseStatus.NOT_ARRIVED,
        is_self_dropoff=False,
        booked_at=now,
        created_at=now,
        updated_at=now,
        **data.model_dump(exclude={"items"}),
    )
    shipment.items = [ShipmentItem(**item.model_dump()) for item in data.items]
    return shipment


async def book_shipment(
    db: AsyncSession,
    data: ShipmentCreate,
    allocator: SequenceAllocator,
    max_attempts: int = settings.tracking_number_max_attempts,
) -> Shipment:
    """
    Allocate identifiers, persist the shipment, then attach its scan payload and QR image.

    A unique-index collision (tracking number, or a parcel id handed out by a
    fallback allocation) discards that attempt's numbers and retries with
    fresh ones. The counter increment is part of the same transaction, so a
    discarded attempt rolls its number back and suffixes follow commit order.

    Raises:
        ResourceNotFoundError: user_id does not belong to a known user
        DuplicateIdentifierError: still colliding after max_attempts
    """
    if data.user_id is not None and await db.get(User, data.user_id) is None:
        raise ResourceNotFoundError("User", data.user_id)

    shipment = None
    for attempt in range(1, max_attempts + 1):
        sequence = await allocator.next(db, commit=False)
        shipment = _new_shipment(data, sequence, generate_tracking_number())
        db.add(shipment)
        try:
            await db.flush()
            log_event(
                db,
                AuditAction.SHIPMENT_CREATED,
                shipment=shipment,
                actor_id=data.user_id,
                actor_role="user",
                metadata={
                    "parcel_id": shipment.parcel_id,
                    "parcel_id_short": shipment.parcel_id_short,
                    "weight_kg": shipment.weight_kg,
                    "attempt": attempt,
                },
            )
            await db.commit()
            break
        except IntegrityError as exc:
            await db.rollback()
            if not is_identifier_collision(exc):
                raise
            logger.warning(
                "Identifier collision booking shipment (attempt %d/%d, parcel %s)",
                attempt, max_attempts, shipment.parcel_id_short,
            )
    else:
        raise DuplicateIdentifierError("tracking_number/parcel_id", max_attempts)

    logger.info("Booked shipment %s as %s", shipment.tracking_number, shipment.parcel_id)
    await attach_scan_code(db, shipment)
    return shipment


async def attach_scan_code(db: AsyncSession, shipment: Shipment) -> None:
    """
    Store the serialized scan payload and rendered QR image on a new shipment.

    Rendering failures leave qr_code_url empty; the booking still stands.
    """
    payload = serialize_scan_payload(build_scan_payload(shipment))
    shipment.qr_code_data = payload
    shipment.qr_code_url = await asyncio.to_thread(try_render_qr_data_url, payload)
    await commit_shipment(db, shipment)


# Lookups

async def get_shipment_or_404(db: AsyncSession, shipment_id: int) -> Shipment:
    result = await db.execute(select(Shipment).where(Shipment.id == shipment_id))
    shipment = result.scalar_one_or_none()
    if shipment is None:
        raise ResourceNotFoundError("Shipment", shipment_id)
    return shipment


async def get_by_tracking_number(db: AsyncSession, tracking_number: str) -> Shipment:
    result = await db.execute(select(Shipment).where(Shipment.tracking_number == tracking_number))
    shipment = result.scalar_one_or_none()
    if shipment is None:
        raise ResourceNotFoundError("Shipment", tracking_number)
    return shipment


async def get_by_parcel_id(db: AsyncSession, parcel_id: str) -> Shipment:
    """Look up by long (MM-UK-2025-00482) or short (MM482) parcel id."""
    result = await db.execute(
        select(Shipment).where(or_(Shipment.parcel_id == parcel_id, Shipment.parcel_id_short == parcel_id))
    )
    shipment = result.scalar_one_or_none()
    if shipment is None:
        raise ResourceNotFoundError("Parcel", parcel_id)
    return shipment


async def build_shipment_response(db: AsyncSession, shipment: Shipment) -> ShipmentResponse:
    """Shipment with its assigned drivers reduced to public fields."""
    response = ShipmentResponse.model_validate(shipment)
    driver_ids = [i for i in (shipment.pickup_driver_id, shipment.delivery_driver_id) if i is not None]
    if driver_ids:
        result = await db.execute(select(User).where(User.id.in_(driver_ids)))
        drivers = {driver.id: driver for driver in result.scalars()}
        if shipment.pickup_driver_id in drivers:
            response.pickup_driver = DriverSummary.model_validate(drivers[shipment.pickup_driver_id])
        if shipment.delivery_driver_id in drivers:
            response.delivery_driver = DriverSummary.model_validate(drivers[shipment.delivery_driver_id])
    return response


async def track_shipment(db: AsyncSession, cache, tracking_number: str) -> Dict[str, Any]:
    """Cached public tracking lookup."""
    async def load() -> Dict[str, Any]:
        shipment = await get_by_tracking_number(db, tracking_number)
        response = await build_shipment_response(db, shipment)
        return {"shipment": response.model_dump(mode="json")}

    return await cache.get_or_set(
        tracking_cache_key(tracking_number), load, settings.tracking_cache_ttl_seconds
    )


def decode_scan_payload(shipment: Shipment) -> Dict[str, Any]:
    if shipment.qr_code_data:
        try:
            return json.loads(shipment.qr_code_data)
        except ValueError:
            logger.warning("Stored scan payload for %s is not valid JSON, rebuilding", shipment.parcel_id)
    return build_scan_payload(shipment)


async def list_user_shipments(
    db: AsyncSession, user_id: int, page: int, page_size: int
) -> Tuple[List[Shipment], int]:
    total = (await db.execute(
        select(func.count(Shipment.id)).where(Shipment.user_id == user_id)
    )).scalar_one()
    result = await db.execute(
        select(Shipment)
        .where(Shipment.user_id == user_id)
        .order_by(Shipment.created_at.desc(), Shipment.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars().all()), total


async def user_shipment_stats(db: AsyncSession, user_id: int) -> Dict[str, int]:
    result = await db.execute(
        select(Shipment.status, func.count(Shipment.id))
        .where(Shipment.user_id == user_id)
        .group_by(Shipment.status)
    )
    counts = {status: count for status, count in result.all()}
    return {
        "total_parcels": sum(counts.values()),
        "delivered": counts.get(ShipmentStatus.DELIVERED, 0),
        "in_transit": sum(counts.get(s, 0) for s in IN_TRANSIT_STATUSES),
    }


async def list_driver_assignments(
    db: AsyncSession, driver_id: int, kind: AssignmentKind, page: int, page_size: int
) -> Tuple[List[Shipment], int]:
    column = Shipment.pickup_driver_id if kind == AssignmentKind.PICKUP else Shipment.delivery_driver_id
    total = (await db.execute(select(func.count(Shipment.id)).where(column == driver_id))).scalar_one()
    result = await db.execute(
        select(Shipment)
        .where(column == driver_id)
        .order_by(Shipment.created_at.desc(), Shipment.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars().all()), total


# Commit / invalidate / publish

async def commit_shipment(db: AsyncSession, shipment: Shipment) -> None:
    """
    Commit pending changes to a shipment.

    The UPDATE is conditioned on the version that was read, so a concurrent
    writer makes this fail instead of silently overwriting.

    Raises:
        ConcurrentModificationError: the shipment changed since it was loaded
    """
    shipment_id = shipment.id
    try:
        await db.commit()
    except StaleDataError:
        await db.rollback()
        raise ConcurrentModificationError(shipment_id)


async def invalidate_tracking_cache(cache, shipment: Shipment) -> None:
    """Drop the cached tracking view. Cache trouble never fails the caller."""
    try:
        await cache.delete(tracking_cache_key(shipment.tracking_number))
    except Exception:
        logger.warning("Tracking cache invalidation failed for %s", shipment.tracking_number, exc_info=True)


async def finalize_mutation(
    db: AsyncSession,
    shipment: Shipment,
    cache,
    dispatcher: Optional[NotificationDispatcher] = None,
    event: Optional[ShipmentEvent] = None,
) -> ShipmentResponse:
    """
    Commit a state change, invalidate the tracking cache, then publish the event.

    Returns the response body for the updated shipment.
    """
    await commit_shipment(db, shipment)
    await invalidate_tracking_cache(cache, shipment)
    if dispatcher is not None and event is not None:
        dispatcher.publish(event)
    return await build_shipment_response(db, shipment)


# Operations shared by the customer/driver and admin routes

async def change_status(
    db: AsyncSession,
    shipment: Shipment,
    target: ShipmentStatus,
    cache,
    dispatcher: NotificationDispatcher,
    actor_id: Optional[int] = None,
    override: bool = False,
) -> ShipmentResponse:
    """Run a forward status update (or admin override) and commit it."""
    previous = state_machine.update_status(shipment, target, override=override)
    log_event(
        db,
        AuditAction.SHIPMENT_STATUS_UPDATED,
        shipment=shipment,
        actor_id=actor_id,
        actor_role="admin" if override else "driver",
        metadata={"from": previous.value, "to": target.value, "override": override},
    )
    event = None
    if previous != target:
        event = ShipmentEvent.from_shipment(EventKind.STATUS_CHANGED, shipment, status=target.value)
    response = await finalize_mutation(db, shipment, cache, dispatcher, event)
    logger.info("Shipment %s status %s -> %s", shipment.tracking_number, previous.value, target.value)
    return response


async def change_driver(
    db: AsyncSession,
    shipment: Shipment,
    driver_id: Optional[int],
    kind: AssignmentKind,
    cache,
    dispatcher: NotificationDispatcher,
    require_verified: bool,
    actor_id: Optional[int] = None,
    actor_role: str = "user",
) -> ShipmentResponse:
    """Assign or clear the driver of one leg and commit it."""
    previous_status = shipment.status
    driver, previous_driver_id = await driver_assignment.assign_driver(
        db, shipment, driver_id, kind, require_verified
    )
    log_event(
        db,
        AuditAction.DRIVER_ASSIGNED if driver else AuditAction.DRIVER_UNASSIGNED,
        shipment=shipment,
        actor_id=actor_id,
        actor_role=actor_role,
        metadata={
            "type": kind.value,
            "driver_id": driver_id,
            "previous_driver_id": previous_driver_id,
            "from_status": previous_status.value,
            "to_status": shipment.status.value,
        },
    )
    await commit_shipment(db, shipment)
    await invalidate_tracking_cache(cache, shipment)

    if driver is not None:
        dispatcher.publish(ShipmentEvent.from_shipment(
            EventKind.DRIVER_ASSIGNED, shipment, assignment=kind.value, driver_id=driver.id
        ))
    if shipment.status != previous_status:
        dispatcher.publish(ShipmentEvent.from_shipment(
            EventKind.STATUS_CHANGED, shipment, status=shipment.status.value
        ))
    return await build_shipment_response(db, shipment)
