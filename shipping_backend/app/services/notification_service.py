"""
Notification Service.

Post-commit side-channel for push notifications. Request handlers publish a
ShipmentEvent after their transaction commits; a worker task drains the queue,
resolves recipients, and sends through a PushSender under a timeout and a
circuit breaker. Nothing here is allowed to fail the request: dispatch errors
are logged and the event is parked in the dead-letter queue.
"""

import asyncio
import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shipping_backend.app.core.config import settings
from shipping_backend.app.core.reliability import CircuitBreaker
from shipping_backend.app.models.dlq import DeadLetterQueue, DLQStatus
from shipping_backend.app.models.enums import UserRole, DriverType, DriverCountry
from shipping_backend.app.models.shipment import Shipment
from shipping_backend.app.models.user import User

logger = logging.getLogger(__name__)

EXPO_TOKEN_PATTERN = re.compile(r"^Expo(nent)?PushToken\[.+\]$")


class EventKind(str, enum.Enum):
    STATUS_CHANGED = "status_changed"
    DRIVER_ASSIGNED = "driver_assigned"
    SHIPMENT_CANCELLED = "shipment_cancelled"
    PICKUP_RESCHEDULED = "pickup_rescheduled"
    DROPOFF_CANCELLED = "dropoff_cancelled"


STATUS_MESSAGES = {
    "booked": "Your parcel has been booked successfully!",
    "picked_up": "Your parcel has been picked up!",
    "in_transit": "Your parcel is now in transit to Ghana!",
    "customs": "Your parcel is going through customs clearance",
    "out_for_delivery": "Your parcel is out for delivery!",
    "delivered": "Your parcel has been delivered!",
}


@dataclass
class ShipmentEvent:
    """Snapshot of a committed shipment change."""
    kind: EventKind
    shipment: Dict[str, Any]
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_shipment(cls, kind: EventKind, shipment: Shipment, **data) -> "ShipmentEvent":
        return cls(
            kind=kind,
            shipment={
                "id": shipment.id,
                "tracking_number": shipment.tracking_number,
                "status": shipment.status.value,
                "user_id": shipment.user_id,
                "sender_name": shipment.sender_name,
                "pickup_address": shipment.pickup_address,
                "pickup_city": shipment.pickup_city,
                "delivery_address": shipment.delivery_address,
                "delivery_city": shipment.delivery_city,
                "pickup_driver_id": shipment.pickup_driver_id,
                "delivery_driver_id": shipment.delivery_driver_id,
            },
            data=data,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "shipment": self.shipment, "data": self.data}


@dataclass
class PushMessage:
    to: str
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_expo(self) -> Dict[str, Any]:
        return {
            "to": self.to,
            "sound": "default",
            "title": self.title,
            "body": self.body,
            "data": self.data,
            "priority": "high",
        }


def is_push_token(token: Optional[str]) -> bool:
    return bool(token) and EXPO_TOKEN_PATTERN.match(token) is not None


class ExpoPushSender:
    """Sends messages to the Expo push service."""

    def __init__(self, url: str = settings.expo_push_url, timeout: float = settings.notification_timeout_seconds):
        self.url = url
        self.timeout = timeout

    async def send(self, messages: List[PushMessage]) -> None:
        valid = []
        for message in messages:
            if is_push_token(message.to):
                valid.append(message.to_expo())
            else:
                logger.warning("Skipping invalid push token %r", message.to)
        if not valid:
            return

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json=valid)
            response.raise_for_status()
        logger.info("Sent %d push notification(s)", len(valid))


# Recipient resolution

async def _users_by_ids(db: AsyncSession, user_ids) -> List[User]:
    ids = [uid for uid in user_ids if uid is not None]
    if not ids:
        return []
    result = await db.execute(select(User).where(User.id.in_(ids)))
    return list(result.scalars().all())


async def _admins(db: AsyncSession) -> List[User]:
    result = await db.execute(
        select(User).where(User.role == UserRole.ADMIN, User.is_active == True)
    )
    return list(result.scalars().all())


async def _uk_pickup_drivers(db: AsyncSession) -> List[User]:
    result = await db.execute(
        select(User).where(
            User.role == UserRole.DRIVER,
            User.is_active == True,
            (User.driver_type == DriverType.PICKUP) | (User.country == DriverCountry.UK),
        )
    )
    return list(result.scalars().all())


def _to(users: List[User], title: str, body: str, data: Dict[str, Any]) -> List[PushMessage]:
    return [PushMessage(to=u.push_token, title=title, body=body, data=data) for u in users if u.push_token]


async def build_messages(db: AsyncSession, event: ShipmentEvent) -> List[PushMessage]:
    """Resolve recipients for an event and render their messages."""
    s = event.shipment
    tracking = s["tracking_number"]
    base = {"trackingNumber": tracking}

    if event.kind == EventKind.STATUS_CHANGED:
        status = event.data["status"]
        owners = await _users_by_ids(db, [s["user_id"]])
        body = STATUS_MESSAGES.get(status, f"Status updated to {status}")
        return _to(owners, "Parcel Update", body, {**base, "status": status, "type": "shipment_update"})

    if event.kind == EventKind.DRIVER_ASSIGNED:
        kind = event.data["assignment"]
        drivers = await _users_by_ids(db, [event.data["driver_id"]])
        if kind == "pickup":
            title = "New Pickup Assigned"
            body = f"You have been assigned a new pickup: {tracking} at {s['pickup_address']}"
            data = {**base, "pickupAddress": s["pickup_address"], "pickupCity": s["pickup_city"]}
        else:
            title = "New Delivery Assigned"
            body = f"You have been assigned a new delivery: {tracking} to {s['delivery_address']}"
            data = {**base, "deliveryAddress": s["delivery_address"], "deliveryCity": s["delivery_city"]}
        return _to(drivers, title, body, {**data, "type": f"driver_{kind}_assigned", "role": "driver"})

    owners = await _users_by_ids(db, [s["user_id"]])
    admins = await _admins(db)

    if event.kind == EventKind.SHIPMENT_CANCELLED:
        drivers = await _users_by_ids(db, [s["pickup_driver_id"], s["delivery_driver_id"]])
        return (
            _to(owners, "Pickup Cancelled",
                f"Your pickup for {tracking} has been cancelled successfully.",
                {**base, "type": "pickup_cancelled", "role": "customer"})
            + _to(drivers, "Pickup Cancelled",
                  f"Customer cancelled pickup for {tracking} at {s['pickup_address']}",
                  {**base, "pickupAddress": s["pickup_address"], "type": "driver_pickup_cancelled", "role": "driver"})
            + _to(admins, "Pickup Cancelled",
                  f"{s['sender_name']} cancelled pickup {tracking}",
                  {**base, "customerName": s["sender_name"], "type": "admin_pickup_cancelled", "role": "admin"})
        )

    if event.kind == EventKind.PICKUP_RESCHEDULED:
        old_date, new_date, reason = event.data["old_date"], event.data["new_date"], event.data["reason"]
        if s["pickup_driver_id"]:
            drivers = await _users_by_ids(db, [s["pickup_driver_id"]])
        else:
            drivers = await _uk_pickup_drivers(db)
        data = {**base, "oldDate": old_date, "newDate": new_date, "reason": reason}
        return (
            _to(owners, "Pickup Rescheduled",
                f"Your pickup for {tracking} has been moved to {new_date}",
                {**data, "type": "pickup_rescheduled", "role": "customer"})
            + _to(drivers, "Pickup Rescheduled",
                  f"{tracking} moved from {old_date} to {new_date}. Reason: {reason}",
                  {**data, "pickupAddress": s["pickup_address"], "type": "driver_pickup_rescheduled", "role": "driver"})
            + _to(admins, "Pickup Rescheduled",
                  f"{s['sender_name']} rescheduled {tracking} to {new_date}",
                  {**data, "customerName": s["sender_name"], "type": "admin_pickup_rescheduled", "role": "admin"})
        )

    if event.kind == EventKind.DROPOFF_CANCELLED:
        drivers = await _uk_pickup_drivers(db)
        return (
            _to(owners, "Drop-off Cancelled",
                f"Your drop-off for {tracking} has been cancelled. A driver will pick up your parcel instead.",
                {**base, "type": "dropoff_cancelled", "role": "customer"})
            + _to(drivers, "New Pickup Available",
                  f"Customer switched from drop-off to pickup for {tracking} at {s['pickup_address'] or s['pickup_city']}",
                  {**base, "pickupAddress": s["pickup_address"], "type": "driver_dropoff_cancelled", "role": "driver"})
            + _to(admins, "Drop-off Cancelled",
                  f"Shipment {tracking} switched from drop-off to driver pickup",
                  {**base, "type": "admin_dropoff_cancelled", "role": "admin"})
        )

    logger.warning("No notification template for event %s", event.kind)
    return []


class NotificationDispatcher:
    """
    Queue of committed shipment events with a single consumer task.

    publish() never blocks or raises. The worker is started and stopped by the
    application lifespan; drain() processes whatever is queued right now.
    """

    def __init__(
        self,
        sender,
        session_factory: async_sessionmaker,
        timeout_seconds: float = settings.notification_timeout_seconds,
        breaker: Optional[CircuitBreaker] = None,
        enabled: bool = settings.notifications_enabled,
    ):
        self.sender = sender
        self.session_factory = session_factory
        self.timeout_seconds = timeout_seconds
        self.breaker = breaker or CircuitBreaker(
            "push",
            failure_threshold=settings.notification_failure_threshold,
            reset_timeout=settings.notification_reset_timeout,
        )
        self.enabled = enabled
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    def publish(self, event: ShipmentEvent) -> None:
        if not self.enabled:
            return
        self._queue.put_nowait(event)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="notification-dispatcher")

    async def stop(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        await self.drain()

    async def drain(self) -> int:
        """Handle every queued event now. Returns how many were handled."""
        handled = 0
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._handle_logged(event)
            finally:
                self._queue.task_done()
            handled += 1
        return handled

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._handle_logged(event)
            finally:
                self._queue.task_done()

    async def _handle_logged(self, event: ShipmentEvent) -> None:
        # One bad event must not stop the worker
        try:
            await self.handle(event)
        except Exception:
            logger.exception("Unhandled error dispatching %s for %s",
                             event.kind.value, event.shipment.get("tracking_number"))

    async def handle(self, event: ShipmentEvent) -> bool:
        """Send notifications for one event. Returns False when dispatch failed."""
        try:
            async with self.session_factory() as db:
                messages = await build_messages(db, event)
        except Exception as exc:
            logger.warning("Could not resolve recipients for %s on %s: %r",
                           event.kind.value, event.shipment.get("tracking_number"), exc)
            await self._dead_letter(event, exc)
            return False

        if not messages:
            return True

        try:
            await self.breaker.call(self.sender.send, messages, timeout=self.timeout_seconds)
        except Exception as exc:
            logger.warning("Notification dispatch failed for %s on %s: %r",
                           event.kind.value, event.shipment.get("tracking_number"), exc)
            await self._dead_letter(event, exc)
            return False
        return True

    async def _dead_letter(self, event: ShipmentEvent, exc: Exception) -> None:
        try:
            async with self.session_factory() as db:
                db.add(DeadLetterQueue(
                    task_name=f"notify:{event.kind.value}",
                    error_message=repr(exc),
                    payload=event.to_payload(),
                    status=DLQStatus.FAILED,
                ))
                await db.commit()
        except Exception:
            logger.exception("Could not record failed notification in dead letter queue")
