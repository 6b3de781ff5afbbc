"""
Shipment state machine.

Owns every write to `status` and `warehouse_status`. Each operation checks the
current status against a central transition table, raises
InvalidTransitionError when it is not allowed, and otherwise mutates the
shipment in place. Committing is the caller's job.

Transition table:
    picked_up           ← booked, pending_pickup, pending_dropoff, pending
    in_transit          ← picked_up
    customs             ← in_transit
    out_for_delivery    ← in_transit, customs
    delivered           ← out_for_delivery
    cancelled           ← booked, pending_pickup, pending_dropoff, pending
    pending_dropoff     ← booked, pending_pickup        (switch to drop-off)
    booked              ← pending_dropoff               (cancel drop-off)

Forward updates may re-enter the current status; the timestamp is kept.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, Optional, Tuple

from shipping_backend.app.core.exceptions import InvalidTransitionError, UnsupportedStatusTargetError
from shipping_backend.app.models.shipment import Shipment, utcnow
from shipping_backend.app.models.shipment_enums import ShipmentStatus, WarehouseStatus

S = ShipmentStatus

PRE_PICKUP_STATUSES: Tuple[ShipmentStatus, ...] = (S.BOOKED, S.PENDING_PICKUP, S.PENDING_DROPOFF, S.PENDING)
TERMINAL_STATUSES: Tuple[ShipmentStatus, ...] = (S.DELIVERED, S.CANCELLED)
NON_TERMINAL_STATUSES: Tuple[ShipmentStatus, ...] = tuple(s for s in S if s not in TERMINAL_STATUSES)

# Forward pipeline targets reachable through a status update, keyed by target
FORWARD_SOURCES: Dict[ShipmentStatus, Tuple[ShipmentStatus, ...]] = {
    S.PICKED_UP: PRE_PICKUP_STATUSES,
    S.IN_TRANSIT: (S.PICKED_UP,),
    S.CUSTOMS: (S.IN_TRANSIT,),
    S.OUT_FOR_DELIVERY: (S.IN_TRANSIT, S.CUSTOMS),
    S.DELIVERED: (S.OUT_FOR_DELIVERY,),
}

# Statuses that have their own operation and can never be set by a status update
DEDICATED_OPERATIONS: Dict[ShipmentStatus, str] = {
    S.CANCELLED: "cancel",
    S.PENDING_DROPOFF: "dropoff",
    S.BOOKED: "cancel-dropoff",
    S.PENDING_PICKUP: "booking",
    S.PENDING: "booking",
}

STATUS_TIMESTAMP_FIELDS: Dict[ShipmentStatus, str] = {
    S.BOOKED: "booked_at",
    S.PICKED_UP: "picked_up_at",
    S.IN_TRANSIT: "in_transit_at",
    S.CUSTOMS: "customs_at",
    S.OUT_FOR_DELIVERY: "out_for_delivery_at",
    S.DELIVERED: "delivered_at",
    S.CANCELLED: "cancelled_at",
}


@dataclass(frozen=True)
class TransitionRule:
    """A named operation: where it may start and which status it produces (None keeps status)."""
    name: str
    allowed_from: Tuple[ShipmentStatus, ...]
    target: Optional[ShipmentStatus] = None


CANCEL = TransitionRule("cancel", PRE_PICKUP_STATUSES, S.CANCELLED)
SWITCH_TO_DROPOFF = TransitionRule("switch_to_dropoff", (S.BOOKED, S.PENDING_PICKUP), S.PENDING_DROPOFF)
CANCEL_DROPOFF = TransitionRule("cancel_dropoff", (S.PENDING_DROPOFF,), S.BOOKED)
RESCHEDULE = TransitionRule("reschedule", (S.BOOKED, S.PENDING_PICKUP))
ASSIGN_PICKUP_DRIVER = TransitionRule("assign_pickup_driver", NON_TERMINAL_STATUSES)
ASSIGN_DELIVERY_DRIVER = TransitionRule("assign_delivery_driver", NON_TERMINAL_STATUSES, S.OUT_FOR_DELIVERY)


def forward_rule(target: ShipmentStatus, override: bool = False) -> TransitionRule:
    """
    Build the rule for a forward status update.

    Drivers must follow the pipeline one step at a time; an admin override may
    jump to any forward status from any non-terminal one. Both may repeat the
    current status.
    """
    if target not in FORWARD_SOURCES:
        raise UnsupportedStatusTargetError(target.value, DEDICATED_OPERATIONS.get(target, "dedicated"))

    sources = NON_TERMINAL_STATUSES if override else FORWARD_SOURCES[target]
    if target not in sources:
        sources = sources + (target,)
    name = "override_status" if override else "update_status"
    return TransitionRule(name, sources, target)


def ensure_allowed(shipment: Shipment, rule: TransitionRule) -> None:
    """Raise InvalidTransitionError unless the shipment's status is a legal source for rule."""
    if shipment.status not in rule.allowed_from:
        raise InvalidTransitionError(
            transition=rule.name,
            current_status=shipment.status.value,
            allowed_statuses=[s.value for s in rule.allowed_from],
        )


def enter_status(shipment: Shipment, target: ShipmentStatus, now: Optional[datetime] = None) -> bool:
    """
    Set status and stamp its timestamp field if it is still empty.

    Returns True when a timestamp was stamped.
    """
    shipment.status = target
    field = STATUS_TIMESTAMP_FIELDS.get(target)
    if field and getattr(shipment, field) is None:
        setattr(shipment, field, now or utcnow())
        return True
    return False


def apply(shipment: Shipment, rule: TransitionRule, now: Optional[datetime] = None) -> ShipmentStatus:
    """Check rule against the shipment and perform its status change. Returns the previous status."""
    ensure_allowed(shipment, rule)
    previous = shipment.status
    if rule.target is not None:
        enter_status(shipment, rule.target, now)
    return previous


def update_status(shipment: Shipment, target: ShipmentStatus, override: bool = False) -> ShipmentStatus:
    return apply(shipment, forward_rule(target, override=override))


def cancel(shipment: Shipment, reason: Optional[str] = None) -> ShipmentStatus:
    previous = apply(shipment, CANCEL)
    note = f"Shipment cancelled (was {previous.value})"
    if reason:
        note += f". Reason: {reason}"
    shipment.append_admin_note(note)
    return previous


def switch_to_dropoff(shipment: Shipment, note: Optional[str] = None) -> ShipmentStatus:
    previous = apply(shipment, SWITCH_TO_DROPOFF)
    shipment.is_self_dropoff = True
    entry = "Customer switched to self drop-off at warehouse"
    if note:
        entry += f". Note: {note}"
    shipment.append_admin_note(entry)
    return previous


def cancel_dropoff(shipment: Shipment) -> ShipmentStatus:
    previous = apply(shipment, CANCEL_DROPOFF)
    shipment.is_self_dropoff = False
    shipment.append_admin_note("Customer cancelled self drop-off, reverted to driver pickup")
    return previous


def reschedule(
    shipment: Shipment,
    new_date: date,
    reason: str,
    new_time: Optional[str] = None,
) -> Optional[date]:
    """Move the pickup date. Status is unchanged. Returns the old pickup date."""
    ensure_allowed(shipment, RESCHEDULE)
    old_date = shipment.pickup_date
    shipment.pickup_date = new_date
    if new_time:
        shipment.pickup_time = new_time
    old_label = old_date.isoformat() if old_date else "unscheduled"
    shipment.append_admin_note(
        f"Pickup rescheduled from {old_label} to {new_date.isoformat()}. Reason: {reason}"
    )
    return old_date


def set_warehouse_status(shipment: Shipment, warehouse_status: WarehouseStatus) -> WarehouseStatus:
    """
    Warehouse handling is an independent admin-controlled axis: any member of
    WarehouseStatus is accepted regardless of the shipment status.
    """
    previous = shipment.warehouse_status
    shipment.warehouse_status = WarehouseStatus(warehouse_status)
    return previous
