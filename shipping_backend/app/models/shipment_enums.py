"""
Shipment-related enumerations.
"""

import enum


class ShipmentStatus(str, enum.Enum):
    """
    Shipment status enumeration.

    Status flow:
        BOOKED → PICKED_UP → IN_TRANSIT → CUSTOMS → OUT_FOR_DELIVERY → DELIVERED
        BOOKED / PENDING_PICKUP ⇄ PENDING_DROPOFF (explicit drop-off toggles only)
        BOOKED / PENDING_PICKUP / PENDING_DROPOFF / PENDING → CANCELLED
    """
    BOOKED = "booked"
    PENDING = "pending"  # Legacy default on records created before "booked"
    PENDING_PICKUP = "pending_pickup"
    PENDING_DROPOFF = "pending_dropoff"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    CUSTOMS = "customs"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class WarehouseStatus(str, enum.Enum):
    """Physical handling stage inside the warehouse, independent of ShipmentStatus."""
    NOT_ARRIVED = "not_arrived"
    RECEIVED = "received"
    SORTED = "sorted"
    PACKED = "packed"
    SHIPPED = "shipped"


class ParcelSize(str, enum.Enum):
    """Weight-based size class."""
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    EXTRA_LARGE = "extra_large"


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    CASH = "cash"


class AssignmentKind(str, enum.Enum):
    """Which driver slot of a shipment an assignment targets."""
    PICKUP = "pickup"  # UK collection leg
    DELIVERY = "delivery"  # Ghana last-mile leg


def enum_values(enum_cls):
    """Persist enum values (not member names) in SQLAlchemy Enum columns."""
    return [member.value for member in enum_cls]
