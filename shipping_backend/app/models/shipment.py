"""
Shipment database models.

A shipment is one parcel booked in the UK for delivery in Ghana. Identifiers
are assigned at booking and never change; status moves only through the
state machine in services/shipment_state_machine.py.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Enum, Boolean, Text, Date
from sqlalchemy.orm import relationship
from shipping_backend.app.db.session import Base
from shipping_backend.app.models.shipment_enums import (
    ShipmentStatus, WarehouseStatus, ParcelSize, PaymentMethod, enum_values
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Shipment(Base):
    """
    Shipment model.

    `version` is the optimistic concurrency token: every UPDATE is conditioned
    on the version that was read, so two concurrent transitions on the same
    record cannot both succeed.
    """
    __tablename__ = "shipments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    version = Column(Integer, nullable=False)

    # Customer (account service id, optional for guest bookings)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    # Identification
    tracking_number = Column(String(40), unique=True, nullable=False, index=True)
    parcel_id = Column(String(40), unique=True, nullable=False, index=True)
    parcel_id_short = Column(String(20), unique=True, nullable=False, index=True)

    # Sender (UK)
    sender_name = Column(String(100), nullable=False)
    sender_phone = Column(String(30), nullable=False)
    sender_email = Column(String(255), nullable=False)

    # Pickup address (UK)
    pickup_address = Column(String(300), nullable=False)
    pickup_city = Column(String(100), nullable=False)
    pickup_postcode = Column(String(20), nullable=False)
    pickup_date = Column(Date, nullable=True)
    pickup_time = Column(String(50), nullable=True)

    # Receiver (Ghana)
    receiver_name = Column(String(100), nullable=False)
    receiver_phone = Column(String(30), nullable=False)
    receiver_alternate_phone = Column(String(30), nullable=True)

    # Delivery address (Ghana)
    delivery_address = Column(String(300), nullable=False)
    delivery_city = Column(String(100), nullable=False)
    delivery_region = Column(String(100), nullable=False)
    ghana_destination = Column(String(200), nullable=True)

    # Parcel
    weight_kg = Column(Float, nullable=False)
    dimensions = Column(String(50), nullable=True)  # LxWxH in cm
    parcel_description = Column(String(500), nullable=True)
    parcel_value = Column(Float, nullable=True)
    parcel_size = Column(Enum(ParcelSize, values_callable=enum_values), nullable=False)
    special_instructions = Column(String(500), nullable=True)

    # Pricing
    payment_method = Column(
        Enum(PaymentMethod, values_callable=enum_values), default=PaymentMethod.CARD, nullable=False
    )
    total_cost = Column(Float, nullable=False, default=0.0)

    # Lifecycle
    status = Column(
        Enum(ShipmentStatus, values_callable=enum_values),
        default=ShipmentStatus.BOOKED,
        nullable=False,
        index=True
    )
    warehouse_status = Column(
        Enum(WarehouseStatus, values_callable=enum_values),
        default=WarehouseStatus.NOT_ARRIVED,
        nullable=False,
        index=True
    )
    is_self_dropoff = Column(Boolean, default=False, nullable=False)
    admin_notes = Column(Text, nullable=True)

    # Driver assignments
    pickup_driver_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    delivery_driver_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    # Status timestamps (each stamped once, on first entry)
    booked_at = Column(DateTime(timezone=True), nullable=True)
    picked_up_at = Column(DateTime(timezone=True), nullable=True)
    in_transit_at = Column(DateTime(timezone=True), nullable=True)
    customs_at = Column(DateTime(timezone=True), nullable=True)
    out_for_delivery_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    # Scan payload (denormalized JSON) and rendered QR image
    qr_code_data = Column(Text, nullable=True)
    qr_code_url = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship(
        "ShipmentItem",
        back_populates="shipment",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ShipmentItem.id",
    )

    __mapper_args__ = {"version_id_col": version}

    def append_admin_note(self, note: str) -> None:
        """Append to the audit trail; earlier notes are never replaced."""
        stamp = utcnow().strftime("%Y-%m-%d %H:%M UTC")
        entry = f"[{stamp}] {note}"
        self.admin_notes = f"{self.admin_notes}\n{entry}" if self.admin_notes else entry

    def __repr__(self):
        return f"<Shipment(id={self.id}, tracking='{self.tracking_number}', status='{self.status.value}')>"


class ShipmentItem(Base):
    """A declared item inside a shipment."""
    __tablename__ = "shipment_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    value = Column(Float, nullable=True)

    shipment = relationship("Shipment", back_populates="items")

    def __repr__(self):
        return f"<ShipmentItem(id={self.id}, shipment_id={self.shipment_id}, name='{self.name}')>"
