"""
Shipment Pydantic schemas.

Defines request and response models for booking, tracking and lifecycle
operations.
"""

from pydantic import BaseModel, Field, field_validator
from datetime import datetime, date
from typing import Optional, List, Any, Dict
from shipping_backend.app.models.shipment_enums import (
    ShipmentStatus, WarehouseStatus, ParcelSize, PaymentMethod, AssignmentKind
)
from shipping_backend.app.models.enums import VerificationStatus


class ShipmentItemCreate(BaseModel):
    """A declared item in a booking."""
    name: str = Field(..., min_length=1, max_length=200)
    quantity: int = Field(default=1, ge=1)
    value: Optional[float] = Field(None, ge=0, description="Declared value in GBP")


class ShipmentCreate(BaseModel):
    """Schema for booking a new shipment."""
    user_id: Optional[int] = Field(None, description="Customer account ID (omit for guest bookings)")

    # Sender (UK)
    sender_name: str = Field(..., min_length=1, max_length=100)
    sender_phone: str = Field(..., min_length=1, max_length=30)
    sender_email: str = Field(..., min_length=3, max_length=255)

    # Pickup address (UK)
    pickup_address: str = Field(..., min_length=1, max_length=300)
    pickup_city: str = Field(..., min_length=1, max_length=100)
    pickup_postcode: str = Field(..., min_length=1, max_length=20)
    pickup_date: Optional[date] = None
    pickup_time: Optional[str] = Field(None, max_length=50)

    # Receiver (Ghana)
    receiver_name: str = Field(..., min_length=1, max_length=100)
    receiver_phone: str = Field(..., min_length=1, max_length=30)
    receiver_alternate_phone: Optional[str] = Field(None, max_length=30)

    # Delivery address (Ghana)
    delivery_address: str = Field(..., min_length=1, max_length=300)
    delivery_city: str = Field(..., min_length=1, max_length=100)
    delivery_region: str = Field(..., min_length=1, max_length=100)
    ghana_destination: Optional[str] = Field(None, max_length=200)

    # Parcel
    weight_kg: float = Field(..., gt=0, le=100, description="Weight in kilograms")
    dimensions: Optional[str] = Field(None, max_length=50, description="LxWxH in cm")
    parcel_description: Optional[str] = Field(None, max_length=500)
    parcel_value: Optional[float] = Field(None, ge=0)
    special_instructions: Optional[str] = Field(None, max_length=500)
    payment_method: PaymentMethod = PaymentMethod.CARD

    items: List[ShipmentItemCreate] = Field(default_factory=list)

    @field_validator("sender_email")
    @classmethod
    def email_has_at(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("sender_email must be an email address")
        return value


class ShipmentItemResponse(BaseModel):
    id: int
    name: str
    quantity: int
    value: Optional[float]

    class Config:
        from_attributes = True


class DriverSummary(BaseModel):
    """Public view of an assigned driver (no credentials or tokens)."""
    id: int
    full_name: str
    phone: Optional[str]
    verification_status: VerificationStatus

    class Config:
        from_attributes = True


class ShipmentResponse(BaseModel):
    """Schema for shipment response."""
    id: int
    user_id: Optional[int]
    tracking_number: str
    parcel_id: str
    parcel_id_short: str

    status: ShipmentStatus
    warehouse_status: WarehouseStatus
    is_self_dropoff: bool

    sender_name: str
    sender_phone: str
    sender_email: str
    pickup_address: str
    pickup_city: str
    pickup_postcode: str
    pickup_date: Optional[date]
    pickup_time: Optional[str]

    receiver_name: str
    receiver_phone: str
    receiver_alternate_phone: Optional[str]
    delivery_address: str
    delivery_city: str
    delivery_region: str
    ghana_destination: Optional[str]

    weight_kg: float
    dimensions: Optional[str]
    parcel_description: Optional[str]
    parcel_value: Optional[float]
    parcel_size: ParcelSize
    special_instructions: Optional[str]
    payment_method: PaymentMethod
    total_cost: float

    pickup_driver_id: Optional[int]
    delivery_driver_id: Optional[int]
    pickup_driver: Optional[DriverSummary] = None
    delivery_driver: Optional[DriverSummary] = None

    admin_notes: Optional[str]
    qr_code_data: Optional[str]
    qr_code_url: Optional[str]

    booked_at: Optional[datetime]
    picked_up_at: Optional[datetime]
    in_transit_at: Optional[datetime]
    customs_at: Optional[datetime]
    out_for_delivery_at: Optional[datetime]
    delivered_at: Optional[datetime]
    cancelled_at: Optional[datetime]

    items: List[ShipmentItemResponse] = []
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class BookingResponse(BaseModel):
    message: str = "Shipment booked successfully"
    shipment: ShipmentResponse
    tracking_number: str
    parcel_id: str
    parcel_id_short: str


class ShipmentEnvelope(BaseModel):
    shipment: ShipmentResponse


class ShipmentListResponse(BaseModel):
    """Schema for paginated shipment list."""
    shipments: List[ShipmentResponse]
    total: int
    page: int
    page_size: int


class ShipmentStatsResponse(BaseModel):
    total_parcels: int
    delivered: int
    in_transit: int


# Lifecycle requests

class StatusUpdate(BaseModel):
    status: ShipmentStatus


class AssignDriverRequest(BaseModel):
    """driver_id null or absent removes the driver from that leg."""
    driver_id: Optional[int] = None
    type: AssignmentKind


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class DropoffRequest(BaseModel):
    note: Optional[str] = Field(None, max_length=500)


class CancelDropoffRequest(BaseModel):
    notify: bool = True


class RescheduleRequest(BaseModel):
    pickup_date: date
    pickup_time: Optional[str] = Field(None, max_length=50)
    reason: str = Field(..., min_length=1, max_length=500)


# Warehouse

class WarehouseStatusUpdate(BaseModel):
    warehouse_status: WarehouseStatus


class WarehouseScanResponse(BaseModel):
    shipment_id: int
    parcel_id: str
    parcel_id_short: str
    tracking_number: str
    status: ShipmentStatus
    warehouse_status: WarehouseStatus
    scan_payload: Dict[str, Any]


class CacheStatsResponse(BaseModel):
    hits: int
    misses: int
    hit_rate: str
    size: int
