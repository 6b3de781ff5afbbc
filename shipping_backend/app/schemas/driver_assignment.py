"""
Driver assignment listing schemas.
"""

from pydantic import BaseModel
from datetime import date
from typing import List, Optional
from shipping_backend.app.models.shipment_enums import ShipmentStatus, WarehouseStatus


class DriverAssignmentItem(BaseModel):
    """A shipment as seen from a driver's job list."""
    id: int
    parcel_id_short: str
    tracking_number: str
    sender_name: str
    sender_phone: str
    pickup_address: str
    pickup_city: str
    pickup_postcode: str
    pickup_date: Optional[date]
    pickup_time: Optional[str]
    receiver_name: str
    receiver_phone: str
    delivery_address: str
    delivery_city: str
    parcel_description: Optional[str]
    special_instructions: Optional[str]
    status: ShipmentStatus
    warehouse_status: WarehouseStatus
    qr_code_url: Optional[str]
    weight_kg: float
    dimensions: Optional[str]

    class Config:
        from_attributes = True


class DriverAssignmentListResponse(BaseModel):
    driver_id: int
    type: str
    shipments: List[DriverAssignmentItem]
    total: int
    page: int
    page_size: int
