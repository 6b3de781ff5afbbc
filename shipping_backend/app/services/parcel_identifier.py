"""
Parcel identifiers and scan payload.

Long form:  MM-UK-2025-00482   (sequence zero-padded to 5 digits)
Short form: MM482
Tracking:   MM + base36(epoch millis) + 4 random digits

Everything here is pure given its inputs; uniqueness of the sequence number
is the allocator's responsibility.
"""

import base64
import io
import json
import logging
import math
import secrets
import string
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import qrcode
from qrcode.constants import ERROR_CORRECT_H
from qrcode.image.pil import PilImage

from shipping_backend.app.core.config import settings
from shipping_backend.app.models.shipment import Shipment
from shipping_backend.app.models.shipment_enums import ParcelSize

logger = logging.getLogger(__name__)

QR_MIN_SIZE_PX = 300
QR_BORDER_MODULES = 2

_BASE36_ALPHABET = string.digits + string.ascii_uppercase


@dataclass(frozen=True)
class ParcelIdentifiers:
    parcel_id: str
    parcel_id_short: str


def format_parcel_ids(
    sequence: int,
    year: int,
    prefix: str = settings.parcel_id_prefix,
    origin: str = settings.parcel_origin_code,
) -> ParcelIdentifiers:
    """Build the long and short parcel ids for a sequence number."""
    if sequence < 1:
        raise ValueError(f"Parcel sequence must be positive, got {sequence}")
    return ParcelIdentifiers(
        parcel_id=f"{prefix}-{origin}-{year}-{sequence:05d}",
        parcel_id_short=f"{prefix}{sequence}",
    )


def parse_short_suffix(parcel_id_short: str, prefix: str = settings.parcel_id_prefix) -> int:
    """
    Extract the sequence number from a short parcel id.

    Raises:
        ValueError: if the id does not carry the prefix followed by digits
    """
    if not parcel_id_short or not parcel_id_short.startswith(prefix):
        raise ValueError(f"Not a short parcel id: {parcel_id_short!r}")
    digits = parcel_id_short[len(prefix):]
    if not digits.isdigit():
        raise ValueError(f"Not a short parcel id: {parcel_id_short!r}")
    return int(digits)


def _to_base36(number: int) -> str:
    if number == 0:
        return "0"
    out = []
    while number:
        number, remainder = divmod(number, 36)
        out.append(_BASE36_ALPHABET[remainder])
    return "".join(reversed(out))


def generate_tracking_number(now_ms: Optional[int] = None, prefix: str = settings.parcel_id_prefix) -> str:
    """Tracking number independent of the parcel sequence."""
    if now_ms is None:
        now_ms = time.time_ns() // 1_000_000
    random_suffix = 1000 + secrets.randbelow(9000)
    return f"{prefix}{_to_base36(now_ms)}{random_suffix}"


def determine_parcel_size(weight_kg: float, dimensions: Optional[str] = None) -> ParcelSize:
    """
    Size class by weight only.

    `dimensions` is accepted for callers that already have it but does not
    influence the result.
    """
    if weight_kg <= 5:
        return ParcelSize.SMALL
    if weight_kg <= 15:
        return ParcelSize.MEDIUM
    if weight_kg <= 30:
        return ParcelSize.LARGE
    return ParcelSize.EXTRA_LARGE


def calculate_total_cost(weight_kg: float) -> float:
    return round(settings.base_shipping_cost + weight_kg * settings.cost_per_kg, 2)


def build_scan_payload(shipment: Shipment) -> Dict[str, Any]:
    """Flat summary of the shipment encoded into its QR label."""
    parcel_size = shipment.parcel_size.value if shipment.parcel_size else None
    status = shipment.status.value if shipment.status else None
    return {
        "parcel_id": shipment.parcel_id,
        "parcel_id_short": shipment.parcel_id_short,
        "customer_id": shipment.user_id,
        "customer_name": shipment.sender_name,
        "customer_phone": shipment.sender_phone,
        "receiver_name": shipment.receiver_name,
        "receiver_phone": shipment.receiver_phone,
        "parcel_type": shipment.parcel_description or "General",
        "parcel_size": parcel_size,
        "weight_kg": shipment.weight_kg,
        "pickup_location": f"{shipment.pickup_city}, {shipment.pickup_postcode}",
        "destination": shipment.ghana_destination or shipment.delivery_city,
        "tracking_number": shipment.tracking_number,
        "booked_at": shipment.booked_at.isoformat() if shipment.booked_at else None,
        "status": status,
    }


def serialize_scan_payload(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"))


def render_qr_data_url(data: str, min_size_px: int = QR_MIN_SIZE_PX) -> str:
    """
    Render data as a black-on-white PNG QR code and return it as a data URL.

    Uses error correction level H and scales the module size so the image is
    at least min_size_px on each side.
    """
    qr = qrcode.QRCode(
        error_correction=ERROR_CORRECT_H,
        border=QR_BORDER_MODULES,
        image_factory=PilImage,
    )
    qr.add_data(data)
    qr.make(fit=True)
    qr.box_size = math.ceil(min_size_px / (qr.modules_count + 2 * QR_BORDER_MODULES))

    image = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


def try_render_qr_data_url(data: str) -> Optional[str]:
    """Render a QR image; failures are logged and yield None."""
    try:
        return render_qr_data_url(data)
    except Exception:
        logger.exception("QR code rendering failed")
        return None
