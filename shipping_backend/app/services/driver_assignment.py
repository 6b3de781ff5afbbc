"""
Driver Assignment Gate.

Decides whether a driver may be bound to a shipment and performs the binding.
Pickup legs need a UK/pickup driver, delivery legs a Ghana/delivery driver;
the customer-facing path additionally requires a verified driver. Removing a
driver is always allowed.

Assigning a delivery driver moves the shipment to out_for_delivery through the
state machine, in the same transaction as the assignment.
"""

from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shipping_backend.app.core.exceptions import DriverNotEligibleError
from shipping_backend.app.models.enums import UserRole, DriverType, DriverCountry, VerificationStatus
from shipping_backend.app.models.shipment import Shipment
from shipping_backend.app.models.shipment_enums import AssignmentKind
from shipping_backend.app.models.user import User
from shipping_backend.app.services import shipment_state_machine as state_machine

# Each assignment kind accepts drivers classified by type or, for older accounts, by country
KIND_CLASSIFICATION = {
    AssignmentKind.PICKUP: (DriverType.PICKUP, DriverCountry.UK),
    AssignmentKind.DELIVERY: (DriverType.DELIVERY, DriverCountry.GHANA),
}

DRIVER_FIELDS = {
    AssignmentKind.PICKUP: "pickup_driver_id",
    AssignmentKind.DELIVERY: "delivery_driver_id",
}


def ineligibility_reason(driver: User, kind: AssignmentKind, require_verified: bool) -> Optional[str]:
    """Return why driver cannot take an assignment of this kind, or None if eligible."""
    if driver.role != UserRole.DRIVER:
        return "user is not a driver"
    if not driver.is_active:
        return "driver is not active"

    driver_type, country = KIND_CLASSIFICATION[kind]
    if driver.driver_type is not None:
        if driver.driver_type != driver_type:
            return f"driver is not a {driver_type.value} driver"
    elif driver.country != country:
        return f"driver is not based in {country.value}"

    if require_verified and driver.verification_status != VerificationStatus.VERIFIED:
        return "driver is not verified"
    return None


async def get_eligible_driver(
    db: AsyncSession,
    driver_id: int,
    kind: AssignmentKind,
    require_verified: bool
) -> User:
    """
    Load a driver and check eligibility.

    Raises:
        DriverNotEligibleError: driver missing or not eligible
    """
    result = await db.execute(select(User).where(User.id == driver_id))
    driver = result.scalar_one_or_none()
    if driver is None:
        raise DriverNotEligibleError(driver_id, "driver does not exist")

    reason = ineligibility_reason(driver, kind, require_verified)
    if reason:
        raise DriverNotEligibleError(driver_id, reason)
    return driver


async def assign_driver(
    db: AsyncSession,
    shipment: Shipment,
    driver_id: Optional[int],
    kind: AssignmentKind,
    require_verified: bool
) -> Tuple[Optional[User], Optional[int]]:
    """
    Bind (or with driver_id=None, clear) the driver for one leg of a shipment.

    Mutates the shipment; the caller commits.

    Returns:
        (driver or None when unassigning, previous driver id)

    Raises:
        DriverNotEligibleError: driver missing or not eligible
        InvalidTransitionError: shipment is delivered or cancelled
    """
    field = DRIVER_FIELDS[kind]
    previous_driver_id = getattr(shipment, field)

    if driver_id is None:
        setattr(shipment, field, None)
        return None, previous_driver_id

    driver = await get_eligible_driver(db, driver_id, kind, require_verified)

    if kind == AssignmentKind.DELIVERY:
        state_machine.apply(shipment, state_machine.ASSIGN_DELIVERY_DRIVER)
    else:
        state_machine.ensure_allowed(shipment, state_machine.ASSIGN_PICKUP_DRIVER)

    setattr(shipment, field, driver.id)
    return driver, previous_driver_id
