"""
User and driver enumerations.

Drivers and admins are reference data owned by the account service;
this service only reads them to gate assignments and address notifications.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        ADMIN: Operations staff, receives lifecycle alerts
        DRIVER: Pickup (UK) or delivery (Ghana) courier
        USER: Customer booking shipments (default role)
    """
    ADMIN = "admin"
    DRIVER = "driver"
    USER = "user"


class DriverType(str, enum.Enum):
    PICKUP = "pickup"  # UK
    DELIVERY = "delivery"  # Ghana


class DriverCountry(str, enum.Enum):
    UK = "UK"
    GHANA = "Ghana"


class VerificationStatus(str, enum.Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"
