"""
User database model.

Holds the subset of account data this service reads: role, driver
classification, verification state and the push notification token.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Enum
from sqlalchemy.sql import func
from shipping_backend.app.db.session import Base
from shipping_backend.app.models.enums import UserRole, DriverType, DriverCountry, VerificationStatus
from shipping_backend.app.models.shipment_enums import enum_values


class User(Base):
    """
    User model for customers, drivers and admins.

    A driver is classified twice (driver_type and country) because older
    accounts only carry one of the two; eligibility accepts either.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    full_name = Column(String(200), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    phone = Column(String(30), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    role = Column(Enum(UserRole, values_callable=enum_values), default=UserRole.USER, nullable=False, index=True)

    # Driver classification
    driver_type = Column(Enum(DriverType, values_callable=enum_values), nullable=True)
    country = Column(Enum(DriverCountry, values_callable=enum_values), nullable=True)
    verification_status = Column(
        Enum(VerificationStatus, values_callable=enum_values),
        default=VerificationStatus.PENDING,
        nullable=False
    )

    # Expo push token
    push_token = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', role='{self.role.value}')>"
