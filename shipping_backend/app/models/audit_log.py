"""
Audit Log Database Model.

Records every shipment lifecycle event for operations and dispute handling.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from shipping_backend.app.db.session import Base


class AuditLog(Base):
    """
    Audit log model for shipment lifecycle events.

    Events logged:
    - SHIPMENT_CREATED / SHIPMENT_CANCELLED
    - SHIPMENT_STATUS_UPDATED / WAREHOUSE_STATUS_UPDATED
    - DROPOFF_SELECTED / DROPOFF_CANCELLED / PICKUP_RESCHEDULED
    - DRIVER_ASSIGNED / DRIVER_UNASSIGNED
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action (None for system or anonymous actions)
    actor_id = Column(Integer, index=True, nullable=True)
    actor_role = Column(String(50), nullable=True)

    # What action was performed
    action = Column(String(100), nullable=False, index=True)

    # Which shipment the action was applied to
    shipment_id = Column(Integer, index=True, nullable=True)
    tracking_number = Column(String(40), index=True, nullable=True)

    # Additional context (JSON for flexibility)
    meta_data = Column(JSON, nullable=True)

    # Timestamp
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', shipment={self.shipment_id})>"
