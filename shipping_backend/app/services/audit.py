"""
Audit logging service for shipment lifecycle events.

Entries are added to the caller's session so they commit atomically with the
change they describe.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from shipping_backend.app.models.audit_log import AuditLog
from shipping_backend.app.models.shipment import Shipment


# Audit event constants
class AuditAction:
    """Standardized audit action constants."""
    SHIPMENT_CREATED = "SHIPMENT_CREATED"
    SHIPMENT_STATUS_UPDATED = "SHIPMENT_STATUS_UPDATED"
    SHIPMENT_CANCELLED = "SHIPMENT_CANCELLED"
    DROPOFF_SELECTED = "DROPOFF_SELECTED"
    DROPOFF_CANCELLED = "DROPOFF_CANCELLED"
    PICKUP_RESCHEDULED = "PICKUP_RESCHEDULED"
    DRIVER_ASSIGNED = "DRIVER_ASSIGNED"
    DRIVER_UNASSIGNED = "DRIVER_UNASSIGNED"
    WAREHOUSE_STATUS_UPDATED = "WAREHOUSE_STATUS_UPDATED"


def log_event(
    db: AsyncSession,
    action: str,
    shipment: Optional[Shipment] = None,
    actor_id: Optional[int] = None,
    actor_role: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> AuditLog:
    """
    Add a shipment event to the audit log.

    The entry is pending until the caller commits.

    Args:
        db: Database session
        action: Action being performed (use AuditAction constants)
        shipment: Shipment the action applies to
        actor_id: ID of user performing the action
        actor_role: Role the actor acted in (admin, driver, user)
        metadata: Additional context as JSON

    Returns:
        Pending AuditLog instance
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        actor_role=actor_role,
        action=action,
        shipment_id=shipment.id if shipment is not None else None,
        tracking_number=shipment.tracking_number if shipment is not None else None,
        meta_data=metadata,
    )
    db.add(audit_log)
    return audit_log


async def get_shipment_audit_trail(
    db: AsyncSession,
    shipment_id: int,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve the audit trail of a shipment, most recent first.

    Args:
        db: Database session
        shipment_id: Shipment to get history for
        action: Filter by action type
        limit: Maximum number of records to return
    """
    query = select(AuditLog).where(AuditLog.shipment_id == shipment_id)

    if action:
        query = query.where(AuditLog.action == action)

    query = query.order_by(desc(AuditLog.timestamp), desc(AuditLog.id)).limit(limit)

    result = await db.execute(query)
    return list(result.scalars().all())
