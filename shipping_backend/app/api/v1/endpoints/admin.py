"""
Admin API Endpoints.

Status override, unverified driver assignment and tracking cache inspection.
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query, Path
from sqlalchemy.ext.asyncio import AsyncSession

from shipping_backend.app.db.session import get_db
from shipping_backend.app.core.dependencies import get_tracking_cache, get_notification_dispatcher, get_actor_id
from shipping_backend.app.schemas.admin import AuditLogResponse, AuditTrailResponse
from shipping_backend.app.schemas.shipment import (
    ShipmentEnvelope, StatusUpdate, AssignDriverRequest, CacheStatsResponse
)
from shipping_backend.app.services import shipment_service
from shipping_backend.app.services.audit import get_shipment_audit_trail
from shipping_backend.app.services.notification_service import NotificationDispatcher

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.put("/shipments/{shipment_id}/status", response_model=ShipmentEnvelope)
async def override_shipment_status(
    update: StatusUpdate,
    shipment_id: int = Path(..., description="Shipment ID"),
    db: AsyncSession = Depends(get_db),
    cache=Depends(get_tracking_cache),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """
    Set any forward status on a shipment that is not delivered or cancelled.

    Cancellation and drop-off changes still go through their own endpoints.
    """
    shipment = await shipment_service.get_shipment_or_404(db, shipment_id)
    response = await shipment_service.change_status(
        db, shipment, update.status, cache, dispatcher, actor_id=actor_id, override=True
    )
    return ShipmentEnvelope(shipment=response)


@router.put("/shipments/{shipment_id}/assign-driver", response_model=ShipmentEnvelope)
async def admin_assign_driver(
    assignment: AssignDriverRequest,
    shipment_id: int = Path(..., description="Shipment ID"),
    db: AsyncSession = Depends(get_db),
    cache=Depends(get_tracking_cache),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """Assign a driver without requiring verification (admins vet drivers themselves)."""
    shipment = await shipment_service.get_shipment_or_404(db, shipment_id)
    response = await shipment_service.change_driver(
        db, shipment, assignment.driver_id, assignment.type, cache, dispatcher,
        require_verified=False, actor_id=actor_id, actor_role="admin",
    )
    return ShipmentEnvelope(shipment=response)


@router.get("/shipments/{shipment_id}/audit", response_model=AuditTrailResponse)
async def shipment_audit_trail(
    shipment_id: int = Path(..., description="Shipment ID"),
    action: Optional[str] = Query(None, description="Filter by action"),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """Lifecycle history of a shipment, most recent first."""
    await shipment_service.get_shipment_or_404(db, shipment_id)
    entries = await get_shipment_audit_trail(db, shipment_id, action=action, limit=limit)
    logs = [AuditLogResponse.model_validate(entry) for entry in entries]
    return AuditTrailResponse(logs=logs, total=len(logs))


@router.get("/cache/stats", response_model=CacheStatsResponse)
async def tracking_cache_stats(cache=Depends(get_tracking_cache)):
    return await cache.stats()
