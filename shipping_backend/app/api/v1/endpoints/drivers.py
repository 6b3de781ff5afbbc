"""
Driver API Endpoints.

A driver's job list for one leg (pickup in the UK or delivery in Ghana).
"""

from fastapi import APIRouter, Depends, Query, Path
from sqlalchemy.ext.asyncio import AsyncSession

from shipping_backend.app.db.session import get_db
from shipping_backend.app.models.shipment_enums import AssignmentKind
from shipping_backend.app.schemas.driver_assignment import DriverAssignmentItem, DriverAssignmentListResponse
from shipping_backend.app.services import shipment_service

router = APIRouter(prefix="/drivers", tags=["Drivers"])


@router.get("/{driver_id}/assignments", response_model=DriverAssignmentListResponse)
async def list_driver_assignments(
    driver_id: int = Path(..., description="Driver ID"),
    type: AssignmentKind = Query(AssignmentKind.PICKUP, description="pickup or delivery"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
    db: AsyncSession = Depends(get_db),
):
    """Shipments assigned to a driver for the given leg, newest first."""
    shipments, total = await shipment_service.list_driver_assignments(db, driver_id, type, page, page_size)
    return DriverAssignmentListResponse(
        driver_id=driver_id,
        type=type.value,
        shipments=[DriverAssignmentItem.model_validate(s) for s in shipments],
        total=total,
        page=page,
        page_size=page_size,
    )
