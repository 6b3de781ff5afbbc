"""
Shipment API Endpoints.

Booking, public tracking, warehouse scanning and the customer/driver side of
the shipment lifecycle. Every mutation commits, then invalidates the tracking
cache entry, then publishes a notification event.
"""

from typing import Optional
from fastapi import APIRouter, Depends, status, Query, Path
from sqlalchemy.ext.asyncio import AsyncSession

from shipping_backend.app.db.session import get_db
from shipping_backend.app.core.dependencies import (
    get_tracking_cache, get_notification_dispatcher, get_sequence_allocator, get_actor_id
)
from shipping_backend.app.schemas.shipment import (
    ShipmentCreate, BookingResponse, ShipmentEnvelope, ShipmentListResponse,
    ShipmentStatsResponse, StatusUpdate, AssignDriverRequest, CancelRequest, DropoffRequest,
    CancelDropoffRequest, RescheduleRequest, WarehouseStatusUpdate, WarehouseScanResponse
)
from shipping_backend.app.services import shipment_service
from shipping_backend.app.services import shipment_state_machine as state_machine
from shipping_backend.app.services.audit import log_event, AuditAction
from shipping_backend.app.services.notification_service import NotificationDispatcher, ShipmentEvent, EventKind
from shipping_backend.app.services.sequence_allocator import SequenceAllocator

router = APIRouter(prefix="/shipments", tags=["Shipments"])


@router.post("", response_model=BookingResponse, status_code=status.HTTP_200_OK)
async def book_shipment(
    shipment_data: ShipmentCreate,
    db: AsyncSession = Depends(get_db),
    allocator: SequenceAllocator = Depends(get_sequence_allocator),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """
    Book a new shipment.

    Assigns the tracking number and sequential parcel ids, prices the parcel,
    and stores its scan payload and QR image. Missing required fields are
    rejected with 400 before anything is allocated.
    """
    shipment = await shipment_service.book_shipment(db, shipment_data, allocator)
    dispatcher.publish(ShipmentEvent.from_shipment(
        EventKind.STATUS_CHANGED, shipment, status=shipment.status.value
    ))
    return BookingResponse(
        shipment=await shipment_service.build_shipment_response(db, shipment),
        tracking_number=shipment.tracking_number,
        parcel_id=shipment.parcel_id,
        parcel_id_short=shipment.parcel_id_short,
    )


@router.get("/track/{tracking_number}")
async def track_shipment(
    tracking_number: str = Path(..., description="Public tracking number"),
    db: AsyncSession = Depends(get_db),
    cache=Depends(get_tracking_cache),
):
    """Public tracking lookup, served from the tracking cache when warm."""
    return await shipment_service.track_shipment(db, cache, tracking_number)


@router.get("/user/{user_id}", response_model=ShipmentListResponse)
async def list_user_shipments(
    user_id: int = Path(..., description="Customer ID"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
    db: AsyncSession = Depends(get_db),
):
    """List a customer's shipments, newest first."""
    shipments, total = await shipment_service.list_user_shipments(db, user_id, page, page_size)
    return ShipmentListResponse(
        shipments=[await shipment_service.build_shipment_response(db, s) for s in shipments],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/stats/{user_id}", response_model=ShipmentStatsResponse)
async def user_shipment_stats(
    user_id: int = Path(..., description="Customer ID"),
    db: AsyncSession = Depends(get_db),
):
    return await shipment_service.user_shipment_stats(db, user_id)


@router.get("/warehouse/{parcel_id}", response_model=WarehouseScanResponse)
async def scan_parcel(
    parcel_id: str = Path(..., description="Long or short parcel ID"),
    db: AsyncSession = Depends(get_db),
):
    """Warehouse scan: resolve a parcel id to its scan payload and handling status."""
    shipment = await shipment_service.get_by_parcel_id(db, parcel_id)
    return WarehouseScanResponse(
        shipment_id=shipment.id,
        parcel_id=shipment.parcel_id,
        parcel_id_short=shipment.parcel_id_short,
        tracking_number=shipment.tracking_number,
        status=shipment.status,
        warehouse_status=shipment.warehouse_status,
        scan_payload=shipment_service.decode_scan_payload(shipment),
    )


@router.put("/warehouse/{parcel_id}/status", response_model=ShipmentEnvelope)
async def update_warehouse_status(
    update: WarehouseStatusUpdate,
    parcel_id: str = Path(..., description="Long or short parcel ID"),
    db: AsyncSession = Depends(get_db),
    cache=Depends(get_tracking_cache),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """Record a warehouse handling step. Independent of the shipment status."""
    shipment = await shipment_service.get_by_parcel_id(db, parcel_id)
    previous = state_machine.set_warehouse_status(shipment, update.warehouse_status)
    log_event(
        db,
        AuditAction.WAREHOUSE_STATUS_UPDATED,
        shipment=shipment,
        actor_id=actor_id,
        actor_role="admin",
        metadata={"from": previous.value, "to": update.warehouse_status.value},
    )
    response = await shipment_service.finalize_mutation(db, shipment, cache)
    return ShipmentEnvelope(shipment=response)


@router.get("/{shipment_id}", response_model=ShipmentEnvelope)
async def get_shipment(
    shipment_id: int = Path(..., description="Shipment ID"),
    db: AsyncSession = Depends(get_db),
):
    shipment = await shipment_service.get_shipment_or_404(db, shipment_id)
    return ShipmentEnvelope(shipment=await shipment_service.build_shipment_response(db, shipment))


@router.put("/{shipment_id}/status", response_model=ShipmentEnvelope)
async def update_shipment_status(
    update: StatusUpdate,
    shipment_id: int = Path(..., description="Shipment ID"),
    db: AsyncSession = Depends(get_db),
    cache=Depends(get_tracking_cache),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """
    Move a shipment forward along the delivery pipeline.

    Only the next step (or the current status again) is accepted. Cancellation
    and drop-off changes have their own endpoints.
    """
    shipment = await shipment_service.get_shipment_or_404(db, shipment_id)
    response = await shipment_service.change_status(
        db, shipment, update.status, cache, dispatcher, actor_id=actor_id
    )
    return ShipmentEnvelope(shipment=response)


@router.put("/{shipment_id}/assign-driver", response_model=ShipmentEnvelope)
async def assign_driver(
    assignment: AssignDriverRequest,
    shipment_id: int = Path(..., description="Shipment ID"),
    db: AsyncSession = Depends(get_db),
    cache=Depends(get_tracking_cache),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """
    Assign a verified driver to the pickup or delivery leg.

    A delivery assignment also moves the shipment to out_for_delivery.
    """
    shipment = await shipment_service.get_shipment_or_404(db, shipment_id)
    response = await shipment_service.change_driver(
        db, shipment, assignment.driver_id, assignment.type, cache, dispatcher,
        require_verified=True, actor_id=actor_id, actor_role="user",
    )
    return ShipmentEnvelope(shipment=response)


@router.put("/{shipment_id}/cancel", response_model=ShipmentEnvelope)
async def cancel_shipment(
    request: Optional[CancelRequest] = None,
    shipment_id: int = Path(..., description="Shipment ID"),
    db: AsyncSession = Depends(get_db),
    cache=Depends(get_tracking_cache),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """Cancel a shipment that has not been picked up yet."""
    reason = request.reason if request else None
    shipment = await shipment_service.get_shipment_or_404(db, shipment_id)
    previous = state_machine.cancel(shipment, reason)
    log_event(
        db,
        AuditAction.SHIPMENT_CANCELLED,
        shipment=shipment,
        actor_id=actor_id,
        actor_role="user",
        metadata={"from": previous.value, "reason": reason},
    )
    event = ShipmentEvent.from_shipment(EventKind.SHIPMENT_CANCELLED, shipment, reason=reason)
    response = await shipment_service.finalize_mutation(db, shipment, cache, dispatcher, event)
    return ShipmentEnvelope(shipment=response)


@router.put("/{shipment_id}/dropoff", response_model=ShipmentEnvelope)
async def switch_to_dropoff(
    request: Optional[DropoffRequest] = None,
    shipment_id: int = Path(..., description="Shipment ID"),
    db: AsyncSession = Depends(get_db),
    cache=Depends(get_tracking_cache),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """Customer will bring the parcel to the warehouse instead of waiting for a pickup."""
    note = request.note if request else None
    shipment = await shipment_service.get_shipment_or_404(db, shipment_id)
    previous = state_machine.switch_to_dropoff(shipment, note)
    log_event(
        db,
        AuditAction.DROPOFF_SELECTED,
        shipment=shipment,
        actor_id=actor_id,
        actor_role="user",
        metadata={"from": previous.value, "note": note},
    )
    response = await shipment_service.finalize_mutation(db, shipment, cache)
    return ShipmentEnvelope(shipment=response)


@router.put("/{shipment_id}/cancel-dropoff", response_model=ShipmentEnvelope)
async def cancel_dropoff(
    request: Optional[CancelDropoffRequest] = None,
    shipment_id: int = Path(..., description="Shipment ID"),
    db: AsyncSession = Depends(get_db),
    cache=Depends(get_tracking_cache),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """Revert a self drop-off to a driver pickup. Pickup drivers are told a job is available."""
    notify = request.notify if request else True
    shipment = await shipment_service.get_shipment_or_404(db, shipment_id)
    previous = state_machine.cancel_dropoff(shipment)
    log_event(
        db,
        AuditAction.DROPOFF_CANCELLED,
        shipment=shipment,
        actor_id=actor_id,
        actor_role="user",
        metadata={"from": previous.value, "notify": notify},
    )
    event = ShipmentEvent.from_shipment(EventKind.DROPOFF_CANCELLED, shipment) if notify else None
    response = await shipment_service.finalize_mutation(db, shipment, cache, dispatcher, event)
    return ShipmentEnvelope(shipment=response)


@router.put("/{shipment_id}/reschedule", response_model=ShipmentEnvelope)
async def reschedule_pickup(
    request: RescheduleRequest,
    shipment_id: int = Path(..., description="Shipment ID"),
    db: AsyncSession = Depends(get_db),
    cache=Depends(get_tracking_cache),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """Move the pickup to another date. The shipment status does not change."""
    shipment = await shipment_service.get_shipment_or_404(db, shipment_id)
    old_date = state_machine.reschedule(shipment, request.pickup_date, request.reason, request.pickup_time)
    old_label = old_date.isoformat() if old_date else None
    log_event(
        db,
        AuditAction.PICKUP_RESCHEDULED,
        shipment=shipment,
        actor_id=actor_id,
        actor_role="user",
        metadata={"old_date": old_label, "new_date": request.pickup_date.isoformat(), "reason": request.reason},
    )
    event = ShipmentEvent.from_shipment(
        EventKind.PICKUP_RESCHEDULED,
        shipment,
        old_date=old_label or "unscheduled",
        new_date=request.pickup_date.isoformat(),
        reason=request.reason,
    )
    response = await shipment_service.finalize_mutation(db, shipment, cache, dispatcher, event)
    return ShipmentEnvelope(shipment=response)
