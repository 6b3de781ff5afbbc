"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from shipping_backend.app.api.v1.endpoints import shipments, admin, drivers

router = APIRouter()

# Booking, tracking, warehouse and lifecycle endpoints
router.include_router(shipments.router)

# Admin override, assignment and cache endpoints
router.include_router(admin.router)

# Driver job lists
router.include_router(drivers.router)
