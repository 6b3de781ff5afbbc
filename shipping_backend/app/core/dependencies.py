"""
Shared FastAPI dependencies.

Process-wide collaborators (tracking cache, notification dispatcher, sequence
allocator) are created here once and handed to endpoints through Depends, so
tests can swap them with app.dependency_overrides.
"""

from typing import Optional
from fastapi import Header

from shipping_backend.app.db.session import AsyncSessionLocal
from shipping_backend.app.services.notification_service import NotificationDispatcher, ExpoPushSender
from shipping_backend.app.services.sequence_allocator import SequenceAllocator
from shipping_backend.app.services.tracking_cache import build_tracking_cache

tracking_cache = build_tracking_cache()
notification_dispatcher = NotificationDispatcher(ExpoPushSender(), AsyncSessionLocal)
sequence_allocator = SequenceAllocator()


def get_tracking_cache():
    return tracking_cache


def get_notification_dispatcher() -> NotificationDispatcher:
    return notification_dispatcher


def get_sequence_allocator() -> SequenceAllocator:
    return sequence_allocator


async def get_actor_id(x_actor_id: Optional[int] = Header(None)) -> Optional[int]:
    """
    ID of the user performing the request, as forwarded by the authenticating gateway.

    Only recorded in the audit log; this service does not authenticate callers.
    """
    return x_actor_id
