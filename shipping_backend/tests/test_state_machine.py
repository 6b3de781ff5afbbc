"""
Shipment state machine tests.

Every operation succeeds iff the current status is in its allow-list, and a
rejected operation leaves the shipment untouched.
"""

from datetime import date, datetime, timezone

import pytest

from shipping_backend.app.core.exceptions import InvalidTransitionError, UnsupportedStatusTargetError
from shipping_backend.app.models.shipment import Shipment
from shipping_backend.app.models.shipment_enums import ShipmentStatus, WarehouseStatus
from shipping_backend.app.services import shipment_state_machine as sm

S = ShipmentStatus
ALL_STATUSES = list(S)


def _shipment(status: ShipmentStatus = S.BOOKED, **fields) -> Shipment:
    return Shipment(status=status, is_self_dropoff=False, warehouse_status=WarehouseStatus.NOT_ARRIVED, **fields)


@pytest.mark.parametrize("status", ALL_STATUSES)
def test_cancel_allowed_only_before_pickup(status):
    shipment = _shipment(status)
    if status in (S.BOOKED, S.PENDING_PICKUP, S.PENDING_DROPOFF, S.PENDING):
        sm.cancel(shipment, "changed my mind")
        assert shipment.status == S.CANCELLED
        assert shipment.cancelled_at is not None
        assert "Reason: changed my mind" in shipment.admin_notes
    else:
        with pytest.raises(InvalidTransitionError) as exc_info:
            sm.cancel(shipment)
        assert shipment.status == status
        assert shipment.cancelled_at is None
        assert exc_info.value.details["allowed_statuses"] == [
            "booked", "pending_pickup", "pending_dropoff", "pending"
        ]
        assert exc_info.value.details["current_status"] == status.value


@pytest.mark.parametrize("target,sources", [
    (S.PICKED_UP, {S.BOOKED, S.PENDING_PICKUP, S.PENDING_DROPOFF, S.PENDING, S.PICKED_UP}),
    (S.IN_TRANSIT, {S.PICKED_UP, S.IN_TRANSIT}),
    (S.CUSTOMS, {S.IN_TRANSIT, S.CUSTOMS}),
    (S.OUT_FOR_DELIVERY, {S.IN_TRANSIT, S.CUSTOMS, S.OUT_FOR_DELIVERY}),
    (S.DELIVERED, {S.OUT_FOR_DELIVERY, S.DELIVERED}),
])
def test_forward_updates_follow_transition_table(target, sources):
    for status in ALL_STATUSES:
        shipment = _shipment(status)
        if status in sources:
            sm.update_status(shipment, target)
            assert shipment.status == target
        else:
            with pytest.raises(InvalidTransitionError):
                sm.update_status(shipment, target)
            assert shipment.status == status


@pytest.mark.parametrize("target", [S.CANCELLED, S.PENDING_DROPOFF, S.BOOKED, S.PENDING_PICKUP, S.PENDING])
def test_dedicated_statuses_rejected_by_status_update(target):
    shipment = _shipment(S.BOOKED)
    with pytest.raises(UnsupportedStatusTargetError):
        sm.update_status(shipment, target)
    with pytest.raises(UnsupportedStatusTargetError):
        sm.update_status(shipment, target, override=True)
    assert shipment.status == S.BOOKED


def test_override_jumps_forward_from_non_terminal():
    shipment = _shipment(S.BOOKED)
    sm.update_status(shipment, S.CUSTOMS, override=True)
    assert shipment.status == S.CUSTOMS
    assert shipment.customs_at is not None
    assert shipment.picked_up_at is None


@pytest.mark.parametrize("status", [S.DELIVERED, S.CANCELLED])
def test_override_cannot_leave_terminal_status(status):
    shipment = _shipment(status)
    with pytest.raises(InvalidTransitionError):
        sm.update_status(shipment, S.IN_TRANSIT, override=True)
    assert shipment.status == status


def test_repeated_update_keeps_first_timestamp():
    shipment = _shipment(S.BOOKED)
    first = datetime(2025, 1, 1, tzinfo=timezone.utc)
    sm.apply(shipment, sm.forward_rule(S.PICKED_UP), now=first)
    sm.apply(shipment, sm.forward_rule(S.PICKED_UP), now=datetime(2025, 2, 1, tzinfo=timezone.utc))
    assert shipment.status == S.PICKED_UP
    assert shipment.picked_up_at == first


def test_dropoff_round_trip_restores_booked():
    shipment = _shipment(S.BOOKED)
    sm.switch_to_dropoff(shipment, "Near the warehouse")
    assert shipment.status == S.PENDING_DROPOFF
    assert shipment.is_self_dropoff is True

    sm.cancel_dropoff(shipment)
    assert shipment.status == S.BOOKED
    assert shipment.is_self_dropoff is False
    assert "switched to self drop-off" in shipment.admin_notes
    assert "cancelled self drop-off" in shipment.admin_notes
    assert len(shipment.admin_notes.splitlines()) == 2


@pytest.mark.parametrize("status", ALL_STATUSES)
def test_switch_to_dropoff_allow_list(status):
    shipment = _shipment(status)
    if status in (S.BOOKED, S.PENDING_PICKUP):
        sm.switch_to_dropoff(shipment)
        assert shipment.status == S.PENDING_DROPOFF
    else:
        with pytest.raises(InvalidTransitionError):
            sm.switch_to_dropoff(shipment)
        assert shipment.status == status
        assert shipment.is_self_dropoff is False


@pytest.mark.parametrize("status", [s for s in ALL_STATUSES if s != S.PENDING_DROPOFF])
def test_cancel_dropoff_requires_pending_dropoff(status):
    shipment = _shipment(status)
    with pytest.raises(InvalidTransitionError) as exc_info:
        sm.cancel_dropoff(shipment)
    assert exc_info.value.details["allowed_statuses"] == ["pending_dropoff"]


def test_reschedule_keeps_status_and_notes_reason():
    shipment = _shipment(S.PENDING_PICKUP, pickup_date=date(2030, 3, 1))
    old = sm.reschedule(shipment, date(2030, 3, 5), "Away that week", "13:00-17:00")
    assert old == date(2030, 3, 1)
    assert shipment.status == S.PENDING_PICKUP
    assert shipment.pickup_date == date(2030, 3, 5)
    assert shipment.pickup_time == "13:00-17:00"
    assert "Pickup rescheduled from 2030-03-01 to 2030-03-05. Reason: Away that week" in shipment.admin_notes


@pytest.mark.parametrize("status", [S.PENDING_DROPOFF, S.PICKED_UP, S.DELIVERED, S.CANCELLED])
def test_reschedule_rejected_outside_pickup_window(status):
    shipment = _shipment(status, pickup_date=date(2030, 3, 1))
    with pytest.raises(InvalidTransitionError):
        sm.reschedule(shipment, date(2030, 3, 5), "late")
    assert shipment.pickup_date == date(2030, 3, 1)


def test_admin_notes_are_appended_never_replaced():
    shipment = _shipment(S.BOOKED, admin_notes="[2025-01-01 09:00 UTC] Fragile")
    sm.cancel(shipment)
    assert shipment.admin_notes.startswith("[2025-01-01 09:00 UTC] Fragile\n")


@pytest.mark.parametrize("status", [S.DELIVERED, S.CANCELLED, S.IN_TRANSIT])
def test_warehouse_status_independent_of_shipment_status(status):
    shipment = _shipment(status)
    previous = sm.set_warehouse_status(shipment, WarehouseStatus.SORTED)
    assert previous == WarehouseStatus.NOT_ARRIVED
    assert shipment.warehouse_status == WarehouseStatus.SORTED
    assert shipment.status == status


def test_assign_delivery_driver_rule_moves_to_out_for_delivery():
    shipment = _shipment(S.CUSTOMS)
    sm.apply(shipment, sm.ASSIGN_DELIVERY_DRIVER)
    assert shipment.status == S.OUT_FOR_DELIVERY
    assert shipment.out_for_delivery_at is not None
