"""
Failure Injection Tests.

Push transport, recipient lookup and cache failures must never fail the
request that triggered them.
"""

import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from shipping_backend.app.core.reliability import CircuitBreaker, CircuitOpenError
from shipping_backend.app.models.dlq import DeadLetterQueue, DLQStatus
from shipping_backend.app.services.notification_service import (
    EventKind, ExpoPushSender, NotificationDispatcher, PushMessage, ShipmentEvent
)


async def _boom():
    raise ValueError("Boom")


async def _dead_letters(dispatcher):
    async with dispatcher.session_factory() as db:
        return (await db.execute(select(DeadLetterQueue))).scalars().all()


def _event(**shipment):
    defaults = {"id": 1, "tracking_number": "MMTEST0001", "user_id": None}
    defaults.update(shipment)
    return ShipmentEvent(kind=EventKind.STATUS_CHANGED, shipment=defaults, data={"status": "picked_up"})


# Circuit breaker

@pytest.mark.asyncio
async def test_circuit_breaker_opens_after_threshold():
    cb = CircuitBreaker("test", failure_threshold=2, reset_timeout=1)

    for _ in range(2):
        with pytest.raises(ValueError):
            await cb.call(_boom)

    assert cb.state == "OPEN"
    with pytest.raises(CircuitOpenError):
        await cb.call(_boom)


@pytest.mark.asyncio
async def test_circuit_breaker_half_open_trial_closes_on_success():
    now = [0.0]
    cb = CircuitBreaker("test", failure_threshold=1, reset_timeout=10, clock=lambda: now[0])

    with pytest.raises(ValueError):
        await cb.call(_boom)
    assert cb.state == "OPEN"

    now[0] = 11.0

    async def ok():
        return "sent"

    assert await cb.call(ok) == "sent"
    assert cb.state == "CLOSED"
    assert cb.failures == 0


@pytest.mark.asyncio
async def test_circuit_breaker_half_open_failure_reopens():
    now = [0.0]
    cb = CircuitBreaker("test", failure_threshold=3, reset_timeout=10, clock=lambda: now[0])
    cb.state = "OPEN"
    now[0] = 20.0

    with pytest.raises(ValueError):
        await cb.call(_boom)
    assert cb.state == "OPEN"


@pytest.mark.asyncio
async def test_timeout_counts_as_failure():
    cb = CircuitBreaker("test", failure_threshold=5)

    async def slow():
        await asyncio.sleep(1)

    with pytest.raises(asyncio.TimeoutError):
        await cb.call(slow, timeout=0.01)
    assert cb.failures == 1


# Dispatcher

@pytest.mark.asyncio
async def test_push_failure_goes_to_dead_letter_queue(dispatcher, push_sender, customer):
    push_sender.fail_with = RuntimeError("expo unavailable")

    assert await dispatcher.handle(_event(user_id=customer.id)) is False

    rows = await _dead_letters(dispatcher)
    assert len(rows) == 1
    assert rows[0].task_name == "notify:status_changed"
    assert rows[0].status == DLQStatus.FAILED
    assert rows[0].payload["shipment"]["tracking_number"] == "MMTEST0001"
    assert "expo unavailable" in rows[0].error_message


@pytest.mark.asyncio
async def test_open_circuit_skips_sender_and_dead_letters(dispatcher, push_sender, customer):
    push_sender.fail_with = RuntimeError("expo unavailable")
    for _ in range(dispatcher.breaker.failure_threshold):
        await dispatcher.handle(_event(user_id=customer.id))

    push_sender.fail_with = None
    assert await dispatcher.handle(_event(user_id=customer.id)) is False

    assert push_sender.sent == []
    rows = await _dead_letters(dispatcher)
    assert len(rows) == dispatcher.breaker.failure_threshold + 1
    assert "CircuitOpenError" in rows[-1].error_message


@pytest.mark.asyncio
async def test_event_without_recipients_is_not_an_error(dispatcher, push_sender):
    assert await dispatcher.handle(_event()) is True
    assert push_sender.sent == []
    assert await _dead_letters(dispatcher) == []


@pytest.mark.asyncio
async def test_recipient_lookup_failure_is_contained(dispatcher, mocker):
    mocker.patch(
        "shipping_backend.app.services.notification_service.build_messages",
        side_effect=OperationalError("SELECT users", {}, Exception("database is locked")),
    )
    assert await dispatcher.handle(_event(user_id=1)) is False

    rows = await _dead_letters(dispatcher)
    assert [r.task_name for r in rows] == ["notify:status_changed"]


@pytest.mark.asyncio
async def test_template_error_is_dead_lettered(dispatcher, mocker):
    mocker.patch(
        "shipping_backend.app.services.notification_service.build_messages",
        side_effect=KeyError("old_date"),
    )
    assert await dispatcher.handle(_event(user_id=1)) is False
    assert len(await _dead_letters(dispatcher)) == 1


@pytest.mark.asyncio
async def test_worker_survives_connection_failure(dispatcher, push_sender, customer):
    real_factory = dispatcher.session_factory
    failures = []

    def flaky_factory():
        if not failures:
            failures.append(1)
            raise RuntimeError("connection refused")
        return real_factory()

    dispatcher.session_factory = flaky_factory
    await dispatcher.start()
    try:
        dispatcher.publish(_event(user_id=customer.id))
        dispatcher.publish(_event(user_id=customer.id, tracking_number="MMTEST0002"))
        for _ in range(200):
            if push_sender.sent:
                break
            await asyncio.sleep(0.01)

        assert not dispatcher._worker.done()
        assert [m.data["trackingNumber"] for m in push_sender.sent] == ["MMTEST0002"]
    finally:
        await dispatcher.stop()

    rows = await _dead_letters(dispatcher)
    assert "connection refused" in rows[0].error_message


@pytest.mark.asyncio
async def test_worker_keeps_running_after_unexpected_error(dispatcher, mocker):
    handle = mocker.patch.object(dispatcher, "handle", side_effect=[RuntimeError("boom"), True])
    await dispatcher.start()
    try:
        dispatcher.publish(_event())
        dispatcher.publish(_event())
        for _ in range(200):
            if handle.await_count == 2:
                break
            await asyncio.sleep(0.01)

        assert handle.await_count == 2
        assert not dispatcher._worker.done()
    finally:
        await dispatcher.stop()


@pytest.mark.asyncio
async def test_disabled_dispatcher_drops_events(push_sender, dispatcher):
    disabled = NotificationDispatcher(push_sender, dispatcher.session_factory, enabled=False)
    disabled.publish(_event())
    assert disabled.pending == 0


@pytest.mark.asyncio
async def test_stop_flushes_pending_events(dispatcher, push_sender, customer):
    dispatcher.publish(_event(user_id=customer.id))
    await dispatcher.stop()

    assert dispatcher.pending == 0
    assert [m.to for m in push_sender.sent] == ["ExponentPushToken[customer]"]


# Request path

@pytest.mark.asyncio
async def test_booking_succeeds_when_push_fails(client, customer, make_booking, dispatcher, push_sender):
    push_sender.fail_with = RuntimeError("expo unavailable")

    response = await client.post("/v1/shipments", json=make_booking(user_id=customer.id))
    assert response.status_code == 200

    await dispatcher.drain()
    rows = await _dead_letters(dispatcher)
    assert [r.payload["data"]["status"] for r in rows] == ["booked"]


@pytest.mark.asyncio
async def test_status_update_succeeds_when_push_fails(client, booked, dispatcher, push_sender):
    await dispatcher.drain()
    push_sender.fail_with = asyncio.TimeoutError()

    response = await client.put(
        f"/v1/shipments/{booked['shipment']['id']}/status", json={"status": "picked_up"}
    )
    assert response.status_code == 200
    assert response.json()["shipment"]["status"] == "picked_up"

    await dispatcher.drain()
    rows = await _dead_letters(dispatcher)
    assert rows[-1].payload["data"]["status"] == "picked_up"


@pytest.mark.asyncio
async def test_status_update_succeeds_when_cache_invalidation_fails(client, booked, tracking_cache, mocker):
    mocker.patch.object(tracking_cache, "delete", side_effect=RuntimeError("cache down"))

    response = await client.put(
        f"/v1/shipments/{booked['shipment']['id']}/status", json={"status": "picked_up"}
    )
    assert response.status_code == 200
    assert response.json()["shipment"]["status"] == "picked_up"


# Push transport

@pytest.mark.asyncio
async def test_expo_sender_skips_invalid_tokens(mocker):
    client_cls = mocker.patch("shipping_backend.app.services.notification_service.httpx.AsyncClient")
    client = client_cls.return_value.__aenter__.return_value
    client.post = mocker.AsyncMock(return_value=mocker.Mock())

    sender = ExpoPushSender(url="https://push.example.test/send")
    await sender.send([
        PushMessage(to="not-a-token", title="t", body="b"),
        PushMessage(to="ExponentPushToken[abc]", title="Parcel Update", body="hello"),
    ])

    client.post.assert_awaited_once()
    sent = client.post.call_args.kwargs["json"]
    assert [m["to"] for m in sent] == ["ExponentPushToken[abc]"]
    assert sent[0]["priority"] == "high"


@pytest.mark.asyncio
async def test_expo_sender_without_valid_tokens_makes_no_request(mocker):
    client_cls = mocker.patch("shipping_backend.app.services.notification_service.httpx.AsyncClient")

    await ExpoPushSender().send([PushMessage(to="", title="t", body="b")])

    client_cls.assert_not_called()
