"""
Socket.IO Handler Tests

Events are awaited directly with the server's emit and room lookup patched.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from donorlink.api.websocket import handler
from donorlink.models.alert_delivery import DeliveryChannel, DeliveryState
from donorlink.services.delivery_tracker import DeliveryTracker
from donorlink.services.dispatcher import AlertDispatcher

from factories import NOW, FakeGateway, make_donor

PUSH = DeliveryChannel.PUSH


@pytest.fixture
def sent_push(store):
    tracker = DeliveryTracker(store)

    async def setup():
        await tracker.ensure_deliveries("a1", [make_donor("d1", "O-")], [PUSH])
        await tracker.mark_sent("a1", "d1", PUSH, provider_message_id="push-1", now=NOW)

    asyncio.run(setup())
    return tracker


@pytest.fixture
def socket(store):
    def _dispatcher(record_store):
        return AlertDispatcher(record_store, FakeGateway(), DeliveryTracker(record_store))

    with patch.object(handler.sio, "emit", new=AsyncMock()) as emit, \
            patch.object(handler.sio, "rooms") as rooms, \
            patch("donorlink.db.record_store.get_record_store", return_value=store), \
            patch("donorlink.services.dispatcher.build_dispatcher", side_effect=_dispatcher):
        yield emit, rooms


class TestAlertReceived:

    def test_donor_in_own_room_marks_push_delivered(self, socket, sent_push):
        emit, rooms = socket
        rooms.return_value = ["sid1", handler.donor_room("d1")]

        asyncio.run(handler.alert_received("sid1", {"alert_id": "a1", "donor_id": "d1"}))

        delivery = asyncio.run(sent_push.get("a1", "d1", PUSH))
        assert delivery.state == DeliveryState.DELIVERED
        emit.assert_awaited_once_with("ack", {"alert_id": "a1", "state": "delivered"}, to="sid1")

    def test_connection_outside_donor_room_cannot_acknowledge(self, socket, sent_push):
        emit, rooms = socket
        rooms.return_value = ["sid2", handler.donor_room("d2")]

        asyncio.run(handler.alert_received("sid2", {"alert_id": "a1", "donor_id": "d1"}))

        delivery = asyncio.run(sent_push.get("a1", "d1", PUSH))
        assert delivery.state == DeliveryState.SENT
        event, body = emit.await_args.args
        assert event == "error"
        assert "donor room" in body["detail"]

    def test_missing_ids_are_rejected(self, socket):
        emit, rooms = socket

        asyncio.run(handler.alert_received("sid1", {"alert_id": "a1"}))

        rooms.assert_not_called()
        assert emit.await_args.args[0] == "error"

    def test_unknown_delivery_reports_error(self, socket):
        emit, rooms = socket
        rooms.return_value = ["sid1", handler.donor_room("d1")]

        asyncio.run(handler.alert_received("sid1", {"alert_id": "nope", "donor_id": "d1"}))

        assert emit.await_args.args[0] == "error"
