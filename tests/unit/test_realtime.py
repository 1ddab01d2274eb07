"""Unit tests for the realtime stream bridge."""

import asyncio

import pytest

from receiptsync.integrations.realtime import (
    ChangeEvent,
    ChangeType,
    ChannelStatus,
    RealtimeBridge,
    encode_filter,
)
from tests.fakes import FakeGateway

pytestmark = pytest.mark.unit


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def bridge(gateway):
    return RealtimeBridge(gateway)


class TestChangeEvent:
    """Test cases for payload normalisation."""

    def test_nested_payload(self):
        event = ChangeEvent.from_payload(
            {"data": {"type": "INSERT", "table": "notifications", "record": {"id": "n-1"}}},
            "fallback",
        )
        assert event.type is ChangeType.INSERT
        assert event.table == "notifications"
        assert event.record == {"id": "n-1"}
        assert event.old_record == {}

    def test_flat_payload_with_new_old(self):
        event = ChangeEvent.from_payload(
            {"eventType": "delete", "old": {"id": "n-2"}}, "notifications"
        )
        assert event.type is ChangeType.DELETE
        assert event.table == "notifications"
        assert event.old_record == {"id": "n-2"}


def test_encode_filter():
    assert encode_filter("recipient_id", "user-1") == "recipient_id=eq.user-1"


class TestSubscribe:
    """Test cases for opening and closing channels."""

    @pytest.mark.asyncio
    async def test_registers_handlers_with_filter(self, bridge, gateway):
        subscription = await bridge.subscribe(
            "notifications",
            filter=("recipient_id", "user-1"),
            on_insert=lambda event: None,
            on_delete=lambda event: None,
        )
        channel = gateway.channels[0]
        assert subscription.name == "public:notifications:user-1"
        assert channel.subscribed
        events = [event for event, _, _ in channel.handlers]
        assert events == ["INSERT", "DELETE"]
        assert all(
            kwargs == {"table": "notifications", "schema": "public", "filter": "recipient_id=eq.user-1"}
            for _, _, kwargs in channel.handlers
        )

    @pytest.mark.asyncio
    async def test_sync_and_async_callbacks_receive_events(self, bridge, gateway):
        received = []

        async def on_update(event):
            received.append(("update", event.record["id"]))

        await bridge.subscribe(
            "receipts",
            on_insert=lambda event: received.append(("insert", event.record["id"])),
            on_update=on_update,
        )
        channel = gateway.channels[0]
        channel.emit("INSERT", {"id": "r-1"})
        channel.emit("UPDATE", {"id": "r-2"})
        await asyncio.sleep(0)

        assert received == [("insert", "r-1"), ("update", "r-2")]

    @pytest.mark.asyncio
    async def test_status_is_normalised(self, bridge, gateway):
        statuses = []
        await bridge.subscribe(
            "receipts", on_status=lambda status, error: statuses.append(status)
        )
        channel = gateway.channels[0]
        channel.set_status("SUBSCRIBED")
        channel.set_status("TIMED_OUT")
        channel.set_status("something odd")

        assert statuses == [
            ChannelStatus.SUBSCRIBED,
            ChannelStatus.TIMED_OUT,
            ChannelStatus.CHANNEL_ERROR,
        ]

    @pytest.mark.asyncio
    async def test_callback_failure_is_contained(self, bridge, gateway):
        """Test that one failing callback does not break delivery."""
        received = []

        def on_insert(event):
            if event.record["id"] == "bad":
                raise RuntimeError("boom")
            received.append(event.record["id"])

        await bridge.subscribe("receipts", on_insert=on_insert)
        channel = gateway.channels[0]
        channel.emit("INSERT", {"id": "bad"})
        channel.emit("INSERT", {"id": "good"})
        assert received == ["good"]

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery_and_is_idempotent(self, bridge, gateway):
        received = []
        subscription = await bridge.subscribe(
            "receipts", on_insert=lambda event: received.append(event)
        )
        await bridge.unsubscribe(subscription)
        await bridge.unsubscribe(subscription)

        gateway.channels[0].emit("INSERT", {"id": "r-1"})
        assert received == []
        assert gateway.removed_channels == [gateway.channels[0]]
        assert bridge.subscriptions == []

    @pytest.mark.asyncio
    async def test_same_name_replaces_previous_channel(self, bridge, gateway):
        first = await bridge.subscribe("receipts", channel_name="mine")
        second = await bridge.subscribe("receipts", channel_name="mine")
        assert not first.active
        assert second.active
        assert bridge.subscriptions == [second]

    @pytest.mark.asyncio
    async def test_close_removes_everything(self, bridge, gateway):
        await bridge.subscribe("receipts")
        await bridge.subscribe("notifications")
        await bridge.close()
        assert bridge.subscriptions == []
        assert len(gateway.removed_channels) == 2
