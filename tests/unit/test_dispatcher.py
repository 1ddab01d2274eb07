"""Unit tests for the local notification dispatcher."""

import json

import pytest

from receiptsync.errors import GatewayError
from receiptsync.models import Notification, NotificationPreferences, NotificationType
from receiptsync.sync.dispatcher import (
    ConsoleDisplay,
    Importance,
    LocalNotificationDispatcher,
    NotificationAction,
    build_payload,
    channel_for,
    decode_payload,
    display_id,
    resolve_route,
)
from tests.fakes import FakeGateway

pytestmark = pytest.mark.unit


class RecordingDisplay:
    def __init__(self, fail=False):
        self.messages = []
        self.fail = fail

    def show(self, message):
        if self.fail:
            raise RuntimeError("display unavailable")
        self.messages.append(message)


def make_notification(**overrides):
    data = {
        "id": "0b9f0c52-7d8f-4f7e-9a4c-1c1d0d6e7f10",
        "recipient_id": "user-1",
        "type": "claim_submitted",
        "priority": "high",
        "title": "Claim submitted",
        "message": "Alice submitted a claim for review",
        "action_url": "/claim/c-1",
        "created_at": "2025-06-01T10:00:00+00:00",
    }
    data.update(overrides)
    return Notification.model_validate(data)


class TestChannels:
    def test_every_type_has_a_channel(self):
        for notification_type in NotificationType:
            assert channel_for(notification_type).id in ("receipts", "teams", "claims")

    def test_channel_mapping(self):
        assert channel_for(NotificationType.RECEIPT_BATCH_FAILED).id == "receipts"
        assert channel_for(NotificationType.TEAM_MEMBER_LEFT).id == "teams"
        assert channel_for(NotificationType.CLAIM_APPROVED).id == "claims"

    def test_display_id_is_stable_and_positive(self):
        first = display_id("abc")
        assert first == display_id("abc")
        assert 0 <= first <= 0x7FFFFFFF


class TestPayload:
    """Test cases for tap payload encoding and routing."""

    def test_payload_contents(self):
        payload = json.loads(build_payload(make_notification()))
        assert payload == {
            "notification_id": "0b9f0c52-7d8f-4f7e-9a4c-1c1d0d6e7f10",
            "type": "claim_submitted",
            "action_url": "/claim/c-1",
        }

    def test_decode_payload(self):
        action = decode_payload(build_payload(make_notification()))
        assert action.type is NotificationType.CLAIM_SUBMITTED
        assert action.action_url == "/claim/c-1"

    @pytest.mark.parametrize("payload", ["not json", "[]", '{"type": "claim_submitted"}'])
    def test_malformed_payload(self, payload):
        assert decode_payload(payload) is None

    def test_unknown_type_kept_as_none(self):
        action = decode_payload('{"notification_id": "n-1", "type": "new_kind"}')
        assert action.notification_id == "n-1"
        assert action.type is None

    def test_resolve_route_rewrites_legacy_prefixes(self):
        action = NotificationAction("n-1", NotificationType.RECEIPT_SHARED, "/receipt/r-9")
        assert resolve_route(action) == "/receipts/r-9"

    def test_resolve_route_without_url(self):
        action = NotificationAction("n-1", NotificationType.TEAM_MEMBER_JOINED, None)
        assert resolve_route(action) == "/teams"
        assert resolve_route(action, "team-2") == "/teams/team-2"
        assert resolve_route(NotificationAction("n-1", None, None)) == "/notifications"


class TestDispatch:
    """Test cases for displaying notifications."""

    @pytest.mark.asyncio
    async def test_dispatch_builds_message(self):
        display = RecordingDisplay()
        dispatcher = LocalNotificationDispatcher(display=display)

        assert await dispatcher.dispatch(make_notification())

        message = display.messages[0]
        assert message.title == "Claim submitted"
        assert message.channel.id == "claims"
        assert message.importance is Importance.HIGH
        assert message.id == display_id("0b9f0c52-7d8f-4f7e-9a4c-1c1d0d6e7f10")

    @pytest.mark.asyncio
    async def test_preferences_suppress_type(self):
        display = RecordingDisplay()
        dispatcher = LocalNotificationDispatcher(display=display)
        dispatcher.set_preferences(
            NotificationPreferences(push_types={NotificationType.CLAIM_SUBMITTED: False})
        )

        assert not await dispatcher.dispatch(make_notification())
        assert await dispatcher.dispatch(make_notification(type="claim_approved"))
        assert len(display.messages) == 1

    @pytest.mark.asyncio
    async def test_display_failure_returns_false(self):
        dispatcher = LocalNotificationDispatcher(display=RecordingDisplay(fail=True))
        assert not await dispatcher.dispatch(make_notification())

    @pytest.mark.asyncio
    async def test_load_preferences_from_table(self):
        gateway = FakeGateway(
            tables={
                "notification_preferences": [
                    {"user_id": "user-1", "push_enabled": False},
                ]
            }
        )
        dispatcher = LocalNotificationDispatcher(gateway, RecordingDisplay())
        prefs = await dispatcher.load_preferences("user-1")
        assert prefs.push_enabled is False
        assert not dispatcher.should_display(make_notification())

    @pytest.mark.asyncio
    async def test_load_preferences_failure_allows_everything(self):
        gateway = FakeGateway()
        gateway.fail_on("select_one:notification_preferences", GatewayError("boom"))
        dispatcher = LocalNotificationDispatcher(gateway, RecordingDisplay())
        assert await dispatcher.load_preferences("user-1") is None
        assert dispatcher.should_display(make_notification())

    def test_console_display(self, capsys):
        dispatcher = LocalNotificationDispatcher()
        ConsoleDisplay().show(dispatcher.build_message(make_notification()))
        out = capsys.readouterr().out
        assert out.strip() == "! [claims] Claim submitted: Alice submitted a claim for review"
