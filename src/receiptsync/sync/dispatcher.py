"""Bridges notification rows to a local display sink."""

import inspect
import json
import logging
import zlib
from collections.abc import Awaitable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import typer

from receiptsync.errors import AppError
from receiptsync.integrations.supabase_gateway import SupabaseGateway
from receiptsync.models import (
    Notification,
    NotificationPreferences,
    NotificationPriority,
    NotificationType,
)

logger = logging.getLogger(__name__)


class Importance(str, Enum):
    LOW = "low"
    DEFAULT = "default"
    HIGH = "high"


@dataclass(frozen=True)
class DisplayChannel:
    id: str
    name: str
    description: str
    importance: Importance


CHANNELS: dict[str, DisplayChannel] = {
    "general": DisplayChannel(
        "general", "General Notifications", "General app notifications", Importance.HIGH
    ),
    "receipts": DisplayChannel(
        "receipts",
        "Receipt Notifications",
        "Receipt processing and collaboration notifications",
        Importance.HIGH,
    ),
    "teams": DisplayChannel(
        "teams",
        "Team Notifications",
        "Team collaboration notifications",
        Importance.DEFAULT,
    ),
    "claims": DisplayChannel(
        "claims",
        "Claims Notifications",
        "Claims and reimbursement notifications",
        Importance.HIGH,
    ),
}

T = NotificationType

CHANNEL_FOR_TYPE: dict[NotificationType, str] = {
    T.RECEIPT_PROCESSING_STARTED: "receipts",
    T.RECEIPT_PROCESSING_COMPLETED: "receipts",
    T.RECEIPT_PROCESSING_FAILED: "receipts",
    T.RECEIPT_READY_FOR_REVIEW: "receipts",
    T.RECEIPT_BATCH_COMPLETED: "receipts",
    T.RECEIPT_BATCH_FAILED: "receipts",
    T.RECEIPT_SHARED: "receipts",
    T.RECEIPT_COMMENT_ADDED: "receipts",
    T.RECEIPT_EDITED_BY_TEAM_MEMBER: "receipts",
    T.RECEIPT_APPROVED_BY_TEAM: "receipts",
    T.RECEIPT_FLAGGED_FOR_REVIEW: "receipts",
    T.TEAM_INVITATION_SENT: "teams",
    T.TEAM_INVITATION_ACCEPTED: "teams",
    T.TEAM_MEMBER_JOINED: "teams",
    T.TEAM_MEMBER_LEFT: "teams",
    T.TEAM_MEMBER_REMOVED: "teams",
    T.TEAM_MEMBER_ROLE_CHANGED: "teams",
    T.TEAM_SETTINGS_UPDATED: "teams",
    T.CLAIM_SUBMITTED: "claims",
    T.CLAIM_APPROVED: "claims",
    T.CLAIM_REJECTED: "claims",
    T.CLAIM_REVIEW_REQUESTED: "claims",
}

IMPORTANCE_FOR_PRIORITY: dict[NotificationPriority, Importance] = {
    NotificationPriority.LOW: Importance.LOW,
    NotificationPriority.MEDIUM: Importance.DEFAULT,
    NotificationPriority.HIGH: Importance.HIGH,
}


def channel_for(notification_type: NotificationType) -> DisplayChannel:
    return CHANNELS[CHANNEL_FOR_TYPE.get(notification_type, "general")]


def display_id(notification_id: str) -> int:
    """Stable positive integer id for a notification uuid."""
    return zlib.crc32(notification_id.encode("utf-8")) & 0x7FFFFFFF


@dataclass(frozen=True)
class DisplayMessage:
    id: int
    title: str
    body: str
    channel: DisplayChannel
    importance: Importance
    payload: str


class NotificationDisplay(Protocol):
    def show(self, message: DisplayMessage) -> Awaitable[None] | None: ...


class ConsoleDisplay:
    """Writes notifications to the terminal."""

    def show(self, message: DisplayMessage) -> None:
        marker = "!" if message.importance is Importance.HIGH else "-"
        typer.echo(f"{marker} [{message.channel.id}] {message.title}: {message.body}")


@dataclass(frozen=True)
class NotificationAction:
    """A decoded tap on a displayed notification."""

    notification_id: str
    type: NotificationType | None
    action_url: str | None


def build_payload(notification: Notification) -> str:
    return json.dumps(
        {
            "notification_id": notification.id,
            "type": notification.type.value,
            "action_url": notification.action_url,
        }
    )


def decode_payload(payload: str) -> NotificationAction | None:
    """Parse a tapped notification payload; malformed payloads give None."""
    try:
        data = json.loads(payload)
    except (TypeError, ValueError):
        logger.warning("[dispatcher] malformed payload: %r", payload)
        return None
    if not isinstance(data, dict) or not data.get("notification_id"):
        return None
    raw_type = data.get("type")
    try:
        notification_type = NotificationType(raw_type) if raw_type else None
    except ValueError:
        notification_type = None
    return NotificationAction(
        notification_id=str(data["notification_id"]),
        type=notification_type,
        action_url=data.get("action_url"),
    )


_LEGACY_ROUTE_PREFIXES = (("/receipt/", "/receipts/"), ("/claim/", "/claims/"), ("/team/", "/teams/"))


def resolve_route(
    action: NotificationAction, related_entity_id: str | None = None
) -> str:
    """Return the in-app route a tapped notification should open."""
    if action.action_url:
        for old, new in _LEGACY_ROUTE_PREFIXES:
            if action.action_url.startswith(old):
                return action.action_url.replace(old, new, 1)
        return action.action_url

    channel = CHANNEL_FOR_TYPE.get(action.type) if action.type else None
    if channel is None:
        return "/notifications"
    base = f"/{channel}"
    return f"{base}/{related_entity_id}" if related_entity_id else base


class LocalNotificationDispatcher:
    """Shows notifications locally, honouring the user's push preferences."""

    def __init__(
        self,
        gateway: SupabaseGateway | None = None,
        display: NotificationDisplay | None = None,
    ) -> None:
        self.gateway = gateway
        self.display = display or ConsoleDisplay()
        self._preferences: NotificationPreferences | None = None

    @property
    def preferences(self) -> NotificationPreferences | None:
        return self._preferences

    def set_preferences(self, preferences: NotificationPreferences | None) -> None:
        self._preferences = preferences

    async def load_preferences(self, user_id: str) -> NotificationPreferences | None:
        """Fetch and cache the user's notification preferences.

        A missing row means everything is allowed. A failed fetch is logged
        and treated the same way.
        """
        if self.gateway is None:
            return self._preferences
        try:
            row = await self.gateway.select_one(
                "notification_preferences", eq={"user_id": user_id}
            )
        except AppError as e:
            logger.warning("[dispatcher] could not load preferences: %s", e)
            row = None
        self.set_preferences(NotificationPreferences.from_row(row) if row else None)
        return self._preferences

    def should_display(self, notification: Notification) -> bool:
        if self._preferences is None:
            return True
        return self._preferences.allows_push(notification.type)

    def build_message(self, notification: Notification) -> DisplayMessage:
        return DisplayMessage(
            id=display_id(notification.id),
            title=notification.title,
            body=notification.message,
            channel=channel_for(notification.type),
            importance=IMPORTANCE_FOR_PRIORITY[notification.priority],
            payload=build_payload(notification),
        )

    async def dispatch(self, notification: Notification) -> bool:
        """Display a notification if the preferences allow it.

        Args:
            notification: The notification to show

        Returns:
            True if the notification was handed to the display sink
        """
        if not self.should_display(notification):
            logger.debug("[dispatcher] push disabled for type=%s", notification.type.value)
            return False
        message = self.build_message(notification)
        try:
            result = self.display.show(message)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("[dispatcher] failed to show notification id=%s", notification.id)
            return False
        logger.info("[dispatcher] shown id=%s channel=%s", notification.id, message.channel.id)
        return True
