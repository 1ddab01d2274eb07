"""Notification feed synchronizer.

Keeps an in-memory page of the signed-in user's notifications, applies
realtime changes to it, forwards new rows to the local dispatcher and
exposes optimistic read/archive/delete mutations.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from receiptsync.config import Settings
from receiptsync.errors import AppError, is_missing_procedure
from receiptsync.integrations.realtime import (
    ChangeEvent,
    ChannelStatus,
    ChannelSubscription,
    RealtimeBridge,
)
from receiptsync.integrations.supabase_gateway import SupabaseGateway
from receiptsync.models import (
    Notification,
    NotificationFilters,
    NotificationPriority,
    NotificationStats,
    NotificationType,
)
from receiptsync.state.base import StateContainer
from receiptsync.sync.dispatcher import LocalNotificationDispatcher

logger = logging.getLogger(__name__)

NOTIFICATION_COLUMNS = (
    "id, recipient_id, team_id, type, priority, title, message, action_url, "
    "read_at, archived_at, related_entity_type, related_entity_id, metadata, "
    "created_at, expires_at"
)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


def _now() -> datetime:
    return datetime.now(UTC)


def count_unread(notifications: list[Notification]) -> int:
    return sum(1 for n in notifications if n.read_at is None)


def count_high_priority_unread(notifications: list[Notification]) -> int:
    return sum(
        1
        for n in notifications
        if n.read_at is None and n.priority is NotificationPriority.HIGH
    )


class NotificationSynchronizer(StateContainer[list[Notification]]):
    """Synchronizes the notification feed for one recipient."""

    name = "notifications"

    def __init__(
        self,
        gateway: SupabaseGateway,
        bridge: RealtimeBridge,
        dispatcher: LocalNotificationDispatcher,
        settings: Settings | None = None,
    ) -> None:
        super().__init__([])
        self.gateway = gateway
        self.bridge = bridge
        self.dispatcher = dispatcher
        self.settings = settings or Settings()
        self.user_id: str | None = None
        self.filters: NotificationFilters | None = None

        self.unread_count = 0
        self.high_priority_unread_count = 0

        self._connection_state = ConnectionState.DISCONNECTED
        self._status_listeners: list[Callable[[ConnectionState], None]] = []
        self._subscription: ChannelSubscription | None = None
        self._reconnect_attempts = 0
        self._reconnect_task: asyncio.Task | None = None
        self._running = False

    # --- Derived state ---------------------------------------------------

    def _on_data_changed(self, data: list[Notification]) -> None:
        self.unread_count = count_unread(data)
        self.high_priority_unread_count = count_high_priority_unread(data)

    @property
    def notifications(self) -> list[Notification]:
        return self.data

    def get(self, notification_id: str) -> Notification | None:
        return next((n for n in self.data if n.id == notification_id), None)

    # --- Connection state ------------------------------------------------

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection_state

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def on_connection_change(
        self, listener: Callable[[ConnectionState], None]
    ) -> Callable[[], None]:
        self._status_listeners.append(listener)
        return lambda: self._status_listeners.remove(listener)

    def _set_connection_state(self, state: ConnectionState) -> None:
        if state is self._connection_state:
            return
        self._connection_state = state
        logger.info("[notifications] connection state=%s", state.value)
        for listener in list(self._status_listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("[notifications] status listener failed")

    # --- Fetch -----------------------------------------------------------

    async def _resolve_user(self) -> str:
        if self.user_id is None:
            self.user_id = await self.gateway.current_user_id()
        return self.user_id

    async def _fetch_page(
        self, filters: NotificationFilters | None, limit: int, offset: int
    ) -> list[Notification]:
        user_id = await self._resolve_user()
        filters = filters or NotificationFilters()

        eq: dict[str, Any] = {"recipient_id": user_id}
        if filters.team_id:
            eq["team_id"] = filters.team_id
        if filters.priority:
            eq["priority"] = filters.priority.value
        is_null = [] if filters.include_archived else ["archived_at"]
        if filters.unread_only:
            is_null.append("read_at")
        gte = {"created_at": filters.date_from.isoformat()} if filters.date_from else None
        lte = {"created_at": filters.date_to.isoformat()} if filters.date_to else None
        in_ = {"type": [t.value for t in filters.types]} if filters.types else None

        rows = await self.gateway.select(
            "notifications",
            NOTIFICATION_COLUMNS,
            eq=eq,
            in_=in_,
            is_null=is_null,
            gte=gte,
            lte=lte,
            order_by="created_at",
            descending=True,
            limit=limit,
            offset=offset,
        )
        now = _now()
        notifications = []
        for row in rows:
            try:
                notification = Notification.model_validate(row)
            except ValueError as e:
                logger.warning(
                    "[notifications] skipping malformed row id=%s: %s", row.get("id"), e
                )
                continue
            if notification.is_expired(now):
                continue
            notifications.append(notification)
        return notifications

    async def fetch(
        self,
        filters: NotificationFilters | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Notification] | None:
        """Fetch one page and replace the in-memory list.

        Args:
            filters: Optional filters (team, types, priority, unread-only, dates)
            limit: Page size (default from settings, 50)
            offset: Rows to skip

        Returns:
            The fetched notifications, or None if the fetch failed or was
            superseded by a newer fetch
        """
        self.filters = filters
        page_size = limit or self.settings.notification_page_size
        notifications = await self._run_load(
            lambda: self._fetch_page(filters, page_size, offset)
        )
        if notifications is not None:
            logger.info("[notifications] fetched %d notifications", len(notifications))
        return notifications

    async def load(self) -> list[Notification] | None:
        return await self.fetch(self.filters)

    # --- Realtime --------------------------------------------------------

    def _merge(self, notification: Notification, prepend: bool) -> None:
        current = list(self.data)
        for index, existing in enumerate(current):
            if existing.id == notification.id:
                current[index] = notification
                break
        else:
            if prepend:
                current.insert(0, notification)
            else:
                current.append(notification)
                current.sort(key=lambda n: n.created_at, reverse=True)
        self._set_state(data=current)

    def _remove(self, notification_id: str) -> None:
        remaining = [n for n in self.data if n.id != notification_id]
        if len(remaining) != len(self.data):
            self._set_state(data=remaining)

    def _visible(self, notification: Notification) -> bool:
        filters = self.filters or NotificationFilters()
        if notification.is_archived and not filters.include_archived:
            return False
        return not notification.is_expired()

    async def handle_insert(self, event: ChangeEvent) -> None:
        try:
            notification = Notification.model_validate(event.record)
        except ValueError as e:
            logger.warning("[notifications] ignoring malformed insert: %s", e)
            return
        if not self._visible(notification):
            return
        is_new = self.get(notification.id) is None
        if is_new:
            await self.dispatcher.dispatch(notification)
        self._merge(notification, prepend=True)

    async def handle_update(self, event: ChangeEvent) -> None:
        try:
            notification = Notification.model_validate(event.record)
        except ValueError as e:
            logger.warning("[notifications] ignoring malformed update: %s", e)
            return
        if not self._visible(notification):
            self._remove(notification.id)
            return
        self._merge(notification, prepend=False)

    async def handle_delete(self, event: ChangeEvent) -> None:
        notification_id = event.old_record.get("id") or event.record.get("id")
        if notification_id:
            self._remove(str(notification_id))

    def handle_status(self, status: ChannelStatus, error: Exception | None = None) -> None:
        if status is ChannelStatus.SUBSCRIBED:
            self._reconnect_attempts = 0
            self._set_connection_state(ConnectionState.CONNECTED)
            return
        logger.warning("[notifications] channel %s: %s", status.value, error)
        if self._running:
            self._schedule_reconnect()
        else:
            self._set_connection_state(ConnectionState.DISCONNECTED)

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        if self._reconnect_attempts >= self.settings.max_reconnect_attempts:
            logger.warning("[notifications] max reconnection attempts reached")
            self._set_connection_state(ConnectionState.DISCONNECTED)
            return
        self._reconnect_attempts += 1
        delay = self.settings.reconnect_delay * self._reconnect_attempts
        logger.info(
            "[notifications] reconnect attempt %d in %.1fs",
            self._reconnect_attempts,
            delay,
        )
        self._set_connection_state(ConnectionState.RECONNECTING)
        self._reconnect_task = asyncio.ensure_future(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        # A failed attempt below must be able to schedule the next one
        self._reconnect_task = None
        if self._running:
            await self._open_channel()

    async def _open_channel(self) -> None:
        user_id = await self._resolve_user()
        if self._connection_state is not ConnectionState.RECONNECTING:
            self._set_connection_state(ConnectionState.CONNECTING)
        if self._subscription is not None:
            previous, self._subscription = self._subscription, None
            try:
                await self.bridge.unsubscribe(previous)
            except AppError as e:
                logger.warning("[notifications] failed to remove old channel: %s", e)
        try:
            self._subscription = await self.bridge.subscribe(
                "notifications",
                filter=("recipient_id", user_id),
                on_insert=self.handle_insert,
                on_update=self.handle_update,
                on_delete=self.handle_delete,
                on_status=self.handle_status,
                channel_name=f"notifications-{user_id}",
            )
        except AppError as e:
            logger.error("[notifications] subscribe failed: %s", e)
            self._schedule_reconnect()

    async def start(self, user_id: str | None = None) -> None:
        """Load preferences, fetch the first page and open the realtime channel."""
        if user_id:
            self.user_id = user_id
        user_id = await self._resolve_user()
        self._running = True
        await self.dispatcher.load_preferences(user_id)
        await self.fetch(self.filters)
        await self._open_channel()

    async def reconnect(self) -> None:
        """Force a new subscription attempt and reset the attempt counter."""
        logger.info("[notifications] manual reconnection requested")
        self._reconnect_attempts = 0
        self._running = True
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._set_connection_state(ConnectionState.CONNECTING)
        await self._open_channel()

    async def stop(self) -> None:
        self._running = False
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None
        if self._subscription is not None:
            subscription, self._subscription = self._subscription, None
            await self.bridge.unsubscribe(subscription)
        self._set_connection_state(ConnectionState.DISCONNECTED)

    # --- Mutations -------------------------------------------------------

    @staticmethod
    def _undo_read(notification_ids: set[str], read_at: datetime):
        def revert(data: list[Notification]) -> list[Notification]:
            return [
                n.model_copy(update={"read_at": None})
                if n.id in notification_ids and n.read_at == read_at
                else n
                for n in data
            ]

        return revert

    @staticmethod
    def _undo_removal(removed: Notification | None):
        def revert(data: list[Notification]) -> list[Notification]:
            if removed is None or any(n.id == removed.id for n in data):
                return data
            return sorted([*data, removed], key=lambda n: n.created_at, reverse=True)

        return revert

    async def mark_as_read(self, notification_id: str) -> None:
        now = _now()

        def apply(data: list[Notification]) -> list[Notification]:
            return [
                n.model_copy(update={"read_at": now})
                if n.id == notification_id and n.read_at is None
                else n
                for n in data
            ]

        await self._optimistic(
            apply,
            lambda: self.gateway.update(
                "notifications", {"read_at": now.isoformat()}, eq={"id": notification_id}
            ),
            revert=self._undo_read({notification_id}, now),
        )

    async def mark_all_as_read(self, team_id: str | None = None) -> None:
        user_id = await self._resolve_user()
        now = _now()

        def selected(n: Notification) -> bool:
            return n.read_at is None and (team_id is None or n.team_id == team_id)

        marked = {n.id for n in self.data if selected(n)}

        def apply(data: list[Notification]) -> list[Notification]:
            return [n.model_copy(update={"read_at": now}) if selected(n) else n for n in data]

        eq = {"recipient_id": user_id}
        if team_id:
            eq["team_id"] = team_id
        await self._optimistic(
            apply,
            lambda: self.gateway.update(
                "notifications", {"read_at": now.isoformat()}, eq=eq, is_null=["read_at"]
            ),
            revert=self._undo_read(marked, now),
        )

    async def archive(self, notification_id: str) -> None:
        now = _now()
        await self._optimistic(
            lambda data: [n for n in data if n.id != notification_id],
            lambda: self.gateway.update(
                "notifications", {"archived_at": now.isoformat()}, eq={"id": notification_id}
            ),
            revert=self._undo_removal(self.get(notification_id)),
        )

    async def delete(self, notification_id: str) -> None:
        await self._optimistic(
            lambda data: [n for n in data if n.id != notification_id],
            lambda: self.gateway.delete("notifications", eq={"id": notification_id}),
            revert=self._undo_removal(self.get(notification_id)),
        )

    async def create_notification(
        self,
        recipient_id: str,
        type: NotificationType,
        title: str,
        message: str,
        team_id: str | None = None,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        action_url: str | None = None,
        related_entity_type: str | None = None,
        related_entity_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        expires_at: datetime | None = None,
    ) -> str:
        """Insert a notification row and return its id."""
        rows = await self._mutate(
            lambda: self.gateway.insert(
                "notifications",
                {
                    "recipient_id": recipient_id,
                    "team_id": team_id,
                    "type": type.value,
                    "priority": priority.value,
                    "title": title,
                    "message": message,
                    "action_url": action_url,
                    "related_entity_type": related_entity_type,
                    "related_entity_id": related_entity_id,
                    "metadata": metadata or {},
                    "expires_at": expires_at.isoformat() if expires_at else None,
                },
            )
        )
        return rows[0]["id"]

    async def stats(self, team_id: str | None = None) -> NotificationStats:
        """Server-side notification counts, computed locally if the RPC is missing."""
        user_id = await self._resolve_user()
        try:
            data = await self.gateway.rpc(
                "get_notification_stats", {"user_id": user_id, "team_id": team_id}
            )
        except AppError as e:
            if not is_missing_procedure(e):
                raise
            logger.info("[notifications] stats procedure missing, computing locally")
            return self._local_stats(team_id)
        if isinstance(data, list):
            data = data[0] if data else {}
        return NotificationStats.model_validate(data or {})

    def _local_stats(self, team_id: str | None) -> NotificationStats:
        notifications = [n for n in self.data if team_id is None or n.team_id == team_id]
        cutoff = _now().timestamp() - 24 * 3600
        return NotificationStats(
            total_notifications=len(notifications),
            unread_notifications=count_unread(notifications),
            high_priority_unread=count_high_priority_unread(notifications),
            recent_notifications=sum(
                1 for n in notifications if n.created_at.timestamp() >= cutoff
            ),
        )
