"""Realtime change-feed bridge over Supabase channels."""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from receiptsync.integrations.supabase_gateway import SupabaseGateway

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChannelStatus(str, Enum):
    SUBSCRIBED = "subscribed"
    TIMED_OUT = "timed_out"
    CLOSED = "closed"
    CHANNEL_ERROR = "channel_error"


@dataclass(frozen=True)
class ChangeEvent:
    """A single row change delivered by a channel."""

    type: ChangeType
    table: str
    record: dict[str, Any]
    old_record: dict[str, Any]
    commit_timestamp: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any], default_table: str) -> "ChangeEvent":
        """Normalize the SDK payload shape.

        Depending on the SDK version the change sits at the top level or
        under ``data``, and rows are named ``record``/``old_record`` or
        ``new``/``old``.
        """
        data = payload.get("data", payload) if isinstance(payload, dict) else {}
        event_type = data.get("type") or data.get("eventType") or "UPDATE"
        return cls(
            type=ChangeType(str(event_type).upper()),
            table=data.get("table") or default_table,
            record=data.get("record") or data.get("new") or {},
            old_record=data.get("old_record") or data.get("old") or {},
            commit_timestamp=data.get("commit_timestamp"),
        )


ChangeCallback = Callable[[ChangeEvent], Awaitable[None] | None]
StatusCallback = Callable[[ChannelStatus, Exception | None], Awaitable[None] | None]


@dataclass
class ChannelSubscription:
    """Handle returned by :meth:`RealtimeBridge.subscribe`."""

    name: str
    table: str
    filter: str | None
    channel: Any
    active: bool = True
    _tasks: set[asyncio.Task] = field(default_factory=set, repr=False)


def encode_filter(column: str, value: Any) -> str:
    return f"{column}=eq.{value}"


def _normalize_status(state: Any) -> ChannelStatus:
    raw = getattr(state, "value", state)
    raw = str(raw).lower()
    for status in ChannelStatus:
        if status.value == raw:
            return status
    return ChannelStatus.CHANNEL_ERROR


class RealtimeBridge:
    """Opens table change channels and re-emits events to local callbacks.

    Reconnection is left to the SDK. Callers must call :meth:`unsubscribe`
    (or :meth:`close`) when they no longer need a channel.
    """

    def __init__(self, gateway: SupabaseGateway, schema: str = "public") -> None:
        self.gateway = gateway
        self.schema = schema
        self._subscriptions: dict[str, ChannelSubscription] = {}

    @property
    def subscriptions(self) -> list[ChannelSubscription]:
        return list(self._subscriptions.values())

    def _dispatch(
        self, subscription: ChannelSubscription, callback: Callable[..., Any], *args: Any
    ) -> None:
        if not subscription.active:
            return
        try:
            result = callback(*args)
        except Exception:
            logger.exception("[realtime:%s] callback failed", subscription.name)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            subscription._tasks.add(task)
            task.add_done_callback(lambda t: self._finish_task(subscription, t))

    def _finish_task(self, subscription: ChannelSubscription, task: asyncio.Task) -> None:
        subscription._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "[realtime:%s] async callback failed: %s",
                subscription.name,
                task.exception(),
            )

    async def subscribe(
        self,
        table: str,
        filter: tuple[str, Any] | None = None,
        on_insert: ChangeCallback | None = None,
        on_update: ChangeCallback | None = None,
        on_delete: ChangeCallback | None = None,
        on_status: StatusCallback | None = None,
        channel_name: str | None = None,
    ) -> ChannelSubscription:
        """Open a channel for changes on ``table``.

        Args:
            table: Table to watch
            filter: Optional (column, value) equality filter
            on_insert: Called with a ChangeEvent for each inserted row
            on_update: Called with a ChangeEvent for each updated row
            on_delete: Called with a ChangeEvent for each deleted row
            on_status: Called with the channel status and optional error
            channel_name: Channel name (default: public:<table>[:<value>])

        Returns:
            ChannelSubscription handle to pass to unsubscribe()
        """
        filter_expr = encode_filter(*filter) if filter else None
        name = channel_name or (
            f"public:{table}:{filter[1]}" if filter else f"public:{table}"
        )
        if name in self._subscriptions:
            await self.unsubscribe(self._subscriptions[name])

        channel = self.gateway.channel(name)
        subscription = ChannelSubscription(
            name=name, table=table, filter=filter_expr, channel=channel
        )

        handlers = {
            ChangeType.INSERT: on_insert,
            ChangeType.UPDATE: on_update,
            ChangeType.DELETE: on_delete,
        }
        for change_type, handler in handlers.items():
            if handler is None:
                continue

            def _on_change(payload: dict[str, Any], handler=handler) -> None:
                event = ChangeEvent.from_payload(payload, table)
                self._dispatch(subscription, handler, event)

            kwargs: dict[str, Any] = {"table": table, "schema": self.schema}
            if filter_expr:
                kwargs["filter"] = filter_expr
            channel.on_postgres_changes(change_type.value, _on_change, **kwargs)

        def _on_subscribe(state: Any, error: Exception | None = None) -> None:
            status = _normalize_status(state)
            if status is ChannelStatus.SUBSCRIBED:
                logger.info("[realtime:%s] subscribed", name)
            else:
                logger.warning("[realtime:%s] status=%s error=%s", name, status.value, error)
            if on_status is not None:
                self._dispatch(subscription, on_status, status, error)

        await channel.subscribe(_on_subscribe)
        self._subscriptions[name] = subscription
        return subscription

    async def unsubscribe(self, subscription: ChannelSubscription) -> None:
        if not subscription.active:
            return
        subscription.active = False
        self._subscriptions.pop(subscription.name, None)
        await self.gateway.remove_channel(subscription.channel)
        logger.info("[realtime:%s] unsubscribed", subscription.name)

    async def close(self) -> None:
        for subscription in list(self._subscriptions.values()):
            await self.unsubscribe(subscription)
