"""Observable state container shared by all domain containers."""

import dataclasses
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from receiptsync.errors import AppError, is_missing_procedure, to_app_error

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def rpc_with_fallback(
    gateway, name: str, params: dict, fallback: Callable[[], Awaitable[R]]
) -> R:
    """Call a stored procedure, running ``fallback`` if it is not deployed."""
    try:
        return await gateway.rpc(name, params)
    except AppError as e:
        if not is_missing_procedure(e):
            raise
        logger.info("[rpc] %s is not available, using direct queries", name)
        return await fallback()


@dataclass(frozen=True)
class ContainerState(Generic[T]):
    """Last-known-good copy of remote data plus load/error flags."""

    data: T
    is_loading: bool = False
    error: str | None = None


Listener = Callable[[ContainerState[T]], None]


class StateContainer(Generic[T]):
    """Single-writer observable state.

    Subclasses mutate state only through :meth:`_set_state`,
    :meth:`_run_load` and :meth:`_optimistic`. Listeners registered with
    :meth:`subscribe` receive every new state.

    Loads are sequenced with a monotonically increasing request token: a
    response is applied only if no newer load was issued meanwhile.
    """

    name = "state"

    def __init__(self, initial: T) -> None:
        self._state: ContainerState[T] = ContainerState(data=initial)
        self._listeners: list[Listener] = []
        self._request_token = 0

    @property
    def state(self) -> ContainerState[T]:
        return self._state

    @property
    def data(self) -> T:
        return self._state.data

    @property
    def is_loading(self) -> bool:
        return self._state.is_loading

    @property
    def error(self) -> str | None:
        return self._state.error

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener and return a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _on_data_changed(self, data: T) -> None:
        """Hook for subclasses that derive values from the data."""

    def _set_state(self, **changes) -> None:
        self._state = dataclasses.replace(self._state, **changes)
        if "data" in changes:
            self._on_data_changed(self._state.data)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("[%s] listener failed", self.name)

    def _next_token(self) -> int:
        self._request_token += 1
        return self._request_token

    def _is_current(self, token: int) -> bool:
        return token == self._request_token

    async def _run_load(self, fetch: Callable[[], Awaitable[T]]) -> T | None:
        """Fetch and replace the data, unless a newer load supersedes it.

        Any error is translated with :func:`to_app_error` and stored on the
        state instead of being raised.

        Returns:
            The fetched data, or None if the load failed or was superseded
        """
        token = self._next_token()
        self._set_state(is_loading=True, error=None)
        try:
            data = await fetch()
        except Exception as e:
            message = to_app_error(e).message
            logger.warning("[%s] load failed: %s", self.name, message)
            if self._is_current(token):
                self._set_state(is_loading=False, error=message)
            return None
        if not self._is_current(token):
            logger.debug("[%s] discarding superseded load token=%d", self.name, token)
            return None
        self._set_state(data=data, is_loading=False, error=None)
        return data

    async def _optimistic(
        self,
        apply: Callable[[T], T],
        remote: Callable[[], Awaitable[R]],
        revert: Callable[[T], T] | None = None,
    ) -> R:
        """Apply a local change, then confirm it remotely.

        On remote failure the change is undone, the error message is stored,
        and the error is re-raised. With ``revert`` the undo is applied to the
        data current at that point, so changes made by others while the
        remote call was pending are kept; without it the data captured
        before ``apply`` is restored.
        """
        snapshot = self._state.data
        self._set_state(data=apply(snapshot), error=None)
        try:
            return await remote()
        except AppError as e:
            error = to_app_error(e)
            logger.warning("[%s] mutation failed, rolling back: %s", self.name, error.message)
            data = revert(self._state.data) if revert is not None else snapshot
            self._set_state(data=data, error=error.message)
            if error is e:
                raise
            raise error from e

    async def _mutate(self, remote: Callable[[], Awaitable[R]]) -> R:
        """Run a non-optimistic remote mutation, recording any error."""
        try:
            return await remote()
        except AppError as e:
            error = to_app_error(e)
            self._set_state(error=error.message)
            if error is e:
                raise
            raise error from e

    async def load(self) -> T | None:
        raise NotImplementedError

    async def refresh(self) -> T | None:
        return await self.load()
