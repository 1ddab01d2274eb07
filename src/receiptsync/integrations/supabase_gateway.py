"""Typed wrapper around the Supabase async client.

Every call is a thin pass-through to the SDK. Failures are wrapped in
:class:`GatewayError`; interpretation is left to callers via
:func:`receiptsync.errors.classify_backend_error`.
"""

import inspect
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from supabase import AsyncClient, acreate_client
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from receiptsync.config import Settings
from receiptsync.errors import (
    AuthError,
    BackendCondition,
    GatewayError,
    classify_backend_error,
)

logger = logging.getLogger(__name__)

Row = dict[str, Any]


def _is_transient_init_error(exception: BaseException) -> bool:
    """Determine if client initialization should be retried.

    Only transport-level failures are retried; bad credentials or URLs
    fail immediately.

    Args:
        exception: The exception to check

    Returns:
        True if the exception is retryable, False otherwise
    """
    return isinstance(exception, httpx.TransportError | ConnectionError | TimeoutError)


class SupabaseGateway:
    """Remote data gateway for auth, profiles, storage, RPC and tables."""

    def __init__(self, settings: Settings, client: AsyncClient | None = None) -> None:
        self.settings = settings
        self._client = client

    @property
    def client(self) -> AsyncClient:
        if self._client is None:
            raise GatewayError("Gateway is not connected; call connect() first")
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    @retry(
        retry=retry_if_exception(_is_transient_init_error),
        stop=stop_after_attempt(3),
        wait=wait_incrementing(start=0.5, increment=0.5),
        reraise=True,
    )
    async def _create_client(self, url: str, key: str) -> AsyncClient:
        logger.debug("[gateway] creating client url=%s", url)
        return await acreate_client(url, key)

    async def connect(self) -> AsyncClient:
        """Create the SDK client, retrying transient failures up to 3 times."""
        if self._client is not None:
            return self._client
        url, key = self.settings.require_backend()
        try:
            self._client = await self._create_client(url, key)
        except Exception as e:
            raise GatewayError.wrap(e, "connect") from e
        logger.info("[gateway] connected")
        return self._client

    # --- Auth ------------------------------------------------------------

    async def sign_in(self, email: str, password: str) -> Any:
        try:
            response = await self.client.auth.sign_in_with_password(
                {"email": email, "password": password}
            )
        except Exception as e:
            raise GatewayError.wrap(e, "sign_in") from e
        logger.info("[gateway:auth] signed in email=%s", email)
        return response

    async def sign_up(
        self, email: str, password: str, data: dict[str, Any] | None = None
    ) -> Any:
        credentials: dict[str, Any] = {"email": email, "password": password}
        if data:
            credentials["options"] = {"data": data}
        try:
            return await self.client.auth.sign_up(credentials)
        except Exception as e:
            raise GatewayError.wrap(e, "sign_up") from e

    async def sign_out(self) -> None:
        try:
            await self.client.auth.sign_out()
        except Exception as e:
            raise GatewayError.wrap(e, "sign_out") from e

    async def reset_password(self, email: str) -> None:
        try:
            await self.client.auth.reset_password_for_email(email)
        except Exception as e:
            raise GatewayError.wrap(e, "reset_password") from e

    async def current_user_id(self) -> str:
        """Return the signed-in user's id.

        Raises:
            AuthError: If no user is signed in
        """
        try:
            response = await self.client.auth.get_user()
        except Exception as e:
            raise GatewayError.wrap(e, "get_user") from e
        user = getattr(response, "user", None) if response is not None else None
        if user is None:
            raise AuthError("User not authenticated")
        return user.id

    # --- Profiles --------------------------------------------------------

    async def get_profile(self, user_id: str) -> Row | None:
        return await self.select_one("profiles", eq={"id": user_id})

    async def create_profile(
        self,
        user_id: str,
        email: str,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> Row:
        now = datetime.now(UTC)
        profile = {
            "id": user_id,
            "email": email,
            "first_name": first_name,
            "last_name": last_name,
            "subscription_tier": "free",
            "subscription_status": "active",
            "receipts_used_this_month": 0,
            "monthly_reset_date": (now + timedelta(days=30)).isoformat(),
            "preferred_language": "en",
            "created_at": now.isoformat(),
            "updated_at": now.isoformat(),
        }
        rows = await self.insert("profiles", profile)
        return rows[0] if rows else profile

    async def update_profile(self, user_id: str, updates: dict[str, Any]) -> Row | None:
        if not updates:
            return None
        values = {**updates, "updated_at": datetime.now(UTC).isoformat()}
        rows = await self.update("profiles", values, eq={"id": user_id})
        return rows[0] if rows else None

    # --- Storage ---------------------------------------------------------

    async def upload_file(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str = "image/jpeg",
    ) -> str:
        """Upload bytes to a storage bucket and return the public URL.

        When the object already exists the upload is retried once with
        upsert enabled.

        Args:
            bucket: Storage bucket name
            path: Object path inside the bucket
            data: File contents
            content_type: MIME type stored with the object

        Returns:
            Public URL of the uploaded object

        Raises:
            GatewayError: For any SDK or transport failure
        """
        storage = self.client.storage.from_(bucket)
        options = {
            "content-type": content_type,
            "cache-control": "3600",
            "upsert": "false",
        }
        try:
            await storage.upload(path=path, file=data, file_options=options)
        except Exception as e:
            if classify_backend_error(e) is not BackendCondition.DUPLICATE:
                raise GatewayError.wrap(e, "upload_file") from e
            logger.info("[gateway:storage] %s exists, retrying with upsert", path)
            try:
                await storage.upload(
                    path=path, file=data, file_options={**options, "upsert": "true"}
                )
            except Exception as retry_error:
                raise GatewayError.wrap(retry_error, "upload_file") from retry_error

        try:
            url = storage.get_public_url(path)
            if inspect.isawaitable(url):
                url = await url
        except Exception as e:
            raise GatewayError.wrap(e, "get_public_url") from e
        logger.debug("[gateway:storage] uploaded bucket=%s path=%s bytes=%d", bucket, path, len(data))
        return url

    async def delete_file(self, bucket: str, path: str) -> None:
        try:
            await self.client.storage.from_(bucket).remove([path])
        except Exception as e:
            raise GatewayError.wrap(e, "delete_file") from e

    # --- RPC -------------------------------------------------------------

    async def rpc(self, name: str, params: dict[str, Any] | None = None) -> Any:
        try:
            response = await self.client.rpc(name, params or {}).execute()
        except Exception as e:
            raise GatewayError.wrap(e, f"rpc:{name}") from e
        return response.data

    # --- Tables ----------------------------------------------------------

    async def select(
        self,
        table: str,
        columns: str = "*",
        *,
        eq: dict[str, Any] | None = None,
        neq: dict[str, Any] | None = None,
        in_: dict[str, list[Any]] | None = None,
        is_null: list[str] | None = None,
        not_null: list[str] | None = None,
        gte: dict[str, Any] | None = None,
        lte: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Row]:
        """Run a filtered table query.

        Args:
            table: Table name
            columns: PostgREST column selector (embedded resources allowed)
            eq: Column equality filters
            neq: Column inequality filters
            in_: Column membership filters
            is_null: Columns that must be null
            not_null: Columns that must not be null
            gte: Lower bounds (inclusive)
            lte: Upper bounds (inclusive)
            order_by: Column to order by
            descending: Order direction
            limit: Page size
            offset: Rows to skip, requires limit

        Returns:
            List of row dictionaries
        """
        query = self.client.table(table).select(columns)
        for column, value in (eq or {}).items():
            query = query.eq(column, value)
        for column, value in (neq or {}).items():
            query = query.neq(column, value)
        for column, values in (in_ or {}).items():
            query = query.in_(column, values)
        for column in is_null or []:
            query = query.is_(column, "null")
        for column in not_null or []:
            query = query.not_.is_(column, "null")
        for column, value in (gte or {}).items():
            query = query.gte(column, value)
        for column, value in (lte or {}).items():
            query = query.lte(column, value)
        if order_by:
            query = query.order(order_by, desc=descending)
        if limit is not None and offset:
            query = query.range(offset, offset + limit - 1)
        elif limit is not None:
            query = query.limit(limit)

        try:
            response = await query.execute()
        except Exception as e:
            raise GatewayError.wrap(e, f"select:{table}") from e
        return list(response.data or [])

    async def select_one(
        self, table: str, columns: str = "*", *, eq: dict[str, Any]
    ) -> Row | None:
        query = self.client.table(table).select(columns)
        for column, value in eq.items():
            query = query.eq(column, value)
        try:
            response = await query.maybe_single().execute()
        except Exception as e:
            raise GatewayError.wrap(e, f"select_one:{table}") from e
        if response is None:
            return None
        return response.data

    async def insert(self, table: str, rows: Row | list[Row]) -> list[Row]:
        try:
            response = await self.client.table(table).insert(rows).execute()
        except Exception as e:
            raise GatewayError.wrap(e, f"insert:{table}") from e
        return list(response.data or [])

    async def update(
        self, table: str, values: Row, *, eq: dict[str, Any], is_null: list[str] | None = None
    ) -> list[Row]:
        query = self.client.table(table).update(values)
        for column, value in eq.items():
            query = query.eq(column, value)
        for column in is_null or []:
            query = query.is_(column, "null")
        try:
            response = await query.execute()
        except Exception as e:
            raise GatewayError.wrap(e, f"update:{table}") from e
        return list(response.data or [])

    async def delete(self, table: str, *, eq: dict[str, Any]) -> list[Row]:
        query = self.client.table(table).delete()
        for column, value in eq.items():
            query = query.eq(column, value)
        try:
            response = await query.execute()
        except Exception as e:
            raise GatewayError.wrap(e, f"delete:{table}") from e
        return list(response.data or [])

    # --- Realtime --------------------------------------------------------

    def channel(self, name: str) -> Any:
        return self.client.channel(name)

    async def remove_channel(self, channel: Any) -> None:
        try:
            await self.client.remove_channel(channel)
        except Exception as e:
            raise GatewayError.wrap(e, "remove_channel") from e
