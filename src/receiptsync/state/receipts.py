"""Receipts container: listing, upload, manual edits and realtime updates."""

import asyncio
import logging
import mimetypes
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime
from pathlib import PurePath
from typing import Any

from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from receiptsync.config import Settings
from receiptsync.errors import (
    AppError,
    DataValidationError,
    NetworkError,
    PaymentError,
    ServerError,
    to_app_error,
    to_upload_error,
)
from receiptsync.integrations.realtime import (
    ChangeEvent,
    ChangeType,
    ChannelSubscription,
    RealtimeBridge,
)
from receiptsync.integrations.supabase_gateway import SupabaseGateway
from receiptsync.integrations.vision_extractor import VisionExtractor, validate_image
from receiptsync.models import (
    RECEIPT_COLUMN_MAP,
    LineItem,
    ProcessingStatus,
    Receipt,
    ReceiptStatus,
)
from receiptsync.state.base import StateContainer
from receiptsync.state.subscription import SubscriptionContainer

logger = logging.getLogger(__name__)

RECEIPT_COLUMNS = "*, line_items (*)"

DEFAULT_BATCH_CONCURRENCY = 3


def _is_transient_upload_error(exception: BaseException) -> bool:
    """Determine if a batch item upload should be retried.

    Only connectivity failures are retried; validation, quota and
    permission errors fail the item immediately.
    """
    return isinstance(to_app_error(exception), NetworkError)


@dataclass(frozen=True)
class BatchUploadItem:
    image: bytes
    filename: str
    content_type: str | None = None


@dataclass(frozen=True)
class BatchUploadResult:
    """Outcome of one item of a batch upload."""

    filename: str
    receipt: Receipt | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.receipt is not None


def validate_receipt_data(data: dict[str, Any]) -> dict[str, str]:
    """Presence and range checks for a manually edited receipt.

    Returns:
        Mapping of field name to error message; empty when valid
    """
    errors: dict[str, str] = {}
    merchant = data.get("merchant_name")
    if merchant is None or not str(merchant).strip():
        errors["merchant_name"] = "Merchant name is required"
    if data.get("transaction_date") is None:
        errors["transaction_date"] = "Transaction date is required"
    total = data.get("total_amount")
    if total is None or total <= 0:
        errors["total_amount"] = "Total amount must be greater than 0"
    return errors


def validate_line_item(item: LineItem) -> dict[str, str]:
    errors: dict[str, str] = {}
    if not item.description.strip():
        errors["description"] = "Description is required"
    if item.amount <= 0:
        errors["amount"] = "Amount must be greater than 0"
    return errors


def to_columns(changes: dict[str, Any]) -> dict[str, Any]:
    """Rename model fields to backend columns and serialise values."""
    row: dict[str, Any] = {}
    for field, value in changes.items():
        if field in ("id", "line_items", "created_at"):
            continue
        if isinstance(value, date | datetime):
            value = value.isoformat()
        elif hasattr(value, "value"):
            value = value.value
        row[RECEIPT_COLUMN_MAP.get(field, field)] = value
    return row


class ReceiptsContainer(StateContainer[list[Receipt]]):
    """The signed-in user's receipts, newest first."""

    name = "receipts"

    def __init__(
        self,
        gateway: SupabaseGateway,
        settings: Settings | None = None,
        extractor: VisionExtractor | None = None,
        subscription: SubscriptionContainer | None = None,
    ) -> None:
        super().__init__([])
        self.gateway = gateway
        self.settings = settings or Settings()
        self.extractor = extractor
        self.subscription = subscription
        self._query: dict[str, Any] = {}
        self._realtime: ChannelSubscription | None = None

    def get(self, receipt_id: str) -> Receipt | None:
        return next((r for r in self.data if r.id == receipt_id), None)

    # --- Loading ---------------------------------------------------------

    async def _fetch(self) -> list[Receipt]:
        user_id = await self.gateway.current_user_id()
        query = self._query
        gte = {"date": query["date_from"].isoformat()} if query.get("date_from") else None
        lte = {"date": query["date_to"].isoformat()} if query.get("date_to") else None
        eq: dict[str, Any] = {"user_id": user_id}
        if query.get("status"):
            eq["status"] = query["status"].value
        rows = await self.gateway.select(
            "receipts",
            RECEIPT_COLUMNS,
            eq=eq,
            gte=gte,
            lte=lte,
            order_by="created_at",
            descending=True,
            limit=query.get("limit"),
            offset=query.get("offset"),
        )
        return [Receipt.model_validate(row) for row in rows]

    async def load(
        self,
        date_from: date | None = None,
        date_to: date | None = None,
        status: ReceiptStatus | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Receipt] | None:
        self._query = {
            "date_from": date_from,
            "date_to": date_to,
            "status": status,
            "limit": limit,
            "offset": offset,
        }
        return await self._run_load(self._fetch)

    async def refresh(self) -> list[Receipt] | None:
        return await self._run_load(self._fetch)

    def _patch(self, receipt: Receipt, prepend: bool = False) -> None:
        current = list(self.data)
        for index, existing in enumerate(current):
            if existing.id == receipt.id:
                current[index] = receipt
                break
        else:
            if prepend:
                current.insert(0, receipt)
            else:
                current.append(receipt)
        self._set_state(data=current)

    # --- Upload ----------------------------------------------------------

    async def upload_receipt(
        self,
        image: bytes,
        filename: str,
        content_type: str | None = None,
        team_id: str | None = None,
        currency: str = "MYR",
    ) -> Receipt:
        """Upload a receipt image and create its pending receipt row.

        Args:
            image: Image bytes
            filename: Original file name, used for the extension
            content_type: MIME type (guessed from filename when omitted)
            team_id: Optional team the receipt belongs to
            currency: Initial currency for the receipt

        Returns:
            The created receipt, already prepended to the container

        Raises:
            FileError: If the image is empty, too small, too large or unsupported
            PaymentError: If the plan's monthly receipt limit is reached
            AppError: If the subscription cannot be read, or the upload or
                insert fails (a failed insert removes the uploaded image)
        """
        content_type = content_type or mimetypes.guess_type(filename)[0] or "image/jpeg"
        try:
            validate_image(
                image,
                content_type,
                max_bytes=self.settings.max_upload_bytes,
                min_bytes=self.settings.min_upload_bytes,
            )
            await self._check_quota()

            user_id = await self.gateway.current_user_id()
            receipt_id = str(uuid.uuid4())
            extension = PurePath(filename).suffix.lower() or ".jpg"
            path = f"{user_id}/receipt_{receipt_id}{extension}"

            try:
                image_url = await self.gateway.upload_file(
                    self.settings.storage_bucket, path, image, content_type
                )
            except AppError as e:
                raise to_upload_error(e) from e

            now = datetime.now(UTC)
            row = {
                "id": receipt_id,
                "user_id": user_id,
                "team_id": team_id,
                "merchant": "Processing...",
                "date": now.date().isoformat(),
                "total": 0,
                "currency": currency,
                "status": ReceiptStatus.DRAFT.value,
                "processing_status": ProcessingStatus.PENDING.value,
                "image_url": image_url,
                "created_at": now.isoformat(),
                "updated_at": now.isoformat(),
            }
            try:
                rows = await self.gateway.insert("receipts", row)
            except AppError:
                await self._discard_upload(path)
                raise
        except AppError as e:
            self._set_state(error=e.message)
            raise

        receipt = Receipt.model_validate(rows[0] if rows else row)
        self._patch(receipt, prepend=True)
        logger.info("[receipts] uploaded id=%s bytes=%d", receipt.id, len(image))
        if self.subscription is not None and self.subscription.data is not None:
            try:
                await self.subscription.record_usage()
            except AppError as e:
                logger.warning("[receipts] failed to record usage: %s", e)
        return receipt

    async def _check_quota(self, count: int = 1) -> None:
        subscription = self.subscription
        if subscription is None:
            return
        await subscription.ensure_loaded()
        if not subscription.can_upload_receipts(count):
            raise PaymentError(
                "Monthly receipt limit reached. Upgrade your plan to upload more receipts."
            )
        if count > 1 and not subscription.can_batch_upload(count):
            raise PaymentError(
                f"Your plan allows up to {subscription.limits.batch_upload_limit} "
                "receipts per batch.",
                code="batch_limit",
            )

    async def _discard_upload(self, path: str) -> None:
        """Remove an image whose receipt row could not be created."""
        try:
            await self.gateway.delete_file(self.settings.storage_bucket, path)
        except AppError as e:
            logger.warning("[receipts] failed to remove orphaned upload %s: %s", path, e)

    @retry(
        retry=retry_if_exception(_is_transient_upload_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _upload_item(
        self, item: BatchUploadItem, team_id: str | None, currency: str
    ) -> Receipt:
        return await self.upload_receipt(
            item.image, item.filename, item.content_type, team_id, currency
        )

    async def upload_batch(
        self,
        items: Iterable[BatchUploadItem],
        team_id: str | None = None,
        currency: str = "MYR",
        max_concurrency: int = DEFAULT_BATCH_CONCURRENCY,
    ) -> list[BatchUploadResult]:
        """Upload several receipt images, a few at a time.

        The whole batch is checked against the plan before anything is
        uploaded. After that each item succeeds or fails on its own;
        connectivity failures are retried before an item is given up.

        Args:
            items: Images to upload
            team_id: Optional team every receipt belongs to
            currency: Initial currency for every receipt
            max_concurrency: Maximum uploads in flight at once

        Returns:
            One result per item, in input order

        Raises:
            PaymentError: If the batch exceeds the plan's batch or monthly limit
            AppError: If the subscription cannot be read
        """
        items = list(items)
        if not items:
            return []
        try:
            await self._check_quota(len(items))
        except AppError as e:
            self._set_state(error=e.message)
            raise

        semaphore = asyncio.Semaphore(max(1, max_concurrency))

        async def run(item: BatchUploadItem) -> BatchUploadResult:
            async with semaphore:
                try:
                    receipt = await self._upload_item(item, team_id, currency)
                except AppError as e:
                    logger.warning("[receipts] batch item %s failed: %s", item.filename, e)
                    return BatchUploadResult(item.filename, error=e.message)
            return BatchUploadResult(item.filename, receipt=receipt)

        results = await asyncio.gather(*(run(item) for item in items))
        failed = sum(1 for result in results if not result.ok)
        logger.info(
            "[receipts] batch finished uploaded=%d failed=%d", len(results) - failed, failed
        )
        return list(results)

    async def wait_for_processing(
        self, receipt_id: str, timeout: float = 120.0, interval: float = 2.0
    ) -> Receipt:
        """Poll a receipt row until its processing status is terminal.

        Raises:
            ServerError: If processing does not finish within ``timeout``
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            row = await self.gateway.select_one(
                "receipts", RECEIPT_COLUMNS, eq={"id": receipt_id}
            )
            if row is not None:
                receipt = Receipt.model_validate(row)
                self._patch(receipt)
                if receipt.processing_status.is_terminal:
                    return receipt
            if loop.time() + interval > deadline:
                raise ServerError(
                    f"Timed out waiting for receipt {receipt_id} to finish processing",
                    code="processing_timeout",
                )
            await asyncio.sleep(interval)

    async def extract_and_apply(
        self, receipt_id: str, image: bytes, content_type: str = "image/jpeg"
    ) -> Receipt:
        """Run local vision extraction and save the result as a manual edit."""
        if self.extractor is None:
            raise ServerError("Vision extraction is not configured")
        result = await self.extractor.extract(image, content_type)
        extracted = result.receipt
        changes = {
            "merchant_name": extracted.merchant_name,
            "transaction_date": extracted.date,
            "total_amount": extracted.total_amount,
            "currency": extracted.currency,
            "tax_amount": extracted.tax,
            "payment_method": extracted.payment_method,
        }
        line_items = [
            LineItem(description=item.description, amount=item.amount)
            for item in extracted.items
            if item.description.strip() and item.amount and item.amount > 0
        ]
        return await self.update_receipt(receipt_id, changes, line_items)

    # --- Edits -----------------------------------------------------------

    async def update_receipt(
        self,
        receipt_id: str,
        changes: dict[str, Any],
        line_items: list[LineItem] | None = None,
    ) -> Receipt:
        """Save a manual edit, forcing the processing status to completed.

        Args:
            receipt_id: Receipt to update
            changes: Model field names mapped to new values
            line_items: Replacement line items; None leaves them untouched,
                an empty list removes all of them

        Returns:
            The updated receipt as stored by the backend

        Raises:
            DataValidationError: If the merged receipt or a line item is invalid
        """
        existing = self.get(receipt_id)
        merged = {**(existing.model_dump() if existing else {}), **changes}
        errors = validate_receipt_data(merged)
        for index, item in enumerate(line_items or []):
            for field, message in validate_line_item(item).items():
                errors[f"line_items[{index}].{field}"] = message
        if errors:
            error = DataValidationError(
                "; ".join(errors.values()), code="invalid_receipt", details=errors
            )
            self._set_state(error=error.message)
            raise error

        async def remote() -> Receipt:
            now = datetime.now(UTC).isoformat()
            row = to_columns(changes)
            row["processing_status"] = ProcessingStatus.COMPLETED.value
            row["updated_at"] = now
            await self.gateway.update("receipts", row, eq={"id": receipt_id})
            if line_items is not None:
                await self._replace_line_items(receipt_id, line_items, now)
            stored = await self.gateway.select_one(
                "receipts", RECEIPT_COLUMNS, eq={"id": receipt_id}
            )
            if stored is None:
                raise ServerError(f"Receipt {receipt_id} not found after update")
            return Receipt.model_validate(stored)

        receipt = await self._mutate(remote)
        self._patch(receipt)
        return receipt

    async def _replace_line_items(
        self, receipt_id: str, line_items: list[LineItem], now: str
    ) -> None:
        await self.gateway.delete("line_items", eq={"receipt_id": receipt_id})
        rows = []
        for item in line_items:
            if not item.description.strip():
                continue
            row: dict[str, Any] = {
                "receipt_id": receipt_id,
                "description": item.description.strip(),
                "amount": item.amount,
                "created_at": now,
                "updated_at": now,
            }
            if item.id and not item.id.startswith("temp-"):
                row["id"] = item.id
            rows.append(row)
        if rows:
            await self.gateway.insert("line_items", rows)

    async def delete_receipt(self, receipt_id: str) -> None:
        await self._optimistic(
            lambda data: [r for r in data if r.id != receipt_id],
            lambda: self.gateway.delete("receipts", eq={"id": receipt_id}),
        )

    # --- Realtime --------------------------------------------------------

    async def apply_change(self, event: ChangeEvent) -> None:
        """Apply a realtime change pushed for the receipts table."""
        if event.type is ChangeType.DELETE:
            receipt_id = event.old_record.get("id") or event.record.get("id")
            if receipt_id:
                self._set_state(data=[r for r in self.data if r.id != receipt_id])
            return
        try:
            receipt = Receipt.model_validate(event.record)
        except ValueError as e:
            logger.warning("[receipts] ignoring malformed change: %s", e)
            return
        existing = self.get(receipt.id)
        if existing is not None and "line_items" not in event.record:
            receipt = receipt.model_copy(update={"line_items": existing.line_items})
        self._patch(receipt, prepend=event.type is ChangeType.INSERT)

    async def subscribe_realtime(self, bridge: RealtimeBridge) -> ChannelSubscription:
        user_id = await self.gateway.current_user_id()
        self._realtime = await bridge.subscribe(
            "receipts",
            filter=("user_id", user_id),
            on_insert=self.apply_change,
            on_update=self.apply_change,
            on_delete=self.apply_change,
        )
        return self._realtime
