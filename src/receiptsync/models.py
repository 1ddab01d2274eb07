"""Data models for receipts, notifications, claims and account state."""

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

EXCHANGE_RATE_TTL = timedelta(hours=24)


class NotificationType(str, Enum):
    """Event kinds that produce a notification row."""

    RECEIPT_PROCESSING_STARTED = "receipt_processing_started"
    RECEIPT_PROCESSING_COMPLETED = "receipt_processing_completed"
    RECEIPT_PROCESSING_FAILED = "receipt_processing_failed"
    RECEIPT_READY_FOR_REVIEW = "receipt_ready_for_review"
    RECEIPT_BATCH_COMPLETED = "receipt_batch_completed"
    RECEIPT_BATCH_FAILED = "receipt_batch_failed"
    RECEIPT_SHARED = "receipt_shared"
    RECEIPT_COMMENT_ADDED = "receipt_comment_added"
    RECEIPT_EDITED_BY_TEAM_MEMBER = "receipt_edited_by_team_member"
    RECEIPT_APPROVED_BY_TEAM = "receipt_approved_by_team"
    RECEIPT_FLAGGED_FOR_REVIEW = "receipt_flagged_for_review"
    TEAM_INVITATION_SENT = "team_invitation_sent"
    TEAM_INVITATION_ACCEPTED = "team_invitation_accepted"
    TEAM_MEMBER_JOINED = "team_member_joined"
    TEAM_MEMBER_LEFT = "team_member_left"
    TEAM_MEMBER_REMOVED = "team_member_removed"
    TEAM_MEMBER_ROLE_CHANGED = "team_member_role_changed"
    TEAM_SETTINGS_UPDATED = "team_settings_updated"
    CLAIM_SUBMITTED = "claim_submitted"
    CLAIM_APPROVED = "claim_approved"
    CLAIM_REJECTED = "claim_rejected"
    CLAIM_REVIEW_REQUESTED = "claim_review_requested"


class NotificationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ProcessingStatus(str, Enum):
    """Server-assigned stage of a receipt's extraction."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    MANUAL_REVIEW = "manual_review"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ProcessingStatus.COMPLETED,
            ProcessingStatus.FAILED,
            ProcessingStatus.MANUAL_REVIEW,
        )


class ReceiptStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class ClaimStatus(str, Enum):
    """Workflow states of an expense claim."""

    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


# Legacy and review-stage statuses still written by the backend
CLAIM_STATUS_ALIASES = {"submitted": "pending", "under_review": "pending"}


def _claim_status(value: Any) -> Any:
    if isinstance(value, str):
        return CLAIM_STATUS_ALIASES.get(value, value)
    return value


class ClaimPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class SubscriptionTier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"


class ThemeMode(str, Enum):
    SYSTEM = "system"
    LIGHT = "light"
    DARK = "dark"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    """Treat naive timestamps from the backend as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Notification(BaseModel):
    """A notification row addressed to a single recipient."""

    id: str
    recipient_id: str
    team_id: str | None = None
    type: NotificationType
    priority: NotificationPriority = NotificationPriority.MEDIUM
    title: str
    message: str
    action_url: str | None = None
    read_at: datetime | None = None
    archived_at: datetime | None = None
    related_entity_type: str | None = None
    related_entity_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    expires_at: datetime | None = None
    team_name: str | None = None

    @field_validator("priority", mode="before")
    @classmethod
    def _default_unknown_priority(cls, value: Any) -> Any:
        if value is None:
            return NotificationPriority.MEDIUM
        if isinstance(value, str) and value not in NotificationPriority._value2member_map_:
            return NotificationPriority.MEDIUM
        return value

    @field_validator("metadata", mode="before")
    @classmethod
    def _none_metadata(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("read_at", "archived_at", "created_at", "expires_at")
    @classmethod
    def _timestamps_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @property
    def is_read(self) -> bool:
        return self.read_at is not None

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or _utcnow())


class NotificationFilters(BaseModel):
    """Optional filters applied when fetching a page of notifications."""

    model_config = ConfigDict(frozen=True)

    team_id: str | None = None
    types: list[NotificationType] | None = None
    priority: NotificationPriority | None = None
    unread_only: bool = False
    date_from: datetime | None = None
    date_to: datetime | None = None
    include_archived: bool = False


class NotificationStats(BaseModel):
    total_notifications: int = 0
    unread_notifications: int = 0
    high_priority_unread: int = 0
    recent_notifications: int = 0


class NotificationPreferences(BaseModel):
    """Per-user delivery switches.

    Per-type toggles are stored as ``push_<type>`` / ``email_<type>`` columns
    on the backend row. A type without a stored toggle is enabled.
    """

    user_id: str | None = None
    push_enabled: bool = True
    email_enabled: bool = True
    push_types: dict[NotificationType, bool] = Field(default_factory=dict)
    email_types: dict[NotificationType, bool] = Field(default_factory=dict)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "NotificationPreferences":
        push_types: dict[NotificationType, bool] = {}
        email_types: dict[NotificationType, bool] = {}
        for notification_type in NotificationType:
            push_value = row.get(f"push_{notification_type.value}")
            if push_value is not None:
                push_types[notification_type] = bool(push_value)
            email_value = row.get(f"email_{notification_type.value}")
            if email_value is not None:
                email_types[notification_type] = bool(email_value)
        return cls(
            user_id=row.get("user_id"),
            push_enabled=row.get("push_enabled", True) is not False,
            email_enabled=row.get("email_enabled", True) is not False,
            push_types=push_types,
            email_types=email_types,
        )

    def allows_push(self, notification_type: NotificationType) -> bool:
        if not self.push_enabled:
            return False
        return self.push_types.get(notification_type, True)


class LineItem(BaseModel):
    """Individual line item on a stored receipt."""

    id: str | None = None
    receipt_id: str | None = None
    description: str
    amount: float


class Receipt(BaseModel):
    """A stored receipt as held by the client.

    Field aliases are the backend column names.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    user_id: str
    team_id: str | None = None
    merchant_name: str | None = Field(default=None, alias="merchant")
    transaction_date: str | None = Field(default=None, alias="date")  # YYYY-MM-DD
    total_amount: float | None = Field(default=None, alias="total")
    currency: str = "MYR"
    tax_amount: float | None = Field(default=None, alias="tax")
    payment_method: str | None = None
    category_id: str | None = Field(default=None, alias="custom_category_id")
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    status: ReceiptStatus = ReceiptStatus.DRAFT
    line_items: list[LineItem] = Field(default_factory=list)
    image_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("line_items", mode="before")
    @classmethod
    def _none_line_items(cls, value: Any) -> Any:
        return [] if value is None else value


# Model field name -> backend column for receipt updates
RECEIPT_COLUMN_MAP = {
    "merchant_name": "merchant",
    "transaction_date": "date",
    "total_amount": "total",
    "tax_amount": "tax",
    "category_id": "custom_category_id",
}


class ExtractedLineItem(BaseModel):
    description: str
    amount: float | None = None


class ExtractedReceipt(BaseModel):
    """Structured receipt data returned by the vision model."""

    merchant_name: str
    date: str  # YYYY-MM-DD format
    total_amount: float
    currency: str = "MYR"
    tax: float | None = None
    payment_method: str | None = None
    items: list[ExtractedLineItem] = Field(default_factory=list)
    confidence_score: float = Field(ge=0.0, le=1.0)


class ExtractionResult(BaseModel):
    """Wrapper for extraction result with metadata."""

    receipt: ExtractedReceipt
    input_tokens: int
    output_tokens: int
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    processing_time: float  # in seconds
    timestamp: datetime = Field(default_factory=_utcnow)


class Claim(BaseModel):
    id: str
    team_id: str
    claimant_id: str
    title: str
    description: str | None = None
    amount: float
    currency: str = "USD"
    category: str | None = None
    priority: ClaimPriority = ClaimPriority.MEDIUM
    status: ClaimStatus = ClaimStatus.DRAFT
    attachments: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    reviewed_by: str | None = None
    approved_by: str | None = None
    rejection_reason: str | None = None
    submitted_at: datetime | None = None
    reviewed_at: datetime | None = None
    approved_at: datetime | None = None
    paid_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _status_alias(cls, value: Any) -> Any:
        return _claim_status(value)

    @field_validator("attachments", "metadata", mode="before")
    @classmethod
    def _none_collections(cls, value: Any, info) -> Any:
        if value is None:
            return [] if info.field_name == "attachments" else {}
        return value


class CreateClaimRequest(BaseModel):
    team_id: str
    title: str
    amount: float
    description: str | None = None
    currency: str = "USD"
    category: str | None = None
    priority: ClaimPriority = ClaimPriority.MEDIUM
    attachments: list[str] = Field(default_factory=list)


class ClaimFilters(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: ClaimStatus | None = None
    priority: ClaimPriority | None = None
    claimant_id: str | None = None
    category: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    amount_min: float | None = None
    amount_max: float | None = None


class ClaimAuditEntry(BaseModel):
    id: str | None = None
    claim_id: str
    user_id: str | None = None
    action: str
    old_status: ClaimStatus | None = None
    new_status: ClaimStatus | None = None
    comment: str | None = None
    created_at: datetime | None = None

    @field_validator("old_status", "new_status", mode="before")
    @classmethod
    def _status_alias(cls, value: Any) -> Any:
        return _claim_status(value)


class ClaimStats(BaseModel):
    total_claims: int = 0
    pending_claims: int = 0
    approved_claims: int = 0
    rejected_claims: int = 0
    total_amount: float = 0.0
    approved_amount: float = 0.0


class Category(BaseModel):
    id: str
    user_id: str | None = None
    team_id: str | None = None
    name: str
    color: str = "#3B82F6"
    icon: str = "tag"
    receipt_count: int = 0
    created_at: datetime | None = None

    @field_validator("receipt_count", mode="before")
    @classmethod
    def _none_count(cls, value: Any) -> Any:
        return 0 if value is None else value


class Subscription(BaseModel):
    tier: SubscriptionTier = SubscriptionTier.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    receipts_used_this_month: int = 0
    monthly_reset_date: datetime | None = None
    subscription_start_date: datetime | None = None
    subscription_end_date: datetime | None = None
    trial_end_date: datetime | None = None

    @field_validator(
        "monthly_reset_date",
        "subscription_start_date",
        "subscription_end_date",
        "trial_end_date",
    )
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @classmethod
    def from_profile(cls, row: dict[str, Any]) -> "Subscription":
        return cls(
            tier=row.get("subscription_tier") or SubscriptionTier.FREE,
            status=row.get("subscription_status") or SubscriptionStatus.ACTIVE,
            receipts_used_this_month=row.get("receipts_used_this_month") or 0,
            monthly_reset_date=row.get("monthly_reset_date"),
            subscription_start_date=row.get("subscription_start_date"),
            subscription_end_date=row.get("subscription_end_date"),
            trial_end_date=row.get("trial_end_date"),
        )


class ExchangeRateEntry(BaseModel):
    """Cached exchange rates for one base currency."""

    base: str
    rates: dict[str, float]
    fetched_at: datetime = Field(default_factory=_utcnow)

    @field_validator("fetched_at")
    @classmethod
    def _fetched_at_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    def is_stale(self, now: datetime | None = None) -> bool:
        return (now or _utcnow()) - self.fetched_at > EXCHANGE_RATE_TTL
