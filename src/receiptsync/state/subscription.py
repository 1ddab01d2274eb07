"""Subscription tier, usage and plan limits."""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from receiptsync.errors import AuthError, to_app_error
from receiptsync.integrations.supabase_gateway import SupabaseGateway
from receiptsync.models import Subscription, SubscriptionStatus, SubscriptionTier
from receiptsync.state.base import StateContainer

logger = logging.getLogger(__name__)

UNLIMITED = -1


@dataclass(frozen=True)
class PlanLimits:
    tier: SubscriptionTier
    monthly_receipts: int  # UNLIMITED (-1) => no cap
    batch_upload_limit: int
    retention_days: int  # UNLIMITED (-1) => kept forever


PLAN_LIMIT_MATRIX: dict[SubscriptionTier, PlanLimits] = {
    SubscriptionTier.FREE: PlanLimits(SubscriptionTier.FREE, 50, 5, 7),
    SubscriptionTier.PREMIUM: PlanLimits(SubscriptionTier.PREMIUM, 200, 20, 90),
    SubscriptionTier.PRO: PlanLimits(SubscriptionTier.PRO, 500, 50, 365),
    SubscriptionTier.ENTERPRISE: PlanLimits(
        SubscriptionTier.ENTERPRISE, UNLIMITED, 100, UNLIMITED
    ),
}

TIER_ORDER = [
    SubscriptionTier.FREE,
    SubscriptionTier.PREMIUM,
    SubscriptionTier.PRO,
    SubscriptionTier.ENTERPRISE,
]

# Minimum tier that unlocks a feature; features not listed need PRO
FEATURE_TIERS: dict[str, SubscriptionTier] = {
    "batch_upload": SubscriptionTier.FREE,
    "claims": SubscriptionTier.FREE,
    "custom_categories": SubscriptionTier.FREE,
    "analytics": SubscriptionTier.PREMIUM,
    "version_control": SubscriptionTier.PRO,
    "custom_branding": SubscriptionTier.PRO,
    "api_access": SubscriptionTier.ENTERPRISE,
    "unlimited_users": SubscriptionTier.ENTERPRISE,
}


def limits_for(tier: SubscriptionTier) -> PlanLimits:
    return PLAN_LIMIT_MATRIX.get(tier, PLAN_LIMIT_MATRIX[SubscriptionTier.FREE])


def required_tier(feature: str) -> SubscriptionTier:
    return FEATURE_TIERS.get(feature, SubscriptionTier.PRO)


class SubscriptionContainer(StateContainer[Subscription | None]):
    """Holds the signed-in user's subscription, read from their profile."""

    name = "subscription"

    def __init__(self, gateway: SupabaseGateway) -> None:
        super().__init__(None)
        self.gateway = gateway

    async def _fetch(self) -> Subscription | None:
        user_id = await self.gateway.current_user_id()
        profile = await self.gateway.get_profile(user_id)
        if profile is None:
            logger.info("[subscription] no profile for user, assuming free tier")
            return Subscription()
        return Subscription.from_profile(profile)

    async def load(self) -> Subscription | None:
        return await self._run_load(self._fetch)

    async def ensure_loaded(self) -> Subscription:
        """Return the subscription, reading the profile first if needed.

        Unlike :meth:`load`, a failed read is raised so callers never mistake
        an unreadable profile for an exhausted plan.

        Raises:
            AppError: If the profile cannot be read
        """
        if self.data is not None:
            return self.data
        self._next_token()
        try:
            data = await self._fetch()
        except Exception as e:
            error = to_app_error(e)
            self._set_state(error=error.message)
            if error is e:
                raise
            raise error from e
        self._set_state(data=data, is_loading=False, error=None)
        return data

    @property
    def limits(self) -> PlanLimits:
        subscription = self.data or Subscription()
        return limits_for(subscription.tier)

    def receipts_used(self, now: datetime | None = None) -> int:
        """Usage this month; zero once the reset date has passed."""
        subscription = self.data
        if subscription is None:
            return 0
        reset = subscription.monthly_reset_date
        if reset is not None and reset <= (now or datetime.now(UTC)):
            return 0
        return subscription.receipts_used_this_month

    def remaining_receipts(self, now: datetime | None = None) -> int:
        """Receipts left this month, or -1 when the plan is unlimited."""
        monthly = self.limits.monthly_receipts
        if monthly == UNLIMITED:
            return UNLIMITED
        return max(monthly - self.receipts_used(now), 0)

    def is_active(self) -> bool:
        return self.data is not None and self.data.status is SubscriptionStatus.ACTIVE

    def can_upload_receipts(self, count: int = 1, now: datetime | None = None) -> bool:
        if self.data is None:
            return False
        remaining = self.remaining_receipts(now)
        return remaining == UNLIMITED or remaining >= count

    def can_batch_upload(self, count: int, now: datetime | None = None) -> bool:
        if not self.can_upload_receipts(count, now):
            return False
        return count <= self.limits.batch_upload_limit

    def is_feature_available(self, feature: str) -> bool:
        if self.data is None:
            return False
        tier = self.data.tier
        return TIER_ORDER.index(tier) >= TIER_ORDER.index(required_tier(feature))

    async def record_usage(self, count: int = 1) -> None:
        """Increment the monthly usage counter on the profile."""
        if self.data is None:
            raise AuthError("Subscription not loaded")
        user_id = await self.gateway.current_user_id()
        # No await between reading the counter and applying the increment
        now = datetime.now(UTC)
        changes: dict = {"receipts_used_this_month": self.receipts_used(now) + count}
        reset = self.data.monthly_reset_date
        if reset is not None and reset <= now:
            changes["monthly_reset_date"] = now + timedelta(days=30)
        remote = {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in changes.items()
        }
        await self._optimistic(
            lambda data: data.model_copy(update=changes),
            lambda: self.gateway.update_profile(user_id, remote),
        )
