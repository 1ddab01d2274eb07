"""Team expense claims and their approval workflow."""

import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from receiptsync.errors import (
    AppError,
    DataValidationError,
    InvalidTransitionError,
    is_missing_table,
)
from receiptsync.integrations.supabase_gateway import SupabaseGateway
from receiptsync.models import (
    CLAIM_STATUS_ALIASES,
    Claim,
    ClaimAuditEntry,
    ClaimFilters,
    ClaimStats,
    ClaimStatus,
    CreateClaimRequest,
)
from receiptsync.state.base import StateContainer, rpc_with_fallback

logger = logging.getLogger(__name__)

# Placeholders resolved when a transition is applied
_NOW = object()
_ACTOR = object()

ALLOWED_TRANSITIONS: dict[ClaimStatus, frozenset[ClaimStatus]] = {
    ClaimStatus.DRAFT: frozenset({ClaimStatus.PENDING}),
    ClaimStatus.PENDING: frozenset({ClaimStatus.APPROVED, ClaimStatus.REJECTED}),
    ClaimStatus.APPROVED: frozenset({ClaimStatus.PAID}),
    ClaimStatus.REJECTED: frozenset(),
    ClaimStatus.PAID: frozenset(),
}


def check_transition(current: ClaimStatus, target: ClaimStatus) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is allowed."""
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot change claim status from {current.value} to {target.value}",
            code="invalid_transition",
            details={"from": current.value, "to": target.value},
        )


def compute_stats(rows: list[dict[str, Any]]) -> ClaimStats:
    stats = ClaimStats(total_claims=len(rows))
    for row in rows:
        amount = float(row.get("amount") or 0)
        status = row.get("status")
        stats.total_amount += amount
        if status in ("pending", "under_review"):
            stats.pending_claims += 1
        elif status in ("approved", "paid"):
            stats.approved_claims += 1
            stats.approved_amount += amount
        elif status == "rejected":
            stats.rejected_claims += 1
    return stats


def _now() -> str:
    return datetime.now(UTC).isoformat()


class ClaimsContainer(StateContainer[list[Claim]]):
    """Claims for one team, newest first."""

    name = "claims"

    def __init__(self, gateway: SupabaseGateway) -> None:
        super().__init__([])
        self.gateway = gateway
        self.team_id: str | None = None
        self.filters: ClaimFilters | None = None

    def get(self, claim_id: str) -> Claim | None:
        return next((c for c in self.data if c.id == claim_id), None)

    # --- Loading ---------------------------------------------------------

    async def _fetch(self) -> list[Claim]:
        if self.team_id is None:
            return []
        filters = self.filters or ClaimFilters()
        eq: dict[str, Any] = {"team_id": self.team_id}
        in_: dict[str, list[Any]] | None = None
        if filters.status is ClaimStatus.PENDING:
            in_ = {"status": ["pending", *CLAIM_STATUS_ALIASES]}
        elif filters.status:
            eq["status"] = filters.status.value
        if filters.priority:
            eq["priority"] = filters.priority.value
        if filters.claimant_id:
            eq["claimant_id"] = filters.claimant_id
        if filters.category:
            eq["category"] = filters.category
        gte: dict[str, Any] = {}
        lte: dict[str, Any] = {}
        if filters.date_from:
            gte["created_at"] = filters.date_from.isoformat()
        if filters.date_to:
            lte["created_at"] = filters.date_to.isoformat()
        if filters.amount_min is not None:
            gte["amount"] = filters.amount_min
        if filters.amount_max is not None:
            lte["amount"] = filters.amount_max
        try:
            rows = await self.gateway.select(
                "claims",
                eq=eq,
                in_=in_,
                gte=gte,
                lte=lte,
                order_by="created_at",
                descending=True,
            )
        except AppError as e:
            if not is_missing_table(e):
                raise
            logger.info("[claims] claims table not available, returning no claims")
            return []
        claims = []
        for row in rows:
            try:
                claims.append(Claim.model_validate(row))
            except ValidationError as e:
                logger.warning("[claims] skipping malformed claim id=%s: %s", row.get("id"), e)
        return claims

    async def load(
        self, team_id: str | None = None, filters: ClaimFilters | None = None
    ) -> list[Claim] | None:
        if team_id is not None:
            self.team_id = team_id
        self.filters = filters
        return await self._run_load(self._fetch)

    async def refresh(self) -> list[Claim] | None:
        return await self._run_load(self._fetch)

    async def _require(self, claim_id: str) -> Claim:
        claim = self.get(claim_id)
        if claim is not None:
            return claim
        row = await self.gateway.select_one("claims", eq={"id": claim_id})
        if row is None:
            raise DataValidationError(f"Claim {claim_id} not found", code="not_found")
        return Claim.model_validate(row)

    def _replace(self, claim: Claim, prepend: bool = False) -> list[Claim]:
        current = [claim if c.id == claim.id else c for c in self.data]
        if not any(c.id == claim.id for c in self.data):
            current = [claim, *current] if prepend else [*current, claim]
        return current

    # --- Mutations -------------------------------------------------------

    async def create_claim(self, request: CreateClaimRequest) -> Claim:
        """Create a draft claim and add it to the container."""
        if request.amount <= 0:
            raise DataValidationError("Claim amount must be greater than 0")
        if not request.title.strip():
            raise DataValidationError("Claim title is required")
        user_id = await self.gateway.current_user_id()

        async def direct() -> str:
            rows = await self.gateway.insert(
                "claims",
                {
                    "team_id": request.team_id,
                    "claimant_id": user_id,
                    "title": request.title,
                    "description": request.description,
                    "amount": request.amount,
                    "currency": request.currency,
                    "category": request.category,
                    "priority": request.priority.value,
                    "status": ClaimStatus.DRAFT.value,
                    "metadata": {},
                    "attachments": request.attachments,
                    "created_at": _now(),
                    "updated_at": _now(),
                },
            )
            return rows[0]["id"]

        params = {
            "_team_id": request.team_id,
            "_title": request.title,
            "_description": request.description,
            "_amount": request.amount,
            "_currency": request.currency,
            "_category": request.category,
            "_priority": request.priority.value,
            "_attachments": request.attachments,
        }
        claim_id = await self._mutate(
            lambda: rpc_with_fallback(self.gateway, "create_claim", params, direct)
        )
        if not claim_id:
            raise DataValidationError("Failed to create claim")

        row = await self._mutate(
            lambda: self.gateway.select_one("claims", eq={"id": str(claim_id)})
        )
        claim = (
            Claim.model_validate(row)
            if row
            else Claim(
                id=str(claim_id),
                claimant_id=user_id,
                **request.model_dump(),
            )
        )
        if claim.team_id == self.team_id or self.team_id is None:
            self._set_state(data=self._replace(claim, prepend=True))
        return claim

    async def _append_audit(
        self,
        claim_id: str,
        user_id: str,
        action: str,
        old_status: ClaimStatus,
        new_status: ClaimStatus,
        comment: str | None = None,
    ) -> None:
        try:
            await self.gateway.insert(
                "claim_audit_trail",
                {
                    "claim_id": claim_id,
                    "user_id": user_id,
                    "action": action,
                    "old_status": old_status.value,
                    "new_status": new_status.value,
                    "comment": comment,
                    "created_at": _now(),
                },
            )
        except AppError as e:
            if not is_missing_table(e):
                raise
            logger.warning("[claims] audit trail table missing, skipped %s", action)

    async def _transition(
        self,
        claim_id: str,
        target: ClaimStatus,
        action: str,
        local_changes: dict[str, Any],
        rpc_name: str | None = None,
        rpc_params: dict[str, Any] | None = None,
        comment: str | None = None,
    ) -> Claim:
        claim = await self._require(claim_id)
        check_transition(claim.status, target)
        user_id = await self.gateway.current_user_id()

        now = datetime.now(UTC)
        changes = {"status": target, "updated_at": now}
        for key, value in local_changes.items():
            changes[key] = now if value is _NOW else (user_id if value is _ACTOR else value)
        updated = claim.model_copy(update=changes)

        async def direct() -> None:
            values = {
                key: (value.value if isinstance(value, ClaimStatus) else value)
                for key, value in changes.items()
            }
            values = {
                key: (value.isoformat() if isinstance(value, datetime) else value)
                for key, value in values.items()
            }
            await self.gateway.update("claims", values, eq={"id": claim_id})
            await self._append_audit(claim_id, user_id, action, claim.status, target, comment)

        async def remote() -> None:
            if rpc_name is None:
                await direct()
            else:
                await rpc_with_fallback(self.gateway, rpc_name, rpc_params or {}, direct)

        await self._optimistic(lambda data: self._replace_in(data, updated), remote)
        logger.info("[claims] %s %s -> %s", claim_id, claim.status.value, target.value)
        return updated

    @staticmethod
    def _replace_in(data: list[Claim], claim: Claim) -> list[Claim]:
        return [claim if c.id == claim.id else c for c in data]

    async def submit(self, claim_id: str) -> Claim:
        """Move a draft claim to pending review."""
        return await self._transition(
            claim_id,
            ClaimStatus.PENDING,
            "submitted",
            {"submitted_at": _NOW},
            "submit_claim",
            {"_claim_id": claim_id},
        )

    async def approve(self, claim_id: str, comment: str | None = None) -> Claim:
        return await self._transition(
            claim_id,
            ClaimStatus.APPROVED,
            "approved",
            {
                "approved_by": _ACTOR,
                "approved_at": _NOW,
                "reviewed_by": _ACTOR,
                "reviewed_at": _NOW,
            },
            "approve_claim",
            {"_claim_id": claim_id, "_comment": comment},
            comment,
        )

    async def reject(self, claim_id: str, reason: str) -> Claim:
        if not reason or not reason.strip():
            raise DataValidationError("A rejection reason is required")
        return await self._transition(
            claim_id,
            ClaimStatus.REJECTED,
            "rejected",
            {"rejection_reason": reason, "reviewed_by": _ACTOR, "reviewed_at": _NOW},
            "reject_claim",
            {"_claim_id": claim_id, "_rejection_reason": reason},
            reason,
        )

    async def mark_paid(self, claim_id: str) -> Claim:
        return await self._transition(
            claim_id, ClaimStatus.PAID, "paid", {"paid_at": _NOW}
        )

    async def delete(self, claim_id: str) -> None:
        """Delete a claim; only drafts can be deleted."""
        claim = await self._require(claim_id)
        if claim.status is not ClaimStatus.DRAFT:
            raise InvalidTransitionError(
                "Only draft claims can be deleted", code="invalid_transition"
            )
        await self._optimistic(
            lambda data: [c for c in data if c.id != claim_id],
            lambda: self.gateway.delete("claims", eq={"id": claim_id}),
        )

    # --- Read helpers ----------------------------------------------------

    async def stats(self, team_id: str | None = None) -> ClaimStats:
        team_id = team_id or self.team_id
        if team_id is None:
            return ClaimStats()

        async def direct() -> ClaimStats:
            rows = await self.gateway.select(
                "claims", "status, amount", eq={"team_id": team_id}
            )
            return compute_stats(rows)

        result = await rpc_with_fallback(
            self.gateway, "get_team_claim_stats", {"_team_id": team_id}, direct
        )
        if isinstance(result, ClaimStats):
            return result
        if isinstance(result, list):
            result = result[0] if result else {}
        return ClaimStats.model_validate(result or {})

    async def audit_trail(self, claim_id: str) -> list[ClaimAuditEntry]:
        try:
            rows = await self.gateway.select(
                "claim_audit_trail",
                eq={"claim_id": claim_id},
                order_by="created_at",
                descending=True,
            )
        except AppError as e:
            if not is_missing_table(e):
                raise
            return []
        return [ClaimAuditEntry.model_validate(row) for row in rows]

