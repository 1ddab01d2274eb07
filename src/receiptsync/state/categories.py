"""Custom receipt categories."""

import logging
import re
from typing import Any

from receiptsync.errors import DataValidationError
from receiptsync.integrations.supabase_gateway import SupabaseGateway
from receiptsync.models import Category
from receiptsync.state.base import StateContainer, rpc_with_fallback

logger = logging.getLogger(__name__)

DEFAULT_COLOR = "#3B82F6"
DEFAULT_ICON = "tag"
MAX_NAME_LENGTH = 50
HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")

DEFAULT_CATEGORIES: list[tuple[str, str, str]] = [
    ("Food & Dining", "#F59E0B", "utensils"),
    ("Transportation", "#3B82F6", "car"),
    ("Shopping", "#10B981", "shopping-cart"),
    ("Business", "#6B7280", "briefcase"),
    ("Entertainment", "#8B5CF6", "gamepad"),
    ("Healthcare", "#EF4444", "heart"),
    ("Utilities", "#06B6D4", "home"),
    ("Travel", "#EC4899", "plane"),
]


def validate_category(name: str | None, color: str | None) -> None:
    if name is not None:
        stripped = name.strip()
        if not stripped:
            raise DataValidationError("Category name cannot be empty")
        if len(stripped) > MAX_NAME_LENGTH:
            raise DataValidationError(
                f"Category name cannot exceed {MAX_NAME_LENGTH} characters"
            )
    if color is not None and not HEX_COLOR.match(color):
        raise DataValidationError("Color must be a valid hex color code (e.g., #3B82F6)")


def _sorted(categories: list[Category]) -> list[Category]:
    return sorted(categories, key=lambda c: c.name.lower())


class CategoriesContainer(StateContainer[list[Category]]):
    """The signed-in user's custom categories with receipt counts."""

    name = "categories"

    def __init__(self, gateway: SupabaseGateway) -> None:
        super().__init__([])
        self.gateway = gateway

    def get(self, category_id: str) -> Category | None:
        return next((c for c in self.data if c.id == category_id), None)

    async def _fetch(self) -> list[Category]:
        user_id = await self.gateway.current_user_id()

        async def direct() -> list[dict[str, Any]]:
            return await self.gateway.select(
                "custom_categories", eq={"user_id": user_id}, order_by="name"
            )

        rows = await rpc_with_fallback(
            self.gateway,
            "get_user_categories_with_counts",
            {"p_user_id": user_id},
            direct,
        )
        return _sorted([Category.model_validate(row) for row in rows or []])

    async def load(self) -> list[Category] | None:
        return await self._run_load(self._fetch)

    async def ensure_defaults(self) -> list[Category] | None:
        """Create the default category set for a user that has none.

        Safe to call repeatedly: nothing is created once any category exists.
        """
        user_id = await self.gateway.current_user_id()

        async def direct() -> None:
            existing = await self.gateway.select(
                "custom_categories", "id", eq={"user_id": user_id}, limit=1
            )
            if existing:
                return
            await self.gateway.insert(
                "custom_categories",
                [
                    {"user_id": user_id, "name": name, "color": color, "icon": icon}
                    for name, color, icon in DEFAULT_CATEGORIES
                ],
            )
            logger.info("[categories] created %d defaults", len(DEFAULT_CATEGORIES))

        await self._mutate(
            lambda: rpc_with_fallback(
                self.gateway,
                "create_default_categories_for_user",
                {"p_user_id": user_id},
                direct,
            )
        )
        return await self.load()

    async def create_category(
        self,
        name: str,
        color: str = DEFAULT_COLOR,
        icon: str = DEFAULT_ICON,
        team_id: str | None = None,
    ) -> Category:
        """Create a category after local name/color/duplicate checks.

        Raises:
            DataValidationError: If the name is empty, too long, already
                used (case-insensitive), or the color is not #RRGGBB
        """
        validate_category(name, color)
        name = name.strip()
        if any(c.name.lower() == name.lower() for c in self.data):
            error = DataValidationError("A category with this name already exists")
            self._set_state(error=error.message)
            raise error
        user_id = await self.gateway.current_user_id()

        async def direct() -> str:
            row: dict[str, Any] = {
                "user_id": user_id,
                "name": name,
                "color": color,
                "icon": icon,
            }
            if team_id:
                row["team_id"] = team_id
            rows = await self.gateway.insert("custom_categories", row)
            return rows[0]["id"]

        params: dict[str, Any] = {"p_name": name, "p_color": color, "p_icon": icon}
        if team_id:
            params["p_team_id"] = team_id
        category_id = await self._mutate(
            lambda: rpc_with_fallback(self.gateway, "create_custom_category", params, direct)
        )
        category = Category(
            id=str(category_id),
            user_id=user_id,
            team_id=team_id,
            name=name,
            color=color,
            icon=icon,
        )
        self._set_state(data=_sorted([*self.data, category]))
        return category

    async def update_category(
        self,
        category_id: str,
        name: str | None = None,
        color: str | None = None,
        icon: str | None = None,
    ) -> None:
        validate_category(name, color)
        changes: dict[str, Any] = {}
        if name is not None:
            changes["name"] = name.strip()
        if color is not None:
            changes["color"] = color
        if icon is not None:
            changes["icon"] = icon
        if not changes:
            return

        async def direct() -> None:
            await self.gateway.update(
                "custom_categories", changes, eq={"id": category_id}
            )

        await self._optimistic(
            lambda data: _sorted(
                [c.model_copy(update=changes) if c.id == category_id else c for c in data]
            ),
            lambda: rpc_with_fallback(
                self.gateway,
                "update_custom_category",
                {
                    "p_category_id": category_id,
                    "p_name": changes.get("name"),
                    "p_color": changes.get("color"),
                    "p_icon": changes.get("icon"),
                },
                direct,
            ),
        )

    async def delete_category(
        self, category_id: str, reassign_to: str | None = None
    ) -> None:
        """Delete a category, moving its receipts to ``reassign_to`` or uncategorized."""

        async def direct() -> None:
            await self.gateway.update(
                "receipts",
                {"custom_category_id": reassign_to},
                eq={"custom_category_id": category_id},
            )
            await self.gateway.delete("custom_categories", eq={"id": category_id})

        moved = self.get(category_id)

        def apply(data: list[Category]) -> list[Category]:
            remaining = [c for c in data if c.id != category_id]
            if moved is None or reassign_to is None:
                return remaining
            return [
                c.model_copy(update={"receipt_count": c.receipt_count + moved.receipt_count})
                if c.id == reassign_to
                else c
                for c in remaining
            ]

        await self._optimistic(
            apply,
            lambda: rpc_with_fallback(
                self.gateway,
                "delete_custom_category",
                {"p_category_id": category_id, "p_reassign_to_category_id": reassign_to},
                direct,
            ),
        )
