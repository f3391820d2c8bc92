"""Administrator checks used by privileged lifecycle actions."""

from typing import Protocol

import structlog

logger = structlog.get_logger(__name__)


class AdminAuthorizer(Protocol):
    """Answers whether a user may perform administrator actions."""

    async def is_admin(self, user_id: str) -> bool:
        """True when ``user_id`` is on the administrator allowlist."""


class StaticAdminAuthorizer:
    """Allowlist taken from configuration."""

    def __init__(self, admin_user_ids: list[str]) -> None:
        self.admin_user_ids = set(admin_user_ids)

    async def is_admin(self, user_id: str) -> bool:
        return user_id in self.admin_user_ids


class SupabaseAdminAuthorizer:
    """Allowlist stored as rows of an ``admins`` table keyed by user id.

    Falls back to the static allowlist first so bootstrap admins work before
    the table is populated.
    """

    def __init__(self, client, table: str, fallback: StaticAdminAuthorizer | None = None):
        self.client = client
        self.table = table
        self.fallback = fallback

    async def is_admin(self, user_id: str) -> bool:
        if self.fallback is not None and await self.fallback.is_admin(user_id):
            return True
        try:
            response = (
                await self.client.table(self.table)
                .select("user_id")
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            # Fail closed: an unreachable allowlist grants nobody admin rights.
            logger.warning("admin_lookup_failed", user_id=user_id, error=str(e))
            return False
        return bool(response.data)
