from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, Optional

from deskgate.logging import get_logger
from deskgate.service.errors import StorageUnavailableError
from deskgate.storage.common import AuthStore
from deskgate.storage.models import (
    DEFAULT_ADMIN_PERMISSIONS,
    AdminRole,
    Principal,
    normalize_email,
    utcnow,
)

logger = get_logger(__name__)


class AdminResolver:
    """Derives the privileged-role flag for a principal on every request.

    Rules, first match wins:
    1. the email equals the configured operator address (case-insensitive);
       the operator's role record is provisioned if missing
    2. a stored role record with role "admin"

    When the rule 2 lookup cannot reach storage, only rule 1 is applied
    again, so a storage outage can keep the operator in but never lets
    anyone else in.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        operator_email: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.operator_email = normalize_email(operator_email) if operator_email else None
        self.clock = clock

    def is_operator(self, principal: Principal) -> bool:
        return bool(self.operator_email) and normalize_email(principal.email) == self.operator_email

    async def resolve_role(self, principal: Principal) -> bool:
        if self.is_operator(principal):
            await self._provision_operator(principal)
            return True

        try:
            role = await self.store.get_admin_role(principal.id)
        except StorageUnavailableError:
            granted = self.is_operator(principal)
            logger.warning(
                "admin_fallback_applied", principal_id=principal.id, granted=granted
            )
            return granted
        return bool(role and role.role == "admin")

    async def _provision_operator(self, principal: Principal) -> None:
        try:
            await self.store.ensure_admin_role(
                AdminRole(principal_id=principal.id, created_at=self.clock())
            )
        except StorageUnavailableError:
            logger.error("admin_role_provision_failed", principal_id=principal.id)

    async def grant_admin(
        self,
        principal_id: str,
        permissions: Optional[Iterable[str]] = None,
        organization_id: Optional[str] = None,
    ) -> AdminRole:
        """Create the admin role record for ``principal_id`` unless one exists."""
        role = AdminRole(
            principal_id=principal_id,
            permissions=list(permissions or DEFAULT_ADMIN_PERMISSIONS),
            organization_id=organization_id,
            created_at=self.clock(),
        )
        stored = await self.store.ensure_admin_role(role)
        logger.info("admin_role_granted", principal_id=principal_id, role=stored.role)
        return stored
