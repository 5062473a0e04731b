"""Permission gate consulted before a batch run or a manual resend."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Optional, Protocol

from app.core.exceptions import UnauthorizedError
from app.core.logging import get_logger

logger = get_logger(__name__)

STATEMENT_ROLES: frozenset[str] = frozenset({"owner", "admin", "finance"})


@dataclass(frozen=True)
class Actor:
    """The user on whose behalf an operation runs."""

    user_id: Optional[str]
    role: str


class PermissionGate(Protocol):
    def is_allowed(self, tenant_id: uuid.UUID, actor: Actor, action: str) -> bool: ...


class RolePermissionGate:
    """Allows an action when the actor holds one of the configured roles."""

    def __init__(self, allowed_roles: frozenset[str] = STATEMENT_ROLES) -> None:
        self.allowed_roles = allowed_roles

    def is_allowed(self, tenant_id: uuid.UUID, actor: Actor, action: str) -> bool:
        return actor.role.lower() in self.allowed_roles


def require_permission(
    gate: PermissionGate,
    tenant_id: uuid.UUID,
    actor: Actor,
    action: str,
) -> None:
    """Raise ``UnauthorizedError`` unless *gate* allows *action*."""
    if not gate.is_allowed(tenant_id, actor, action):
        logger.warning(
            "Permission denied: action=%s tenant=%s user=%s role=%s",
            action,
            tenant_id,
            actor.user_id,
            actor.role,
        )
        raise UnauthorizedError(
            f"Role '{actor.role}' may not perform '{action}'",
            action=action,
        )
