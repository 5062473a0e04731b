"""FastAPI dependency providers for the statement routes.

Each adapter has its own provider so tests can swap it through
``app.dependency_overrides``.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from fastapi import Header

from app.core.config import settings
from app.core.permissions import Actor, PermissionGate, RolePermissionGate
from app.services.statements.artifacts import ArtifactStore, S3ArtifactStore
from app.services.statements.mailer import EmailTransport, SesEmailTransport


@lru_cache
def get_artifact_store() -> ArtifactStore:
    return S3ArtifactStore(settings.artifact_bucket, settings.aws_region)


@lru_cache
def get_email_transport() -> EmailTransport:
    return SesEmailTransport(settings.aws_region)


def get_permission_gate() -> PermissionGate:
    return RolePermissionGate()


def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Actor:
    """Build the acting user from the headers set by the upstream auth proxy."""
    return Actor(user_id=x_user_id, role=x_user_role or "")
