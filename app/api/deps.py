"""Request dependencies shared by the API routers.

Authentication happens upstream: a gateway or middleware resolves the caller
and stores it on ``request.state.actor`` (an ``Actor`` or a mapping with
``id``, ``role`` and ``tenant_id``). Requests without one act anonymously.
"""
from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass

from fastapi import Depends, Request

from app.db import SessionLocal
from app.services.billing.errors import ForbiddenAction
from app.services.common import coerce_uuid

PRIVILEGED_ROLES = {"admin", "superadmin"}
ANONYMOUS_ROLE = "anonymous"


@dataclass(frozen=True)
class Actor:
    id: str | None = None
    role: str = ANONYMOUS_ROLE
    tenant_id: uuid.UUID | None = None

    @property
    def is_privileged(self) -> bool:
        return self.role.lower() in PRIVILEGED_ROLES

    @property
    def is_anonymous(self) -> bool:
        return self.id is None or self.role == ANONYMOUS_ROLE


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_actor(request: Request) -> Actor:
    resolved = getattr(request.state, "actor", None)
    if isinstance(resolved, Actor):
        return resolved
    if isinstance(resolved, Mapping):
        return Actor(
            id=str(resolved["id"]) if resolved.get("id") else None,
            role=str(resolved.get("role") or ANONYMOUS_ROLE),
            tenant_id=coerce_uuid(resolved.get("tenant_id")),
        )
    return Actor()


def require_privileged(actor: Actor = Depends(get_actor)) -> Actor:
    if not actor.is_privileged:
        raise ForbiddenAction()
    return actor
