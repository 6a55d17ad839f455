"""Shared service utilities: UUID coercion, ordering, pagination."""
from __future__ import annotations

import uuid
from typing import Any

from fastapi import HTTPException
from sqlalchemy import Select


def coerce_uuid(value: Any) -> uuid.UUID | None:
    """Convert a string or UUID to UUID, or return None.

    Raises ``ValueError`` for malformed strings; lookups translate that into
    their own not-found error.
    """
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def apply_ordering(
    query: Select[Any],
    order_by: str,
    order_dir: str,
    allowed_columns: dict[str, Any],
) -> Select[Any]:
    if order_by not in allowed_columns:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "invalid_order_by",
                "message": f"Invalid order_by. Allowed: {', '.join(sorted(allowed_columns))}",
                "details": None,
            },
        )
    column = allowed_columns[order_by]
    if order_dir == "desc":
        return query.order_by(column.desc())
    return query.order_by(column.asc())


def apply_pagination(query: Select[Any], limit: int, offset: int) -> Select[Any]:
    return query.limit(limit).offset(offset)
