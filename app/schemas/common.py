from collections.abc import Sequence
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ListResponse(BaseModel, Generic[T]):
    """One page of a listing plus the size of the whole result set."""

    items: list[T]
    count: int
    limit: int
    offset: int
    total: int


def page_envelope(
    rows: Sequence[Any], limit: int, offset: int, *, total: int | None = None
) -> dict[str, Any]:
    """Build the ``ListResponse`` body.

    When ``total`` is given, ``rows`` is already the requested page (the query
    applied limit/offset). Without it, ``rows`` is the full in-memory result
    and the window is cut here.
    """
    if total is None:
        total = len(rows)
        rows = rows[offset : offset + limit]
    items = list(rows)
    return {
        "items": items,
        "count": len(items),
        "limit": limit,
        "offset": offset,
        "total": total,
    }
