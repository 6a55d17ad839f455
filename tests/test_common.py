"""Tests for the shared query helpers."""

from __future__ import annotations

import uuid

import pytest
from fastapi import HTTPException
from sqlalchemy import select

from app.models.billing import PricingPlan
from app.schemas.common import page_envelope
from app.services.common import apply_ordering, apply_pagination, coerce_uuid

ALLOWED = {"price": PricingPlan.base_price, "name": PricingPlan.name}


class TestCoerceUuid:
    def test_passthrough_and_parse(self) -> None:
        value = uuid.uuid4()
        assert coerce_uuid(value) is value
        assert coerce_uuid(str(value)) == value
        assert coerce_uuid(None) is None

    def test_malformed(self) -> None:
        with pytest.raises(ValueError):
            coerce_uuid("not-a-uuid")


class TestOrderingAndPagination:
    def test_order_desc(self, db_session, plans) -> None:
        stmt = apply_ordering(select(PricingPlan), "price", "desc", ALLOWED)
        names = [plan.name for plan in db_session.scalars(stmt)]
        assert names == ["Yearly", "Monthly", "Free Trial"]

    def test_unknown_column(self) -> None:
        with pytest.raises(HTTPException) as exc_info:
            apply_ordering(select(PricingPlan), "secret", "asc", ALLOWED)
        assert exc_info.value.status_code == 400
        assert exc_info.value.detail["code"] == "invalid_order_by"
        assert "name, price" in exc_info.value.detail["message"]

    def test_pagination(self, db_session, plans) -> None:
        ordered = apply_ordering(select(PricingPlan), "price", "asc", ALLOWED)
        page = list(db_session.scalars(apply_pagination(ordered, limit=1, offset=1)))
        assert [plan.name for plan in page] == ["Monthly"]


class TestPageEnvelope:
    def test_windows_full_result(self) -> None:
        body = page_envelope(["a", "b", "c", "d"], limit=2, offset=1)
        assert body == {"items": ["b", "c"], "count": 2, "limit": 2, "offset": 1, "total": 4}

    def test_query_page_keeps_rows(self) -> None:
        body = page_envelope(["x"], limit=1, offset=5, total=9)
        assert body["items"] == ["x"]
        assert body["total"] == 9
        assert body["count"] == 1
