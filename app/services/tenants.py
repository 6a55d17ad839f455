import logging
import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.tenant import AccountRole, Tenant, TenantAccount
from app.services.billing.errors import TenantNotFound
from app.services.cache import LookupCache
from app.services.common import coerce_uuid

logger = logging.getLogger(__name__)


class TenantDirectory:
    """Tenant lookups used by billing for descriptions and notifications."""

    def __init__(self, db: Session, cache: LookupCache | None = None) -> None:
        self.db = db
        self.cache = cache if cache is not None else LookupCache(max_size=0, ttl_seconds=0)

    def get(self, tenant_id: uuid.UUID | str) -> Tenant:
        tenant = self.db.get(Tenant, coerce_uuid(tenant_id))
        if not tenant:
            raise TenantNotFound()
        return tenant

    def display_name(self, tenant_id: uuid.UUID | str) -> str:
        return self.cache.get_or_load(
            ("tenant_name", str(tenant_id)), lambda: self._load_display_name(tenant_id)
        )

    def contact_email(self, tenant_id: uuid.UUID | str) -> str | None:
        return self.cache.get_or_load(
            ("tenant_email", str(tenant_id)), lambda: self._load_contact_email(tenant_id)
        )

    def _load_display_name(self, tenant_id: uuid.UUID | str) -> str:
        tenant = self.db.get(Tenant, coerce_uuid(tenant_id))
        return tenant.business_name if tenant else "Unknown shop"

    def _load_contact_email(self, tenant_id: uuid.UUID | str) -> str | None:
        owner = self.db.scalar(
            select(TenantAccount).where(
                TenantAccount.tenant_id == coerce_uuid(tenant_id),
                TenantAccount.role == AccountRole.owner,
                TenantAccount.is_active.is_(True),
            )
        )
        if owner:
            return owner.email
        tenant = self.db.get(Tenant, coerce_uuid(tenant_id))
        return tenant.email if tenant else None
