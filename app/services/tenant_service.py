"""
Tenant lookup by slug or code, cached for a short TTL.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from app.core.cache import TTLCache
from app.core.exceptions import BadRequestException, NotFoundException
from app.models.tenant_model import Client, Tenant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantInfo:
    tenant_id: uuid.UUID
    slug: str
    code: Optional[str]
    name: str


class TenantResolver:
    """
    Resolves the tenant named by a request header.

    The cache is handed in by whoever wires the application, so its TTL is
    decided once at startup and tests can pass a cache with a fake clock.
    """

    def __init__(self, cache: TTLCache):
        self.cache = cache

    def resolve(self, db: Session, slug: Optional[str] = None, code: Optional[str] = None) -> TenantInfo:
        if slug:
            key = ("slug", slug.strip().lower())
        elif code:
            key = ("code", code.strip())
        else:
            raise BadRequestException("Missing tenant header (X-Tenant-Slug or X-Tenant-Code)")

        cached = self.cache.get(key)
        if cached is not None:
            return cached

        query = db.query(Tenant).filter(Tenant.is_active.is_(True))
        if key[0] == "slug":
            tenant = query.filter(Tenant.slug == key[1]).first()
        else:
            tenant = query.filter(Tenant.code == key[1]).first()
        if tenant is None:
            raise NotFoundException("Tenant not found", details={key[0]: key[1]})

        info = TenantInfo(tenant_id=tenant.tenant_id, slug=tenant.slug, code=tenant.code, name=tenant.name)
        self.cache.set(key, info)
        logger.debug(f"Tenant {info.slug} cached for {self.cache.ttl}s")
        return info

    def invalidate(self, slug: Optional[str] = None, code: Optional[str] = None) -> None:
        if slug:
            self.cache.invalidate(("slug", slug.strip().lower()))
        if code:
            self.cache.invalidate(("code", code.strip()))


def get_client_for_tenant(db: Session, tenant: TenantInfo, client_id: uuid.UUID) -> Client:
    """A client of another tenant is reported exactly like a missing one."""
    client = (
        db.query(Client)
        .filter(Client.client_id == client_id, Client.tenant_id == tenant.tenant_id)
        .first()
    )
    if client is None:
        raise NotFoundException("Client not found", details={"client_id": str(client_id)})
    return client
