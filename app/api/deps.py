"""
Shared route dependencies: tenant and client scoping, paging, uploads.
"""
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from fastapi import Depends, Header, Query, UploadFile
from sqlalchemy.orm import Session

from app.core.cache import TTLCache
from app.core.config import settings
from app.core.database import get_db
from app.core.exceptions import PayloadTooLargeException, TabularParseError
from app.models.tenant_model import Client
from app.services.tenant_service import TenantInfo, TenantResolver, get_client_for_tenant

tenant_resolver = TenantResolver(TTLCache(ttl=settings.TENANT_CACHE_TTL_SECONDS))


def get_tenant_resolver() -> TenantResolver:
    return tenant_resolver


def get_tenant(
    x_tenant_slug: Optional[str] = Header(None),
    x_tenant_code: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    resolver: TenantResolver = Depends(get_tenant_resolver),
) -> TenantInfo:
    return resolver.resolve(db, slug=x_tenant_slug, code=x_tenant_code)


def get_client(
    client_id: UUID,
    tenant: TenantInfo = Depends(get_tenant),
    db: Session = Depends(get_db),
) -> Client:
    return get_client_for_tenant(db, tenant, client_id)


@dataclass
class Pagination:
    page: int
    page_size: int


def get_pagination(
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
) -> Pagination:
    return Pagination(page=page, page_size=page_size)


async def read_upload(file: UploadFile) -> bytes:
    """Whole upload in memory, refusing anything over MAX_UPLOAD_BYTES."""
    limit = settings.MAX_UPLOAD_BYTES
    contents = await file.read(limit + 1)
    if len(contents) > limit:
        raise PayloadTooLargeException(
            f"File exceeds the {limit // (1024 * 1024)} MB upload limit",
            details={"filename": file.filename},
        )
    if not contents:
        raise TabularParseError("File is empty or has no valid data", details={"filename": file.filename})
    return contents
