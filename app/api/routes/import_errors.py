from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import String, cast, or_
from sqlalchemy.orm import Session

from app.api.deps import Pagination, get_client, get_pagination
from app.core.database import get_db
from app.models.import_error import BeneficiaryImportError
from app.models.tenant_model import Client
from app.schemas.import_error import ImportErrorList
from app.schemas.import_run import DeletedCount

router = APIRouter()


@router.get("/beneficiaries/import-errors", response_model=ImportErrorList)
def list_import_errors(
    search: Optional[str] = Query(None, description="Matches the reason or any value of the row"),
    import_run_id: Optional[UUID] = None,
    paging: Pagination = Depends(get_pagination),
    client: Client = Depends(get_client),
    db: Session = Depends(get_db),
):
    query = db.query(BeneficiaryImportError).filter(BeneficiaryImportError.client_id == client.client_id)
    if import_run_id is not None:
        query = query.filter(BeneficiaryImportError.import_run_id == import_run_id)
    if search:
        term = f"%{search.strip()}%"
        query = query.filter(or_(
            BeneficiaryImportError.reason.ilike(term),
            cast(BeneficiaryImportError.data, String).ilike(term),
        ))

    total = query.count()
    errors = (
        query.order_by(BeneficiaryImportError.created_at.desc(), BeneficiaryImportError.row_number)
        .offset((paging.page - 1) * paging.page_size)
        .limit(paging.page_size)
        .all()
    )
    return {"items": errors, "total": total, "page": paging.page, "page_size": paging.page_size}


@router.delete("/beneficiaries/import-errors", response_model=DeletedCount)
def clear_import_errors(client: Client = Depends(get_client), db: Session = Depends(get_db)):
    deleted = (
        db.query(BeneficiaryImportError)
        .filter(BeneficiaryImportError.client_id == client.client_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    return {"deleted": deleted}
