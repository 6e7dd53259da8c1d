import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile
from sqlalchemy.orm import Session

from app.api.deps import Pagination, get_client, get_pagination, read_upload
from app.core.config import settings
from app.core.database import get_db
from app.models.tenant_model import Client
from app.schemas.invoice import AffectedLines, InvoiceImportResult, InvoiceLineList, MarkReconciledRequest
from app.services import invoice_import_service as invoices
from app.services.field_normalizer import normalize_document_id
from app.services.tabular_parser import parse_upload

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/invoices/import", response_model=InvoiceImportResult)
async def upload_invoice(
    file: UploadFile = File(...),
    month: Optional[str] = Query(None, description="Reference month, YYYY-MM; current month when omitted"),
    insurer_id: Optional[str] = Query(None),
    client: Client = Depends(get_client),
    db: Session = Depends(get_db),
):
    # month is checked before the upload is even read
    reference_month = invoices.parse_reference_month(month, default_today=date.today())
    contents = await read_upload(file)
    rows = parse_upload(contents, file.filename, file.content_type)
    logger.info(f"Invoice {file.filename!r} for client {client.client_id}: {len(rows)} row(s)")

    return invoices.import_invoice(
        db,
        client.client_id,
        rows,
        reference_month,
        insurer_id=insurer_id or None,
        batch_size=settings.INVOICE_INSERT_BATCH_SIZE,
        error_limit=settings.INVOICE_ERROR_SAMPLE_LIMIT,
        legacy_pad=settings.DOCUMENT_ID_LEGACY_PAD,
    )


@router.get("/invoices", response_model=InvoiceLineList)
def list_invoice_lines(
    month: Optional[str] = Query(None),
    insurer_id: Optional[str] = Query(None),
    search: Optional[str] = Query(None, description="Name or document id"),
    paging: Pagination = Depends(get_pagination),
    client: Client = Depends(get_client),
    db: Session = Depends(get_db),
):
    reference_month = invoices.parse_reference_month(month) if month else None
    lines, total = invoices.list_invoice_lines(
        db, client.client_id, reference_month, insurer_id, search, paging.page, paging.page_size
    )
    return {"items": lines, "total": total, "page": paging.page, "page_size": paging.page_size}


@router.delete("/invoices", response_model=AffectedLines)
def delete_invoice_month(
    month: str = Query(...),
    insurer_id: Optional[str] = Query(None),
    client: Client = Depends(get_client),
    db: Session = Depends(get_db),
):
    reference_month = invoices.parse_reference_month(month)
    return {"affected": invoices.delete_invoice_month(db, client.client_id, reference_month, insurer_id)}


@router.post("/invoices/reconcile", response_model=AffectedLines)
def mark_invoice_reconciled(
    payload: MarkReconciledRequest,
    client: Client = Depends(get_client),
    db: Session = Depends(get_db),
):
    reference_month = invoices.parse_reference_month(payload.month)
    document_ids = None
    if payload.document_ids:
        document_ids = [
            doc for doc in (normalize_document_id(raw, legacy_pad=settings.DOCUMENT_ID_LEGACY_PAD) for raw in payload.document_ids)
            if doc
        ]
    affected = invoices.mark_lines_reconciled(db, client.client_id, reference_month, payload.insurer_id, document_ids)
    return {"affected": affected}
