from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

from app.api.deps import Pagination, get_client, get_pagination
from app.core.database import get_db
from app.models.enums import ClosureStatus
from app.models.reconciliation_model import ReconciliationClosure
from app.models.tenant_model import Client
from app.schemas.reconciliation import (
    ClosureRead, ClosureUpdateRequest, CloseRequest, FilterOptions, HistoryList,
    ReconciliationReport, ReopenRequest,
)
from app.services import reconciliation_service as recon
from app.services.invoice_import_service import format_reference_month, parse_reference_month
from app.services.report_export import export_history, export_reconciliation

router = APIRouter()

HISTORY_EXPORT_LIMIT = 10000


def _closure_read(closure: ReconciliationClosure) -> dict:
    view = recon.closure_view(closure)
    view.update({
        "reference_month": format_reference_month(closure.reference_month),
        "insurer_id": closure.insurer_id,
        "snapshot": closure.snapshot,
    })
    return view


def _attachment(content: bytes, media_type: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.get("/reconciliation", response_model=ReconciliationReport)
def get_reconciliation(
    month: str = Query(...),
    kind: Optional[str] = Query(None, description="TITULAR, SPOUSE, CHILD or DEPENDENT (any non-titular)"),
    plan: Optional[str] = Query(None),
    cost_center: Optional[str] = Query(None),
    insurer_id: Optional[str] = Query(None),
    client: Client = Depends(get_client),
    db: Session = Depends(get_db),
):
    reference_month = parse_reference_month(month)
    filters = recon.ReconciliationFilters(kind=kind, plan=plan, cost_center=cost_center)
    return recon.build_reconciliation(db, client.client_id, reference_month, filters, insurer_id=insurer_id)


@router.get("/reconciliation/options", response_model=FilterOptions)
def get_reconciliation_options(client: Client = Depends(get_client), db: Session = Depends(get_db)):
    return recon.get_filter_options(db, client.client_id)


@router.get("/reconciliation/export")
def export_reconciliation_tab(
    month: str = Query(...),
    tab: str = Query("lines"),
    format: str = Query("xlsx"),
    kind: Optional[str] = Query(None),
    plan: Optional[str] = Query(None),
    cost_center: Optional[str] = Query(None),
    insurer_id: Optional[str] = Query(None),
    client: Client = Depends(get_client),
    db: Session = Depends(get_db),
):
    reference_month = parse_reference_month(month)
    filters = recon.ReconciliationFilters(kind=kind, plan=plan, cost_center=cost_center)
    report = recon.build_reconciliation(db, client.client_id, reference_month, filters, insurer_id=insurer_id)
    return _attachment(*export_reconciliation(report, tab, format))


@router.post("/reconciliation/close", response_model=ClosureRead)
def close_reconciliation(payload: CloseRequest, client: Client = Depends(get_client), db: Session = Depends(get_db)):
    closure = recon.close_reconciliation(
        db,
        client.client_id,
        parse_reference_month(payload.month),
        payload.declared_total,
        notes=payload.notes,
        insurer_id=payload.insurer_id,
    )
    return _closure_read(closure)


@router.put("/reconciliation/closure", response_model=ClosureRead)
def update_closure(payload: ClosureUpdateRequest, client: Client = Depends(get_client), db: Session = Depends(get_db)):
    closure = recon.update_closure(
        db,
        client.client_id,
        parse_reference_month(payload.month),
        insurer_id=payload.insurer_id,
        declared_total=payload.declared_total,
        notes=payload.notes,
        expected_updated_at=payload.expected_updated_at,
    )
    return _closure_read(closure)


@router.post("/reconciliation/reopen", response_model=ClosureRead)
def reopen_reconciliation(payload: ReopenRequest, client: Client = Depends(get_client), db: Session = Depends(get_db)):
    closure = recon.reopen_reconciliation(db, client.client_id, parse_reference_month(payload.month), payload.insurer_id)
    return _closure_read(closure)


def _history(db, client, from_month, to_month, status, insurer_id, order, page, page_size):
    return recon.list_closure_history(
        db,
        client.client_id,
        from_month=parse_reference_month(from_month) if from_month else None,
        to_month=parse_reference_month(to_month) if to_month else None,
        status=status,
        insurer_id=insurer_id,
        order=order,
        page=page,
        page_size=page_size,
    )


@router.get("/reconciliation/history", response_model=HistoryList)
def get_reconciliation_history(
    from_month: Optional[str] = Query(None, alias="from"),
    to_month: Optional[str] = Query(None, alias="to"),
    status: Optional[ClosureStatus] = Query(None),
    insurer_id: Optional[str] = Query(None),
    order: str = Query("desc", pattern="^(asc|desc)$"),
    paging: Pagination = Depends(get_pagination),
    client: Client = Depends(get_client),
    db: Session = Depends(get_db),
):
    items, total, summary = _history(
        db, client, from_month, to_month, status, insurer_id, order, paging.page, paging.page_size
    )
    return {"items": items, "total": total, "page": paging.page, "page_size": paging.page_size, "summary": summary}


@router.get("/reconciliation/history/export")
def export_reconciliation_history(
    from_month: Optional[str] = Query(None, alias="from"),
    to_month: Optional[str] = Query(None, alias="to"),
    status: Optional[ClosureStatus] = Query(None),
    insurer_id: Optional[str] = Query(None),
    order: str = Query("desc", pattern="^(asc|desc)$"),
    format: str = Query("xlsx"),
    client: Client = Depends(get_client),
    db: Session = Depends(get_db),
):
    items, _, _ = _history(db, client, from_month, to_month, status, insurer_id, order, 1, HISTORY_EXPORT_LIMIT)
    return _attachment(*export_history(items, format))
