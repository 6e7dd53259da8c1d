"""
Insurer invoice import: one snapshot per (client, reference month, insurer),
replaced wholesale on every upload.
"""
import logging
import re
import uuid
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import insert, or_
from sqlalchemy.orm import Session

from app.core.exceptions import InvalidReferenceMonthError, NotFoundException
from app.models.enums import InvoiceLineStatus
from app.models.invoice_model import ImportedInvoiceLine
from app.services import field_normalizer as fn

logger = logging.getLogger(__name__)

REFERENCE_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")

INVOICE_FIELDS = (fn.DOCUMENT_ID, fn.AMOUNT, fn.NAME)


def parse_reference_month(value: Optional[str], default_today: Optional[date] = None) -> date:
    """
    'YYYY-MM' -> first day of that month. ``None`` means the current month
    when ``default_today`` is given.
    """
    if value is None and default_today is not None:
        return default_today.replace(day=1)
    match = REFERENCE_MONTH_RE.match((value or "").strip())
    if not match:
        raise InvalidReferenceMonthError(value)
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12 or year < 1900:
        raise InvalidReferenceMonthError(value)
    return date(year, month, 1)


def format_reference_month(month: date) -> str:
    return month.strftime("%Y-%m")


def _snapshot_filter(query, client_id: uuid.UUID, month: date, insurer_id: Optional[str]):
    query = query.filter(
        ImportedInvoiceLine.client_id == client_id,
        ImportedInvoiceLine.reference_month == month,
    )
    if insurer_id is None:
        return query.filter(ImportedInvoiceLine.insurer_id.is_(None))
    return query.filter(ImportedInvoiceLine.insurer_id == insurer_id)


def validate_invoice_rows(
    client_id: uuid.UUID,
    rows: Sequence[fn.RawRow],
    month: date,
    insurer_id: Optional[str],
    error_limit: int = 50,
    legacy_pad: bool = True,
) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
    """
    Split rows into insertable line dicts and a summary of what was rejected.
    Nothing touches the database here.
    """
    lines: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []
    invalid_document = invalid_amount = 0
    resolutions = []

    for index, raw in enumerate(rows):
        resolved = fn.resolve_fields(raw, INVOICE_FIELDS)
        resolutions.append(resolved)
        row_number = index + 2

        document_id = fn.normalize_document_id(resolved[fn.DOCUMENT_ID].value, legacy_pad=legacy_pad)
        if document_id is None:
            invalid_document += 1
            reason = "invalid_document"
        else:
            amount = fn.normalize_money(resolved[fn.AMOUNT].value)
            if amount is None:
                invalid_amount += 1
                reason = "invalid_amount"
            else:
                lines.append({
                    "line_id": uuid.uuid4(),
                    "client_id": client_id,
                    "insurer_id": insurer_id,
                    "reference_month": month,
                    "beneficiary_name": fn.clean_text(resolved[fn.NAME].value),
                    "document_id": document_id,
                    "charged_amount": amount,
                    "reconciliation_status": InvoiceLineStatus.PENDING,
                    "raw": fn.jsonable_row(raw),
                })
                continue

        if len(errors) < error_limit:
            errors.append({"row_number": row_number, "reason": reason, "data": fn.jsonable_row(raw)})

    detected = fn.summarize_resolution(resolutions)
    for name, info in detected.items():
        logger.info(f"Invoice field {name!r} <- column {info['column']!r} via {info['strategy']} ({info['rows']} rows)")

    summary = {
        "invalid_document": invalid_document,
        "invalid_amount": invalid_amount,
        "skipped": invalid_document + invalid_amount,
        "errors": errors,
        "detected_columns": detected,
        "sample_columns": [fn.normalize_label(column) for column in rows[0].keys()] if rows else [],
    }
    return lines, summary


def import_invoice(
    db: Session,
    client_id: uuid.UUID,
    rows: Sequence[fn.RawRow],
    reference_month: date,
    insurer_id: Optional[str] = None,
    batch_size: int = 1000,
    error_limit: int = 50,
    legacy_pad: bool = True,
) -> Dict[str, Any]:
    """
    Replace the invoice snapshot for (client, month, insurer) with the valid
    rows of this upload. Delete and inserts share one transaction.
    """
    lines, summary = validate_invoice_rows(
        client_id, rows, reference_month, insurer_id, error_limit=error_limit, legacy_pad=legacy_pad
    )

    try:
        removed = _snapshot_filter(db.query(ImportedInvoiceLine), client_id, reference_month, insurer_id).delete(
            synchronize_session=False
        )
        for start in range(0, len(lines), batch_size):
            db.execute(insert(ImportedInvoiceLine), lines[start:start + batch_size])
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(f"Invoice import for client {client_id} failed, rolled back")
        raise

    logger.info(
        f"Invoice {format_reference_month(reference_month)} for client {client_id}: "
        f"{len(lines)} line(s) stored, {removed} replaced, {summary['skipped']} skipped"
    )
    result = {
        "processed": len(lines),
        "total_rows": len(rows),
        "reference_month": format_reference_month(reference_month),
        "insurer_id": insurer_id,
    }
    result.update(summary)
    return result


def list_invoice_lines(
    db: Session,
    client_id: uuid.UUID,
    month: Optional[date] = None,
    insurer_id: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[ImportedInvoiceLine], int]:
    query = db.query(ImportedInvoiceLine).filter(ImportedInvoiceLine.client_id == client_id)
    if month is not None:
        query = query.filter(ImportedInvoiceLine.reference_month == month)
    if insurer_id is not None:
        query = query.filter(ImportedInvoiceLine.insurer_id == insurer_id)
    if search:
        term = search.strip()
        digits = re.sub(r"\D", "", term)
        conditions = [ImportedInvoiceLine.beneficiary_name.ilike(f"%{term}%")]
        if digits:
            conditions.append(ImportedInvoiceLine.document_id.like(f"%{digits}%"))
        query = query.filter(or_(*conditions))

    total = query.count()
    items = (
        query.order_by(
            ImportedInvoiceLine.reference_month.desc(),
            ImportedInvoiceLine.beneficiary_name,
            ImportedInvoiceLine.document_id,
        )
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return items, total


def delete_invoice_month(db: Session, client_id: uuid.UUID, month: date, insurer_id: Optional[str] = None) -> int:
    deleted = _snapshot_filter(db.query(ImportedInvoiceLine), client_id, month, insurer_id).delete(
        synchronize_session=False
    )
    if not deleted:
        db.rollback()
        raise NotFoundException(
            "No invoice lines for this month",
            details={"month": format_reference_month(month), "insurer_id": insurer_id},
        )
    db.commit()
    logger.info(f"Deleted {deleted} invoice line(s) of {format_reference_month(month)} for client {client_id}")
    return deleted


def mark_lines_reconciled(
    db: Session,
    client_id: uuid.UUID,
    month: date,
    insurer_id: Optional[str] = None,
    document_ids: Optional[Sequence[str]] = None,
) -> int:
    """Flag lines as RECONCILED; all lines of the snapshot unless document ids are given."""
    query = _snapshot_filter(db.query(ImportedInvoiceLine), client_id, month, insurer_id)
    if document_ids:
        query = query.filter(ImportedInvoiceLine.document_id.in_(list(document_ids)))
    updated = query.update(
        {ImportedInvoiceLine.reconciliation_status: InvoiceLineStatus.RECONCILED},
        synchronize_session=False,
    )
    db.commit()
    return updated
