"""
Monthly reconciliation of the insurer invoice against the active beneficiary
registry, plus the close / update / reopen lifecycle of each period.

Classification of one (client, month, insurer) snapshot:

* a document id billed more than once is a duplicate, and the whole group is
  kept out of the matched / mismatched buckets;
* a billed document with no active beneficiary is only_in_invoice;
* charged == monthly fee (exact, missing fee counts as 0.00) is matched,
  anything else is mismatched with difference = charged - fee;
* an active beneficiary never billed is only_in_registry.
"""
import logging
import uuid
from collections import OrderedDict
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import ConflictException, NotFoundException, ValidationException
from app.models.beneficiary_model import Beneficiary
from app.models.enums import BeneficiaryKind, BeneficiaryStatus, ClosureStatus
from app.models.invoice_model import ImportedInvoiceLine
from app.models.reconciliation_model import ReconciliationClosure
from app.services.field_normalizer import format_amount, normalize_money, to_decimal
from app.services.invoice_import_service import format_reference_month

logger = logging.getLogger(__name__)

# "DEPENDENT" selects every non-titular kind
KIND_FILTERS = ("TITULAR", "SPOUSE", "CHILD", "DEPENDENT")

LINE_OK = "OK"
LINE_MISMATCHED = "MISMATCHED"
LINE_DUPLICATE = "DUPLICATE"
LINE_ONLY_IN_INVOICE = "ONLY_IN_INVOICE"

ZERO = Decimal("0.00")


@dataclass
class ReconciliationFilters:
    kind: Optional[str] = None
    plan: Optional[str] = None
    cost_center: Optional[str] = None

    def __post_init__(self):
        if self.kind:
            self.kind = self.kind.strip().upper()
            if self.kind not in KIND_FILTERS:
                raise ValidationException(
                    "Unknown beneficiary kind filter",
                    details={"kind": self.kind, "allowed": list(KIND_FILTERS)},
                )
        else:
            self.kind = None
        self.plan = self.plan or None
        self.cost_center = self.cost_center or None


def _money(value: Decimal) -> str:
    return format_amount(value)


def _parse_declared_total(value: Any) -> Decimal:
    amount = normalize_money(value)
    if amount is None:
        raise ValidationException("Declared total must be a monetary amount", details={"declared_total": value})
    return to_decimal(amount)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _snapshot_lines(db: Session, client_id: uuid.UUID, month: date, insurer_id: Optional[str]) -> List[ImportedInvoiceLine]:
    query = db.query(ImportedInvoiceLine).filter(
        ImportedInvoiceLine.client_id == client_id,
        ImportedInvoiceLine.reference_month == month,
    )
    if insurer_id is None:
        query = query.filter(ImportedInvoiceLine.insurer_id.is_(None))
    else:
        query = query.filter(ImportedInvoiceLine.insurer_id == insurer_id)
    return query.order_by(ImportedInvoiceLine.document_id, ImportedInvoiceLine.created_at).all()


def _active_beneficiaries(db: Session, client_id: uuid.UUID, filters: ReconciliationFilters) -> List[Beneficiary]:
    query = db.query(Beneficiary).filter(
        Beneficiary.client_id == client_id,
        Beneficiary.status == BeneficiaryStatus.ACTIVE,
        Beneficiary.exit_date.is_(None),
    )
    if filters.kind == "DEPENDENT":
        query = query.filter(Beneficiary.kind != BeneficiaryKind.TITULAR)
    elif filters.kind:
        query = query.filter(Beneficiary.kind == BeneficiaryKind(filters.kind))
    if filters.plan:
        query = query.filter(Beneficiary.plan_name == filters.plan)
    if filters.cost_center:
        query = query.filter(Beneficiary.cost_center == filters.cost_center)
    return query.order_by(Beneficiary.full_name).all()


def _closure_query(db: Session, client_id: uuid.UUID, month: date, insurer_id: Optional[str]):
    query = db.query(ReconciliationClosure).filter(
        ReconciliationClosure.client_id == client_id,
        ReconciliationClosure.reference_month == month,
    )
    if insurer_id is None:
        return query.filter(ReconciliationClosure.insurer_id.is_(None))
    return query.filter(ReconciliationClosure.insurer_id == insurer_id)


def get_closure(db: Session, client_id: uuid.UUID, month: date, insurer_id: Optional[str] = None) -> ReconciliationClosure:
    closure = _closure_query(db, client_id, month, insurer_id).first()
    if closure is None:
        raise NotFoundException(
            "No reconciliation recorded for this month",
            details={"month": format_reference_month(month), "insurer_id": insurer_id},
        )
    return closure


def ensure_closure(db: Session, client_id: uuid.UUID, month: date, insurer_id: Optional[str] = None) -> ReconciliationClosure:
    """The OPEN closure row for a period, created the first time the period is viewed."""
    closure = _closure_query(db, client_id, month, insurer_id).first()
    if closure is not None:
        return closure

    closure = ReconciliationClosure(
        closure_id=uuid.uuid4(),
        client_id=client_id,
        reference_month=month,
        insurer_id=insurer_id,
        status=ClosureStatus.OPEN,
    )
    db.add(closure)
    try:
        db.commit()
    except IntegrityError:
        # another request opened the same period first
        db.rollback()
        return _closure_query(db, client_id, month, insurer_id).one()
    db.refresh(closure)
    logger.info(f"Opened reconciliation {format_reference_month(month)} for client {client_id}")
    return closure


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def _beneficiary_entry(beneficiary: Beneficiary) -> Dict[str, Any]:
    return {
        "beneficiary_id": str(beneficiary.beneficiary_id),
        "document_id": beneficiary.document_id,
        "name": beneficiary.full_name,
        "kind": beneficiary.kind.value if beneficiary.kind else None,
        "plan_name": beneficiary.plan_name,
        "cost_center": beneficiary.cost_center,
        "monthly_fee": _money(to_decimal(beneficiary.monthly_fee)),
    }


def classify(lines: List[ImportedInvoiceLine], beneficiaries: List[Beneficiary]) -> Dict[str, Any]:
    """Pure classification of one snapshot against a registry slice."""
    groups: "OrderedDict[str, List[ImportedInvoiceLine]]" = OrderedDict()
    for line in lines:
        groups.setdefault(line.document_id, []).append(line)
    registry = {b.document_id: b for b in beneficiaries}

    matched, mismatched, only_in_invoice, duplicates, per_line = [], [], [], [], []
    sums = {key: ZERO for key in ("invoice", "matched", "mismatched", "difference", "only_in_invoice", "duplicate", "only_in_registry")}
    registry_in_duplicates = 0

    for document_id, group in groups.items():
        amounts = [to_decimal(line.charged_amount) for line in group]
        sums["invoice"] += sum(amounts, ZERO)
        beneficiary = registry.get(document_id)

        if len(group) > 1:
            total = sum(amounts, ZERO)
            sums["duplicate"] += total
            if beneficiary is not None:
                registry_in_duplicates += 1
            duplicates.append({
                "document_id": document_id,
                "name": group[0].beneficiary_name,
                "occurrences": len(group),
                "sum": _money(total),
                "amounts": [_money(a) for a in sorted(set(amounts))],
                "beneficiary_id": str(beneficiary.beneficiary_id) if beneficiary is not None else None,
                "monthly_fee": _money(to_decimal(beneficiary.monthly_fee)) if beneficiary is not None else None,
            })
            status = LINE_DUPLICATE
        else:
            line, charged = group[0], amounts[0]
            if beneficiary is None:
                sums["only_in_invoice"] += charged
                only_in_invoice.append({
                    "line_id": str(line.line_id),
                    "document_id": document_id,
                    "invoice_name": line.beneficiary_name,
                    "charged_amount": _money(charged),
                })
                status = LINE_ONLY_IN_INVOICE
            else:
                fee = to_decimal(beneficiary.monthly_fee)
                entry = _beneficiary_entry(beneficiary)
                entry.update({
                    "line_id": str(line.line_id),
                    "invoice_name": line.beneficiary_name,
                    "charged_amount": _money(charged),
                })
                if charged == fee:
                    sums["matched"] += charged
                    matched.append(entry)
                    status = LINE_OK
                else:
                    difference = charged - fee
                    sums["mismatched"] += charged
                    sums["difference"] += difference
                    entry["difference"] = _money(difference)
                    mismatched.append(entry)
                    status = LINE_MISMATCHED

        for line in group:
            per_line.append({
                "line_id": str(line.line_id),
                "document_id": line.document_id,
                "beneficiary_name": line.beneficiary_name,
                "charged_amount": line.charged_amount,
                "status": status,
            })

    only_in_registry = []
    for beneficiary in beneficiaries:
        if beneficiary.document_id in groups:
            continue
        sums["only_in_registry"] += to_decimal(beneficiary.monthly_fee)
        only_in_registry.append(_beneficiary_entry(beneficiary))

    summary = {
        "invoice_count": len(lines),
        "active_count": len(beneficiaries),
        "matched_count": len(matched),
        "mismatched_count": len(mismatched),
        "only_in_invoice_count": len(only_in_invoice),
        "only_in_registry_count": len(only_in_registry),
        "duplicate_count": len(duplicates),
        "registry_in_duplicates": registry_in_duplicates,
        "invoice_sum": _money(sums["invoice"]),
        "matched_sum": _money(sums["matched"]),
        "mismatched_sum": _money(sums["mismatched"]),
        "mismatched_difference_sum": _money(sums["difference"]),
        "only_in_invoice_sum": _money(sums["only_in_invoice"]),
        "duplicate_sum": _money(sums["duplicate"]),
        "only_in_registry_sum": _money(sums["only_in_registry"]),
    }
    return {
        "summary": summary,
        "matched": matched,
        "mismatched": mismatched,
        "only_in_invoice": only_in_invoice,
        "only_in_registry": only_in_registry,
        "duplicates": duplicates,
        "lines": per_line,
    }


def closure_view(closure: ReconciliationClosure, invoice_sum: Optional[str] = None) -> Dict[str, Any]:
    declared = to_decimal(closure.declared_total) if closure.declared_total is not None else None
    difference = None
    if declared is not None and invoice_sum is not None:
        difference = _money(declared - to_decimal(invoice_sum))
    return {
        "closure_id": str(closure.closure_id),
        "status": closure.status.value,
        "declared_total": _money(declared) if declared is not None else None,
        "notes": closure.notes,
        "closed_at": closure.closed_at,
        "updated_at": closure.updated_at,
        "difference": difference,
    }


def build_reconciliation(
    db: Session,
    client_id: uuid.UUID,
    month: date,
    filters: Optional[ReconciliationFilters] = None,
    insurer_id: Optional[str] = None,
) -> Dict[str, Any]:
    filters = filters or ReconciliationFilters()
    lines = _snapshot_lines(db, client_id, month, insurer_id)
    beneficiaries = _active_beneficiaries(db, client_id, filters)

    report = classify(lines, beneficiaries)
    closure = ensure_closure(db, client_id, month, insurer_id)

    summary = report["summary"]
    logger.info(
        f"Reconciliation {format_reference_month(month)} client {client_id}: "
        f"{summary['matched_count']} matched, {summary['mismatched_count']} mismatched, "
        f"{summary['duplicate_count']} duplicated, {summary['only_in_invoice_count']} only in invoice, "
        f"{summary['only_in_registry_count']} only in registry"
    )
    report.update({
        "reference_month": format_reference_month(month),
        "insurer_id": insurer_id,
        "filters": asdict(filters),
        "closure": closure_view(closure, summary["invoice_sum"]),
    })
    return report


# ---------------------------------------------------------------------------
# Closure lifecycle
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def close_reconciliation(
    db: Session,
    client_id: uuid.UUID,
    month: date,
    declared_total: Any,
    notes: Optional[str] = None,
    insurer_id: Optional[str] = None,
) -> ReconciliationClosure:
    """
    Seal a period with the total declared on the insurer's invoice. The
    declaration is stored as given; it is not checked against the computed sum.
    Closing an already closed period is refused; use ``update_closure``.
    """
    declared = _parse_declared_total(declared_total)
    report = build_reconciliation(db, client_id, month, insurer_id=insurer_id)
    closure = ensure_closure(db, client_id, month, insurer_id)
    if closure.status == ClosureStatus.CLOSED:
        raise ConflictException(
            "Reconciliation is already closed for this month",
            details={"month": format_reference_month(month), "closed_at": closure.closed_at.isoformat() if closure.closed_at else None},
        )

    closure.declared_total = declared
    closure.notes = notes
    closure.snapshot = report["summary"]
    closure.closed_at = _utcnow()
    closure.status = ClosureStatus.CLOSED
    db.commit()
    db.refresh(closure)
    logger.info(f"Closed reconciliation {format_reference_month(month)} for client {client_id} at {_money(declared)}")
    return closure


def _same_instant(a: datetime, b: datetime) -> bool:
    # SQLite hands back naive UTC timestamps
    if a.tzinfo is not None:
        a = a.astimezone(timezone.utc).replace(tzinfo=None)
    if b.tzinfo is not None:
        b = b.astimezone(timezone.utc).replace(tzinfo=None)
    return a == b


def update_closure(
    db: Session,
    client_id: uuid.UUID,
    month: date,
    insurer_id: Optional[str] = None,
    declared_total: Any = None,
    notes: Optional[str] = None,
    expected_updated_at: Optional[datetime] = None,
) -> ReconciliationClosure:
    """Explicit change to a closed period."""
    closure = get_closure(db, client_id, month, insurer_id)
    if closure.status != ClosureStatus.CLOSED:
        raise ConflictException("Only a closed reconciliation can be updated, close it first")
    if expected_updated_at is not None and (
        closure.updated_at is None or not _same_instant(closure.updated_at, expected_updated_at)
    ):
        raise ConflictException(
            "Reconciliation was changed by someone else, reload and retry",
            details={"updated_at": closure.updated_at.isoformat() if closure.updated_at else None},
        )

    if declared_total is not None:
        closure.declared_total = _parse_declared_total(declared_total)
    if notes is not None:
        closure.notes = notes
    closure.updated_at = _utcnow()
    db.commit()
    db.refresh(closure)
    logger.info(f"Updated closed reconciliation {format_reference_month(month)} for client {client_id}")
    return closure


def reopen_reconciliation(
    db: Session,
    client_id: uuid.UUID,
    month: date,
    insurer_id: Optional[str] = None,
) -> ReconciliationClosure:
    """Back to OPEN. The last declaration and snapshot are kept for reference."""
    closure = get_closure(db, client_id, month, insurer_id)
    if closure.status != ClosureStatus.CLOSED:
        raise ConflictException("Reconciliation is not closed")
    closure.status = ClosureStatus.OPEN
    closure.closed_at = None
    db.commit()
    db.refresh(closure)
    logger.info(f"Reopened reconciliation {format_reference_month(month)} for client {client_id}")
    return closure


# ---------------------------------------------------------------------------
# History and filter options
# ---------------------------------------------------------------------------

def _invoice_totals(db: Session, client_id: uuid.UUID, months: List[date]) -> Dict[Tuple[date, Optional[str]], Decimal]:
    totals: Dict[Tuple[date, Optional[str]], Decimal] = {}
    if not months:
        return totals
    rows = (
        db.query(
            ImportedInvoiceLine.reference_month,
            ImportedInvoiceLine.insurer_id,
            ImportedInvoiceLine.charged_amount,
        )
        .filter(ImportedInvoiceLine.client_id == client_id, ImportedInvoiceLine.reference_month.in_(months))
        .all()
    )
    for month, insurer_id, amount in rows:
        key = (month, insurer_id)
        totals[key] = totals.get(key, ZERO) + to_decimal(amount)
    return totals


def list_closure_history(
    db: Session,
    client_id: uuid.UUID,
    from_month: Optional[date] = None,
    to_month: Optional[date] = None,
    status: Optional[ClosureStatus] = None,
    insurer_id: Optional[str] = None,
    order: str = "desc",
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[Dict[str, Any]], int, Dict[str, Any]]:
    query = db.query(ReconciliationClosure).filter(ReconciliationClosure.client_id == client_id)
    if from_month is not None:
        query = query.filter(ReconciliationClosure.reference_month >= from_month)
    if to_month is not None:
        query = query.filter(ReconciliationClosure.reference_month <= to_month)
    if status is not None:
        query = query.filter(ReconciliationClosure.status == status)
    if insurer_id is not None:
        query = query.filter(ReconciliationClosure.insurer_id == insurer_id)

    closures_all = query.all()
    total = len(closures_all)
    ordering = ReconciliationClosure.reference_month.asc() if order == "asc" else ReconciliationClosure.reference_month.desc()
    closures = query.order_by(ordering).offset((page - 1) * page_size).limit(page_size).all()

    totals = _invoice_totals(db, client_id, sorted({c.reference_month for c in closures_all}))
    items = []
    for closure in closures:
        invoice_total = totals.get((closure.reference_month, closure.insurer_id), ZERO)
        view = closure_view(closure, _money(invoice_total))
        view.update({
            "reference_month": format_reference_month(closure.reference_month),
            "insurer_id": closure.insurer_id,
            "invoice_total": _money(invoice_total),
            "snapshot": closure.snapshot,
        })
        items.append(view)

    declared_sum = sum(
        (to_decimal(c.declared_total) for c in closures_all if c.declared_total is not None), ZERO
    )
    invoice_sum = sum(
        (totals.get((c.reference_month, c.insurer_id), ZERO) for c in closures_all), ZERO
    )
    summary = {
        "periods": total,
        "closed": sum(1 for c in closures_all if c.status == ClosureStatus.CLOSED),
        "open": sum(1 for c in closures_all if c.status == ClosureStatus.OPEN),
        "declared_sum": _money(declared_sum),
        "invoice_sum": _money(invoice_sum),
        "difference": _money(declared_sum - invoice_sum),
    }
    return items, total, summary


def get_filter_options(db: Session, client_id: uuid.UUID) -> Dict[str, List[str]]:
    base = db.query(Beneficiary).filter(
        Beneficiary.client_id == client_id,
        Beneficiary.status == BeneficiaryStatus.ACTIVE,
    )
    plans = [
        value for (value,) in base.with_entities(Beneficiary.plan_name).filter(Beneficiary.plan_name.isnot(None)).distinct()
    ]
    cost_centers = [
        value for (value,) in base.with_entities(Beneficiary.cost_center).filter(Beneficiary.cost_center.isnot(None)).distinct()
    ]
    return {
        "kinds": list(KIND_FILTERS),
        "plans": sorted(plans),
        "cost_centers": sorted(cost_centers),
    }
