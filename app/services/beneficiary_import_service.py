"""
Two-pass beneficiary roster import.

One upload runs as an ordered pipeline of stages over a single in-memory batch,
inside one transaction:

    prepare_rows -> seed_enrollment_map -> upsert_titulars -> upsert_dependents -> record_run

Titulars go first because dependents are linked to them through the enrollment
code (matricula) they share in the roster. The enrollment map built by one
stage is passed explicitly to the next.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import AppException, ConflictException
from app.models.beneficiary_model import Beneficiary
from app.models.enums import BeneficiaryKind, BeneficiaryStatus
from app.models.import_error import BeneficiaryImportError
from app.services import field_normalizer as fn
from app.services.import_run_service import create_latest_run

logger = logging.getLogger(__name__)

# accent-stripped, lowercase; matched anywhere in the remark column
EXCLUSION_KEYWORDS = (
    "exclusao", "excluir", "excluido", "cancelamento", "cancelado", "desligamento", "desligado",
)

# dependents with fewer filled cells are treated as filler rows, not errors
MIN_CELLS_FOR_ERROR = 3

ERROR_SAMPLE_IN_PAYLOAD = 50

ROSTER_FIELDS = (
    fn.NAME, fn.DOCUMENT_ID, fn.DEPENDENT_DOCUMENT_ID, fn.AMOUNT, fn.KIND, fn.RELATIONSHIP,
    fn.ENROLLMENT_CODE, fn.ENTRY_DATE, fn.BIRTH_DATE, fn.SEX, fn.PLAN, fn.COST_CENTER,
    fn.AGE_BRACKET, fn.STATE, fn.CONTRACT, fn.CARD_NUMBER, fn.REMARK,
)


@dataclass
class RosterRow:
    row_number: int
    raw: fn.RawRow
    kind: BeneficiaryKind
    name: Optional[str]
    document_id: Optional[str]
    enrollment_code: Optional[str]
    entry_date: Optional[date]
    birth_date: Optional[date] = None
    sex: Optional[str] = None
    plan_name: Optional[str] = None
    cost_center: Optional[str] = None
    age_bracket: Optional[str] = None
    state: Optional[str] = None
    contract_id: Optional[str] = None
    card_number: Optional[str] = None
    monthly_fee: Optional[str] = None
    remark: Optional[str] = None
    filled_cells: int = 0

    @property
    def excluded(self) -> bool:
        return fn.contains_keyword(self.remark, EXCLUSION_KEYWORDS)

    def missing_fields(self) -> List[str]:
        missing = []
        if not self.name:
            missing.append("name")
        if not self.document_id:
            missing.append("document_id")
        if not self.entry_date:
            missing.append("entry_date")
        return missing


@dataclass
class ImportTally:
    titulars_created: int = 0
    titulars_updated: int = 0
    dependents_created: int = 0
    dependents_updated: int = 0
    inactivated: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def created(self) -> int:
        return self.titulars_created + self.dependents_created

    @property
    def updated(self) -> int:
        return self.titulars_updated + self.dependents_updated

    def add_error(self, row: RosterRow, reason: str) -> None:
        self.errors.append({
            "row_number": row.row_number,
            "reason": reason,
            "data": fn.jsonable_row(row.raw),
        })


# ---------------------------------------------------------------------------
# Stage 0: resolve every row once
# ---------------------------------------------------------------------------

def _enrollment_key(raw: fn.RawValue) -> Optional[str]:
    text = fn.clean_text(raw)
    return text.upper() if text else None


def _prepare_row(index: int, raw: fn.RawRow, resolved: Dict[str, fn.ResolvedField], legacy_pad: bool) -> RosterRow:
    kind = fn.classify_kind(resolved[fn.KIND].value, resolved[fn.RELATIONSHIP].value) or BeneficiaryKind.CHILD

    document_value = resolved[fn.DOCUMENT_ID].value
    if kind != BeneficiaryKind.TITULAR and not fn.is_blank(resolved[fn.DEPENDENT_DOCUMENT_ID].value):
        document_value = resolved[fn.DEPENDENT_DOCUMENT_ID].value

    return RosterRow(
        row_number=index + 2,
        raw=raw,
        kind=kind,
        name=fn.clean_text(resolved[fn.NAME].value),
        document_id=fn.normalize_document_id(document_value, legacy_pad=legacy_pad),
        enrollment_code=_enrollment_key(resolved[fn.ENROLLMENT_CODE].value),
        entry_date=fn.parse_date(resolved[fn.ENTRY_DATE].value),
        birth_date=fn.parse_date(resolved[fn.BIRTH_DATE].value),
        sex=fn.normalize_sex(resolved[fn.SEX].value),
        plan_name=fn.clean_text(resolved[fn.PLAN].value),
        cost_center=fn.clean_text(resolved[fn.COST_CENTER].value),
        age_bracket=fn.clean_text(resolved[fn.AGE_BRACKET].value),
        state=fn.normalize_state(resolved[fn.STATE].value),
        contract_id=fn.clean_text(resolved[fn.CONTRACT].value),
        card_number=fn.clean_text(resolved[fn.CARD_NUMBER].value),
        monthly_fee=fn.normalize_money(resolved[fn.AMOUNT].value),
        remark=fn.clean_text(resolved[fn.REMARK].value),
        filled_cells=fn.non_empty_count(raw),
    )


def prepare_rows(rows: Sequence[fn.RawRow], legacy_pad: bool = True) -> Tuple[List[RosterRow], Dict[str, Dict[str, Any]]]:
    """Resolve every raw row into a RosterRow; also returns the detected columns."""
    prepared: List[RosterRow] = []
    resolutions = []
    for index, raw in enumerate(rows):
        resolved = fn.resolve_fields(raw, ROSTER_FIELDS)
        resolutions.append(resolved)
        prepared.append(_prepare_row(index, raw, resolved, legacy_pad))

    detected = fn.summarize_resolution(resolutions)
    for name, info in detected.items():
        logger.info(f"Roster field {name!r} <- column {info['column']!r} via {info['strategy']} ({info['rows']} rows)")
    return prepared, detected


# ---------------------------------------------------------------------------
# Stage 1: what the client already has
# ---------------------------------------------------------------------------

def load_registry(db: Session, client_id: uuid.UUID) -> Dict[str, Beneficiary]:
    """Existing beneficiaries of the client keyed by document id."""
    beneficiaries = db.query(Beneficiary).filter(Beneficiary.client_id == client_id).all()
    return {b.document_id: b for b in beneficiaries}


def seed_enrollment_map(registry: Dict[str, Beneficiary]) -> Dict[str, uuid.UUID]:
    """
    Enrollment code -> titular id for titulars already registered, so a roster
    carrying only new dependents still links them.
    """
    enrollment_map: Dict[str, uuid.UUID] = {}
    for beneficiary in registry.values():
        key = _enrollment_key(beneficiary.enrollment_code)
        if beneficiary.kind == BeneficiaryKind.TITULAR and key:
            enrollment_map[key] = beneficiary.beneficiary_id
    return enrollment_map


# ---------------------------------------------------------------------------
# Stages 2 and 3: upserts
# ---------------------------------------------------------------------------

def _apply_status(beneficiary: Beneficiary, row: RosterRow, today: date, tally: ImportTally) -> None:
    if row.excluded:
        was_active = beneficiary.status != BeneficiaryStatus.INACTIVE
        exit_date = beneficiary.exit_date if not was_active else None
        if exit_date is None or exit_date < row.entry_date:
            exit_date = max(today, row.entry_date)
        beneficiary.status = BeneficiaryStatus.INACTIVE
        beneficiary.exit_date = exit_date
        if was_active:
            tally.inactivated += 1
    else:
        beneficiary.status = BeneficiaryStatus.ACTIVE
        beneficiary.exit_date = None


def _upsert(
    db: Session,
    client_id: uuid.UUID,
    row: RosterRow,
    registry: Dict[str, Beneficiary],
    titular_id: Optional[uuid.UUID],
    today: date,
    tally: ImportTally,
) -> Tuple[Beneficiary, bool]:
    beneficiary = registry.get(row.document_id)
    created = beneficiary is None
    if created:
        beneficiary = Beneficiary(
            beneficiary_id=uuid.uuid4(),
            client_id=client_id,
            document_id=row.document_id,
            status=BeneficiaryStatus.ACTIVE,
        )
        db.add(beneficiary)
        registry[row.document_id] = beneficiary

    beneficiary.full_name = row.name
    beneficiary.kind = row.kind
    beneficiary.titular_id = titular_id
    beneficiary.entry_date = row.entry_date
    if row.enrollment_code:
        beneficiary.enrollment_code = row.enrollment_code

    optional = {
        "birth_date": row.birth_date,
        "sex": row.sex,
        "plan_name": row.plan_name,
        "cost_center": row.cost_center,
        "age_bracket": row.age_bracket,
        "state": row.state,
        "contract_id": row.contract_id,
        "card_number": row.card_number,
        "remark": row.remark,
    }
    for attr, value in optional.items():
        if value is not None:
            setattr(beneficiary, attr, value)
    if row.monthly_fee is not None:
        beneficiary.monthly_fee = fn.to_decimal(row.monthly_fee)

    _apply_status(beneficiary, row, today, tally)
    return beneficiary, created


def upsert_titulars(
    db: Session,
    client_id: uuid.UUID,
    rows: Sequence[RosterRow],
    registry: Dict[str, Beneficiary],
    enrollment_map: Dict[str, uuid.UUID],
    tally: ImportTally,
    today: date,
) -> Dict[str, uuid.UUID]:
    """
    Upsert every usable titular row and return the enrollment map extended
    with them. Titular rows lacking a document, entry date, name or enrollment
    code are skipped without an error.
    """
    extended = dict(enrollment_map)
    for row in rows:
        if row.kind != BeneficiaryKind.TITULAR:
            continue
        if row.missing_fields() or not row.enrollment_code:
            tally.skipped += 1
            continue

        beneficiary, created = _upsert(db, client_id, row, registry, None, today, tally)
        if created:
            tally.titulars_created += 1
        else:
            tally.titulars_updated += 1
        extended[row.enrollment_code] = beneficiary.beneficiary_id

    # dependents reference these ids, the rows must exist first
    db.flush()
    return extended


def upsert_dependents(
    db: Session,
    client_id: uuid.UUID,
    rows: Sequence[RosterRow],
    registry: Dict[str, Beneficiary],
    enrollment_map: Dict[str, uuid.UUID],
    tally: ImportTally,
    today: date,
) -> None:
    # titulars that already carry dependents, in the database or earlier in this file
    with_dependents = {b.titular_id for b in registry.values() if b.titular_id is not None}
    demoted = set()

    for row in rows:
        if row.kind == BeneficiaryKind.TITULAR:
            continue

        missing = row.missing_fields()
        if missing:
            if row.filled_cells >= MIN_CELLS_FOR_ERROR:
                tally.add_error(row, f"Missing required field(s): {', '.join(missing)}")
            else:
                tally.skipped += 1
            continue

        titular_id = enrollment_map.get(row.enrollment_code) if row.enrollment_code else None
        if titular_id is None:
            tally.add_error(row, "Titular not found for enrollment code")
            continue
        if titular_id in demoted:
            tally.add_error(row, "Titular of this enrollment code was registered as a dependent in this file")
            continue

        current = registry.get(row.document_id)
        if current is not None and current.beneficiary_id == titular_id:
            tally.add_error(row, "Dependent has the same document id as its titular")
            continue
        if current is not None and current.beneficiary_id in with_dependents:
            tally.add_error(row, "Document id belongs to a titular with dependents")
            continue

        if current is not None and current.kind == BeneficiaryKind.TITULAR:
            demoted.add(current.beneficiary_id)
        _, created = _upsert(db, client_id, row, registry, titular_id, today, tally)
        with_dependents.add(titular_id)
        if created:
            tally.dependents_created += 1
        else:
            tally.dependents_updated += 1

    db.flush()


# ---------------------------------------------------------------------------
# Stage 4: ledger
# ---------------------------------------------------------------------------

def record_run(
    db: Session,
    client_id: uuid.UUID,
    summary: Dict[str, Any],
    errors: List[Dict[str, Any]],
    run_id: Optional[str] = None,
):
    payload = dict(summary)
    payload["error_count"] = len(errors)
    payload["errors_sample"] = errors[:ERROR_SAMPLE_IN_PAYLOAD]
    run = create_latest_run(db, client_id, payload, run_id=run_id)

    for error in errors:
        db.add(BeneficiaryImportError(
            error_id=uuid.uuid4(),
            client_id=client_id,
            import_run_id=run.import_run_id,
            row_number=error["row_number"],
            reason=error["reason"],
            data=error["data"],
        ))
    return run


def import_beneficiaries(
    db: Session,
    client_id: uuid.UUID,
    rows: Sequence[fn.RawRow],
    run_id: Optional[str] = None,
    legacy_pad: bool = True,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """
    Import a parsed roster for one client.

    Row-level problems are collected and returned; anything unexpected rolls
    the whole import back.
    """
    today = today or date.today()
    tally = ImportTally()
    try:
        prepared, detected = prepare_rows(rows, legacy_pad=legacy_pad)
        registry = load_registry(db, client_id)
        enrollment_map = seed_enrollment_map(registry)
        enrollment_map = upsert_titulars(db, client_id, prepared, registry, enrollment_map, tally, today)
        upsert_dependents(db, client_id, prepared, registry, enrollment_map, tally, today)

        summary = {
            "created": tally.created,
            "updated": tally.updated,
            "inactivated": tally.inactivated,
            "skipped": tally.skipped,
            "titulars": {"created": tally.titulars_created, "updated": tally.titulars_updated},
            "dependents": {"created": tally.dependents_created, "updated": tally.dependents_updated},
            "total_rows": len(rows),
            "detected_columns": detected,
        }
        run = record_run(db, client_id, summary, tally.errors, run_id=run_id)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.error(f"Beneficiary import for client {client_id} violated a constraint: {exc.orig}")
        raise ConflictException("Beneficiary import conflicts with existing data") from exc
    except AppException:
        db.rollback()
        raise
    except Exception:
        db.rollback()
        logger.exception(f"Beneficiary import for client {client_id} failed, rolled back")
        raise

    logger.info(
        f"Beneficiary import for client {client_id}: {tally.created} created, {tally.updated} updated, "
        f"{tally.inactivated} inactivated, {len(tally.errors)} error(s)"
    )
    result = dict(summary)
    result["errors"] = tally.errors
    result["import_run_id"] = run.import_run_id
    result["run_id"] = run_id
    return result
